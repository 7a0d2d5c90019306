"""Runtime configuration.

Values resolve with priority: explicit argument > environment variable >
YAML config file > default. The config file path comes from the
``config_file`` argument or the TETHER_CONFIG environment variable.

Example:
    >>> config = load_config()
    >>> config.backend_type
    <BackendType.TMUX: 'tmux'>
    >>> load_config(session_type="pty", persistence=False).backend_type
    <BackendType.PTY: 'pty'>
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

from tether.core.pty.backend import BackendType

logger = logging.getLogger(__name__)

CONFIG_ENV_KEY = "TETHER_CONFIG"


@dataclass(frozen=True)
class TetherConfig:
    """Configuration for sessions, backends and managed processes.

    Attributes:
        cli_path: Interactive CLI launched in each session backend.
        session_type: Backend strategy, "tmux" (polled) or "pty" (direct).
        project_base_path: Working directory for session backends.
        max_sessions: Hard cap on live sessions.
        default_timeout: Timeout for streaming commands, in seconds.
        persistence: Whether sessions are written to the database.
        database_path: SQLite database file for session rows.
        poll_interval: tmux capture interval, in seconds.
        startup_delay: Wait after launching the CLI inside tmux, in seconds.
        session_idle_timeout: Idle age after which sessions are swept.
        session_sweep_interval: How often the idle sweep runs.
        max_output_size: Per-buffer bound for managed process output.
        max_processes: Hard cap on running managed processes.
        process_retention: Age after which finished processes are reaped.
        process_sweep_interval: How often the process sweep runs.
        rows: Terminal height.
        cols: Terminal width.
    """

    cli_path: str = "claude"
    session_type: str = "tmux"
    project_base_path: str = "~/claude-projects"
    max_sessions: int = 10
    default_timeout: float = 300.0
    persistence: bool = True
    database_path: str = "./data/sessions.db"
    poll_interval: float = 0.5
    startup_delay: float = 2.0
    session_idle_timeout: float = 3600.0
    session_sweep_interval: float = 300.0
    max_output_size: int = 1024 * 1024
    max_processes: int = 50
    process_retention: float = 3600.0
    process_sweep_interval: float = 300.0
    rows: int = 30
    cols: int = 80

    @property
    def backend_type(self) -> BackendType:
        return BackendType(self.session_type)

    @property
    def working_directory(self) -> str:
        """Expanded project base path."""
        return str(Path(self.project_base_path).expanduser())


# field name -> environment variable
ENV_KEYS: dict[str, str] = {
    "cli_path": "CLAUDE_CLI_PATH",
    "session_type": "SESSION_TYPE",
    "project_base_path": "PROJECT_BASE_PATH",
    "max_sessions": "MAX_SESSIONS",
    "default_timeout": "DEFAULT_TIMEOUT",
    "persistence": "ENABLE_PERSISTENCE",
    "database_path": "DATABASE_PATH",
    "poll_interval": "TETHER_POLL_INTERVAL",
    "startup_delay": "TETHER_STARTUP_DELAY",
    "session_idle_timeout": "TETHER_SESSION_IDLE_TIMEOUT",
    "session_sweep_interval": "TETHER_SESSION_SWEEP_INTERVAL",
    "max_output_size": "TETHER_MAX_OUTPUT_SIZE",
    "max_processes": "TETHER_MAX_PROCESSES",
    "process_retention": "TETHER_PROCESS_RETENTION",
    "process_sweep_interval": "TETHER_PROCESS_SWEEP_INTERVAL",
    "rows": "TETHER_ROWS",
    "cols": "TETHER_COLS",
}


def parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() == "true"


def _coerce(name: str, value: Any, kind: type) -> Any:
    if kind is bool:
        return parse_bool(value)
    try:
        return kind(value)
    except (TypeError, ValueError) as err:
        raise ValueError(f"Invalid value for {name}: {value!r}") from err


def _read_config_file(config_file: str | None) -> dict[str, Any]:
    config_path = config_file or os.environ.get(CONFIG_ENV_KEY)
    if not config_path:
        return {}

    path = Path(config_path).expanduser()
    if not path.exists():
        logger.warning("config_file_missing: path=%s", path)
        return {}

    data = yaml.safe_load(path.read_text()) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return data


def load_config(config_file: str | None = None, **overrides: Any) -> TetherConfig:
    """Build a TetherConfig from arguments, environment and config file.

    Args:
        config_file: Path to a YAML file (or TETHER_CONFIG env var).
        **overrides: Field values that take precedence over everything else.

    Returns:
        The resolved configuration.

    Raises:
        ValueError: If a value cannot be parsed, a field is unknown, or
            session_type is not a known backend.
    """
    file_config = _read_config_file(config_file)
    kinds = {f.name: type(f.default) for f in fields(TetherConfig)}

    unknown = set(overrides) - set(kinds)
    if unknown:
        raise ValueError(f"Unknown config fields: {', '.join(sorted(unknown))}")

    values: dict[str, Any] = {}
    for name, kind in kinds.items():
        if overrides.get(name) is not None:
            raw = overrides[name]
        elif os.environ.get(ENV_KEYS[name]):
            raw = os.environ[ENV_KEYS[name]]
        elif file_config.get(name) is not None:
            raw = file_config[name]
        else:
            continue
        values[name] = _coerce(name, raw, kind)

    config = TetherConfig(**values)

    try:
        config.backend_type
    except ValueError as err:
        raise ValueError(
            f"session_type must be one of {[t.value for t in BackendType]}, "
            f"got {config.session_type!r}"
        ) from err

    return config
