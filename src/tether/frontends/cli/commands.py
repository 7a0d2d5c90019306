"""Standalone commands: classify, chat, run, sessions."""

from __future__ import annotations

import asyncio
import getpass
import sqlite3
import sys
from datetime import datetime
from pathlib import Path

import rich_click as click

from tether.core.config import load_config
from tether.core.parsers import OutputParser
from tether.core.process import CommandFailedError, ProcessRegistry, StreamingTimeoutError
from tether.core.pty import BackendStartError, PaneCursor
from tether.core.session import SessionStore
from tether.frontends.cli.output import (
    error_exit,
    output_json,
    output_json_or_table,
    print_table,
    truncate,
)


def _format_ms(ms: int) -> str:
    return datetime.fromtimestamp(ms / 1000).strftime("%Y-%m-%d %H:%M:%S")


@click.command("classify")
@click.argument("file", required=False)
@click.option("--json", "-j", "json_output", is_flag=True, help="Output as JSON")
@click.option("--lines", "-l", "per_line", is_flag=True, help="Classify each line separately")
def classify_cmd(file: str | None, json_output: bool, per_line: bool) -> None:
    """Classify CLI output into error, progress, tool, status or response.

    Reads FILE, or stdin when no file is given.

    **Examples:**

        tether classify output.txt

        cat output.txt | tether classify --lines --json
    """
    if file:
        try:
            text = Path(file).read_text(encoding="utf-8")
        except OSError as err:
            error_exit(f"Cannot read {file}: {err}")
    else:
        text = sys.stdin.read()

    chunks = [line for line in text.splitlines() if line.strip()] if per_line else [text]
    parser = OutputParser()
    events = [parser.parse(chunk) for chunk in chunks]

    def table() -> None:
        print_table(
            ["TYPE", "TOOLS", "CONTENT"],
            [
                [e.type.value, ",".join(e.tools) or "-", truncate(e.content, 50)]
                for e in events
            ],
            max_widths=[10, 24, 50],
        )

    if json_output and not per_line:
        output_json(events[0].to_dict())
    else:
        output_json_or_table([e.to_dict() for e in events], json_output, table)


@click.command("chat")
@click.option(
    "--backend",
    "-b",
    type=click.Choice(["pty", "tmux"]),
    default=None,
    help="Backend strategy (default: SESSION_TYPE or tmux)",
)
@click.option("--command", "-c", "cli_path", default=None, help="CLI to run (default: claude)")
@click.option("--user", "-u", "user_id", default=None, help="User id (default: login name)")
@click.option("--channel", default="cli", help="Channel id")
@click.option("--cwd", default=None, help="Working directory for the CLI")
@click.option("--no-persist", is_flag=True, help="Don't read or write the session database")
@click.option("--config", "config_file", default=None, help="YAML config file")
def chat_cmd(
    backend: str | None,
    cli_path: str | None,
    user_id: str | None,
    channel: str,
    cwd: str | None,
    no_persist: bool,
    config_file: str | None,
) -> None:
    """Chat with an interactive CLI through a tether session.

    Lines are sent to the CLI; its output is classified and rendered.
    Lines starting with ':' are directives:

        :stop  :continue  :regenerate  :model NAME  :project NAME

        :history  :first  :prev  :next  :last  :info  :quit

    **Examples:**

        tether chat --backend pty --command bash

        tether chat --user alice --channel review
    """
    from tether.frontends.cli.chat import ChatConsole

    try:
        config = load_config(
            config_file,
            session_type=backend,
            cli_path=cli_path,
            project_base_path=cwd,
            persistence=False if no_persist else None,
        )
    except ValueError as err:
        error_exit(str(err))

    console = ChatConsole.from_config(config, user_id or getpass.getuser(), channel)
    sys.exit(asyncio.run(console.run()))


@click.command("run")
@click.argument("command")
@click.option("--cwd", default=".", help="Working directory")
@click.option("--timeout", "-t", type=float, default=None, help="Seconds before the command is killed")
@click.option("--config", "config_file", default=None, help="YAML config file")
def run_cmd(command: str, cwd: str, timeout: float | None, config_file: str | None) -> None:
    """Run a shell command with live output and a hard timeout.

    Exits 1 if the command fails or times out.

    **Examples:**

        tether run "pytest -x" --timeout 600
    """
    try:
        config = load_config(config_file)
    except ValueError as err:
        error_exit(str(err))

    registry = ProcessRegistry.from_config(config)
    cursor = PaneCursor()

    def on_data(buffer: str) -> None:
        click.echo(cursor.advance(buffer), nl=False)

    async def _run() -> None:
        try:
            await registry.start_streaming(command, str(Path(cwd).expanduser()), timeout, on_data)
        finally:
            await registry.shutdown()

    try:
        asyncio.run(_run())
    except StreamingTimeoutError as err:
        error_exit(str(err))
    except CommandFailedError as err:
        error_exit(str(err))
    except BackendStartError as err:
        error_exit(str(err))
    click.echo()


@click.command("sessions")
@click.option("--user", "-u", "user_id", default=None, help="Only this user's sessions")
@click.option("--status", "-s", default=None, help="Only sessions with this status")
@click.option("--json", "-j", "json_output", is_flag=True, help="Output as JSON")
@click.option("--config", "config_file", default=None, help="YAML config file")
def sessions_cmd(
    user_id: str | None,
    status: str | None,
    json_output: bool,
    config_file: str | None,
) -> None:
    """List persisted sessions.

    **Examples:**

        tether sessions --user alice

        tether sessions --status active --json
    """
    try:
        config = load_config(config_file)
    except ValueError as err:
        error_exit(str(err))

    if not Path(config.database_path).expanduser().exists():
        output_json_or_table([], json_output, lambda: click.echo("No sessions"))
        return

    store = SessionStore(config.database_path)
    try:
        store.open()
        records = list(store.load(status=status, user_id=user_id))
    except sqlite3.Error as err:
        error_exit(f"Cannot read {config.database_path}: {err}")
    finally:
        store.close()

    data = [
        {
            "id": r.id,
            "user_id": r.user_id,
            "channel_id": r.channel_id,
            "status": r.status,
            "model": r.model,
            "messages": r.message_count,
            "created_at": r.created_at,
            "updated_at": r.updated_at,
        }
        for r in records
    ]

    def table() -> None:
        if not records:
            click.echo("No sessions")
            return
        print_table(
            ["ID", "USER", "CHANNEL", "STATUS", "MSGS", "UPDATED"],
            [
                [
                    r.id,
                    r.user_id,
                    r.channel_id,
                    r.status,
                    str(r.message_count),
                    _format_ms(r.updated_at),
                ]
                for r in records
            ],
        )

    output_json_or_table(data, json_output, table)
