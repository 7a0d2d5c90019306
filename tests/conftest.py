"""Pytest configuration and fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from tether.core.config import CONFIG_ENV_KEY, ENV_KEYS, TetherConfig
from tether.core.pty.backend import Backend, BackendConfig, BackendStartError


class FakeBackend(Backend):
    """In-memory backend driven by the test.

    feed()/fail()/exit() push events exactly as a real backend would.
    """

    def __init__(self, config: BackendConfig | None = None, deliver: bool = True) -> None:
        super().__init__(config)
        self.deliver = deliver
        self.sent: list[str] = []
        self.started = False
        self.stopped = 0
        self.destroyed = False

    @property
    def is_running(self) -> bool:
        return self.started and not self._exited

    async def initialize(self) -> None:
        self.started = True

    async def send_input(self, text: str) -> bool:
        if not self.is_running:
            return False
        self.sent.append(text)
        return self.deliver

    async def stop(self) -> None:
        self.stopped += 1

    async def destroy(self) -> None:
        self.destroyed = True
        self._emit_exit(None)

    def feed(self, chunk: str) -> None:
        self._emit_output(chunk)

    def fail(self, error: BaseException) -> None:
        self._emit_error(error)

    def exit(self, code: int | None = 0) -> None:
        self._emit_exit(code)


class FailingBackend(FakeBackend):
    async def initialize(self) -> None:
        raise BackendStartError("spawn failed")


class FakeBackendFactory:
    """Backend factory recording every backend it builds."""

    def __init__(self) -> None:
        self.created: list[FakeBackend] = []
        self.calls: list[tuple[str, ...]] = []
        self.fail_next = False

    def __call__(self, *args: str) -> FakeBackend:
        self.calls.append(args)
        backend: FakeBackend = FailingBackend() if self.fail_next else FakeBackend()
        self.fail_next = False
        self.created.append(backend)
        return backend

    @property
    def last(self) -> FakeBackend:
        return self.created[-1]


@pytest.fixture
def fake_factory() -> FakeBackendFactory:
    """Factory producing scripted in-memory backends."""
    return FakeBackendFactory()


@pytest.fixture
def settle():
    """Let pending tasks (event pumps, watchers) run."""

    async def _settle(rounds: int = 10) -> None:
        for _ in range(rounds):
            await asyncio.sleep(0)

    return _settle


@pytest.fixture
def config(tmp_path: Path) -> TetherConfig:
    """Config with persistence in a temporary database."""
    return TetherConfig(
        session_type="pty",
        database_path=str(tmp_path / "sessions.db"),
        max_sessions=3,
        session_idle_timeout=60.0,
    )


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep the developer's environment out of config resolution."""
    for key in [CONFIG_ENV_KEY, *ENV_KEYS.values()]:
        monkeypatch.delenv(key, raising=False)
