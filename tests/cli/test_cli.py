"""Tests for the tether CLI."""

from __future__ import annotations

import io
import json
from pathlib import Path

import pytest
from click.testing import CliRunner
from rich.console import Console

from tether.core.process import CommandFailedError, ProcessRegistry, StreamingTimeoutError
from tether.core.session import SessionManager, SessionRecord, SessionStore
from tether.core.types import ClassifiedEvent, OutputType, SessionEvent, SessionEventType
from tether.frontends.cli.chat import ChatConsole
from tether.frontends.cli.commands import chat_cmd, classify_cmd, run_cmd, sessions_cmd
from tether.frontends.cli.main import build_cli
from tether.frontends.cli.output import print_table, truncate


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


class TestRootCLI:
    """Tests for the root command group."""

    def test_help_lists_commands(self, runner):
        result = runner.invoke(build_cli(), ["--help"])
        assert result.exit_code == 0
        for name in ("classify", "chat", "run", "sessions"):
            assert name in result.output

    def test_chat_options(self):
        names = [p.name for p in chat_cmd.params]
        for option in ("backend", "cli_path", "user_id", "channel", "no_persist"):
            assert option in names


class TestClassifyCommand:
    """Tests for tether classify."""

    def test_stdin_json(self, runner):
        result = runner.invoke(classify_cmd, ["--json"], input="Error: boom")
        assert result.exit_code == 0
        assert json.loads(result.output) == {"type": "error", "content": "boom"}

    def test_lines_json(self, runner):
        result = runner.invoke(
            classify_cmd, ["--lines", "--json"], input="Tool: Grep used\n\nWorking... 42%\n"
        )
        data = json.loads(result.output)
        assert [d["type"] for d in data] == ["tool", "progress"]
        assert data[0]["tools"] == ["Grep"]
        assert data[1]["progress"] == 42

    def test_file_table(self, runner, tmp_path: Path):
        path = tmp_path / "out.txt"
        path.write_text("Status: ready to go")

        result = runner.invoke(classify_cmd, [str(path)])

        assert result.exit_code == 0
        assert "TYPE" in result.output
        assert "status" in result.output
        assert "ready to go" in result.output

    def test_missing_file(self, runner, tmp_path: Path):
        result = runner.invoke(classify_cmd, [str(tmp_path / "missing.txt")])
        assert result.exit_code == 1
        assert "Cannot read" in result.output


class TestRunCommand:
    """Tests for tether run."""

    def test_streams_output(self, runner, monkeypatch):
        async def fake_streaming(self, command, cwd, timeout=None, on_data=None):
            on_data("hello\n")
            on_data("hello\nworld\n")
            return "hello\nworld\n"

        monkeypatch.setattr(ProcessRegistry, "start_streaming", fake_streaming)

        result = runner.invoke(run_cmd, ["echo hello"])

        assert result.exit_code == 0
        assert result.output.count("hello") == 1
        assert "world" in result.output

    @pytest.mark.parametrize(
        "error",
        [CommandFailedError(2), StreamingTimeoutError(1.5)],
    )
    def test_failure_exits_1(self, runner, monkeypatch, error):
        async def fake_streaming(self, command, cwd, timeout=None, on_data=None):
            raise error

        monkeypatch.setattr(ProcessRegistry, "start_streaming", fake_streaming)

        result = runner.invoke(run_cmd, ["false", "--timeout", "1"])

        assert result.exit_code == 1
        assert str(error) in result.output


class TestSessionsCommand:
    """Tests for tether sessions."""

    def test_no_database(self, runner, monkeypatch, tmp_path: Path):
        monkeypatch.setenv("DATABASE_PATH", str(tmp_path / "none.db"))
        result = runner.invoke(sessions_cmd, [])
        assert result.exit_code == 0
        assert "No sessions" in result.output

    def test_lists_rows(self, runner, monkeypatch, tmp_path: Path):
        db_path = tmp_path / "sessions.db"
        monkeypatch.setenv("DATABASE_PATH", str(db_path))
        store = SessionStore(db_path)
        store.open()
        for session_id, user in (("session_1", "alice"), ("session_2", "bob")):
            store.upsert(
                SessionRecord(
                    id=session_id,
                    user_id=user,
                    channel_id="general",
                    status="active",
                    model="default",
                    created_at=1_700_000_000_000,
                    updated_at=1_700_000_000_000,
                    data={"messages": [], "messageCount": 4},
                )
            )
        store.close()

        table = runner.invoke(sessions_cmd, [])
        filtered = runner.invoke(sessions_cmd, ["--user", "bob", "--json"])

        assert "session_1" in table.output and "session_2" in table.output
        data = json.loads(filtered.output)
        assert [d["id"] for d in data] == ["session_2"]
        assert data[0]["messages"] == 4


class TestChatConsole:
    """Tests for the chat loop's directive handling and rendering."""

    @pytest.fixture
    def chat(self, config, fake_factory):
        manager = SessionManager(config, backend_factory=fake_factory)
        output = io.StringIO()
        console = Console(file=output, force_terminal=False, width=100)
        return ChatConsole(manager=manager, user_id="u1", channel_id="c1", console=console), output

    @pytest.mark.asyncio
    async def test_directives(self, chat, fake_factory):
        console, output = chat
        session = await console.manager.create_session("u1", "c1")
        await session.send_message("question")

        assert await console.handle_directive(session, "model opus") is True
        assert await console.handle_directive(session, "continue") is True
        assert await console.handle_directive(session, "history") is True
        assert await console.handle_directive(session, "first") is True
        assert await console.handle_directive(session, "bogus") is True
        assert await console.handle_directive(session, "quit") is False

        assert fake_factory.last.sent == ["question", "/model opus", "continue"]
        text = output.getvalue()
        assert "question" in text
        assert "Unknown directive" in text

    def test_render_events(self, chat):
        console, output = chat
        console.render(
            SessionEvent(
                type=SessionEventType.OUTPUT,
                session_id="s",
                output=ClassifiedEvent(type=OutputType.PROGRESS, content="Indexing", progress=40),
            )
        )
        console.render(
            SessionEvent(
                type=SessionEventType.OUTPUT,
                session_id="s",
                output=ClassifiedEvent(type=OutputType.TOOL, content="Tool: Read", tools=("Read",)),
            )
        )
        console.render(SessionEvent(type=SessionEventType.ERROR, session_id="s", error="[boom]"))
        console.render(SessionEvent(type=SessionEventType.EXIT, session_id="s", exit_code=3))

        text = output.getvalue()
        assert "Indexing (40%)" in text
        assert "tools: Read" in text
        assert "[boom]" in text
        assert "code 3" in text


class TestOutputHelpers:
    """Tests for the table and truncation helpers."""

    def test_table_pads_short_rows_and_keeps_brackets(self):
        output = io.StringIO()
        console = Console(file=output, force_terminal=False, width=80)

        print_table(["TYPE", "TOOLS", "CONTENT"], [["tool", "[Read]"], ["status"]], console=console)

        lines = output.getvalue().splitlines()
        assert "TYPE" in lines[0] and "CONTENT" in lines[0]
        assert "[Read]" in lines[1]
        assert lines[2].strip() == "status"

    def test_truncate(self):
        assert truncate("short\nsecond line", 20) == "short"
        assert truncate("x" * 30, 10) == "xxxxxxx..."
