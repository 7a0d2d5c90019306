"""Tests for the managed process registry."""

from __future__ import annotations

import asyncio

import pytest

from tether.core.process import (
    CommandFailedError,
    ProcessLimitError,
    ProcessRegistry,
    StreamingTimeoutError,
)
from tether.core.pty import BackendStartError
from tether.core.types import ProcessStatus


@pytest.fixture
def registry(fake_factory):
    return ProcessRegistry(max_processes=2, max_output_size=64, backend_factory=fake_factory)


class TestStart:
    """Tests for starting and tracking background processes."""

    @pytest.mark.asyncio
    async def test_start_tracks_running_process(self, registry, fake_factory):
        process_id = await registry.start("npm run dev", "/app", user_id="u1")

        process = registry.get(process_id)
        assert process is not None
        assert process.status == ProcessStatus.RUNNING
        assert process.name == "npm"
        assert process.cwd == "/app"
        assert fake_factory.calls == [("npm run dev", "/app")]
        assert fake_factory.last.started

    @pytest.mark.asyncio
    async def test_custom_name(self, registry):
        process_id = await registry.start("npm run dev", "/app", user_id="u1", name="web")
        assert registry.get(process_id).name == "web"

    @pytest.mark.asyncio
    async def test_rejects_at_capacity(self, registry, fake_factory, settle):
        await registry.start("a", "/", user_id="u1")
        await registry.start("b", "/", user_id="u1")

        with pytest.raises(ProcessLimitError):
            await registry.start("c", "/", user_id="u1")

        fake_factory.created[0].exit(0)
        await settle()
        assert await registry.start("c", "/", user_id="u1")

    @pytest.mark.asyncio
    async def test_spawn_failure_not_tracked(self, registry, fake_factory):
        fake_factory.fail_next = True
        with pytest.raises(BackendStartError):
            await registry.start("a", "/", user_id="u1")
        assert registry.list_processes() == []


class TestOutput:
    """Tests for output capture."""

    @pytest.mark.asyncio
    async def test_output_lines(self, registry, fake_factory, settle):
        process_id = await registry.start("tail -f log", "/", user_id="u1")
        fake_factory.last.feed("one\ntwo\n")
        fake_factory.last.feed("three")
        await settle()

        assert registry.get_output(process_id) == "one\ntwo\nthree"
        assert registry.get_output(process_id, lines=2) == "two\nthree"

    @pytest.mark.asyncio
    async def test_output_bounded(self, registry, fake_factory, settle):
        process_id = await registry.start("yes", "/", user_id="u1")
        for _ in range(100):
            fake_factory.last.feed("y\n")
        await settle()

        assert len(registry.get_output(process_id)) <= 64

    @pytest.mark.asyncio
    async def test_backend_errors_recorded(self, registry, fake_factory, settle):
        process_id = await registry.start("x", "/", user_id="u1")
        fake_factory.last.fail(OSError("write failed"))
        await settle()

        assert "write failed" in registry.get_error(process_id)
        assert registry.get(process_id).is_running

    def test_unknown_process(self, registry):
        assert registry.get_output("missing") is None
        assert registry.get_error("missing") is None


class TestExit:
    """Tests for exit handling and kill."""

    @pytest.mark.asyncio
    async def test_clean_exit_is_stopped(self, registry, fake_factory, settle):
        process_id = await registry.start("true", "/", user_id="u1")
        fake_factory.last.exit(0)
        await settle()

        process = registry.get(process_id)
        assert process.status == ProcessStatus.STOPPED
        assert process.exit_code == 0
        assert process.end_time is not None

    @pytest.mark.asyncio
    async def test_failed_exit_is_error(self, registry, fake_factory, settle):
        process_id = await registry.start("false", "/", user_id="u1")
        fake_factory.last.exit(2)
        await settle()

        assert registry.get(process_id).status == ProcessStatus.ERROR

    @pytest.mark.asyncio
    async def test_kill_interrupts_and_keeps_killed(self, registry, fake_factory, settle):
        process_id = await registry.start("sleep 60", "/", user_id="u1")

        result = await registry.kill(process_id)

        assert result.success
        assert fake_factory.last.stopped == 1
        assert registry.get(process_id).status == ProcessStatus.KILLED

        fake_factory.last.exit(-2)
        await settle()
        process = registry.get(process_id)
        assert process.status == ProcessStatus.KILLED
        assert process.exit_code == -2

    @pytest.mark.asyncio
    async def test_force_kill_destroys(self, registry, fake_factory):
        process_id = await registry.start("sleep 60", "/", user_id="u1")
        assert (await registry.kill(process_id, force=True)).success
        assert fake_factory.last.destroyed

    @pytest.mark.asyncio
    async def test_force_kill_after_ignored_interrupt(self, registry, fake_factory):
        process_id = await registry.start("trap '' INT; sleep 30", "/", user_id="u1")
        await registry.kill(process_id)
        assert fake_factory.last.is_running

        result = await registry.kill(process_id, force=True)

        assert result.success
        assert fake_factory.last.destroyed
        assert registry.get(process_id).status == ProcessStatus.KILLED

    @pytest.mark.asyncio
    async def test_kill_unknown_or_finished(self, registry, fake_factory, settle):
        result = await registry.kill("missing")
        assert not result.success
        assert result.error == "Process not found"

        process_id = await registry.start("true", "/", user_id="u1")
        fake_factory.last.exit(0)
        await settle()
        result = await registry.kill(process_id)
        assert not result.success
        assert result.error == "Process is not running"

    @pytest.mark.asyncio
    async def test_write(self, registry, fake_factory, settle):
        process_id = await registry.start("cat", "/", user_id="u1")
        assert await registry.write(process_id, "hi") is True
        assert fake_factory.last.sent == ["hi"]

        fake_factory.last.exit(0)
        await settle()
        assert await registry.write(process_id, "again") is False
        assert await registry.write("missing", "x") is False


class TestQueries:
    """Tests for listing, stats, sweep and saving."""

    @pytest.mark.asyncio
    async def test_list_by_user(self, registry):
        await registry.start("a", "/", user_id="u1")
        await registry.start("b", "/", user_id="u2")

        assert [p.command for p in registry.list_processes("u2")] == ["b"]
        assert len(registry.list_processes()) == 2

    @pytest.mark.asyncio
    async def test_stats(self, registry, fake_factory, settle):
        first = await registry.start("a", "/", user_id="u1")
        await registry.start("b", "/", user_id="u1")
        fake_factory.created[0].feed("12345")
        fake_factory.created[0].exit(1)
        await settle()
        await registry.kill(registry.list_processes()[1].id)

        stats = registry.stats()

        assert stats.total == 2
        assert stats.error == 1
        assert stats.killed == 1
        assert stats.running == 0
        assert stats.memory_usage == 5
        assert registry.get(first).status == ProcessStatus.ERROR

    @pytest.mark.asyncio
    async def test_sweep_reaps_old_finished_entries(self, fake_factory, settle):
        registry = ProcessRegistry(retention=60, backend_factory=fake_factory)
        done = await registry.start("a", "/", user_id="u1")
        running = await registry.start("b", "/", user_id="u1")
        fake_factory.created[0].exit(0)
        await settle()
        end_time = registry.get(done).end_time

        assert await registry.sweep(now=end_time + 30_000) == 0
        assert await registry.sweep(now=end_time + 61_000) == 1
        assert registry.get(done) is None
        assert registry.get(running) is not None

    @pytest.mark.asyncio
    async def test_save_output(self, registry, fake_factory, settle, tmp_path):
        process_id = await registry.start("echo", "/", user_id="u1")
        fake_factory.last.feed("saved\n")
        await settle()

        target = tmp_path / "out.txt"
        await registry.save_output(process_id, target)

        assert target.read_text() == "saved\n"
        with pytest.raises(KeyError):
            await registry.save_output("missing", target)

    @pytest.mark.asyncio
    async def test_shutdown_force_kills_running(self, registry, fake_factory):
        await registry.start("a", "/", user_id="u1")
        registry.start_sweeper()

        await registry.shutdown()

        assert fake_factory.last.destroyed
        assert registry.list_processes() == []


class TestStreaming:
    """Tests for single-shot streaming commands."""

    @pytest.mark.asyncio
    async def test_returns_output_on_success(self, registry, fake_factory, settle):
        seen: list[str] = []
        task = asyncio.create_task(registry.start_streaming("make", "/src", on_data=seen.append))
        await settle()

        fake_factory.last.feed("abc")
        fake_factory.last.feed("def")
        fake_factory.last.exit(0)

        assert await task == "abcdef"
        assert seen == ["abc", "abcdef"]

    @pytest.mark.asyncio
    async def test_cumulative_buffer_truncated_at_front(self, fake_factory, settle):
        registry = ProcessRegistry(max_output_size=5, backend_factory=fake_factory)
        seen: list[str] = []
        task = asyncio.create_task(registry.start_streaming("x", "/", on_data=seen.append))
        await settle()

        fake_factory.last.feed("abc")
        fake_factory.last.feed("defg")
        fake_factory.last.exit(0)

        assert await task == "cdefg"
        assert seen == ["abc", "cdefg"]

    @pytest.mark.asyncio
    async def test_nonzero_exit_raises(self, registry, fake_factory, settle):
        task = asyncio.create_task(registry.start_streaming("false", "/"))
        await settle()
        fake_factory.last.exit(1)

        with pytest.raises(CommandFailedError) as exc_info:
            await task
        assert exc_info.value.exit_code == 1

    @pytest.mark.asyncio
    async def test_timeout_kills_and_reports_elapsed(self, registry, fake_factory):
        with pytest.raises(StreamingTimeoutError) as exc_info:
            await registry.start_streaming("sleep 60", "/", timeout=0.05)

        assert exc_info.value.elapsed >= 0.04
        assert fake_factory.last.destroyed
        (process,) = registry.list_processes()
        assert process.status == ProcessStatus.KILLED

    @pytest.mark.asyncio
    async def test_on_data_failure_destroys_backend(self, registry, fake_factory, settle):
        def broken(_output: str) -> None:
            raise RuntimeError("ui failed")

        task = asyncio.create_task(registry.start_streaming("make", "/", on_data=broken))
        await settle()
        fake_factory.last.feed("abc")

        with pytest.raises(RuntimeError, match="ui failed"):
            await task

        assert fake_factory.last.destroyed
        (process,) = registry.list_processes()
        assert process.status == ProcessStatus.KILLED
        assert registry.running_count == 0

    @pytest.mark.asyncio
    async def test_cancellation_destroys_backend(self, registry, fake_factory, settle):
        task = asyncio.create_task(registry.start_streaming("sleep 60", "/"))
        await settle()

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert fake_factory.last.destroyed
        (process,) = registry.list_processes()
        assert process.status == ProcessStatus.KILLED


class TestInterruptSurvivors:
    """Processes that ignore the interrupt are force-killed on cleanup."""

    @pytest.mark.asyncio
    async def test_shutdown_destroys_interrupted_process(self, registry, fake_factory):
        process_id = await registry.start("trap '' INT; sleep 30", "/", user_id="u1")
        assert (await registry.kill(process_id)).success
        assert registry.get(process_id).status == ProcessStatus.KILLED
        assert fake_factory.last.is_running

        await registry.shutdown()

        assert fake_factory.last.destroyed
        assert not fake_factory.last.is_running

    @pytest.mark.asyncio
    async def test_sweep_destroys_interrupted_process(self, fake_factory):
        registry = ProcessRegistry(retention=60, backend_factory=fake_factory)
        process_id = await registry.start("trap '' INT; sleep 30", "/", user_id="u1")
        await registry.kill(process_id)
        end_time = registry.get(process_id).end_time

        assert await registry.sweep(now=end_time + 61_000) == 1

        assert fake_factory.last.destroyed
        assert registry.get(process_id) is None

    @pytest.mark.asyncio
    async def test_sweep_loop_survives_errors(self, fake_factory, monkeypatch):
        registry = ProcessRegistry(sweep_interval=0.01, backend_factory=fake_factory)
        calls = 0

        async def flaky_sweep(now=None):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("sweep failed")
            return 0

        monkeypatch.setattr(registry, "sweep", flaky_sweep)
        registry.start_sweeper()
        for _ in range(100):
            if calls >= 2:
                break
            await asyncio.sleep(0.01)

        assert calls >= 2
        await registry.shutdown()
