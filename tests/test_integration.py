"""Integration tests for runbox.

These tests need a reachable Docker daemon and pull small public images on
first use. They are skipped when no daemon answers.

Run with:
    pytest tests/test_integration.py -v -m integration
"""

import asyncio

import pytest
import pytest_asyncio

from runbox.config import Settings
from runbox.context import AppContext
from runbox.errors import EngineConnectionError
from runbox.models import ExecutionState, MessageType, RunConfig, ShellConfig

pytestmark = pytest.mark.integration


@pytest_asyncio.fixture
async def ctx():
    """Connected context, stopped after the test."""
    context = AppContext.build(Settings(run_timeout=60))
    try:
        await context.start()
    except EngineConnectionError as e:
        pytest.skip(f"Docker not available: {e}")
    yield context
    await context.stop()


async def read_until(session, needle, timeout=30.0):
    """Collect shell output until ``needle`` shows up."""
    seen = ""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    queue = session.subscribe()
    try:
        while needle not in seen:
            message = await asyncio.wait_for(queue.get(), deadline - loop.time())
            if message.type == MessageType.OUTPUT:
                seen += message.data
            elif message.type == MessageType.CLOSE:
                break
    finally:
        session.unsubscribe(queue)
    return seen


class TestConnection:
    @pytest.mark.asyncio
    async def test_ping(self, ctx):
        assert await ctx.connection.ping() is True


class TestRun:
    """One-shot execution against a real daemon."""

    @pytest.mark.asyncio
    async def test_python_prints(self, ctx, tmp_path):
        (tmp_path / "main.py").write_text("print(1+1)\n")

        result = await ctx.engine.run(RunConfig(str(tmp_path / "main.py"), str(tmp_path), "python"))

        assert result.success, result.error
        assert result.stdout == "2\n"
        assert result.exit_code == 0
        assert result.duration > 0

    @pytest.mark.asyncio
    async def test_stderr_and_exit_code(self, ctx, tmp_path):
        (tmp_path / "fail.py").write_text("import sys\nsys.stderr.write('bad\\n')\nsys.exit(3)\n")

        result = await ctx.engine.run(RunConfig(str(tmp_path / "fail.py"), str(tmp_path)))

        assert result.success is False
        assert result.exit_code == 3
        assert result.stderr == "bad\n"

    @pytest.mark.asyncio
    async def test_workspace_is_read_only(self, ctx, tmp_path):
        (tmp_path / "touch.py").write_text("open('/workspace/x', 'w')\n")

        result = await ctx.engine.run(RunConfig(str(tmp_path / "touch.py"), str(tmp_path), "python"))

        assert result.success is False
        assert "Read-only file system" in result.stderr
        assert not (tmp_path / "x").exists()

    @pytest.mark.asyncio
    async def test_unsupported_language(self, ctx, tmp_path):
        result = await ctx.engine.run(RunConfig(str(tmp_path / "main.cob"), str(tmp_path), "cobol"))
        assert result.success is False
        assert "unsupported" in result.error.lower()

    @pytest.mark.asyncio
    async def test_timeout(self, ctx, tmp_path):
        (tmp_path / "loop.py").write_text("while True:\n    pass\n")
        ctx.engine.timeout = 2

        result = await ctx.engine.run(RunConfig(str(tmp_path / "loop.py"), str(tmp_path), "python"))

        assert result.state == ExecutionState.TIMED_OUT
        assert result.timed_out is True
        assert result.duration < 15
        labelled = await ctx.containers.list(all=True)
        assert not [c for c in labelled if c.get("Labels", {}).get("runbox.role") == "run"]


class TestShells:
    """Interactive shells against a real daemon."""

    @pytest.mark.asyncio
    async def test_echo(self, ctx, tmp_path):
        session = await ctx.shells.start_shell("echo", ShellConfig(language="bash", workspace_path=str(tmp_path)))
        assert session.is_active

        await session.write_line("echo hello-$((40+2))")

        assert "hello-42" in await read_until(session, "hello-42")
        await ctx.shells.stop_shell("echo")
        assert ctx.shells.get_shell("echo") is None

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, ctx):
        a, b = await asyncio.gather(
            ctx.shells.start_shell("a", ShellConfig(language="bash")),
            ctx.shells.start_shell("b", ShellConfig(language="bash")),
        )
        assert a.container_id != b.container_id

        await ctx.shells.stop_shell("a")
        await b.write_line("echo still-here")

        assert "still-here" in await read_until(b, "still-here")
        assert b.is_active

    @pytest.mark.asyncio
    async def test_exit_closes_session(self, ctx):
        session = await ctx.shells.start_shell("bye", ShellConfig(language="bash"))

        await session.write_line("exit")
        await read_until(session, "\x00never")

        assert session.is_closed
        assert ctx.shells.get_shell("bye") is None
