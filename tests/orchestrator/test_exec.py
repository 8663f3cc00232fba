import asyncio
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import List, Tuple

import pytest

from labforge.orchestrator.base import ThreadPumpedSession, build_shell_command, collect_output
from labforge.schema import WorkloadPhase
from labforge.logger import logger, define_log_level

define_log_level(print_level="DEBUG", logfile_level="DEBUG", name="LabForge_Test_Exec")


class ScriptedSession(ThreadPumpedSession):
    """Pump-thread session replaying fixed output, optionally hanging until killed."""

    def __init__(self, chunks: List[Tuple[str, bytes]], exit_code: int = 0, hang: bool = False):
        super().__init__()
        self.chunks = chunks
        self.exit_code = exit_code
        self.hang = hang
        self.aborted = False

    def _run(self) -> int:
        for stream, data in self.chunks:
            if stream == "stdout":
                self._emit_stdout(data)
            else:
                self._emit_stderr(data)
        if self.hang:
            self._killed.wait(10)
        return self.exit_code

    def _abort(self) -> None:
        self.aborted = True


def test_build_shell_command():
    assert build_shell_command("ls", "/") == "ls"
    assert build_shell_command("ls", None) == "ls"
    assert build_shell_command("ls", "/tmp") == "cd /tmp && ls"
    assert build_shell_command("ls", "/my dir") == "cd '/my dir' && ls"


@pytest.mark.asyncio
async def test_exec_captures_both_streams_stdout_heavy(fake_orchestrator):
    fake_orchestrator.phases["w1"] = WorkloadPhase.RUNNING
    command = (
        "head -c 200000 /dev/zero | tr '\\0' 'o'; "
        "head -c 20000 /dev/zero | tr '\\0' 'e' >&2"
    )
    result = await fake_orchestrator.exec("w1", "lab-container", command, 10)
    assert result.exit_code == 0
    assert result.success is True
    assert len(result.output) == 200000
    assert len(result.error) == 20000
    assert set(result.output) == {"o"}
    assert set(result.error) == {"e"}


@pytest.mark.asyncio
async def test_exec_captures_both_streams_stderr_heavy(fake_orchestrator):
    """A full stderr pipe must not stall stdout capture."""
    fake_orchestrator.phases["w1"] = WorkloadPhase.RUNNING
    command = (
        "head -c 200000 /dev/zero | tr '\\0' 'e' >&2; "
        "head -c 20000 /dev/zero | tr '\\0' 'o'"
    )
    result = await fake_orchestrator.exec("w1", "lab-container", command, 10)
    assert result.exit_code == 0
    assert len(result.error) == 200000
    assert len(result.output) == 20000


@pytest.mark.asyncio
async def test_exec_timeout_kills_and_reports(fake_orchestrator):
    fake_orchestrator.phases["w1"] = WorkloadPhase.RUNNING
    started = time.monotonic()
    result = await fake_orchestrator.exec("w1", "lab-container", "echo before; sleep 10", 0.5)
    elapsed = time.monotonic() - started
    logger.info(f"Timed out exec returned after {elapsed:.2f}s")

    assert result.exit_code == -1
    assert result.success is False
    assert "timed out" in result.error
    assert "before" in result.output
    # timeout + grace period, with slack for process start-up
    assert elapsed < 0.5 + fake_orchestrator.settings.drain_grace_seconds + 1.5


@pytest.mark.asyncio
async def test_exec_rejects_when_not_running(fake_orchestrator):
    fake_orchestrator.phases["w1"] = WorkloadPhase.CREATING
    result = await fake_orchestrator.exec("w1", "lab-container", "echo hi", 5)
    assert result.exit_code == -1
    assert result.success is False
    assert "not running" in result.error
    assert fake_orchestrator.sessions == []


@pytest.mark.asyncio
async def test_exec_non_zero_exit_code(fake_orchestrator):
    fake_orchestrator.phases["w1"] = WorkloadPhase.RUNNING
    result = await fake_orchestrator.exec("w1", "lab-container", "echo oops >&2; exit 3", 5)
    assert result.exit_code == 3
    assert result.success is False
    assert result.error.strip() == "oops"


@pytest.mark.asyncio
async def test_exec_working_directory(fake_orchestrator):
    fake_orchestrator.phases["w1"] = WorkloadPhase.RUNNING
    result = await fake_orchestrator.exec("w1", "lab-container", "pwd", 5, working_directory="/tmp")
    assert result.success is True
    assert result.output.strip() == "/tmp"
    assert fake_orchestrator.sessions[-1] == ["/bin/sh", "-c", "cd /tmp && pwd"]


@pytest.mark.asyncio
async def test_thread_pumped_session_collects_output():
    session = ScriptedSession(
        [("stdout", b"hello "), ("stderr", b"warn"), ("stdout", b"world")],
        exit_code=0,
    ).start()
    result = await collect_output(session, "greet", timeout_seconds=5, grace_seconds=1)
    assert result.output == "hello world"
    assert result.error == "warn"
    assert result.exit_code == 0
    assert result.success is True


@pytest.mark.asyncio
async def test_thread_pumped_session_timeout_aborts():
    session = ScriptedSession([("stdout", b"partial")], exit_code=0, hang=True).start()
    started = time.monotonic()
    result = await collect_output(session, "hang", timeout_seconds=0.3, grace_seconds=1)
    assert time.monotonic() - started < 3
    assert session.aborted is True
    assert result.exit_code == -1
    assert result.output == "partial"
    assert result.error == "Command timed out after 0.3s"


class BlockingRecvSession(ThreadPumpedSession):
    """Pump blocks like a socket recv until the connection is aborted."""

    def __init__(self) -> None:
        super().__init__()
        self._disconnected = threading.Event()

    def _run(self) -> int:
        self._emit_stdout(b"started\n")
        if not self._disconnected.wait(8):
            return 0
        raise OSError("connection aborted")

    def _abort(self) -> None:
        self._disconnected.set()


@pytest.mark.asyncio
async def test_timeout_stays_bounded_with_busy_default_executor():
    loop = asyncio.get_running_loop()
    executor = ThreadPoolExecutor(max_workers=1)
    loop.set_default_executor(executor)
    blocker = threading.Event()
    busy = loop.run_in_executor(None, blocker.wait, 10)
    try:
        sessions = [BlockingRecvSession().start(join_timeout=0.5) for _ in range(3)]
        started = time.monotonic()
        results = await asyncio.gather(
            *(collect_output(s, f"hang-{i}", timeout_seconds=0.5, grace_seconds=0.5) for i, s in enumerate(sessions))
        )
        elapsed = time.monotonic() - started

        assert elapsed < 0.5 + 0.5 + 0.5 + 1.0
        for session, result in zip(sessions, results):
            assert result.exit_code == -1
            assert result.output == "started\n"
            assert "timed out" in result.error
            assert not session.pump_alive
    finally:
        blocker.set()
        await busy


@pytest.mark.asyncio
async def test_close_joins_pump_thread():
    session = ScriptedSession([("stdout", b"x")], hang=True).start(join_timeout=1)
    assert session.pump_alive
    await session.close()
    assert session.aborted is True
    assert not session.pump_alive
    assert await session.wait() == -1
