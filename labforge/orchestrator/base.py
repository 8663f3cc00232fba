"""
LabForge Workload Orchestrator Contract
Defines the create/delete/inspect/exec surface every workload backend offers,
and the remote-exec primitive built on top of it: stdout and stderr are
drained on independent tasks while the caller waits for the remote process
under a hard timeout.
"""
import asyncio
import shlex
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from pydantic import BaseModel

from labforge.config import OrchestratorSettings, config as app_main_config
from labforge.exceptions import ExecError, LabForgeError
from labforge.logger import logger
from labforge.schema import ExecResult, LabTemplate, WorkloadPhase

_READ_CHUNK = 65536


class WorkloadSpec(BaseModel):
    """Everything a backend needs to build a workload for one lab."""
    lab_id: str
    owner_id: str
    lab_type: str
    duration_seconds: int
    template: Optional[LabTemplate] = None


class ExecSession(ABC):
    """A remote process with two independently readable output streams."""
    stdout: asyncio.StreamReader
    stderr: asyncio.StreamReader

    @abstractmethod
    async def wait(self) -> int:
        """Waits for the remote process and returns its exit code."""

    @abstractmethod
    async def kill(self) -> None:
        """Forcibly terminates the remote session."""

    async def close(self) -> None:
        """Releases any local resources held by the session."""


class ThreadPumpedSession(ExecSession):
    """
    Session backed by a blocking client library.
    A dedicated daemon thread reads the client's multiplexed output and feeds
    each stream into its own StreamReader, so the two drains never wait on
    each other. The thread is owned by the session and never occupies the
    loop's default executor. Subclasses implement ``_run`` (read until the
    process ends and return the exit code) and ``_abort`` (close the remote
    connection; must not block).
    """
    def __init__(self) -> None:
        self._loop = asyncio.get_running_loop()
        self.stdout = asyncio.StreamReader(limit=_READ_CHUNK)
        self.stderr = asyncio.StreamReader(limit=_READ_CHUNK)
        self._exit_code: asyncio.Future = self._loop.create_future()
        self._killed = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._join_timeout = 5.0

    def start(self, join_timeout: float = 5.0) -> "ThreadPumpedSession":
        """Starts the pump thread. ``join_timeout`` bounds how long close() waits for it."""
        self._join_timeout = join_timeout
        self._thread = threading.Thread(target=self._pump, name=f"labforge-exec-pump-{id(self):x}", daemon=True)
        self._thread.start()
        return self

    @abstractmethod
    def _run(self) -> int: ...

    @abstractmethod
    def _abort(self) -> None: ...

    def _emit_stdout(self, data: bytes) -> None:
        if data:
            self._loop.call_soon_threadsafe(self.stdout.feed_data, data)

    def _emit_stderr(self, data: bytes) -> None:
        if data:
            self._loop.call_soon_threadsafe(self.stderr.feed_data, data)

    def _pump(self) -> None:
        exit_code = -1
        try:
            exit_code = self._run()
        except Exception as e:
            if not self._killed.is_set():
                logger.warning(f"LabForge Exec: Output pump stopped with error: {e}")
        finally:
            if self._killed.is_set():
                exit_code = -1
            try:
                self._loop.call_soon_threadsafe(self._finish, exit_code)
            except RuntimeError:
                logger.debug("LabForge Exec: Event loop closed before the output pump finished.")

    def _finish(self, exit_code: int) -> None:
        self.stdout.feed_eof()
        self.stderr.feed_eof()
        if not self._exit_code.done():
            self._exit_code.set_result(exit_code)

    @property
    def pump_alive(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    async def wait(self) -> int:
        return await asyncio.shield(self._exit_code)

    def _abort_quietly(self) -> None:
        try:
            self._abort()
        except Exception as e:
            logger.warning(f"LabForge Exec: Error while aborting remote session: {e}")

    async def kill(self) -> None:
        self._killed.set()
        self._abort_quietly()

    async def close(self) -> None:
        if not self._exit_code.done():
            self._killed.set()
        self._abort_quietly()
        if self._thread is None:
            return
        deadline = self._loop.time() + self._join_timeout
        while self._thread.is_alive():
            if self._loop.time() >= deadline:
                logger.warning(f"LabForge Exec: Output pump still running {self._join_timeout}s after close; abandoning it.")
                return
            await asyncio.sleep(0.01)


def build_shell_command(command: str, working_directory: Optional[str]) -> str:
    """Prefixes a ``cd`` when the command must run outside the root directory."""
    if working_directory and working_directory != "/":
        return f"cd {shlex.quote(working_directory)} && {command}"
    return command


async def _drain(reader: asyncio.StreamReader, buffer: bytearray) -> None:
    while True:
        chunk = await reader.read(_READ_CHUNK)
        if not chunk:
            return
        buffer.extend(chunk)


async def _join_drains(drains: List[asyncio.Task], grace_seconds: float) -> None:
    _, pending = await asyncio.wait(drains, timeout=grace_seconds)
    if pending:
        logger.warning(f"LabForge Exec: {len(pending)} output drain(s) still open after {grace_seconds}s grace period; cancelling.")
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


async def collect_output(
    session: ExecSession,
    command: str,
    timeout_seconds: float,
    grace_seconds: float,
) -> ExecResult:
    """Drains a session's streams concurrently and waits for it under a deadline.

    On timeout the session is killed, the exit code is -1 and a timeout notice
    is appended to the captured stderr.
    """
    stdout_buffer, stderr_buffer = bytearray(), bytearray()
    drains = [
        asyncio.create_task(_drain(session.stdout, stdout_buffer)),
        asyncio.create_task(_drain(session.stderr, stderr_buffer)),
    ]
    timed_out = False
    try:
        try:
            exit_code = await asyncio.wait_for(session.wait(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            timed_out = True
            exit_code = -1
            logger.warning(f"LabForge Exec: Command '{command[:50]}' timed out after {timeout_seconds}s; killing session.")
            await session.kill()
        await _join_drains(drains, grace_seconds)
    except LabForgeError:
        raise
    except Exception as e:
        raise ExecError(f"Remote command failed: {e}") from e
    finally:
        for task in drains:
            if not task.done():
                task.cancel()
        await asyncio.gather(*drains, return_exceptions=True)
        await session.close()

    output = stdout_buffer.decode("utf-8", errors="replace")
    error = stderr_buffer.decode("utf-8", errors="replace")
    if timed_out:
        if error and not error.endswith("\n"):
            error += "\n"
        error += f"Command timed out after {timeout_seconds}s"
    return ExecResult(command=command, output=output, error=error, exit_code=exit_code, success=exit_code == 0)


class BaseOrchestrator(ABC):
    """Workload orchestrator interface. Backends hold no lab state."""

    def __init__(self, settings: Optional[OrchestratorSettings] = None):
        self.settings: OrchestratorSettings = settings or app_main_config.orchestrator

    @property
    def container_name(self) -> str:
        return self.settings.container_name

    @abstractmethod
    async def provision(self, lab_id: str, spec: WorkloadSpec) -> str:
        """Creates the workload and returns its name. Raises ProvisionError."""

    @abstractmethod
    async def terminate(self, workload_name: str) -> None:
        """Deletes the workload. Raises TerminationError."""

    @abstractmethod
    async def inspect_phase(self, workload_name: str) -> WorkloadPhase:
        """Returns the workload's phase. Raises OrchestratorError."""

    @abstractmethod
    async def open_session(self, workload_name: str, container_name: str, argv: List[str]) -> ExecSession:
        """Starts ``argv`` inside the container and returns its session. Raises ExecError."""

    async def exec(
        self,
        workload_name: str,
        container_name: str,
        command: str,
        timeout_seconds: float,
        working_directory: str = "/",
    ) -> ExecResult:
        phase = await self.inspect_phase(workload_name)
        if phase != WorkloadPhase.RUNNING:
            logger.warning(f"LabForge Exec: Refusing to run command in {workload_name}, phase is {phase.value}.")
            return ExecResult.rejected(command, f"Workload {workload_name} is not running (phase: {phase.value})")

        shell_command = build_shell_command(command, working_directory)
        logger.info(f"LabForge Exec: Running in {workload_name}/{container_name}: '{shell_command[:100]}' (Timeout: {timeout_seconds}s)")
        session = await self.open_session(workload_name, container_name, ["/bin/sh", "-c", shell_command])
        result = await collect_output(session, command, timeout_seconds, self.settings.drain_grace_seconds)
        logger.debug(f"LabForge Exec: {workload_name} exit code {result.exit_code}. Output snippet: {result.output[:100]}")
        return result

    async def close(self) -> None:
        """Releases client connections."""
