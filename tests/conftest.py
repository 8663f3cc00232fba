import asyncio
import os
import signal
from typing import AsyncGenerator, Dict, List, Optional, Set, Tuple

import pytest
import pytest_asyncio

from labforge.config import OrchestratorSettings, PipelineSettings, SweeperSettings
from labforge.exceptions import TerminationError
from labforge.orchestrator.base import BaseOrchestrator, ExecSession, WorkloadSpec
from labforge.orchestrator.images import ImageRegistry
from labforge.schema import WorkloadPhase
from labforge.service import LabService
from labforge.store import InMemoryLabStore


class SubprocessSession(ExecSession):
    """Exec session backed by a local /bin/sh process in its own process group."""

    def __init__(self, proc: asyncio.subprocess.Process):
        self._proc = proc
        self.stdout = proc.stdout
        self.stderr = proc.stderr

    async def wait(self) -> int:
        return await self._proc.wait()

    async def kill(self) -> None:
        if self._proc.returncode is None:
            try:
                os.killpg(self._proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                pass

    async def close(self) -> None:
        await self.kill()
        await self._proc.wait()


class FakeOrchestrator(BaseOrchestrator):
    """
    In-process orchestrator for tests.
    Workloads are plain names with a settable phase; exec runs the command
    in a real local shell so output capture and timeouts are exercised.
    """
    def __init__(self, settings: Optional[OrchestratorSettings] = None):
        super().__init__(settings or OrchestratorSettings(drain_grace_seconds=0.5))
        self.registry = ImageRegistry()
        self.phases: Dict[str, WorkloadPhase] = {}
        self.default_phase = WorkloadPhase.RUNNING
        self.provisioned: List[Tuple[str, WorkloadSpec]] = []
        self.terminated: List[str] = []
        self.sessions: List[List[str]] = []
        self.provision_error: Optional[Exception] = None
        self.inspect_error: Optional[Exception] = None
        self.failing_terminations: Set[str] = set()
        self.closed = False

    async def provision(self, lab_id: str, spec: WorkloadSpec) -> str:
        self.registry.resolve(spec)
        if self.provision_error is not None:
            raise self.provision_error
        self.provisioned.append((lab_id, spec))
        self.phases[lab_id] = self.default_phase
        return lab_id

    async def terminate(self, workload_name: str) -> None:
        self.terminated.append(workload_name)
        if workload_name in self.failing_terminations:
            raise TerminationError(f"Failed to delete {workload_name}")
        self.phases.pop(workload_name, None)

    async def inspect_phase(self, workload_name: str) -> WorkloadPhase:
        if self.inspect_error is not None:
            raise self.inspect_error
        return self.phases.get(workload_name, WorkloadPhase.UNKNOWN)

    async def open_session(self, workload_name: str, container_name: str, argv: List[str]) -> ExecSession:
        self.sessions.append(argv)
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            start_new_session=True,
        )
        return SubprocessSession(proc)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_orchestrator() -> FakeOrchestrator:
    return FakeOrchestrator()


@pytest.fixture
def store() -> InMemoryLabStore:
    return InMemoryLabStore()


@pytest.fixture
def pipeline_settings() -> PipelineSettings:
    return PipelineSettings(
        readiness_timeout_seconds=1,
        readiness_poll_interval_seconds=0.05,
        retry_backoff_seconds=0,
        max_concurrent_setups=2,
    )


@pytest.fixture
def sweeper_settings() -> SweeperSettings:
    return SweeperSettings(interval_seconds=0.1, run_on_start=True)


@pytest_asyncio.fixture(scope="function")
async def lab_service(
    store: InMemoryLabStore,
    fake_orchestrator: FakeOrchestrator,
    pipeline_settings: PipelineSettings,
    sweeper_settings: SweeperSettings,
) -> AsyncGenerator[LabService, None]:
    service = LabService(
        store=store,
        orchestrator=fake_orchestrator,
        pipeline_settings=pipeline_settings,
        sweeper_settings=sweeper_settings,
    )
    try:
        yield service
    finally:
        await service.stop()
