import asyncio
import secrets
from typing import AsyncGenerator

import docker
import pytest
import pytest_asyncio
from docker.errors import DockerException

from labforge.config import ImageSettings, OrchestratorSettings
from labforge.logger import define_log_level, logger
from labforge.orchestrator.base import WorkloadSpec
from labforge.orchestrator.docker import DockerOrchestrator
from labforge.orchestrator.images import ImageRegistry
from labforge.schema import WorkloadPhase

define_log_level(print_level="DEBUG", logfile_level="DEBUG", name="LabForge_Test_DockerLive")

pytestmark = pytest.mark.docker_required


@pytest.fixture(scope="module")
def docker_client():
    try:
        client = docker.from_env()
        client.ping()
    except DockerException as e:
        pytest.skip(f"Docker daemon not reachable: {e}")
    yield client
    client.close()


@pytest_asyncio.fixture
async def running_workload(docker_client) -> AsyncGenerator[tuple, None]:
    registry = ImageRegistry({"alpine": ImageSettings(image="alpine:3.19", command=["/bin/sh", "-c", "sleep 300"])})
    orchestrator = DockerOrchestrator(
        settings=OrchestratorSettings(backend="docker", drain_grace_seconds=1.0),
        registry=registry,
        docker_client=docker_client,
    )
    lab_id = f"lab-live-test-{secrets.token_hex(3)}"
    spec = WorkloadSpec(lab_id=lab_id, owner_id="tester", lab_type="alpine", duration_seconds=300)
    logger.info(f"Fixture: Provisioning live container {lab_id}.")
    name = await orchestrator.provision(lab_id, spec)
    try:
        for _ in range(50):
            if await orchestrator.inspect_phase(name) == WorkloadPhase.RUNNING:
                break
            await asyncio.sleep(0.2)
        yield orchestrator, name
    finally:
        await orchestrator.terminate(name)


@pytest.mark.asyncio
async def test_live_exec_captures_both_streams(running_workload):
    orchestrator, name = running_workload
    result = await orchestrator.exec(name, orchestrator.container_name, "echo out; echo err >&2; exit 3", 30, "/tmp")
    assert result.output == "out\n"
    assert result.error == "err\n"
    assert result.exit_code == 3


@pytest.mark.asyncio
async def test_live_exec_timeout(running_workload):
    orchestrator, name = running_workload
    result = await orchestrator.exec(name, orchestrator.container_name, "echo started; sleep 30", 1, "/")
    assert result.exit_code == -1
    assert result.output.startswith("started")
    assert "timed out" in result.error


@pytest.mark.asyncio
async def test_live_terminate_is_idempotent(running_workload):
    orchestrator, name = running_workload
    await orchestrator.terminate(name)
    await orchestrator.terminate(name)
    assert await orchestrator.inspect_phase(name) == WorkloadPhase.UNKNOWN
