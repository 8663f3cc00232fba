from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from docker.errors import APIError, NotFound  # type: ignore

from labforge.config import OrchestratorSettings
from labforge.exceptions import ProvisionError, TerminationError
from labforge.orchestrator.base import WorkloadSpec, collect_output
from labforge.orchestrator.docker import DockerExecSession, DockerOrchestrator, map_container_state
from labforge.orchestrator.images import ImageRegistry
from labforge.schema import LabTemplate, WorkloadPhase
from labforge.logger import define_log_level

define_log_level(print_level="DEBUG", logfile_level="DEBUG", name="LabForge_Test_Docker")


@pytest.fixture
def docker_client():
    return MagicMock()


@pytest.fixture
def docker_backend(docker_client):
    return DockerOrchestrator(settings=OrchestratorSettings(), registry=ImageRegistry(), docker_client=docker_client)


@pytest.mark.parametrize(
    "state, expected",
    [
        ("created", WorkloadPhase.CREATING),
        ("restarting", WorkloadPhase.CREATING),
        ("running", WorkloadPhase.RUNNING),
        ("exited", WorkloadPhase.STOPPED),
        ("dead", WorkloadPhase.STOPPED),
        ("paused", WorkloadPhase.UNKNOWN),
        (None, WorkloadPhase.UNKNOWN),
    ],
)
def test_map_container_state(state, expected):
    assert map_container_state(state) == expected


def test_run_kwargs_docker_lab_mounts_socket(docker_backend):
    spec = WorkloadSpec(lab_id="lab-a-1", owner_id="a", lab_type="docker", duration_seconds=60)
    kwargs = docker_backend.build_run_kwargs("lab-a-1", spec)
    assert kwargs["image"] == "ubuntu:20.04"
    assert kwargs["name"] == "lab-a-1"
    assert kwargs["detach"] is True
    assert "/var/run/docker.sock" in kwargs["volumes"]
    assert "tmpfs" not in kwargs
    assert kwargs["labels"]["app"] == "lab"


def test_run_kwargs_python_lab_uses_workspace(docker_backend):
    spec = WorkloadSpec(lab_id="lab-a-2", owner_id="a", lab_type="python", duration_seconds=60)
    kwargs = docker_backend.build_run_kwargs("lab-a-2", spec)
    assert kwargs["tmpfs"] == {"/workspace": ""}
    assert "privileged" not in kwargs
    assert kwargs["environment"] == {"LAB_ID": "lab-a-2", "LAB_TYPE": "python", "USER_ID": "a"}


def test_run_kwargs_privileged_template(docker_backend):
    template = LabTemplate(id="johndoe-user-template", name="JohnDoe", lab_type="johndoe", base_image="ubuntu:20.04")
    spec = WorkloadSpec(lab_id="lab-a-3", owner_id="a", lab_type="johndoe", duration_seconds=120, template=template)
    kwargs = docker_backend.build_run_kwargs("lab-a-3", spec)
    assert kwargs["privileged"] is True
    assert kwargs["command"] == ["/bin/sh", "-c", "sleep 120"]
    assert kwargs["environment"]["TEMPLATE_ID"] == "johndoe-user-template"


@pytest.mark.asyncio
async def test_provision(docker_backend, docker_client):
    docker_client.containers.run.return_value = SimpleNamespace(name="lab-a-1")
    spec = WorkloadSpec(lab_id="lab-a-1", owner_id="a", lab_type="kubernetes", duration_seconds=60)
    assert await docker_backend.provision("lab-a-1", spec) == "lab-a-1"
    assert docker_client.containers.run.call_args.kwargs["image"] == "bitnami/kubectl:latest"


@pytest.mark.asyncio
async def test_provision_api_error(docker_backend, docker_client):
    docker_client.containers.run.side_effect = APIError("image not found")
    spec = WorkloadSpec(lab_id="lab-a-1", owner_id="a", lab_type="python", duration_seconds=60)
    with pytest.raises(ProvisionError):
        await docker_backend.provision("lab-a-1", spec)


@pytest.mark.asyncio
async def test_terminate(docker_backend, docker_client):
    container = MagicMock()
    docker_client.containers.get.return_value = container
    await docker_backend.terminate("lab-a-1")
    container.remove.assert_called_once_with(force=True)


@pytest.mark.asyncio
async def test_terminate_missing_container_is_success(docker_backend, docker_client):
    docker_client.containers.get.side_effect = NotFound("gone")
    await docker_backend.terminate("lab-gone")


@pytest.mark.asyncio
async def test_terminate_api_error(docker_backend, docker_client):
    docker_client.containers.get.return_value.remove.side_effect = APIError("busy")
    with pytest.raises(TerminationError):
        await docker_backend.terminate("lab-a-1")


@pytest.mark.asyncio
async def test_inspect_phase(docker_backend, docker_client):
    docker_client.containers.get.return_value = SimpleNamespace(status="running")
    assert await docker_backend.inspect_phase("lab-a-1") == WorkloadPhase.RUNNING
    docker_client.containers.get.side_effect = NotFound("gone")
    assert await docker_backend.inspect_phase("lab-a-1") == WorkloadPhase.UNKNOWN


@pytest.mark.asyncio
async def test_exec_session_demultiplexes_frames(monkeypatch):
    frames = [(1, b"hello "), (2, b"careful"), (1, b"world")]
    monkeypatch.setattr("labforge.orchestrator.docker.frames_iter", lambda sock, tty: iter(frames))
    api = MagicMock()
    api.exec_inspect.return_value = {"ExitCode": 0}
    sock = MagicMock()

    session = DockerExecSession(api, "exec-1", sock).start()
    result = await collect_output(session, "greet", timeout_seconds=5, grace_seconds=1)

    assert result.output == "hello world"
    assert result.error == "careful"
    assert result.exit_code == 0
    api.exec_inspect.assert_called_with("exec-1")


@pytest.mark.asyncio
async def test_open_session_starts_socket_exec(docker_backend, docker_client, monkeypatch):
    monkeypatch.setattr("labforge.orchestrator.docker.frames_iter", lambda sock, tty: iter([(1, b"ok")]))
    docker_client.api.exec_create.return_value = {"Id": "exec-9"}
    docker_client.api.exec_inspect.return_value = {"ExitCode": 0}
    docker_client.containers.get.return_value = SimpleNamespace(status="running")

    result = await docker_backend.exec("lab-a-1", "lab-container", "echo ok", 5)

    assert result.output == "ok"
    assert result.success is True
    args, kwargs = docker_client.api.exec_create.call_args
    assert args == ("lab-a-1", ["/bin/sh", "-c", "echo ok"])
    docker_client.api.exec_start.assert_called_once_with("exec-9", socket=True)
