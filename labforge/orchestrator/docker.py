"""
Docker workload backend for running labs on a single host.
Each lab is one detached container named after the lab id. Exec sessions
attach to the raw multiplexed exec socket and split its frames by stream.
"""
import asyncio
import socket
import time
from typing import Dict, List, Optional

import docker  # type: ignore
from docker.errors import APIError, DockerException, NotFound  # type: ignore
from docker.utils.socket import STDERR, STDOUT, frames_iter  # type: ignore

from labforge.config import OrchestratorSettings
from labforge.exceptions import ExecError, OrchestratorError, ProvisionError, TerminationError
from labforge.logger import logger
from labforge.orchestrator.base import BaseOrchestrator, ThreadPumpedSession, WorkloadSpec
from labforge.orchestrator.images import ImageRegistry
from labforge.schema import WorkloadPhase

_CONTAINER_STATES: Dict[str, WorkloadPhase] = {
    "created": WorkloadPhase.CREATING,
    "restarting": WorkloadPhase.CREATING,
    "running": WorkloadPhase.RUNNING,
    "exited": WorkloadPhase.STOPPED,
    "dead": WorkloadPhase.STOPPED,
}

DOCKER_SOCKET_PATH = "/var/run/docker.sock"
_EXIT_CODE_POLLS = 20


def map_container_state(state: Optional[str]) -> WorkloadPhase:
    return _CONTAINER_STATES.get((state or "").lower(), WorkloadPhase.UNKNOWN)


class DockerExecSession(ThreadPumpedSession):
    def __init__(self, api, exec_id: str, sock) -> None:
        super().__init__()
        self._api = api
        self._exec_id = exec_id
        self._sock = sock

    def _run(self) -> int:
        for stream_id, data in frames_iter(self._sock, tty=False):
            if self._killed.is_set():
                return -1
            if stream_id == STDOUT:
                self._emit_stdout(data)
            elif stream_id == STDERR:
                self._emit_stderr(data)
        if self._killed.is_set():
            return -1
        # The daemon may report the exit code a moment after the stream closes
        for _ in range(_EXIT_CODE_POLLS):
            exit_code = self._api.exec_inspect(self._exec_id).get("ExitCode")
            if exit_code is not None:
                return exit_code
            time.sleep(0.1)
        logger.warning(f"DockerOrchestrator: Exec {self._exec_id} finished without an exit code.")
        return -1

    def _abort(self) -> None:
        raw = getattr(self._sock, "_sock", self._sock)
        try:
            raw.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass  # already disconnected
        raw.close()


class DockerOrchestrator(BaseOrchestrator):
    """Runs labs as containers on the local Docker daemon."""

    def __init__(
        self,
        settings: Optional[OrchestratorSettings] = None,
        registry: Optional[ImageRegistry] = None,
        docker_client=None,
    ):
        super().__init__(settings)
        self.registry = registry or ImageRegistry()
        if docker_client is None:
            try:
                docker_client = docker.from_env()
            except DockerException as e:
                raise OrchestratorError(f"Could not connect to Docker daemon: {e}") from e
        self.client = docker_client

    def build_run_kwargs(self, lab_id: str, spec: WorkloadSpec) -> dict:
        image, command = self.registry.resolve(spec)
        template = spec.template

        environment = {"LAB_ID": lab_id, "LAB_TYPE": spec.lab_type, "USER_ID": spec.owner_id}
        labels = {"app": "lab", "labId": lab_id, "userId": spec.owner_id, "labType": spec.lab_type}
        if template is not None:
            environment["TEMPLATE_ID"] = template.id
            labels["templateId"] = template.id

        kwargs = dict(
            image=image,
            command=command,
            name=lab_id,
            labels=labels,
            environment=environment,
            detach=True,
        )
        if spec.lab_type == "docker":
            kwargs["volumes"] = {DOCKER_SOCKET_PATH: {"bind": DOCKER_SOCKET_PATH, "mode": "rw"}}
        else:
            kwargs["tmpfs"] = {self.settings.workspace_mount_path: ""}
        if template is not None and template.lab_type in self.settings.privileged_lab_types:
            kwargs["privileged"] = True
            kwargs["user"] = "root"
        return kwargs

    async def provision(self, lab_id: str, spec: WorkloadSpec) -> str:
        kwargs = self.build_run_kwargs(lab_id, spec)
        loop = asyncio.get_running_loop()
        try:
            container = await loop.run_in_executor(None, lambda: self.client.containers.run(**kwargs))
        except APIError as e:
            logger.error(f"DockerOrchestrator: Container creation for lab {lab_id} failed: {e}")
            raise ProvisionError(f"Failed to create container for lab {lab_id}: {e}") from e
        logger.info(f"DockerOrchestrator: Container created: {container.name} (Image: {kwargs['image']}).")
        return container.name

    async def terminate(self, workload_name: str) -> None:
        loop = asyncio.get_running_loop()
        try:
            container = await loop.run_in_executor(None, lambda: self.client.containers.get(workload_name))
            await loop.run_in_executor(None, lambda: container.remove(force=True))
        except NotFound:
            logger.info(f"DockerOrchestrator: Container {workload_name} already gone.")
            return
        except APIError as e:
            raise TerminationError(f"Failed to remove container {workload_name}: {e}") from e
        logger.info(f"DockerOrchestrator: Container removed: {workload_name}.")

    async def inspect_phase(self, workload_name: str) -> WorkloadPhase:
        loop = asyncio.get_running_loop()
        try:
            container = await loop.run_in_executor(None, lambda: self.client.containers.get(workload_name))
        except NotFound:
            return WorkloadPhase.UNKNOWN
        except APIError as e:
            raise OrchestratorError(f"Failed to inspect container {workload_name}: {e}") from e
        return map_container_state(container.status)

    async def open_session(self, workload_name: str, container_name: str, argv: List[str]) -> DockerExecSession:
        # A Docker workload is a single container; container_name is not needed to address it.
        api = self.client.api
        loop = asyncio.get_running_loop()
        try:
            exec_data = await loop.run_in_executor(
                None, lambda: api.exec_create(workload_name, argv, stdout=True, stderr=True, stdin=False, tty=False)
            )
            exec_id = exec_data["Id"]
            sock = await loop.run_in_executor(None, lambda: api.exec_start(exec_id, socket=True))
        except APIError as e:
            raise ExecError(f"Failed to open exec session in container {workload_name}: {e}") from e
        return DockerExecSession(api, exec_id, sock).start(self.settings.drain_grace_seconds)

    async def close(self) -> None:
        self.client.close()
