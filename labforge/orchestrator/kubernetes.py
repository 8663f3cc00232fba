"""
Kubernetes workload backend.
Each lab runs as one pod in a fixed namespace. Blocking client calls are
pushed to worker threads; exec sessions read the websocket on a pump thread.
"""
import asyncio
import re
from typing import Dict, List, Optional

from kubernetes import client as k8s_client  # type: ignore
from kubernetes import config as k8s_config  # type: ignore
from kubernetes.client.rest import ApiException  # type: ignore
from kubernetes.stream import stream as k8s_stream  # type: ignore

from labforge.config import OrchestratorSettings
from labforge.exceptions import ExecError, OrchestratorError, ProvisionError, TerminationError
from labforge.logger import logger
from labforge.orchestrator.base import BaseOrchestrator, ThreadPumpedSession, WorkloadSpec
from labforge.orchestrator.images import ImageRegistry
from labforge.schema import WorkloadPhase

_POD_PHASES: Dict[str, WorkloadPhase] = {
    "Pending": WorkloadPhase.CREATING,
    "Running": WorkloadPhase.RUNNING,
    "Succeeded": WorkloadPhase.STOPPED,
    "Failed": WorkloadPhase.STOPPED,
}

DOCKER_SOCKET_PATH = "/var/run/docker.sock"


def map_pod_phase(phase: Optional[str]) -> WorkloadPhase:
    return _POD_PHASES.get(phase or "", WorkloadPhase.UNKNOWN)


def label_value(value: str) -> str:
    """Coerces a string into a valid Kubernetes label value."""
    cleaned = re.sub(r"[^A-Za-z0-9_.-]", "-", value)[:63]
    return cleaned.strip("-_.")


def _as_bytes(data) -> bytes:
    if isinstance(data, bytes):
        return data
    return str(data).encode("utf-8")


class KubernetesExecSession(ThreadPumpedSession):
    """Pumps a websocket exec stream into separate stdout/stderr readers."""

    def __init__(self, response) -> None:
        super().__init__()
        self._response = response

    def _run(self) -> int:
        response = self._response
        while response.is_open() and not self._killed.is_set():
            response.update(timeout=1)
            if response.peek_stdout():
                self._emit_stdout(_as_bytes(response.read_stdout()))
            if response.peek_stderr():
                self._emit_stderr(_as_bytes(response.read_stderr()))
        if self._killed.is_set():
            return -1
        # Whatever arrived with the closing frame
        self._emit_stdout(_as_bytes(response.read_stdout()))
        self._emit_stderr(_as_bytes(response.read_stderr()))
        try:
            returncode = response.returncode
        except Exception as e:
            logger.warning(f"KubernetesOrchestrator: Could not read exit status from exec stream: {e}")
            return -1
        return returncode if returncode is not None else -1

    def _abort(self) -> None:
        self._response.close()


class KubernetesOrchestrator(BaseOrchestrator):
    """Runs labs as pods through the CoreV1 API."""

    def __init__(
        self,
        settings: Optional[OrchestratorSettings] = None,
        registry: Optional[ImageRegistry] = None,
        core_api=None,
    ):
        super().__init__(settings)
        self.registry = registry or ImageRegistry()
        self.namespace = self.settings.namespace
        self._core_api = core_api or self._load_core_api()

    def _load_core_api(self):
        try:
            k8s_config.load_incluster_config()
            logger.info("KubernetesOrchestrator: Using in-cluster configuration.")
        except k8s_config.ConfigException:
            try:
                k8s_config.load_kube_config(config_file=self.settings.kubeconfig)
                logger.info("KubernetesOrchestrator: Using kubeconfig configuration.")
            except Exception as e:
                raise OrchestratorError(f"Could not load Kubernetes configuration: {e}") from e
        return k8s_client.CoreV1Api()

    def build_pod(self, lab_id: str, spec: WorkloadSpec) -> k8s_client.V1Pod:
        image, command = self.registry.resolve(spec)
        template = spec.template

        env = [
            k8s_client.V1EnvVar(name="LAB_ID", value=lab_id),
            k8s_client.V1EnvVar(name="LAB_TYPE", value=spec.lab_type),
            k8s_client.V1EnvVar(name="USER_ID", value=spec.owner_id),
        ]
        if template is not None:
            env.append(k8s_client.V1EnvVar(name="TEMPLATE_ID", value=template.id))

        volumes: List[k8s_client.V1Volume] = []
        mounts: List[k8s_client.V1VolumeMount] = []
        if spec.lab_type == "docker":
            volumes.append(k8s_client.V1Volume(
                name="docker-sock",
                host_path=k8s_client.V1HostPathVolumeSource(path=DOCKER_SOCKET_PATH),
            ))
            mounts.append(k8s_client.V1VolumeMount(name="docker-sock", mount_path=DOCKER_SOCKET_PATH))
        else:
            volumes.append(k8s_client.V1Volume(name="workspace", empty_dir=k8s_client.V1EmptyDirVolumeSource()))
            mounts.append(k8s_client.V1VolumeMount(name="workspace", mount_path=self.settings.workspace_mount_path))

        container = k8s_client.V1Container(
            name=self.container_name,
            image=image,
            command=command,
            env=env,
            volume_mounts=mounts,
        )
        if template is not None:
            container.resources = k8s_client.V1ResourceRequirements(
                requests={"cpu": self.settings.cpu_request, "memory": self.settings.memory_request},
                limits={"cpu": self.settings.cpu_limit, "memory": self.settings.memory_limit},
            )
            if template.lab_type in self.settings.privileged_lab_types:
                container.security_context = k8s_client.V1SecurityContext(
                    run_as_user=0,
                    privileged=True,
                    allow_privilege_escalation=True,
                )

        labels = {
            "app": "lab",
            "labId": label_value(lab_id),
            "userId": label_value(spec.owner_id),
            "labType": label_value(spec.lab_type),
        }
        if template is not None:
            labels["templateId"] = label_value(template.id)

        return k8s_client.V1Pod(
            metadata=k8s_client.V1ObjectMeta(name=lab_id, labels=labels),
            spec=k8s_client.V1PodSpec(
                containers=[container],
                volumes=volumes,
                restart_policy="Never",
                active_deadline_seconds=spec.duration_seconds,
            ),
        )

    async def provision(self, lab_id: str, spec: WorkloadSpec) -> str:
        pod = self.build_pod(lab_id, spec)
        try:
            created = await asyncio.to_thread(self._core_api.create_namespaced_pod, self.namespace, pod)
        except ApiException as e:
            logger.error(f"KubernetesOrchestrator: Pod creation for lab {lab_id} rejected: {e.status} {e.reason}")
            raise ProvisionError(f"Failed to create pod for lab {lab_id}: {e.reason}") from e
        pod_name = created.metadata.name
        logger.info(f"KubernetesOrchestrator: Pod created: {pod_name} (Image: {pod.spec.containers[0].image}).")
        return pod_name

    async def terminate(self, workload_name: str) -> None:
        try:
            await asyncio.to_thread(self._core_api.delete_namespaced_pod, workload_name, self.namespace)
        except ApiException as e:
            if e.status == 404:
                logger.info(f"KubernetesOrchestrator: Pod {workload_name} already gone.")
                return
            raise TerminationError(f"Failed to delete pod {workload_name}: {e.reason}") from e
        logger.info(f"KubernetesOrchestrator: Pod deleted: {workload_name}.")

    async def inspect_phase(self, workload_name: str) -> WorkloadPhase:
        try:
            pod = await asyncio.to_thread(self._core_api.read_namespaced_pod, workload_name, self.namespace)
        except ApiException as e:
            raise OrchestratorError(f"Failed to read pod {workload_name}: {e.reason}") from e
        phase = pod.status.phase if pod.status else None
        return map_pod_phase(phase)

    async def open_session(self, workload_name: str, container_name: str, argv: List[str]) -> KubernetesExecSession:
        try:
            response = await asyncio.to_thread(
                k8s_stream,
                self._core_api.connect_get_namespaced_pod_exec,
                workload_name,
                self.namespace,
                container=container_name,
                command=argv,
                stderr=True,
                stdin=False,
                stdout=True,
                tty=False,
                _preload_content=False,
            )
        except ApiException as e:
            raise ExecError(f"Failed to open exec session in pod {workload_name}: {e.reason}") from e
        return KubernetesExecSession(response).start(self.settings.drain_grace_seconds)
