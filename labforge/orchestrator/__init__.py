from typing import Optional

from labforge.config import OrchestratorSettings, config as app_main_config
from labforge.exceptions import OrchestratorError
from labforge.orchestrator.base import (
    BaseOrchestrator,
    ExecSession,
    ThreadPumpedSession,
    WorkloadSpec,
    build_shell_command,
    collect_output,
)
from labforge.orchestrator.images import ImageRegistry


def create_orchestrator(settings: Optional[OrchestratorSettings] = None) -> BaseOrchestrator:
    """Builds the backend named by ``settings.backend``."""
    settings = settings or app_main_config.orchestrator
    backend = settings.backend.lower()
    if backend == "kubernetes":
        from labforge.orchestrator.kubernetes import KubernetesOrchestrator
        return KubernetesOrchestrator(settings)
    if backend == "docker":
        from labforge.orchestrator.docker import DockerOrchestrator
        return DockerOrchestrator(settings)
    raise OrchestratorError(f"Unknown orchestrator backend: {settings.backend}")


__all__ = [
    "BaseOrchestrator",
    "ExecSession",
    "ThreadPumpedSession",
    "WorkloadSpec",
    "ImageRegistry",
    "build_shell_command",
    "collect_output",
    "create_orchestrator",
]
