import os
import threading
import tomllib # Python 3.11+
from pathlib import Path
from typing import Dict, List, Optional

from pydantic import BaseModel, Field
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

def get_project_root() -> Path:
    """Get the project root directory"""
    return Path(__file__).resolve().parent.parent

PROJECT_ROOT = get_project_root()

class ImageSettings(BaseModel):
    image: str = Field(..., description="Container image for this lab type")
    command: List[str] = Field(default_factory=lambda: ["/bin/sh", "-c", "sleep 7200"], description="Keep-alive command for the lab container")

DEFAULT_IMAGES: Dict[str, ImageSettings] = {
    "docker": ImageSettings(
        image="ubuntu:20.04",
        command=["/bin/bash", "-c", "apt-get update && apt-get install -y docker.io && sleep 7200"],
    ),
    "python": ImageSettings(
        image="python:3.9-slim",
        command=["/bin/sh", "-c", "pip install jupyter && sleep 7200"],
    ),
    "nodejs": ImageSettings(
        image="node:16-alpine",
        command=["/bin/sh", "-c", "npm install -g nodemon && sleep 7200"],
    ),
    "kubernetes": ImageSettings(
        image="bitnami/kubectl:latest",
        command=["/bin/sh", "-c", "sleep 7200"],
    ),
}

DEFAULT_SUGGESTED_COMMANDS = [
    "ls -la",
    "pwd",
    "whoami",
    "ps aux",
    "df -h",
    "free -h",
    "uname -a",
    "cat /etc/os-release",
]

class OrchestratorSettings(BaseModel):
    backend: str = Field("kubernetes", description="Workload backend: 'kubernetes' or 'docker'")
    namespace: str = Field("default", description="Namespace holding every lab workload")
    container_name: str = Field("lab-container", description="Name of the lab container inside each workload")
    kubeconfig: Optional[str] = Field(None, description="Path to a kubeconfig file; in-cluster config is tried first when unset")
    drain_grace_seconds: float = Field(5.0, description="Bounded wait for output drains after the remote process exits or is killed")
    access_url_base: str = Field("http://localhost:30000", description="Base URL labs are exposed under")
    cpu_request: str = Field("250m", description="CPU request for template-driven workloads")
    cpu_limit: str = Field("1", description="CPU limit for template-driven workloads")
    memory_request: str = Field("256Mi", description="Memory request for template-driven workloads")
    memory_limit: str = Field("1Gi", description="Memory limit for template-driven workloads")
    privileged_lab_types: List[str] = Field(default_factory=lambda: ["johndoe"], description="Template lab types that run with a root-capable security context")
    workspace_mount_path: str = Field("/workspace", description="Mount path of the ephemeral workspace volume")

class PipelineSettings(BaseModel):
    readiness_timeout_seconds: float = Field(300, description="Max wait for a workload to reach Running before setup is abandoned")
    readiness_poll_interval_seconds: float = Field(10, description="Interval between workload phase probes while waiting for readiness")
    retry_backoff_seconds: float = Field(2, description="Fixed wait between attempts of one setup step")
    max_concurrent_setups: int = Field(4, description="Upper bound on setup pipelines running at once")

class SweeperSettings(BaseModel):
    interval_seconds: float = Field(300, description="Interval between expiry sweeps")
    run_on_start: bool = Field(True, description="Run one sweep immediately when the sweeper starts")

class CommandSettings(BaseModel):
    adhoc_timeout_seconds: int = Field(30, description="Timeout applied to ad-hoc user commands")
    suggested: List[str] = Field(default_factory=lambda: list(DEFAULT_SUGGESTED_COMMANDS), description="Read-only commands suggested to lab users")

class AppConfig(BaseModel):
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    sweeper: SweeperSettings = Field(default_factory=SweeperSettings)
    commands: CommandSettings = Field(default_factory=CommandSettings)
    images: Dict[str, ImageSettings] = Field(default_factory=lambda: dict(DEFAULT_IMAGES))
    templates_file: Optional[str] = Field(None, description="JSON file of seed templates replacing the built-in set")

class Config:
    _instance = None
    _lock = threading.Lock()
    _initialized = False

    def __new__(cls):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
        return cls._instance

    def __init__(self):
        if not self._initialized:
            with self._lock:
                if not self._initialized:
                    self._app_config: Optional[AppConfig] = None
                    self._load_initial_config()
                    self._initialized = True

    @staticmethod
    def _get_config_path() -> Optional[Path]:
        override = os.getenv("LABFORGE_CONFIG")
        config_path = Path(override) if override else PROJECT_ROOT / "config" / "labforge.toml"
        if config_path.exists():
            return config_path
        print(f"Configuration file {config_path} not found. Using built-in defaults.")
        return None

    def _load_toml_config(self) -> dict:
        config_path = self._get_config_path()
        if config_path is None:
            return {}
        with config_path.open("rb") as f: return tomllib.load(f)

    def _load_initial_config(self):
        raw_config = self._load_toml_config()

        orchestrator_conf = dict(raw_config.get("orchestrator", {}))
        if os.getenv("LABFORGE_BACKEND"):
            orchestrator_conf["backend"] = os.getenv("LABFORGE_BACKEND")
        if os.getenv("LABFORGE_NAMESPACE"):
            orchestrator_conf["namespace"] = os.getenv("LABFORGE_NAMESPACE")
        if os.getenv("KUBECONFIG") and "kubeconfig" not in orchestrator_conf:
            orchestrator_conf["kubeconfig"] = os.getenv("KUBECONFIG")
        orchestrator_settings = OrchestratorSettings(**orchestrator_conf)

        images = dict(DEFAULT_IMAGES)
        for lab_type, image_conf in raw_config.get("images", {}).items():
            if isinstance(image_conf, dict):
                try: images[lab_type] = ImageSettings(**image_conf)
                except Exception as e: print(f"Warning: Invalid image config for lab type '{lab_type}' in TOML: {e}")

        self._app_config = AppConfig(
            orchestrator=orchestrator_settings,
            pipeline=PipelineSettings(**raw_config.get("pipeline", {})),
            sweeper=SweeperSettings(**raw_config.get("sweeper", {})),
            commands=CommandSettings(**raw_config.get("commands", {})),
            images=images,
            templates_file=raw_config.get("templates_file"),
        )

    @property
    def orchestrator(self) -> OrchestratorSettings:
        if self._app_config is None: self._load_initial_config()
        assert self._app_config is not None
        return self._app_config.orchestrator

    @property
    def pipeline(self) -> PipelineSettings:
        if self._app_config is None: self._load_initial_config()
        assert self._app_config is not None
        return self._app_config.pipeline

    @property
    def sweeper(self) -> SweeperSettings:
        if self._app_config is None: self._load_initial_config()
        assert self._app_config is not None
        return self._app_config.sweeper

    @property
    def commands(self) -> CommandSettings:
        if self._app_config is None: self._load_initial_config()
        assert self._app_config is not None
        return self._app_config.commands

    @property
    def images(self) -> Dict[str, ImageSettings]:
        if self._app_config is None: self._load_initial_config()
        assert self._app_config is not None
        return self._app_config.images

    @property
    def templates_file(self) -> Optional[Path]:
        if self._app_config is None: self._load_initial_config()
        assert self._app_config is not None
        if not self._app_config.templates_file:
            return None
        path = Path(self._app_config.templates_file)
        return path if path.is_absolute() else PROJECT_ROOT / path

    @property
    def root_path(self) -> Path: return PROJECT_ROOT

config = Config()
