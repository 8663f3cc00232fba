"""
LabForge Service
Wires the store, the orchestrator backend and the lab components together and
exposes the operations a request layer calls. Also owns the background
actors: the setup worker pool and the expiry sweeper.
"""
from typing import Any, Dict, List, Optional

from labforge.config import PipelineSettings, SweeperSettings
from labforge.lab.lifecycle import LabManager
from labforge.lab.pipeline import SetupPipeline, SetupWorkerPool
from labforge.lab.sweeper import ExpirySweeper
from labforge.lab.templates import TemplateService
from labforge.logger import logger
from labforge.orchestrator import BaseOrchestrator, ImageRegistry, create_orchestrator
from labforge.schema import (
    Difficulty,
    ExecResult,
    Lab,
    LabStatus,
    LabTemplate,
    SetupExecutionLog,
    SetupStatus,
    SetupStep,
)
from labforge.store import InMemoryLabStore, LabStore


class LabService:
    def __init__(
        self,
        store: Optional[LabStore] = None,
        orchestrator: Optional[BaseOrchestrator] = None,
        registry: Optional[ImageRegistry] = None,
        pipeline_settings: Optional[PipelineSettings] = None,
        sweeper_settings: Optional[SweeperSettings] = None,
    ):
        self.store: LabStore = store or InMemoryLabStore()
        self.orchestrator: BaseOrchestrator = orchestrator or create_orchestrator()
        self.registry = registry or ImageRegistry()

        self.templates = TemplateService(self.store)
        self.pipeline = SetupPipeline(self.store, self.orchestrator, pipeline_settings)
        self.setup_pool = SetupWorkerPool(self.pipeline)
        self.labs = LabManager(
            self.store,
            self.orchestrator,
            self.setup_pool,
            templates=self.templates,
            registry=self.registry,
        )
        self.sweeper = ExpirySweeper(self.store, self.orchestrator, sweeper_settings)
        self._started = False

    async def start(self, seed_templates: bool = True, run_sweeper: bool = True) -> "LabService":
        if self._started:
            return self
        if seed_templates:
            await self.templates.seed_defaults()
        await self.fail_interrupted_setups()
        if run_sweeper:
            self.sweeper.start()
        self._started = True
        logger.info(f"LabService: Started with {type(self.orchestrator).__name__}.")
        return self

    async def stop(self) -> None:
        logger.info("LabService: Shutting down...")
        await self.sweeper.stop()
        await self.setup_pool.shutdown()
        await self.labs.wait_for_releases()
        await self.orchestrator.close()
        self._started = False
        logger.info("LabService: Shutdown complete.")

    async def __aenter__(self) -> "LabService":
        return await self.start()

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    # Labs
    async def create_adhoc_lab(self, owner_id: str, lab_type: str, duration_seconds: int) -> Lab:
        return await self.labs.create_adhoc_lab(owner_id, lab_type, duration_seconds)

    async def create_from_template(self, owner_id: str, template_id: str) -> Lab:
        return await self.labs.create_from_template(owner_id, template_id)

    async def list_labs_by_owner(self, owner_id: str) -> List[Lab]:
        return await self.labs.list_labs(owner_id)

    async def get_lab(self, lab_id: str) -> Lab:
        return await self.labs.get_lab(lab_id)

    async def get_lab_status(self, lab_id: str) -> LabStatus:
        return await self.labs.get_status(lab_id)

    async def delete_lab(self, lab_id: str) -> None:
        await self.labs.delete_lab(lab_id)

    async def execute_adhoc_command(self, lab_id: str, command: str) -> ExecResult:
        return await self.labs.execute_adhoc_command(lab_id, command)

    async def suggested_commands(self, lab_id: str) -> List[str]:
        return await self.labs.suggested_commands(lab_id)

    def list_lab_types(self) -> List[str]:
        return self.labs.list_lab_types()

    # Templates
    async def list_templates(self, lab_type: Optional[str] = None, difficulty: Optional[Difficulty] = None) -> List[LabTemplate]:
        if lab_type is not None:
            templates = await self.templates.list_templates_by_type(lab_type)
        else:
            templates = await self.templates.list_templates()
        if difficulty is not None:
            templates = [t for t in templates if t.difficulty == difficulty]
        return templates

    async def search_templates(self, keyword: str) -> List[LabTemplate]:
        return await self.templates.search_templates(keyword)

    async def get_template(self, template_id: str) -> LabTemplate:
        return await self.templates.get_template(template_id)

    async def get_template_steps(self, template_id: str) -> List[SetupStep]:
        return await self.templates.get_template_steps(template_id)

    async def create_template(self, template: LabTemplate, steps: List[SetupStep]) -> LabTemplate:
        return await self.templates.create_template(template, steps)

    # Setup
    async def get_setup_logs(self, lab_id: str) -> List[SetupExecutionLog]:
        await self.labs.get_lab(lab_id)
        return await self.store.list_logs(lab_id)

    async def get_setup_progress(self, lab_id: str) -> Dict[str, Any]:
        return await self.labs.get_setup_progress(lab_id)

    # Background entry points
    async def run_expiry_sweep(self) -> List[str]:
        return await self.sweeper.sweep_once()

    async def run_setup_pipeline(self, lab_id: str) -> Optional[SetupStatus]:
        return await self.pipeline.run(lab_id)

    async def fail_interrupted_setups(self) -> List[str]:
        """Marks labs whose setup was cut short by a previous shutdown as FAILED."""
        labs = await self.store.list_labs_by_status(LabStatus.CREATING, SetupStatus.SETTING_UP)
        for lab in labs:
            await self.pipeline.mark_failed(lab.id, "Setup interrupted by service restart")
        if labs:
            logger.warning(f"LabService: Marked {len(labs)} interrupted setup(s) as FAILED.")
        return [lab.id for lab in labs]

    def get_stats(self) -> Dict[str, Any]:
        """Gets LabForge service statistics."""
        return {
            "backend": type(self.orchestrator).__name__,
            "started": self._started,
            **self.setup_pool.get_stats(),
            **self.sweeper.get_stats(),
        }
