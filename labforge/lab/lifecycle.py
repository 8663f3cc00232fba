"""
Lab Lifecycle Manager
Creates, lists, probes and deletes labs, and runs ad-hoc user commands in
them. Template-based labs are handed to the setup worker pool and return to
the caller before any setup step runs.
"""
import asyncio
import re
import secrets
from datetime import timedelta
from typing import Any, Dict, List, Optional, Set

from labforge.config import CommandSettings, OrchestratorSettings, config as app_main_config
from labforge.exceptions import LabNotFoundError, ValidationError
from labforge.lab.pipeline import SetupWorkerPool
from labforge.lab.templates import TemplateService
from labforge.logger import logger
from labforge.orchestrator.base import BaseOrchestrator, WorkloadSpec
from labforge.orchestrator.images import ImageRegistry
from labforge.safety import REJECTION_MESSAGE, is_safe
from labforge.schema import (
    ExecResult,
    ExecutionStatus,
    Lab,
    LabStatus,
    SetupStatus,
    WorkloadPhase,
    utc_now,
)
from labforge.store import LabStore

EXPIRED_MESSAGE = "Lab has expired"

_PHASE_TO_STATUS: Dict[WorkloadPhase, LabStatus] = {
    WorkloadPhase.CREATING: LabStatus.CREATING,
    WorkloadPhase.RUNNING: LabStatus.RUNNING,
    WorkloadPhase.STOPPED: LabStatus.STOPPED,
}


def _owner_slug(owner_id: str) -> str:
    slug = re.sub(r"[^a-z0-9-]+", "-", owner_id.lower()).strip("-")
    return slug[:24].strip("-") or "user"


class LabManager:
    """Synchronous (request-path) operations on labs."""

    def __init__(
        self,
        store: LabStore,
        orchestrator: BaseOrchestrator,
        setup_pool: SetupWorkerPool,
        templates: Optional[TemplateService] = None,
        registry: Optional[ImageRegistry] = None,
        settings: Optional[OrchestratorSettings] = None,
        command_settings: Optional[CommandSettings] = None,
    ):
        self.store = store
        self.orchestrator = orchestrator
        self.setup_pool = setup_pool
        self.templates = templates or TemplateService(store)
        self.registry = registry or ImageRegistry()
        self.settings: OrchestratorSettings = settings or app_main_config.orchestrator
        self.command_settings: CommandSettings = command_settings or app_main_config.commands
        self._release_tasks: Set[asyncio.Task] = set()

    def generate_lab_id(self, owner_id: str) -> str:
        """Time-based lab id; also used as the workload name, so it stays DNS-safe."""
        millis = int(utc_now().timestamp() * 1000)
        return f"lab-{_owner_slug(owner_id)}-{millis}-{secrets.token_hex(2)}"

    def access_url(self, lab_id: str) -> str:
        return f"{self.settings.access_url_base.rstrip('/')}/{lab_id}"

    async def _get_lab(self, lab_id: str) -> Lab:
        lab = await self.store.get_lab(lab_id)
        if lab is None:
            raise LabNotFoundError(lab_id)
        return lab

    async def create_adhoc_lab(self, owner_id: str, lab_type: str, duration_seconds: int) -> Lab:
        if not owner_id or not owner_id.strip():
            raise ValidationError("owner_id is required")
        if duration_seconds <= 0:
            raise ValidationError("duration_seconds must be positive")

        lab_id = self.generate_lab_id(owner_id)
        spec = WorkloadSpec(lab_id=lab_id, owner_id=owner_id, lab_type=lab_type, duration_seconds=duration_seconds)
        workload_name = await self.orchestrator.provision(lab_id, spec)

        now = utc_now()
        lab = Lab(
            id=lab_id,
            owner_id=owner_id,
            lab_type=lab_type,
            status=LabStatus.CREATING,
            setup_status=SetupStatus.READY,
            created_at=now,
            expires_at=now + timedelta(seconds=duration_seconds),
            access_url=self.access_url(lab_id),
            workload_name=workload_name,
            duration_seconds=duration_seconds,
        )
        try:
            await self.store.save_lab(lab)
        except Exception:
            logger.exception(f"LabManager: Could not persist lab {lab_id}; releasing workload {workload_name}.")
            await self._terminate_quietly(workload_name)
            raise
        logger.info(f"LabManager: Lab created: {lab_id} (type {lab_type}, owner {owner_id}).")
        return lab

    async def create_from_template(self, owner_id: str, template_id: str) -> Lab:
        if not owner_id or not owner_id.strip():
            raise ValidationError("owner_id is required")
        template = await self.templates.get_template(template_id, active_only=True)

        lab_id = self.generate_lab_id(owner_id)
        now = utc_now()
        duration_seconds = template.duration_minutes * 60
        lab = Lab(
            id=lab_id,
            owner_id=owner_id,
            template_id=template.id,
            lab_type=template.lab_type,
            status=LabStatus.CREATING,
            setup_status=SetupStatus.INITIALIZING,
            created_at=now,
            expires_at=now + timedelta(seconds=duration_seconds),
            access_url=self.access_url(lab_id),
            duration_seconds=duration_seconds,
        )
        await self.store.save_lab(lab)

        spec = WorkloadSpec(
            lab_id=lab_id,
            owner_id=owner_id,
            lab_type=template.lab_type,
            duration_seconds=duration_seconds,
            template=template,
        )
        try:
            workload_name = await self.orchestrator.provision(lab_id, spec)
        except Exception:
            lab.advance_setup_status(SetupStatus.FAILED)
            lab.advance_status(LabStatus.ERROR)
            await self.store.save_lab(lab)
            logger.error(f"LabManager: Provisioning failed for templated lab {lab_id}; marked ERROR.")
            raise

        lab.assign_workload(workload_name)
        lab.advance_setup_status(SetupStatus.SETTING_UP, strict=True)
        lab.setup_started_at = utc_now()
        await self.store.save_lab(lab)

        try:
            self.setup_pool.submit(lab_id)
        except Exception as e:
            logger.error(f"LabManager: Could not schedule setup for lab {lab_id}: {e}; releasing workload {workload_name}.")
            await self.setup_pool.pipeline.mark_failed(lab_id, f"Setup could not be scheduled: {e}")
            await self._terminate_quietly(workload_name)
            raise
        logger.info(f"LabManager: Lab created from template: {template.name} for user: {owner_id} ({lab_id}).")
        return lab

    async def list_labs(self, owner_id: str) -> List[Lab]:
        return await self.store.list_labs_by_owner(owner_id)

    async def get_lab(self, lab_id: str) -> Lab:
        return await self._get_lab(lab_id)

    async def get_status(self, lab_id: str) -> LabStatus:
        """Returns the lab's current status, refreshing it from the workload.

        Orchestrator failures degrade the lab to ERROR instead of raising,
        except while its setup is still in progress.
        """
        lab = await self._get_lab(lab_id)

        if lab.is_expired():
            if lab.advance_status(LabStatus.EXPIRED):
                await self.store.save_lab(lab)
                logger.info(f"LabManager: Lab {lab_id} expired.")
                # The sweeper only picks up RUNNING labs, so release here
                if lab.workload_name:
                    self._release_in_background(lab.workload_name)
            return lab.status

        if not lab.workload_name:
            return lab.status

        try:
            phase = await self.orchestrator.inspect_phase(lab.workload_name)
        except Exception as e:
            logger.warning(f"LabManager: Status probe failed for lab {lab_id}: {e}")
            # While setup runs, the pipeline decides the lab's outcome
            if lab.setup_status in (SetupStatus.INITIALIZING, SetupStatus.SETTING_UP):
                return lab.status
            if lab.advance_status(LabStatus.ERROR):
                await self.store.save_lab(lab)
            return lab.status

        new_status = _PHASE_TO_STATUS.get(phase)
        if new_status is None:
            return lab.status
        # A templated lab becomes RUNNING only once its setup succeeded
        if new_status == LabStatus.RUNNING and lab.setup_status != SetupStatus.READY:
            return lab.status
        if lab.advance_status(new_status):
            await self.store.save_lab(lab)
            logger.debug(f"LabManager: Lab {lab_id} status now {lab.status.value} (phase {phase.value}).")
        return lab.status

    async def delete_lab(self, lab_id: str) -> None:
        lab = await self._get_lab(lab_id)
        if lab.workload_name:
            await self._terminate_quietly(lab.workload_name)
        await self.store.delete_lab(lab_id)
        logger.info(f"LabManager: Lab deleted: {lab_id}")

    def _release_in_background(self, workload_name: str) -> None:
        task = asyncio.create_task(self._terminate_quietly(workload_name), name=f"release-{workload_name}")
        self._release_tasks.add(task)
        task.add_done_callback(self._release_tasks.discard)

    async def wait_for_releases(self) -> None:
        """Waits for background workload releases started by status probes."""
        if self._release_tasks:
            await asyncio.gather(*list(self._release_tasks), return_exceptions=True)

    async def _terminate_quietly(self, workload_name: str) -> None:
        try:
            await self.orchestrator.terminate(workload_name)
        except Exception as e:
            logger.warning(f"LabManager: Failed to terminate workload {workload_name}: {e}")

    async def execute_adhoc_command(self, lab_id: str, command: str) -> ExecResult:
        lab = await self._get_lab(lab_id)
        logger.info(f"LabManager: Executing command '{command[:100]}' in lab {lab_id}")

        if lab.is_expired():
            return ExecResult.rejected(command, EXPIRED_MESSAGE)
        if not is_safe(command):
            return ExecResult.rejected(command, REJECTION_MESSAGE)
        if not lab.workload_name:
            return ExecResult.rejected(command, f"Lab {lab_id} has no workload")

        return await self.orchestrator.exec(
            lab.workload_name,
            self.orchestrator.container_name,
            command,
            self.command_settings.adhoc_timeout_seconds,
            "/",
        )

    async def suggested_commands(self, lab_id: str) -> List[str]:
        await self._get_lab(lab_id)
        return list(self.command_settings.suggested)

    def list_lab_types(self) -> List[str]:
        return self.registry.lab_types()

    async def get_setup_progress(self, lab_id: str) -> Dict[str, Any]:
        lab = await self._get_lab(lab_id)
        total_steps = len(await self.store.list_steps(lab.template_id)) if lab.template_id else 0
        logs = await self.store.list_logs(lab_id)
        return {
            "lab_id": lab_id,
            "status": lab.setup_status.value,
            "total_steps": total_steps,
            "successful_steps": await self.store.count_success_logs(lab_id),
            "failed_steps": sum(1 for log in logs if log.status == ExecutionStatus.FAILED),
        }
