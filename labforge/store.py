"""Durable store contract for labs, templates, steps and execution logs.

All writes are upserts keyed by id. Records handed out are copies, so every
actor does an explicit read-modify-write through the store and no lab state is
shared in memory between actors.
"""
import asyncio
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, List, Optional

from labforge.logger import logger
from labforge.schema import (
    Difficulty,
    ExecutionStatus,
    Lab,
    LabStatus,
    LabTemplate,
    SetupExecutionLog,
    SetupStatus,
    SetupStep,
    utc_now,
)


class LabStore(ABC):
    """Abstract durable store."""

    # Labs
    @abstractmethod
    async def save_lab(self, lab: Lab) -> None: ...
    @abstractmethod
    async def get_lab(self, lab_id: str) -> Optional[Lab]: ...
    @abstractmethod
    async def delete_lab(self, lab_id: str) -> bool:
        """Removes a lab and its execution logs. Returns False if it was absent."""
    @abstractmethod
    async def list_labs_by_owner(self, owner_id: str) -> List[Lab]:
        """Newest first."""
    @abstractmethod
    async def list_labs_by_status(self, status: LabStatus, setup_status: SetupStatus) -> List[Lab]: ...
    @abstractmethod
    async def find_lab_by_workload(self, workload_name: str) -> Optional[Lab]: ...
    @abstractmethod
    async def find_expired_labs(self, now: Optional[datetime] = None) -> List[Lab]:
        """Labs with status RUNNING whose expiry lies before ``now``."""

    # Templates and steps
    @abstractmethod
    async def save_template(self, template: LabTemplate) -> None: ...
    @abstractmethod
    async def get_template(self, template_id: str) -> Optional[LabTemplate]: ...
    @abstractmethod
    async def list_active_templates(self) -> List[LabTemplate]:
        """Newest first."""
    @abstractmethod
    async def list_templates_by_type(self, lab_type: str) -> List[LabTemplate]: ...
    @abstractmethod
    async def list_templates_by_difficulty(self, difficulty: Difficulty) -> List[LabTemplate]: ...
    @abstractmethod
    async def delete_template(self, template_id: str) -> bool:
        """Removes a template and its steps. Returns False if it was absent."""
    @abstractmethod
    async def count_templates(self) -> int: ...
    @abstractmethod
    async def save_step(self, step: SetupStep) -> None: ...
    @abstractmethod
    async def list_steps(self, template_id: str) -> List[SetupStep]:
        """Ascending step_order."""

    # Execution logs
    @abstractmethod
    async def save_log(self, log: SetupExecutionLog) -> None: ...
    @abstractmethod
    async def list_logs(self, lab_id: str) -> List[SetupExecutionLog]:
        """Ascending step_order."""
    @abstractmethod
    async def count_success_logs(self, lab_id: str) -> int: ...


class InMemoryLabStore(LabStore):
    """Process-local store guarded by a single asyncio lock."""

    def __init__(self) -> None:
        self._labs: Dict[str, Lab] = {}
        self._templates: Dict[str, LabTemplate] = {}
        self._steps: Dict[str, SetupStep] = {}
        self._logs: Dict[str, SetupExecutionLog] = {}
        self._lock = asyncio.Lock()

    async def save_lab(self, lab: Lab) -> None:
        async with self._lock:
            self._labs[lab.id] = lab.model_copy(deep=True)

    async def get_lab(self, lab_id: str) -> Optional[Lab]:
        async with self._lock:
            lab = self._labs.get(lab_id)
            return lab.model_copy(deep=True) if lab else None

    async def delete_lab(self, lab_id: str) -> bool:
        async with self._lock:
            if self._labs.pop(lab_id, None) is None:
                return False
            for log_id in [log_id for log_id, log in self._logs.items() if log.lab_id == lab_id]:
                del self._logs[log_id]
            return True

    async def list_labs_by_owner(self, owner_id: str) -> List[Lab]:
        async with self._lock:
            labs = [lab.model_copy(deep=True) for lab in self._labs.values() if lab.owner_id == owner_id]
        return sorted(labs, key=lambda lab: lab.created_at, reverse=True)

    async def list_labs_by_status(self, status: LabStatus, setup_status: SetupStatus) -> List[Lab]:
        async with self._lock:
            return [
                lab.model_copy(deep=True) for lab in self._labs.values()
                if lab.status == status and lab.setup_status == setup_status
            ]

    async def find_lab_by_workload(self, workload_name: str) -> Optional[Lab]:
        if not workload_name:
            return None
        async with self._lock:
            for lab in self._labs.values():
                if lab.workload_name == workload_name:
                    return lab.model_copy(deep=True)
        return None

    async def find_expired_labs(self, now: Optional[datetime] = None) -> List[Lab]:
        now = now or utc_now()
        async with self._lock:
            return [
                lab.model_copy(deep=True) for lab in self._labs.values()
                if lab.status == LabStatus.RUNNING and lab.expires_at < now
            ]

    async def save_template(self, template: LabTemplate) -> None:
        async with self._lock:
            self._templates[template.id] = template.model_copy(deep=True)

    async def get_template(self, template_id: str) -> Optional[LabTemplate]:
        async with self._lock:
            template = self._templates.get(template_id)
            return template.model_copy(deep=True) if template else None

    async def list_active_templates(self) -> List[LabTemplate]:
        async with self._lock:
            templates = [t.model_copy(deep=True) for t in self._templates.values() if t.is_active]
        return sorted(templates, key=lambda t: t.created_at, reverse=True)

    async def list_templates_by_type(self, lab_type: str) -> List[LabTemplate]:
        return [t for t in await self.list_active_templates() if t.lab_type == lab_type]

    async def list_templates_by_difficulty(self, difficulty: Difficulty) -> List[LabTemplate]:
        return [t for t in await self.list_active_templates() if t.difficulty == difficulty]

    async def delete_template(self, template_id: str) -> bool:
        async with self._lock:
            if self._templates.pop(template_id, None) is None:
                return False
            for step_id in [step_id for step_id, step in self._steps.items() if step.template_id == template_id]:
                del self._steps[step_id]
            return True

    async def count_templates(self) -> int:
        async with self._lock:
            return len(self._templates)

    async def save_step(self, step: SetupStep) -> None:
        async with self._lock:
            if step.template_id not in self._templates:
                logger.warning(f"LabStore: Ignoring step {step.id} for unknown template {step.template_id}.")
                return
            self._steps[step.id] = step.model_copy(deep=True)

    async def list_steps(self, template_id: str) -> List[SetupStep]:
        async with self._lock:
            steps = [s.model_copy(deep=True) for s in self._steps.values() if s.template_id == template_id]
        return sorted(steps, key=lambda s: s.step_order)

    async def save_log(self, log: SetupExecutionLog) -> None:
        async with self._lock:
            # A lab deleted mid-setup takes its logs with it; late writes are dropped.
            if log.lab_id not in self._labs:
                logger.debug(f"LabStore: Dropping execution log {log.id} for deleted lab {log.lab_id}.")
                return
            self._logs[log.id] = log.model_copy(deep=True)

    async def list_logs(self, lab_id: str) -> List[SetupExecutionLog]:
        async with self._lock:
            logs = [log.model_copy(deep=True) for log in self._logs.values() if log.lab_id == lab_id]
        return sorted(logs, key=lambda log: (log.step_order, log.started_at))

    async def count_success_logs(self, lab_id: str) -> int:
        async with self._lock:
            return sum(
                1 for log in self._logs.values()
                if log.lab_id == lab_id and log.status == ExecutionStatus.SUCCESS
            )
