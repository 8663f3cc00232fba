import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional

from pydantic import BaseModel, Field, model_validator

from labforge.exceptions import InvalidTransitionError


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class LabStatus(str, Enum):
    """Lab lifecycle states"""
    CREATING = "CREATING"
    READY = "READY"
    RUNNING = "RUNNING"
    STOPPED = "STOPPED"
    ERROR = "ERROR"
    EXPIRED = "EXPIRED"

class SetupStatus(str, Enum):
    """Setup pipeline states (templated labs only)"""
    INITIALIZING = "INITIALIZING"
    SETTING_UP = "SETTING_UP"
    READY = "READY"
    FAILED = "FAILED"

class Difficulty(str, Enum):
    BEGINNER = "BEGINNER"
    INTERMEDIATE = "INTERMEDIATE"
    ADVANCED = "ADVANCED"

class ExecutionStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    TIMEOUT = "TIMEOUT"
    SKIPPED = "SKIPPED"

class WorkloadPhase(str, Enum):
    """Orchestrator-independent workload phase"""
    CREATING = "Creating"
    RUNNING = "Running"
    STOPPED = "Stopped"
    UNKNOWN = "Unknown"


# A status may only move to a strictly higher rank. EXPIRED sits above the
# other terminal states so an already stopped or failed lab can still expire.
_LAB_STATUS_RANK: Dict[LabStatus, int] = {
    LabStatus.CREATING: 0,
    LabStatus.READY: 1,
    LabStatus.RUNNING: 2,
    LabStatus.STOPPED: 3,
    LabStatus.ERROR: 3,
    LabStatus.EXPIRED: 4,
}

_SETUP_STATUS_RANK: Dict[SetupStatus, int] = {
    SetupStatus.INITIALIZING: 0,
    SetupStatus.SETTING_UP: 1,
    SetupStatus.READY: 2,
    SetupStatus.FAILED: 2,
}


def can_advance_status(current: LabStatus, new: LabStatus) -> bool:
    return _LAB_STATUS_RANK[new] > _LAB_STATUS_RANK[current]

def can_advance_setup_status(current: SetupStatus, new: SetupStatus) -> bool:
    return _SETUP_STATUS_RANK[new] > _SETUP_STATUS_RANK[current]


class Lab(BaseModel):
    """One provisioned sandbox instance."""
    id: str
    owner_id: str
    template_id: Optional[str] = None
    lab_type: str
    status: LabStatus = LabStatus.CREATING
    setup_status: SetupStatus = SetupStatus.READY
    created_at: datetime = Field(default_factory=utc_now)
    setup_started_at: Optional[datetime] = None
    setup_completed_at: Optional[datetime] = None
    expires_at: datetime
    access_url: str = ""
    workload_name: str = ""
    duration_seconds: int

    @model_validator(mode="after")
    def _adhoc_labs_have_no_pipeline(self) -> "Lab":
        if self.template_id is None and self.setup_status != SetupStatus.READY:
            raise ValueError("A lab without a template must have setup_status READY")
        return self

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return self.expires_at < (now or utc_now())

    def advance_status(self, new: LabStatus, strict: bool = False) -> bool:
        """Moves ``status`` forward.

        Returns True when the status changed. A backwards or sideways move is
        ignored, or raises InvalidTransitionError when ``strict`` is set.
        """
        if new == self.status:
            return False
        if not can_advance_status(self.status, new):
            if strict:
                raise InvalidTransitionError(f"Lab {self.id}: cannot move status from {self.status.value} to {new.value}")
            return False
        self.status = new
        return True

    def advance_setup_status(self, new: SetupStatus, strict: bool = False) -> bool:
        """Moves ``setup_status`` forward, same contract as advance_status."""
        if new == self.setup_status:
            return False
        if self.template_id is None or not can_advance_setup_status(self.setup_status, new):
            if strict:
                raise InvalidTransitionError(f"Lab {self.id}: cannot move setup status from {self.setup_status.value} to {new.value}")
            return False
        self.setup_status = new
        return True

    def assign_workload(self, workload_name: str) -> None:
        if self.workload_name and self.workload_name != workload_name:
            raise InvalidTransitionError(f"Lab {self.id} is already bound to workload {self.workload_name}")
        self.workload_name = workload_name


class LabTemplate(BaseModel):
    """Reusable blueprint describing a base image and an ordered setup procedure."""
    id: str
    name: str
    description: str = ""
    lab_type: str
    base_image: str
    duration_minutes: int = Field(60, gt=0)
    difficulty: Difficulty = Difficulty.BEGINNER
    total_setup_time_seconds: int = 0 # Advisory estimate only
    success_criteria: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    created_by: str = "system"
    is_active: bool = True


class SetupStep(BaseModel):
    """One declarative unit of a template's setup procedure."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    template_id: str
    step_order: int
    title: str
    description: str = ""
    setup_command: str
    expected_exit_code: int = 0
    timeout_seconds: int = Field(300, gt=0)
    retry_count: int = Field(1, ge=1) # 1 means "attempt once"
    continue_on_failure: bool = False
    working_directory: str = "/"


class SetupExecutionLog(BaseModel):
    """Outcome of one step's execution for one lab, updated in place across retries."""
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    lab_id: str
    setup_step_id: str
    step_order: int
    step_title: str
    command: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    output: str = ""
    error_message: str = ""
    exit_code: Optional[int] = None
    execution_time_ms: Optional[int] = None
    attempt_number: int = 1
    started_at: datetime = Field(default_factory=utc_now)
    completed_at: Optional[datetime] = None


class ExecResult(BaseModel):
    """Result of one remote command.

    ``success`` only means the exit code was 0. Whether a setup step succeeded
    is decided by the caller against the step's expected exit code.
    """
    command: str = ""
    output: str = ""
    error: str = ""
    exit_code: int = -1
    success: bool = False

    @classmethod
    def rejected(cls, command: str, error: str) -> "ExecResult":
        """Result for a command that never reached the workload"""
        return cls(command=command, output="", error=error, exit_code=-1, success=False)
