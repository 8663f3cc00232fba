"""Exception classes for LabForge.

Every domain error carries a ``status_code`` so a request layer can map it to a
response without inspecting the message: not-found conditions are 404,
malformed requests and unknown lab types are 400, orchestrator and pipeline
failures are 500.
"""
from typing import Tuple


class LabForgeError(Exception):
    """Base exception for all LabForge errors."""
    status_code: int = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotFoundError(LabForgeError):
    """Raised when a lab, template or step does not exist."""
    status_code = 404

class LabNotFoundError(NotFoundError):
    def __init__(self, lab_id: str):
        self.lab_id = lab_id
        super().__init__(f"Lab not found: {lab_id}")

class TemplateNotFoundError(NotFoundError):
    def __init__(self, template_id: str):
        self.template_id = template_id
        super().__init__(f"Template not found: {template_id}")


class ValidationError(LabForgeError):
    """Raised for malformed requests (bad template definitions, empty ids, ...)."""
    status_code = 400


class OrchestratorError(LabForgeError):
    """Base for failures at the workload orchestrator boundary."""
    pass

class ProvisionError(OrchestratorError):
    """Raised when a workload cannot be created."""
    pass

class UnsupportedLabTypeError(ProvisionError):
    """Raised when a lab type has no known image mapping."""
    status_code = 400

    def __init__(self, lab_type: str):
        self.lab_type = lab_type
        super().__init__(f"Unsupported lab type: {lab_type}")

class TerminationError(OrchestratorError):
    """Raised when a workload cannot be deleted."""
    pass

class ExecError(OrchestratorError):
    """Raised when a remote command session cannot be opened or inspected."""
    pass


class PipelineError(LabForgeError):
    """Wraps any failure raised while running a template's setup steps."""
    pass

class InvalidTransitionError(LabForgeError):
    """Raised when a lab status would move backwards through its state graph."""
    pass


def error_response(exc: BaseException) -> Tuple[int, str]:
    """Maps an exception to a (status_code, message) pair for a request layer.

    Unexpected exceptions never leak their internal detail.
    """
    if isinstance(exc, LabForgeError):
        return exc.status_code, exc.message
    return 500, "Internal server error"
