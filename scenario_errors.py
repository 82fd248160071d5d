"""Scenario runner exceptions.

Per-step errors (resolution, condition, HTTP, loop safety) are recorded on the
owning step's execution record; only ParameterValidationError and
RunCancelledError cross the run boundary.
"""

from dataclasses import dataclass
from typing import Any, List, Optional


class ScenarioError(Exception):
    """Base class for all scenario runner errors."""

    code = "SCENARIO_ERROR"

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        data = {"code": self.code, "message": self.message}
        if self.details is not None:
            data["details"] = self.details
        return data


@dataclass
class ParameterViolation:
    """Single parameter validation failure."""
    path: str
    message: str

    def to_dict(self) -> dict:
        return {"path": self.path, "message": self.message}


class ParameterValidationError(ScenarioError):
    """Raised before the first step when input parameters do not satisfy the schema."""

    code = "VALIDATION_ERROR"

    def __init__(self, violations: List[ParameterViolation]):
        self.violations = violations
        messages = [f"{v.path}: {v.message}" for v in violations]
        super().__init__(
            "Parameter validation failed: " + "; ".join(messages),
            details=[v.to_dict() for v in violations],
        )


class ResolutionError(ScenarioError):
    """Malformed ${...} template."""

    code = "RESOLUTION_ERROR"

    def __init__(self, message: str, template: Optional[str] = None):
        super().__init__(message, details={"template": template} if template is not None else None)
        self.template = template


class ConditionError(ScenarioError):
    """Condition could not be evaluated (e.g. incompatible types). Always downgraded to False."""

    code = "CONDITION_ERROR"


class HttpStepError(ScenarioError):
    """
    HTTP failure for a request step.

    kind is one of 'timeout', 'transport', 'status', 'cancelled', 'config'.
    """

    code = "HTTP_ERROR"

    def __init__(self, message: str, kind: str, status: Optional[int] = None, details: Any = None):
        super().__init__(message, details=details)
        self.kind = kind
        self.status = status

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["kind"] = self.kind
        if self.status is not None:
            data["status"] = self.status
        return data


class LoopSafetyError(ScenarioError):
    """A loop hit its iteration cap. Reported as a warning, never raised across the walk."""

    code = "LOOP_SAFETY_LIMIT"

    def __init__(self, step_id: str, max_iterations: int):
        super().__init__(
            f"Loop '{step_id}' stopped after reaching maxIterations ({max_iterations}); possible infinite loop."
        )
        self.step_id = step_id
        self.max_iterations = max_iterations


class RunCancelledError(ScenarioError):
    """Run-level cancellation."""

    code = "CANCELLED"

    def __init__(self, message: str = "Run cancelled"):
        super().__init__(message)
