"""Exception taxonomy for coordination failures.

None of these terminate the host process: callers recover ``ClaimConflict`` and
``SubstrateError`` locally by moving on to another task, and ``GateFailure`` is
always turned into a readable comment on the plan issue.
"""

from __future__ import annotations

from typing import Optional


class CoordinationError(RuntimeError):
    """Base class for every error raised by the coordination engine."""

    @property
    def error_type(self) -> str:
        return self.__class__.__name__


class ClaimConflict(CoordinationError):
    """Another peer holds (or won) the claim on a task."""

    def __init__(self, message: str, claimed_by: Optional[str] = None) -> None:
        super().__init__(message)
        self.claimed_by = claimed_by


class StaleRead(CoordinationError):
    """A fresh read contradicted the in-memory plan snapshot."""


class GateFailure(CoordinationError):
    """A verification gate rejected the task's work product."""

    def __init__(self, gate: object, reason: str, detail: Optional[str] = None) -> None:
        label = getattr(gate, "label", str(gate))
        super().__init__(f"{label}: {reason}")
        self.gate = gate
        self.reason = reason
        self.detail = detail


class SubstrateError(CoordinationError):
    """Transport or API failure talking to the shared issue tracker."""

    def __init__(
        self,
        message: str,
        *,
        operation: Optional[str] = None,
        status_code: Optional[int] = None,
    ) -> None:
        super().__init__(message)
        self.operation = operation
        self.status_code = status_code


class CommandTimeout(CoordinationError):
    """An external subprocess exceeded its wall-clock limit and was terminated."""

    def __init__(self, command: str, timeout_seconds: float) -> None:
        super().__init__(f"Command timed out after {timeout_seconds:g}s: {command}")
        self.command = command
        self.timeout_seconds = timeout_seconds


class UnresolvedDependency(CoordinationError):
    """A title-based dependency reference never matched any task."""

    def __init__(self, task_number: int, reference: str, reason: str = "no matching task title") -> None:
        super().__init__(f"Task {task_number} depends on '{reference}': {reason}")
        self.task_number = task_number
        self.reference = reference
        self.reason = reason
