"""Workflow error taxonomy.

Stage-local failures are classified at the stage boundary into one of these
kinds. Only ``PlanningSchemaError`` and exhausted ``PlanningProviderError``
move a run to Failed; everything else is absorbed into step records, the
diary, and the run result.
"""

from __future__ import annotations


class WorkflowError(RuntimeError):
    """Base class for classified workflow failures."""

    def __init__(self, message: str, *, retriable: bool = False) -> None:
        super().__init__(message)
        self.retriable = retriable


class PlanningSchemaError(WorkflowError):
    """Planner output did not match the plan schema. Fatal to the planning cycle."""

    def __init__(self, message: str, *, details: list[str] | None = None) -> None:
        super().__init__(message, retriable=False)
        self.details = list(details or [])


class PlanningProviderError(WorkflowError):
    """The reasoning provider failed while planning (transport, rate limit, timeout)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retriable=True)


class EvaluationProviderError(WorkflowError):
    """The reasoning provider failed while evaluating. Treated as fail-open."""

    def __init__(self, message: str) -> None:
        super().__init__(message, retriable=True)


class AnalysisProviderError(WorkflowError):
    """The reasoning provider failed during error analysis. Always absorbed."""


class UnknownToolError(WorkflowError):
    """A plan step named an action with no registered tool."""

    def __init__(self, action: str, available: list[str]) -> None:
        known = ", ".join(sorted(available)) or "none"
        super().__init__(f"No tool registered for action '{action}' (available: {known})")
        self.action = action


class CallTimeoutError(WorkflowError, TimeoutError):
    """A suspended call exceeded its per-call timeout."""

    def __init__(self, call: str, timeout_seconds: float) -> None:
        super().__init__(f"{call} timed out after {timeout_seconds:.1f}s", retriable=True)
        self.call = call
        self.timeout_seconds = timeout_seconds


class RunCancelledError(WorkflowError):
    """The run was cancelled by an external signal."""

    def __init__(self, message: str = "Cancelled") -> None:
        super().__init__(message, retriable=False)
