from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from webpilot.plan import Plan, StepStatus


class WorkflowPhase(StrEnum):
    PLANNING = "Planning"
    EXECUTING = "Executing"
    EVALUATING = "Evaluating"
    REPLANNING = "Replanning"
    SUMMARIZING = "Summarizing"
    COMPLETED = "Completed"
    FAILED = "Failed"


TERMINAL_WORKFLOW_PHASES = frozenset({WorkflowPhase.COMPLETED, WorkflowPhase.FAILED})


@dataclass(frozen=True, slots=True)
class RunContext:
    """Browser context known before planning starts."""

    current_url: str | None = None
    page_title: str | None = None
    page_text: str | None = None

    def describe(self, *, preview_chars: int = 500) -> str:
        if not self.current_url:
            return "Starting from a blank page or unknown context."
        lines = [f"Current URL: {self.current_url}"]
        if self.page_title:
            lines.append(f"Page Title: {self.page_title}")
        if self.page_text:
            lines.append(f"Page Text Preview: {self.page_text[:preview_chars]}")
        return "\n".join(lines)


@dataclass(frozen=True, slots=True)
class ExecutedStep:
    """Final outcome of one plan step within one planning cycle."""

    cycle: int
    step: int
    action: str
    target: str
    status: StepStatus
    duration: float
    url: str | None = None
    error: str | None = None
    attempts: int = 1
    repeated_failure: bool = False
    critical: bool = False
    output: str | None = None

    @property
    def success(self) -> bool:
        return self.status is StepStatus.SUCCEEDED


@dataclass(frozen=True, slots=True)
class PhaseTransition:
    source: WorkflowPhase | None
    target: WorkflowPhase
    reason: str = ""
    at: float = field(default_factory=time.monotonic)


@dataclass(frozen=True, slots=True)
class ErrorReport:
    recap: str
    blame: str
    improvement: str
    from_fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {"recap": self.recap, "blame": self.blame, "improvement": self.improvement}


@dataclass(slots=True)
class WorkflowState:
    """Mutable run state. Owned and mutated only by the orchestrator."""

    run_id: str
    query: str
    phase: WorkflowPhase = WorkflowPhase.PLANNING
    current_plan: Plan | None = None
    diary_context: list[str] = field(default_factory=list)
    step_records: list[ExecutedStep] = field(default_factory=list)
    transitions: list[PhaseTransition] = field(default_factory=list)
    active_query: str = ""
    cycle: int = 0
    evaluator_feedback: str | None = None
    confidence: float | None = None
    final_answer: str | None = None
    summary: str | None = None
    error: str | None = None
    error_analysis: ErrorReport | None = None
    degraded: bool = False
    started_at: float = field(default_factory=time.monotonic)

    def __post_init__(self) -> None:
        if not self.active_query:
            self.active_query = self.query
        self.transitions.append(PhaseTransition(None, self.phase, "run started"))

    def transition(self, target: WorkflowPhase, reason: str = "") -> None:
        if self.phase in TERMINAL_WORKFLOW_PHASES:
            raise RuntimeError(f"Run already terminated in {self.phase}")
        self.transitions.append(PhaseTransition(self.phase, target, reason))
        self.phase = target

    def count_transitions(self, target: WorkflowPhase) -> int:
        return sum(1 for item in self.transitions if item.target is target)

    @property
    def executed_steps(self) -> tuple[ExecutedStep, ...]:
        return tuple(self.step_records)

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_at


@dataclass(frozen=True, slots=True)
class RunResult:
    success: bool
    steps: int
    phase: WorkflowPhase
    run_id: str
    final_url: str | None = None
    final_answer: str | None = None
    error: str | None = None
    degraded: bool = False
    confidence: float | None = None
    summary: str | None = None
    replanning_cycles: int = 0
    error_analysis: ErrorReport | None = None
    trajectory: tuple[ExecutedStep, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "success": self.success,
            "steps": self.steps,
            "phase": str(self.phase),
            "runId": self.run_id,
            "degraded": self.degraded,
            "replanningCycles": self.replanning_cycles,
        }
        optional = {
            "finalUrl": self.final_url,
            "finalAnswer": self.final_answer,
            "error": self.error,
            "confidence": self.confidence,
            "summary": self.summary,
        }
        payload.update({key: value for key, value in optional.items() if value is not None})
        if self.error_analysis is not None:
            payload["errorAnalysis"] = self.error_analysis.to_dict()
        if self.trajectory:
            payload["trajectory"] = [
                {
                    "cycle": item.cycle,
                    "step": item.step,
                    "action": item.action,
                    "success": item.success,
                    "duration": round(item.duration, 3),
                    **({"url": item.url} if item.url else {}),
                }
                for item in self.trajectory
            ]
        return payload
