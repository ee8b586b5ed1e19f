"""Plan schema, validation and rendering.

``PlannerOutput`` is the structured shape requested from the reasoning
provider. ``validate_plan`` turns a raw provider payload into an immutable
``Plan``: structural defects raise ``PlanningSchemaError``, while scalar
bounds (confidence, complexity, estimated steps) are clamped.
"""

from __future__ import annotations

import re
from enum import StrEnum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from webpilot.errors import PlanningSchemaError

MAX_PLAN_STEPS = 100
MAX_GAPS = 5
URL_PATTERN = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)


class StepStatus(StrEnum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlannedStep(BaseModel):
    step: int
    action: str = Field(min_length=1, max_length=100)
    target: str = Field(default="", max_length=2000)
    reasoning: str = Field(default="", max_length=2000)
    expected_outcome: str = Field(default="", max_length=1000)
    validation_criteria: str = Field(default="", max_length=500)


class PlannerOutput(BaseModel):
    """Shape the planner must return."""

    objective: str = Field(min_length=1, max_length=1000)
    approach: str = ""
    steps: list[PlannedStep] = Field(min_length=1, max_length=MAX_PLAN_STEPS)
    critical_paths: list[int] = Field(default_factory=list)
    estimated_steps: int = 1
    complexity_score: float = 0.5
    confidence: float = 0.5
    potential_issues: list[str] = Field(default_factory=list)
    optimizations: list[str] = Field(default_factory=list)
    optimized_query: str | None = None
    gaps: list[str] = Field(default_factory=list)


class Step(BaseModel):
    model_config = ConfigDict(frozen=True)

    index: int
    action: str
    target: str = ""
    reasoning: str = ""
    expected_outcome: str = ""
    validation_criteria: str = ""


class Plan(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    objective: str
    approach: str = ""
    steps: tuple[Step, ...]
    estimated_steps: int = Field(ge=1)
    complexity_score: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    critical_paths: tuple[int, ...] = ()
    potential_issues: tuple[str, ...] = ()
    optimizations: tuple[str, ...] = ()
    optimized_query: str | None = None
    gaps: tuple[str, ...] = ()

    def step_at(self, index: int) -> Step:
        return self.steps[index - 1]


def clamp_unit(value: float) -> float:
    if value != value:  # NaN
        return 0.0
    return min(1.0, max(0.0, float(value)))


def _format_validation_error(exc: ValidationError) -> list[str]:
    details: list[str] = []
    for item in exc.errors():
        location = ".".join(str(part) for part in item.get("loc", ()))
        details.append(f"{location or '<root>'}: {item.get('msg', 'invalid')}")
    return details


def validate_plan(payload: Any, *, plan_id: str | None = None) -> Plan:
    if not isinstance(payload, dict):
        raise PlanningSchemaError(
            "Planner output must be a JSON object",
            details=[f"got {type(payload).__name__}"],
        )
    try:
        output = PlannerOutput.model_validate(payload)
    except ValidationError as exc:
        details = _format_validation_error(exc)
        raise PlanningSchemaError("Planner output failed schema validation", details=details) from exc

    indices = [item.step for item in output.steps]
    expected = list(range(1, len(indices) + 1))
    if indices != expected:
        raise PlanningSchemaError(
            "Plan step numbers must be exactly 1..N in order",
            details=[f"got {indices}"],
        )

    steps = tuple(
        Step(
            index=item.step,
            action=item.action.strip(),
            target=item.target.strip(),
            reasoning=item.reasoning,
            expected_outcome=item.expected_outcome,
            validation_criteria=item.validation_criteria,
        )
        for item in output.steps
    )
    if any(not step.action for step in steps):
        raise PlanningSchemaError("Plan steps must name an action")

    estimated = output.estimated_steps if output.estimated_steps >= 1 else len(steps)
    critical = tuple(sorted({idx for idx in output.critical_paths if 1 <= idx <= len(steps)}))
    gaps = tuple(gap.strip() for gap in output.gaps if gap.strip())[:MAX_GAPS]
    optimized = (output.optimized_query or "").strip() or None

    return Plan(
        id=plan_id or f"plan-{uuid4().hex[:12]}",
        objective=output.objective.strip(),
        approach=output.approach.strip(),
        steps=steps,
        estimated_steps=estimated,
        complexity_score=clamp_unit(output.complexity_score),
        confidence=clamp_unit(output.confidence),
        critical_paths=critical,
        potential_issues=tuple(output.potential_issues),
        optimizations=tuple(output.optimizations),
        optimized_query=optimized,
        gaps=gaps,
    )


def direct_plan(query: str, *, plan_id: str | None = None) -> Plan:
    """Single-step plan that needs no reasoning provider."""
    objective = query.strip() or "Answer the request"
    match = URL_PATTERN.search(query)
    if match:
        url = match.group(0).rstrip(".,;)")
        step = Step(
            index=1,
            action="navigate",
            target=url,
            reasoning="The request names a URL to open.",
            expected_outcome=f"Browser shows {url}",
            validation_criteria="Page finished loading",
        )
    else:
        step = Step(
            index=1,
            action="answer",
            target=objective,
            reasoning="No browser action could be derived; answer directly.",
            expected_outcome="A direct answer is produced",
        )
    return Plan(
        id=plan_id or f"plan-{uuid4().hex[:12]}",
        objective=objective,
        approach="Direct single-step execution",
        steps=(step,),
        estimated_steps=1,
        complexity_score=0.1,
        confidence=0.3,
        critical_paths=(1,),
    )


def format_plan_as_instructions(plan: Plan) -> str:
    lines = [
        "# Execution Plan",
        "",
        f"**Objective:** {plan.objective}",
    ]
    if plan.approach:
        lines.append(f"**Approach:** {plan.approach}")
    lines.extend(
        [
            f"**Complexity:** {round(plan.complexity_score * 100)}%",
            f"**Estimated Steps:** {plan.estimated_steps}",
            f"**Confidence:** {round(plan.confidence * 100)}%",
            "",
        ]
    )
    if plan.critical_paths:
        lines.append("## Critical Steps")
        for index in plan.critical_paths:
            step = plan.step_at(index)
            lines.append(f"- Step {index}: {step.action} - {step.target}")
        lines.append("")
    if plan.potential_issues:
        lines.append("## Potential Issues")
        lines.extend(f"{i}. {issue}" for i, issue in enumerate(plan.potential_issues, start=1))
        lines.append("")
    lines.append("## Steps")
    lines.append("")
    for step in plan.steps:
        lines.append(f"### Step {step.index}: {step.action.upper()}")
        lines.append(f"**Target:** {step.target}")
        if step.reasoning:
            lines.append(f"**Reasoning:** {step.reasoning}")
        if step.expected_outcome:
            lines.append(f"**Expected Outcome:** {step.expected_outcome}")
        if step.validation_criteria:
            lines.append(f"**Validation:** {step.validation_criteria}")
        lines.append("")
    if plan.gaps:
        lines.append(f"**Information Gaps:** {'; '.join(plan.gaps)}")
    return "\n".join(lines).rstrip() + "\n"
