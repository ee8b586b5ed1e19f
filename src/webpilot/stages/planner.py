from __future__ import annotations

from collections.abc import Sequence

from loguru import logger

from webpilot.errors import CallTimeoutError, PlanningProviderError
from webpilot.plan import Plan, PlannerOutput, validate_plan
from webpilot.providers.base import ProviderExecutionError
from webpilot.stages.base import Stage
from webpilot.state import RunContext


def build_planning_prompt(
    query: str,
    context: RunContext | None,
    tool_names: Sequence[str],
) -> str:
    available = ", ".join(sorted(set(tool_names) | {"answer"}))
    return "\n".join(
        [
            f'User Query: "{query}"',
            "",
            (context or RunContext()).describe(),
            "",
            f"Available actions: {available}",
            "",
            "Requirements:",
            "1. Break the query into small, non-overlapping steps that can be executed in order.",
            "2. Every step needs a target, reasoning, expected outcome and validation criteria.",
            "3. Mark the steps that must succeed in critical_paths.",
            "4. Anticipate likely failures in potential_issues.",
            "5. Inspect the page with getPageContext before interacting with elements.",
        ]
    )


class PlanningStage(Stage):
    role = "planner"
    prompt_file = "planner.md"
    fallback_prompt = """
You are the planning specialist for a browser automation agent.
Return an ordered JSON plan of browser actions with reasoning, expected outcomes
and validation criteria for every step.
""".strip()

    async def plan(
        self,
        query: str,
        context: RunContext | None = None,
        *,
        tool_names: Sequence[str] = (),
        plan_id: str | None = None,
    ) -> Plan:
        """Ask the provider for a plan and validate it.

        Raises ``PlanningProviderError`` for transport failures and timeouts,
        and ``PlanningSchemaError`` when the payload does not describe a plan.
        """
        prompt = build_planning_prompt(query, context, tool_names)
        try:
            payload = await self._invoke(prompt, PlannerOutput)
        except CallTimeoutError as exc:
            raise PlanningProviderError(str(exc)) from exc
        except ProviderExecutionError as exc:
            raise PlanningProviderError(f"Planner provider failed: {exc}") from exc

        plan = validate_plan(payload, plan_id=plan_id)
        logger.info(
            "[PLANNING] Plan ready with {count} step(s)",
            count=len(plan.steps),
            plan_id=plan.id,
            confidence=plan.confidence,
            complexity=plan.complexity_score,
        )
        return plan
