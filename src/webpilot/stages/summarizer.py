from __future__ import annotations

from collections.abc import Sequence

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from webpilot.errors import CallTimeoutError
from webpilot.providers.base import ProviderExecutionError
from webpilot.stages.base import Stage
from webpilot.state import ExecutedStep
from webpilot.summary import build_fallback_summary, build_trajectory, final_url


class SummaryOutput(BaseModel):
    summary: str = Field(min_length=1)


class SummarizationStage(Stage):
    role = "summarizer"
    prompt_file = "summarizer.md"
    fallback_prompt = """
You write a short markdown report of a browser automation run.
Return a JSON object with a single summary field.
""".strip()

    async def summarize(
        self,
        query: str,
        diary: Sequence[str],
        candidate_answer: str | None,
        steps: Sequence[ExecutedStep],
        *,
        tool_counts: dict[str, int] | None = None,
    ) -> str:
        """Provider-written summary, or the deterministic one when that is unavailable."""
        if self.provider is None:
            return build_fallback_summary(steps, tool_counts=tool_counts)

        prompt = "\n".join(
            [
                "Original request:",
                query,
                "",
                "<steps>",
                *diary,
                "</steps>",
                "",
                f"Final URL: {final_url(steps) or '(unknown)'}",
                "Trajectory:",
                build_trajectory(steps),
                "",
                "Candidate answer:",
                candidate_answer or "(no answer produced)",
            ]
        )
        try:
            payload = await self._invoke(prompt, SummaryOutput)
            return SummaryOutput.model_validate(payload).summary.strip()
        except (CallTimeoutError, ProviderExecutionError, ValidationError) as exc:
            logger.warning("[SUMMARY] Using fallback summary: {error}", error=str(exc))
            return build_fallback_summary(
                steps,
                reason="Summary generated without the reasoning provider.",
                tool_counts=tool_counts,
            )
