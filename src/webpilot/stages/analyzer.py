"""Post-failure diagnosis.

The analyzer never raises: any provider, timeout or schema problem is logged
and replaced by ``fallback_report``.
"""

from __future__ import annotations

from collections.abc import Sequence

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from webpilot.errors import AnalysisProviderError, CallTimeoutError
from webpilot.providers.base import ProviderExecutionError
from webpilot.stages.base import Stage
from webpilot.state import ErrorReport

FALLBACK_BLAME = "Unable to analyze root cause due to analysis failure."
FALLBACK_IMPROVEMENT = (
    "Review execution steps manually and identify patterns that led to failure."
)
DEFAULT_FEEDBACK = "The desired outcome was not achieved."


class AnalysisOutput(BaseModel):
    recap: str = Field(min_length=1)
    blame: str = Field(min_length=1)
    improvement: str = Field(min_length=1)


def fallback_report(step_count: int, evaluator_feedback: str | None = None) -> ErrorReport:
    return ErrorReport(
        recap=f"Execution consisted of {step_count} steps. {evaluator_feedback or DEFAULT_FEEDBACK}",
        blame=FALLBACK_BLAME,
        improvement=FALLBACK_IMPROVEMENT,
        from_fallback=True,
    )


def build_analysis_prompt(
    diary: Sequence[str],
    original_query: str,
    final_answer: str | None,
    evaluator_feedback: str | None,
) -> str:
    if evaluator_feedback:
        verdict = f"The evaluator thinks your answer is bad because: {evaluator_feedback}"
    else:
        verdict = "The execution did not achieve the desired outcome."
    return "\n".join(
        [
            "<steps>",
            *diary,
            "</steps>",
            "",
            "Original question:",
            original_query,
            "",
            "Your answer:",
            final_answer or "(no answer)",
            "",
            verdict,
            "",
            "Analyze the execution steps and provide detailed feedback following the schema.",
        ]
    )


class ErrorAnalysisStage(Stage):
    role = "analyzer"
    prompt_file = "analyzer.md"
    fallback_prompt = """
You diagnose failed browser automation runs.
Return recap, blame and improvement as a JSON object.
""".strip()

    async def _request_report(self, prompt: str) -> ErrorReport:
        try:
            payload = await self._invoke(prompt, AnalysisOutput)
            output = AnalysisOutput.model_validate(payload)
        except (CallTimeoutError, ProviderExecutionError, ValidationError) as exc:
            raise AnalysisProviderError(f"Error analysis failed: {exc}") from exc
        return ErrorReport(
            recap=output.recap.strip(),
            blame=output.blame.strip(),
            improvement=output.improvement.strip(),
        )

    async def analyze_failure(
        self,
        diary: Sequence[str],
        original_query: str,
        final_answer: str | None,
        evaluator_feedback: str | None = None,
    ) -> ErrorReport:
        if self.provider is None:
            return fallback_report(len(diary), evaluator_feedback)
        prompt = build_analysis_prompt(diary, original_query, final_answer, evaluator_feedback)
        try:
            report = await self._request_report(prompt)
        except AnalysisProviderError as exc:
            logger.warning(
                "[ERROR_ANALYSIS] Falling back to deterministic report: {error}", error=str(exc)
            )
            return fallback_report(len(diary), evaluator_feedback)
        logger.info("[ERROR_ANALYSIS] Report ready", steps=len(diary))
        return report
