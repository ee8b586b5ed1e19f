from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from webpilot.errors import CallTimeoutError, EvaluationProviderError
from webpilot.plan import MAX_GAPS, clamp_unit
from webpilot.providers.base import ProviderExecutionError
from webpilot.stages.base import Stage


class EvaluationOutput(BaseModel):
    completeness: float
    gaps: list[str] = Field(default_factory=list)
    optimized_query: str | None = None
    feedback: str = ""


@dataclass(frozen=True, slots=True)
class Evaluation:
    completeness: float
    gaps: tuple[str, ...] = ()
    optimized_query: str | None = None
    feedback: str = ""

    def accepts(self, threshold: float) -> bool:
        return self.completeness >= threshold


def build_evaluation_prompt(
    objective: str,
    diary: Sequence[str],
    candidate_answer: str | None,
) -> str:
    return "\n".join(
        [
            "Original query:",
            objective,
            "",
            "<steps>",
            *diary,
            "</steps>",
            "",
            "Candidate answer:",
            candidate_answer or "(no answer produced)",
            "",
            "Score how completely the candidate answer satisfies the original query.",
        ]
    )


class EvaluationStage(Stage):
    role = "evaluator"
    prompt_file = "evaluator.md"
    fallback_prompt = """
You are the evaluation specialist for a browser automation agent.
Score completeness between 0 and 1, list at most five gaps and propose an
optimized query when the answer is incomplete.
""".strip()

    async def evaluate(
        self,
        objective: str,
        diary: Sequence[str],
        candidate_answer: str | None,
    ) -> Evaluation:
        prompt = build_evaluation_prompt(objective, diary, candidate_answer)
        try:
            payload = await self._invoke(prompt, EvaluationOutput)
        except CallTimeoutError as exc:
            raise EvaluationProviderError(str(exc)) from exc
        except ProviderExecutionError as exc:
            raise EvaluationProviderError(f"Evaluator provider failed: {exc}") from exc

        try:
            output = EvaluationOutput.model_validate(payload)
        except ValidationError as exc:
            raise EvaluationProviderError("Evaluator returned malformed output") from exc

        evaluation = Evaluation(
            completeness=clamp_unit(output.completeness),
            gaps=tuple(gap.strip() for gap in output.gaps if gap.strip())[:MAX_GAPS],
            optimized_query=(output.optimized_query or "").strip() or None,
            feedback=output.feedback.strip(),
        )
        logger.info(
            "[EVALUATION] completeness={completeness:.2f}",
            completeness=evaluation.completeness,
            gaps=len(evaluation.gaps),
        )
        return evaluation
