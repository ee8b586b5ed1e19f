from __future__ import annotations

import asyncio
from uuid import uuid4

from loguru import logger

from webpilot.config import Capabilities, WebpilotConfig
from webpilot.errors import (
    EvaluationProviderError,
    PlanningProviderError,
    PlanningSchemaError,
    RunCancelledError,
)
from webpilot.events import EventBroker, create_broker
from webpilot.plan import Plan, Step, StepStatus, direct_plan
from webpilot.progress import ProgressStatus, ProgressTracker
from webpilot.providers.base import ReasoningProvider
from webpilot.stages.analyzer import ErrorAnalysisStage, fallback_report
from webpilot.stages.evaluator import Evaluation, EvaluationStage
from webpilot.stages.executor import ANSWER_ACTION, ExecutionStage
from webpilot.stages.planner import PlanningStage
from webpilot.stages.summarizer import SummarizationStage
from webpilot.state import (
    TERMINAL_WORKFLOW_PHASES,
    ExecutedStep,
    RunContext,
    RunResult,
    WorkflowPhase,
    WorkflowState,
)
from webpilot.summary import build_fallback_summary, final_url, narrate_step, tool_usage_counts
from webpilot.tools import ToolRegistry

STAGE_RECORDS = (
    ("plan", "Create execution plan"),
    ("execute", "Execute browser actions"),
    ("evaluate", "Evaluate results"),
    ("summarize", "Summarize run"),
)

_STEP_PROGRESS = {
    StepStatus.SUCCEEDED: ProgressStatus.COMPLETED,
    StepStatus.FAILED: ProgressStatus.ERROR,
    StepStatus.SKIPPED: ProgressStatus.ERROR,
}


class Orchestrator:
    """Drives one run through Planning, Executing, Evaluating and Summarizing.

    ``run`` never raises for workflow failures: every outcome, including
    timeouts and cancellation, is reported through the returned ``RunResult``.
    An instance runs a single workflow.
    """

    def __init__(
        self,
        *,
        config: WebpilotConfig,
        tools: ToolRegistry,
        provider: ReasoningProvider | None = None,
        capabilities: Capabilities | None = None,
        broker: EventBroker | None = None,
        progress: ProgressTracker | None = None,
        run_id: str | None = None,
    ) -> None:
        if provider is None:
            capabilities = Capabilities()
        elif capabilities is None:
            capabilities = Capabilities(
                reasoning=True,
                diagnostics=config.workflow.error_analysis,
                summarization=config.workflow.summarize_with_provider,
            )
        self.config = config
        self.tools = tools
        self.capabilities = capabilities
        self.run_id = run_id or f"run-{uuid4().hex[:12]}"
        self.broker = broker or create_broker(
            run_id=self.run_id, max_history=config.events.max_history
        )
        self.progress = progress or ProgressTracker()

        workflow = config.workflow
        self.planner = PlanningStage(
            provider if capabilities.reasoning else None,
            timeout_seconds=workflow.planning_timeout_seconds,
        )
        self.executor = ExecutionStage(tools, self.broker, config=config.execution)
        self.evaluator = EvaluationStage(
            provider if capabilities.reasoning else None,
            timeout_seconds=workflow.evaluation_timeout_seconds,
        )
        self.analyzer = ErrorAnalysisStage(
            provider if capabilities.diagnostics else None,
            timeout_seconds=workflow.analysis_timeout_seconds,
        )
        self.summarizer = SummarizationStage(
            provider if capabilities.summarization else None,
            timeout_seconds=workflow.summary_timeout_seconds,
        )

        self.state: WorkflowState | None = None
        self._driver: asyncio.Task[None] | None = None
        self._cancel_requested = False
        self._failed_actions: set[tuple[str, str]] = set()

    def cancel(self) -> None:
        """Abandon the run. The in-flight provider or tool call is cancelled."""
        self._cancel_requested = True
        if self._driver is not None and not self._driver.done():
            self._driver.cancel()

    async def run(self, query: str, context: RunContext | None = None) -> RunResult:
        if self.state is not None:
            raise RuntimeError("Orchestrator instances run a single workflow")
        state = WorkflowState(run_id=self.run_id, query=query)
        self.state = state
        for record_id, title in STAGE_RECORDS:
            self.progress.ensure(record_id, title)
        logger.info(
            "[WORKFLOW] Run started",
            run_id=self.run_id,
            query=query,
            reasoning=self.capabilities.reasoning,
        )

        driver = asyncio.create_task(self._drive(state, context))
        self._driver = driver
        if self._cancel_requested:
            driver.cancel()

        timeout = self.config.workflow.run_timeout_seconds
        try:
            done, _ = await asyncio.wait({driver}, timeout=timeout if timeout > 0 else None)
        except asyncio.CancelledError:
            driver.cancel()
            await asyncio.gather(driver, return_exceptions=True)
            raise

        if driver in done:
            if driver.cancelled():
                self._finish_cancelled(state)
        else:
            driver.cancel()
            await asyncio.gather(driver, return_exceptions=True)
            if self._cancel_requested:
                self._finish_cancelled(state)
            else:
                self._finish_timed_out(state, timeout)

        result = self._build_result(state)
        logger.info(
            "[WORKFLOW] Run finished in {phase}",
            phase=str(result.phase),
            run_id=self.run_id,
            success=result.success,
            degraded=result.degraded,
            steps=result.steps,
            elapsed=round(state.elapsed_seconds, 3),
        )
        return result

    async def _drive(self, state: WorkflowState, context: RunContext | None) -> None:
        try:
            await self._run_cycles(state, context)
        except Exception as exc:
            logger.exception("[WORKFLOW] Unexpected failure", run_id=state.run_id)
            if state.phase not in TERMINAL_WORKFLOW_PHASES:
                try:
                    await self._fail(state, f"Unexpected error: {exc}")
                except Exception:
                    logger.exception("[WORKFLOW] Failure handling raised", run_id=state.run_id)
            if state.phase is WorkflowPhase.FAILED and state.error_analysis is None:
                state.error_analysis = fallback_report(
                    len(state.diary_context), state.evaluator_feedback
                )

    async def _run_cycles(self, state: WorkflowState, context: RunContext | None) -> None:
        workflow = self.config.workflow
        while True:
            state.cycle += 1
            plan = await self._plan(state, self._context_for(state, context))
            if plan is None:
                return
            state.current_plan = plan
            state.confidence = plan.confidence
            state.transition(WorkflowPhase.EXECUTING, f"plan {plan.id} ready")

            records = await self._execute(state, plan)
            critical = next(
                (item for item in records if item.critical and item.status is StepStatus.FAILED),
                None,
            )
            if critical is not None:
                await self._fail(
                    state,
                    f"Critical step {critical.step} ({critical.action}) failed: {critical.error}",
                )
                return

            candidate = self._candidate_answer(records)
            state.transition(WorkflowPhase.EVALUATING)
            evaluation = await self._evaluate(state, candidate)
            if evaluation is None or evaluation.accepts(workflow.completeness_threshold):
                await self._complete(state, candidate, reason="evaluation accepted")
                return

            state.evaluator_feedback = evaluation.feedback or "; ".join(evaluation.gaps) or None
            if state.count_transitions(WorkflowPhase.REPLANNING) < workflow.max_replanning_cycles:
                state.transition(
                    WorkflowPhase.REPLANNING,
                    f"completeness {evaluation.completeness:.2f} below threshold",
                )
                if evaluation.optimized_query:
                    state.active_query = evaluation.optimized_query
                logger.info(
                    "[WORKFLOW] Replanning",
                    run_id=state.run_id,
                    cycle=state.cycle,
                    query=state.active_query,
                )
                state.transition(WorkflowPhase.PLANNING, "replanning")
                continue

            logger.warning(
                "[WORKFLOW] Replanning cycles exhausted, completing with best-effort answer",
                run_id=state.run_id,
            )
            state.error_analysis = await self.analyzer.analyze_failure(
                state.diary_context, state.query, candidate, state.evaluator_feedback
            )
            await self._complete(
                state, candidate, reason="replanning cycles exhausted", degraded=True
            )
            return

    @staticmethod
    def _context_for(state: WorkflowState, context: RunContext | None) -> RunContext | None:
        url = final_url(state.step_records)
        if url is None:
            return context
        return RunContext(current_url=url)

    async def _plan(self, state: WorkflowState, context: RunContext | None) -> Plan | None:
        workflow = self.config.workflow
        self.progress.start("plan", f"Planning cycle {state.cycle}")
        if not self.capabilities.reasoning:
            plan = direct_plan(state.active_query)
            logger.info("[PLANNING] Reasoning unavailable, using direct plan", run_id=state.run_id)
            self.progress.complete("plan", "Direct single-step plan")
            return plan

        attempts = 1 + max(0, workflow.planning_max_retries)
        last_error: PlanningProviderError | None = None
        for attempt in range(1, attempts + 1):
            try:
                plan = await self.planner.plan(
                    state.active_query,
                    context,
                    tool_names=list(self.tools),
                    plan_id=f"{state.run_id}-plan-{state.cycle}",
                )
            except PlanningSchemaError as exc:
                message = str(exc)
                if exc.details:
                    message = f"{message}: {'; '.join(exc.details)}"
                self.progress.fail("plan", message)
                await self._fail(state, message)
                return None
            except PlanningProviderError as exc:
                last_error = exc
                logger.warning(
                    "[PLANNING] Provider failure ({attempt}/{total}): {error}",
                    attempt=attempt,
                    total=attempts,
                    error=str(exc),
                    run_id=state.run_id,
                )
                continue
            self.progress.complete("plan", f"{len(plan.steps)} step(s)")
            return plan

        if workflow.planning_fallback == "direct":
            logger.warning("[PLANNING] Retries exhausted, using direct plan", run_id=state.run_id)
            self.progress.complete("plan", "Direct single-step plan")
            return direct_plan(state.active_query)

        message = f"Planning failed after {attempts} attempt(s): {last_error}"
        self.progress.fail("plan", message)
        await self._fail(state, message)
        return None

    async def _execute(self, state: WorkflowState, plan: Plan) -> list[ExecutedStep]:
        self.progress.start("execute", f"{len(plan.steps)} step(s)")
        for step in plan.steps:
            self.progress.ensure(
                self._step_record_id(state.cycle, step.index),
                f"{step.action} {step.target}".strip(),
                step.expected_outcome or None,
            )

        def _on_start(step: Step) -> None:
            self.progress.start(self._step_record_id(state.cycle, step.index))

        def _on_record(record: ExecutedStep) -> None:
            self._record_step(state, record)
            self.progress.update(
                self._step_record_id(record.cycle, record.step),
                _STEP_PROGRESS[record.status],
                description=record.error,
            )

        records = await self.executor.execute(
            plan, cycle=state.cycle, on_start=_on_start, on_record=_on_record
        )
        failed = sum(1 for record in records if record.status is StepStatus.FAILED)
        if failed:
            self.progress.fail("execute", f"{failed} step(s) failed")
        else:
            self.progress.complete("execute")
        return records

    @staticmethod
    def _step_record_id(cycle: int, index: int) -> str:
        return f"step-{cycle}-{index}"

    def _record_step(self, state: WorkflowState, record: ExecutedStep) -> None:
        state.step_records.append(record)
        narration = narrate_step(len(state.step_records), record)
        if record.status is StepStatus.FAILED:
            key = (record.action, record.target)
            if key in self._failed_actions:
                narration += "\nThis exact action already failed in an earlier attempt."
                logger.warning(
                    "[WORKFLOW] Repeated failing action detected",
                    action=record.action,
                    target=record.target,
                    run_id=state.run_id,
                )
            self._failed_actions.add(key)
        state.diary_context.append(narration)

    @staticmethod
    def _candidate_answer(records: list[ExecutedStep]) -> str | None:
        for record in reversed(records):
            if record.action == ANSWER_ACTION and record.success and record.output:
                return record.output
        for record in reversed(records):
            if record.success and record.output:
                return record.output
        return None

    async def _evaluate(self, state: WorkflowState, candidate: str | None) -> Evaluation | None:
        if not self.capabilities.reasoning:
            self.progress.complete("evaluate", "Skipped, reasoning unavailable")
            return None
        self.progress.start("evaluate")
        try:
            evaluation = await self.evaluator.evaluate(
                state.active_query, state.diary_context, candidate
            )
        except EvaluationProviderError as exc:
            logger.warning(
                "[EVALUATION] Failed, accepting current answer: {error}",
                error=str(exc),
                run_id=state.run_id,
            )
            self.progress.complete("evaluate", "Evaluation unavailable, accepted")
            return None
        state.confidence = evaluation.completeness
        self.progress.complete("evaluate", f"Completeness {evaluation.completeness:.0%}")
        return evaluation

    async def _complete(
        self,
        state: WorkflowState,
        candidate: str | None,
        *,
        reason: str,
        degraded: bool = False,
    ) -> None:
        state.transition(WorkflowPhase.SUMMARIZING, reason)
        self.progress.start("summarize")
        summary = await self.summarizer.summarize(
            state.query,
            state.diary_context,
            candidate,
            state.step_records,
            tool_counts=tool_usage_counts(self.broker.get_history()),
        )
        state.summary = summary
        state.final_answer = candidate or summary
        state.degraded = degraded
        state.transition(WorkflowPhase.COMPLETED, reason)
        self.progress.complete("summarize")

    async def _fail(self, state: WorkflowState, error: str) -> None:
        state.error = error
        state.transition(WorkflowPhase.FAILED, error)
        logger.error("[WORKFLOW] Run failed: {error}", error=error, run_id=state.run_id)
        state.summary = build_fallback_summary(
            state.step_records,
            reason=error,
            tool_counts=tool_usage_counts(self.broker.get_history()),
        )
        state.error_analysis = await self.analyzer.analyze_failure(
            state.diary_context, state.query, state.final_answer, state.evaluator_feedback
        )

    def _finish_cancelled(self, state: WorkflowState) -> None:
        error = str(RunCancelledError())
        self.progress.abort_in_progress(error)
        logger.warning("[WORKFLOW] Run cancelled", run_id=state.run_id, phase=str(state.phase))
        if state.phase in TERMINAL_WORKFLOW_PHASES:
            return
        state.error = error
        state.transition(WorkflowPhase.FAILED, error)

    def _finish_timed_out(self, state: WorkflowState, timeout: float) -> None:
        reason = f"Run timed out after {timeout:.1f}s"
        self.progress.abort_in_progress(reason)
        logger.warning("[WORKFLOW] {reason}", reason=reason, run_id=state.run_id)
        if state.phase in TERMINAL_WORKFLOW_PHASES:
            if state.phase is WorkflowPhase.FAILED and state.error_analysis is None:
                state.error_analysis = fallback_report(
                    len(state.diary_context), state.evaluator_feedback
                )
            return

        summary = build_fallback_summary(
            state.step_records,
            reason=reason,
            tool_counts=tool_usage_counts(self.broker.get_history()),
        )
        state.summary = summary
        if self.config.workflow.timeout_policy == "fail":
            state.error = reason
            state.transition(WorkflowPhase.FAILED, reason)
            state.error_analysis = fallback_report(
                len(state.diary_context), state.evaluator_feedback
            )
            return

        if state.phase is not WorkflowPhase.SUMMARIZING:
            state.transition(WorkflowPhase.SUMMARIZING, reason)
        state.final_answer = self._candidate_answer(state.step_records) or summary
        state.degraded = True
        state.transition(WorkflowPhase.COMPLETED, reason)

    def _build_result(self, state: WorkflowState) -> RunResult:
        steps = state.executed_steps
        return RunResult(
            success=state.phase is WorkflowPhase.COMPLETED,
            steps=len(steps),
            phase=state.phase,
            run_id=state.run_id,
            final_url=final_url(steps),
            final_answer=state.final_answer,
            error=state.error,
            degraded=state.degraded,
            confidence=state.confidence,
            summary=state.summary,
            replanning_cycles=state.count_transitions(WorkflowPhase.REPLANNING),
            error_analysis=state.error_analysis,
            trajectory=steps,
        )


async def run_workflow(
    query: str,
    *,
    tools: ToolRegistry,
    config: WebpilotConfig | None = None,
    provider: ReasoningProvider | None = None,
    capabilities: Capabilities | None = None,
    context: RunContext | None = None,
) -> RunResult:
    orchestrator = Orchestrator(
        config=config or WebpilotConfig.default(),
        tools=tools,
        provider=provider,
        capabilities=capabilities,
    )
    return await orchestrator.run(query, context)
