import asyncio
import time
from typing import Any

from pydantic import BaseModel

from webpilot.config import Capabilities, WebpilotConfig
from webpilot.events import ToolExecutionEvent
from webpilot.orchestrator import Orchestrator, run_workflow
from webpilot.plan import StepStatus
from webpilot.progress import ProgressStatus
from webpilot.stages import fallback_report
from webpilot.providers.base import ProviderExecutionError, ReasoningProvider
from webpilot.state import RunResult, WorkflowPhase

ALLOWED_SEQUENCES = (
    ["starting"],
    ["starting", "executing"],
    ["starting", "executing", "completed"],
    ["starting", "executing", "error"],
)


class WorkflowProvider(ReasoningProvider):
    """Scripted replies per output schema. The last reply of each queue repeats."""

    def __init__(self, **replies: list[Any]) -> None:
        self.replies = {name: list(items) for name, items in replies.items()}
        self.calls: list[str] = []
        self.prompts: dict[str, list[str]] = {}

    async def invoke(
        self,
        system_prompt: str,
        user_prompt: str,
        output_schema: type[BaseModel],
    ) -> dict[str, Any]:
        _ = system_prompt
        name = output_schema.__name__
        self.calls.append(name)
        self.prompts.setdefault(name, []).append(user_prompt)
        queue = self.replies.get(name)
        if not queue:
            raise ProviderExecutionError(f"no scripted reply for {name}", retriable=False)
        reply = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def _plan_payload(*steps: tuple[str, str]) -> dict[str, Any]:
    return {
        "objective": "scripted objective",
        "steps": [
            {"step": index, "action": action, "target": target}
            for index, (action, target) in enumerate(steps, start=1)
        ],
        "estimated_steps": len(steps),
        "complexity_score": 0.4,
        "confidence": 0.8,
    }


def _config() -> WebpilotConfig:
    config = WebpilotConfig.default()
    config.execution.step_max_retries = 1
    config.workflow.run_timeout_seconds = 10.0
    return config


async def _navigate_ok(target: str, timeout_ms: int) -> dict[str, Any]:
    return {"success": True, "data": {"url": target}}


async def _navigate_fail(target: str, timeout_ms: int) -> dict[str, Any]:
    return {"success": False, "error": "net::ERR_CONNECTION_REFUSED"}


async def _hang(target: str, timeout_ms: int) -> dict[str, Any]:
    await asyncio.sleep(30)
    return {"success": True}


def _assert_event_ordering(history: list[ToolExecutionEvent]) -> None:
    sequences: dict[str, list[str]] = {}
    for event in history:
        sequences.setdefault(event.tool_call_id, []).append(str(event.phase))
    assert all(sequence in ALLOWED_SEQUENCES for sequence in sequences.values())


def test_navigate_query_without_reasoning_provider_succeeds() -> None:
    orchestrator = Orchestrator(config=_config(), tools={"navigate": _navigate_ok})

    result = asyncio.run(orchestrator.run("Navigate to https://example.com"))

    assert result.success is True
    assert result.steps == 1
    assert result.final_url == "https://example.com"
    assert result.phase is WorkflowPhase.COMPLETED
    assert result.summary is not None and result.summary.startswith("## Summary")
    assert orchestrator.state is not None
    assert orchestrator.state.current_plan is not None
    assert len(orchestrator.state.current_plan.steps) == 1
    _assert_event_ordering(orchestrator.broker.get_history())


def test_navigate_query_with_reasoning_provider_succeeds() -> None:
    provider = WorkflowProvider(
        PlannerOutput=[_plan_payload(("navigate", "https://example.com"))],
        EvaluationOutput=[{"completeness": 0.95, "feedback": "done"}],
        SummaryOutput=[{"summary": "Opened https://example.com"}],
    )
    orchestrator = Orchestrator(
        config=_config(), tools={"navigate": _navigate_ok}, provider=provider
    )

    result = asyncio.run(orchestrator.run("Navigate to https://example.com"))

    assert result.to_dict()["success"] is True
    assert result.to_dict()["finalUrl"] == "https://example.com"
    assert result.steps == 1
    assert result.confidence == 0.95
    assert result.final_answer == "Opened https://example.com"
    assert provider.calls == ["PlannerOutput", "EvaluationOutput", "SummaryOutput"]
    statuses = {record.id: record.status for record in orchestrator.progress.snapshot()}
    assert statuses["plan"] is ProgressStatus.COMPLETED
    assert statuses["step-1-1"] is ProgressStatus.COMPLETED
    assert statuses["summarize"] is ProgressStatus.COMPLETED


def test_critical_navigation_failure_fails_with_fallback_analysis() -> None:
    orchestrator = Orchestrator(config=_config(), tools={"navigate": _navigate_fail})

    result = asyncio.run(orchestrator.run("Navigate to https://example.com"))

    assert result.success is False
    assert result.phase is WorkflowPhase.FAILED
    assert result.trajectory[0].status is StepStatus.FAILED
    assert result.trajectory[0].attempts == 2
    assert "Critical step 1 (navigate) failed" in (result.error or "")
    analysis = result.error_analysis
    assert analysis is not None
    assert analysis.recap and analysis.blame and analysis.improvement
    assert analysis.from_fallback is True
    history = orchestrator.broker.get_history()
    assert [str(event.phase) for event in history] == [
        "starting",
        "executing",
        "error",
        "starting",
        "executing",
        "error",
    ]
    _assert_event_ordering(history)


def test_diagnostic_provider_failure_still_yields_report() -> None:
    provider = WorkflowProvider(
        PlannerOutput=[_plan_payload(("navigate", "https://example.com"))],
        AnalysisOutput=[ProviderExecutionError("analysis backend down")],
    )
    orchestrator = Orchestrator(
        config=_config(), tools={"navigate": _navigate_fail}, provider=provider
    )

    result = asyncio.run(orchestrator.run("Navigate to https://example.com"))

    assert result.phase is WorkflowPhase.FAILED
    assert result.error_analysis is not None
    assert result.error_analysis.blame == "Unable to analyze root cause due to analysis failure."
    assert "EvaluationOutput" not in provider.calls
    assert provider.calls[-1] == "AnalysisOutput"


def test_low_completeness_replans_once_then_completes() -> None:
    provider = WorkflowProvider(
        PlannerOutput=[
            _plan_payload(("navigate", "https://example.com")),
            _plan_payload(("navigate", "https://example.com/pricing"), ("answer", "$10")),
        ],
        EvaluationOutput=[
            {"completeness": 0.4, "gaps": ["price missing"], "optimized_query": "Find the price"},
            {"completeness": 0.9},
        ],
        SummaryOutput=[{"summary": "The price is $10."}],
    )
    orchestrator = Orchestrator(
        config=_config(), tools={"navigate": _navigate_ok}, provider=provider
    )

    result = asyncio.run(orchestrator.run("How much does example.com cost?"))

    assert result.success is True
    assert result.replanning_cycles == 1
    assert orchestrator.state is not None
    assert orchestrator.state.count_transitions(WorkflowPhase.REPLANNING) == 1
    assert result.final_answer == "$10"
    assert result.final_url == "https://example.com/pricing"
    assert 'User Query: "Find the price"' in provider.prompts["PlannerOutput"][1]
    assert "Current URL: https://example.com" in provider.prompts["PlannerOutput"][1]
    assert [record.cycle for record in result.trajectory] == [1, 2, 2]


def test_exhausted_replanning_completes_degraded_and_flags_loops() -> None:
    def click(target: str, timeout_ms: int) -> dict[str, Any]:
        return {"success": False, "error": "selector not found"}

    provider = WorkflowProvider(
        PlannerOutput=[_plan_payload(("navigate", "https://example.com"), ("click", "#buy"))],
        EvaluationOutput=[{"completeness": 0.2, "feedback": "Nothing was bought."}],
        AnalysisOutput=[{"recap": "r", "blame": "b", "improvement": "i"}],
        SummaryOutput=[{"summary": "Could not buy."}],
    )
    config = _config()
    config.workflow.max_replanning_cycles = 1
    orchestrator = Orchestrator(
        config=config, tools={"navigate": _navigate_ok, "click": click}, provider=provider
    )

    result = asyncio.run(orchestrator.run("Buy the item"))

    assert result.success is True
    assert result.degraded is True
    assert result.phase is WorkflowPhase.COMPLETED
    assert result.replanning_cycles == 1
    assert result.error_analysis is not None
    assert result.error_analysis.recap == "r"
    assert orchestrator.state is not None
    diary = orchestrator.state.diary_context
    assert len(diary) == 4
    assert "already failed in an earlier attempt" in diary[3]
    assert "already failed" not in diary[1]


def test_evaluation_failure_accepts_current_answer() -> None:
    provider = WorkflowProvider(
        PlannerOutput=[_plan_payload(("answer", "42"))],
        EvaluationOutput=[ProviderExecutionError("evaluator offline")],
        SummaryOutput=[{"summary": "Answered 42."}],
    )
    orchestrator = Orchestrator(config=_config(), tools={}, provider=provider)

    result = asyncio.run(orchestrator.run("What is six times seven?"))

    assert result.success is True
    assert result.final_answer == "42"
    assert result.replanning_cycles == 0


def test_planning_schema_error_is_fatal() -> None:
    provider = WorkflowProvider(
        PlannerOutput=[{"objective": "x", "steps": [{"step": 2, "action": "navigate"}]}],
        AnalysisOutput=[{"recap": "r", "blame": "planner", "improvement": "i"}],
    )
    orchestrator = Orchestrator(
        config=_config(), tools={"navigate": _navigate_ok}, provider=provider
    )

    result = asyncio.run(orchestrator.run("Navigate to https://example.com"))

    assert result.phase is WorkflowPhase.FAILED
    assert result.steps == 0
    assert "1..N" in (result.error or "")
    assert provider.calls == ["PlannerOutput", "AnalysisOutput"]
    assert orchestrator.broker.get_history() == []


def test_planning_provider_errors_retry_then_fail_or_fall_back() -> None:
    provider = WorkflowProvider(PlannerOutput=[ProviderExecutionError("429 rate limited")])
    capabilities = Capabilities(reasoning=True)
    config = _config()
    config.workflow.planning_max_retries = 2

    failed = asyncio.run(
        run_workflow(
            "Navigate to https://example.com",
            tools={"navigate": _navigate_ok},
            config=config,
            provider=provider,
            capabilities=capabilities,
        )
    )

    assert failed.phase is WorkflowPhase.FAILED
    assert "after 3 attempt(s)" in (failed.error or "")
    assert provider.calls == ["PlannerOutput"] * 3
    assert failed.error_analysis is not None and failed.error_analysis.from_fallback is True

    config.workflow.planning_fallback = "direct"
    recovered = asyncio.run(
        run_workflow(
            "Navigate to https://example.com",
            tools={"navigate": _navigate_ok},
            config=config,
            provider=WorkflowProvider(
                PlannerOutput=[ProviderExecutionError("503")],
                EvaluationOutput=[{"completeness": 0.8}],
            ),
            capabilities=capabilities,
        )
    )

    assert recovered.success is True
    assert recovered.final_url == "https://example.com"


def _timeout_run(policy: str) -> tuple[RunResult, WorkflowProvider, float]:
    provider = WorkflowProvider(
        PlannerOutput=[_plan_payload(("navigate", "https://example.com"), ("getPageContext", ""))],
        EvaluationOutput=[{"completeness": 1.0}],
        AnalysisOutput=[{"recap": "r", "blame": "b", "improvement": "i"}],
        SummaryOutput=[{"summary": "s"}],
    )
    config = _config()
    config.workflow.run_timeout_seconds = 0.3
    config.workflow.timeout_policy = policy  # type: ignore[assignment]
    orchestrator = Orchestrator(
        config=config,
        tools={"navigate": _navigate_ok, "getPageContext": _hang},
        provider=provider,
    )
    started = time.monotonic()
    result = asyncio.run(orchestrator.run("Read https://example.com"))
    _assert_event_ordering(orchestrator.broker.get_history())
    return result, provider, time.monotonic() - started


def test_run_timeout_degrades_without_network_calls() -> None:
    result, provider, elapsed = _timeout_run("degraded")

    assert elapsed < 2.0
    assert result.success is True
    assert result.degraded is True
    assert result.phase is WorkflowPhase.COMPLETED
    assert result.steps == 1
    assert result.final_url == "https://example.com"
    assert result.summary is not None and "Run timed out after 0.3s" in result.summary
    assert provider.calls == ["PlannerOutput"]


def test_run_timeout_can_fail_without_network_calls() -> None:
    result, provider, elapsed = _timeout_run("fail")

    assert elapsed < 2.0
    assert result.success is False
    assert result.phase is WorkflowPhase.FAILED
    assert result.error == "Run timed out after 0.3s"
    assert result.error_analysis is not None and result.error_analysis.from_fallback is True
    assert provider.calls == ["PlannerOutput"]


def test_cancel_forces_failed_and_skips_analysis() -> None:
    orchestrator = Orchestrator(config=_config(), tools={"navigate": _hang})

    async def _run() -> RunResult:
        task = asyncio.create_task(orchestrator.run("Navigate to https://example.com"))
        await asyncio.sleep(0.05)
        orchestrator.cancel()
        return await task

    result = asyncio.run(_run())

    assert result.phase is WorkflowPhase.FAILED
    assert result.error == "Cancelled"
    assert result.error_analysis is None
    history = orchestrator.broker.get_history()
    assert [str(event.phase) for event in history] == ["starting", "executing", "error"]
    assert history[-1].error == "Cancelled"
    statuses = {record.id: record.status for record in orchestrator.progress.snapshot()}
    assert statuses["execute"] is ProgressStatus.ERROR


def test_concurrent_runs_keep_events_apart() -> None:
    async def _run() -> tuple[Orchestrator, Orchestrator]:
        left = Orchestrator(config=_config(), tools={"navigate": _navigate_ok})
        right = Orchestrator(config=_config(), tools={"navigate": _navigate_fail})
        await asyncio.gather(
            left.run("Navigate to https://left.example"),
            right.run("Navigate to https://right.example"),
        )
        return left, right

    left, right = asyncio.run(_run())

    assert {event.run_id for event in left.broker.get_history()} == {left.run_id}
    assert {event.run_id for event in right.broker.get_history()} == {right.run_id}
    assert len(left.broker.get_history()) == 3
    assert len(right.broker.get_history()) == 6


def test_unclassified_provider_errors_fail_open() -> None:
    provider = WorkflowProvider(
        PlannerOutput=[_plan_payload(("navigate", "https://example.com"))],
        EvaluationOutput=[ConnectionResetError("socket closed")],
        SummaryOutput=[ConnectionResetError("socket closed")],
    )
    orchestrator = Orchestrator(
        config=_config(), tools={"navigate": _navigate_ok}, provider=provider
    )

    result = asyncio.run(orchestrator.run("Navigate to https://example.com"))

    assert result.success is True
    assert result.phase is WorkflowPhase.COMPLETED
    assert result.error is None
    assert result.summary is not None and result.summary.startswith("## Summary")


def test_unclassified_analysis_error_still_yields_report() -> None:
    provider = WorkflowProvider(
        PlannerOutput=[_plan_payload(("navigate", "https://example.com"))],
        AnalysisOutput=[KeyError("recap")],
    )
    orchestrator = Orchestrator(
        config=_config(), tools={"navigate": _navigate_fail}, provider=provider
    )

    result = asyncio.run(orchestrator.run("Navigate to https://example.com"))

    assert result.phase is WorkflowPhase.FAILED
    assert "Critical step 1 (navigate) failed" in (result.error or "")
    assert result.error_analysis is not None
    assert result.error_analysis.from_fallback is True


def test_unexpected_error_keeps_report_when_analysis_raises() -> None:
    orchestrator = Orchestrator(config=_config(), tools={"navigate": _navigate_ok})

    async def broken_execute(*args: Any, **kwargs: Any) -> Any:
        raise RuntimeError("executor crashed")

    async def broken_analysis(*args: Any, **kwargs: Any) -> Any:
        raise RuntimeError("analyzer crashed")

    orchestrator._execute = broken_execute  # noqa: SLF001
    orchestrator.analyzer.analyze_failure = broken_analysis

    result = asyncio.run(orchestrator.run("Navigate to https://example.com"))

    assert result.phase is WorkflowPhase.FAILED
    assert result.error == "Unexpected error: executor crashed"
    assert result.error_analysis == fallback_report(0)
