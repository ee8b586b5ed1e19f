"""Sequential plan execution against a tool registry.

Each tool invocation gets its own ``tool_call_id`` and is reported through the
run's ``EventBroker`` as starting, executing, then completed or error. Steps
never run concurrently; browser state is shared by every tool. A sync tool
that overruns its timeout keeps its worker thread, so the next call waits up
to ``tool_settle_seconds`` for it and is refused if it is still running.
"""

from __future__ import annotations

import asyncio
import inspect
import time
from collections.abc import Callable
from uuid import uuid4

from loguru import logger

from webpilot.config import ExecutionConfig
from webpilot.errors import CallTimeoutError, UnknownToolError
from webpilot.events import EventBroker, ToolPhase
from webpilot.plan import Plan, Step, StepStatus
from webpilot.state import ExecutedStep
from webpilot.tools import ToolCallable, ToolRegistry, ToolResult, call_tool

ANSWER_ACTION = "answer"
NAVIGATE_ACTION = "navigate"

StepStarted = Callable[[Step], None]
StepFinished = Callable[[ExecutedStep], None]


class ExecutionStage:
    role = "executor"

    def __init__(
        self,
        registry: ToolRegistry,
        broker: EventBroker,
        *,
        config: ExecutionConfig | None = None,
    ) -> None:
        self.registry = registry
        self.broker = broker
        self.config = config or ExecutionConfig()
        self._lingering: asyncio.Task[ToolResult] | None = None
        self._lingering_tool = ""

    def is_critical(self, plan: Plan, step: Step) -> bool:
        if (
            self.config.critical_first_navigation
            and step.index == 1
            and step.action == NAVIGATE_ACTION
        ):
            return True
        if step.action in self.config.critical_actions:
            return True
        return self.config.honor_planner_critical_paths and step.index in plan.critical_paths

    async def execute(
        self,
        plan: Plan,
        *,
        cycle: int = 1,
        on_start: StepStarted | None = None,
        on_record: StepFinished | None = None,
    ) -> list[ExecutedStep]:
        records: list[ExecutedStep] = []
        halted_at: int | None = None
        for step in plan.steps:
            critical = self.is_critical(plan, step)
            if halted_at is not None:
                record = ExecutedStep(
                    cycle=cycle,
                    step=step.index,
                    action=step.action,
                    target=step.target,
                    status=StepStatus.SKIPPED,
                    duration=0.0,
                    error=f"critical step {halted_at} failed",
                    attempts=0,
                    critical=critical,
                )
                records.append(record)
                if on_record is not None:
                    on_record(record)
                continue

            if on_start is not None:
                on_start(step)
            record = await self.run_step(step, cycle=cycle, critical=critical)
            records.append(record)
            if on_record is not None:
                on_record(record)

            if record.status is StepStatus.FAILED and critical:
                logger.warning(
                    "[EXECUTION] Critical step {index} failed, skipping the rest of the plan",
                    index=step.index,
                    action=step.action,
                    error=record.error,
                )
                halted_at = step.index
        return records

    async def run_step(self, step: Step, *, cycle: int = 1, critical: bool = False) -> ExecutedStep:
        started = time.monotonic()
        tool = self.registry.get(step.action)

        if tool is None and step.action == ANSWER_ACTION:
            return ExecutedStep(
                cycle=cycle,
                step=step.index,
                action=step.action,
                target=step.target,
                status=StepStatus.SUCCEEDED,
                duration=time.monotonic() - started,
                critical=critical,
                output=step.target or None,
            )

        if tool is None:
            error = UnknownToolError(step.action, list(self.registry))
            logger.warning("[EXECUTION] {error}", error=str(error), step=step.index)
            return ExecutedStep(
                cycle=cycle,
                step=step.index,
                action=step.action,
                target=step.target,
                status=StepStatus.FAILED,
                duration=time.monotonic() - started,
                error=str(error),
                critical=critical,
            )

        max_attempts = 1 + max(0, self.config.step_max_retries)
        errors: list[str] = []
        result = ToolResult(success=False)
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                logger.info(
                    "[EXECUTION] Retrying step {index} ({attempt}/{total})",
                    index=step.index,
                    attempt=attempt,
                    total=max_attempts,
                )
                if self.config.retry_delay_seconds > 0:
                    await asyncio.sleep(self.config.retry_delay_seconds)
            if not await self._settle_lingering_call():
                errors.append(
                    f"Tool '{self._lingering_tool}' is still running "
                    f"{self.config.tool_settle_seconds:.1f}s after its timeout; "
                    "no further tool calls were started"
                )
                logger.error("[EXECUTION] {error}", error=errors[-1], step=step.index)
                result = ToolResult(success=False, error=errors[-1])
                break
            result = await self._invoke_tool(step, tool)
            if result.success:
                break
            errors.append(result.error or "Tool reported failure")

        duration = time.monotonic() - started
        if result.success:
            url = result.url
            if url is None and step.action == NAVIGATE_ACTION:
                url = step.target or None
            return ExecutedStep(
                cycle=cycle,
                step=step.index,
                action=step.action,
                target=step.target,
                status=StepStatus.SUCCEEDED,
                duration=duration,
                url=url,
                attempts=len(errors) + 1,
                critical=critical,
                output=result.text,
            )

        return ExecutedStep(
            cycle=cycle,
            step=step.index,
            action=step.action,
            target=step.target,
            status=StepStatus.FAILED,
            duration=duration,
            error=errors[-1],
            attempts=len(errors),
            repeated_failure=len(errors) > 1 and len(set(errors)) == 1,
            critical=critical,
        )

    async def _settle_lingering_call(self) -> bool:
        """Wait out a timed-out tool call. False when it is still running after the grace period."""
        call = self._lingering
        if call is None:
            return True
        if not call.done():
            logger.warning(
                "[EXECUTION] Waiting for timed-out tool '{tool}' to return",
                tool=self._lingering_tool,
                grace=self.config.tool_settle_seconds,
            )
            await asyncio.wait({call}, timeout=max(0.0, self.config.tool_settle_seconds))
        if not call.done():
            return False
        self._lingering = None
        if not call.cancelled() and call.exception() is not None:
            logger.opt(exception=call.exception()).debug(
                "[EXECUTION] Timed-out tool raised", tool=self._lingering_tool
            )
        return True

    async def _invoke_tool(self, step: Step, tool: ToolCallable) -> ToolResult:
        tool_call_id = f"call-{uuid4().hex[:12]}"
        timeout = self.config.tool_timeout_seconds
        self.broker.emit(tool_call_id=tool_call_id, tool_name=step.action, phase=ToolPhase.STARTING)
        self.broker.emit(tool_call_id=tool_call_id, tool_name=step.action, phase=ToolPhase.EXECUTING)
        call = asyncio.ensure_future(call_tool(tool, step.target, int(timeout * 1000)))
        try:
            done, _ = await asyncio.wait({call}, timeout=timeout)
        except asyncio.CancelledError:
            call.cancel()
            self.broker.emit(
                tool_call_id=tool_call_id,
                tool_name=step.action,
                phase=ToolPhase.ERROR,
                error="Cancelled",
            )
            raise

        if call not in done:
            # Worker threads cannot be interrupted; the call is awaited before the next one.
            if inspect.iscoroutinefunction(tool):
                call.cancel()
            self._lingering = call
            self._lingering_tool = step.action
            result = ToolResult(
                success=False, error=str(CallTimeoutError(f"tool '{step.action}'", timeout))
            )
        else:
            try:
                result = call.result()
            except Exception as exc:
                logger.opt(exception=exc).debug(
                    "[EXECUTION] Tool raised", tool=step.action, tool_call_id=tool_call_id
                )
                result = ToolResult(success=False, error=str(exc) or type(exc).__name__)

        if result.success:
            self.broker.emit(
                tool_call_id=tool_call_id, tool_name=step.action, phase=ToolPhase.COMPLETED
            )
        else:
            self.broker.emit(
                tool_call_id=tool_call_id,
                tool_name=step.action,
                phase=ToolPhase.ERROR,
                error=result.error or "Tool reported failure",
            )
        return result
