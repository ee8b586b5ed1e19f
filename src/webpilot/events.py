"""Tool-execution lifecycle events and the per-run broker that delivers them."""

from __future__ import annotations

import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum
from uuid import uuid4

from loguru import logger


class ToolPhase(StrEnum):
    STARTING = "starting"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"


TERMINAL_PHASES = frozenset({ToolPhase.COMPLETED, ToolPhase.ERROR})

_NEXT_ALLOWED: dict[ToolPhase | None, frozenset[ToolPhase]] = {
    None: frozenset({ToolPhase.STARTING}),
    ToolPhase.STARTING: frozenset({ToolPhase.EXECUTING}),
    ToolPhase.EXECUTING: TERMINAL_PHASES,
}


@dataclass(frozen=True, slots=True)
class ToolExecutionEvent:
    tool_call_id: str
    tool_name: str
    phase: ToolPhase
    timestamp: float
    error: str | None = None
    run_id: str | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "toolCallId": self.tool_call_id,
            "toolName": self.tool_name,
            "phase": str(self.phase),
            "timestamp": self.timestamp,
        }
        if self.error is not None:
            payload["error"] = self.error
        if self.run_id is not None:
            payload["runId"] = self.run_id
        return payload


EventHandler = Callable[[ToolExecutionEvent], None]


class EventOrderError(ValueError):
    """Raised when a publisher breaks starting -> executing -> terminal ordering."""


@dataclass(frozen=True, slots=True)
class Subscription:
    id: str
    handler: EventHandler


class EventBroker:
    """In-process publish/subscribe bus scoped to a single run.

    Delivery is synchronous and in publish order. Subscriber failures are
    logged and never interrupt delivery to the remaining subscribers or the
    publishing stage. History is bounded by ``max_history`` (0 keeps all).
    """

    def __init__(self, *, run_id: str | None = None, max_history: int = 1000) -> None:
        self.run_id = run_id
        self.max_history = max(0, int(max_history))
        self._subscriptions: list[Subscription] = []
        self._history: deque[ToolExecutionEvent] = deque(maxlen=self.max_history or None)
        self._open_calls: dict[str, ToolPhase] = {}
        self._finished_calls: dict[str, ToolPhase] = {}

    def subscribe(self, handler: EventHandler) -> Subscription:
        subscription = Subscription(id=f"sub-{uuid4().hex[:8]}", handler=handler)
        self._subscriptions.append(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self._subscriptions = [item for item in self._subscriptions if item.id != subscription.id]

    def emit(
        self,
        *,
        tool_call_id: str,
        tool_name: str,
        phase: ToolPhase,
        error: str | None = None,
    ) -> ToolExecutionEvent:
        event = ToolExecutionEvent(
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            phase=phase,
            timestamp=time.time(),
            error=error,
            run_id=self.run_id,
        )
        self.publish(event)
        return event

    def publish(self, event: ToolExecutionEvent) -> None:
        previous = self._open_calls.get(event.tool_call_id) or self._finished_calls.get(
            event.tool_call_id
        )
        allowed = _NEXT_ALLOWED.get(previous, frozenset())
        if event.phase not in allowed:
            raise EventOrderError(
                f"Phase '{event.phase}' cannot follow '{previous or 'nothing'}' "
                f"for tool call {event.tool_call_id}"
            )
        self._track_phase(event)
        self._history.append(event)
        logger.debug(
            "[TOOL_LIFECYCLE] {tool} {phase}",
            tool=event.tool_name,
            phase=str(event.phase),
            tool_call_id=event.tool_call_id,
            run_id=self.run_id,
        )

        # Snapshot so handlers may unsubscribe themselves mid-delivery.
        for subscription in tuple(self._subscriptions):
            try:
                subscription.handler(event)
            except Exception:
                logger.exception(
                    "[TOOL_LIFECYCLE] Subscriber failed",
                    subscription_id=subscription.id,
                    tool_call_id=event.tool_call_id,
                )

    def _track_phase(self, event: ToolExecutionEvent) -> None:
        if event.phase not in TERMINAL_PHASES:
            self._open_calls[event.tool_call_id] = event.phase
            return
        self._open_calls.pop(event.tool_call_id, None)
        self._finished_calls[event.tool_call_id] = event.phase
        # Finished ids are kept as long as their events could still be in history.
        if self.max_history and len(self._finished_calls) > self.max_history:
            del self._finished_calls[next(iter(self._finished_calls))]

    @property
    def open_call_count(self) -> int:
        return len(self._open_calls)

    def get_history(self) -> list[ToolExecutionEvent]:
        return list(self._history)

    def tool_call_history(self, tool_call_id: str) -> list[ToolExecutionEvent]:
        return [event for event in self._history if event.tool_call_id == tool_call_id]

    def clear_history(self) -> None:
        self._history.clear()
        self._finished_calls.clear()

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)


def create_broker(*, run_id: str | None = None, max_history: int = 1000) -> EventBroker:
    return EventBroker(run_id=run_id or f"run-{uuid4().hex[:12]}", max_history=max_history)
