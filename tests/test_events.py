import pytest

from webpilot.events import (
    EventBroker,
    EventOrderError,
    ToolExecutionEvent,
    ToolPhase,
    create_broker,
)


def _run_call(broker: EventBroker, tool_call_id: str, tool_name: str, *, ok: bool = True) -> None:
    broker.emit(tool_call_id=tool_call_id, tool_name=tool_name, phase=ToolPhase.STARTING)
    broker.emit(tool_call_id=tool_call_id, tool_name=tool_name, phase=ToolPhase.EXECUTING)
    if ok:
        broker.emit(tool_call_id=tool_call_id, tool_name=tool_name, phase=ToolPhase.COMPLETED)
    else:
        broker.emit(
            tool_call_id=tool_call_id,
            tool_name=tool_name,
            phase=ToolPhase.ERROR,
            error="selector not found",
        )


def test_subscribers_receive_events_in_publish_order() -> None:
    broker = create_broker(run_id="run-a")
    first: list[tuple[str, str]] = []
    second: list[tuple[str, str]] = []
    broker.subscribe(lambda event: first.append((event.tool_call_id, str(event.phase))))
    broker.subscribe(lambda event: second.append((event.tool_call_id, str(event.phase))))

    _run_call(broker, "call-1", "navigate")
    _run_call(broker, "call-2", "click", ok=False)

    expected = [
        ("call-1", "starting"),
        ("call-1", "executing"),
        ("call-1", "completed"),
        ("call-2", "starting"),
        ("call-2", "executing"),
        ("call-2", "error"),
    ]
    assert first == expected
    assert second == expected
    assert all(event.run_id == "run-a" for event in broker.get_history())


def test_failing_subscriber_does_not_block_delivery() -> None:
    broker = EventBroker()
    received: list[ToolPhase] = []

    def explode(event: ToolExecutionEvent) -> None:
        raise RuntimeError("ui crashed")

    broker.subscribe(explode)
    broker.subscribe(lambda event: received.append(event.phase))

    _run_call(broker, "call-1", "navigate")

    assert received == [ToolPhase.STARTING, ToolPhase.EXECUTING, ToolPhase.COMPLETED]
    assert len(broker.get_history()) == 3


def test_handler_can_unsubscribe_itself_mid_delivery() -> None:
    broker = EventBroker()
    seen: list[str] = []
    later: list[str] = []

    def once(event: ToolExecutionEvent) -> None:
        seen.append(str(event.phase))
        broker.unsubscribe(subscription)

    subscription = broker.subscribe(once)
    broker.subscribe(lambda event: later.append(str(event.phase)))

    _run_call(broker, "call-1", "navigate")

    assert seen == ["starting"]
    assert later == ["starting", "executing", "completed"]
    assert broker.subscriber_count == 1

    broker.unsubscribe(subscription)
    assert broker.subscriber_count == 1


def test_out_of_order_phases_are_rejected() -> None:
    broker = EventBroker()

    with pytest.raises(EventOrderError):
        broker.emit(tool_call_id="call-1", tool_name="click", phase=ToolPhase.EXECUTING)

    _run_call(broker, "call-2", "click")
    with pytest.raises(EventOrderError):
        broker.emit(tool_call_id="call-2", tool_name="click", phase=ToolPhase.ERROR)

    assert [event.tool_call_id for event in broker.get_history()] == ["call-2"] * 3


def test_history_is_bounded_and_filterable() -> None:
    broker = EventBroker(max_history=4)
    _run_call(broker, "call-1", "navigate")
    _run_call(broker, "call-2", "click")

    history = broker.get_history()
    assert len(history) == 4
    assert history[0].tool_call_id == "call-1"
    assert [str(event.phase) for event in broker.tool_call_history("call-2")] == [
        "starting",
        "executing",
        "completed",
    ]

    broker.clear_history()
    assert broker.get_history() == []


def test_brokers_from_factory_share_nothing() -> None:
    left = create_broker()
    right = create_broker()
    left_events: list[ToolExecutionEvent] = []
    left.subscribe(left_events.append)

    _run_call(right, "call-1", "navigate")

    assert left.run_id != right.run_id
    assert left_events == []
    assert left.get_history() == []


def test_event_payload_uses_camel_case_keys() -> None:
    event = ToolExecutionEvent(
        tool_call_id="call-9",
        tool_name="type",
        phase=ToolPhase.ERROR,
        timestamp=12.5,
        error="timeout",
    )

    assert event.to_dict() == {
        "toolCallId": "call-9",
        "toolName": "type",
        "phase": "error",
        "timestamp": 12.5,
        "error": "timeout",
    }


def test_finished_calls_are_not_tracked_forever() -> None:
    broker = EventBroker(max_history=3)
    for index in range(10):
        _run_call(broker, f"call-{index}", "scroll")
    broker.emit(tool_call_id="call-open", tool_name="click", phase=ToolPhase.STARTING)

    assert broker.open_call_count == 1
    assert len(broker._finished_calls) == 3  # noqa: SLF001
    with pytest.raises(EventOrderError):
        broker.emit(tool_call_id="call-9", tool_name="scroll", phase=ToolPhase.STARTING)

    broker.clear_history()
    assert broker._finished_calls == {}  # noqa: SLF001
    assert broker.open_call_count == 1
