from webpilot.progress import ProgressRecord, ProgressStatus, ProgressTracker


def test_records_move_through_statuses_and_notify() -> None:
    tracker = ProgressTracker()
    seen: list[tuple[str, str]] = []
    remove = tracker.add_listener(lambda record: seen.append((record.id, str(record.status))))

    tracker.ensure("plan", "Create execution plan")
    tracker.start("plan", "cycle 1")
    tracker.complete("plan")
    remove()
    tracker.fail("plan", "late update")

    assert seen == [("plan", "pending"), ("plan", "in_progress"), ("plan", "completed")]
    record = tracker.get("plan")
    assert record is not None
    assert record.status is ProgressStatus.ERROR
    assert record.to_dict() == {
        "id": "plan",
        "title": "Create execution plan",
        "status": "error",
        "description": "late update",
    }


def test_ensure_keeps_existing_record() -> None:
    tracker = ProgressTracker()
    tracker.ensure("execute", "Execute browser actions")
    tracker.start("execute")

    record = tracker.ensure("execute", "Another title")

    assert record.title == "Execute browser actions"
    assert record.status is ProgressStatus.IN_PROGRESS


def test_abort_in_progress_marks_only_active_records() -> None:
    tracker = ProgressTracker()
    tracker.ensure("plan", "Plan")
    tracker.ensure("execute", "Execute")
    tracker.complete("plan")
    tracker.start("execute")

    aborted = tracker.abort_in_progress("Cancelled")

    assert [record.id for record in aborted] == ["execute"]
    statuses = {record.id: record.status for record in tracker.snapshot()}
    assert statuses == {"plan": ProgressStatus.COMPLETED, "execute": ProgressStatus.ERROR}


def test_listener_failure_is_contained() -> None:
    tracker = ProgressTracker()
    received: list[ProgressRecord] = []

    def broken(record: ProgressRecord) -> None:
        raise ValueError("render failed")

    tracker.add_listener(broken)
    tracker.add_listener(received.append)
    tracker.ensure("summarize", "Summarize run")

    assert [record.id for record in received] == ["summarize"]
