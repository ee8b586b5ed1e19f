from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import StrEnum

from loguru import logger


class ProgressStatus(StrEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class ProgressRecord:
    id: str
    title: str
    status: ProgressStatus = ProgressStatus.PENDING
    description: str | None = None
    updated_at: str = ""

    def to_dict(self) -> dict[str, str]:
        payload = {"id": self.id, "title": self.title, "status": str(self.status)}
        if self.description:
            payload["description"] = self.description
        return payload


ProgressListener = Callable[[ProgressRecord], None]


class ProgressTracker:
    """One record per logical task, for task-queue style views."""

    def __init__(self) -> None:
        self._records: dict[str, ProgressRecord] = {}
        self._listeners: list[ProgressListener] = []

    def add_listener(self, listener: ProgressListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _notify(self, record: ProgressRecord) -> None:
        for listener in tuple(self._listeners):
            try:
                listener(record)
            except Exception:
                logger.exception("[PROGRESS] Listener failed", record_id=record.id)

    def ensure(self, record_id: str, title: str, description: str | None = None) -> ProgressRecord:
        existing = self._records.get(record_id)
        if existing is not None:
            return existing
        record = ProgressRecord(
            id=record_id, title=title, description=description, updated_at=_utcnow_iso()
        )
        self._records[record_id] = record
        self._notify(record)
        return record

    def update(
        self,
        record_id: str,
        status: ProgressStatus,
        *,
        description: str | None = None,
        title: str | None = None,
    ) -> ProgressRecord:
        current = self._records.get(record_id) or ProgressRecord(
            id=record_id, title=title or record_id
        )
        record = replace(
            current,
            status=status,
            title=title or current.title,
            description=description if description is not None else current.description,
            updated_at=_utcnow_iso(),
        )
        self._records[record_id] = record
        self._notify(record)
        return record

    def start(self, record_id: str, description: str | None = None) -> ProgressRecord:
        return self.update(record_id, ProgressStatus.IN_PROGRESS, description=description)

    def complete(self, record_id: str, description: str | None = None) -> ProgressRecord:
        return self.update(record_id, ProgressStatus.COMPLETED, description=description)

    def fail(self, record_id: str, description: str | None = None) -> ProgressRecord:
        return self.update(record_id, ProgressStatus.ERROR, description=description)

    def abort_in_progress(self, description: str) -> list[ProgressRecord]:
        active = [
            record.id
            for record in self._records.values()
            if record.status is ProgressStatus.IN_PROGRESS
        ]
        return [self.fail(record_id, description) for record_id in active]

    def get(self, record_id: str) -> ProgressRecord | None:
        return self._records.get(record_id)

    def snapshot(self) -> list[ProgressRecord]:
        return list(self._records.values())
