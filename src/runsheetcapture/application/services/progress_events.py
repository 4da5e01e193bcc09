from __future__ import annotations

import itertools
import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable

from runsheetcapture.domain.models.analysis import AnalysisJob, ItemStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class RowUpdateEvent:
    """Fields written to a single row, so observers can patch their copy."""

    job_id: str
    row_index: int
    extracted_fields: dict[str, str]
    cursor: int
    total: int

    kind = "row"

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "rowIndex": self.row_index,
            "extractedFields": dict(self.extracted_fields),
            "cursor": self.cursor,
            "total": self.total,
        }


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    job_id: str
    total: int
    completed: int
    status: str
    results: tuple[dict[str, Any], ...]
    current_data: tuple[dict[str, str], ...]
    last_save_error: str | None = None

    kind = "progress"

    @classmethod
    def from_job(cls, job: AnalysisJob) -> ProgressSnapshot:
        return cls(
            job_id=job.id,
            total=job.total,
            completed=job.cursor,
            status=job.status.value,
            results=tuple(result.to_dict() for result in job.results),
            current_data=tuple(dict(row) for row in job.dataset),
            last_save_error=job.last_save_error,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "jobId": self.job_id,
            "total": self.total,
            "completed": self.completed,
            "status": self.status,
            "results": [dict(result) for result in self.results],
            "currentData": [dict(row) for row in self.current_data],
        }
        if self.last_save_error:
            payload["lastSaveError"] = self.last_save_error
        return payload


@dataclass(frozen=True, slots=True)
class CompletionEvent:
    job_id: str
    total: int
    success_count: int
    error_count: int
    skipped_count: int

    kind = "completion"

    @classmethod
    def from_job(cls, job: AnalysisJob) -> CompletionEvent:
        counts = job.counts()
        return cls(
            job_id=job.id,
            total=job.total,
            success_count=counts[ItemStatus.SUCCESS.value],
            error_count=counts[ItemStatus.ERROR.value],
            skipped_count=counts[ItemStatus.SKIPPED.value],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "skippedCount": self.skipped_count,
            "total": self.total,
            "successCount": self.success_count,
            "errorCount": self.error_count,
        }


ProgressEvent = RowUpdateEvent | ProgressSnapshot | CompletionEvent
ProgressCallback = Callable[[ProgressEvent], None]


class ProgressBroadcaster:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: dict[int, ProgressCallback] = {}
        self._ids = itertools.count(1)

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        with self._lock:
            token = next(self._ids)
            self._subscribers[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                self._subscribers.pop(token, None)

        return unsubscribe

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            callbacks = list(self._subscribers.values())
        for callback in callbacks:
            try:
                callback(event)
            except Exception:
                logger.exception("Progress subscriber failed on %s event", event.kind)

    def __len__(self) -> int:
        with self._lock:
            return len(self._subscribers)
