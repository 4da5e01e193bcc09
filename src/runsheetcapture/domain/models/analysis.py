from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from runsheetcapture.domain.models.runsheet import QueueItem

if TYPE_CHECKING:
    from runsheetcapture.infrastructure.documents.cache import DocumentCache


class JobStatus(str, Enum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    ERROR = "error"
    CANCELLED = "cancelled"

    @property
    def is_active(self) -> bool:
        return self in (JobStatus.RUNNING, JobStatus.PAUSED)

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.ERROR, JobStatus.CANCELLED)


class ItemStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    SUCCESS = "success"
    ERROR = "error"
    SKIPPED = "skipped"


@dataclass(slots=True)
class ItemResult:
    row_index: int
    document_name: str
    status: ItemStatus = ItemStatus.PENDING
    extracted: dict[str, str] | None = None
    error: str | None = None
    instrument_count: int | None = None
    skip_reason: str | None = None
    save_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "rowIndex": self.row_index,
            "documentName": self.document_name,
            "status": self.status.value,
        }
        if self.extracted is not None:
            payload["extractedData"] = dict(self.extracted)
        if self.error is not None:
            payload["error"] = self.error
        if self.instrument_count is not None:
            payload["instrumentCount"] = self.instrument_count
        if self.skip_reason is not None:
            payload["skipReason"] = self.skip_reason
        if self.save_error is not None:
            payload["saveError"] = self.save_error
        return payload


@dataclass(slots=True)
class AnalysisJob:
    id: str
    dataset_id: str | None
    dataset_name: str
    columns: list[str]
    column_instructions: dict[str, str]
    queue: list[QueueItem]
    dataset: list[dict[str, str]]
    fill_empty_only: bool
    results: list[ItemResult]
    cursor: int = 0
    status: JobStatus = JobStatus.RUNNING
    created_at: str = ""
    last_save_error: str | None = None
    cache: DocumentCache | None = field(default=None, repr=False, compare=False)

    @property
    def total(self) -> int:
        return len(self.queue)

    def counts(self) -> dict[str, int]:
        out = {status.value: 0 for status in ItemStatus}
        for result in self.results:
            out[result.status.value] += 1
        return out

    def snapshot(self) -> AnalysisJob:
        """Deep copy for observers; the document cache is never shared."""
        return AnalysisJob(
            id=self.id,
            dataset_id=self.dataset_id,
            dataset_name=self.dataset_name,
            columns=list(self.columns),
            column_instructions=dict(self.column_instructions),
            queue=copy.deepcopy(self.queue),
            dataset=copy.deepcopy(self.dataset),
            fill_empty_only=self.fill_empty_only,
            results=copy.deepcopy(self.results),
            cursor=self.cursor,
            status=self.status,
            created_at=self.created_at,
            last_save_error=self.last_save_error,
            cache=None,
        )


@dataclass(frozen=True, slots=True)
class JobMetadata:
    """Bounded projection of a job that is safe to write to local storage.

    Holds no dataset rows, no queue entries and no document bytes.
    """

    job_id: str
    dataset_id: str | None
    dataset_name: str
    status: str
    cursor: int
    total: int
    columns: tuple[str, ...]
    counts: dict[str, int]
    fill_empty_only: bool
    updated_at: str

    @classmethod
    def from_job(cls, job: AnalysisJob, *, updated_at: str) -> JobMetadata:
        return cls(
            job_id=job.id,
            dataset_id=job.dataset_id,
            dataset_name=job.dataset_name,
            status=job.status.value,
            cursor=job.cursor,
            total=job.total,
            columns=tuple(job.columns),
            counts=job.counts(),
            fill_empty_only=job.fill_empty_only,
            updated_at=updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "jobId": self.job_id,
            "datasetId": self.dataset_id,
            "datasetName": self.dataset_name,
            "status": self.status,
            "cursor": self.cursor,
            "total": self.total,
            "columns": list(self.columns),
            "counts": dict(self.counts),
            "fillEmptyOnly": self.fill_empty_only,
            "updatedAt": self.updated_at,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> JobMetadata:
        counts_raw = raw.get("counts")
        counts = (
            {str(k): int(v) for k, v in counts_raw.items()} if isinstance(counts_raw, dict) else {}
        )
        columns_raw = raw.get("columns")
        columns = tuple(str(c) for c in columns_raw) if isinstance(columns_raw, list) else ()
        dataset_id = raw.get("datasetId")
        return cls(
            job_id=str(raw["jobId"]),
            dataset_id=str(dataset_id) if dataset_id else None,
            dataset_name=str(raw.get("datasetName") or ""),
            status=str(raw["status"]),
            cursor=int(raw.get("cursor") or 0),
            total=int(raw.get("total") or 0),
            columns=columns,
            counts=counts,
            fill_empty_only=bool(raw.get("fillEmptyOnly", True)),
            updated_at=str(raw.get("updatedAt") or ""),
        )
