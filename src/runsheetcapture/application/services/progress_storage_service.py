from __future__ import annotations

import json
import logging
import sqlite3

from runsheetcapture.core.errors import StorageQuotaError
from runsheetcapture.core.time import now_utc_iso
from runsheetcapture.domain.models.analysis import AnalysisJob, JobMetadata, JobStatus
from runsheetcapture.infrastructure.db.repos.kv_repo import KeyValueRepo

logger = logging.getLogger(__name__)

PROGRESS_STORAGE_KEY = "background_analysis_job"


class ProgressStorage:
    """Checkpoints a bounded projection of the active job to local storage.

    Write failures never propagate: the storage drops to memory-only mode and
    keeps the latest projection in memory until a later write succeeds.
    """

    def __init__(self, kv_repo: KeyValueRepo, *, key: str = PROGRESS_STORAGE_KEY) -> None:
        self.kv_repo = kv_repo
        self.key = key
        self.memory_only = False
        self._last: JobMetadata | None = None

    def checkpoint(self, job: AnalysisJob) -> JobMetadata:
        metadata = JobMetadata.from_job(job, updated_at=now_utc_iso())
        self._last = metadata
        try:
            self.kv_repo.set(self.key, json.dumps(metadata.to_dict(), ensure_ascii=True, sort_keys=True))
        except (StorageQuotaError, sqlite3.Error) as exc:
            if not self.memory_only:
                logger.warning("Progress checkpoint not persisted; continuing in memory only: %s", exc)
            self.memory_only = True
        else:
            if self.memory_only:
                logger.info("Progress checkpoint storage available again.")
            self.memory_only = False
        return metadata

    def clear(self) -> None:
        self._last = None
        try:
            self.kv_repo.delete(self.key)
        except sqlite3.Error as exc:
            logger.warning("Unable to clear progress checkpoint: %s", exc)

    def load_last_known(self) -> JobMetadata | None:
        try:
            raw = self.kv_repo.get(self.key)
        except sqlite3.Error as exc:
            logger.warning("Unable to read progress checkpoint: %s", exc)
            return self._last
        if raw is None:
            return self._last
        try:
            parsed = json.loads(raw)
            return JobMetadata.from_dict(parsed) if isinstance(parsed, dict) else None
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable progress checkpoint: %s", exc)
            return None

    def load_interrupted(self) -> JobMetadata | None:
        """The last checkpoint, only when it was left running or paused."""
        metadata = self.load_last_known()
        if metadata is None or metadata.status not in (JobStatus.RUNNING.value, JobStatus.PAUSED.value):
            return None
        return metadata
