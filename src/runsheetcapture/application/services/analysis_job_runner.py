from __future__ import annotations

import copy
import functools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, Callable, Iterable

from runsheetcapture.application.services.document_analysis_service import (
    AmbiguousDocument,
    AnalysisOutcome,
    DocumentAnalysisClient,
)
from runsheetcapture.application.services.progress_events import (
    CompletionEvent,
    ProgressBroadcaster,
    ProgressCallback,
    ProgressEvent,
    ProgressSnapshot,
    RowUpdateEvent,
)
from runsheetcapture.application.services.progress_storage_service import ProgressStorage
from runsheetcapture.application.services.row_merge import (
    EXISTING_DATA_SKIP_REASON,
    ensure_row_count,
    flag_ambiguous_row,
    merge_extracted_fields,
    row_has_real_data,
)
from runsheetcapture.application.services.runsheet_persistence_service import (
    RunsheetPersistenceService,
)
from runsheetcapture.core.errors import (
    AlreadyRunningError,
    AmbiguousDocumentError,
    ExtractionFailedError,
    NoAuthenticatedUserError,
    PersistenceFailedError,
    ValidationError,
)
from runsheetcapture.core.ids import new_job_id
from runsheetcapture.core.time import now_utc_iso
from runsheetcapture.domain.models.analysis import (
    AnalysisJob,
    ItemResult,
    ItemStatus,
    JobMetadata,
    JobStatus,
)
from runsheetcapture.domain.models.runsheet import DocumentRef, QueueItem, Runsheet, RunsheetDraft
from runsheetcapture.infrastructure.documents.cache import DocumentCache

logger = logging.getLogger(__name__)

NO_DATA_EXTRACTED = "No data extracted from document"


class AnalysisJobRunner:
    """Runs one batch document-analysis job at a time on a background worker thread.

    ``start``/``pause``/``resume``/``cancel`` are the only mutators. Status flips
    happen under the runner lock and the worker reads status at each iteration
    boundary, so pause and cancel are cooperative: an extraction call already in
    flight finishes before the change takes effect. Events are published while
    the lock is held, which keeps a cancelled job from broadcasting again.
    """

    def __init__(
        self,
        *,
        analysis_client: DocumentAnalysisClient,
        persistence: RunsheetPersistenceService,
        progress_storage: ProgressStorage,
        broadcaster: ProgressBroadcaster | None = None,
        item_timeout_seconds: float = 120.0,
        item_delay_seconds: float = 0.5,
        cache_max_entries: int = 64,
        cache_max_bytes: int = 256 * 1024 * 1024,
    ) -> None:
        self.analysis_client = analysis_client
        self.persistence = persistence
        self.progress_storage = progress_storage
        self.broadcaster = broadcaster or ProgressBroadcaster()
        self.item_timeout_seconds = max(0.0, item_timeout_seconds)
        self.item_delay_seconds = max(0.0, item_delay_seconds)
        self.cache_max_entries = cache_max_entries
        self.cache_max_bytes = cache_max_bytes
        self._lock = threading.RLock()
        self._wakeup = threading.Event()
        self._job: AnalysisJob | None = None
        self._loop_token: object | None = None
        self._worker: threading.Thread | None = None

    # -- public contract -------------------------------------------------

    def start(
        self,
        dataset_id: str | None,
        dataset_name: str,
        columns: list[str],
        column_instructions: dict[str, str],
        queue: Iterable[QueueItem | tuple[int, DocumentRef]],
        current_data: list[dict[str, str]],
        fill_empty_only: bool = True,
    ) -> str:
        columns = self._validate_columns(columns)
        items = [self._coerce_item(entry) for entry in queue]
        with self._lock:
            active = self._job
            if active is not None and active.status.is_active:
                raise AlreadyRunningError(
                    f"Analysis job {active.id} is already {active.status.value}; "
                    "cancel it before starting another."
                )

            dataset = copy.deepcopy(list(current_data))
            if items:
                ensure_row_count(dataset, max(item.row_index for item in items) + 1)

            job = AnalysisJob(
                id=new_job_id(),
                dataset_id=dataset_id,
                dataset_name=dataset_name,
                columns=list(columns),
                column_instructions=dict(column_instructions),
                queue=items,
                dataset=dataset,
                fill_empty_only=fill_empty_only,
                results=[
                    ItemResult(row_index=item.row_index, document_name=item.document.stored_filename)
                    for item in items
                ],
                created_at=now_utc_iso(),
                cache=DocumentCache(max_entries=self.cache_max_entries, max_bytes=self.cache_max_bytes),
            )
            self._job = job
            self.progress_storage.checkpoint(job)
            logger.info(
                "Started analysis job %s for '%s' (%d documents, %s)",
                job.id,
                dataset_name,
                job.total,
                "fill empty fields only" if fill_empty_only else "overwrite all fields",
            )
            self._ensure_loop(job)
            return job.id

    def pause(self) -> bool:
        with self._lock:
            job = self._job
            if job is None or job.status is not JobStatus.RUNNING:
                return False
            job.status = JobStatus.PAUSED
            self.progress_storage.checkpoint(job)
            self._publish(ProgressSnapshot.from_job(job))
            logger.info("Paused analysis job %s at %d/%d", job.id, job.cursor, job.total)
        self._wakeup.set()
        return True

    def resume(self) -> bool:
        with self._lock:
            job = self._job
            if job is None or job.status is not JobStatus.PAUSED:
                return False
            job.status = JobStatus.RUNNING
            self.progress_storage.checkpoint(job)
            self._publish(ProgressSnapshot.from_job(job))
            logger.info("Resumed analysis job %s at %d/%d", job.id, job.cursor, job.total)
            self._ensure_loop(job)
        return True

    def cancel(self) -> bool:
        with self._lock:
            job = self._job
            if job is None:
                return False
            self._job = None
            self._loop_token = None
            self.progress_storage.clear()
            if job.cache is not None:
                job.cache.clear()
            if job.status.is_terminal:
                logger.info("Released finished analysis job %s (%s)", job.id, job.status.value)
                return True
            job.status = JobStatus.CANCELLED
            self._publish(ProgressSnapshot.from_job(job))
            logger.info("Cancelled analysis job %s at %d/%d", job.id, job.cursor, job.total)
        self._wakeup.set()
        return True

    def get_status(self) -> AnalysisJob | None:
        with self._lock:
            return self._job.snapshot() if self._job is not None else None

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        return self.broadcaster.subscribe(callback)

    def detect_interrupted(self) -> JobMetadata | None:
        """Report a checkpoint left active by an earlier process. Never resumes it."""
        metadata = self.progress_storage.load_interrupted()
        if metadata is None:
            return None
        with self._lock:
            if self._job is not None and self._job.id == metadata.job_id:
                return None
        return metadata

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the current worker thread to exit; True when it has."""
        worker = self._worker
        if worker is None:
            return True
        worker.join(timeout=timeout)
        return not worker.is_alive()

    def shutdown(self, timeout: float = 2.0) -> None:
        """Pause any running job, wait for the worker, then release HTTP clients."""
        self.pause()
        self.join(timeout=timeout)
        self.analysis_client.close()

    # -- worker loop -----------------------------------------------------

    def _ensure_loop(self, job: AnalysisJob) -> None:
        if self._loop_token is not None and self._worker is not None and self._worker.is_alive():
            # The worker notices the status flip at its next boundary.
            return
        token = object()
        self._loop_token = token
        self._worker = threading.Thread(
            target=self._run_loop,
            args=(job, token),
            daemon=True,
            name="background-document-analysis",
        )
        self._worker.start()

    def _release_loop(self, token: object) -> None:
        if self._loop_token is token:
            self._loop_token = None

    def _is_current(self, job: AnalysisJob) -> bool:
        return self._job is job and job.status is not JobStatus.CANCELLED

    def _run_loop(self, job: AnalysisJob, token: object) -> None:
        try:
            while True:
                with self._lock:
                    if not self._is_current(job) or job.status is not JobStatus.RUNNING:
                        self._release_loop(token)
                        return
                    if job.cursor >= job.total:
                        break
                    index = job.cursor
                    job.results[index].status = ItemStatus.ANALYZING
                    self.progress_storage.checkpoint(job)
                    self._publish(ProgressSnapshot.from_job(job))

                self._process_item(job, index)

                with self._lock:
                    if not self._is_current(job):
                        self._release_loop(token)
                        return
                    job.cursor = index + 1
                    self.progress_storage.checkpoint(job)
                    self._publish(ProgressSnapshot.from_job(job))

                if self.item_delay_seconds > 0:
                    self._wakeup.wait(timeout=self.item_delay_seconds)
                    self._wakeup.clear()

            self._complete(job, token)
        except Exception:
            logger.exception("Background analysis loop failed for job %s", job.id)
            with self._lock:
                if self._is_current(job) and job.status.is_active:
                    job.status = JobStatus.ERROR
                    self._publish(ProgressSnapshot.from_job(job))
                    try:
                        self.progress_storage.checkpoint(job)
                    except Exception:
                        logger.exception("Unable to checkpoint failed job %s", job.id)
                self._release_loop(token)
        finally:
            with self._lock:
                self._release_loop(token)

    def _process_item(self, job: AnalysisJob, index: int) -> None:
        item = job.queue[index]
        with self._lock:
            if not self._is_current(job):
                return
            if job.fill_empty_only and row_has_real_data(job.dataset[item.row_index], job.columns):
                result = job.results[index]
                result.status = ItemStatus.SUCCESS
                result.skip_reason = EXISTING_DATA_SKIP_REASON
                logger.debug("Row %d already populated; skipping %s", item.row_index, item.document.stored_filename)
                return

        started = time.monotonic()
        try:
            outcome = self._analyze(job, item)
        except Exception as exc:
            with self._lock:
                if self._is_current(job):
                    result = job.results[index]
                    result.status = ItemStatus.ERROR
                    result.error = str(exc) or exc.__class__.__name__
            logger.warning(
                "Analysis failed for row %d (%s): %s",
                item.row_index,
                item.document.stored_filename,
                exc,
            )
            return
        logger.debug(
            "Analyzed %s in %.2fs",
            item.document.stored_filename,
            time.monotonic() - started,
        )

        with self._lock:
            if not self._is_current(job):
                return
            result = job.results[index]
            row = job.dataset[item.row_index]
            if isinstance(outcome, AmbiguousDocument):
                written = flag_ambiguous_row(row, outcome.instrument_count)
                result.status = ItemStatus.SKIPPED
                result.instrument_count = outcome.instrument_count
                result.skip_reason = str(AmbiguousDocumentError(outcome.instrument_count))
            elif not outcome.fields:
                result.status = ItemStatus.ERROR
                result.error = NO_DATA_EXTRACTED
                return
            else:
                written = merge_extracted_fields(row, outcome.fields, fill_empty_only=job.fill_empty_only)
                result.status = ItemStatus.SUCCESS
                result.extracted = dict(outcome.fields)
            draft = self._draft(job)

        saved, save_error = self._persist(job, draft)

        with self._lock:
            if not self._is_current(job):
                return
            self._adopt_saved(job, saved)
            job.last_save_error = save_error
            if save_error is not None:
                job.results[index].save_error = save_error
                return
            self._publish(
                RowUpdateEvent(
                    job_id=job.id,
                    row_index=item.row_index,
                    extracted_fields=dict(written),
                    cursor=job.cursor,
                    total=job.total,
                )
            )

    def _complete(self, job: AnalysisJob, token: object) -> None:
        with self._lock:
            if not self._is_current(job) or job.status is not JobStatus.RUNNING:
                self._release_loop(token)
                return
            draft = self._draft(job)

        saved, save_error = self._persist(job, draft)

        with self._lock:
            if not self._is_current(job) or job.status is not JobStatus.RUNNING:
                self._release_loop(token)
                return
            self._adopt_saved(job, saved)
            job.last_save_error = save_error
            job.status = JobStatus.COMPLETED
            self._release_loop(token)
            self.progress_storage.checkpoint(job)
            if job.cache is not None:
                job.cache.clear()
            self._publish(ProgressSnapshot.from_job(job))
            completion = CompletionEvent.from_job(job)
            self._publish(completion)
            logger.info(
                "Completed analysis job %s: %d succeeded, %d failed, %d skipped of %d",
                job.id,
                completion.success_count,
                completion.error_count,
                completion.skipped_count,
                completion.total,
            )

    # -- collaborators ---------------------------------------------------

    def _analyze(self, job: AnalysisJob, item: QueueItem) -> AnalysisOutcome:
        call = functools.partial(
            self.analysis_client.analyze,
            item.document,
            job.columns,
            job.column_instructions,
            job.cache,
        )
        if self.item_timeout_seconds <= 0:
            return call()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="document-analysis")
        try:
            future = executor.submit(call)
            try:
                return future.result(timeout=self.item_timeout_seconds)
            except FutureTimeoutError as exc:
                future.cancel()
                raise ExtractionFailedError(
                    f"Extraction timed out after {self.item_timeout_seconds:g}s"
                ) from exc
        finally:
            executor.shutdown(wait=False)

    def _persist(self, job: AnalysisJob, draft: RunsheetDraft) -> tuple[Runsheet | None, str | None]:
        try:
            return self.persistence.save(draft), None
        except NoAuthenticatedUserError:
            logger.info("No authenticated user; keeping job %s results in memory only", job.id)
            return None, None
        except PersistenceFailedError as exc:
            if exc.retryable:
                logger.warning("Saving runsheet '%s' failed; the next save will retry: %s", draft.name, exc)
            else:
                logger.error("Saving runsheet '%s' was rejected: %s", draft.name, exc)
            return None, str(exc)

    @staticmethod
    def _adopt_saved(job: AnalysisJob, saved: Runsheet | None) -> None:
        if saved is not None and job.dataset_id != saved.id:
            job.dataset_id = saved.id

    @staticmethod
    def _draft(job: AnalysisJob) -> RunsheetDraft:
        columns = list(job.columns)
        known = set(columns)
        for row in job.dataset:
            for key in row:
                if key not in known:
                    columns.append(key)
                    known.add(key)
        return RunsheetDraft(
            name=job.dataset_name,
            columns=columns,
            data=copy.deepcopy(job.dataset),
            column_instructions=dict(job.column_instructions),
            runsheet_id=job.dataset_id,
        )

    def _publish(self, event: ProgressEvent) -> None:
        self.broadcaster.publish(event)

    @staticmethod
    def _validate_columns(columns: Iterable[str]) -> list[str]:
        checked = list(columns)
        blank = [column for column in checked if not str(column or "").strip()]
        if blank:
            raise ValidationError("All columns must have names.")
        duplicates = sorted({column for column in checked if checked.count(column) > 1})
        if duplicates:
            raise ValidationError(f"Duplicate column names found: {', '.join(duplicates)}")
        return checked

    @staticmethod
    def _coerce_item(entry: Any) -> QueueItem:
        if isinstance(entry, QueueItem):
            item = entry
        else:
            try:
                row_index, document = entry
            except (TypeError, ValueError) as exc:
                raise ValidationError(f"Queue entries must be (row_index, document) pairs: {entry!r}") from exc
            item = QueueItem(row_index=int(row_index), document=document)
        if item.row_index < 0:
            raise ValidationError(f"Row index must be non-negative: {item.row_index}")
        if not isinstance(item.document, DocumentRef):
            raise ValidationError(f"Queue entry for row {item.row_index} has no document reference.")
        return item
