from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any

import pytest

from runsheetcapture.application.services.analysis_job_runner import (
    NO_DATA_EXTRACTED,
    AnalysisJobRunner,
)
from runsheetcapture.application.services.document_analysis_service import DocumentAnalysisClient
from runsheetcapture.application.services.progress_events import (
    CompletionEvent,
    ProgressSnapshot,
    RowUpdateEvent,
)
from runsheetcapture.application.services.progress_storage_service import ProgressStorage
from runsheetcapture.application.services.row_merge import (
    ANALYSIS_FLAG_FIELD,
    EXISTING_DATA_SKIP_REASON,
)
from runsheetcapture.application.services.runsheet_persistence_service import (
    RunsheetPersistenceService,
)
from runsheetcapture.core.errors import (
    AlreadyRunningError,
    ExtractionFailedError,
    PersistenceFailedError,
    ValidationError,
)
from runsheetcapture.domain.models.analysis import (
    AnalysisJob,
    ItemResult,
    ItemStatus,
    JobStatus,
)
from runsheetcapture.domain.models.runsheet import DocumentRef, QueueItem
from runsheetcapture.infrastructure.db.repos.kv_repo import KeyValueRepo
from runsheetcapture.infrastructure.db.repos.runsheet_repo import RunsheetRepo
from runsheetcapture.infrastructure.db.sqlite import initialize_schema

COLUMNS = ["Name", "Date"]


def _schema_path() -> Path:
    return (
        Path(__file__).resolve().parents[2]
        / "src"
        / "runsheetcapture"
        / "infrastructure"
        / "db"
        / "schema.sql"
    )


class MemoryDocumentStore:
    def read_bytes(self, storage_path: str) -> bytes:
        return b"%PDF-1.4 " + storage_path.encode("utf-8")


class ScriptedBackend:
    """Answers by file name; an Exception value is raised instead of returned."""

    def __init__(
        self,
        responses: dict[str, Any],
        gate: threading.Event | None = None,
        hold_on: str | None = None,
    ) -> None:
        self.responses = responses
        self.gate = gate
        self.hold_on = hold_on
        self.entered = threading.Event()
        self.calls: list[str] = []

    def extract(self, request: dict[str, Any]) -> dict[str, Any]:
        name = request["fileName"]
        self.calls.append(name)
        if self.gate is not None and (self.hold_on is None or name == self.hold_on):
            self.entered.set()
            self.gate.wait(timeout=5)
        response = self.responses.get(name, {"fields": {}})
        if isinstance(response, Exception):
            raise response
        return response


class FailingFirstSavePersistence:
    def __init__(self, inner: RunsheetPersistenceService) -> None:
        self.inner = inner
        self.attempts = 0

    def save(self, draft, user_id=None):
        self.attempts += 1
        if self.attempts == 1:
            raise PersistenceFailedError("datastore unavailable", retryable=False)
        return self.inner.save(draft, user_id)


class Recorder:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.events: list[Any] = []

    def __call__(self, event: Any) -> None:
        with self._lock:
            self.events.append(event)

    def of(self, kind: type) -> list[Any]:
        with self._lock:
            return [e for e in self.events if isinstance(e, kind)]


def _bootstrap(
    tmp_path: Path,
    backend: ScriptedBackend,
    *,
    user_id: str | None = "user-1",
    item_timeout_seconds: float = 0,
) -> tuple[AnalysisJobRunner, RunsheetPersistenceService, ProgressStorage]:
    db_path = tmp_path / "runsheet.db"
    initialize_schema(db_path, _schema_path())
    persistence = RunsheetPersistenceService(
        RunsheetRepo(db_path),
        identity_provider=lambda: user_id,
        save_retries=0,
    )
    storage = ProgressStorage(KeyValueRepo(db_path))
    runner = AnalysisJobRunner(
        analysis_client=DocumentAnalysisClient(MemoryDocumentStore(), backend),
        persistence=persistence,
        progress_storage=storage,
        item_timeout_seconds=item_timeout_seconds,
        item_delay_seconds=0,
    )
    return runner, persistence, storage


def _queue(count: int) -> list[QueueItem]:
    return [
        QueueItem(
            row_index=index,
            document=DocumentRef(
                id=f"doc-{index}",
                stored_filename=f"deed-{index}.pdf",
                storage_path=f"user-1/deed-{index}.pdf",
                content_type="application/pdf",
            ),
        )
        for index in range(count)
    ]


def _fields(name: str, date: str) -> dict[str, Any]:
    return {"fields": {"Name": name, "Date": date}}


def test_populated_row_is_skipped_without_calling_extractor(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "deed-1.pdf": _fields("Margaret Olsen", "1998-07-01"),
            "deed-2.pdf": ExtractionFailedError("Extraction service returned 500: boom"),
        }
    )
    runner, persistence, _ = _bootstrap(tmp_path, backend)
    recorder = Recorder()
    runner.subscribe(recorder)

    data = [{"Name": "Johnathan Smith", "Date": "2021-03-04"}, {}, {}]
    runner.start(None, "County deeds", COLUMNS, {"Date": "Recording date"}, _queue(3), data)
    assert runner.join(timeout=5)

    job = runner.get_status()
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert backend.calls == ["deed-1.pdf", "deed-2.pdf"]
    assert job.results[0].status is ItemStatus.SUCCESS
    assert job.results[0].skip_reason == EXISTING_DATA_SKIP_REASON
    assert job.results[1].status is ItemStatus.SUCCESS
    assert job.results[1].extracted == {"Name": "Margaret Olsen", "Date": "1998-07-01"}
    assert job.results[2].status is ItemStatus.ERROR
    assert "500" in (job.results[2].error or "")
    assert job.dataset[1] == {"Name": "Margaret Olsen", "Date": "1998-07-01"}

    completion = recorder.of(CompletionEvent)
    assert len(completion) == 1
    assert (completion[0].success_count, completion[0].error_count, completion[0].skipped_count) == (2, 1, 0)
    assert isinstance(recorder.events[-1], CompletionEvent)

    saved = persistence.get_runsheet(job.dataset_id)
    assert saved.name == "County deeds"
    assert saved.data[1]["Name"] == "Margaret Olsen"


def test_ambiguous_document_flags_row_and_processing_continues(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "deed-0.pdf": {"ambiguous": True, "instrumentCount": 3},
            "deed-1.pdf": _fields("Harold Baines", "2004-11-19"),
        }
    )
    runner, persistence, _ = _bootstrap(tmp_path, backend)
    recorder = Recorder()
    runner.subscribe(recorder)

    data = [{"Name": "Partial grantor entry", "Date": "", "Notes": "keep me"}]
    runner.start(None, "Split check", COLUMNS, {}, _queue(2), data)
    assert runner.join(timeout=5)

    job = runner.get_status()
    assert job is not None
    assert job.results[0].status is ItemStatus.SKIPPED
    assert job.results[0].instrument_count == 3
    assert "3" in job.dataset[0][ANALYSIS_FLAG_FIELD]
    assert {k: v for k, v in job.dataset[0].items() if k != ANALYSIS_FLAG_FIELD} == data[0]
    assert job.results[1].status is ItemStatus.SUCCESS
    assert job.dataset[1]["Name"] == "Harold Baines"

    flag_updates = [e for e in recorder.of(RowUpdateEvent) if e.row_index == 0]
    assert flag_updates and set(flag_updates[0].extracted_fields) == {ANALYSIS_FLAG_FIELD}

    saved = persistence.get_runsheet(job.dataset_id)
    assert ANALYSIS_FLAG_FIELD in saved.columns
    assert saved.data[0]["Name"] == "Partial grantor entry"
    assert saved.data[0]["Notes"] == "keep me"


def test_save_failure_is_isolated_to_its_item(tmp_path: Path) -> None:
    backend = ScriptedBackend(
        {
            "deed-0.pdf": _fields("Cynthia Marlowe", "1987-02-12"),
            "deed-1.pdf": _fields("Desmond Hartley", "1990-05-30"),
        }
    )
    runner, persistence, _ = _bootstrap(tmp_path, backend)
    flaky = FailingFirstSavePersistence(persistence)
    runner.persistence = flaky
    recorder = Recorder()
    runner.subscribe(recorder)

    runner.start(None, "Flaky saves", COLUMNS, {}, _queue(2), [])
    assert runner.join(timeout=5)

    job = runner.get_status()
    assert job is not None
    assert job.status is JobStatus.COMPLETED
    assert job.results[0].status is ItemStatus.SUCCESS
    assert job.results[0].extracted == {"Name": "Cynthia Marlowe", "Date": "1987-02-12"}
    assert job.results[0].save_error == "datastore unavailable"
    assert job.results[1].status is ItemStatus.SUCCESS
    assert job.results[1].save_error is None
    assert [e.row_index for e in recorder.of(RowUpdateEvent)] == [1]

    # Later full-dataset saves carry the row whose own save failed.
    saved = persistence.get_runsheet(job.dataset_id)
    assert saved.data[0]["Name"] == "Cynthia Marlowe"


def test_cancel_mid_run_broadcasts_once_and_clears_slot(tmp_path: Path) -> None:
    gate = threading.Event()
    backend = ScriptedBackend(
        {f"deed-{i}.pdf": _fields(f"Owner number {i}", "2000-01-01") for i in range(5)},
        gate=gate,
        hold_on="deed-1.pdf",
    )
    runner, persistence, storage = _bootstrap(tmp_path, backend)
    recorder = Recorder()
    runner.subscribe(recorder)

    runner.start(None, "Cancelled run", COLUMNS, {}, _queue(5), [])
    assert backend.entered.wait(timeout=5)
    assert runner.get_status().cursor == 1

    assert runner.cancel() is True
    events_at_cancel = len(recorder.events)
    final = recorder.events[-1]
    gate.set()
    assert runner.join(timeout=5)

    assert isinstance(final, ProgressSnapshot)
    assert final.status == JobStatus.CANCELLED.value
    assert final.current_data[0]["Name"] == "Owner number 0"
    assert len(recorder.events) == events_at_cancel
    assert runner.get_status() is None
    assert storage.load_last_known() is None
    assert runner.cancel() is False

    saved = persistence.list_runsheets(user_id="user-1")
    assert len(saved) == 1
    assert "Name" not in saved[0].data[1]


def test_start_while_active_is_rejected(tmp_path: Path) -> None:
    gate = threading.Event()
    backend = ScriptedBackend({}, gate=gate)
    runner, _, _ = _bootstrap(tmp_path, backend)

    job_id = runner.start(None, "First", COLUMNS, {}, _queue(2), [])
    assert backend.entered.wait(timeout=5)
    with pytest.raises(AlreadyRunningError):
        runner.start(None, "Second", COLUMNS, {}, _queue(1), [])
    assert runner.get_status().id == job_id

    runner.cancel()
    gate.set()
    assert runner.join(timeout=5)


def test_pause_then_resume_continues_from_cursor(tmp_path: Path) -> None:
    gate = threading.Event()
    backend = ScriptedBackend(
        {f"deed-{i}.pdf": _fields(f"Grantee number {i}", "2011-09-09") for i in range(3)},
        gate=gate,
    )
    runner, _, _ = _bootstrap(tmp_path, backend)
    recorder = Recorder()
    runner.subscribe(recorder)

    runner.start(None, "Paused run", COLUMNS, {}, _queue(3), [])
    assert backend.entered.wait(timeout=5)
    assert runner.pause() is True
    assert runner.pause() is False
    gate.set()
    assert runner.join(timeout=5)

    paused = runner.get_status()
    assert paused.status is JobStatus.PAUSED
    assert paused.cursor == 1
    assert backend.calls == ["deed-0.pdf"]

    assert runner.resume() is True
    assert runner.join(timeout=5)
    job = runner.get_status()
    assert job.status is JobStatus.COMPLETED
    assert backend.calls == ["deed-0.pdf", "deed-1.pdf", "deed-2.pdf"]

    completed = [e.completed for e in recorder.of(ProgressSnapshot)]
    assert completed == sorted(completed)
    assert completed[-1] == 3


def test_extraction_timeout_marks_item_error(tmp_path: Path) -> None:
    gate = threading.Event()
    backend = ScriptedBackend({"deed-0.pdf": _fields("Never returned", "1970-01-01")}, gate=gate)
    runner, _, _ = _bootstrap(tmp_path, backend, item_timeout_seconds=0.2)

    runner.start(None, "Slow backend", COLUMNS, {}, _queue(1), [])
    assert runner.join(timeout=5)
    gate.set()

    job = runner.get_status()
    assert job.status is JobStatus.COMPLETED
    assert job.results[0].status is ItemStatus.ERROR
    assert "timed out" in job.results[0].error
    assert job.dataset[0] == {}


def test_empty_extraction_is_an_item_error(tmp_path: Path) -> None:
    backend = ScriptedBackend({"deed-0.pdf": {"fields": {"Unrelated": "value"}}})
    runner, _, _ = _bootstrap(tmp_path, backend)

    runner.start(None, "Nothing found", COLUMNS, {}, _queue(1), [])
    assert runner.join(timeout=5)

    job = runner.get_status()
    assert job.results[0].status is ItemStatus.ERROR
    assert job.results[0].error == NO_DATA_EXTRACTED


def test_without_identity_results_stay_in_memory(tmp_path: Path) -> None:
    backend = ScriptedBackend({"deed-0.pdf": _fields("Unsaved Owner", "2019-12-31")})
    runner, persistence, _ = _bootstrap(tmp_path, backend, user_id=None)

    runner.start(None, "Anonymous", COLUMNS, {}, _queue(1), [])
    assert runner.join(timeout=5)

    job = runner.get_status()
    assert job.status is JobStatus.COMPLETED
    assert job.results[0].status is ItemStatus.SUCCESS
    assert job.dataset_id is None
    assert job.last_save_error is None
    assert persistence.list_runsheets() == []


def test_overwrite_policy_replaces_existing_values(tmp_path: Path) -> None:
    backend = ScriptedBackend({"deed-0.pdf": _fields("Corrected Owner", "2020-02-02")})
    runner, _, _ = _bootstrap(tmp_path, backend)

    data = [{"Name": "Old", "Date": ""}]
    runner.start(None, "Overwrite", COLUMNS, {}, _queue(1), data, fill_empty_only=False)
    assert runner.join(timeout=5)

    job = runner.get_status()
    assert job.dataset[0] == {"Name": "Corrected Owner", "Date": "2020-02-02"}
    # The caller's rows are copied at start.
    assert data[0]["Name"] == "Old"


def test_interrupted_checkpoint_is_reported_but_not_resumed(tmp_path: Path) -> None:
    backend = ScriptedBackend({})
    runner, _, storage = _bootstrap(tmp_path, backend)

    stale = AnalysisJob(
        id="analysis_previous",
        dataset_id="sheet-1",
        dataset_name="Left behind",
        columns=list(COLUMNS),
        column_instructions={},
        queue=_queue(4),
        dataset=[{}, {}, {}, {}],
        fill_empty_only=True,
        results=[ItemResult(row_index=i, document_name=f"deed-{i}.pdf") for i in range(4)],
        cursor=2,
        status=JobStatus.RUNNING,
    )
    storage.checkpoint(stale)

    metadata = runner.detect_interrupted()
    assert metadata is not None
    assert metadata.job_id == "analysis_previous"
    assert metadata.cursor == 2
    assert runner.get_status() is None
    assert backend.calls == []


def test_failing_subscriber_does_not_stop_the_job(tmp_path: Path) -> None:
    backend = ScriptedBackend({"deed-0.pdf": _fields("Resilient Owner", "2015-06-06")})
    runner, _, _ = _bootstrap(tmp_path, backend)

    def explode(event: Any) -> None:
        raise RuntimeError("observer bug")

    recorder = Recorder()
    runner.subscribe(explode)
    unsubscribe = runner.subscribe(recorder)

    runner.start(None, "Observers", COLUMNS, {}, _queue(1), [])
    assert runner.join(timeout=5)

    assert len(recorder.of(CompletionEvent)) == 1
    unsubscribe()
    assert len(runner.broadcaster) == 1


def test_unexpected_loop_failure_marks_job_error(tmp_path: Path) -> None:
    backend = ScriptedBackend({"deed-0.pdf": _fields("Doomed Owner", "2001-01-01")})
    runner, _, storage = _bootstrap(tmp_path, backend)
    original = storage.checkpoint
    calls = {"count": 0}

    def flaky_checkpoint(job: AnalysisJob):
        calls["count"] += 1
        if calls["count"] > 1:
            raise RuntimeError("disk on fire")
        return original(job)

    storage.checkpoint = flaky_checkpoint
    recorder = Recorder()
    runner.subscribe(recorder)

    runner.start(None, "Fatal", COLUMNS, {}, _queue(1), [])
    assert runner.join(timeout=5)

    job = runner.get_status()
    assert job.status is JobStatus.ERROR
    snapshots = recorder.of(ProgressSnapshot)
    assert snapshots and snapshots[-1].status == JobStatus.ERROR.value
    assert recorder.of(CompletionEvent) == []


def test_cancel_after_completion_releases_slot_without_rewriting_status(tmp_path: Path) -> None:
    backend = ScriptedBackend({"deed-0.pdf": _fields("Finished Owner", "2019-04-04")})
    runner, _, storage = _bootstrap(tmp_path, backend)
    recorder = Recorder()
    runner.subscribe(recorder)

    runner.start(None, "Done already", COLUMNS, {}, _queue(1), [])
    assert runner.join(timeout=5)
    assert runner.get_status().status is JobStatus.COMPLETED
    events_at_completion = len(recorder.events)

    assert runner.cancel() is True

    assert len(recorder.events) == events_at_completion
    assert isinstance(recorder.events[-1], CompletionEvent)
    assert all(
        e.status != JobStatus.CANCELLED.value for e in recorder.of(ProgressSnapshot)
    )
    assert runner.get_status() is None
    assert storage.load_last_known() is None
    assert runner.cancel() is False


@pytest.mark.parametrize(
    "columns, message",
    [
        (["Name", "Name"], "Duplicate"),
        (["Name", "  "], "must have names"),
    ],
)
def test_start_rejects_unusable_columns(tmp_path: Path, columns: list[str], message: str) -> None:
    backend = ScriptedBackend({})
    runner, _, storage = _bootstrap(tmp_path, backend)

    with pytest.raises(ValidationError, match=message):
        runner.start(None, "Bad schema", columns, {}, _queue(1), [])

    assert runner.get_status() is None
    assert storage.load_last_known() is None
    assert backend.calls == []


def test_rejected_save_is_logged_as_an_error(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    backend = ScriptedBackend({"deed-0.pdf": _fields("Rejected Owner", "2003-03-03")})
    runner, persistence, _ = _bootstrap(tmp_path, backend)
    runner.persistence = FailingFirstSavePersistence(persistence)
    caplog.set_level(logging.WARNING, logger="runsheetcapture.application.services.analysis_job_runner")

    runner.start(None, "Rejected", COLUMNS, {}, _queue(1), [])
    assert runner.join(timeout=5)

    rejected = [r for r in caplog.records if "was rejected" in r.getMessage()]
    assert rejected and rejected[0].levelno == logging.ERROR


def test_shutdown_closes_http_collaborators(tmp_path: Path) -> None:
    class ClosingBackend(ScriptedBackend):
        closed = False

        def close(self) -> None:
            self.closed = True

    backend = ClosingBackend({"deed-0.pdf": _fields("Closing Owner", "2007-07-07")})
    runner, _, _ = _bootstrap(tmp_path, backend)

    runner.start(None, "Closing", COLUMNS, {}, _queue(1), [])
    assert runner.join(timeout=5)
    runner.shutdown(timeout=1)

    assert backend.closed is True
    assert runner.get_status().status is JobStatus.COMPLETED
