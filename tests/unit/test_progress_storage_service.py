from pathlib import Path

import pytest

from runsheetcapture.application.services.progress_storage_service import ProgressStorage
from runsheetcapture.core.errors import StorageQuotaError
from runsheetcapture.domain.models.analysis import AnalysisJob, ItemResult, JobStatus
from runsheetcapture.domain.models.runsheet import DocumentRef, QueueItem
from runsheetcapture.infrastructure.db.repos.kv_repo import KeyValueRepo
from runsheetcapture.infrastructure.db.sqlite import initialize_schema


def _schema_path() -> Path:
    return (
        Path(__file__).resolve().parents[2]
        / "src"
        / "runsheetcapture"
        / "infrastructure"
        / "db"
        / "schema.sql"
    )


def _kv(tmp_path: Path, quota_bytes: int = 64 * 1024) -> KeyValueRepo:
    db_path = tmp_path / "runsheet.db"
    initialize_schema(db_path, _schema_path())
    return KeyValueRepo(db_path, quota_bytes=quota_bytes)


def _job(status: JobStatus = JobStatus.RUNNING) -> AnalysisJob:
    queue = [
        QueueItem(row_index=i, document=DocumentRef(id=f"d{i}", stored_filename=f"f{i}.pdf", storage_path=f"u/f{i}.pdf"))
        for i in range(2)
    ]
    return AnalysisJob(
        id="analysis_abc",
        dataset_id="sheet-9",
        dataset_name="Big sheet",
        columns=["Grantor"],
        column_instructions={},
        queue=queue,
        dataset=[{"Grantor": "x" * 500}, {}],
        fill_empty_only=True,
        results=[ItemResult(row_index=i, document_name=f"f{i}.pdf") for i in range(2)],
        cursor=1,
        status=status,
    )


def test_checkpoint_round_trips_metadata_without_rows(tmp_path: Path) -> None:
    kv = _kv(tmp_path)
    storage = ProgressStorage(kv)

    storage.checkpoint(_job())
    raw = kv.get("background_analysis_job")
    loaded = ProgressStorage(kv).load_last_known()

    assert raw is not None and "x" * 50 not in raw
    assert loaded is not None
    assert loaded.job_id == "analysis_abc"
    assert loaded.cursor == 1
    assert loaded.total == 2
    assert loaded.counts["pending"] == 2
    assert ProgressStorage(kv).load_interrupted() is not None


def test_quota_failure_drops_to_memory_only(tmp_path: Path) -> None:
    kv = _kv(tmp_path, quota_bytes=64)
    storage = ProgressStorage(kv)

    metadata = storage.checkpoint(_job())

    assert storage.memory_only is True
    assert kv.get("background_analysis_job") is None
    assert storage.load_last_known() == metadata


def test_clear_and_corrupt_entries(tmp_path: Path) -> None:
    kv = _kv(tmp_path)
    storage = ProgressStorage(kv)
    storage.checkpoint(_job(JobStatus.COMPLETED))
    assert storage.load_interrupted() is None

    storage.clear()
    assert storage.load_last_known() is None

    kv.set("background_analysis_job", "{not json")
    assert storage.load_last_known() is None


def test_kv_quota_counts_other_keys(tmp_path: Path) -> None:
    kv = _kv(tmp_path, quota_bytes=10)
    kv.set("a", "12345")
    kv.set("a", "1234567890")

    with pytest.raises(StorageQuotaError):
        kv.set("b", "1")

    kv.delete("a")
    kv.set("b", "1")
    assert kv.get("b") == "1"
