from pathlib import Path

import pytest

from runsheetcapture.core.config import load_paths, load_settings


def test_paths_default_under_project_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RUNSHEET_HOME", raising=False)
    paths = load_paths(tmp_path)

    assert paths.data_dir == tmp_path.resolve() / ".runsheet"
    assert paths.db_path == paths.data_dir / "runsheet.db"
    assert paths.documents_dir == paths.data_dir / "documents"


def test_runsheet_home_overrides_data_dir(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RUNSHEET_HOME", str(tmp_path / "elsewhere"))

    assert load_paths(tmp_path / "proj").data_dir == (tmp_path / "elsewhere").resolve()


def test_settings_read_environment_and_ignore_bad_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RUNSHEET_EXTRACTION_URL", " https://extract.test/analyze ")
    monkeypatch.setenv("RUNSHEET_ITEM_TIMEOUT_SECONDS", "0")
    monkeypatch.setenv("RUNSHEET_ITEM_DELAY_SECONDS", "-3")
    monkeypatch.setenv("RUNSHEET_CACHE_MAX_ENTRIES", "abc")
    monkeypatch.setenv("RUNSHEET_SAVE_RETRIES", "5")
    monkeypatch.setenv("RUNSHEET_USER_ID", "   ")

    settings = load_settings()

    assert settings.extraction_url == "https://extract.test/analyze"
    assert settings.item_timeout_seconds == 0
    assert settings.item_delay_seconds == 0.5
    assert settings.cache_max_entries == 64
    assert settings.save_retries == 5
    assert settings.user_id is None
