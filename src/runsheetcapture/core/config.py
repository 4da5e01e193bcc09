from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class AppPaths:
    project_root: Path
    data_dir: Path
    db_path: Path
    documents_dir: Path


@dataclass(frozen=True)
class AnalysisSettings:
    extraction_url: str | None = None
    extraction_api_key: str | None = None
    document_base_url: str | None = None
    item_timeout_seconds: float = 120.0
    item_delay_seconds: float = 0.5
    cache_max_entries: int = 64
    cache_max_bytes: int = 256 * 1024 * 1024
    progress_quota_bytes: int = 64 * 1024
    save_retries: int = 2
    user_id: str | None = None


DEFAULT_DATA_DIRNAME = ".runsheet"


def load_paths(project_root: Path | None = None) -> AppPaths:
    root = (project_root or Path.cwd()).expanduser().resolve()

    home_raw = os.getenv("RUNSHEET_HOME")
    if home_raw:
        data_dir = Path(home_raw).expanduser().resolve()
    else:
        data_dir = root / DEFAULT_DATA_DIRNAME

    return AppPaths(
        project_root=root,
        data_dir=data_dir,
        db_path=data_dir / "runsheet.db",
        documents_dir=data_dir / "documents",
    )


def load_settings() -> AnalysisSettings:
    defaults = AnalysisSettings()
    return AnalysisSettings(
        extraction_url=_env_str("RUNSHEET_EXTRACTION_URL"),
        extraction_api_key=_env_str("RUNSHEET_EXTRACTION_API_KEY"),
        document_base_url=_env_str("RUNSHEET_DOCUMENT_BASE_URL"),
        item_timeout_seconds=_env_non_negative_float(
            "RUNSHEET_ITEM_TIMEOUT_SECONDS", defaults.item_timeout_seconds
        ),
        item_delay_seconds=_env_non_negative_float(
            "RUNSHEET_ITEM_DELAY_SECONDS", defaults.item_delay_seconds
        ),
        cache_max_entries=_env_positive_int("RUNSHEET_CACHE_MAX_ENTRIES", defaults.cache_max_entries),
        cache_max_bytes=_env_positive_int("RUNSHEET_CACHE_MAX_BYTES", defaults.cache_max_bytes),
        progress_quota_bytes=_env_positive_int(
            "RUNSHEET_PROGRESS_QUOTA_BYTES", defaults.progress_quota_bytes
        ),
        save_retries=_env_non_negative_int("RUNSHEET_SAVE_RETRIES", defaults.save_retries),
        user_id=_env_str("RUNSHEET_USER_ID"),
    )


def _env_str(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    return value or None


def _env_non_negative_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def _env_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_non_negative_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(str(raw).strip())
    except ValueError:
        return default
    return max(0, value)
