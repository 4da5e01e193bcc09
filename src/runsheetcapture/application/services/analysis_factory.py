from __future__ import annotations

from runsheetcapture.application.services.analysis_job_runner import AnalysisJobRunner
from runsheetcapture.application.services.document_analysis_service import DocumentAnalysisClient
from runsheetcapture.application.services.progress_events import ProgressBroadcaster
from runsheetcapture.application.services.progress_storage_service import ProgressStorage
from runsheetcapture.application.services.runsheet_persistence_service import (
    IdentityProvider,
    RunsheetPersistenceService,
)
from runsheetcapture.core.config import AnalysisSettings, AppPaths
from runsheetcapture.core.errors import ConfigurationError
from runsheetcapture.infrastructure.db.repos.kv_repo import KeyValueRepo
from runsheetcapture.infrastructure.db.repos.runsheet_repo import RunsheetRepo
from runsheetcapture.infrastructure.documents.store import (
    DocumentStore,
    FileSystemDocumentStore,
    HttpDocumentStore,
)
from runsheetcapture.infrastructure.extraction.http_backend import (
    ExtractionBackend,
    HttpExtractionBackend,
)


def build_document_store(paths: AppPaths, settings: AnalysisSettings) -> DocumentStore:
    if settings.document_base_url:
        return HttpDocumentStore(settings.document_base_url)
    return FileSystemDocumentStore(paths.documents_dir)


def build_extraction_backend(settings: AnalysisSettings) -> ExtractionBackend:
    if not settings.extraction_url:
        raise ConfigurationError(
            "No extraction service configured. Set RUNSHEET_EXTRACTION_URL to the analysis endpoint."
        )
    return HttpExtractionBackend(
        settings.extraction_url,
        api_key=settings.extraction_api_key,
        timeout=settings.item_timeout_seconds or 120.0,
    )


def build_persistence(
    paths: AppPaths,
    settings: AnalysisSettings,
    identity_provider: IdentityProvider | None,
) -> RunsheetPersistenceService:
    return RunsheetPersistenceService(
        RunsheetRepo(paths.db_path),
        identity_provider=identity_provider,
        save_retries=settings.save_retries,
    )


def build_progress_storage(paths: AppPaths, settings: AnalysisSettings) -> ProgressStorage:
    return ProgressStorage(KeyValueRepo(paths.db_path, quota_bytes=settings.progress_quota_bytes))


def build_analysis_runner(
    paths: AppPaths,
    settings: AnalysisSettings,
    *,
    identity_provider: IdentityProvider | None = None,
    backend: ExtractionBackend | None = None,
    document_store: DocumentStore | None = None,
    broadcaster: ProgressBroadcaster | None = None,
) -> AnalysisJobRunner:
    """Wire a runner against the project database and the configured services."""
    client = DocumentAnalysisClient(
        document_store=document_store or build_document_store(paths, settings),
        backend=backend or build_extraction_backend(settings),
    )
    return AnalysisJobRunner(
        analysis_client=client,
        persistence=build_persistence(paths, settings, identity_provider),
        progress_storage=build_progress_storage(paths, settings),
        broadcaster=broadcaster,
        item_timeout_seconds=settings.item_timeout_seconds,
        item_delay_seconds=settings.item_delay_seconds,
        cache_max_entries=settings.cache_max_entries,
        cache_max_bytes=settings.cache_max_bytes,
    )
