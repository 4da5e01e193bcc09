from __future__ import annotations

import json
import logging
import queue
from typing import Any, Iterator

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from runsheetcapture.application.services.analysis_factory import (
    build_analysis_runner,
    build_persistence,
    build_progress_storage,
)
from runsheetcapture.application.services.analysis_job_runner import AnalysisJobRunner
from runsheetcapture.application.services.analysis_manifest import AnalysisManifest
from runsheetcapture.application.services.navigation_guard import NavigationGuard
from runsheetcapture.application.services.progress_events import (
    CompletionEvent,
    ProgressBroadcaster,
    ProgressEvent,
    ProgressSnapshot,
)
from runsheetcapture.application.services.project_service import ProjectService
from runsheetcapture.application.services.session_service import SessionIdentity
from runsheetcapture.core.config import AnalysisSettings, AppPaths, load_settings
from runsheetcapture.core.errors import (
    AlreadyRunningError,
    RunsheetError,
    RunsheetNotFoundError,
)
from runsheetcapture.domain.models.analysis import AnalysisJob, JobMetadata, JobStatus
from runsheetcapture.domain.models.runsheet import Runsheet
from runsheetcapture.infrastructure.documents.store import DocumentStore
from runsheetcapture.infrastructure.extraction.http_backend import ExtractionBackend

logger = logging.getLogger(__name__)

SSE_KEEPALIVE_SECONDS = 15.0


class SessionRequest(BaseModel):
    user_id: str


class DocumentRefPayload(BaseModel):
    storage_path: str
    id: str | None = None
    stored_filename: str | None = None
    content_type: str | None = None


class QueueEntryPayload(BaseModel):
    row_index: int
    document: DocumentRefPayload


class AnalysisStartRequest(BaseModel):
    name: str
    columns: list[str]
    documents: list[QueueEntryPayload]
    data: list[dict[str, Any]] = []
    column_instructions: dict[str, str] = {}
    dataset_id: str | None = None
    fill_empty_only: bool = True


def _http_error(exc: RunsheetError) -> HTTPException:
    if isinstance(exc, AlreadyRunningError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, RunsheetNotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def _job_payload(job: AnalysisJob) -> dict[str, Any]:
    return {
        "jobId": job.id,
        "datasetId": job.dataset_id,
        "datasetName": job.dataset_name,
        "status": job.status.value,
        "cursor": job.cursor,
        "total": job.total,
        "fillEmptyOnly": job.fill_empty_only,
        "counts": job.counts(),
        "createdAt": job.created_at,
        "lastSaveError": job.last_save_error,
        "results": [result.to_dict() for result in job.results],
        "currentData": job.dataset,
    }


def _runsheet_payload(runsheet: Runsheet, *, include_data: bool = True) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": runsheet.id,
        "name": runsheet.name,
        "userId": runsheet.user_id,
        "columns": list(runsheet.columns),
        "columnInstructions": dict(runsheet.column_instructions),
        "rowCount": len(runsheet.data),
        "createdAt": runsheet.created_at,
        "updatedAt": runsheet.updated_at,
    }
    if include_data:
        payload["data"] = runsheet.data
    return payload


def _sse_event(event: str, payload: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(payload, ensure_ascii=True)}\n\n"


def create_app(
    paths: AppPaths,
    settings: AnalysisSettings | None = None,
    *,
    backend: ExtractionBackend | None = None,
    document_store: DocumentStore | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    app = FastAPI(title="Runsheet Capture", version="0.1.0")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    ProjectService(paths).init_project()
    identity = SessionIdentity(settings.user_id)
    broadcaster = ProgressBroadcaster()
    runner_cache: AnalysisJobRunner | None = None

    def get_runner() -> AnalysisJobRunner:
        nonlocal runner_cache
        if runner_cache is None:
            runner_cache = build_analysis_runner(
                paths,
                settings,
                identity_provider=identity,
                backend=backend,
                document_store=document_store,
                broadcaster=broadcaster,
            )
        return runner_cache

    def current_job() -> AnalysisJob | None:
        return runner_cache.get_status() if runner_cache is not None else None

    @app.on_event("startup")
    def _report_interrupted_job() -> None:
        interrupted = build_progress_storage(paths, settings).load_interrupted()
        if interrupted is not None:
            logger.warning(
                "Found interrupted analysis job %s for '%s' at %d/%d; it will not be resumed.",
                interrupted.job_id,
                interrupted.dataset_name,
                interrupted.cursor,
                interrupted.total,
            )

    @app.on_event("shutdown")
    def _shutdown_analysis_runner() -> None:
        if runner_cache is not None:
            runner_cache.shutdown()

    @app.get("/api/health")
    def api_health() -> dict[str, Any]:
        return {"ok": True, "db_path": str(paths.db_path)}

    @app.get("/api/session")
    def api_session() -> dict[str, Any]:
        return {"ok": True, "user_id": identity()}

    @app.post("/api/session")
    def api_sign_in(req: SessionRequest) -> dict[str, Any]:
        try:
            identity.sign_in(req.user_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, "user_id": identity()}

    @app.delete("/api/session")
    def api_sign_out() -> dict[str, Any]:
        identity.sign_out()
        return {"ok": True, "user_id": None}

    @app.post("/api/analysis/start")
    def api_analysis_start(req: AnalysisStartRequest) -> dict[str, Any]:
        try:
            manifest = AnalysisManifest.from_dict(req.model_dump())
            job_id = get_runner().start(
                manifest.dataset_id,
                manifest.dataset_name,
                manifest.columns,
                manifest.column_instructions,
                manifest.queue,
                manifest.data,
                fill_empty_only=manifest.fill_empty_only,
            )
        except RunsheetError as exc:
            raise _http_error(exc) from exc
        return {"ok": True, "job_id": job_id}

    @app.post("/api/analysis/pause")
    def api_analysis_pause() -> dict[str, Any]:
        changed = runner_cache.pause() if runner_cache is not None else False
        return {"ok": True, "changed": changed}

    @app.post("/api/analysis/resume")
    def api_analysis_resume() -> dict[str, Any]:
        changed = runner_cache.resume() if runner_cache is not None else False
        return {"ok": True, "changed": changed}

    @app.post("/api/analysis/cancel")
    def api_analysis_cancel() -> dict[str, Any]:
        changed = runner_cache.cancel() if runner_cache is not None else False
        return {"ok": True, "changed": changed}

    @app.get("/api/analysis/status")
    def api_analysis_status() -> dict[str, Any]:
        job = current_job()
        return {"ok": True, "job": _job_payload(job) if job is not None else None}

    @app.get("/api/analysis/interrupted")
    def api_analysis_interrupted() -> dict[str, Any]:
        metadata: JobMetadata | None
        if runner_cache is not None:
            metadata = runner_cache.detect_interrupted()
        else:
            metadata = build_progress_storage(paths, settings).load_interrupted()
        return {"ok": True, "interrupted": metadata.to_dict() if metadata is not None else None}

    @app.get("/api/analysis/navigation")
    def api_analysis_navigation() -> dict[str, Any]:
        if runner_cache is None:
            return {"block": False, "message": None}
        guard = NavigationGuard(runner_cache)
        message = guard.before_unload_message()
        return {"block": message is not None, "message": message}

    @app.get("/api/analysis/events")
    def api_analysis_events() -> StreamingResponse:
        event_queue: queue.Queue[ProgressEvent] = queue.Queue()
        unsubscribe = broadcaster.subscribe(event_queue.put)
        job = current_job()

        def finished(event: ProgressEvent) -> bool:
            if isinstance(event, CompletionEvent):
                return True
            return isinstance(event, ProgressSnapshot) and JobStatus(event.status) in (
                JobStatus.CANCELLED,
                JobStatus.ERROR,
            )

        def iterator() -> Iterator[str]:
            try:
                if job is None:
                    yield _sse_event("idle", {"job": None})
                    return
                initial = ProgressSnapshot.from_job(job)
                yield _sse_event(initial.kind, initial.to_dict())
                if job.status.is_terminal:
                    return
                while True:
                    try:
                        event = event_queue.get(timeout=SSE_KEEPALIVE_SECONDS)
                    except queue.Empty:
                        yield ": keep-alive\n\n"
                        continue
                    if event.job_id != job.id:
                        continue
                    yield _sse_event(event.kind, event.to_dict())
                    if finished(event):
                        return
            finally:
                unsubscribe()

        return StreamingResponse(
            iterator(),
            media_type="text/event-stream",
            headers={
                "Cache-Control": "no-cache",
                "Connection": "keep-alive",
                "X-Accel-Buffering": "no",
            },
        )

    @app.get("/api/runsheets")
    def api_runsheets(user_id: str | None = None, limit: int = 100) -> dict[str, Any]:
        owner = user_id or identity()
        if owner is None:
            raise HTTPException(status_code=401, detail="Sign in to list runsheets.")
        runsheets = build_persistence(paths, settings, identity).list_runsheets(user_id=owner, limit=limit)
        return {
            "ok": True,
            "count": len(runsheets),
            "runsheets": [_runsheet_payload(r, include_data=False) for r in runsheets],
        }

    @app.get("/api/runsheets/{runsheet_id}")
    def api_runsheet(runsheet_id: str) -> dict[str, Any]:
        try:
            runsheet = build_persistence(paths, settings, identity).get_runsheet(runsheet_id)
        except RunsheetError as exc:
            raise _http_error(exc) from exc
        return {"ok": True, "runsheet": _runsheet_payload(runsheet)}

    return app
