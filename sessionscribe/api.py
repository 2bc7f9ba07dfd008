"""FastAPI application exposing upload, processing and review endpoints."""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from fastapi import BackgroundTasks, FastAPI, File, Form, Header, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict
from sqlalchemy.exc import IntegrityError

from .config import Settings, get_settings
from .db import create_db_engine
from .errors import (
    InvalidTransitionError,
    RunInProgressError,
    SessionScribeError,
    UploadError,
)
from .models import SessionRecording, new_id
from .note_generator import ClinicalNoteGenerator
from .observability import configure_logging, hash_identifier
from .pipeline import PipelineOrchestrator
from .reid import reidentify_note
from .storage import RecordingStorage
from .store import SessionNoteStore
from .transcription import TranscriptionAdapter
from .upload import base_mime_type, validate_audio

logger = structlog.get_logger(__name__)


@dataclass
class Services:
    settings: Settings
    store: SessionNoteStore
    storage: RecordingStorage
    pipeline: PipelineOrchestrator


def build_services(settings: Optional[Settings] = None, engine=None) -> Services:
    settings = settings or get_settings()
    store = SessionNoteStore(engine or create_db_engine(), stale_after_seconds=settings.run_stale_after_seconds)
    store.initialise()
    storage = RecordingStorage(settings.recordings_dir, fetch_timeout=settings.provider_timeout_seconds)
    pipeline = PipelineOrchestrator(
        store,
        TranscriptionAdapter(storage, settings),
        ClinicalNoteGenerator(settings),
        region=settings.phi_region,
    )
    return Services(settings=settings, store=store, storage=storage, pipeline=pipeline)


class ReidentifyRequest(BaseModel):
    """Original values held by the reviewing clinician."""

    model_config = ConfigDict(extra="forbid")

    patientName: Optional[str] = None
    location: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None


_RECORDING_REF = re.compile(r"[A-Za-z0-9][A-Za-z0-9_.-]{0,127}")

_STATUS_FOR_ERROR = (
    (RunInProgressError, 409),
    (InvalidTransitionError, 409),
    (UploadError, 400),
)


def _error_response(status_code: int, error: str, details: Optional[str] = None) -> JSONResponse:
    body: Dict[str, Any] = {"error": error}
    if details:
        body["details"] = details
    return JSONResponse(status_code=status_code, content=body)


async def _process_in_background(services: Services, recording_id: str) -> None:
    try:
        await services.pipeline.process(recording_id)
    except (RunInProgressError, LookupError) as exc:
        # Processing can be triggered manually later.
        logger.warning(
            "api.auto_process_skipped",
            recording=hash_identifier(recording_id),
            error=type(exc).__name__,
        )


def create_app(services: Optional[Services] = None) -> FastAPI:
    configure_logging()
    app = FastAPI(title="SessionScribe API")
    app.state.services = services

    def _services() -> Services:
        if app.state.services is None:
            app.state.services = build_services()
        return app.state.services

    def _recording_for_note(note_id: str) -> str:
        recording_id = _services().store.get_note_recording_id(note_id)
        if recording_id is None:
            raise HTTPException(status_code=404, detail="Session note not found")
        return recording_id

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
        return _error_response(exc.status_code, str(exc.detail))

    @app.exception_handler(SessionScribeError)
    async def domain_exception_handler(request: Request, exc: SessionScribeError) -> JSONResponse:
        status_code = 500
        for error_type, mapped in _STATUS_FOR_ERROR:
            if isinstance(exc, error_type):
                status_code = mapped
                break
        if isinstance(exc, UploadError) and exc.status_code:
            status_code = exc.status_code
        return _error_response(status_code, str(exc))

    @app.post("/api/session-notes/upload-audio")
    async def upload_audio(
        background_tasks: BackgroundTasks,
        audio: UploadFile = File(...),
        recordingRef: Optional[str] = Form(None),
        bookingId: Optional[str] = Form(None),
        durationSeconds: int = Form(0),
        autoProcess: Optional[bool] = None,
        x_auto_process: Optional[str] = Header(None),
    ) -> Dict[str, Any]:
        """Store an uploaded recording and create its pending session note."""

        if not recordingRef and not bookingId:
            raise HTTPException(status_code=400, detail="Either recordingRef or bookingId is required")
        services = _services()
        data = await audio.read()
        mime_type = base_mime_type(audio.content_type) or "application/octet-stream"
        validate_audio(data, mime_type, services.settings.max_audio_bytes)

        recording_id = recordingRef or new_id()
        if not _RECORDING_REF.fullmatch(recording_id):
            raise HTTPException(status_code=400, detail="Invalid recordingRef")
        if await asyncio.to_thread(services.store.get_recording, recording_id) is not None:
            raise HTTPException(status_code=409, detail="Recording already uploaded")
        # Staged under a private name; only the upload that registers the row
        # moves its file into place.
        staged = await asyncio.to_thread(services.storage.stage, data)
        recording = SessionRecording(
            id=recording_id,
            booking_id=bookingId,
            mime_type=mime_type,
            duration_seconds=max(0, durationSeconds),
            byte_size=len(data),
            storage_ref=services.storage.ref_for(recording_id, mime_type),
        )
        try:
            note_id = await asyncio.to_thread(services.store.register_recording, recording)
        except IntegrityError as exc:
            await asyncio.to_thread(services.storage.discard, staged)
            raise HTTPException(status_code=409, detail="Recording already uploaded") from exc
        except Exception:
            await asyncio.to_thread(services.storage.discard, staged)
            raise
        await asyncio.to_thread(services.storage.commit, staged, recording_id, mime_type)

        auto = autoProcess if autoProcess is not None else (x_auto_process or "").lower() == "true"
        if auto:
            background_tasks.add_task(_process_in_background, services, recording_id)
        logger.info(
            "api.audio_uploaded",
            recording=hash_identifier(recording_id),
            bytes=len(data),
            auto_process=auto,
        )
        return {"success": True, "recordingRef": recording_id, "sessionNoteId": note_id}

    @app.post("/api/session-notes/{note_id}/process-audio")
    async def process_audio(note_id: str):
        """Run the transcription, redaction and generation pipeline for a note."""

        services = _services()
        recording_id = _recording_for_note(note_id)
        result = await services.pipeline.process(recording_id)
        if not result.succeeded:
            return _error_response(500, "Failed to process audio", result.run.error)
        return {
            "success": True,
            "sessionNoteId": note_id,
            "run": result.run.as_dict(),
            "note": result.note.as_dict(),
            "redactedCategories": {
                category.value: count for category, count in result.deidentified.category_counts.items()
            },
        }

    @app.get("/api/session-notes/{note_id}/processing")
    async def processing_status(note_id: str) -> Dict[str, Any]:
        services = _services()
        recording_id = _recording_for_note(note_id)
        run = await asyncio.to_thread(services.store.latest_run, recording_id)
        stored = await asyncio.to_thread(services.store.get_note, note_id)
        return {
            "sessionNoteId": note_id,
            "run": run.as_dict() if run else None,
            "isAiGenerated": stored["isAiGenerated"],
            "aiProcessedAt": stored["aiProcessedAt"],
            "reviewStatus": stored["reviewStatus"],
        }

    @app.post("/api/session-notes/{note_id}/reidentify")
    async def reidentify(note_id: str, payload: ReidentifyRequest) -> Dict[str, Any]:
        """Render the stored note with the caller's original values restored."""

        services = _services()
        stored = await asyncio.to_thread(services.store.get_note, note_id)
        if stored is None:
            raise HTTPException(status_code=404, detail="Session note not found")
        if stored["note"] is None:
            raise HTTPException(status_code=409, detail="Session note has not been generated yet")
        restored = reidentify_note(stored["note"], payload.model_dump(exclude_none=True))
        return {"sessionNoteId": note_id, "note": restored.as_dict()}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()


__all__ = ["app", "create_app", "build_services", "Services"]
