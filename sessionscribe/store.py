"""Persistence for recordings, transcripts, processing runs and session notes.

:class:`SessionNoteStore` is the only code that touches the ORM tables.  Rows
are converted to the frozen records in :mod:`sessionscribe.models` before they
leave the store so callers never hold live ORM instances.
"""

from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import sqlalchemy as sa
import structlog
from sqlalchemy.engine import Engine

from .db import (
    ProcessingRunRecord,
    RecordingRecord,
    SessionNoteRecord,
    TranscriptRecord,
    initialise_schema,
    session_factory,
    session_scope,
)
from .errors import InvalidTransitionError, RunInProgressError
from .models import (
    ClinicalNote,
    ProcessingRun,
    ReviewStatus,
    RunStatus,
    SessionRecording,
    Transcript,
    can_transition,
    new_id,
    utc_now,
)
from .observability import hash_identifier

logger = structlog.get_logger(__name__)

_NON_TERMINAL = tuple(status.value for status in RunStatus if not status.is_terminal)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite drops tzinfo on the way back out.
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _recording(row: RecordingRecord) -> SessionRecording:
    return SessionRecording(
        id=row.id,
        booking_id=row.booking_id,
        mime_type=row.mime_type,
        duration_seconds=row.duration_seconds or 0,
        byte_size=row.byte_size,
        storage_ref=row.storage_ref,
        created_at=_aware(row.created_at),
    )


def _run(row: ProcessingRunRecord) -> ProcessingRun:
    return ProcessingRun(
        recording_id=row.recording_id,
        id=row.id,
        status=RunStatus(row.status),
        error=row.error,
        started_at=_aware(row.started_at),
        completed_at=_aware(row.completed_at),
    )


def _note_fields(row: SessionNoteRecord) -> Optional[ClinicalNote]:
    if not row.is_ai_generated:
        return None
    return ClinicalNote(
        subjective=row.subjective or "",
        objective=row.objective or "",
        assessment=row.assessment or "",
        plan=row.plan or "",
        patient_complaint=row.patient_complaint,
        personal_history=row.personal_history,
        family_history=row.family_history,
        presentation=row.presentation,
        formulation_and_diagnosis=row.formulation_and_diagnosis,
        treatment_plan=row.treatment_plan,
        assignments=row.assignments,
    )


class SessionNoteStore:
    """Repository over the session note tables."""

    def __init__(self, engine: Engine, *, stale_after_seconds: Optional[float] = 1800.0) -> None:
        self._engine = engine
        # Non-terminal runs older than this are treated as abandoned.
        self._stale_after = timedelta(seconds=stale_after_seconds) if stale_after_seconds is not None else None
        self._factory = session_factory(engine)
        # Serialises the in-flight check with the insert of a new run.
        self._run_lock = threading.Lock()

    def initialise(self) -> None:
        initialise_schema(self._engine)

    # Recordings and notes ------------------------------------------------

    def register_recording(self, recording: SessionRecording) -> str:
        """Persist ``recording`` with an empty session note; return the note id."""

        note_id = new_id()
        with session_scope(self._factory) as session:
            session.add(
                RecordingRecord(
                    id=recording.id,
                    booking_id=recording.booking_id,
                    mime_type=recording.mime_type,
                    duration_seconds=recording.duration_seconds,
                    byte_size=recording.byte_size,
                    storage_ref=recording.storage_ref,
                    created_at=recording.created_at,
                )
            )
            session.flush()
            session.add(
                SessionNoteRecord(
                    id=note_id,
                    recording_id=recording.id,
                    booking_id=recording.booking_id,
                    review_status=ReviewStatus.PENDING.value,
                )
            )
        logger.info(
            "store.recording_registered",
            recording=hash_identifier(recording.id),
            note=hash_identifier(note_id),
            bytes=recording.byte_size,
        )
        return note_id

    def get_recording(self, recording_id: str) -> Optional[SessionRecording]:
        with session_scope(self._factory) as session:
            row = session.get(RecordingRecord, recording_id)
            return _recording(row) if row else None

    def get_note_recording_id(self, note_id: str) -> Optional[str]:
        with session_scope(self._factory) as session:
            row = session.get(SessionNoteRecord, note_id)
            return row.recording_id if row else None

    def get_note(self, note_id: str) -> Optional[Dict[str, Any]]:
        """Return the stored note (still de-identified) with its metadata."""

        with session_scope(self._factory) as session:
            row = session.get(SessionNoteRecord, note_id)
            if row is None:
                return None
            note = _note_fields(row)
            processed = _aware(row.ai_processed_at)
            return {
                "id": row.id,
                "recordingId": row.recording_id,
                "bookingId": row.booking_id,
                "note": note,
                "deIdentifiedText": row.de_identified_text,
                "isAiGenerated": bool(row.is_ai_generated),
                "aiProcessedAt": processed.isoformat() if processed else None,
                "reviewStatus": row.review_status,
            }

    # Transcripts ---------------------------------------------------------

    def upsert_transcript(self, transcript: Transcript) -> None:
        with session_scope(self._factory) as session:
            row = session.get(TranscriptRecord, transcript.recording_id)
            if row is None:
                row = TranscriptRecord(recording_id=transcript.recording_id)
                session.add(row)
            row.raw_text = transcript.raw_text
            row.language_hint = transcript.language_hint
            row.detected_language = transcript.detected_language
            row.duration_seconds = transcript.duration_seconds
            row.generated_at = transcript.generated_at

    def get_transcript(self, recording_id: str) -> Optional[Transcript]:
        with session_scope(self._factory) as session:
            row = session.get(TranscriptRecord, recording_id)
            if row is None:
                return None
            return Transcript(
                recording_id=row.recording_id,
                raw_text=row.raw_text,
                language_hint=row.language_hint,
                detected_language=row.detected_language,
                duration_seconds=row.duration_seconds,
                generated_at=_aware(row.generated_at),
            )

    # Processing runs -----------------------------------------------------

    def _is_stale(self, row: ProcessingRunRecord, now: datetime) -> bool:
        started = _aware(row.started_at)
        return self._stale_after is not None and started is not None and now - started >= self._stale_after

    def create_run(self, recording_id: str) -> ProcessingRun:
        """Insert a PENDING run; refuse while another run is in flight.

        In-flight runs older than ``stale_after_seconds`` belong to a worker
        that died mid-stage; they are marked FAILED so the recording can be
        processed again.
        """

        run = ProcessingRun(recording_id=recording_id)
        with self._run_lock:
            with session_scope(self._factory) as session:
                active_rows = session.execute(
                    sa.select(ProcessingRunRecord)
                    .where(ProcessingRunRecord.recording_id == recording_id)
                    .where(ProcessingRunRecord.status.in_(_NON_TERMINAL))
                ).scalars().all()
                now = utc_now()
                for active in active_rows:
                    if not self._is_stale(active, now):
                        raise RunInProgressError(
                            f"Recording {recording_id} already has run {active.id} in progress"
                        )
                for active in active_rows:
                    logger.warning(
                        "store.run_abandoned",
                        run=active.id,
                        recording=hash_identifier(recording_id),
                        status=active.status,
                    )
                    self._transition(session, active.id, RunStatus.FAILED, "Run abandoned before completion")
                session.add(
                    ProcessingRunRecord(
                        id=run.id,
                        recording_id=recording_id,
                        status=run.status.value,
                        started_at=run.started_at,
                    )
                )
        return run

    def _transition(self, session, run_id: str, status: RunStatus, error: Optional[str]) -> ProcessingRunRecord:
        row = session.get(ProcessingRunRecord, run_id)
        if row is None:
            raise KeyError(run_id)
        current = RunStatus(row.status)
        if not can_transition(current, status):
            raise InvalidTransitionError(f"Run {run_id} cannot move from {current.value} to {status.value}")
        row.status = status.value
        row.error = error
        if status.is_terminal:
            row.completed_at = utc_now()
        return row

    def update_run_status(self, run_id: str, status: RunStatus, error: Optional[str] = None) -> ProcessingRun:
        with session_scope(self._factory) as session:
            row = self._transition(session, run_id, status, error)
            session.flush()
            return _run(row)

    def complete_run(
        self,
        run_id: str,
        note: ClinicalNote,
        *,
        deidentified_text: str,
        raw_output: Optional[Dict[str, Any]] = None,
    ) -> ProcessingRun:
        """Store the generated note and mark the run COMPLETED in one transaction."""

        with session_scope(self._factory) as session:
            row = self._transition(session, run_id, RunStatus.COMPLETED, None)
            note_row = session.execute(
                sa.select(SessionNoteRecord).where(SessionNoteRecord.recording_id == row.recording_id)
            ).scalar_one_or_none()
            if note_row is None:
                raise KeyError(f"No session note for recording {row.recording_id}")
            for name, value in note.text_fields().items():
                setattr(note_row, name, value)
            note_row.de_identified_text = deidentified_text
            note_row.raw_ai_output = raw_output if raw_output is not None else note.as_dict()
            note_row.is_ai_generated = True
            note_row.ai_processed_at = row.completed_at
            note_row.review_status = ReviewStatus.PENDING.value
            session.flush()
            return _run(row)

    def get_run(self, run_id: str) -> Optional[ProcessingRun]:
        with session_scope(self._factory) as session:
            row = session.get(ProcessingRunRecord, run_id)
            return _run(row) if row else None

    def latest_run(self, recording_id: str) -> Optional[ProcessingRun]:
        with session_scope(self._factory) as session:
            row = session.execute(
                sa.select(ProcessingRunRecord)
                .where(ProcessingRunRecord.recording_id == recording_id)
                .order_by(ProcessingRunRecord.started_at.desc())
                .limit(1)
            ).scalar_one_or_none()
            return _run(row) if row else None


__all__ = ["SessionNoteStore"]
