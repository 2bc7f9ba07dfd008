"""SQLAlchemy models for recordings, transcripts, processing runs and notes."""

from __future__ import annotations

from datetime import datetime, timezone

import sqlalchemy as sa
from sqlalchemy import Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base


Base = declarative_base()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RecordingRecord(Base):
    __tablename__ = "session_recordings"

    id = sa.Column(String, primary_key=True)
    booking_id = sa.Column(String, nullable=True, index=True)
    mime_type = sa.Column(String, nullable=False)
    duration_seconds = sa.Column(Integer, nullable=False, server_default=sa.text("0"))
    byte_size = sa.Column(Integer, nullable=False)
    storage_ref = sa.Column(String, nullable=False)
    created_at = sa.Column(
        DateTime(timezone=True),
        nullable=False,
        server_default=sa.func.now(),
        default=_utcnow,
    )


class TranscriptRecord(Base):
    __tablename__ = "transcripts"

    recording_id = sa.Column(String, ForeignKey("session_recordings.id"), primary_key=True)
    raw_text = sa.Column(Text, nullable=False)
    language_hint = sa.Column(String, nullable=True)
    detected_language = sa.Column(String, nullable=True)
    duration_seconds = sa.Column(Float, nullable=True)
    generated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)


class ProcessingRunRecord(Base):
    __tablename__ = "processing_runs"

    id = sa.Column(String, primary_key=True)
    recording_id = sa.Column(String, ForeignKey("session_recordings.id"), nullable=False)
    status = sa.Column(String, nullable=False)
    error = sa.Column(Text, nullable=True)
    started_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    completed_at = sa.Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (sa.Index("idx_processing_runs_recording", "recording_id", "started_at"),)


class SessionNoteRecord(Base):
    __tablename__ = "session_notes"

    id = sa.Column(String, primary_key=True)
    recording_id = sa.Column(String, ForeignKey("session_recordings.id"), nullable=False, unique=True)
    booking_id = sa.Column(String, nullable=True, index=True)
    subjective = sa.Column(Text, nullable=True)
    objective = sa.Column(Text, nullable=True)
    assessment = sa.Column(Text, nullable=True)
    plan = sa.Column(Text, nullable=True)
    patient_complaint = sa.Column(Text, nullable=True)
    personal_history = sa.Column(Text, nullable=True)
    family_history = sa.Column(Text, nullable=True)
    presentation = sa.Column(Text, nullable=True)
    formulation_and_diagnosis = sa.Column(Text, nullable=True)
    treatment_plan = sa.Column(Text, nullable=True)
    assignments = sa.Column(Text, nullable=True)
    de_identified_text = sa.Column(Text, nullable=True)
    raw_ai_output = sa.Column(sa.JSON, nullable=True)
    is_ai_generated = sa.Column(Boolean, nullable=False, default=False, server_default=sa.false())
    ai_processed_at = sa.Column(DateTime(timezone=True), nullable=True)
    review_status = sa.Column(String, nullable=False, default="PENDING", server_default=sa.text("'PENDING'"))
    created_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = sa.Column(DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow)


__all__ = [
    "Base",
    "RecordingRecord",
    "TranscriptRecord",
    "ProcessingRunRecord",
    "SessionNoteRecord",
]
