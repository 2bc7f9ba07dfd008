"""Domain records shared by capture, upload and the note pipeline."""

from __future__ import annotations

import enum
import uuid
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class PHICategory(str, enum.Enum):
    """Coarse identifier categories; each maps to one placeholder token."""

    PATIENT_NAME = "PATIENT_NAME"
    LOCATION = "LOCATION"
    PHONE = "PHONE"
    EMAIL = "EMAIL"

    @property
    def placeholder(self) -> str:
        return f"[{self.value}]"


PHIMap = Dict[PHICategory, str]


class RunStatus(str, enum.Enum):
    PENDING = "PENDING"
    TRANSCRIBING = "TRANSCRIBING"
    REDACTING = "REDACTING"
    GENERATING = "GENERATING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


RUN_STATUS_ORDER = (
    RunStatus.PENDING,
    RunStatus.TRANSCRIBING,
    RunStatus.REDACTING,
    RunStatus.GENERATING,
    RunStatus.COMPLETED,
)


def can_transition(current: RunStatus, target: RunStatus) -> bool:
    """Return ``True`` when ``current -> target`` moves strictly forward."""

    if current.is_terminal:
        return False
    if target is RunStatus.FAILED:
        return True
    return RUN_STATUS_ORDER.index(target) > RUN_STATUS_ORDER.index(current)


class ReviewStatus(str, enum.Enum):
    PENDING = "PENDING"
    REVIEWED = "REVIEWED"


@dataclass(frozen=True)
class SessionRecording:
    id: str
    booking_id: Optional[str]
    mime_type: str
    duration_seconds: int
    byte_size: int
    storage_ref: str
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class Transcript:
    recording_id: str
    raw_text: str
    language_hint: Optional[str] = None
    detected_language: Optional[str] = None
    duration_seconds: Optional[float] = None
    generated_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True)
class DeIdentifiedTranscript:
    text: str
    category_counts: Mapping[PHICategory, int] = field(default_factory=dict)

    @property
    def substitutions(self) -> int:
        return sum(self.category_counts.values())


@dataclass
class ClinicalNote:
    """Structured SOAP note extended with therapy-specific sections."""

    subjective: str
    objective: str
    assessment: str
    plan: str
    patient_complaint: Optional[str] = None
    personal_history: Optional[str] = None
    family_history: Optional[str] = None
    presentation: Optional[str] = None
    formulation_and_diagnosis: Optional[str] = None
    treatment_plan: Optional[str] = None
    assignments: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {
            "subjective": self.subjective,
            "objective": self.objective,
            "assessment": self.assessment,
            "plan": self.plan,
            "patientComplaint": self.patient_complaint,
            "personalHistory": self.personal_history,
            "familyHistory": self.family_history,
            "presentation": self.presentation,
            "formulationAndDiagnosis": self.formulation_and_diagnosis,
            "treatmentPlan": self.treatment_plan,
            "assignments": self.assignments,
        }

    @classmethod
    def from_dict(cls, payload: Dict[str, Any]) -> "ClinicalNote":
        return cls(
            subjective=payload["subjective"],
            objective=payload["objective"],
            assessment=payload["assessment"],
            plan=payload["plan"],
            patient_complaint=payload.get("patientComplaint"),
            personal_history=payload.get("personalHistory"),
            family_history=payload.get("familyHistory"),
            presentation=payload.get("presentation"),
            formulation_and_diagnosis=payload.get("formulationAndDiagnosis"),
            treatment_plan=payload.get("treatmentPlan"),
            assignments=payload.get("assignments"),
        )

    def text_fields(self) -> Dict[str, Optional[str]]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass
class ProcessingRun:
    recording_id: str
    id: str = field(default_factory=new_id)
    status: RunStatus = RunStatus.PENDING
    error: Optional[str] = None
    started_at: datetime = field(default_factory=utc_now)
    completed_at: Optional[datetime] = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "runId": self.id,
            "recordingId": self.recording_id,
            "status": self.status.value,
            "error": self.error,
            "startedAt": self.started_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
        }


@dataclass(frozen=True)
class SessionContext:
    """Non-identifying context passed to the note generator."""

    duration_minutes: Optional[int] = None
    session_type: Optional[str] = "Individual Therapy"
    language: str = "en"


__all__ = [
    "utc_now",
    "new_id",
    "PHICategory",
    "PHIMap",
    "RunStatus",
    "RUN_STATUS_ORDER",
    "can_transition",
    "ReviewStatus",
    "SessionRecording",
    "Transcript",
    "DeIdentifiedTranscript",
    "ClinicalNote",
    "ProcessingRun",
    "SessionContext",
]
