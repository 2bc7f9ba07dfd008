"""Exception hierarchy shared by the capture and note pipeline."""

from __future__ import annotations

from typing import Optional


class SessionScribeError(Exception):
    """Base error for capture, upload and processing failures."""


class CaptureError(SessionScribeError):
    """Raised when audio cannot be captured (e.g. no audio tracks to record)."""


class UploadError(SessionScribeError):
    """Raised when a recording cannot be delivered to storage."""

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class TranscriptionError(SessionScribeError):
    """Raised when the transcription provider fails."""


class GenerationError(SessionScribeError):
    """Raised when the note-generation provider fails or returns unusable output."""


class SchemaError(GenerationError):
    """Raised when no decoding strategy yields a valid clinical note."""


class InvalidTransitionError(SessionScribeError):
    """Raised when a processing run would move backwards or leave a terminal state."""


class RunInProgressError(SessionScribeError):
    """Raised when a recording already has a processing run in flight."""


__all__ = [
    "SessionScribeError",
    "CaptureError",
    "UploadError",
    "TranscriptionError",
    "GenerationError",
    "SchemaError",
    "InvalidTransitionError",
    "RunInProgressError",
]
