"""Speech-to-text for stored session recordings.

Recordings are sent to the OpenAI audio transcription endpoint with a
``verbose_json`` response so the detected language and audio duration are
available alongside the text.  Each call is a single attempt: the SDK's own
retry loop is disabled and failures surface as :class:`TranscriptionError`.
"""

from __future__ import annotations

import threading
from typing import Any, Optional

import requests
import structlog
from openai import OpenAI, OpenAIError

from .config import Settings, get_settings
from .errors import TranscriptionError
from .models import SessionRecording, Transcript
from .observability import PROVIDER_FAILURES_TOTAL, hash_identifier
from .storage import RecordingStorage, extension_for

logger = structlog.get_logger(__name__)

__all__ = ["TranscriptionAdapter"]


def _create_openai_client(api_key: str, *, timeout: float, max_retries: int) -> OpenAI:
    return OpenAI(api_key=api_key, timeout=timeout, max_retries=max_retries)


def _field(response: Any, name: str) -> Any:
    if isinstance(response, dict):
        return response.get(name)
    return getattr(response, name, None)


class TranscriptionAdapter:
    """Turn a stored recording into a raw :class:`Transcript`."""

    provider = "transcription"

    def __init__(
        self,
        storage: RecordingStorage,
        settings: Optional[Settings] = None,
    ) -> None:
        self._storage = storage
        self._settings = settings or get_settings()
        self._slots = threading.BoundedSemaphore(self._settings.provider_concurrency)
        self._client: Optional[OpenAI] = None
        self._client_lock = threading.Lock()

    def _get_client(self) -> OpenAI:
        api_key = self._settings.openai_api_key
        if not api_key:
            raise TranscriptionError("OpenAI API key not configured")
        with self._client_lock:
            if self._client is None:
                self._client = _create_openai_client(
                    api_key,
                    timeout=self._settings.provider_timeout_seconds,
                    max_retries=self._settings.provider_max_retries,
                )
            return self._client

    def transcribe(
        self,
        recording: SessionRecording,
        language_hint: Optional[str] = None,
        context_prompt: Optional[str] = None,
    ) -> Transcript:
        """Transcribe ``recording``; blocking, run it off the event loop."""

        try:
            data = self._storage.get(recording.storage_ref)
        except (OSError, RuntimeError, requests.RequestException) as exc:
            raise TranscriptionError(f"Recording could not be read: {exc}") from exc
        if not data:
            raise TranscriptionError("Recording is empty")

        client = self._get_client()
        language = language_hint or self._settings.transcribe_language
        prompt = context_prompt if context_prompt is not None else self._settings.transcribe_prompt
        filename = f"{recording.id}{extension_for(recording.mime_type)}"
        request: dict[str, Any] = {
            "model": self._settings.whisper_model,
            "file": (filename, data, recording.mime_type),
            "language": language,
            "response_format": "verbose_json",
            "temperature": 0,
        }
        if prompt:
            request["prompt"] = prompt

        log = logger.bind(recording=hash_identifier(recording.id), bytes=len(data))
        log.info("transcription.request")
        with self._slots:
            try:
                response = client.audio.transcriptions.create(**request)
            except OpenAIError as exc:
                PROVIDER_FAILURES_TOTAL.labels(provider=self.provider).inc()
                log.warning("transcription.provider_failed", error=type(exc).__name__)
                raise TranscriptionError(f"Transcription failed: {exc}") from exc

        text = (_field(response, "text") or "").strip()
        if not text:
            PROVIDER_FAILURES_TOTAL.labels(provider=self.provider).inc()
            raise TranscriptionError("No transcription text received")
        duration = _field(response, "duration")
        log.info("transcription.completed", chars=len(text))
        return Transcript(
            recording_id=recording.id,
            raw_text=text,
            language_hint=language,
            detected_language=_field(response, "language"),
            duration_seconds=float(duration) if duration is not None else None,
        )
