"""Deliver finished recordings to the upload endpoint.

``UploadTransport.upload`` sends one multipart ``POST`` and reports progress
as the body is streamed; the final ``1.0`` is only emitted once the server
has confirmed the upload.  ``send_on_teardown`` is the page-unload fallback:
a single best-effort post on a daemon thread whose outcome is never reported.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Callable, Optional, Set

import requests
import structlog

from .config import Settings, get_settings
from .egress import secure_post
from .errors import UploadError
from .observability import UPLOAD_BYTES_TOTAL, UPLOAD_FAILURES_TOTAL, hash_identifier
from .storage import extension_for

logger = structlog.get_logger(__name__)

ALLOWED_AUDIO_TYPES = frozenset(
    {
        "audio/webm",
        "audio/mpeg",
        "audio/mp4",
        "audio/wav",
        "audio/x-m4a",
        "audio/ogg",
        "audio/flac",
    }
)

ProgressCallback = Callable[[float], None]

# Reserved for the server confirmation.
_MAX_STREAM_PROGRESS = 0.99


@dataclass(frozen=True)
class UploadResult:
    recording_ref: str
    session_note_id: Optional[str]
    byte_size: int


def base_mime_type(mime_type: Optional[str]) -> str:
    return (mime_type or "").split(";", 1)[0].strip().lower()


def validate_audio(blob: bytes, mime_type: Optional[str], max_bytes: int) -> None:
    if not blob:
        raise UploadError("Audio file is required")
    if base_mime_type(mime_type) not in ALLOWED_AUDIO_TYPES:
        raise UploadError("Invalid audio file type. Supported: webm, mp3, wav, m4a, ogg, flac")
    if len(blob) > max_bytes:
        raise UploadError(f"File size exceeds {max_bytes // (1024 * 1024)}MB limit")


class _ProgressReader:
    """File-like request body that reports the fraction read so far."""

    def __init__(self, body: bytes, callback: Optional[ProgressCallback]) -> None:
        self._body = body
        self._offset = 0
        self._callback = callback
        self._last = 0.0

    def __len__(self) -> int:
        return len(self._body)

    def read(self, size: int = -1) -> bytes:
        if size is None or size < 0:
            size = len(self._body) - self._offset
        chunk = self._body[self._offset:self._offset + size]
        self._offset += len(chunk)
        if chunk and self._callback is not None:
            fraction = min(self._offset / len(self._body), _MAX_STREAM_PROGRESS)
            if fraction > self._last:
                self._last = fraction
                self._callback(fraction)
        return chunk


class UploadTransport:
    """Multipart uploader with at most one in-flight upload per recording."""

    def __init__(self, settings: Optional[Settings] = None, *, url: Optional[str] = None) -> None:
        self._settings = settings or get_settings()
        self._url = url or self._settings.upload_url
        self._lock = threading.Lock()
        self._in_flight: Set[str] = set()
        self._confirmed: Set[str] = set()
        self._teardown_sent: Set[str] = set()

    def is_in_flight(self, recording_ref: str) -> bool:
        with self._lock:
            return recording_ref in self._in_flight

    def is_confirmed(self, recording_ref: str) -> bool:
        with self._lock:
            return recording_ref in self._confirmed

    def _prepare(
        self,
        blob: bytes,
        recording_ref: str,
        mime_type: str,
        booking_id: Optional[str],
        duration_seconds: Optional[int],
        auto_process: Optional[bool],
    ) -> requests.PreparedRequest:
        fields = {"recordingRef": recording_ref}
        if booking_id:
            fields["bookingId"] = booking_id
        if duration_seconds is not None:
            fields["durationSeconds"] = str(duration_seconds)
        flag = self._settings.auto_process if auto_process is None else auto_process
        filename = f"recording-{recording_ref}{extension_for(mime_type)}"
        return requests.Request(
            "POST",
            self._url,
            params={"autoProcess": "true" if flag else "false"},
            data=fields,
            files={"audio": (filename, blob, mime_type)},
        ).prepare()

    def upload(
        self,
        blob: bytes,
        recording_ref: str,
        *,
        mime_type: str = "audio/flac",
        booking_id: Optional[str] = None,
        duration_seconds: Optional[int] = None,
        auto_process: Optional[bool] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> UploadResult:
        """Upload ``blob``; blocking, so callers run it off the event loop."""

        validate_audio(blob, mime_type, self._settings.max_audio_bytes)
        with self._lock:
            if recording_ref in self._in_flight:
                raise UploadError(f"Upload already in progress for recording {recording_ref}")
            self._in_flight.add(recording_ref)
        log = logger.bind(recording=hash_identifier(recording_ref), bytes=len(blob))
        try:
            prepared = self._prepare(blob, recording_ref, mime_type, booking_id, duration_seconds, auto_process)
            body = _ProgressReader(prepared.body, on_progress)
            log.info("upload.started")
            try:
                response = secure_post(
                    prepared.url,
                    data=body,
                    headers={"Content-Type": prepared.headers["Content-Type"]},
                    timeout=self._settings.upload_timeout_seconds,
                )
            except requests.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else None
                UPLOAD_FAILURES_TOTAL.labels(reason="rejected").inc()
                raise UploadError(_rejection_message(exc.response), status_code=status) from exc
            except (requests.RequestException, RuntimeError) as exc:
                UPLOAD_FAILURES_TOTAL.labels(reason="network").inc()
                raise UploadError(f"Failed to upload audio: {exc}") from exc

            try:
                payload = response.json()
            except ValueError as exc:
                UPLOAD_FAILURES_TOTAL.labels(reason="invalid_response").inc()
                raise UploadError("Upload endpoint returned an invalid response") from exc
            if not isinstance(payload, dict) or not payload.get("success"):
                UPLOAD_FAILURES_TOTAL.labels(reason="rejected").inc()
                detail = payload.get("error") if isinstance(payload, dict) else None
                raise UploadError(detail or "Upload was not accepted", status_code=response.status_code)

            with self._lock:
                self._confirmed.add(recording_ref)
            UPLOAD_BYTES_TOTAL.inc(len(blob))
            if on_progress is not None:
                on_progress(1.0)
            log.info("upload.completed")
            return UploadResult(
                recording_ref=payload.get("recordingRef") or recording_ref,
                session_note_id=payload.get("sessionNoteId"),
                byte_size=len(blob),
            )
        except UploadError as exc:
            log.warning("upload.failed", error=str(exc))
            raise
        finally:
            with self._lock:
                self._in_flight.discard(recording_ref)

    def send_on_teardown(
        self,
        blob: bytes,
        recording_ref: str,
        *,
        mime_type: str = "audio/flac",
        booking_id: Optional[str] = None,
        duration_seconds: Optional[int] = None,
    ) -> bool:
        """Fire a single best-effort upload; return whether it was dispatched."""

        with self._lock:
            if (
                recording_ref in self._confirmed
                or recording_ref in self._in_flight
                or recording_ref in self._teardown_sent
            ):
                return False
            self._teardown_sent.add(recording_ref)
        try:
            validate_audio(blob, mime_type, self._settings.max_audio_bytes)
        except UploadError as exc:
            logger.warning("upload.teardown_skipped", recording=hash_identifier(recording_ref), error=str(exc))
            return False
        prepared = self._prepare(blob, recording_ref, mime_type, booking_id, duration_seconds, None)

        def _send() -> None:
            try:
                secure_post(
                    prepared.url,
                    data=prepared.body,
                    headers={"Content-Type": prepared.headers["Content-Type"]},
                    timeout=self._settings.upload_timeout_seconds,
                )
            except (requests.RequestException, RuntimeError) as exc:
                UPLOAD_FAILURES_TOTAL.labels(reason="teardown").inc()
                logger.warning("upload.teardown_failed", error=type(exc).__name__)

        threading.Thread(target=_send, name="sessionscribe-teardown-upload", daemon=True).start()
        logger.info("upload.teardown_dispatched", recording=hash_identifier(recording_ref), bytes=len(blob))
        return True


def _rejection_message(response: Optional[requests.Response]) -> str:
    if response is None:
        return "Upload rejected"
    try:
        payload = response.json()
    except ValueError:
        return f"Upload rejected with status {response.status_code}"
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"Upload rejected with status {response.status_code}"


__all__ = ["ALLOWED_AUDIO_TYPES", "UploadResult", "UploadTransport", "validate_audio", "base_mime_type"]
