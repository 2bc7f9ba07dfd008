"""Per-call capture glue: recorder output to upload, plus warnings.

A :class:`CaptureSession` is created for one call.  It supplies the
recorder's callbacks, uploads the finished recording, tracks the upload
status for the UI and collects non-blocking warnings.  When the page is torn
down before a confirmed upload, :meth:`CaptureSession.on_page_teardown` hands
the recording to the best-effort fallback.
"""

from __future__ import annotations

import asyncio
import enum
from typing import List, Optional

import structlog

from .errors import CaptureError, SessionScribeError, UploadError
from .models import new_id
from .recorder import RecordedAudio
from .upload import UploadResult, UploadTransport

logger = structlog.get_logger(__name__)


class UploadStatus(str, enum.Enum):
    IDLE = "idle"
    UPLOADING = "uploading"
    COMPLETED = "completed"
    ERROR = "error"


class CaptureSession:
    def __init__(
        self,
        transport: UploadTransport,
        *,
        booking_id: Optional[str] = None,
        recording_ref: Optional[str] = None,
        auto_process: Optional[bool] = None,
    ) -> None:
        self._transport = transport
        self.booking_id = booking_id
        self.recording_ref = recording_ref or new_id()
        self._auto_process = auto_process
        self.upload_status = UploadStatus.IDLE
        self.upload_progress = 0.0
        self.result: Optional[UploadResult] = None
        self.warnings: List[SessionScribeError] = []
        self._audio: Optional[RecordedAudio] = None
        self._upload_task: Optional[asyncio.Task] = None

    @property
    def recording(self) -> Optional[RecordedAudio]:
        return self._audio

    # Recorder callbacks ------------------------------------------------------

    def on_recording_complete(self, audio: RecordedAudio) -> None:
        """Keep the recording and start uploading it in the background."""

        if self._audio is not None:
            return
        self._audio = audio
        self._upload_task = asyncio.get_running_loop().create_task(self.upload())

    def on_capture_error(self, error: CaptureError) -> None:
        self.add_warning(error)

    def add_warning(self, error: SessionScribeError) -> None:
        logger.warning("capture_session.warning", kind=type(error).__name__, error=str(error))
        self.warnings.append(error)

    # Upload ------------------------------------------------------------------

    def _set_progress(self, fraction: float) -> None:
        self.upload_progress = fraction

    async def upload(self) -> Optional[UploadResult]:
        """Upload the finished recording; failures become warnings."""

        audio = self._audio
        if audio is None or self.upload_status in (UploadStatus.UPLOADING, UploadStatus.COMPLETED):
            return self.result
        self.upload_status = UploadStatus.UPLOADING
        self.upload_progress = 0.0
        try:
            self.result = await asyncio.to_thread(
                self._transport.upload,
                audio.blob,
                self.recording_ref,
                mime_type=audio.mime_type,
                booking_id=self.booking_id,
                duration_seconds=audio.duration_seconds,
                auto_process=self._auto_process,
                on_progress=self._set_progress,
            )
        except UploadError as exc:
            self.upload_status = UploadStatus.ERROR
            self.add_warning(exc)
            return None
        self.upload_status = UploadStatus.COMPLETED
        return self.result

    async def wait_for_upload(self) -> Optional[UploadResult]:
        if self._upload_task is not None:
            return await self._upload_task
        return self.result

    def on_page_teardown(self) -> bool:
        """Dispatch the fallback upload when nothing is confirmed or in flight."""

        audio = self._audio
        if audio is None or self.upload_status in (UploadStatus.UPLOADING, UploadStatus.COMPLETED):
            return False
        return self._transport.send_on_teardown(
            audio.blob,
            self.recording_ref,
            mime_type=audio.mime_type,
            booking_id=self.booking_id,
            duration_seconds=audio.duration_seconds,
        )


__all__ = ["CaptureSession", "UploadStatus"]
