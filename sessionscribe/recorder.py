"""Chunked recording of a mixed call stream.

:class:`SessionRecorder` pulls one chunk per interval from a
:class:`~sessionscribe.audio_mixer.MixedAudioStream` on a background asyncio
task and encodes it straight into an anonymous temporary file, so a long call
is held compressed on disk rather than as raw PCM in memory.  ``stop()``
captures the tail, finalises the file and hands the blob to ``on_complete``
exactly once.  Any capture or encoding failure discards the file and is
reported through ``on_error`` as a :class:`CaptureError`; no partial blob is
ever delivered.
"""

from __future__ import annotations

import abc
import asyncio
import tempfile
import time
from dataclasses import dataclass
from typing import IO, Callable, Optional, Tuple

import numpy as np
import soundfile as sf
import structlog

from .audio_mixer import MixedAudioStream
from .config import Settings, get_settings
from .errors import CaptureError

logger = structlog.get_logger(__name__)

# (libsndfile format, subtype, MIME type) in order of preference.
ENCODINGS: Tuple[Tuple[str, str, str], ...] = (
    ("FLAC", "PCM_16", "audio/flac"),
    ("OGG", "VORBIS", "audio/ogg"),
    ("WAV", "PCM_16", "audio/wav"),
)


@dataclass(frozen=True)
class RecordedAudio:
    blob: bytes
    mime_type: str
    duration_seconds: int


def negotiate_encoding(preferred: Optional[str] = None) -> Tuple[str, str, str]:
    """Return the first encoding libsndfile can write, ``preferred`` first."""

    candidates = list(ENCODINGS)
    if preferred:
        candidates.sort(key=lambda item: item[0] != preferred.upper())
    for fmt, subtype, mime in candidates:
        if sf.check_format(fmt, subtype):
            return fmt, subtype, mime
    raise CaptureError("No supported audio encoding available")


class RecordingSession(abc.ABC):
    """Capability: record a mixed stream until stopped."""

    @property
    @abc.abstractmethod
    def is_recording(self) -> bool:
        ...

    @abc.abstractmethod
    async def start(self, stream: MixedAudioStream) -> None:
        ...

    @abc.abstractmethod
    async def stop(self) -> Optional[RecordedAudio]:
        ...


class SessionRecorder(RecordingSession):
    def __init__(
        self,
        on_complete: Callable[[RecordedAudio], None],
        on_error: Optional[Callable[[CaptureError], None]] = None,
        *,
        interval: Optional[float] = None,
        encoding: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        settings: Optional[Settings] = None,
    ) -> None:
        if interval is None:
            interval = (settings or get_settings()).recorder_interval_seconds
        self._on_complete = on_complete
        self._on_error = on_error
        self._interval = interval
        self._encoding = encoding
        self._clock = clock
        self._stream: Optional[MixedAudioStream] = None
        self._task: Optional[asyncio.Task] = None
        self._file: Optional[IO[bytes]] = None
        self._sink: Optional[sf.SoundFile] = None
        self._mime_type: Optional[str] = None
        self._started_at: Optional[float] = None
        self._last_capture: Optional[float] = None
        self._active = False

    @property
    def is_recording(self) -> bool:
        return self._active

    async def start(self, stream: MixedAudioStream) -> None:
        if self._active:
            return
        if not stream.audio_tracks:
            raise CaptureError("No audio tracks available for recording")
        fmt, subtype, mime = negotiate_encoding(self._encoding)
        self._file = tempfile.TemporaryFile(prefix="sessionscribe-", suffix=".rec")
        try:
            self._sink = sf.SoundFile(
                self._file,
                mode="w",
                samplerate=stream.sample_rate,
                channels=1,
                format=fmt,
                subtype=subtype,
            )
        except Exception as exc:
            self._release_file()
            raise CaptureError(f"Could not open {fmt} encoder: {exc}") from exc
        self._mime_type = mime
        self._stream = stream
        self._started_at = self._last_capture = self._clock()
        self._active = True
        self._task = asyncio.get_running_loop().create_task(self._capture_loop())
        logger.info("recorder.started", tracks=len(stream.audio_tracks), interval=self._interval, format=fmt)

    def _capture(self) -> None:
        now = self._clock()
        frames = int(round((now - self._last_capture) * self._stream.sample_rate))
        self._last_capture = now
        if frames <= 0:
            return
        chunk = self._stream.read(frames)
        if len(chunk):
            self._sink.write(np.asarray(chunk, dtype=np.int16))

    async def _capture_loop(self) -> None:
        while self._active:
            await asyncio.sleep(self._interval)
            if not self._active:
                return
            try:
                self._capture()
            except Exception as exc:
                self._abort(exc)
                return

    def _release_file(self) -> None:
        sink, self._sink = self._sink, None
        handle, self._file = self._file, None
        if sink is not None and not sink.closed:
            try:
                sink.close()
            except Exception as exc:  # pragma: no cover - the recording is discarded anyway
                logger.debug("recorder.sink_close_failed", error=type(exc).__name__)
        if handle is not None:
            # Anonymous temporary file: closing it removes it.
            handle.close()

    def _abort(self, exc: BaseException) -> None:
        self._active = False
        self._release_file()
        self._stream = None
        error = exc if isinstance(exc, CaptureError) else CaptureError(f"Recording error occurred: {exc}")
        logger.warning("recorder.aborted", error=type(exc).__name__)
        if self._on_error is not None:
            self._on_error(error)

    def _finalise(self) -> bytes:
        self._sink.close()
        self._file.seek(0)
        return self._file.read()

    async def stop(self) -> Optional[RecordedAudio]:
        if not self._active:
            return None
        self._active = False
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            self._capture()
            blob = self._finalise()
        except Exception as exc:
            self._abort(exc)
            return None
        mime = self._mime_type
        duration = max(0, int(round(self._clock() - self._started_at)))
        self._release_file()
        self._stream = None
        result = RecordedAudio(blob=blob, mime_type=mime, duration_seconds=duration)
        logger.info("recorder.stopped", bytes=len(blob), duration_seconds=duration, mime_type=mime)
        self._on_complete(result)
        return result


__all__ = ["RecordedAudio", "RecordingSession", "SessionRecorder", "negotiate_encoding", "ENCODINGS"]
