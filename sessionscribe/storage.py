"""Recording blob storage.

Uploaded recordings are written beneath ``<data dir>/recordings`` and referred
to by a storage ref of the form ``local:<file name>``.  Refs that are plain
``http(s)`` URLs (recordings kept by an external object store) are fetched
through :mod:`sessionscribe.egress`.
"""

from __future__ import annotations

import mimetypes
import os
import uuid
from pathlib import Path
from typing import Optional

import structlog

from .egress import secure_get

logger = structlog.get_logger(__name__)

LOCAL_PREFIX = "local:"

_EXTENSIONS = {
    "audio/webm": ".webm",
    "audio/mpeg": ".mp3",
    "audio/mp4": ".m4a",
    "audio/x-m4a": ".m4a",
    "audio/wav": ".wav",
    "audio/ogg": ".ogg",
    "audio/flac": ".flac",
}


def extension_for(mime_type: Optional[str]) -> str:
    base = (mime_type or "").split(";", 1)[0].strip().lower()
    return _EXTENSIONS.get(base) or mimetypes.guess_extension(base) or ".bin"


class RecordingStorage:
    """Read and write recording blobs by storage ref."""

    def __init__(self, root: Path, *, fetch_timeout: float = 60.0) -> None:
        self._root = Path(root)
        self._fetch_timeout = fetch_timeout

    @property
    def root(self) -> Path:
        return self._root

    def ref_for(self, recording_id: str, mime_type: Optional[str]) -> str:
        return f"{LOCAL_PREFIX}{recording_id}{extension_for(mime_type)}"

    def stage(self, data: bytes) -> Path:
        """Write ``data`` under a unique temporary name; nothing refers to it yet."""

        self._root.mkdir(parents=True, exist_ok=True)
        path = self._root / f".upload-{uuid.uuid4().hex}.part"
        path.write_bytes(data)
        return path

    def commit(self, staged: Path, recording_id: str, mime_type: Optional[str]) -> str:
        """Move a staged file to its final name and return its storage ref."""

        ref = self.ref_for(recording_id, mime_type)
        target = self._local_path(ref)
        os.replace(staged, target)
        logger.info("storage.recording_written", file=target.name, bytes=target.stat().st_size)
        return ref

    def discard(self, staged: Path) -> None:
        staged.unlink(missing_ok=True)

    def put(self, recording_id: str, data: bytes, mime_type: Optional[str]) -> str:
        return self.commit(self.stage(data), recording_id, mime_type)

    def _local_path(self, ref: str) -> Path:
        name = ref[len(LOCAL_PREFIX):]
        path = (self._root / name).resolve()
        if path.parent != self._root.resolve():
            raise FileNotFoundError(f"Storage ref escapes the recordings directory: {ref!r}")
        return path

    def get(self, ref: str) -> bytes:
        """Return the bytes behind ``ref``.

        Raises ``FileNotFoundError`` for unknown local refs and
        ``requests.RequestException`` when a remote ref cannot be fetched.
        """

        if ref.startswith(LOCAL_PREFIX):
            return self._local_path(ref).read_bytes()
        if ref.startswith(("http://", "https://")):
            response = secure_get(ref, timeout=self._fetch_timeout)
            return response.content
        raise FileNotFoundError(f"Unsupported storage ref: {ref!r}")

    def delete(self, ref: str) -> None:
        if ref.startswith(LOCAL_PREFIX):
            self._local_path(ref).unlink(missing_ok=True)


__all__ = ["RecordingStorage", "LOCAL_PREFIX", "extension_for"]
