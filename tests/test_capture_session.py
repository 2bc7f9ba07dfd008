import asyncio

import numpy as np
import pytest

from sessionscribe.audio_mixer import AudioGraphMixer, PCMBufferTrack
from sessionscribe.capture_session import CaptureSession, UploadStatus
from sessionscribe.errors import CaptureError, UploadError
from sessionscribe.recorder import RecordedAudio, SessionRecorder
from sessionscribe.upload import UploadResult


class FakeTransport:
    def __init__(self, fail=False):
        self.fail = fail
        self.uploads = []
        self.teardowns = []

    def upload(self, blob, recording_ref, *, on_progress=None, **kwargs):
        self.uploads.append((recording_ref, kwargs))
        if self.fail:
            raise UploadError("Failed to upload audio: offline")
        on_progress(0.5)
        on_progress(1.0)
        return UploadResult(recording_ref=recording_ref, session_note_id="note-1", byte_size=len(blob))

    def send_on_teardown(self, blob, recording_ref, **kwargs):
        self.teardowns.append(recording_ref)
        return True


AUDIO = RecordedAudio(blob=b"flac-bytes", mime_type="audio/flac", duration_seconds=61)


@pytest.mark.asyncio
async def test_completed_recording_is_uploaded():
    transport = FakeTransport()
    session = CaptureSession(transport, booking_id="booking-1", recording_ref="rec-1")
    session.on_recording_complete(AUDIO)
    result = await session.wait_for_upload()

    assert result.session_note_id == "note-1"
    assert session.upload_status is UploadStatus.COMPLETED
    assert session.upload_progress == 1.0
    ref, kwargs = transport.uploads[0]
    assert ref == "rec-1"
    assert kwargs["booking_id"] == "booking-1"
    assert kwargs["duration_seconds"] == 61
    assert session.on_page_teardown() is False
    assert transport.teardowns == []


@pytest.mark.asyncio
async def test_upload_failure_becomes_warning_and_arms_teardown():
    transport = FakeTransport(fail=True)
    session = CaptureSession(transport, recording_ref="rec-2")
    session.on_recording_complete(AUDIO)
    assert await session.wait_for_upload() is None
    assert session.upload_status is UploadStatus.ERROR
    assert isinstance(session.warnings[0], UploadError)

    assert session.on_page_teardown() is True
    assert transport.teardowns == ["rec-2"]


@pytest.mark.asyncio
async def test_second_completion_is_ignored():
    transport = FakeTransport()
    session = CaptureSession(transport)
    session.on_recording_complete(AUDIO)
    session.on_recording_complete(RecordedAudio(b"other", "audio/flac", 1))
    await session.wait_for_upload()
    assert len(transport.uploads) == 1
    assert session.recording is AUDIO


def test_teardown_without_recording_does_nothing():
    transport = FakeTransport()
    session = CaptureSession(transport)
    assert session.on_page_teardown() is False


def test_capture_errors_are_collected():
    session = CaptureSession(FakeTransport())
    session.on_capture_error(CaptureError("No audio tracks available for recording"))
    assert [str(w) for w in session.warnings] == ["No audio tracks available for recording"]


@pytest.mark.asyncio
async def test_recorder_feeds_capture_session():
    transport = FakeTransport()
    session = CaptureSession(transport, recording_ref="rec-5")
    recorder = SessionRecorder(session.on_recording_complete, session.on_capture_error, interval=0.01)
    track = PCMBufferTrack("local")
    track.push(np.ones(800, dtype=np.int16))
    await recorder.start(AudioGraphMixer(track, sample_rate=8000).output_stream())
    await asyncio.sleep(0.03)
    await recorder.stop()
    result = await session.wait_for_upload()
    assert result.recording_ref == "rec-5"
    assert transport.uploads[0][1]["mime_type"] == "audio/flac"
