import asyncio

import numpy as np
import pytest

from sessionscribe.audio_mixer import PCMBufferTrack
from sessionscribe.call_binder import CallEvent, CallEventType, CallLifecycleBinder, CallState
from sessionscribe.errors import CaptureError
from sessionscribe.recorder import RecordingSession


class FakeCall:
    def __init__(self, local=True, remotes=None):
        self.local = PCMBufferTrack("local") if local else None
        self.remotes = dict(remotes or {})

    def local_audio_track(self):
        return self.local

    def remote_audio_tracks(self):
        return list(self.remotes.items())

    def participant_audio_track(self, participant_id):
        return self.remotes.get(participant_id)


class FakeRecorder(RecordingSession):
    def __init__(self):
        self.starts = 0
        self.stops = 0
        self.stream = None
        self._active = False

    @property
    def is_recording(self):
        return self._active

    async def start(self, stream):
        if self._active:
            return
        self.starts += 1
        self.stream = stream
        self._active = True

    async def stop(self):
        if not self._active:
            return None
        self._active = False
        self.stops += 1
        return None


def _event(kind, participant_id=None, message=None):
    return CallEvent(CallEventType(kind), participant_id=participant_id, message=message)


@pytest.mark.asyncio
async def test_full_lifecycle_starts_and_stops_once(settings):
    call = FakeCall()
    recorder = FakeRecorder()
    binder = CallLifecycleBinder(call, recorder, settings=settings)

    await binder.handle(_event("join-attempt"))
    assert binder.state is CallState.JOINING
    await binder.handle(_event("joined"))
    assert binder.state is CallState.JOINED
    await asyncio.sleep(0.05)
    assert binder.state is CallState.RECORDING
    assert recorder.starts == 1

    guest = PCMBufferTrack("guest-audio")
    call.remotes["guest"] = guest
    await binder.handle(_event("participant-joined", "guest"))
    await asyncio.sleep(0.05)
    assert binder.state is CallState.RECORDING
    assert recorder.starts == 1
    assert "guest-audio" in recorder.stream.audio_tracks

    await binder.handle(_event("participant-left", "guest"))
    assert guest.stopped
    assert recorder.stream.audio_tracks == ["local"]

    mixer = binder.mixer
    await binder.handle(_event("left"))
    assert binder.state is CallState.LEFT
    assert recorder.stops == 1
    assert mixer.closed
    assert call.local.stopped


@pytest.mark.asyncio
async def test_zero_tracks_warns_and_stays_joined(settings):
    warnings = []
    recorder = FakeRecorder()
    binder = CallLifecycleBinder(FakeCall(local=False), recorder, settings=settings, on_warning=warnings.append)
    await binder.handle(_event("joined"))
    await asyncio.sleep(0.05)
    assert binder.state is CallState.JOINED
    assert recorder.starts == 0
    assert len(warnings) == 1
    assert isinstance(warnings[0], CaptureError)


@pytest.mark.asyncio
async def test_participant_join_starts_recording_when_joined(settings):
    call = FakeCall(local=False)
    recorder = FakeRecorder()
    binder = CallLifecycleBinder(call, recorder, settings=settings, on_warning=lambda exc: None)
    await binder.handle(_event("joined"))
    await asyncio.sleep(0.05)
    assert binder.state is CallState.JOINED

    call.remotes["client"] = PCMBufferTrack("client-audio")
    await binder.handle(_event("participant-joined", "client"))
    await asyncio.sleep(0.05)
    assert binder.state is CallState.RECORDING
    assert recorder.starts == 1


@pytest.mark.asyncio
async def test_leaving_before_delayed_start_cancels_it(settings):
    recorder = FakeRecorder()
    binder = CallLifecycleBinder(FakeCall(), recorder, settings=settings)
    await binder.handle(_event("joined"))
    await binder.handle(_event("left"))
    await asyncio.sleep(0.05)
    assert binder.state is CallState.LEFT
    assert recorder.starts == 0
    assert binder.mixer is None


@pytest.mark.asyncio
async def test_error_event_stops_recorder(settings):
    warnings = []
    recorder = FakeRecorder()
    binder = CallLifecycleBinder(FakeCall(), recorder, settings=settings, on_warning=warnings.append)
    await binder.handle(_event("joined"))
    await asyncio.sleep(0.05)
    await binder.handle(_event("error", message="network lost"))
    assert binder.state is CallState.ERROR
    assert recorder.stops == 1
    assert str(warnings[-1]) == "network lost"

    await binder.handle(_event("joined"))
    assert binder.state is CallState.ERROR


@pytest.mark.asyncio
async def test_run_consumes_posted_events(settings):
    recorder = FakeRecorder()
    binder = CallLifecycleBinder(FakeCall(), recorder, settings=settings)
    runner = asyncio.create_task(binder.run())
    binder.post(_event("join-attempt"))
    binder.post(_event("joined"))
    await asyncio.sleep(0.05)
    assert binder.state is CallState.RECORDING
    binder.post(_event("left"))
    await asyncio.wait_for(runner, timeout=1)
    assert binder.state is CallState.LEFT
    assert recorder.stops == 1


@pytest.mark.asyncio
async def test_close_releases_and_is_idempotent(settings):
    recorder = FakeRecorder()
    binder = CallLifecycleBinder(FakeCall(), recorder, settings=settings)
    await binder.handle(_event("joined"))
    await asyncio.sleep(0.05)
    await binder.close()
    await binder.close()
    assert binder.state is CallState.LEFT
    assert recorder.stops == 1
    assert binder.mixer is None


async def _record(binder):
    await binder.handle(_event("join-attempt"))
    await binder.handle(_event("joined"))
    await asyncio.sleep(0.05)
    assert binder.state is CallState.RECORDING


@pytest.mark.asyncio
async def test_participant_join_restarts_recorder_after_capture_failure(settings):
    call = FakeCall()
    recorder = FakeRecorder()
    binder = CallLifecycleBinder(call, recorder, settings=settings)
    await _record(binder)

    # The recorder aborted on its own; nothing told the binder.
    recorder._active = False
    call.remotes["guest"] = PCMBufferTrack("guest-audio")
    await binder.handle(_event("participant-joined", "guest"))
    await asyncio.sleep(0.05)

    assert binder.state is CallState.RECORDING
    assert recorder.is_recording
    assert recorder.starts == 2
    assert "guest-audio" in recorder.stream.audio_tracks


@pytest.mark.asyncio
async def test_recorder_error_hook_returns_to_joined(settings):
    call = FakeCall()
    recorder = FakeRecorder()
    warnings = []
    binder = CallLifecycleBinder(call, recorder, settings=settings, on_warning=warnings.append)
    await _record(binder)

    recorder._active = False
    binder.on_recorder_error(CaptureError("Recording error occurred: device lost"))
    assert binder.state is CallState.JOINED
    assert [str(w) for w in warnings] == ["Recording error occurred: device lost"]

    call.remotes["guest"] = PCMBufferTrack("guest-audio")
    await binder.handle(_event("participant-joined", "guest"))
    await asyncio.sleep(0.05)
    assert binder.state is CallState.RECORDING
    assert recorder.starts == 2
