"""Bind the video-call lifecycle to the session recorder.

:class:`CallLifecycleBinder` is an explicit state machine::

    IDLE -> JOINING -> JOINED -> RECORDING
                       JOINED <- RECORDING   (recorder stopped on error)
      *  -> LEFT | ERROR

Events are posted to an asyncio queue by the call SDK adapter and applied in
order by :meth:`CallLifecycleBinder.run` (or directly with ``handle``).  The
recorder starts once per need after a short delay that lets audio tracks
settle; a participant joining a live recording is patched into the mixer
rather than restarting the recorder.  If the recorder has stopped on its own
(a capture error), the binder drops back to ``JOINED`` and the next join
starts it again.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple

import structlog

from .audio_mixer import AudioGraphMixer, AudioMixer, AudioTrack
from .config import Settings, get_settings
from .errors import CaptureError
from .recorder import RecordingSession

logger = structlog.get_logger(__name__)


class CallState(str, enum.Enum):
    IDLE = "IDLE"
    JOINING = "JOINING"
    JOINED = "JOINED"
    RECORDING = "RECORDING"
    LEFT = "LEFT"
    ERROR = "ERROR"


class CallEventType(str, enum.Enum):
    JOIN_ATTEMPT = "join-attempt"
    JOINED = "joined"
    LEFT = "left"
    PARTICIPANT_JOINED = "participant-joined"
    PARTICIPANT_LEFT = "participant-left"
    ERROR = "error"


@dataclass(frozen=True)
class CallEvent:
    type: CallEventType
    participant_id: Optional[str] = None
    message: Optional[str] = None


class CallClient(Protocol):
    """The parts of a video-call SDK the binder needs."""

    def local_audio_track(self) -> Optional[AudioTrack]:
        ...

    def remote_audio_tracks(self) -> Iterable[Tuple[str, AudioTrack]]:
        """Yield ``(participant_id, track)`` for every remote participant with audio."""

    def participant_audio_track(self, participant_id: str) -> Optional[AudioTrack]:
        ...


WarningCallback = Callable[[CaptureError], None]

_TERMINAL = (CallState.LEFT, CallState.ERROR)


class CallLifecycleBinder:
    """Start and stop the recorder from call events."""

    def __init__(
        self,
        call: CallClient,
        recorder: RecordingSession,
        *,
        mixer_factory: Callable[[Optional[AudioTrack]], AudioMixer] = AudioGraphMixer,
        on_warning: Optional[WarningCallback] = None,
        settings: Optional[Settings] = None,
    ) -> None:
        settings = settings or get_settings()
        self._call = call
        self._recorder = recorder
        self._mixer_factory = mixer_factory
        self._on_warning = on_warning
        self._join_delay = settings.join_start_delay_seconds
        self._participant_delay = settings.participant_start_delay_seconds
        self._state = CallState.IDLE
        self._mixer: Optional[AudioMixer] = None
        self._participants: Dict[str, str] = {}
        self._pending_start: Optional[asyncio.Task] = None
        self._events: "asyncio.Queue[Optional[CallEvent]]" = asyncio.Queue()

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def mixer(self) -> Optional[AudioMixer]:
        return self._mixer

    # Event channel ---------------------------------------------------------

    def post(self, event: CallEvent) -> None:
        self._events.put_nowait(event)

    async def run(self) -> None:
        """Consume posted events until the call ends or :meth:`close` is called."""

        while self._state not in _TERMINAL:
            event = await self._events.get()
            if event is None:
                break
            await self.handle(event)

    async def handle(self, event: CallEvent) -> None:
        log = logger.bind(event=event.type.value, state=self._state.value)
        if self._state in _TERMINAL:
            log.debug("call_binder.event_ignored")
            return
        if event.type is CallEventType.JOIN_ATTEMPT:
            if self._state is CallState.IDLE:
                self._set_state(CallState.JOINING)
        elif event.type is CallEventType.JOINED:
            if self._state in (CallState.IDLE, CallState.JOINING):
                self._on_joined()
        elif event.type is CallEventType.PARTICIPANT_JOINED:
            self._on_participant_joined(event.participant_id)
        elif event.type is CallEventType.PARTICIPANT_LEFT:
            self._on_participant_left(event.participant_id)
        elif event.type is CallEventType.LEFT:
            await self._release(CallState.LEFT)
        elif event.type is CallEventType.ERROR:
            self._warn(CaptureError(event.message or "Call error"))
            await self._release(CallState.ERROR)

    async def close(self) -> None:
        """Release everything; safe to call more than once."""

        if self._state not in _TERMINAL:
            await self._release(CallState.LEFT)
        self._events.put_nowait(None)

    # Transitions -----------------------------------------------------------

    def _set_state(self, state: CallState) -> None:
        logger.info("call_binder.transition", source=self._state.value, target=state.value)
        self._state = state

    def _on_joined(self) -> None:
        self._set_state(CallState.JOINED)
        self._mixer = self._mixer_factory(self._call.local_audio_track())
        for participant_id, track in self._call.remote_audio_tracks():
            self._connect(participant_id, track)
        self._schedule_start(self._join_delay)

    def on_recorder_error(self, error: CaptureError) -> None:
        """Recorder ``on_error`` hook: warn and allow the next join to restart it."""

        self._warn(error)
        self._recorder_lost()

    def _recorder_lost(self) -> None:
        if self._state is CallState.RECORDING and not self._recorder.is_recording:
            logger.info("call_binder.recorder_inactive")
            self._set_state(CallState.JOINED)

    def _on_participant_joined(self, participant_id: Optional[str]) -> None:
        self._recorder_lost()
        if participant_id is None or self._state not in (CallState.JOINED, CallState.RECORDING):
            return
        track = self._call.participant_audio_track(participant_id)
        if track is not None:
            self._connect(participant_id, track)
        if self._state is CallState.JOINED:
            self._schedule_start(self._participant_delay)

    def _on_participant_left(self, participant_id: Optional[str]) -> None:
        track_id = self._participants.pop(participant_id, None) if participant_id else None
        if track_id is not None and self._mixer is not None:
            self._mixer.remove_source(track_id)

    def _connect(self, participant_id: str, track: AudioTrack) -> None:
        if self._mixer is None:
            return
        self._mixer.add_source(track)
        self._participants[participant_id] = track.track_id

    def _schedule_start(self, delay: float) -> None:
        if self._pending_start is not None and not self._pending_start.done():
            return
        self._pending_start = asyncio.get_running_loop().create_task(self._delayed_start(delay))

    async def _delayed_start(self, delay: float) -> None:
        await asyncio.sleep(delay)
        if self._state is not CallState.JOINED or self._mixer is None:
            return
        stream = self._mixer.output_stream()
        if not stream.audio_tracks:
            self._warn(CaptureError("No audio tracks available for recording"))
            return
        try:
            await self._recorder.start(stream)
        except CaptureError as exc:
            self._warn(exc)
            return
        if self._state is CallState.JOINED:
            self._set_state(CallState.RECORDING)

    async def _release(self, target: CallState) -> None:
        pending, self._pending_start = self._pending_start, None
        if pending is not None and not pending.done():
            pending.cancel()
            try:
                await pending
            except asyncio.CancelledError:
                pass
        self._set_state(target)
        if self._recorder.is_recording:
            await self._recorder.stop()
        if self._mixer is not None:
            self._mixer.close()
            self._mixer = None
        self._participants.clear()

    def _warn(self, error: CaptureError) -> None:
        logger.warning("call_binder.capture_warning", error=str(error), state=self._state.value)
        if self._on_warning is not None:
            self._on_warning(error)


__all__ = ["CallState", "CallEventType", "CallEvent", "CallClient", "CallLifecycleBinder"]
