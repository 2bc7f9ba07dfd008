"""Mix the local microphone and every remote participant into one stream.

Tracks deliver mono int16 PCM at a shared sample rate.  The mixer sums
whatever is connected at read time, so adding or removing a participant never
interrupts the sources that remain.  It owns every connected track: removing
a source or closing the mixer stops it.
"""

from __future__ import annotations

import abc
import threading
from collections import deque
from typing import Deque, Dict, List, Optional

import numpy as np
import structlog

logger = structlog.get_logger(__name__)

DEFAULT_SAMPLE_RATE = 48000

_INT16_MIN = np.iinfo(np.int16).min
_INT16_MAX = np.iinfo(np.int16).max


class AudioTrack(abc.ABC):
    """A single audio source as seen by the mixer."""

    track_id: str

    @abc.abstractmethod
    def read(self, frames: int) -> np.ndarray:
        """Return up to ``frames`` int16 samples captured since the last read."""

    @abc.abstractmethod
    def stop(self) -> None:
        """Release the underlying device or network track."""


class PCMBufferTrack(AudioTrack):
    """Track fed by pushing PCM blocks (e.g. from a call SDK's audio callback)."""

    def __init__(self, track_id: str) -> None:
        self.track_id = track_id
        self._blocks: Deque[np.ndarray] = deque()
        self._lock = threading.Lock()
        self.stopped = False

    def push(self, samples: np.ndarray) -> None:
        if self.stopped:
            return
        block = np.asarray(samples, dtype=np.int16).reshape(-1)
        with self._lock:
            self._blocks.append(block)

    def read(self, frames: int) -> np.ndarray:
        out: List[np.ndarray] = []
        needed = frames
        with self._lock:
            while needed > 0 and self._blocks:
                block = self._blocks[0]
                if len(block) <= needed:
                    out.append(self._blocks.popleft())
                    needed -= len(block)
                else:
                    out.append(block[:needed])
                    self._blocks[0] = block[needed:]
                    needed = 0
        if not out:
            return np.zeros(0, dtype=np.int16)
        return np.concatenate(out)

    def stop(self) -> None:
        self.stopped = True
        with self._lock:
            self._blocks.clear()


def mix(blocks: List[np.ndarray], frames: int) -> np.ndarray:
    """Sum ``blocks`` into ``frames`` samples, zero-padding short blocks and saturating."""

    acc = np.zeros(frames, dtype=np.int32)
    for block in blocks:
        n = min(len(block), frames)
        if n:
            acc[:n] += block[:n].astype(np.int32)
    return np.clip(acc, _INT16_MIN, _INT16_MAX).astype(np.int16)


class AudioMixer(abc.ABC):
    """Capability: combine a dynamic set of tracks into one stream."""

    @abc.abstractmethod
    def add_source(self, track: AudioTrack) -> None:
        ...

    @abc.abstractmethod
    def remove_source(self, track_id: str) -> None:
        ...

    @abc.abstractmethod
    def output_stream(self) -> "MixedAudioStream":
        ...

    @abc.abstractmethod
    def close(self) -> None:
        ...


class MixedAudioStream:
    """Read side of a mixer; what the recorder consumes."""

    def __init__(self, mixer: "AudioGraphMixer") -> None:
        self._mixer = mixer

    @property
    def sample_rate(self) -> int:
        return self._mixer.sample_rate

    @property
    def audio_tracks(self) -> List[str]:
        return self._mixer.track_ids()

    def read(self, frames: int) -> np.ndarray:
        return self._mixer.read(frames)


class AudioGraphMixer(AudioMixer):
    """Summing mixer over the local track and any number of remote tracks."""

    def __init__(self, local: Optional[AudioTrack] = None, *, sample_rate: int = DEFAULT_SAMPLE_RATE) -> None:
        self.sample_rate = sample_rate
        self._sources: Dict[str, AudioTrack] = {}
        self._lock = threading.Lock()
        self._closed = False
        self._stream = MixedAudioStream(self)
        if local is not None:
            self.add_source(local)

    @property
    def closed(self) -> bool:
        return self._closed

    def track_ids(self) -> List[str]:
        with self._lock:
            return list(self._sources)

    def add_source(self, track: AudioTrack) -> None:
        with self._lock:
            if self._closed:
                raise RuntimeError("mixer is closed")
            previous = self._sources.get(track.track_id)
            self._sources[track.track_id] = track
        if previous is not None and previous is not track:
            previous.stop()
        logger.debug("audio_mixer.source_added", sources=len(self._sources))

    def remove_source(self, track_id: str) -> None:
        with self._lock:
            track = self._sources.pop(track_id, None)
        if track is not None:
            track.stop()
            logger.debug("audio_mixer.source_removed", sources=len(self._sources))

    def output_stream(self) -> MixedAudioStream:
        return self._stream

    def read(self, frames: int) -> np.ndarray:
        with self._lock:
            sources = list(self._sources.values())
        return mix([track.read(frames) for track in sources], frames)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            sources = list(self._sources.values())
            self._sources.clear()
        for track in sources:
            track.stop()
        logger.debug("audio_mixer.closed", stopped=len(sources))


__all__ = [
    "AudioTrack",
    "PCMBufferTrack",
    "AudioMixer",
    "AudioGraphMixer",
    "MixedAudioStream",
    "mix",
    "DEFAULT_SAMPLE_RATE",
]
