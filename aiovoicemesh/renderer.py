"""Playback of remote participants' audio."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass
from typing import Protocol

import av
import numpy as np
import sounddevice
from aiortc.mediastreams import MediaStreamError

from aiovoicemesh.audio import SAMPLE_RATE, LevelAnalyser, apply_gain
from aiovoicemesh.config import MAX_PEER_VOLUME
from aiovoicemesh.rtc import MediaTrack

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PlaybackLevels:
    """How loud a sink plays one participant."""

    sink_volume: float
    """Volume of the sink itself, 0-1."""
    amplifier_gain: float | None
    """Gain of the amplification stage ahead of the sink, None when bypassed."""

    @property
    def effective(self) -> float:
        """Overall multiplier applied to the decoded audio."""
        if self.amplifier_gain is not None:
            return self.amplifier_gain
        return self.sink_volume


def compute_playback(peer_volume: float, output_volume: float, deafened: bool) -> PlaybackLevels:
    """Combine the per-peer and global volumes into sink settings.

    The sink never goes past unity. Above it, the sink is muted and the
    combined volume is applied by the amplification stage instead.
    """
    if deafened:
        return PlaybackLevels(sink_volume=0.0, amplifier_gain=None)
    combined = (peer_volume / 100) * (output_volume / 100)
    if combined > 1:
        return PlaybackLevels(sink_volume=0.0, amplifier_gain=combined)
    return PlaybackLevels(sink_volume=combined, amplifier_gain=None)


class AudioSink(Protocol):
    """Renders one inbound audio track."""

    analyser: LevelAnalyser

    def apply(self, levels: PlaybackLevels) -> None:
        """Use new playback levels."""

    def set_device(self, device: str | int | None) -> None:
        """Render to another output device."""

    async def start(self, track: MediaTrack) -> None:
        """Start rendering ``track``."""

    async def stop(self) -> None:
        """Stop rendering and release the output device."""


class SoundDeviceSink:
    """Plays a track through a sounddevice output stream."""

    def __init__(self, device: str | int | None = None) -> None:
        """Create a stopped sink."""
        self.analyser = LevelAnalyser()
        self.levels = PlaybackLevels(sink_volume=1.0, amplifier_gain=None)
        self._device = device
        self._stream: sounddevice.RawOutputStream | None = None
        self._task: asyncio.Task[None] | None = None
        self._rendering = False

    def apply(self, levels: PlaybackLevels) -> None:
        """Use new playback levels from the next frame on."""
        self.levels = levels

    def set_device(self, device: str | int | None) -> None:
        """Reopen the output stream on ``device`` with the next frame."""
        if device == self._device:
            return
        self._device = device
        self._close_stream()

    async def start(self, track: MediaTrack) -> None:
        """Start pulling frames from ``track``."""
        if self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._pump(track))

    async def stop(self) -> None:
        """Stop rendering and release the output device."""
        if self._task is not None:
            self._task.cancel()
            with suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self._close_stream()
        self.analyser.reset()

    async def _pump(self, track: MediaTrack) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                frame = await track.recv()
                if not isinstance(frame, av.AudioFrame):
                    continue
                if not self._rendering:
                    # A track can be silent until its first frame arrives
                    self._rendering = True
                    logger.debug("Rendering remote audio on device %s", self._device)
                samples = _to_mono(frame)
                self.analyser.feed(samples)
                data = apply_gain(samples, self.levels.effective).tobytes()
                stream = self._ensure_stream(frame.sample_rate or SAMPLE_RATE)
                await loop.run_in_executor(None, stream.write, data)
        except MediaStreamError:
            logger.debug("Remote audio track ended")
        finally:
            self._rendering = False

    def _ensure_stream(self, sample_rate: int) -> sounddevice.RawOutputStream:
        if self._stream is None:
            self._stream = sounddevice.RawOutputStream(
                samplerate=sample_rate,
                channels=1,
                dtype="int16",
                device=self._device,
            )
            self._stream.start()
        return self._stream

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is not None:
            stream.stop()
            stream.close()


def _to_mono(frame: av.AudioFrame) -> np.ndarray:
    """Return the frame as mono int16 samples."""
    channels = len(frame.layout.channels)
    samples = frame.to_ndarray()
    if frame.format.is_planar:
        samples = samples.T
    samples = samples.reshape(-1, channels)
    if samples.dtype != np.int16:
        samples = np.clip(samples * 32768, -32768, 32767)
    if channels > 1:
        samples = samples.mean(axis=1)
    return samples.reshape(-1).astype(np.int16)


SinkFactory = Callable[[str | int | None], AudioSink]


class RemoteAudioRenderer:
    """Owns one sink per remote participant.

    Per-participant volumes are kept across re-attachments. Deafening forces
    every sink to zero without touching the stored volumes, so undeafening
    restores the previous levels exactly.
    """

    def __init__(
        self,
        *,
        output_volume: float = 100.0,
        output_device: str | int | None = None,
        sink_factory: SinkFactory = SoundDeviceSink,
    ) -> None:
        """Create a renderer without sinks."""
        self._output_volume = output_volume
        self._output_device = output_device
        self._sink_factory = sink_factory
        self._deafened = False
        self._sinks: dict[str, AudioSink] = {}
        self._volumes: dict[str, float] = {}

    @property
    def deafened(self) -> bool:
        """Return True if all playback is forced silent."""
        return self._deafened

    @property
    def output_volume(self) -> float:
        """Global playback volume, 0-100%."""
        return self._output_volume

    def peer_volume(self, participant_id: str) -> float:
        """Stored volume of a participant, 0-200%."""
        return self._volumes.get(participant_id, 100.0)

    def playback(self, participant_id: str) -> PlaybackLevels:
        """Return the playback levels of a participant."""
        return compute_playback(
            self.peer_volume(participant_id), self._output_volume, self._deafened
        )

    def level(self, participant_id: str) -> float | None:
        """Return the latest level of a participant's audio, 0-255."""
        sink = self._sinks.get(participant_id)
        if sink is None:
            return None
        return sink.analyser.level

    def has_sink(self, participant_id: str) -> bool:
        """Return True if a participant's audio is being rendered."""
        return participant_id in self._sinks

    async def attach(self, participant_id: str, track: MediaTrack) -> None:
        """Render a participant's inbound audio track, replacing any previous one."""
        await self.detach(participant_id)
        sink = self._sink_factory(self._output_device)
        sink.apply(self.playback(participant_id))
        self._sinks[participant_id] = sink
        await sink.start(track)
        logger.debug("Attached audio of %s", participant_id)

    async def detach(self, participant_id: str) -> None:
        """Stop rendering a participant. The stored volume is kept."""
        sink = self._sinks.pop(participant_id, None)
        if sink is not None:
            await sink.stop()

    def set_peer_volume(self, participant_id: str, volume: float) -> PlaybackLevels:
        """Set a participant's volume, 0-200%."""
        if not 0 <= volume <= MAX_PEER_VOLUME:
            raise ValueError(f"volume must be between 0 and {MAX_PEER_VOLUME}")
        self._volumes[participant_id] = volume
        return self._apply(participant_id)

    def set_output_volume(self, volume: float) -> None:
        """Set the global playback volume, 0-100%."""
        if not 0 <= volume <= 100:
            raise ValueError("volume must be between 0 and 100")
        self._output_volume = volume
        self._apply_all()

    def set_deafened(self, deafened: bool) -> None:
        """Force all playback silent, or restore the stored levels."""
        if deafened == self._deafened:
            return
        self._deafened = deafened
        logger.info("Deafened" if deafened else "Undeafened")
        self._apply_all()

    def set_output_device(self, device: str | int | None) -> None:
        """Move every sink to another output device."""
        self._output_device = device
        for sink in self._sinks.values():
            sink.set_device(device)

    async def close(self) -> None:
        """Stop every sink."""
        for participant_id in list(self._sinks):
            await self.detach(participant_id)

    def _apply(self, participant_id: str) -> PlaybackLevels:
        levels = self.playback(participant_id)
        if (sink := self._sinks.get(participant_id)) is not None:
            sink.apply(levels)
        return levels

    def _apply_all(self) -> None:
        for participant_id in self._sinks:
            self._apply(participant_id)
