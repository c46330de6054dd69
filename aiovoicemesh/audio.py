"""Local audio pipeline: microphone capture, input gain, level analysis.

The pipeline always holds two outgoing audio tracks of the same format. The
live track carries the captured microphone signal with the input gain
applied, the silence track carries zeros. The noise gate decides which of the
two is sent; ``LocalAudioPipeline.select`` reports the track to put on every
peer link whenever that decision changes.
"""

from __future__ import annotations

import asyncio
import fractions
import logging
import time
from collections.abc import Callable

import av
import numpy as np
import sounddevice
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from aiovoicemesh.config import LEVEL_SCALE, VoiceSettings
from aiovoicemesh.errors import MediaAccessError
from aiovoicemesh.models import AudioSource

logger = logging.getLogger(__name__)

SAMPLE_RATE = 48_000
FRAME_SAMPLES = 960
"""20 ms of audio at SAMPLE_RATE."""
MAX_QUEUED_BLOCKS = 50


class LevelAnalyser:
    """Frequency-domain level meter.

    Works like a browser AnalyserNode: a windowed FFT of the latest samples,
    smoothed over time, converted to decibels and mapped linearly from
    ``min_decibels``..``max_decibels`` to 0..255. The level is the loudest
    frequency bin.
    """

    def __init__(
        self,
        *,
        fft_size: int = 256,
        smoothing: float = 0.8,
        min_decibels: float = -100.0,
        max_decibels: float = -30.0,
    ) -> None:
        """Create an analyser reporting silence until it is fed."""
        if fft_size <= 0 or fft_size & (fft_size - 1):
            raise ValueError("fft_size must be a power of two")
        if not 0 <= smoothing < 1:
            raise ValueError("smoothing must be in [0, 1)")
        if max_decibels <= min_decibels:
            raise ValueError("max_decibels must be greater than min_decibels")
        self.fft_size = fft_size
        self.smoothing = smoothing
        self.min_decibels = min_decibels
        self.max_decibels = max_decibels
        self._window = np.blackman(fft_size)
        self._spectrum = np.zeros(fft_size // 2 + 1)
        self._level = 0.0

    @property
    def level(self) -> float:
        """Latest level, 0-255."""
        return self._level

    def reset(self) -> None:
        """Forget all history."""
        self._spectrum[:] = 0
        self._level = 0.0

    def feed(self, samples: np.ndarray) -> float:
        """Analyse a block of int16 samples and return the new level."""
        data = samples.astype(np.float64).reshape(-1) / 32768.0
        if data.size < self.fft_size:
            data = np.pad(data, (self.fft_size - data.size, 0))
        data = data[-self.fft_size :]
        magnitude = np.abs(np.fft.rfft(data * self._window)) / self.fft_size
        self._spectrum = self.smoothing * self._spectrum + (1 - self.smoothing) * magnitude
        decibels = 20 * np.log10(np.maximum(self._spectrum, 1e-12))
        scaled = (decibels - self.min_decibels) * (
            LEVEL_SCALE / (self.max_decibels - self.min_decibels)
        )
        self._level = float(np.clip(scaled, 0, LEVEL_SCALE).max())
        return self._level


def apply_gain(samples: np.ndarray, gain: float) -> np.ndarray:
    """Scale int16 samples, saturating instead of wrapping."""
    if gain == 1.0:
        return samples
    scaled = samples.astype(np.float32) * gain
    return np.clip(scaled, -32768, 32767).astype(np.int16)


def _build_frame(samples: np.ndarray, pts: int, sample_rate: int) -> av.AudioFrame:
    frame = av.AudioFrame.from_ndarray(samples.reshape(1, -1), format="s16", layout="mono")
    frame.sample_rate = sample_rate
    frame.pts = pts
    frame.time_base = fractions.Fraction(1, sample_rate)
    return frame


class MicrophoneTrack(MediaStreamTrack):
    """Outgoing audio track capturing the microphone through sounddevice.

    Every captured block is fed to the level analyser as it arrives, whether
    or not the track is currently being sent. The input gain is only applied
    to the frames handed to the peer links; the analyser sees the raw signal.
    """

    kind = "audio"

    def __init__(
        self,
        analyser: LevelAnalyser,
        *,
        device: str | int | None = None,
        gain: float = 1.0,
        sample_rate: int = SAMPLE_RATE,
        blocksize: int = FRAME_SAMPLES,
    ) -> None:
        """Open the capture device, raising MediaAccessError on failure."""
        super().__init__()
        self.gain = gain
        self._analyser = analyser
        self._sample_rate = sample_rate
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue[np.ndarray] = asyncio.Queue(maxsize=MAX_QUEUED_BLOCKS)
        self._timestamp = 0
        self._stream: sounddevice.InputStream | None = None
        try:
            self._stream = sounddevice.InputStream(
                samplerate=sample_rate,
                channels=1,
                dtype="int16",
                blocksize=blocksize,
                device=device,
                callback=self._audio_callback,
            )
            self._stream.start()
        except (sounddevice.PortAudioError, ValueError) as err:
            raise MediaAccessError(f"Cannot open capture device {device!r}: {err}") from err
        logger.info("Capturing microphone from device %s at %d Hz", device, sample_rate)

    def _audio_callback(
        self,
        indata: np.ndarray,
        frames: int,  # noqa: ARG002
        time: sounddevice.CallbackTimeInfo,  # noqa: ARG002
        status: sounddevice.CallbackFlags,
    ) -> None:
        # Runs on the PortAudio thread
        if status:
            logger.debug("Capture status: %s", status)
        block = indata[:, 0].copy()
        self._loop.call_soon_threadsafe(self._on_block, block)

    def _on_block(self, block: np.ndarray) -> None:
        self._analyser.feed(block)
        if self._queue.full():
            # Nobody is pulling frames while the gate is closed
            self._queue.get_nowait()
        self._queue.put_nowait(block)

    async def recv(self) -> av.AudioFrame:
        """Return the next captured frame with the input gain applied."""
        if self.readyState != "live":
            raise MediaStreamError
        block = await self._queue.get()
        frame = _build_frame(apply_gain(block, self.gain), self._timestamp, self._sample_rate)
        self._timestamp += block.size
        return frame

    def stop(self) -> None:
        """Close the capture device."""
        if self._stream is not None:
            self._stream.stop()
            self._stream.close()
            self._stream = None
        super().stop()


class SilenceTrack(MediaStreamTrack):
    """Outgoing audio track of generated silence, paced in real time."""

    kind = "audio"

    def __init__(self, *, sample_rate: int = SAMPLE_RATE, samples: int = FRAME_SAMPLES) -> None:
        """Create a silence track matching the microphone format."""
        super().__init__()
        self._sample_rate = sample_rate
        self._samples = samples
        self._start: float | None = None
        self._timestamp = 0

    async def recv(self) -> av.AudioFrame:
        """Return the next frame of silence."""
        if self.readyState != "live":
            raise MediaStreamError
        if self._start is None:
            self._start = time.time()
        else:
            self._timestamp += self._samples
            wait = self._start + (self._timestamp / self._sample_rate) - time.time()
            if wait > 0:
                await asyncio.sleep(wait)
        silence = np.zeros(self._samples, dtype=np.int16)
        return _build_frame(silence, self._timestamp, self._sample_rate)


CaptureFactory = Callable[[VoiceSettings, LevelAnalyser], MediaStreamTrack]


def open_microphone(settings: VoiceSettings, analyser: LevelAnalyser) -> MediaStreamTrack:
    """Open the configured capture device."""
    return MicrophoneTrack(
        analyser, device=settings.input_device, gain=settings.input_multiplier
    )


class LocalAudioPipeline:
    """Owns the capture device and the two alternate outgoing tracks."""

    def __init__(
        self,
        settings: VoiceSettings,
        *,
        capture_factory: CaptureFactory = open_microphone,
        analyser: LevelAnalyser | None = None,
    ) -> None:
        """Create a stopped pipeline."""
        self._settings = settings
        self._capture_factory = capture_factory
        self.analyser = analyser or LevelAnalyser()
        self._live: MediaStreamTrack | None = None
        self._silence: MediaStreamTrack | None = None
        self._source = AudioSource.SILENCE

    @property
    def running(self) -> bool:
        """Return True while the capture device is open."""
        return self._live is not None

    @property
    def source(self) -> AudioSource:
        """The source currently sent to every peer link."""
        return self._source

    @property
    def live_track(self) -> MediaStreamTrack:
        """Captured audio with input gain applied."""
        if self._live is None:
            raise RuntimeError("Audio pipeline is not running")
        return self._live

    @property
    def silence_track(self) -> MediaStreamTrack:
        """Generated silence."""
        if self._silence is None:
            raise RuntimeError("Audio pipeline is not running")
        return self._silence

    @property
    def current_track(self) -> MediaStreamTrack:
        """The track to attach to new peer links."""
        if self._source is AudioSource.LIVE:
            return self.live_track
        return self.silence_track

    @property
    def adjusted_level(self) -> float:
        """Captured level multiplied by the input gain, 0-255 scale."""
        return self.analyser.level * self._settings.input_multiplier

    async def start(self, initial_source: AudioSource) -> None:
        """Open the capture device.

        Raises MediaAccessError if no capture device can be acquired.
        """
        if self._live is not None:
            return
        try:
            self._live = self._capture_factory(self._settings, self.analyser)
        except MediaAccessError:
            raise
        except (OSError, RuntimeError) as err:
            raise MediaAccessError(f"Cannot acquire capture device: {err}") from err
        self._silence = SilenceTrack()
        self._source = initial_source
        logger.debug("Audio pipeline started, sending %s", initial_source.value)

    def update_settings(self, settings: VoiceSettings) -> None:
        """Apply a new input gain to the live track."""
        self._settings = settings
        if self._live is not None and hasattr(self._live, "gain"):
            self._live.gain = settings.input_multiplier

    def select(self, source: AudioSource) -> MediaStreamTrack | None:
        """Make ``source`` current and return its track if it changed."""
        if self._live is None or source is self._source:
            return None
        self._source = source
        logger.debug("Outgoing audio switched to %s", source.value)
        return self.current_track

    def stop(self) -> None:
        """Release the capture device and stop both tracks."""
        for track in (self._live, self._silence):
            if track is not None:
                track.stop()
        self._live = None
        self._silence = None
        self._source = AudioSource.SILENCE
        self.analyser.reset()
