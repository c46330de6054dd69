"""Volume monitor driving the noise gate and speaking indicators."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable
from contextlib import suppress

from aiovoicemesh.config import LEVEL_SCALE, VoiceSettings
from aiovoicemesh.events import VolumeSample
from aiovoicemesh.gate import NoiseGate
from aiovoicemesh.models import ConnectionQuality

logger = logging.getLogger(__name__)

LocalLevelProvider = Callable[[], float | None]
"""Returns the gain adjusted local level (0-255), None without capture."""
PeerLevelProvider = Callable[[], Iterable[tuple[str, str, float]]]
"""Returns ``(participant_id, name, level)`` for every connected peer."""
SamplesCallback = Callable[[list[VolumeSample]], None]


def normalize_level(level: float) -> float:
    """Map a 0-255 analyser level to 0-100."""
    return level / LEVEL_SCALE * 100


def classify_round_trip(rtt: float | None) -> ConnectionQuality:
    """Bucket a round-trip time in seconds into a connection quality."""
    if rtt is None:
        return ConnectionQuality.UNKNOWN
    rtt_ms = rtt * 1000
    if rtt_ms < 50:
        return ConnectionQuality.EXCELLENT
    if rtt_ms < 100:
        return ConnectionQuality.GOOD
    if rtt_ms < 200:
        return ConnectionQuality.FAIR
    return ConnectionQuality.POOR


class VolumeMonitor:
    """Sample levels on a fixed tick.

    Each tick reads the local level once, feeds it to the noise gate and
    reports it together with every peer's level. Sampling and gate decisions
    share this single loop.
    """

    def __init__(
        self,
        settings: VoiceSettings,
        gate: NoiseGate,
        *,
        participant_id: str,
        name: str,
        local_level: LocalLevelProvider,
        peer_levels: PeerLevelProvider,
        on_samples: SamplesCallback,
    ) -> None:
        """Create a stopped monitor."""
        self._settings = settings
        self._gate = gate
        self._participant_id = participant_id
        self._name = name
        self._local_level = local_level
        self._peer_levels = peer_levels
        self._on_samples = on_samples
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        """Return True while the tick loop runs."""
        return self._task is not None and not self._task.done()

    def update_settings(self, settings: VoiceSettings) -> None:
        """Use a new tick interval from the next tick on."""
        self._settings = settings

    def start(self) -> None:
        """Start ticking."""
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def stop(self) -> None:
        """Stop ticking."""
        if self._task is None:
            return
        self._task.cancel()
        with suppress(asyncio.CancelledError):
            await self._task
        self._task = None

    def tick(self) -> list[VolumeSample]:
        """Sample every level once, evaluate the gate and report the batch."""
        samples: list[VolumeSample] = []
        local = self._local_level()
        if local is not None:
            self._gate.evaluate(local)
            samples.append(
                VolumeSample(self._participant_id, self._name, normalize_level(local))
            )
        for participant_id, name, level in self._peer_levels():
            samples.append(VolumeSample(participant_id, name, normalize_level(level)))
        if samples:
            self._on_samples(samples)
        return samples

    async def _run(self) -> None:
        while True:
            try:
                self.tick()
            except Exception:
                logger.exception("Error sampling volume levels")
            await asyncio.sleep(self._settings.volume_check_interval)
