"""Software noise gate with asymmetric hysteresis."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from aiovoicemesh.config import VoiceSettings
from aiovoicemesh.models import AudioSource

logger = logging.getLogger(__name__)

SourceCallback = Callable[[AudioSource], None]


class NoiseGate:
    """Decide whether the live or the silent source is sent to peers.

    The gate is evaluated once per monitor tick with the gain adjusted input
    level on the 0-255 analyser scale. Opening waits ``gate_open_delay``
    seconds above the threshold, closing waits the longer
    ``gate_close_delay`` seconds below it. A reversal before a timer fires
    cancels the timer. Manual mute overrides the level completely.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        settings: VoiceSettings,
        on_change: SourceCallback,
    ) -> None:
        """Create a gate, closed unless the threshold is zero."""
        self._loop = loop
        self._settings = settings
        self._on_change = on_change
        self._open = settings.mic_threshold <= 0
        self._manually_muted = False
        self._open_timer: asyncio.TimerHandle | None = None
        self._close_timer: asyncio.TimerHandle | None = None

    @property
    def is_open(self) -> bool:
        """Return True if the level currently lets live audio through."""
        return self._open

    @property
    def manually_muted(self) -> bool:
        """Return True if the user muted the microphone."""
        return self._manually_muted

    @property
    def source(self) -> AudioSource:
        """Return the source that must currently be sent."""
        if self._manually_muted or not self._open:
            return AudioSource.SILENCE
        return AudioSource.LIVE

    @property
    def timers_pending(self) -> bool:
        """Return True while an open or close timer is armed."""
        return self._open_timer is not None or self._close_timer is not None

    def update_settings(self, settings: VoiceSettings) -> None:
        """Use new thresholds and delays from the next evaluation on."""
        self._settings = settings

    def evaluate(self, level: float) -> None:
        """Feed one gain adjusted level sample into the gate."""
        if self._manually_muted:
            return
        if level >= self._settings.threshold_level:
            self._cancel_close()
            if not self._open and self._open_timer is None:
                self._open_timer = self._loop.call_later(
                    self._settings.gate_open_delay, self._fire_open
                )
        else:
            self._cancel_open()
            if self._open and self._close_timer is None:
                self._close_timer = self._loop.call_later(
                    self._settings.gate_close_delay, self._fire_close
                )

    def set_muted(self, muted: bool) -> None:
        """Mute or unmute the microphone, taking effect immediately.

        Unmuting opens the gate right away; the next quiet samples close it
        again after the close delay.
        """
        self.cancel()
        self._manually_muted = muted
        self._open = not muted
        logger.info("Microphone %s", "muted" if muted else "unmuted")
        self._emit()

    def cancel(self) -> None:
        """Cancel both pending timers."""
        self._cancel_open()
        self._cancel_close()

    def _cancel_open(self) -> None:
        if self._open_timer is not None:
            self._open_timer.cancel()
            self._open_timer = None

    def _cancel_close(self) -> None:
        if self._close_timer is not None:
            self._close_timer.cancel()
            self._close_timer = None

    def _fire_open(self) -> None:
        self._open_timer = None
        if self._manually_muted:
            return
        self._open = True
        logger.info("Noise gate opened")
        self._emit()

    def _fire_close(self) -> None:
        self._close_timer = None
        if self._manually_muted:
            return
        self._open = False
        logger.info("Noise gate closed")
        self._emit()

    def _emit(self) -> None:
        try:
            self._on_change(self.source)
        except Exception:
            logger.exception("Error switching outgoing audio source")
