"""Per-peer batching of locally discovered ICE candidates."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

from aiovoicemesh.models import IceCandidatePayload

logger = logging.getLogger(__name__)

FlushCallback = Callable[[str, list[IceCandidatePayload]], None]


class IceCandidateBatcher:
    """Coalesce bursts of ICE candidates into one message per peer.

    Every added candidate (re)starts a debounce timer for its peer. When the
    timer fires, all candidates collected for that peer are handed to
    ``on_flush`` in discovery order.
    """

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        delay: float,
        on_flush: FlushCallback,
    ) -> None:
        """Create a batcher flushing ``delay`` seconds after the last candidate."""
        self._loop = loop
        self.delay = delay
        self._on_flush = on_flush
        self._batches: dict[str, list[IceCandidatePayload]] = {}
        self._timers: dict[str, asyncio.TimerHandle] = {}

    def add(self, peer_id: str, candidate: IceCandidatePayload) -> None:
        """Queue a candidate for ``peer_id`` and restart its debounce timer."""
        self._batches.setdefault(peer_id, []).append(candidate)
        if (timer := self._timers.pop(peer_id, None)) is not None:
            timer.cancel()
        self._timers[peer_id] = self._loop.call_later(self.delay, self.flush, peer_id)

    def pending(self, peer_id: str) -> list[IceCandidatePayload]:
        """Return the candidates queued for ``peer_id``."""
        return list(self._batches.get(peer_id, []))

    def flush(self, peer_id: str) -> None:
        """Hand the queued candidates of ``peer_id`` over right away."""
        if (timer := self._timers.pop(peer_id, None)) is not None:
            timer.cancel()
        batch = self._batches.pop(peer_id, None)
        if not batch:
            return
        logger.debug("Flushing %d ICE candidates for %s", len(batch), peer_id)
        try:
            self._on_flush(peer_id, batch)
        except Exception:
            logger.exception("Error flushing ICE candidates for %s", peer_id)

    def cancel(self, peer_id: str) -> None:
        """Drop the queued candidates of ``peer_id``."""
        if (timer := self._timers.pop(peer_id, None)) is not None:
            timer.cancel()
        self._batches.pop(peer_id, None)

    def cancel_all(self) -> None:
        """Drop every queued candidate and pending timer."""
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._batches.clear()
