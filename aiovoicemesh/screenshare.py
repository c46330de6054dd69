"""Outgoing screen share on every peer link."""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Iterable

from aiovoicemesh.peer import PeerLink
from aiovoicemesh.rtc import MediaTrack

logger = logging.getLogger(__name__)

LinksProvider = Callable[[], Iterable[PeerLink]]
EndedBroadcaster = Callable[[], Awaitable[None]]


class ScreenShareHandle:
    """Returned by ScreenShareManager.start_share()."""

    def __init__(self, manager: ScreenShareManager, track: MediaTrack) -> None:
        """Do not call this constructor, use ScreenShareManager.start_share instead."""
        self._manager = manager
        self.track = track

    @property
    def active(self) -> bool:
        """Return True while this share is being sent."""
        return self._manager.track is self.track

    async def stop(self) -> None:
        """Stop this share. Does nothing if it was already replaced or stopped."""
        if self.active:
            await self._manager.stop_share()


class ScreenShareManager:
    """Adds and removes the outgoing video track on every peer link.

    Starting and stopping a share explicitly triggers a negotiation cycle on
    each link, so already connected peers see the change right away. Stopping
    also broadcasts a ``screen-share-ended`` message, the authoritative
    end-of-share signal for the receivers.
    """

    def __init__(self, links: LinksProvider, broadcast_ended: EndedBroadcaster) -> None:
        """Create a manager that is not sharing."""
        self._links = links
        self._broadcast_ended = broadcast_ended
        self._track: MediaTrack | None = None

    @property
    def track(self) -> MediaTrack | None:
        """The track being shared, if any."""
        return self._track

    @property
    def active(self) -> bool:
        """Return True while sharing."""
        return self._track is not None

    async def start_share(self, track: MediaTrack) -> ScreenShareHandle:
        """Send ``track`` to every peer, replacing any current share."""
        if self._track is not None:
            await self.stop_share()
        self._track = track
        for link in self._links():
            if link.closed:
                continue
            link.add_track(track)
            link.request_negotiation()
        logger.info("Started screen share")
        return ScreenShareHandle(self, track)

    def attach_to(self, link: PeerLink) -> None:
        """Add the current share to a newly created link."""
        if self._track is not None:
            link.add_track(self._track)

    async def stop_share(self) -> None:
        """Stop sending the share and tell every participant."""
        track, self._track = self._track, None
        if track is None:
            return
        for link in self._links():
            if link.closed:
                continue
            try:
                await link.remove_track(track)
            except Exception:
                logger.exception("Error removing screen share from %s", link.participant_id)
                continue
            link.request_negotiation()
        track.stop()
        await self._broadcast_ended()
        logger.info("Stopped screen share")

    def discard(self) -> None:
        """Forget the share without signaling, used when leaving the session."""
        track, self._track = self._track, None
        if track is not None:
            track.stop()
