"""Peer link to one remote participant, negotiated with Perfect Negotiation.

Both sides of a pair derive the same roles from their participant ids: the
side with the lexicographically smaller id is polite. When both sides offer
at the same time the impolite side ignores the incoming offer and keeps its
own, while the polite side rolls its offer back and answers. No extra round
trip is needed to agree on who wins. A polite side whose primitive can no
longer roll back drops the link and reports the participant as gone, leaving
re-joining as the way back.

Inbound signaling messages for a link are processed strictly one after the
other by a worker task reading the link's inbox. Local negotiation triggers
run outside the inbox so that an offer arriving while a local offer is being
created is resolved by the glare rule.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import suppress
from dataclasses import dataclass
from typing import Protocol

from aiovoicemesh.errors import IceApplyError, SignalingDeliveryError
from aiovoicemesh.models import (
    AnswerMessage,
    ConnectionState,
    IceBatchMessage,
    IceCandidatePayload,
    NegotiationState,
    OfferMessage,
    ScreenShareEndedMessage,
    SessionDescriptionPayload,
    SignalingMessage,
    SignalingState,
)
from aiovoicemesh.rtc import MediaTrack, PeerConnection
from aiovoicemesh.signaling import SignalingChannel

logger = logging.getLogger(__name__)

DEFAULT_PEER_VOLUME = 100


@dataclass(frozen=True, slots=True)
class Participant:
    """Identity of a participant."""

    participant_id: str
    """Stable id, compared lexicographically to assign negotiation roles."""
    name: str
    """Display name."""


class PeerLinkOwner(Protocol):
    """Receives the events of a peer link."""

    def on_local_candidate(self, link: PeerLink, candidate: IceCandidatePayload) -> None:
        """A local ICE candidate for this link was discovered."""

    def on_remote_audio(self, link: PeerLink, track: MediaTrack) -> None:
        """The remote participant's audio track arrived."""

    def on_remote_share_started(self, link: PeerLink, track: MediaTrack) -> None:
        """The remote participant started sharing its screen."""

    def on_remote_share_ended(self, link: PeerLink) -> None:
        """The remote participant stopped sharing its screen."""

    def on_link_departed(self, link: PeerLink, state: ConnectionState) -> None:
        """The link reached a terminal connectivity state."""


class PeerLink:
    """One peer-link primitive plus its negotiation state."""

    def __init__(
        self,
        local: Participant,
        remote: Participant,
        connection: PeerConnection,
        channel: SignalingChannel,
        owner: PeerLinkOwner,
    ) -> None:
        """Create a link; call start() to begin processing messages."""
        self.local = local
        self.remote = remote
        self.connection = connection
        self._channel = channel
        self._owner = owner
        self._logger = logger.getChild(remote.participant_id)

        self.making_offer = False
        """True from the start of offer creation until the offer was sent."""
        self.remote_description_set = False
        self.ice_buffer: list[IceCandidatePayload] = []
        """Remote candidates received before the remote description was applied."""
        self.ignore_offer = False
        """Set when the last inbound offer was dropped because of glare."""
        self.ignored_offers = 0
        self.coalesced_triggers = 0
        self.volume = DEFAULT_PEER_VOLUME
        """Playback volume of this participant, 0-200%."""
        self.has_screen_share = False
        self.screen_share_track: MediaTrack | None = None
        self.audio_track: MediaTrack | None = None
        self.departed = False

        self._inbox: asyncio.Queue[SignalingMessage] = asyncio.Queue()
        self._worker_task: asyncio.Task[None] | None = None
        self._negotiation_tasks: set[asyncio.Task[None]] = set()
        self._closed = False

        connection.on_ice_candidate = self._handle_local_candidate
        connection.on_track = self._handle_track
        connection.on_connection_state_change = self._handle_connection_state

    @property
    def participant_id(self) -> str:
        """Id of the remote participant."""
        return self.remote.participant_id

    @property
    def name(self) -> str:
        """Display name of the remote participant."""
        return self.remote.name

    @property
    def polite(self) -> bool:
        """Return True if this side yields when both sides offer at once."""
        return self.local.participant_id < self.remote.participant_id

    @property
    def negotiation_state(self) -> NegotiationState:
        """Local negotiation state derived from the primitive's signaling state."""
        if self.making_offer:
            return NegotiationState.MAKING_OFFER
        if self.connection.signaling_state is SignalingState.HAVE_LOCAL_OFFER:
            return NegotiationState.AWAITING_ANSWER
        return NegotiationState.STABLE

    @property
    def closed(self) -> bool:
        """Return True once close() was called."""
        return self._closed

    @property
    def replaceable(self) -> bool:
        """Return True if a new join from this participant must replace the link."""
        return (
            self._closed
            or self.departed
            or self.connection.connection_state in (ConnectionState.FAILED, ConnectionState.CLOSED)
        )

    def start(self) -> None:
        """Start the inbox worker."""
        if self._worker_task is None:
            self._worker_task = asyncio.get_running_loop().create_task(self._inbox_worker())

    def enqueue(self, message: SignalingMessage) -> None:
        """Queue an inbound message for in-order processing."""
        if self._closed:
            return
        self._inbox.put_nowait(message)

    async def wait_idle(self) -> None:
        """Wait until every queued message and negotiation has been processed."""
        while True:
            await self._inbox.join()
            if not self._negotiation_tasks:
                return
            await asyncio.gather(*self._negotiation_tasks, return_exceptions=True)

    def request_negotiation(self) -> None:
        """Run a local negotiation cycle in the background."""
        if self._closed:
            return
        task = asyncio.get_running_loop().create_task(self.negotiate())
        self._negotiation_tasks.add(task)
        task.add_done_callback(self._negotiation_tasks.discard)

    async def negotiate(self) -> None:
        """Create an offer for the current tracks and send it to the peer.

        A trigger that arrives while an offer is already being made is
        skipped; the change rides along with the next negotiation cycle.
        """
        if self.making_offer:
            self.coalesced_triggers += 1
            self._logger.debug("Already making an offer, skipping negotiation")
            return
        connection = self.connection
        self.making_offer = True
        try:
            offer = await connection.create_offer()
            if connection.signaling_state is not SignalingState.STABLE:
                self._logger.debug(
                    "Signaling state changed to %s while creating offer, aborting",
                    connection.signaling_state.value,
                )
                return
            await connection.set_local_description(offer)
            await self._send(OfferMessage(**self._envelope(), payload=offer))
        except Exception:
            if self._closed:
                return
            self._logger.exception("Error creating offer")
        finally:
            self.making_offer = False

    async def handle_message(self, message: SignalingMessage) -> None:
        """Apply one inbound signaling message."""
        match message:
            case OfferMessage(payload=payload):
                await self._handle_offer(payload)
            case AnswerMessage(payload=payload):
                await self._handle_answer(payload)
            case IceBatchMessage(payload=payload):
                self._logger.debug("Received %d ICE candidates", len(payload.candidates))
                for candidate in payload.candidates:
                    await self.add_remote_candidate(candidate)
            case ScreenShareEndedMessage():
                if self.end_remote_share():
                    self._owner.on_remote_share_ended(self)
            case _:
                self._logger.debug("Unhandled signaling message type: %s", type(message).__name__)

    async def add_remote_candidate(self, candidate: IceCandidatePayload) -> None:
        """Apply a remote candidate, or buffer it until the remote description is set."""
        if not self.remote_description_set:
            self.ice_buffer.append(candidate)
            return
        await self._apply_candidate(candidate)

    def end_remote_share(self) -> bool:
        """Forget the remote screen share, returning False if there was none."""
        if not self.has_screen_share:
            return False
        self.has_screen_share = False
        self.screen_share_track = None
        return True

    def add_track(self, track: MediaTrack) -> None:
        """Start sending a local track."""
        self.connection.add_track(track)

    async def remove_track(self, track: MediaTrack) -> None:
        """Stop sending a local track."""
        await self.connection.remove_track(track)

    async def replace_audio_track(self, track: MediaTrack) -> None:
        """Swap the outgoing audio without renegotiating."""
        if self._closed:
            return
        try:
            await self.connection.replace_track("audio", track)
        except Exception:
            self._logger.exception("Error replacing outgoing audio track")

    async def close(self) -> None:
        """Cancel pending work and close the peer-link primitive."""
        if self._closed:
            return
        self._closed = True
        tasks = list(self._negotiation_tasks)
        if self._worker_task is not None:
            tasks.append(self._worker_task)
        for task in tasks:
            task.cancel()
        for task in tasks:
            with suppress(asyncio.CancelledError):
                await task
        self._worker_task = None
        self.ice_buffer.clear()
        await self.connection.close()
        self._logger.debug("Peer link closed")

    def _envelope(self) -> dict[str, object]:
        return {
            "from_id": self.local.participant_id,
            "from_name": self.local.name,
            "to_id": self.remote.participant_id,
            "created_at": self._channel.now_ms(),
        }

    async def _send(self, message: SignalingMessage) -> None:
        try:
            await self._channel.send(message)
        except SignalingDeliveryError as err:
            # The peer's own negotiation or a later cycle may still succeed
            self._logger.warning("Could not deliver %s: %s", type(message).__name__, err)

    async def _handle_offer(self, offer: SessionDescriptionPayload) -> None:
        connection = self.connection
        collision = self.making_offer or connection.signaling_state is not SignalingState.STABLE
        self.ignore_offer = collision and not self.polite
        if self.ignore_offer:
            self.ignored_offers += 1
            self._logger.debug("Ignoring colliding offer, our own offer wins")
            return

        if collision and connection.signaling_state is SignalingState.HAVE_LOCAL_OFFER:
            if not connection.can_rollback:
                # Neither offer can be applied here, restart the link instead
                self._logger.warning(
                    "Offer collision on an established link cannot be rolled back, dropping link"
                )
                self._depart(ConnectionState.FAILED)
                await connection.close()
                return
            self._logger.debug("Offer collision, rolling back our offer")
            await connection.rollback()

        await connection.set_remote_description(offer)
        self.remote_description_set = True
        await self._flush_ice_buffer()

        answer = await connection.create_answer()
        await connection.set_local_description(answer)
        await self._send(AnswerMessage(**self._envelope(), payload=answer))

    async def _handle_answer(self, answer: SessionDescriptionPayload) -> None:
        connection = self.connection
        if connection.signaling_state is not SignalingState.HAVE_LOCAL_OFFER:
            self._logger.debug(
                "Ignoring answer in signaling state %s", connection.signaling_state.value
            )
            return
        await connection.set_remote_description(answer)
        self.remote_description_set = True
        await self._flush_ice_buffer()

    async def _flush_ice_buffer(self) -> None:
        candidates, self.ice_buffer = self.ice_buffer, []
        if candidates:
            self._logger.debug("Applying %d buffered ICE candidates", len(candidates))
        for candidate in candidates:
            await self._apply_candidate(candidate)

    async def _apply_candidate(self, candidate: IceCandidatePayload) -> None:
        try:
            await self.connection.add_ice_candidate(candidate)
        except IceApplyError as err:
            if not self.ignore_offer:
                self._logger.warning("Skipping ICE candidate: %s", err)

    async def _inbox_worker(self) -> None:
        while True:
            message = await self._inbox.get()
            try:
                await self.handle_message(message)
            except Exception:
                self._logger.exception("Error handling %s", type(message).__name__)
            finally:
                self._inbox.task_done()

    def _handle_local_candidate(self, candidate: IceCandidatePayload) -> None:
        if not self._closed:
            self._owner.on_local_candidate(self, candidate)

    def _handle_track(self, track: MediaTrack) -> None:
        if self._closed:
            return
        self._logger.debug("Received %s track", track.kind)
        if track.kind == "audio":
            self.audio_track = track
            self._owner.on_remote_audio(self, track)
            return
        if track.kind != "video":
            return
        self.screen_share_track = track
        self.has_screen_share = True
        # Best effort only, the screen-share-ended message is authoritative
        track.on("ended", lambda: self._handle_share_track_ended(track))
        self._owner.on_remote_share_started(self, track)

    def _handle_share_track_ended(self, track: MediaTrack) -> None:
        if self._closed or track is not self.screen_share_track:
            return
        if self.end_remote_share():
            self._owner.on_remote_share_ended(self)

    def _handle_connection_state(self, state: ConnectionState) -> None:
        self._logger.debug("Connection state changed to %s", state.value)
        if not state.is_terminal:
            return
        self._depart(state)

    def _depart(self, state: ConnectionState) -> None:
        if self._closed or self.departed:
            return
        self.departed = True
        self._owner.on_link_departed(self, state)
