"""Peer-link primitive used by the negotiation state machine.

The primitive performs ICE connectivity checks, DTLS and SRTP once a session
description was negotiated. ``PeerConnection`` is the narrow contract a peer
link relies on; ``AiortcPeerConnection`` implements it on top of aiortc.
"""

from __future__ import annotations

import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence
from functools import partial

from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCRtpSender,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp

from aiovoicemesh.config import IceServerConfig
from aiovoicemesh.errors import IceApplyError
from aiovoicemesh.models import (
    ConnectionState,
    IceCandidatePayload,
    SessionDescriptionPayload,
    SignalingState,
)

logger = logging.getLogger(__name__)

MediaTrack = MediaStreamTrack

IceCandidateCallback = Callable[[IceCandidatePayload], None]
TrackCallback = Callable[[MediaTrack], None]
ConnectionStateCallback = Callable[[ConnectionState], None]


class PeerConnection(ABC):
    """A single media link to one remote participant."""

    on_ice_candidate: IceCandidateCallback | None = None
    """Invoked for every locally discovered ICE candidate."""
    on_track: TrackCallback | None = None
    """Invoked for every inbound media track."""
    on_connection_state_change: ConnectionStateCallback | None = None
    """Invoked whenever the connectivity state changes."""

    @property
    @abstractmethod
    def signaling_state(self) -> SignalingState:
        """Local signaling state."""

    @property
    @abstractmethod
    def connection_state(self) -> ConnectionState:
        """Connectivity state."""

    @property
    @abstractmethod
    def remote_description(self) -> SessionDescriptionPayload | None:
        """The applied remote description, if any."""

    @abstractmethod
    async def create_offer(self) -> SessionDescriptionPayload:
        """Create an SDP offer for the current set of tracks."""

    @abstractmethod
    async def create_answer(self) -> SessionDescriptionPayload:
        """Create an SDP answer to the applied remote offer."""

    @abstractmethod
    async def set_local_description(self, description: SessionDescriptionPayload) -> None:
        """Apply a local description."""

    @abstractmethod
    async def set_remote_description(self, description: SessionDescriptionPayload) -> None:
        """Apply a remote description."""

    @property
    def can_rollback(self) -> bool:
        """Return True if rollback() can currently discard a pending local offer."""
        return True

    @abstractmethod
    async def rollback(self) -> None:
        """Discard a pending local offer and return to the stable state."""

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidatePayload) -> None:
        """Apply a remote ICE candidate, raising IceApplyError if rejected."""

    @abstractmethod
    def add_track(self, track: MediaTrack) -> None:
        """Start sending a local track."""

    @abstractmethod
    async def remove_track(self, track: MediaTrack) -> None:
        """Stop sending a local track."""

    @abstractmethod
    async def replace_track(self, kind: str, track: MediaTrack) -> None:
        """Swap the outgoing track of ``kind`` without renegotiating."""

    @abstractmethod
    async def get_round_trip_time(self) -> float | None:
        """Return the current round-trip time in seconds, if known."""

    @abstractmethod
    async def close(self) -> None:
        """Close the link."""

    def _emit_ice_candidate(self, candidate: IceCandidatePayload) -> None:
        if self.on_ice_candidate is not None:
            self.on_ice_candidate(candidate)

    def _emit_track(self, track: MediaTrack) -> None:
        if self.on_track is not None:
            self.on_track(track)

    def _emit_connection_state(self, state: ConnectionState) -> None:
        if self.on_connection_state_change is not None:
            self.on_connection_state_change(state)


PeerConnectionFactory = Callable[[Sequence[IceServerConfig]], PeerConnection]


def build_rtc_configuration(ice_servers: Sequence[IceServerConfig]) -> RTCConfiguration:
    """Translate the configured ICE servers to an aiortc configuration."""
    return RTCConfiguration(
        iceServers=[
            RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
            for server in ice_servers
        ]
    )


class AiortcPeerConnection(PeerConnection):
    """PeerConnection backed by ``aiortc.RTCPeerConnection``.

    aiortc gathers candidates while setting the local description and embeds
    them in the SDP, so this link never reports trickled candidates; remote
    trickled candidates are still applied.

    aiortc has no ``rollback`` description. Until a remote description was
    applied the only state a pending offer leaves behind is local, so rollback
    replaces the RTCPeerConnection with a fresh one carrying the same tracks.
    Once a remote description was applied the transports are shared with the
    peer and cannot be rebuilt, so ``can_rollback`` turns False.
    """

    def __init__(self, ice_servers: Sequence[IceServerConfig]) -> None:
        """Create the underlying RTCPeerConnection."""
        self._configuration = build_rtc_configuration(ice_servers)
        self._senders: dict[MediaTrack, RTCRtpSender] = {}
        self._pc = self._create_pc()

    @property
    def signaling_state(self) -> SignalingState:
        """Local signaling state."""
        return SignalingState(self._pc.signalingState)

    @property
    def connection_state(self) -> ConnectionState:
        """Connectivity state."""
        return ConnectionState(self._pc.connectionState)

    @property
    def remote_description(self) -> SessionDescriptionPayload | None:
        """The applied remote description, if any."""
        description = self._pc.remoteDescription
        if description is None:
            return None
        return SessionDescriptionPayload(sdp=description.sdp, type=description.type)

    async def create_offer(self) -> SessionDescriptionPayload:
        """Create an SDP offer for the current set of tracks."""
        offer = await self._pc.createOffer()
        return SessionDescriptionPayload(sdp=offer.sdp, type="offer")

    async def create_answer(self) -> SessionDescriptionPayload:
        """Create an SDP answer to the applied remote offer."""
        answer = await self._pc.createAnswer()
        return SessionDescriptionPayload(sdp=answer.sdp, type="answer")

    async def set_local_description(self, description: SessionDescriptionPayload) -> None:
        """Apply a local description."""
        await self._pc.setLocalDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def set_remote_description(self, description: SessionDescriptionPayload) -> None:
        """Apply a remote description."""
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    @property
    def can_rollback(self) -> bool:
        """Return True while no remote description was ever applied."""
        return self._pc.remoteDescription is None

    async def rollback(self) -> None:
        """Discard a pending local offer by rebuilding the RTCPeerConnection.

        Raises InvalidStateError once a remote description was applied.
        """
        if self.signaling_state is not SignalingState.HAVE_LOCAL_OFFER:
            return
        if not self.can_rollback:
            raise InvalidStateError("Cannot roll back after a remote description was applied")
        previous = self._pc
        tracks = list(self._senders)
        self._senders = {}
        self._pc = self._create_pc()
        for track in tracks:
            self.add_track(track)
        logger.debug("Rolled back local offer, re-added %d tracks", len(tracks))
        await previous.close()

    async def add_ice_candidate(self, candidate: IceCandidatePayload) -> None:
        """Apply a remote ICE candidate, raising IceApplyError if rejected."""
        try:
            sdp = candidate.candidate
            if sdp.startswith("candidate:"):
                sdp = sdp[len("candidate:") :]
            rtc_candidate = candidate_from_sdp(sdp)
            rtc_candidate.sdpMid = candidate.sdp_mid
            rtc_candidate.sdpMLineIndex = candidate.sdp_mline_index
            await self._pc.addIceCandidate(rtc_candidate)
        except Exception as err:
            raise IceApplyError(f"Rejected ICE candidate {candidate.candidate!r}: {err}") from err

    def add_track(self, track: MediaTrack) -> None:
        """Start sending a local track."""
        self._senders[track] = self._pc.addTrack(track)

    async def remove_track(self, track: MediaTrack) -> None:
        """Stop sending a local track."""
        sender = self._senders.pop(track, None)
        if sender is None:
            return
        await _replace_sender_track(sender, None)

    async def replace_track(self, kind: str, track: MediaTrack) -> None:
        """Swap the outgoing track of ``kind`` without renegotiating."""
        for current, sender in list(self._senders.items()):
            if current.kind != kind:
                continue
            await _replace_sender_track(sender, track)
            del self._senders[current]
            self._senders[track] = sender
            return
        logger.debug("No %s sender to replace, adding track instead", kind)
        self.add_track(track)

    async def get_round_trip_time(self) -> float | None:
        """Return the current round-trip time in seconds, if known."""
        report = await self._pc.getStats()
        for stats in report.values():
            rtt = getattr(stats, "roundTripTime", None)
            if rtt is not None:
                return float(rtt)
        return None

    async def close(self) -> None:
        """Close the link."""
        self._senders.clear()
        await self._pc.close()

    def _create_pc(self) -> RTCPeerConnection:
        pc = RTCPeerConnection(configuration=self._configuration)
        pc.on("track", partial(self._handle_track, pc))
        pc.on("connectionstatechange", partial(self._handle_connection_state_change, pc))
        return pc

    def _handle_track(self, pc: RTCPeerConnection, track: MediaTrack) -> None:
        if pc is self._pc:
            self._emit_track(track)

    def _handle_connection_state_change(self, pc: RTCPeerConnection) -> None:
        # A connection replaced by rollback reports "closed" on its way out
        if pc is self._pc:
            self._emit_connection_state(self.connection_state)


async def _replace_sender_track(sender: RTCRtpSender, track: MediaTrack | None) -> None:
    result = sender.replaceTrack(track)
    if inspect.isawaitable(result):
        await result


def create_aiortc_peer_connection(ice_servers: Sequence[IceServerConfig]) -> PeerConnection:
    """Return the default peer-link primitive."""
    return AiortcPeerConnection(ice_servers)
