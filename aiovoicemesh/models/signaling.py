"""Signaling messages for the voice mesh.

These messages are published to the signaling relay by one participant and
consumed by the others. They carry everything Perfect Negotiation needs to
bring up a peer link: the broadcast join announcement, SDP offers and answers,
batched ICE candidates and the explicit end-of-screen-share notification.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import SignalingMessage


@dataclass
class SessionDescriptionPayload(DataClassORJSONMixin):
    """An SDP offer or answer."""

    sdp: str
    """The session description body."""
    type: Literal["offer", "answer"]
    """Kind of description."""


@dataclass
class IceCandidatePayload(DataClassORJSONMixin):
    """A single ICE candidate in its SDP attribute form."""

    candidate: str
    """The ``candidate:`` attribute line, without the ``a=`` prefix."""
    sdp_mid: str | None = None
    """Media stream identification tag the candidate belongs to."""
    sdp_mline_index: int | None = None
    """Index of the media description the candidate belongs to."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        omit_none = True


@dataclass
class IceBatchPayload(DataClassORJSONMixin):
    """ICE candidates coalesced by the sender, in discovery order."""

    candidates: list[IceCandidatePayload] = field(default_factory=list)


@dataclass
class JoinMessage(SignalingMessage):
    """Broadcast by a participant when it enters the session."""

    type: Literal["join"] = "join"


@dataclass
class OfferMessage(SignalingMessage):
    """SDP offer sent to a single participant."""

    payload: SessionDescriptionPayload
    type: Literal["offer"] = "offer"


@dataclass
class AnswerMessage(SignalingMessage):
    """SDP answer sent back to the participant that made the offer."""

    payload: SessionDescriptionPayload
    type: Literal["answer"] = "answer"


@dataclass
class IceBatchMessage(SignalingMessage):
    """One batch of ICE candidates for a single participant."""

    payload: IceBatchPayload
    type: Literal["ice-batch"] = "ice-batch"


@dataclass
class ScreenShareEndedMessage(SignalingMessage):
    """Broadcast by a participant that stopped sharing its screen."""

    type: Literal["screen-share-ended"] = "screen-share-ended"
