"""Models for the voice mesh signaling protocol."""

from __future__ import annotations

__all__ = [
    "AnswerMessage",
    "AudioSource",
    "ConnectionQuality",
    "ConnectionState",
    "IceBatchMessage",
    "IceBatchPayload",
    "IceCandidatePayload",
    "JoinMessage",
    "MessageType",
    "NegotiationState",
    "OfferMessage",
    "RelayRecord",
    "RelayRecordDraft",
    "ScreenShareEndedMessage",
    "SessionDescriptionPayload",
    "SessionState",
    "SignalingMessage",
    "SignalingState",
    "relay",
    "signaling",
    "types",
]

from . import relay, signaling, types
from .relay import RelayRecord, RelayRecordDraft
from .signaling import (
    AnswerMessage,
    IceBatchMessage,
    IceBatchPayload,
    IceCandidatePayload,
    JoinMessage,
    OfferMessage,
    ScreenShareEndedMessage,
    SessionDescriptionPayload,
)
from .types import (
    AudioSource,
    ConnectionQuality,
    ConnectionState,
    MessageType,
    NegotiationState,
    SessionState,
    SignalingMessage,
    SignalingState,
)
