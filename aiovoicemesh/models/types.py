"""Models for enum types used by aiovoicemesh."""

from dataclasses import dataclass
from enum import Enum

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin
from mashumaro.types import Discriminator


# Base message classes
@dataclass
class SignalingMessage(DataClassORJSONMixin):
    """Base class for signaling messages exchanged through the relay."""

    from_id: str
    """Participant id of the sender."""
    from_name: str
    """Display name of the sender."""
    to_id: str | None
    """Participant id of the recipient, None to broadcast to the whole session."""
    created_at: int
    """Creation time in milliseconds since the epoch, used for stale discard."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)

    @property
    def is_broadcast(self) -> bool:
        """Return True if this message is addressed to every participant."""
        return self.to_id is None

    def is_for(self, participant_id: str) -> bool:
        """Return True if this message should be processed by ``participant_id``."""
        return self.to_id is None or self.to_id == participant_id


@dataclass
class RelayFrame(DataClassORJSONMixin):
    """Base class for frames of the websocket relay protocol."""

    class Config(BaseConfig):
        """Config for parsing json messages."""

        discriminator = Discriminator(field="type", include_subtypes=True)


# Enums


class MessageType(Enum):
    """Signaling message types."""

    JOIN = "join"
    """Broadcast announcement that a participant entered the session."""
    OFFER = "offer"
    ANSWER = "answer"
    ICE_BATCH = "ice-batch"
    """One or more ICE candidates coalesced by the sender."""
    SCREEN_SHARE_ENDED = "screen-share-ended"
    """Broadcast by a participant that stopped sharing its screen."""


class SessionState(Enum):
    """Lifecycle of a voice session."""

    IDLE = "idle"
    JOINING = "joining"
    ACTIVE = "active"
    LEAVING = "leaving"


class NegotiationState(Enum):
    """Local negotiation state of a peer link."""

    STABLE = "stable"
    MAKING_OFFER = "making-offer"
    """An offer is being created or applied locally."""
    AWAITING_ANSWER = "awaiting-answer"
    """The local offer was sent and the remote answer is pending."""


class SignalingState(Enum):
    """Signaling state reported by the peer-link primitive."""

    STABLE = "stable"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    CLOSED = "closed"


class ConnectionState(Enum):
    """Connectivity state reported by the peer-link primitive."""

    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"

    @property
    def is_terminal(self) -> bool:
        """Return True if this state means the remote participant left."""
        return self in (ConnectionState.DISCONNECTED, ConnectionState.FAILED, ConnectionState.CLOSED)


class AudioSource(Enum):
    """Outgoing audio source selected by the noise gate."""

    LIVE = "live"
    """Captured microphone audio with input gain applied."""
    SILENCE = "silence"
    """Generated silence of the same format."""


class ConnectionQuality(Enum):
    """Connection quality buckets derived from round-trip time."""

    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    UNKNOWN = "unknown"
