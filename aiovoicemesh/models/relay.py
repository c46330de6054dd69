"""Frames of the websocket relay protocol.

The relay is a small persistence-backed publish/subscribe service. Clients
send ``relay/*`` frames to publish, subscribe, delete and purge stored
signaling messages; the server answers with acknowledgements and pushes
``relay/message`` frames for every record stored in a subscribed session.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import RelayFrame


@dataclass
class RelayRecord(DataClassORJSONMixin):
    """A signaling message as stored by the relay."""

    message_id: str
    """Identifier assigned by the relay, unique within the session."""
    session_id: str
    """Session the message was published to."""
    from_id: str
    """Sender participant id, indexed for purges."""
    to_id: str | None
    """Recipient participant id, indexed for purges. None for broadcasts."""
    body: str
    """The serialized signaling message."""
    stored_at: float
    """Wall clock time (seconds since the epoch) the relay stored the record."""


@dataclass
class RelayRecordDraft(DataClassORJSONMixin):
    """A signaling message not stored yet."""

    from_id: str
    to_id: str | None
    body: str


# Client -> Server
@dataclass
class SubscribeFrame(RelayFrame):
    """Start receiving messages of a session."""

    session_id: str
    type: Literal["relay/subscribe"] = "relay/subscribe"


@dataclass
class UnsubscribeFrame(RelayFrame):
    """Stop receiving messages of a session."""

    session_id: str
    type: Literal["relay/unsubscribe"] = "relay/unsubscribe"


@dataclass
class PublishFrame(RelayFrame):
    """Store a message and fan it out to subscribers."""

    request_id: str
    session_id: str
    draft: RelayRecordDraft
    type: Literal["relay/publish"] = "relay/publish"


@dataclass
class DeleteFrame(RelayFrame):
    """Delete a consumed message."""

    session_id: str
    message_id: str
    type: Literal["relay/delete"] = "relay/delete"


@dataclass
class PurgeFrame(RelayFrame):
    """Delete every message sent by or addressed to a participant."""

    request_id: str
    session_id: str
    participant_id: str
    type: Literal["relay/purge"] = "relay/purge"


# Server -> Client
@dataclass
class MessageFrame(RelayFrame):
    """A stored message pushed to a subscriber."""

    record: RelayRecord
    type: Literal["relay/message"] = "relay/message"


@dataclass
class AckFrame(RelayFrame):
    """Acknowledges a publish or purge request."""

    request_id: str
    record: RelayRecord | None = None
    """The stored record, for publish requests."""
    count: int | None = None
    """Number of deleted records, for purge requests."""
    type: Literal["relay/ack"] = "relay/ack"


@dataclass
class ErrorFrame(RelayFrame):
    """A request could not be fulfilled."""

    request_id: str
    error: str
    type: Literal["relay/error"] = "relay/error"
