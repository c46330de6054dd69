"""aiovoicemesh: peer-to-peer voice sessions coordinated over a signaling relay."""

from __future__ import annotations

# Re-export client library for easy import
from aiovoicemesh.config import IceServerConfig, VoiceSettings
from aiovoicemesh.errors import (
    AlreadyJoinedError,
    IceApplyError,
    MediaAccessError,
    NotJoinedError,
    SignalingDeliveryError,
    VoiceMeshError,
)
from aiovoicemesh.events import (
    EventListener,
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    RemoteShareEndedEvent,
    RemoteShareStartedEvent,
    SessionEvent,
    VolumeSample,
    VolumeSamplesEvent,
)
from aiovoicemesh.peer import Participant
from aiovoicemesh.relay import MemoryRelay, RelayServer, SignalingRelay, WebSocketRelay
from aiovoicemesh.screenshare import ScreenShareHandle
from aiovoicemesh.session import VoiceMeshClient, VoiceSession

__all__ = [
    "AlreadyJoinedError",
    "EventListener",
    "IceApplyError",
    "IceServerConfig",
    "MediaAccessError",
    "MemoryRelay",
    "NotJoinedError",
    "Participant",
    "ParticipantJoinedEvent",
    "ParticipantLeftEvent",
    "RelayServer",
    "RemoteShareEndedEvent",
    "RemoteShareStartedEvent",
    "ScreenShareHandle",
    "SessionEvent",
    "SignalingDeliveryError",
    "SignalingRelay",
    "VoiceMeshClient",
    "VoiceMeshError",
    "VoiceSession",
    "VolumeSample",
    "VolumeSamplesEvent",
    "WebSocketRelay",
]
