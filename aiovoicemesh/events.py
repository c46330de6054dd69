"""Events emitted by a voice session.

Register a listener with ``VoiceMeshClient.add_event_listener()``; listeners
may be plain functions or coroutine functions.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .rtc import MediaTrack


class SessionEvent:
    """Base event type used by VoiceMeshClient.add_event_listener()."""


@dataclass
class ParticipantJoinedEvent(SessionEvent):
    """A peer link was created for a participant for the first time."""

    participant_id: str
    name: str


@dataclass
class ParticipantLeftEvent(SessionEvent):
    """The peer link of a participant reached a terminal connectivity state."""

    participant_id: str
    name: str


@dataclass(slots=True)
class VolumeSample:
    """Speaking level of one participant."""

    participant_id: str
    name: str
    level: float
    """Level normalized to 0-100."""


@dataclass
class VolumeSamplesEvent(SessionEvent):
    """Levels of the local participant and every connected peer for one tick."""

    samples: list[VolumeSample]


@dataclass
class RemoteShareStartedEvent(SessionEvent):
    """A participant started sharing its screen."""

    participant_id: str
    name: str
    track: MediaTrack


@dataclass
class RemoteShareEndedEvent(SessionEvent):
    """A participant stopped sharing its screen."""

    participant_id: str
    name: str


EventListener = Callable[[SessionEvent], Awaitable[None] | None]
