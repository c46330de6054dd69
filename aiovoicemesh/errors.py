"""Exceptions raised by aiovoicemesh."""

from __future__ import annotations


class VoiceMeshError(Exception):
    """Base class for all aiovoicemesh errors."""


class MediaAccessError(VoiceMeshError):
    """The capture device could not be acquired.

    Fatal to joining a session, never retried.
    """


class AlreadyJoinedError(VoiceMeshError):
    """A session is already active or being joined on this client."""


class NotJoinedError(VoiceMeshError):
    """The operation requires an active session."""


class SignalingDeliveryError(VoiceMeshError):
    """The signaling relay failed to publish, subscribe or delete."""


class IceApplyError(VoiceMeshError):
    """The peer-link primitive rejected a remote ICE candidate."""
