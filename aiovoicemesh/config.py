"""Settings for a voice mesh session."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

# Levels are compared on the 0-255 byte scale of the level analysers
LEVEL_SCALE = 255.0

MAX_PEER_VOLUME = 200
"""Per-peer volume is a 0-200% multiplier."""

DEDUP_CAPACITY = 1000
"""Processed message ids remembered by the signaling adapter."""
DEDUP_EVICT = 500
"""Oldest ids forgotten once DEDUP_CAPACITY is exceeded."""


@dataclass
class IceServerConfig(DataClassORJSONMixin):
    """A STUN or TURN server handed to the peer-link primitive."""

    urls: list[str]
    username: str | None = None
    credential: str | None = None

    class Config(BaseConfig):
        """Config for parsing json settings."""

        omit_none = True


def _default_ice_servers() -> list[IceServerConfig]:
    return [
        IceServerConfig(urls=["stun:stun.l.google.com:19302"]),
        IceServerConfig(urls=["stun:stun1.l.google.com:19302"]),
    ]


@dataclass
class VoiceSettings(DataClassORJSONMixin):
    """User and protocol settings applied to a voice session."""

    mic_threshold: float = 15.0
    """Noise gate threshold, 0-100. Zero keeps the gate open."""
    input_volume: float = 100.0
    """Microphone gain, 0-100%."""
    output_volume: float = 100.0
    """Global playback volume, 0-100%."""
    input_device: str | int | None = None
    """Capture device passed to sounddevice, None for the system default."""
    output_device: str | int | None = None
    """Playback device passed to sounddevice, None for the system default."""
    gate_open_delay: float = 0.01
    """Seconds the level must stay above the threshold before the gate opens."""
    gate_close_delay: float = 0.5
    """Seconds the level must stay below the threshold before the gate closes."""
    volume_check_interval: float = 0.1
    """Seconds between two level samples of the volume monitor."""
    ice_batch_delay: float = 0.1
    """Debounce delay in seconds before a batch of ICE candidates is sent."""
    stale_message_age: float = 5.0
    """Signaling messages older than this many seconds are discarded."""
    subscription_grace: float = 2.0
    """Messages created this many seconds before the subscription started are discarded."""
    ice_servers: list[IceServerConfig] = field(default_factory=_default_ice_servers)

    class Config(BaseConfig):
        """Config for parsing json settings."""

        omit_none = True

    def __post_init__(self) -> None:
        """Validate the provided settings."""
        if not 0 <= self.mic_threshold <= 100:
            raise ValueError("mic_threshold must be between 0 and 100")
        if not 0 <= self.input_volume <= 100:
            raise ValueError("input_volume must be between 0 and 100")
        if not 0 <= self.output_volume <= 100:
            raise ValueError("output_volume must be between 0 and 100")
        if self.gate_open_delay < 0:
            raise ValueError("gate_open_delay must not be negative")
        if self.gate_close_delay <= self.gate_open_delay:
            raise ValueError("gate_close_delay must be longer than gate_open_delay")
        if self.volume_check_interval <= 0:
            raise ValueError("volume_check_interval must be positive")
        if self.ice_batch_delay < 0:
            raise ValueError("ice_batch_delay must not be negative")
        if self.stale_message_age <= 0:
            raise ValueError("stale_message_age must be positive")
        if self.subscription_grace < 0:
            raise ValueError("subscription_grace must not be negative")

    @property
    def threshold_level(self) -> float:
        """Return the gate threshold on the 0-255 analyser scale."""
        return self.mic_threshold / 100 * LEVEL_SCALE

    @property
    def input_multiplier(self) -> float:
        """Return the microphone gain as a multiplier."""
        return self.input_volume / 100

    def updated(self, **changes: Any) -> VoiceSettings:
        """Return a validated copy with ``changes`` applied."""
        return replace(self, **changes)
