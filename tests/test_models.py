"""Wire models and settings."""

from __future__ import annotations

import orjson
import pytest

from aiovoicemesh.config import IceServerConfig, VoiceSettings
from aiovoicemesh.models import (
    AnswerMessage,
    IceBatchMessage,
    IceBatchPayload,
    IceCandidatePayload,
    JoinMessage,
    OfferMessage,
    RelayRecordDraft,
    ScreenShareEndedMessage,
    SessionDescriptionPayload,
    SignalingMessage,
)
from aiovoicemesh.models.relay import AckFrame, MessageFrame, PublishFrame, RelayRecord
from aiovoicemesh.models.types import RelayFrame


def test_join_is_broadcast() -> None:
    message = JoinMessage(from_id="alice", from_name="Alice", to_id=None, created_at=1)
    data = orjson.loads(message.to_json())

    assert data["type"] == "join"
    assert data["to_id"] is None
    assert message.is_broadcast
    assert message.is_for("bob")


def test_signaling_message_dispatches_on_type() -> None:
    body = orjson.dumps(
        {
            "type": "offer",
            "from_id": "bob",
            "from_name": "Bob",
            "to_id": "alice",
            "created_at": 1_700_000_000_000,
            "payload": {"sdp": "v=0", "type": "offer"},
        }
    ).decode()

    message = SignalingMessage.from_json(body)

    assert isinstance(message, OfferMessage)
    assert message.payload == SessionDescriptionPayload(sdp="v=0", type="offer")
    assert message.is_for("alice")
    assert not message.is_for("carol")


def test_ice_batch_keeps_candidate_order() -> None:
    candidates = [IceCandidatePayload(candidate=f"candidate:{i}", sdp_mid="0") for i in range(5)]
    message = IceBatchMessage(
        from_id="a",
        from_name="A",
        to_id="b",
        created_at=5,
        payload=IceBatchPayload(candidates=candidates),
    )

    parsed = SignalingMessage.from_json(message.to_json())

    assert isinstance(parsed, IceBatchMessage)
    assert [c.candidate for c in parsed.payload.candidates] == [c.candidate for c in candidates]
    # omit_none drops the unset line index
    assert "sdp_mline_index" not in orjson.loads(message.to_json())["payload"]["candidates"][0]


@pytest.mark.parametrize(
    ("payload", "expected"),
    [
        ({"type": "answer", "payload": {"sdp": "x", "type": "answer"}}, AnswerMessage),
        ({"type": "screen-share-ended"}, ScreenShareEndedMessage),
    ],
)
def test_other_message_types(payload: dict[str, object], expected: type) -> None:
    envelope = {"from_id": "a", "from_name": "A", "to_id": None, "created_at": 0}
    message = SignalingMessage.from_dict({**envelope, **payload})
    assert isinstance(message, expected)


def test_unknown_message_type_is_rejected() -> None:
    with pytest.raises(Exception):  # noqa: B017, PT011
        SignalingMessage.from_dict(
            {"type": "leave", "from_id": "a", "from_name": "A", "to_id": None, "created_at": 0}
        )


def test_relay_frames_dispatch_on_type() -> None:
    record = RelayRecord(
        message_id="1_abc",
        session_id="s1",
        from_id="a",
        to_id=None,
        body="{}",
        stored_at=1.0,
    )

    frame = RelayFrame.from_json(MessageFrame(record=record).to_json())
    ack = RelayFrame.from_json(AckFrame(request_id="r1", record=record).to_json())

    assert isinstance(frame, MessageFrame)
    assert frame.record == record
    assert isinstance(ack, AckFrame)
    assert ack.request_id == "r1"
    assert orjson.loads(frame.to_json())["type"] == "relay/message"


def test_publish_frame_carries_draft() -> None:
    frame = PublishFrame(
        request_id="r2",
        session_id="s1",
        draft=RelayRecordDraft(from_id="a", to_id="b", body="{}"),
    )

    parsed = RelayFrame.from_json(frame.to_json())

    assert isinstance(parsed, PublishFrame)
    assert parsed.draft.to_id == "b"


def test_settings_defaults() -> None:
    settings = VoiceSettings()

    assert settings.mic_threshold == 15
    assert settings.threshold_level == pytest.approx(15 / 100 * 255)
    assert settings.input_multiplier == 1.0
    assert settings.gate_close_delay > settings.gate_open_delay
    assert len(settings.ice_servers) == 2


def test_settings_round_trip_through_json() -> None:
    settings = VoiceSettings(
        mic_threshold=30,
        output_device="Speakers",
        ice_servers=[IceServerConfig(urls=["turn:turn.example"], username="u", credential="p")],
    )

    assert VoiceSettings.from_json(settings.to_json()) == settings


@pytest.mark.parametrize(
    "changes",
    [
        {"mic_threshold": 101},
        {"mic_threshold": -1},
        {"input_volume": 150},
        {"output_volume": -5},
        {"gate_open_delay": 0.6, "gate_close_delay": 0.5},
        {"volume_check_interval": 0},
        {"stale_message_age": 0},
    ],
)
def test_settings_validation(changes: dict[str, float]) -> None:
    with pytest.raises(ValueError):  # noqa: PT011
        VoiceSettings().updated(**changes)


def test_settings_updated_returns_copy() -> None:
    settings = VoiceSettings()
    louder = settings.updated(input_volume=50)

    assert louder.input_multiplier == 0.5
    assert settings.input_volume == 100
