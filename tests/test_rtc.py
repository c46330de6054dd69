"""The aiortc-backed peer-link primitive."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from types import SimpleNamespace

import pytest
from aiortc import RTCConfiguration, RTCIceCandidate
from aiortc.exceptions import InvalidStateError
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack

from aiovoicemesh.config import IceServerConfig
from aiovoicemesh.errors import IceApplyError
from aiovoicemesh.models import (
    AnswerMessage,
    ConnectionState,
    IceCandidatePayload,
    OfferMessage,
    SignalingState,
)
from aiovoicemesh.peer import Participant, PeerLink
from aiovoicemesh.rtc import (
    AiortcPeerConnection,
    build_rtc_configuration,
    create_aiortc_peer_connection,
)
from tests.fakes import RecordingChannel, RecordingOwner

HOST_CANDIDATE = "candidate:1 1 udp 2130706431 192.0.2.10 50000 typ host"

ALICE = Participant("alice", "Alice")
BOB = Participant("bob", "Bob")


@pytest.fixture
async def new_connection() -> AsyncIterator[Callable[[], AiortcPeerConnection]]:
    created: list[AiortcPeerConnection] = []

    def factory() -> AiortcPeerConnection:
        connection = AiortcPeerConnection([])
        created.append(connection)
        return connection

    yield factory
    for connection in created:
        await connection.close()


async def _connect(offerer: AiortcPeerConnection, answerer: AiortcPeerConnection) -> None:
    offer = await offerer.create_offer()
    await offerer.set_local_description(offer)
    await answerer.set_remote_description(offer)
    answer = await answerer.create_answer()
    await answerer.set_local_description(answer)
    await offerer.set_remote_description(answer)


def test_rtc_configuration() -> None:
    config = build_rtc_configuration(
        [
            IceServerConfig(urls=["stun:stun.example.org:3478"]),
            IceServerConfig(urls=["turn:turn.example.org"], username="mesh", credential="secret"),
        ]
    )

    assert isinstance(config, RTCConfiguration)
    stun, turn = config.iceServers
    assert stun.urls == ["stun:stun.example.org:3478"]
    assert stun.username is None
    assert (turn.urls, turn.username, turn.credential) == (
        ["turn:turn.example.org"],
        "mesh",
        "secret",
    )
    # An empty list keeps aiortc from falling back to its public STUN server
    assert build_rtc_configuration([]).iceServers == []


async def test_new_connection() -> None:
    connection = create_aiortc_peer_connection([])
    try:
        assert isinstance(connection, AiortcPeerConnection)
        assert connection.signaling_state is SignalingState.STABLE
        assert connection.connection_state is ConnectionState.NEW
        assert connection.remote_description is None
        assert connection.can_rollback
    finally:
        await connection.close()


async def test_offer_and_answer(new_connection: Callable[[], AiortcPeerConnection]) -> None:
    offerer, answerer = new_connection(), new_connection()
    offerer.add_track(AudioStreamTrack())
    answerer.add_track(AudioStreamTrack())
    received: list = []
    answerer.on_track = received.append

    offer = await offerer.create_offer()
    assert offer.type == "offer"
    assert "m=audio" in offer.sdp
    await offerer.set_local_description(offer)
    assert offerer.signaling_state is SignalingState.HAVE_LOCAL_OFFER

    await answerer.set_remote_description(offer)
    assert answerer.signaling_state is SignalingState.HAVE_REMOTE_OFFER
    assert answerer.remote_description is not None
    assert answerer.remote_description.type == "offer"
    assert not answerer.can_rollback
    assert [track.kind for track in received] == ["audio"]

    answer = await answerer.create_answer()
    assert answer.type == "answer"
    await answerer.set_local_description(answer)
    await offerer.set_remote_description(answer)

    for connection in (offerer, answerer):
        assert connection.signaling_state is SignalingState.STABLE
    assert offerer.remote_description is not None
    assert offerer.remote_description.type == "answer"


async def test_answer_without_offer_is_refused(
    new_connection: Callable[[], AiortcPeerConnection],
) -> None:
    connection = new_connection()

    with pytest.raises(InvalidStateError):
        await connection.create_answer()


async def test_rollback_discards_the_local_offer(
    new_connection: Callable[[], AiortcPeerConnection],
) -> None:
    connection = new_connection()
    track = AudioStreamTrack()
    connection.add_track(track)
    states: list[ConnectionState] = []
    connection.on_connection_state_change = states.append
    await connection.set_local_description(await connection.create_offer())

    await connection.rollback()

    assert connection.signaling_state is SignalingState.STABLE
    assert connection.connection_state is ConnectionState.NEW
    senders = connection._senders  # noqa: SLF001
    assert list(senders) == [track]
    assert senders[track].track is track
    # The replaced RTCPeerConnection closing is not a state change of the link
    assert states == []
    offer = await connection.create_offer()
    assert "m=audio" in offer.sdp


async def test_rollback_in_stable_state_does_nothing(
    new_connection: Callable[[], AiortcPeerConnection],
) -> None:
    connection = new_connection()
    track = AudioStreamTrack()
    connection.add_track(track)
    sender = connection._senders[track]  # noqa: SLF001

    await connection.rollback()

    assert connection._senders == {track: sender}  # noqa: SLF001


async def test_rollback_after_remote_description_is_refused(
    new_connection: Callable[[], AiortcPeerConnection],
) -> None:
    offerer, answerer = new_connection(), new_connection()
    offerer.add_track(AudioStreamTrack())
    answerer.add_track(AudioStreamTrack())
    await _connect(offerer, answerer)
    await answerer.set_local_description(await answerer.create_offer())

    assert not answerer.can_rollback
    with pytest.raises(InvalidStateError):
        await answerer.rollback()
    assert answerer.signaling_state is SignalingState.HAVE_LOCAL_OFFER


async def test_remote_candidate_is_parsed(
    new_connection: Callable[[], AiortcPeerConnection], monkeypatch: pytest.MonkeyPatch
) -> None:
    connection = new_connection()
    applied: list[RTCIceCandidate] = []

    async def add_ice_candidate(candidate: RTCIceCandidate) -> None:
        applied.append(candidate)

    monkeypatch.setattr(connection._pc, "addIceCandidate", add_ice_candidate)  # noqa: SLF001

    await connection.add_ice_candidate(
        IceCandidatePayload(candidate=HOST_CANDIDATE, sdp_mid="0", sdp_mline_index=0)
    )
    await connection.add_ice_candidate(
        IceCandidatePayload(candidate=HOST_CANDIDATE.removeprefix("candidate:"), sdp_mid="1")
    )

    first, second = applied
    assert (first.foundation, first.component, first.protocol) == ("1", 1, "udp")
    assert (first.ip, first.port, first.type) == ("192.0.2.10", 50000, "host")
    assert first.priority == 2130706431
    assert (first.sdpMid, first.sdpMLineIndex) == ("0", 0)
    assert second.ip == "192.0.2.10"
    assert (second.sdpMid, second.sdpMLineIndex) == ("1", None)


async def test_remote_candidate_is_applied(
    new_connection: Callable[[], AiortcPeerConnection],
) -> None:
    offerer, answerer = new_connection(), new_connection()
    offerer.add_track(AudioStreamTrack())
    offer = await offerer.create_offer()
    await offerer.set_local_description(offer)
    await answerer.set_remote_description(offer)

    await answerer.add_ice_candidate(IceCandidatePayload(candidate=HOST_CANDIDATE, sdp_mid="0"))


@pytest.mark.parametrize(
    "candidate",
    [
        IceCandidatePayload(candidate="candidate:garbage", sdp_mid="0"),
        IceCandidatePayload(candidate="candidate:1 1 udp high 192.0.2.10 50000 typ host", sdp_mid="0"),
        IceCandidatePayload(candidate=HOST_CANDIDATE),
    ],
)
async def test_bad_remote_candidate_is_rejected(
    new_connection: Callable[[], AiortcPeerConnection], candidate: IceCandidatePayload
) -> None:
    connection = new_connection()

    with pytest.raises(IceApplyError):
        await connection.add_ice_candidate(candidate)


async def test_replace_track_keeps_the_sender(
    new_connection: Callable[[], AiortcPeerConnection],
) -> None:
    connection = new_connection()
    first, second = AudioStreamTrack(), AudioStreamTrack()
    connection.add_track(first)
    sender = connection._senders[first]  # noqa: SLF001

    await connection.replace_track("audio", second)

    assert connection._senders == {second: sender}  # noqa: SLF001
    assert sender.track is second


async def test_replace_track_without_sender_adds_it(
    new_connection: Callable[[], AiortcPeerConnection],
) -> None:
    connection = new_connection()
    audio, video = AudioStreamTrack(), VideoStreamTrack()
    connection.add_track(audio)

    await connection.replace_track("video", video)

    senders = connection._senders  # noqa: SLF001
    assert set(senders) == {audio, video}
    assert senders[video].track is video
    assert senders[audio].track is audio


async def test_remove_track_detaches_the_sender(
    new_connection: Callable[[], AiortcPeerConnection],
) -> None:
    connection = new_connection()
    track = AudioStreamTrack()
    connection.add_track(track)
    sender = connection._senders[track]  # noqa: SLF001

    await connection.remove_track(track)
    await connection.remove_track(track)

    assert sender.track is None
    assert connection._senders == {}  # noqa: SLF001


async def test_round_trip_time(
    new_connection: Callable[[], AiortcPeerConnection], monkeypatch: pytest.MonkeyPatch
) -> None:
    connection = new_connection()
    assert await connection.get_round_trip_time() is None

    async def get_stats() -> dict[str, SimpleNamespace]:
        return {
            "outbound": SimpleNamespace(type="outbound-rtp"),
            "remote-inbound": SimpleNamespace(type="remote-inbound-rtp", roundTripTime=0.042),
        }

    monkeypatch.setattr(connection._pc, "getStats", get_stats)  # noqa: SLF001
    assert await connection.get_round_trip_time() == 0.042


async def test_close_reports_the_closed_state(
    new_connection: Callable[[], AiortcPeerConnection],
) -> None:
    connection = new_connection()
    connection.add_track(AudioStreamTrack())
    states: list[ConnectionState] = []
    connection.on_connection_state_change = states.append

    await connection.close()

    assert connection.connection_state is ConnectionState.CLOSED
    assert connection.signaling_state is SignalingState.CLOSED
    assert states == [ConnectionState.CLOSED]
    assert connection._senders == {}  # noqa: SLF001


class LinkSide:
    """A peer link running on a real aiortc connection."""

    def __init__(self, local: Participant, remote: Participant) -> None:
        self.connection = AiortcPeerConnection([])
        self.channel = RecordingChannel()
        self.owner = RecordingOwner()
        self.link = PeerLink(local, remote, self.connection, self.channel, self.owner)  # type: ignore[arg-type]
        self.link.add_track(AudioStreamTrack())
        self.link.start()

    def sent(self, kind: type) -> list:
        return [message for message in self.channel.sent if isinstance(message, kind)]

    async def deliver(self, message: object) -> None:
        self.link.enqueue(message)  # type: ignore[arg-type]
        await self.link.wait_idle()


@pytest.mark.parametrize("alice_offer_first", [True, False])
async def test_glare_on_aiortc_connections(alice_offer_first: bool) -> None:
    alice = LinkSide(ALICE, BOB)
    bob = LinkSide(BOB, ALICE)
    try:
        await asyncio.gather(alice.link.negotiate(), bob.link.negotiate())
        (alice_offer,) = alice.sent(OfferMessage)
        (bob_offer,) = bob.sent(OfferMessage)

        if alice_offer_first:
            await bob.deliver(alice_offer)
            await alice.deliver(bob_offer)
        else:
            await alice.deliver(bob_offer)
            await bob.deliver(alice_offer)

        # Alice is polite: she drops her own offer and answers Bob's
        assert bob.sent(AnswerMessage) == []
        assert bob.link.ignored_offers == 1
        (answer,) = alice.sent(AnswerMessage)
        assert answer.to_id == "bob"
        assert alice.connection.signaling_state is SignalingState.STABLE

        await bob.deliver(answer)

        for side in (alice, bob):
            assert side.connection.signaling_state is SignalingState.STABLE
            assert side.link.remote_description_set
        assert alice.connection.remote_description is not None
        assert alice.connection.remote_description.type == "offer"
        assert bob.connection.remote_description is not None
        assert bob.connection.remote_description.type == "answer"
    finally:
        await alice.link.close()
        await bob.link.close()
