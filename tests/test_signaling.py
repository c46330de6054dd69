"""Signaling channel hygiene: dedup, stale discard, deletion and retries."""

from __future__ import annotations

import asyncio

import pytest

from aiovoicemesh.config import DEDUP_CAPACITY, VoiceSettings
from aiovoicemesh.errors import SignalingDeliveryError
from aiovoicemesh.models import (
    JoinMessage,
    RelayRecord,
    RelayRecordDraft,
    ScreenShareEndedMessage,
    SignalingMessage,
)
from aiovoicemesh.relay import MemoryRelay
from aiovoicemesh.signaling import SignalingChannel

START = 1_700_000_000.0


class Clock:
    """Settable wall clock."""

    def __init__(self, now: float = START) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class RedeliveringRelay(MemoryRelay):
    """Memory relay that can deliver its records a second time."""

    def redeliver(self, session_id: str) -> None:
        for callback in list(self._subscribers.get(session_id, [])):
            for record in self.records(session_id):
                callback(record)


class FlakyRelay(MemoryRelay):
    """Memory relay whose first publishes fail."""

    def __init__(self, failures: int) -> None:
        super().__init__()
        self.failures = failures
        self.attempts = 0

    async def publish(self, session_id: str, draft: RelayRecordDraft) -> RelayRecord:
        self.attempts += 1
        if self.attempts <= self.failures:
            raise SignalingDeliveryError("relay unreachable")
        return await super().publish(session_id, draft)


async def settle() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


def _join(from_id: str, created_at: float, to_id: str | None = None) -> JoinMessage:
    return JoinMessage(
        from_id=from_id, from_name=from_id.title(), to_id=to_id, created_at=int(created_at * 1000)
    )


def _channel(
    relay: MemoryRelay, participant_id: str, clock: Clock, **kwargs: float
) -> SignalingChannel:
    return SignalingChannel(
        relay,
        "s1",
        participant_id,
        VoiceSettings(),
        clock=clock,
        send_backoff=kwargs.get("send_backoff", 0.001),
    )


def _store(
    relay: MemoryRelay, message: SignalingMessage, message_id: str, stored_at: float | None = None
) -> None:
    relay.store(
        RelayRecord(
            message_id=message_id,
            session_id="s1",
            from_id=message.from_id,
            to_id=message.to_id,
            body=message.to_json(),
            stored_at=message.created_at / 1000 if stored_at is None else stored_at,
        )
    )


async def test_routing_and_consumption() -> None:
    clock = Clock()
    relay = MemoryRelay(clock=clock)
    alice = _channel(relay, "alice", clock)
    bob = _channel(relay, "bob", clock)
    received: list[SignalingMessage] = []
    await alice.subscribe(received.append)

    await bob.send(_join("bob", START))
    await bob.send(_join("bob", START, to_id="alice"))
    await bob.send(_join("bob", START, to_id="carol"))
    await alice.send(_join("alice", START))
    await settle()

    assert [(m.from_id, m.to_id) for m in received] == [("bob", None), ("bob", "alice")]
    # Only the message addressed to alice is consumed
    remaining = [(r.from_id, r.to_id) for r in relay.records("s1")]
    assert remaining == [("bob", None), ("bob", "carol"), ("alice", None)]


async def test_duplicate_delivery_is_processed_once() -> None:
    clock = Clock()
    relay = RedeliveringRelay(clock=clock)
    alice = _channel(relay, "alice", clock)
    received: list[SignalingMessage] = []
    await alice.subscribe(received.append)

    await _channel(relay, "bob", clock).send(_join("bob", START))
    await settle()
    relay.redeliver("s1")
    await settle()

    assert len(received) == 1


async def test_stale_messages_are_discarded_and_deleted() -> None:
    clock = Clock()
    relay = MemoryRelay(clock=clock)
    # Leftovers of an earlier session, older than the grace period
    _store(relay, _join("bob", START - 3), "old-1")
    _store(relay, _join("carol", START - 60, to_id="alice"), "old-2")
    # Sent just before alice subscribed, within the grace period
    _store(relay, _join("dave", START - 1), "recent")
    alice = _channel(relay, "alice", clock)
    received: list[SignalingMessage] = []

    await alice.subscribe(received.append)
    await settle()

    assert [m.from_id for m in received] == ["dave"]
    assert [r.message_id for r in relay.records("s1")] == ["recent"]


async def test_record_older_than_stale_age_is_rejected() -> None:
    clock = Clock()
    channel = _channel(MemoryRelay(clock=clock), "alice", clock)
    await channel.subscribe(lambda message: None)

    clock.now = START + 30
    assert channel.is_stale(START + 24)
    assert not channel.is_stale(START + 26)


async def test_staleness_follows_the_relay_clock() -> None:
    clock = Clock()
    relay = MemoryRelay(clock=clock)
    # Senders whose clocks run a minute behind or ahead of the relay
    _store(relay, _join("bob", START - 60), "behind", stored_at=START - 1)
    _store(relay, _join("carol", START + 60), "ahead", stored_at=START - 1)
    # Looks fresh to the sender, but the relay has held it for a minute
    _store(relay, _join("dave", START, to_id="alice"), "leftover", stored_at=START - 60)
    alice = _channel(relay, "alice", clock)
    received: list[SignalingMessage] = []

    await alice.subscribe(received.append)
    await _channel(relay, "erin", Clock(START - 60)).send(_join("erin", START - 60))
    await settle()

    assert [m.from_id for m in received] == ["bob", "carol", "erin"]
    assert [r.message_id for r in relay.records("s1")][:2] == ["behind", "ahead"]
    assert "leftover" not in [r.message_id for r in relay.records("s1")]


async def test_unparseable_record_is_deleted() -> None:
    clock = Clock()
    relay = MemoryRelay(clock=clock)
    alice = _channel(relay, "alice", clock)
    received: list[SignalingMessage] = []
    await alice.subscribe(received.append)

    await relay.publish("s1", RelayRecordDraft(from_id="bob", to_id=None, body='{"type": "??"}'))
    await settle()

    assert received == []
    assert relay.records("s1") == []


async def test_handler_errors_do_not_stop_delivery() -> None:
    clock = Clock()
    relay = MemoryRelay(clock=clock)
    alice = _channel(relay, "alice", clock)
    received: list[SignalingMessage] = []

    def handler(message: SignalingMessage) -> None:
        received.append(message)
        if isinstance(message, JoinMessage):
            raise RuntimeError("boom")

    await alice.subscribe(handler)
    bob = _channel(relay, "bob", clock)
    await bob.send(_join("bob", START, to_id="alice"))
    await bob.send(
        ScreenShareEndedMessage(
            from_id="bob", from_name="Bob", to_id=None, created_at=int(START * 1000)
        )
    )
    await settle()

    assert len(received) == 2
    # The addressed message is consumed even though handling failed
    assert all(r.to_id != "alice" for r in relay.records("s1"))


async def test_send_retries_with_backoff() -> None:
    relay = FlakyRelay(failures=2)
    channel = _channel(relay, "alice", Clock())

    record = await channel.send(_join("alice", START))

    assert relay.attempts == 3
    assert relay.records("s1") == [record]


async def test_send_gives_up_after_last_attempt() -> None:
    relay = FlakyRelay(failures=10)
    channel = _channel(relay, "alice", Clock())

    with pytest.raises(SignalingDeliveryError):
        await channel.send(_join("alice", START))
    assert relay.attempts == 4


async def test_purge_own_messages() -> None:
    clock = Clock()
    relay = MemoryRelay(clock=clock)
    alice = _channel(relay, "alice", clock)
    bob = _channel(relay, "bob", clock)
    await alice.send(_join("alice", START))
    await bob.send(_join("bob", START, to_id="alice"))
    await bob.send(_join("bob", START))

    assert await alice.purge_own() == 2
    assert [r.from_id for r in relay.records("s1")] == ["bob"]


async def test_subscribe_twice_is_an_error() -> None:
    clock = Clock()
    channel = _channel(MemoryRelay(clock=clock), "alice", clock)
    await channel.subscribe(lambda message: None)

    with pytest.raises(RuntimeError):
        await channel.subscribe(lambda message: None)

    channel.unsubscribe()
    assert not channel.subscribed
    channel.unsubscribe()


async def test_unsubscribed_channel_receives_nothing() -> None:
    clock = Clock()
    relay = MemoryRelay(clock=clock)
    alice = _channel(relay, "alice", clock)
    received: list[SignalingMessage] = []
    await alice.subscribe(received.append)
    alice.unsubscribe()

    await _channel(relay, "bob", clock).send(_join("bob", START))
    await settle()

    assert received == []


def test_dedup_memory_is_bounded() -> None:
    clock = Clock()
    channel = _channel(MemoryRelay(clock=clock), "alice", clock)

    for i in range(DEDUP_CAPACITY + 1):
        assert channel._remember(f"id-{i}")  # noqa: SLF001

    # The oldest half was forgotten, the newest ids are still known
    assert channel._remember("id-0")  # noqa: SLF001
    assert not channel._remember(f"id-{DEDUP_CAPACITY}")  # noqa: SLF001
