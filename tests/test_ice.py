"""ICE candidate batching."""

from __future__ import annotations

from aiovoicemesh.ice import IceCandidateBatcher
from aiovoicemesh.models import IceCandidatePayload
from tests.fakes import FakeScheduler


def _candidate(name: str) -> IceCandidatePayload:
    return IceCandidatePayload(candidate=name, sdp_mid="0", sdp_mline_index=0)


def _batcher(
    scheduler: FakeScheduler, delay: float = 0.1
) -> tuple[IceCandidateBatcher, list[tuple[str, list[str]]]]:
    flushed: list[tuple[str, list[str]]] = []
    batcher = IceCandidateBatcher(
        scheduler,  # type: ignore[arg-type]
        delay,
        lambda peer, batch: flushed.append((peer, [c.candidate for c in batch])),
    )
    return batcher, flushed


def test_burst_is_sent_as_one_batch(scheduler: FakeScheduler) -> None:
    batcher, flushed = _batcher(scheduler)

    for i in range(8):
        batcher.add("bob", _candidate(f"c{i}"))
        scheduler.advance(0.01)
    assert flushed == []

    scheduler.advance(0.2)

    assert flushed == [("bob", [f"c{i}" for i in range(8)])]
    assert batcher.pending("bob") == []


def test_every_candidate_restarts_the_timer(scheduler: FakeScheduler) -> None:
    batcher, flushed = _batcher(scheduler, delay=1)

    batcher.add("bob", _candidate("a"))
    scheduler.advance(0.75)
    batcher.add("bob", _candidate("b"))
    scheduler.advance(0.75)

    assert flushed == []
    scheduler.advance(0.5)
    assert flushed == [("bob", ["a", "b"])]


def test_batches_are_per_peer(scheduler: FakeScheduler) -> None:
    batcher, flushed = _batcher(scheduler, delay=1)

    batcher.add("bob", _candidate("b1"))
    scheduler.advance(0.5)
    batcher.add("carol", _candidate("c1"))
    scheduler.advance(0.5)

    assert flushed == [("bob", ["b1"])]
    scheduler.advance(0.5)
    assert flushed == [("bob", ["b1"]), ("carol", ["c1"])]


def test_cancel_drops_queued_candidates(scheduler: FakeScheduler) -> None:
    batcher, flushed = _batcher(scheduler)
    batcher.add("bob", _candidate("a"))
    batcher.add("carol", _candidate("b"))

    batcher.cancel("bob")
    scheduler.advance(1)
    assert flushed == [("carol", ["b"])]

    batcher.add("bob", _candidate("c"))
    batcher.cancel_all()
    scheduler.advance(1)
    assert flushed == [("carol", ["b"])]
    assert scheduler.pending == 0


def test_flush_now(scheduler: FakeScheduler) -> None:
    batcher, flushed = _batcher(scheduler)
    batcher.add("bob", _candidate("a"))

    batcher.flush("bob")
    batcher.flush("bob")
    scheduler.advance(1)

    assert flushed == [("bob", ["a"])]
