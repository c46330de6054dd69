"""In-process signaling relay."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from aiovoicemesh.models import RelayRecord, RelayRecordDraft

from .base import RecordCallback, SignalingRelay, Unsubscribe, generate_message_id

logger = logging.getLogger(__name__)


class MemoryRelay(SignalingRelay):
    """Relay storing records in memory, shared by every client of one process.

    Behaves like a document-store snapshot listener: a new subscriber first
    receives every record currently stored for the session, then each new
    record as it is published. Delivery always happens on a later loop
    iteration, never inside ``publish``.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        """Create an empty relay."""
        self._clock = clock
        self._records: dict[str, dict[str, RelayRecord]] = {}
        self._subscribers: dict[str, list[RecordCallback]] = {}

    def records(self, session_id: str) -> list[RelayRecord]:
        """Return the records currently stored for a session, oldest first."""
        return list(self._records.get(session_id, {}).values())

    def store(self, record: RelayRecord) -> None:
        """Store a record without notifying subscribers."""
        self._records.setdefault(record.session_id, {})[record.message_id] = record

    async def publish(self, session_id: str, draft: RelayRecordDraft) -> RelayRecord:
        """Store a message and deliver it to the session's subscribers."""
        now = self._clock()
        record = RelayRecord(
            message_id=generate_message_id(now),
            session_id=session_id,
            from_id=draft.from_id,
            to_id=draft.to_id,
            body=draft.body,
            stored_at=now,
        )
        self.store(record)
        loop = asyncio.get_running_loop()
        for callback in list(self._subscribers.get(session_id, [])):
            loop.call_soon(self._deliver, callback, record)
        return record

    async def subscribe(self, session_id: str, callback: RecordCallback) -> Unsubscribe:
        """Deliver stored and future records of a session to ``callback``."""
        subscribers = self._subscribers.setdefault(session_id, [])
        subscribers.append(callback)
        loop = asyncio.get_running_loop()
        for record in self.records(session_id):
            loop.call_soon(self._deliver, callback, record)

        def unsubscribe() -> None:
            if callback in subscribers:
                subscribers.remove(callback)

        return unsubscribe

    async def delete(self, session_id: str, message_id: str) -> None:
        """Delete a consumed record."""
        self._records.get(session_id, {}).pop(message_id, None)

    async def purge(self, session_id: str, participant_id: str) -> int:
        """Delete every record sent by or addressed to a participant."""
        records = self._records.get(session_id, {})
        doomed = [
            message_id
            for message_id, record in records.items()
            if participant_id in (record.from_id, record.to_id)
        ]
        for message_id in doomed:
            del records[message_id]
        return len(doomed)

    def _deliver(self, callback: RecordCallback, record: RelayRecord) -> None:
        subscribers = self._subscribers.get(record.session_id, [])
        if callback not in subscribers:
            return
        if record.message_id not in self._records.get(record.session_id, {}):
            # Consumed by the recipient before this subscriber saw it
            return
        try:
            callback(record)
        except Exception:
            logger.exception("Error in relay subscriber %s", callback)
