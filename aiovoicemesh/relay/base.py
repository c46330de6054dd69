"""Contract of the persistence-backed signaling relay."""

from __future__ import annotations

import time
import uuid
from abc import ABC, abstractmethod
from collections.abc import Callable

from aiovoicemesh.models import RelayRecord, RelayRecordDraft

RecordCallback = Callable[[RelayRecord], None]
Unsubscribe = Callable[[], None]


def generate_message_id(now: float | None = None) -> str:
    """Return a new relay message id, sortable by creation time."""
    if now is None:
        now = time.time()
    return f"{int(now * 1000)}_{uuid.uuid4().hex[:9]}"


class SignalingRelay(ABC):
    """A publish/subscribe channel keyed by session id.

    Implementations raise SignalingDeliveryError when the backing store cannot
    be reached. Only per-publisher FIFO ordering is guaranteed, and records may
    be delivered more than once.
    """

    @abstractmethod
    async def publish(self, session_id: str, draft: RelayRecordDraft) -> RelayRecord:
        """Store a message and deliver it to the session's subscribers."""

    @abstractmethod
    async def subscribe(self, session_id: str, callback: RecordCallback) -> Unsubscribe:
        """Deliver stored and future records of a session to ``callback``.

        Returns a function to remove the subscription.
        """

    @abstractmethod
    async def delete(self, session_id: str, message_id: str) -> None:
        """Delete a consumed record. Deleting an unknown record is a no-op."""

    @abstractmethod
    async def purge(self, session_id: str, participant_id: str) -> int:
        """Delete every record sent by or addressed to a participant.

        Returns the number of deleted records.
        """

    async def close(self) -> None:
        """Release resources held by the relay."""
