"""Signaling channel on top of a SignalingRelay.

The channel scopes a relay to one session and one local participant and
performs message hygiene on everything it receives:

- records already processed are dropped (the relay delivers at least once),
- records the relay stored more than ``stale_message_age`` ago, or more than
  ``subscription_grace`` before the subscription started, are deleted without
  being processed; age comes from the relay's ``stored_at``, never from
  the sender's clock,
- the local participant's own messages and messages addressed to somebody
  else are skipped,
- messages addressed to the local participant are deleted once handed over.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable

from aiovoicemesh.config import DEDUP_CAPACITY, DEDUP_EVICT, VoiceSettings
from aiovoicemesh.errors import SignalingDeliveryError
from aiovoicemesh.models import RelayRecord, RelayRecordDraft, SignalingMessage
from aiovoicemesh.relay import SignalingRelay, Unsubscribe

logger = logging.getLogger(__name__)

MessageHandler = Callable[[SignalingMessage], None]


class SignalingChannel:
    """Send and receive signaling messages of one session."""

    def __init__(
        self,
        relay: SignalingRelay,
        session_id: str,
        participant_id: str,
        settings: VoiceSettings,
        *,
        clock: Callable[[], float] = time.time,
        send_attempts: int = 4,
        send_backoff: float = 0.25,
    ) -> None:
        """Create a channel for ``participant_id`` in ``session_id``."""
        self._relay = relay
        self._session_id = session_id
        self._participant_id = participant_id
        self.settings = settings
        self._clock = clock
        self._send_attempts = send_attempts
        self._send_backoff = send_backoff
        self._handler: MessageHandler | None = None
        self._unsubscribe: Unsubscribe | None = None
        self._listener_start: float | None = None
        # dict keeps insertion order, so the oldest ids come first
        self._processed: dict[str, None] = {}
        self._background: set[asyncio.Task[None]] = set()

    @property
    def session_id(self) -> str:
        """Session this channel is scoped to."""
        return self._session_id

    @property
    def subscribed(self) -> bool:
        """Return True while messages are being received."""
        return self._unsubscribe is not None

    def now_ms(self) -> int:
        """Return the current wall clock time in milliseconds."""
        return int(self._clock() * 1000)

    async def send(self, message: SignalingMessage) -> RelayRecord:
        """Publish a message, retrying with backoff.

        Raises SignalingDeliveryError once every attempt failed.
        """
        draft = RelayRecordDraft(
            from_id=message.from_id, to_id=message.to_id, body=message.to_json()
        )
        backoff = self._send_backoff
        for attempt in range(1, self._send_attempts + 1):
            try:
                record = await self._relay.publish(self._session_id, draft)
            except SignalingDeliveryError as err:
                if attempt == self._send_attempts:
                    raise
                logger.warning(
                    "Sending %s failed (attempt %d/%d), retrying in %.2fs: %s",
                    type(message).__name__,
                    attempt,
                    self._send_attempts,
                    backoff,
                    err,
                )
                await asyncio.sleep(backoff)
                backoff *= 2
            else:
                logger.debug(
                    "Sent %s to %s", type(message).__name__, message.to_id or "everyone"
                )
                return record
        raise SignalingDeliveryError("No send attempts configured")

    async def subscribe(self, handler: MessageHandler) -> None:
        """Start handing messages of the session to ``handler``."""
        if self._unsubscribe is not None:
            raise RuntimeError("Signaling channel is already subscribed")
        self._handler = handler
        self._listener_start = self._clock()
        self._unsubscribe = await self._relay.subscribe(self._session_id, self._on_record)

    def unsubscribe(self) -> None:
        """Stop receiving messages. Safe to call when not subscribed."""
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._handler = None

    async def purge_own(self) -> int:
        """Delete every stored message sent by or addressed to the local participant."""
        count = await self._relay.purge(self._session_id, self._participant_id)
        if count:
            logger.debug("Purged %d leftover signaling messages", count)
        return count

    async def close(self) -> None:
        """Unsubscribe and wait for pending deletions."""
        self.unsubscribe()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    def is_stale(self, stored_at: float) -> bool:
        """Return True if a record the relay stored at ``stored_at`` is too old."""
        now = self._clock()
        if now - stored_at > self.settings.stale_message_age:
            return True
        start = self._listener_start if self._listener_start is not None else now
        return stored_at < start - self.settings.subscription_grace

    def _remember(self, message_id: str) -> bool:
        """Record a processed id, returning False if it was seen before."""
        if message_id in self._processed:
            return False
        self._processed[message_id] = None
        if len(self._processed) > DEDUP_CAPACITY:
            for old_id in list(self._processed)[:DEDUP_EVICT]:
                del self._processed[old_id]
        return True

    def _on_record(self, record: RelayRecord) -> None:
        if self._handler is None:
            return
        if not self._remember(record.message_id):
            logger.debug("Dropping duplicate delivery of %s", record.message_id)
            return

        if self.is_stale(record.stored_at):
            logger.debug("Discarding stale record %s from %s", record.message_id, record.from_id)
            self._delete_later(record)
            return

        try:
            message = SignalingMessage.from_json(record.body)
        except Exception:
            logger.exception("Failed to parse signaling message: %s", record.body)
            self._delete_later(record)
            return

        if message.from_id == self._participant_id or not message.is_for(self._participant_id):
            return

        try:
            self._handler(message)
        except Exception:
            logger.exception("Error handling signaling message %s", record.message_id)
        finally:
            if message.to_id == self._participant_id:
                self._delete_later(record)

    def _delete_later(self, record: RelayRecord) -> None:
        task = asyncio.get_running_loop().create_task(self._delete(record))
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _delete(self, record: RelayRecord) -> None:
        try:
            await self._relay.delete(self._session_id, record.message_id)
        except SignalingDeliveryError as err:
            logger.warning("Failed to delete consumed message %s: %s", record.message_id, err)
