"""Signaling relay client talking to a RelayServer over a websocket."""

from __future__ import annotations

import asyncio
import logging
import uuid
from contextlib import suppress
from types import TracebackType
from typing import Self

from aiohttp import ClientConnectionError, ClientSession, ClientWebSocketResponse, WSMsgType

from aiovoicemesh.errors import SignalingDeliveryError
from aiovoicemesh.models import RelayRecord, RelayRecordDraft
from aiovoicemesh.models.relay import (
    AckFrame,
    DeleteFrame,
    ErrorFrame,
    MessageFrame,
    PublishFrame,
    PurgeFrame,
    SubscribeFrame,
    UnsubscribeFrame,
)
from aiovoicemesh.models.types import RelayFrame

from .base import RecordCallback, SignalingRelay, Unsubscribe

logger = logging.getLogger(__name__)

INITIAL_BACKOFF = 1.0
MAX_BACKOFF = 300.0


class WebSocketRelay(SignalingRelay):
    """Relay client that keeps a websocket to a relay server open.

    The connection is re-established with exponential backoff whenever it
    drops, and every active subscription is renewed after reconnecting.
    Requests issued while disconnected wait up to ``request_timeout`` for the
    connection to come back before failing with SignalingDeliveryError.
    """

    def __init__(
        self,
        url: str,
        *,
        session: ClientSession | None = None,
        request_timeout: float = 10.0,
    ) -> None:
        """Create a relay client for the relay server at ``url``."""
        self._url = url
        self._session = session
        self._owns_session = session is None
        self._request_timeout = request_timeout
        self._ws: ClientWebSocketResponse | None = None
        self._connection_task: asyncio.Task[None] | None = None
        self._connected = asyncio.Event()
        self._send_lock = asyncio.Lock()
        self._pending: dict[str, asyncio.Future[AckFrame]] = {}
        self._subscriptions: dict[str, list[RecordCallback]] = {}

    @property
    def connected(self) -> bool:
        """Return True if the websocket is currently open."""
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        """Start the connection loop and wait for the first connection."""
        if self._connection_task is None or self._connection_task.done():
            if self._session is None:
                self._session = ClientSession()
            self._connection_task = asyncio.get_running_loop().create_task(
                self._connection_loop()
            )
        await self._wait_connected()

    async def close(self) -> None:
        """Stop reconnecting and close the websocket."""
        if self._connection_task is not None:
            self._connection_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._connection_task
            self._connection_task = None
        if self._ws is not None:
            await self._ws.close()
            self._ws = None
        self._connected.clear()
        self._fail_pending("Relay client closed")
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    async def publish(self, session_id: str, draft: RelayRecordDraft) -> RelayRecord:
        """Store a message on the relay server."""
        request_id = uuid.uuid4().hex
        ack = await self._request(
            request_id, PublishFrame(request_id=request_id, session_id=session_id, draft=draft)
        )
        if ack.record is None:
            raise SignalingDeliveryError("Relay acknowledged publish without a record")
        return ack.record

    async def subscribe(self, session_id: str, callback: RecordCallback) -> Unsubscribe:
        """Receive stored and future records of a session."""
        callbacks = self._subscriptions.setdefault(session_id, [])
        callbacks.append(callback)
        if len(callbacks) == 1:
            try:
                await self._wait_connected()
                await self._send(SubscribeFrame(session_id=session_id))
            except BaseException:
                # A failed subscription is not restored on reconnect
                callbacks.remove(callback)
                if not callbacks and self._subscriptions.get(session_id) is callbacks:
                    del self._subscriptions[session_id]
                raise

        def unsubscribe() -> None:
            if callback not in callbacks:
                return
            callbacks.remove(callback)
            if callbacks or not self.connected:
                return
            self._subscriptions.pop(session_id, None)
            task = asyncio.get_running_loop().create_task(
                self._send(UnsubscribeFrame(session_id=session_id))
            )
            task.add_done_callback(_log_task_error)

        return unsubscribe

    async def delete(self, session_id: str, message_id: str) -> None:
        """Delete a consumed record."""
        await self._wait_connected()
        await self._send(DeleteFrame(session_id=session_id, message_id=message_id))

    async def purge(self, session_id: str, participant_id: str) -> int:
        """Delete every record sent by or addressed to a participant."""
        request_id = uuid.uuid4().hex
        ack = await self._request(
            request_id,
            PurgeFrame(request_id=request_id, session_id=session_id, participant_id=participant_id),
        )
        return ack.count or 0

    async def _wait_connected(self) -> None:
        try:
            async with asyncio.timeout(self._request_timeout):
                await self._connected.wait()
        except TimeoutError as err:
            raise SignalingDeliveryError(f"Relay at {self._url} is not reachable") from err

    async def _request(self, request_id: str, frame: RelayFrame) -> AckFrame:
        await self._wait_connected()
        future: asyncio.Future[AckFrame] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        try:
            await self._send(frame)
            async with asyncio.timeout(self._request_timeout):
                return await future
        except TimeoutError as err:
            raise SignalingDeliveryError(f"Relay request {request_id} timed out") from err
        finally:
            self._pending.pop(request_id, None)

    async def _send(self, frame: RelayFrame) -> None:
        if self._ws is None or self._ws.closed:
            raise SignalingDeliveryError("Relay websocket is not connected")
        try:
            async with self._send_lock:
                await self._ws.send_str(frame.to_json())
        except (ClientConnectionError, ConnectionResetError, RuntimeError) as err:
            raise SignalingDeliveryError(f"Failed to send relay frame: {err}") from err

    async def _connection_loop(self) -> None:
        assert self._session is not None
        backoff = INITIAL_BACKOFF

        while True:
            try:
                self._ws = await self._session.ws_connect(self._url, heartbeat=25)
                backoff = INITIAL_BACKOFF
                logger.info("Connected to relay at %s", self._url)
                for session_id in list(self._subscriptions):
                    await self._send(SubscribeFrame(session_id=session_id))
                self._connected.set()
                await self._reader_loop(self._ws)
                logger.info("Relay at %s closed the connection", self._url)
            except asyncio.CancelledError:
                logger.debug("Relay connection task for %s was cancelled", self._url)
                raise
            except TimeoutError:
                logger.debug("Connecting to relay at %s timed out", self._url)
            except (ClientConnectionError, SignalingDeliveryError):
                logger.debug("Connecting to relay at %s failed", self._url)
            except Exception:
                # NOTE: Intentional catch-all to log unexpected exceptions so they are visible.
                logger.exception("Unexpected error in relay connection to %s", self._url)
            finally:
                self._connected.clear()
                self._fail_pending("Relay connection lost")

            sleep_time = min(backoff, MAX_BACKOFF)
            logger.warning("Reconnecting to relay at %s in %.1fs", self._url, sleep_time)
            await asyncio.sleep(sleep_time)
            backoff = backoff * 2

    async def _reader_loop(self, ws: ClientWebSocketResponse) -> None:
        async for msg in ws:
            if msg.type is WSMsgType.TEXT:
                self._handle_frame(msg.data)
            elif msg.type is WSMsgType.ERROR:
                logger.error("Relay websocket error: %s", ws.exception())
                break

    def _handle_frame(self, data: str) -> None:
        try:
            frame = RelayFrame.from_json(data)
        except Exception:
            logger.exception("Failed to parse relay frame: %s", data)
            return

        match frame:
            case MessageFrame(record=record):
                for callback in list(self._subscriptions.get(record.session_id, [])):
                    try:
                        callback(record)
                    except Exception:
                        logger.exception("Error in relay subscriber %s", callback)
            case AckFrame(request_id=request_id):
                future = self._pending.get(request_id)
                if future is not None and not future.done():
                    future.set_result(frame)
            case ErrorFrame(request_id=request_id, error=error):
                future = self._pending.get(request_id)
                if future is not None and not future.done():
                    future.set_exception(SignalingDeliveryError(error))
            case _:
                logger.debug("Unhandled relay frame type: %s", type(frame).__name__)

    def _fail_pending(self, reason: str) -> None:
        for future in self._pending.values():
            if not future.done():
                future.set_exception(SignalingDeliveryError(reason))

    async def __aenter__(self) -> Self:
        """Connect when entering the async context manager."""
        await self.connect()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Close when leaving the async context manager."""
        await self.close()


def _log_task_error(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    if (err := task.exception()) is not None:
        logger.warning("Relay request failed: %s", err)
