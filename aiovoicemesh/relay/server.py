"""Relay server storing signaling messages and pushing them to subscribers."""

from __future__ import annotations

import asyncio
import logging
import socket
import time
from collections.abc import Callable
from contextlib import suppress

from aiohttp import WSMsgType, web
from zeroconf import IPVersion
from zeroconf.asyncio import AsyncServiceInfo, AsyncZeroconf

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

from .base import generate_message_id

logger = logging.getLogger(__name__)

SERVICE_TYPE = "_voicemesh-relay._tcp.local."
RELAY_PATH = "/relay"
MAX_PENDING_MSG = 512


class RelayConnection:
    """A websocket client connected to the RelayServer."""

    _server: RelayServer
    request: web.Request
    wsock: web.WebSocketResponse
    sessions: set[str]
    # Task responsible for sending frames
    _writer_task: asyncio.Task[None] | None = None
    _to_write: asyncio.Queue[RelayFrame]

    def __init__(self, server: RelayServer, request: web.Request) -> None:
        """Do not call this constructor, use RelayServer.on_client_connect instead."""
        self._server = server
        self.request = request
        self.wsock = web.WebSocketResponse(heartbeat=55)
        self.sessions = set()
        self._to_write = asyncio.Queue(maxsize=MAX_PENDING_MSG)

    async def handle_client(self) -> web.WebSocketResponse:
        """Handle the websocket connection."""
        wsock = self.wsock
        remote_addr = self.request.remote or "Unknown"
        try:
            async with asyncio.timeout(10):
                _ = await wsock.prepare(self.request)
        except TimeoutError:
            logger.warning("Timeout preparing request from %s", remote_addr)
            return wsock

        logger.info("Relay connection established with %s", remote_addr)
        self._writer_task = asyncio.get_running_loop().create_task(self._writer())

        try:
            while not wsock.closed:
                msg = await wsock.receive()

                if msg.type in (WSMsgType.CLOSE, WSMsgType.CLOSING, WSMsgType.CLOSED):
                    break

                if msg.type != WSMsgType.TEXT:
                    continue

                try:
                    self._handle_frame(RelayFrame.from_json(msg.data))
                except Exception:
                    logger.exception("error parsing relay frame")
            logger.debug("wsock was closed for %s", remote_addr)

        except asyncio.CancelledError:
            logger.debug("Relay connection closed by client")
        except Exception:
            logger.exception("Unexpected error inside relay websocket API")
        finally:
            self._server._on_connection_closed(self)  # noqa: SLF001
            self._writer_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._writer_task
            _ = await wsock.close()

        logger.info("Relay connection with %s closed", remote_addr)
        return wsock

    def _handle_frame(self, frame: RelayFrame) -> None:
        server = self._server
        match frame:
            case SubscribeFrame(session_id=session_id):
                self.sessions.add(session_id)
                server._on_subscribe(self, session_id)  # noqa: SLF001
            case UnsubscribeFrame(session_id=session_id):
                self.sessions.discard(session_id)
            case PublishFrame(request_id=request_id, session_id=session_id, draft=draft):
                record = server.publish(session_id, draft)
                self.send_frame(AckFrame(request_id=request_id, record=record))
            case DeleteFrame(session_id=session_id, message_id=message_id):
                server.delete(session_id, message_id)
            case PurgeFrame(request_id=request_id, session_id=session_id, participant_id=pid):
                count = server.purge(session_id, pid)
                self.send_frame(AckFrame(request_id=request_id, count=count))
            case _:
                logger.debug("Unhandled relay frame type: %s", type(frame).__name__)
                request_id = getattr(frame, "request_id", None)
                if request_id is not None:
                    self.send_frame(
                        ErrorFrame(request_id=request_id, error="Unsupported request")
                    )

    async def _writer(self) -> None:
        """Write outgoing frames from the queue."""
        # Exceptions if Socket disconnected or cancelled by connection handler
        with suppress(RuntimeError, ConnectionResetError, asyncio.CancelledError):
            while not self.wsock.closed:
                frame = await self._to_write.get()
                await self.wsock.send_str(frame.to_json())

    def send_frame(self, frame: RelayFrame) -> None:
        """Enqueue a frame to be sent to the client."""
        try:
            self._to_write.put_nowait(frame)
        except asyncio.QueueFull:
            logger.warning(
                "Write queue of %s is full, closing connection", self.request.remote
            )
            _ = asyncio.get_running_loop().create_task(self.wsock.close())


class RelayServer:
    """In-memory, persistence-backed signaling relay.

    Records are kept per session until a participant deletes or purges them,
    or until they are older than ``retention`` seconds. Subscribers receive
    every stored record of a session when they subscribe, then each newly
    published one.
    """

    def __init__(
        self,
        *,
        retention: float = 60.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize an empty relay server."""
        self._retention = retention
        self._clock = clock
        self._records: dict[str, dict[str, RelayRecord]] = {}
        self._connections: set[RelayConnection] = set()
        self._runner: web.AppRunner | None = None
        self._expiry_task: asyncio.Task[None] | None = None
        self._zeroconf: AsyncZeroconf | None = None
        self._service_info: AsyncServiceInfo | None = None

    def make_app(self) -> web.Application:
        """Return an aiohttp application serving the relay websocket."""
        app = web.Application()
        app.router.add_get(RELAY_PATH, self.on_client_connect)
        return app

    async def on_client_connect(self, request: web.Request) -> web.WebSocketResponse:
        """Handle an incoming websocket connection from a relay client."""
        logger.debug("Incoming relay connection from %s", request.remote)
        connection = RelayConnection(self, request)
        self._connections.add(connection)
        return await connection.handle_client()

    async def start(
        self,
        host: str = "0.0.0.0",  # noqa: S104
        port: int = 8927,
        *,
        name: str = "voicemesh-relay",
        advertise: bool = True,
    ) -> None:
        """Serve the relay and optionally advertise it over mDNS."""
        self._runner = web.AppRunner(self.make_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, host, port)
        await site.start()
        logger.info("Relay server listening on %s:%s", host, port)
        self._expiry_task = asyncio.get_running_loop().create_task(self._expiry_loop())
        if advertise:
            await self._advertise(name, port)

    async def stop(self) -> None:
        """Stop advertising and serving."""
        if self._zeroconf is not None:
            if self._service_info is not None:
                await self._zeroconf.async_unregister_service(self._service_info)
            await self._zeroconf.async_close()
            self._zeroconf = None
            self._service_info = None
        if self._expiry_task is not None:
            self._expiry_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._expiry_task
            self._expiry_task = None
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None

    def records(self, session_id: str) -> list[RelayRecord]:
        """Return the records currently stored for a session, oldest first."""
        return list(self._records.get(session_id, {}).values())

    def publish(self, session_id: str, draft: RelayRecordDraft) -> RelayRecord:
        """Store a message and push it to every subscriber of the session."""
        now = self._clock()
        record = RelayRecord(
            message_id=generate_message_id(now),
            session_id=session_id,
            from_id=draft.from_id,
            to_id=draft.to_id,
            body=draft.body,
            stored_at=now,
        )
        self._records.setdefault(session_id, {})[record.message_id] = record
        for connection in self._connections:
            if session_id in connection.sessions:
                connection.send_frame(MessageFrame(record=record))
        return record

    def delete(self, session_id: str, message_id: str) -> None:
        """Delete a consumed record."""
        records = self._records.get(session_id)
        if records is None:
            return
        records.pop(message_id, None)
        if not records:
            del self._records[session_id]

    def purge(self, session_id: str, participant_id: str) -> int:
        """Delete every record sent by or addressed to a participant."""
        records = self._records.get(session_id, {})
        doomed = [
            message_id
            for message_id, record in records.items()
            if participant_id in (record.from_id, record.to_id)
        ]
        for message_id in doomed:
            del records[message_id]
        if doomed:
            logger.debug(
                "Purged %d records of %s from session %s", len(doomed), participant_id, session_id
            )
        return len(doomed)

    def expire(self) -> int:
        """Delete records older than the retention window."""
        cutoff = self._clock() - self._retention
        expired = 0
        for session_id in list(self._records):
            records = self._records[session_id]
            for message_id in [m for m, r in records.items() if r.stored_at < cutoff]:
                del records[message_id]
                expired += 1
            if not records:
                del self._records[session_id]
        return expired

    def _on_subscribe(self, connection: RelayConnection, session_id: str) -> None:
        for record in self.records(session_id):
            connection.send_frame(MessageFrame(record=record))

    def _on_connection_closed(self, connection: RelayConnection) -> None:
        self._connections.discard(connection)

    async def _expiry_loop(self) -> None:
        interval = max(self._retention / 4, 1.0)
        while True:
            await asyncio.sleep(interval)
            if expired := self.expire():
                logger.debug("Expired %d stale relay records", expired)

    async def _advertise(self, name: str, port: int) -> None:
        self._zeroconf = AsyncZeroconf(ip_version=IPVersion.V4Only)
        addresses = await asyncio.get_running_loop().run_in_executor(None, _local_addresses)
        self._service_info = AsyncServiceInfo(
            SERVICE_TYPE,
            f"{name}.{SERVICE_TYPE}",
            port=port,
            addresses=addresses,
            properties={"path": RELAY_PATH},
            server=f"{socket.gethostname()}.local.",
        )
        await self._zeroconf.async_register_service(self._service_info)
        logger.info("Advertising relay as %s", self._service_info.name)


def _local_addresses() -> list[bytes]:
    addresses: set[bytes] = set()
    try:
        infos = socket.getaddrinfo(socket.gethostname(), None, socket.AF_INET)
    except socket.gaierror:
        logger.warning("Could not resolve the local hostname, advertising loopback only")
        infos = []
    for info in infos:
        address = info[4][0]
        if isinstance(address, str) and not address.startswith("127."):
            addresses.add(socket.inet_aton(address))
    if not addresses:
        addresses.add(socket.inet_aton("127.0.0.1"))
    return sorted(addresses)
