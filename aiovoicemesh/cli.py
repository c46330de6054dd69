"""Command-line interface for joining a voice mesh session."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, cast

if TYPE_CHECKING:
    from zeroconf import ServiceListener

import aioconsole
from aiohttp import ClientError
from aiortc.contrib.media import MediaPlayer
from zeroconf.asyncio import AsyncServiceBrowser, AsyncZeroconf

from aiovoicemesh.config import VoiceSettings
from aiovoicemesh.errors import MediaAccessError, SignalingDeliveryError
from aiovoicemesh.events import (
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    RemoteShareEndedEvent,
    RemoteShareStartedEvent,
    SessionEvent,
    VolumeSamplesEvent,
)
from aiovoicemesh.relay import SERVICE_TYPE, WebSocketRelay
from aiovoicemesh.relay.server import RELAY_PATH
from aiovoicemesh.session import VoiceMeshClient, VoiceSession

logger = logging.getLogger(__name__)

SPEAKING_LEVEL = 10.0
"""Normalized level above which a participant is shown as speaking."""


@dataclass
class CLIState:
    """Holds what the CLI shows about the session."""

    names: dict[str, str] = field(default_factory=dict)
    speaking: set[str] = field(default_factory=set)
    player: MediaPlayer | None = None

    def update_speaking(self, event: VolumeSamplesEvent) -> list[str]:
        """Track who is speaking, returning a line per change."""
        changes: list[str] = []
        for sample in event.samples:
            speaking = sample.level >= SPEAKING_LEVEL
            if speaking and sample.participant_id not in self.speaking:
                self.speaking.add(sample.participant_id)
                changes.append(f"{sample.name} is speaking")
            elif not speaking and sample.participant_id in self.speaking:
                self.speaking.discard(sample.participant_id)
                changes.append(f"{sample.name} stopped speaking")
        return changes


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the voice mesh client."""
    parser = argparse.ArgumentParser(description="Join a voice mesh session")
    parser.add_argument(
        "--url",
        default=None,
        help=("WebSocket URL of the signaling relay. If omitted, discover via mDNS."),
    )
    parser.add_argument(
        "--session",
        default="lobby",
        help="Identifier of the voice session to join",
    )
    parser.add_argument(
        "--name",
        default="Voice Mesh CLI",
        help="Display name of this participant",
    )
    parser.add_argument(
        "--id",
        default=None,
        help="Unique participant identifier, random if omitted",
    )
    parser.add_argument(
        "--settings",
        type=Path,
        default=None,
        help="JSON file with voice settings",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=None,
        help="Noise gate threshold, 0-100",
    )
    parser.add_argument(
        "--input-device",
        default=None,
        help="Microphone to capture from (sounddevice name or index)",
    )
    parser.add_argument(
        "--output-device",
        default=None,
        help="Speaker to play remote audio on (sounddevice name or index)",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level to use",
    )
    return parser.parse_args(argv)


def _device(value: str | None) -> str | int | None:
    if value is None:
        return None
    return int(value) if value.isdigit() else value


def build_settings(args: argparse.Namespace) -> VoiceSettings:
    """Build voice settings from the settings file and the command line."""
    settings = VoiceSettings()
    if args.settings is not None:
        settings = VoiceSettings.from_json(args.settings.read_text(encoding="utf-8"))
    changes: dict[str, object] = {}
    if args.threshold is not None:
        changes["mic_threshold"] = args.threshold
    if args.input_device is not None:
        changes["input_device"] = _device(args.input_device)
    if args.output_device is not None:
        changes["output_device"] = _device(args.output_device)
    return settings.updated(**changes) if changes else settings


def _build_service_url(host: str, port: int, properties: dict[bytes, bytes | None]) -> str:
    """Construct WebSocket URL from mDNS service info."""
    path_raw = properties.get(b"path")
    path = path_raw.decode("utf-8", "ignore") if isinstance(path_raw, bytes) else RELAY_PATH
    if not path:
        path = RELAY_PATH
    if not path.startswith("/"):
        path = "/" + path
    host_fmt = f"[{host}]" if ":" in host else host
    return f"ws://{host_fmt}:{port}{path}"


class _RelayDiscoveryListener:
    """Listens for relay server advertisements via mDNS."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self._first_result: asyncio.Future[str] = loop.create_future()
        self.tasks: set[asyncio.Task[None]] = set()

    async def wait_for_first(self) -> str:
        """Wait for the first relay to be discovered."""
        return await self._first_result

    async def _process_service_info(
        self, zeroconf: AsyncZeroconf, service_type: str, name: str
    ) -> None:
        info = await zeroconf.async_get_service_info(service_type, name)
        if info is None or info.port is None:
            return
        addresses = info.parsed_addresses()
        if not addresses:
            return
        url = _build_service_url(addresses[0], info.port, info.properties)
        if not self._first_result.done():
            self._first_result.set_result(url)

    def _schedule(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        task = self._loop.create_task(self._process_service_info(zeroconf, service_type, name))
        self.tasks.add(task)
        task.add_done_callback(self.tasks.discard)

    def add_service(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        self._schedule(zeroconf, service_type, name)

    def update_service(self, zeroconf: AsyncZeroconf, service_type: str, name: str) -> None:
        self._schedule(zeroconf, service_type, name)

    def remove_service(self, _zeroconf: AsyncZeroconf, _service_type: str, _name: str) -> None:
        """Relay went offline; the relay client reconnects by itself."""


async def discover_relay() -> str:
    """Wait for a relay server to be advertised via mDNS and return its URL."""
    listener = _RelayDiscoveryListener(asyncio.get_running_loop())
    async with AsyncZeroconf() as zeroconf:
        browser = AsyncServiceBrowser(
            zeroconf.zeroconf, SERVICE_TYPE, cast("ServiceListener", listener)
        )
        try:
            return await listener.wait_for_first()
        finally:
            await browser.async_cancel()


async def main_async(argv: Sequence[str] | None = None) -> int:
    """Entry point executing the asynchronous CLI workflow."""
    args = parse_args(list(argv) if argv is not None else None)
    logging.basicConfig(level=getattr(logging, args.log_level))

    try:
        settings = build_settings(args)
    except (OSError, ValueError) as err:
        _print_event(f"Invalid settings: {err}")
        return 1

    url = args.url
    if url is None:
        logger.info("Waiting for mDNS discovery of a voice mesh relay...")
        _print_event("Searching for relay...")
        url = await discover_relay()
        _print_event(f"Found relay at {url}")

    relay = WebSocketRelay(url)
    try:
        await relay.connect()
    except (TimeoutError, OSError, ClientError, SignalingDeliveryError) as err:
        _print_event(f"Could not connect to {url}: {err}")
        await relay.close()
        return 1

    state = CLIState()
    client = VoiceMeshClient(
        relay,
        args.id or uuid.uuid4().hex[:12],
        args.name,
        settings=settings,
    )
    client.add_event_listener(lambda event: _handle_event(state, event))

    try:
        try:
            session = await client.join(args.session)
        except MediaAccessError as err:
            _print_event(f"Microphone unavailable: {err}")
            return 1
        _print_event(f"Joined session {args.session} as {client.participant.name}")
        _print_instructions()

        keyboard_task = asyncio.create_task(_keyboard_loop(session, state))

        # Set up signal handler for graceful shutdown on Ctrl+C
        loop = asyncio.get_running_loop()

        def signal_handler() -> None:
            logger.debug("Received interrupt signal, shutting down...")
            keyboard_task.cancel()

        loop.add_signal_handler(signal.SIGINT, signal_handler)
        try:
            await keyboard_task
        except asyncio.CancelledError:  # pragma: no cover - cancellation path
            logger.debug("Keyboard loop cancelled")
        finally:
            loop.remove_signal_handler(signal.SIGINT)
    finally:
        await client.leave()
        if state.player is not None:
            _stop_player(state.player)
        await relay.close()

    return 0


def _handle_event(state: CLIState, event: SessionEvent) -> None:
    match event:
        case ParticipantJoinedEvent(participant_id=participant_id, name=name):
            state.names[participant_id] = name
            _print_event(f"{name} joined ({participant_id})")
        case ParticipantLeftEvent(participant_id=participant_id, name=name):
            state.speaking.discard(participant_id)
            _print_event(f"{name} left")
        case RemoteShareStartedEvent(name=name):
            _print_event(f"{name} is sharing their screen")
        case RemoteShareEndedEvent(name=name):
            _print_event(f"{name} stopped sharing")
        case VolumeSamplesEvent():
            for line in state.update_speaking(event):
                _print_event(line)


async def _keyboard_loop(session: VoiceSession, state: CLIState) -> None:
    try:
        while True:
            try:
                line = await aioconsole.ainput()
            except EOFError:
                break
            parts = line.strip().split()
            if not parts:
                continue
            keyword = parts[0].lower()
            if keyword in {"quit", "exit", "q"}:
                break
            try:
                await _handle_command(session, state, keyword, parts[1:])
            except ValueError as err:
                _print_event(f"Invalid value: {err}")
    except asyncio.CancelledError:
        logger.debug("Keyboard loop cancelled, exiting gracefully")
        raise


async def _handle_command(
    session: VoiceSession, state: CLIState, keyword: str, args: list[str]
) -> None:
    if keyword in {"mute", "m"}:
        session.set_microphone_enabled(session.muted)
        _print_event("Muted" if session.muted else "Unmuted")
    elif keyword in {"deafen", "d"}:
        session.set_deafened(not session.deafened)
        _print_event("Deafened" if session.deafened else "Undeafened")
    elif keyword in {"vol", "volume"} and len(args) == 2:
        session.set_peer_volume(_resolve_participant(state, args[0]), float(args[1]))
        _print_event(f"Volume of {args[0]}: {float(args[1]):.0f}%")
    elif keyword == "out" and len(args) == 1:
        session.set_output_volume(float(args[0]))
        _print_event(f"Output volume: {session.settings.output_volume:.0f}%")
    elif keyword == "in" and len(args) == 1:
        session.set_input_volume(float(args[0]))
        _print_event(f"Input volume: {session.settings.input_volume:.0f}%")
    elif keyword == "threshold" and len(args) == 1:
        session.set_mic_threshold(float(args[0]))
        _print_event(f"Noise gate threshold: {session.settings.mic_threshold:.0f}")
    elif keyword == "share" and args:
        await _start_share(session, state, args)
    elif keyword == "unshare":
        await session.stop_share()
        if state.player is not None:
            _stop_player(state.player)
            state.player = None
        _print_event("Stopped sharing")
    elif keyword == "peers":
        _print_peers(session)
    elif keyword == "quality":
        for participant_id, quality in (await session.connection_quality()).items():
            _print_event(f"{state.names.get(participant_id, participant_id)}: {quality.value}")
    else:
        _print_event("Unknown command")


async def _start_share(session: VoiceSession, state: CLIState, args: list[str]) -> None:
    """Share the video of a media file or capture device."""
    source = args[0]
    media_format = args[1] if len(args) > 1 else None
    try:
        player = MediaPlayer(source, format=media_format)
    except (OSError, ValueError) as err:
        _print_event(f"Cannot open {source}: {err}")
        return
    if player.video is None:
        _stop_player(player)
        _print_event(f"{source} has no video")
        return
    if state.player is not None:
        _stop_player(state.player)
    state.player = player
    await session.start_share(player.video)
    _print_event(f"Sharing {source}")


def _stop_player(player: MediaPlayer) -> None:
    for track in (player.audio, player.video):
        if track is not None:
            track.stop()


def _resolve_participant(state: CLIState, value: str) -> str:
    """Accept a participant id or display name."""
    if value in state.names:
        return value
    for participant_id, name in state.names.items():
        if name == value:
            return participant_id
    return value


def _print_peers(session: VoiceSession) -> None:
    links = session.links
    if not links:
        _print_event("Nobody else is here")
        return
    for participant_id, link in links.items():
        status = "left" if link.departed else link.connection.connection_state.value
        _print_event(
            f"{link.name} ({participant_id}): {status}, volume {link.volume:.0f}%"
            + (", sharing" if link.has_screen_share else "")
        )


def _print_event(message: str) -> None:
    print(message, flush=True)  # noqa: T201


def _print_instructions() -> None:
    print(  # noqa: T201
        (
            "Commands: mute(m), deafen(d), vol <peer> <0-200>, out <0-100>, in <0-100>, "
            "threshold <0-100>, share <file|device> [format], unshare, peers, quality, quit(q)"
        ),
        flush=True,
    )


def main() -> int:
    """Run the CLI client."""
    return asyncio.run(main_async(sys.argv[1:]))


if __name__ == "__main__":  # pragma: no cover - CLI entry
    raise SystemExit(main())
