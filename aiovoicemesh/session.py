"""Session coordinator of the voice mesh.

``VoiceMeshClient`` is the entry point: it joins sessions through a signaling
relay and hands out ``VoiceSession`` objects. A session owns the local audio
pipeline, one ``PeerLink`` per remote participant, the noise gate, the volume
monitor, the remote audio renderer and the screen share, and routes inbound
signaling messages to the right link.

Participants never announce that they leave. A participant is considered gone
once its link reports a terminal connectivity state, so departures are only
noticed after the peer-link primitive's failure detection timeout.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Coroutine, Iterable, Iterator
from types import TracebackType
from typing import Any, Self

from aiovoicemesh.audio import CaptureFactory, LocalAudioPipeline, open_microphone
from aiovoicemesh.config import MAX_PEER_VOLUME, VoiceSettings
from aiovoicemesh.errors import AlreadyJoinedError, NotJoinedError, SignalingDeliveryError
from aiovoicemesh.events import (
    EventListener,
    ParticipantJoinedEvent,
    ParticipantLeftEvent,
    RemoteShareEndedEvent,
    RemoteShareStartedEvent,
    SessionEvent,
    VolumeSample,
    VolumeSamplesEvent,
)
from aiovoicemesh.gate import NoiseGate
from aiovoicemesh.ice import IceCandidateBatcher
from aiovoicemesh.models import (
    AudioSource,
    ConnectionQuality,
    ConnectionState,
    IceBatchMessage,
    IceBatchPayload,
    IceCandidatePayload,
    JoinMessage,
    OfferMessage,
    ScreenShareEndedMessage,
    SessionState,
    SignalingMessage,
)
from aiovoicemesh.monitor import VolumeMonitor, classify_round_trip
from aiovoicemesh.peer import Participant, PeerLink
from aiovoicemesh.relay import SignalingRelay
from aiovoicemesh.renderer import RemoteAudioRenderer, SinkFactory, SoundDeviceSink
from aiovoicemesh.rtc import MediaTrack, PeerConnectionFactory, create_aiortc_peer_connection
from aiovoicemesh.screenshare import ScreenShareHandle, ScreenShareManager
from aiovoicemesh.signaling import SignalingChannel

logger = logging.getLogger(__name__)


class VoiceSession:
    """Membership of the local participant in one voice session.

    Do not create this directly, use VoiceMeshClient.join().
    """

    def __init__(
        self,
        client: VoiceMeshClient,
        session_id: str,
        participant: Participant,
        settings: VoiceSettings,
    ) -> None:
        """Do not call this constructor, use VoiceMeshClient.join() instead."""
        self._client = client
        self._session_id = session_id
        self._participant = participant
        self._settings = settings
        self._state = SessionState.IDLE
        self._loop = asyncio.get_running_loop()
        self._links: dict[str, PeerLink] = {}
        self._background: set[asyncio.Task[Any]] = set()

        self._channel = SignalingChannel(
            client.relay,
            session_id,
            participant.participant_id,
            settings,
            clock=client.clock,
        )
        self._pipeline = LocalAudioPipeline(settings, capture_factory=client.capture_factory)
        self._gate = NoiseGate(self._loop, settings, self._on_gate_change)
        self._monitor = VolumeMonitor(
            settings,
            self._gate,
            participant_id=participant.participant_id,
            name=participant.name,
            local_level=self._local_level,
            peer_levels=self._peer_levels,
            on_samples=self._on_volume_samples,
        )
        self._batcher = IceCandidateBatcher(
            self._loop, settings.ice_batch_delay, self._send_ice_batch
        )
        self._renderer = RemoteAudioRenderer(
            output_volume=settings.output_volume,
            output_device=settings.output_device,
            sink_factory=client.sink_factory,
        )
        self._screen_share = ScreenShareManager(
            lambda: self._links.values(), self._broadcast_share_ended
        )

    @property
    def session_id(self) -> str:
        """Identifier of the session."""
        return self._session_id

    @property
    def participant(self) -> Participant:
        """The local participant."""
        return self._participant

    @property
    def state(self) -> SessionState:
        """Lifecycle state of the session."""
        return self._state

    @property
    def settings(self) -> VoiceSettings:
        """Settings currently applied."""
        return self._settings

    @property
    def links(self) -> dict[str, PeerLink]:
        """Peer links by remote participant id."""
        return dict(self._links)

    @property
    def gate(self) -> NoiseGate:
        """The local noise gate."""
        return self._gate

    @property
    def pipeline(self) -> LocalAudioPipeline:
        """The local audio pipeline."""
        return self._pipeline

    @property
    def monitor(self) -> VolumeMonitor:
        """The volume monitor."""
        return self._monitor

    @property
    def renderer(self) -> RemoteAudioRenderer:
        """The remote audio renderer."""
        return self._renderer

    @property
    def screen_share(self) -> ScreenShareManager:
        """The outgoing screen share."""
        return self._screen_share

    @property
    def muted(self) -> bool:
        """Return True if the microphone is manually muted."""
        return self._gate.manually_muted

    @property
    def deafened(self) -> bool:
        """Return True if all playback is silenced."""
        return self._renderer.deafened

    def get_link(self, participant_id: str) -> PeerLink | None:
        """Return the link to a participant, if any."""
        return self._links.get(participant_id)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def _start(self) -> None:
        """Acquire the microphone, subscribe and announce the local participant."""
        self._state = SessionState.JOINING
        try:
            await self._pipeline.start(self._gate.source)
            if self._state is not SessionState.JOINING:
                return
            try:
                await self._channel.purge_own()
            except SignalingDeliveryError as err:
                logger.warning("Could not clean up leftover signaling messages: %s", err)
            if self._state is not SessionState.JOINING:
                return
            await self._channel.subscribe(self.handle_inbound_message)
            if self._state is not SessionState.JOINING:
                self._channel.unsubscribe()
                return
        except Exception:
            await self._teardown(purge=False)
            raise

        self._monitor.start()
        self._state = SessionState.ACTIVE
        try:
            await self._channel.send(JoinMessage(**self._envelope(None)))
        except SignalingDeliveryError as err:
            logger.warning("Could not announce joining %s: %s", self._session_id, err)
        logger.info(
            "Joined voice session %s as %s (%s)",
            self._session_id,
            self._participant.name,
            self._participant.participant_id,
        )

    async def leave(self) -> None:
        """Leave the session. Safe to call repeatedly and in any state."""
        if self._state in (SessionState.IDLE, SessionState.LEAVING):
            return
        self._state = SessionState.LEAVING
        await self._teardown(purge=True)
        logger.info("Left voice session %s", self._session_id)

    async def _teardown(self, *, purge: bool) -> None:
        await self._monitor.stop()
        self._gate.cancel()
        self._batcher.cancel_all()
        self._channel.unsubscribe()
        self._screen_share.discard()
        links = list(self._links.values())
        self._links.clear()
        for link in links:
            await link.close()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)
        await self._renderer.close()
        self._pipeline.stop()
        if purge:
            try:
                await self._channel.purge_own()
            except SignalingDeliveryError as err:
                logger.warning("Could not clean up signaling messages: %s", err)
        await self._channel.close()
        self._state = SessionState.IDLE

    async def wait_idle(self) -> None:
        """Wait until every link processed its queued messages."""
        for link in list(self._links.values()):
            await link.wait_idle()

    # ------------------------------------------------------------------
    # Inbound signaling
    # ------------------------------------------------------------------
    def handle_inbound_message(self, message: SignalingMessage) -> None:
        """Route an inbound signaling message to the sender's peer link.

        The link is created on first contact for ``join``, ``offer`` and
        ``ice-batch`` messages. A ``join`` from a participant whose link is
        still usable is a duplicate and ignored. Stale records never get here,
        the signaling channel discards them by their relay timestamp.
        """
        if self._state not in (SessionState.JOINING, SessionState.ACTIVE):
            return
        if message.from_id == self._participant.participant_id:
            return
        if not message.is_for(self._participant.participant_id):
            return

        link = self._links.get(message.from_id)
        match message:
            case JoinMessage():
                if link is not None and not link.replaceable:
                    logger.debug(
                        "Ignoring duplicate join from %s (%s)",
                        message.from_name,
                        link.connection.connection_state.value,
                    )
                    return
                link = self._replace_link(link, message)
                link.request_negotiation()
            case OfferMessage():
                if link is None or link.replaceable:
                    link = self._replace_link(link, message)
                link.enqueue(message)
            case IceBatchMessage():
                if link is None:
                    link = self._replace_link(None, message)
                link.enqueue(message)
            case _:
                if link is None:
                    logger.debug(
                        "Ignoring %s from unknown participant %s",
                        type(message).__name__,
                        message.from_id,
                    )
                    return
                link.enqueue(message)

    def _replace_link(self, old: PeerLink | None, message: SignalingMessage) -> PeerLink:
        if old is not None:
            logger.info("Replacing link to %s", old.name)
            self._batcher.cancel(old.participant_id)
            self._spawn(self._renderer.detach(old.participant_id))
            self._spawn(old.close())
        return self._create_link(Participant(message.from_id, message.from_name))

    def _create_link(self, remote: Participant) -> PeerLink:
        connection = self._client.connection_factory(self._settings.ice_servers)
        link = PeerLink(self._participant, remote, connection, self._channel, self)
        if self._pipeline.running:
            link.add_track(self._pipeline.current_track)
        self._screen_share.attach_to(link)
        self._links[remote.participant_id] = link
        link.start()
        logger.info("%s joined the session", remote.name)
        self._signal_event(ParticipantJoinedEvent(remote.participant_id, remote.name))
        return link

    # ------------------------------------------------------------------
    # Peer link events
    # ------------------------------------------------------------------
    def on_local_candidate(self, link: PeerLink, candidate: IceCandidatePayload) -> None:
        """Queue a local candidate for the next batch to the link's peer."""
        self._batcher.add(link.participant_id, candidate)

    def on_remote_audio(self, link: PeerLink, track: MediaTrack) -> None:
        """Render the peer's audio at its stored volume."""
        self._spawn(self._renderer.attach(link.participant_id, track))

    def on_remote_share_started(self, link: PeerLink, track: MediaTrack) -> None:
        """Report a remote screen share."""
        logger.info("%s started sharing their screen", link.name)
        self._signal_event(RemoteShareStartedEvent(link.participant_id, link.name, track))

    def on_remote_share_ended(self, link: PeerLink) -> None:
        """Report the end of a remote screen share."""
        logger.info("%s stopped sharing their screen", link.name)
        self._signal_event(RemoteShareEndedEvent(link.participant_id, link.name))

    def on_link_departed(self, link: PeerLink, state: ConnectionState) -> None:
        """Report a participant as gone."""
        if self._links.get(link.participant_id) is not link:
            return
        logger.info("%s left the session (%s)", link.name, state.value)
        self._batcher.cancel(link.participant_id)
        self._spawn(self._renderer.detach(link.participant_id))
        if link.end_remote_share():
            self._signal_event(RemoteShareEndedEvent(link.participant_id, link.name))
        self._signal_event(ParticipantLeftEvent(link.participant_id, link.name))

    def _send_ice_batch(self, participant_id: str, candidates: list[IceCandidatePayload]) -> None:
        message = IceBatchMessage(
            **self._envelope(participant_id),
            payload=IceBatchPayload(candidates=candidates),
        )
        self._spawn(self._send_quietly(message))

    async def _broadcast_share_ended(self) -> None:
        await self._send_quietly(ScreenShareEndedMessage(**self._envelope(None)))

    async def _send_quietly(self, message: SignalingMessage) -> None:
        try:
            await self._channel.send(message)
        except SignalingDeliveryError as err:
            logger.warning("Could not deliver %s: %s", type(message).__name__, err)

    # ------------------------------------------------------------------
    # Audio
    # ------------------------------------------------------------------
    def _on_gate_change(self, source: AudioSource) -> None:
        track = self._pipeline.select(source)
        if track is None:
            return
        links = [link for link in self._links.values() if not link.closed]
        self._spawn(asyncio.gather(*(link.replace_audio_track(track) for link in links)))

    def _local_level(self) -> float | None:
        if not self._pipeline.running:
            return None
        return self._pipeline.adjusted_level

    def _peer_levels(self) -> Iterator[tuple[str, str, float]]:
        for link in self._links.values():
            if link.departed:
                continue
            level = self._renderer.level(link.participant_id)
            if level is not None:
                yield link.participant_id, link.name, level

    def _on_volume_samples(self, samples: list[VolumeSample]) -> None:
        self._signal_event(VolumeSamplesEvent(samples))

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------
    def update_settings(self, **changes: Any) -> VoiceSettings:
        """Validate and apply new settings to the live session.

        Threshold and delay changes take effect on the next monitor tick.
        """
        settings = self._settings.updated(**changes)
        previous, self._settings = self._settings, settings
        self._channel.settings = settings
        self._gate.update_settings(settings)
        self._monitor.update_settings(settings)
        self._pipeline.update_settings(settings)
        self._batcher.delay = settings.ice_batch_delay
        if settings.output_volume != previous.output_volume:
            self._renderer.set_output_volume(settings.output_volume)
        if settings.output_device != previous.output_device:
            self._renderer.set_output_device(settings.output_device)
        logger.debug("Settings updated: %s", changes)
        return settings

    def set_input_volume(self, volume: float) -> None:
        """Set the microphone gain, 0-100%."""
        self.update_settings(input_volume=volume)

    def set_output_volume(self, volume: float) -> None:
        """Set the global playback volume, 0-100%."""
        self.update_settings(output_volume=volume)

    def set_output_device(self, device: str | int | None) -> None:
        """Play remote audio on another device."""
        self.update_settings(output_device=device)

    def set_mic_threshold(self, threshold: float) -> None:
        """Set the noise gate threshold, 0-100."""
        self.update_settings(mic_threshold=threshold)

    def set_peer_volume(self, participant_id: str, volume: float) -> None:
        """Set the playback volume of one participant, 0-200%."""
        if not 0 <= volume <= MAX_PEER_VOLUME:
            raise ValueError(f"volume must be between 0 and {MAX_PEER_VOLUME}")
        link = self._links.get(participant_id)
        if link is None:
            logger.warning("No participant %s to set the volume of", participant_id)
            return
        link.volume = volume
        self._renderer.set_peer_volume(participant_id, volume)

    def set_deafened(self, deafened: bool) -> None:
        """Silence all playback, or restore it."""
        self._renderer.set_deafened(deafened)

    def set_microphone_enabled(self, enabled: bool) -> None:
        """Manually mute or unmute the microphone, taking effect immediately."""
        self._ensure_active()
        self._gate.set_muted(not enabled)

    # ------------------------------------------------------------------
    # Screen share
    # ------------------------------------------------------------------
    async def start_share(self, track: MediaTrack) -> ScreenShareHandle:
        """Share a video track with every participant."""
        self._ensure_active()
        return await self._screen_share.start_share(track)

    async def stop_share(self) -> None:
        """Stop sharing."""
        self._ensure_active()
        await self._screen_share.stop_share()

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------
    async def connection_quality(self) -> dict[str, ConnectionQuality]:
        """Classify the round-trip time to every participant."""
        result: dict[str, ConnectionQuality] = {}
        for participant_id, link in list(self._links.items()):
            if link.departed or link.closed:
                continue
            try:
                rtt = await link.connection.get_round_trip_time()
            except Exception:
                logger.exception("Could not read statistics of %s", participant_id)
                rtt = None
            result[participant_id] = classify_round_trip(rtt)
        return result

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _ensure_active(self) -> None:
        if self._state is not SessionState.ACTIVE:
            raise NotJoinedError(f"Session {self._session_id} is not active")

    def _envelope(self, to_id: str | None) -> dict[str, Any]:
        return {
            "from_id": self._participant.participant_id,
            "from_name": self._participant.name,
            "to_id": to_id,
            "created_at": self._channel.now_ms(),
        }

    def _spawn(self, awaitable: Coroutine[Any, Any, Any] | asyncio.Future[Any]) -> None:
        task = asyncio.ensure_future(awaitable)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Future[Any]) -> None:
        self._background.discard(task)  # type: ignore[arg-type]
        if task.cancelled():
            return
        if (err := task.exception()) is not None:
            logger.error("Background task failed", exc_info=err)

    def _signal_event(self, event: SessionEvent) -> None:
        self._client._signal_event(event)  # noqa: SLF001


class VoiceMeshClient:
    """Joins voice sessions as one local participant."""

    def __init__(
        self,
        relay: SignalingRelay,
        participant_id: str,
        name: str,
        *,
        settings: VoiceSettings | None = None,
        connection_factory: PeerConnectionFactory = create_aiortc_peer_connection,
        capture_factory: CaptureFactory = open_microphone,
        sink_factory: SinkFactory = SoundDeviceSink,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Create a client; nothing is acquired before join()."""
        self.relay = relay
        self.participant = Participant(participant_id, name)
        self.settings = settings or VoiceSettings()
        self.connection_factory = connection_factory
        self.capture_factory = capture_factory
        self.sink_factory = sink_factory
        self.clock = clock
        self._session: VoiceSession | None = None
        self._joining = False
        self._event_cbs: list[EventListener] = []
        self._listener_tasks: set[asyncio.Task[None]] = set()

    @property
    def session(self) -> VoiceSession | None:
        """The current session, if joined."""
        if self._session is not None and self._session.state is SessionState.IDLE:
            return None
        return self._session

    @property
    def state(self) -> SessionState:
        """Lifecycle state of the current session."""
        if self._session is None:
            return SessionState.IDLE
        return self._session.state

    async def join(
        self,
        session_id: str,
        settings: VoiceSettings | None = None,
        *,
        replace: bool = True,
    ) -> VoiceSession:
        """Join a session.

        An active session is left first unless ``replace`` is False, in which
        case AlreadyJoinedError is raised. Raises MediaAccessError if the
        microphone cannot be acquired.
        """
        if self._joining:
            raise AlreadyJoinedError("A join is already in progress")
        if self.session is not None:
            if not replace:
                raise AlreadyJoinedError(
                    f"Already in session {self.session.session_id}, leave it first"
                )
            await self.leave()
        if settings is not None:
            self.settings = settings

        self._joining = True
        session = VoiceSession(self, session_id, self.participant, self.settings)
        self._session = session
        try:
            await session._start()  # noqa: SLF001
        except BaseException:
            self._session = None
            raise
        finally:
            self._joining = False
        return session

    async def leave(self) -> None:
        """Leave the current session. Does nothing when not joined."""
        session, self._session = self._session, None
        if session is not None:
            await session.leave()

    def add_event_listener(self, callback: EventListener) -> Callable[[], None]:
        """Register a callback for session events.

        Events include:
        - A participant joined or left
        - A batch of volume samples was taken
        - A participant started or stopped sharing their screen

        Returns a function to remove the listener.
        """
        self._event_cbs.append(callback)
        return lambda: self._event_cbs.remove(callback)

    def _signal_event(self, event: SessionEvent) -> None:
        for callback in list(self._event_cbs):
            try:
                result = callback(event)
            except Exception:
                logger.exception("Error in event listener %s", callback)
                continue
            if asyncio.iscoroutine(result):
                task = asyncio.get_running_loop().create_task(result)
                self._listener_tasks.add(task)
                task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task[None]) -> None:
        self._listener_tasks.discard(task)
        if not task.cancelled() and (err := task.exception()) is not None:
            logger.error("Error in event listener", exc_info=err)

    def participants(self) -> Iterable[Participant]:
        """Remote participants with a live link in the current session."""
        if self.session is None:
            return []
        return [link.remote for link in self.session.links.values() if not link.departed]

    async def __aenter__(self) -> Self:
        """Enter the async context manager returning this instance."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        """Leave the session when leaving the async context manager."""
        await self.leave()
