"""CoWatch client session: room channel, clock, drift loop and peer mesh."""
from __future__ import annotations
import asyncio
import logging
import time
from collections import deque
from typing import Any, Optional

import websockets
from websockets.asyncio.client import ClientConnection as WebSocketConnection

from client.clock_client import ClockClient
from client.drift import DriftController, HostForwarder
from client.mesh import PeerMeshCoordinator, open_camera
from shared.config import Config
from shared.errors import CoWatchError
from shared.models import ChatMessage, Participant, SubtitleTrack, TimelineState
from shared.protocol import (
    ChatBroadcast, ChatSend, ErrorMessage, Join, Message, Pong, Presence, Ready,
    RtcPeerJoined, RtcPeerLeft, RtcPeers, SignalIn, StateUpdate, Subtitles, Welcome,
    decode_server_message,
)

logger = logging.getLogger("cowatch.client.connection")

RECONNECT_MIN_S = 0.5
RECONNECT_MAX_S = 8.0
CHAT_HISTORY = 300
# A seek event within this distance of a position we set ourselves is our echo.
SEEK_ECHO_TOLERANCE_S = 0.5
SEEK_ECHO_WINDOW_S = 3.0

_MESH_MESSAGES = (RtcPeers, RtcPeerJoined, RtcPeerLeft, SignalIn)


class ClientConnection:
    """
    One participant's membership in a room.

    Owns the clock probe, drift correction and mesh tasks; every exit path
    (close(), connection error, cancellation) tears all of them down.
    """

    def __init__(self, room_id: str, media, config: Optional[Config] = None,
                 name: Optional[str] = None, request_as_authoritative: bool = False,
                 initial_src: Optional[str] = None, camera: bool = True, mesh: bool = True):
        self.room_id = room_id
        self.media = media
        self.config = config or Config()
        self.name = name
        self.request_as_authoritative = request_as_authoritative
        self.initial_src = initial_src
        self.camera = camera
        self.mesh_enabled = mesh

        self.participant_id: Optional[str] = None
        self.timeline: Optional[TimelineState] = None
        self.presence: tuple[Participant, ...] = ()
        self.chat: deque[ChatMessage] = deque(maxlen=CHAT_HISTORY)
        self.authoritative = False
        self.mesh: Optional[PeerMeshCoordinator] = None
        self._loaded_src: Optional[str] = None
        self._ws: Optional[WebSocketConnection] = None
        self._running = False
        self._mesh_tasks: set[asyncio.Task] = set()
        self._visible = True
        self._own_seeks: list[tuple[float, float]] = []

        sync = self.config.sync
        self.clock = ClockClient(self.send, probe_interval=sync.probe_interval_s, alpha=sync.skew_alpha)
        self.drift = DriftController(media, self.clock, sync)
        self.forwarder = HostForwarder(self.send, debounce_ms=sync.forward_debounce_ms)
        media.on_pause_change = self._on_media_pause
        media.on_seek = self._on_media_seek
        media.on_rate_change = self.forwarder.on_rate

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def send(self, message: Message) -> None:
        if self._ws is None:
            logger.debug("Not connected; dropping %s", message.msg_type)
            return
        try:
            await self._ws.send(message.encode())
        except websockets.ConnectionClosed as e:
            logger.warning("Send error: %s", e)

    # ---- lifecycle ----

    async def run(self) -> None:
        """Stay joined to the room, reconnecting with backoff, until close()."""
        self._running = True
        backoff = RECONNECT_MIN_S
        try:
            while self._running:
                try:
                    await self._session()
                    backoff = RECONNECT_MIN_S
                except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
                    logger.warning("Connection lost: %s", e)
                if not self._running:
                    break
                logger.info("Reconnecting in %.1fs", backoff)
                await asyncio.sleep(backoff)
                backoff = min(RECONNECT_MAX_S, backoff * 2)
        finally:
            self._running = False
            self.forwarder.cancel()
            self.drift.stop()
            self.clock.stop()

    async def close(self) -> None:
        """Leave the room for good."""
        self._running = False
        if self.mesh is not None:
            # rtc:leave has to go out before the socket closes.
            mesh, self.mesh = self.mesh, None
            try:
                await mesh.shutdown()
            except asyncio.CancelledError:
                mesh.close_nowait()
                raise
        if self._ws:
            try:
                await self._ws.close()
                logger.info("Disconnected from room %s", self.room_id)
            except websockets.WebSocketException as e:
                logger.warning("Error during disconnect: %s", e)

    async def _session(self) -> None:
        uri = self.config.client.channel_url
        logger.info("Connecting to %s", uri)
        async with websockets.connect(uri, open_timeout=10) as ws:
            self._ws = ws
            try:
                await self.send(Join(
                    room_id=self.room_id,
                    name=self.name,
                    request_as_authoritative=self.request_as_authoritative,
                    initial_src=self.initial_src,
                ))
                self.clock.start()
                self.drift.start()
                async for raw in ws:
                    try:
                        message = decode_server_message(raw)
                    except CoWatchError as e:
                        logger.warning("Dropping frame: %s", e)
                        continue
                    try:
                        await self.handle(message)
                    except Exception as e:
                        logger.error("Message handling error: %s", e)
            finally:
                self._ws = None
                await self._end_session()

    async def _end_session(self) -> None:
        self.clock.stop()
        self.drift.stop()
        self.forwarder.cancel()
        for task in self._mesh_tasks:
            task.cancel()
        self._mesh_tasks.clear()
        if self.mesh is not None:
            mesh, self.mesh = self.mesh, None
            try:
                await mesh.shutdown()
            except asyncio.CancelledError:
                mesh.close_nowait()
                raise

    # ---- inbound ----

    async def handle(self, message: Message) -> None:
        logger.debug("Recv: %s", message.msg_type)
        if isinstance(message, Welcome):
            self.participant_id = message.participant_id
            logger.info("Joined room %s as %s", self.room_id, self.participant_id)
            if self.mesh_enabled:
                self._start_mesh(message.participant_id)

        elif isinstance(message, StateUpdate):
            self.timeline = message.state
            await self._ensure_source(message.state)
            self.drift.update_state(message.state)

        elif isinstance(message, Presence):
            self.presence = message.users
            me = next((u for u in message.users if u.id == self.participant_id), None)
            if me is not None:
                await self._set_authoritative(me.is_authoritative)

        elif isinstance(message, Pong):
            self.clock.handle_pong(message)

        elif isinstance(message, ErrorMessage):
            logger.warning("Server rejected request (%s): %s", message.code, message.message)

        elif isinstance(message, ChatBroadcast):
            self.chat.append(message.message)

        elif isinstance(message, _MESH_MESSAGES):
            if self.mesh is not None:
                self._spawn(self.mesh.handle(message))

    def _start_mesh(self, participant_id: str) -> None:
        self.mesh = PeerMeshCoordinator(
            participant_id,
            self.send,
            self.config.mesh,
            capture_factory=open_camera if self.camera else None,
        )
        self.mesh.set_visible(self._visible)
        self._spawn(self.mesh.start())

    def _spawn(self, coro: Any) -> None:
        task = asyncio.create_task(coro)
        self._mesh_tasks.add(task)
        task.add_done_callback(self._mesh_task_done)

    def _mesh_task_done(self, task: asyncio.Task) -> None:
        self._mesh_tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("Mesh task failed: %s", task.exception())

    async def _ensure_source(self, state: TimelineState) -> None:
        if not state.src or state.src == self._loaded_src:
            return
        self._loaded_src = state.src
        logger.info("Loading %s", state.src)
        if not await self.media.load(state.src):
            logger.warning("Could not load %s", state.src)
            return
        # The player reports the initial load as a seek.
        self._expect_seek(await self.media.get_position() or 0.0)
        if self.authoritative:
            await self._align_media()
        await self.send(Ready(ready=True))

    async def _set_authoritative(self, authoritative: bool) -> None:
        if authoritative == self.authoritative:
            return
        self.authoritative = authoritative
        logger.info("Role changed: %s", "authoritative" if authoritative else "follower")
        await self.drift.set_authoritative(authoritative)
        if authoritative:
            await self._align_media()
        self.forwarder.enabled = authoritative

    async def _align_media(self) -> None:
        """Put local media on the room timeline once, before we start driving it."""
        state = self.timeline
        if state is None or not state.src or state.src != self._loaded_src:
            return
        target = state.target(self.clock.server_now_ms())
        position = await self.media.get_position()
        if position is None or abs(position - target) > self.config.sync.hard_seek_min_s:
            logger.info("Aligning local media to %.2fs", target)
            self._expect_seek(target)
            await self.media.seek(target)
        paused = await self.media.is_paused()
        if state.is_playing and paused:
            await self.media.play()
        elif not state.is_playing and not paused:
            await self.media.pause()
        self.drift.note_local_transition()

    def _expect_seek(self, position: float) -> None:
        self._own_seeks.append((position, time.monotonic() + SEEK_ECHO_WINDOW_S))

    def _is_own_seek(self, position: float) -> bool:
        now = time.monotonic()
        self._own_seeks = [(p, deadline) for p, deadline in self._own_seeks if deadline > now]
        for i, (expected, _) in enumerate(self._own_seeks):
            if abs(position - expected) <= SEEK_ECHO_TOLERANCE_S:
                del self._own_seeks[i]
                return True
        return False

    # ---- local media events ----

    async def _on_media_pause(self, paused: bool) -> None:
        self.drift.note_local_transition()
        if not self.forwarder.enabled:
            return
        if paused:
            await self.forwarder.on_pause(await self.media.get_position())
        else:
            await self.forwarder.on_play()

    def _on_media_seek(self, position: float) -> None:
        self.drift.note_local_transition()
        if self._is_own_seek(position):
            logger.debug("Ignoring seek echo at %.2fs", position)
            return
        self.forwarder.on_seek(position)

    # ---- outbound ----

    async def send_chat(self, text: str) -> None:
        await self.send(ChatSend(text=text))

    async def set_subtitles(self, tracks: list[SubtitleTrack]) -> None:
        await self.send(Subtitles(tracks=tuple(tracks)))

    async def set_ready(self, ready: bool) -> None:
        await self.send(Ready(ready=ready))

    def set_visible(self, visible: bool) -> None:
        """Local reaction view shown or hidden; hidden stops camera frames."""
        self._visible = visible
        if self.mesh is not None:
            self.mesh.set_visible(visible)
