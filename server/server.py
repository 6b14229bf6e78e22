"""CoWatch room WebSocket server."""
from __future__ import annotations
import logging
import uuid
from http import HTTPStatus
from typing import Callable, Iterable, Optional

import websockets
from websockets.asyncio.server import ServerConnection
from websockets.http11 import Request, Response

from server.registry import Outbox, RoomRegistry
from shared.config import ServerConfig
from shared.errors import CoWatchError
from shared.models import now_ms
from shared.protocol import (
    ChatSend, ErrorMessage, Join, Message, Pause, Ping, Play, Rate, Ready,
    RtcJoin, RtcLeave, Seek, SignalOut, Subtitles, Welcome,
    decode_client_message,
)

logger = logging.getLogger("cowatch.server")


class RoomServer(Outbox):
    """
    Accepts participant connections and feeds their messages to the registry.
    One connection is one participant; every inbound frame is applied in full
    before the next one is read.
    """

    def __init__(self, config: Optional[ServerConfig] = None, clock: Callable[[], int] = now_ms):
        self.config = config or ServerConfig()
        self.registry = RoomRegistry(
            self, clock=clock, rebroadcast_interval=self.config.rebroadcast_interval_s
        )
        self._sessions: dict[str, ServerConnection] = {}
        self._ws_server = None

    @property
    def sessions(self) -> dict[str, ServerConnection]:
        return self._sessions

    @property
    def port(self) -> int:
        """Bound port (differs from config when started with port 0)."""
        if self._ws_server is None:
            return self.config.port
        return self._ws_server.sockets[0].getsockname()[1]

    async def start(self) -> None:
        origins = [self.config.allow_origin] if self.config.allow_origin else None
        self._ws_server = await websockets.serve(
            self._handle_connection,
            self.config.host,
            self.config.port,
            process_request=self._process_request,
            origins=origins,
        )
        logger.info("Room server listening on %s:%d path=%s",
                    self.config.host, self.port, self.config.channel_path)

    async def stop(self) -> None:
        if self._ws_server:
            self._ws_server.close()
            await self._ws_server.wait_closed()
            self._ws_server = None

    def _process_request(self, connection: ServerConnection, request: Request) -> Optional[Response]:
        path = request.path.split("?", 1)[0]
        if path == self.config.health_path:
            return connection.respond(HTTPStatus.OK, "ok\n")
        if path != self.config.channel_path:
            return connection.respond(HTTPStatus.NOT_FOUND, "not found\n")
        return None

    async def _handle_connection(self, ws: ServerConnection) -> None:
        participant_id = uuid.uuid4().hex
        self._sessions[participant_id] = ws
        logger.info("Connected: %s from %s", participant_id, ws.remote_address)
        self.send(participant_id, Welcome(participant_id=participant_id))
        try:
            async for raw in ws:
                self.dispatch(participant_id, raw)
        except websockets.exceptions.ConnectionClosed:
            pass
        finally:
            del self._sessions[participant_id]
            self.registry.leave(participant_id)
            logger.info("Disconnected: %s", participant_id)

    def dispatch(self, participant_id: str, raw: str | bytes) -> None:
        try:
            self._apply(participant_id, decode_client_message(raw))
        except CoWatchError as e:
            logger.warning("Rejected message from %s: %s", participant_id, e)
            self.send(participant_id, ErrorMessage(code=e.code, message=str(e)))

    def _apply(self, participant_id: str, msg: Message) -> None:
        registry = self.registry
        if isinstance(msg, Join):
            registry.join(participant_id, msg.room_id, msg.name,
                          msg.request_as_authoritative, msg.initial_src)
        elif isinstance(msg, Play):
            registry.play(participant_id)
        elif isinstance(msg, Pause):
            registry.pause(participant_id, msg.at_media_time)
        elif isinstance(msg, Seek):
            registry.seek(participant_id, msg.to_media_time)
        elif isinstance(msg, Rate):
            registry.set_rate(participant_id, msg.playback_rate)
        elif isinstance(msg, Ready):
            registry.set_ready(participant_id, msg.ready)
        elif isinstance(msg, Ping):
            registry.ping(participant_id, msg.t0)
        elif isinstance(msg, Subtitles):
            registry.set_subtitles(participant_id, msg.tracks)
        elif isinstance(msg, ChatSend):
            registry.chat(participant_id, msg.text)
        elif isinstance(msg, RtcJoin):
            registry.rtc_join(participant_id)
        elif isinstance(msg, RtcLeave):
            registry.rtc_leave(participant_id)
        elif isinstance(msg, SignalOut):
            registry.relay_signal(participant_id, msg)

    # ---- Outbox ----

    def send(self, participant_id: str, message: Message) -> None:
        ws = self._sessions.get(participant_id)
        if ws is not None:
            websockets.broadcast([ws], message.encode())

    def broadcast(self, participant_ids: Iterable[str], message: Message,
                  best_effort: bool = False) -> None:
        targets = [self._sessions[pid] for pid in participant_ids if pid in self._sessions]
        if best_effort:
            # Latest value wins: skip anyone still draining an earlier frame.
            targets = [ws for ws in targets if not _is_backlogged(ws)]
        if targets:
            websockets.broadcast(targets, message.encode())


def _is_backlogged(ws: ServerConnection) -> bool:
    transport = getattr(ws, "transport", None)
    if transport is None:
        return False
    return transport.get_write_buffer_size() > 0
