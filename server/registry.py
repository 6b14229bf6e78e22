"""CoWatch room registry: authoritative timeline and presence per room."""
from __future__ import annotations
import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from typing import Callable, Iterable, Iterator, Optional

from shared.errors import BadRequestError, ForbiddenError
from shared.models import (
    ChatMessage, Participant, SubtitleTrack, TimelineState,
    ROLE_AUTHORITATIVE, ROLE_FOLLOWER, clamp_rate, now_ms,
)
from shared.protocol import (
    ChatBroadcast, Message, Pong, Presence, RtcPeerJoined, RtcPeerLeft,
    RtcPeers, SignalIn, SignalOut, StateUpdate,
)

logger = logging.getLogger("cowatch.server.registry")

DEFAULT_REBROADCAST_INTERVAL = 2.0
MAX_CHAT_LENGTH = 2000


class Outbox:
    """Delivery surface the registry writes to. Implemented by the server."""

    def send(self, participant_id: str, message: Message) -> None:
        raise NotImplementedError

    def broadcast(self, participant_ids: Iterable[str], message: Message,
                  best_effort: bool = False) -> None:
        raise NotImplementedError


class _AsyncioTimer:
    """Repeats `callback` every `interval` seconds on the running loop."""

    def __init__(self, interval: float, callback: Callable[[], None]):
        self._interval = interval
        self._callback = callback
        self._task = asyncio.get_running_loop().create_task(self._run())

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            try:
                self._callback()
            except Exception as e:
                logger.error("Rebroadcast callback failed: %s", e)

    def cancel(self) -> None:
        self._task.cancel()


def asyncio_timer_factory(room_id: str, interval: float, callback: Callable[[], None]):
    return _AsyncioTimer(interval, callback)


@dataclass
class Room:
    room_id: str
    timeline: TimelineState = field(default_factory=TimelineState)
    # Insertion order is join order; handoff picks the first entry.
    participants: dict[str, Participant] = field(default_factory=dict)
    mesh_members: dict[str, None] = field(default_factory=dict)
    rebroadcast: Optional[object] = None

    @property
    def authoritative_id(self) -> Optional[str]:
        for p in self.participants.values():
            if p.is_authoritative:
                return p.id
        return None

    def presence(self) -> Presence:
        return Presence(users=tuple(self.participants.values()))


class RoomStore:
    """In-memory room table. Rooms live as long as they have participants."""

    def __init__(self) -> None:
        self._rooms: dict[str, Room] = {}

    def get(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def create(self, room_id: str) -> Room:
        room = Room(room_id=room_id)
        self._rooms[room_id] = room
        return room

    def delete(self, room_id: str) -> None:
        self._rooms.pop(room_id, None)

    def __contains__(self, room_id: object) -> bool:
        return room_id in self._rooms

    def __len__(self) -> int:
        return len(self._rooms)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._rooms))


class RoomRegistry:
    """
    Owns every room's timeline and presence.

    Each method applies one inbound message as a single step and pushes the
    resulting broadcasts to the outbox before returning.
    """

    def __init__(
        self,
        outbox: Outbox,
        clock: Callable[[], int] = now_ms,
        timer_factory=asyncio_timer_factory,
        rebroadcast_interval: float = DEFAULT_REBROADCAST_INTERVAL,
        store: Optional[RoomStore] = None,
    ):
        self.outbox = outbox
        self.clock = clock
        self.timer_factory = timer_factory
        self.rebroadcast_interval = rebroadcast_interval
        self.store = store if store is not None else RoomStore()
        self._membership: dict[str, str] = {}  # participant_id -> room_id

    # ---- lookups ----

    def room(self, room_id: str) -> Room:
        """Return the room, creating a default one if it does not exist."""
        room = self.store.get(room_id)
        if room is None:
            room = self.store.create(room_id)
            logger.info("Room created: %s", room_id)
        return room

    def room_of(self, participant_id: str) -> Optional[Room]:
        room_id = self._membership.get(participant_id)
        if room_id is None:
            return None
        return self.room(room_id)

    def _controlled_room(self, participant_id: str) -> Optional[Room]:
        room = self.room_of(participant_id)
        if room is None:
            return None
        member = room.participants.get(participant_id)
        if member is None or not member.is_authoritative:
            raise ForbiddenError("Only the authoritative participant controls playback")
        return room

    # ---- broadcasting ----

    def _broadcast_state(self, room: Room, best_effort: bool = False) -> None:
        self.outbox.broadcast(
            list(room.participants), StateUpdate(state=room.timeline.copy()), best_effort=best_effort
        )

    def _broadcast_presence(self, room: Room) -> None:
        self.outbox.broadcast(list(room.participants), room.presence())

    def rebroadcast(self, room_id: str) -> None:
        """Periodic full-state resync; heals dropped best-effort updates."""
        room = self.store.get(room_id)
        if room is None:
            return
        self.outbox.broadcast(
            list(room.participants), StateUpdate(state=room.timeline.copy(), resync=True), best_effort=True
        )

    def _ensure_rebroadcast(self, room: Room) -> None:
        if room.rebroadcast is None:
            room_id = room.room_id
            room.rebroadcast = self.timer_factory(
                room_id, self.rebroadcast_interval, lambda: self.rebroadcast(room_id)
            )

    # ---- presence ----

    def join(
        self,
        participant_id: str,
        room_id: str,
        name: Optional[str] = None,
        request_as_authoritative: bool = False,
        initial_src: Optional[str] = None,
    ) -> TimelineState:
        if not room_id:
            raise BadRequestError("roomId required")
        if participant_id in self._membership:
            self.leave(participant_id)

        room = self.room(room_id)
        current = room.authoritative_id
        authoritative = request_as_authoritative or current is None
        if authoritative and current is not None:
            room.participants[current].role = ROLE_FOLLOWER
            logger.info("Room %s: %s takes over from %s", room_id, participant_id, current)

        member = Participant(
            id=participant_id,
            display_name=name or "",
            role=ROLE_AUTHORITATIVE if authoritative else ROLE_FOLLOWER,
        )
        room.participants[participant_id] = member
        self._membership[participant_id] = room_id

        if authoritative and initial_src and room.timeline.src is None:
            room.timeline.src = initial_src

        logger.info("Room %s: %s joined as %s (%d present)",
                    room_id, member.display_name, member.role, len(room.participants))
        self.outbox.send(participant_id, StateUpdate(state=room.timeline.copy()))
        self._broadcast_presence(room)
        self._ensure_rebroadcast(room)
        return room.timeline.copy()

    def set_ready(self, participant_id: str, ready: bool) -> None:
        room = self.room_of(participant_id)
        if room is None:
            return
        member = room.participants.get(participant_id)
        if member is None:
            return
        member.ready = bool(ready)
        self._broadcast_presence(room)

    def leave(self, participant_id: str) -> None:
        room_id = self._membership.pop(participant_id, None)
        if room_id is None:
            return
        room = self.room(room_id)
        self._leave_mesh(room, participant_id)
        departed = room.participants.pop(participant_id, None)

        if departed is not None and departed.is_authoritative and room.participants:
            successor = next(iter(room.participants.values()))
            successor.role = ROLE_AUTHORITATIVE
            logger.info("Room %s: authority handed to %s", room_id, successor.id)

        if not room.participants:
            if room.rebroadcast is not None:
                room.rebroadcast.cancel()
                room.rebroadcast = None
            self.store.delete(room_id)
            logger.info("Room removed: %s", room_id)
            return
        self._broadcast_presence(room)

    # ---- timeline ----

    def play(self, participant_id: str) -> None:
        room = self._controlled_room(participant_id)
        if room is None:
            return
        now = self.clock()
        current = room.timeline.target(now)
        room.timeline.is_playing = True
        room.timeline.rebase(now, current)
        self._broadcast_state(room)

    def pause(self, participant_id: str, at_media_time: Optional[float] = None) -> None:
        room = self._controlled_room(participant_id)
        if room is None:
            return
        now = self.clock()
        computed = room.timeline.target(now)
        room.timeline.is_playing = False
        room.timeline.rebase(now, computed if at_media_time is None else at_media_time)
        self._broadcast_state(room)

    def seek(self, participant_id: str, to_media_time: float) -> None:
        room = self._controlled_room(participant_id)
        if room is None:
            return
        room.timeline.rebase(self.clock(), max(0.0, to_media_time))
        self._broadcast_state(room, best_effort=True)

    def set_rate(self, participant_id: str, playback_rate: float) -> None:
        room = self._controlled_room(participant_id)
        if room is None:
            return
        now = self.clock()
        room.timeline.rebase(now, room.timeline.target(now))
        room.timeline.playback_rate = clamp_rate(playback_rate)
        self._broadcast_state(room, best_effort=True)

    def set_subtitles(self, participant_id: str, tracks: Iterable[SubtitleTrack]) -> None:
        room = self._controlled_room(participant_id)
        if room is None:
            return
        room.timeline.subtitle_tracks = list(tracks)
        self._broadcast_state(room)

    # ---- misc ----

    def ping(self, participant_id: str, t0: float) -> None:
        self.outbox.send(participant_id, Pong(t0=t0, t1=self.clock()))

    def chat(self, participant_id: str, text: str) -> None:
        room = self.room_of(participant_id)
        text = text.strip()
        if room is None or not text:
            return
        sender = room.participants[participant_id]
        message = ChatMessage(
            id=uuid.uuid4().hex,
            sender_id=participant_id,
            sender_name=sender.display_name,
            timestamp=self.clock(),
            text=text[:MAX_CHAT_LENGTH],
        )
        self.outbox.broadcast(list(room.participants), ChatBroadcast(message=message))

    # ---- peer mesh signaling ----

    def rtc_join(self, participant_id: str) -> None:
        room = self.room_of(participant_id)
        if room is None:
            return
        others = [pid for pid in room.mesh_members if pid != participant_id]
        room.mesh_members[participant_id] = None
        self.outbox.send(participant_id, RtcPeers(peers=tuple(others)))
        self.outbox.broadcast(others, RtcPeerJoined(peer_id=participant_id))

    def rtc_leave(self, participant_id: str) -> None:
        room = self.room_of(participant_id)
        if room is not None:
            self._leave_mesh(room, participant_id)

    def _leave_mesh(self, room: Room, participant_id: str) -> None:
        if participant_id not in room.mesh_members:
            return
        del room.mesh_members[participant_id]
        self.outbox.broadcast(list(room.mesh_members), RtcPeerLeft(peer_id=participant_id))

    def relay_signal(self, participant_id: str, signal: SignalOut) -> None:
        room = self.room_of(participant_id)
        target = signal.target_peer_id
        if room is None or target not in room.mesh_members or participant_id not in room.mesh_members:
            logger.debug("Dropping %s from %s to unknown peer %s", signal.kind, participant_id, target)
            return
        self.outbox.send(target, SignalIn(kind=signal.kind, from_peer_id=participant_id,
                                          payload=signal.payload))
