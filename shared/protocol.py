"""CoWatch network protocol definitions."""
from __future__ import annotations
import json
import math
import time
from dataclasses import dataclass, field
from typing import Any, ClassVar, Optional

from shared.errors import ProtocolError, UnknownMessageError
from shared.models import ChatMessage, Participant, SubtitleTrack, TimelineState


def _now_ms() -> int:
    return int(time.time() * 1000)


def make_envelope(msg_type: str, payload: dict[str, Any]) -> str:
    return json.dumps({"type": msg_type, "ts_utc_ms": _now_ms(), "payload": payload})


def parse_envelope(raw: str | bytes) -> tuple[str, int, dict[str, Any]]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ProtocolError(f"Malformed frame: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise ProtocolError("Frame has no message type")
    payload = data.get("payload") or {}
    if not isinstance(payload, dict):
        raise ProtocolError("Payload must be an object")
    return data["type"], data.get("ts_utc_ms", 0), payload


# ---- Client → Server message types ----
MSG_JOIN = "join"
MSG_PLAY = "play"
MSG_PAUSE = "pause"
MSG_SEEK = "seek"
MSG_RATE = "rate"
MSG_READY = "ready"
MSG_PING = "ping"
MSG_SUBTITLES = "subtitles"
MSG_CHAT = "chat"
MSG_RTC_JOIN = "rtc:join"
MSG_RTC_LEAVE = "rtc:leave"
MSG_RTC_OFFER = "rtc:offer"
MSG_RTC_ANSWER = "rtc:answer"
MSG_RTC_ICE = "rtc:ice"

# ---- Server → Client message types ----
MSG_WELCOME = "welcome"
MSG_STATE = "state"
MSG_RESYNC = "resync"
MSG_PRESENCE = "presence"
MSG_PONG = "pong"
MSG_ERROR = "error"
MSG_RTC_PEERS = "rtc:peers"
MSG_RTC_PEER_JOINED = "rtc:peer-joined"
MSG_RTC_PEER_LEFT = "rtc:peer-left"

SIGNAL_TYPES = {MSG_RTC_OFFER, MSG_RTC_ANSWER, MSG_RTC_ICE}

# Droppable, latest-value-wins. Everything else is reliable.
BEST_EFFORT_TYPES = {MSG_SEEK, MSG_RATE, MSG_RESYNC}


def is_best_effort(msg_type: str) -> bool:
    return msg_type in BEST_EFFORT_TYPES


def _number(payload: dict[str, Any], key: str, required: bool = True) -> Optional[float]:
    value = payload.get(key)
    if value is None and not required:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ProtocolError(f"'{key}' must be a number")
    # json.loads accepts Infinity and NaN.
    if not math.isfinite(value):
        raise ProtocolError(f"'{key}' must be finite")
    return float(value)


def _target(payload: dict[str, Any]) -> str:
    target = payload.get("targetPeerId")
    if not isinstance(target, str) or not target:
        raise ProtocolError("'targetPeerId' is required")
    return target


class Message:
    """Base for every tagged wire message."""

    TYPE: ClassVar[str] = ""

    @property
    def msg_type(self) -> str:
        return self.TYPE

    def to_payload(self) -> dict[str, Any]:
        return {}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Message":
        return cls()

    def encode(self) -> str:
        return make_envelope(self.msg_type, self.to_payload())


# ---- Client → Server variants ----

@dataclass(frozen=True)
class Join(Message):
    TYPE: ClassVar[str] = MSG_JOIN
    room_id: str = ""
    name: Optional[str] = None
    request_as_authoritative: bool = False
    initial_src: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"roomId": self.room_id,
                                   "requestAsAuthoritative": self.request_as_authoritative}
        if self.name:
            payload["name"] = self.name
        if self.initial_src:
            payload["initialSrc"] = self.initial_src
        return payload

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Join":
        room_id = payload.get("roomId")
        src = payload.get("initialSrc")
        name = payload.get("name")
        return cls(
            room_id=room_id if isinstance(room_id, str) else "",
            name=name if isinstance(name, str) else None,
            request_as_authoritative=bool(payload.get("requestAsAuthoritative", False)),
            initial_src=src if isinstance(src, str) else None,
        )


@dataclass(frozen=True)
class Play(Message):
    TYPE: ClassVar[str] = MSG_PLAY


@dataclass(frozen=True)
class Pause(Message):
    TYPE: ClassVar[str] = MSG_PAUSE
    at_media_time: Optional[float] = None

    def to_payload(self) -> dict[str, Any]:
        return {} if self.at_media_time is None else {"atMediaTime": self.at_media_time}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Pause":
        return cls(at_media_time=_number(payload, "atMediaTime", required=False))


@dataclass(frozen=True)
class Seek(Message):
    TYPE: ClassVar[str] = MSG_SEEK
    to_media_time: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        return {"toMediaTime": self.to_media_time}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Seek":
        return cls(to_media_time=_number(payload, "toMediaTime"))


@dataclass(frozen=True)
class Rate(Message):
    TYPE: ClassVar[str] = MSG_RATE
    playback_rate: float = 1.0

    def to_payload(self) -> dict[str, Any]:
        return {"playbackRate": self.playback_rate}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Rate":
        return cls(playback_rate=_number(payload, "playbackRate"))


@dataclass(frozen=True)
class Ready(Message):
    TYPE: ClassVar[str] = MSG_READY
    ready: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {"ready": self.ready}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Ready":
        return cls(ready=bool(payload.get("ready", False)))


@dataclass(frozen=True)
class Ping(Message):
    TYPE: ClassVar[str] = MSG_PING
    t0: float = 0.0

    def to_payload(self) -> dict[str, Any]:
        return {"t0": self.t0}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Ping":
        return cls(t0=_number(payload, "t0"))


@dataclass(frozen=True)
class Subtitles(Message):
    TYPE: ClassVar[str] = MSG_SUBTITLES
    tracks: tuple[SubtitleTrack, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {"subtitles": [t.to_dict() for t in self.tracks]}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Subtitles":
        raw = payload.get("subtitles") or []
        if not isinstance(raw, list) or not all(isinstance(t, dict) for t in raw):
            raise ProtocolError("'subtitles' must be a list of objects")
        return cls(tracks=tuple(SubtitleTrack.from_dict(t) for t in raw))


@dataclass(frozen=True)
class ChatSend(Message):
    TYPE: ClassVar[str] = MSG_CHAT
    text: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"text": self.text}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChatSend":
        return cls(text=str(payload.get("text", "")))


@dataclass(frozen=True)
class RtcJoin(Message):
    TYPE: ClassVar[str] = MSG_RTC_JOIN


@dataclass(frozen=True)
class RtcLeave(Message):
    TYPE: ClassVar[str] = MSG_RTC_LEAVE


@dataclass(frozen=True)
class SignalOut(Message):
    """Offer, answer or ICE candidate addressed to one peer."""
    kind: str = MSG_RTC_OFFER
    target_peer_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def msg_type(self) -> str:
        return self.kind

    def to_payload(self) -> dict[str, Any]:
        return {"targetPeerId": self.target_peer_id, "payload": self.payload}


def _signal_out(kind: str):
    def build(payload: dict[str, Any]) -> SignalOut:
        body = payload.get("payload")
        if not isinstance(body, dict):
            raise ProtocolError("'payload' must be an object")
        return SignalOut(kind=kind, target_peer_id=_target(payload), payload=body)
    return build


CLIENT_MESSAGES = {
    MSG_JOIN: Join.from_payload,
    MSG_PLAY: Play.from_payload,
    MSG_PAUSE: Pause.from_payload,
    MSG_SEEK: Seek.from_payload,
    MSG_RATE: Rate.from_payload,
    MSG_READY: Ready.from_payload,
    MSG_PING: Ping.from_payload,
    MSG_SUBTITLES: Subtitles.from_payload,
    MSG_CHAT: ChatSend.from_payload,
    MSG_RTC_JOIN: RtcJoin.from_payload,
    MSG_RTC_LEAVE: RtcLeave.from_payload,
    MSG_RTC_OFFER: _signal_out(MSG_RTC_OFFER),
    MSG_RTC_ANSWER: _signal_out(MSG_RTC_ANSWER),
    MSG_RTC_ICE: _signal_out(MSG_RTC_ICE),
}


# ---- Server → Client variants ----

@dataclass(frozen=True)
class Welcome(Message):
    TYPE: ClassVar[str] = MSG_WELCOME
    participant_id: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"participantId": self.participant_id}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Welcome":
        return cls(participant_id=str(payload.get("participantId", "")))


@dataclass(frozen=True)
class StateUpdate(Message):
    """Full timeline replacement; `resync` marks the periodic re-broadcast."""
    state: TimelineState = field(default_factory=TimelineState)
    resync: bool = False

    @property
    def msg_type(self) -> str:
        return MSG_RESYNC if self.resync else MSG_STATE

    def to_payload(self) -> dict[str, Any]:
        return self.state.to_dict()


@dataclass(frozen=True)
class Presence(Message):
    TYPE: ClassVar[str] = MSG_PRESENCE
    users: tuple[Participant, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {"users": [u.to_dict() for u in self.users]}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Presence":
        return cls(users=tuple(Participant.from_dict(u) for u in payload.get("users") or []))


@dataclass(frozen=True)
class Pong(Message):
    TYPE: ClassVar[str] = MSG_PONG
    t0: float = 0.0
    t1: int = 0

    def to_payload(self) -> dict[str, Any]:
        return {"t0": self.t0, "t1": self.t1}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "Pong":
        return cls(t0=_number(payload, "t0"), t1=int(_number(payload, "t1")))


@dataclass(frozen=True)
class ErrorMessage(Message):
    TYPE: ClassVar[str] = MSG_ERROR
    code: str = "error"
    message: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ErrorMessage":
        return cls(code=str(payload.get("code", "error")), message=str(payload.get("message", "")))


@dataclass(frozen=True)
class ChatBroadcast(Message):
    TYPE: ClassVar[str] = MSG_CHAT
    message: ChatMessage = None  # type: ignore[assignment]

    def to_payload(self) -> dict[str, Any]:
        return self.message.to_dict()

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ChatBroadcast":
        return cls(message=ChatMessage.from_dict(payload))


@dataclass(frozen=True)
class RtcPeers(Message):
    TYPE: ClassVar[str] = MSG_RTC_PEERS
    peers: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {"peers": list(self.peers)}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RtcPeers":
        return cls(peers=tuple(str(p) for p in payload.get("peers") or []))


@dataclass(frozen=True)
class RtcPeerJoined(Message):
    TYPE: ClassVar[str] = MSG_RTC_PEER_JOINED
    peer_id: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"peerId": self.peer_id}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RtcPeerJoined":
        return cls(peer_id=str(payload.get("peerId", "")))


@dataclass(frozen=True)
class RtcPeerLeft(Message):
    TYPE: ClassVar[str] = MSG_RTC_PEER_LEFT
    peer_id: str = ""

    def to_payload(self) -> dict[str, Any]:
        return {"peerId": self.peer_id}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "RtcPeerLeft":
        return cls(peer_id=str(payload.get("peerId", "")))


@dataclass(frozen=True)
class SignalIn(Message):
    """Relayed offer, answer or ICE candidate, tagged with its sender."""
    kind: str = MSG_RTC_OFFER
    from_peer_id: str = ""
    payload: dict[str, Any] = field(default_factory=dict)

    @property
    def msg_type(self) -> str:
        return self.kind

    def to_payload(self) -> dict[str, Any]:
        return {"fromPeerId": self.from_peer_id, "payload": self.payload}


def _signal_in(kind: str):
    def build(payload: dict[str, Any]) -> SignalIn:
        body = payload.get("payload")
        sender = payload.get("fromPeerId")
        if not isinstance(body, dict) or not isinstance(sender, str):
            raise ProtocolError("Signal requires 'fromPeerId' and 'payload'")
        return SignalIn(kind=kind, from_peer_id=sender, payload=body)
    return build


def _state(resync: bool):
    def build(payload: dict[str, Any]) -> StateUpdate:
        try:
            return StateUpdate(state=TimelineState.from_dict(payload), resync=resync)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"Malformed timeline state: {e}") from e
    return build


SERVER_MESSAGES = {
    MSG_WELCOME: Welcome.from_payload,
    MSG_STATE: _state(False),
    MSG_RESYNC: _state(True),
    MSG_PRESENCE: Presence.from_payload,
    MSG_PONG: Pong.from_payload,
    MSG_ERROR: ErrorMessage.from_payload,
    MSG_CHAT: ChatBroadcast.from_payload,
    MSG_RTC_PEERS: RtcPeers.from_payload,
    MSG_RTC_PEER_JOINED: RtcPeerJoined.from_payload,
    MSG_RTC_PEER_LEFT: RtcPeerLeft.from_payload,
    MSG_RTC_OFFER: _signal_in(MSG_RTC_OFFER),
    MSG_RTC_ANSWER: _signal_in(MSG_RTC_ANSWER),
    MSG_RTC_ICE: _signal_in(MSG_RTC_ICE),
}


def _decode(raw: str | bytes, table: dict) -> Message:
    msg_type, _, payload = parse_envelope(raw)
    build = table.get(msg_type)
    if build is None:
        raise UnknownMessageError(msg_type)
    return build(payload)


def decode_client_message(raw: str | bytes) -> Message:
    """Parse a client → server frame into its typed variant."""
    return _decode(raw, CLIENT_MESSAGES)


def decode_server_message(raw: str | bytes) -> Message:
    """Parse a server → client frame into its typed variant."""
    return _decode(raw, SERVER_MESSAGES)
