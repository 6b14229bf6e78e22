"""CoWatch shared data model: timeline, participants, chat."""
from __future__ import annotations
import time
from dataclasses import dataclass, field
from typing import Any, Optional

ROLE_AUTHORITATIVE = "authoritative"
ROLE_FOLLOWER = "follower"
VALID_ROLES = {ROLE_AUTHORITATIVE, ROLE_FOLLOWER}

RATE_MIN = 0.25
RATE_MAX = 4.0


def now_ms() -> int:
    return int(time.time() * 1000)


def clamp_rate(rate: float) -> float:
    return max(RATE_MIN, min(RATE_MAX, rate))


@dataclass
class SubtitleTrack:
    src: str = ""
    label: str = ""
    lang: Optional[str] = None
    default: bool = False

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"src": self.src, "label": self.label, "default": self.default}
        if self.lang:
            data["lang"] = self.lang
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "SubtitleTrack":
        return cls(
            src=str(raw.get("src", "")),
            label=str(raw.get("label", "")),
            lang=raw.get("lang"),
            default=bool(raw.get("default", False)),
        )


@dataclass
class TimelineState:
    """
    Authoritative playback timeline.

    (base_media_time, base_server_time) is a reference pair: the correct
    position at server time `now` is given by target(now). Every mutation goes
    through rebase() so both fields change together.
    """
    is_playing: bool = False
    base_media_time: float = 0.0
    base_server_time: int = field(default_factory=now_ms)
    playback_rate: float = 1.0
    src: Optional[str] = None
    subtitle_tracks: list[SubtitleTrack] = field(default_factory=list)

    def target(self, now: int) -> float:
        if not self.is_playing:
            return self.base_media_time
        elapsed = (now - self.base_server_time) / 1000.0
        return self.base_media_time + elapsed * self.playback_rate

    def rebase(self, now: int, media_time: float) -> None:
        self.base_media_time = max(0.0, float(media_time))
        self.base_server_time = int(now)

    def copy(self) -> "TimelineState":
        return TimelineState(
            is_playing=self.is_playing,
            base_media_time=self.base_media_time,
            base_server_time=self.base_server_time,
            playback_rate=self.playback_rate,
            src=self.src,
            subtitle_tracks=list(self.subtitle_tracks),
        )

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "isPlaying": self.is_playing,
            "baseMediaTime": self.base_media_time,
            "baseServerTime": self.base_server_time,
            "playbackRate": self.playback_rate,
            "subtitles": [t.to_dict() for t in self.subtitle_tracks],
        }
        if self.src is not None:
            data["src"] = self.src
        return data

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "TimelineState":
        return cls(
            is_playing=bool(raw.get("isPlaying", False)),
            base_media_time=max(0.0, float(raw.get("baseMediaTime", 0.0))),
            base_server_time=int(raw.get("baseServerTime", 0)),
            playback_rate=clamp_rate(float(raw.get("playbackRate", 1.0))),
            src=raw.get("src"),
            subtitle_tracks=[SubtitleTrack.from_dict(t) for t in raw.get("subtitles") or []],
        )


@dataclass
class Participant:
    id: str
    display_name: str = ""
    role: str = ROLE_FOLLOWER
    ready: bool = False

    def __post_init__(self) -> None:
        if not self.display_name:
            self.display_name = f"user-{self.id[:4]}"

    @property
    def is_authoritative(self) -> bool:
        return self.role == ROLE_AUTHORITATIVE

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.display_name, "role": self.role, "ready": self.ready}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Participant":
        role = raw.get("role", ROLE_FOLLOWER)
        return cls(
            id=str(raw.get("id", "")),
            display_name=str(raw.get("name", "")),
            role=role if role in VALID_ROLES else ROLE_FOLLOWER,
            ready=bool(raw.get("ready", False)),
        )


@dataclass
class ChatMessage:
    id: str
    sender_id: str
    sender_name: str
    timestamp: int
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "senderId": self.sender_id,
            "senderName": self.sender_name,
            "timestamp": self.timestamp,
            "text": self.text,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "ChatMessage":
        return cls(
            id=str(raw.get("id", "")),
            sender_id=str(raw.get("senderId", "")),
            sender_name=str(raw.get("senderName", "")),
            timestamp=int(raw.get("timestamp", 0)),
            text=str(raw.get("text", "")),
        )
