"""CoWatch configuration file (TOML) parsing and validation."""
from __future__ import annotations
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional, Union, get_args, get_origin, get_type_hints

from shared.errors import ConfigError

SECTIONS = ("server", "sync", "mesh", "client")

ENV_PORT = "PORT"
ENV_BASE_PATH = "WS_BASE_PATH"
ENV_ALLOW_ORIGIN = "ALLOW_ORIGIN"
ENV_SERVER_URL = "COWATCH_SERVER_URL"


def normalize_base_path(raw: str) -> str:
    """'/vid-ws/' -> '/vid-ws', 'x' -> '/x', '' or '/' -> ''."""
    path = (raw or "").strip().rstrip("/")
    if path and not path.startswith("/"):
        path = "/" + path
    return path


@dataclass
class ServerConfig:
    host: str = "0.0.0.0"
    port: int = 4000
    base_path: str = "/vid-ws"
    allow_origin: Optional[str] = None
    rebroadcast_interval_s: float = 2.0
    log_dir: str = "logs"

    @property
    def channel_path(self) -> str:
        return f"{self.base_path}/ws"

    @property
    def health_path(self) -> str:
        return f"{self.base_path}/health"


@dataclass
class SyncConfig:
    probe_interval_s: float = 2.0
    skew_alpha: float = 0.2
    tick_interval_s: float = 0.4
    kp: float = 0.25
    ki: float = 0.05
    integral_limit: float = 2.0
    rate_band: float = 0.15
    rate_min: float = 0.5
    rate_max: float = 2.0
    rate_epsilon: float = 0.01
    hard_seek_min_s: float = 1.2
    guard_min_ms: float = 300.0
    paused_seek_tolerance_s: float = 0.25
    forward_debounce_ms: int = 130


@dataclass
class MeshConfig:
    ice_servers: list[str] = field(default_factory=lambda: ["stun:stun.l.google.com:19302"])
    camera_device: str = "/dev/video0"
    camera_format: str = "v4l2"
    width: int = 320
    height: int = 180
    framerate: int = 10
    initial_bitrate: int = 80_000
    min_bitrate: int = 40_000
    max_bitrate: int = 120_000
    stats_interval_s: float = 2.0
    loss_threshold: float = 0.02
    rtt_threshold_ms: float = 350.0


@dataclass
class ClientConfig:
    server_url: str = "ws://localhost:4000"
    base_path: str = "/vid-ws"
    mpv_path: str = "mpv"

    @property
    def channel_url(self) -> str:
        return f"{self.server_url.rstrip('/')}{self.base_path}/ws"


@dataclass
class Config:
    server: ServerConfig = field(default_factory=ServerConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    mesh: MeshConfig = field(default_factory=MeshConfig)
    client: ClientConfig = field(default_factory=ClientConfig)

    def validate(self) -> list[str]:
        errors = []
        if not (0 < self.server.port < 65536):
            errors.append(f"server.port out of range: {self.server.port}")
        if self.server.rebroadcast_interval_s <= 0:
            errors.append("server.rebroadcast_interval_s must be positive")
        if not (0 < self.sync.skew_alpha <= 1):
            errors.append(f"sync.skew_alpha must be in (0, 1]: {self.sync.skew_alpha}")
        if self.sync.probe_interval_s <= 0 or self.sync.tick_interval_s <= 0:
            errors.append("sync intervals must be positive")
        if self.sync.rate_min > self.sync.rate_max:
            errors.append("sync.rate_min must not exceed sync.rate_max")
        if self.sync.rate_band < 0:
            errors.append("sync.rate_band must not be negative")
        if not (0 < self.mesh.min_bitrate <= self.mesh.initial_bitrate <= self.mesh.max_bitrate):
            errors.append("mesh bitrates must satisfy 0 < min <= initial <= max")
        if self.mesh.width <= 0 or self.mesh.height <= 0 or self.mesh.framerate <= 0:
            errors.append("mesh capture size and framerate must be positive")
        if not self.client.server_url.startswith(("ws://", "wss://")):
            errors.append(f"client.server_url must be a ws:// or wss:// URL: {self.client.server_url}")
        return errors


def _check_value(expected: Any, value: Any) -> tuple[bool, Any]:
    """(ok, coerced) for a TOML value against a dataclass field type."""
    origin = get_origin(expected)
    if origin is Union:
        for option in get_args(expected):
            if option is type(None):
                if value is None:
                    return True, None
                continue
            ok, coerced = _check_value(option, value)
            if ok:
                return True, coerced
        return False, value
    if origin is list:
        (item_type,) = get_args(expected)
        if not isinstance(value, list):
            return False, value
        items = [_check_value(item_type, item) for item in value]
        if not all(ok for ok, _ in items):
            return False, value
        return True, [coerced for _, coerced in items]
    if isinstance(value, bool) and expected is not bool:
        return False, value
    if expected is float and isinstance(value, int):
        return True, float(value)
    return isinstance(value, expected), value


def _type_name(expected: Any) -> str:
    return getattr(expected, "__name__", None) or str(expected).replace("typing.", "")


def _fill(target: Any, raw: Any, section: str) -> list[str]:
    if not isinstance(raw, dict):
        return [f"'{section}' must be a table"]
    errors = []
    hints = get_type_hints(type(target))
    for key, value in raw.items():
        if key not in hints:
            errors.append(f"Unknown key '{section}.{key}'")
            continue
        ok, coerced = _check_value(hints[key], value)
        if not ok:
            errors.append(f"{section}.{key} must be {_type_name(hints[key])}: {value!r}")
            continue
        setattr(target, key, coerced)
    return errors


def _apply_env(config: Config, env: dict[str, str]) -> None:
    if env.get(ENV_PORT):
        try:
            config.server.port = int(env[ENV_PORT])
        except ValueError:
            raise ConfigError([f"{ENV_PORT} is not an integer: {env[ENV_PORT]!r}"])
    if ENV_BASE_PATH in env:
        config.server.base_path = env[ENV_BASE_PATH]
        config.client.base_path = env[ENV_BASE_PATH]
    if env.get(ENV_ALLOW_ORIGIN):
        config.server.allow_origin = env[ENV_ALLOW_ORIGIN]
    if env.get(ENV_SERVER_URL):
        config.client.server_url = env[ENV_SERVER_URL]


def load_config(path: Optional[Path] = None, env: Optional[dict[str, str]] = None) -> Config:
    """Load a cowatch.toml file (optional) and apply environment overrides."""
    config = Config()
    if path is not None:
        with open(path, "rb") as f:
            data = tomllib.load(f)
        errors = [f"Unknown section '{name}'" for name in data if name not in SECTIONS]
        for section in SECTIONS:
            errors.extend(_fill(getattr(config, section), data.get(section, {}), section))
        if errors:
            # Later checks assume well-typed values.
            raise ConfigError(errors)
    _apply_env(config, dict(os.environ) if env is None else env)
    config.server.base_path = normalize_base_path(config.server.base_path)
    config.client.base_path = normalize_base_path(config.client.base_path)
    errors = config.validate()
    if errors:
        raise ConfigError(errors)
    return config
