"""Tests for config loading, env overrides and validation."""
import pytest
from shared.config import Config, load_config, normalize_base_path
from shared.errors import ConfigError


def test_defaults():
    config = load_config(env={})
    assert config.server.port == 4000
    assert config.server.base_path == "/vid-ws"
    assert config.server.channel_path == "/vid-ws/ws"
    assert config.server.health_path == "/vid-ws/health"
    assert config.client.channel_url == "ws://localhost:4000/vid-ws/ws"
    assert config.mesh.initial_bitrate == 80_000
    assert config.sync.rate_band == 0.15


@pytest.mark.parametrize("raw,expected", [
    ("/vid-ws", "/vid-ws"),
    ("/vid-ws/", "/vid-ws"),
    ("vid-ws", "/vid-ws"),
    ("/", ""),
    ("", ""),
])
def test_normalize_base_path(raw, expected):
    assert normalize_base_path(raw) == expected


def test_toml_file(tmp_path):
    path = tmp_path / "cowatch.toml"
    path.write_text(
        '[server]\nport = 5050\nbase_path = "watch/"\n'
        '[sync]\nkp = 0.3\n'
        '[mesh]\ncamera_device = "/dev/video2"\n'
    )
    config = load_config(path, env={})
    assert config.server.port == 5050
    assert config.server.base_path == "/watch"
    assert config.sync.kp == 0.3
    assert config.mesh.camera_device == "/dev/video2"


def test_env_overrides(tmp_path):
    path = tmp_path / "cowatch.toml"
    path.write_text("[server]\nport = 5050\n")
    config = load_config(path, env={
        "PORT": "6000", "WS_BASE_PATH": "/x/", "ALLOW_ORIGIN": "https://watch.example",
        "COWATCH_SERVER_URL": "wss://watch.example",
    })
    assert config.server.port == 6000
    assert config.server.base_path == "/x"
    assert config.client.base_path == "/x"
    assert config.server.allow_origin == "https://watch.example"
    assert config.client.channel_url == "wss://watch.example/x/ws"


def test_empty_base_path_from_env():
    config = load_config(env={"WS_BASE_PATH": ""})
    assert config.server.channel_path == "/ws"
    assert config.server.health_path == "/health"


def test_bad_port_env():
    with pytest.raises(ConfigError):
        load_config(env={"PORT": "abc"})


def test_unknown_key(tmp_path):
    path = tmp_path / "cowatch.toml"
    path.write_text("[server]\nprot = 1\n")
    with pytest.raises(ConfigError) as exc:
        load_config(path, env={})
    assert "server.prot" in exc.value.errors[0]


def test_validate_collects_every_problem():
    config = Config()
    config.server.port = 0
    config.sync.skew_alpha = 0
    config.mesh.min_bitrate = 200_000
    config.client.server_url = "http://nope"
    errors = config.validate()
    assert len(errors) == 4


def test_load_raises_with_all_errors(tmp_path):
    path = tmp_path / "cowatch.toml"
    path.write_text("[server]\nport = 70000\n[sync]\nrate_min = 3.0\n")
    with pytest.raises(ConfigError) as exc:
        load_config(path, env={})
    assert len(exc.value.errors) == 2


def test_wrong_types_are_config_errors(tmp_path):
    path = tmp_path / "cowatch.toml"
    path.write_text(
        '[server]\nport = "4000"\nprot = 1\n'
        '[sync]\nkp = true\n'
        '[mesh]\nice_servers = ["stun:a", 3]\n'
    )
    with pytest.raises(ConfigError) as exc:
        load_config(path, env={})
    errors = exc.value.errors
    assert len(errors) == 4
    assert any("server.port" in e for e in errors)
    assert any("server.prot" in e for e in errors)
    assert any("sync.kp" in e for e in errors)
    assert any("mesh.ice_servers" in e for e in errors)


def test_section_must_be_a_table(tmp_path):
    path = tmp_path / "cowatch.toml"
    path.write_text("server = 5\n[extras]\nx = 1\n")
    with pytest.raises(ConfigError) as exc:
        load_config(path, env={})
    assert sorted(exc.value.errors) == ["'server' must be a table", "Unknown section 'extras'"]


def test_ints_accepted_for_float_fields(tmp_path):
    path = tmp_path / "cowatch.toml"
    path.write_text('[server]\nrebroadcast_interval_s = 3\nallow_origin = "https://w.example"\n')
    config = load_config(path, env={})
    assert config.server.rebroadcast_interval_s == 3.0
    assert isinstance(config.server.rebroadcast_interval_s, float)
    assert config.server.allow_origin == "https://w.example"
