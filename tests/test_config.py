from pathlib import Path
import sys

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

pytest.importorskip("yaml")

import hlscast
from hlscast import StationConfig, apply_env_overrides, load_yaml_config


def test_parse_bool_accepts_numeric_values():
    assert hlscast._parse_bool(1, False) is True
    assert hlscast._parse_bool(-1, False) is True
    assert hlscast._parse_bool(0, True) is False
    assert hlscast._parse_bool(0.0, True) is False


def test_parse_bool_falls_back_to_default_for_other_values():
    sentinel = object()
    assert hlscast._parse_bool("maybe", True) is True
    assert hlscast._parse_bool(sentinel, False) is False


@pytest.mark.parametrize("value", ["True", "true", "YES", "On", "1"])
def test_parse_bool_string_truthy(value):
    assert hlscast._parse_bool(value, False) is True


@pytest.mark.parametrize("value", ["False", "no", "OFF", "0", "  false  "])
def test_parse_bool_string_falsy(value):
    assert hlscast._parse_bool(value, True) is False


def test_parse_int_rejects_bool_and_garbage():
    assert hlscast._parse_int("0x10", 0) == 16
    assert hlscast._parse_int(True, 7) == 7
    assert hlscast._parse_int("abc", 3) == 3


def test_defaults_when_config_is_empty():
    cfg = StationConfig({})
    assert cfg.station_name == "RadioAjay"
    assert cfg.port == 3000
    assert cfg.hls_dir == Path("data/hls")
    assert cfg.db_path == Path("data/db/radioajay.db")
    assert cfg.playlist_name == "radioajay.m3u8"
    assert cfg.crash_retry_s == 2.0
    assert cfg.spawn_retry_s == 5.0
    assert cfg.live_fallback_s == 1.0
    assert cfg.recent_limit == 50
    assert cfg.monitor_enabled is True
    assert cfg.failure_threshold == 2
    assert cfg.max_failures == 6


@pytest.mark.parametrize(
    "raw",
    [
        {"server": {"port": 70000}},
        {"server": "not-a-mapping"},
        {"monitor": {"failure_threshold": 0}},
        {"monitor": {"failure_threshold": 4, "max_failures": 2}},
        {"hls": {"playlist_name": "stream.txt"}},
        {"playback": {"crash_retry_s": -1}},
        {"playback": {"recent_limit": 0}},
    ],
)
def test_invalid_values_exit_with_config_error(raw):
    with pytest.raises(SystemExit) as excinfo:
        StationConfig(raw)
    assert excinfo.value.code == 2


def test_env_overrides_take_precedence():
    raw = {"server": {"port": 8000}, "paths": {"hls_dir": "/srv/hls"}}
    merged = apply_env_overrides(raw, {"PORT": "9100", "STATION_NAME": "Test FM"})
    cfg = StationConfig(merged)
    assert cfg.port == 9100
    assert cfg.station_name == "Test FM"
    assert cfg.hls_dir == Path("/srv/hls")
    assert raw["server"]["port"] == 8000


def test_load_yaml_config_reads_sections(tmp_path: Path):
    path = tmp_path / "station.yaml"
    path.write_text(
        "station:\n"
        "  name: Night Shift\n"
        "encoder:\n"
        "  binary: /opt/ffmpeg\n"
        "  live:\n"
        "    bitrate: 192k\n"
        "monitor:\n"
        "  enabled: off\n",
        encoding="utf-8",
    )
    cfg = load_yaml_config(str(path), environ={})
    assert cfg.station_name == "Night Shift"
    assert cfg.encoder_binary == "/opt/ffmpeg"
    assert cfg.live_profile == {"bitrate": "192k"}
    assert cfg.monitor_enabled is False


def test_load_yaml_config_rejects_non_mapping(tmp_path: Path):
    path = tmp_path / "station.yaml"
    path.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(SystemExit):
        load_yaml_config(str(path), environ={})


def test_load_yaml_config_missing_file(tmp_path: Path):
    with pytest.raises(SystemExit):
        load_yaml_config(str(tmp_path / "missing.yaml"), environ={})
