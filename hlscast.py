#!/usr/bin/env python3
"""
HLS internet radio station

Usage:
    python3 hlscast.py --config cfg/station.yaml
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

# ---------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------


def _resolve_log_level(value: Optional[str]) -> int:
    """Resolve log level from string or numeric value."""
    if not value:
        return logging.INFO
    raw = value.strip()
    if raw.isdigit():
        return int(raw)
    return getattr(logging, raw.upper(), logging.INFO)


LOG_LEVEL = _resolve_log_level(os.getenv("LOG_LEVEL", "INFO"))

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("station")

DEFAULT_CFG_PATH: str = os.path.join(os.path.dirname(__file__), "cfg", "station.yaml")

# Environment variable -> (section, key)
ENV_OVERRIDES: Dict[str, tuple] = {
    "PORT": ("server", "port"),
    "HOST": ("server", "host"),
    "MEDIA_DIR": ("paths", "media_dir"),
    "HLS_DIR": ("paths", "hls_dir"),
    "DB_PATH": ("paths", "db_path"),
    "FFMPEG_BIN": ("encoder", "binary"),
    "STATION_NAME": ("station", "name"),
}

# ---------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------


def _parse_int(value: Any, default: int) -> int:
    """Parse an int from a value or return a default on failure."""
    try:
        if isinstance(value, bool):
            return default
        if isinstance(value, str):
            return int(value, 0)
        return int(value)  # type: ignore[arg-type]
    except Exception:
        return default


def _parse_bool(value: Any, default: bool) -> bool:
    """Parse a bool from bool/str inputs; fall back to default."""
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        v = value.strip().lower()
        if v in {"1", "true", "yes", "on"}:
            return True
        if v in {"0", "false", "no", "off"}:
            return False
    return default


def _parse_float(value: Any, default: Optional[float] = None) -> Optional[float]:
    """Parse a float or return a default when conversion fails."""
    try:
        if isinstance(value, bool):
            return default
        return float(value)
    except Exception:
        return default


def _parse_str(value: Any, default: str = "") -> str:
    """Coerce simple scalar values to string, otherwise return default."""
    return str(value) if isinstance(value, (str, int, float)) else default


def _enforce(cond: bool, msg: str) -> None:
    """Abort execution with a config error when a condition fails."""
    if not cond:
        logger.critical("Config error: %s", msg)
        raise SystemExit(2)


def _section(raw: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = raw.get(name, {})
    if value is None:
        return {}
    _enforce(isinstance(value, dict), f"{name} must be a mapping")
    return value


# ---------------------------------------------------------------------
# Config model
# ---------------------------------------------------------------------


class StationConfig:
    """Parsed, validated station configuration."""

    station_name: str

    # Server
    host: str
    port: int

    # Paths
    media_dir: Path
    hls_dir: Path
    db_path: Path

    # HLS output
    playlist_name: str
    segment_pattern: str

    # Encoder
    encoder_binary: str
    playlist_profile: Dict[str, Any]
    live_profile: Dict[str, Any]

    # Playback
    crash_retry_s: float
    spawn_retry_s: float
    live_fallback_s: float
    recent_limit: int

    # Monitor
    monitor_enabled: bool
    monitor_interval_s: float
    stale_after_s: float
    failure_threshold: int
    max_failures: int
    recovery_wait_s: float

    def __init__(self, raw: Optional[Dict[str, Any]] = None) -> None:
        raw = {} if raw is None else raw
        _enforce(isinstance(raw, dict), "root must be a mapping")

        station = _section(raw, "station")
        server = _section(raw, "server")
        paths = _section(raw, "paths")
        hls = _section(raw, "hls")
        encoder = _section(raw, "encoder")
        playback = _section(raw, "playback")
        monitor = _section(raw, "monitor")

        self.station_name = _parse_str(station.get("name"), "RadioAjay").strip()
        _enforce(bool(self.station_name), "station.name must not be empty")

        self.host = _parse_str(server.get("host"), "0.0.0.0")
        self.port = _parse_int(server.get("port", 3000), -1)
        _enforce(0 < self.port < 65536, "server.port must be in 1..65535")

        self.media_dir = Path(_parse_str(paths.get("media_dir"), "data/media"))
        self.hls_dir = Path(_parse_str(paths.get("hls_dir"), "data/hls"))
        self.db_path = Path(_parse_str(paths.get("db_path"), "data/db/radioajay.db"))

        self.playlist_name = _parse_str(hls.get("playlist_name"), "radioajay.m3u8")
        _enforce(
            self.playlist_name.endswith(".m3u8") and "/" not in self.playlist_name,
            "hls.playlist_name must be a .m3u8 file name",
        )
        self.segment_pattern = _parse_str(hls.get("segment_pattern"), "segment_%03d.ts")
        _enforce(
            self.segment_pattern.endswith(".ts") and "%" in self.segment_pattern,
            "hls.segment_pattern must be a numbered .ts pattern",
        )

        self.encoder_binary = _parse_str(encoder.get("binary"), "ffmpeg").strip()
        _enforce(bool(self.encoder_binary), "encoder.binary must not be empty")
        self.playlist_profile = dict(_section(encoder, "playlist"))
        self.live_profile = dict(_section(encoder, "live"))

        self.crash_retry_s = self._seconds(playback, "crash_retry_s", 2.0)
        self.spawn_retry_s = self._seconds(playback, "spawn_retry_s", 5.0)
        self.live_fallback_s = self._seconds(playback, "live_fallback_s", 1.0)
        self.recent_limit = _parse_int(playback.get("recent_limit", 50), 0)
        _enforce(self.recent_limit > 0, "playback.recent_limit must be > 0")

        self.monitor_enabled = _parse_bool(monitor.get("enabled", True), True)
        self.monitor_interval_s = self._seconds(monitor, "interval_s", 30.0)
        _enforce(self.monitor_interval_s > 0, "monitor.interval_s must be > 0")
        self.stale_after_s = self._seconds(monitor, "stale_after_s", 60.0)
        _enforce(self.stale_after_s > 0, "monitor.stale_after_s must be > 0")
        self.failure_threshold = _parse_int(monitor.get("failure_threshold", 2), 0)
        _enforce(self.failure_threshold >= 1, "monitor.failure_threshold must be >= 1")
        self.max_failures = _parse_int(monitor.get("max_failures", 6), -1)
        _enforce(
            self.max_failures >= self.failure_threshold,
            "monitor.max_failures must be >= monitor.failure_threshold",
        )
        self.recovery_wait_s = self._seconds(monitor, "recovery_wait_s", 3.0)

    @staticmethod
    def _seconds(section: Dict[str, Any], key: str, default: float) -> float:
        value = _parse_float(section.get(key, default))
        _enforce(value is not None and value >= 0, f"{key} must be a number >= 0")
        return float(value)  # type: ignore[arg-type]


def apply_env_overrides(
    raw: Dict[str, Any], environ: Optional[Dict[str, str]] = None
) -> Dict[str, Any]:
    """Return a copy of *raw* with environment variables applied on top."""
    environ = os.environ if environ is None else environ
    merged: Dict[str, Any] = {
        key: dict(value) if isinstance(value, dict) else value
        for key, value in raw.items()
    }
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is None or value == "":
            continue
        target = merged.get(section)
        if not isinstance(target, dict):
            target = {}
            merged[section] = target
        target[key] = value
    return merged


def load_yaml_config(path: Optional[str], environ: Optional[Dict[str, str]] = None) -> StationConfig:
    """Load a YAML config file (if any), apply env overrides and validate."""
    raw: Any = {}
    if path:
        try:
            with open(path, "r", encoding="utf-8") as fh:
                raw = yaml.safe_load(fh) or {}
        except FileNotFoundError:
            logger.critical("Config file not found: %s", path)
            raise SystemExit(2)
        except yaml.YAMLError as exc:
            logger.critical("Config file %s is not valid YAML: %s", path, exc)
            raise SystemExit(2)
    if not isinstance(raw, dict):
        logger.critical("Config root must be a mapping/dictionary")
        raise SystemExit(2)
    return StationConfig(apply_env_overrides(raw, environ))


# ---------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------


def main() -> None:
    """CLI entry point for the station server."""
    parser = argparse.ArgumentParser(description="HLS internet radio station")
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to station configuration (.yaml)",
    )
    parser.add_argument("--host", type=str, default=None, help="Host/interface to bind")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )
    parser.add_argument(
        "--start",
        action="store_true",
        help="Start streaming at boot even if the station was stopped",
    )
    parser.add_argument(
        "--no-monitor",
        action="store_true",
        help="Disable the HLS health supervisor",
    )
    args = parser.parse_args()

    if args.log_level:
        level = _resolve_log_level(args.log_level)
        logging.getLogger().setLevel(level)
        logger.setLevel(level)

    cfg_path = args.config
    if cfg_path is None and os.path.exists(DEFAULT_CFG_PATH):
        cfg_path = DEFAULT_CFG_PATH
        logger.info("Using default config: %s", cfg_path)
    cfg = load_yaml_config(cfg_path)
    host = args.host or cfg.host
    port = args.port if args.port is not None else cfg.port

    try:
        from webapp import create_app
    except ModuleNotFoundError as exc:  # pragma: no cover - surfaced without Flask installed
        logger.critical("Flask must be installed to run the station: %s", exc)
        sys.exit(2)

    logging.getLogger("werkzeug").setLevel(logging.WARNING)
    app = create_app(
        {
            "STATION": cfg,
            "MONITOR": cfg.monitor_enabled and not args.no_monitor,
            "AUTO_RESUME": True,
        }
    )
    station = app.station  # type: ignore[attr-defined]
    supervisor = app.supervisor  # type: ignore[attr-defined]

    if args.start and not app.store.get_station_state().is_streaming:  # type: ignore[attr-defined]
        logger.info("Start override requested; starting stream.")
        result = station.start()
        if not result.success:
            logger.error("Could not start stream: %s", result.message)

    stop_requested = threading.Event()

    def _shutdown() -> None:
        supervisor.stop()
        station.shutdown()

    def _handle_stop(signum: int, _frame: object) -> None:
        try:
            name = signal.Signals(signum).name
        except Exception:
            name = str(signum)
        logger.warning("Stop requested (%s)", name)
        if stop_requested.is_set():
            return
        stop_requested.set()
        _shutdown()
        raise SystemExit(0)

    for sig_name in ("SIGTERM", "SIGINT"):
        sig = getattr(signal, sig_name, None)
        if sig is None:
            continue
        try:
            signal.signal(sig, _handle_stop)
        except Exception:
            pass

    logger.info("%s listening on http://%s:%s", cfg.station_name, host, port)
    try:
        app.run(host=host, port=port, threaded=True, use_reloader=False)
    finally:
        if not stop_requested.is_set():
            _shutdown()
        logger.info("Server stopped")


if __name__ == "__main__":
    main()
