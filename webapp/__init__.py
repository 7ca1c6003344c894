from __future__ import annotations

import logging
import random
from typing import Any, Optional

try:  # pragma: no cover - optional during unit tests without Flask installed
    from flask import Flask
except ModuleNotFoundError:  # pragma: no cover - tests import package without Flask
    Flask = None  # type: ignore[assignment]

from encoder import FFmpegEncoder, HlsOutput, LIVE_PROFILE, PLAYLIST_PROFILE
from hlscast import StationConfig

from .errors import ValidationError
from .health import HealthSupervisor
from .station import StationOrchestrator, StationTimings
from .store import StationStore

LOGGER = logging.getLogger(__name__)


def _station_config(value: Any) -> StationConfig:
    if isinstance(value, StationConfig):
        return value
    try:
        return StationConfig(value or {})
    except SystemExit as exc:
        raise ValidationError("Invalid station configuration") from exc


def create_app(
    config: dict[str, Any] | None = None,
    *,
    encoder: Optional[FFmpegEncoder] = None,
    rng: Optional[random.Random] = None,
) -> "Flask":
    if Flask is None:  # pragma: no cover - surfaced when Flask missing
        raise RuntimeError("Flask must be installed to create the web interface")
    from .routes import bp
    app = Flask(__name__)
    app.config.setdefault("STATION", None)
    app.config.setdefault("MONITOR", False)
    app.config.setdefault("AUTO_RESUME", False)

    if config:
        app.config.update(config)

    cfg = _station_config(app.config["STATION"])
    output = HlsOutput(cfg.hls_dir, cfg.playlist_name, cfg.segment_pattern)
    output.ensure_directory()
    cfg.media_dir.mkdir(parents=True, exist_ok=True)

    if encoder is None:
        encoder = FFmpegEncoder(
            cfg.encoder_binary,
            playlist_profile=PLAYLIST_PROFILE.updated(cfg.playlist_profile),
            live_profile=LIVE_PROFILE.updated(cfg.live_profile),
        )
    store = StationStore(cfg.db_path, recent_limit=cfg.recent_limit)
    station = StationOrchestrator(
        store,
        encoder,
        output,
        station_name=cfg.station_name,
        timings=StationTimings(
            crash_retry_s=cfg.crash_retry_s,
            spawn_retry_s=cfg.spawn_retry_s,
            live_fallback_s=cfg.live_fallback_s,
        ),
        stale_after_s=cfg.stale_after_s,
        rng=rng,
    )
    supervisor = HealthSupervisor(
        store,
        station,
        output,
        interval_s=cfg.monitor_interval_s,
        stale_after_s=cfg.stale_after_s,
        failure_threshold=cfg.failure_threshold,
        max_failures=cfg.max_failures,
        recovery_wait_s=cfg.recovery_wait_s,
    )

    app.station_config = cfg  # type: ignore[attr-defined]
    app.store = store  # type: ignore[attr-defined]
    app.hls_output = output  # type: ignore[attr-defined]
    app.station = station  # type: ignore[attr-defined]
    app.supervisor = supervisor  # type: ignore[attr-defined]
    app.register_blueprint(bp)

    if app.config.get("AUTO_RESUME"):
        try:
            station.restore_session()
        except Exception:  # noqa: BLE001
            LOGGER.exception("Failed to resume previous broadcast")
    if app.config.get("MONITOR"):
        supervisor.start()

    return app
