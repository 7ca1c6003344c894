from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from flask import Blueprint, Response, abort, current_app, jsonify, request, send_from_directory
from werkzeug.exceptions import HTTPException

from .errors import ValidationError

LOGGER = logging.getLogger(__name__)

bp = Blueprint("main", __name__)

HLS_MIMETYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/MP2T",
}


def _station():
    return current_app.station  # type: ignore[attr-defined]


def _store():
    return current_app.store  # type: ignore[attr-defined]


def _limit_arg(default: int = 10, maximum: int = 100) -> int:
    raw = request.args.get("limit")
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ValidationError("limit must be an integer")
    return max(0, min(maximum, value))


def _payload() -> dict[str, Any]:
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        raise ValidationError("Invalid payload")
    return payload


@bp.errorhandler(ValidationError)
def _validation_error(exc: ValidationError) -> Response:
    return jsonify({"error": str(exc)}), 400


@bp.errorhandler(Exception)
def _unexpected_error(exc: Exception) -> Response:
    if isinstance(exc, HTTPException):
        return exc
    LOGGER.exception("Unhandled error serving %s", request.path)
    return jsonify({"error": "Internal server error"}), 500


@bp.get("/health")
def health() -> Response:
    return jsonify(
        {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}
    )


# ---------------------- public ----------------------


@bp.get("/api/now-playing")
def api_now_playing() -> Response:
    return jsonify(_station().get_currently_playing())


@bp.get("/api/recently-played")
def api_recently_played() -> Response:
    items = _store().get_recently_played(_limit_arg())
    return jsonify({"items": [item.to_dict() for item in items]})


@bp.get("/api/upcoming")
def api_upcoming() -> Response:
    return jsonify({"items": _station().upcoming(_limit_arg())})


@bp.get("/stream/<path:filename>")
def stream_file(filename: str) -> Response:
    output = current_app.hls_output  # type: ignore[attr-defined]
    suffix = "." + filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
    if suffix not in HLS_MIMETYPES:
        abort(404)
    mimetype = HLS_MIMETYPES[suffix]
    response = send_from_directory(
        output.directory.resolve(), filename, mimetype=mimetype, max_age=0
    )
    response.headers["Cache-Control"] = "no-cache"
    return response


# ---------------------- admin ----------------------


@bp.get("/api/admin/tracks")
def api_tracks() -> Response:
    return jsonify({"items": [track.to_dict() for track in _store().list_tracks()]})


@bp.delete("/api/admin/tracks/<track_id>")
def api_delete_track(track_id: str) -> Response:
    store = _store()
    track = store.get_track(track_id)
    if track is None:
        return jsonify({"error": "Track not found"}), 404
    media = Path(track.path)
    try:
        if media.is_file():
            media.unlink()
    except OSError as exc:
        LOGGER.error("Failed to remove %s: %s", media, exc)
    store.delete_track(track_id)
    LOGGER.info("Track %s deleted", track_id)
    return jsonify({"success": True})


@bp.get("/api/admin/playlist")
def api_get_playlist() -> Response:
    return jsonify(_store().get_playlist().to_dict())


@bp.put("/api/admin/playlist")
def api_update_playlist() -> Response:
    payload = _payload()
    track_ids = payload.get("trackIds")
    if not isinstance(track_ids, list):
        raise ValidationError("trackIds must be an array")
    start_from_index = payload.get("startFromIndex", 0)
    if isinstance(start_from_index, bool) or not isinstance(start_from_index, int):
        raise ValidationError("startFromIndex must be an integer")
    snapshot = _store().update_playlist(
        [str(track_id) for track_id in track_ids],
        bool(payload.get("shuffleEnabled", False)),
        start_from_index,
    )
    return jsonify({"success": True, "playlist": snapshot.to_dict()})


@bp.post("/api/admin/station/start")
def api_start() -> Response:
    result = _station().start()
    return jsonify(result.to_dict()), (200 if result.success else 400)


@bp.post("/api/admin/station/stop")
def api_stop() -> Response:
    return jsonify(_station().stop().to_dict())


@bp.post("/api/admin/station/mode")
def api_mode() -> Response:
    payload = _payload()
    return jsonify(_station().set_mode(payload.get("mode")))


@bp.post("/api/admin/station/skip")
def api_skip() -> Response:
    result = _station().skip_track()
    return jsonify(result.to_dict()), (200 if result.success else 400)


@bp.put("/api/admin/station/live-input")
def api_live_input() -> Response:
    payload = _payload()
    result = _station().set_live_input_url(payload.get("liveInputUrl"))
    return jsonify(result.to_dict())


@bp.put("/api/admin/station/live-title")
def api_live_title() -> Response:
    payload = _payload()
    result = _station().set_live_broadcast_title(payload.get("liveBroadcastTitle"))
    return jsonify(result.to_dict())


@bp.get("/api/admin/station/status")
def api_status() -> Response:
    return jsonify(_station().get_status())
