from __future__ import annotations

import logging
import queue
import random
import sqlite3
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from urllib.parse import urlparse

from encoder import EncoderSpawnError, FFmpegEncoder, HlsOutput, build_args

from .errors import ConfigurationError, ValidationError
from .models import StationMode, StationState, Track
from .store import StationStore

LOGGER = logging.getLogger(__name__)

EMPTY_PLAYLIST_ERROR = "Playlist is empty"
NO_LIVE_URL_ERROR = "No live input URL configured"
LIVE_FALLBACK_ERROR = "Live input failed, switched to playlist mode"

LIVE_URL_SCHEMES = {"http", "https", "rtmp", "rtsp", "srt", "udp"}


class StationPhase(Enum):
    """High-level playback lifecycle states."""

    IDLE = "idle"
    PLAYLIST_ACTIVE = "playlist_active"
    LIVE_ACTIVE = "live_active"
    RECOVERING = "recovering"


@dataclass
class StartResult:
    success: bool
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success}
        if self.message:
            data["message" if self.success else "error"] = self.message
        return data


@dataclass
class StationTimings:
    crash_retry_s: float = 2.0
    spawn_retry_s: float = 5.0
    live_fallback_s: float = 1.0


# ---------------------- events ----------------------


@dataclass(frozen=True)
class EncoderExited:
    handle: Any
    code: int
    diagnostics: str = ""


@dataclass(frozen=True)
class RetryAfterCrash:
    generation: int


@dataclass(frozen=True)
class RestartStream:
    generation: int


@dataclass(frozen=True)
class FallbackToPlaylist:
    generation: int


StationEvent = Union[EncoderExited, RetryAfterCrash, RestartStream, FallbackToPlaylist]


@dataclass
class PlaybackSession:
    """Working copy of the playlist and position for one broadcast."""

    mode: StationMode
    tracks: List[Track] = field(default_factory=list)
    index: int = 0
    shuffled: bool = False
    current_track: Optional[Track] = None
    started_at: Optional[str] = None
    process: Any = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class StationOrchestrator:
    """Owns station playback: mode, track sequencing and the encoder process.

    Public operations and event handling run under one re-entrant lock.
    Encoder exits and delayed retries are queued as events and handled by a
    single dispatcher thread, so two operations never interleave.
    """

    def __init__(
        self,
        store: StationStore,
        encoder: FFmpegEncoder,
        output: HlsOutput,
        *,
        station_name: str = "RadioAjay",
        timings: Optional[StationTimings] = None,
        stale_after_s: float = 60.0,
        rng: Optional[random.Random] = None,
    ) -> None:
        self._store = store
        self._encoder = encoder
        self._output = output
        self.station_name = station_name
        self._timings = timings or StationTimings()
        self._stale_after_s = stale_after_s
        self._rng = rng or random.Random()
        self._lock = threading.RLock()
        self._session: Optional[PlaybackSession] = None
        self._phase = StationPhase.IDLE
        self._generation = 0
        self._events: "queue.Queue[StationEvent]" = queue.Queue()
        self._timers: List[threading.Timer] = []
        self._stop_event = threading.Event()
        self._dispatcher: Optional[threading.Thread] = None
        self._dispatcher_lock = threading.Lock()
        self._idle = threading.Condition()
        self._pending = 0

    # ---------------------- public API ----------------------

    @property
    def phase(self) -> StationPhase:
        with self._lock:
            return self._phase

    def start(self) -> StartResult:
        with self._lock:
            return self._start()

    def stop(self) -> StartResult:
        with self._lock:
            self._stop_locked()
        LOGGER.info("Stream stopped")
        return StartResult(True, "Station stopped")

    def set_mode(self, mode: Any) -> Dict[str, Any]:
        new_mode = StationMode.parse(mode)
        with self._lock:
            was_streaming = self._store.get_station_state().is_streaming
            if was_streaming:
                self._stop_locked()
            self._store.update_station_state(mode=new_mode)
            LOGGER.info("Mode set to %s", new_mode.value)
            result: Optional[StartResult] = None
            if was_streaming:
                result = self._start()
        payload: Dict[str, Any] = {
            "success": result.success if result else True,
            "mode": new_mode.value,
            "restarted": bool(result and result.success),
        }
        if result is not None and not result.success:
            payload["error"] = result.message
        return payload

    def set_live_input_url(self, url: Any) -> StartResult:
        if not isinstance(url, str) or not url.strip():
            raise ValidationError("liveInputUrl is required")
        candidate = url.strip()
        parsed = urlparse(candidate)
        if parsed.scheme.lower() not in LIVE_URL_SCHEMES or not parsed.netloc:
            raise ValidationError("Invalid URL format")
        with self._lock:
            self._store.update_station_state(live_input_url=candidate)
        LOGGER.info("Live input URL set to %s", candidate)
        return StartResult(True)

    def set_live_broadcast_title(self, title: Any) -> StartResult:
        if title is not None and not isinstance(title, str):
            raise ValidationError("liveBroadcastTitle must be a string")
        cleaned = (title or "").strip() or None
        with self._lock:
            self._store.update_station_state(live_broadcast_title=cleaned)
        return StartResult(True)

    def skip_track(self) -> StartResult:
        with self._lock:
            state = self._store.get_station_state()
            session = self._session
            if not state.is_streaming or session is None:
                return StartResult(False, "Stream is not running")
            if session.mode is not StationMode.PLAYLIST or not session.tracks:
                return StartResult(False, "Skipping is only available in playlist mode")
            # a crash retry scheduled for the skipped track must not fire
            self._generation += 1
            self._cancel_timers()
            self._detach_process(session)
            session.index += 1
            LOGGER.info("Skipping to next track")
            self._play_next_track()
        return StartResult(True)

    def recover(
        self, wait_s: float, interrupt: Optional[threading.Event] = None
    ) -> StartResult:
        """Stop, wait, and start again unless another caller intervenes."""
        with self._lock:
            LOGGER.warning("Recovery: stopping stream")
            self._stop_locked()
            self._phase = StationPhase.RECOVERING
            token = self._generation
        if interrupt is not None:
            interrupted = interrupt.wait(wait_s)
        else:
            time.sleep(wait_s)
            interrupted = False
        with self._lock:
            if self._generation != token or self._phase is not StationPhase.RECOVERING:
                LOGGER.info("Recovery superseded by another station operation")
                return StartResult(False, "Recovery cancelled")
            if interrupted:
                # shutting down: keep the broadcast resumable on next boot
                self._phase = StationPhase.IDLE
                self._store.update_station_state(is_streaming=True)
                return StartResult(False, "Recovery interrupted")
            LOGGER.info("Recovery: starting stream")
            return self._start()

    def abandon(self, reason: str) -> None:
        with self._lock:
            self._stop_locked()
            self._store.update_station_state(is_streaming=False, last_error=reason)
        LOGGER.error("Stream abandoned: %s", reason)

    def restore_session(self) -> Optional[StartResult]:
        """Resume a broadcast that was running when the server last exited."""
        with self._lock:
            state = self._store.get_station_state()
            if not state.is_streaming:
                return None
            LOGGER.info("Resuming %s broadcast from previous run", state.mode.value)
            self._store.update_station_state(is_streaming=False)
            return self._start()

    def get_currently_playing(self) -> Dict[str, Any]:
        with self._lock:
            state = self._store.get_station_state()
            session = self._session
            current = session.current_track if session else None
            started_at = session.started_at if session else None
        if state.mode is StationMode.LIVE and state.live_broadcast_title:
            track: Optional[Dict[str, Any]] = {
                "id": "live",
                "title": state.live_broadcast_title,
                "artist": "Live Broadcast",
                "durationSec": 0,
            }
        else:
            track = current.to_dict() if current else None
        return {
            "station": self.station_name,
            "mode": state.mode.value,
            "isOnline": state.is_streaming,
            "track": track,
            "startedAt": started_at,
        }

    def get_status(self) -> Dict[str, Any]:
        with self._lock:
            state = self._store.get_station_state()
            session = self._session
            current = session.current_track if session else None
            phase = self._phase
        return {
            "mode": state.mode.value,
            "isOnline": state.is_streaming,
            "lastError": state.last_error,
            "outputHealth": self._output_health(state),
            "currentTrack": current.to_dict() if current else None,
            "phase": phase.value,
            "liveInputUrl": state.live_input_url,
            "liveBroadcastTitle": state.live_broadcast_title,
        }

    def upcoming(self, limit: int = 10) -> List[Dict[str, Any]]:
        with self._lock:
            session = self._session
            if session is None or not session.tracks:
                return []
            tracks = list(session.tracks)
            index = session.index
        items: List[Dict[str, Any]] = []
        for offset in range(max(0, limit)):
            track = tracks[(index + offset) % len(tracks)]
            entry = track.to_dict()
            entry["position"] = offset
            entry["isCurrent"] = offset == 0
            items.append(entry)
        return items

    def wait_idle(self, timeout: float = 2.0) -> bool:
        """Block until every posted event has been handled."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def shutdown(self) -> None:
        """Stop the encoder and background work; the persisted flag is kept
        so ``restore_session`` resumes the broadcast on the next boot."""
        with self._lock:
            self._generation += 1
            self._cancel_timers()
            self._discard_session()
        # let the dispatcher drain the exit of the encoder just terminated
        if not self.wait_idle(timeout=1.0):
            LOGGER.warning("Station events still pending at shutdown")
        self._stop_event.set()
        if self._dispatcher and self._dispatcher.is_alive():
            self._dispatcher.join(timeout=1)

    # ---------------------- transitions ----------------------

    def _start(self) -> StartResult:
        state = self._store.get_station_state()
        if state.is_streaming:
            LOGGER.info("Stream already running")
            return StartResult(False, "Stream already running")
        self._output.clean()
        return self._launch(state.mode)

    def _launch(self, mode: StationMode) -> StartResult:
        try:
            if mode is StationMode.LIVE:
                return self._start_live_mode()
            return self._start_playlist_mode()
        except ConfigurationError as exc:
            LOGGER.warning("Cannot start %s mode: %s", mode.value, exc)
            self._discard_session()
            self._store.update_station_state(is_streaming=False, last_error=str(exc))
            return StartResult(False, str(exc))

    def _start_playlist_mode(self) -> StartResult:
        snapshot = self._store.get_playlist()
        if not snapshot.tracks:
            raise ConfigurationError(EMPTY_PLAYLIST_ERROR)

        session = self._begin_session(StationMode.PLAYLIST)
        session.tracks = list(snapshot.tracks)
        session.shuffled = snapshot.shuffle_enabled
        if session.shuffled:
            self._rng.shuffle(session.tracks)
        index = snapshot.start_from_index
        session.index = index if 0 <= index < len(session.tracks) else 0

        self._store.update_station_state(
            is_streaming=True, last_error=None, mode=StationMode.PLAYLIST
        )
        self._phase = StationPhase.PLAYLIST_ACTIVE
        LOGGER.info(
            "Playlist mode started from track #%d%s",
            session.index + 1,
            " (shuffled)" if session.shuffled else "",
        )
        if not self._play_next_track():
            return StartResult(True, "Encoder unavailable; restart scheduled")
        return StartResult(True, "Station started")

    def _start_live_mode(self) -> StartResult:
        state = self._store.get_station_state()
        if not state.live_input_url:
            raise ConfigurationError(NO_LIVE_URL_ERROR)

        session = self._begin_session(StationMode.LIVE)
        session.current_track = Track(
            id="live",
            path=state.live_input_url,
            title="Live Broadcast",
            artist=self.station_name,
        )
        session.started_at = _now_iso()
        args = build_args(state.live_input_url, self._output, self._encoder.live_profile)
        if not self._spawn(session, args, label="live"):
            return StartResult(True, "Live input unavailable; falling back to playlist")
        self._store.update_station_state(
            is_streaming=True, last_error=None, mode=StationMode.LIVE
        )
        self._phase = StationPhase.LIVE_ACTIVE
        LOGGER.info("Live mode started: %s", state.live_input_url)
        return StartResult(True, "Station started")

    def _play_next_track(self) -> bool:
        session = self._session
        if session is None or not session.tracks:
            LOGGER.info("No tracks in playlist")
            return False
        if session.index >= len(session.tracks):
            session.index = 0
            if session.shuffled:
                self._rng.shuffle(session.tracks)
                LOGGER.info("Playlist looped; reshuffled %d tracks", len(session.tracks))

        track = session.tracks[session.index]
        session.current_track = track
        session.started_at = _now_iso()
        try:
            self._store.add_recently_played(track.id)
        except sqlite3.Error as exc:
            # track removed from the library after the session took its copy
            LOGGER.warning("Could not log %s as recently played: %s", track.id, exc)
        LOGGER.info(
            "Playing: %s (%d/%d, %ss)",
            track.display_title,
            session.index + 1,
            len(session.tracks),
            track.duration_sec,
        )
        args = build_args(track.path, self._output, self._encoder.playlist_profile)
        return self._spawn(session, args, label=f"track:{track.id}")

    def _spawn(self, session: PlaybackSession, args: List[str], label: str) -> bool:
        self._detach_process(session)
        try:
            session.process = self._encoder.spawn(
                args, label=label, on_exit=self._on_encoder_exit
            )
        except EncoderSpawnError as exc:
            self._handle_spawn_failure(session, exc)
            return False
        return True

    def _handle_spawn_failure(self, session: PlaybackSession, exc: Exception) -> None:
        live = session.mode is StationMode.LIVE
        prefix = "Live input error" if live else "Encoder error"
        LOGGER.error("Failed to start encoder: %s", exc)
        self._discard_session()
        self._store.update_station_state(is_streaming=False, last_error=f"{prefix}: {exc}")
        if live:
            LOGGER.info("Falling back to playlist in %.1fs", self._timings.live_fallback_s)
            self._schedule(
                self._timings.live_fallback_s, FallbackToPlaylist(self._generation)
            )
        else:
            LOGGER.info("Auto-recovery: restarting stream in %.1fs", self._timings.spawn_retry_s)
            self._schedule(self._timings.spawn_retry_s, RestartStream(self._generation))

    def _stop_locked(self) -> None:
        self._generation += 1
        self._cancel_timers()
        self._discard_session()
        self._store.update_station_state(is_streaming=False)

    def _begin_session(self, mode: StationMode) -> PlaybackSession:
        self._discard_session()
        self._generation += 1
        self._session = PlaybackSession(mode=mode)
        return self._session

    def _discard_session(self) -> None:
        session = self._session
        self._session = None
        self._phase = StationPhase.IDLE
        if session is not None:
            self._detach_process(session)

    def _detach_process(self, session: PlaybackSession) -> None:
        process = session.process
        session.process = None
        if process is not None:
            process.terminate()

    def _fall_back_to_playlist(self) -> StartResult:
        self._store.update_station_state(
            mode=StationMode.PLAYLIST, last_error=LIVE_FALLBACK_ERROR
        )
        return self._launch(StationMode.PLAYLIST)

    def _output_health(self, state: StationState) -> str:
        if not state.is_streaming:
            return "unavailable"
        age = self._output.last_modified_age()
        if age is None:
            return "unavailable"
        return "healthy" if age <= self._stale_after_s else "stale"

    # ---------------------- events ----------------------

    def _on_encoder_exit(self, handle: Any, code: int, diagnostics: str) -> None:
        self._post(EncoderExited(handle, code, diagnostics))

    def _post(self, event: StationEvent) -> None:
        with self._idle:
            self._pending += 1
        self._ensure_dispatcher()
        self._events.put(event)

    def _schedule(self, delay: float, event: StationEvent) -> None:
        self._timers = [timer for timer in self._timers if timer.is_alive()]
        timer = threading.Timer(max(0.0, delay), self._post, args=(event,))
        timer.daemon = True
        self._timers.append(timer)
        timer.start()

    def _cancel_timers(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers = []

    def _ensure_dispatcher(self) -> None:
        with self._dispatcher_lock:
            if self._dispatcher and self._dispatcher.is_alive():
                return
            self._stop_event.clear()
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop, name="station-events", daemon=True
            )
            self._dispatcher.start()

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self._events.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                with self._lock:
                    self._handle_event(event)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Failed to handle station event %r", event)
            finally:
                with self._idle:
                    self._pending -= 1
                    self._idle.notify_all()

    def _handle_event(self, event: StationEvent) -> None:
        if isinstance(event, EncoderExited):
            self._handle_exit(event)
            return
        if event.generation != self._generation:
            LOGGER.debug("Dropping stale %s", type(event).__name__)
            return
        if isinstance(event, RetryAfterCrash):
            self._handle_crash_retry()
        elif isinstance(event, RestartStream):
            LOGGER.info("Auto-recovery: restarting stream")
            self._start()
        elif isinstance(event, FallbackToPlaylist):
            self._fall_back_to_playlist()

    def _handle_exit(self, event: EncoderExited) -> None:
        session = self._session
        if session is None or session.process is not event.handle:
            LOGGER.debug("Ignoring exit of detached encoder (code %s)", event.code)
            return
        session.process = None
        state = self._store.get_station_state()

        if session.mode is StationMode.LIVE:
            if event.code != 0:
                LOGGER.warning(
                    "Live stream failed (code %s), falling back to playlist mode", event.code
                )
                self._fall_back_to_playlist()
            else:
                LOGGER.info("Live input ended")
            return

        if event.code != 0:
            if state.is_streaming:
                LOGGER.warning(
                    "Encoder crashed unexpectedly (code %s). Auto-recovering in %.1fs",
                    event.code,
                    self._timings.crash_retry_s,
                )
                self._schedule(self._timings.crash_retry_s, RetryAfterCrash(self._generation))
            elif state.mode is StationMode.LIVE:
                self._fall_back_to_playlist()
            return

        if state.is_streaming and state.mode is StationMode.PLAYLIST:
            session.index += 1
            self._play_next_track()

    def _handle_crash_retry(self) -> None:
        state = self._store.get_station_state()
        if not state.is_streaming:
            return
        session = self._session
        if state.mode is StationMode.LIVE:
            LOGGER.info("Attempting to restart live stream")
            self._launch(StationMode.LIVE)
        elif session is not None and session.tracks:
            LOGGER.info("Attempting to continue playlist")
            session.index += 1
            self._play_next_track()
        else:
            self._launch(StationMode.PLAYLIST)
