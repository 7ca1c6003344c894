from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .errors import ValidationError
from .models import PlaylistSnapshot, RecentlyPlayed, StationMode, StationState, Track

LOGGER = logging.getLogger(__name__)

_MISSING = object()

RECENTLY_PLAYED_LIMIT = 50

_SCHEMA = """
CREATE TABLE IF NOT EXISTS tracks (
    id TEXT PRIMARY KEY,
    filename TEXT NOT NULL,
    path TEXT NOT NULL UNIQUE,
    title TEXT,
    artist TEXT,
    duration_sec INTEGER,
    uploaded_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS playlist (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    shuffle_enabled INTEGER DEFAULT 0,
    start_from_index INTEGER DEFAULT 0,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS playlist_items (
    playlist_id INTEGER DEFAULT 1,
    track_id TEXT NOT NULL,
    position INTEGER NOT NULL,
    PRIMARY KEY (playlist_id, track_id),
    FOREIGN KEY (track_id) REFERENCES tracks(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS station_state (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    mode TEXT DEFAULT 'playlist' CHECK (mode IN ('playlist', 'live')),
    live_input_url TEXT,
    live_broadcast_title TEXT,
    is_streaming INTEGER DEFAULT 0,
    last_error TEXT,
    updated_at DATETIME DEFAULT CURRENT_TIMESTAMP
);

CREATE TABLE IF NOT EXISTS recently_played (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    track_id TEXT NOT NULL,
    played_at DATETIME DEFAULT CURRENT_TIMESTAMP,
    FOREIGN KEY (track_id) REFERENCES tracks(id) ON DELETE CASCADE
);

CREATE INDEX IF NOT EXISTS idx_playlist_items_position
    ON playlist_items(playlist_id, position);
"""

# station_state column for each keyword accepted by update_station_state
_STATE_COLUMNS = {
    "mode": "mode",
    "is_streaming": "is_streaming",
    "live_input_url": "live_input_url",
    "live_broadcast_title": "live_broadcast_title",
    "last_error": "last_error",
}


def _track_from_row(row: sqlite3.Row) -> Track:
    return Track(
        id=row["id"],
        path=row["path"],
        title=row["title"],
        artist=row["artist"],
        duration_sec=int(row["duration_sec"] or 0),
        filename=row["filename"] or "",
    )


class StationStore:
    """SQLite-backed station state, playlist and play log."""

    def __init__(self, db_path: Path, *, recent_limit: int = RECENTLY_PLAYED_LIMIT) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.recent_limit = max(1, int(recent_limit))
        self._lock = threading.Lock()
        self._initialize()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        try:
            with conn:
                yield conn
        finally:
            conn.close()

    def _initialize(self) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.executescript(_SCHEMA)
            conn.execute(
                "INSERT OR IGNORE INTO playlist (id, shuffle_enabled, start_from_index) "
                "VALUES (1, 0, 0)"
            )
            conn.execute(
                "INSERT OR IGNORE INTO station_state (id, mode, is_streaming) "
                "VALUES (1, 'playlist', 0)"
            )
        LOGGER.debug("Database ready at %s", self.db_path)

    # ---------------------- station state ----------------------

    def get_station_state(self) -> StationState:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM station_state WHERE id = 1").fetchone()
        return StationState(
            mode=StationMode(row["mode"]),
            is_streaming=bool(row["is_streaming"]),
            live_input_url=row["live_input_url"],
            live_broadcast_title=row["live_broadcast_title"],
            last_error=row["last_error"],
            updated_at=row["updated_at"],
        )

    def update_station_state(
        self,
        *,
        mode: Any = _MISSING,
        is_streaming: Any = _MISSING,
        live_input_url: Any = _MISSING,
        live_broadcast_title: Any = _MISSING,
        last_error: Any = _MISSING,
    ) -> StationState:
        """Change only the named fields; ``None`` clears a nullable field."""
        requested: Dict[str, Any] = {
            "mode": mode,
            "is_streaming": is_streaming,
            "live_input_url": live_input_url,
            "live_broadcast_title": live_broadcast_title,
            "last_error": last_error,
        }
        assignments: List[str] = []
        values: List[Any] = []
        for key, value in requested.items():
            if value is _MISSING:
                continue
            if key == "mode":
                value = StationMode.parse(value).value
            elif key == "is_streaming":
                value = 1 if value else 0
            assignments.append(f"{_STATE_COLUMNS[key]} = ?")
            values.append(value)
        assignments.append("updated_at = CURRENT_TIMESTAMP")
        with self._lock, self._connect() as conn:
            conn.execute(
                f"UPDATE station_state SET {', '.join(assignments)} WHERE id = 1",
                values,
            )
        return self.get_station_state()

    # ---------------------- tracks ----------------------

    def add_track(self, track: Track) -> Track:
        with self._lock, self._connect() as conn:
            conn.execute(
                "INSERT INTO tracks (id, filename, path, title, artist, duration_sec) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    track.id,
                    track.filename or Path(track.path).name,
                    track.path,
                    track.title,
                    track.artist,
                    track.duration_sec,
                ),
            )
        return track

    def get_track(self, track_id: str) -> Optional[Track]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM tracks WHERE id = ?", (track_id,)).fetchone()
        return _track_from_row(row) if row is not None else None

    def list_tracks(self) -> List[Track]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM tracks ORDER BY uploaded_at DESC, rowid DESC"
            ).fetchall()
        return [_track_from_row(row) for row in rows]

    def delete_track(self, track_id: str) -> bool:
        with self._lock, self._connect() as conn:
            cursor = conn.execute("DELETE FROM tracks WHERE id = ?", (track_id,))
        return cursor.rowcount > 0

    # ---------------------- playlist ----------------------

    def get_playlist(self) -> PlaylistSnapshot:
        with self._connect() as conn:
            settings = conn.execute("SELECT * FROM playlist WHERE id = 1").fetchone()
            rows = conn.execute(
                """
                SELECT t.*
                FROM playlist_items pi
                JOIN tracks t ON pi.track_id = t.id
                WHERE pi.playlist_id = 1
                ORDER BY pi.position
                """
            ).fetchall()
        return PlaylistSnapshot(
            tracks=tuple(_track_from_row(row) for row in rows),
            shuffle_enabled=bool(settings["shuffle_enabled"]),
            start_from_index=int(settings["start_from_index"] or 0),
        )

    def update_playlist(
        self,
        track_ids: Sequence[str],
        shuffle_enabled: bool,
        start_from_index: int = 0,
    ) -> PlaylistSnapshot:
        if start_from_index < 0:
            raise ValidationError("startFromIndex must be >= 0")
        unique_ids = list(dict.fromkeys(str(track_id) for track_id in track_ids))
        with self._lock, self._connect() as conn:
            known = {
                row["id"]
                for row in conn.execute("SELECT id FROM tracks").fetchall()
            }
            invalid = [track_id for track_id in unique_ids if track_id not in known]
            if invalid:
                raise ValidationError(f"Invalid track IDs: {', '.join(invalid)}")
            conn.execute("DELETE FROM playlist_items WHERE playlist_id = 1")
            conn.executemany(
                "INSERT INTO playlist_items (playlist_id, track_id, position) VALUES (1, ?, ?)",
                [(track_id, position) for position, track_id in enumerate(unique_ids)],
            )
            conn.execute(
                "UPDATE playlist SET shuffle_enabled = ?, start_from_index = ?, "
                "updated_at = CURRENT_TIMESTAMP WHERE id = 1",
                (1 if shuffle_enabled else 0, int(start_from_index)),
            )
        LOGGER.info(
            "Playlist updated: %d tracks, shuffle=%s, start=%d",
            len(unique_ids),
            bool(shuffle_enabled),
            start_from_index,
        )
        return self.get_playlist()

    # ---------------------- recently played ----------------------

    def add_recently_played(self, track_id: str) -> None:
        with self._lock, self._connect() as conn:
            conn.execute("INSERT INTO recently_played (track_id) VALUES (?)", (track_id,))
            conn.execute(
                """
                DELETE FROM recently_played
                WHERE id NOT IN (
                    SELECT id FROM recently_played ORDER BY id DESC LIMIT ?
                )
                """,
                (self.recent_limit,),
            )

    def get_recently_played(self, limit: int = 10) -> List[RecentlyPlayed]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT t.*, rp.played_at
                FROM recently_played rp
                JOIN tracks t ON rp.track_id = t.id
                ORDER BY rp.id DESC
                LIMIT ?
                """,
                (max(0, int(limit)),),
            ).fetchall()
        return [
            RecentlyPlayed(track=_track_from_row(row), played_at=row["played_at"])
            for row in rows
        ]
