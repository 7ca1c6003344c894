from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from .errors import ValidationError


class StationMode(str, Enum):
    """Source the station broadcasts from."""

    PLAYLIST = "playlist"
    LIVE = "live"

    @classmethod
    def parse(cls, value: Any) -> "StationMode":
        if isinstance(value, StationMode):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValidationError('Mode must be "playlist" or "live"')


@dataclass(frozen=True)
class Track:
    id: str
    path: str
    title: Optional[str] = None
    artist: Optional[str] = None
    duration_sec: int = 0
    filename: str = ""

    @property
    def display_title(self) -> str:
        return self.title or self.filename or self.id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.display_title,
            "artist": self.artist or "Unknown Artist",
            "durationSec": self.duration_sec or 0,
        }


@dataclass(frozen=True)
class StationState:
    mode: StationMode = StationMode.PLAYLIST
    is_streaming: bool = False
    live_input_url: Optional[str] = None
    live_broadcast_title: Optional[str] = None
    last_error: Optional[str] = None
    updated_at: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "mode": self.mode.value,
            "isStreaming": self.is_streaming,
            "liveInputUrl": self.live_input_url,
            "liveBroadcastTitle": self.live_broadcast_title,
            "lastError": self.last_error,
            "updatedAt": self.updated_at,
        }


@dataclass(frozen=True)
class PlaylistSnapshot:
    """Persisted playlist at one point in time; edits produce a new snapshot."""

    tracks: Tuple[Track, ...] = field(default_factory=tuple)
    shuffle_enabled: bool = False
    start_from_index: int = 0

    @property
    def track_ids(self) -> Tuple[str, ...]:
        return tuple(track.id for track in self.tracks)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shuffleEnabled": self.shuffle_enabled,
            "startFromIndex": self.start_from_index,
            "tracks": [
                {
                    "id": track.id,
                    "position": position,
                    "title": track.title,
                    "artist": track.artist,
                    "durationSec": track.duration_sec,
                    "filename": track.filename,
                }
                for position, track in enumerate(self.tracks)
            ],
        }


@dataclass(frozen=True)
class RecentlyPlayed:
    track: Track
    played_at: str

    def to_dict(self) -> Dict[str, Any]:
        data = self.track.to_dict()
        data["playedAt"] = self.played_at
        return data
