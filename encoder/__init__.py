"""
FFmpeg HLS encoder adapter.

Builds the encoder command line for playlist tracks and live inputs, runs the
encoder as a child process and reports its exit, and inspects the segmented
output it writes.
"""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

HLS_FLAGS = "delete_segments+append_list+omit_endlist"
DIAGNOSTIC_LINES = 20

ExitCallback = Callable[["EncoderProcess", int, str], None]


class EncoderSpawnError(RuntimeError):
    """Raised when the encoder process cannot be created."""


# ---------------------------------------------------------------------
# Output artifact
# ---------------------------------------------------------------------


class HlsOutput:
    """The HLS playlist and segments the encoder writes."""

    def __init__(
        self,
        directory: Path,
        playlist_name: str = "radioajay.m3u8",
        segment_pattern: str = "segment_%03d.ts",
    ) -> None:
        self.directory = Path(directory)
        self.playlist_name = playlist_name
        self.segment_pattern = segment_pattern

    @property
    def playlist_path(self) -> Path:
        return self.directory / self.playlist_name

    @property
    def segment_path(self) -> Path:
        return self.directory / self.segment_pattern

    def ensure_directory(self) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)

    def exists(self) -> bool:
        return self.playlist_path.is_file()

    def last_modified_age(self, now: Optional[float] = None) -> Optional[float]:
        """Seconds since the playlist was last written, or None if it is missing."""
        try:
            mtime = self.playlist_path.stat().st_mtime
        except FileNotFoundError:
            return None
        return max(0.0, (now if now is not None else time.time()) - mtime)

    def clean(self) -> int:
        """Remove playlists and segments left by a previous encoder run."""
        removed = 0
        try:
            entries = list(self.directory.iterdir())
        except FileNotFoundError:
            return 0
        for entry in entries:
            if entry.suffix not in {".ts", ".m3u8"}:
                continue
            try:
                entry.unlink()
                removed += 1
            except OSError as exc:
                logger.error("Failed to remove %s: %s", entry, exc)
        logger.info("HLS directory cleaned (%d files)", removed)
        return removed


# ---------------------------------------------------------------------
# Argument templates
# ---------------------------------------------------------------------


@dataclass(frozen=True)
class EncoderProfile:
    """Encoding parameters for one kind of input."""

    bitrate: str
    sample_rate: int
    segment_seconds: int
    list_size: int
    channels: Optional[int] = None
    threads: Optional[int] = None
    loglevel: Optional[str] = None
    realtime: bool = False
    audio_only: bool = False
    ignore_errors: bool = False

    def updated(self, overrides: Dict[str, Any]) -> "EncoderProfile":
        """Return a copy with the given known fields replaced."""
        known = {k: v for k, v in overrides.items() if k in self.__dataclass_fields__}
        return replace(self, **known) if known else self


# Stored files are read at native rate with reduced CPU settings.
PLAYLIST_PROFILE = EncoderProfile(
    bitrate="96k",
    sample_rate=44100,
    segment_seconds=10,
    list_size=6,
    channels=2,
    threads=1,
    loglevel="error",
    realtime=True,
    audio_only=True,
    ignore_errors=True,
)

LIVE_PROFILE = EncoderProfile(
    bitrate="128k",
    sample_rate=44100,
    segment_seconds=6,
    list_size=10,
)


def build_args(source: str, output: HlsOutput, profile: EncoderProfile) -> List[str]:
    """Return encoder arguments (without the binary) for *source*."""
    args: List[str] = []
    if profile.loglevel:
        args += ["-loglevel", profile.loglevel]
    if profile.realtime:
        args.append("-re")
    args += ["-i", str(source)]
    if profile.audio_only:
        args.append("-vn")
    args += ["-c:a", "aac", "-b:a", profile.bitrate, "-ar", str(profile.sample_rate)]
    if profile.channels:
        args += ["-ac", str(profile.channels)]
    if profile.threads:
        args += ["-threads", str(profile.threads)]
    if profile.ignore_errors:
        args += ["-err_detect", "ignore_err"]
    args += [
        "-f",
        "hls",
        "-hls_time",
        str(profile.segment_seconds),
        "-hls_list_size",
        str(profile.list_size),
        "-hls_flags",
        HLS_FLAGS,
        "-hls_segment_filename",
        str(output.segment_path),
        str(output.playlist_path),
    ]
    return args


# ---------------------------------------------------------------------
# Process handle
# ---------------------------------------------------------------------


class EncoderProcess:
    """A running encoder; reports its exit exactly once via ``on_exit``."""

    def __init__(
        self,
        proc: "subprocess.Popen[bytes]",
        label: str,
        on_exit: Optional[ExitCallback] = None,
    ) -> None:
        self._proc = proc
        self.label = label
        self._on_exit = on_exit
        self._diagnostics: Deque[str] = deque(maxlen=DIAGNOSTIC_LINES)
        self._reader = threading.Thread(
            target=self._drain_stderr, name=f"encoder-stderr-{proc.pid}", daemon=True
        )
        self._watcher = threading.Thread(
            target=self._watch, name=f"encoder-exit-{proc.pid}", daemon=True
        )

    def start(self) -> "EncoderProcess":
        self._reader.start()
        self._watcher.start()
        return self

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def running(self) -> bool:
        return self._proc.poll() is None

    @property
    def returncode(self) -> Optional[int]:
        return self._proc.returncode

    def diagnostics(self) -> str:
        return "\n".join(self._diagnostics)

    def terminate(self, timeout: float = 2.0) -> None:
        """Send SIGTERM, escalating to SIGKILL if the process lingers."""
        if self._proc.poll() is not None:
            return
        try:
            self._proc.terminate()
            try:
                self._proc.wait(timeout=timeout)
            except subprocess.TimeoutExpired:
                logger.warning("Encoder %s ignored SIGTERM; killing", self.pid)
                self._proc.kill()
                self._proc.wait(timeout=timeout)
        except ProcessLookupError:
            pass

    def wait(self, timeout: Optional[float] = None) -> int:
        return self._proc.wait(timeout=timeout)

    def _drain_stderr(self) -> None:
        stream = self._proc.stderr
        if stream is None:
            return
        try:
            for raw in iter(stream.readline, b""):
                line = raw.decode("utf-8", errors="replace").rstrip()
                if line and "error" in line.lower():
                    logger.error("FFmpeg error: %s", line)
                    self._diagnostics.append(line)
        except (OSError, ValueError):
            logger.debug("Encoder %s stderr closed", self.pid)
        finally:
            stream.close()

    def _watch(self) -> None:
        code = self._proc.wait()
        self._reader.join(timeout=1.0)
        logger.info("Encoder %s (%s) exited with code %s", self.pid, self.label, code)
        if self._on_exit is None:
            return
        try:
            self._on_exit(self, code, self.diagnostics())
        except Exception:  # noqa: BLE001
            logger.exception("Encoder exit handler failed")


class FFmpegEncoder:
    """Starts encoder processes from a fixed binary."""

    def __init__(
        self,
        binary: str = "ffmpeg",
        *,
        playlist_profile: EncoderProfile = PLAYLIST_PROFILE,
        live_profile: EncoderProfile = LIVE_PROFILE,
    ) -> None:
        self.binary = binary
        self.playlist_profile = playlist_profile
        self.live_profile = live_profile

    def spawn(
        self,
        args: List[str],
        *,
        label: str = "encoder",
        on_exit: Optional[ExitCallback] = None,
    ) -> EncoderProcess:
        cmd = [self.binary, *args]
        logger.debug("Encoder argv: %s", cmd)
        try:
            proc = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.PIPE,
            )
        except OSError as exc:
            raise EncoderSpawnError(str(exc)) from exc
        logger.debug("Encoder started: pid=%s label=%s", proc.pid, label)
        return EncoderProcess(proc, label, on_exit).start()
