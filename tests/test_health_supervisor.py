from pathlib import Path
import os
import sys
import threading
import time

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import pytest

from encoder import HlsOutput
from webapp.health import ABANDON_REASON, HealthSupervisor
from webapp.station import StartResult
from webapp.store import StationStore


class FakeStation:
    def __init__(self, store: StationStore, succeed: bool = True) -> None:
        self._store = store
        self.succeed = succeed
        self.recoveries = []
        self.abandoned = []
        self.recovered = threading.Event()

    def recover(self, wait_s, interrupt=None):
        self.recoveries.append(wait_s)
        self.recovered.set()
        if self.succeed:
            return StartResult(True, "Station started")
        return StartResult(False, "Encoder error")

    def abandon(self, reason):
        self.abandoned.append(reason)
        self._store.update_station_state(is_streaming=False, last_error=reason)


@pytest.fixture()
def store(tmp_path: Path) -> StationStore:
    store = StationStore(tmp_path / "station.db")
    store.update_station_state(is_streaming=True)
    return store


@pytest.fixture()
def output(tmp_path: Path) -> HlsOutput:
    out = HlsOutput(tmp_path / "hls")
    out.ensure_directory()
    return out


def _write_playlist(output: HlsOutput, age_s: float = 0.0) -> None:
    output.playlist_path.write_text("#EXTM3U\n", encoding="utf-8")
    stamp = time.time() - age_s
    os.utime(output.playlist_path, (stamp, stamp))


def _supervisor(store, station, output, **kwargs) -> HealthSupervisor:
    kwargs.setdefault("recovery_wait_s", 0)
    return HealthSupervisor(store, station, output, **kwargs)


def test_idle_station_is_not_checked(store, output):
    store.update_station_state(is_streaming=False)
    station = FakeStation(store)
    supervisor = _supervisor(store, station, output)
    assert supervisor.check_health().status == "idle"
    assert supervisor.check_health().status == "idle"
    assert station.recoveries == []
    assert supervisor.consecutive_failures == 0


def test_fresh_playlist_is_healthy(store, output):
    _write_playlist(output, age_s=5)
    supervisor = _supervisor(store, FakeStation(store), output)
    check = supervisor.check_health()
    assert check.status == "healthy"
    assert check.age_s == pytest.approx(5, abs=2)


def test_two_stale_checks_trigger_one_recovery(store, output):
    _write_playlist(output, age_s=120)
    station = FakeStation(store)
    supervisor = _supervisor(store, station, output)

    first = supervisor.check_health()
    assert first.status == "stale"
    assert first.recovered is False
    assert station.recoveries == []

    second = supervisor.check_health()
    assert second.recovered is True
    assert len(station.recoveries) == 1
    assert supervisor.consecutive_failures == 0


def test_missing_playlist_counts_as_failure(store, output):
    station = FakeStation(store)
    supervisor = _supervisor(store, station, output)
    assert supervisor.check_health().status == "missing"
    assert supervisor.consecutive_failures == 1


def test_healthy_check_resets_counter(store, output):
    station = FakeStation(store)
    supervisor = _supervisor(store, station, output)
    supervisor.check_health()
    assert supervisor.consecutive_failures == 1
    _write_playlist(output)
    supervisor.check_health()
    assert supervisor.consecutive_failures == 0
    supervisor.check_health()
    assert station.recoveries == []


def test_repeated_failed_recovery_abandons_stream(store, output):
    station = FakeStation(store, succeed=False)
    supervisor = _supervisor(store, station, output)
    results = [supervisor.check_health() for _ in range(7)]
    assert len(station.recoveries) == 6
    assert results[-1].abandoned is True
    assert not any(check.abandoned for check in results[:-1])
    assert station.abandoned == [ABANDON_REASON]
    state = store.get_station_state()
    assert state.is_streaming is False
    assert state.last_error == ABANDON_REASON
    assert supervisor.consecutive_failures == 0


def test_background_loop_runs_checks(store, output):
    station = FakeStation(store)
    supervisor = _supervisor(store, station, output, interval_s=0.02)
    supervisor.start()
    try:
        assert station.recovered.wait(2)
    finally:
        supervisor.stop()
    assert supervisor.running is False
