from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Optional

from encoder import HlsOutput

from .store import StationStore

LOGGER = logging.getLogger(__name__)

ABANDON_REASON = "Auto-recovery failed after multiple attempts"


@dataclass
class HealthCheck:
    status: str
    age_s: Optional[float] = None
    recovered: bool = False
    abandoned: bool = False


class HealthSupervisor:
    """Watches the HLS playlist and restarts a stream that stopped producing.

    A check only counts while the station claims to be streaming. After
    ``failure_threshold`` consecutive failures each further failing check
    runs one recovery cycle; once the counter passes ``max_failures`` with
    recovery still failing, the stream is abandoned until someone starts it
    again.
    """

    def __init__(
        self,
        store: StationStore,
        station,
        output: HlsOutput,
        *,
        interval_s: float = 30.0,
        stale_after_s: float = 60.0,
        failure_threshold: int = 2,
        max_failures: int = 6,
        recovery_wait_s: float = 3.0,
    ) -> None:
        self._store = store
        self._station = station
        self._output = output
        self.interval_s = interval_s
        self.stale_after_s = stale_after_s
        self.failure_threshold = failure_threshold
        self.max_failures = max_failures
        self.recovery_wait_s = recovery_wait_s
        self._failures = 0
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def consecutive_failures(self) -> int:
        return self._failures

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._loop, name="health-supervisor", daemon=True
        )
        self._thread.start()
        LOGGER.info("Health supervisor started (every %.0fs)", self.interval_s)

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=self.recovery_wait_s + 1)
        self._thread = None
        LOGGER.info("Health supervisor stopped")

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_s):
            try:
                self.check_health()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Health check failed")

    def check_health(self) -> HealthCheck:
        with self._lock:
            state = self._store.get_station_state()
            if not state.is_streaming:
                self._failures = 0
                return HealthCheck("idle")

            try:
                age = self._output.last_modified_age() if self._output.exists() else None
            except OSError as exc:
                LOGGER.error("Health check error: %s", exc)
                return self._handle_failure(HealthCheck("missing"))

            if age is None:
                LOGGER.warning("HLS playlist missing - stream may have crashed")
                return self._handle_failure(HealthCheck("missing"))
            if age > self.stale_after_s:
                LOGGER.warning(
                    "HLS playlist stale (%ds old) - stream may be frozen", round(age)
                )
                return self._handle_failure(HealthCheck("stale", age_s=age))

            self._failures = 0
            return HealthCheck("healthy", age_s=age)

    def _handle_failure(self, check: HealthCheck) -> HealthCheck:
        self._failures += 1
        LOGGER.warning("Health check failed (%d consecutive failures)", self._failures)
        if self._failures < self.failure_threshold:
            return check

        LOGGER.warning("Auto-recovery: restarting stream")
        try:
            result = self._station.recover(self.recovery_wait_s, interrupt=self._stop_event)
            succeeded = result.success
            detail = result.message
        except Exception as exc:  # noqa: BLE001
            LOGGER.exception("Auto-recovery raised")
            succeeded = False
            detail = str(exc)

        if succeeded:
            LOGGER.info("Auto-recovery completed")
            self._failures = 0
            check.recovered = True
            return check

        LOGGER.error("Auto-recovery failed: %s", detail)
        if self._failures > self.max_failures:
            LOGGER.error("Multiple recovery attempts failed. Manual intervention required.")
            self._station.abandon(ABANDON_REASON)
            self._failures = 0
            check.abandoned = True
        return check
