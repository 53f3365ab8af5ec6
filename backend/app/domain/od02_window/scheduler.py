"""OD-02 window scheduler.

Readiness is always recomputed from the pending store. Soft timers only cut
latency for entries admitted by this process; the periodic sweep is what
guarantees every quiet entry is eventually validated, including entries
whose timer died with a previous process.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from ...config.loader import ConsolidationConfig
from ...infra.logging import get_logger
from ...infra.metrics import PENDING_READY, MetricsClient, get_metrics_client
from ..od03_validation.service import ProcessResult, Validator
from ..od04_pendingstore.gateway import PendingStoreError, PendingStoreGateway
from ..od04_pendingstore.models import PendingEntry, utcnow

__all__ = ["SweepReport", "WindowScheduler"]

logger = get_logger(__name__)

# Fire slightly after the quiet boundary so the claim's own clock read is past it.
_TIMER_SLACK_SECONDS = 0.05

Clock = Callable[[], datetime]
TimerFactory = Callable[..., threading.Timer]


@dataclass
class SweepReport:
    ready: int = 0
    outcomes: Dict[str, int] = field(default_factory=dict)
    recovered: Dict[str, int] = field(default_factory=dict)
    errors: int = 0

    def to_dict(self) -> Dict[str, object]:
        return {
            "ready": self.ready,
            "outcomes": dict(self.outcomes),
            "recovered": dict(self.recovered),
            "errors": self.errors,
        }


class WindowScheduler:
    """Soft timers plus a reconciling sweep over stored readiness."""

    def __init__(
        self,
        *,
        store: PendingStoreGateway,
        validator: Validator,
        config: Optional[ConsolidationConfig] = None,
        clock: Clock = utcnow,
        metrics: Optional[MetricsClient] = None,
        timer_factory: TimerFactory = threading.Timer,
        batch_size: int = 100,
    ) -> None:
        self._store = store
        self._validator = validator
        self._config = config or ConsolidationConfig()
        self._clock = clock
        self._metrics = metrics or get_metrics_client()
        self._timer_factory = timer_factory
        self._batch_size = batch_size
        self._timers: Dict[str, threading.Timer] = {}
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def quiet_window(self) -> timedelta:
        return timedelta(seconds=self._config.quiet_window_seconds)

    @property
    def claim_timeout(self) -> timedelta:
        return timedelta(seconds=self._config.claim_timeout_seconds)

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def pending_timers(self) -> int:
        with self._lock:
            return len(self._timers)

    # ------------------------------------------------------------------
    # Soft timers
    # ------------------------------------------------------------------
    def arm(self, entry: PendingEntry) -> None:
        """(Re)schedule a readiness check for the moment ``entry`` turns quiet."""

        if not self._config.soft_timers:
            return
        delay = (entry.ready_at(self.quiet_window) - self._clock()).total_seconds()
        delay = max(delay, 0.0) + _TIMER_SLACK_SECONDS
        timer = self._timer_factory(delay, self._fire, args=(entry.entry_id,))
        timer.daemon = True
        with self._lock:
            previous = self._timers.pop(entry.entry_id, None)
            if previous is not None:
                previous.cancel()
            self._timers[entry.entry_id] = timer
        timer.start()
        logger.debug(
            "window_timer_armed",
            extra={"entry_id": entry.entry_id, "delay_seconds": round(delay, 3)},
        )

    def _fire(self, entry_id: str) -> None:
        with self._lock:
            if self._timers.get(entry_id) is threading.current_thread():
                del self._timers[entry_id]
        self._process(entry_id, source="timer")

    def cancel_timers(self) -> None:
        with self._lock:
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    # ------------------------------------------------------------------
    # Sweep
    # ------------------------------------------------------------------
    def sweep_once(self, now: Optional[datetime] = None) -> SweepReport:
        """Validate every entry that is quiet now, then recover stale claims."""

        now = now or self._clock()
        report = SweepReport()
        outcomes: Counter[str] = Counter()
        try:
            ready = self._store.list_ready(
                now=now, quiet_window=self.quiet_window, limit=self._batch_size
            )
        except PendingStoreError:
            logger.error("window_sweep_list_failed", exc_info=True)
            report.errors += 1
            return report

        report.ready = len(ready)
        self._metrics.gauge(PENDING_READY, len(ready))
        for entry in ready:
            result = self._process(entry.entry_id, source="sweep")
            if result is None:
                report.errors += 1
            else:
                outcomes[result.outcome] += 1
        report.outcomes = dict(outcomes)
        report.recovered = self.recover_stale_claims(now)

        if report.ready or report.recovered or report.errors:
            logger.info("window_sweep_completed", extra=report.to_dict())
        return report

    def recover_stale_claims(self, now: Optional[datetime] = None) -> Dict[str, int]:
        """Retire or release claims older than ``claim_timeout``."""

        now = now or self._clock()
        actions: Counter[str] = Counter()
        try:
            stale = self._store.list_stale_claims(
                now=now, claim_timeout=self.claim_timeout, limit=self._batch_size
            )
        except PendingStoreError:
            logger.error("window_stale_claims_list_failed", exc_info=True)
            return {}
        for entry in stale:
            try:
                actions[self._validator.recover_claim(entry)] += 1
            except Exception:
                logger.exception(
                    "window_claim_recovery_failed",
                    extra={"entry_id": entry.entry_id},
                )
        return dict(actions)

    def _process(self, entry_id: str, *, source: str) -> Optional[ProcessResult]:
        try:
            result = self._validator.try_claim_and_process(entry_id)
        except Exception:
            logger.exception(
                "window_check_failed",
                extra={"entry_id": entry_id, "source": source},
            )
            return None
        logger.debug(
            "window_check_completed",
            extra={"entry_id": entry_id, "source": source, "outcome": result.outcome},
        )
        return result

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------
    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="offerdesk-window-sweeper", daemon=True
        )
        self._thread.start()
        logger.info(
            "window_sweeper_started",
            extra={"interval_seconds": self._config.sweep_interval_seconds},
        )

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        self.cancel_timers()
        thread, self._thread = self._thread, None
        if thread is not None:
            thread.join(timeout)
        logger.info("window_sweeper_stopped")

    def _run(self) -> None:
        while not self._stop_event.wait(self._config.sweep_interval_seconds):
            try:
                self.sweep_once()
            except Exception:  # noqa: BLE001 - the loop must outlive one bad pass
                logger.exception("window_sweep_crashed")
