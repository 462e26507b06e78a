"""
Background jobs owned by the application lifespan.

PeriodicTask runs run_once() every interval_sec in a daemon thread until
stop() is called. request_run() wakes the loop early; run_once() can also be
called directly, which is how tests drive the jobs without threads.

- NetworkStatsRefresher recomputes the process-wide NetworkStats.
- SettlementReconciler resolves pending settlement references and retries
  failed settlements.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .config import BASE_RATE
from .errors import SettlementUnavailable, UserNotFound
from .levels import LevelProgression
from .log import get_logger
from .models import NetworkStats, SettlementStatus, utcnow
from .settlement import SettlementClient
from .storage import Storage

logger = get_logger(__name__)

SHUTDOWN_JOIN_TIMEOUT_SEC = 15.0


class PeriodicTask:
    name = "periodic-task"

    def __init__(self, interval_sec: float):
        if interval_sec <= 0:
            raise ValueError(f"interval_sec must be positive, got {interval_sec}")
        self.interval_sec = interval_sec
        self.tick_count = 0
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def run_once(self):
        raise NotImplementedError

    def tick(self) -> None:
        self.tick_count += 1
        try:
            self.run_once()
        except Exception as e:
            logger.exception("periodic_tick_failed", task=self.name, tick=self.tick_count, error=str(e))

    def request_run(self) -> None:
        self._wake.set()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info("periodic_task_started", task=self.name, interval_sec=self.interval_sec)

    def stop(self, timeout: float = SHUTDOWN_JOIN_TIMEOUT_SEC) -> None:
        self._stop.set()
        self._wake.set()
        if self._thread is None:
            return
        self._thread.join(timeout=timeout)
        if self._thread.is_alive():
            logger.warning("periodic_task_shutdown_timeout", task=self.name, timeout_sec=timeout)
        else:
            logger.info("periodic_task_stopped", task=self.name, tick_count=self.tick_count)
        self._thread = None

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.tick()
            self._wake.wait(timeout=self.interval_sec)
            self._wake.clear()


class NetworkStatsRefresher(PeriodicTask):
    name = "network-stats"

    def __init__(self, storage: Storage, interval_sec: float = 300.0,
                 clock: Callable[[], datetime] = utcnow):
        super().__init__(interval_sec)
        self.storage = storage
        self.clock = clock

    def request_refresh(self) -> None:
        self.request_run()

    def run_once(self) -> NetworkStats:
        stats = self.storage.update_network_stats(NetworkStats(
            active_sessions=self.storage.count_active_sessions(),
            total_supply=self.storage.sum_all_wallet_balances(),
            base_rate=BASE_RATE,
            updated_at=self.clock(),
        ))
        logger.debug(
            "network_stats_refreshed",
            active_sessions=stats.active_sessions,
            total_supply=str(stats.total_supply),
        )
        return stats


@dataclass
class ReconcileSummary:
    resolved: int = 0
    still_pending: int = 0
    retried: int = 0
    still_failed: int = 0
    abandoned: int = 0


class SettlementReconciler(PeriodicTask):
    name = "settlement-reconciler"

    def __init__(self, storage: Storage, client: SettlementClient, levels: LevelProgression,
                 interval_sec: float = 60.0, max_attempts: int = 5):
        super().__init__(interval_sec)
        self.storage = storage
        self.client = client
        self.levels = levels
        self.max_attempts = max_attempts

    def run_once(self) -> ReconcileSummary:
        summary = ReconcileSummary()

        for record in self.storage.list_settlements_by_status(SettlementStatus.PENDING):
            if not record.needs_reference:
                continue
            updated = self.client.resolve_pending(record)
            if updated.status == SettlementStatus.COMPLETED:
                summary.resolved += 1
            else:
                summary.still_pending += 1

        for record in self.storage.list_settlements_by_status(SettlementStatus.FAILED):
            if record.attempts >= self.max_attempts:
                summary.abandoned += 1
                continue
            try:
                self.client.retry(record)
            except (SettlementUnavailable, UserNotFound):
                summary.still_failed += 1
                continue
            summary.retried += 1
            self.levels.on_settlement(record.user_id, self.storage.sum_settled_for_user(record.user_id))

        if summary.resolved or summary.retried or summary.still_failed or summary.abandoned:
            logger.info("settlements_reconciled", **summary.__dict__)
        return summary
