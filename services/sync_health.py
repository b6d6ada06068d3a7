from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from core.settings import HEALTH, SYNC, HealthThresholds, SyncSettings
from core.sync_types import HealthStatus, SyncStatus
from datetime_utils import minutes_since, to_rfc3339_utc, utc_now
from services.sync_log import get_sync_logger
from services.sync_queue import SyncQueue
from storage.sync_state import SyncStateStore


logger = get_sync_logger("health")


@dataclass
class HealthMetrics:
    total: int = 0
    pending: int = 0
    syncing: int = 0
    synced: int = 0
    errors: int = 0
    error_rate: float = 0.0
    stuck: int = 0
    stale_syncing: int = 0
    recent_errors: int = 0
    oldest_pending_age_minutes: Optional[int] = None
    last_sync_at: Optional[datetime] = None
    last_sync_age_minutes: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "pending": self.pending,
            "syncing": self.syncing,
            "synced": self.synced,
            "errors": self.errors,
            "errorRate": self.error_rate,
            "stuck": self.stuck,
            "staleSyncing": self.stale_syncing,
            "recentErrors": self.recent_errors,
            "oldestPendingAgeMinutes": self.oldest_pending_age_minutes,
            "lastSyncAt": to_rfc3339_utc(self.last_sync_at),
            "lastSyncAgeMinutes": self.last_sync_age_minutes,
        }


@dataclass
class HealthReport:
    status: HealthStatus
    alerts: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    metrics: HealthMetrics = field(default_factory=HealthMetrics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "alerts": list(self.alerts),
            "warnings": list(self.warnings),
            "metrics": self.metrics.to_dict(),
        }


class HealthMonitor:
    """Derives a healthy/warning/critical verdict from queue state.

    Critical conditions are checked first: error rate above the high
    threshold, stuck items, or nothing synced for too long while items wait.
    Warnings cover the lower error-rate threshold, aged pending items and
    rows left in ``syncing``.
    """

    def __init__(
        self,
        queue: SyncQueue,
        state: SyncStateStore,
        *,
        thresholds: HealthThresholds = HEALTH,
        sync_settings: SyncSettings = SYNC,
        now: Callable[[], datetime] = utc_now,
    ) -> None:
        self._queue = queue
        self._state = state
        self.thresholds = thresholds
        self.sync_settings = sync_settings
        self._now = now

    def collect(self) -> HealthMetrics:
        t = self.thresholds
        now = self._now()
        counts = self._queue.counts()

        window = self._queue.window_counts(now - timedelta(hours=t.error_rate_window_hours))
        window_total = sum(window.values())
        error_rate = 0.0
        if window_total:
            error_rate = round(window[SyncStatus.ERROR] * 100.0 / window_total, 2)

        last_synced = self._queue.last_synced_at()
        last_push = self._state.get_last_push()
        candidates = [moment for moment in (last_synced, last_push) if moment is not None]
        last_sync_at = max(candidates) if candidates else None

        oldest = self._queue.oldest_created_at([SyncStatus.PENDING, SyncStatus.ERROR])

        return HealthMetrics(
            total=sum(counts.values()),
            pending=counts[SyncStatus.PENDING],
            syncing=counts[SyncStatus.SYNCING],
            synced=counts[SyncStatus.SYNCED],
            errors=counts[SyncStatus.ERROR],
            error_rate=error_rate,
            stuck=self._queue.count_retry_above(t.stuck_retry_threshold),
            stale_syncing=self._queue.count_stale_syncing(
                now - timedelta(minutes=self.sync_settings.stale_syncing_minutes)
            ),
            recent_errors=self._queue.count_errors_since(now - timedelta(minutes=t.recent_error_window_minutes)),
            oldest_pending_age_minutes=minutes_since(oldest, now),
            last_sync_at=last_sync_at,
            last_sync_age_minutes=minutes_since(last_sync_at, now),
        )

    def check(self) -> HealthReport:
        t = self.thresholds
        m = self.collect()
        alerts: List[str] = []
        warnings: List[str] = []

        if m.error_rate > t.error_rate_critical_pct:
            alerts.append(
                f"Error rate is {m.error_rate:g}% (critical above {t.error_rate_critical_pct:g}%)"
            )
        elif m.error_rate > t.error_rate_warning_pct:
            warnings.append(
                f"Error rate is {m.error_rate:g}% (warning above {t.error_rate_warning_pct:g}%)"
            )

        if m.stuck > 0:
            alerts.append(f"{m.stuck} item(s) failed more than {t.stuck_retry_threshold} times")

        unsynced = m.pending + m.errors
        if unsynced:
            # with no sync ever recorded, the oldest waiting item stands in for the last sync
            waiting = m.last_sync_age_minutes
            if waiting is None:
                waiting = m.oldest_pending_age_minutes
            if waiting is not None and waiting > t.no_sync_critical_minutes:
                alerts.append(
                    f"No successful sync for {waiting} minutes with {unsynced} item(s) waiting"
                )

        if m.oldest_pending_age_minutes is not None and m.oldest_pending_age_minutes > t.pending_age_warning_minutes:
            warnings.append(f"Oldest unsynced item has waited {m.oldest_pending_age_minutes} minutes")

        if m.stale_syncing:
            warnings.append(
                f"{m.stale_syncing} item(s) stuck in syncing for more than "
                f"{self.sync_settings.stale_syncing_minutes} minutes"
            )

        if alerts:
            status = HealthStatus.CRITICAL
        elif warnings:
            status = HealthStatus.WARNING
        else:
            status = HealthStatus.HEALTHY

        if status is not HealthStatus.HEALTHY:
            logger.debug("Health %s: %s", status.value, "; ".join(alerts + warnings))
        return HealthReport(status=status, alerts=alerts, warnings=warnings, metrics=m)


__all__ = ["HealthMetrics", "HealthMonitor", "HealthReport"]
