from datetime import timedelta

import pytest

from core.settings import HealthThresholds
from core.sync_types import HealthStatus
from services.sync_health import HealthMonitor


SEVERITY = {HealthStatus.HEALTHY: 0, HealthStatus.WARNING: 1, HealthStatus.CRITICAL: 2}


@pytest.fixture
def monitor(queue, state, clock):
    return HealthMonitor(queue, state, now=clock)


def _fill(queue, count, prefix="p"):
    return [queue.enqueue("products", f"{prefix}{i}", "update", {}).id for i in range(count)]


def test_fresh_pending_queue_is_healthy(monitor, queue, state, clock):
    _fill(queue, 100)
    state.set_last_push(clock.now - timedelta(minutes=2))

    report = monitor.check()

    assert report.status is HealthStatus.HEALTHY
    assert report.alerts == []
    assert report.warnings == []
    assert report.metrics.pending == 100
    assert report.metrics.last_sync_age_minutes == 2


def test_high_error_rate_is_critical_with_alert(monitor, queue, state, clock):
    ids = _fill(queue, 100)
    state.set_last_push(clock.now - timedelta(minutes=2))
    for item_id in ids[:40]:
        queue.mark_error(item_id, "[RETRYABLE] HTTP 503")

    report = monitor.check()

    assert report.metrics.error_rate == 40.0
    assert report.status is HealthStatus.CRITICAL
    assert any("Error rate" in alert for alert in report.alerts)
    assert report.to_dict()["metrics"]["errorRate"] == 40.0


def test_moderate_error_rate_is_a_warning(monitor, queue, state, clock):
    ids = _fill(queue, 100)
    state.set_last_push(clock.now - timedelta(minutes=2))
    for item_id in ids[:15]:
        queue.mark_error(item_id, "[RETRYABLE] HTTP 503")

    report = monitor.check()

    assert report.status is HealthStatus.WARNING
    assert report.alerts == []
    assert any("Error rate" in warning for warning in report.warnings)


def test_stuck_items_are_critical(monitor, queue, state, clock):
    (item_id,) = _fill(queue, 1)
    _fill(queue, 99, prefix="ok")
    state.set_last_push(clock.now)
    for _ in range(4):
        queue.mark_error(item_id, "[RETRYABLE] HTTP 503")

    report = monitor.check()

    assert report.metrics.stuck == 1
    assert report.status is HealthStatus.CRITICAL
    assert any("failed more than 3 times" in alert for alert in report.alerts)


def test_no_sync_for_too_long_while_items_wait_is_critical(monitor, queue, state, clock):
    state.set_last_push(clock.now)
    clock.advance(minutes=90)
    _fill(queue, 3)

    report = monitor.check()

    assert report.status is HealthStatus.CRITICAL
    assert any("No successful sync" in alert for alert in report.alerts)


def test_never_synced_queue_goes_critical_once_items_age(monitor, queue, clock):
    _fill(queue, 3)
    clock.advance(minutes=20)
    assert monitor.check().status is HealthStatus.HEALTHY

    clock.advance(minutes=50)
    report = monitor.check()
    assert report.metrics.last_sync_at is None
    assert report.status is HealthStatus.CRITICAL


def test_aged_pending_items_raise_a_warning(monitor, queue, state, clock):
    _fill(queue, 2)
    clock.advance(minutes=45)
    state.set_last_push(clock.now - timedelta(minutes=1))

    report = monitor.check()

    assert report.status is HealthStatus.WARNING
    assert report.metrics.oldest_pending_age_minutes == 45


def test_stale_syncing_rows_raise_a_warning(monitor, queue, state, clock):
    (item_id,) = _fill(queue, 1)
    queue.mark_syncing([item_id])
    clock.advance(minutes=10)
    state.set_last_push(clock.now)

    report = monitor.check()

    assert report.metrics.stale_syncing == 1
    assert report.status is HealthStatus.WARNING


def test_last_sync_survives_clearing_synced_rows(monitor, queue, state, clock):
    (item_id,) = _fill(queue, 1)
    queue.mark_syncing([item_id])
    queue.mark_synced(item_id)
    state.set_last_push(clock.now)
    queue.clear("synced")
    clock.advance(minutes=7)

    assert monitor.check().metrics.last_sync_age_minutes == 7


def test_more_errors_never_improve_the_verdict(queue, state, clock):
    monitor = HealthMonitor(queue, state, thresholds=HealthThresholds(), now=clock)
    ids = _fill(queue, 50)
    state.set_last_push(clock.now)
    previous = SEVERITY[monitor.check().status]

    for item_id in ids:
        queue.mark_error(item_id, "[RETRYABLE] HTTP 503")
        current = SEVERITY[monitor.check().status]
        assert current >= previous
        previous = current

    assert previous == SEVERITY[HealthStatus.CRITICAL]


def test_report_dict_shape(monitor, queue):
    _fill(queue, 1)

    payload = monitor.check().to_dict()

    assert set(payload) == {"status", "alerts", "warnings", "metrics"}
    assert {"errorRate", "stuck", "lastSyncAgeMinutes", "recentErrors"} <= set(payload["metrics"])
