import asyncio

import pytest

from conftest import FakeRemote, build_engine
from core.sync_types import SyncStatus
from models import SyncQueueRow
from services.connection_monitor import ConnectionMonitor
from services.sync_engine import SKIP_BUSY, SKIP_OFFLINE
from services.sync_errors import PERMANENT_PREFIX, RETRYABLE_PREFIX, RemoteError, SyncConfigurationError


def _pushed(remote):
    return [call for call in remote.calls if call[0] in ("upsert", "delete")]


@pytest.mark.asyncio
async def test_same_record_items_are_pushed_in_id_order(session_factory, queue, state, remote, applier):
    engine = build_engine(session_factory, queue, state, remote, applier, max_concurrency=4)
    first = queue.enqueue("products", "p1", "update", {"seq": 1})
    queue.enqueue("products", "p2", "update", {"seq": "other"})
    second = queue.enqueue("products", "p1", "update", {"seq": 2})
    # the first write is slow; a naive parallel push would overtake it
    remote.delays["p1"] = 0.05

    result = await engine.sync_all()

    assert result.synced_count == 3
    assert result.error_count == 0
    p1_payloads = [call[3]["seq"] for call in _pushed(remote) if call[2] == "p1"]
    assert p1_payloads == [1, 2]
    assert queue.get(first.id).sync_status is SyncStatus.SYNCED
    assert queue.get(second.id).synced_at is not None


@pytest.mark.asyncio
async def test_timeout_errors_item_and_reset_lets_it_sync(session_factory, queue, state, remote, applier):
    engine = build_engine(
        session_factory, queue, state, remote, applier, request_timeout_sec=0.05, auto_retry_enabled=False
    )
    item = queue.enqueue("products", "p5", "update", {"price": 10})
    remote.delays["p5"] = 1

    result = await engine.sync_all()

    assert result.error_count == 1
    failed = queue.get(item.id)
    assert failed.sync_status is SyncStatus.ERROR
    assert failed.retry_count == 1
    assert failed.error_message.startswith(RETRYABLE_PREFIX)

    assert queue.reset_failed() == 1
    reset = queue.get(item.id)
    assert reset.sync_status is SyncStatus.PENDING
    assert reset.retry_count == 0

    remote.delays.clear()
    again = await engine.sync_all()
    assert again.synced_count == 1
    assert queue.get(item.id).sync_status is SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_failure_blocks_later_items_of_the_same_record_only(sync_engine, queue, remote):
    failing = queue.enqueue("products", "p1", "update", {"v": 1})
    later = queue.enqueue("products", "p1", "update", {"v": 2})
    independent = queue.enqueue("products", "p2", "update", {"v": 1})
    remote.fail("p1", RemoteError("HTTP 400: invalid price", 400))

    result = await sync_engine.sync_all()

    assert result.synced_count == 1
    assert result.error_count == 1
    assert result.blocked_count == 1
    assert queue.get(failing.id).error_message.startswith(PERMANENT_PREFIX)
    assert queue.get(later.id).sync_status is SyncStatus.PENDING
    assert queue.get(independent.id).sync_status is SyncStatus.SYNCED

    # still blocked on the next run while the earlier item is errored
    rerun = await sync_engine.sync_all()
    assert rerun.synced_count == 0
    assert rerun.blocked_count == 1
    assert queue.get(later.id).sync_status is SyncStatus.PENDING


@pytest.mark.asyncio
async def test_auto_retry_requeues_transient_failures_after_backoff(sync_engine, queue, remote, clock):
    item = queue.enqueue("products", "p1", "update", {})
    remote.fail("p1", RemoteError("HTTP 503: unavailable", 503))

    first = await sync_engine.sync_all()
    assert first.error_count == 1

    clock.advance(seconds=10)
    second = await sync_engine.sync_all()

    assert second.requeued_count == 1
    assert second.synced_count == 1
    done = queue.get(item.id)
    assert done.sync_status is SyncStatus.SYNCED
    assert done.retry_count == 1


@pytest.mark.asyncio
async def test_single_flight_guard_rejects_overlapping_runs(sync_engine, queue, remote):
    queue.enqueue("products", "p1", "update", {})
    remote.gate = asyncio.Event()

    running = asyncio.create_task(sync_engine.sync_all())
    await remote.entered.wait()

    assert sync_engine.is_locked
    overlapping_push = await sync_engine.sync_all()
    overlapping_pull = await sync_engine.pull_changes()
    assert overlapping_push.skipped == SKIP_BUSY
    assert overlapping_pull.skipped == SKIP_BUSY

    remote.gate.set()
    finished = await running
    assert finished.synced_count == 1
    assert not sync_engine.is_locked


@pytest.mark.asyncio
async def test_unconfigured_remote_is_a_systemic_failure(session_factory, queue, state, applier):
    engine = build_engine(session_factory, queue, state, FakeRemote(configured=False), applier)
    item = queue.enqueue("products", "p1", "update", {})

    with pytest.raises(SyncConfigurationError):
        await engine.sync_all()
    assert queue.get(item.id).sync_status is SyncStatus.PENDING
    assert not engine.is_locked


@pytest.mark.asyncio
async def test_offline_push_is_skipped_without_touching_items(session_factory, queue, state, remote, applier):
    monitor = ConnectionMonitor(remote, timeout=0.5)
    monitor.connected = False
    remote.online = False
    engine = build_engine(session_factory, queue, state, remote, applier, connection=monitor)
    item = queue.enqueue("products", "p1", "update", {})

    result = await engine.sync_all()

    assert result.skipped == SKIP_OFFLINE
    assert queue.get(item.id).sync_status is SyncStatus.PENDING
    assert remote.calls == []


@pytest.mark.asyncio
async def test_stale_offline_signal_is_reprobed(session_factory, queue, state, remote, applier):
    monitor = ConnectionMonitor(remote, timeout=0.5)
    monitor.connected = False
    engine = build_engine(session_factory, queue, state, remote, applier, connection=monitor)
    queue.enqueue("products", "p1", "update", {})

    result = await engine.sync_all()

    assert result.synced_count == 1
    assert monitor.connected is True


@pytest.mark.asyncio
async def test_items_left_syncing_by_a_crash_are_retried(sync_engine, queue):
    item = queue.enqueue("products", "p1", "update", {})
    queue.mark_syncing([item.id])

    assert sync_engine.recover_on_startup() == 1
    result = await sync_engine.sync_all()

    assert result.synced_count == 1
    assert queue.get(item.id).sync_status is SyncStatus.SYNCED


@pytest.mark.asyncio
async def test_unacknowledged_push_never_becomes_synced(sync_engine, queue, remote):
    item = queue.enqueue("products", "p1", "update", {})
    remote.fail("p1", ConnectionError("connection reset"))

    await sync_engine.sync_all()

    stored = queue.get(item.id)
    assert stored.sync_status is SyncStatus.ERROR
    assert stored.synced_at is None


@pytest.mark.asyncio
async def test_remote_assigned_ids_are_used_for_later_mutations(sync_engine, queue, state, remote):
    queue.enqueue("customers", "7", "create", {"name": "Ada"})
    remote.remote_ids["7"] = "srv-7"
    await sync_engine.sync_all()
    assert state.remote_id_for("customers", "7") == "srv-7"

    queue.enqueue("customers", "7", "delete", {"name": "Ada"})
    await sync_engine.sync_all()

    assert _pushed(remote)[-1][:3] == ("delete", "customers", "srv-7")


@pytest.mark.asyncio
async def test_items_enqueued_after_run_start_wait_for_next_run(sync_engine, queue, remote):
    queue.enqueue("products", "p1", "update", {})
    remote.gate = asyncio.Event()

    running = asyncio.create_task(sync_engine.sync_all())
    await remote.entered.wait()
    late = queue.enqueue("products", "p2", "update", {})
    remote.gate.set()
    result = await running

    assert result.synced_count == 1
    assert queue.get(late.id).sync_status is SyncStatus.PENDING


@pytest.mark.asyncio
async def test_undecodable_payload_fails_permanently(sync_engine, queue, session_factory):
    with session_factory() as session:
        row = SyncQueueRow(table_name="products", record_id="p1", change_type="update", data="{oops")
        session.add(row)
        session.commit()
        session.refresh(row)
        row_id = row.id

    result = await sync_engine.sync_all()

    assert result.error_count == 1
    stored = queue.get(row_id)
    assert stored.sync_status is SyncStatus.ERROR
    assert stored.error_message.startswith(PERMANENT_PREFIX)


@pytest.mark.asyncio
async def test_rate_limited_items_back_off_for_the_rate_limit_delay(sync_engine, queue, remote, clock):
    item = queue.enqueue("products", "p1", "update", {})
    remote.fail("p1", RemoteError("HTTP 429: too many requests", 429))

    await sync_engine.sync_all()
    clock.advance(seconds=30)
    early = await sync_engine.sync_all()

    assert early.requeued_count == 0
    assert queue.get(item.id).sync_status is SyncStatus.ERROR

    clock.advance(seconds=30)
    later = await sync_engine.sync_all()

    assert later.requeued_count == 1
    assert queue.get(item.id).sync_status is SyncStatus.SYNCED
