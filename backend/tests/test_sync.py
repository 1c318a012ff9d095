from __future__ import annotations

import asyncio

import pytest

from goalie_core import ConnectivityMonitor, OfflineQueue, SyncReconciler
from goalie_core.errors import NotFoundError, ValidationError
from goalie_core.models import CreateEventPayload, DeleteEventPayload, format_timestamp, utc_now

from conftest import FakeEventStore


class _RejectingStore(FakeEventStore):
    """Rejects events recorded against a period called BAD."""

    async def append_event(self, game_id, event_type, period, created_by=None, **kwargs):
        if period == "BAD":
            self.append_calls.append({"game_id": game_id, "period": period})
            raise ValidationError("invalid period")
        return await super().append_event(game_id, event_type, period, created_by, **kwargs)


def _create(queue: OfflineQueue, event_id: str, event_type: str = "save", period: str = "P1"):
    return queue.enqueue(
        CreateEventPayload(
            game_id="game-1",
            event_type=event_type,
            period=period,
            event_id=event_id,
            recorded_at=format_timestamp(utc_now()),
        )
    )


@pytest.fixture
def queue(tmp_path) -> OfflineQueue:
    return OfflineQueue(tmp_path / "offline_queue.json")


@pytest.mark.asyncio
async def test_sync_drains_all_creates(queue, fake_store) -> None:
    for index in range(5):
        _create(queue, f"event-{index}")

    result = await SyncReconciler(queue, fake_store).sync()

    assert result.as_dict() == {"synced": 5, "failed": 0, "skipped": 0, "errors": []}
    assert queue.list_unsynced() == []
    assert queue.all() == []
    assert sorted(fake_store.rows) == [f"event-{index}" for index in range(5)]
    assert all(row.synced for row in fake_store.rows.values())


@pytest.mark.asyncio
async def test_sync_failure_leaves_record_for_retry(queue, fake_store) -> None:
    record = _create(queue, "event-1")
    fake_store.online = False

    result = await SyncReconciler(queue, fake_store).sync()

    assert (result.synced, result.failed) == (0, 1)
    assert result.errors
    pending = queue.list_unsynced()
    assert [item.id for item in pending] == [record.id]
    assert pending[0].attempts == 1
    assert "network unreachable" in pending[0].last_error

    fake_store.online = True
    retry = await SyncReconciler(queue, fake_store).sync()

    assert (retry.synced, retry.failed) == (1, 0)
    assert queue.pending_count() == 0


@pytest.mark.asyncio
async def test_one_bad_record_does_not_block_others(queue) -> None:
    store = _RejectingStore()
    store.add_game()
    _create(queue, "good-1")
    bad = _create(queue, "bad-1", period="BAD")
    _create(queue, "good-2")

    result = await SyncReconciler(queue, store).sync()

    assert (result.synced, result.failed) == (2, 1)
    assert [record.id for record in queue.list_unsynced()] == [bad.id]
    assert set(store.rows) == {"good-1", "good-2"}


@pytest.mark.asyncio
async def test_delete_of_absent_event_counts_as_synced(queue, fake_store) -> None:
    queue.enqueue(DeleteEventPayload(game_id="game-1", event_id="never-existed"))
    queue.enqueue(DeleteEventPayload(game_id="game-1", event_id="gone-already"))

    first = await SyncReconciler(queue, fake_store).sync()
    assert (first.synced, first.failed) == (2, 0)

    queue.enqueue(DeleteEventPayload(game_id="game-1", event_id="missing"))
    fake_store.delete_error = NotFoundError("no rows")
    second = await SyncReconciler(queue, fake_store).sync()

    assert (second.synced, second.failed) == (1, 0)
    assert queue.pending_count() == 0


@pytest.mark.asyncio
async def test_delete_removes_remote_row(queue, fake_store) -> None:
    event = fake_store.seed_event("game-1", "goal", "P2", minutes=3)
    queue.enqueue(DeleteEventPayload(game_id="game-1", event_id=event.id))

    result = await SyncReconciler(queue, fake_store).sync()

    assert result.synced == 1
    assert event.id not in fake_store.rows


@pytest.mark.asyncio
async def test_replayed_create_already_present_counts_as_synced(queue, fake_store) -> None:
    _create(queue, "event-1")
    await fake_store.append_event("game-1", "save", "P1", event_id="event-1")

    result = await SyncReconciler(queue, fake_store).sync()

    assert (result.synced, result.failed) == (1, 0)
    assert list(fake_store.rows) == ["event-1"]


@pytest.mark.asyncio
async def test_max_attempts_skips_repeatedly_failing_records(queue, fake_store) -> None:
    _create(queue, "event-1")
    fake_store.online = False
    reconciler = SyncReconciler(queue, fake_store, max_attempts=2)

    await reconciler.sync()
    await reconciler.sync()
    fake_store.online = True
    result = await reconciler.sync()

    assert (result.synced, result.failed, result.skipped) == (0, 0, 1)
    assert queue.pending_count() == 1
    assert fake_store.rows == {}


@pytest.mark.asyncio
async def test_concurrent_sync_call_does_not_drain_twice(queue, fake_store) -> None:
    _create(queue, "event-1")
    fake_store.append_gate = asyncio.Event()
    reconciler = SyncReconciler(queue, fake_store)

    running = asyncio.create_task(reconciler.sync())
    await asyncio.sleep(0)
    assert reconciler.running

    overlapping = await reconciler.sync()
    assert (overlapping.synced, overlapping.failed) == (0, 0)

    fake_store.append_gate.set()
    finished = await running
    assert finished.synced == 1
    assert len(fake_store.append_calls) == 1


@pytest.mark.asyncio
async def test_attached_reconciler_runs_when_back_online(queue, fake_store) -> None:
    monitor = ConnectivityMonitor(online=False)
    reconciler = SyncReconciler(queue, fake_store)
    reconciler.attach(monitor)
    _create(queue, "event-1")
    _create(queue, "event-2", event_type="goal")

    monitor.set_online(True)
    await monitor.drain()

    assert reconciler.pending_count() == 0
    assert set(fake_store.rows) == {"event-1", "event-2"}

    reconciler.detach()
    _create(queue, "event-3")
    monitor.set_online(False)
    monitor.set_online(True)
    await monitor.drain()
    assert reconciler.pending_count() == 1


def test_sync_script_requires_supabase(tmp_path, monkeypatch, capsys):
    from scripts.sync_offline_queue import main

    monkeypatch.delenv("SUPABASE_URL", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)
    monkeypatch.delenv("SUPABASE_SERVICE_KEY", raising=False)
    monkeypatch.delenv("SUPABASE_ANON_KEY", raising=False)

    assert main(["--queue", str(tmp_path / "queue.json")]) == 1
    assert "Supabase configuration is required" in capsys.readouterr().err
