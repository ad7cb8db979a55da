import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock

import pytest

from activity_exchange.db.time import utcnow
from activity_exchange.models import ScheduledTask
from activity_exchange.services.errors import ExchangeError
from activity_exchange.services.tasks import TaskQueue, TaskWorker


@pytest.fixture
def queue(db_session):
    return TaskQueue(db_session)


def test_schedule_persists_task(queue, db_session):
    task_id = queue.schedule("send_batch", {"outbox_item_id": 1}, ttl_seconds=60)

    task = db_session.get(ScheduledTask, task_id)
    assert task.name == "send_batch"
    assert task.payload == {"outbox_item_id": 1}
    assert task.expires_at is not None


def test_due_orders_by_run_at(queue):
    now = utcnow()
    later = queue.schedule("b", {}, run_at=now - timedelta(seconds=10))
    earlier = queue.schedule("a", {}, run_at=now - timedelta(minutes=5))
    queue.schedule("future", {}, run_at=now + timedelta(hours=1))

    assert [task.id for task in queue.due(now)] == [earlier, later]
    assert [task.id for task in queue.due(now, limit=1)] == [earlier]


def test_expired_tasks_are_discarded(queue):
    now = utcnow()
    queue.schedule("stale", {}, run_at=now - timedelta(hours=2), ttl_seconds=60)
    kept = queue.schedule("fresh", {}, run_at=now - timedelta(seconds=1), ttl_seconds=3600)

    assert queue.discard_expired(now + timedelta(seconds=120)) == 1
    assert [task.id for task in queue.pending()] == [kept]


def test_pending_filters_by_name(queue):
    queue.schedule("a", {})
    queue.schedule("b", {})

    assert [task.name for task in queue.pending("b")] == ["b"]


@pytest.mark.asyncio
async def test_run_once_dispatches_and_completes(queue, db_session):
    handler = AsyncMock()
    queue.schedule("ping", {"n": 1})
    worker = TaskWorker(lambda db: {"ping": handler}, db_session)

    assert await worker.run_once() == 1

    handler.assert_awaited_once_with({"n": 1})
    assert queue.pending() == []


@pytest.mark.asyncio
async def test_run_once_without_due_tasks(db_session):
    factory = AsyncMock()
    worker = TaskWorker(factory, db_session)

    assert await worker.run_once() == 0
    factory.assert_not_called()


@pytest.mark.asyncio
async def test_unknown_task_is_dropped(queue, db_session):
    queue.schedule("mystery", {})
    worker = TaskWorker(lambda db: {}, db_session)

    assert await worker.run_once() == 0
    assert queue.pending() == []


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ExchangeError("nope"), ConnectionError("down"), KeyError("x")])
async def test_failing_handler_still_completes(queue, db_session, error):
    queue.schedule("boom", {})
    queue.schedule("ok", {})
    ok = AsyncMock()
    worker = TaskWorker(lambda db: {"boom": AsyncMock(side_effect=error), "ok": ok}, db_session)

    assert await worker.run_once() == 2

    ok.assert_awaited_once()
    assert queue.pending() == []


@pytest.mark.asyncio
async def test_start_and_stop(queue, db_session):
    handled = asyncio.Event()

    async def handler(payload):
        handled.set()

    queue.schedule("ping", {})
    worker = TaskWorker(lambda db: {"ping": handler}, db_session, interval_seconds=0.1)

    await worker.start()
    await asyncio.wait_for(handled.wait(), timeout=2)
    await worker.stop()

    assert worker._task is None
    assert queue.pending() == []


class _HandlerBug(Exception):
    pass


@pytest.mark.asyncio
async def test_unexpected_handler_error_still_completes(queue, db_session):
    queue.schedule("boom", {})
    worker = TaskWorker(lambda db: {"boom": AsyncMock(side_effect=_HandlerBug("bug"))}, db_session)

    assert await worker.run_once() == 1
    assert queue.pending() == []


@pytest.mark.asyncio
async def test_worker_loop_survives_a_failing_tick(queue, db_session):
    handled = asyncio.Event()
    calls = []

    async def handler(payload):
        handled.set()

    def factory(db):
        calls.append(db)
        if len(calls) == 1:
            raise RuntimeError("handlers unavailable")
        return {"ping": handler}

    queue.schedule("ping", {})
    worker = TaskWorker(factory, db_session, interval_seconds=0.1)

    await worker.start()
    await asyncio.wait_for(handled.wait(), timeout=5)
    await worker.stop()

    assert len(calls) >= 2
    assert queue.pending() == []
