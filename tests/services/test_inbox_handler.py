from unittest.mock import AsyncMock, MagicMock

import pytest

from activity_exchange.models import InboxItem
from activity_exchange.models.inbox import CONTEXT_SHARED_INBOX
from activity_exchange.services.blocks import BlockStore
from activity_exchange.services.errors import INBOX_NO_RECIPIENTS, ExchangeError
from activity_exchange.services.inbox import InboxStore
from activity_exchange.services.inbox_handler import (
    TASK_REDELIVER_ACTIVITY,
    InboxHandler,
    skip_deletions,
)
from activity_exchange.services.interfaces import InboxObserver
from activity_exchange.services.moderation import ModerationGate
from activity_exchange.services.tasks import TaskQueue

REMOTE_ACTOR = "https://remote.example/users/bob"


@pytest.fixture
def blocks(db_session):
    return BlockStore(db_session)


@pytest.fixture
def store(db_session):
    return InboxStore(db_session)


@pytest.fixture
def queue(db_session):
    return TaskQueue(db_session)


@pytest.fixture
def observer():
    return MagicMock(spec=InboxObserver)


@pytest.fixture
def handlers():
    return {"Create": AsyncMock(), "Delete": AsyncMock(), "Accept": AsyncMock()}


@pytest.fixture
def inbox_handler(store, blocks, handlers, observer, queue):
    gate = ModerationGate(blocks, disallowed_keywords=[])
    return InboxHandler(
        store,
        gate,
        handlers,
        persist_types=["Create", "Update", "Follow", "Like", "Announce"],
        observer=observer,
        scheduler=queue,
    )


@pytest.fixture
def inbound(make_activity):
    def _inbound(activity_type="Create", **kwargs):
        return make_activity(activity_type, actor=REMOTE_ACTOR, **kwargs)

    return _inbound


def test_skip_deletions():
    assert skip_deletions("Delete", {}) is True
    assert skip_deletions("Create", {}) is False


@pytest.mark.asyncio
async def test_personal_delivery_is_stored_and_handled(inbox_handler, inbound, handlers, observer, db_session):
    activity = inbound()

    outcome = await inbox_handler.receive(activity, 1)

    assert outcome.stored is True
    assert outcome.handled is True
    assert outcome.blocked is False
    handlers["Create"].assert_awaited_once_with(activity, [1], outcome.inbox_item_id)
    observer.stored.assert_called_once_with(outcome.inbox_item_id, activity, [1])
    observer.handled.assert_called_once()
    assert db_session.query(InboxItem).count() == 1


@pytest.mark.asyncio
async def test_delete_is_handled_but_never_stored(inbox_handler, inbound, handlers, db_session):
    activity = inbound("Delete", object="https://remote.example/notes/1")

    outcome = await inbox_handler.receive(activity, [1, 2])

    assert outcome.stored is False
    assert outcome.handled is True
    assert outcome.inbox_item_id is None
    handlers["Delete"].assert_awaited_once_with(activity, [1, 2], None)
    assert db_session.query(InboxItem).count() == 0


@pytest.mark.asyncio
async def test_delete_on_shared_inbox_runs_once(inbox_handler, inbound, handlers, queue, db_session):
    activity = inbound("Delete", object="https://remote.example/notes/1")

    outcome = await inbox_handler.receive(activity, [1, 2], context=CONTEXT_SHARED_INBOX)

    assert outcome.handled is True
    handlers["Delete"].assert_awaited_once()
    assert db_session.query(InboxItem).count() == 0
    assert queue.pending(TASK_REDELIVER_ACTIVITY) == []


@pytest.mark.asyncio
async def test_shared_delivery_is_stored_and_redelivered_later(inbox_handler, inbound, handlers, queue, store):
    activity = inbound()

    outcome = await inbox_handler.receive(activity, [1, 2], context=CONTEXT_SHARED_INBOX)

    assert outcome.stored is True
    assert outcome.handled is False
    handlers["Create"].assert_not_awaited()
    item = store.get(outcome.inbox_item_id)
    assert item.context == CONTEXT_SHARED_INBOX
    assert store.get_recipients(item.id) == [1, 2]

    tasks = queue.pending(TASK_REDELIVER_ACTIVITY)
    assert len(tasks) == 1
    assert tasks[0].payload == {"activity": activity, "recipients": [1, 2]}

    redeliver = inbox_handler.task_handlers()[TASK_REDELIVER_ACTIVITY]
    await redeliver(tasks[0].payload)

    assert handlers["Create"].await_count == 2
    handlers["Create"].assert_any_await(activity, [1], item.id)
    handlers["Create"].assert_any_await(activity, [2], item.id)
    assert store.get_recipients(item.id) == [1, 2]


@pytest.mark.asyncio
async def test_repeat_delivery_merges_recipients(inbox_handler, inbound, store, db_session):
    activity = inbound()

    first = await inbox_handler.receive(activity, 1)
    second = await inbox_handler.receive(activity, [2, 3])

    assert first.inbox_item_id == second.inbox_item_id
    assert store.get_recipients(first.inbox_item_id) == [1, 2, 3]
    assert db_session.query(InboxItem).count() == 1


@pytest.mark.asyncio
async def test_blocked_sender_is_dropped(inbox_handler, inbound, blocks, handlers, observer, db_session):
    blocks.add_site_block("domain", "remote.example")
    activity = inbound()

    outcome = await inbox_handler.receive(activity, [1, 2])

    assert outcome.blocked is True
    assert outcome.stored is False
    handlers["Create"].assert_not_awaited()
    observer.blocked.assert_called_once_with(activity, [1, 2])
    assert db_session.query(InboxItem).count() == 0


@pytest.mark.asyncio
async def test_actor_block_removes_only_that_recipient(inbox_handler, inbound, blocks, store):
    blocks.add_actor_block(1, "actor", REMOTE_ACTOR)

    outcome = await inbox_handler.receive(inbound(), [1, 2])

    assert outcome.stored is True
    assert store.get_recipients(outcome.inbox_item_id) == [2]


@pytest.mark.asyncio
async def test_no_recipients_is_reported(inbox_handler, inbound, handlers):
    outcome = await inbox_handler.receive(inbound(), [])

    assert outcome.failure is not None
    assert outcome.failure.code == INBOX_NO_RECIPIENTS
    handlers["Create"].assert_not_awaited()


@pytest.mark.asyncio
async def test_invalid_activity_is_reported(inbox_handler):
    outcome = await inbox_handler.receive("not an activity", 1)

    assert outcome.failure is not None
    assert outcome.stored is False


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [ValueError("boom"), ExchangeError("boom")])
async def test_handler_error_is_logged_on_item(inbox_handler, inbound, handlers, store, observer, error):
    handlers["Create"].side_effect = error

    outcome = await inbox_handler.receive(inbound(), 1)

    assert outcome.stored is True
    assert outcome.handled is False
    assert store.get(outcome.inbox_item_id).errors == ["Create: boom"]
    observer.handled.assert_not_called()


@pytest.mark.asyncio
async def test_non_persisted_type_is_still_handled(inbox_handler, inbound, handlers, db_session):
    activity = inbound("Accept", object="https://local.example/activities/follow-1")

    outcome = await inbox_handler.receive(activity, 1)

    assert outcome.stored is False
    assert outcome.handled is True
    handlers["Accept"].assert_awaited_once_with(activity, [1], None)
    assert db_session.query(InboxItem).count() == 0


@pytest.mark.asyncio
async def test_unknown_type_without_handler(inbox_handler, inbound):
    outcome = await inbox_handler.receive(inbound("Like"), 1)

    assert outcome.stored is True
    assert outcome.handled is False
