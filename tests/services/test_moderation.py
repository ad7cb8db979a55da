from unittest.mock import AsyncMock

import pytest
from sqlalchemy.orm import Session

from activity_exchange.models import ActorBlock, Follower, LocalActor, SiteBlock
from activity_exchange.services.blocks import SITE_SCOPE, BlockStore, normalize_block_value
from activity_exchange.services.discovery import DiscoveryClient
from activity_exchange.services.errors import DiscoveryError
from activity_exchange.services.moderation import ModerationGate

USER_ID = 1


@pytest.fixture
def blocks(db_session: Session) -> BlockStore:
    return BlockStore(db_session)


@pytest.fixture
def discovery():
    discovery = AsyncMock(spec=DiscoveryClient)
    discovery.resolve_handle.side_effect = DiscoveryError("unresolvable")
    return discovery


@pytest.fixture
def gate(blocks: BlockStore, discovery: AsyncMock) -> ModerationGate:
    return ModerationGate(blocks, discovery, disallowed_keywords=[])


def _activity(actor="https://example.com/@user", **object_fields):
    return {
        "type": "Create",
        "actor": actor,
        "object": {"id": "https://example.com/note/1", "type": "Note", **object_fields},
    }


@pytest.mark.parametrize(
    ("kind", "value", "expected"),
    [
        ("domain", "Example.COM", "example.com"),
        ("domain", "https://Example.com/some/path", "example.com"),
        ("domain", "example.com/path", "example.com"),
        ("actor", " https://example.com/@bad ", "https://example.com/@bad"),
        ("keyword", "SPAM", "SPAM"),
        ("keyword", "   ", None),
        ("invalid", "x", None),
    ],
)
def test_normalize_block_value(kind, value, expected):
    assert normalize_block_value(kind, value) == expected


def test_site_blocks_are_deduplicated(blocks, db_session):
    assert blocks.add_site_block("domain", "example.com") is True
    assert blocks.add_site_block("domain", "https://EXAMPLE.com/") is True
    assert blocks.add_block(SITE_SCOPE, "keyword", "spam") is True

    assert db_session.query(SiteBlock).count() == 2
    assert blocks.get_site_blocks() == {
        "domains": ["example.com"],
        "actors": [],
        "keywords": ["spam"],
    }


def test_invalid_blocks_are_noops(blocks, db_session):
    assert blocks.add_site_block("invalid", "x") is True
    assert blocks.add_site_block("domain", "") is True
    assert blocks.add_block("nowhere", "domain", "example.com") is True
    assert blocks.add_block(-1, "domain", "example.com") is True
    assert blocks.remove_site_block("actor", "https://never.example/@x") is True

    assert db_session.query(SiteBlock).count() == 0
    assert db_session.query(ActorBlock).count() == 0


def test_actor_blocks_listing_and_removal(blocks):
    blocks.add_block(USER_ID, "actor", "https://a.example/@one")
    blocks.add_actor_block(USER_ID, "actor", "https://a.example/@two")
    blocks.add_actor_block(USER_ID, "keyword", "spam")
    blocks.add_actor_block(2, "domain", "other.example")

    assert blocks.remove_block(USER_ID, "actor", "https://a.example/@one") is True
    assert blocks.get_actor_blocks(USER_ID) == {
        "domains": [],
        "actors": ["https://a.example/@two"],
        "keywords": ["spam"],
    }
    assert blocks.get_actor_blocks(-5) == {"domains": [], "actors": [], "keywords": []}


def test_actor_block_removes_the_follower(blocks, db_session, local_actor, add_followers):
    db_session.add(LocalActor(id=2, uri="https://local.example/users/bob"))
    db_session.commit()
    add_followers(USER_ID, 2)
    add_followers(2, 1)

    blocks.add_actor_block(USER_ID, "actor", "https://remote0.example/users/u0")

    remaining = (
        db_session.query(Follower.actor_id, Follower.remote_actor).order_by(Follower.id).all()
    )
    assert [tuple(row) for row in remaining] == [
        (USER_ID, "https://remote1.example/users/u1"),
        (2, "https://remote0.example/users/u0"),
    ]


def test_site_actor_block_removes_the_follower_everywhere(
    blocks, db_session, local_actor, add_followers
):
    db_session.add(LocalActor(id=2, uri="https://local.example/users/bob"))
    db_session.commit()
    add_followers(USER_ID, 1)
    add_followers(2, 1)

    blocks.add_site_block("actor", "https://remote0.example/users/u0")

    assert db_session.query(Follower).count() == 0


def test_domain_block_matches_exact_host_only(blocks, gate):
    blocks.add_site_block("domain", "example.com")

    assert gate.is_actor_blocked("https://example.com/users/bad") is True
    assert gate.is_actor_blocked("http://example.com/@x") is True
    assert gate.is_actor_blocked("https://www.example.com/users/bad") is False
    assert gate.is_actor_blocked("https://sub.example.com/users/bad") is False


def test_site_wide_block_wins_for_every_actor(blocks, gate):
    blocks.add_site_block("actor", "https://example.com/@baduser")

    assert gate.is_actor_blocked("https://example.com/@baduser") is True
    assert gate.is_actor_blocked("https://example.com/@baduser", USER_ID) is True
    assert gate.is_actor_blocked("https://example.com/@baduser", 12345) is True


def test_actor_scoped_block_applies_to_that_actor_only(blocks, gate):
    blocks.add_actor_block(USER_ID, "domain", "noisy.example")

    assert gate.is_actor_blocked("https://noisy.example/@x", USER_ID) is True
    assert gate.is_actor_blocked("https://noisy.example/@x", 2) is False
    assert gate.is_actor_blocked("https://noisy.example/@x") is False


@pytest.mark.parametrize(
    "actor_uri", ["", None, "not-a-url", "https://", "ftp://example.com/@x"]
)
def test_malformed_actor_uris_are_never_blocked(blocks, gate, actor_uri):
    blocks.add_site_block("domain", "example.com")
    assert gate.is_actor_blocked(actor_uri) is False


@pytest.mark.parametrize("actor_id", [0, -1, 99999])
def test_no_blocks_means_not_blocked(gate, actor_id):
    assert gate.is_actor_blocked("https://example.com/@user", actor_id) is False


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("object_fields", "expected"),
    [
        ({"content": "spam"}, True),
        ({"type": "Person", "preferredUsername": "spam"}, True),
        ({"summary": "spam"}, True),
        ({"name": "spam"}, True),
        ({"contentMap": {"en": "buy spam now"}}, True),
        ({"content": "Test"}, False),
    ],
)
async def test_keyword_fields(blocks, gate, object_fields, expected):
    blocks.add_site_block("keyword", "spam")
    assert await gate.activity_is_blocked(_activity(**object_fields)) is expected


@pytest.mark.asyncio
@pytest.mark.parametrize("content", ["spam", "Spam", "SPAM", "SpAm", "this is sPaM!"])
async def test_keywords_match_case_insensitively(blocks, gate, content):
    blocks.add_site_block("keyword", "SPAM")
    assert await gate.activity_is_blocked(_activity(content=content)) is True


@pytest.mark.asyncio
async def test_actor_scoped_keyword(blocks, gate):
    blocks.add_actor_block(USER_ID, "keyword", "crypto")
    activity = _activity(content="Crypto giveaway")

    assert await gate.activity_is_blocked(activity, USER_ID) is True
    assert await gate.activity_is_blocked(activity, 2) is False


@pytest.mark.asyncio
async def test_site_domain_block_applies_to_later_actors(blocks, gate):
    blocks.add_site_block("domain", "bad.example")
    activity = _activity(actor="https://bad.example/@troll", content="hi")

    for actor_id in (None, 0, 1, 2, 500):
        assert await gate.activity_is_blocked(activity, actor_id) is True


@pytest.mark.asyncio
async def test_disallow_list_acts_as_site_keywords(blocks):
    gate = ModerationGate(blocks, disallowed_keywords=["badword", "spam.example.com"])

    assert await gate.activity_is_blocked(
        _activity(actor="https://good.example.com/@user", content="This contains badword in it")
    ) is True
    assert await gate.activity_is_blocked(
        _activity(actor="https://spam.example.com/@user", content="hello")
    ) is True
    assert await gate.activity_is_blocked(
        _activity(actor="https://good.example.com/@user", content="hello")
    ) is False


@pytest.mark.asyncio
async def test_handle_actor_resolved_before_domain_check(blocks, gate, discovery):
    discovery.resolve_handle.side_effect = None
    discovery.resolve_handle.return_value = "https://bad.example.com/@spammer"
    blocks.add_site_block("domain", "bad.example.com")

    activity = _activity(actor="spammer@bad.example.com", content="Test content")

    assert await gate.activity_is_blocked(activity) is True
    discovery.resolve_handle.assert_awaited_once_with("spammer@bad.example.com")


@pytest.mark.asyncio
@pytest.mark.parametrize("activity", [None, "string", 42, [], {}, {"type": "Create"}])
async def test_malformed_activities_fail_open(blocks, gate, activity):
    blocks.add_site_block("keyword", "Create")
    assert await gate.activity_is_blocked(activity) is False


@pytest.mark.asyncio
async def test_unresolvable_handle_fails_open_for_activities(blocks, gate):
    blocks.add_site_block("domain", "bad.example.com")
    assert await gate.activity_is_blocked(_activity(actor="ghost@bad.example.com")) is False


@pytest.mark.asyncio
async def test_interaction_check_fails_closed(blocks, gate, discovery):
    assert await gate.is_interaction_blocked(_activity(actor="ghost@bad.example.com"), USER_ID) is True
    assert await gate.is_interaction_blocked({"type": "QuoteRequest"}, USER_ID) is True
    assert await gate.is_interaction_blocked(_activity(actor="not-a-url"), USER_ID) is True
    assert await gate.is_interaction_blocked(_activity(content="fine"), USER_ID) is False

    blocks.add_actor_block(USER_ID, "actor", "https://example.com/@user")
    assert await gate.is_interaction_blocked(_activity(content="fine"), USER_ID) is True
