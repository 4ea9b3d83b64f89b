import asyncio
from datetime import timedelta

import pytest

from localloop.config.settings import CodeSettings
from localloop.core.cache import QueryCache
from localloop.errors import InputInvalidError
from localloop.membership.codes import RequestBadge
from localloop.membership.vouch import VouchBoard
from localloop.realtime.feed import ChangeEvent, LocalChangeFeed

from conftest import T0, make_join_request


def _board(authority, **kwargs):
    return VouchBoard(authority, "n1", settings=CodeSettings(), clock=lambda: T0, **kwargs)


def test_live_requests_follow_the_clock(authority):
    fresh = make_join_request("m1", created_at=T0 - timedelta(minutes=10))
    expiring = make_join_request("m2", created_at=T0 - timedelta(hours=23), expires_in=timedelta(hours=24))
    authority.join_requests = [fresh, expiring]
    board = _board(authority)

    asyncio.run(board.refresh())

    assert board.live_requests() == [fresh, expiring]
    assert board.badge(fresh) is RequestBadge.NEW
    assert board.badge(expiring) is RequestBadge.URGENT
    assert board.minutes_remaining(expiring) == 60

    board.tick(T0 + timedelta(hours=2))
    assert board.live_requests() == [fresh]
    assert board.requests == [fresh, expiring]


def test_refresh_is_served_from_cache_until_invalidated(authority):
    authority.join_requests = [make_join_request("m1")]
    cache = QueryCache()
    board = _board(authority, cache=cache)

    asyncio.run(board.refresh())
    asyncio.run(board.refresh())
    cache.invalidate("join_requests")
    asyncio.run(board.refresh())

    assert authority.calls.count("fetch_pending_requests") == 2


def test_membership_change_triggers_refetch(authority):
    feed = LocalChangeFeed()
    board = _board(authority, feed=feed)

    async def scenario():
        await board.refresh()
        board.attach()
        authority.join_requests = [make_join_request("m1")]
        other = feed.publish(ChangeEvent("neighborhood_memberships", "INSERT", {"neighborhood_id": "n2"}))
        ours = feed.publish(ChangeEvent("neighborhood_memberships", "INSERT", {"neighborhood_id": "n1"}))
        for _ in range(5):
            await asyncio.sleep(0)
        board.detach()
        return other, ours

    other, ours = asyncio.run(scenario())

    assert (other, ours) == (0, 1)
    assert [r.membership_id for r in board.requests] == ["m1"]
    assert feed.subscriber_count == 0


def test_incomplete_handshake_code_is_not_sent(authority):
    board = _board(authority)

    with pytest.raises(InputInvalidError):
        asyncio.run(board.vouch("abc12"))
    assert authority.calls == []


def test_vouch_activates_requester_and_refreshes(authority):
    authority.join_requests = [make_join_request("m1"), make_join_request("m2")]
    authority.handshake_codes["HND123"] = "m1"
    board = _board(authority)
    asyncio.run(board.refresh())

    assert asyncio.run(board.vouch("hnd-123")) is True

    assert board.succeeded
    assert board.error is None
    assert [r.membership_id for r in board.requests] == ["m2"]


def test_wrong_handshake_code_reports_error(authority):
    board = _board(authority)

    assert asyncio.run(board.vouch("ZZZ999")) is False
    assert board.error == "Error verifying code: Invalid handshake code"
    assert board.succeeded is False


def test_approve_listed_request(authority):
    authority.join_requests = [make_join_request("m1")]
    board = _board(authority)
    asyncio.run(board.refresh())

    assert asyncio.run(board.approve("m1")) is True
    assert board.requests == []
    assert "approve_pending_request" in authority.calls


def test_refresh_in_flight_during_vouch_is_not_served_afterwards(authority):
    stale = make_join_request("m1")
    authority.join_requests = [stale]
    authority.handshake_codes["HND123"] = "m1"
    board = _board(authority)
    release = asyncio.Event()
    fetch = authority.fetch_pending_requests

    async def slow_first_fetch():
        snapshot = list(authority.join_requests)
        await release.wait()
        return snapshot

    async def scenario():
        authority.fetch_pending_requests = slow_first_fetch
        in_flight = asyncio.ensure_future(board.refresh())
        await asyncio.sleep(0)
        authority.fetch_pending_requests = fetch
        vouched = await board.vouch("HND123")
        release.set()
        await in_flight
        return vouched, await board.refresh()

    vouched, requests = asyncio.run(scenario())

    assert vouched is True
    assert requests == []
