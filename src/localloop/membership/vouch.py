"""
Resident side of vouching.

An active resident sees the neighborhood's pending join requests and either:
- types the handshake code a requester shows them in person (`vouch`), or
- approves a listed request directly (`approve`).

The list is refreshed from the authority whenever a membership row of this
neighborhood changes, and filtered by code expiry against the countdown clock.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable

from localloop.clients.authority import MembershipAuthority
from localloop.config.settings import CodeSettings
from localloop.core.cache import QueryCache
from localloop.core.time import utc_now
from localloop.domain.models import PendingJoinRequest
from localloop.errors import AuthorityError, InputInvalidError
from localloop.membership.codes import (
    CountdownTicker,
    RequestBadge,
    badge_for,
    filter_live_requests,
    minutes_remaining,
    require_complete_code,
)
from localloop.realtime.feed import ChangeEvent, ChangeFeed, Subscription

logger = logging.getLogger(__name__)

JOIN_REQUESTS_NAMESPACE = "join_requests"
MEMBERSHIPS_TABLE = "neighborhood_memberships"


class VouchBoard:
    """Pending join requests for one neighborhood plus the vouch actions."""

    def __init__(
        self,
        authority: MembershipAuthority,
        neighborhood_id: str,
        *,
        settings: CodeSettings | None = None,
        cache: QueryCache | None = None,
        feed: ChangeFeed | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._authority = authority
        self._neighborhood_id = neighborhood_id
        self._settings = settings or CodeSettings()
        self._cache = cache or QueryCache()
        self._feed = feed
        self._clock = clock
        self._subscription: Subscription | None = None
        self._refresh_tasks: set[asyncio.Task[None]] = set()
        self._ticker = CountdownTicker(
            self.tick,
            interval_seconds=self._settings.countdown_refresh_seconds,
            clock=clock,
        )
        self._busy = False
        self.requests: list[PendingJoinRequest] = []
        self.now: datetime | None = None
        self.error: str | None = None
        self.succeeded = False

    def tick(self, now: datetime) -> None:
        self.now = now

    def _at(self, now: datetime | None) -> datetime:
        if now is not None:
            return now
        return self.now or self._clock()

    # --- listing --------------------------------------------------------

    async def refresh(self) -> list[PendingJoinRequest]:
        self.requests = await self._cache.get_or_fetch(
            JOIN_REQUESTS_NAMESPACE,
            self._neighborhood_id,
            self._authority.fetch_pending_requests,
        )
        return self.requests

    def live_requests(self, now: datetime | None = None) -> list[PendingJoinRequest]:
        return filter_live_requests(self.requests, self._at(now))

    def badge(self, request: PendingJoinRequest, now: datetime | None = None) -> RequestBadge | None:
        return badge_for(request, self._at(now), self._settings)

    def minutes_remaining(self, request: PendingJoinRequest, now: datetime | None = None) -> int:
        return minutes_remaining(request.vouch_code_expires_at, self._at(now))

    # --- live updates ---------------------------------------------------

    def attach(self) -> None:
        """Start the countdown and follow membership changes for this neighborhood."""
        self._ticker.start()
        if self._feed is None or self._subscription is not None:
            return
        self._subscription = self._feed.subscribe(
            MEMBERSHIPS_TABLE,
            self._on_change,
            filters={"neighborhood_id": self._neighborhood_id},
        )

    def detach(self) -> None:
        """Release the subscription, the countdown and any scheduled refresh."""
        self._ticker.stop()
        if self._subscription is not None:
            subscription, self._subscription = self._subscription, None
            subscription.close()
        for task in list(self._refresh_tasks):
            task.cancel()
        self._refresh_tasks.clear()

    def _on_change(self, event: ChangeEvent) -> None:
        logger.debug("Membership change (%s); refreshing join requests", event.event)
        self._cache.invalidate(JOIN_REQUESTS_NAMESPACE)
        task = asyncio.get_running_loop().create_task(self._refresh_quietly())
        self._refresh_tasks.add(task)
        task.add_done_callback(self._refresh_tasks.discard)

    async def _refresh_quietly(self) -> None:
        try:
            await self.refresh()
        except AuthorityError as exc:
            logger.warning("Join request refresh failed: %s", exc.message)

    # --- actions --------------------------------------------------------

    async def vouch(self, code: str) -> bool:
        """Activate the requester whose handshake code this is."""
        normalized = require_complete_code(code, length=self._settings.length)
        return await self._run(lambda: self._authority.vouch_via_handshake(normalized))

    async def approve(self, membership_id: str) -> bool:
        if not membership_id:
            raise InputInvalidError("A membership id is required.")
        return await self._run(lambda: self._authority.approve_pending_request(membership_id))

    async def _run(self, call: Callable[[], Awaitable[None]]) -> bool:
        if self._busy:
            return False
        self._busy = True
        self.error = None
        try:
            await call()
        except AuthorityError as exc:
            self.error = f"Error verifying code: {exc.message}"
            return False
        finally:
            self._busy = False

        self.succeeded = True
        self._cache.invalidate()
        try:
            await self.refresh()
        except AuthorityError as exc:
            logger.warning("Join request refresh after vouch failed: %s", exc.message)
        return True
