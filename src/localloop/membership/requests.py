"""
Requester side of a pending join request.

While the vouch window is open the requester shows their handshake code to a
resident. Once the window has elapsed (measured from the authority's `invited_at`,
not from when this screen was opened) the code is withheld and a one-time
"contact support" escalation becomes available instead.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable

from localloop.clients.authority import MembershipAuthority
from localloop.config.settings import CodeSettings
from localloop.core.cache import QueryCache
from localloop.core.time import difference_in_minutes, utc_now
from localloop.domain.models import Membership
from localloop.errors import AuthorityError, InputInvalidError
from localloop.membership.codes import CountdownTicker, is_live

logger = logging.getLogger(__name__)

MEMBERSHIP_NAMESPACE = "membership"
SUPPORT_FAILED_MESSAGE = "Failed to contact support."


class PendingRequestView:
    """The caller's own pending membership, its countdown and its escalation."""

    def __init__(
        self,
        authority: MembershipAuthority,
        profile_id: str,
        *,
        settings: CodeSettings | None = None,
        cache: QueryCache | None = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._authority = authority
        self._profile_id = profile_id
        self._settings = settings or CodeSettings()
        self._cache = cache or QueryCache()
        self._clock = clock
        self._membership: Membership | None = None
        self._escalating = False
        self._ticker = CountdownTicker(
            self.tick,
            interval_seconds=self._settings.countdown_refresh_seconds,
            clock=clock,
        )
        self.now: datetime | None = None
        self._acknowledged: set[str | None] = set()
        self.error: str | None = None

    @property
    def membership(self) -> Membership | None:
        return self._membership

    def tick(self, now: datetime) -> None:
        """Record the countdown clock; derived values below follow it."""
        self.now = now

    def start_countdown(self) -> None:
        self._ticker.start()

    def stop_countdown(self) -> None:
        self._ticker.stop()

    def _at(self, now: datetime | None) -> datetime:
        if now is not None:
            return now
        return self.now or self._clock()

    @property
    def support_acknowledged(self) -> bool:
        """Whether a ticket was already created for the current membership."""
        return self._membership_key() in self._acknowledged

    def _membership_key(self) -> str | None:
        return self._membership.id if self._membership else None

    @property
    def has_pending_request(self) -> bool:
        return self._membership is not None

    async def load(self) -> Membership | None:
        """Fetch (or reuse the cached) pending membership for this profile."""
        self._membership = await self._cache.get_or_fetch(
            MEMBERSHIP_NAMESPACE,
            self._profile_id,
            lambda: self._authority.fetch_own_pending_membership(self._profile_id),
        )
        return self._membership

    def minutes_elapsed(self, now: datetime | None = None) -> int | None:
        """Whole minutes since the request was made, from the authority timestamp."""
        if self._membership is None or self._membership.invited_at is None:
            return None
        return max(0, difference_in_minutes(self._at(now), self._membership.invited_at))

    def minutes_remaining(self, now: datetime | None = None) -> int | None:
        elapsed = self.minutes_elapsed(now)
        if elapsed is None:
            return None
        return max(0, self._settings.vouch_window_minutes - elapsed)

    def escalation_available(self, now: datetime | None = None) -> bool:
        """True once more than the vouch window has passed since `invited_at`."""
        if self._membership is None or self._membership.invited_at is None:
            return False
        window = timedelta(minutes=self._settings.vouch_window_minutes)
        return self._at(now) - self._membership.invited_at > window

    def handshake_code(self, now: datetime | None = None) -> str | None:
        """The code to show a resident, while the window (and the code) are still valid."""
        membership = self._membership
        if membership is None or not membership.vouch_verification_code:
            return None
        now = self._at(now)
        if self.escalation_available(now):
            return None
        if membership.vouch_code_expires_at is not None and not is_live(membership.vouch_code_expires_at, now):
            return None
        return membership.vouch_verification_code

    async def contact_support(self, now: datetime | None = None) -> bool:
        """Open a support ticket once; returns True only when this call created it."""
        if self.support_acknowledged or self._escalating:
            return False
        if not self.escalation_available(now):
            raise InputInvalidError("Support is available once the vouch window has elapsed.")

        key = self._membership_key()
        self._escalating = True
        self.error = None
        try:
            await self._authority.create_support_ticket(self._profile_id, key)
        except AuthorityError as exc:
            logger.warning("Support ticket for %s failed: %s", self._profile_id, exc.message)
            self.error = SUPPORT_FAILED_MESSAGE
            return False
        finally:
            self._escalating = False

        self._acknowledged.add(key)
        self._cache.invalidate(MEMBERSHIP_NAMESPACE)
        logger.info("Support ticket created for membership %s", key)
        return True
