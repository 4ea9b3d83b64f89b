"""
Invite / handshake code lifecycle.

Codes are opaque 6-character uppercase alphanumeric tokens owned by the authority.
The client only:
- normalizes what the user types (uppercase, alphanumeric, capped at 6),
- refuses to submit incomplete codes,
- derives "live", "minutes remaining" and badges from authority timestamps and an
  explicit `now`, recomputed on every countdown tick rather than once at load.

Expired codes are hidden from lists, never deleted locally.
"""

from __future__ import annotations

import asyncio
import logging
import re
from datetime import datetime
from enum import Enum
from typing import Callable, Iterable

from localloop.config.settings import CodeSettings
from localloop.core.time import difference_in_minutes, utc_now
from localloop.domain.models import PendingJoinRequest
from localloop.errors import InputInvalidError

logger = logging.getLogger(__name__)

CODE_LENGTH = 6
_INVALID_CODE_CHARS = re.compile(r"[^A-Z0-9]")


def normalize_code(raw: str, *, length: int = CODE_LENGTH) -> str:
    """Uppercase, drop anything that is not A-Z/0-9, cap at `length` characters."""
    return _INVALID_CODE_CHARS.sub("", (raw or "").upper())[:length]


def is_complete_code(code: str, *, length: int = CODE_LENGTH) -> bool:
    return len(code) == length and not _INVALID_CODE_CHARS.search(code)


def require_complete_code(raw: str, *, length: int = CODE_LENGTH) -> str:
    """Normalize `raw` and return it, or raise if it is not a full code."""
    code = normalize_code(raw, length=length)
    if not is_complete_code(code, length=length):
        raise InputInvalidError(f"Codes are {length} characters; got {len(code)}.")
    return code


def is_live(expires_at: datetime, now: datetime) -> bool:
    return now < expires_at


def minutes_remaining(expires_at: datetime, now: datetime) -> int:
    """Whole minutes until `expires_at` (0 once expired)."""
    return max(0, difference_in_minutes(expires_at, now))


def filter_live_requests(requests: Iterable[PendingJoinRequest], now: datetime) -> list[PendingJoinRequest]:
    """Requests whose vouch code is still valid at `now` (pure function of `now`)."""
    return [r for r in requests if is_live(r.vouch_code_expires_at, now)]


class RequestBadge(str, Enum):
    URGENT = "urgent"
    NEW = "new"


def request_badge(
    request: PendingJoinRequest,
    now: datetime,
    *,
    urgent_threshold_minutes: int = 240,
    new_badge_minutes: int = 120,
) -> RequestBadge | None:
    """Urgent when the code expires soon, otherwise New when recently requested."""
    until_expiry = difference_in_minutes(request.vouch_code_expires_at, now)
    if 0 < until_expiry < urgent_threshold_minutes:
        return RequestBadge.URGENT
    if difference_in_minutes(now, request.created_at) < new_badge_minutes:
        return RequestBadge.NEW
    return None


def badge_for(request: PendingJoinRequest, now: datetime, settings: CodeSettings) -> RequestBadge | None:
    return request_badge(
        request,
        now,
        urgent_threshold_minutes=settings.urgent_threshold_minutes,
        new_badge_minutes=settings.new_badge_minutes,
    )


class CountdownTicker:
    """Calls `on_tick(now)` immediately and then every `interval_seconds` until stopped."""

    def __init__(
        self,
        on_tick: Callable[[datetime], None],
        *,
        interval_seconds: float = 30.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self._on_tick = on_tick
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run())

    def stop(self) -> None:
        if self._task is not None:
            self._task.cancel()
            self._task = None

    async def _run(self) -> None:
        while True:
            try:
                self._on_tick(self._clock())
            except Exception:
                logger.exception("Countdown tick handler failed")
            await asyncio.sleep(self._interval_seconds)
