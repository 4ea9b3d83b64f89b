"""
Change notifications.

The engine only needs "something changed in table X (rows matching these filters)";
it never reads the change payload to update state, it re-fetches from the authority.
The transport (websocket, long-poll) is external; it implements `ChangeFeed` and
calls `publish`-equivalent hooks. `LocalChangeFeed` is the in-process implementation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ChangeEvent:
    """One row-level change (`INSERT`, `UPDATE` or `DELETE`)."""

    table: str
    event: str
    row: dict[str, Any] = field(default_factory=dict)


ChangeCallback = Callable[[ChangeEvent], None]


class Subscription(Protocol):
    def close(self) -> None: ...


class ChangeFeed(Protocol):
    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        filters: dict[str, Any] | None = None,
    ) -> Subscription: ...


class _LocalSubscription:
    def __init__(self, feed: "LocalChangeFeed", table: str, callback: ChangeCallback, filters: dict[str, Any]):
        self._feed = feed
        self.table = table
        self.callback = callback
        self.filters = filters
        self.closed = False

    def matches(self, event: ChangeEvent) -> bool:
        if self.closed or event.table != self.table:
            return False
        return all(event.row.get(k) == v for k, v in self.filters.items())

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._feed._remove(self)


class LocalChangeFeed:
    """In-process publish/subscribe implementation of `ChangeFeed`."""

    def __init__(self) -> None:
        self._subscriptions: list[_LocalSubscription] = []

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(
        self,
        table: str,
        callback: ChangeCallback,
        *,
        filters: dict[str, Any] | None = None,
    ) -> Subscription:
        sub = _LocalSubscription(self, table, callback, dict(filters or {}))
        self._subscriptions.append(sub)
        return sub

    def _remove(self, sub: _LocalSubscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def publish(self, event: ChangeEvent) -> int:
        """Deliver `event` to matching subscribers; returns how many were notified."""
        delivered = 0
        for sub in list(self._subscriptions):
            if not sub.matches(event):
                continue
            try:
                sub.callback(event)
            except Exception:
                logger.exception("Change subscriber for %s failed", event.table)
            delivered += 1
        return delivered
