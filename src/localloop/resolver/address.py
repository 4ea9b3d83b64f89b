"""
Debounced, cancellable address resolution.

Every keystroke may call `resolve()`. Each call:
- takes a new generation number and cancels the previous call's debounce timer
  and in-flight geocoder request,
- short-circuits to None without a remote call when the text is too short,
- otherwise waits out the debounce window, then asks the geocoder.

Results are applied in acceptance order, not arrival order: a response is only
accepted if its generation is still the latest when it arrives. This holds even
when a geocoder ignores cancellation and answers late.

Failures never escape: an aborted call resolves to None silently, anything else
is logged and also resolves to None ("could not verify").
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Protocol

from localloop.config.settings import GeocodingSettings
from localloop.domain.models import GeocodeResult

logger = logging.getLogger(__name__)


class Geocoder(Protocol):
    async def geocode(self, address: str) -> GeocodeResult | None: ...


ResolvedListener = Callable[[GeocodeResult | None], None]


class AddressResolver:
    """Turns the latest typed address into a `GeocodeResult` (or None)."""

    def __init__(
        self,
        geocoder: Geocoder,
        *,
        debounce_seconds: float = 0.6,
        min_query_length: int = 5,
        on_resolved: ResolvedListener | None = None,
    ):
        self._geocoder = geocoder
        self._debounce_seconds = debounce_seconds
        self._min_query_length = min_query_length
        self._on_resolved = on_resolved
        self._generation = 0
        self._pending: asyncio.Task[GeocodeResult | None] | None = None
        self._current: GeocodeResult | None = None

    @classmethod
    def from_settings(
        cls,
        geocoder: Geocoder,
        settings: GeocodingSettings,
        *,
        on_resolved: ResolvedListener | None = None,
    ) -> "AddressResolver":
        return cls(
            geocoder,
            debounce_seconds=settings.debounce_seconds,
            min_query_length=settings.min_query_length,
            on_resolved=on_resolved,
        )

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def current(self) -> GeocodeResult | None:
        """Result of the latest accepted query."""
        return self._current

    @property
    def is_resolving(self) -> bool:
        return self._pending is not None and not self._pending.done()

    def cancel(self) -> None:
        """Abandon any pending query (e.g. the form was closed)."""
        self._generation += 1
        self._cancel_pending()

    def _cancel_pending(self) -> None:
        if self._pending is not None and not self._pending.done():
            self._pending.cancel()
        self._pending = None

    def _accept(self, generation: int, result: GeocodeResult | None) -> bool:
        if generation != self._generation:
            return False
        self._current = result
        if self._on_resolved is not None:
            self._on_resolved(result)
        return True

    async def _lookup(self, text: str) -> GeocodeResult | None:
        await asyncio.sleep(self._debounce_seconds)
        return await self._geocoder.geocode(text)

    async def resolve(self, text: str) -> GeocodeResult | None:
        """Resolve `text`; returns None when superseded, too short, unmatched or failed."""
        self._generation += 1
        generation = self._generation
        self._cancel_pending()

        query = text.strip()
        if len(query) < self._min_query_length:
            self._accept(generation, None)
            return None

        task: asyncio.Task[GeocodeResult | None] = asyncio.ensure_future(self._lookup(query))
        self._pending = task
        try:
            result = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                return None
            raise
        except Exception:
            # Geocoder errors mean "could not verify", never a crash.
            logger.warning("Address lookup failed", exc_info=True)
            result = None
        finally:
            if self._pending is task:
                self._pending = None

        if not self._accept(generation, result):
            logger.debug("Discarding stale geocode result (generation %d < %d)", generation, self._generation)
            return None
        return result


def resolve_once(geocoder: Geocoder, text: str, *, min_query_length: int = 5) -> Awaitable[GeocodeResult | None]:
    """One-shot resolution without debounce (used by the CLI)."""
    resolver = AddressResolver(geocoder, debounce_seconds=0, min_query_length=min_query_length)
    return resolver.resolve(text)
