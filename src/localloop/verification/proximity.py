"""
Live-position proximity verification.

A verification session races two independent sources toward one terminal state:
- the position watch: every sample is compared with the target; the first sample
  within tolerance (100 m by default) verifies,
- the wall-clock budget (15 s by default): if it fires first, the session times out.

A sensing failure (permission denied, positioning unavailable) ends the session as
`DENIED`, which is not retryable until permissions are fixed; `TIMED_OUT` is.

Whichever path finishes first wins; the loser becomes a no-op. Finishing a session
(including `cancel()`) closes the watch subscription and the timer exactly once.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Protocol

from localloop.config.settings import VerificationSettings
from localloop.core.geo import Coordinates, distance_meters
from localloop.core.time import utc_now

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = (
    "We couldn't confirm your location in time. Try again, "
    "or ask a neighbor to vouch for you in person."
)
DENIED_MESSAGE = (
    "Location access is unavailable. Enable location permissions to verify, "
    "or ask a neighbor to vouch for you in person."
)


class VerifierState(str, Enum):
    IDLE = "idle"
    SAMPLING = "sampling"
    VERIFIED = "verified"
    DENIED = "denied"
    TIMED_OUT = "timed_out"


class SessionStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    DENIED = "denied"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class PositionSample:
    """One fix from the device's positioning subsystem."""

    lat: float
    lng: float
    accuracy_m: float | None = None

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(lat=self.lat, lng=self.lng)


@dataclass(frozen=True)
class SensingError:
    """A positioning failure reported by the device (permission or availability)."""

    code: str
    message: str = ""


class Subscription(Protocol):
    def close(self) -> None: ...


class PositionSource(Protocol):
    """Continuous device positioning (a `watchPosition`-style API)."""

    def watch(
        self,
        on_sample: Callable[[PositionSample], None],
        on_error: Callable[[SensingError], None],
        *,
        high_accuracy: bool = True,
    ) -> Subscription: ...


@dataclass
class VerificationSession:
    """State of one verification attempt; discarded when it ends."""

    target: Coordinates
    status: SessionStatus = SessionStatus.PENDING
    last_accuracy_m: float | None = None
    verified_at: datetime | None = None
    message: str | None = None
    _subscription: Subscription | None = field(default=None, repr=False)
    _timer: asyncio.TimerHandle | None = field(default=None, repr=False)
    _done: asyncio.Future[SessionStatus] | None = field(default=None, repr=False)

    @property
    def finished(self) -> bool:
        return self.status is not SessionStatus.PENDING


_STATE_BY_STATUS = {
    SessionStatus.VERIFIED: VerifierState.VERIFIED,
    SessionStatus.DENIED: VerifierState.DENIED,
    SessionStatus.TIMED_OUT: VerifierState.TIMED_OUT,
    SessionStatus.CANCELLED: VerifierState.IDLE,
}


class ProximityVerifier:
    """Confirms that the device is within tolerance of a target within a time budget."""

    def __init__(
        self,
        source: PositionSource,
        *,
        tolerance_m: float = 100.0,
        timeout_seconds: float = 15.0,
        high_accuracy: bool = True,
        clock: Callable[[], datetime] = utc_now,
    ):
        self._source = source
        self._tolerance_m = tolerance_m
        self._timeout_seconds = timeout_seconds
        self._high_accuracy = high_accuracy
        self._clock = clock
        self._session: VerificationSession | None = None
        self._state = VerifierState.IDLE

    @classmethod
    def from_settings(cls, source: PositionSource, settings: VerificationSettings) -> "ProximityVerifier":
        return cls(
            source,
            tolerance_m=settings.tolerance_m,
            timeout_seconds=settings.timeout_seconds,
            high_accuracy=settings.high_accuracy,
        )

    @property
    def state(self) -> VerifierState:
        return self._state

    @property
    def is_verified(self) -> bool:
        return self._state is VerifierState.VERIFIED

    @property
    def session(self) -> VerificationSession | None:
        return self._session

    @property
    def last_accuracy_m(self) -> float | None:
        """Latest reported accuracy, for progress display only."""
        return self._session.last_accuracy_m if self._session else None

    @property
    def verified_at(self) -> datetime | None:
        return self._session.verified_at if self._session else None

    @property
    def message(self) -> str | None:
        return self._session.message if self._session else None

    def start(self, target: Coordinates) -> VerificationSession:
        """Begin sampling toward `target`, cancelling any previous session first.

        Must be called from within a running event loop.
        """
        if target is None:
            raise ValueError("Proximity verification requires target coordinates")
        self.cancel()

        loop = asyncio.get_running_loop()
        session = VerificationSession(target=target, _done=loop.create_future())
        self._session = session
        self._state = VerifierState.SAMPLING

        session._timer = loop.call_later(self._timeout_seconds, self._on_timeout, session)
        try:
            subscription = self._source.watch(
                lambda sample: self._on_sample(session, sample),
                lambda error: self._on_error(session, error),
                high_accuracy=self._high_accuracy,
            )
        except Exception as exc:
            logger.warning("Position watch could not start", exc_info=True)
            self._on_error(session, SensingError(code="UNAVAILABLE", message=str(exc)))
            return session
        if session.finished:
            # The source reported synchronously from inside watch(); the session
            # already released its timer, only the subscription is left.
            subscription.close()
        else:
            session._subscription = subscription
        logger.debug("Proximity verification started (tolerance %.0f m)", self._tolerance_m)
        return session

    def cancel(self) -> None:
        """Release the current session's watch and timer; the verifier returns to idle."""
        session = self._session
        if session is None:
            return
        self._finish(session, SessionStatus.CANCELLED)
        self._session = None
        self._state = VerifierState.IDLE

    async def wait(self) -> SessionStatus:
        """Wait for the current session's terminal status."""
        session = self._session
        if session is None or session._done is None:
            return SessionStatus.CANCELLED
        return await asyncio.shield(session._done)

    def _on_sample(self, session: VerificationSession, sample: PositionSample) -> None:
        if session.finished:
            return
        session.last_accuracy_m = sample.accuracy_m
        distance = distance_meters(sample.coordinates, session.target)
        logger.debug("Position sample %.1f m from target (accuracy %s)", distance, sample.accuracy_m)
        if distance <= self._tolerance_m:
            session.verified_at = self._clock()
            self._finish(session, SessionStatus.VERIFIED)

    def _on_error(self, session: VerificationSession, error: SensingError) -> None:
        if session.finished:
            return
        logger.info("Position sensing failed: %s %s", error.code, error.message)
        session.message = DENIED_MESSAGE
        self._finish(session, SessionStatus.DENIED)

    def _on_timeout(self, session: VerificationSession) -> None:
        if session.finished:
            return
        logger.info("Proximity verification timed out after %.0f s", self._timeout_seconds)
        session.message = TIMEOUT_MESSAGE
        self._finish(session, SessionStatus.TIMED_OUT)

    def _finish(self, session: VerificationSession, status: SessionStatus) -> None:
        """Single terminal transition; releases resources exactly once."""
        if session.finished:
            return
        session.status = status

        if session._timer is not None:
            session._timer.cancel()
            session._timer = None
        if session._subscription is not None:
            subscription, session._subscription = session._subscription, None
            subscription.close()
        if session._done is not None and not session._done.done():
            session._done.set_result(status)

        if session is self._session:
            self._state = _STATE_BY_STATUS[status]
