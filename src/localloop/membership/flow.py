"""
Membership resolution flow.

Steps: IDENTITY -> ACCESS_CHOICE -> EXECUTING -> RESOLVED, with every failure
returning to ACCESS_CHOICE.

- IDENTITY needs a display name and a resolved address. Proximity verification is
  optional here, but only a verified resident may found a neighborhood; without it
  the choice is limited to JOIN (invite code) and REQUEST (ask to be vouched for).
- ACCESS_CHOICE runs exactly one branch against the authority.
- After any successful branch the cache is invalidated and the authority is asked
  for the membership status again; that answer is the resolution. Nothing is
  assumed from the success of the call itself.

Client-side validation failures raise `InputInvalidError` and leave the flow
untouched. Authority failures never raise out of a branch: they are recorded in
`error` and the flow goes back to ACCESS_CHOICE, with no automatic retry.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from localloop.config.settings import Settings, get_settings
from localloop.core.cache import QueryCache
from localloop.core.geo import Coordinates
from localloop.clients.authority import MembershipAuthority
from localloop.domain.models import GeocodeResult, MembershipStatus, SessionContext
from localloop.errors import (
    AuthorityError,
    CollisionError,
    DomainRejectedError,
    InputInvalidError,
)
from localloop.membership.codes import normalize_code, is_complete_code
from localloop.resolver.address import AddressResolver, Geocoder
from localloop.verification.proximity import ProximityVerifier, VerificationSession

logger = logging.getLogger(__name__)

JOIN_FAILED_MESSAGE = "Failed to join neighborhood"
CREATE_FAILED_MESSAGE = "Failed to create neighborhood"
REQUEST_FAILED_MESSAGE = "Failed request to join neighborhood"


class FlowStep(str, Enum):
    IDENTITY = "identity"
    ACCESS_CHOICE = "access_choice"
    EXECUTING = "executing"
    RESOLVED = "resolved"


class AccessMethod(str, Enum):
    CREATE = "create"
    JOIN = "join"
    REQUEST = "request"


class ErrorKind(str, Enum):
    COLLISION = "collision"
    DOMAIN_REJECTED = "domain_rejected"
    AUTHORITY = "authority"


@dataclass(frozen=True)
class FlowError:
    """The error shown to the user for the last failed branch."""

    kind: ErrorKind
    message: str
    code: str | None = None


class MembershipFlow:
    """Drives one user from identity confirmation to a membership outcome."""

    def __init__(
        self,
        context: SessionContext,
        authority: MembershipAuthority,
        geocoder: Geocoder,
        *,
        verifier: ProximityVerifier | None = None,
        cache: QueryCache | None = None,
        settings: Settings | None = None,
    ):
        self._settings = settings or get_settings()
        self._context = context
        self._authority = authority
        self._verifier = verifier
        self._cache = cache or QueryCache()
        self._resolver = AddressResolver.from_settings(
            geocoder, self._settings.geocoding, on_resolved=self._on_address_resolved
        )

        profile = context.profile
        self.display_name: str = profile.display_name or ""
        self.address: str = profile.address or ""
        self.geocoded: GeocodeResult | None = None
        self.step = FlowStep.IDENTITY
        self.method: AccessMethod | None = None
        self.error: FlowError | None = None
        self.resolution: MembershipStatus | None = None

    # --- identity -------------------------------------------------------

    @property
    def context(self) -> SessionContext:
        return self._context

    @property
    def coordinates(self) -> Coordinates | None:
        return self.geocoded.coordinates if self.geocoded else None

    @property
    def is_resolving_address(self) -> bool:
        return self._resolver.is_resolving

    @property
    def location_verified(self) -> bool:
        return self._verifier is not None and self._verifier.is_verified

    def set_display_name(self, name: str) -> None:
        self.display_name = name

    def _on_address_resolved(self, result: GeocodeResult | None) -> None:
        self.geocoded = result

    async def set_address(self, text: str) -> GeocodeResult | None:
        """Record the typed address and resolve it (debounced).

        Any verification against the previous address is discarded.
        """
        self.address = text
        if self._verifier is not None:
            self._verifier.cancel()
        return await self._resolver.resolve(text)

    def start_verification(self) -> VerificationSession:
        if self._verifier is None:
            raise InputInvalidError("Location verification is not available on this device.")
        coords = self.coordinates
        if coords is None:
            raise InputInvalidError("Resolve an address before verifying your location.")
        return self._verifier.start(coords)

    @property
    def can_advance(self) -> bool:
        min_len = self._settings.identity.min_display_name_length
        return (
            self.step is FlowStep.IDENTITY
            and len(self.display_name.strip()) >= min_len
            and self.coordinates is not None
            and not self.is_resolving_address
        )

    def advance(self) -> list[AccessMethod]:
        """Move to ACCESS_CHOICE and return the methods offered."""
        if not self.can_advance:
            raise InputInvalidError("A display name and a resolved address are required.")
        self.step = FlowStep.ACCESS_CHOICE
        self.error = None
        if self.method not in self.available_methods:
            self.method = None
        return self.available_methods

    def back_to_identity(self) -> None:
        if self.step is FlowStep.EXECUTING:
            raise InputInvalidError("A registration is in progress.")
        self.step = FlowStep.IDENTITY

    # --- access choice --------------------------------------------------

    @property
    def available_methods(self) -> list[AccessMethod]:
        if self.location_verified:
            return [AccessMethod.CREATE, AccessMethod.JOIN, AccessMethod.REQUEST]
        return [AccessMethod.JOIN, AccessMethod.REQUEST]

    def choose(self, method: AccessMethod) -> None:
        self._require_step(FlowStep.ACCESS_CHOICE)
        if method not in self.available_methods:
            raise InputInvalidError("Verify your location to establish a new neighborhood.")
        self.method = method

    @property
    def can_create(self) -> bool:
        return (
            self.step is FlowStep.ACCESS_CHOICE
            and self.location_verified
            and self.coordinates is not None
        )

    def can_join(self, code: str) -> bool:
        return (
            self.step is FlowStep.ACCESS_CHOICE
            and self.coordinates is not None
            and is_complete_code(normalize_code(code))
        )

    @property
    def can_request(self) -> bool:
        return self.step is FlowStep.ACCESS_CHOICE and self.coordinates is not None

    def _require_step(self, step: FlowStep) -> None:
        if self.step is not step:
            raise InputInvalidError(f"Not available while {self.step.value}.")

    def _require_coordinates(self) -> Coordinates:
        coords = self.coordinates
        if coords is None:
            raise InputInvalidError("Resolve an address first.")
        return coords

    async def create(self, neighborhood_name: str) -> MembershipStatus | None:
        """Found a new neighborhood here (verified residents only)."""
        self._require_step(FlowStep.ACCESS_CHOICE)
        name = neighborhood_name.strip()
        if not name:
            raise InputInvalidError("A neighborhood name is required.")
        if not self.location_verified:
            raise InputInvalidError("Verify your location to establish a new neighborhood.")
        coords = self._require_coordinates()
        self.method = AccessMethod.CREATE
        return await self._execute(
            lambda: self._authority.create_neighborhood(name, coords),
            failure_message=CREATE_FAILED_MESSAGE,
        )

    async def join(self, code: str) -> MembershipStatus | None:
        """Join an existing neighborhood with an invite code."""
        self._require_step(FlowStep.ACCESS_CHOICE)
        normalized = normalize_code(code)
        if not is_complete_code(normalized):
            raise InputInvalidError("Invite codes are 6 characters.")
        coords = self._require_coordinates()
        self.method = AccessMethod.JOIN
        verified = self.location_verified
        return await self._execute(
            lambda: self._authority.join_with_code(normalized, coords, verified),
            failure_message=JOIN_FAILED_MESSAGE,
            opaque=True,
        )

    async def request(self) -> MembershipStatus | None:
        """Ask to join the neighborhood covering these coordinates."""
        self._require_step(FlowStep.ACCESS_CHOICE)
        coords = self._require_coordinates()
        self.method = AccessMethod.REQUEST

        async def call() -> None:
            result = await self._authority.request_to_join(coords)
            if not result.success:
                raise DomainRejectedError(result.error or "UNKNOWN")

        return await self._execute(call, failure_message=REQUEST_FAILED_MESSAGE)

    # --- execution ------------------------------------------------------

    async def _persist_identity(self) -> None:
        profile = self._context.profile
        coords = self._require_coordinates()
        address = self.geocoded.formatted_address if self.geocoded and self.geocoded.formatted_address else self.address
        verified = self.location_verified
        verified_at = self._verifier.verified_at if verified and self._verifier else None
        await self._authority.update_profile(
            profile.id,
            display_name=self.display_name.strip(),
            address=address,
            coords=coords,
            location_verified=verified,
            verified_at=verified_at,
        )
        self._context.profile = profile.model_copy(
            update={
                "display_name": self.display_name.strip(),
                "address": address,
                "lat": coords.lat,
                "lng": coords.lng,
                "location_verified": verified,
                "verified_at": verified_at,
            }
        )

    async def _execute(
        self,
        call: Callable[[], Awaitable[None]],
        *,
        failure_message: str,
        opaque: bool = False,
    ) -> MembershipStatus | None:
        self.step = FlowStep.EXECUTING
        self.error = None
        try:
            await self._persist_identity()
            await call()
        except CollisionError as exc:
            logger.info("Neighborhood collision: %s", exc.message)
            self.error = FlowError(ErrorKind.COLLISION, exc.message)
            self.method = AccessMethod.JOIN
            self.step = FlowStep.ACCESS_CHOICE
            return None
        except DomainRejectedError as exc:
            if opaque:
                self.error = FlowError(ErrorKind.AUTHORITY, failure_message)
            else:
                self.error = FlowError(ErrorKind.DOMAIN_REJECTED, exc.message, code=exc.code)
            self.step = FlowStep.ACCESS_CHOICE
            return None
        except AuthorityError as exc:
            logger.warning("%s: %s", failure_message, exc.message)
            self.error = FlowError(ErrorKind.AUTHORITY, failure_message)
            self.step = FlowStep.ACCESS_CHOICE
            return None
        except Exception:
            logger.exception("%s: unexpected error", failure_message)
            self.error = FlowError(ErrorKind.AUTHORITY, failure_message)
            self.step = FlowStep.ACCESS_CHOICE
            return None

        await self._refresh_status()
        self.step = FlowStep.RESOLVED
        return self.resolution

    async def _refresh_status(self) -> None:
        """Drop cached state and ask the authority where this profile stands now."""
        self._cache.invalidate()
        profile_id = self._context.profile.id
        try:
            status = await self._authority.fetch_membership_status(profile_id)
        except AuthorityError as exc:
            logger.warning("Could not refresh membership status for %s: %s", profile_id, exc.message)
            status = None
        self._context.membership_status = status
        self.resolution = status

    def close(self) -> None:
        """Release the resolver's pending query and any verification session."""
        self._resolver.cancel()
        if self._verifier is not None:
            self._verifier.cancel()
