from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from localloop.config.settings import Settings
from localloop.core.geo import Coordinates, distance_meters
from localloop.domain.models import (
    GeocodeResult,
    Membership,
    MembershipStatus,
    PendingJoinRequest,
    Profile,
    RequestToJoinResult,
    SessionContext,
)
from localloop.errors import AuthorityError, CollisionError
from localloop.verification.proximity import PositionSample, SensingError

HOME = Coordinates(lat=44.1120, lng=-72.8590)
T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class StubGeocoder:
    """Records queries and answers from a dict (unknown text -> no match)."""

    def __init__(self, answers: dict[str, GeocodeResult] | None = None):
        self.answers = answers or {}
        self.calls: list[str] = []

    async def geocode(self, address: str) -> GeocodeResult | None:
        self.calls.append(address)
        return self.answers.get(address)


class StubSubscription:
    def __init__(self) -> None:
        self.close_count = 0

    def close(self) -> None:
        self.close_count += 1


class StubPositionSource:
    """A watch that the test drives by hand via `emit` / `fail`."""

    def __init__(self, initial: PositionSample | None = None):
        self.initial = initial
        self.subscriptions: list[StubSubscription] = []
        self._on_sample = None
        self._on_error = None

    def watch(self, on_sample, on_error, *, high_accuracy: bool = True):
        self._on_sample = on_sample
        self._on_error = on_error
        sub = StubSubscription()
        self.subscriptions.append(sub)
        if self.initial is not None:
            on_sample(self.initial)
        return sub

    def emit(self, lat: float, lng: float, accuracy_m: float | None = 10.0) -> None:
        self._on_sample(PositionSample(lat=lat, lng=lng, accuracy_m=accuracy_m))

    def fail(self, code: str = "PERMISSION_DENIED") -> None:
        self._on_error(SensingError(code=code, message="denied by user"))


class FakeAuthority:
    """In-memory stand-in for the membership authority, scoped to one profile."""

    collision_radius_m = 800.0

    def __init__(self, profile_id: str = "p1"):
        self.profile_id = profile_id
        self.calls: list[str] = []
        self.neighborhoods: list[tuple[str, Coordinates]] = []
        self.invite_codes: set[str] = set()
        self.handshake_codes: dict[str, str] = {}
        self.statuses: dict[str, MembershipStatus] = {}
        self.pending_rows: list[Membership] = []
        self.join_requests: list[PendingJoinRequest] = []
        self.support_tickets: list[tuple[str, str | None]] = []
        self.profile_updates: list[dict] = []
        self.fail: dict[str, Exception] = {}

    def _enter(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail:
            raise self.fail.pop(name)

    async def create_neighborhood(self, name: str, coords: Coordinates) -> None:
        self._enter("create_neighborhood")
        for existing, centroid in self.neighborhoods:
            if existing.lower() == name.lower() or distance_meters(centroid, coords) < self.collision_radius_m:
                raise CollisionError.from_authority_message(
                    f"COLLISION:{existing} already covers this area. Ask a neighbor for an invite code."
                )
        self.neighborhoods.append((name, coords))
        self.statuses[self.profile_id] = MembershipStatus.ACTIVE

    async def join_with_code(self, code: str, coords: Coordinates, location_verified: bool) -> None:
        self._enter("join_with_code")
        if code not in self.invite_codes:
            raise AuthorityError("invalid invite code", status_code=400)
        self.statuses[self.profile_id] = MembershipStatus.ACTIVE

    async def request_to_join(self, coords: Coordinates) -> RequestToJoinResult:
        self._enter("request_to_join")
        if any(m.profile_id == self.profile_id for m in self.pending_rows):
            return RequestToJoinResult(success=False, error="PENDING_REQUEST")
        if not any(distance_meters(c, coords) < self.collision_radius_m for _, c in self.neighborhoods):
            return RequestToJoinResult(success=False, error="NO_NEIGHBORHOOD_FOUND")
        self.pending_rows.append(
            Membership(
                id=f"m{len(self.pending_rows) + 1}",
                profile_id=self.profile_id,
                status=MembershipStatus.REQUEST_PENDING,
                invited_at=T0,
            )
        )
        self.statuses[self.profile_id] = MembershipStatus.REQUEST_PENDING
        return RequestToJoinResult(success=True)

    async def vouch_via_handshake(self, code: str) -> None:
        self._enter("vouch_via_handshake")
        if code not in self.handshake_codes:
            raise AuthorityError("Invalid handshake code")
        self._activate(self.handshake_codes.pop(code))

    async def approve_pending_request(self, membership_id: str) -> None:
        self._enter("approve_pending_request")
        self._activate(membership_id)

    def _activate(self, membership_id: str) -> None:
        self.join_requests = [r for r in self.join_requests if r.membership_id != membership_id]

    async def create_support_ticket(self, profile_id: str, membership_id: str | None) -> None:
        self._enter("create_support_ticket")
        self.support_tickets.append((profile_id, membership_id))

    async def fetch_own_pending_membership(self, profile_id: str) -> Membership | None:
        self._enter("fetch_own_pending_membership")
        rows = [m for m in self.pending_rows if m.profile_id == profile_id]
        return rows[0] if rows else None

    async def fetch_pending_requests(self) -> list[PendingJoinRequest]:
        self._enter("fetch_pending_requests")
        return list(self.join_requests)

    async def fetch_membership_status(self, profile_id: str) -> MembershipStatus:
        self._enter("fetch_membership_status")
        return self.statuses.get(profile_id, MembershipStatus.NONE)

    async def update_profile(self, profile_id: str, **fields) -> None:
        self._enter("update_profile")
        self.profile_updates.append({"profile_id": profile_id, **fields})


def make_join_request(
    membership_id: str,
    *,
    created_at: datetime = T0,
    expires_in: timedelta = timedelta(hours=24),
    code: str = "ABC123",
) -> PendingJoinRequest:
    return PendingJoinRequest(
        membership_id=membership_id,
        profile_id=f"profile-{membership_id}",
        display_name="Julianne Graham",
        street_name="Oak St",
        location_verified=False,
        vouch_verification_code=code,
        created_at=created_at,
        vouch_code_expires_at=created_at + expires_in,
    )


@pytest.fixture
def settings() -> Settings:
    """Default settings with timings shrunk so async tests run in milliseconds."""
    base = Settings()
    return base.model_copy(
        update={
            "geocoding": base.geocoding.model_copy(update={"debounce_seconds": 0.0, "access_token": "test"}),
            "verification": base.verification.model_copy(update={"timeout_seconds": 0.05}),
        }
    )


@pytest.fixture
def home_result() -> GeocodeResult:
    return GeocodeResult(lat=HOME.lat, lng=HOME.lng, formatted_address="12 Main St, Warren, Vermont 05674")


@pytest.fixture
def authority() -> FakeAuthority:
    return FakeAuthority()


@pytest.fixture
def context() -> SessionContext:
    return SessionContext(profile=Profile(id="p1"), membership_status=MembershipStatus.NONE)
