"""
Domain models (Pydantic).

These types mirror the rows and RPC payloads owned by the membership authority:
- identity (`Profile`) and the explicit per-user `SessionContext`,
- memberships and the resident-side `PendingJoinRequest` listing,
- geocoder output (`GeocodeResult`).

Field names follow the backend's snake_case columns so rows validate directly.
Status fields are only ever filled from authority responses.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum

from pydantic import BaseModel, Field, field_validator

from localloop.core.geo import Coordinates
from localloop.core.time import ensure_tz


class MembershipStatus(str, Enum):
    NONE = "none"
    REQUEST_PENDING = "request_pending"
    ACTIVE = "active"


class GeocodeResult(BaseModel):
    """First address/POI match for a free-text query."""

    lat: float = Field(..., ge=-90, le=90)
    lng: float = Field(..., ge=-180, le=180)
    formatted_address: str

    @property
    def coordinates(self) -> Coordinates:
        return Coordinates(lat=self.lat, lng=self.lng)


class Profile(BaseModel):
    """The authenticated user's resident profile."""

    id: str
    display_name: str | None = None
    address: str | None = None
    lat: float | None = None
    lng: float | None = None
    location_verified: bool = False
    verified_at: datetime | None = None
    neighborhood_id: str | None = None

    @field_validator("verified_at", mode="after")
    @classmethod
    def _aware_verified_at(cls, value: datetime | None) -> datetime | None:
        return ensure_tz(value) if value is not None else None


class Neighborhood(BaseModel):
    id: str
    name: str
    centroid: Coordinates | None = None
    radius_miles: float | None = None


class Membership(BaseModel):
    """One row of `neighborhood_memberships` as seen by its owner."""

    id: str
    profile_id: str | None = None
    neighborhood_id: str | None = None
    status: MembershipStatus = MembershipStatus.NONE
    invited_at: datetime | None = None
    vouch_verification_code: str | None = None
    vouch_code_expires_at: datetime | None = None

    @field_validator("invited_at", "vouch_code_expires_at", mode="after")
    @classmethod
    def _aware_timestamps(cls, value: datetime | None) -> datetime | None:
        # The backend stores UTC; naive values are read as such.
        return ensure_tz(value) if value is not None else None

    def request_expires_at(self, vouch_window_minutes: int) -> datetime | None:
        """Derived expiry of a pending request: `invited_at` plus the vouch window."""
        if self.invited_at is None:
            return None
        return self.invited_at + timedelta(minutes=vouch_window_minutes)


class PendingJoinRequest(BaseModel):
    """A neighbor waiting to be vouched for, as listed to residents."""

    membership_id: str
    profile_id: str
    display_name: str | None = None
    street_name: str | None = None
    location_verified: bool = False
    vouch_verification_code: str | None = None
    created_at: datetime
    vouch_code_expires_at: datetime

    @field_validator("created_at", "vouch_code_expires_at", mode="after")
    @classmethod
    def _aware_timestamps(cls, value: datetime) -> datetime:
        return ensure_tz(value)

    @property
    def heading(self) -> str:
        return f"{self.display_name or 'Your neighbor'} at {self.street_name or 'unknown location'}"


class RequestToJoinResult(BaseModel):
    """Payload of the request-to-join RPC (`success=False` carries an error code)."""

    success: bool = True
    error: str | None = None
    membership_id: str | None = None

    @field_validator("error")
    @classmethod
    def _normalize_code(cls, value: str | None) -> str | None:
        return value.strip().upper() if value else None


class SessionContext(BaseModel):
    """Explicit per-user context handed to the engine's entry points."""

    profile: Profile
    membership_status: MembershipStatus | None = MembershipStatus.NONE
    access_token: str | None = None
