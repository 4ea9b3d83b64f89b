"""
Membership authority client (Supabase / PostgREST).

The authority is the single source of truth for neighborhoods, memberships and
codes. This module is responsible only for:
- calling its RPCs and table endpoints with the caller's access token,
- translating failures into the typed errors of `localloop.errors`,
- parsing rows into `localloop.domain.models` types.

It intentionally holds no state; caching and invalidation live with the callers.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import ValidationError

from localloop.config.settings import Settings
from localloop.core.geo import Coordinates
from localloop.core.http import request_json
from localloop.domain.models import (
    Membership,
    MembershipStatus,
    PendingJoinRequest,
    RequestToJoinResult,
)
from localloop.errors import (
    COLLISION_TAG,
    ERROR_MESSAGES,
    AuthorityError,
    CollisionError,
    DomainRejectedError,
)

logger = logging.getLogger(__name__)

MEMBERSHIP_COLUMNS = (
    "id,profile_id,neighborhood_id,status,invited_at,vouch_verification_code,vouch_code_expires_at"
)


class MembershipAuthority(Protocol):
    """The remote operations the engine consumes."""

    async def create_neighborhood(self, name: str, coords: Coordinates) -> None: ...

    async def join_with_code(self, code: str, coords: Coordinates, location_verified: bool) -> None: ...

    async def request_to_join(self, coords: Coordinates) -> RequestToJoinResult: ...

    async def vouch_via_handshake(self, code: str) -> None: ...

    async def approve_pending_request(self, membership_id: str) -> None: ...

    async def create_support_ticket(self, profile_id: str, membership_id: str | None) -> None: ...

    async def fetch_own_pending_membership(self, profile_id: str) -> Membership | None: ...

    async def fetch_pending_requests(self) -> list[PendingJoinRequest]: ...

    async def fetch_membership_status(self, profile_id: str) -> MembershipStatus: ...

    async def update_profile(
        self,
        profile_id: str,
        *,
        display_name: str,
        address: str,
        coords: Coordinates,
        location_verified: bool,
        verified_at: datetime | None,
    ) -> None: ...


def _error_message(exc: httpx.HTTPStatusError) -> str:
    """Extract PostgREST's `message` field, falling back to the raw body."""
    try:
        body = exc.response.json()
    except ValueError:
        return exc.response.text or str(exc)
    if isinstance(body, dict):
        return str(body.get("message") or body.get("error") or body)
    return str(body)


def translate_error(exc: Exception) -> AuthorityError:
    """Map a transport/HTTP failure onto the engine's error taxonomy."""
    if isinstance(exc, httpx.HTTPStatusError):
        message = _error_message(exc)
        status_code = exc.response.status_code
        if COLLISION_TAG in message:
            return CollisionError.from_authority_message(message)
        code = message.strip().upper()
        if code in ERROR_MESSAGES:
            return DomainRejectedError(code)
        return AuthorityError(message, status_code=status_code)
    return AuthorityError(str(exc) or exc.__class__.__name__)


class SupabaseAuthority:
    """PostgREST client for the membership RPCs, scoped to one user's access token."""

    def __init__(self, settings: Settings, access_token: str | None = None):
        self._settings = settings
        self._access_token = access_token

    def _base_url(self) -> str:
        base_url = self._settings.authority.base_url
        if not base_url:
            raise AuthorityError("Authority base URL is missing (set SUPABASE_URL).")
        return base_url.rstrip("/") + "/rest/v1"

    def _headers(self) -> dict[str, str]:
        anon_key = self._settings.authority.anon_key or ""
        bearer = self._access_token or anon_key
        return {
            "apikey": anon_key,
            "Authorization": f"Bearer {bearer}",
            "Content-Type": "application/json",
        }

    async def _call(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: Any = None,
        extra_headers: dict[str, str] | None = None,
    ) -> Any:
        headers = self._headers()
        if extra_headers:
            headers.update(extra_headers)
        try:
            return await request_json(
                method,
                f"{self._base_url()}/{path}",
                params=params,
                json=body,
                headers=headers,
                timeout_seconds=self._settings.app.http_timeout_seconds,
            )
        except (httpx.HTTPError, ValueError) as exc:
            error = translate_error(exc)
            logger.warning("Authority call %s %s failed: %s", method, path, error.message)
            raise error from exc

    async def _rpc(self, name: str, args: dict[str, Any] | None = None) -> Any:
        return await self._call("POST", f"rpc/{name}", body=args or {})

    async def create_neighborhood(self, name: str, coords: Coordinates) -> None:
        await self._rpc(
            "initialize_neighborhood",
            {"neighborhood_name": name.strip(), "user_lat": coords.lat, "user_lng": coords.lng},
        )

    async def join_with_code(self, code: str, coords: Coordinates, location_verified: bool) -> None:
        await self._rpc(
            "join_neighborhood",
            {
                "invite_code_text": code,
                "user_lat": coords.lat,
                "user_lng": coords.lng,
                "locationverified": bool(location_verified),
            },
        )

    async def request_to_join(self, coords: Coordinates) -> RequestToJoinResult:
        payload = await self._rpc(
            "find_and_request_join", {"user_lat": coords.lat, "user_lng": coords.lng}
        )
        if not isinstance(payload, dict):
            return RequestToJoinResult(success=True)
        try:
            return RequestToJoinResult.model_validate(payload)
        except ValidationError as exc:
            logger.warning("Unexpected find_and_request_join payload: %s", payload)
            raise AuthorityError("Malformed request-to-join response") from exc

    async def vouch_via_handshake(self, code: str) -> None:
        await self._rpc("vouch_via_handshake", {"entered_code": code})

    async def approve_pending_request(self, membership_id: str) -> None:
        await self._rpc("approve_join_request", {"p_membership_id": membership_id})

    async def create_support_ticket(self, profile_id: str, membership_id: str | None) -> None:
        # Argument names are the deployed RPC signature (including its spelling).
        await self._rpc(
            "create_support_request",
            {"profile_id": profile_id, "neighorhood_membership_id": membership_id},
        )

    async def fetch_own_pending_membership(self, profile_id: str) -> Membership | None:
        rows = await self._call(
            "GET",
            "neighborhood_memberships",
            params={
                "select": MEMBERSHIP_COLUMNS,
                "profile_id": f"eq.{profile_id}",
                "status": f"eq.{MembershipStatus.REQUEST_PENDING.value}",
                "order": "invited_at.desc",
                "limit": 2,
            },
        )
        rows = rows or []
        if len(rows) > 1:
            logger.warning("Profile %s has %d pending memberships; using the newest", profile_id, len(rows))
        return Membership.model_validate(rows[0]) if rows else None

    async def fetch_pending_requests(self) -> list[PendingJoinRequest]:
        rows = await self._rpc("get_pending_join_requests")
        return [PendingJoinRequest.model_validate(r) for r in (rows or [])]

    async def fetch_membership_status(self, profile_id: str) -> MembershipStatus:
        rows = await self._call(
            "GET",
            "neighborhood_memberships",
            params={"select": "status", "profile_id": f"eq.{profile_id}"},
        )
        statuses = {str((r or {}).get("status")) for r in (rows or [])}
        if MembershipStatus.ACTIVE.value in statuses:
            return MembershipStatus.ACTIVE
        if MembershipStatus.REQUEST_PENDING.value in statuses:
            return MembershipStatus.REQUEST_PENDING
        return MembershipStatus.NONE

    async def update_profile(
        self,
        profile_id: str,
        *,
        display_name: str,
        address: str,
        coords: Coordinates,
        location_verified: bool,
        verified_at: datetime | None,
    ) -> None:
        await self._call(
            "PATCH",
            "profiles",
            params={"id": f"eq.{profile_id}"},
            body={
                "display_name": display_name,
                "address": address,
                "lat": coords.lat,
                "lng": coords.lng,
                "location_verified": bool(location_verified),
                "verified_at": verified_at.isoformat() if verified_at else None,
            },
            extra_headers={"Prefer": "return=minimal"},
        )
