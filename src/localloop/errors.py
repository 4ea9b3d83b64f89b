"""
Error taxonomy.

- `InputInvalidError`: caught on the client before any network call (short code, short
  address, missing coordinates). Blocks submission; not shown as an error banner.
- `AuthorityError`: transport or opaque failure from the membership authority.
  - `CollisionError`: the create path hit an existing neighborhood.
  - `DomainRejectedError`: a structured rejection code from `ERROR_MESSAGES`.
- `GeocoderError`: the geocoding service is misconfigured or unreachable.

Sensing denial and timeout are verifier states rather than exceptions
(see `localloop.verification.proximity`).
"""

from __future__ import annotations

COLLISION_TAG = "COLLISION:"

ERROR_MESSAGES: dict[str, str] = {
    "PENDING_REQUEST": "You already have a pending request to join a neighborhood.",
    "NO_NEIGHBORHOOD_FOUND": "No neighborhood found near your location.",
    "PENDING_VOUCH": "Please find another friendly neighbor to vouch for you.",
    "NOT_AUTHORIZED_SEED": "You are not authorized.",
    "PROFILE_NOT_FOUND": "Profile not found.",
}

DEFAULT_REQUEST_MESSAGE = "Unable to complete your request to join neighborhood"


def message_for(code: str | None) -> str:
    """Human message for a domain rejection code (unknown codes get the generic message)."""
    if code is None:
        return DEFAULT_REQUEST_MESSAGE
    return ERROR_MESSAGES.get(code, DEFAULT_REQUEST_MESSAGE)


class LocalLoopError(Exception):
    """Base class for every error raised by the engine."""


class InputInvalidError(LocalLoopError, ValueError):
    """Client-side validation failure; nothing was sent."""


class GeocoderError(LocalLoopError):
    """The geocoding service could not be used."""


class AuthorityError(LocalLoopError):
    """A call to the membership authority failed."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class CollisionError(AuthorityError):
    """A neighborhood already claims this name/location."""

    @classmethod
    def from_authority_message(cls, message: str) -> "CollisionError":
        _, _, rest = message.partition(COLLISION_TAG)
        return cls(rest.strip() or message)


class DomainRejectedError(AuthorityError):
    """A structured, non-retryable rejection (e.g. `PENDING_REQUEST`)."""

    def __init__(self, code: str):
        super().__init__(message_for(code))
        self.code = code
