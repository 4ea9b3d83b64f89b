"""
HTTP helpers.

This module centralizes the minimal async HTTP client logic used by the geocoder and
the membership authority client.

Design goals:
- Small surface area (GET JSON, generic JSON request).
- Deterministic defaults (timeout + User-Agent).
- Raise on non-2xx so callers can decide how to fail (the geocoder fails soft,
  the authority client translates bodies into typed errors).
- Every call is a plain coroutine, so cancelling the awaiting task aborts the request.
"""

from __future__ import annotations

from typing import Any

import httpx


DEFAULT_USER_AGENT = "localloop/0.1.0 (+https://local)"


def _merge_headers(headers: dict[str, str] | None) -> dict[str, str]:
    request_headers = {"User-Agent": DEFAULT_USER_AGENT}
    if headers:
        request_headers.update(headers)
    return request_headers


async def request_json(
    method: str,
    url: str,
    *,
    params: dict[str, Any] | None = None,
    json: Any = None,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 15,
) -> Any:
    """Send a request with an optional JSON body and return the decoded JSON response.

    Empty bodies (e.g. `204 No Content` from PATCH/void RPCs) decode to `None`.

    Raises:
        httpx.HTTPError: On transport errors or non-2xx status codes.
        ValueError: If the response body is not valid JSON.
    """
    async with httpx.AsyncClient(timeout=timeout_seconds) as client:
        resp = await client.request(
            method,
            url,
            params=params,
            json=json,
            headers=_merge_headers(headers),
        )
        resp.raise_for_status()
        if not resp.content:
            return None
        return resp.json()


async def get_json(
    url: str,
    *,
    params: dict[str, Any] | None = None,
    headers: dict[str, str] | None = None,
    timeout_seconds: float = 15,
) -> Any:
    """GET `url` and return the decoded JSON response.

    Raises:
        httpx.HTTPError: On transport errors or non-2xx status codes.
        ValueError: If the response body is not valid JSON.
    """
    async with httpx.AsyncClient(timeout=timeout_seconds) as client:
        resp = await client.get(url, params=params, headers=_merge_headers(headers))
        resp.raise_for_status()
        return resp.json()
