"""
LocalLoop CLI entrypoint.

This CLI is intended for quick local checks of the engine without a frontend:
geocoding an address, measuring distances, normalizing codes and listing the
pending join requests a resident could vouch for.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from typing import Any

from localloop.clients.authority import SupabaseAuthority
from localloop.clients.geocoding import MapboxGeocoder
from localloop.config.settings import get_settings
from localloop.core.geo import Coordinates, distance_meters
from localloop.core.logging import configure_logging
from localloop.errors import AuthorityError
from localloop.membership.codes import normalize_code
from localloop.membership.vouch import VouchBoard
from localloop.resolver.address import resolve_once


def _cmd_geocode(args: argparse.Namespace) -> int:
    settings = get_settings()
    geocoder = MapboxGeocoder(settings)
    result = asyncio.run(
        resolve_once(geocoder, args.address, min_query_length=settings.geocoding.min_query_length)
    )
    if result is None:
        print("No address match (or the address could not be verified).")
        return 1
    if args.json:
        print(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
        return 0
    print(f"{result.formatted_address}")
    print(f"  lat={result.lat:.6f} lng={result.lng:.6f}")
    return 0


def _cmd_distance(args: argparse.Namespace) -> int:
    a = Coordinates(lat=float(args.lat1), lng=float(args.lng1))
    b = Coordinates(lat=float(args.lat2), lng=float(args.lng2))
    meters = distance_meters(a, b)
    tolerance = get_settings().verification.tolerance_m
    verdict = "within" if meters <= tolerance else "outside"
    print(f"{meters:.1f} m ({verdict} the {tolerance:.0f} m proximity tolerance)")
    return 0


def _cmd_normalize_code(args: argparse.Namespace) -> int:
    length = get_settings().codes.length
    code = normalize_code(args.text, length=length)
    status = "complete" if len(code) == length else f"incomplete ({len(code)}/{length})"
    print(f"{code or '-'}  {status}")
    return 0


def _cmd_pending_requests(args: argparse.Namespace) -> int:
    settings = get_settings()
    token = os.getenv("LOCALLOOP_ACCESS_TOKEN")
    if not token:
        print("Set LOCALLOOP_ACCESS_TOKEN to a resident's access token.")
        return 2

    board = VouchBoard(SupabaseAuthority(settings, access_token=token), args.neighborhood_id, settings=settings.codes)
    try:
        asyncio.run(board.refresh())
    except AuthorityError as exc:
        print(f"Could not load join requests: {exc.message}")
        return 1

    live = board.live_requests()
    if args.json:
        payload = []
        for r in live:
            badge = board.badge(r)
            payload.append(
                {
                    **r.model_dump(mode="json"),
                    "badge": badge.value if badge else None,
                    "minutes_remaining": board.minutes_remaining(r),
                }
            )
        print(json.dumps(payload, ensure_ascii=False, indent=2))
        return 0

    if not live:
        print("No pending join requests.")
        return 0
    for i, req in enumerate(live, start=1):
        badge = board.badge(req)
        label = f"[{badge.value}] " if badge else ""
        verified = "" if req.location_verified else "  (location not verified)"
        print(f"{i:>2}. {label}{req.heading}  {board.minutes_remaining(req)} min left{verified}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argparse parser for the LocalLoop CLI."""
    parser = argparse.ArgumentParser(prog="localloop")
    sub = parser.add_subparsers(dest="command", required=True)

    geo = sub.add_parser("geocode", help="Resolve a street address to coordinates.")
    geo.add_argument("address")
    geo.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    geo.set_defaults(func=_cmd_geocode)

    dist = sub.add_parser("distance", help="Great-circle distance between two points (meters).")
    dist.add_argument("lat1", type=float)
    dist.add_argument("lng1", type=float)
    dist.add_argument("lat2", type=float)
    dist.add_argument("lng2", type=float)
    dist.set_defaults(func=_cmd_distance)

    code = sub.add_parser("normalize-code", help="Normalize an invite/handshake code as typed.")
    code.add_argument("text")
    code.set_defaults(func=_cmd_normalize_code)

    pend = sub.add_parser("pending-requests", help="List live join requests a resident can vouch for.")
    pend.add_argument("--neighborhood-id", default="", help="Scopes the local cache; the RPC infers it.")
    pend.add_argument("--json", action="store_true", help="Output machine-readable JSON")
    pend.set_defaults(func=_cmd_pending_requests)
    return parser


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint callable used by `python -m localloop.cli`."""
    configure_logging()
    parser = build_parser()
    args = parser.parse_args(argv)
    func: Any = getattr(args, "func")
    return int(func(args))


if __name__ == "__main__":
    raise SystemExit(main())
