"""
Geocoding client (Mapbox Places).

Turns a free-text address into the first matching street address or point of
interest. Result types are restricted server-side (`types=address,poi`) so a query
can never "verify" a whole city or zip code.

The client raises on transport/configuration problems; deciding that a failure
means "could not verify" is the resolver's job (`localloop.resolver.address`).
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx

from localloop.config.settings import Settings
from localloop.core.http import get_json
from localloop.domain.models import GeocodeResult
from localloop.errors import GeocoderError

logger = logging.getLogger(__name__)


def parse_feature_collection(payload: Any) -> GeocodeResult | None:
    """Return the first feature of a Mapbox response, or None when nothing matched."""
    if not isinstance(payload, dict):
        return None
    features = payload.get("features") or []
    if not isinstance(features, list) or not features:
        return None

    feature = features[0]
    center = feature.get("center") if isinstance(feature, dict) else None
    if not (isinstance(center, (list, tuple)) and len(center) >= 2):
        return None

    # Mapbox orders centers as [lng, lat].
    lng, lat = center[0], center[1]
    return GeocodeResult(
        lat=float(lat),
        lng=float(lng),
        formatted_address=str(feature.get("place_name") or ""),
    )


class MapboxGeocoder:
    """Async forward geocoder backed by the Mapbox Places v5 endpoint."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def _require_token(self) -> str:
        token = self._settings.geocoding.access_token
        if not token:
            raise GeocoderError("Mapbox token is missing (set MAPBOX_TOKEN).")
        return token

    def _endpoint(self, address: str) -> str:
        base = self._settings.geocoding.base_url.rstrip("/")
        return f"{base}/{quote(address, safe='')}.json"

    async def geocode(self, address: str) -> GeocodeResult | None:
        """Geocode `address`; None when the service has no address/POI match.

        Raises:
            GeocoderError: Missing token, transport failure or non-2xx response.
        """
        geo = self._settings.geocoding
        params = {
            "access_token": self._require_token(),
            "limit": geo.limit,
            "types": ",".join(geo.types),
        }
        logger.debug("Geocoding query of %d chars", len(address))
        try:
            payload = await get_json(
                self._endpoint(address),
                params=params,
                timeout_seconds=self._settings.app.http_timeout_seconds,
            )
        except (httpx.HTTPError, ValueError) as exc:
            raise GeocoderError(f"Geocoding request failed: {exc}") from exc
        return parse_feature_collection(payload)
