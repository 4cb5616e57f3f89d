"""Address validation and geocoding.

Defines the Geocoder protocol and implementations:
- GoogleGeocoder: Google Geocoding API (requires API key).
- MockGeocoder: Parses "line1, city, ST 12345" strings locally, no API calls.
"""

from __future__ import annotations

import re
from typing import Protocol, runtime_checkable

import httpx
import structlog

from fwafunnel.config import env
from fwafunnel.errors import AddressNotFound, CollaboratorError


log = structlog.get_logger(__name__)

_UNAVAILABLE = "We couldn't verify your address right now. Please try again."


@runtime_checkable
class Geocoder(Protocol):
    async def normalize(self, address: dict) -> dict:
        """Return a normalized Address dict, or raise AddressNotFound."""
        ...


def _component(components: list[dict], kind: str, short: bool = False) -> str:
    for c in components:
        if kind in c.get("types", []):
            return c.get("short_name" if short else "long_name", "")
    return ""


def _query_for(address: dict) -> str:
    if "query" in address:
        return address["query"]
    parts = [address.get("line1"), address.get("line2"), address.get("city")]
    region = f"{address.get('state', '')} {address.get('zip_code', '')}".strip()
    return ", ".join(p for p in parts + [region] if p)


def parse_geocode_result(result: dict, line2: str | None = None) -> dict:
    """Build an Address dict from a Google geocoding result."""
    components = result.get("address_components", [])
    street_number = _component(components, "street_number")
    route = _component(components, "route")
    location = (result.get("geometry") or {}).get("location") or {}
    return {
        "line1": f"{street_number} {route}".strip(),
        "line2": line2,
        "city": _component(components, "locality") or _component(components, "sublocality"),
        "state": _component(components, "administrative_area_level_1", short=True),
        "zip_code": _component(components, "postal_code"),
        "latitude": location.get("lat"),
        "longitude": location.get("lng"),
        "place_id": result.get("place_id"),
        "formatted_address": result.get("formatted_address"),
    }


class GoogleGeocoder:
    """Google Geocoding API client restricted to US street addresses.

    Requires GOOGLE_MAPS_API_KEY environment variable or explicit api_key param.
    """

    def __init__(
        self,
        api_key: str | None = None,
        client: httpx.AsyncClient | None = None,
        timeout: float = 10.0,
    ):
        self.api_key = api_key or env("GOOGLE_MAPS_API_KEY")
        if not self.api_key:
            raise ValueError(
                "GoogleGeocoder requires a Google Maps API key. "
                "Pass api_key or set GOOGLE_MAPS_API_KEY env var."
            )
        self._base_url = "https://maps.googleapis.com/maps/api/geocode/json"
        self._client = client
        self._timeout = timeout

    async def _get(self, params: dict) -> dict:
        if self._client is not None:
            resp = await self._client.get(self._base_url, params=params, timeout=self._timeout)
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.get(self._base_url, params=params)
        resp.raise_for_status()
        return resp.json()

    async def normalize(self, address: dict) -> dict:
        query = _query_for(address)
        params = {"address": query, "components": "country:US", "key": self.api_key}
        try:
            data = await self._get(params)
        except (httpx.HTTPError, ValueError) as e:
            log.warning("geocode_failed", error=str(e))
            raise CollaboratorError(
                f"Geocoding failed: {e}", collaborator="geocoder", user_message=_UNAVAILABLE
            ) from e

        if not isinstance(data, dict):
            raise CollaboratorError(
                "Geocoding returned a malformed response",
                collaborator="geocoder",
                user_message=_UNAVAILABLE,
            )

        status = data.get("status")
        if status == "ZERO_RESULTS":
            raise AddressNotFound(f"No geocoding results for {query!r}")
        if status != "OK" or not data.get("results"):
            raise CollaboratorError(
                f"Geocoding returned status {status!r}",
                collaborator="geocoder",
                user_message=_UNAVAILABLE,
            )

        try:
            normalized = parse_geocode_result(data["results"][0], line2=address.get("line2"))
        except (AttributeError, IndexError, KeyError, TypeError) as e:
            log.warning("geocode_malformed_result", error=str(e))
            raise CollaboratorError(
                f"Geocoding result has an unexpected shape: {e!r}",
                collaborator="geocoder",
                user_message=_UNAVAILABLE,
            ) from e

        if not normalized["line1"] or not normalized["zip_code"]:
            # Matched a city or region, not a street address
            raise AddressNotFound(f"Geocoding result for {query!r} is not a street address")
        return normalized


_ADDRESS_RE = re.compile(
    r"^\s*(?P<line1>[^,]+),\s*(?P<city>[^,]+),\s*(?P<state>[A-Za-z]{2})\s+(?P<zip>\d{5})\s*$"
)


class MockGeocoder:
    """Geocoder for testing. Accepts structured input or 'line1, City, ST 12345'."""

    def __init__(self, unknown: set[str] | None = None, fail_with: Exception | None = None):
        self.unknown = {u.lower() for u in (unknown or set())}
        self.fail_with = fail_with
        self.calls: list[dict] = []

    async def normalize(self, address: dict) -> dict:
        self.calls.append(dict(address))
        if self.fail_with is not None:
            raise self.fail_with

        if "query" in address:
            match = _ADDRESS_RE.match(address["query"])
            if not match:
                raise AddressNotFound(f"Unparseable address {address['query']!r}")
            line1, city = match["line1"].strip(), match["city"].strip()
            state, zip_code = match["state"].upper(), match["zip"]
            line2 = None
        else:
            line1, city = address["line1"], address["city"]
            state, zip_code = address["state"].upper(), address["zip_code"]
            line2 = address.get("line2")

        if line1.lower() in self.unknown:
            raise AddressNotFound(f"Unknown address {line1!r}")

        return {
            "line1": line1,
            "line2": line2,
            "city": city,
            "state": state,
            "zip_code": zip_code,
            "latitude": 30.2672,
            "longitude": -97.7431,
            "place_id": f"mock:{zip_code}:{line1.lower().replace(' ', '-')}",
            "formatted_address": f"{line1}, {city}, {state} {zip_code}, USA",
        }
