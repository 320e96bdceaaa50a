"""Environment enrichment for located chatter posts.

Weather, air quality, pollen, elevation and reverse-geocoding snapshots are
fetched concurrently from configured provider endpoints. A post that names a
provider place (``place.provider_ids.google_places``) also gets a place-details
snapshot. A failing provider is logged and left out; enrichment never fails
the submission.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any
from urllib.parse import quote

import requests

logger = logging.getLogger(__name__)

PLACE_PRODUCT = "place"
PLACES_PROVIDER_ID = "google_places"


def extract_coordinates(data: dict[str, Any]) -> tuple[float, float] | None:
    """Coordinates from ``location_hint`` or, failing that, ``place.location``."""
    hint = data.get("location_hint")
    if isinstance(hint, dict):
        lat, lng = hint.get("lat"), hint.get("lng")
        if isinstance(lat, (int, float)) and isinstance(lng, (int, float)):
            return float(lat), float(lng)
    place = data.get("place")
    if isinstance(place, dict) and isinstance(place.get("location"), dict):
        loc = place["location"]
        lat, lng = loc.get("lat"), loc.get("lng")
        if isinstance(lat, (int, float)) and isinstance(lng, (int, float)):
            return float(lat), float(lng)
    return None


def extract_place_id(data: dict[str, Any]) -> str | None:
    place = data.get("place")
    if not isinstance(place, dict):
        return None
    ids = place.get("provider_ids")
    if not isinstance(ids, dict):
        return None
    place_id = ids.get(PLACES_PROVIDER_ID)
    return place_id.strip() if isinstance(place_id, str) and place_id.strip() else None


def place_summary(body: Any, place_id: str) -> dict[str, Any]:
    """Normalise a place-details reply to name, address, location and ids."""
    doc = body if isinstance(body, dict) else {}
    name = doc.get("displayName")
    location = doc.get("location") if isinstance(doc.get("location"), dict) else {}
    resolved = doc.get("id") or place_id
    return {
        "name": (name.get("text") if isinstance(name, dict) else name) or "Unknown Place",
        "formatted_address": doc.get("formattedAddress") or "",
        "lat": location.get("latitude"),
        "lng": location.get("longitude"),
        "place_id": resolved,
        "maps_url": f"https://www.google.com/maps/place/?q=place_id:{resolved}",
        "types": doc.get("types") or [],
    }


class EnvironmentEnricher:
    def __init__(
        self,
        endpoints: dict[str, str],
        *,
        api_key: str = "",
        place_details_url: str = "",
        provider: str = "google",
        timeout: float = 5.0,
    ):
        self.endpoints = dict(endpoints)
        self.place_details_url = place_details_url
        self.api_key = api_key
        self.provider = provider
        self.timeout = timeout

    @property
    def enabled(self) -> bool:
        return bool(self.endpoints or self.place_details_url)

    async def _fetch(self, product: str, url: str, lat: float, lng: float) -> dict[str, Any]:
        params = {"lat": lat, "lng": lng}
        if self.api_key:
            params["key"] = self.api_key

        def _do() -> dict[str, Any]:
            resp = requests.get(url, params=params, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
            return body if isinstance(body, dict) else {"value": body}

        summary = await asyncio.to_thread(_do)
        return {
            "captured_at": datetime.now(timezone.utc).isoformat(),
            "provider": {"name": self.provider, "product": product},
            "summary": summary,
        }

    async def _fetch_place(self, place_id: str) -> dict[str, Any]:
        url = f"{self.place_details_url.rstrip('/')}/{quote(place_id, safe='')}"
        headers = {"X-Goog-Api-Key": self.api_key} if self.api_key else {}

        def _do() -> Any:
            resp = requests.get(url, headers=headers, timeout=self.timeout)
            resp.raise_for_status()
            return resp.json()

        body = await asyncio.to_thread(_do)
        return {
            "captured_at": datetime.now(timezone.utc).isoformat(),
            "provider": {"name": self.provider, "product": PLACE_PRODUCT},
            "summary": place_summary(body, place_id),
        }

    async def enrich(self, data: dict[str, Any]) -> dict[str, Any] | None:
        """Return ``{product: snapshot}`` or None when there is nothing to add.

        Coordinate products need a location; the place snapshot needs a
        provider place id. Either may run without the other.
        """
        if not self.enabled:
            return None
        calls: dict[str, Any] = {}
        coords = extract_coordinates(data)
        if coords is not None:
            lat, lng = coords
            for product, url in self.endpoints.items():
                calls[product] = self._fetch(product, url, lat, lng)
        place_id = extract_place_id(data)
        if place_id is not None and self.place_details_url:
            calls[PLACE_PRODUCT] = self._fetch_place(place_id)
        if not calls:
            return None
        products = list(calls)
        results = await asyncio.gather(*calls.values(), return_exceptions=True)
        environment: dict[str, Any] = {}
        for product, result in zip(products, results):
            if isinstance(result, BaseException):
                logger.warning(f"{product} enrichment failed: {result}")
                continue
            environment[product] = result
        return environment or None


__all__ = ["EnvironmentEnricher", "extract_coordinates", "extract_place_id", "place_summary"]
