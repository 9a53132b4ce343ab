from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Union

import httpx

from .config import settings
from .errors import RouteUnavailableError


logger = logging.getLogger("dispatch.maps")


@dataclass(frozen=True)
class Coordinates:
    lat: float
    lng: float


@dataclass(frozen=True)
class RouteInfo:
    distance_km: float
    duration_seconds: int
    duration_text: str
    distance_text: str


Place = Union[str, Coordinates]


def _place_param(place: Place) -> str:
    if isinstance(place, Coordinates):
        return f"{place.lat:.6f},{place.lng:.6f}"
    return place.strip()


class GoogleMapsProvider:
    """Google Distance Matrix / Geocoding client.

    Every failure surfaces as ``RouteUnavailableError``; callers decide whether
    a missing route is fatal.
    """

    def __init__(self, api_key: str | None = None, base_url: str | None = None) -> None:
        self.base_url = (base_url or settings.GOOGLE_MAPS_BASE_URL).rstrip("/")
        self.api_key = (api_key if api_key is not None else settings.GOOGLE_MAPS_API_KEY or "").strip()
        self.use_traffic = bool(settings.GOOGLE_USE_TRAFFIC)
        self.timeout = float(settings.MAPS_TIMEOUT_SECS)
        self.retries = max(0, int(settings.MAPS_MAX_RETRIES))
        self.backoff = float(settings.MAPS_BACKOFF_SECS)
        self.cache_ttl = max(0, int(settings.MAPS_ROUTE_CACHE_SECS))
        self._cache: dict[str, tuple[datetime, object]] = {}

    def _cache_get(self, key: str):
        if self.cache_ttl <= 0:
            return None
        ent = self._cache.get(key)
        if not ent:
            return None
        exp, val = ent
        if exp >= datetime.now(timezone.utc):
            return val
        self._cache.pop(key, None)
        return None

    def _cache_set(self, key: str, value) -> None:
        if self.cache_ttl <= 0:
            return
        self._cache[key] = (datetime.now(timezone.utc) + timedelta(seconds=self.cache_ttl), value)

    def _get_json(self, path: str, params: dict) -> dict:
        if not self.api_key:
            raise RouteUnavailableError("Maps API key is not configured")
        url = f"{self.base_url}{path}"
        params = dict(params, key=self.api_key)
        last_err: Exception | None = None
        for attempt in range(self.retries + 1):
            try:
                with httpx.Client(timeout=self.timeout) as client:
                    resp = client.get(url, params=params)
                if resp.status_code >= 400:
                    raise RuntimeError(f"google_bad_status_{resp.status_code}")
                body = resp.json() or {}
                if (body.get("status") or "").upper() != "OK":
                    raise RuntimeError(f"google_status_{body.get('status')}")
                return body
            except (httpx.HTTPError, RuntimeError, ValueError) as exc:
                last_err = exc
                if attempt < self.retries:
                    time.sleep(self.backoff * (2 ** attempt))
        logger.warning("maps request %s failed: %s", path, last_err)
        raise RouteUnavailableError() from last_err

    def distance_and_duration(self, origin: Place, destination: Place) -> RouteInfo:
        origin_param = _place_param(origin)
        destination_param = _place_param(destination)
        if not origin_param or not destination_param:
            raise RouteUnavailableError("Origin and destination are required")
        cache_key = f"dm|{origin_param}|{destination_param}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached
        params = {
            "origins": origin_param,
            "destinations": destination_param,
            "mode": "driving",
        }
        if self.use_traffic:
            params["departure_time"] = "now"
            params["traffic_model"] = "best_guess"
        body = self._get_json("/maps/api/distancematrix/json", params)
        try:
            element = body["rows"][0]["elements"][0]
        except (KeyError, IndexError, TypeError) as exc:
            raise RouteUnavailableError("Invalid response from distance matrix API") from exc
        if (element.get("status") or "").upper() != "OK":
            raise RouteUnavailableError("Unable to calculate route")
        distance = element.get("distance") or {}
        # Prefer duration_in_traffic when available
        duration = element.get("duration_in_traffic") or element.get("duration") or {}
        if distance.get("value") is None or duration.get("value") is None:
            raise RouteUnavailableError("Unable to determine route duration or distance")
        result = RouteInfo(
            distance_km=float(distance["value"]) / 1000.0,
            duration_seconds=int(duration["value"]),
            duration_text=str(duration.get("text") or ""),
            distance_text=str(distance.get("text") or ""),
        )
        self._cache_set(cache_key, result)
        return result

    def geocode(self, address: str) -> Coordinates:
        address = (address or "").strip()
        if not address:
            raise RouteUnavailableError("Address is required")
        cache_key = f"geo|{address}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return cached
        body = self._get_json("/maps/api/geocode/json", {"address": address})
        try:
            loc = body["results"][0]["geometry"]["location"]
            result = Coordinates(lat=float(loc["lat"]), lng=float(loc["lng"]))
        except (KeyError, IndexError, TypeError, ValueError) as exc:
            raise RouteUnavailableError("Unable to get coordinates for the provided address") from exc
        self._cache_set(cache_key, result)
        return result


_provider: GoogleMapsProvider | None = None


def get_maps_provider() -> GoogleMapsProvider:
    global _provider
    if _provider is None:
        _provider = GoogleMapsProvider()
    return _provider


def set_maps_provider(provider) -> None:
    """Swap the process-wide routing provider (tests, alternative backends)."""
    global _provider
    _provider = provider
