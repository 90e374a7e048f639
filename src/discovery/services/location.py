"""Location resolution: current position, reverse and forward geocoding.

Reverse geocoding goes through the provider backend (``/services/reverse-geocode``)
and never raises: on any failure it degrades to a regional approximation or the
``Unknown City``/``Unknown State`` sentinels so scope labels stay renderable.
Forward geocoding talks to a Nominatim-compatible search endpoint and reports
``NotFound`` to the caller without retrying.
"""

from __future__ import annotations

import asyncio
import threading
import time
from typing import List, Optional, Protocol, Tuple

from loguru import logger

from discovery.config import Configuration
from discovery.errors import DiscoveryError, LocationUnavailable, NetworkError, NotFound, PermissionDenied
from discovery.models import Coordinate, PlaceInfo, UNKNOWN_CITY, UNKNOWN_STATE
from discovery.services.http import JsonHttpClient, RetryPolicy, TTLCache
from discovery.utils import round_coord


# (min_lat, max_lat, min_lon, max_lon, city, state)
METRO_BOXES: List[Tuple[float, float, float, float, str, str]] = [
    (28.4, 28.9, 76.8, 77.5, "Delhi", "Delhi"),
    (18.9, 19.3, 72.7, 73.1, "Mumbai", "Maharashtra"),
    (12.8, 13.2, 77.4, 77.8, "Bengaluru", "Karnataka"),
    (12.8, 13.3, 80.1, 80.4, "Chennai", "Tamil Nadu"),
    (17.2, 17.6, 78.2, 78.7, "Hyderabad", "Telangana"),
    (18.4, 18.7, 73.7, 74.0, "Pune", "Maharashtra"),
    (22.4, 22.7, 88.2, 88.5, "Kolkata", "West Bengal"),
    (22.9, 23.2, 72.4, 72.8, "Ahmedabad", "Gujarat"),
]

# (min_lat, max_lat, min_lon, max_lon, state)
STATE_BOXES: List[Tuple[float, float, float, float, str]] = [
    (28.0, 30.5, 76.0, 78.5, "Delhi"),
    (18.0, 20.5, 72.0, 75.0, "Maharashtra"),
    (12.0, 16.0, 77.0, 79.0, "Karnataka"),
    (10.0, 14.0, 79.0, 81.0, "Tamil Nadu"),
    (22.0, 25.0, 87.0, 89.0, "West Bengal"),
]


def approximate_place(coord: Coordinate, country: str = "India") -> PlaceInfo:
    """Best-effort place for a coordinate when the geocoder is unreachable."""
    lat, lon = coord.latitude, coord.longitude
    for min_lat, max_lat, min_lon, max_lon, city, state in METRO_BOXES:
        if min_lat <= lat <= max_lat and min_lon <= lon <= max_lon:
            return PlaceInfo(city=city, state=state, country=country)
    for min_lat, max_lat, min_lon, max_lon, state in STATE_BOXES:
        if min_lat <= lat <= max_lat and min_lon <= lon <= max_lon:
            return PlaceInfo(city=UNKNOWN_CITY, state=state, country=country)
    return PlaceInfo(city=UNKNOWN_CITY, state=UNKNOWN_STATE, country=country)


class LocationSource(Protocol):
    def locate(self) -> Coordinate:
        """Return the device position or raise PermissionDenied / LocationUnavailable."""
        ...


class FixedLocationSource:
    """Location source backed by a coordinate reported by the client, if any."""

    def __init__(self, coordinate: Optional[Coordinate] = None, *, denied: bool = False) -> None:
        self.coordinate = coordinate
        self.denied = denied

    def locate(self) -> Coordinate:
        if self.denied:
            raise PermissionDenied("location access was refused")
        if self.coordinate is None:
            raise LocationUnavailable("no position reported")
        return self.coordinate


class LocationResolver:
    def __init__(
        self,
        cfg: Configuration,
        source: Optional[LocationSource] = None,
        *,
        backend: Optional[JsonHttpClient] = None,
        geocoder: Optional[JsonHttpClient] = None,
    ) -> None:
        self.cfg = cfg
        self.source = source or FixedLocationSource()
        self.backend = backend or JsonHttpClient(
            cfg.api_base_url,
            timeout=cfg.geocoder_timeout,
            retry=RetryPolicy(retries=0),
        )
        self.geocoder = geocoder or JsonHttpClient(
            cfg.geocoder_base_url,
            timeout=cfg.geocoder_timeout,
            retry=RetryPolicy(retries=0),
            headers={"User-Agent": cfg.geocoder_user_agent},
        )
        self._place_cache = TTLCache()
        self._forward_cache = TTLCache()
        self._lock = threading.Lock()
        self._last_geocoder_call = 0.0

    def resolve_current_coordinate(self) -> Coordinate:
        return self.source.locate()

    def _fallback(self, coord: Coordinate) -> PlaceInfo:
        return approximate_place(coord, self.cfg.default_country)

    def reverse_geocode(self, coord: Coordinate) -> PlaceInfo:
        key = f"{round_coord(coord.latitude)},{round_coord(coord.longitude)}"
        cached = self._place_cache.get(key)
        if cached is not None:
            logger.debug("reverse geocode cache hit {}", key)
            return cached
        try:
            payload = self.backend.get_json(
                "/services/reverse-geocode",
                {"lat": coord.latitude, "lng": coord.longitude},
            )
        except DiscoveryError as exc:
            logger.warning("reverse geocode failed for {}: {}", key, exc)
            return self._fallback(coord)

        data = payload.get("data") if isinstance(payload, dict) and payload.get("success") else None
        if not isinstance(data, dict):
            logger.warning("reverse geocode returned no data for {}", key)
            return self._fallback(coord)

        place = PlaceInfo(
            city=str(data.get("city") or UNKNOWN_CITY),
            state=str(data.get("state") or UNKNOWN_STATE),
            country=str(data.get("country") or self.cfg.default_country),
        )
        self._place_cache.set(key, place)
        return place

    def _throttle(self) -> None:
        with self._lock:
            delta = time.time() - self._last_geocoder_call
            if delta < self.cfg.geocoder_min_interval:
                time.sleep(self.cfg.geocoder_min_interval - delta)
            self._last_geocoder_call = time.time()

    def forward_geocode(self, query: str) -> Coordinate:
        text = (query or "").strip()
        if not text:
            raise NotFound("empty location query")
        key = text.lower()
        cached = self._forward_cache.get(key)
        if cached is not None:
            return cached

        params = {"format": "json", "q": text, "limit": 1}
        if self.cfg.geocoder_country_codes:
            params["countrycodes"] = self.cfg.geocoder_country_codes
        self._throttle()
        payload = self.geocoder.get_json("/search", params)

        if not isinstance(payload, list) or not payload:
            raise NotFound(f"no match for {text!r}")
        first = payload[0] or {}
        try:
            coord = Coordinate(float(first["lat"]), float(first["lon"]))
        except (KeyError, TypeError, ValueError):
            raise NotFound(f"no usable coordinate for {text!r}")
        self._forward_cache.set(key, coord)
        return coord

    async def resolve_current_coordinate_async(self) -> Coordinate:
        return await asyncio.to_thread(self.resolve_current_coordinate)

    async def reverse_geocode_async(self, coord: Coordinate) -> PlaceInfo:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self.reverse_geocode, coord),
                timeout=self.cfg.geocoder_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("reverse geocode timed out after {}s", self.cfg.geocoder_timeout)
            return self._fallback(coord)

    async def forward_geocode_async(self, query: str) -> Coordinate:
        # the throttle wait is not counted against the geocoder timeout
        budget = self.cfg.geocoder_timeout + self.cfg.geocoder_min_interval
        try:
            return await asyncio.wait_for(asyncio.to_thread(self.forward_geocode, query), timeout=budget)
        except asyncio.TimeoutError:
            raise NetworkError(f"forward geocode timed out after {budget:.1f}s")
