from __future__ import annotations

import asyncio
import math
from typing import Any, Dict, List, Optional

from loguru import logger

from discovery.config import Configuration
from discovery.errors import InvalidCategory, ServerError, UnresolvedScope
from discovery.models import (
    Coordinate,
    ProviderResult,
    ScopeKind,
    SearchQuery,
    UNKNOWN_CITY,
    UNKNOWN_STATE,
)
from discovery.services.http import JsonHttpClient, RetryPolicy


CATEGORIES: Dict[str, str] = {
    "cooking": "Cooking & Catering",
    "cleaning": "House Cleaning",
    "tailoring": "Tailoring & Alterations",
    "tutoring": "Home Tutoring",
    "beauty": "Beauty & Wellness",
    "gardening": "Gardening & Landscaping",
}


def normalize_category(category: Optional[str]) -> Optional[str]:
    """Empty means all categories; anything else must be a known category key."""
    if category is None:
        return None
    value = category.strip().lower()
    if not value:
        return None
    if value not in CATEGORIES:
        raise InvalidCategory(f"unknown category: {category}")
    return value


def _num(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _extract_coordinate(record: dict) -> Optional[Coordinate]:
    raw = record.get("coordinate")
    if not isinstance(raw, dict):
        address = record.get("address") or {}
        raw = address.get("coordinates") if isinstance(address, dict) else None
    if not isinstance(raw, dict):
        return None
    lat = raw.get("latitude", raw.get("lat"))
    lon = raw.get("longitude", raw.get("lng", raw.get("lon")))
    if lat is None or lon is None:
        return None
    try:
        return Coordinate(float(lat), float(lon))
    except (TypeError, ValueError):
        return None


def parse_provider(record: dict) -> Optional[ProviderResult]:
    """Map a backend provider record onto a ProviderResult; None if it has no usable location."""
    provider_id = record.get("id") or record.get("_id")
    coord = _extract_coordinate(record)
    if provider_id is None or coord is None:
        return None

    rating = record.get("rating") if isinstance(record.get("rating"), dict) else {}
    rating_average = record.get("ratingAverage", rating.get("average"))
    rating_count = record.get("ratingCount", rating.get("count"))
    category = record.get("category") or record.get("primaryCategory")

    return ProviderResult(
        id=str(provider_id),
        coordinate=coord,
        category=(str(category) if category else None),
        rating_average=_num(rating_average),
        rating_count=int(_num(rating_count)),
        name=str(record.get("name") or ""),
        bio=(str(record["bio"]) if record.get("bio") else None),
        service_count=int(_num(record.get("serviceCount"))),
    )


class GeoQueryClient:
    """Client for ``GET /services/nearby-providers``; pure request/response."""

    def __init__(self, cfg: Configuration, http: Optional[JsonHttpClient] = None) -> None:
        self.cfg = cfg
        self.http = http or JsonHttpClient(
            cfg.api_base_url,
            timeout=cfg.api_timeout,
            retry=RetryPolicy(retries=cfg.api_retries),
        )

    def build_params(self, query: SearchQuery) -> Dict[str, Any]:
        scope = query.scope
        params: Dict[str, Any] = {"scope": scope.kind.value, "limit": self.cfg.result_limit}

        if scope.kind is ScopeKind.RADIUS:
            params["lat"] = query.center.latitude
            params["lng"] = query.center.longitude
            params["radiusKm"] = scope.radius_km
        elif scope.kind is ScopeKind.CITY:
            if not scope.name or scope.name == UNKNOWN_CITY:
                raise UnresolvedScope("city could not be determined for this location")
            params["city"] = scope.name
        elif scope.kind is ScopeKind.STATE:
            if not scope.name or scope.name == UNKNOWN_STATE:
                raise UnresolvedScope("state could not be determined for this location")
            params["state"] = scope.name
        else:
            params["country"] = scope.name or self.cfg.default_country

        if query.category:
            params["category"] = query.category
        return params

    def search(self, query: SearchQuery) -> List[ProviderResult]:
        params = self.build_params(query)
        payload = self.http.get_json("/services/nearby-providers", params)
        if not isinstance(payload, dict) or not payload.get("success"):
            message = payload.get("message") if isinstance(payload, dict) else None
            raise ServerError(message or "provider search failed")

        data = payload.get("data") or {}
        if not isinstance(data, dict):
            raise ServerError("malformed provider response: data is not an object")
        records = data.get("providers") or []
        if not isinstance(records, list):
            raise ServerError("malformed provider response: providers is not a list")
        results: list[ProviderResult] = []
        for record in records:
            if not isinstance(record, dict):
                continue
            try:
                provider = parse_provider(record)
            except (TypeError, ValueError, OverflowError) as exc:
                logger.warning("skipping unparseable provider record {}: {}", record.get("_id") or record.get("id"), exc)
                continue
            if provider is None:
                logger.warning("skipping provider record without id or location: {}", record.get("_id") or record.get("id"))
                continue
            results.append(provider)
        return results

    async def search_async(self, query: SearchQuery) -> List[ProviderResult]:
        return await asyncio.to_thread(self.search, query)
