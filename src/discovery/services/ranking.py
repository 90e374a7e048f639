from __future__ import annotations

from dataclasses import replace
from typing import List

from discovery.models import Coordinate, ProviderResult, ScopeSpec
from discovery.utils import haversine_km


def rank_by_distance(center: Coordinate, results: List[ProviderResult]) -> List[ProviderResult]:
    """Annotate each provider with its distance from ``center`` and sort nearest first.

    Ties are broken by higher average rating, then by id, so ranking is
    deterministic and re-ranking an already ranked list is a no-op.
    """
    annotated = [
        replace(
            p,
            distance_km=haversine_km(
                center.latitude, center.longitude, p.coordinate.latitude, p.coordinate.longitude
            ),
        )
        for p in results
    ]
    annotated.sort(key=lambda p: (p.distance_km, -p.rating_average, p.id))
    return annotated


def rank_by_rating(results: List[ProviderResult]) -> List[ProviderResult]:
    # distance is meaningless at city/state/country granularity
    stripped = [replace(p, distance_km=None) for p in results]
    stripped.sort(key=lambda p: (-p.rating_average, p.id))
    return stripped


def rank_results(center: Coordinate, scope: ScopeSpec, results: List[ProviderResult]) -> List[ProviderResult]:
    if scope.is_radius:
        return rank_by_distance(center, results)
    return rank_by_rating(results)


def filter_by_text(results: List[ProviderResult], term: str) -> List[ProviderResult]:
    """Case-insensitive match against provider name, bio and category."""
    needle = (term or "").strip().lower()
    if not needle:
        return list(results)
    out: list[ProviderResult] = []
    for p in results:
        haystack = " ".join(filter(None, [p.name, p.bio or "", p.category or ""])).lower()
        if needle in haystack:
            out.append(p)
    return out
