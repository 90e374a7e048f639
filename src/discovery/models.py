"""Data models for the provider discovery engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Tuple

UNKNOWN_CITY = "Unknown City"
UNKNOWN_STATE = "Unknown State"


@dataclass(frozen=True)
class Coordinate:
    latitude: float
    longitude: float

    def __post_init__(self) -> None:
        if not -90.0 <= self.latitude <= 90.0:
            raise ValueError(f"latitude out of range: {self.latitude}")
        if not -180.0 <= self.longitude <= 180.0:
            raise ValueError(f"longitude out of range: {self.longitude}")


@dataclass(frozen=True)
class PlaceInfo:
    city: str = UNKNOWN_CITY
    state: str = UNKNOWN_STATE
    country: str = "India"

    @property
    def has_city(self) -> bool:
        return bool(self.city) and self.city != UNKNOWN_CITY

    @property
    def has_state(self) -> bool:
        return bool(self.state) and self.state != UNKNOWN_STATE

    @property
    def short_label(self) -> str:
        parts = [p for p, ok in ((self.city, self.has_city), (self.state, self.has_state)) if ok]
        return ", ".join(parts) if parts else self.country


class ScopeKind(str, Enum):
    RADIUS = "radius"
    CITY = "city"
    STATE = "state"
    COUNTRY = "country"


@dataclass(frozen=True)
class ScopeSpec:
    """A search breadth: a radius in km, or an administrative unit by name.

    Administrative scopes may carry ``name=None`` until they are bound to the
    session's resolved place.
    """

    kind: ScopeKind
    radius_km: Optional[float] = None
    name: Optional[str] = None

    @classmethod
    def radius(cls, km: float) -> "ScopeSpec":
        if km <= 0:
            raise ValueError("radius must be positive")
        return cls(ScopeKind.RADIUS, radius_km=float(km))

    @classmethod
    def city(cls, name: Optional[str] = None) -> "ScopeSpec":
        return cls(ScopeKind.CITY, name=name)

    @classmethod
    def state(cls, name: Optional[str] = None) -> "ScopeSpec":
        return cls(ScopeKind.STATE, name=name)

    @classmethod
    def country(cls, name: Optional[str] = None) -> "ScopeSpec":
        return cls(ScopeKind.COUNTRY, name=name)

    @property
    def is_radius(self) -> bool:
        return self.kind is ScopeKind.RADIUS

    def same_rung(self, other: "ScopeSpec") -> bool:
        """Equal position on the ladder, ignoring bound names."""
        if self.kind is not other.kind:
            return False
        return not self.is_radius or self.radius_km == other.radius_km


@dataclass(frozen=True)
class SearchQuery:
    center: Coordinate
    scope: ScopeSpec
    category: Optional[str] = None


@dataclass(frozen=True)
class ProviderResult:
    id: str
    coordinate: Coordinate
    category: Optional[str] = None
    rating_average: float = 0.0
    rating_count: int = 0
    distance_km: Optional[float] = None
    name: str = ""
    bio: Optional[str] = None
    service_count: int = 0


@dataclass(frozen=True)
class SearchHistoryEntry:
    query: SearchQuery
    result_count: int
    timestamp: datetime


@dataclass(frozen=True)
class ScopeOption:
    scope: ScopeSpec
    label: str


@dataclass
class Suggestion:
    message: str
    next_scope: ScopeSpec
    accept: Callable[[], Awaitable["SessionSnapshot"]] = field(repr=False, compare=False)


@dataclass(frozen=True)
class ErrorAnnotation:
    kind: str
    message: str


@dataclass
class SessionSnapshot:
    query: Optional[SearchQuery]
    place: Optional[PlaceInfo]
    results: List[ProviderResult]
    state: str
    loading: bool = False
    text_filter: str = ""
    suggestion: Optional[Suggestion] = None
    error: Optional[ErrorAnnotation] = None
    notice: Optional[ErrorAnnotation] = None
    history: List[SearchHistoryEntry] = field(default_factory=list)
    scopes: List[ScopeOption] = field(default_factory=list)
    viewport: Optional[Tuple[float, float, float, float]] = None  # min_lon, min_lat, max_lon, max_lat
