"""Progressive scope ladder and the auto-expansion state machine.

The ladder is ``Radius(10) < Radius(25) < Radius(50) < City < State < Country``.
Administrative rungs are templates without a name; they are bound to the
session's resolved place only when a query is built or a label is rendered.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional, Sequence, Tuple

from discovery.models import (
    PlaceInfo,
    ProviderResult,
    ScopeKind,
    ScopeOption,
    ScopeSpec,
    UNKNOWN_CITY,
    UNKNOWN_STATE,
)

LADDER: Tuple[ScopeSpec, ...] = (
    ScopeSpec.radius(10),
    ScopeSpec.radius(25),
    ScopeSpec.radius(50),
    ScopeSpec.city(),
    ScopeSpec.state(),
    ScopeSpec.country(),
)

_KIND_ORDER = {
    ScopeKind.RADIUS: 0,
    ScopeKind.CITY: 1,
    ScopeKind.STATE: 2,
    ScopeKind.COUNTRY: 3,
}


def breadth(scope: ScopeSpec) -> Tuple[int, float]:
    """Total order key over scopes; larger means broader."""
    return (_KIND_ORDER[scope.kind], scope.radius_km or 0.0)


def bind_scope(scope: ScopeSpec, place: Optional[PlaceInfo], default_country: str = "India") -> ScopeSpec:
    """Fill an administrative scope's name from the resolved place."""
    if scope.is_radius or scope.name:
        return scope
    if scope.kind is ScopeKind.CITY:
        return ScopeSpec.city(place.city if place else None)
    if scope.kind is ScopeKind.STATE:
        return ScopeSpec.state(place.state if place else None)
    return ScopeSpec.country(place.country if place and place.country else default_country)


def scope_label(scope: ScopeSpec, place: Optional[PlaceInfo], default_country: str = "India") -> str:
    if scope.is_radius:
        return f"Within {scope.radius_km:g} km"
    if scope.kind is ScopeKind.CITY:
        if scope.name and scope.name != UNKNOWN_CITY:
            return f"Entire {scope.name}"
        return f"Entire {place.city}" if place and place.has_city else "Entire City"
    if scope.kind is ScopeKind.STATE:
        if scope.name and scope.name != UNKNOWN_STATE:
            return f"Entire {scope.name}"
        return f"Entire {place.state}" if place and place.has_state else "Entire State"
    name = scope.name or (place.country if place else None) or default_country
    return f"Entire {name}"


class ScopeExpander:
    def __init__(self, ladder: Sequence[ScopeSpec] = LADDER, default_country: str = "India") -> None:
        self.ladder = tuple(sorted(ladder, key=breadth))
        self.default_country = default_country

    def suggest_next(self, current: ScopeSpec, place: Optional[PlaceInfo] = None) -> Optional[ScopeSpec]:
        """Next rung strictly broader than ``current``; None at the top of the ladder."""
        key = breadth(current)
        for rung in self.ladder:
            if breadth(rung) > key:
                return bind_scope(rung, place, self.default_country)
        return None

    @staticmethod
    def is_empty(results: Sequence[ProviderResult]) -> bool:
        return len(results) == 0

    def options(self, place: Optional[PlaceInfo]) -> List[ScopeOption]:
        return [
            ScopeOption(
                scope=bind_scope(rung, place, self.default_country),
                label=scope_label(rung, place, self.default_country),
            )
            for rung in self.ladder
        ]

    def label(self, scope: ScopeSpec, place: Optional[PlaceInfo]) -> str:
        return scope_label(scope, place, self.default_country)


class ExpansionState(str, Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    POPULATED = "populated"
    EMPTY_SUGGESTED = "empty_suggested"
    EMPTY_TERMINAL = "empty_terminal"


class AutoExpansion:
    """Idle -> Searching -> {Populated, EmptySuggested, EmptyTerminal}.

    A suggestion fires at most once per query generation; ``auto_expanding``
    stays set until a newer query settles.
    """

    def __init__(self, expander: ScopeExpander) -> None:
        self.expander = expander
        self.state = ExpansionState.IDLE
        self.auto_expanding = False
        self._settled = ExpansionState.IDLE
        self._fired_for: Optional[int] = None

    def begin(self) -> None:
        self.state = ExpansionState.SEARCHING

    def fail(self) -> None:
        self.state = self._settled

    def settle(
        self,
        generation: int,
        scope: ScopeSpec,
        results: Sequence[ProviderResult],
        place: Optional[PlaceInfo] = None,
    ) -> Optional[ScopeSpec]:
        if generation == self._fired_for:
            return None
        self.auto_expanding = False

        if not self.expander.is_empty(results):
            self._set(ExpansionState.POPULATED)
            return None

        nxt = self.expander.suggest_next(scope, place)
        if nxt is None:
            self._set(ExpansionState.EMPTY_TERMINAL)
            return None

        self._fired_for = generation
        self.auto_expanding = True
        self._set(ExpansionState.EMPTY_SUGGESTED)
        return nxt

    def _set(self, state: ExpansionState) -> None:
        self.state = state
        self._settled = state
