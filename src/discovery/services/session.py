"""Stateful search orchestrator shared by the map and list views.

Every ``run_query`` is stamped with a generation number; only the response
for the most recently issued generation may change visible state. Superseded
fetches are cancelled and their results, if they still arrive, are dropped.
Failures from the resolver or the provider client never escape: they become
an ``ErrorAnnotation`` while the last good results stay visible.
"""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Callable, Deque, List, Optional

from loguru import logger

from discovery.config import Configuration
from discovery.errors import DiscoveryError, InvalidCategory, LocationUnavailable, PermissionDenied
from discovery.models import (
    Coordinate,
    ErrorAnnotation,
    PlaceInfo,
    ProviderResult,
    ScopeSpec,
    SearchHistoryEntry,
    SearchQuery,
    SessionSnapshot,
    Suggestion,
)
from discovery.services.bbox_builder import expand_bbox_from_center
from discovery.services.location import LocationResolver
from discovery.services.provider_search import GeoQueryClient, normalize_category
from discovery.services.ranking import filter_by_text, rank_results
from discovery.services.scope_ladder import LADDER, AutoExpansion, ExpansionState, ScopeExpander, bind_scope

Listener = Callable[[SessionSnapshot], None]


class SearchSession:
    def __init__(
        self,
        cfg: Configuration,
        client: GeoQueryClient,
        resolver: LocationResolver,
        expander: Optional[ScopeExpander] = None,
    ) -> None:
        self.cfg = cfg
        self.client = client
        self.resolver = resolver
        self.expander = expander or ScopeExpander(default_country=cfg.default_country)
        self.expansion = AutoExpansion(self.expander)

        self._center: Optional[Coordinate] = None
        self._place: Optional[PlaceInfo] = None
        self._scope: ScopeSpec = LADDER[0]
        self._category: Optional[str] = None
        self._text_filter = ""

        self._ranked: List[ProviderResult] = []
        self._results: List[ProviderResult] = []
        self._committed: Optional[SearchQuery] = None
        self._pending: Optional[SearchQuery] = None
        self._inflight: Optional[asyncio.Future] = None
        self._generation = 0

        self._history: Deque[SearchHistoryEntry] = deque(maxlen=cfg.history_capacity)
        self._suggestion: Optional[Suggestion] = None
        self._error: Optional[ErrorAnnotation] = None
        self._notice: Optional[ErrorAnnotation] = None
        self._listeners: List[Listener] = []

    # -- observation -------------------------------------------------------

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def query(self) -> Optional[SearchQuery]:
        return self._committed

    @property
    def place(self) -> Optional[PlaceInfo]:
        return self._place

    @property
    def results(self) -> List[ProviderResult]:
        return list(self._results)

    @property
    def history(self) -> List[SearchHistoryEntry]:
        return list(self._history)

    @property
    def suggestion(self) -> Optional[Suggestion]:
        return self._suggestion

    @property
    def error(self) -> Optional[ErrorAnnotation]:
        return self._error

    @property
    def loading(self) -> bool:
        return self._pending is not None

    @property
    def state(self) -> ExpansionState:
        return self.expansion.state

    @property
    def notice(self) -> Optional[ErrorAnnotation]:
        return self._notice

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def snapshot(self) -> SessionSnapshot:
        viewport = None
        if self._committed is not None and self._committed.scope.is_radius:
            c = self._committed.center
            viewport = expand_bbox_from_center(c.longitude, c.latitude, self._committed.scope.radius_km or 0.0)
        return SessionSnapshot(
            query=self._committed,
            place=self._place,
            results=list(self._results),
            state=self.expansion.state.value,
            loading=self.loading,
            text_filter=self._text_filter,
            suggestion=self._suggestion,
            error=self._error,
            notice=self._notice,
            history=list(self._history),
            scopes=self.expander.options(self._place),
            viewport=viewport,
        )

    def page(self, index: int) -> List[ProviderResult]:
        size = max(1, self.cfg.page_size)
        start = max(0, index) * size
        return self._results[start : start + size]

    def page_count(self) -> int:
        size = max(1, self.cfg.page_size)
        return (len(self._results) + size - 1) // size

    def _notify(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            listener(snap)

    # -- user intents ------------------------------------------------------

    async def locate(self) -> SessionSnapshot:
        """Find the user's position, falling back to the configured default center."""
        try:
            center = await self.resolver.resolve_current_coordinate_async()
        except (PermissionDenied, LocationUnavailable) as exc:
            logger.warning("location unavailable ({}); using default center {}", exc, self.cfg.default_city)
            self._center = self.cfg.default_center
            self._place = self.cfg.default_place
            self._notice = ErrorAnnotation(
                exc.kind,
                f"Unable to get your location. Using default location ({self.cfg.default_city}).",
            )
            self._notify()
            return await self._run_if_changed()

        self._center = center
        self._notice = None
        place = await self.resolver.reverse_geocode_async(center)
        if self._center != center:
            return self.snapshot()
        self._place = place
        return await self._run_if_changed()

    async def set_scope(self, scope: ScopeSpec) -> SessionSnapshot:
        # administrative rungs always bind to the current place
        self._scope = scope if scope.is_radius else ScopeSpec(scope.kind)
        return await self._run_if_changed()

    async def set_category(self, category: Optional[str]) -> SessionSnapshot:
        try:
            self._category = normalize_category(category)
        except InvalidCategory as exc:
            # the current query and its results stay as they are
            self._error = ErrorAnnotation(exc.kind, str(exc))
            self._notify()
            return self.snapshot()
        return await self._run_if_changed()

    async def set_center(self, center: Coordinate) -> SessionSnapshot:
        """Re-center the search; the place descriptor is re-resolved for the new center."""
        self._center = center
        place = await self.resolver.reverse_geocode_async(center)
        if self._center != center:
            # a newer re-center was issued while this one was resolving
            return self.snapshot()
        self._place = place
        return await self._run_if_changed()

    async def search_location(self, text: str) -> SessionSnapshot:
        """Forward-geocode free text and re-center on the match."""
        try:
            center = await self.resolver.forward_geocode_async(text)
        except DiscoveryError as exc:
            self._error = ErrorAnnotation(exc.kind, str(exc))
            self._notify()
            return self.snapshot()
        return await self.set_center(center)

    def set_text_filter(self, text: str) -> SessionSnapshot:
        self._text_filter = (text or "").strip()
        self._results = filter_by_text(self._ranked, self._text_filter)
        self._notify()
        return self.snapshot()

    async def accept_suggestion(self, scope: Optional[ScopeSpec] = None) -> SessionSnapshot:
        target = scope or (self._suggestion.next_scope if self._suggestion else None)
        if target is None:
            return self.snapshot()
        self._scope = target if target.is_radius else ScopeSpec(target.kind)
        query = self._build_query()
        if query is None:
            return self.snapshot()
        return await self.run_query(query)

    async def refresh(self) -> SessionSnapshot:
        query = self._build_query()
        if query is None:
            return self.snapshot()
        return await self.run_query(query)

    # -- query execution ---------------------------------------------------

    def _build_query(self) -> Optional[SearchQuery]:
        if self._center is None:
            return None
        scope = bind_scope(self._scope, self._place, self.cfg.default_country)
        return SearchQuery(center=self._center, scope=scope, category=self._category)

    async def _run_if_changed(self) -> SessionSnapshot:
        query = self._build_query()
        if query is None:
            return self.snapshot()
        target = self._pending if self._pending is not None else self._committed
        if query == target:
            return self.snapshot()
        return await self.run_query(query)

    async def run_query(self, query: SearchQuery) -> SessionSnapshot:
        self._generation += 1
        generation = self._generation

        previous = self._inflight
        if previous is not None and not previous.done():
            logger.debug("cancelling superseded query before gen={}", generation)
            previous.cancel()

        self._pending = query
        self._suggestion = None
        self.expansion.begin()
        self._notify()

        task = asyncio.ensure_future(self.client.search_async(query))
        self._inflight = task
        try:
            raw = await task
        except asyncio.CancelledError:
            if generation != self._generation:
                logger.debug("discarded cancelled query gen={}", generation)
                return self.snapshot()
            self._pending = None
            self._inflight = None
            self.expansion.fail()
            self._notify()
            raise
        except DiscoveryError as exc:
            if generation != self._generation:
                logger.debug("ignoring failure of stale query gen={}: {}", generation, exc)
                return self.snapshot()
            logger.warning("provider search failed gen={}: {}", generation, exc)
            self._pending = None
            self._inflight = None
            self._error = ErrorAnnotation(exc.kind, str(exc))
            self.expansion.fail()
            self._notify()
            return self.snapshot()

        if generation != self._generation:
            logger.debug("discarded stale response gen={} (latest={})", generation, self._generation)
            return self.snapshot()

        self._commit(generation, query, raw)
        return self.snapshot()

    def _commit(self, generation: int, query: SearchQuery, raw: List[ProviderResult]) -> None:
        ranked = rank_results(query.center, query.scope, raw)
        self._ranked = ranked
        self._results = filter_by_text(ranked, self._text_filter)
        self._committed = query
        self._pending = None
        self._inflight = None
        self._error = None
        self._history.appendleft(
            SearchHistoryEntry(query=query, result_count=len(ranked), timestamp=datetime.now(timezone.utc))
        )

        nxt = self.expansion.settle(generation, query.scope, ranked, self._place)
        if nxt is not None:
            label = self.expander.label(nxt, self._place)
            self._suggestion = Suggestion(
                message=f"No providers found. Try searching {label.lower()}?",
                next_scope=nxt,
                accept=lambda: self.accept_suggestion(nxt),
            )

        logger.info(
            "committed gen={} scope={} category={} results={} state={}",
            generation,
            query.scope.kind.value,
            query.category or "all",
            len(ranked),
            self.expansion.state.value,
        )
        self._notify()
