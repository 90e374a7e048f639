from __future__ import annotations

import asyncio
from typing import List, Optional

from discovery.config import Configuration
from discovery.errors import NetworkError
from discovery.models import Coordinate, PlaceInfo, ProviderResult, ScopeKind, ScopeSpec
from discovery.services.provider_search import GeoQueryClient
from discovery.services.scope_ladder import ExpansionState
from discovery.services.session import SearchSession

from fakes import DELHI, FakeResolver, GatedClient, StaticBackend, provider_record


def _session(
    backend: Optional[StaticBackend] = None,
    resolver: Optional[FakeResolver] = None,
    **overrides,
) -> SearchSession:
    cfg = Configuration(**overrides)
    client = GeoQueryClient(cfg, http=backend or StaticBackend())
    return SearchSession(cfg, client, resolver or FakeResolver())


def _ids(results: List[ProviderResult]) -> List[str]:
    return [p.id for p in results]


async def _until_calls(client: GatedClient, n: int) -> None:
    for _ in range(100):
        if len(client.calls) >= n:
            return
        await asyncio.sleep(0)
    raise AssertionError(f"expected {n} search calls, saw {len(client.calls)}")


class LateClient(GatedClient):
    """Answers even after being cancelled, like a request already on the wire."""

    async def search_async(self, query):
        index = len(self.calls)
        self.calls.append(query)
        event = self.gates.setdefault(index, asyncio.Event())
        while True:
            try:
                await event.wait()
                break
            except asyncio.CancelledError:
                self.cancelled.append(index)
        return list(self.responses.get(index, []))


def test_locate_runs_first_radius_query_sorted_by_distance() -> None:
    session = _session()
    snap = asyncio.run(session.locate())

    assert snap.query is not None
    assert snap.query.center == DELHI
    assert snap.query.scope == ScopeSpec.radius(10)
    assert _ids(snap.results) == ["p1"]
    assert snap.results[0].distance_km is not None
    assert snap.state == ExpansionState.POPULATED.value
    assert snap.loading is False
    assert snap.place == PlaceInfo("Delhi", "Delhi", "India")


def test_empty_radius_suggests_next_rung_once() -> None:
    backend = StaticBackend(records=[provider_record("far", 28.80, 77.25)])  # ~21 km out
    session = _session(backend)

    async def scenario():
        await session.set_category("cooking")
        assert backend.search_calls() == []
        snap = await session.locate()
        assert session.expansion.settle(session.generation, snap.query.scope, []) is None
        return snap

    snap = asyncio.run(scenario())

    assert snap.results == []
    assert snap.state == ExpansionState.EMPTY_SUGGESTED.value
    assert snap.suggestion is not None
    assert snap.suggestion.next_scope == ScopeSpec.radius(25)
    assert snap.suggestion.message == "No providers found. Try searching within 25 km?"
    assert session.expansion.auto_expanding is True
    assert snap.history[0].result_count == 0


def test_accepting_suggestions_walks_to_fifty_km() -> None:
    backend = StaticBackend(records=[provider_record("far", 28.9845, 77.07)])  # ~43 km out
    session = _session(backend)

    async def scenario():
        first = await session.locate()
        second = await first.suggestion.accept()
        assert second.suggestion is not None
        assert second.suggestion.next_scope == ScopeSpec.radius(50)
        assert session.expansion.settle(session.generation, second.query.scope, []) is None
        assert session.expansion.auto_expanding is True
        return await session.accept_suggestion()

    snap = asyncio.run(scenario())

    assert snap.query.scope == ScopeSpec.radius(50)
    assert _ids(snap.results) == ["far"]
    assert snap.suggestion is None
    assert snap.state == ExpansionState.POPULATED.value
    assert session.expansion.auto_expanding is False
    assert [h.query.scope.radius_km for h in snap.history] == [50.0, 25.0, 10.0]


def test_terminal_scope_gives_no_suggestion() -> None:
    session = _session(StaticBackend(records=[]))

    async def scenario():
        await session.locate()
        return await session.set_scope(ScopeSpec.country())

    snap = asyncio.run(scenario())
    assert snap.query.scope == ScopeSpec.country("India")
    assert snap.suggestion is None
    assert snap.state == ExpansionState.EMPTY_TERMINAL.value


def test_superseded_query_is_cancelled_and_latest_wins() -> None:
    client = GatedClient()
    session = SearchSession(Configuration(), client, FakeResolver())
    b_results = [ProviderResult(id="b1", coordinate=Coordinate(28.62, 77.21))]

    async def scenario():
        a = asyncio.ensure_future(session.locate())
        await _until_calls(client, 1)
        b = asyncio.ensure_future(session.set_scope(ScopeSpec.radius(50)))
        await _until_calls(client, 2)
        assert session.loading is True
        client.respond(1, b_results)
        client.release(1)
        return await a, await b

    _, snap = asyncio.run(scenario())

    assert client.cancelled == [0]
    assert _ids(snap.results) == ["b1"]
    assert snap.query.scope == ScopeSpec.radius(50)
    assert len(snap.history) == 1
    assert session.loading is False


def test_late_response_for_older_query_is_dropped() -> None:
    client = LateClient()
    session = SearchSession(Configuration(), client, FakeResolver())
    a_results = [ProviderResult(id="a1", coordinate=Coordinate(28.62, 77.21))]
    b_results = [ProviderResult(id="b1", coordinate=Coordinate(28.63, 77.22))]

    async def scenario():
        a = asyncio.ensure_future(session.locate())
        await _until_calls(client, 1)
        b = asyncio.ensure_future(session.set_scope(ScopeSpec.radius(50)))
        await _until_calls(client, 2)
        client.respond(1, b_results)
        client.release(1)
        await b
        client.respond(0, a_results)
        client.release(0)
        await a
        return session.snapshot()

    snap = asyncio.run(scenario())

    assert _ids(snap.results) == ["b1"]
    assert snap.query.scope == ScopeSpec.radius(50)
    assert [h.query.scope.radius_km for h in snap.history] == [50.0]


def test_failure_keeps_previous_results_and_annotates() -> None:
    backend = StaticBackend()
    session = _session(backend)

    async def scenario():
        await session.locate()
        backend.fail_with = NetworkError("connection refused")
        return await session.set_scope(ScopeSpec.radius(25))

    snap = asyncio.run(scenario())

    assert _ids(snap.results) == ["p1"]
    assert snap.query.scope == ScopeSpec.radius(10)
    assert snap.error is not None
    assert snap.error.kind == "network_error"
    assert snap.state == ExpansionState.POPULATED.value
    assert snap.loading is False


def test_error_clears_on_next_success() -> None:
    backend = StaticBackend()
    session = _session(backend)

    async def scenario():
        await session.locate()
        backend.fail_with = NetworkError("connection refused")
        await session.set_scope(ScopeSpec.radius(25))
        backend.fail_with = None
        return await session.refresh()

    snap = asyncio.run(scenario())
    assert snap.error is None
    assert _ids(snap.results) == ["p1", "p2", "p3"]


def test_history_is_capped_most_recent_first() -> None:
    session = _session()

    async def scenario():
        await session.locate()
        await session.set_scope(ScopeSpec.radius(25))
        await session.set_scope(ScopeSpec.radius(50))
        await session.set_category("cleaning")
        await session.set_category("tailoring")
        await session.set_category("cooking")
        return await session.set_scope(ScopeSpec.radius(10))

    snap = asyncio.run(scenario())

    assert len(snap.history) == 5
    latest = snap.history[0]
    assert latest.query.scope == ScopeSpec.radius(10)
    assert latest.query.category == "cooking"
    assert latest.result_count == 1
    assert [h.query.category for h in snap.history[1:]] == ["cooking", "tailoring", "cleaning", None]
    stamps = [h.timestamp for h in snap.history]
    assert stamps == sorted(stamps, reverse=True)


def test_unchanged_query_does_not_refetch() -> None:
    backend = StaticBackend()
    session = _session(backend)

    async def scenario():
        await session.locate()
        await session.set_scope(ScopeSpec.radius(10))
        await session.set_category("")
        await session.set_center(DELHI)

    asyncio.run(scenario())
    assert len(backend.search_calls()) == 1
    assert len(session.history) == 1


def test_denied_location_uses_default_center_with_notice() -> None:
    session = _session(resolver=FakeResolver(denied=True))
    snap = asyncio.run(session.locate())

    assert snap.query.center == Coordinate(28.6139, 77.2090)
    assert snap.place == PlaceInfo("Delhi", "Delhi", "India")
    assert snap.notice is not None
    assert snap.notice.kind == "permission_denied"
    assert snap.notice.message == "Unable to get your location. Using default location (Delhi)."
    assert snap.error is None
    assert _ids(snap.results) == ["p1"]


def test_unresolved_city_is_annotated_without_a_request() -> None:
    backend = StaticBackend()
    session = _session(backend, resolver=FakeResolver(place=PlaceInfo()))

    async def scenario():
        await session.locate()
        return await session.set_scope(ScopeSpec.city())

    snap = asyncio.run(scenario())

    assert len(backend.search_calls()) == 1
    assert snap.error is not None
    assert snap.error.kind == "unresolved_scope"
    assert _ids(snap.results) == ["p1"]
    labels = {o.scope.kind: o.label for o in snap.scopes}
    assert labels[ScopeKind.CITY] == "Entire City"
    assert labels[ScopeKind.STATE] == "Entire State"


def test_admin_scopes_rank_by_rating_without_distance() -> None:
    session = _session()

    async def scenario():
        await session.locate()
        return await session.set_scope(ScopeSpec.state())

    snap = asyncio.run(scenario())
    assert snap.query.scope == ScopeSpec.state("Delhi")
    assert _ids(snap.results) == ["p3", "p1", "p2"]
    assert all(p.distance_km is None for p in snap.results)
    assert snap.viewport is None


def test_text_filter_narrows_without_fetching() -> None:
    backend = StaticBackend()
    session = _session(backend)

    async def scenario():
        await session.locate()
        await session.set_scope(ScopeSpec.radius(50))

    asyncio.run(scenario())
    snap = session.set_text_filter("  kitchen ")
    assert _ids(snap.results) == ["p1"]
    assert snap.text_filter == "kitchen"
    assert len(backend.search_calls()) == 2
    assert session.history[0].result_count == 4

    snap = session.set_text_filter("")
    assert _ids(snap.results) == ["p1", "p2", "p3", "p4"]


def test_search_location_recenters_on_match() -> None:
    mumbai = Coordinate(19.0760, 72.8777)
    session = _session(resolver=FakeResolver(forward={"Mumbai": mumbai}))

    async def scenario():
        await session.locate()
        missing = await session.search_location("Atlantis")
        assert missing.error is not None
        assert missing.error.kind == "not_found"
        assert _ids(missing.results) == ["p1"]
        return await session.search_location("Mumbai")

    snap = asyncio.run(scenario())
    assert snap.query.center == mumbai
    assert _ids(snap.results) == ["p5"]
    assert snap.error is None


def test_observers_see_loading_then_committed() -> None:
    session = _session()
    seen = []
    unsubscribe = session.subscribe(seen.append)

    asyncio.run(session.locate())
    assert seen[0].loading is True
    assert seen[0].state == ExpansionState.SEARCHING.value
    assert seen[-1].loading is False
    assert _ids(seen[-1].results) == ["p1"]

    count = len(seen)
    unsubscribe()
    session.set_text_filter("asha")
    assert len(seen) == count


def test_pages_and_viewport_follow_committed_results() -> None:
    session = _session(page_size=3)

    async def scenario():
        await session.locate()
        return await session.set_scope(ScopeSpec.radius(50))

    snap = asyncio.run(scenario())

    assert session.page_count() == 2
    assert _ids(session.page(0)) == ["p1", "p2", "p3"]
    assert _ids(session.page(1)) == ["p4"]
    assert session.page(2) == []
    min_lon, min_lat, max_lon, max_lat = snap.viewport
    assert min_lat < DELHI.latitude < max_lat
    assert min_lon < DELHI.longitude < max_lon
    assert 0.44 < max_lat - DELHI.latitude < 0.46


def test_malformed_envelope_is_annotated_and_session_recovers() -> None:
    backend = StaticBackend()
    session = _session(backend)
    answer = backend.get_json

    async def scenario():
        await session.locate()
        backend.get_json = lambda path, params: {"success": True, "data": [1]}
        broken = await session.refresh()
        backend.get_json = answer
        return broken, await session.refresh()

    broken, recovered = asyncio.run(scenario())

    assert broken.error is not None
    assert broken.error.kind == "server_error"
    assert broken.loading is False
    assert broken.state == ExpansionState.POPULATED.value
    assert _ids(broken.results) == ["p1"]
    assert recovered.error is None
    assert len(backend.search_calls()) == 2


def test_non_finite_counts_do_not_break_the_session() -> None:
    record = provider_record("p9", 28.62, 77.21)
    record["ratingCount"] = "NaN"
    record["serviceCount"] = "inf"
    backend = StaticBackend(records=[record])
    session = _session(backend)

    snap = asyncio.run(session.locate())

    assert snap.error is None
    assert snap.loading is False
    assert _ids(snap.results) == ["p9"]
    assert snap.results[0].rating_count == 0
    assert snap.results[0].service_count == 0


def test_search_location_network_failure_keeps_center_and_results() -> None:
    resolver = FakeResolver()

    async def unreachable(query: str) -> Coordinate:
        raise NetworkError("forward geocode timed out after 6.1s")

    resolver.forward_geocode_async = unreachable
    session = _session(resolver=resolver)

    async def scenario():
        await session.locate()
        return await session.search_location("Mumbai")

    snap = asyncio.run(scenario())

    assert snap.error is not None
    assert snap.error.kind == "network_error"
    assert snap.query.center == DELHI
    assert _ids(snap.results) == ["p1"]


def test_unknown_category_is_annotated_without_fetching() -> None:
    backend = StaticBackend()
    session = _session(backend)

    async def scenario():
        await session.locate()
        return await session.set_category("plumbing")

    snap = asyncio.run(scenario())

    assert snap.error is not None
    assert snap.error.kind == "invalid_category"
    assert snap.query.category is None
    assert _ids(snap.results) == ["p1"]
    assert len(backend.search_calls()) == 1


def test_cancelled_caller_leaves_subscribers_idle() -> None:
    client = GatedClient()
    session = SearchSession(Configuration(), client, FakeResolver())
    seen = []
    session.subscribe(seen.append)

    async def scenario():
        task = asyncio.ensure_future(session.locate())
        await _until_calls(client, 1)
        assert seen[-1].loading is True
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            return True
        return False

    assert asyncio.run(scenario()) is True
    assert client.cancelled == [0]
    assert session.loading is False
    assert seen[-1].loading is False
    assert seen[-1].state == ExpansionState.IDLE.value
