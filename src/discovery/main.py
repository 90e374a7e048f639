from __future__ import annotations

from typing import Callable, Dict, List, Optional, Tuple

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, Field

from discovery.config import Configuration
from discovery.models import Coordinate, ScopeKind, ScopeSpec, SearchQuery, SessionSnapshot
from discovery.services.http import JsonHttpClient, RetryPolicy
from discovery.services.location import FixedLocationSource, LocationResolver
from discovery.services.provider_search import CATEGORIES, GeoQueryClient, normalize_category
from discovery.services.registry import SessionRegistry
from discovery.services.session import SearchSession


app = FastAPI(title="Provider Discovery")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

load_dotenv()
_cfg = Configuration.from_env()
_registry = SessionRegistry(ttl_sec=_cfg.session_ttl_sec)
_client = GeoQueryClient(_cfg)
_backend = JsonHttpClient(_cfg.api_base_url, timeout=_cfg.geocoder_timeout, retry=RetryPolicy(retries=0))
_geocoder = JsonHttpClient(
    _cfg.geocoder_base_url,
    timeout=_cfg.geocoder_timeout,
    retry=RetryPolicy(retries=0),
    headers={"User-Agent": _cfg.geocoder_user_agent},
)

SessionFactory = Callable[[FixedLocationSource], SearchSession]


def get_registry() -> SessionRegistry:
    return _registry


def get_session_factory() -> SessionFactory:
    def build(source: FixedLocationSource) -> SearchSession:
        resolver = LocationResolver(_cfg, source, backend=_backend, geocoder=_geocoder)
        return SearchSession(_cfg, _client, resolver)

    return build


class CreateSessionRequest(BaseModel):
    user_lat: Optional[float] = Field(None, ge=-90, le=90, description="Device latitude, if shared")
    user_lon: Optional[float] = Field(None, ge=-180, le=180, description="Device longitude, if shared")
    location_denied: bool = Field(False, description="User refused location access")
    category: Optional[str] = None


class ScopeRequest(BaseModel):
    kind: ScopeKind
    radius_km: Optional[float] = Field(None, gt=0)


class CategoryRequest(BaseModel):
    category: Optional[str] = None


class CenterRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class TextRequest(BaseModel):
    text: str = ""


class PlacePayload(BaseModel):
    city: str
    state: str
    country: str


class ProviderPayload(BaseModel):
    id: str
    name: str
    lat: float
    lon: float
    category: Optional[str] = None
    rating_average: float = 0.0
    rating_count: int = 0
    distance_km: Optional[float] = None
    bio: Optional[str] = None
    service_count: int = 0


class ScopePayload(BaseModel):
    kind: ScopeKind
    radius_km: Optional[float] = None
    name: Optional[str] = None
    label: Optional[str] = None


class QueryPayload(BaseModel):
    lat: float
    lon: float
    scope: ScopePayload
    category: Optional[str] = None


class HistoryPayload(BaseModel):
    query: QueryPayload
    result_count: int
    timestamp: str


class AnnotationPayload(BaseModel):
    kind: str
    message: str


class SuggestionPayload(BaseModel):
    message: str
    next_scope: ScopePayload


class SessionPayload(BaseModel):
    session_id: str
    state: str
    loading: bool
    query: Optional[QueryPayload] = None
    place: Optional[PlacePayload] = None
    providers: List[ProviderPayload] = []
    total: int = 0
    page: int = 0
    page_count: int = 0
    text_filter: str = ""
    suggestion: Optional[SuggestionPayload] = None
    error: Optional[AnnotationPayload] = None
    notice: Optional[AnnotationPayload] = None
    history: List[HistoryPayload] = []
    scopes: List[ScopePayload] = []
    viewport: Optional[Tuple[float, float, float, float]] = None


def _scope_payload(scope: ScopeSpec, label: Optional[str] = None) -> ScopePayload:
    return ScopePayload(kind=scope.kind, radius_km=scope.radius_km, name=scope.name, label=label)


def _query_payload(query: SearchQuery) -> QueryPayload:
    return QueryPayload(
        lat=query.center.latitude,
        lon=query.center.longitude,
        scope=_scope_payload(query.scope),
        category=query.category,
    )


def to_payload(session_id: str, session: SearchSession, snap: SessionSnapshot, page: int = 0) -> SessionPayload:
    providers = [
        ProviderPayload(
            id=p.id,
            name=p.name,
            lat=p.coordinate.latitude,
            lon=p.coordinate.longitude,
            category=p.category,
            rating_average=p.rating_average,
            rating_count=p.rating_count,
            distance_km=(round(p.distance_km, 3) if p.distance_km is not None else None),
            bio=p.bio,
            service_count=p.service_count,
        )
        for p in session.page(page)
    ]
    place = snap.place
    return SessionPayload(
        session_id=session_id,
        state=snap.state,
        loading=snap.loading,
        query=_query_payload(snap.query) if snap.query else None,
        place=PlacePayload(city=place.city, state=place.state, country=place.country) if place else None,
        providers=providers,
        total=len(snap.results),
        page=page,
        page_count=session.page_count(),
        text_filter=snap.text_filter,
        suggestion=(
            SuggestionPayload(
                message=snap.suggestion.message,
                next_scope=_scope_payload(snap.suggestion.next_scope),
            )
            if snap.suggestion
            else None
        ),
        error=AnnotationPayload(kind=snap.error.kind, message=snap.error.message) if snap.error else None,
        notice=AnnotationPayload(kind=snap.notice.kind, message=snap.notice.message) if snap.notice else None,
        history=[
            HistoryPayload(
                query=_query_payload(h.query),
                result_count=h.result_count,
                timestamp=h.timestamp.isoformat(),
            )
            for h in snap.history
        ],
        scopes=[_scope_payload(o.scope, o.label) for o in snap.scopes],
        viewport=snap.viewport,
    )


def _lookup(registry: SessionRegistry, session_id: str) -> SearchSession:
    session = registry.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="unknown session")
    return session


@app.get("/healthz")
def healthz() -> dict:
    logger.info("cfg: {}", _cfg.log_summary())
    return {"status": "ok"}


@app.get("/categories")
def categories() -> Dict[str, str]:
    return dict(CATEGORIES)


@app.post("/sessions", response_model=SessionPayload)
async def create_session(
    req: CreateSessionRequest,
    registry: SessionRegistry = Depends(get_registry),
    factory: SessionFactory = Depends(get_session_factory),
) -> SessionPayload:
    try:
        _cfg.require_backend()
        normalize_category(req.category)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    coord = None
    if req.user_lat is not None and req.user_lon is not None:
        coord = Coordinate(req.user_lat, req.user_lon)
    session = factory(FixedLocationSource(coord, denied=req.location_denied))
    try:
        if req.category:
            await session.set_category(req.category)
        snap = await session.locate()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except Exception as exc:
        logger.exception("session creation failed: {}", exc)
        raise HTTPException(status_code=500, detail="internal error")
    session_id = registry.add(session)
    return to_payload(session_id, session, snap)


@app.get("/sessions/{session_id}", response_model=SessionPayload)
def get_session(session_id: str, page: int = 0, registry: SessionRegistry = Depends(get_registry)) -> SessionPayload:
    session = _lookup(registry, session_id)
    return to_payload(session_id, session, session.snapshot(), page=max(page, 0))


@app.post("/sessions/{session_id}/scope", response_model=SessionPayload)
async def set_scope(
    session_id: str, req: ScopeRequest, registry: SessionRegistry = Depends(get_registry)
) -> SessionPayload:
    session = _lookup(registry, session_id)
    try:
        if req.kind is ScopeKind.RADIUS:
            if req.radius_km is None:
                raise ValueError("radius_km is required for a radius scope")
            scope = ScopeSpec.radius(req.radius_km)
        else:
            scope = ScopeSpec(req.kind)
        snap = await session.set_scope(scope)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return to_payload(session_id, session, snap)


@app.post("/sessions/{session_id}/category", response_model=SessionPayload)
async def set_category(
    session_id: str, req: CategoryRequest, registry: SessionRegistry = Depends(get_registry)
) -> SessionPayload:
    session = _lookup(registry, session_id)
    try:
        normalize_category(req.category)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    snap = await session.set_category(req.category)
    return to_payload(session_id, session, snap)


@app.post("/sessions/{session_id}/center", response_model=SessionPayload)
async def set_center(
    session_id: str, req: CenterRequest, registry: SessionRegistry = Depends(get_registry)
) -> SessionPayload:
    session = _lookup(registry, session_id)
    snap = await session.set_center(Coordinate(req.lat, req.lon))
    return to_payload(session_id, session, snap)


@app.post("/sessions/{session_id}/search", response_model=SessionPayload)
async def search_location(
    session_id: str, req: TextRequest, registry: SessionRegistry = Depends(get_registry)
) -> SessionPayload:
    session = _lookup(registry, session_id)
    snap = await session.search_location(req.text)
    return to_payload(session_id, session, snap)


@app.post("/sessions/{session_id}/filter", response_model=SessionPayload)
def set_filter(session_id: str, req: TextRequest, registry: SessionRegistry = Depends(get_registry)) -> SessionPayload:
    session = _lookup(registry, session_id)
    snap = session.set_text_filter(req.text)
    return to_payload(session_id, session, snap)


@app.post("/sessions/{session_id}/suggestion/accept", response_model=SessionPayload)
async def accept_suggestion(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> SessionPayload:
    session = _lookup(registry, session_id)
    snap = await session.accept_suggestion()
    return to_payload(session_id, session, snap)


@app.delete("/sessions/{session_id}")
def delete_session(session_id: str, registry: SessionRegistry = Depends(get_registry)) -> dict:
    if not registry.drop(session_id):
        raise HTTPException(status_code=404, detail="unknown session")
    return {"deleted": True}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("discovery.main:app", host="0.0.0.0", port=8010, reload=True)
