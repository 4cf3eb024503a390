from __future__ import annotations

from typing import Annotated

from fastapi import Depends, FastAPI, HTTPException, Path, Query, Request
from fastapi.responses import JSONResponse

from . import schemas
from .core.config import settings
from .db import SessionLocal, init_db
from .domain import ContractVersion, MarketStatus
from .errors import StoreUnavailable
from .repositories import CacheStore, MarketFilter, MarketRepository
from .services.market_service import MarketService
from .services.stats_service import StatsAggregator

app = FastAPI(title="PredictSync API", version="0.1.0", debug=settings.debug)

_SYNC_STRATEGIES = "^(full|incremental|recent|active|targeted|claims|resolved|missing|logs)$"


@app.on_event("startup")
def on_startup() -> None:
    """Create the cache tables when the API boots."""

    init_db()


@app.exception_handler(StoreUnavailable)
def _store_unavailable(_request: Request, exc: StoreUnavailable) -> JSONResponse:
    return JSONResponse(status_code=503, content={"detail": f"Cache store unavailable: {exc}"})


def _market_repository() -> MarketRepository:
    return MarketRepository(CacheStore(SessionLocal))


def _orchestrator_factory():
    from pipelines.orchestrator import create_orchestrator

    return create_orchestrator(settings)


def _market_service(repository: MarketRepository = Depends(_market_repository)) -> MarketService:
    """Provide the market service wired to the shared cache store."""

    stats = StatsAggregator(repository, ttl=settings.stats_ttl_seconds)
    return MarketService(repository, stats=stats, orchestrator_factory=_orchestrator_factory)


@app.get("/healthz", tags=["system"])
def healthcheck(repository: MarketRepository = Depends(_market_repository)) -> dict[str, str]:
    """Readiness probe; fails with 503 when the cache store cannot be queried."""

    repository.store.ping()
    return {"status": "ok"}


def _market_filter(
    *,
    version: Annotated[str | None, Query(description="Contract version", pattern="^v[12]$")] = None,
    status: Annotated[
        str | None,
        Query(description="Status index", pattern="^(active|resolved|cancelled|pending_approval)$"),
    ] = None,
    category: Annotated[str | None, Query(description="Category filter")] = None,
    creator: Annotated[str | None, Query(description="Creator address")] = None,
    participant: Annotated[str | None, Query(description="Participant address")] = None,
    sort: Annotated[str, Query(pattern="^(created_at|deadline|id)$")] = "created_at",
    order: Annotated[str, Query(pattern="^(asc|desc)$")] = "desc",
    limit: Annotated[int, Query(ge=1, le=200)] = 50,
    offset: Annotated[int, Query(ge=0)] = 0,
) -> MarketFilter:
    """Normalize shared market listing query parameters."""

    return MarketFilter(
        version=ContractVersion(version) if version else None,
        status=MarketStatus(status) if status else None,
        category=category,
        creator=creator,
        participant=participant,
        sort=sort,
        order=order,
        limit=limit,
        offset=offset,
    )


@app.get("/markets", response_model=schemas.MarketList, tags=["markets"])
def list_markets(
    *,
    query: MarketFilter = Depends(_market_filter),
    active_only: Annotated[bool, Query(description="Only markets whose deadline has not passed")] = False,
    service: MarketService = Depends(_market_service),
):
    """List cached markets with optional filtering and pagination."""

    result = service.list_markets(query, active_only=active_only)
    return schemas.MarketList(
        total=result.total,
        items=[schemas.Market.model_validate(market.to_dict()) for market in result.markets],
    )


@app.get("/markets/{market_key}", response_model=schemas.Market, tags=["markets"])
def get_market(market_key: str, service: MarketService = Depends(_market_service)):
    """Retrieve one cached market by its version-tagged key (e.g. ``pred_v2_7``)."""

    market = service.get_market(market_key)
    if market is None:
        raise HTTPException(status_code=404, detail="Market not found")
    return schemas.Market.model_validate(market.to_dict())


@app.get("/stakes/{owner}/{market_key}", response_model=schemas.Stake, tags=["stakes"])
def get_stake(owner: str, market_key: str, service: MarketService = Depends(_market_service)):
    stake = service.get_stake(owner, market_key)
    if stake is None:
        raise HTTPException(status_code=404, detail="Stake not found")
    return schemas.Stake.model_validate(stake.to_dict())


@app.get("/users/{owner}/stakes", response_model=schemas.StakeList, tags=["stakes"])
def list_user_stakes(owner: str, service: MarketService = Depends(_market_service)):
    stakes = service.list_user_stakes(owner)
    return schemas.StakeList(
        total=len(stakes),
        items=[schemas.Stake.model_validate(stake.to_dict()) for stake in stakes],
    )


@app.get("/stats", response_model=schemas.MarketStats, tags=["stats"])
def get_stats(
    refresh: Annotated[bool, Query(description="Recompute instead of serving the cached snapshot")] = False,
    service: MarketService = Depends(_market_service),
):
    """Aggregate statistics; may be stale by up to the configured TTL."""

    return schemas.MarketStats.model_validate(service.get_stats(force=refresh).to_dict())


@app.post("/sync/{strategy}", response_model=schemas.SyncSummary, tags=["sync"])
def trigger_sync(
    strategy: Annotated[str, Path(pattern=_SYNC_STRATEGIES)],
    request: schemas.SyncRequest,
    service: MarketService = Depends(_market_service),
):
    """Run one sync strategy now and return its summary (503 when the run aborted)."""

    params: dict[str, int] = {}
    if strategy == "targeted":
        if request.id is None:
            raise HTTPException(status_code=422, detail="Targeted sync requires an id")
        params["numeric_id"] = request.id
    elif strategy == "recent" and request.count is not None:
        params["count"] = request.count
    elif strategy == "resolved" and request.limit is not None:
        params["limit"] = request.limit
    elif strategy == "logs":
        if request.from_block is None:
            raise HTTPException(status_code=422, detail="Log-hinted sync requires from_block")
        params["from_block"] = request.from_block
        if request.to_block is not None:
            params["to_block"] = request.to_block

    outcome = service.trigger_sync(strategy, request.version, **params)
    payload = schemas.SyncSummary.model_validate(outcome.summary)
    if outcome.aborted:
        return JSONResponse(status_code=503, content=payload.model_dump())
    return payload
