from __future__ import annotations

from functools import lru_cache

from fastapi import Body, Depends, FastAPI, HTTPException, Path

from . import schemas
from .core.config import get_settings, settings
from .db import SessionLocal, init_db
from .domain import DiscoveryOptions, DiscoveryResult, ReconciliationResult
from .services.bridge_monitor import BridgeMonitorService, UnknownClaimError
from .services.cache_service import LocalCache
from .services.reconciliation import result_to_dict
from ingestion.errors import DiscoveryFailedError, DiscoveryInProgressError, FetchError
from ingestion.normalize import claim_to_dict

app = FastAPI(title="Bridge Claim Watch API", version="0.1.0", debug=settings.debug)


@app.on_event("startup")
def on_startup() -> None:
    """Create the cache table when the API boots."""

    init_db()


@lru_cache
def _shared_monitor() -> BridgeMonitorService:
    active = get_settings()
    cache = LocalCache(SessionLocal, refresh_window_seconds=active.claim_refresh_window_seconds)
    return BridgeMonitorService(active, cache=cache)


def _monitor_service() -> BridgeMonitorService:
    """Provide the process-wide monitor so the discovery guard is shared across requests."""

    return _shared_monitor()


def _aggregated_payload(result: ReconciliationResult | None) -> schemas.AggregatedData:
    if result is None:
        return schemas.AggregatedData()
    return schemas.AggregatedData.model_validate(result_to_dict(result))


def _discovery_payload(
    discovery: DiscoveryResult | None, result: ReconciliationResult
) -> schemas.DiscoveryResponse:
    bridges: list[schemas.BridgeOutcome] = []
    stats = schemas.DiscoveryStats()
    if discovery is not None:
        stats = schemas.DiscoveryStats.model_validate(discovery.stats.to_dict())
        bridges = [
            schemas.BridgeOutcome(
                bridge_key=item.bridge.key,
                succeeded=item.succeeded,
                error=item.error,
                source=item.source,
                range_hours=item.range_hours,
                event_count=item.event_count,
            )
            for item in discovery.bridge_results
        ]
    return schemas.DiscoveryResponse(
        stats=stats, bridges=bridges, aggregated=_aggregated_payload(result)
    )


@app.get("/healthz", tags=["system"])
def healthcheck() -> dict[str, str]:
    """Basic readiness probe consumed by infrastructure monitors."""

    return {"status": "ok"}


@app.get("/bridges", response_model=schemas.BridgeList, tags=["bridges"])
def list_bridges(service: BridgeMonitorService = Depends(_monitor_service)):
    """List the bridges discovery is configured to scan."""

    bridges = service.registry.bridges
    return schemas.BridgeList(
        total=len(bridges), items=[schemas.Bridge.model_validate(bridge) for bridge in bridges]
    )


@app.get("/aggregated", response_model=schemas.AggregatedData, tags=["reconciliation"])
async def get_aggregated(service: BridgeMonitorService = Depends(_monitor_service)):
    """Return completed, suspicious and pending records, falling back to the cache.

    The cache is only consulted while no discovery run or claim refresh is in
    flight; otherwise the current in-memory view is returned as is.
    """

    result = service.aggregated
    if result is None and not service.is_busy:
        result = await service.load_cached_async()
    return _aggregated_payload(result)


@app.get("/progress", response_model=schemas.DiscoveryProgress, tags=["discovery"])
def get_progress(service: BridgeMonitorService = Depends(_monitor_service)):
    progress = service.progress
    return schemas.DiscoveryProgress(
        **progress.to_dict(),
        is_refreshing=service.is_refreshing,
        retries={
            key: schemas.RetryStatus.model_validate(status)
            for key, status in service.retry_status.items()
        },
    )


@app.get("/cache/status", response_model=schemas.CacheStatus, tags=["cache"])
def get_cache_status(service: BridgeMonitorService = Depends(_monitor_service)):
    return schemas.CacheStatus(**service.cache_status)


@app.post("/discovery", response_model=schemas.DiscoveryResponse, tags=["discovery"])
async def run_discovery(
    request: schemas.DiscoveryRequest | None = Body(default=None),
    service: BridgeMonitorService = Depends(_monitor_service),
):
    """Scan every configured bridge, reconcile and cache the completed subset."""

    request = request or schemas.DiscoveryRequest()
    defaults = service.default_options()
    options = DiscoveryOptions(
        limit=request.limit or defaults.limit,
        range_hours=request.range_hours or defaults.range_hours,
    )
    try:
        result = await service.refresh(
            request.force, options=options, load_claim_details=request.load_claim_details
        )
    except DiscoveryInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except DiscoveryFailedError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return _discovery_payload(service.last_discovery, result)


@app.post(
    "/claims/{bridge_address}/{claim_num}/refresh",
    response_model=schemas.Claim,
    tags=["discovery"],
)
async def refresh_claim(
    bridge_address: str,
    claim_num: int = Path(ge=0),
    service: BridgeMonitorService = Depends(_monitor_service),
):
    """Reload the lifecycle fields of one known claim."""

    claim = service.find_claim(bridge_address, claim_num)
    if claim is None:
        raise HTTPException(status_code=404, detail="Claim not found")
    try:
        refreshed = await service.refresh_claim(claim)
    except UnknownClaimError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except FetchError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return schemas.Claim.model_validate(claim_to_dict(refreshed))


@app.delete("/cache", response_model=schemas.ClearCacheResponse, tags=["cache"])
def clear_cache(service: BridgeMonitorService = Depends(_monitor_service)):
    return schemas.ClearCacheResponse(removed=service.clear_cache())
