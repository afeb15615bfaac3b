# ABOUTME: FastAPI route handlers for operator visibility and manual triggers.
# ABOUTME: Serves status and run history, ingest/reconcile triggers and settings updates.

import structlog
from fastapi import APIRouter, HTTPException, Query, Request

from content_pulse.errors import ConfigError, StoreUnavailableError
from content_pulse.models import ContentType, SettingsUpdate
from content_pulse.services.engine import Engine

log = structlog.get_logger()
router = APIRouter()


def _engine(request: Request) -> Engine:
    return request.app.state.engine


@router.get("/status")
async def status(request: Request):
    """Halted state, quota bookkeeping, config warnings and recent runs."""
    data = _engine(request).status()
    data["triggers"] = request.app.state.scheduler.describe()
    data["scheduler_running"] = request.app.state.scheduler.running
    return data


@router.get("/runs")
async def runs(request: Request, limit: int = Query(50, ge=1, le=500)):
    """Most recent per-source run summaries, newest first."""
    history = list(_engine(request).history)[-limit:]
    return [s.model_dump() for s in reversed(history)]


@router.post("/ingest")
async def trigger_ingest(request: Request, content_type: ContentType | None = Query(None)):
    """Run one ingestion pass now across all active sources."""
    try:
        summaries = await _engine(request).run_ingestion_pass(content_type, reason="operator")
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    log.info("ingest_triggered", sources=len(summaries))
    return {
        "sources": len(summaries),
        "created": sum(s.created for s in summaries),
        "runs": [s.model_dump() for s in summaries],
    }


@router.post("/retention/reconcile")
async def trigger_reconcile(request: Request, content_type: ContentType = Query(ContentType.ARTICLE)):
    """Run retention reconciliation now for one content type."""
    try:
        result = await _engine(request).run_reconciliation(content_type)
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    if result is None:
        raise HTTPException(status_code=409, detail="retention settings are malformed")
    return result.model_dump()


@router.put("/settings/{content_type}")
async def update_settings(request: Request, content_type: ContentType, update: SettingsUpdate):
    """Apply runtime settings changes; cap changes trigger reconciliation."""
    changes = update.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(status_code=400, detail="no settings supplied")
    try:
        policy = await _engine(request).settings_store.update_settings(content_type, **changes)
    except ConfigError as e:
        raise HTTPException(status_code=422, detail=str(e)) from e
    except StoreUnavailableError as e:
        raise HTTPException(status_code=503, detail=str(e)) from e
    return policy.model_dump()


@router.post("/resume")
async def resume(request: Request):
    """Clear a halted state after the store is reachable again."""
    _engine(request).resume()
    return {"halted": False}
