# Threat Intelligence API
#
# Query surface for dashboards (analysis snapshot, recent threats,
# search) and the admin trigger surface (ingest, cancel, scheduler).
# Engine errors are mapped to status codes here and never escape.

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field

from ..intel.exceptions import AlreadyRunning, RunFailed
from ..service import MIN_SEARCH_LENGTH, ThreatIntelService, parse_category
from .security import verify_admin_token

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/threat-intelligence", tags=["threat-intelligence"])

# Singleton service instance
_service: Optional[ThreatIntelService] = None


def get_service() -> ThreatIntelService:
    """Get or create the global ThreatIntelService singleton."""
    global _service
    if _service is None:
        _service = ThreatIntelService.from_settings()
    return _service


def set_service(service: Optional[ThreatIntelService]):
    """Allow DI for testing."""
    global _service
    _service = service


# ── Request models ────────────────────────────────────────────────────

class SchedulerActionRequest(BaseModel):
    interval_hours: Optional[float] = Field(None, gt=0, le=24 * 7)
    run_immediately: bool = False


# ── Query endpoints ───────────────────────────────────────────────────

@router.get("/analysis")
def get_analysis(service: ThreatIntelService = Depends(get_service)):
    """Latest persisted threat analysis snapshot."""
    return service.get_threat_analysis().to_dict()


@router.get("/threats")
def get_threats(
    limit: int = Query(50, ge=1, le=500),
    category: Optional[str] = Query(None),
    service: ThreatIntelService = Depends(get_service),
):
    """Recent active indicators; balanced across types when no category is given."""
    try:
        threat_type = parse_category(category)
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

    threats = service.get_recent_threats(limit, category=threat_type)
    return {
        "threats": [t.to_dict() for t in threats],
        "total": len(threats),
        "category": threat_type.value if threat_type else None,
    }


@router.get("/search")
def search_threats(
    q: str = Query(""),
    limit: int = Query(20, ge=1, le=200),
    service: ThreatIntelService = Depends(get_service),
):
    """Case-insensitive search over active indicators."""
    query = q.strip()
    if len(query) < MIN_SEARCH_LENGTH:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Search query must be at least {MIN_SEARCH_LENGTH} characters",
        )
    results = service.search_threats(query, limit)
    return {
        "query": query,
        "results": [t.to_dict() for t in results],
        "total": len(results),
    }


# ── Admin endpoints ───────────────────────────────────────────────────

@router.post(
    "/ingest",
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(verify_admin_token)],
)
def trigger_ingest(service: ThreatIntelService = Depends(get_service)):
    """Start a background ingestion run."""
    try:
        run_id = service.trigger_ingestion()
    except AlreadyRunning as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    return {"run_id": run_id, "status": "started"}


@router.post("/ingest-now", dependencies=[Depends(verify_admin_token)])
def ingest_now(service: ThreatIntelService = Depends(get_service)):
    """Run ingestion to completion and return the new snapshot."""
    try:
        analysis = service.ingest_now()
    except AlreadyRunning as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc))
    except RunFailed as exc:
        logger.warning("Synchronous ingestion failed: %s", exc.reason)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Ingestion failed: {exc.reason}",
        )
    return {"status": "completed", "analysis": analysis.to_dict()}


@router.post("/ingest/cancel", dependencies=[Depends(verify_admin_token)])
def cancel_ingest(service: ThreatIntelService = Depends(get_service)):
    """Cancel the active ingestion run, if any."""
    return {"cancelled": service.cancel_ingestion()}


@router.get("/scheduler/status", dependencies=[Depends(verify_admin_token)])
def scheduler_status(service: ThreatIntelService = Depends(get_service)):
    return service.status()


@router.post("/scheduler/{action}", dependencies=[Depends(verify_admin_token)])
def scheduler_action(
    action: str,
    body: Optional[SchedulerActionRequest] = None,
    service: ThreatIntelService = Depends(get_service),
):
    """Start or stop the periodic ingestion scheduler."""
    if action == "start":
        body = body or SchedulerActionRequest()
        service.start(
            interval_hours=body.interval_hours,
            run_immediately=body.run_immediately,
        )
        return {"status": "started", "scheduler": service.status()}
    if action == "stop":
        service.stop()
        return {"status": "stopped", "scheduler": service.status()}
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail="Invalid action. Use 'start' or 'stop'",
    )
