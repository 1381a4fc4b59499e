"""
Background job endpoints
"""

from fastapi import APIRouter, Depends

from .deps import get_collection_service, get_lending_system, require_admin, unwrap
from .schemas import RunAggregationRequest
from ..auth import Identity
from ..service import CollectionService, FieldLendingSystem


router = APIRouter()


@router.post("/delinquency-aggregation")
async def run_delinquency_aggregation(
    request: RunAggregationRequest,
    identity: Identity = Depends(require_admin),
    service: CollectionService = Depends(get_collection_service)
):
    """Recompute every agent's overdue and recovery totals for the month"""
    summary = unwrap(service.run_delinquency_aggregation(
        as_of=request.as_of, include_inactive=request.include_inactive))
    return summary.to_dict()


@router.get("/delinquency-aggregation")
async def get_delinquency_job_status(
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    scheduler = system.job_scheduler
    last = scheduler.last_summary
    return {
        "running": scheduler.is_running(),
        "run_time": f"{scheduler.hours:02d}:{scheduler.minutes:02d}",
        "last_summary": last.to_dict() if last else None
    }
