"""
Holiday calendar endpoints
"""

from fastapi import APIRouter, Depends, HTTPException, status

from .deps import get_collection_service, get_identity, get_lending_system, http_error, require_admin, unwrap
from .schemas import AddHolidayRequest
from ..auth import Identity
from ..business_calendar import normalize_date
from ..exceptions import FieldLendingError
from ..service import CollectionService, FieldLendingSystem


router = APIRouter()


@router.get("")
async def list_holidays(
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    holidays = system.holiday_store.list_holidays()
    return {"holidays": [holiday.to_dict() for holiday in holidays], "count": len(holidays)}


@router.post("", status_code=status.HTTP_201_CREATED)
async def add_holiday(
    request: AddHolidayRequest,
    identity: Identity = Depends(require_admin),
    service: CollectionService = Depends(get_collection_service)
):
    """Register a one-off or recurring holiday"""
    holiday = unwrap(service.add_holiday(
        request.date, reason=request.reason, is_recurring=request.is_recurring,
        user_id=identity.subject_id))
    return holiday.to_dict()


@router.delete("/{holiday_id}")
async def remove_holiday(
    holiday_id: str,
    identity: Identity = Depends(require_admin),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    try:
        system.holiday_store.remove_holiday(holiday_id, user_id=identity.subject_id)
    except FieldLendingError as e:
        raise http_error(e)
    return {"holiday_id": holiday_id, "message": "Holiday removed"}


@router.get("/business-day")
async def check_business_day(
    day: str,
    identity: Identity = Depends(get_identity),
    system: FieldLendingSystem = Depends(get_lending_system)
):
    """Whether a date is a business day, and the next business day after it"""
    target = normalize_date(day)
    if target is None:
        raise HTTPException(status_code=400, detail="Invalid date format")
    holiday = system.calendar.holiday_for(target)
    return {
        "date": target.isoformat(),
        "is_business_day": system.calendar.is_business_day(target),
        "holiday_reason": holiday.reason if holiday else None,
        "next_business_day": system.calendar.next_business_day(target).isoformat()
    }
