"""
services/availability/router.py
Availability pre-checks for a set of resources or a whole agency.
"""

from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.availability import resolver
from shared.errors import bounded_store_call
from shared.middleware.auth import Principal, get_principal
from shared.schemas.schemas import AvailabilityCheckRequest, AvailabilityReportResponse
from shared.types import TimeWindow

router = APIRouter(tags=["Availability"])

check_availability = bounded_store_call(resolver.check_availability)
agency_availability = bounded_store_call(resolver.agency_availability)


@router.post("/availability/check", response_model=AvailabilityReportResponse)
async def check_resources_availability(
    data: AvailabilityCheckRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """Which of the given resources are free for the service in the window."""
    window = data.window.to_window()
    report = await check_availability(
        db,
        [r.to_ref() for r in data.resources],
        data.service_type_id,
        window,
        data.exclude_request_id,
    )
    return AvailabilityReportResponse.model_validate(report)


@router.get("/agencies/{agency_id}/availability", response_model=AvailabilityReportResponse)
async def check_agency_availability(
    agency_id: UUID,
    service_type_id: UUID = Query(...),
    start: datetime = Query(..., description="Window start, ISO 8601 with offset"),
    end: Optional[datetime] = Query(None),
    duration_minutes: Optional[int] = Query(None, gt=0, le=24 * 60),
    exclude_request_id: Optional[UUID] = Query(None),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """Free and busy members of an agency for the window."""
    window = TimeWindow.from_parts(start, end, duration_minutes)
    report = await agency_availability(db, agency_id, service_type_id, window, exclude_request_id)
    return AvailabilityReportResponse.model_validate(report)
