"""
services/booking/router.py
Booking status changes and calendar listing.
Bookings themselves are only ever created through request acceptance.
"""

from datetime import datetime
from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.booking import ledger
from services.realtime.notifier import Notifier, get_notifier
from shared.errors import ValidationError, bounded_store_call
from shared.middleware.auth import Principal, get_principal
from shared.models.models import BookingStatus, ResourceType
from shared.schemas.schemas import BookingResponse, BookingStatusUpdate
from shared.types import ResourceRef

router = APIRouter(prefix="/bookings", tags=["Bookings"])

update_booking_status = bounded_store_call(ledger.update_booking_status)
list_bookings = bounded_store_call(ledger.list_bookings)


@router.patch("/{booking_id}/status", response_model=BookingResponse)
async def change_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Assigned resource (or admin) moves the booking forward:
    scheduled → in_progress → completed, or cancels it.
    The owning request follows the same status.
    """
    booking = await update_booking_status(
        db, principal, booking_id, BookingStatus(data.status), notifier
    )
    return BookingResponse.model_validate(booking)


@router.get("", response_model=List[BookingResponse])
async def list_my_bookings(
    resource_type: Optional[ResourceType] = Query(None),
    resource_id: Optional[UUID] = Query(None),
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    start: Optional[datetime] = Query(None, description="Only bookings ending after this instant"),
    end: Optional[datetime] = Query(None, description="Only bookings starting before this instant"),
    limit: int = Query(100, ge=1, le=500),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """Bookings visible to the caller, earliest first. Filter by resource for a calendar view."""
    if (resource_type is None) != (resource_id is None):
        raise ValidationError("resource_type and resource_id must be given together")
    for bound in (start, end):
        if bound is not None and bound.tzinfo is None:
            raise ValidationError("start and end must include a timezone offset")

    resource_ref = ResourceRef(resource_type, resource_id) if resource_id else None
    bookings = await list_bookings(db, principal, resource_ref, status_filter, start, end, limit)
    return [BookingResponse.model_validate(b) for b in bookings]
