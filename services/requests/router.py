"""
services/requests/router.py
Service request endpoints: create, accept (books the resource), cancel, read.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.realtime.notifier import Notifier, get_notifier
from services.requests import lifecycle
from shared.errors import bounded_store_call
from shared.middleware.auth import Principal, get_principal
from shared.models.models import RequestStatus
from shared.schemas.schemas import (
    AcceptRequestBody,
    BookingResponse,
    CancelRequestBody,
    RequestWithBookingResponse,
    ServiceRequestCreate,
    ServiceRequestResponse,
)
from shared.types import GeoPoint

router = APIRouter(prefix="/requests", tags=["Service Requests"])

create_request = bounded_store_call(lifecycle.create_request)
accept_request = bounded_store_call(lifecycle.accept_request)
cancel_request = bounded_store_call(lifecycle.cancel_request)
get_request = bounded_store_call(lifecycle.get_request)
list_requests = bounded_store_call(lifecycle.list_requests)
list_open_requests = bounded_store_call(lifecycle.list_open_requests)


def _with_booking(request, booking) -> RequestWithBookingResponse:
    return RequestWithBookingResponse(
        request=ServiceRequestResponse.model_validate(request),
        booking=BookingResponse.model_validate(booking) if booking else None,
    )


@router.post("", response_model=RequestWithBookingResponse, status_code=status.HTTP_201_CREATED)
async def create_service_request(
    data: ServiceRequestCreate,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Create a request.
    - No resource: pending, open to providers.
    - Resource given: matched to that resource.
    - self_service: the provider books themselves; comes back accepted with its booking.
    """
    request, booking = await create_request(
        db,
        principal,
        service_type_id=data.service_type_id,
        location=GeoPoint(data.latitude, data.longitude),
        description=data.description,
        address=data.address,
        resource_ref=data.resource.to_ref() if data.resource else None,
        scheduled_at=data.scheduled_at,
        duration_minutes=data.duration_minutes,
        self_service=data.self_service,
        requester_user_id=data.requester_user_id,
        notifier=notifier,
    )
    return _with_booking(request, booking)


@router.get("", response_model=List[ServiceRequestResponse])
async def list_my_requests(
    status_filter: Optional[RequestStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    requests = await list_requests(
        db, principal, status_filter, limit=page_size, offset=(page - 1) * page_size
    )
    return [ServiceRequestResponse.model_validate(r) for r in requests]


@router.get("/open", response_model=List[ServiceRequestResponse])
async def list_open_service_requests(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """Pending requests for services the caller's resources offer, oldest first."""
    requests = await list_open_requests(
        db, principal, limit=page_size, offset=(page - 1) * page_size
    )
    return [ServiceRequestResponse.model_validate(r) for r in requests]


@router.get("/{request_id}", response_model=RequestWithBookingResponse)
async def get_service_request(
    request_id: UUID,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    request, booking = await get_request(db, principal, request_id)
    return _with_booking(request, booking)


@router.post("/{request_id}/accept", response_model=RequestWithBookingResponse)
async def accept_service_request(
    request_id: UUID,
    data: AcceptRequestBody,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """
    Resource (or admin pairing) accepts with a concrete window.
    409 when the slot is taken or someone else accepted first.
    """
    request, booking = await accept_request(
        db, principal, request_id, data.resource.to_ref(), data.window.to_window(), notifier
    )
    return _with_booking(request, booking)


@router.post("/{request_id}/cancel", response_model=RequestWithBookingResponse)
async def cancel_service_request(
    request_id: UUID,
    data: CancelRequestBody,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    request, booking = await cancel_request(db, principal, request_id, data.reason, notifier)
    return _with_booking(request, booking)
