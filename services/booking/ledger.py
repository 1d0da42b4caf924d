"""
services/booking/ledger.py
Authoritative store of resource reservations.

A booking is inserted only while its resource's schedule lock is held and
only after re-checking for overlap under that lock. Intervals are half-open,
so back-to-back bookings never conflict. Cancelled bookings stay for history
and are ignored by every overlap test.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.realtime.notifier import (
    AVAILABILITY_CHANGED,
    BOOKING_STATUS_CHANGED,
    REQUEST_STATUS_CHANGED,
    Notifier,
)
from services.requests.transitions import (
    commit_transition,
    ensure_booking_transition,
    mirror_booking_status,
)
from services.resources.resources import (
    SchedulableResource,
    controlled_resource_ids,
    load_resource,
)
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.middleware.auth import Principal
from shared.models.models import Booking, BookingStatus, ServiceRequest
from shared.permissions import can_update_booking, can_view_schedule, ensure
from shared.types import ResourceRef, TimeWindow

logger = logging.getLogger(__name__)

SLOT_TAKEN = "Time slot no longer available"


def overlap_clauses(window: TimeWindow, exclude_request_id: Optional[uuid.UUID] = None) -> list:
    """[start, end) intersection with any live booking."""
    clauses = [
        Booking.start_time < window.end,
        Booking.end_time > window.start,
        Booking.status != BookingStatus.CANCELLED,
    ]
    if exclude_request_id:
        clauses.append(Booking.request_id != exclude_request_id)
    return clauses


def booking_payload(booking: Booking) -> dict:
    return {
        "booking_id": booking.id,
        "request_id": booking.request_id,
        "resource_type": booking.resource_type,
        "resource_id": booking.resource_id,
        "start_time": booking.start_time,
        "end_time": booking.end_time,
        "status": booking.status,
    }


async def find_conflicts(
    db: AsyncSession,
    resource_id: uuid.UUID,
    window: TimeWindow,
    exclude_request_id: Optional[uuid.UUID] = None,
) -> List[Booking]:
    result = await db.execute(
        select(Booking)
        .where(Booking.resource_id == resource_id, *overlap_clauses(window, exclude_request_id))
        .order_by(Booking.start_time)
    )
    return list(result.scalars())


async def create_booking(
    db: AsyncSession,
    resource: SchedulableResource,
    request_id: uuid.UUID,
    service_type_id: uuid.UUID,
    start: datetime,
    duration_minutes: int,
) -> Booking:
    """
    Insert a booking for [start, start + duration). The caller must hold
    schedule_locks.hold(db, resource.id) and commit before releasing it.
    Raises ConflictError if any live booking of the resource overlaps.
    """
    window = TimeWindow.from_duration(start, duration_minutes)

    conflicts = await find_conflicts(db, resource.id, window)
    if conflicts:
        logger.warning(
            f"Booking conflict for {resource.kind.value} {resource.id} "
            f"[{window.start.isoformat()}, {window.end.isoformat()}) vs booking {conflicts[0].id}"
        )
        raise ConflictError(SLOT_TAKEN)

    booking = Booking(
        resource_type=resource.kind,
        resource_id=resource.id,
        request_id=request_id,
        service_type_id=service_type_id,
        start_time=window.start,
        end_time=window.end,
        estimated_duration_minutes=duration_minutes,
        status=BookingStatus.SCHEDULED,
    )
    db.add(booking)
    try:
        await db.flush()
    except IntegrityError as exc:
        # Exclusion constraint on PostgreSQL
        logger.warning(f"Booking insert rejected by the store for resource {resource.id}: {exc}")
        raise ConflictError(SLOT_TAKEN) from exc

    logger.info(
        f"Booking {booking.id} created for {resource.kind.value} {resource.id} "
        f"[{window.start.isoformat()}, {window.end.isoformat()})"
    )
    return booking


async def get_booking(db: AsyncSession, booking_id: uuid.UUID) -> Booking:
    booking = await db.get(Booking, booking_id)
    if not booking:
        raise NotFoundError("Booking not found")
    return booking


async def active_booking_for_request(db: AsyncSession, request_id: uuid.UUID) -> Optional[Booking]:
    result = await db.execute(
        select(Booking)
        .where(Booking.request_id == request_id, Booking.status != BookingStatus.CANCELLED)
        .order_by(Booking.created_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def update_booking_status(
    db: AsyncSession,
    actor: Principal,
    booking_id: uuid.UUID,
    new_status: BookingStatus,
    notifier: Optional[Notifier] = None,
) -> Booking:
    """
    Advance a booking and mirror the change onto its request in one commit.
    scheduled → in_progress → completed; scheduled | in_progress → cancelled.
    """
    new_status = BookingStatus(new_status)
    booking = await get_booking(db, booking_id)
    resource = await load_resource(db, ResourceRef(booking.resource_type, booking.resource_id))
    ensure(can_update_booking(actor, resource))

    ensure_booking_transition(booking.status, new_status)

    request = await db.get(ServiceRequest, booking.request_id)
    if not request:
        raise NotFoundError("Service request not found")

    previous = BookingStatus(booking.status)
    booking.status = new_status
    mirror_booking_status(db, request, new_status, actor)
    await commit_transition(db, "Booking was changed concurrently, reload and retry")

    logger.info(f"Booking {booking.id}: {previous.value} -> {new_status.value}")

    if notifier:
        notifier.emit(BOOKING_STATUS_CHANGED, booking.resource_id, booking_payload(booking))
        notifier.emit(
            REQUEST_STATUS_CHANGED,
            booking.resource_id,
            {"request_id": request.id, "status": request.status},
        )
        if new_status == BookingStatus.CANCELLED:
            notifier.emit(
                AVAILABILITY_CHANGED,
                booking.resource_id,
                {"start_time": booking.start_time, "end_time": booking.end_time, "freed": True},
            )
    return booking


async def list_bookings(
    db: AsyncSession,
    actor: Principal,
    resource_ref: Optional[ResourceRef] = None,
    status: Optional[BookingStatus] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = 100,
) -> List[Booking]:
    """
    Calendar view. A resource filter requires schedule access to it;
    without one, non-admins see bookings of resources they control and
    bookings made for their own requests.
    """
    if start and end and end <= start:
        raise ValidationError("end must be after start")

    query = select(Booking)

    if resource_ref:
        resource = await load_resource(db, resource_ref)
        ensure(can_view_schedule(actor, resource))
        query = query.where(Booking.resource_id == resource.id)
    elif not actor.is_admin:
        controlled = await controlled_resource_ids(db, actor.user_id)
        own_requests = select(ServiceRequest.id).where(
            ServiceRequest.requester_user_id == actor.user_id
        )
        query = query.where(
            or_(Booking.resource_id.in_(controlled), Booking.request_id.in_(own_requests))
        )

    if status:
        query = query.where(Booking.status == BookingStatus(status))
    if start:
        query = query.where(Booking.end_time > start)
    if end:
        query = query.where(Booking.start_time < end)

    result = await db.execute(query.order_by(Booking.start_time).limit(limit))
    return list(result.scalars())
