"""
services/requests/lifecycle.py
Service request lifecycle: creation, acceptance with booking, cancellation,
and role-scoped reads.

States: pending → accepted, matched → accepted, accepted → in_progress
        → completed; any non-terminal state → cancelled.
Acceptance is the only path that creates a booking, and it does so under
the resource's schedule lock in the same commit as the status change.
"""

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.ledger import (
    active_booking_for_request,
    booking_payload,
    create_booking,
)
from services.booking.locks import schedule_locks
from services.realtime.notifier import (
    AVAILABILITY_CHANGED,
    BOOKING_CREATED,
    BOOKING_STATUS_CHANGED,
    REQUEST_STATUS_CHANGED,
    Notifier,
)
from services.requests.transitions import (
    commit_transition,
    ensure_booking_transition,
    ensure_request_transition,
    log_request_transition,
    transition_request,
)
from services.resources.resources import (
    SchedulableResource,
    controlled_resource_ids,
    load_resource,
    load_resources,
)
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.middleware.auth import Principal
from shared.models.models import (
    AgencyMemberService,
    Booking,
    BookingStatus,
    ProviderService,
    RequestStatus,
    ResourceType,
    ServiceRequest,
    ServiceType,
    User,
)
from shared.permissions import (
    can_accept_request,
    can_cancel_request,
    can_create_request,
    can_view_request,
    ensure,
)
from shared.types import GeoPoint, ResourceRef, TimeWindow

logger = logging.getLogger(__name__)

ACCEPTABLE_STATUSES = (RequestStatus.PENDING, RequestStatus.MATCHED)


# ── Helpers ───────────────────────────────────────────────────

def assigned_ref(request: ServiceRequest) -> Optional[ResourceRef]:
    """The resource a request is assigned to, if any."""
    if request.assigned_provider_id:
        return ResourceRef.individual(request.assigned_provider_id)
    if request.assigned_agency_member_id:
        return ResourceRef.agency_member(request.assigned_agency_member_id)
    return None


async def _assigned_resource(
    db: AsyncSession, request: ServiceRequest
) -> Optional[SchedulableResource]:
    ref = assigned_ref(request)
    if ref is None:
        return None
    found = await load_resources(db, [ref])
    return found[0] if found else None


def _assign(request: ServiceRequest, resource: SchedulableResource) -> None:
    if resource.kind == ResourceType.INDIVIDUAL:
        request.assigned_provider_id = resource.id
        request.assigned_agency_id = None
        request.assigned_agency_member_id = None
    else:
        request.assigned_provider_id = None
        request.assigned_agency_id = resource.agency_id
        request.assigned_agency_member_id = resource.id


def _schedule(request: ServiceRequest, window: TimeWindow) -> None:
    request.scheduled_at = window.start
    request.estimated_duration_minutes = window.duration_minutes
    request.estimated_end_time = window.end


def _ensure_offerable(
    resource: SchedulableResource, service_type_id: uuid.UUID, require_open: bool
) -> None:
    """
    A resource can only be offered for services it has an offering for.
    require_open additionally demands verified, available individuals.
    """
    if not resource.is_active:
        raise ValidationError(f"{resource.display_name} is not active")
    if not resource.offers(service_type_id):
        raise ValidationError(f"{resource.display_name} does not offer this service")
    if require_open and resource.kind == ResourceType.INDIVIDUAL:
        if not resource.is_verified:
            raise ValidationError("Provider is not verified yet")
        if not resource.is_available:
            raise ValidationError("Provider is not accepting requests right now")


async def _get_request(db: AsyncSession, request_id: uuid.UUID) -> ServiceRequest:
    request = await db.get(ServiceRequest, request_id)
    if not request:
        raise NotFoundError("Service request not found")
    return request


def _emit_status(
    notifier: Optional[Notifier],
    request: ServiceRequest,
    previous: Optional[RequestStatus],
) -> None:
    if not notifier:
        return
    ref = assigned_ref(request)
    notifier.emit(
        REQUEST_STATUS_CHANGED,
        ref.resource_id if ref else None,
        {
            "request_id": request.id,
            "status": request.status,
            "previous_status": previous,
            "requester_user_id": request.requester_user_id,
        },
    )


def _emit_booked(notifier: Optional[Notifier], booking: Booking) -> None:
    if not notifier:
        return
    notifier.emit(BOOKING_CREATED, booking.resource_id, booking_payload(booking))
    notifier.emit(
        AVAILABILITY_CHANGED,
        booking.resource_id,
        {"start_time": booking.start_time, "end_time": booking.end_time, "freed": False},
    )


# ── Create ────────────────────────────────────────────────────

async def create_request(
    db: AsyncSession,
    actor: Principal,
    service_type_id: uuid.UUID,
    location: GeoPoint,
    description: Optional[str] = None,
    address: Optional[str] = None,
    resource_ref: Optional[ResourceRef] = None,
    scheduled_at: Optional[datetime] = None,
    duration_minutes: Optional[int] = None,
    self_service: bool = False,
    requester_user_id: Optional[uuid.UUID] = None,
    notifier: Optional[Notifier] = None,
) -> Tuple[ServiceRequest, Optional[Booking]]:
    """
    New request in pending (no resource), matched (resource chosen), or
    accepted with its booking (provider self-service).
    """
    if scheduled_at is not None and scheduled_at.tzinfo is None:
        raise ValidationError("scheduled_at must include a timezone offset")
    if duration_minutes is not None and duration_minutes <= 0:
        raise ValidationError("Duration must be a positive number of minutes")
    if self_service and (resource_ref is None or scheduled_at is None):
        raise ValidationError("Self-service requests need a resource and a start time")

    service_type = await db.get(ServiceType, service_type_id)
    if not service_type or not service_type.is_active:
        raise NotFoundError("Service type not found")

    resource = await load_resource(db, resource_ref) if resource_ref else None
    on_behalf = requester_user_id is not None and requester_user_id != actor.user_id
    ensure(can_create_request(actor, resource, self_service, on_behalf))

    if on_behalf and not await db.get(User, requester_user_id):
        raise NotFoundError("Requester not found")
    if resource:
        _ensure_offerable(resource, service_type_id, require_open=not self_service)

    request = ServiceRequest(
        requester_user_id=requester_user_id if on_behalf else actor.user_id,
        service_type_id=service_type_id,
        description=description,
        latitude=location.latitude,
        longitude=location.longitude,
        address=address,
        status=RequestStatus.MATCHED if resource else RequestStatus.PENDING,
    )
    if resource:
        _assign(request, resource)
    if scheduled_at is not None:
        _schedule(
            request,
            TimeWindow.from_duration(
                scheduled_at, duration_minutes or service_type.default_duration_minutes
            ),
        )

    if not self_service:
        db.add(request)
        await db.flush()
        log_request_transition(db, request, None, RequestStatus(request.status), actor)
        await commit_transition(db, "Request could not be created, retry")
        logger.info(f"Request {request.id} created as {RequestStatus(request.status).value}")
        _emit_status(notifier, request, None)
        return request, None

    request.status = RequestStatus.ACCEPTED
    async with schedule_locks.hold(db, resource.id):
        try:
            db.add(request)
            await db.flush()
            booking = await create_booking(
                db,
                resource,
                request.id,
                service_type_id,
                request.scheduled_at,
                request.estimated_duration_minutes,
            )
            log_request_transition(
                db, request, None, RequestStatus.ACCEPTED, actor,
                metadata={"booking_id": str(booking.id), "self_service": True},
            )
            await commit_transition(db, "Time slot no longer available")
        except Exception:
            await db.rollback()
            raise

    logger.info(f"Self-service request {request.id} accepted with booking {booking.id}")
    _emit_status(notifier, request, None)
    _emit_booked(notifier, booking)
    return request, booking


# ── Accept ────────────────────────────────────────────────────

async def _idempotent_match(
    db: AsyncSession,
    request: ServiceRequest,
    resource: SchedulableResource,
    window: TimeWindow,
) -> Optional[Booking]:
    """The existing booking when this exact acceptance already happened."""
    if request.status != RequestStatus.ACCEPTED or assigned_ref(request) != resource.ref:
        return None
    if request.scheduled_at != window.start or request.estimated_end_time != window.end:
        return None
    booking = await active_booking_for_request(db, request.id)
    if (
        booking
        and booking.resource_id == resource.id
        and booking.start_time == window.start
        and booking.end_time == window.end
    ):
        return booking
    return None


def _check_acceptable(
    actor: Principal, request: ServiceRequest, resource: SchedulableResource
) -> None:
    status = RequestStatus(request.status)
    if status not in ACCEPTABLE_STATUSES:
        raise ConflictError(f"Request is already {status.value}")
    if (
        status == RequestStatus.MATCHED
        and assigned_ref(request) != resource.ref
        and not actor.is_admin
    ):
        raise ConflictError("Request is matched to a different resource")


async def accept_request(
    db: AsyncSession,
    actor: Principal,
    request_id: uuid.UUID,
    resource_ref: ResourceRef,
    window: TimeWindow,
    notifier: Optional[Notifier] = None,
) -> Tuple[ServiceRequest, Booking]:
    """
    Book resource for window and move the request to accepted.

    Repeating an acceptance that already succeeded returns the existing
    request and booking without writing. If the request changed between
    the first read and taking the schedule lock, another caller won and
    this one gets ConflictError.
    """
    if not window.is_whole_minutes:
        raise ValidationError("Window must span a whole number of minutes")

    request = await _get_request(db, request_id)
    resource = await load_resource(db, resource_ref)
    ensure(can_accept_request(actor, resource))

    existing = await _idempotent_match(db, request, resource, window)
    if existing:
        logger.info(f"Request {request.id} already accepted with booking {existing.id}")
        return request, existing

    _check_acceptable(actor, request, resource)
    _ensure_offerable(resource, request.service_type_id, require_open=False)

    seen_version = request.version
    async with schedule_locks.hold(db, resource.id):
        try:
            await db.refresh(request)
            if request.version != seen_version:
                raise ConflictError("Request was updated by someone else, reload and retry")
            _check_acceptable(actor, request, resource)

            booking = await create_booking(
                db, resource, request.id, request.service_type_id,
                window.start, window.duration_minutes,
            )
            previous = RequestStatus(request.status)
            _assign(request, resource)
            _schedule(request, window)
            transition_request(
                db, request, RequestStatus.ACCEPTED, actor,
                metadata={"booking_id": str(booking.id)},
            )
            await commit_transition(db, "Request was accepted by someone else, reload and retry")
        except Exception:
            await db.rollback()
            raise

    _emit_status(notifier, request, previous)
    _emit_booked(notifier, booking)
    return request, booking


# ── Cancel ────────────────────────────────────────────────────

async def cancel_request(
    db: AsyncSession,
    actor: Principal,
    request_id: uuid.UUID,
    reason: Optional[str] = None,
    notifier: Optional[Notifier] = None,
) -> Tuple[ServiceRequest, Optional[Booking]]:
    """Cancel a non-terminal request and free its booked slot."""
    request = await _get_request(db, request_id)
    assigned = await _assigned_resource(db, request)
    ensure(can_cancel_request(actor, request, assigned))

    previous = RequestStatus(request.status)
    ensure_request_transition(previous, RequestStatus.CANCELLED)

    booking = await active_booking_for_request(db, request.id)
    if booking:
        ensure_booking_transition(booking.status, BookingStatus.CANCELLED)
        booking.status = BookingStatus.CANCELLED

    transition_request(db, request, RequestStatus.CANCELLED, actor, reason)
    await commit_transition(db, "Request was updated by someone else, reload and retry")

    _emit_status(notifier, request, previous)
    if notifier and booking:
        notifier.emit(BOOKING_STATUS_CHANGED, booking.resource_id, booking_payload(booking))
        notifier.emit(
            AVAILABILITY_CHANGED,
            booking.resource_id,
            {"start_time": booking.start_time, "end_time": booking.end_time, "freed": True},
        )
    return request, booking


# ── Reads ─────────────────────────────────────────────────────

async def get_request(
    db: AsyncSession, actor: Principal, request_id: uuid.UUID
) -> Tuple[ServiceRequest, Optional[Booking]]:
    request = await _get_request(db, request_id)
    assigned = await _assigned_resource(db, request)
    ensure(can_view_request(actor, request, assigned))
    return request, await active_booking_for_request(db, request.id)


async def list_requests(
    db: AsyncSession,
    actor: Principal,
    status: Optional[RequestStatus] = None,
    limit: int = 20,
    offset: int = 0,
) -> List[ServiceRequest]:
    """
    Admins see everything. Everyone else sees requests they made plus
    requests assigned to any resource they control.
    """
    query = select(ServiceRequest)
    if not actor.is_admin:
        controlled = await controlled_resource_ids(db, actor.user_id)
        query = query.where(
            or_(
                ServiceRequest.requester_user_id == actor.user_id,
                ServiceRequest.assigned_provider_id.in_(controlled),
                ServiceRequest.assigned_agency_member_id.in_(controlled),
            )
        )
    if status:
        query = query.where(ServiceRequest.status == RequestStatus(status))

    result = await db.execute(
        query.order_by(ServiceRequest.created_at.desc()).offset(offset).limit(limit)
    )
    return list(result.scalars())


async def list_open_requests(
    db: AsyncSession,
    actor: Principal,
    limit: int = 20,
    offset: int = 0,
) -> List[ServiceRequest]:
    """
    Pending, unassigned requests the actor could pick up: those for a service
    offered by any resource they control. Admins see every open request.
    """
    query = select(ServiceRequest).where(
        ServiceRequest.status == RequestStatus.PENDING,
        ServiceRequest.assigned_provider_id.is_(None),
        ServiceRequest.assigned_agency_member_id.is_(None),
    )
    if not actor.is_admin:
        controlled = await controlled_resource_ids(db, actor.user_id)
        if not controlled:
            return []
        query = query.where(
            or_(
                ServiceRequest.service_type_id.in_(
                    select(ProviderService.service_type_id).where(
                        ProviderService.provider_id.in_(controlled)
                    )
                ),
                ServiceRequest.service_type_id.in_(
                    select(AgencyMemberService.service_type_id).where(
                        AgencyMemberService.agency_member_id.in_(controlled)
                    )
                ),
            )
        )

    result = await db.execute(
        query.order_by(ServiceRequest.created_at).offset(offset).limit(limit)
    )
    return list(result.scalars())
