"""
services/requests/transitions.py
Status transition tables for requests and bookings, the audit trail, and
the commit step that turns lost races into ConflictError.
"""

import logging
from datetime import datetime, timezone
from typing import Dict, FrozenSet, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from shared.errors import ConflictError, InvalidTransitionError
from shared.models.models import (
    BookingStatus,
    RequestAuditLog,
    RequestStatus,
    ServiceRequest,
)

logger = logging.getLogger(__name__)

REQUEST_TRANSITIONS: Dict[RequestStatus, FrozenSet[RequestStatus]] = {
    RequestStatus.PENDING: frozenset({RequestStatus.ACCEPTED, RequestStatus.CANCELLED}),
    RequestStatus.MATCHED: frozenset({RequestStatus.ACCEPTED, RequestStatus.CANCELLED}),
    RequestStatus.ACCEPTED: frozenset({RequestStatus.IN_PROGRESS, RequestStatus.CANCELLED}),
    RequestStatus.IN_PROGRESS: frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED}),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.CANCELLED: frozenset(),
}

TERMINAL_REQUEST_STATUSES = frozenset(
    status for status, targets in REQUEST_TRANSITIONS.items() if not targets
)

BOOKING_TRANSITIONS: Dict[BookingStatus, FrozenSet[BookingStatus]] = {
    BookingStatus.SCHEDULED: frozenset({BookingStatus.IN_PROGRESS, BookingStatus.CANCELLED}),
    BookingStatus.IN_PROGRESS: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
    BookingStatus.COMPLETED: frozenset(),
    BookingStatus.CANCELLED: frozenset(),
}

# Request status that mirrors each booking status change
BOOKING_TO_REQUEST_STATUS: Dict[BookingStatus, RequestStatus] = {
    BookingStatus.IN_PROGRESS: RequestStatus.IN_PROGRESS,
    BookingStatus.COMPLETED: RequestStatus.COMPLETED,
    BookingStatus.CANCELLED: RequestStatus.CANCELLED,
}


def ensure_request_transition(current: RequestStatus, target: RequestStatus) -> None:
    if target not in REQUEST_TRANSITIONS[RequestStatus(current)]:
        raise InvalidTransitionError("request", current, target)


def ensure_booking_transition(current: BookingStatus, target: BookingStatus) -> None:
    if target not in BOOKING_TRANSITIONS[BookingStatus(current)]:
        raise InvalidTransitionError("booking", current, target)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def log_request_transition(
    db: AsyncSession,
    request: ServiceRequest,
    from_status: Optional[RequestStatus],
    to_status: RequestStatus,
    actor=None,
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Append an immutable audit log entry for every status change."""
    db.add(
        RequestAuditLog(
            request_id=request.id,
            from_status=from_status.value if from_status else None,
            to_status=to_status.value,
            changed_by_id=actor.user_id if actor else None,
            actor_role=actor.role.value if actor else None,
            reason=reason,
            audit_metadata=metadata,
        )
    )


def transition_request(
    db: AsyncSession,
    request: ServiceRequest,
    target: RequestStatus,
    actor=None,
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """
    Move an existing request to target, stamping completed_at / cancelled_at.
    Raises InvalidTransitionError for anything outside REQUEST_TRANSITIONS.
    """
    current = RequestStatus(request.status)
    ensure_request_transition(current, target)

    request.status = target
    if target == RequestStatus.COMPLETED:
        request.completed_at = _utcnow()
    elif target == RequestStatus.CANCELLED:
        request.cancelled_at = _utcnow()
        if reason:
            request.cancellation_reason = reason

    log_request_transition(db, request, current, target, actor, reason, metadata)
    logger.info(f"Request {request.id}: {current.value} -> {target.value}")


def mirror_booking_status(
    db: AsyncSession,
    request: ServiceRequest,
    booking_status: BookingStatus,
    actor=None,
    reason: Optional[str] = None,
) -> None:
    """Keep the owning request in lockstep with its booking."""
    target = BOOKING_TO_REQUEST_STATUS.get(BookingStatus(booking_status))
    if target is None:
        raise InvalidTransitionError("request", request.status, booking_status)
    transition_request(db, request, target, actor, reason, {"source": "booking"})


async def commit_transition(db: AsyncSession, conflict_message: str) -> None:
    """
    Commit the unit of work. A concurrent writer that got there first shows
    up as a stale version or a constraint violation; both become ConflictError.
    """
    try:
        await db.commit()
    except (StaleDataError, IntegrityError) as exc:
        await db.rollback()
        logger.warning(f"Commit lost a race: {exc.__class__.__name__}: {conflict_message}")
        raise ConflictError(conflict_message) from exc
