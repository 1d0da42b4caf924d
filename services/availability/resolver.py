"""
services/availability/resolver.py
Which candidate resources are free for a service in a time window.

Advisory only: the answer can be stale by the time a request is accepted,
which is why acceptance re-checks under the schedule lock.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from services.booking.ledger import overlap_clauses
from services.resources.resources import SchedulableResource, agency_member_refs, load_resources
from shared.models.models import Booking
from shared.types import ResourceRef, TimeWindow

logger = logging.getLogger(__name__)

CONFLICT_REASON = "Has conflicting booking"


@dataclass(frozen=True)
class UnavailableResource:
    resource: SchedulableResource
    reason: str


@dataclass
class AvailabilityReport:
    available: List[SchedulableResource] = field(default_factory=list)
    unavailable: List[UnavailableResource] = field(default_factory=list)
    total_candidates: int = 0

    @property
    def has_availability(self) -> bool:
        return bool(self.available)

    @property
    def available_count(self) -> int:
        return len(self.available)


async def check_availability(
    db: AsyncSession,
    resource_refs: Sequence[ResourceRef],
    service_type_id: uuid.UUID,
    window: TimeWindow,
    exclude_request_id: Optional[uuid.UUID] = None,
) -> AvailabilityReport:
    """
    Split the candidates into available and unavailable for window.

    Candidates that don't exist, are inactive, or don't offer the service
    are dropped entirely. One query finds every live booking overlapping
    the window across all remaining candidates; bookings belonging to
    exclude_request_id are ignored so a request can be re-timed.
    """
    refs = list(dict.fromkeys(resource_refs))
    if not refs:
        return AvailabilityReport()

    candidates = [
        r for r in await load_resources(db, refs)
        if r.is_active and r.offers(service_type_id)
    ]
    if not candidates:
        return AvailabilityReport()

    result = await db.execute(
        select(Booking.resource_id)
        .where(
            Booking.resource_id.in_([c.id for c in candidates]),
            *overlap_clauses(window, exclude_request_id),
        )
        .distinct()
    )
    busy = set(result.scalars())

    report = AvailabilityReport(total_candidates=len(candidates))
    for resource in candidates:
        if resource.id in busy:
            report.unavailable.append(UnavailableResource(resource, CONFLICT_REASON))
        else:
            report.available.append(resource)

    logger.debug(
        f"Availability [{window.start.isoformat()}, {window.end.isoformat()}): "
        f"{report.available_count}/{report.total_candidates} free"
    )
    return report


async def agency_availability(
    db: AsyncSession,
    agency_id: uuid.UUID,
    service_type_id: uuid.UUID,
    window: TimeWindow,
    exclude_request_id: Optional[uuid.UUID] = None,
) -> AvailabilityReport:
    """Availability across an agency's active members."""
    refs = await agency_member_refs(db, agency_id)
    return await check_availability(db, refs, service_type_id, window, exclude_request_id)
