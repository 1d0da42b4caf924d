"""
services/review/aggregator.py
Reviews and the denormalized rating aggregate on each resource.

The aggregate is always recomputed from the visible reviews (sum and count
in SQL, mean rounded half-up to two decimals), so running it again never
changes the result.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import List, Optional

from sqlalchemy import exists, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from services.requests.lifecycle import assigned_ref
from services.resources.resources import load_resource
from shared.errors import ConflictError, NotFoundError, ValidationError
from shared.middleware.auth import Principal
from shared.models.models import (
    AgencyMember,
    ProviderProfile,
    RequestStatus,
    ResourceType,
    Review,
    ServiceRequest,
)
from shared.permissions import (
    can_edit_review,
    can_moderate_reviews,
    can_respond_to_review,
    can_submit_review,
    ensure,
)
from shared.types import ResourceRef

logger = logging.getLogger(__name__)

REVIEWABLE_STATUSES = (RequestStatus.COMPLETED, RequestStatus.CANCELLED)
TWO_PLACES = Decimal("0.01")

# Marks an argument the caller did not pass
UNSET = object()


@dataclass(frozen=True)
class RatingSummary:
    resource_type: ResourceType
    resource_id: uuid.UUID
    average_rating: Decimal
    total_reviews: int


def mean_rating(total: int, count: int) -> Decimal:
    if not count:
        return Decimal("0.00")
    return (Decimal(total) / Decimal(count)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)


def _validate_rating(rating: int) -> None:
    if isinstance(rating, bool) or not isinstance(rating, int) or not 1 <= rating <= 5:
        raise ValidationError("Rating must be a whole number from 1 to 5")


async def _get_review(db: AsyncSession, review_id: uuid.UUID) -> Review:
    review = await db.get(Review, review_id)
    if not review:
        raise NotFoundError("Review not found")
    return review


def _review_ref(review: Review) -> ResourceRef:
    return ResourceRef(ResourceType(review.resource_type), review.resource_id)


# ── Aggregate ─────────────────────────────────────────────────

async def recompute_rating(db: AsyncSession, ref: ResourceRef) -> RatingSummary:
    """
    Rewrite average_rating / total_reviews of the resource from its visible
    reviews. Does not commit.
    """
    result = await db.execute(
        select(func.coalesce(func.sum(Review.rating), 0), func.count(Review.id)).where(
            Review.resource_type == ref.resource_type,
            Review.resource_id == ref.resource_id,
            Review.is_visible == True,
        )
    )
    total, count = result.one()
    average = mean_rating(int(total), int(count))

    model = ProviderProfile if ref.resource_type == ResourceType.INDIVIDUAL else AgencyMember
    updated = await db.execute(
        update(model)
        .where(model.id == ref.resource_id)
        .values(average_rating=average, total_reviews=count)
    )
    if updated.rowcount == 0:
        raise NotFoundError("Resource not found")

    logger.info(
        f"Rating for {ref.resource_type.value} {ref.resource_id}: {average} over {count} reviews"
    )
    return RatingSummary(ref.resource_type, ref.resource_id, average, int(count))


async def reconcile_all_ratings(db: AsyncSession) -> int:
    """Recompute every resource that has at least one review. Returns how many."""
    result = await db.execute(select(Review.resource_type, Review.resource_id).distinct())
    refs = [ResourceRef(ResourceType(kind), resource_id) for kind, resource_id in result.all()]

    fixed = 0
    for ref in refs:
        try:
            await recompute_rating(db, ref)
        except NotFoundError:
            logger.warning(f"Reviews reference missing resource {ref.resource_id}, skipped")
            continue
        fixed += 1
    await db.commit()
    return fixed


# ── Reviews ───────────────────────────────────────────────────

async def submit_review(
    db: AsyncSession,
    actor: Principal,
    request_id: uuid.UUID,
    rating: int,
    comment: Optional[str] = None,
) -> Review:
    """
    One review per request, by its requester, once the request is completed
    or cancelled with a resource assigned.
    """
    _validate_rating(rating)

    request = await db.get(ServiceRequest, request_id)
    if not request:
        raise NotFoundError("Service request not found")
    ensure(can_submit_review(actor, request))

    if RequestStatus(request.status) not in REVIEWABLE_STATUSES:
        raise ValidationError("Only completed or cancelled requests can be reviewed")
    ref = assigned_ref(request)
    if ref is None:
        raise ValidationError("This request was never assigned to a provider")

    existing = await db.execute(select(Review.id).where(Review.request_id == request_id))
    if existing.scalar_one_or_none():
        raise ConflictError("You have already reviewed this request")

    review = Review(
        request_id=request_id,
        user_id=actor.user_id,
        resource_type=ref.resource_type,
        resource_id=ref.resource_id,
        rating=rating,
        comment=comment,
    )
    db.add(review)
    try:
        await db.flush()
    except IntegrityError as exc:
        await db.rollback()
        raise ConflictError("You have already reviewed this request") from exc

    await recompute_rating(db, ref)
    await db.commit()
    return review


async def edit_review(
    db: AsyncSession,
    actor: Principal,
    review_id: uuid.UUID,
    rating=UNSET,
    comment=UNSET,
    now: Optional[datetime] = None,
) -> Review:
    """
    Author-only edit within REVIEW_EDIT_WINDOW_DAYS of the review's creation.
    The aggregate is recomputed only when the rating actually changes.
    """
    if rating is not UNSET:
        _validate_rating(rating)

    review = await _get_review(db, review_id)
    ensure(
        can_edit_review(
            actor,
            review,
            now or datetime.now(timezone.utc),
            timedelta(days=settings.REVIEW_EDIT_WINDOW_DAYS),
        )
    )

    rating_changed = rating is not UNSET and rating != review.rating
    if rating_changed:
        review.rating = rating
    if comment is not UNSET:
        review.comment = comment

    await db.flush()
    if rating_changed:
        await recompute_rating(db, _review_ref(review))
    await db.commit()
    return review


async def respond_to_review(
    db: AsyncSession, actor: Principal, review_id: uuid.UUID, response: str
) -> Review:
    """The reviewed resource's controller may respond once."""
    if not response or not response.strip():
        raise ValidationError("Response cannot be empty")

    review = await _get_review(db, review_id)
    resource = await load_resource(db, _review_ref(review))
    ensure(can_respond_to_review(actor, resource))

    if review.provider_response:
        raise ConflictError("This review already has a response")

    review.provider_response = response.strip()
    review.provider_responded_at = datetime.now(timezone.utc)
    await db.commit()
    return review


async def hide_review(db: AsyncSession, actor: Principal, review_id: uuid.UUID) -> RatingSummary:
    """Admin moderation: hide from listings and drop from the aggregate."""
    ensure(can_moderate_reviews(actor))
    review = await _get_review(db, review_id)
    review.is_visible = False
    await db.flush()
    summary = await recompute_rating(db, _review_ref(review))
    await db.commit()
    return summary


async def list_resource_reviews(
    db: AsyncSession, ref: ResourceRef, limit: int = 20, offset: int = 0
) -> List[Review]:
    result = await db.execute(
        select(Review)
        .where(
            Review.resource_type == ref.resource_type,
            Review.resource_id == ref.resource_id,
            Review.is_visible == True,
        )
        .order_by(Review.created_at.desc())
        .offset(offset)
        .limit(limit)
    )
    return list(result.scalars())


async def list_reviewable_requests(
    db: AsyncSession, actor: Principal, ref: ResourceRef
) -> List[ServiceRequest]:
    """
    The actor's finished requests for this resource that have no review yet,
    i.e. exactly the ones submit_review would accept.
    """
    column = (
        ServiceRequest.assigned_provider_id
        if ref.resource_type == ResourceType.INDIVIDUAL
        else ServiceRequest.assigned_agency_member_id
    )
    reviewed = exists().where(Review.request_id == ServiceRequest.id)
    result = await db.execute(
        select(ServiceRequest)
        .where(
            ServiceRequest.requester_user_id == actor.user_id,
            column == ref.resource_id,
            ServiceRequest.status.in_(REVIEWABLE_STATUSES),
            ~reviewed,
        )
        .order_by(ServiceRequest.created_at.desc())
    )
    return list(result.scalars())
