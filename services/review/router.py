"""
services/review/router.py
Reviews, provider responses, moderation and rating recompute.
"""

from typing import List
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.review import aggregator
from shared.errors import bounded_store_call
from shared.middleware.auth import Principal, get_principal, require_admin
from shared.models.models import ResourceType
from shared.schemas.schemas import (
    RatingSummaryResponse,
    ReviewCreateRequest,
    ReviewRespondRequest,
    ReviewResponse,
    ReviewUpdateRequest,
    ServiceRequestResponse,
)
from shared.types import ResourceRef

router = APIRouter(prefix="/reviews", tags=["Reviews"])
ratings_router = APIRouter(prefix="/ratings", tags=["Reviews"])

submit_review = bounded_store_call(aggregator.submit_review)
edit_review = bounded_store_call(aggregator.edit_review)
respond_to_review = bounded_store_call(aggregator.respond_to_review)
hide_review = bounded_store_call(aggregator.hide_review)
list_resource_reviews = bounded_store_call(aggregator.list_resource_reviews)
list_reviewable_requests = bounded_store_call(aggregator.list_reviewable_requests)
recompute_rating = bounded_store_call(aggregator.recompute_rating)


@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """
    Review a finished request.
    - Only the requester, once per request
    - Request must be completed or cancelled with a resource assigned
    """
    review = await submit_review(db, principal, data.request_id, data.rating, data.comment)
    return ReviewResponse.model_validate(review)


@router.patch("/{review_id}", response_model=ReviewResponse)
async def update_review(
    review_id: UUID,
    data: ReviewUpdateRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """Author edits rating and/or comment within the edit window."""
    changes = data.model_dump(exclude_unset=True)
    review = await edit_review(db, principal, review_id, **changes)
    return ReviewResponse.model_validate(review)


@router.post("/{review_id}/response", response_model=ReviewResponse)
async def respond(
    review_id: UUID,
    data: ReviewRespondRequest,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    review = await respond_to_review(db, principal, review_id, data.response)
    return ReviewResponse.model_validate(review)


@router.delete("/{review_id}", response_model=RatingSummaryResponse)
async def delete_review(
    review_id: UUID,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: hide a review (kept in the DB) and return the updated rating."""
    summary = await hide_review(db, principal, review_id)
    return RatingSummaryResponse.model_validate(summary)


@router.get("/resource/{resource_type}/{resource_id}", response_model=List[ReviewResponse])
async def get_resource_reviews(
    resource_type: ResourceType,
    resource_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: visible reviews for a provider or agency member."""
    reviews = await list_resource_reviews(
        db,
        ResourceRef(resource_type, resource_id),
        limit=page_size,
        offset=(page - 1) * page_size,
    )
    return [ReviewResponse.model_validate(r) for r in reviews]


@router.get(
    "/eligible/{resource_type}/{resource_id}", response_model=List[ServiceRequestResponse]
)
async def get_reviewable_requests(
    resource_type: ResourceType,
    resource_id: UUID,
    principal: Principal = Depends(get_principal),
    db: AsyncSession = Depends(get_db),
):
    """The caller's finished, not yet reviewed requests for this resource."""
    requests = await list_reviewable_requests(
        db, principal, ResourceRef(resource_type, resource_id)
    )
    return [ServiceRequestResponse.model_validate(r) for r in requests]


@ratings_router.post("/{resource_type}/{resource_id}/recompute", response_model=RatingSummaryResponse)
async def recompute_resource_rating(
    resource_type: ResourceType,
    resource_id: UUID,
    principal: Principal = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: rebuild the rating aggregate from visible reviews."""
    summary = await recompute_rating(db, ResourceRef(resource_type, resource_id))
    await db.commit()
    return RatingSummaryResponse.model_validate(summary)
