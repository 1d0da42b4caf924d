"""
services/search/router.py
Resource discovery: providers and agencies near a point, nearest first,
plus the service catalog listing used to pick a service type.
"""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.settings import settings
from services.search.geo import SearchFilters, find_nearby
from shared.errors import bounded_store_call
from shared.models.models import ServiceType
from shared.schemas.schemas import (
    NearbyResourceResponse,
    NearbySearchResponse,
    ServiceTypeResponse,
)
from shared.types import GeoPoint

router = APIRouter(prefix="/search", tags=["Search"])


@bounded_store_call
async def search_resources(db: AsyncSession, point: GeoPoint, radius_meters: float,
                           service_type_id: Optional[UUID], filters: SearchFilters):
    return await find_nearby(db, point, radius_meters, service_type_id, filters)


@router.get("/resources", response_model=NearbySearchResponse)
async def search_nearby_resources(
    lat: float = Query(..., description="Latitude of the job location"),
    lng: float = Query(..., description="Longitude of the job location"),
    radius_meters: float = Query(default=settings.SEARCH_DEFAULT_RADIUS_METERS),
    service_type_id: Optional[UUID] = Query(None),
    resource_type: str = Query(default="all", pattern="^(individual|agency|all)$"),
    verified_only: bool = Query(True),
    available_only: bool = Query(True),
    limit: int = Query(default=settings.SEARCH_DEFAULT_LIMIT, ge=1, le=settings.SEARCH_MAX_LIMIT),
    db: AsyncSession = Depends(get_db),
):
    """
    Public: search providers and agencies within a radius.
    Coordinates and radius are checked by the search itself so that bad
    geo input comes back as a 400 validation error.
    """
    filters = SearchFilters(
        verified_only=verified_only,
        available_only=available_only,
        resource_type=resource_type,
        limit=limit,
    )
    results = await search_resources(db, GeoPoint(lat, lng), radius_meters, service_type_id, filters)
    return NearbySearchResponse(
        items=[NearbyResourceResponse.model_validate(r) for r in results],
        total=len(results),
        radius_meters=radius_meters,
    )


@router.get("/service-types", response_model=List[ServiceTypeResponse])
async def search_service_types(
    q: Optional[str] = Query(None, description="Search text"),
    db: AsyncSession = Depends(get_db),
):
    """Active service types, optionally filtered by name or slug."""
    query = select(ServiceType).where(ServiceType.is_active == True)

    if q:
        search_term = f"%{q}%"
        query = query.where(
            or_(
                ServiceType.name.ilike(search_term),
                ServiceType.slug.ilike(search_term),
            )
        )

    result = await db.execute(query.order_by(ServiceType.name))
    return [ServiceTypeResponse.model_validate(s) for s in result.scalars()]
