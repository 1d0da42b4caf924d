"""
services/search/geo.py
Point-radius search over provider and agency locations.

PostgreSQL: ST_DWithin / ST_Distance over geography (spheroidal, uses the
GiST indexes). Other backends: a latitude/longitude bounding box in SQL,
then geodesic distance on the WGS-84 ellipsoid with geopy.
Results are always sorted by ascending distance in meters.
"""

import logging
import math
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from geopy.distance import geodesic
from sqlalchemy import and_, exists, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config.settings import settings
from shared.errors import ValidationError
from shared.models.models import (
    Agency,
    AgencyMember,
    AgencyService,
    AgencyStatus,
    ProviderProfile,
    ProviderService,
    User,
    geography_point,
)
from shared.types import GeoPoint

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_008.8
RESOURCE_KINDS = ("individual", "agency", "all")


@dataclass(frozen=True)
class SearchFilters:
    verified_only: bool = True
    available_only: bool = True      # individuals only
    resource_type: str = "all"
    limit: int = settings.SEARCH_DEFAULT_LIMIT


@dataclass(frozen=True)
class NearbyResource:
    kind: str                        # "individual" | "agency"
    id: uuid.UUID
    name: str
    latitude: float
    longitude: float
    distance_meters: float
    average_rating: Optional[Decimal] = None
    total_reviews: int = 0
    is_available: bool = True
    is_verified: bool = False
    hourly_rate: Optional[Decimal] = None
    member_count: Optional[int] = None
    user_id: Optional[uuid.UUID] = None


# ── Validation ────────────────────────────────────────────────

def _validate(radius_meters: float, filters: SearchFilters) -> None:
    if radius_meters is None or not math.isfinite(radius_meters) or radius_meters <= 0:
        raise ValidationError("Radius must be a positive number of meters")
    if radius_meters > settings.SEARCH_MAX_RADIUS_METERS:
        raise ValidationError(
            f"Radius cannot exceed {settings.SEARCH_MAX_RADIUS_METERS:.0f} meters"
        )
    if filters.resource_type not in RESOURCE_KINDS:
        raise ValidationError(f"resource_type must be one of {', '.join(RESOURCE_KINDS)}")
    if filters.limit < 1 or filters.limit > settings.SEARCH_MAX_LIMIT:
        raise ValidationError(f"limit must be between 1 and {settings.SEARCH_MAX_LIMIT}")


def geodesic_meters(a: GeoPoint, latitude: float, longitude: float) -> float:
    return geodesic(a.as_tuple(), (latitude, longitude)).meters


def bounding_box(point: GeoPoint, radius_meters: float) -> tuple:
    """
    (min_lat, max_lat, min_lon, max_lon) enclosing the search circle, padded 1%.
    Longitude bounds are None when the box crosses a pole or the antimeridian.
    """
    lat_delta = math.degrees(radius_meters / EARTH_RADIUS_METERS) * 1.01
    min_lat = max(-90.0, point.latitude - lat_delta)
    max_lat = min(90.0, point.latitude + lat_delta)
    if max_lat >= 90.0 or min_lat <= -90.0:
        return min_lat, max_lat, None, None

    widest_lat = max(abs(min_lat), abs(max_lat))
    lon_delta = lat_delta / math.cos(math.radians(widest_lat))
    min_lon = point.longitude - lon_delta
    max_lon = point.longitude + lon_delta
    if min_lon < -180.0 or max_lon > 180.0:
        return min_lat, max_lat, None, None
    return min_lat, max_lat, min_lon, max_lon


def _box_clause(model, point: GeoPoint, radius_meters: float):
    min_lat, max_lat, min_lon, max_lon = bounding_box(point, radius_meters)
    clauses = [model.latitude.between(min_lat, max_lat)]
    if min_lon is not None:
        clauses.append(model.longitude.between(min_lon, max_lon))
    return and_(*clauses)


# ── Individual providers ──────────────────────────────────────

def _provider_query(service_type_id: Optional[uuid.UUID], filters: SearchFilters):
    query = (
        select(ProviderProfile, User)
        .join(User, User.id == ProviderProfile.user_id)
        .where(
            User.is_active == True,
            ProviderProfile.latitude.is_not(None),
            ProviderProfile.longitude.is_not(None),
        )
    )
    if filters.verified_only:
        query = query.where(ProviderProfile.verified_at.is_not(None))
    if filters.available_only:
        query = query.where(ProviderProfile.is_available == True)
    if service_type_id:
        query = query.where(
            exists().where(
                ProviderService.provider_id == ProviderProfile.id,
                ProviderService.service_type_id == service_type_id,
            )
        )
    return query


def _provider_result(
    profile: ProviderProfile, user: User, distance: float, service_type_id: Optional[uuid.UUID]
) -> NearbyResource:
    rate = None
    if service_type_id:
        rate = next(
            (s.hourly_rate for s in profile.services if s.service_type_id == service_type_id), None
        )
    return NearbyResource(
        kind="individual",
        id=profile.id,
        name=user.name,
        latitude=profile.latitude,
        longitude=profile.longitude,
        distance_meters=round(distance, 1),
        average_rating=profile.average_rating,
        total_reviews=profile.total_reviews,
        is_available=profile.is_available,
        is_verified=profile.verified_at is not None,
        hourly_rate=rate,
        user_id=user.id,
    )


async def _nearby_providers(
    db: AsyncSession,
    point: GeoPoint,
    radius_meters: float,
    service_type_id: Optional[uuid.UUID],
    filters: SearchFilters,
    use_postgis: bool,
) -> List[NearbyResource]:
    query = _provider_query(service_type_id, filters)

    if use_postgis:
        origin = geography_point(point.longitude, point.latitude)
        location = geography_point(ProviderProfile.longitude, ProviderProfile.latitude)
        distance = func.ST_Distance(location, origin).label("distance_meters")
        query = (
            query.add_columns(distance)
            .where(func.ST_DWithin(location, origin, radius_meters))
            .order_by(distance, ProviderProfile.id)
            .limit(filters.limit)
        )
        rows = (await db.execute(query)).unique().all()
        return [
            _provider_result(profile, user, float(dist), service_type_id)
            for profile, user, dist in rows
        ]

    query = query.where(_box_clause(ProviderProfile, point, radius_meters))
    rows = (await db.execute(query)).unique().all()
    results = []
    for profile, user in rows:
        dist = geodesic_meters(point, profile.latitude, profile.longitude)
        if dist <= radius_meters:
            results.append(_provider_result(profile, user, dist, service_type_id))
    results.sort(key=lambda r: (r.distance_meters, str(r.id)))
    return results[: filters.limit]


# ── Agencies ──────────────────────────────────────────────────

def _agency_query(service_type_id: Optional[uuid.UUID], filters: SearchFilters):
    query = select(Agency).where(
        Agency.is_active == True,
        Agency.latitude.is_not(None),
        Agency.longitude.is_not(None),
    )
    if filters.verified_only:
        query = query.where(
            Agency.verified_at.is_not(None), Agency.status == AgencyStatus.VERIFIED
        )
    if service_type_id:
        query = query.where(
            exists().where(
                AgencyService.agency_id == Agency.id,
                AgencyService.service_type_id == service_type_id,
                AgencyService.is_active == True,
            )
        )
    return query


def _agency_result(
    agency: Agency, distance: float, member_count: int, service_type_id: Optional[uuid.UUID]
) -> NearbyResource:
    rate = None
    if service_type_id:
        rate = next(
            (s.hourly_rate for s in agency.services if s.service_type_id == service_type_id), None
        )
    return NearbyResource(
        kind="agency",
        id=agency.id,
        name=agency.name,
        latitude=agency.latitude,
        longitude=agency.longitude,
        distance_meters=round(distance, 1),
        is_verified=agency.verified_at is not None,
        hourly_rate=rate,
        member_count=member_count,
    )


async def _member_counts(db: AsyncSession, agency_ids: List[uuid.UUID]) -> dict:
    if not agency_ids:
        return {}
    result = await db.execute(
        select(AgencyMember.agency_id, func.count(AgencyMember.id))
        .where(AgencyMember.agency_id.in_(agency_ids), AgencyMember.is_active == True)
        .group_by(AgencyMember.agency_id)
    )
    return dict(result.all())


async def _nearby_agencies(
    db: AsyncSession,
    point: GeoPoint,
    radius_meters: float,
    service_type_id: Optional[uuid.UUID],
    filters: SearchFilters,
    use_postgis: bool,
) -> List[NearbyResource]:
    query = _agency_query(service_type_id, filters)

    if use_postgis:
        origin = geography_point(point.longitude, point.latitude)
        location = geography_point(Agency.longitude, Agency.latitude)
        distance = func.ST_Distance(location, origin).label("distance_meters")
        query = (
            query.add_columns(distance)
            .where(func.ST_DWithin(location, origin, radius_meters))
            .order_by(distance, Agency.id)
            .limit(filters.limit)
        )
        found = [(agency, float(dist)) for agency, dist in (await db.execute(query)).all()]
    else:
        query = query.where(_box_clause(Agency, point, radius_meters))
        found = []
        for agency in (await db.execute(query)).scalars():
            dist = geodesic_meters(point, agency.latitude, agency.longitude)
            if dist <= radius_meters:
                found.append((agency, dist))
        found.sort(key=lambda pair: (pair[1], str(pair[0].id)))
        found = found[: filters.limit]

    counts = await _member_counts(db, [agency.id for agency, _ in found])
    return [
        _agency_result(agency, dist, counts.get(agency.id, 0), service_type_id)
        for agency, dist in found
    ]


# ── Public API ────────────────────────────────────────────────

async def find_nearby(
    db: AsyncSession,
    point: GeoPoint,
    radius_meters: float,
    service_type_id: Optional[uuid.UUID] = None,
    filters: Optional[SearchFilters] = None,
) -> List[NearbyResource]:
    """
    Providers and/or agencies within radius_meters of point, nearest first.
    An empty list means nothing matched; only malformed input raises.
    """
    filters = filters or SearchFilters()
    _validate(radius_meters, filters)

    use_postgis = db.get_bind().dialect.name == "postgresql"
    results: List[NearbyResource] = []

    if filters.resource_type in ("individual", "all"):
        results.extend(
            await _nearby_providers(db, point, radius_meters, service_type_id, filters, use_postgis)
        )
    if filters.resource_type in ("agency", "all"):
        results.extend(
            await _nearby_agencies(db, point, radius_meters, service_type_id, filters, use_postgis)
        )

    results.sort(key=lambda r: r.distance_meters)
    logger.debug(
        f"find_nearby ({point.latitude}, {point.longitude}) r={radius_meters}m -> {len(results)} hits"
    )
    return results[: filters.limit]
