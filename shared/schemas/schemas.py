"""
shared/schemas/schemas.py
All Pydantic v2 request/response schemas for the platform.
"""

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

from shared.models.models import BookingStatus, RequestStatus, ResourceType
from shared.types import ResourceRef, TimeWindow


# ── Base ──────────────────────────────────────────────────────

class BaseSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)


# ── Shared pieces ─────────────────────────────────────────────

class ResourceRefSchema(BaseSchema):
    resource_type: ResourceType
    resource_id: uuid.UUID

    def to_ref(self) -> ResourceRef:
        return ResourceRef(ResourceType(self.resource_type), self.resource_id)


class TimeWindowSchema(BaseSchema):
    """Either `end` or `duration_minutes` must be given alongside `start`."""
    start: AwareDatetime
    end: Optional[AwareDatetime] = None
    duration_minutes: Optional[int] = Field(None, gt=0, le=24 * 60)

    def to_window(self) -> TimeWindow:
        return TimeWindow.from_parts(self.start, self.end, self.duration_minutes)


# ── Search ────────────────────────────────────────────────────

class NearbyResourceResponse(BaseSchema):
    kind: str
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


class NearbySearchResponse(BaseSchema):
    items: List[NearbyResourceResponse]
    total: int
    radius_meters: float


class ServiceTypeResponse(BaseSchema):
    id: uuid.UUID
    name: str
    slug: str
    description: Optional[str]
    default_duration_minutes: int


# ── Resources ─────────────────────────────────────────────────

class ResourceResponse(BaseSchema):
    kind: ResourceType
    id: uuid.UUID
    display_name: str
    service_type_ids: List[uuid.UUID]
    is_available: bool
    is_active: bool
    is_verified: bool
    verified_at: Optional[datetime]
    average_rating: Decimal
    total_reviews: int
    agency_id: Optional[uuid.UUID] = None
    is_external: bool = False


class AvailabilityToggleRequest(BaseSchema):
    is_available: bool


# ── Availability ──────────────────────────────────────────────

class AvailabilityCheckRequest(BaseSchema):
    resources: List[ResourceRefSchema] = Field(..., max_length=200)
    service_type_id: uuid.UUID
    window: TimeWindowSchema
    exclude_request_id: Optional[uuid.UUID] = None


class UnavailableResourceResponse(BaseSchema):
    resource: ResourceResponse
    reason: str


class AvailabilityReportResponse(BaseSchema):
    available: List[ResourceResponse]
    unavailable: List[UnavailableResourceResponse]
    has_availability: bool
    total_candidates: int
    available_count: int


# ── Service requests ──────────────────────────────────────────

class ServiceRequestCreate(BaseSchema):
    service_type_id: uuid.UUID
    description: Optional[str] = Field(None, max_length=2000)
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    address: Optional[str] = Field(None, max_length=500)
    resource: Optional[ResourceRefSchema] = None
    scheduled_at: Optional[AwareDatetime] = None
    duration_minutes: Optional[int] = Field(None, gt=0, le=24 * 60)
    self_service: bool = False
    requester_user_id: Optional[uuid.UUID] = None   # admins only


class ServiceRequestResponse(BaseSchema):
    id: uuid.UUID
    requester_user_id: uuid.UUID
    service_type_id: uuid.UUID
    assigned_provider_id: Optional[uuid.UUID]
    assigned_agency_id: Optional[uuid.UUID]
    assigned_agency_member_id: Optional[uuid.UUID]
    status: RequestStatus
    description: Optional[str]
    latitude: float
    longitude: float
    address: Optional[str]
    scheduled_at: Optional[datetime]
    estimated_duration_minutes: Optional[int]
    estimated_end_time: Optional[datetime]
    completed_at: Optional[datetime]
    cancelled_at: Optional[datetime]
    cancellation_reason: Optional[str]
    created_at: datetime
    updated_at: datetime


class AcceptRequestBody(BaseSchema):
    resource: ResourceRefSchema
    window: TimeWindowSchema


class CancelRequestBody(BaseSchema):
    reason: Optional[str] = Field(None, max_length=500)


# ── Bookings ──────────────────────────────────────────────────

class BookingResponse(BaseSchema):
    id: uuid.UUID
    resource_type: ResourceType
    resource_id: uuid.UUID
    request_id: uuid.UUID
    service_type_id: uuid.UUID
    start_time: datetime
    end_time: datetime
    estimated_duration_minutes: int
    status: BookingStatus
    created_at: datetime
    updated_at: datetime


class BookingStatusUpdate(BaseSchema):
    status: BookingStatus


class RequestWithBookingResponse(BaseSchema):
    request: ServiceRequestResponse
    booking: Optional[BookingResponse] = None


# ── Reviews & ratings ─────────────────────────────────────────

class ReviewCreateRequest(BaseSchema):
    request_id: uuid.UUID
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewUpdateRequest(BaseSchema):
    rating: Optional[int] = Field(None, ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=2000)


class ReviewRespondRequest(BaseSchema):
    response: str = Field(..., min_length=1, max_length=2000)


class ReviewResponse(BaseSchema):
    id: uuid.UUID
    request_id: uuid.UUID
    user_id: uuid.UUID
    resource_type: ResourceType
    resource_id: uuid.UUID
    rating: int
    comment: Optional[str]
    provider_response: Optional[str]
    provider_responded_at: Optional[datetime]
    is_visible: bool
    created_at: datetime
    updated_at: datetime


class RatingSummaryResponse(BaseSchema):
    resource_type: ResourceType
    resource_id: uuid.UUID
    average_rating: Decimal
    total_reviews: int


# ── Generic ───────────────────────────────────────────────────

class ErrorResponse(BaseSchema):
    detail: str
    code: Optional[str] = None
    request_id: Optional[str] = None
