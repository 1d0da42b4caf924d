"""
shared/models/models.py
All SQLAlchemy ORM models for the scheduling core.
UUID primary keys throughout; locations are plain latitude/longitude
columns with a PostGIS geography index on PostgreSQL.
"""

import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum
from typing import List, Optional

from geoalchemy2 import Geography
from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    cast,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB, ExcludeConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from config.database import Base, TZDateTime
from config.settings import settings

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def geography_point(longitude, latitude):
    """geography(Point) expression over a pair of float columns."""
    return cast(func.ST_SetSRID(func.ST_MakePoint(longitude, latitude), 4326), Geography(srid=4326))


# ── Enumerations ──────────────────────────────────────────────

class UserRole(str, PyEnum):
    USER = "USER"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"


class ResourceType(str, PyEnum):
    INDIVIDUAL = "INDIVIDUAL"
    AGENCY_MEMBER = "AGENCY_MEMBER"


class RequestStatus(str, PyEnum):
    PENDING = "pending"
    MATCHED = "matched"
    ACCEPTED = "accepted"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingStatus(str, PyEnum):
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class AgencyStatus(str, PyEnum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    SUSPENDED = "SUSPENDED"


class AgencyMemberRole(str, PyEnum):
    OWNER = "OWNER"
    MANAGER = "MANAGER"
    PROVIDER = "PROVIDER"


# ── Mixins ────────────────────────────────────────────────────

class TimestampMixin:
    """Adds created_at and updated_at to any model."""
    created_at: Mapped[datetime] = mapped_column(
        TZDateTime(), default=_utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TZDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class RatingMixin:
    """Denormalized rating aggregate, written only by the rating aggregator."""
    average_rating: Mapped[Decimal] = mapped_column(
        Numeric(3, 2), default=Decimal("0.00"), nullable=False
    )
    total_reviews: Mapped[int] = mapped_column(Integer, default=0, nullable=False)


# ── Identity & catalog ────────────────────────────────────────

class User(TimestampMixin, Base):
    """Platform account. Issued tokens carry its id and role."""
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(
        Enum(UserRole), nullable=False, default=UserRole.USER
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    provider_profile: Mapped[Optional["ProviderProfile"]] = relationship(
        back_populates="user", uselist=False, foreign_keys="ProviderProfile.user_id"
    )

    __table_args__ = (Index("ix_users_role", "role"),)

    def __repr__(self) -> str:
        return f"<User {self.email} ({self.role})>"


class ServiceType(TimestampMixin, Base):
    """Catalog entry for a kind of work (plumbing, cleaning...)."""
    __tablename__ = "service_types"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    default_duration_minutes: Mapped[int] = mapped_column(
        Integer, default=lambda: settings.DEFAULT_SERVICE_DURATION_MINUTES, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)


# ── Individual providers ──────────────────────────────────────

class ProviderProfile(RatingMixin, TimestampMixin, Base):
    """
    An individually registered provider. One of the two schedulable
    resource variants; its id is the resource id used in bookings.
    """
    __tablename__ = "provider_profiles"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=False
    )
    bio: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    years_of_experience: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    service_radius_km: Mapped[float] = mapped_column(Float, default=25.0, nullable=False)

    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)
    verified_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    user: Mapped["User"] = relationship(
        back_populates="provider_profile", foreign_keys=[user_id], lazy="joined"
    )
    services: Mapped[List["ProviderService"]] = relationship(
        back_populates="provider", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_provider_profiles_available", "is_available"),
    )


class ProviderService(Base):
    """Service offering of an individual provider, with an optional hourly rate."""
    __tablename__ = "provider_services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    provider_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("provider_profiles.id", ondelete="CASCADE"), nullable=False
    )
    service_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_types.id"), nullable=False
    )
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    provider: Mapped["ProviderProfile"] = relationship(back_populates="services")

    __table_args__ = (
        UniqueConstraint("provider_id", "service_type_id", name="uq_provider_service"),
        Index("ix_provider_services_service_type", "service_type_id"),
    )


# ── Agencies ──────────────────────────────────────────────────

class Agency(TimestampMixin, Base):
    """Organization aggregating internal and external members."""
    __tablename__ = "agencies"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)

    latitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    longitude: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    service_radius_km: Mapped[float] = mapped_column(Float, default=25.0, nullable=False)

    status: Mapped[AgencyStatus] = mapped_column(
        Enum(AgencyStatus), default=AgencyStatus.PENDING, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    verified_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)
    verified_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )

    services: Mapped[List["AgencyService"]] = relationship(
        back_populates="agency", lazy="selectin", cascade="all, delete-orphan"
    )
    members: Mapped[List["AgencyMember"]] = relationship(
        back_populates="agency", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_agencies_owner_id", "owner_id"),
    )


class AgencyService(Base):
    __tablename__ = "agency_services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agency_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agencies.id", ondelete="CASCADE"), nullable=False
    )
    service_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_types.id"), nullable=False
    )
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    agency: Mapped["Agency"] = relationship(back_populates="services")

    __table_args__ = (
        UniqueConstraint("agency_id", "service_type_id", name="uq_agency_service"),
    )


class AgencyMember(RatingMixin, TimestampMixin, Base):
    """
    A person working for an agency: either a platform user or an
    externally tracked contact. The second schedulable resource variant.
    """
    __tablename__ = "agency_members"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agency_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agencies.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    is_external: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    external_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    external_phone: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    role: Mapped[AgencyMemberRole] = mapped_column(
        Enum(AgencyMemberRole), default=AgencyMemberRole.PROVIDER, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    agency: Mapped["Agency"] = relationship(back_populates="members", lazy="joined")
    user: Mapped[Optional["User"]] = relationship(foreign_keys=[user_id], lazy="joined")
    services: Mapped[List["AgencyMemberService"]] = relationship(
        back_populates="member", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "is_external OR user_id IS NOT NULL", name="ck_agency_member_identity"
        ),
        Index("ix_agency_members_agency_id", "agency_id"),
        Index("ix_agency_members_user_id", "user_id"),
    )


class AgencyMemberService(Base):
    __tablename__ = "agency_member_services"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    agency_member_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("agency_members.id", ondelete="CASCADE"), nullable=False
    )
    service_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_types.id"), nullable=False
    )
    hourly_rate: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    member: Mapped["AgencyMember"] = relationship(back_populates="services")

    __table_args__ = (
        UniqueConstraint("agency_member_id", "service_type_id", name="uq_agency_member_service"),
    )


# ── Requests & bookings ───────────────────────────────────────

class ServiceRequest(TimestampMixin, Base):
    """
    A customer's ask for a service. Status is owned by the request
    lifecycle: pending → matched → accepted → in_progress → completed,
    with cancelled reachable from every non-terminal status.
    """
    __tablename__ = "service_requests"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    requester_user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=False
    )
    service_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_types.id"), nullable=False
    )

    # Assignment: either an individual provider or an agency + member
    assigned_provider_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("provider_profiles.id"), nullable=True
    )
    assigned_agency_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("agencies.id"), nullable=True
    )
    assigned_agency_member_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("agency_members.id"), nullable=True
    )

    status: Mapped[RequestStatus] = mapped_column(
        Enum(RequestStatus), nullable=False, default=RequestStatus.PENDING
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    latitude: Mapped[float] = mapped_column(Float, nullable=False)
    longitude: Mapped[float] = mapped_column(Float, nullable=False)
    address: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Schedule
    scheduled_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)
    estimated_duration_minutes: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    estimated_end_time: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)

    completed_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Compare-and-set guard for concurrent transitions
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    audit_logs: Mapped[List["RequestAuditLog"]] = relationship(back_populates="request")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "assigned_provider_id IS NULL OR assigned_agency_member_id IS NULL",
            name="ck_request_single_assignment",
        ),
        Index("ix_service_requests_requester", "requester_user_id"),
        Index("ix_service_requests_status", "status"),
        Index("ix_service_requests_provider", "assigned_provider_id"),
        Index("ix_service_requests_agency_member", "assigned_agency_member_id"),
    )


class Booking(TimestampMixin, Base):
    """
    Reservation of one resource's time for one request.
    Two non-cancelled bookings of the same resource never overlap on
    [start_time, end_time).
    """
    __tablename__ = "bookings"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    resource_type: Mapped[ResourceType] = mapped_column(Enum(ResourceType), nullable=False)
    resource_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.id"), nullable=False
    )
    service_type_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_types.id"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    end_time: Mapped[datetime] = mapped_column(TZDateTime(), nullable=False)
    estimated_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[BookingStatus] = mapped_column(
        Enum(BookingStatus), nullable=False, default=BookingStatus.SCHEDULED
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint("end_time > start_time", name="ck_booking_positive_interval"),
        Index("ix_bookings_resource_window", "resource_id", "start_time", "end_time"),
        Index("ix_bookings_request_id", "request_id"),
    )


class RequestAuditLog(Base):
    """Immutable log of all request status transitions."""
    __tablename__ = "request_audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.id"), nullable=False
    )
    from_status: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)
    to_status: Mapped[str] = mapped_column(String(30), nullable=False)
    changed_by_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("users.id"), nullable=True
    )
    actor_role: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    audit_metadata: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(TZDateTime(), default=_utcnow, nullable=False)

    request: Mapped["ServiceRequest"] = relationship(back_populates="audit_logs")

    __table_args__ = (Index("ix_request_audit_logs_request_id", "request_id"),)


# ── Reviews ───────────────────────────────────────────────────

class Review(TimestampMixin, Base):
    """Post-service review. One per request (enforced by unique constraint)."""
    __tablename__ = "reviews"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    request_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("service_requests.id"), unique=True, nullable=False
    )
    user_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey("users.id"), nullable=False)
    resource_type: Mapped[ResourceType] = mapped_column(Enum(ResourceType), nullable=False)
    resource_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    rating: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_response: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    provider_responded_at: Mapped[Optional[datetime]] = mapped_column(TZDateTime(), nullable=True)
    is_visible: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    __table_args__ = (
        CheckConstraint("rating >= 1 AND rating <= 5", name="ck_review_rating_range"),
        Index("ix_reviews_resource", "resource_type", "resource_id"),
        Index("ix_reviews_user_id", "user_id"),
    )


# ── PostgreSQL-only DDL ───────────────────────────────────────
# Geography indexes back ST_DWithin / ST_Distance searches.
Index(
    "ix_provider_profiles_geography",
    geography_point(ProviderProfile.longitude, ProviderProfile.latitude),
    postgresql_using="gist",
).ddl_if(dialect="postgresql")

Index(
    "ix_agencies_geography",
    geography_point(Agency.longitude, Agency.latitude),
    postgresql_using="gist",
).ddl_if(dialect="postgresql")

# No two live bookings of one resource may overlap; tstzrange defaults to [) bounds.
# Requires the btree_gist extension for the uuid equality operator.
Booking.__table__.append_constraint(
    ExcludeConstraint(
        (Booking.__table__.c.resource_id, "="),
        (func.tstzrange(Booking.__table__.c.start_time, Booking.__table__.c.end_time), "&&"),
        name="excl_booking_resource_overlap",
        using="gist",
        where=text("status <> 'CANCELLED'"),
    ).ddl_if(dialect="postgresql")
)
