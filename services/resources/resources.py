"""
services/resources/resources.py
The schedulable resource: one interface over individual provider profiles
and agency members, plus the loaders that build it from the store.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence, Set

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.errors import NotFoundError
from shared.models.models import (
    Agency,
    AgencyMember,
    AgencyMemberRole,
    ProviderProfile,
    ResourceType,
)
from shared.types import ResourceRef


@dataclass(frozen=True)
class SchedulableResource:
    """
    Tagged variant: kind INDIVIDUAL wraps a provider profile, kind
    AGENCY_MEMBER wraps an agency member. Availability and booking code
    only ever talk to this type.
    """

    kind: ResourceType
    id: uuid.UUID
    display_name: str
    service_rates: Dict[uuid.UUID, Optional[Decimal]]
    is_available: bool
    is_active: bool
    verified_at: Optional[datetime]
    average_rating: Decimal
    total_reviews: int
    controller_user_ids: FrozenSet[uuid.UUID] = field(default_factory=frozenset)
    agency_id: Optional[uuid.UUID] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    is_external: bool = False

    @property
    def ref(self) -> ResourceRef:
        return ResourceRef(self.kind, self.id)

    @property
    def is_verified(self) -> bool:
        return self.verified_at is not None

    @property
    def service_type_ids(self) -> List[uuid.UUID]:
        return list(self.service_rates)

    def offers(self, service_type_id: uuid.UUID) -> bool:
        return service_type_id in self.service_rates

    def hourly_rate_for(self, service_type_id: uuid.UUID) -> Optional[Decimal]:
        return self.service_rates.get(service_type_id)

    @classmethod
    def from_provider(cls, profile: ProviderProfile) -> "SchedulableResource":
        user = profile.user
        return cls(
            kind=ResourceType.INDIVIDUAL,
            id=profile.id,
            display_name=user.name if user else "Provider",
            service_rates={s.service_type_id: s.hourly_rate for s in profile.services},
            is_available=profile.is_available,
            is_active=bool(user is None or user.is_active),
            verified_at=profile.verified_at,
            average_rating=profile.average_rating,
            total_reviews=profile.total_reviews,
            controller_user_ids=frozenset({profile.user_id}),
            contact_email=user.email if user else None,
            contact_phone=user.phone if user else None,
        )

    @classmethod
    def from_agency_member(
        cls,
        member: AgencyMember,
        manager_user_ids: Iterable[uuid.UUID] = (),
    ) -> "SchedulableResource":
        agency = member.agency
        controllers: Set[uuid.UUID] = set(manager_user_ids)
        controllers.add(agency.owner_id)
        if member.user_id:
            controllers.add(member.user_id)

        if member.is_external or member.user is None:
            name = member.external_name or "External member"
            email, phone = member.external_email, member.external_phone
        else:
            name = member.user.name
            email, phone = member.user.email, member.user.phone

        return cls(
            kind=ResourceType.AGENCY_MEMBER,
            id=member.id,
            display_name=name,
            service_rates={s.service_type_id: s.hourly_rate for s in member.services},
            # Members are scheduled purely by booking absence
            is_available=True,
            is_active=member.is_active and agency.is_active,
            verified_at=agency.verified_at,
            average_rating=member.average_rating,
            total_reviews=member.total_reviews,
            controller_user_ids=frozenset(controllers),
            agency_id=agency.id,
            contact_email=email,
            contact_phone=phone,
            is_external=member.is_external,
        )


# ── Loaders ───────────────────────────────────────────────────

async def _agency_manager_ids(
    db: AsyncSession, agency_ids: Iterable[uuid.UUID]
) -> Dict[uuid.UUID, Set[uuid.UUID]]:
    """User ids holding an active owner/manager membership, per agency."""
    agency_ids = set(agency_ids)
    managers: Dict[uuid.UUID, Set[uuid.UUID]] = {a: set() for a in agency_ids}
    if not agency_ids:
        return managers
    result = await db.execute(
        select(AgencyMember.agency_id, AgencyMember.user_id).where(
            AgencyMember.agency_id.in_(agency_ids),
            AgencyMember.role.in_([AgencyMemberRole.OWNER, AgencyMemberRole.MANAGER]),
            AgencyMember.is_active == True,
            AgencyMember.user_id.is_not(None),
        )
    )
    for agency_id, user_id in result.all():
        managers[agency_id].add(user_id)
    return managers


async def load_resources(
    db: AsyncSession, refs: Sequence[ResourceRef]
) -> List[SchedulableResource]:
    """Load every resource that exists, preserving the order of refs. Missing ids are skipped."""
    provider_ids = [r.resource_id for r in refs if r.resource_type == ResourceType.INDIVIDUAL]
    member_ids = [r.resource_id for r in refs if r.resource_type == ResourceType.AGENCY_MEMBER]

    loaded: Dict[ResourceRef, SchedulableResource] = {}

    if provider_ids:
        result = await db.execute(
            select(ProviderProfile).where(ProviderProfile.id.in_(provider_ids))
        )
        for profile in result.unique().scalars():
            resource = SchedulableResource.from_provider(profile)
            loaded[resource.ref] = resource

    if member_ids:
        result = await db.execute(select(AgencyMember).where(AgencyMember.id.in_(member_ids)))
        members = list(result.unique().scalars())
        managers = await _agency_manager_ids(db, {m.agency_id for m in members})
        for member in members:
            resource = SchedulableResource.from_agency_member(member, managers[member.agency_id])
            loaded[resource.ref] = resource

    return [loaded[r] for r in refs if r in loaded]


async def load_resource(db: AsyncSession, ref: ResourceRef) -> SchedulableResource:
    resources = await load_resources(db, [ref])
    if not resources:
        label = "Provider" if ref.resource_type == ResourceType.INDIVIDUAL else "Agency member"
        raise NotFoundError(f"{label} not found")
    return resources[0]


async def agency_member_refs(
    db: AsyncSession, agency_id: uuid.UUID, active_only: bool = True
) -> List[ResourceRef]:
    """All members of an agency as resource refs. Raises NotFoundError for unknown agencies."""
    agency = await db.get(Agency, agency_id)
    if not agency:
        raise NotFoundError("Agency not found")
    query = select(AgencyMember.id).where(AgencyMember.agency_id == agency_id)
    if active_only:
        query = query.where(AgencyMember.is_active == True)
    result = await db.execute(query.order_by(AgencyMember.created_at))
    return [ResourceRef.agency_member(member_id) for member_id in result.scalars()]


async def controlled_resource_ids(db: AsyncSession, user_id: uuid.UUID) -> Set[uuid.UUID]:
    """
    Ids of every resource the user may act for: their own provider profile,
    their own agency memberships, and all members of agencies they own or manage.
    """
    ids: Set[uuid.UUID] = set()

    result = await db.execute(select(ProviderProfile.id).where(ProviderProfile.user_id == user_id))
    ids.update(result.scalars())

    managed_agencies = (
        select(AgencyMember.agency_id)
        .where(
            AgencyMember.user_id == user_id,
            AgencyMember.is_active == True,
            AgencyMember.role.in_([AgencyMemberRole.OWNER, AgencyMemberRole.MANAGER]),
        )
    )
    owned_agencies = select(Agency.id).where(Agency.owner_id == user_id)

    result = await db.execute(
        select(AgencyMember.id).where(
            or_(
                AgencyMember.user_id == user_id,
                AgencyMember.agency_id.in_(managed_agencies),
                AgencyMember.agency_id.in_(owned_agencies),
            )
        )
    )
    ids.update(result.scalars())
    return ids
