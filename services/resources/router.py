"""
services/resources/router.py
Resource profile reads and the provider availability toggle.
"""

from uuid import UUID

from fastapi import APIRouter, Depends
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from services.realtime.notifier import AVAILABILITY_CHANGED, Notifier, get_notifier
from services.resources.resources import SchedulableResource, load_resource
from shared.errors import NotFoundError, bounded_store_call
from shared.middleware.auth import Principal, require_provider
from shared.models.models import ProviderProfile, ResourceType
from shared.permissions import can_manage_resource, ensure
from shared.schemas.schemas import AvailabilityToggleRequest, ResourceResponse
from shared.types import ResourceRef

router = APIRouter(prefix="/resources", tags=["Resources"])


@bounded_store_call
async def set_provider_availability(
    db: AsyncSession,
    actor: Principal,
    is_available: bool,
    notifier: Notifier,
) -> SchedulableResource:
    """Toggle the caller's own provider profile and broadcast the change."""
    result = await db.execute(
        select(ProviderProfile).where(ProviderProfile.user_id == actor.user_id)
    )
    profile = result.unique().scalar_one_or_none()
    if not profile:
        raise NotFoundError("Provider profile not found")

    resource = SchedulableResource.from_provider(profile)
    ensure(can_manage_resource(actor, resource))

    changed = profile.is_available != is_available
    profile.is_available = is_available
    await db.commit()

    if changed:
        notifier.emit(
            AVAILABILITY_CHANGED,
            profile.id,
            {"is_available": is_available, "resource_type": ResourceType.INDIVIDUAL},
        )
    return SchedulableResource.from_provider(profile)


@router.patch("/providers/me/availability", response_model=ResourceResponse)
async def toggle_my_availability(
    data: AvailabilityToggleRequest,
    principal: Principal = Depends(require_provider),
    db: AsyncSession = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    """Provider: start or stop accepting new requests."""
    resource = await set_provider_availability(db, principal, data.is_available, notifier)
    return ResourceResponse.model_validate(resource)


@router.get("/{resource_type}/{resource_id}", response_model=ResourceResponse)
async def get_resource(
    resource_type: ResourceType,
    resource_id: UUID,
    db: AsyncSession = Depends(get_db),
):
    """Public: a provider or agency member as a schedulable resource."""
    resource = await bounded_store_call(load_resource)(db, ResourceRef(resource_type, resource_id))
    return ResourceResponse.model_validate(resource)
