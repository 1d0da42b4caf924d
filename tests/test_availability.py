"""
tests/test_availability.py
Tests for the availability resolver: overlap against live bookings,
half-open boundaries, candidate filtering and agency-wide checks.
"""

import uuid

import pytest
from httpx import AsyncClient

from services.availability.resolver import (
    CONFLICT_REASON,
    agency_availability,
    check_availability,
)
from shared.errors import NotFoundError
from shared.models.models import BookingStatus, ResourceType
from shared.types import ResourceRef
from tests.conftest import (
    auth_headers,
    make_booking,
    make_provider,
    make_request,
    run,
    window,
    window_json,
)


def _ids(resources):
    return [r.id for r in resources]


# ── Individual providers ──────────────────────────────────────

@pytest.mark.asyncio
async def test_overlapping_booking_marks_resource_unavailable(
    db, user, service_type, provider_profile, second_provider
):
    """A 10:30 window collides with a 10:00-11:00 booking."""
    request = await make_request(db, user, service_type)
    await make_booking(db, request, provider_profile.id, window(10))

    report = await run(
        check_availability,
        [ResourceRef.individual(provider_profile.id), ResourceRef.individual(second_provider.id)],
        service_type.id,
        window(10, 30),
    )

    assert _ids(report.available) == [second_provider.id]
    assert len(report.unavailable) == 1
    assert report.unavailable[0].resource.id == provider_profile.id
    assert report.unavailable[0].reason == CONFLICT_REASON
    assert report.total_candidates == 2
    assert report.has_availability is True


@pytest.mark.asyncio
async def test_back_to_back_window_is_free(db, user, service_type, provider_profile):
    request = await make_request(db, user, service_type)
    await make_booking(db, request, provider_profile.id, window(10))

    after = await run(
        check_availability, [ResourceRef.individual(provider_profile.id)], service_type.id, window(11)
    )
    before = await run(
        check_availability, [ResourceRef.individual(provider_profile.id)], service_type.id, window(9)
    )

    assert _ids(after.available) == [provider_profile.id]
    assert _ids(before.available) == [provider_profile.id]


@pytest.mark.asyncio
async def test_enclosing_window_conflicts(db, user, service_type, provider_profile):
    request = await make_request(db, user, service_type)
    await make_booking(db, request, provider_profile.id, window(10, 15, minutes=30))

    report = await run(
        check_availability,
        [ResourceRef.individual(provider_profile.id)],
        service_type.id,
        window(9, minutes=180),
    )
    assert report.available == []
    assert report.has_availability is False


@pytest.mark.asyncio
async def test_cancelled_booking_is_ignored(db, user, service_type, provider_profile):
    request = await make_request(db, user, service_type)
    await make_booking(db, request, provider_profile.id, window(10), status=BookingStatus.CANCELLED)

    report = await run(
        check_availability, [ResourceRef.individual(provider_profile.id)], service_type.id, window(10)
    )
    assert _ids(report.available) == [provider_profile.id]


@pytest.mark.asyncio
async def test_excluded_request_does_not_block_itself(db, user, service_type, provider_profile):
    request = await make_request(db, user, service_type)
    await make_booking(db, request, provider_profile.id, window(10))

    report = await run(
        check_availability,
        [ResourceRef.individual(provider_profile.id)],
        service_type.id,
        window(10, 30),
        exclude_request_id=request.id,
    )
    assert _ids(report.available) == [provider_profile.id]


@pytest.mark.asyncio
async def test_empty_candidate_list(db, service_type):
    report = await run(check_availability, [], service_type.id, window(10))
    assert report.available == []
    assert report.unavailable == []
    assert report.total_candidates == 0
    assert report.has_availability is False


@pytest.mark.asyncio
async def test_resources_without_the_service_are_dropped(
    db, other_service_type, provider_profile
):
    report = await run(
        check_availability,
        [ResourceRef.individual(provider_profile.id)],
        other_service_type.id,
        window(10),
    )
    assert report.total_candidates == 0
    assert report.available == []
    assert report.unavailable == []


@pytest.mark.asyncio
async def test_duplicate_and_unknown_refs(db, service_type, provider_profile):
    ref = ResourceRef.individual(provider_profile.id)
    report = await run(
        check_availability,
        [ref, ref, ResourceRef.individual(uuid.uuid4())],
        service_type.id,
        window(10),
    )
    assert report.total_candidates == 1
    assert _ids(report.available) == [provider_profile.id]


@pytest.mark.asyncio
async def test_availability_flag_does_not_hide_free_schedule(db, service_type):
    """The individual availability toggle only affects search, not schedule checks."""
    paused = await make_provider(db, service_type, available=False)
    report = await run(
        check_availability, [ResourceRef.individual(paused.id)], service_type.id, window(10)
    )
    assert _ids(report.available) == [paused.id]


@pytest.mark.asyncio
async def test_other_resources_bookings_do_not_interfere(
    db, user, service_type, provider_profile, second_provider
):
    request = await make_request(db, user, service_type)
    await make_booking(db, request, second_provider.id, window(10))

    report = await run(
        check_availability, [ResourceRef.individual(provider_profile.id)], service_type.id, window(10)
    )
    assert _ids(report.available) == [provider_profile.id]


# ── Agencies ──────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_agency_members_split_by_booking(
    db, user, service_type, agency, internal_member, external_member
):
    request = await make_request(db, user, service_type, member=internal_member)
    await make_booking(
        db, request, internal_member.id, window(14), resource_type=ResourceType.AGENCY_MEMBER
    )

    report = await run(agency_availability, agency.id, service_type.id, window(14, 30))

    assert _ids(report.available) == [external_member.id]
    assert [u.resource.id for u in report.unavailable] == [internal_member.id]
    assert report.available[0].display_name == "Eddie External"
    assert report.available[0].agency_id == agency.id


@pytest.mark.asyncio
async def test_inactive_members_are_not_candidates(
    db, service_type, agency, internal_member, external_member
):
    external_member.is_active = False
    await db.commit()

    report = await run(agency_availability, agency.id, service_type.id, window(9))
    assert _ids(report.available) == [internal_member.id]
    assert report.total_candidates == 1


@pytest.mark.asyncio
async def test_unknown_agency(db, service_type):
    with pytest.raises(NotFoundError):
        await run(agency_availability, uuid.uuid4(), service_type.id, window(9))


# ── HTTP ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_check_endpoint(
    client: AsyncClient, db, user, service_type, provider_profile, second_provider
):
    request = await make_request(db, user, service_type)
    await make_booking(db, request, provider_profile.id, window(10))

    response = await client.post(
        "/availability/check",
        json={
            "resources": [
                {"resource_type": "INDIVIDUAL", "resource_id": str(provider_profile.id)},
                {"resource_type": "INDIVIDUAL", "resource_id": str(second_provider.id)},
            ],
            "service_type_id": str(service_type.id),
            "window": {"start": window(10, 30).start.isoformat(), "duration_minutes": 60},
        },
        headers=auth_headers(user),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["has_availability"] is True
    assert data["available_count"] == 1
    assert data["available"][0]["id"] == str(second_provider.id)
    assert data["unavailable"][0]["reason"] == CONFLICT_REASON


@pytest.mark.asyncio
async def test_check_endpoint_rejects_inverted_window(client: AsyncClient, user, service_type):
    w = window(10)
    response = await client.post(
        "/availability/check",
        json={
            "resources": [],
            "service_type_id": str(service_type.id),
            "window": {"start": w.end.isoformat(), "end": w.start.isoformat()},
        },
        headers=auth_headers(user),
    )
    assert response.status_code == 400
    assert response.json()["code"] == "validation_error"


@pytest.mark.asyncio
async def test_check_endpoint_requires_auth(client: AsyncClient, service_type):
    response = await client.post(
        "/availability/check",
        json={
            "resources": [],
            "service_type_id": str(service_type.id),
            "window": window_json(window(10)),
        },
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_agency_endpoint(
    client: AsyncClient, user, service_type, agency, internal_member, external_member
):
    response = await client.get(
        f"/agencies/{agency.id}/availability",
        params={
            "service_type_id": str(service_type.id),
            "start": window(9).start.isoformat(),
            "duration_minutes": 90,
        },
        headers=auth_headers(user),
    )
    assert response.status_code == 200
    data = response.json()
    assert data["total_candidates"] == 2
    assert {r["id"] for r in data["available"]} == {str(internal_member.id), str(external_member.id)}
