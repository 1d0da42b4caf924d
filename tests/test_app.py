"""
tests/test_app.py
Tests for application wiring: health, tracing headers, error envelope,
store timeouts, token revocation, rate limiting, resource endpoints and
the nightly maintenance task.
"""

import asyncio

import pytest
from httpx import AsyncClient

import config.redis_client as redis_module
import services.search.router as search_router
import tasks.maintenance_tasks as maintenance
from config.redis_client import RedisCache
from config.settings import settings
from services.realtime.notifier import AVAILABILITY_CHANGED
from shared.models.models import ProviderProfile, ServiceType
from shared.utils.security import create_access_token
from tests.conftest import NYC, auth_headers, fetch


# ── Wiring ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["database"] == "ok"
    assert data["realtime_subscribers"] == 0


@pytest.mark.asyncio
async def test_request_id_is_echoed(client: AsyncClient):
    response = await client.get("/", headers={"X-Request-ID": "trace-123"})
    assert response.headers["X-Request-ID"] == "trace-123"
    assert response.headers["X-Process-Time"].endswith("ms")

    generated = await client.get("/")
    assert generated.headers["X-Request-ID"]


@pytest.mark.asyncio
async def test_error_envelope(client: AsyncClient):
    response = await client.get(
        "/resources/INDIVIDUAL/00000000-0000-0000-0000-000000000000",
        headers={"X-Request-ID": "trace-404"},
    )
    assert response.status_code == 404
    assert response.json() == {
        "detail": "Provider not found",
        "code": "not_found",
        "request_id": "trace-404",
    }


@pytest.mark.asyncio
async def test_slow_store_becomes_retryable_503(client: AsyncClient, monkeypatch):
    """A store call that overruns the timeout surfaces as a retryable 503."""
    async def stalled(*args, **kwargs):
        await asyncio.sleep(1)
        return []

    monkeypatch.setattr(settings, "STORE_TIMEOUT_SECONDS", 0.05)
    monkeypatch.setattr(search_router, "find_nearby", stalled)

    response = await client.get("/search/resources", params={"lat": NYC[0], "lng": NYC[1]})

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "2"
    assert response.json()["code"] == "store_unavailable"


# ── Auth ──────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_revoked_token_is_rejected(client: AsyncClient, redis, user):
    token, jti = create_access_token(user_id=str(user.id), role=user.role.value, email=user.email)
    headers = {"Authorization": f"Bearer {token}"}

    assert (await client.get("/requests", headers=headers)).status_code == 200
    await RedisCache(redis).revoke_token(jti, 60)
    assert (await client.get("/requests", headers=headers)).status_code == 401


@pytest.mark.asyncio
async def test_garbage_token_is_rejected(client: AsyncClient):
    response = await client.get("/requests", headers={"Authorization": "Bearer not-a-jwt"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_anonymous_rate_limit(client: AsyncClient, redis, monkeypatch):
    """Unauthenticated clients are limited per IP; health checks are exempt."""
    monkeypatch.setattr(redis_module, "redis_client", redis)
    monkeypatch.setattr(settings, "RATE_LIMIT_UNAUTH_PER_MINUTE", 2)

    statuses = [(await client.get("/")).status_code for _ in range(3)]

    assert statuses == [200, 200, 429]
    health = await client.get("/health")
    assert health.status_code == 200


@pytest.mark.asyncio
async def test_authenticated_rate_limit_is_per_token(client: AsyncClient, redis, monkeypatch):
    monkeypatch.setattr(redis_module, "redis_client", redis)
    monkeypatch.setattr(settings, "RATE_LIMIT_PER_MINUTE", 2)
    monkeypatch.setattr(settings, "RATE_LIMIT_UNAUTH_PER_MINUTE", 100)
    busy = {"Authorization": "Bearer token-one"}

    statuses = [(await client.get("/", headers=busy)).status_code for _ in range(3)]

    assert statuses == [200, 200, 429]
    other = await client.get("/", headers={"Authorization": "Bearer token-two"})
    assert other.status_code == 200
    assert await redis.get("rate:auth:token-one") is None


@pytest.mark.asyncio
async def test_service_type_duration_defaults_from_settings(db, monkeypatch):
    monkeypatch.setattr(settings, "DEFAULT_SERVICE_DURATION_MINUTES", 45)
    service = ServiceType(name="Window cleaning", slug="window-cleaning")
    db.add(service)
    await db.commit()

    assert (await fetch(ServiceType, service.id)).default_duration_minutes == 45


# ── Resources ─────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_resource_profile(client: AsyncClient, provider_profile, service_type):
    response = await client.get(f"/resources/INDIVIDUAL/{provider_profile.id}")
    assert response.status_code == 200
    data = response.json()
    assert data["display_name"] == "Pat Plumber"
    assert data["kind"] == "INDIVIDUAL"
    assert data["service_type_ids"] == [str(service_type.id)]
    assert data["is_verified"] is True


@pytest.mark.asyncio
async def test_agency_member_profile(client: AsyncClient, agency, external_member):
    response = await client.get(f"/resources/AGENCY_MEMBER/{external_member.id}")
    assert response.status_code == 200
    data = response.json()
    assert data["display_name"] == "Eddie External"
    assert data["agency_id"] == str(agency.id)
    assert data["is_external"] is True


@pytest.mark.asyncio
async def test_toggle_availability(client: AsyncClient, user, provider_profile, provider_user, notifier):
    subscription = notifier.registry.subscribe()

    response = await client.patch(
        "/resources/providers/me/availability",
        json={"is_available": False},
        headers=auth_headers(provider_user),
    )
    assert response.status_code == 200
    assert response.json()["is_available"] is False
    assert (await fetch(ProviderProfile, provider_profile.id)).is_available is False

    event = subscription.queue.get_nowait()
    assert event.type == AVAILABILITY_CHANGED
    assert event.resource_id == str(provider_profile.id)

    # Same value again: nothing to broadcast
    await client.patch(
        "/resources/providers/me/availability",
        json={"is_available": False},
        headers=auth_headers(provider_user),
    )
    assert subscription.queue.empty()

    denied = await client.patch(
        "/resources/providers/me/availability",
        json={"is_available": True},
        headers=auth_headers(user),
    )
    assert denied.status_code == 403


# ── Maintenance task ──────────────────────────────────────────

def test_reconcile_task_reports_count(monkeypatch):
    monkeypatch.setattr(maintenance, "run_reconcile", lambda: 3)
    assert maintenance.reconcile_rating_aggregates.run() == {"resources": 3}


def test_reconcile_task_retries_on_failure(monkeypatch):
    class Retry(Exception):
        pass

    def broken():
        raise RuntimeError("database went away")

    def fake_retry(exc=None, **kwargs):
        return Retry(exc)

    monkeypatch.setattr(maintenance, "run_reconcile", broken)
    monkeypatch.setattr(maintenance.reconcile_rating_aggregates, "retry", fake_retry)

    with pytest.raises(Retry) as raised:
        maintenance.reconcile_rating_aggregates.run()
    assert isinstance(raised.value.args[0], RuntimeError)
