from uuid import UUID, uuid4

import pytest
import pytest_asyncio
from fastapi import Depends
from httpx import ASGITransport, AsyncClient

from vcarda_api.api.dependencies.services import get_points_service, get_token_service
from vcarda_api.core.errors import StoreUnavailable
from vcarda_api.core.settings import settings
from vcarda_api.db.session import get_session
from vcarda_api.services.tokens import TokenService


def _headers(user_id: UUID, role: str = "customer", **extra: str) -> dict[str, str]:
    headers = {"X-Session-User": str(user_id), "X-Session-Role": role}
    headers.update(extra)
    return headers


@pytest_asyncio.fixture
async def client(app_with_db, key_resolver):
    app, _ = app_with_db

    async def override_token_service(session=Depends(get_session)) -> TokenService:
        return TokenService(session, key_resolver=key_resolver)

    app.dependency_overrides[get_token_service] = override_token_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http


async def _issue_customer_token(client: AsyncClient, world) -> dict:
    response = await client.post(
        "/api/v1/tokens",
        json={"subjectKind": "customer", "subjectId": str(world.customer_id)},
        headers=_headers(world.customer_id),
    )
    assert response.status_code == 201, response.text
    return response.json()


async def _scan(client: AsyncClient, world, token: str, key: str, principal_id=None):
    return await client.post(
        "/api/v1/points/scan",
        json={
            "token": token,
            "businessId": str(world.business_id),
            "programId": str(world.program_id),
        },
        headers=_headers(principal_id or world.cashier_id, "staff", **{"Idempotency-Key": key}),
    )


@pytest.mark.asyncio
async def test_health_endpoints(client, world):
    root = await client.get("/healthz")
    assert root.status_code == 200
    assert root.json()["status"] == "ok"

    ready = await client.get("/api/v1/readyz")
    assert ready.status_code == 200
    payload = ready.json()
    assert payload["components"]["database"]["status"] == "ready"
    assert payload["components"]["reconciler"]["status"] == "disabled"


@pytest.mark.asyncio
async def test_customer_issues_own_token_and_validates_it(client, world):
    issued = await _issue_customer_token(client, world)
    assert issued["subjectKind"] == "customer"
    assert issued["subjectId"] == str(world.customer_id)

    response = await client.post(
        "/api/v1/tokens/validate",
        json={"token": issued["token"]},
        headers=_headers(world.cashier_id, "staff"),
    )
    assert response.status_code == 200
    body = response.json()
    assert body["valid"] is True
    assert body["tokenId"] == issued["tokenId"]


@pytest.mark.asyncio
async def test_token_issue_permissions(client, world):
    for_someone_else = await client.post(
        "/api/v1/tokens",
        json={"subjectKind": "customer", "subjectId": str(uuid4())},
        headers=_headers(world.customer_id),
    )
    assert for_someone_else.status_code == 403
    assert for_someone_else.json()["error"] == "PermissionDenied"

    promo_by_customer = await client.post(
        "/api/v1/tokens",
        json={"subjectKind": "promo_code", "subjectId": str(uuid4()), "programId": str(world.program_id)},
        headers=_headers(world.customer_id),
    )
    assert promo_by_customer.status_code == 403

    promo_by_admin = await client.post(
        "/api/v1/tokens",
        json={"subjectKind": "promo_code", "subjectId": str(uuid4()), "programId": str(world.program_id)},
        headers=_headers(world.admin_id, "admin"),
    )
    assert promo_by_admin.status_code == 201

    bad_kind = await client.post(
        "/api/v1/tokens",
        json={"subjectKind": "gift_card", "subjectId": str(world.customer_id)},
        headers=_headers(world.customer_id),
    )
    assert bad_kind.status_code == 422


@pytest.mark.asyncio
async def test_scan_awards_once_and_rescan_conflicts(client, world):
    issued = await _issue_customer_token(client, world)

    first = await _scan(client, world, issued["token"], "scan-1")
    assert first.status_code == 200, first.text
    body = first.json()
    assert body["applied"] is True
    assert body["newBalance"] == 10
    assert body["tokenId"] == issued["tokenId"]
    assert body["customerId"] == str(world.customer_id)

    retry = await _scan(client, world, issued["token"], "scan-1")
    assert retry.status_code == 200
    assert retry.json()["applied"] is False
    assert retry.json()["transactionId"] == body["transactionId"]

    rescan = await _scan(client, world, issued["token"], "scan-2", principal_id=world.owner_id)
    assert rescan.status_code == 409
    assert rescan.json() == {"error": "TokenAlreadyConsumed", "message": "This code can no longer be used."}

    validate = await client.post(
        "/api/v1/tokens/validate",
        json={"token": issued["token"]},
        headers=_headers(world.cashier_id, "staff"),
    )
    assert validate.json()["valid"] is False
    assert validate.json()["reason"] == "TokenAlreadyConsumed"

    balance = await client.get(
        "/api/v1/points/balance",
        params={"customerId": str(world.customer_id), "programId": str(world.program_id)},
        headers=_headers(world.customer_id),
    )
    assert balance.status_code == 200
    assert balance.json()["balance"] == 10


@pytest.mark.asyncio
async def test_malformed_and_revoked_tokens_map_to_client_errors(client, world):
    garbage = await _scan(client, world, "not-a-token", "scan-1")
    assert garbage.status_code == 400
    assert garbage.json()["error"] == "TokenMalformed"

    issued = await _issue_customer_token(client, world)
    revoke = await client.post(
        f"/api/v1/tokens/{issued['tokenId']}/revoke",
        json={"reason": "lost_device"},
        headers=_headers(world.admin_id, "admin"),
    )
    assert revoke.status_code == 200
    assert revoke.json()["status"] == "revoked"
    assert revoke.json()["revokeReason"] == "lost_device"

    revoked_scan = await _scan(client, world, issued["token"], "scan-2")
    assert revoked_scan.status_code == 410
    assert revoked_scan.json()["error"] == "TokenRevoked"


@pytest.mark.asyncio
async def test_token_administration_requires_admin(client, world):
    issued = await _issue_customer_token(client, world)

    forbidden = await client.get(f"/api/v1/tokens/{issued['tokenId']}", headers=_headers(world.customer_id))
    assert forbidden.status_code == 403

    described = await client.get(
        f"/api/v1/tokens/{issued['tokenId']}",
        headers=_headers(world.admin_id, "admin"),
    )
    assert described.status_code == 200
    assert described.json()["status"] == "active"
    assert described.json()["archived"] is False

    missing = await client.get(f"/api/v1/tokens/{uuid4()}", headers=_headers(world.admin_id, "admin"))
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_award_redeem_and_history(client, world):
    staff = _headers(world.owner_id, "staff")
    award = await client.post(
        "/api/v1/points/award",
        json={
            "customerId": str(world.customer_id),
            "programId": str(world.program_id),
            "businessId": str(world.business_id),
            "delta": 30,
            "idempotencyKey": "award-1",
        },
        headers=staff,
    )
    assert award.status_code == 200, award.text
    assert award.json()["newBalance"] == 30

    redeem = await client.post(
        "/api/v1/points/redeem",
        json={
            "customerId": str(world.customer_id),
            "programId": str(world.program_id),
            "businessId": str(world.business_id),
            "points": 10,
        },
        headers={**staff, "Idempotency-Key": "redeem-1"},
    )
    assert redeem.status_code == 200
    assert redeem.json()["newBalance"] == 20

    shortfall = await client.post(
        "/api/v1/points/redeem",
        json={
            "customerId": str(world.customer_id),
            "programId": str(world.program_id),
            "businessId": str(world.business_id),
            "points": 25,
            "idempotencyKey": "redeem-2",
        },
        headers=staff,
    )
    assert shortfall.status_code == 409
    assert shortfall.json()["error"] == "InsufficientBalance"
    assert shortfall.json()["shortfall"] == 5

    first_page = await client.get(
        "/api/v1/points/history",
        params={"customerId": str(world.customer_id), "programId": str(world.program_id), "limit": 1},
        headers=_headers(world.customer_id),
    )
    assert first_page.status_code == 200
    page = first_page.json()
    assert [entry["delta"] for entry in page["entries"]] == [-10]
    assert page["nextCursor"]

    second_page = await client.get(
        "/api/v1/points/history",
        params={
            "customerId": str(world.customer_id),
            "programId": str(world.program_id),
            "limit": 1,
            "cursor": page["nextCursor"],
        },
        headers=_headers(world.customer_id),
    )
    assert [entry["delta"] for entry in second_page.json()["entries"]] == [30]
    assert second_page.json()["nextCursor"] is None


@pytest.mark.asyncio
async def test_request_validation_errors(client, world):
    no_user = await client.get(
        "/api/v1/points/balance",
        params={"customerId": str(world.customer_id), "programId": str(world.program_id)},
    )
    assert no_user.status_code == 401

    bad_role = await client.get(
        "/api/v1/points/balance",
        params={"customerId": str(world.customer_id), "programId": str(world.program_id)},
        headers=_headers(world.customer_id, "superuser"),
    )
    assert bad_role.status_code == 400

    no_key = await client.post(
        "/api/v1/points/award",
        json={
            "customerId": str(world.customer_id),
            "programId": str(world.program_id),
            "businessId": str(world.business_id),
            "delta": 5,
        },
        headers=_headers(world.owner_id, "staff"),
    )
    assert no_key.status_code == 400
    assert no_key.json()["error"] == "InvalidRequest"

    bad_cursor = await client.get(
        "/api/v1/points/history",
        params={"customerId": str(world.customer_id), "programId": str(world.program_id), "cursor": "%%%"},
        headers=_headers(world.customer_id),
    )
    assert bad_cursor.status_code == 400


@pytest.mark.asyncio
async def test_scan_stats_endpoint(client, world):
    issued = await _issue_customer_token(client, world)
    await _scan(client, world, issued["token"], "scan-1")

    response = await client.get(
        "/api/v1/points/scan-stats",
        params={"businessId": str(world.business_id)},
        headers=_headers(world.owner_id, "staff"),
    )
    assert response.status_code == 200
    stats = response.json()
    assert stats["totalScans"] == 1
    assert stats["pointsAwarded"] == 10

    outsider = await client.get(
        "/api/v1/points/scan-stats",
        params={"businessId": str(world.business_id)},
        headers=_headers(world.outsider_id, "staff"),
    )
    assert outsider.status_code == 403


@pytest.mark.asyncio
async def test_reconciliation_runs_are_admin_only(client, world):
    forbidden = await client.post("/api/v1/reconciliation/runs", headers=_headers(world.owner_id, "staff"))
    assert forbidden.status_code == 403

    created = await client.post(
        "/api/v1/reconciliation/runs",
        json={"repair": True, "batchSize": 50},
        headers=_headers(world.admin_id, "admin"),
    )
    assert created.status_code == 201, created.text
    run = created.json()
    assert run["status"] == "succeeded"
    assert run["repair"] is True
    assert run["trigger"] == f"api:{world.admin_id}"
    assert run["metadata"]["batch_size"] == 50

    listed = await client.get("/api/v1/reconciliation/runs", headers=_headers(world.admin_id, "admin"))
    assert listed.status_code == 200
    assert [item["id"] for item in listed.json()["runs"]] == [run["id"]]


@pytest.mark.asyncio
async def test_observability_requires_internal_api_key(client, world, monkeypatch):
    monkeypatch.setattr(settings, "internal_api_key", "ops-secret")

    denied = await client.get("/api/v1/observability/loyalty")
    assert denied.status_code == 401

    await _issue_customer_token(client, world)
    allowed = await client.get("/api/v1/observability/loyalty", headers={"X-API-Key": "ops-secret"})
    assert allowed.status_code == 200
    assert allowed.json()["tokens"]["issued"] == {"customer": 1}


@pytest.mark.asyncio
async def test_store_outage_maps_to_retryable_503(client, app_with_db, world):
    app, _ = app_with_db

    class UnavailablePoints:
        async def get_balance(self, principal, *, customer_id, program_id):
            raise StoreUnavailable()

    app.dependency_overrides[get_points_service] = lambda: UnavailablePoints()

    response = await client.get(
        "/api/v1/points/balance",
        params={"customerId": str(world.customer_id), "programId": str(world.program_id)},
        headers=_headers(world.customer_id),
    )
    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    assert response.json()["error"] == "StoreUnavailable"
