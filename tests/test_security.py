"""Authentication and role enforcement — real JWTs, no actor override."""

import uuid
from datetime import timedelta

import pytest
from httpx import AsyncClient

from app.api.v1.deps import get_current_actor
from app.core.security import create_access_token, decode_access_token
from app.main import app

BASE = "/api/v1/reimbursements"


@pytest.fixture
def real_auth():
    """Disable the test actor override so tokens are actually decoded."""
    previous = app.dependency_overrides.pop(get_current_actor)
    yield
    app.dependency_overrides[get_current_actor] = previous


def _bearer(role: str, sub: str | None = None, **kwargs) -> dict:
    token = create_access_token(sub or str(uuid.uuid4()), name="Token User", role=role, **kwargs)
    return {"Authorization": f"Bearer {token}"}


def test_token_round_trip():
    sub = str(uuid.uuid4())
    payload = decode_access_token(create_access_token(sub, name="Ana", role="finance"))
    assert payload["sub"] == sub
    assert payload["name"] == "Ana"
    assert payload["role"] == "finance"
    assert payload["type"] == "access"


def test_tampered_token_rejected():
    token = create_access_token(str(uuid.uuid4()))
    assert decode_access_token(token[:-2] + "xx") is None


@pytest.mark.asyncio
async def test_missing_token(async_client: AsyncClient, real_auth):
    resp = await async_client.get(BASE)
    assert resp.status_code == 401
    assert resp.json()["success"] is False
    assert resp.headers["www-authenticate"] == "Bearer"


@pytest.mark.asyncio
async def test_expired_token(async_client: AsyncClient, real_auth):
    headers = _bearer("finance", expires_delta=timedelta(minutes=-5))
    resp = await async_client.get(BASE, headers=headers)
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_non_uuid_subject(async_client: AsyncClient, real_auth):
    resp = await async_client.get(BASE, headers=_bearer("finance", sub="admin@example.com"))
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_employee_can_file_and_submit(async_client: AsyncClient, real_auth, expense_payload):
    employee_id = str(uuid.uuid4())
    headers = _bearer("employee", sub=employee_id)

    create = await async_client.post(BASE, json=expense_payload, headers=headers)
    assert create.status_code == 201
    assert create.json()["collaborator_id"] == employee_id

    submit = await async_client.post(f"{BASE}/{create.json()['id']}/submit", headers=headers)
    assert submit.status_code == 200
    assert submit.json()["history"][0]["actor_id"] == employee_id
    assert submit.json()["history"][0]["actor_name"] == "Token User"


@pytest.mark.asyncio
async def test_employee_cannot_approve(async_client: AsyncClient, real_auth, expense_payload):
    headers = _bearer("employee")
    rid = (await async_client.post(BASE, json=expense_payload, headers=headers)).json()["id"]
    await async_client.post(f"{BASE}/{rid}/submit", headers=headers)

    resp = await async_client.post(
        f"{BASE}/{rid}/approve", json={"approved_amount": "10.00"}, headers=headers
    )
    assert resp.status_code == 403

    queue = await async_client.get(f"{BASE}/pending-approval", headers=headers)
    assert queue.status_code == 403


@pytest.mark.asyncio
async def test_finance_can_approve(async_client: AsyncClient, real_auth, expense_payload):
    employee = _bearer("employee")
    finance = _bearer("finance")
    rid = (await async_client.post(BASE, json=expense_payload, headers=employee)).json()["id"]
    await async_client.post(f"{BASE}/{rid}/submit", headers=employee)

    resp = await async_client.post(
        f"{BASE}/{rid}/approve", json={"approved_amount": "10.00"}, headers=finance
    )
    assert resp.status_code == 200
    assert resp.json()["status"] == "APPROVED"


@pytest.mark.asyncio
async def test_token_from_cookie(async_client: AsyncClient, real_auth):
    token = create_access_token(str(uuid.uuid4()), role="employee")
    resp = await async_client.get(BASE, headers={"Cookie": f"access_token={token}"})
    assert resp.status_code == 200
