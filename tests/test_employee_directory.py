"""Tests for the Employee Directory client and best-effort enrichment."""

import asyncio
import time
import uuid

import httpx
import pytest
from httpx import AsyncClient

from app.api.v1.deps import get_employee_directory
from app.clients.employee_directory import CollaboratorInfo, EmployeeDirectory
from app.main import app

EMPLOYEE_ID = uuid.UUID("33333333-3333-3333-3333-333333333333")


def _directory(handler) -> EmployeeDirectory:
    return EmployeeDirectory(
        base_url="http://directory.test",
        timeout=0.5,
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.asyncio
async def test_lookup_success():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={"name": "Maria Souza", "registration_number": "EMP-0042"})

    directory = _directory(handler)
    info = await directory.lookup(EMPLOYEE_ID)
    assert info == CollaboratorInfo(name="Maria Souza", registration_number="EMP-0042")

    # Second lookup is served from the per-instance cache
    await directory.lookup(EMPLOYEE_ID)
    assert calls == [f"/employees/{EMPLOYEE_ID}"]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "response",
    [
        httpx.Response(404),
        httpx.Response(500),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"registration_number": "EMP-1"}),
    ],
)
async def test_lookup_failures_return_none(response):
    directory = _directory(lambda request: response)
    assert await directory.lookup(EMPLOYEE_ID) is None


@pytest.mark.asyncio
async def test_lookup_timeout_returns_none():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("directory too slow", request=request)

    assert await _directory(handler).lookup(EMPLOYEE_ID) is None


@pytest.mark.asyncio
async def test_disabled_directory_makes_no_calls():
    def handler(request: httpx.Request) -> httpx.Response:
        raise AssertionError("no request expected")

    directory = EmployeeDirectory(base_url="", transport=httpx.MockTransport(handler))
    assert directory.enabled is False
    assert await directory.lookup(EMPLOYEE_ID) is None


# ── Enrichment through the API ──────────────────────────────────────
class _FakeDirectory(EmployeeDirectory):
    def __init__(self, info=None, error=None):
        super().__init__(base_url="http://directory.test")
        self._info = info
        self._error = error

    async def lookup(self, collaborator_id):
        if self._error:
            raise self._error
        return self._info


@pytest.fixture
def use_directory():
    def _use(directory: EmployeeDirectory):
        app.dependency_overrides[get_employee_directory] = lambda: directory

    previous = app.dependency_overrides[get_employee_directory]
    yield _use
    app.dependency_overrides[get_employee_directory] = previous


@pytest.mark.asyncio
async def test_detail_is_enriched(async_client: AsyncClient, expense_payload, use_directory):
    use_directory(_FakeDirectory(CollaboratorInfo("Maria Souza", "EMP-0042")))

    resp = await async_client.post("/api/v1/reimbursements", json=expense_payload)
    assert resp.status_code == 201
    assert resp.json()["collaborator_name"] == "Maria Souza"
    assert resp.json()["collaborator_registration"] == "EMP-0042"

    listing = await async_client.get("/api/v1/reimbursements")
    assert listing.json()["items"][0]["collaborator_name"] == "Maria Souza"


@pytest.mark.asyncio
async def test_failing_directory_does_not_break_operations(
    async_client: AsyncClient, expense_payload, use_directory
):
    use_directory(_FakeDirectory(error=RuntimeError("directory exploded")))

    create = await async_client.post("/api/v1/reimbursements", json=expense_payload)
    assert create.status_code == 201
    assert create.json()["collaborator_name"] is None

    submit = await async_client.post(f"/api/v1/reimbursements/{create.json()['id']}/submit")
    assert submit.status_code == 200
    assert submit.json()["status"] == "PENDING_FINANCIAL_APPROVAL"


# ── Slow or unreachable directory ───────────────────────────────────
@pytest.mark.asyncio
async def test_transport_failure_skips_remaining_lookups():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        raise httpx.ConnectError("connection refused", request=request)

    directory = _directory(handler)
    assert await directory.lookup(uuid.uuid4()) is None
    assert await directory.lookup(uuid.uuid4()) is None
    assert len(calls) == 1
    assert directory.enabled is False
    await directory.aclose()


@pytest.mark.asyncio
async def test_lookup_many_deduplicates_ids():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        return httpx.Response(200, json={"name": "Someone"})

    first, second = uuid.uuid4(), uuid.uuid4()
    directory = _directory(handler)
    resolved = await directory.lookup_many([first, second, first])
    await directory.aclose()

    assert sorted(calls) == sorted([f"/employees/{first}", f"/employees/{second}"])
    assert resolved[first] == CollaboratorInfo(name="Someone")
    assert resolved[second] == CollaboratorInfo(name="Someone")


@pytest.mark.asyncio
async def test_listing_does_not_wait_on_each_lookup(
    async_client: AsyncClient, expense_payload, use_directory
):
    for _ in range(5):
        await async_client.post(
            "/api/v1/reimbursements",
            json={**expense_payload, "collaborator_id": str(uuid.uuid4())},
        )

    calls = []

    async def slow_handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url.path)
        await asyncio.sleep(0.3)
        raise httpx.ReadTimeout("directory too slow", request=request)

    directory = _directory(slow_handler)
    use_directory(directory)

    started = time.perf_counter()
    resp = await async_client.get("/api/v1/reimbursements")
    elapsed = time.perf_counter() - started
    await directory.aclose()

    assert resp.status_code == 200
    assert len(resp.json()["items"]) == 5
    assert all(item["collaborator_name"] is None for item in resp.json()["items"])
    # Sequential lookups would take 5 x 0.3 s
    assert elapsed < 1.0
    assert len(calls) <= 5
