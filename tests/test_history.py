"""Tests for the status history audit trail."""

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from httpx import AsyncClient

from app.models.reimbursement import ReimbursementStatus, StatusHistoryEntry
from app.schemas.reimbursement import describe_elapsed
from app.services import reimbursements as service

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "delta, expected",
    [
        (timedelta(seconds=30), "Just now"),
        (timedelta(minutes=5), "5 minute(s) ago"),
        (timedelta(hours=3, minutes=59), "3 hour(s) ago"),
        (timedelta(days=2), "2 day(s) ago"),
        (timedelta(days=45), "01/05/2024 12:00"),
    ],
)
def test_describe_elapsed(delta, expected):
    assert describe_elapsed(NOW - delta, now=NOW) == expected


def test_describe_elapsed_treats_naive_as_utc():
    naive = (NOW - timedelta(minutes=2)).replace(tzinfo=None)
    assert describe_elapsed(naive, now=NOW) == "2 minute(s) ago"


def test_change_description():
    entry = StatusHistoryEntry(
        previous_status=ReimbursementStatus.DRAFT,
        new_status=ReimbursementStatus.PENDING_FINANCIAL_APPROVAL,
    )
    assert entry.change_description == "Draft → Pending Approval"


@pytest.mark.asyncio
async def test_history_newest_first(db_session, make_request, actor_id):
    req = await make_request()
    await service.submit_request(db_session, req.id, actor_id, "Ana")
    await service.approve_request(db_session, req.id, Decimal("90.00"), "ok", actor_id, "Ana")
    await service.pay_request(db_session, req.id, None, actor_id, "Bruno")

    history = await service.list_history(db_session, req.id)
    assert [h.new_status for h in history] == [
        ReimbursementStatus.PAID,
        ReimbursementStatus.APPROVED,
        ReimbursementStatus.PENDING_FINANCIAL_APPROVAL,
    ]
    assert history[0].actor_name == "Bruno"
    assert history[1].note == "ok"
    assert all(h.actor_id == actor_id for h in history)


@pytest.mark.asyncio
async def test_history_endpoint(async_client: AsyncClient, expense_payload):
    create = await async_client.post("/api/v1/reimbursements", json=expense_payload)
    rid = create.json()["id"]
    await async_client.post(f"/api/v1/reimbursements/{rid}/submit")
    await async_client.post(f"/api/v1/reimbursements/{rid}/reject", json={"note": "Missing receipt"})

    resp = await async_client.get(f"/api/v1/reimbursements/{rid}/history")
    assert resp.status_code == 200
    data = resp.json()
    assert len(data) == 2
    assert data[0]["change_description"] == "Pending Approval → Rejected"
    assert data[0]["note"] == "Missing receipt"
    assert data[0]["actor_name"] == "Finance Tester"
    assert data[0]["elapsed"] == "Just now"
    assert data[1]["change_description"] == "Draft → Pending Approval"


@pytest.mark.asyncio
async def test_detail_embeds_history(async_client: AsyncClient, expense_payload):
    create = await async_client.post("/api/v1/reimbursements", json=expense_payload)
    assert create.json()["history"] == []
    rid = create.json()["id"]

    resp = await async_client.post(f"/api/v1/reimbursements/{rid}/submit")
    history = resp.json()["history"]
    assert len(history) == 1
    assert history[0]["new_status"] == "PENDING_FINANCIAL_APPROVAL"
