"""Pydantic schemas for reimbursement requests, attachments and history."""

from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from pydantic import BaseModel, computed_field, field_validator

from app.models.reimbursement import ExpenseCategory, ReimbursementStatus


def ensure_utc(dt: datetime) -> datetime:
    """Normalise a potentially-naive timestamp (SQLite drops tzinfo) to UTC-aware."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def describe_elapsed(moment: datetime, now: datetime | None = None) -> str:
    """Relative time for audit trails ("5 minute(s) ago"); absolute after 30 days."""
    moment = ensure_utc(moment)
    now = now or datetime.now(timezone.utc)
    seconds = (now - moment).total_seconds()

    if seconds < 60:
        return "Just now"
    if seconds < 3600:
        return f"{int(seconds // 60)} minute(s) ago"
    if seconds < 86400:
        return f"{int(seconds // 3600)} hour(s) ago"
    if seconds < 30 * 86400:
        return f"{int(seconds // 86400)} day(s) ago"
    return moment.strftime("%d/%m/%Y %H:%M")


# ── Requests in ─────────────────────────────────────────────────────
class ReimbursementUpdate(BaseModel):
    title: str
    description: str | None = None
    category: ExpenseCategory
    requested_amount: Decimal
    expense_date: date

    @field_validator("category", mode="before")
    @classmethod
    def _category_upper(cls, v: object) -> object:
        return v.strip().upper() if isinstance(v, str) else v


class ReimbursementCreate(ReimbursementUpdate):
    # Defaults to the acting user when an employee files for themselves.
    collaborator_id: uuid.UUID | None = None


class ApproveRequest(BaseModel):
    approved_amount: Decimal
    note: str | None = None


class RejectRequest(BaseModel):
    note: str


class PayRequest(BaseModel):
    note: str | None = None


class CancelRequest(BaseModel):
    reason: str


# ── Attachments / history out ───────────────────────────────────────
class AttachmentRead(BaseModel):
    id: uuid.UUID
    request_id: uuid.UUID
    filename: str
    original_filename: str
    content_type: str
    size_bytes: int
    formatted_size: str
    description: str | None
    is_image: bool
    is_pdf: bool
    created_at: datetime | None

    model_config = {"from_attributes": True}


class StatusHistoryRead(BaseModel):
    id: uuid.UUID
    previous_status: ReimbursementStatus
    new_status: ReimbursementStatus
    change_description: str
    changed_at: datetime
    actor_id: uuid.UUID
    actor_name: str | None
    note: str | None

    model_config = {"from_attributes": True}

    @computed_field  # type: ignore[prop-decorator]
    @property
    def elapsed(self) -> str:
        return describe_elapsed(self.changed_at)


# ── Requests out ────────────────────────────────────────────────────
class ReimbursementSummary(BaseModel):
    id: uuid.UUID
    title: str
    category: ExpenseCategory
    category_label: str
    requested_amount: Decimal
    approved_amount: Decimal | None
    expense_date: date
    status: ReimbursementStatus
    status_label: str
    collaborator_id: uuid.UUID
    collaborator_name: str | None = None
    collaborator_registration: str | None = None
    created_at: datetime | None
    attachment_count: int


class ReimbursementRead(ReimbursementSummary):
    description: str | None
    approved_at: datetime | None
    approved_by_id: uuid.UUID | None
    approver_name: str | None = None
    approval_note: str | None
    paid_at: datetime | None
    paid_by_id: uuid.UUID | None
    payer_name: str | None = None
    payment_note: str | None
    cancelled_at: datetime | None
    cancellation_reason: str | None
    updated_at: datetime | None
    can_edit: bool
    can_cancel: bool
    can_approve: bool
    can_pay: bool
    attachments: list[AttachmentRead]
    history: list[StatusHistoryRead]


class PagedReimbursements(BaseModel):
    items: list[ReimbursementSummary]
    total_items: int
    page: int
    items_per_page: int
    total_pages: int
    has_previous: bool
    has_next: bool


class StatisticsResponse(BaseModel):
    total: int
    by_status: dict[str, int]
    total_requested: Decimal
    total_approved: Decimal
    total_paid: Decimal


# ── Health / Status ────────────────────────────────────────────────
class HealthResponse(BaseModel):
    db: bool
    redis: bool


class StatusResponse(BaseModel):
    active_requests: int
    pending_approval: int
    status: str


# ── Generic ────────────────────────────────────────────────────────
class DeleteResponse(BaseModel):
    success: bool
    message: str
