"""
Reimbursement request lifecycle.

Every mutating operation is one unit of work: the row is read with
``SELECT ... FOR UPDATE``, the guard for the current status is checked before
anything is touched, the mutation and its history row are added, and the
session is committed once. Any failure rolls the session back, so either the
whole change lands or nothing does.

Legal transitions::

    DRAFT ──submit──▶ PENDING_FINANCIAL_APPROVAL ──approve──▶ APPROVED ──pay──▶ PAID
      │                    │        └──────reject──────▶ REJECTED
      └──────cancel────────┴──▶ CANCELLED
"""

from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Callable

from sqlalchemy import func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.exceptions import (InvalidTransitionError, NotFoundError,
                                 UnauthorizedError, ValidationError)
from app.models.reimbursement import (Attachment, ExpenseCategory,
                                      ReimbursementRequest,
                                      ReimbursementStatus, StatusHistoryEntry)

logger = logging.getLogger(__name__)

_S = ReimbursementStatus

# operation -> (allowed source states, target state)
TRANSITIONS: dict[str, tuple[frozenset[ReimbursementStatus], ReimbursementStatus]] = {
    "submit": (frozenset({_S.DRAFT}), _S.PENDING_FINANCIAL_APPROVAL),
    "approve": (frozenset({_S.PENDING_FINANCIAL_APPROVAL}), _S.APPROVED),
    "reject": (frozenset({_S.PENDING_FINANCIAL_APPROVAL}), _S.REJECTED),
    "pay": (frozenset({_S.APPROVED}), _S.PAID),
    "cancel": (frozenset({_S.DRAFT, _S.PENDING_FINANCIAL_APPROVAL}), _S.CANCELLED),
}

_MAX_AMOUNT = Decimal("9999999999.99")  # Numeric(12, 2)
_TITLE_MAX = 200
_DESCRIPTION_MAX = 1000
_NOTE_MAX = 500
_ATTACHMENT_DESCRIPTION_MAX = 200


@dataclass
class Page:
    items: list[ReimbursementRequest]
    total_items: int
    page: int
    items_per_page: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total_items / self.items_per_page) if self.total_items else 0

    @property
    def has_previous(self) -> bool:
        return self.page > 1

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages


@dataclass
class Statistics:
    total: int
    by_status: dict[str, int]
    total_requested: Decimal
    total_approved: Decimal
    total_paid: Decimal


# ── Helpers ─────────────────────────────────────────────────────────
def _now() -> datetime:
    return datetime.now(timezone.utc)


def _escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", r"\%").replace("_", r"\_")


def normalize_paging(page: int | None, items_per_page: int | None) -> tuple[int, int]:
    """Clamp page to >= 1 and page size to 1..PAGE_SIZE_MAX (default when unset)."""
    page = page if page and page > 0 else 1
    if not items_per_page or items_per_page < 1:
        items_per_page = settings.PAGE_SIZE_DEFAULT
    return page, min(items_per_page, settings.PAGE_SIZE_MAX)


def _parse_amount(value: Any, field: str, errors: list[str]) -> Decimal | None:
    if value is None:
        errors.append(f"{field} is required")
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        errors.append(f"{field} must be a number")
        return None
    if not amount.is_finite():
        errors.append(f"{field} must be a number")
        return None
    if amount <= 0:
        errors.append(f"{field} must be greater than zero")
    elif amount > _MAX_AMOUNT:
        errors.append(f"{field} must not exceed {_MAX_AMOUNT}")
    elif amount.as_tuple().exponent < -2:  # type: ignore[operator]
        errors.append(f"{field} must have at most 2 decimal places")
    return amount


def _parse_category(value: Any, errors: list[str]) -> ExpenseCategory | None:
    if isinstance(value, ExpenseCategory):
        return value
    try:
        return ExpenseCategory(str(value).upper())
    except ValueError:
        valid = ", ".join(c.value for c in ExpenseCategory)
        errors.append(f"category must be one of: {valid}")
        return None


def _clean_text(value: str | None) -> str | None:
    if value is None:
        return None
    value = value.strip()
    return value or None


def _check_length(value: str | None, field: str, limit: int, errors: list[str]) -> None:
    if value is not None and len(value) > limit:
        errors.append(f"{field} must not exceed {limit} characters")


def _validate_fields(
    title: str | None,
    description: str | None,
    category: Any,
    requested_amount: Any,
    expense_date: date | None,
) -> tuple[str, str | None, ExpenseCategory, Decimal, date]:
    errors: list[str] = []

    clean_title = _clean_text(title)
    if clean_title is None:
        errors.append("title is required")
    _check_length(clean_title, "title", _TITLE_MAX, errors)

    clean_description = _clean_text(description)
    _check_length(clean_description, "description", _DESCRIPTION_MAX, errors)

    parsed_category = _parse_category(category, errors)
    amount = _parse_amount(requested_amount, "requested_amount", errors)

    if expense_date is None:
        errors.append("expense_date is required")
    else:
        today = date.today()
        if expense_date > today:
            errors.append("expense_date cannot be in the future")
        elif expense_date < today - timedelta(days=settings.EXPENSE_DATE_MAX_AGE_DAYS):
            errors.append(
                f"expense_date cannot be older than {settings.EXPENSE_DATE_MAX_AGE_DAYS} days"
            )

    if errors:
        raise ValidationError(errors)
    return clean_title, clean_description, parsed_category, amount, expense_date  # type: ignore[return-value]


def _required_note(value: str | None, field: str) -> str:
    note = _clean_text(value)
    errors: list[str] = []
    if note is None:
        errors.append(f"{field} is required")
    _check_length(note, field, _NOTE_MAX, errors)
    if errors:
        raise ValidationError(errors)
    return note  # type: ignore[return-value]


def _optional_note(value: str | None, field: str) -> str | None:
    note = _clean_text(value)
    errors: list[str] = []
    _check_length(note, field, _NOTE_MAX, errors)
    if errors:
        raise ValidationError(errors)
    return note


def _require_actor(actor_id: uuid.UUID | None) -> uuid.UUID:
    if actor_id is None:
        raise UnauthorizedError("An acting user is required for this operation")
    return actor_id


def _guard(req: ReimbursementRequest, operation: str, allowed: bool) -> None:
    if not allowed:
        raise InvalidTransitionError(req.status.value, operation)


async def _load(
    db: AsyncSession, request_id: uuid.UUID, *, for_update: bool = False
) -> ReimbursementRequest:
    query = (
        select(ReimbursementRequest)
        .where(ReimbursementRequest.id == request_id)
        .execution_options(populate_existing=True)
    )
    if for_update:
        query = query.with_for_update()
    result = await db.execute(query)
    req = result.scalar_one_or_none()
    if req is None or not req.is_active:
        raise NotFoundError(f"Reimbursement request {request_id} not found")
    return req


async def _commit_or_rollback(db: AsyncSession, work: Callable[[], Any]) -> Any:
    try:
        outcome = await work()
        await db.commit()
        return outcome
    except Exception:
        await db.rollback()
        raise


async def _transition(
    db: AsyncSession,
    request_id: uuid.UUID,
    operation: str,
    actor_id: uuid.UUID | None,
    actor_name: str | None,
    note: str | None,
    apply: Callable[[ReimbursementRequest, datetime], None] | None = None,
) -> ReimbursementRequest:
    """Run one guarded status transition and append its history row."""
    actor = _require_actor(actor_id)
    sources, target = TRANSITIONS[operation]

    async def work() -> ReimbursementRequest:
        req = await _load(db, request_id, for_update=True)
        _guard(req, operation, req.status in sources)
        now = _now()
        if apply is not None:
            apply(req, now)
        previous = req.status
        req.status = target
        req.updated_at = now
        req.updated_by = str(actor)
        req.history.append(
            StatusHistoryEntry(
                id=uuid.uuid4(),
                request_id=req.id,
                previous_status=previous,
                new_status=target,
                changed_at=now,
                actor_id=actor,
                actor_name=actor_name,
                note=note,
            )
        )
        return req

    return await _commit_or_rollback(db, work)


# ── Create / update / delete ────────────────────────────────────────
async def create_request(
    db: AsyncSession,
    collaborator_id: uuid.UUID,
    title: str,
    description: str | None,
    category: ExpenseCategory | str,
    requested_amount: Decimal | float | str,
    expense_date: date,
    actor_id: uuid.UUID | None = None,
) -> ReimbursementRequest:
    """Create a request in DRAFT. No history row: creation is not a transition."""
    if collaborator_id is None:
        raise ValidationError("collaborator_id is required")
    title, description, category, amount, expense_date = _validate_fields(
        title, description, category, requested_amount, expense_date
    )

    req = ReimbursementRequest(
        id=uuid.uuid4(),
        collaborator_id=collaborator_id,
        title=title,
        description=description,
        category=category,
        requested_amount=amount,
        expense_date=expense_date,
        status=ReimbursementStatus.DRAFT,
        created_at=_now(),
        created_by=str(actor_id) if actor_id else None,
        is_active=True,
        attachments=[],
        history=[],
    )

    async def work() -> ReimbursementRequest:
        db.add(req)
        return req

    await _commit_or_rollback(db, work)
    logger.info("Created reimbursement request %s (%s)", req.id, req.title)
    return req


async def update_request(
    db: AsyncSession,
    request_id: uuid.UUID,
    title: str,
    description: str | None,
    category: ExpenseCategory | str,
    requested_amount: Decimal | float | str,
    expense_date: date,
    actor_id: uuid.UUID | None = None,
) -> ReimbursementRequest:
    """Edit the descriptive fields of a DRAFT request in place."""
    title, description, category, amount, expense_date = _validate_fields(
        title, description, category, requested_amount, expense_date
    )

    async def work() -> ReimbursementRequest:
        req = await _load(db, request_id, for_update=True)
        _guard(req, "edit", req.can_edit)
        req.title = title
        req.description = description
        req.category = category
        req.requested_amount = amount
        req.expense_date = expense_date
        req.updated_at = _now()
        req.updated_by = str(actor_id) if actor_id else req.updated_by
        return req

    req = await _commit_or_rollback(db, work)
    logger.info("Updated reimbursement request %s (%s)", req.id, req.title)
    return req


async def delete_request(
    db: AsyncSession, request_id: uuid.UUID, actor_id: uuid.UUID | None = None
) -> ReimbursementRequest:
    """Soft-delete a DRAFT request. Rows and history are preserved."""

    async def work() -> ReimbursementRequest:
        req = await _load(db, request_id, for_update=True)
        _guard(req, "delete", req.can_edit)
        req.is_active = False
        req.updated_at = _now()
        req.updated_by = str(actor_id) if actor_id else req.updated_by
        return req

    req = await _commit_or_rollback(db, work)
    logger.info("Soft-deleted reimbursement request %s", request_id)
    return req


# ── Transitions ─────────────────────────────────────────────────────
async def submit_request(
    db: AsyncSession,
    request_id: uuid.UUID,
    actor_id: uuid.UUID | None,
    actor_name: str | None = None,
) -> ReimbursementRequest:
    req = await _transition(
        db, request_id, "submit", actor_id, actor_name, "Submitted for approval"
    )
    logger.info("Reimbursement request %s submitted for approval", request_id)
    return req


async def approve_request(
    db: AsyncSession,
    request_id: uuid.UUID,
    approved_amount: Decimal | float | str,
    note: str | None,
    actor_id: uuid.UUID | None,
    actor_name: str | None = None,
) -> ReimbursementRequest:
    _require_actor(actor_id)
    errors: list[str] = []
    amount = _parse_amount(approved_amount, "approved_amount", errors)
    if errors:
        raise ValidationError(errors)
    note = _optional_note(note, "note")

    def apply(req: ReimbursementRequest, now: datetime) -> None:
        if amount > req.requested_amount:  # type: ignore[operator]
            raise ValidationError("approved_amount cannot exceed the requested amount")
        req.approved_amount = amount
        req.approved_at = now
        req.approved_by_id = actor_id
        req.approval_note = note

    req = await _transition(db, request_id, "approve", actor_id, actor_name, note, apply)
    logger.info("Reimbursement request %s approved - amount %s", request_id, amount)
    return req


async def reject_request(
    db: AsyncSession,
    request_id: uuid.UUID,
    note: str,
    actor_id: uuid.UUID | None,
    actor_name: str | None = None,
) -> ReimbursementRequest:
    _require_actor(actor_id)
    note = _required_note(note, "note")

    def apply(req: ReimbursementRequest, now: datetime) -> None:
        req.approved_at = now
        req.approved_by_id = actor_id
        req.approval_note = note

    req = await _transition(db, request_id, "reject", actor_id, actor_name, note, apply)
    logger.info("Reimbursement request %s rejected", request_id)
    return req


async def pay_request(
    db: AsyncSession,
    request_id: uuid.UUID,
    note: str | None,
    actor_id: uuid.UUID | None,
    actor_name: str | None = None,
) -> ReimbursementRequest:
    _require_actor(actor_id)
    note = _optional_note(note, "note")

    def apply(req: ReimbursementRequest, now: datetime) -> None:
        req.paid_at = now
        req.paid_by_id = actor_id
        req.payment_note = note

    req = await _transition(db, request_id, "pay", actor_id, actor_name, note, apply)
    logger.info("Reimbursement request %s paid - amount %s", request_id, req.approved_amount)
    return req


async def cancel_request(
    db: AsyncSession,
    request_id: uuid.UUID,
    reason: str,
    actor_id: uuid.UUID | None,
    actor_name: str | None = None,
) -> ReimbursementRequest:
    _require_actor(actor_id)
    reason = _required_note(reason, "reason")

    def apply(req: ReimbursementRequest, now: datetime) -> None:
        req.cancelled_at = now
        req.cancellation_reason = reason

    req = await _transition(db, request_id, "cancel", actor_id, actor_name, reason, apply)
    logger.info("Reimbursement request %s cancelled", request_id)
    return req


# ── Attachments ─────────────────────────────────────────────────────
async def attach_file(
    db: AsyncSession,
    request_id: uuid.UUID,
    filename: str,
    original_filename: str,
    content_type: str,
    size_bytes: int,
    storage_path: str,
    description: str | None = None,
) -> Attachment:
    """Record an attachment. Only DRAFT requests accept new files."""
    errors: list[str] = []
    for field, value in (
        ("filename", filename),
        ("original_filename", original_filename),
        ("content_type", content_type),
        ("storage_path", storage_path),
    ):
        if not _clean_text(value):
            errors.append(f"{field} is required")
    if size_bytes is None or size_bytes < 0:
        errors.append("size_bytes must be zero or greater")
    description = _clean_text(description)
    _check_length(description, "description", _ATTACHMENT_DESCRIPTION_MAX, errors)
    if errors:
        raise ValidationError(errors)

    async def work() -> Attachment:
        req = await _load(db, request_id, for_update=True)
        _guard(req, "attach a file to", req.can_edit)
        now = _now()
        attachment = Attachment(
            id=uuid.uuid4(),
            request_id=req.id,
            filename=filename,
            original_filename=original_filename,
            content_type=content_type,
            size_bytes=size_bytes,
            storage_path=storage_path,
            description=description,
            is_active=True,
            created_at=now,
        )
        req.attachments.append(attachment)
        req.updated_at = now
        return attachment

    attachment = await _commit_or_rollback(db, work)
    logger.info(
        "Attached %s (%d bytes) to reimbursement request %s",
        original_filename,
        size_bytes,
        request_id,
    )
    return attachment


async def remove_attachment(
    db: AsyncSession, request_id: uuid.UUID, attachment_id: uuid.UUID
) -> Attachment:
    """Soft-delete an attachment of a DRAFT request."""

    async def work() -> Attachment:
        req = await _load(db, request_id, for_update=True)
        _guard(req, "remove an attachment from", req.can_edit)
        attachment = next(
            (a for a in req.attachments if a.id == attachment_id and a.is_active), None
        )
        if attachment is None:
            raise NotFoundError(f"Attachment {attachment_id} not found")
        attachment.is_active = False
        req.updated_at = _now()
        return attachment

    attachment = await _commit_or_rollback(db, work)
    logger.info("Removed attachment %s from request %s", attachment_id, request_id)
    return attachment


async def list_attachments(db: AsyncSession, request_id: uuid.UUID) -> list[Attachment]:
    await _load(db, request_id)
    result = await db.execute(
        select(Attachment)
        .where(Attachment.request_id == request_id, Attachment.is_active.is_(True))
        .order_by(Attachment.created_at)
    )
    return list(result.scalars().all())


async def list_history(db: AsyncSession, request_id: uuid.UUID) -> list[StatusHistoryEntry]:
    """Audit trail of a request, newest first."""
    await _load(db, request_id)
    result = await db.execute(
        select(StatusHistoryEntry)
        .where(StatusHistoryEntry.request_id == request_id)
        .order_by(StatusHistoryEntry.changed_at.desc())
    )
    return list(result.scalars().all())


# ── Queries ─────────────────────────────────────────────────────────
async def get_request(db: AsyncSession, request_id: uuid.UUID) -> ReimbursementRequest:
    return await _load(db, request_id)


async def list_requests(
    db: AsyncSession,
    page: int | None = 1,
    items_per_page: int | None = None,
    *,
    status: ReimbursementStatus | None = None,
    category: ExpenseCategory | None = None,
    collaborator_id: uuid.UUID | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    search: str | None = None,
) -> Page:
    """Paginated listing; filters combine with AND, newest first."""
    page, items_per_page = normalize_paging(page, items_per_page)
    if date_from and date_to and date_from > date_to:
        raise ValidationError("date_from must not be after date_to")

    filters = [ReimbursementRequest.is_active.is_(True)]
    if status is not None:
        filters.append(ReimbursementRequest.status == status)
    if category is not None:
        filters.append(ReimbursementRequest.category == category)
    if collaborator_id is not None:
        filters.append(ReimbursementRequest.collaborator_id == collaborator_id)
    if date_from is not None:
        filters.append(ReimbursementRequest.expense_date >= date_from)
    if date_to is not None:
        filters.append(ReimbursementRequest.expense_date <= date_to)
    if search and search.strip():
        pattern = f"%{_escape_like(search.strip())}%"
        filters.append(
            or_(
                ReimbursementRequest.title.ilike(pattern, escape="\\"),
                ReimbursementRequest.description.ilike(pattern, escape="\\"),
            )
        )

    total = await db.execute(
        select(func.count(ReimbursementRequest.id)).where(*filters)
    )
    total_items = total.scalar() or 0
    offset = (page - 1) * items_per_page

    # Past the last page: nothing to fetch, and the offset may not fit a BIGINT
    items: list[ReimbursementRequest] = []
    if offset < total_items:
        result = await db.execute(
            select(ReimbursementRequest)
            .where(*filters)
            .order_by(ReimbursementRequest.created_at.desc())
            .offset(offset)
            .limit(items_per_page)
        )
        items = list(result.scalars().all())

    return Page(
        items=items,
        total_items=total_items,
        page=page,
        items_per_page=items_per_page,
    )


async def list_by_collaborator(
    db: AsyncSession, collaborator_id: uuid.UUID
) -> list[ReimbursementRequest]:
    result = await db.execute(
        select(ReimbursementRequest)
        .where(
            ReimbursementRequest.collaborator_id == collaborator_id,
            ReimbursementRequest.is_active.is_(True),
        )
        .order_by(ReimbursementRequest.created_at.desc())
    )
    return list(result.scalars().all())


async def list_pending_approval(db: AsyncSession) -> list[ReimbursementRequest]:
    """Finance queue, oldest first."""
    result = await db.execute(
        select(ReimbursementRequest)
        .where(
            ReimbursementRequest.status == ReimbursementStatus.PENDING_FINANCIAL_APPROVAL,
            ReimbursementRequest.is_active.is_(True),
        )
        .order_by(ReimbursementRequest.created_at)
    )
    return list(result.scalars().all())


async def list_approved(db: AsyncSession) -> list[ReimbursementRequest]:
    """Payment queue, in approval order."""
    result = await db.execute(
        select(ReimbursementRequest)
        .where(
            ReimbursementRequest.status == ReimbursementStatus.APPROVED,
            ReimbursementRequest.is_active.is_(True),
        )
        .order_by(ReimbursementRequest.approved_at)
    )
    return list(result.scalars().all())


async def get_statistics(
    db: AsyncSession, collaborator_id: uuid.UUID | None = None
) -> Statistics:
    filters = [ReimbursementRequest.is_active.is_(True)]
    if collaborator_id is not None:
        filters.append(ReimbursementRequest.collaborator_id == collaborator_id)

    result = await db.execute(
        select(
            ReimbursementRequest.status,
            func.count(ReimbursementRequest.id),
            func.sum(ReimbursementRequest.requested_amount),
            func.sum(ReimbursementRequest.approved_amount),
        )
        .where(*filters)
        .group_by(ReimbursementRequest.status)
    )

    by_status = {s.value: 0 for s in ReimbursementStatus}
    total = 0
    total_requested = Decimal("0")
    total_approved = Decimal("0")
    total_paid = Decimal("0")
    for status, count, requested, approved in result.all():
        by_status[status.value] = count
        total += count
        total_requested += Decimal(requested or 0)
        total_approved += Decimal(approved or 0)
        if status == ReimbursementStatus.PAID:
            total_paid += Decimal(approved or 0)

    return Statistics(
        total=total,
        by_status=by_status,
        total_requested=total_requested,
        total_approved=total_approved,
        total_paid=total_paid,
    )
