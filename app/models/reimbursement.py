"""
Reimbursement request aggregate — request, attachments, status history.

Status and category are stored by symbolic name (non-native ``Enum`` over a
string column) so rows stay legible and migration-safe; an unknown name on
read raises ``LookupError`` instead of silently defaulting.
"""

from __future__ import annotations

import enum
import os
import uuid
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import (BigInteger, Boolean, Column, Date, DateTime, Enum,
                        ForeignKey, Index, Numeric, String, Uuid)
from sqlalchemy.orm import relationship

from app.db.base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ReimbursementStatus(str, enum.Enum):
    DRAFT = "DRAFT"
    PENDING_FINANCIAL_APPROVAL = "PENDING_FINANCIAL_APPROVAL"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    PAID = "PAID"
    CANCELLED = "CANCELLED"

    @property
    def label(self) -> str:
        return _STATUS_LABELS[self]

    @property
    def is_terminal(self) -> bool:
        return self in (
            ReimbursementStatus.REJECTED,
            ReimbursementStatus.PAID,
            ReimbursementStatus.CANCELLED,
        )


_STATUS_LABELS = {
    ReimbursementStatus.DRAFT: "Draft",
    ReimbursementStatus.PENDING_FINANCIAL_APPROVAL: "Pending Approval",
    ReimbursementStatus.APPROVED: "Approved",
    ReimbursementStatus.REJECTED: "Rejected",
    ReimbursementStatus.PAID: "Paid",
    ReimbursementStatus.CANCELLED: "Cancelled",
}


class ExpenseCategory(str, enum.Enum):
    MEALS = "MEALS"
    TRANSPORT = "TRANSPORT"
    LODGING = "LODGING"
    FUEL = "FUEL"
    OFFICE_SUPPLIES = "OFFICE_SUPPLIES"
    OTHER = "OTHER"

    @property
    def label(self) -> str:
        return _CATEGORY_LABELS[self]


_CATEGORY_LABELS = {
    ExpenseCategory.MEALS: "Meals",
    ExpenseCategory.TRANSPORT: "Transport",
    ExpenseCategory.LODGING: "Lodging",
    ExpenseCategory.FUEL: "Fuel",
    ExpenseCategory.OFFICE_SUPPLIES: "Office supplies",
    ExpenseCategory.OTHER: "Other",
}

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".bmp", ".webp"})


def _status_column(**kwargs) -> Column:
    return Column(
        Enum(ReimbursementStatus, native_enum=False, length=40, validate_strings=True),
        **kwargs,
    )


def format_size(size_bytes: int) -> str:
    """Human readable size: bytes below 1 KiB, then KB / MB with one decimal."""
    if size_bytes < 1024:
        return f"{size_bytes} B"
    if size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    return f"{size_bytes / (1024 * 1024):.1f} MB"


class ReimbursementRequest(Base):
    __tablename__ = "reimbursement_requests"
    __table_args__ = (
        Index("ix_reimbursement_status_created", "status", "created_at"),
        Index("ix_reimbursement_collaborator", "collaborator_id"),
    )

    id: uuid.UUID = Column(Uuid, primary_key=True, default=uuid.uuid4)  # type: ignore[assignment]
    collaborator_id: uuid.UUID = Column(Uuid, nullable=False)  # type: ignore[assignment]
    title: str = Column(String(200), nullable=False)  # type: ignore[assignment]
    description: str | None = Column(String(1000), nullable=True)  # type: ignore[assignment]
    category: ExpenseCategory = Column(  # type: ignore[assignment]
        Enum(ExpenseCategory, native_enum=False, length=40, validate_strings=True),
        nullable=False,
    )
    requested_amount: Decimal = Column(Numeric(12, 2), nullable=False)  # type: ignore[assignment]
    approved_amount: Decimal | None = Column(Numeric(12, 2), nullable=True)  # type: ignore[assignment]
    expense_date: date = Column(Date, nullable=False)  # type: ignore[assignment]
    status: ReimbursementStatus = _status_column(  # type: ignore[assignment]
        nullable=False,
        default=ReimbursementStatus.DRAFT,
    )

    # Approval (also records the rejection decision)
    approved_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    approved_by_id: uuid.UUID | None = Column(Uuid, nullable=True)  # type: ignore[assignment]
    approval_note: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]

    # Payment
    paid_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    paid_by_id: uuid.UUID | None = Column(Uuid, nullable=True)  # type: ignore[assignment]
    payment_note: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]

    # Cancellation
    cancelled_at: datetime | None = Column(DateTime(timezone=True), nullable=True)  # type: ignore[assignment]
    cancellation_reason: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]

    created_at: datetime = Column(DateTime(timezone=True), default=_utcnow, index=True)  # type: ignore[assignment]
    updated_at: datetime | None = Column(DateTime(timezone=True), nullable=True, onupdate=_utcnow)  # type: ignore[assignment]
    created_by: str | None = Column(String(64), nullable=True)  # type: ignore[assignment]
    updated_by: str | None = Column(String(64), nullable=True)  # type: ignore[assignment]
    is_active: bool = Column(Boolean, default=True, server_default="true", nullable=False)  # type: ignore[assignment]

    attachments = relationship(
        "Attachment",
        back_populates="request",
        order_by="Attachment.created_at",
        lazy="selectin",
    )
    history = relationship(
        "StatusHistoryEntry",
        back_populates="request",
        order_by="StatusHistoryEntry.changed_at.desc()",
        lazy="selectin",
    )

    # ── Capabilities (computed, never stored) ──────────────────────
    @property
    def can_edit(self) -> bool:
        return self.status == ReimbursementStatus.DRAFT

    @property
    def can_cancel(self) -> bool:
        return self.status in (
            ReimbursementStatus.DRAFT,
            ReimbursementStatus.PENDING_FINANCIAL_APPROVAL,
        )

    @property
    def can_approve(self) -> bool:
        return self.status == ReimbursementStatus.PENDING_FINANCIAL_APPROVAL

    @property
    def can_pay(self) -> bool:
        return self.status == ReimbursementStatus.APPROVED

    @property
    def active_attachments(self) -> list[Attachment]:
        return [a for a in self.attachments if a.is_active]


class Attachment(Base):
    __tablename__ = "reimbursement_attachments"

    id: uuid.UUID = Column(Uuid, primary_key=True, default=uuid.uuid4)  # type: ignore[assignment]
    request_id: uuid.UUID = Column(  # type: ignore[assignment]
        Uuid, ForeignKey("reimbursement_requests.id"), nullable=False, index=True
    )
    filename: str = Column(String(255), nullable=False)  # type: ignore[assignment]
    original_filename: str = Column(String(255), nullable=False)  # type: ignore[assignment]
    content_type: str = Column(String(100), nullable=False)  # type: ignore[assignment]
    size_bytes: int = Column(BigInteger, nullable=False)  # type: ignore[assignment]
    storage_path: str = Column(String(500), nullable=False)  # type: ignore[assignment]
    description: str | None = Column(String(200), nullable=True)  # type: ignore[assignment]
    is_active: bool = Column(Boolean, default=True, server_default="true", nullable=False)  # type: ignore[assignment]
    created_at: datetime = Column(DateTime(timezone=True), default=_utcnow)  # type: ignore[assignment]

    request = relationship("ReimbursementRequest", back_populates="attachments")

    @property
    def extension(self) -> str:
        return os.path.splitext(self.original_filename or "")[1].lower()

    @property
    def is_image(self) -> bool:
        return self.extension in IMAGE_EXTENSIONS

    @property
    def is_pdf(self) -> bool:
        return self.extension == ".pdf"

    @property
    def formatted_size(self) -> str:
        return format_size(self.size_bytes)


class StatusHistoryEntry(Base):
    """Append-only audit row, one per successful status transition."""

    __tablename__ = "reimbursement_status_history"
    __table_args__ = (Index("ix_history_request_changed", "request_id", "changed_at"),)

    id: uuid.UUID = Column(Uuid, primary_key=True, default=uuid.uuid4)  # type: ignore[assignment]
    request_id: uuid.UUID = Column(  # type: ignore[assignment]
        Uuid, ForeignKey("reimbursement_requests.id"), nullable=False
    )
    previous_status: ReimbursementStatus = _status_column(nullable=False)  # type: ignore[assignment]
    new_status: ReimbursementStatus = _status_column(nullable=False)  # type: ignore[assignment]
    changed_at: datetime = Column(DateTime(timezone=True), nullable=False, default=_utcnow)  # type: ignore[assignment]
    actor_id: uuid.UUID = Column(Uuid, nullable=False)  # type: ignore[assignment]
    actor_name: str | None = Column(String(100), nullable=True)  # type: ignore[assignment]
    note: str | None = Column(String(500), nullable=True)  # type: ignore[assignment]

    request = relationship("ReimbursementRequest", back_populates="history")

    @property
    def change_description(self) -> str:
        return f"{self.previous_status.label} → {self.new_status.label}"
