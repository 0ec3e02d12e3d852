"""
Reimbursement request endpoints — CRUD, workflow transitions, attachments
and audit trail.

- Any authenticated user may create, edit, submit and cancel requests.
- Approve / reject / pay and the finance queues require the finance role.
- Collaborator display fields are fetched from the Employee Directory after
  the operation succeeded; a failed lookup leaves them empty.
"""

from __future__ import annotations

import logging
import uuid
from datetime import date

from fastapi import APIRouter, Depends, File, Form, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from app.api.v1.deps import (Actor, get_current_actor, get_db,
                             get_employee_directory, require_finance)
from app.clients.employee_directory import CollaboratorInfo, EmployeeDirectory
from app.models.reimbursement import (ExpenseCategory, ReimbursementRequest,
                                      ReimbursementStatus)
from app.schemas.reimbursement import (ApproveRequest, AttachmentRead,
                                       CancelRequest, DeleteResponse,
                                       PagedReimbursements, PayRequest,
                                       ReimbursementCreate, ReimbursementRead,
                                       ReimbursementSummary,
                                       ReimbursementUpdate, RejectRequest,
                                       StatisticsResponse, StatusHistoryRead,
                                       ensure_utc)
from app.services import attachment_storage
from app.services import reimbursements as service

router = APIRouter(prefix="/reimbursements", tags=["reimbursements"])
logger = logging.getLogger(__name__)


# ── Response builders ───────────────────────────────────────────────
async def _lookup(
    directory: EmployeeDirectory, collaborator_id: uuid.UUID
) -> CollaboratorInfo | None:
    try:
        return await directory.lookup(collaborator_id)
    except Exception as e:
        logger.warning("Collaborator enrichment failed for %s: %s", collaborator_id, e)
        return None


def _summary(req: ReimbursementRequest, info: CollaboratorInfo | None) -> ReimbursementSummary:
    return ReimbursementSummary(
        id=req.id,
        title=req.title,
        category=req.category,
        category_label=req.category.label,
        requested_amount=req.requested_amount,
        approved_amount=req.approved_amount,
        expense_date=req.expense_date,
        status=req.status,
        status_label=req.status.label,
        collaborator_id=req.collaborator_id,
        collaborator_name=info.name if info else None,
        collaborator_registration=info.registration_number if info else None,
        created_at=req.created_at,
        attachment_count=len(req.active_attachments),
    )


def _actor_name_for(req: ReimbursementRequest, *statuses: ReimbursementStatus) -> str | None:
    for entry in req.history:
        if entry.new_status in statuses:
            return entry.actor_name
    return None


def _detail(req: ReimbursementRequest, info: CollaboratorInfo | None) -> ReimbursementRead:
    history = sorted(req.history, key=lambda h: ensure_utc(h.changed_at), reverse=True)
    return ReimbursementRead(
        **_summary(req, info).model_dump(),
        description=req.description,
        approved_at=req.approved_at,
        approved_by_id=req.approved_by_id,
        approver_name=_actor_name_for(
            req, ReimbursementStatus.APPROVED, ReimbursementStatus.REJECTED
        ),
        approval_note=req.approval_note,
        paid_at=req.paid_at,
        paid_by_id=req.paid_by_id,
        payer_name=_actor_name_for(req, ReimbursementStatus.PAID),
        payment_note=req.payment_note,
        cancelled_at=req.cancelled_at,
        cancellation_reason=req.cancellation_reason,
        updated_at=req.updated_at,
        can_edit=req.can_edit,
        can_cancel=req.can_cancel,
        can_approve=req.can_approve,
        can_pay=req.can_pay,
        attachments=[AttachmentRead.model_validate(a) for a in req.active_attachments],
        history=[StatusHistoryRead.model_validate(h) for h in history],
    )


async def _detail_response(
    req: ReimbursementRequest, directory: EmployeeDirectory
) -> ReimbursementRead:
    return _detail(req, await _lookup(directory, req.collaborator_id))


async def _summaries(
    requests: list[ReimbursementRequest], directory: EmployeeDirectory
) -> list[ReimbursementSummary]:
    try:
        infos = await directory.lookup_many(r.collaborator_id for r in requests)
    except Exception as e:
        logger.warning("Collaborator enrichment failed for listing: %s", e)
        infos = {}
    return [_summary(r, infos.get(r.collaborator_id)) for r in requests]


# ── Listing / queues ────────────────────────────────────────────────
@router.get("", response_model=PagedReimbursements)
async def list_reimbursements(
    page: int = 1,
    items_per_page: int | None = None,
    status: ReimbursementStatus | None = None,
    category: ExpenseCategory | None = None,
    collaborator_id: uuid.UUID | None = None,
    date_from: date | None = None,
    date_to: date | None = None,
    search: str | None = None,
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    _actor: Actor = Depends(get_current_actor),
) -> PagedReimbursements:
    """Paginated listing; out-of-range paging values are normalised, not rejected."""
    result = await service.list_requests(
        db,
        page,
        items_per_page,
        status=status,
        category=category,
        collaborator_id=collaborator_id,
        date_from=date_from,
        date_to=date_to,
        search=search,
    )
    return PagedReimbursements(
        items=await _summaries(result.items, directory),
        total_items=result.total_items,
        page=result.page,
        items_per_page=result.items_per_page,
        total_pages=result.total_pages,
        has_previous=result.has_previous,
        has_next=result.has_next,
    )


@router.get("/pending-approval", response_model=list[ReimbursementSummary])
async def pending_approval(
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    _finance: Actor = Depends(require_finance),
) -> list[ReimbursementSummary]:
    return await _summaries(await service.list_pending_approval(db), directory)


@router.get("/approved", response_model=list[ReimbursementSummary])
async def approved(
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    _finance: Actor = Depends(require_finance),
) -> list[ReimbursementSummary]:
    return await _summaries(await service.list_approved(db), directory)


@router.get("/statistics", response_model=StatisticsResponse)
async def statistics(
    collaborator_id: uuid.UUID | None = None,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(get_current_actor),
) -> StatisticsResponse:
    stats = await service.get_statistics(db, collaborator_id)
    return StatisticsResponse(
        total=stats.total,
        by_status=stats.by_status,
        total_requested=stats.total_requested,
        total_approved=stats.total_approved,
        total_paid=stats.total_paid,
    )


@router.get("/collaborator/{collaborator_id}", response_model=list[ReimbursementSummary])
async def by_collaborator(
    collaborator_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    _actor: Actor = Depends(get_current_actor),
) -> list[ReimbursementSummary]:
    return await _summaries(await service.list_by_collaborator(db, collaborator_id), directory)


# ── CRUD ────────────────────────────────────────────────────────────
@router.post("", response_model=ReimbursementRead, status_code=201)
async def create_reimbursement(
    body: ReimbursementCreate,
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    actor: Actor = Depends(get_current_actor),
) -> ReimbursementRead:
    req = await service.create_request(
        db,
        collaborator_id=body.collaborator_id or actor.id,
        title=body.title,
        description=body.description,
        category=body.category,
        requested_amount=body.requested_amount,
        expense_date=body.expense_date,
        actor_id=actor.id,
    )
    return await _detail_response(req, directory)


@router.get("/{request_id}", response_model=ReimbursementRead)
async def get_reimbursement(
    request_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    _actor: Actor = Depends(get_current_actor),
) -> ReimbursementRead:
    return await _detail_response(await service.get_request(db, request_id), directory)


@router.put("/{request_id}", response_model=ReimbursementRead)
async def update_reimbursement(
    request_id: uuid.UUID,
    body: ReimbursementUpdate,
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    actor: Actor = Depends(get_current_actor),
) -> ReimbursementRead:
    req = await service.update_request(
        db,
        request_id,
        title=body.title,
        description=body.description,
        category=body.category,
        requested_amount=body.requested_amount,
        expense_date=body.expense_date,
        actor_id=actor.id,
    )
    return await _detail_response(req, directory)


@router.delete("/{request_id}", response_model=DeleteResponse)
async def delete_reimbursement(
    request_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    actor: Actor = Depends(get_current_actor),
) -> DeleteResponse:
    """Soft-delete a draft. The row and its history are preserved."""
    req = await service.delete_request(db, request_id, actor.id)
    return DeleteResponse(success=True, message=f"Reimbursement request '{req.title}' deleted")


# ── Transitions ─────────────────────────────────────────────────────
@router.post("/{request_id}/submit", response_model=ReimbursementRead)
async def submit_reimbursement(
    request_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    actor: Actor = Depends(get_current_actor),
) -> ReimbursementRead:
    req = await service.submit_request(db, request_id, actor.id, actor.name)
    return await _detail_response(req, directory)


@router.post("/{request_id}/approve", response_model=ReimbursementRead)
async def approve_reimbursement(
    request_id: uuid.UUID,
    body: ApproveRequest,
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    actor: Actor = Depends(require_finance),
) -> ReimbursementRead:
    req = await service.approve_request(
        db, request_id, body.approved_amount, body.note, actor.id, actor.name
    )
    return await _detail_response(req, directory)


@router.post("/{request_id}/reject", response_model=ReimbursementRead)
async def reject_reimbursement(
    request_id: uuid.UUID,
    body: RejectRequest,
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    actor: Actor = Depends(require_finance),
) -> ReimbursementRead:
    req = await service.reject_request(db, request_id, body.note, actor.id, actor.name)
    return await _detail_response(req, directory)


@router.post("/{request_id}/pay", response_model=ReimbursementRead)
async def pay_reimbursement(
    request_id: uuid.UUID,
    body: PayRequest | None = None,
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    actor: Actor = Depends(require_finance),
) -> ReimbursementRead:
    note = body.note if body else None
    req = await service.pay_request(db, request_id, note, actor.id, actor.name)
    return await _detail_response(req, directory)


@router.post("/{request_id}/cancel", response_model=ReimbursementRead)
async def cancel_reimbursement(
    request_id: uuid.UUID,
    body: CancelRequest,
    db: AsyncSession = Depends(get_db),
    directory: EmployeeDirectory = Depends(get_employee_directory),
    actor: Actor = Depends(get_current_actor),
) -> ReimbursementRead:
    req = await service.cancel_request(db, request_id, body.reason, actor.id, actor.name)
    return await _detail_response(req, directory)


# ── Attachments / history ───────────────────────────────────────────
@router.get("/{request_id}/attachments", response_model=list[AttachmentRead])
async def list_attachments(
    request_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(get_current_actor),
) -> list[AttachmentRead]:
    return [
        AttachmentRead.model_validate(a)
        for a in await service.list_attachments(db, request_id)
    ]


@router.post("/{request_id}/attachments", response_model=AttachmentRead, status_code=201)
async def upload_attachment(
    request_id: uuid.UUID,
    file: UploadFile = File(...),
    description: str | None = Form(default=None),
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(get_current_actor),
) -> AttachmentRead:
    """Store an uploaded receipt and record it against a draft request."""
    stored = await attachment_storage.save_upload(file)
    try:
        attachment = await service.attach_file(
            db,
            request_id,
            filename=stored.filename,
            original_filename=stored.original_filename,
            content_type=stored.content_type,
            size_bytes=stored.size_bytes,
            storage_path=stored.storage_path,
            description=description,
        )
    except Exception:
        await attachment_storage.discard(stored)
        raise
    return AttachmentRead.model_validate(attachment)


@router.delete("/{request_id}/attachments/{attachment_id}", response_model=DeleteResponse)
async def delete_attachment(
    request_id: uuid.UUID,
    attachment_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(get_current_actor),
) -> DeleteResponse:
    attachment = await service.remove_attachment(db, request_id, attachment_id)
    return DeleteResponse(
        success=True, message=f"Attachment '{attachment.original_filename}' removed"
    )


@router.get("/{request_id}/history", response_model=list[StatusHistoryRead])
async def list_history(
    request_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    _actor: Actor = Depends(get_current_actor),
) -> list[StatusHistoryRead]:
    return [
        StatusHistoryRead.model_validate(h)
        for h in await service.list_history(db, request_id)
    ]
