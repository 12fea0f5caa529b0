from __future__ import annotations

import json
import logging
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from models.lending_models import APPROVAL_STATES, APPROVAL_TYPES, ApprovalRequest
from services.errors import AlreadyExists, Conflict, Forbidden, NotFound, ValidationError
from services.history_service import log_item_event, notify_user
from services.ledger_service import get_item
from services.policy_service import LendingPolicy
from services.tenant import TenantContext, paginate, scoped
from services import lending_service, reservation_service


APPROVAL_LOGGER = logging.getLogger("lending_engine.approvals")

STATE_TRANSITIONS = {
    "PENDING": {"APPROVED", "REJECTED", "CANCELLED"},
    "APPROVED": set(),
    "REJECTED": set(),
    "CANCELLED": set(),
}

DECISIONS = {
    "approve": "APPROVED",
    "approved": "APPROVED",
    "reject": "REJECTED",
    "rejected": "REJECTED",
}


def _transition_state(request: ApprovalRequest, target: str, now: datetime) -> None:
    current = (request.Status or "").upper()
    if target not in STATE_TRANSITIONS.get(current, set()):
        raise ValidationError(f"Invalid state transition: {current} -> {target}")
    request.Status = target
    if target == "APPROVED":
        request.ApprovedAt = now
    elif target == "REJECTED":
        request.RejectedAt = now
    elif target == "CANCELLED":
        request.CancelledAt = now


def _parse_datetime(raw, field: str) -> datetime | None:
    if raw is None or raw == "":
        return None
    if isinstance(raw, datetime):
        return raw
    try:
        return datetime.fromisoformat(str(raw))
    except ValueError:
        raise ValidationError(f"Invalid {field}: {raw}")


def request_payload(request: ApprovalRequest) -> dict:
    if not request.RequestData:
        return {}
    try:
        data = json.loads(request.RequestData)
    except ValueError:
        APPROVAL_LOGGER.warning("Approval %s carries unreadable request data", request.ApprovalID)
        return {}
    return data if isinstance(data, dict) else {}


def is_approval_required(policy: LendingPolicy, request_type: str = "lending") -> bool:
    return bool(policy.requireApproval) and request_type in APPROVAL_TYPES


def get_request(db: Session, ctx: TenantContext, approval_id: int) -> ApprovalRequest:
    request = db.execute(
        scoped(select(ApprovalRequest), ApprovalRequest, ctx).where(ApprovalRequest.ApprovalID == approval_id)
    ).scalars().first()
    if not request:
        raise NotFound("Approval request not found")
    return request


def create_request(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    user_id: int,
    request_type: str,
    request_data: dict | None = None,
    now: datetime | None = None,
) -> ApprovalRequest:
    now = now or datetime.now()
    request_type = (request_type or "").strip().lower()
    if request_type not in APPROVAL_TYPES:
        raise ValidationError(f"Unknown request type: {request_type or '-'}")
    get_item(db, ctx, item_id)

    pending = db.execute(
        scoped(select(ApprovalRequest.ApprovalID), ApprovalRequest, ctx)
        .where(ApprovalRequest.ItemID == item_id)
        .where(ApprovalRequest.UserID == user_id)
        .where(ApprovalRequest.RequestType == request_type)
        .where(ApprovalRequest.Status == "PENDING")
    ).first()
    if pending:
        raise AlreadyExists("A pending approval request already exists for this item")

    try:
        request = ApprovalRequest(
            OrgID=ctx.orgID,
            InstanceID=ctx.instanceID,
            ItemID=item_id,
            UserID=user_id,
            RequestType=request_type,
            RequestData=json.dumps(request_data or {}, default=str),
            Status="PENDING",
            CreatedAt=now,
        )
        db.add(request)
        db.commit()
    except Exception:
        db.rollback()
        raise
    APPROVAL_LOGGER.info("Approval %s requested: %s on item %s by user %s", request.ApprovalID, request_type, item_id, user_id)
    return request


def decide(
    db: Session,
    ctx: TenantContext,
    approval_id: int,
    approver_id: int,
    decision: str,
    notes: str | None = None,
    now: datetime | None = None,
) -> ApprovalRequest:
    now = now or datetime.now()
    target = DECISIONS.get((decision or "").strip().lower())
    if not target:
        raise ValidationError("Decision must be 'approve' or 'reject'")

    request = get_request(db, ctx, approval_id)
    try:
        _transition_state(request, target, now)
        request.ApproverID = approver_id
        request.ApproverNotes = notes
        db.commit()
    except Exception:
        db.rollback()
        raise

    log_item_event(
        db,
        ctx,
        request.ItemID,
        "approved" if target == "APPROVED" else "rejected",
        {"approvalID": request.ApprovalID, "requestType": request.RequestType, "notes": notes},
        user_id=approver_id,
    )
    notify_user(
        db,
        ctx,
        request.UserID,
        "ApprovalDecision",
        f"Your {request.RequestType} request #{request.ApprovalID} was {target.lower()}."
        + (f" Notes: {notes}" if notes else ""),
        item_id=request.ItemID,
    )
    return request


def cancel_request(
    db: Session,
    ctx: TenantContext,
    approval_id: int,
    user_id: int,
    is_admin: bool = False,
    now: datetime | None = None,
) -> ApprovalRequest:
    request = get_request(db, ctx, approval_id)
    if request.UserID != user_id and not is_admin:
        raise Forbidden("Only the requester or an admin can cancel this request")
    try:
        _transition_state(request, "CANCELLED", now or datetime.now())
        db.commit()
    except Exception:
        db.rollback()
        raise
    return request


def list_requests(
    db: Session,
    ctx: TenantContext,
    status: str | None = None,
    user_id: int | None = None,
    item_id: int | None = None,
    request_type: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    stmt = scoped(select(ApprovalRequest), ApprovalRequest, ctx)
    if status:
        status = status.strip().upper()
        if status not in APPROVAL_STATES:
            raise ValidationError(f"Unknown approval status: {status}")
        stmt = stmt.where(ApprovalRequest.Status == status)
    if user_id is not None:
        stmt = stmt.where(ApprovalRequest.UserID == user_id)
    if item_id is not None:
        stmt = stmt.where(ApprovalRequest.ItemID == item_id)
    if request_type:
        stmt = stmt.where(ApprovalRequest.RequestType == request_type.strip().lower())
    return paginate(db, stmt.order_by(ApprovalRequest.CreatedAt.desc(), ApprovalRequest.ApprovalID.desc()), page, limit)


def get_stats(db: Session, ctx: TenantContext) -> dict:
    counts = dict(
        db.execute(
            scoped(select(ApprovalRequest.Status, func.count(ApprovalRequest.ApprovalID)), ApprovalRequest, ctx)
            .group_by(ApprovalRequest.Status)
        ).all()
    )
    stats = {state.lower(): int(counts.get(state, 0)) for state in sorted(APPROVAL_STATES)}
    stats["total"] = sum(stats.values())
    return stats


def execute_approved(
    db: Session,
    ctx: TenantContext,
    approval_id: int,
    policy: LendingPolicy | None = None,
    now: datetime | None = None,
) -> ApprovalRequest:
    """Carry out an approved request exactly once and remember what it produced."""
    now = now or datetime.now()
    request = get_request(db, ctx, approval_id)
    if request.Status != "APPROVED":
        raise ValidationError("Only approved requests can be executed")

    claim = db.execute(
        scoped(update(ApprovalRequest), ApprovalRequest, ctx)
        .where(ApprovalRequest.ApprovalID == approval_id)
        .where(ApprovalRequest.Status == "APPROVED")
        .where(ApprovalRequest.ExecutedAt.is_(None))
        .values(ExecutedAt=now)
        .execution_options(synchronize_session=False)
    )
    if claim.rowcount != 1:
        db.rollback()
        raise Conflict("Approval request has already been executed")
    db.commit()

    data = request_payload(request)
    try:
        if request.RequestType == "lending":
            due_date = _parse_datetime(data.get("dueDate"), "dueDate")
            result = lending_service.checkout(
                db,
                ctx,
                request.ItemID,
                request.UserID,
                due_date,
                quantity=int(data.get("quantity") or 1),
                notes=data.get("notes"),
                now=now,
            )
            entity_id = result.LendingID
        elif request.RequestType == "reservation":
            result = reservation_service.create_reservation(
                db,
                ctx,
                request.ItemID,
                request.UserID,
                reserved_for=_parse_datetime(data.get("reservedFor"), "reservedFor"),
                quantity=int(data.get("quantity") or 1),
                notes=data.get("notes"),
                policy=policy,
                now=now,
            )
            entity_id = result.ReservationID
        else:
            lending_id = data.get("lendingID")
            if not lending_id:
                raise ValidationError("Extension request is missing lendingID")
            result = lending_service.extend_lending(
                db,
                ctx,
                int(lending_id),
                _parse_datetime(data.get("newDueDate"), "newDueDate"),
                now=now,
            )
            entity_id = result.LendingID
    except Exception:
        db.rollback()
        db.execute(
            scoped(update(ApprovalRequest), ApprovalRequest, ctx)
            .where(ApprovalRequest.ApprovalID == approval_id)
            .values(ExecutedAt=None)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        raise

    request = get_request(db, ctx, approval_id)
    request.ExecutedAt = now
    request.ResultEntityID = entity_id
    db.commit()
    APPROVAL_LOGGER.info("Approval %s executed as %s %s", approval_id, request.RequestType, entity_id)
    return request


def serialize_request(request: ApprovalRequest) -> dict:
    return {
        "approvalID": request.ApprovalID,
        "itemID": request.ItemID,
        "userID": request.UserID,
        "requestType": request.RequestType,
        "requestData": request_payload(request),
        "status": request.Status,
        "approverID": request.ApproverID,
        "approverNotes": request.ApproverNotes,
        "createdAt": request.CreatedAt,
        "approvedAt": request.ApprovedAt,
        "rejectedAt": request.RejectedAt,
        "cancelledAt": request.CancelledAt,
        "executedAt": request.ExecutedAt,
        "resultEntityID": request.ResultEntityID,
    }
