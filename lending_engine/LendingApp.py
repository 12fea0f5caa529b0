import os
import logging
from datetime import datetime

from dotenv import load_dotenv
from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.orm import Session

load_dotenv()

from db.deps import get_lending_db
from schemas.approvals import ApprovalDecisionRequest, CreateApprovalDto
from schemas.lending import BlacklistCreateRequest, CheckoutRequest, ExtendLendingRequest, PenaltyOverrideRequest
from schemas.reservations import CreateReservationDto
from schemas.waitlist import JoinWaitlistDto
from services import approval_service, blacklist_service, job_service, lending_service, reservation_service, waitlist_service
from services.errors import LendingError
from services.history_service import get_item_history, get_pending_notifications
from services.ledger_service import available_quantity, get_item, ledger_report, serialize_item
from services.policy_service import load_policy, serialize_policy
from services.tenant import TenantContext

app = FastAPI()

API_LOGGER = logging.getLogger("lending_engine.api")


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.environ.get(name, default)
    return [item.strip() for item in str(raw).split(",") if item.strip()]


_CORS_ALLOW_ORIGINS = _parse_csv_env("CORS_ALLOW_ORIGINS", "http://127.0.0.1,http://localhost")
_CORS_ALLOW_CREDENTIALS = str(os.environ.get("CORS_ALLOW_CREDENTIALS", "true")).strip().lower() in {"1", "true", "yes", "on"}
if "*" in _CORS_ALLOW_ORIGINS:
    # Browsers reject wildcard origins with credentials.
    _CORS_ALLOW_CREDENTIALS = False

app.add_middleware(
    CORSMiddleware,
    allow_origins=_CORS_ALLOW_ORIGINS,
    allow_credentials=_CORS_ALLOW_CREDENTIALS,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LendingError)
async def handle_lending_error(request: Request, exc: LendingError):
    if exc.status_code >= 500:
        API_LOGGER.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "error": exc.code})


def get_tenant(
    x_org_id: int | None = Header(None, alias="X-Org-ID"),
    x_instance_id: int | None = Header(None, alias="X-Instance-ID"),
    x_user_id: int | None = Header(None, alias="X-User-ID"),
    x_user_role: str | None = Header(None, alias="X-User-Role"),
) -> TenantContext:
    if not x_org_id:
        raise HTTPException(status_code=401, detail="X-Org-ID header is required.")
    return TenantContext(
        orgID=x_org_id,
        instanceID=x_instance_id,
        userID=x_user_id,
        role=(x_user_role or "USER").strip().upper(),
    )


def _require_user_or_401(ctx: TenantContext) -> int:
    if not ctx.userID:
        raise HTTPException(status_code=401, detail="X-User-ID header is required.")
    return ctx.userID


def _require_staff_or_403(ctx: TenantContext) -> None:
    _require_user_or_401(ctx)
    if not ctx.is_staff:
        raise HTTPException(status_code=403, detail="Staff role required.")


def _require_admin_or_403(ctx: TenantContext) -> None:
    _require_user_or_401(ctx)
    if not ctx.is_admin:
        raise HTTPException(status_code=403, detail="Admin role required.")


def _resolve_subject(ctx: TenantContext, candidate_user_id: int | None) -> int:
    """The user a request acts for; only staff may act for someone else."""
    actor = _require_user_or_401(ctx)
    if candidate_user_id is None or candidate_user_id == actor:
        return actor
    if not ctx.is_staff:
        raise HTTPException(status_code=403, detail="Staff role required to act for another user.")
    return candidate_user_id


def _naive(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone().replace(tzinfo=None)


def _page(result: dict, serializer) -> dict:
    return {
        "items": [serializer(row) for row in result["rows"]],
        "total": result["total"],
        "page": result["page"],
        "limit": result["limit"],
        "totalPages": result["totalPages"],
    }


@app.get("/healthz")
def healthcheck():
    return {"status": "ok"}


@app.get("/api/healthz")
def healthcheck_api(db: Session = Depends(get_lending_db)):
    try:
        db.execute(text("SELECT 1"))
        return {"status": "ok"}
    except Exception as exc:
        raise HTTPException(status_code=503, detail=f"db_unavailable: {exc}") from exc


@app.get("/api/policy")
def get_policy(db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    return serialize_policy(load_policy(db, ctx))


# Items


@app.get("/api/items/{item_id}")
def get_item_status(item_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    reservation_service.sweep_expired_holds(db, ctx)
    item = get_item(db, ctx, item_id, refresh=True)
    payload = serialize_item(item)
    payload["availableNow"] = available_quantity(db, ctx, item_id)
    payload["ledger"] = ledger_report(db, ctx, item)
    return payload


@app.get("/api/items/{item_id}/history")
def get_history(
    item_id: int,
    action: str | None = Query(None),
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    get_item(db, ctx, item_id)
    return get_item_history(db, ctx, item_id, action=action, limit=limit)


# Lendings


@app.post("/api/lendings")
def create_lending(
    payload: CheckoutRequest,
    response: Response,
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    borrower_id = _resolve_subject(ctx, payload.borrowerID)
    due_date = _naive(payload.dueDate)
    policy = load_policy(db, ctx)
    if approval_service.is_approval_required(policy, "lending") and not ctx.is_staff:
        approval = approval_service.create_request(
            db,
            ctx,
            payload.itemID,
            borrower_id,
            "lending",
            {"dueDate": due_date.isoformat(), "quantity": payload.quantity, "notes": payload.notes},
        )
        response.status_code = 202
        return {"approvalRequired": True, "approval": approval_service.serialize_request(approval)}

    lending = lending_service.checkout(
        db,
        ctx,
        payload.itemID,
        borrower_id,
        due_date,
        quantity=payload.quantity,
        notes=payload.notes,
    )
    return lending_service.serialize_lending(lending)


@app.get("/api/lendings")
def list_lendings(
    user_id: int | None = Query(None, alias="userID"),
    item_id: int | None = Query(None, alias="itemID"),
    is_active: bool | None = Query(None, alias="isActive"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    if not ctx.is_staff:
        user_id = _require_user_or_401(ctx)
    result = lending_service.list_lendings(db, ctx, user_id=user_id, item_id=item_id, is_active=is_active, page=page, limit=limit)
    return _page(result, lending_service.serialize_lending)


@app.get("/api/lendings/{lending_id}")
def get_lending(lending_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    lending = lending_service.get_lending(db, ctx, lending_id)
    _resolve_subject(ctx, lending.BorrowerID)
    return lending_service.serialize_lending(lending)


@app.post("/api/lendings/{lending_id}/return")
def return_lending(lending_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _require_staff_or_403(ctx)
    policy = load_policy(db, ctx)
    lending = lending_service.return_item(db, ctx, lending_id, policy=policy)
    promoted = waitlist_service.notify_waitlist_when_available(db, ctx, lending.ItemID, policy=policy)
    return {
        "lending": lending_service.serialize_lending(lending),
        "penalty": lending_service.calculate_penalty(db, ctx, lending_id, policy=policy),
        "notifiedWaitlistEntries": [waitlist_service.serialize_entry(entry) for entry in promoted],
    }


@app.post("/api/lendings/{lending_id}/extend")
def extend_lending(
    lending_id: int,
    payload: ExtendLendingRequest,
    response: Response,
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    lending = lending_service.get_lending(db, ctx, lending_id)
    _resolve_subject(ctx, lending.BorrowerID)
    new_due_date = _naive(payload.newDueDate)
    policy = load_policy(db, ctx)
    if approval_service.is_approval_required(policy, "extension") and not ctx.is_staff:
        approval = approval_service.create_request(
            db,
            ctx,
            lending.ItemID,
            lending.BorrowerID,
            "extension",
            {"lendingID": lending.LendingID, "newDueDate": new_due_date.isoformat()},
        )
        response.status_code = 202
        return {"approvalRequired": True, "approval": approval_service.serialize_request(approval)}

    lending = lending_service.extend_lending(db, ctx, lending_id, new_due_date)
    return lending_service.serialize_lending(lending)


@app.get("/api/lendings/{lending_id}/penalty")
def get_penalty(lending_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    lending = lending_service.get_lending(db, ctx, lending_id)
    _resolve_subject(ctx, lending.BorrowerID)
    return lending_service.calculate_penalty(db, ctx, lending_id)


@app.post("/api/lendings/{lending_id}/penalty")
def override_penalty(
    lending_id: int,
    payload: PenaltyOverrideRequest,
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    _require_admin_or_403(ctx)
    lending = lending_service.override_penalty(db, ctx, lending_id, payload.penalty, payload.reason)
    return lending_service.serialize_lending(lending)


# Blacklist


@app.post("/api/blacklist")
def create_blacklist(payload: BlacklistCreateRequest, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _require_staff_or_403(ctx)
    ban = blacklist_service.apply_blacklist(db, ctx, payload.userID, payload.reason, payload.daysBlocked)
    return blacklist_service.serialize_blacklist(ban)


@app.delete("/api/blacklist/{blacklist_id}")
def delete_blacklist(blacklist_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _require_admin_or_403(ctx)
    ban = blacklist_service.remove_blacklist(db, ctx, blacklist_id)
    return blacklist_service.serialize_blacklist(ban)


@app.get("/api/blacklist")
def list_blacklist(
    user_id: int | None = Query(None, alias="userID"),
    active_only: bool = Query(False, alias="activeOnly"),
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    if not ctx.is_staff:
        user_id = _require_user_or_401(ctx)
    bans = blacklist_service.list_blacklists(db, ctx, user_id=user_id, active_only=active_only)
    return [blacklist_service.serialize_blacklist(ban) for ban in bans]


@app.get("/api/blacklist/check/{user_id}")
def check_blacklist(user_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _resolve_subject(ctx, user_id)
    ban = blacklist_service.get_active_blacklist(db, ctx, user_id)
    return {
        "userID": user_id,
        "isBlacklisted": ban is not None,
        "blacklist": blacklist_service.serialize_blacklist(ban) if ban else None,
    }


# Reservations


@app.post("/api/reservations")
def create_reservation(
    payload: CreateReservationDto,
    response: Response,
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    user_id = _resolve_subject(ctx, payload.userID)
    reserved_for = _naive(payload.reservedFor)
    policy = load_policy(db, ctx)
    if approval_service.is_approval_required(policy, "reservation") and not ctx.is_staff:
        approval = approval_service.create_request(
            db,
            ctx,
            payload.itemID,
            user_id,
            "reservation",
            {
                "reservedFor": reserved_for.isoformat() if reserved_for else None,
                "quantity": payload.quantity,
                "notes": payload.notes,
            },
        )
        response.status_code = 202
        return {"approvalRequired": True, "approval": approval_service.serialize_request(approval)}

    reservation = reservation_service.create_reservation(
        db,
        ctx,
        payload.itemID,
        user_id,
        reserved_for=reserved_for,
        quantity=payload.quantity,
        notes=payload.notes,
        policy=policy,
    )
    return reservation_service.serialize_reservation(reservation)


@app.get("/api/reservations")
def list_reservations(
    user_id: int | None = Query(None, alias="userID"),
    item_id: int | None = Query(None, alias="itemID"),
    status: str | None = Query(None),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    if not ctx.is_staff:
        user_id = _require_user_or_401(ctx)
    reservation_service.sweep_expired_holds(db, ctx)
    result = reservation_service.list_reservations(db, ctx, user_id=user_id, item_id=item_id, status=status, page=page, limit=limit)
    return _page(result, reservation_service.serialize_reservation)


@app.post("/api/reservations/{reservation_id}/cancel")
def cancel_reservation(reservation_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    reservation = reservation_service.get_reservation(db, ctx, reservation_id)
    _resolve_subject(ctx, reservation.UserID)
    reservation = reservation_service.cancel_reservation(db, ctx, reservation_id)
    if reservation.HoldsStock:
        waitlist_service.notify_waitlist_when_available(db, ctx, reservation.ItemID)
    return reservation_service.serialize_reservation(reservation)


@app.get("/api/reservations/upcoming/{item_id}")
def upcoming_reservations(item_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    reservations = reservation_service.get_upcoming_reservations(db, ctx, item_id)
    return [reservation_service.serialize_reservation(r) for r in reservations]


@app.get("/api/reservations/availability/{item_id}")
def reservation_availability(
    item_id: int,
    date: datetime | None = Query(None),
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    now = datetime.now()
    at_date = _naive(date) or now
    is_available = reservation_service.check_availability(db, ctx, item_id, at_date, now=now)
    return {
        "itemID": item_id,
        "date": at_date,
        "isAvailable": is_available,
        "availableQuantity": available_quantity(db, ctx, item_id, at_date, now=now),
    }


# Waitlist


@app.post("/api/waitlist")
def join_waitlist(payload: JoinWaitlistDto, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    user_id = _resolve_subject(ctx, payload.userID)
    entry = waitlist_service.add_to_waitlist(
        db,
        ctx,
        payload.itemID,
        user_id,
        priority=payload.priority,
        notify_when_available=payload.notifyWhenAvailable,
        notes=payload.notes,
    )
    return waitlist_service.serialize_entry(entry)


@app.delete("/api/waitlist/{item_id}")
def leave_waitlist(
    item_id: int,
    user_id: int | None = Query(None, alias="userID"),
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    user_id = _resolve_subject(ctx, user_id)
    entry = waitlist_service.remove_from_waitlist(db, ctx, item_id, user_id)
    return waitlist_service.serialize_entry(entry)


@app.get("/api/waitlist/stats")
def waitlist_stats(db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _require_staff_or_403(ctx)
    return waitlist_service.get_waitlist_stats(db, ctx)


@app.get("/api/waitlist/item/{item_id}")
def item_waitlist(
    item_id: int,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    waitlist_service.expire_lapsed_notifications(db, ctx)
    entries = waitlist_service.get_item_waitlist(db, ctx, item_id, limit=limit, offset=offset)
    return [waitlist_service.serialize_entry(entry) for entry in entries]


@app.get("/api/waitlist/user/{user_id}")
def user_waitlist(
    user_id: int,
    item_id: int | None = Query(None, alias="itemID"),
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    _resolve_subject(ctx, user_id)
    entries = waitlist_service.get_user_waitlist(db, ctx, user_id, item_id=item_id)
    return [waitlist_service.serialize_entry(entry) for entry in entries]


@app.get("/api/waitlist/check/{item_id}")
def check_waitlist(item_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    user_id = _require_user_or_401(ctx)
    return waitlist_service.get_waitlist_status(db, ctx, item_id, user_id)


@app.post("/api/waitlist/item/{item_id}/notify")
def notify_waitlist(item_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _require_staff_or_403(ctx)
    promoted = waitlist_service.notify_waitlist_when_available(db, ctx, item_id)
    return {"notified": len(promoted), "entries": [waitlist_service.serialize_entry(entry) for entry in promoted]}


# Approvals


@app.post("/api/approvals")
def create_approval(payload: CreateApprovalDto, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    user_id = _require_user_or_401(ctx)
    request = approval_service.create_request(db, ctx, payload.itemID, user_id, payload.requestType, payload.requestData)
    return approval_service.serialize_request(request)


@app.get("/api/approvals")
def list_approvals(
    status: str | None = Query(None),
    user_id: int | None = Query(None, alias="userID"),
    item_id: int | None = Query(None, alias="itemID"),
    request_type: str | None = Query(None, alias="requestType"),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    if not ctx.is_staff:
        user_id = _require_user_or_401(ctx)
    result = approval_service.list_requests(
        db,
        ctx,
        status=status,
        user_id=user_id,
        item_id=item_id,
        request_type=request_type,
        page=page,
        limit=limit,
    )
    return _page(result, approval_service.serialize_request)


@app.get("/api/approvals/stats")
def approval_stats(db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _require_staff_or_403(ctx)
    return approval_service.get_stats(db, ctx)


@app.get("/api/approvals/{approval_id}")
def get_approval(approval_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    request = approval_service.get_request(db, ctx, approval_id)
    _resolve_subject(ctx, request.UserID)
    return approval_service.serialize_request(request)


@app.post("/api/approvals/{approval_id}/decision")
def decide_approval(
    approval_id: int,
    payload: ApprovalDecisionRequest,
    db: Session = Depends(get_lending_db),
    ctx: TenantContext = Depends(get_tenant),
):
    _require_staff_or_403(ctx)
    request = approval_service.decide(db, ctx, approval_id, ctx.userID, payload.decision, payload.notes)
    return approval_service.serialize_request(request)


@app.post("/api/approvals/{approval_id}/cancel")
def cancel_approval(approval_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    user_id = _require_user_or_401(ctx)
    request = approval_service.cancel_request(db, ctx, approval_id, user_id, is_admin=ctx.is_admin)
    return approval_service.serialize_request(request)


@app.post("/api/approvals/{approval_id}/execute")
def execute_approval(approval_id: int, db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    request = approval_service.get_request(db, ctx, approval_id)
    _resolve_subject(ctx, request.UserID)
    request = approval_service.execute_approved(db, ctx, approval_id)
    return approval_service.serialize_request(request)


# Jobs


@app.post("/api/jobs/expire-holds")
def run_expire_holds(db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _require_staff_or_403(ctx)
    return job_service.expire_holds(db, ctx)


@app.post("/api/jobs/check-overdue")
def run_check_overdue(db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _require_staff_or_403(ctx)
    return job_service.check_overdue(db, ctx)


@app.post("/api/jobs/send-reminders")
def run_send_reminders(db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _require_staff_or_403(ctx)
    return job_service.send_due_reminders(db, ctx)


@app.get("/api/notifications/pending")
def pending_notifications(db: Session = Depends(get_lending_db), ctx: TenantContext = Depends(get_tenant)):
    _require_staff_or_403(ctx)
    return get_pending_notifications(db, ctx)
