from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.lending_models import Lending, Reservation
from services.blacklist_service import ensure_not_blacklisted, stage_lending_blacklist
from services.errors import Conflict, InsufficientAvailability, NotFound, ValidationError
from services.history_service import log_item_event
from services.ledger_service import available_quantity, lock_item, release_units, take_units
from services.policy_service import LendingPolicy, load_policy
from services.reservation_service import sweep_expired_holds
from services.tenant import TenantContext, paginate, scoped
from services import waitlist_service


LENDING_LOGGER = logging.getLogger("lending_engine.lendings")

CENT = Decimal("0.01")


def get_lending(db: Session, ctx: TenantContext, lending_id: int, refresh: bool = False) -> Lending:
    stmt = scoped(select(Lending), Lending, ctx).where(Lending.LendingID == lending_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    lending = db.execute(stmt).scalars().first()
    if not lending:
        raise NotFound("Lending not found")
    return lending


def days_late(due_date: datetime, returned_at: datetime) -> int:
    if returned_at <= due_date:
        return 0
    return (returned_at - due_date) // timedelta(days=1)


def late_penalty(days: int, policy: LendingPolicy) -> Decimal:
    return (Decimal(max(0, days)) * policy.latePenaltyPerDay).quantize(CENT)


def _ensure_upcoming_covered(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    after: datetime,
    until: datetime,
    quantity: int,
    now: datetime,
    exclude_user_id: int | None = None,
) -> None:
    """Reservations opening in (after, until] must still find their units if `quantity` stays out."""
    stmt = (
        scoped(select(Reservation), Reservation, ctx)
        .where(Reservation.ItemID == item_id)
        .where(Reservation.Status == "ACTIVE")
        .where(Reservation.HoldsStock.is_(False))
        .where(Reservation.ReservedFor > after)
        .where(Reservation.ReservedFor <= until)
    )
    if exclude_user_id is not None:
        stmt = stmt.where(Reservation.UserID != exclude_user_id)
    for reservation in db.execute(stmt).scalars().all():
        free = available_quantity(db, ctx, item_id, reservation.ReservedFor, now=now)
        if free < quantity:
            raise InsufficientAvailability(
                f"Item is reserved from {reservation.ReservedFor:%Y-%m-%d %H:%M}; "
                f"only {free} unit(s) would be free then, {quantity} needed"
            )


def checkout(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    borrower_id: int,
    due_date: datetime,
    quantity: int = 1,
    notes: str | None = None,
    now: datetime | None = None,
) -> Lending:
    now = now or datetime.now()
    quantity = int(quantity or 0)
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    if not due_date or due_date <= now:
        raise ValidationError("Due date must be in the future")

    sweep_expired_holds(db, ctx, now=now)
    ensure_not_blacklisted(db, ctx, borrower_id, now)

    try:
        item = lock_item(db, ctx, item_id, now)
        current = db.execute(
            scoped(select(Reservation), Reservation, ctx)
            .where(Reservation.ItemID == item_id)
            .where(Reservation.Status == "ACTIVE")
        ).scalars().all()
        own = [r for r in current if r.UserID == borrower_id]
        entry = waitlist_service.find_active_entry(db, ctx, item_id, borrower_id)

        own_units = sum(int(r.Quantity) for r in own if r.HoldsStock)
        if entry and entry.Status == "NOTIFIED":
            own_units += 1
        effective = int(item.AvailableCount) + own_units
        if effective < quantity:
            raise InsufficientAvailability(
                f"Not enough items available. Available: {effective}, Requested: {quantity}"
            )

        for reservation in current:
            if reservation.UserID != borrower_id and reservation.ReservedFor <= now <= reservation.ExpiresAt:
                raise Conflict("Item is reserved by another user for the current period")

        for reservation in own:
            if reservation.HoldsStock:
                release_units(db, ctx, item_id, int(reservation.Quantity))
            reservation.Status = "FULFILLED"
            reservation.FulfilledAt = now
        if entry:
            waitlist_service.fulfill_entry(db, ctx, entry, now)
        db.flush()
        _ensure_upcoming_covered(db, ctx, item_id, now, due_date, quantity, now, exclude_user_id=borrower_id)

        take_units(db, ctx, item_id, quantity)
        lending = Lending(
            OrgID=ctx.orgID,
            InstanceID=ctx.instanceID,
            ItemID=item_id,
            BorrowerID=borrower_id,
            Quantity=quantity,
            BorrowedAt=now,
            DueDate=due_date,
            Penalty=Decimal("0.00"),
            PenaltyOverridden=False,
            Notes=notes,
        )
        db.add(lending)
        db.commit()
    except Exception:
        db.rollback()
        raise

    LENDING_LOGGER.info("Item %s: %s unit(s) lent to user %s until %s", item_id, quantity, borrower_id, due_date)
    log_item_event(
        db,
        ctx,
        item_id,
        "borrowed",
        {
            "lendingID": lending.LendingID,
            "quantity": quantity,
            "dueDate": due_date,
            "fulfilledReservations": [r.ReservationID for r in own],
        },
        user_id=borrower_id,
    )
    return lending


def return_item(
    db: Session,
    ctx: TenantContext,
    lending_id: int,
    policy: LendingPolicy | None = None,
    now: datetime | None = None,
) -> Lending:
    """Close an active lending, charging and banning for lateness.

    The caller decides whether to promote the waitlist afterwards.
    """
    now = now or datetime.now()
    lending = get_lending(db, ctx, lending_id)
    if lending.ReturnedAt is not None:
        raise NotFound("Active lending not found")
    policy = policy or load_policy(db, ctx)

    late = days_late(lending.DueDate, now)
    penalty = late_penalty(late, policy)
    reason = f"Late return: {late} days" if late > 0 else None

    try:
        lock_item(db, ctx, lending.ItemID, now)
        result = db.execute(
            scoped(update(Lending), Lending, ctx)
            .where(Lending.LendingID == lending_id)
            .where(Lending.ReturnedAt.is_(None))
            .values(ReturnedAt=now, Penalty=penalty, PenaltyReason=reason)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise NotFound("Active lending not found")
        release_units(db, ctx, lending.ItemID, int(lending.Quantity))
        if late > 0:
            stage_lending_blacklist(
                db,
                ctx,
                lending.BorrowerID,
                lending.LendingID,
                reason,
                now + timedelta(days=late * policy.blacklistDaysPerLateDay),
                now=now,
            )
        db.commit()
    except Exception:
        db.rollback()
        raise

    lending = get_lending(db, ctx, lending_id, refresh=True)
    if late > 0:
        LENDING_LOGGER.info("Lending %s returned %s days late; penalty %s", lending_id, late, penalty)
    log_item_event(
        db,
        ctx,
        lending.ItemID,
        "returned",
        {
            "lendingID": lending.LendingID,
            "quantity": lending.Quantity,
            "daysLate": late,
            "penalty": float(penalty),
        },
        user_id=lending.BorrowerID,
    )
    return lending


def calculate_penalty(
    db: Session,
    ctx: TenantContext,
    lending_id: int,
    policy: LendingPolicy | None = None,
    now: datetime | None = None,
) -> dict:
    lending = get_lending(db, ctx, lending_id)
    if lending.ReturnedAt is not None:
        return {
            "penalty": float(lending.Penalty or 0),
            "reason": lending.PenaltyReason,
            "isOverridden": bool(lending.PenaltyOverridden),
            "daysLate": days_late(lending.DueDate, lending.ReturnedAt),
        }

    policy = policy or load_policy(db, ctx)
    late = days_late(lending.DueDate, now or datetime.now())
    return {
        "penalty": float(late_penalty(late, policy)),
        "reason": f"Late return: {late} days" if late > 0 else None,
        "isOverridden": False,
        "daysLate": late,
    }


def override_penalty(
    db: Session,
    ctx: TenantContext,
    lending_id: int,
    new_penalty,
    reason: str | None = None,
) -> Lending:
    lending = get_lending(db, ctx, lending_id)
    if lending.ReturnedAt is None:
        raise ValidationError("Penalty can only be overridden on returned lendings")
    try:
        amount = Decimal(str(new_penalty)).quantize(CENT)
    except ArithmeticError:
        raise ValidationError("Penalty must be a number")
    if amount < 0:
        raise ValidationError("Penalty cannot be negative")

    try:
        lending.Penalty = amount
        lending.PenaltyReason = (reason or "").strip() or "Penalty overridden"
        lending.PenaltyOverridden = True
        db.commit()
    except Exception:
        db.rollback()
        raise
    LENDING_LOGGER.info("Lending %s penalty overridden to %s by %s", lending_id, amount, ctx.userID)
    return lending


def extend_lending(
    db: Session,
    ctx: TenantContext,
    lending_id: int,
    new_due_date: datetime,
    now: datetime | None = None,
) -> Lending:
    now = now or datetime.now()
    lending = get_lending(db, ctx, lending_id)
    if lending.ReturnedAt is not None:
        raise ValidationError("Only active lendings can be extended")
    if not new_due_date or new_due_date <= lending.DueDate:
        raise ValidationError("New due date must be after the current due date")
    if new_due_date <= now:
        raise ValidationError("New due date must be in the future")

    previous_due = lending.DueDate
    try:
        lock_item(db, ctx, lending.ItemID, now)
        # Reservations opening in the added time counted on this lending coming back.
        _ensure_upcoming_covered(db, ctx, lending.ItemID, previous_due, new_due_date, int(lending.Quantity), now)
        lending.DueDate = new_due_date
        lending.ExtendedAt = now
        db.commit()
    except Exception:
        db.rollback()
        raise

    log_item_event(
        db,
        ctx,
        lending.ItemID,
        "updated",
        {"type": "extension", "lendingID": lending.LendingID, "previousDueDate": previous_due, "dueDate": new_due_date},
        user_id=lending.BorrowerID,
    )
    return lending


def list_lendings(
    db: Session,
    ctx: TenantContext,
    user_id: int | None = None,
    item_id: int | None = None,
    is_active: bool | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    stmt = scoped(select(Lending), Lending, ctx)
    if user_id is not None:
        stmt = stmt.where(Lending.BorrowerID == user_id)
    if item_id is not None:
        stmt = stmt.where(Lending.ItemID == item_id)
    if is_active is True:
        stmt = stmt.where(Lending.ReturnedAt.is_(None))
    elif is_active is False:
        stmt = stmt.where(Lending.ReturnedAt.is_not(None))
    return paginate(db, stmt.order_by(Lending.BorrowedAt.desc(), Lending.LendingID.desc()), page, limit)


def serialize_lending(lending: Lending, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    is_active = lending.ReturnedAt is None
    return {
        "lendingID": lending.LendingID,
        "itemID": lending.ItemID,
        "borrowerID": lending.BorrowerID,
        "quantity": lending.Quantity,
        "borrowedAt": lending.BorrowedAt,
        "dueDate": lending.DueDate,
        "returnedAt": lending.ReturnedAt,
        "extendedAt": lending.ExtendedAt,
        "penalty": float(lending.Penalty or 0),
        "penaltyReason": lending.PenaltyReason,
        "penaltyOverridden": bool(lending.PenaltyOverridden),
        "notes": lending.Notes,
        "isActive": is_active,
        "isOverdue": bool(is_active and lending.DueDate < now),
    }
