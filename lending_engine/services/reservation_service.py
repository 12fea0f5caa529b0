from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import RESERVATION_STATES, Reservation
from services.blacklist_service import ensure_not_blacklisted
from services.errors import AlreadyExists, InsufficientAvailability, NotFound, ValidationError
from services.history_service import log_availability_change, log_item_event
from services.ledger_service import available_quantity, available_quantity_for_window, get_item, lock_item, release_units, take_units
from services.policy_service import LendingPolicy, load_policy
from services.tenant import TenantContext, paginate, scoped
from services import waitlist_service


RESERVATION_LOGGER = logging.getLogger("lending_engine.reservations")


def get_reservation(db: Session, ctx: TenantContext, reservation_id: int) -> Reservation:
    reservation = db.execute(
        scoped(select(Reservation), Reservation, ctx).where(Reservation.ReservationID == reservation_id)
    ).scalars().first()
    if not reservation:
        raise NotFound("Reservation not found")
    return reservation


def find_active_reservation(db: Session, ctx: TenantContext, item_id: int, user_id: int) -> Reservation | None:
    return db.execute(
        scoped(select(Reservation), Reservation, ctx)
        .where(Reservation.ItemID == item_id)
        .where(Reservation.UserID == user_id)
        .where(Reservation.Status == "ACTIVE")
    ).scalars().first()


def sweep_expired_holds(
    db: Session,
    ctx: TenantContext,
    policy: LendingPolicy | None = None,
    now: datetime | None = None,
) -> dict:
    """Bring holds in line with the clock.

    Lapsed reservations expire and give back any stock they held. Reservations whose
    window has opened claim their units; one that cannot is left for the next pass.
    Lapsed waitlist notifications expire, then every item that got stock back is
    offered to its waitlist. A failing entry is logged and skipped.
    """
    now = now or datetime.now()
    released_items: set[int] = set()

    expired = db.execute(
        scoped(select(Reservation), Reservation, ctx)
        .where(Reservation.Status == "ACTIVE")
        .where(Reservation.ExpiresAt < now)
        .order_by(Reservation.ReservationID)
    ).scalars().all()
    expired_count = 0
    for reservation in expired:
        reservation_id, item_id = reservation.ReservationID, reservation.ItemID
        user_id, quantity = reservation.UserID, int(reservation.Quantity)
        try:
            item = lock_item(db, ctx, item_id, now)
            before, total = int(item.AvailableCount), int(item.TotalCount)
            held = bool(reservation.HoldsStock)
            reservation.Status = "EXPIRED"
            reservation.ExpiredAt = now
            if held:
                release_units(db, ctx, item_id, quantity)
                released_items.add(item_id)
            db.commit()
            expired_count += 1
        except Exception:
            db.rollback()
            RESERVATION_LOGGER.exception("Failed to expire reservation %s", reservation_id)
            continue
        if held:
            log_availability_change(
                db,
                ctx,
                item_id,
                before,
                min(total, before + quantity),
                "reservation_expired",
                {"reservationID": reservation_id},
                user_id=user_id,
            )

    started = db.execute(
        scoped(select(Reservation), Reservation, ctx)
        .where(Reservation.Status == "ACTIVE")
        .where(Reservation.HoldsStock.is_(False))
        .where(Reservation.ReservedFor <= now)
        .order_by(Reservation.ReservedFor, Reservation.ReservationID)
    ).scalars().all()
    activated = 0
    for reservation in started:
        reservation_id, item_id = reservation.ReservationID, reservation.ItemID
        user_id, quantity = reservation.UserID, int(reservation.Quantity)
        try:
            before = int(lock_item(db, ctx, item_id, now).AvailableCount)
            take_units(db, ctx, item_id, quantity)
            reservation.HoldsStock = True
            db.commit()
            activated += 1
        except InsufficientAvailability:
            db.rollback()
            RESERVATION_LOGGER.info("Reservation %s started but stock is still out; retrying next sweep", reservation_id)
            continue
        except Exception:
            db.rollback()
            RESERVATION_LOGGER.exception("Failed to activate reservation %s", reservation_id)
            continue
        log_availability_change(
            db,
            ctx,
            item_id,
            before,
            before - quantity,
            "reservation_started",
            {"reservationID": reservation_id},
            user_id=user_id,
        )

    if released_items and policy is None:
        policy = load_policy(db, ctx)
    waitlist = waitlist_service.expire_lapsed_notifications(db, ctx, policy=policy, now=now)

    promoted = waitlist["promoted"]
    for item_id in sorted(released_items):
        try:
            promoted += len(waitlist_service.notify_waitlist_when_available(db, ctx, item_id, policy=policy, now=now))
        except Exception:
            db.rollback()
            RESERVATION_LOGGER.exception("Failed to promote waitlist for item %s", item_id)

    if expired_count or activated or waitlist["expired"]:
        RESERVATION_LOGGER.info(
            "Hold sweep: %s reservations expired, %s activated, %s notifications expired",
            expired_count,
            activated,
            waitlist["expired"],
        )
    return {
        "expiredReservations": expired_count,
        "activatedReservations": activated,
        "expiredNotifications": waitlist["expired"],
        "promotedWaitlistEntries": promoted,
    }


def create_reservation(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    user_id: int,
    reserved_for: datetime | None = None,
    quantity: int = 1,
    notes: str | None = None,
    policy: LendingPolicy | None = None,
    now: datetime | None = None,
) -> Reservation:
    now = now or datetime.now()
    quantity = int(quantity or 0)
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    policy = policy or load_policy(db, ctx)
    reserved_for = reserved_for or now

    sweep_expired_holds(db, ctx, policy=policy, now=now)
    ensure_not_blacklisted(db, ctx, user_id, now)

    immediate = reserved_for <= now
    start = now if immediate else reserved_for
    expires_at = start + timedelta(hours=policy.reservationHoldHours)
    try:
        lock_item(db, ctx, item_id, now)
        if find_active_reservation(db, ctx, item_id, user_id):
            raise AlreadyExists("User already has an active reservation for this item")

        entry = waitlist_service.find_active_entry(db, ctx, item_id, user_id)
        if entry:
            waitlist_service.fulfill_entry(db, ctx, entry, now)

        free = available_quantity_for_window(db, ctx, item_id, start, expires_at, now=now)
        if free < quantity:
            raise InsufficientAvailability(
                f"Not enough items available for the requested period. Available: {free}, Requested: {quantity}"
            )
        if immediate:
            take_units(db, ctx, item_id, quantity)

        reservation = Reservation(
            OrgID=ctx.orgID,
            InstanceID=ctx.instanceID,
            ItemID=item_id,
            UserID=user_id,
            Quantity=quantity,
            ReservedFor=start,
            ExpiresAt=expires_at,
            Status="ACTIVE",
            HoldsStock=immediate,
            Notes=notes,
            CreatedAt=now,
        )
        db.add(reservation)
        db.commit()
    except Exception:
        db.rollback()
        raise

    log_item_event(
        db,
        ctx,
        item_id,
        "reserved",
        {
            "type": "reservation",
            "reservationID": reservation.ReservationID,
            "quantity": quantity,
            "reservedFor": reservation.ReservedFor,
            "expiresAt": reservation.ExpiresAt,
        },
        user_id=user_id,
    )
    return reservation


def cancel_reservation(db: Session, ctx: TenantContext, reservation_id: int, now: datetime | None = None) -> Reservation:
    now = now or datetime.now()
    reservation = get_reservation(db, ctx, reservation_id)
    if reservation.Status != "ACTIVE":
        raise NotFound("Active reservation not found")

    try:
        lock_item(db, ctx, reservation.ItemID, now)
        reservation.Status = "CANCELLED"
        reservation.CancelledAt = now
        if reservation.HoldsStock:
            release_units(db, ctx, reservation.ItemID, int(reservation.Quantity))
        db.commit()
    except Exception:
        db.rollback()
        raise

    log_item_event(
        db,
        ctx,
        reservation.ItemID,
        "cancelled",
        {"type": "reservation", "reservationID": reservation.ReservationID, "quantity": reservation.Quantity},
        user_id=reservation.UserID,
    )
    return reservation


def check_availability(db: Session, ctx: TenantContext, item_id: int, at_date: datetime | None = None, now: datetime | None = None) -> bool:
    now = now or datetime.now()
    sweep_expired_holds(db, ctx, now=now)
    return available_quantity(db, ctx, item_id, at_date, now=now) > 0


def get_upcoming_reservations(db: Session, ctx: TenantContext, item_id: int, now: datetime | None = None) -> list[Reservation]:
    now = now or datetime.now()
    get_item(db, ctx, item_id)
    sweep_expired_holds(db, ctx, now=now)
    return db.execute(
        scoped(select(Reservation), Reservation, ctx)
        .where(Reservation.ItemID == item_id)
        .where(Reservation.Status == "ACTIVE")
        .where(Reservation.ReservedFor >= now)
        .order_by(Reservation.ReservedFor.asc(), Reservation.ReservationID.asc())
    ).scalars().all()


def list_reservations(
    db: Session,
    ctx: TenantContext,
    user_id: int | None = None,
    item_id: int | None = None,
    status: str | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict:
    stmt = scoped(select(Reservation), Reservation, ctx)
    if user_id is not None:
        stmt = stmt.where(Reservation.UserID == user_id)
    if item_id is not None:
        stmt = stmt.where(Reservation.ItemID == item_id)
    if status:
        status = status.strip().upper()
        if status not in RESERVATION_STATES:
            raise ValidationError(f"Unknown reservation status: {status}")
        stmt = stmt.where(Reservation.Status == status)
    return paginate(db, stmt.order_by(Reservation.ReservedFor.desc(), Reservation.ReservationID.desc()), page, limit)


def serialize_reservation(reservation: Reservation) -> dict:
    return {
        "reservationID": reservation.ReservationID,
        "itemID": reservation.ItemID,
        "userID": reservation.UserID,
        "quantity": reservation.Quantity,
        "reservedFor": reservation.ReservedFor,
        "expiresAt": reservation.ExpiresAt,
        "status": reservation.Status,
        "holdsStock": bool(reservation.HoldsStock),
        "notes": reservation.Notes,
        "createdAt": reservation.CreatedAt,
        "fulfilledAt": reservation.FulfilledAt,
        "cancelledAt": reservation.CancelledAt,
        "expiredAt": reservation.ExpiredAt,
    }
