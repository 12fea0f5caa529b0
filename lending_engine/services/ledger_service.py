from __future__ import annotations

import logging
from datetime import datetime
from typing import NamedTuple

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from models.lending_models import Item, Lending, Reservation, WaitlistEntry
from services.errors import InsufficientAvailability, NotFound, ValidationError
from services.tenant import TenantContext, scoped


LEDGER_LOGGER = logging.getLogger("lending_engine.ledger")


class HoldWindow(NamedTuple):
    kind: str
    hold_id: int
    user_id: int
    quantity: int
    start: datetime
    end: datetime
    holds_stock: bool


def get_item(db: Session, ctx: TenantContext, item_id: int, refresh: bool = False) -> Item:
    stmt = scoped(select(Item), Item, ctx).where(Item.ItemID == item_id)
    if refresh:
        stmt = stmt.execution_options(populate_existing=True)
    item = db.execute(stmt).scalars().first()
    if not item:
        raise NotFound("Item not found")
    return item


def lock_item(db: Session, ctx: TenantContext, item_id: int, now: datetime | None = None) -> Item:
    """Claim the item row for the rest of the transaction.

    The touch is a write, so concurrent claim transactions on the same item queue up
    behind it (row lock on server databases, write lock on SQLite).
    """
    result = db.execute(
        scoped(update(Item), Item, ctx)
        .where(Item.ItemID == item_id)
        .values(UpdatedDate=now or datetime.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        raise NotFound("Item not found")
    return get_item(db, ctx, item_id, refresh=True)


def take_units(db: Session, ctx: TenantContext, item_id: int, quantity: int) -> None:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    result = db.execute(
        scoped(update(Item), Item, ctx)
        .where(Item.ItemID == item_id)
        .where(Item.AvailableCount >= quantity)
        .values(AvailableCount=Item.AvailableCount - quantity, UpdatedDate=datetime.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        item = get_item(db, ctx, item_id, refresh=True)
        raise InsufficientAvailability(
            f"Not enough items available. Available: {item.AvailableCount}, Requested: {quantity}"
        )


def release_units(db: Session, ctx: TenantContext, item_id: int, quantity: int) -> None:
    if quantity < 1:
        return
    result = db.execute(
        scoped(update(Item), Item, ctx)
        .where(Item.ItemID == item_id)
        .where(Item.AvailableCount + quantity <= Item.TotalCount)
        .values(AvailableCount=Item.AvailableCount + quantity, UpdatedDate=datetime.now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 1:
        return

    item = get_item(db, ctx, item_id, refresh=True)
    LEDGER_LOGGER.warning(
        "Releasing %s units of item %s would exceed total %s (available %s); clamping",
        quantity,
        item_id,
        item.TotalCount,
        item.AvailableCount,
    )
    db.execute(
        scoped(update(Item), Item, ctx)
        .where(Item.ItemID == item_id)
        .values(AvailableCount=Item.TotalCount, UpdatedDate=datetime.now())
        .execution_options(synchronize_session=False)
    )


def active_lendings(db: Session, ctx: TenantContext, item_id: int) -> list[Lending]:
    return db.execute(
        scoped(select(Lending), Lending, ctx)
        .where(Lending.ItemID == item_id)
        .where(Lending.ReturnedAt.is_(None))
    ).scalars().all()


def active_holds(db: Session, ctx: TenantContext, item_id: int) -> list[HoldWindow]:
    holds: list[HoldWindow] = []
    reservations = db.execute(
        scoped(select(Reservation), Reservation, ctx)
        .where(Reservation.ItemID == item_id)
        .where(Reservation.Status == "ACTIVE")
    ).scalars().all()
    for r in reservations:
        holds.append(
            HoldWindow("reservation", r.ReservationID, r.UserID, int(r.Quantity or 1), r.ReservedFor, r.ExpiresAt, bool(r.HoldsStock))
        )

    notified = db.execute(
        scoped(select(WaitlistEntry), WaitlistEntry, ctx)
        .where(WaitlistEntry.ItemID == item_id)
        .where(WaitlistEntry.Status == "NOTIFIED")
    ).scalars().all()
    for entry in notified:
        holds.append(
            HoldWindow("waitlist", entry.EntryID, entry.UserID, 1, entry.NotifiedAt, entry.NotificationExpiresAt, True)
        )
    return holds


def _project(item: Item, lendings: list[Lending], holds: list[HoldWindow], at: datetime, now: datetime) -> int:
    quantity = int(item.AvailableCount)
    if at > now:
        for lending in lendings:
            if lending.DueDate < at:
                quantity += int(lending.Quantity or 1)
        for hold in holds:
            if hold.holds_stock and hold.end < at:
                quantity += hold.quantity
    for hold in holds:
        if not hold.holds_stock and hold.start <= at <= hold.end:
            quantity -= hold.quantity
    return min(int(item.TotalCount), max(0, quantity))


def available_quantity(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    at_date: datetime | None = None,
    now: datetime | None = None,
) -> int:
    """Units expected to be free at ``at_date`` (now when omitted).

    ``AvailableCount`` is already net of everything out right now, so a future date
    only adds back lendings due and stock-holding holds ending before it, then takes
    off reservations that have not touched the ledger yet but cover that date.
    """
    now = now or datetime.now()
    at = max(at_date or now, now)
    item = get_item(db, ctx, item_id, refresh=True)
    return _project(item, active_lendings(db, ctx, item_id), active_holds(db, ctx, item_id), at, now)


def available_quantity_for_window(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    start: datetime,
    end: datetime,
    now: datetime | None = None,
) -> int:
    now = now or datetime.now()
    start = max(start, now)
    if end < start:
        end = start
    item = get_item(db, ctx, item_id, refresh=True)
    lendings = active_lendings(db, ctx, item_id)
    holds = active_holds(db, ctx, item_id)

    # The projection only drops where a not-yet-stocked hold begins.
    points = [start]
    for hold in holds:
        if not hold.holds_stock and start < hold.start <= end:
            points.append(hold.start)
    return min(_project(item, lendings, holds, point, now) for point in points)


def ledger_report(db: Session, ctx: TenantContext, item: Item) -> dict:
    lending_units = sum(int(l.Quantity or 1) for l in active_lendings(db, ctx, item.ItemID))
    held_units = sum(h.quantity for h in active_holds(db, ctx, item.ItemID) if h.holds_stock)
    expected_available = int(item.TotalCount) - lending_units - held_units
    return {
        "itemID": item.ItemID,
        "name": item.Name,
        "totalCount": item.TotalCount,
        "availableCount": item.AvailableCount,
        "activeLendingUnits": lending_units,
        "heldUnits": held_units,
        "expectedAvailable": expected_available,
        "inSync": expected_available == int(item.AvailableCount),
    }


def serialize_item(item: Item) -> dict:
    return {
        "itemID": item.ItemID,
        "orgID": item.OrgID,
        "instanceID": item.InstanceID,
        "name": item.Name,
        "totalCount": item.TotalCount,
        "availableCount": item.AvailableCount,
        "createdDate": item.CreatedDate,
        "updatedDate": item.UpdatedDate,
    }
