from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from models.lending_models import ACTIVE_WAITLIST_STATES, Reservation, WaitlistEntry
from services.blacklist_service import ensure_not_blacklisted
from services.errors import AlreadyExists, InsufficientAvailability, NotFound, ValidationError
from services.history_service import log_availability_change, log_item_event, notify_user
from services.ledger_service import available_quantity, available_quantity_for_window, get_item, lock_item, release_units, take_units
from services.policy_service import LendingPolicy, load_policy
from services.tenant import TenantContext, scoped


WAITLIST_LOGGER = logging.getLogger("lending_engine.waitlist")


def _queue_order():
    return (WaitlistEntry.Priority.asc(), WaitlistEntry.CreatedAt.asc(), WaitlistEntry.EntryID.asc())


def ordered_entries(db: Session, ctx: TenantContext, item_id: int, statuses=ACTIVE_WAITLIST_STATES) -> list[WaitlistEntry]:
    return db.execute(
        scoped(select(WaitlistEntry), WaitlistEntry, ctx)
        .where(WaitlistEntry.ItemID == item_id)
        .where(WaitlistEntry.Status.in_(list(statuses)))
        .order_by(*_queue_order())
    ).scalars().all()


def find_active_entry(db: Session, ctx: TenantContext, item_id: int, user_id: int) -> WaitlistEntry | None:
    return db.execute(
        scoped(select(WaitlistEntry), WaitlistEntry, ctx)
        .where(WaitlistEntry.ItemID == item_id)
        .where(WaitlistEntry.UserID == user_id)
        .where(WaitlistEntry.Status.in_(list(ACTIVE_WAITLIST_STATES)))
    ).scalars().first()


def renumber_queue(db: Session, ctx: TenantContext, item_id: int) -> None:
    db.flush()
    for position, entry in enumerate(ordered_entries(db, ctx, item_id), start=1):
        if entry.QueuePosition != position:
            entry.QueuePosition = position


def fulfill_entry(db: Session, ctx: TenantContext, entry: WaitlistEntry, now: datetime) -> int:
    """Close out a user's entry because they claimed the item another way.

    Returns the units handed back to the ledger (1 for a NOTIFIED entry, else 0).
    The caller owns the transaction.
    """
    released = 0
    if entry.Status == "NOTIFIED":
        release_units(db, ctx, entry.ItemID, 1)
        released = 1
    entry.Status = "FULFILLED"
    entry.FulfilledAt = now
    renumber_queue(db, ctx, entry.ItemID)
    return released


def add_to_waitlist(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    user_id: int,
    priority: int = 0,
    notify_when_available: bool = True,
    notes: str | None = None,
    now: datetime | None = None,
) -> WaitlistEntry:
    now = now or datetime.now()
    expire_lapsed_notifications(db, ctx, now=now)
    ensure_not_blacklisted(db, ctx, user_id, now)

    try:
        lock_item(db, ctx, item_id, now)
        if find_active_entry(db, ctx, item_id, user_id):
            raise AlreadyExists("User is already on the waitlist for this item")
        has_reservation = db.execute(
            scoped(select(Reservation.ReservationID), Reservation, ctx)
            .where(Reservation.ItemID == item_id)
            .where(Reservation.UserID == user_id)
            .where(Reservation.Status == "ACTIVE")
        ).first()
        if has_reservation:
            raise AlreadyExists("User already holds an active reservation for this item")
        free_now = available_quantity(db, ctx, item_id, now, now=now)
        if free_now > 0:
            raise ValidationError(f"Item is available ({free_now} free); check it out or reserve it instead.")

        entry = WaitlistEntry(
            OrgID=ctx.orgID,
            InstanceID=ctx.instanceID,
            ItemID=item_id,
            UserID=user_id,
            QueuePosition=len(ordered_entries(db, ctx, item_id)) + 1,
            Priority=int(priority or 0),
            NotifyWhenAvailable=bool(notify_when_available),
            Status="WAITING",
            Notes=notes or "Waitlist entry",
            CreatedAt=now,
        )
        db.add(entry)
        renumber_queue(db, ctx, item_id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    log_item_event(
        db,
        ctx,
        item_id,
        "reserved",
        {"type": "waitlist", "queuePosition": entry.QueuePosition, "priority": entry.Priority, "notes": notes},
        user_id=user_id,
    )
    return entry


def remove_from_waitlist(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    user_id: int,
    policy: LendingPolicy | None = None,
    now: datetime | None = None,
) -> WaitlistEntry:
    now = now or datetime.now()
    entry = find_active_entry(db, ctx, item_id, user_id)
    if not entry:
        raise NotFound("Waitlist entry not found")

    previous_position = entry.QueuePosition
    was_notified = entry.Status == "NOTIFIED"
    try:
        lock_item(db, ctx, item_id, now)
        entry.Status = "CANCELLED"
        entry.CancelledAt = now
        if was_notified:
            release_units(db, ctx, item_id, 1)
        renumber_queue(db, ctx, item_id)
        db.commit()
    except Exception:
        db.rollback()
        raise

    log_item_event(
        db,
        ctx,
        item_id,
        "cancelled",
        {"type": "waitlist_removal", "previousPosition": previous_position},
        user_id=user_id,
    )
    if was_notified:
        notify_waitlist_when_available(db, ctx, item_id, policy=policy, now=now)
    return entry


def notify_waitlist_when_available(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    policy: LendingPolicy | None = None,
    now: datetime | None = None,
) -> list[WaitlistEntry]:
    """Promote the next WAITING entries into NOTIFIED holds, one unit each.

    Each promoted entry takes its unit off the ledger for the notification window, so
    the slot count is the availability across that window rather than the raw count.
    """
    now = now or datetime.now()
    policy = policy or load_policy(db, ctx)
    deadline = now + timedelta(hours=policy.waitlistNotificationHours)

    promoted: list[WaitlistEntry] = []
    try:
        item = lock_item(db, ctx, item_id, now)
        before, item_name = int(item.AvailableCount), item.Name
        if before <= 0:
            db.commit()
            return promoted

        slots = min(before, available_quantity_for_window(db, ctx, item_id, now, deadline, now=now))
        for entry in ordered_entries(db, ctx, item_id, statuses=("WAITING",)):
            if len(promoted) >= slots:
                break
            try:
                take_units(db, ctx, item_id, 1)
            except InsufficientAvailability:
                break
            entry.Status = "NOTIFIED"
            entry.NotifiedAt = now
            entry.NotificationExpiresAt = deadline
            promoted.append(entry)
        db.commit()
    except Exception:
        db.rollback()
        raise

    if promoted:
        WAITLIST_LOGGER.info("Item %s: promoted %s waitlist entries", item_id, len(promoted))
        log_availability_change(
            db,
            ctx,
            item_id,
            before,
            before - len(promoted),
            "waitlist_promoted",
            {"entryIDs": [entry.EntryID for entry in promoted]},
        )
    for entry in promoted:
        if not entry.NotifyWhenAvailable:
            continue
        notify_user(
            db,
            ctx,
            entry.UserID,
            "WaitlistAvailable",
            f"The item \"{item_name}\" you were waiting for is now available. "
            f"You have {policy.waitlistNotificationHours} hours to claim it (until {deadline:%Y-%m-%d %H:%M}).",
            item_id=item_id,
            now=now,
        )
    return promoted


def expire_lapsed_notifications(
    db: Session,
    ctx: TenantContext,
    policy: LendingPolicy | None = None,
    now: datetime | None = None,
) -> dict:
    now = now or datetime.now()
    lapsed = db.execute(
        scoped(select(WaitlistEntry), WaitlistEntry, ctx)
        .where(WaitlistEntry.Status == "NOTIFIED")
        .where(WaitlistEntry.NotificationExpiresAt < now)
        .order_by(WaitlistEntry.EntryID)
    ).scalars().all()

    expired = 0
    touched_items: set[int] = set()
    for entry in lapsed:
        entry_id, item_id, user_id = entry.EntryID, entry.ItemID, entry.UserID
        try:
            item = lock_item(db, ctx, item_id, now)
            before, total = int(item.AvailableCount), int(item.TotalCount)
            entry.Status = "EXPIRED"
            entry.ExpiredAt = now
            release_units(db, ctx, item_id, 1)
            renumber_queue(db, ctx, item_id)
            db.commit()
            expired += 1
            touched_items.add(item_id)
        except Exception:
            db.rollback()
            WAITLIST_LOGGER.exception("Failed to expire waitlist entry %s", entry_id)
            continue
        log_availability_change(
            db,
            ctx,
            item_id,
            before,
            min(total, before + 1),
            "waitlist_notification_expired",
            {"entryID": entry_id},
            user_id=user_id,
        )

    promoted = 0
    if touched_items:
        policy = policy or load_policy(db, ctx)
    for item_id in sorted(touched_items):
        try:
            promoted += len(notify_waitlist_when_available(db, ctx, item_id, policy=policy, now=now))
        except Exception:
            db.rollback()
            WAITLIST_LOGGER.exception("Failed to promote waitlist for item %s", item_id)
    return {"expired": expired, "promoted": promoted}


def get_item_waitlist(db: Session, ctx: TenantContext, item_id: int, limit: int = 50, offset: int = 0) -> list[WaitlistEntry]:
    get_item(db, ctx, item_id)
    entries = ordered_entries(db, ctx, item_id)
    return entries[offset:offset + max(1, int(limit))]


def get_user_waitlist(db: Session, ctx: TenantContext, user_id: int, item_id: int | None = None) -> list[WaitlistEntry]:
    stmt = (
        scoped(select(WaitlistEntry), WaitlistEntry, ctx)
        .where(WaitlistEntry.UserID == user_id)
        .where(WaitlistEntry.Status.in_(list(ACTIVE_WAITLIST_STATES)))
    )
    if item_id is not None:
        stmt = stmt.where(WaitlistEntry.ItemID == item_id)
    return db.execute(stmt.order_by(WaitlistEntry.CreatedAt.desc())).scalars().all()


def get_waitlist_status(db: Session, ctx: TenantContext, item_id: int, user_id: int, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    entry = find_active_entry(db, ctx, item_id, user_id)
    return {
        "isOnWaitlist": entry is not None,
        "queuePosition": entry.QueuePosition if entry else None,
        "notified": bool(entry and entry.NotifiedAt),
        "notificationActive": bool(
            entry and entry.Status == "NOTIFIED" and entry.NotificationExpiresAt and entry.NotificationExpiresAt > now
        ),
    }


def get_waitlist_stats(db: Session, ctx: TenantContext) -> dict:
    counts = dict(
        db.execute(
            scoped(select(WaitlistEntry.Status, func.count(WaitlistEntry.EntryID)), WaitlistEntry, ctx)
            .group_by(WaitlistEntry.Status)
        ).all()
    )
    per_item = db.execute(
        scoped(select(WaitlistEntry.ItemID, func.count(WaitlistEntry.EntryID)), WaitlistEntry, ctx)
        .where(WaitlistEntry.Status.in_(list(ACTIVE_WAITLIST_STATES)))
        .group_by(WaitlistEntry.ItemID)
        .order_by(func.count(WaitlistEntry.EntryID).desc(), WaitlistEntry.ItemID)
    ).all()
    fulfilled = db.execute(
        scoped(select(WaitlistEntry.CreatedAt, WaitlistEntry.FulfilledAt), WaitlistEntry, ctx)
        .where(WaitlistEntry.Status == "FULFILLED")
        .where(WaitlistEntry.FulfilledAt.is_not(None))
        .order_by(WaitlistEntry.FulfilledAt.desc())
        .limit(100)
    ).all()

    avg_wait_days = 0
    if fulfilled:
        total_wait = sum(((done - created) for created, done in fulfilled), timedelta())
        avg_wait_days = int(total_wait / len(fulfilled) / timedelta(days=1))

    waiting = int(counts.get("WAITING", 0))
    notified = int(counts.get("NOTIFIED", 0))
    return {
        "totalWaitlistEntries": waiting + notified,
        "waiting": waiting,
        "notified": notified,
        "fulfilled": int(counts.get("FULFILLED", 0)),
        "expired": int(counts.get("EXPIRED", 0)),
        "cancelled": int(counts.get("CANCELLED", 0)),
        "itemsWithWaitlistCount": len(per_item),
        "avgWaitDays": avg_wait_days,
        "itemsWithWaitlist": [{"itemID": item_id, "count": int(count)} for item_id, count in per_item[:10]],
    }


def serialize_entry(entry: WaitlistEntry, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    return {
        "entryID": entry.EntryID,
        "itemID": entry.ItemID,
        "userID": entry.UserID,
        "queuePosition": entry.QueuePosition,
        "priority": entry.Priority,
        "notifyWhenAvailable": bool(entry.NotifyWhenAvailable),
        "notifiedAt": entry.NotifiedAt,
        "notificationExpiresAt": entry.NotificationExpiresAt,
        "status": entry.Status,
        "notes": entry.Notes,
        "createdAt": entry.CreatedAt,
        "fulfilledAt": entry.FulfilledAt,
        "isNotified": entry.NotifiedAt is not None,
        "notificationActive": bool(
            entry.Status == "NOTIFIED" and entry.NotificationExpiresAt and entry.NotificationExpiresAt > now
        ),
    }
