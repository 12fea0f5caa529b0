from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import Blacklist, Item, Lending, NotificationQueue
from services.blacklist_service import create_blacklist
from services.history_service import notify_user
from services.lending_service import days_late
from services.policy_service import LendingPolicy, load_policy
from services.reservation_service import sweep_expired_holds
from services.tenant import TenantContext, scoped


JOB_LOGGER = logging.getLogger("lending_engine.jobs")


def expire_holds(db: Session, ctx: TenantContext, policy: LendingPolicy | None = None, now: datetime | None = None) -> dict:
    return sweep_expired_holds(db, ctx, policy=policy, now=now)


def _item_names(db: Session, ctx: TenantContext, item_ids) -> dict[int, str]:
    if not item_ids:
        return {}
    rows = db.execute(
        scoped(select(Item.ItemID, Item.Name), Item, ctx).where(Item.ItemID.in_(list(item_ids)))
    ).all()
    return {item_id: name for item_id, name in rows}


def check_overdue(db: Session, ctx: TenantContext, policy: LendingPolicy | None = None, now: datetime | None = None) -> dict:
    """Notify borrowers of overdue lendings and ban each once per lending."""
    now = now or datetime.now()
    policy = policy or load_policy(db, ctx)
    overdue = db.execute(
        scoped(select(Lending), Lending, ctx)
        .where(Lending.ReturnedAt.is_(None))
        .where(Lending.DueDate < now)
        .order_by(Lending.DueDate)
    ).scalars().all()
    names = _item_names(db, ctx, {l.ItemID for l in overdue})

    notified = 0
    blacklisted = 0
    failed = 0
    for lending in overdue:
        lending_id = lending.LendingID
        try:
            late = max(1, days_late(lending.DueDate, now))
            has_ban = db.execute(
                scoped(select(Blacklist.BlacklistID), Blacklist, ctx).where(Blacklist.LendingID == lending_id)
            ).first()
            if not has_ban:
                create_blacklist(
                    db,
                    ctx,
                    lending.BorrowerID,
                    f"Overdue lending: {late} days",
                    now + timedelta(days=late * policy.blacklistDaysPerLateDay),
                    lending_id=lending_id,
                    now=now,
                )
                db.commit()
                blacklisted += 1
            if notify_user(
                db,
                ctx,
                lending.BorrowerID,
                "Overdue",
                f"\"{names.get(lending.ItemID, lending.ItemID)}\" was due on {lending.DueDate:%Y-%m-%d} "
                f"and is {late} day(s) overdue. Please return it as soon as possible.",
                item_id=lending.ItemID,
                lending_id=lending_id,
                now=now,
            ):
                notified += 1
        except Exception:
            db.rollback()
            failed += 1
            JOB_LOGGER.exception("Overdue check failed for lending %s", lending_id)

    if overdue:
        JOB_LOGGER.info("Overdue check: %s overdue, %s notified, %s blacklisted", len(overdue), notified, blacklisted)
    return {"overdue": len(overdue), "notified": notified, "blacklisted": blacklisted, "failed": failed}


def send_due_reminders(db: Session, ctx: TenantContext, policy: LendingPolicy | None = None, now: datetime | None = None) -> dict:
    now = now or datetime.now()
    policy = policy or load_policy(db, ctx)
    horizon = now + timedelta(days=policy.dueReminderDays)
    day_start = now.replace(hour=0, minute=0, second=0, microsecond=0)

    due_soon = db.execute(
        scoped(select(Lending), Lending, ctx)
        .where(Lending.ReturnedAt.is_(None))
        .where(Lending.DueDate >= now)
        .where(Lending.DueDate <= horizon)
        .order_by(Lending.DueDate)
    ).scalars().all()
    names = _item_names(db, ctx, {l.ItemID for l in due_soon})

    sent = 0
    skipped = 0
    failed = 0
    for lending in due_soon:
        lending_id = lending.LendingID
        try:
            already_sent = db.execute(
                scoped(select(NotificationQueue.NotificationID), NotificationQueue, ctx)
                .where(NotificationQueue.LendingID == lending_id)
                .where(NotificationQueue.NotificationType == "DueSoon")
                .where(NotificationQueue.CreatedAt >= day_start)
            ).first()
            if already_sent:
                skipped += 1
                continue
            if notify_user(
                db,
                ctx,
                lending.BorrowerID,
                "DueSoon",
                f"\"{names.get(lending.ItemID, lending.ItemID)}\" is due on {lending.DueDate:%Y-%m-%d %H:%M}.",
                item_id=lending.ItemID,
                lending_id=lending_id,
                now=now,
            ):
                sent += 1
            else:
                failed += 1
        except Exception:
            db.rollback()
            failed += 1
            JOB_LOGGER.exception("Due reminder failed for lending %s", lending_id)

    return {"dueSoon": len(due_soon), "sent": sent, "skipped": skipped, "failed": failed}
