from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import ItemHistory, NotificationQueue
from services.tenant import TenantContext, scoped


HISTORY_LOGGER = logging.getLogger("lending_engine.history")

HISTORY_ACTIONS = {
    "created",
    "updated",
    "borrowed",
    "returned",
    "reserved",
    "cancelled",
    "approved",
    "rejected",
    "availability_changed",
}


def _dump(details: dict[str, Any] | None) -> str | None:
    if not details:
        return None
    return json.dumps(details, default=str, ensure_ascii=True)


def log_item_event(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    action: str,
    details: dict[str, Any] | None = None,
    user_id: int | None = None,
) -> None:
    """Append to the item history. Runs after the business commit; failures are logged only."""
    if action not in HISTORY_ACTIONS:
        HISTORY_LOGGER.warning("Unknown history action %r for item %s", action, item_id)
    try:
        db.add(
            ItemHistory(
                OrgID=ctx.orgID,
                InstanceID=ctx.instanceID,
                ItemID=item_id,
                UserID=user_id,
                Action=action,
                Details=_dump(details),
                CreatedAt=datetime.now(),
            )
        )
        db.commit()
    except Exception:
        db.rollback()
        HISTORY_LOGGER.exception("Failed to log %s for item %s", action, item_id)


def log_availability_change(
    db: Session,
    ctx: TenantContext,
    item_id: int,
    previous: int,
    current: int,
    reason: str,
    details: dict[str, Any] | None = None,
    user_id: int | None = None,
) -> None:
    """Record a ledger movement made by the clock rather than by a user request."""
    if previous == current:
        return
    payload = {"oldAvailable": previous, "newAvailable": current, "reason": reason}
    payload.update(details or {})
    log_item_event(db, ctx, item_id, "availability_changed", payload, user_id=user_id)


def notify_user(
    db: Session,
    ctx: TenantContext,
    user_id: int,
    notification_type: str,
    payload: str,
    item_id: int | None = None,
    lending_id: int | None = None,
    now: datetime | None = None,
) -> bool:
    """Queue a notification for the delivery collaborator. Returns False when queueing failed."""
    try:
        db.add(
            NotificationQueue(
                OrgID=ctx.orgID,
                InstanceID=ctx.instanceID,
                UserID=user_id,
                ItemID=item_id,
                LendingID=lending_id,
                NotificationType=notification_type,
                Payload=payload,
                CreatedAt=now or datetime.now(),
            )
        )
        db.commit()
        return True
    except Exception:
        db.rollback()
        HISTORY_LOGGER.exception("Failed to queue %s notification for user %s", notification_type, user_id)
        return False


def get_item_history(db: Session, ctx: TenantContext, item_id: int, action: str | None = None, limit: int = 50) -> list[dict]:
    stmt = scoped(select(ItemHistory), ItemHistory, ctx).where(ItemHistory.ItemID == item_id)
    if action:
        stmt = stmt.where(ItemHistory.Action == action)
    rows = db.execute(
        stmt.order_by(ItemHistory.HistoryID.desc()).limit(max(1, int(limit)))
    ).scalars().all()
    return [
        {
            "historyID": row.HistoryID,
            "itemID": row.ItemID,
            "userID": row.UserID,
            "action": row.Action,
            "details": json.loads(row.Details) if row.Details else {},
            "createdAt": row.CreatedAt,
        }
        for row in rows
    ]


def get_pending_notifications(db: Session, ctx: TenantContext) -> list[dict]:
    rows = db.execute(
        scoped(select(NotificationQueue), NotificationQueue, ctx)
        .where(NotificationQueue.SentAt.is_(None))
        .order_by(NotificationQueue.NotificationID)
    ).scalars().all()
    return [
        {
            "notificationID": n.NotificationID,
            "userID": n.UserID,
            "itemID": n.ItemID,
            "lendingID": n.LendingID,
            "type": n.NotificationType,
            "payload": n.Payload,
            "createdAt": n.CreatedAt,
        }
        for n in rows
    ]
