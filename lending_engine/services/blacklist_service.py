from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import Blacklist
from services.errors import Blacklisted, NotFound, ValidationError
from services.tenant import TenantContext, scoped


BLACKLIST_LOGGER = logging.getLogger("lending_engine.blacklist")


def get_active_blacklist(db: Session, ctx: TenantContext, user_id: int, now: datetime | None = None) -> Blacklist | None:
    now = now or datetime.now()
    return db.execute(
        scoped(select(Blacklist), Blacklist, ctx)
        .where(Blacklist.UserID == user_id)
        .where(Blacklist.IsActive.is_(True))
        .where(Blacklist.BlockedUntil >= now)
        .order_by(Blacklist.BlockedUntil.desc())
    ).scalars().first()


def ensure_not_blacklisted(db: Session, ctx: TenantContext, user_id: int, now: datetime | None = None) -> None:
    ban = get_active_blacklist(db, ctx, user_id, now)
    if ban:
        raise Blacklisted(f"User is currently blacklisted until {ban.BlockedUntil:%Y-%m-%d %H:%M}")


def create_blacklist(
    db: Session,
    ctx: TenantContext,
    user_id: int,
    reason: str,
    blocked_until: datetime,
    lending_id: int | None = None,
    now: datetime | None = None,
) -> Blacklist:
    """Stage a ban on the session; the caller owns the transaction."""
    ban = Blacklist(
        OrgID=ctx.orgID,
        InstanceID=ctx.instanceID,
        UserID=user_id,
        LendingID=lending_id,
        Reason=reason,
        BlockedUntil=blocked_until,
        IsActive=True,
        CreatedAt=now or datetime.now(),
    )
    db.add(ban)
    return ban


def stage_lending_blacklist(
    db: Session,
    ctx: TenantContext,
    user_id: int,
    lending_id: int,
    reason: str,
    blocked_until: datetime,
    now: datetime | None = None,
) -> Blacklist:
    """Stage the automatic ban for a lending, reusing the one already written for it.

    An existing ban takes the new reason and the later of the two end dates. A ban an
    administrator already lifted stays lifted.
    """
    ban = db.execute(
        scoped(select(Blacklist), Blacklist, ctx)
        .where(Blacklist.LendingID == lending_id)
        .order_by(Blacklist.BlacklistID)
    ).scalars().first()
    if ban is None:
        return create_blacklist(db, ctx, user_id, reason, blocked_until, lending_id=lending_id, now=now)

    ban.Reason = reason
    if ban.BlockedUntil is None or ban.BlockedUntil < blocked_until:
        ban.BlockedUntil = blocked_until
    if not ban.IsActive:
        BLACKLIST_LOGGER.info("Ban %s for lending %s was lifted; keeping it inactive", ban.BlacklistID, lending_id)
    return ban


def apply_blacklist(
    db: Session,
    ctx: TenantContext,
    user_id: int,
    reason: str,
    days_blocked: int,
    now: datetime | None = None,
) -> Blacklist:
    now = now or datetime.now()
    reason = (reason or "").strip()
    if not reason:
        raise ValidationError("Blacklist reason is required.")
    if int(days_blocked) < 1:
        raise ValidationError("daysBlocked must be at least 1.")

    try:
        ban = create_blacklist(db, ctx, user_id, reason, now + timedelta(days=int(days_blocked)), now=now)
        db.commit()
    except Exception:
        db.rollback()
        raise
    BLACKLIST_LOGGER.info("User %s blacklisted until %s: %s", user_id, ban.BlockedUntil, reason)
    return ban


def remove_blacklist(db: Session, ctx: TenantContext, blacklist_id: int, now: datetime | None = None) -> Blacklist:
    ban = db.execute(
        scoped(select(Blacklist), Blacklist, ctx).where(Blacklist.BlacklistID == blacklist_id)
    ).scalars().first()
    if not ban:
        raise NotFound("Blacklist entry not found")
    if not ban.IsActive:
        raise ValidationError("Blacklist entry is already inactive.")

    ban.IsActive = False
    ban.OverriddenBy = ctx.userID
    ban.OverriddenAt = now or datetime.now()
    db.commit()
    BLACKLIST_LOGGER.info("Blacklist %s lifted by %s", blacklist_id, ctx.userID)
    return ban


def list_blacklists(db: Session, ctx: TenantContext, user_id: int | None = None, active_only: bool = False, now: datetime | None = None) -> list[Blacklist]:
    stmt = scoped(select(Blacklist), Blacklist, ctx)
    if user_id is not None:
        stmt = stmt.where(Blacklist.UserID == user_id)
    if active_only:
        stmt = stmt.where(Blacklist.IsActive.is_(True)).where(Blacklist.BlockedUntil >= (now or datetime.now()))
    return db.execute(stmt.order_by(Blacklist.CreatedAt.desc())).scalars().all()


def serialize_blacklist(ban: Blacklist) -> dict:
    return {
        "blacklistID": ban.BlacklistID,
        "userID": ban.UserID,
        "lendingID": ban.LendingID,
        "reason": ban.Reason,
        "blockedUntil": ban.BlockedUntil,
        "isActive": bool(ban.IsActive),
        "overriddenBy": ban.OverriddenBy,
        "overriddenAt": ban.OverriddenAt,
        "createdAt": ban.CreatedAt,
    }
