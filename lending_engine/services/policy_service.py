from __future__ import annotations

import logging
import os
from decimal import Decimal

from pydantic import BaseModel, ConfigDict
from sqlalchemy import select
from sqlalchemy.orm import Session

from models.lending_models import OrgConfiguration
from services.tenant import TenantContext


POLICY_LOGGER = logging.getLogger("lending_engine.policy")


def _env_decimal(name: str, default: str) -> Decimal:
    raw = (os.environ.get(name) or default).strip()
    try:
        return Decimal(raw)
    except ArithmeticError:
        POLICY_LOGGER.warning("Invalid %s=%r, using default %s", name, raw, default)
        return Decimal(default)


def _env_int(name: str, default: int) -> int:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        POLICY_LOGGER.warning("Invalid %s=%r, using default %s", name, raw, default)
        return default


def _env_flag(name: str, default: str = "false") -> bool:
    return str(os.environ.get(name, default)).strip().lower() in {"1", "true", "yes", "on"}


class LendingPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    latePenaltyPerDay: Decimal = Decimal("1.0")
    blacklistDaysPerLateDay: int = 3
    requireApproval: bool = False
    reservationHoldHours: int = 24
    waitlistNotificationHours: int = 24
    dueReminderDays: int = 3


def default_policy() -> LendingPolicy:
    return LendingPolicy(
        latePenaltyPerDay=_env_decimal("LATE_PENALTY_PER_DAY", "1.0"),
        blacklistDaysPerLateDay=_env_int("BLACKLIST_DAYS_PER_LATE_DAY", 3),
        requireApproval=_env_flag("REQUIRE_APPROVAL"),
        reservationHoldHours=_env_int("RESERVATION_HOLD_HOURS", 24),
        waitlistNotificationHours=_env_int("WAITLIST_NOTIFICATION_HOURS", 24),
        dueReminderDays=_env_int("DUE_REMINDER_DAYS", 3),
    )


def load_policy(db: Session, ctx: TenantContext) -> LendingPolicy:
    """Environment defaults overlaid with the tenant's OrgConfiguration row, if any.

    An instance-specific row wins over an organization-wide one (InstanceID NULL).
    """
    base = default_policy()
    rows = db.execute(
        select(OrgConfiguration).where(OrgConfiguration.OrgID == ctx.orgID)
    ).scalars().all()

    config = None
    for row in rows:
        if ctx.instanceID is not None and row.InstanceID == ctx.instanceID:
            config = row
            break
        if row.InstanceID is None and config is None:
            config = row
    if config is None:
        return base

    overrides = {}
    if config.LatePenaltyPerDay is not None:
        overrides["latePenaltyPerDay"] = Decimal(str(config.LatePenaltyPerDay))
    if config.BlacklistDaysPerLateDay is not None:
        overrides["blacklistDaysPerLateDay"] = int(config.BlacklistDaysPerLateDay)
    if config.RequireApproval is not None:
        overrides["requireApproval"] = bool(config.RequireApproval)
    if config.ReservationHoldHours is not None:
        overrides["reservationHoldHours"] = int(config.ReservationHoldHours)
    if config.WaitlistNotificationHours is not None:
        overrides["waitlistNotificationHours"] = int(config.WaitlistNotificationHours)
    if config.DueReminderDays is not None:
        overrides["dueReminderDays"] = int(config.DueReminderDays)
    return base.model_copy(update=overrides)


def serialize_policy(policy: LendingPolicy) -> dict:
    payload = policy.model_dump()
    payload["latePenaltyPerDay"] = float(policy.latePenaltyPerDay)
    return payload
