from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy import func, select


STAFF_ROLES = {"ADMIN", "STAFF"}


class TenantContext(BaseModel):
    model_config = ConfigDict(frozen=True)

    orgID: int
    instanceID: Optional[int] = None
    userID: Optional[int] = None
    role: str = "USER"

    @property
    def is_admin(self) -> bool:
        return self.role == "ADMIN"

    @property
    def is_staff(self) -> bool:
        return self.role in STAFF_ROLES


def scoped(stmt, model, ctx: TenantContext):
    """Restrict a select/update statement to the caller's organization and instance."""
    stmt = stmt.where(model.OrgID == ctx.orgID)
    if ctx.instanceID is not None:
        stmt = stmt.where(model.InstanceID == ctx.instanceID)
    return stmt


def paginate(db, stmt, page: int = 1, limit: int = 20) -> dict:
    """Run ``stmt`` for one page and return the rows with paging metadata."""
    page = max(1, int(page or 1))
    limit = min(100, max(1, int(limit or 20)))
    total = db.execute(select(func.count()).select_from(stmt.order_by(None).subquery())).scalar_one()
    rows = db.execute(stmt.limit(limit).offset((page - 1) * limit)).scalars().all()
    return {
        "rows": rows,
        "total": int(total),
        "page": page,
        "limit": limit,
        "totalPages": (int(total) + limit - 1) // limit,
    }
