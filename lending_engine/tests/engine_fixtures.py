import os
import sys
from datetime import datetime
from pathlib import Path

from sqlalchemy.pool import StaticPool


os.environ.setdefault("LENDING_DB_URL", "sqlite+pysqlite:///:memory:")

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from db.base import Base
from db.session import build_engine, make_session_factory
from models.lending_models import Item
from services.ledger_service import get_item
from services.policy_service import LendingPolicy
from services.tenant import TenantContext


NOW = datetime(2025, 1, 10, 9, 0)
POLICY = LendingPolicy()

STAFF = TenantContext(orgID=1, instanceID=10, userID=900, role="STAFF")
OTHER_ORG = TenantContext(orgID=2, instanceID=20, userID=901, role="ADMIN")


def make_session():
    engine = build_engine("sqlite+pysqlite:///:memory:", poolclass=StaticPool)
    Base.metadata.create_all(engine)
    return make_session_factory(engine)()


def make_file_engine(directory):
    """File-backed engine whose pooled connections can be used from separate threads."""
    engine = build_engine(f"sqlite+pysqlite:///{Path(directory) / 'lending.db'}")
    Base.metadata.create_all(engine)
    return engine, make_session_factory(engine)


def seed_item(db, ctx: TenantContext = STAFF, total: int = 1, available: int | None = None, name: str = "Projector") -> int:
    item = Item(
        OrgID=ctx.orgID,
        InstanceID=ctx.instanceID,
        Name=name,
        TotalCount=total,
        AvailableCount=total if available is None else available,
        CreatedDate=NOW,
        UpdatedDate=NOW,
    )
    db.add(item)
    db.commit()
    return item.ItemID


def available_count(db, item_id: int, ctx: TenantContext = STAFF) -> int:
    return int(get_item(db, ctx, item_id, refresh=True).AvailableCount)
