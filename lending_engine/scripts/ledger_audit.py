#!/usr/bin/env python3
"""Ledger reconciliation for the lending engine.

For every item, compares AvailableCount with what the open lendings and
stock-holding holds say it should be.
"""

from __future__ import annotations

import argparse
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from sqlalchemy import create_engine, select, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

APP_DIR = Path(__file__).resolve().parents[1]
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

from models.lending_models import Item
from services.ledger_service import ledger_report
from services.tenant import TenantContext


@dataclass
class CheckResult:
    name: str
    ok: bool
    detail: str


def _print_section(title: str) -> None:
    print(f"\n=== {title} ===")


def _get_engine(db_url: str) -> Engine:
    return create_engine(db_url, pool_pre_ping=True, future=True)


def run_audit(db: Session, org_id: int | None = None) -> list[CheckResult]:
    stmt = select(Item).order_by(Item.OrgID, Item.InstanceID, Item.ItemID)
    if org_id is not None:
        stmt = stmt.where(Item.OrgID == org_id)

    results: list[CheckResult] = []
    for item in db.execute(stmt).scalars().all():
        ctx = TenantContext(orgID=item.OrgID, instanceID=item.InstanceID)
        report = ledger_report(db, ctx, item)
        results.append(
            CheckResult(
                f"item:{item.OrgID}/{item.InstanceID or '-'}/{item.ItemID}",
                report["inSync"],
                (
                    f"total={report['totalCount']} available={report['availableCount']} "
                    f"lent={report['activeLendingUnits']} held={report['heldUnits']} "
                    f"expected={report['expectedAvailable']}"
                ),
            )
        )
    return results


def _print_results(title: str, rows: Iterable[CheckResult]) -> None:
    _print_section(title)
    for row in rows:
        status = "OK" if row.ok else "DRIFT"
        print(f"[{status}] {row.name} :: {row.detail}")


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Lending engine ledger audit")
    parser.add_argument("--db-url", default=os.environ.get("LENDING_DB_URL", ""))
    parser.add_argument("--org-id", type=int, default=None)
    args = parser.parse_args(argv)

    db_url = (args.db_url or "").strip()
    if not db_url:
        print("LENDING_DB_URL is not set. Provide --db-url or export env first.")
        return 2

    try:
        engine = _get_engine(db_url)
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
    except Exception as exc:
        print(f"Could not connect to DB: {exc}")
        return 3

    with Session(engine) as db:
        results = run_audit(db, org_id=args.org_id)
    _print_results("Item Ledger", results)

    drifted = [row for row in results if not row.ok]
    _print_section("Summary")
    print(f"items={len(results)} drifted={len(drifted)}")
    return 1 if drifted else 0


if __name__ == "__main__":
    sys.exit(main())
