import sys
import unittest
from datetime import timedelta

from sqlalchemy import update

from engine_fixtures import APP_DIR, NOW, POLICY, STAFF, make_session, seed_item

from models.lending_models import Item
from services import job_service, lending_service
from services.blacklist_service import get_active_blacklist, list_blacklists, remove_blacklist
from services.history_service import get_pending_notifications

if str(APP_DIR / "scripts") not in sys.path:
    sys.path.insert(0, str(APP_DIR / "scripts"))

import ledger_audit


BORROWER = 501


class JobTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.item_id = seed_item(self.db, total=2, name="Laptop")

    def tearDown(self):
        self.db.close()

    def test_overdue_lendings_are_banned_once(self):
        lending = lending_service.checkout(self.db, STAFF, self.item_id, BORROWER, NOW + timedelta(days=1), now=NOW)
        later = NOW + timedelta(days=3)

        first = job_service.check_overdue(self.db, STAFF, policy=POLICY, now=later)
        second = job_service.check_overdue(self.db, STAFF, policy=POLICY, now=later + timedelta(hours=1))

        self.assertEqual(first, {"overdue": 1, "notified": 1, "blacklisted": 1, "failed": 0})
        self.assertEqual(second["blacklisted"], 0)
        self.assertEqual(second["notified"], 1)
        bans = list_blacklists(self.db, STAFF, user_id=BORROWER)
        self.assertEqual(len(bans), 1)
        self.assertEqual(bans[0].LendingID, lending.LendingID)
        self.assertEqual(bans[0].BlockedUntil, later + timedelta(days=2 * POLICY.blacklistDaysPerLateDay))
        kinds = [n["type"] for n in get_pending_notifications(self.db, STAFF)]
        self.assertEqual(kinds, ["Overdue", "Overdue"])

    def test_late_return_updates_the_overdue_ban(self):
        lending = lending_service.checkout(self.db, STAFF, self.item_id, BORROWER, NOW + timedelta(days=1), now=NOW)
        job_service.check_overdue(self.db, STAFF, policy=POLICY, now=NOW + timedelta(days=3))

        lending_service.return_item(self.db, STAFF, lending.LendingID, policy=POLICY, now=NOW + timedelta(days=6))

        bans = list_blacklists(self.db, STAFF, user_id=BORROWER)
        self.assertEqual(len(bans), 1)
        self.assertEqual(bans[0].Reason, "Late return: 5 days")
        self.assertEqual(bans[0].BlockedUntil, NOW + timedelta(days=6 + 5 * POLICY.blacklistDaysPerLateDay))
        self.assertTrue(bans[0].IsActive)

    def test_late_return_keeps_a_lifted_ban_lifted(self):
        lending = lending_service.checkout(self.db, STAFF, self.item_id, BORROWER, NOW + timedelta(days=1), now=NOW)
        job_service.check_overdue(self.db, STAFF, policy=POLICY, now=NOW + timedelta(days=3))
        ban = list_blacklists(self.db, STAFF, user_id=BORROWER)[0]
        remove_blacklist(self.db, STAFF, ban.BlacklistID, now=NOW + timedelta(days=4))

        lending_service.return_item(self.db, STAFF, lending.LendingID, policy=POLICY, now=NOW + timedelta(days=6))

        bans = list_blacklists(self.db, STAFF, user_id=BORROWER)
        self.assertEqual(len(bans), 1)
        self.assertFalse(bans[0].IsActive)
        self.assertIsNone(get_active_blacklist(self.db, STAFF, BORROWER, NOW + timedelta(days=7)))

    def test_due_reminders_go_out_once_per_day(self):
        lending_service.checkout(self.db, STAFF, self.item_id, BORROWER, NOW + timedelta(days=2), now=NOW)
        lending_service.checkout(self.db, STAFF, self.item_id, BORROWER + 1, NOW + timedelta(days=10), now=NOW)

        first = job_service.send_due_reminders(self.db, STAFF, policy=POLICY, now=NOW + timedelta(hours=1))
        again = job_service.send_due_reminders(self.db, STAFF, policy=POLICY, now=NOW + timedelta(hours=3))
        next_day = job_service.send_due_reminders(self.db, STAFF, policy=POLICY, now=NOW + timedelta(days=1))

        self.assertEqual(first, {"dueSoon": 1, "sent": 1, "skipped": 0, "failed": 0})
        self.assertEqual(again["skipped"], 1)
        self.assertEqual(again["sent"], 0)
        self.assertEqual(next_day["sent"], 1)

    def test_expire_holds_reports_counters(self):
        result = job_service.expire_holds(self.db, STAFF, policy=POLICY, now=NOW)
        self.assertEqual(
            result,
            {"expiredReservations": 0, "activatedReservations": 0, "expiredNotifications": 0, "promotedWaitlistEntries": 0},
        )


class LedgerAuditTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()

    def tearDown(self):
        self.db.close()

    def test_audit_flags_drifted_items(self):
        healthy = seed_item(self.db, total=2, name="Drill")
        drifted = seed_item(self.db, total=2, name="Saw")
        lending_service.checkout(self.db, STAFF, healthy, BORROWER, NOW + timedelta(days=1), now=NOW)
        self.db.execute(update(Item).where(Item.ItemID == drifted).values(AvailableCount=1))
        self.db.commit()

        results = {row.name.rsplit("/", 1)[-1]: row for row in ledger_audit.run_audit(self.db)}

        self.assertTrue(results[str(healthy)].ok)
        self.assertFalse(results[str(drifted)].ok)
        self.assertIn("expected=2", results[str(drifted)].detail)

    def test_cli_requires_a_database_url(self):
        self.assertEqual(ledger_audit.main(["--db-url", ""]), 2)


if __name__ == "__main__":
    unittest.main()
