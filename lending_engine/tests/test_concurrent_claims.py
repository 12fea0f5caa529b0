import tempfile
import threading
import unittest
from datetime import timedelta

from sqlalchemy import select, text

from engine_fixtures import NOW, POLICY, STAFF, available_count, make_file_engine, seed_item

from db.deps import get_lending_db
from models.lending_models import Lending, Reservation
from services import lending_service, reservation_service
from services.errors import InsufficientAvailability, LendingError
from services.ledger_service import get_item, ledger_report, take_units


class ConcurrentClaimTests(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.engine, self.Session = make_file_engine(self.tmp.name)
        with self.Session() as db:
            self.item_id = seed_item(db, total=1, name="Oscilloscope")

    def tearDown(self):
        self.engine.dispose()
        self.tmp.cleanup()

    def _race(self, claims):
        barrier = threading.Barrier(len(claims))
        outcomes = []
        guard = threading.Lock()

        def worker(claim):
            db = self.Session()
            try:
                barrier.wait()
                claim(db)
                outcome = "ok"
            except LendingError as exc:
                outcome = type(exc).__name__
            except Exception as exc:
                outcome = f"error:{type(exc).__name__}"
            finally:
                db.close()
            with guard:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker, args=(claim,)) for claim in claims]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=60)
        return outcomes

    def _checkout(self, user_id):
        def claim(db):
            lending_service.checkout(db, STAFF, self.item_id, user_id, NOW + timedelta(days=2), now=NOW)

        return claim

    def _reserve(self, user_id):
        def claim(db):
            reservation_service.create_reservation(db, STAFF, self.item_id, user_id, NOW, policy=POLICY, now=NOW)

        return claim

    def test_simultaneous_claims_on_last_unit_admit_exactly_one(self):
        claims = [self._checkout(700 + n) for n in range(4)] + [self._reserve(800 + n) for n in range(4)]

        outcomes = self._race(claims)

        self.assertEqual(len(outcomes), 8)
        self.assertEqual(outcomes.count("ok"), 1, outcomes)
        self.assertEqual(outcomes.count("InsufficientAvailability"), 7, outcomes)
        with self.Session() as db:
            self.assertEqual(available_count(db, self.item_id), 0)
            lendings = db.execute(select(Lending.LendingID)).scalars().all()
            holds = db.execute(select(Reservation.ReservationID)).scalars().all()
            self.assertEqual(len(lendings) + len(holds), 1)
            self.assertTrue(ledger_report(db, STAFF, get_item(db, STAFF, self.item_id))["inSync"])

    def test_take_from_stale_snapshot_is_refused(self):
        stale = self.Session()
        fresh = self.Session()
        try:
            snapshot = get_item(stale, STAFF, self.item_id)
            self.assertEqual(snapshot.AvailableCount, 1)

            take_units(fresh, STAFF, self.item_id, 1)
            fresh.commit()

            self.assertEqual(snapshot.AvailableCount, 1)
            with self.assertRaises(InsufficientAvailability):
                take_units(stale, STAFF, self.item_id, 1)
            stale.rollback()
            self.assertEqual(available_count(fresh, self.item_id), 0)
        finally:
            stale.close()
            fresh.close()


class SessionPlumbingTests(unittest.TestCase):
    def test_sqlite_connections_wait_on_the_write_lock(self):
        with tempfile.TemporaryDirectory() as directory:
            engine, _ = make_file_engine(directory)
            try:
                with engine.connect() as conn:
                    self.assertEqual(conn.exec_driver_sql("PRAGMA busy_timeout").scalar(), 30000)
            finally:
                engine.dispose()

    def test_failed_request_session_is_rolled_back_and_closed(self):
        requests = get_lending_db()
        db = next(requests)
        db.execute(text("SELECT 1"))
        self.assertTrue(db.in_transaction())

        with self.assertRaises(RuntimeError):
            requests.throw(RuntimeError("request failed"))
        self.assertFalse(db.in_transaction())


if __name__ == "__main__":
    unittest.main()
