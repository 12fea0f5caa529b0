import unittest
from datetime import datetime, timedelta

from fastapi.testclient import TestClient

from engine_fixtures import STAFF, make_session, seed_item

import LendingApp as app_module
from models.lending_models import OrgConfiguration


def _headers(user_id, role="USER", org_id=STAFF.orgID, instance_id=STAFF.instanceID):
    headers = {"X-Org-ID": str(org_id), "X-User-ID": str(user_id), "X-User-Role": role}
    if instance_id is not None:
        headers["X-Instance-ID"] = str(instance_id)
    return headers


USER = _headers(601)
OTHER_USER = _headers(602)
STAFF_HEADERS = _headers(900, role="STAFF")
ADMIN_HEADERS = _headers(999, role="ADMIN")


class ApiFlowTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        app_module.app.dependency_overrides[app_module.get_lending_db] = lambda: self.db
        self.client = TestClient(app_module.app)
        self.item_id = seed_item(self.db, total=1, name="Microscope")

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        self.db.close()

    def _due(self, days=3):
        return (datetime.now() + timedelta(days=days)).replace(microsecond=0).isoformat()

    def test_healthchecks(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_tenant_header_is_required(self):
        response = self.client.get(f"/api/items/{self.item_id}")
        self.assertEqual(response.status_code, 401)

    def test_checkout_return_and_waitlist_flow(self):
        lent = self.client.post("/api/lendings", json={"itemID": self.item_id, "dueDate": self._due()}, headers=USER)
        self.assertEqual(lent.status_code, 200)
        lending_id = lent.json()["lendingID"]
        self.assertTrue(lent.json()["isActive"])

        taken = self.client.post("/api/lendings", json={"itemID": self.item_id, "dueDate": self._due()}, headers=OTHER_USER)
        self.assertEqual(taken.status_code, 409)
        self.assertEqual(taken.json()["error"], "insufficient_availability")

        joined = self.client.post("/api/waitlist", json={"itemID": self.item_id}, headers=OTHER_USER)
        self.assertEqual(joined.status_code, 200)
        self.assertEqual(joined.json()["queuePosition"], 1)

        self.assertEqual(self.client.post(f"/api/lendings/{lending_id}/return", headers=USER).status_code, 403)
        returned = self.client.post(f"/api/lendings/{lending_id}/return", headers=STAFF_HEADERS)
        self.assertEqual(returned.status_code, 200)
        body = returned.json()
        self.assertEqual(body["penalty"]["daysLate"], 0)
        self.assertEqual([entry["userID"] for entry in body["notifiedWaitlistEntries"]], [602])

        status = self.client.get(f"/api/waitlist/check/{self.item_id}", headers=OTHER_USER).json()
        self.assertTrue(status["notificationActive"])

        item = self.client.get(f"/api/items/{self.item_id}", headers=STAFF_HEADERS).json()
        self.assertEqual(item["availableCount"], 0)
        self.assertTrue(item["ledger"]["inSync"])

    def test_users_cannot_act_for_others(self):
        response = self.client.post(
            "/api/lendings",
            json={"itemID": self.item_id, "borrowerID": 777, "dueDate": self._due()},
            headers=USER,
        )
        self.assertEqual(response.status_code, 403)

        on_behalf = self.client.post(
            "/api/lendings",
            json={"itemID": self.item_id, "borrowerID": 777, "dueDate": self._due()},
            headers=STAFF_HEADERS,
        )
        self.assertEqual(on_behalf.status_code, 200)
        self.assertEqual(on_behalf.json()["borrowerID"], 777)

    def test_approval_gate_defers_checkout(self):
        self.db.add(OrgConfiguration(OrgID=STAFF.orgID, InstanceID=STAFF.instanceID, RequireApproval=True))
        self.db.commit()

        deferred = self.client.post("/api/lendings", json={"itemID": self.item_id, "dueDate": self._due()}, headers=USER)
        self.assertEqual(deferred.status_code, 202)
        approval = deferred.json()["approval"]
        self.assertEqual(approval["status"], "PENDING")

        denied = self.client.post(
            f"/api/approvals/{approval['approvalID']}/decision", json={"decision": "approve"}, headers=USER
        )
        self.assertEqual(denied.status_code, 403)
        decided = self.client.post(
            f"/api/approvals/{approval['approvalID']}/decision", json={"decision": "approve"}, headers=STAFF_HEADERS
        )
        self.assertEqual(decided.json()["status"], "APPROVED")

        executed = self.client.post(f"/api/approvals/{approval['approvalID']}/execute", headers=USER)
        self.assertEqual(executed.status_code, 200)
        self.assertIsNotNone(executed.json()["resultEntityID"])

        again = self.client.post(f"/api/approvals/{approval['approvalID']}/execute", headers=USER)
        self.assertEqual(again.status_code, 409)

    def test_penalty_override_is_admin_only(self):
        lent = self.client.post("/api/lendings", json={"itemID": self.item_id, "dueDate": self._due()}, headers=USER)
        lending_id = lent.json()["lendingID"]
        self.client.post(f"/api/lendings/{lending_id}/return", headers=STAFF_HEADERS)

        forbidden = self.client.post(f"/api/lendings/{lending_id}/penalty", json={"penalty": 0}, headers=STAFF_HEADERS)
        self.assertEqual(forbidden.status_code, 403)
        overridden = self.client.post(
            f"/api/lendings/{lending_id}/penalty", json={"penalty": 4, "reason": "Damaged case"}, headers=ADMIN_HEADERS
        )
        self.assertEqual(overridden.status_code, 200)
        self.assertTrue(overridden.json()["penaltyOverridden"])
        self.assertEqual(overridden.json()["penalty"], 4.0)

    def test_reservation_cancel_and_availability(self):
        reserved = self.client.post("/api/reservations", json={"itemID": self.item_id}, headers=USER)
        self.assertEqual(reserved.status_code, 200)
        self.assertTrue(reserved.json()["holdsStock"])

        availability = self.client.get(f"/api/reservations/availability/{self.item_id}", headers=USER).json()
        self.assertFalse(availability["isAvailable"])

        self.assertEqual(
            self.client.post(f"/api/reservations/{reserved.json()['reservationID']}/cancel", headers=OTHER_USER).status_code,
            403,
        )
        cancelled = self.client.post(f"/api/reservations/{reserved.json()['reservationID']}/cancel", headers=USER)
        self.assertEqual(cancelled.json()["status"], "CANCELLED")
        self.assertTrue(self.client.get(f"/api/reservations/availability/{self.item_id}", headers=USER).json()["isAvailable"])

    def test_blacklist_routes(self):
        created = self.client.post(
            "/api/blacklist", json={"userID": 601, "reason": "Lost adapter", "daysBlocked": 3}, headers=STAFF_HEADERS
        )
        self.assertEqual(created.status_code, 200)

        blocked = self.client.post("/api/lendings", json={"itemID": self.item_id, "dueDate": self._due()}, headers=USER)
        self.assertEqual(blocked.status_code, 403)
        self.assertEqual(blocked.json()["error"], "blacklisted")

        self.assertEqual(self.client.delete(f"/api/blacklist/{created.json()['blacklistID']}", headers=STAFF_HEADERS).status_code, 403)
        lifted = self.client.delete(f"/api/blacklist/{created.json()['blacklistID']}", headers=ADMIN_HEADERS)
        self.assertFalse(lifted.json()["isActive"])
        self.assertFalse(self.client.get("/api/blacklist/check/601", headers=USER).json()["isBlacklisted"])


if __name__ == "__main__":
    unittest.main()
