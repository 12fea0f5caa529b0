import unittest
from datetime import timedelta

from engine_fixtures import NOW, OTHER_ORG, POLICY, STAFF, available_count, make_session, seed_item

from models.lending_models import OrgConfiguration
from services import approval_service, blacklist_service, lending_service
from services.errors import AlreadyExists, Conflict, Forbidden, NotFound, ValidationError
from services.policy_service import load_policy
from services.tenant import TenantContext


REQUESTER = 401
OUTSIDER = 402


class BlacklistTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()

    def tearDown(self):
        self.db.close()

    def test_manual_ban_validation(self):
        with self.assertRaises(ValidationError):
            blacklist_service.apply_blacklist(self.db, STAFF, REQUESTER, "  ", 3, now=NOW)
        with self.assertRaises(ValidationError):
            blacklist_service.apply_blacklist(self.db, STAFF, REQUESTER, "Lost charger", 0, now=NOW)

    def test_ban_expires_with_time(self):
        blacklist_service.apply_blacklist(self.db, STAFF, REQUESTER, "Lost charger", 2, now=NOW)
        self.assertIsNotNone(blacklist_service.get_active_blacklist(self.db, STAFF, REQUESTER, NOW + timedelta(days=1)))
        self.assertIsNone(blacklist_service.get_active_blacklist(self.db, STAFF, REQUESTER, NOW + timedelta(days=3)))

    def test_lifting_a_ban_keeps_the_record(self):
        ban = blacklist_service.apply_blacklist(self.db, STAFF, REQUESTER, "Lost charger", 10, now=NOW)

        lifted = blacklist_service.remove_blacklist(self.db, STAFF, ban.BlacklistID, now=NOW + timedelta(hours=1))

        self.assertFalse(lifted.IsActive)
        self.assertEqual(lifted.OverriddenBy, STAFF.userID)
        self.assertEqual(lifted.OverriddenAt, NOW + timedelta(hours=1))
        blacklist_service.ensure_not_blacklisted(self.db, STAFF, REQUESTER, NOW)
        self.assertEqual(len(blacklist_service.list_blacklists(self.db, STAFF, user_id=REQUESTER)), 1)
        self.assertEqual(blacklist_service.list_blacklists(self.db, STAFF, user_id=REQUESTER, active_only=True, now=NOW), [])

        with self.assertRaises(ValidationError):
            blacklist_service.remove_blacklist(self.db, STAFF, ban.BlacklistID)
        with self.assertRaises(NotFound):
            blacklist_service.remove_blacklist(self.db, STAFF, ban.BlacklistID + 50)

    def test_bans_are_tenant_scoped(self):
        blacklist_service.apply_blacklist(self.db, STAFF, REQUESTER, "Lost charger", 10, now=NOW)
        self.assertIsNone(blacklist_service.get_active_blacklist(self.db, OTHER_ORG, REQUESTER, NOW))
        self.assertEqual(blacklist_service.list_blacklists(self.db, OTHER_ORG), [])


class PolicyTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()

    def tearDown(self):
        self.db.close()

    def test_instance_configuration_overrides_org_configuration(self):
        self.db.add(OrgConfiguration(OrgID=STAFF.orgID, InstanceID=None, LatePenaltyPerDay=2, RequireApproval=True))
        self.db.add(OrgConfiguration(OrgID=STAFF.orgID, InstanceID=STAFF.instanceID, ReservationHoldHours=6))
        self.db.commit()

        policy = load_policy(self.db, STAFF)
        self.assertEqual(policy.reservationHoldHours, 6)
        self.assertEqual(policy.waitlistNotificationHours, 24)

        org_wide = load_policy(self.db, TenantContext(orgID=STAFF.orgID))
        self.assertTrue(org_wide.requireApproval)
        self.assertEqual(float(org_wide.latePenaltyPerDay), 2.0)
        self.assertTrue(approval_service.is_approval_required(org_wide, "lending"))
        self.assertFalse(approval_service.is_approval_required(POLICY, "lending"))


class ApprovalTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.item_id = seed_item(self.db, total=2)

    def _request(self, request_type="lending", data=None):
        data = data if data is not None else {"dueDate": (NOW + timedelta(days=3)).isoformat(), "quantity": 1}
        return approval_service.create_request(self.db, STAFF, self.item_id, REQUESTER, request_type, data, now=NOW)

    def tearDown(self):
        self.db.close()

    def test_only_pending_requests_can_be_decided(self):
        request = self._request()
        self.assertEqual(request.Status, "PENDING")

        approved = approval_service.decide(self.db, STAFF, request.ApprovalID, STAFF.userID, "approve", "ok", now=NOW)
        self.assertEqual(approved.Status, "APPROVED")
        self.assertEqual(approved.ApproverID, STAFF.userID)
        self.assertEqual(approved.ApprovedAt, NOW)

        with self.assertRaises(ValidationError):
            approval_service.decide(self.db, STAFF, request.ApprovalID, STAFF.userID, "reject", now=NOW)
        with self.assertRaises(ValidationError):
            approval_service.cancel_request(self.db, STAFF, request.ApprovalID, REQUESTER, now=NOW)

    def test_cancel_is_limited_to_requester_or_admin(self):
        request = self._request()
        with self.assertRaises(Forbidden):
            approval_service.cancel_request(self.db, STAFF, request.ApprovalID, OUTSIDER, is_admin=False, now=NOW)

        cancelled = approval_service.cancel_request(self.db, STAFF, request.ApprovalID, OUTSIDER, is_admin=True, now=NOW)
        self.assertEqual(cancelled.Status, "CANCELLED")
        self.assertEqual(cancelled.CancelledAt, NOW)

    def test_request_validation(self):
        with self.assertRaises(ValidationError):
            self._request(request_type="purchase")
        self._request()
        with self.assertRaises(AlreadyExists):
            self._request()
        with self.assertRaises(ValidationError):
            approval_service.decide(self.db, STAFF, 1, STAFF.userID, "maybe", now=NOW)

    def test_approved_lending_executes_once(self):
        request = self._request()
        approval_service.decide(self.db, STAFF, request.ApprovalID, STAFF.userID, "approve", now=NOW)

        executed = approval_service.execute_approved(self.db, STAFF, request.ApprovalID, policy=POLICY, now=NOW)

        self.assertEqual(executed.ExecutedAt, NOW)
        lending = lending_service.get_lending(self.db, STAFF, executed.ResultEntityID)
        self.assertEqual(lending.BorrowerID, REQUESTER)
        self.assertEqual(available_count(self.db, self.item_id), 1)
        with self.assertRaises(Conflict):
            approval_service.execute_approved(self.db, STAFF, request.ApprovalID, policy=POLICY, now=NOW)
        self.assertEqual(available_count(self.db, self.item_id), 1)

    def test_failed_execution_can_be_retried(self):
        request = self._request(data={"dueDate": (NOW - timedelta(days=1)).isoformat()})
        approval_service.decide(self.db, STAFF, request.ApprovalID, STAFF.userID, "approve", now=NOW)

        with self.assertRaises(ValidationError):
            approval_service.execute_approved(self.db, STAFF, request.ApprovalID, policy=POLICY, now=NOW)
        self.assertIsNone(approval_service.get_request(self.db, STAFF, request.ApprovalID).ExecutedAt)

    def test_rejected_requests_do_not_execute(self):
        request = self._request(request_type="reservation", data={"reservedFor": (NOW + timedelta(days=1)).isoformat()})
        approval_service.decide(self.db, STAFF, request.ApprovalID, STAFF.userID, "reject", "no stock", now=NOW)
        with self.assertRaises(ValidationError):
            approval_service.execute_approved(self.db, STAFF, request.ApprovalID, policy=POLICY, now=NOW)

    def test_listing_and_stats(self):
        first = self._request()
        self._request(request_type="reservation", data={})
        approval_service.decide(self.db, STAFF, first.ApprovalID, STAFF.userID, "reject", now=NOW)

        pending = approval_service.list_requests(self.db, STAFF, status="pending")
        self.assertEqual(pending["total"], 1)
        self.assertEqual(pending["rows"][0].RequestType, "reservation")

        stats = approval_service.get_stats(self.db, STAFF)
        self.assertEqual(stats["pending"], 1)
        self.assertEqual(stats["rejected"], 1)
        self.assertEqual(stats["total"], 2)

        with self.assertRaises(NotFound):
            approval_service.get_request(self.db, OTHER_ORG, first.ApprovalID)


if __name__ == "__main__":
    unittest.main()
