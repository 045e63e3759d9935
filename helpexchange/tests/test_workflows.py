import unittest

from helpexchange import workflows
from helpexchange.config import Settings
from helpexchange.errors import InvalidState, NotFound
from helpexchange.memory import InMemoryDbClient
from helpexchange.records import RequestStatus
from helpexchange.schemas import (
    NewMessage,
    NewRequest,
    NewResponse,
    NewResponseReview,
    NewUser,
    UserUpdate,
)
from helpexchange.storage import InMemoryObjectStore

NOON = 1710072000.0


class FakeSms:
    def __init__(self, accept=True):
        self.accept = accept
        self.sent = []

    def send(self, phone, code):
        self.sent.append((phone, code))
        return self.accept


class FakeHasher:
    def hash(self, secret):
        return f"hashed:{secret}"

    def verify(self, secret, digest):
        return digest == f"hashed:{secret}"


class WorkflowTestCase(unittest.TestCase):
    def setUp(self):
        self.now = NOON
        self.db = InMemoryDbClient(clock=lambda: self.now)
        self.owner = self.db.create_user(NewUser(phone="+1", name="Owner"))
        self.expert = self.db.create_user(
            NewUser(phone="+2", name="Expert", is_expert=True)
        )
        self.request = self.db.create_request(
            NewRequest(
                user_id=self.owner.id,
                title="Visa form",
                description="Which box?",
                urgency="medium",
            )
        )

    def notifications_for(self, user_id):
        return [v.notification for v in self.db.list_notifications(user_id)]


class NotificationFanOutTests(WorkflowTestCase):
    def test_response_notifies_request_owner(self):
        response = workflows.post_response(
            self.db,
            NewResponse(request_id=self.request.id, expert_id=self.expert.id, content="Box 4"),
        )
        [note] = self.notifications_for(self.owner.id)
        self.assertEqual(note.type, "new_response")
        self.assertEqual(note.action_user_id, self.expert.id)
        self.assertEqual(note.entity_id, self.request.id)
        self.assertIn("Expert", note.message)
        self.assertEqual(self.db.get_response(response.id).content, "Box 4")
        self.assertEqual(self.notifications_for(self.expert.id), [])

    def test_own_actions_do_not_notify(self):
        workflows.post_response(
            self.db,
            NewResponse(request_id=self.request.id, expert_id=self.owner.id, content="Self"),
        )
        self.assertEqual(self.db.unread_notification_count(self.owner.id), 0)

    def test_response_to_missing_request(self):
        with self.assertRaises(NotFound):
            workflows.post_response(
                self.db, NewResponse(request_id=77, expert_id=self.expert.id, content="x")
            )

    def test_message_notifies_receiver(self):
        workflows.send_message(
            self.db,
            NewMessage(
                request_id=self.request.id,
                sender_id=self.owner.id,
                receiver_id=self.expert.id,
                content="Thanks",
            ),
        )
        [note] = self.notifications_for(self.expert.id)
        self.assertEqual(note.type, "new_message")
        self.assertEqual(self.notifications_for(self.owner.id), [])

    def test_rating_notifies_response_author(self):
        response = self.db.create_response(
            NewResponse(request_id=self.request.id, expert_id=self.expert.id, content="A")
        )
        workflows.rate_response(
            self.db,
            NewResponseReview(
                response_id=response.id,
                request_id=self.request.id,
                user_id=self.owner.id,
                rating=5,
            ),
        )
        [note] = self.notifications_for(self.expert.id)
        self.assertEqual(note.type, "new_rating")
        self.assertIn("5/5", note.message)
        self.assertEqual(self.db.get_expert_stats(self.expert.id).average_rating, 5.0)

    def test_best_response_by_owner(self):
        response = self.db.create_response(
            NewResponse(request_id=self.request.id, expert_id=self.expert.id, content="A")
        )
        updated = workflows.choose_best_response(
            self.db, self.request.id, response.id, self.owner.id
        )
        self.assertEqual(updated.status, RequestStatus.RESOLVED)
        [note] = self.notifications_for(self.expert.id)
        self.assertEqual(note.type, "best_response")

    def test_best_response_by_stranger_rejected(self):
        response = self.db.create_response(
            NewResponse(request_id=self.request.id, expert_id=self.expert.id, content="A")
        )
        with self.assertRaises(InvalidState):
            workflows.choose_best_response(
                self.db, self.request.id, response.id, self.expert.id
            )
        self.assertIsNone(self.db.get_request(self.request.id).best_response_id)


class PhoneVerificationTests(WorkflowTestCase):
    def test_issue_and_verify(self):
        sms = FakeSms()
        record, delivered = workflows.issue_otp(
            self.db, sms, "+1", ttl_seconds=600, clock=lambda: self.now
        )
        self.assertTrue(delivered)
        self.assertEqual(sms.sent, [("+1", record.otp)])
        self.assertEqual(len(record.otp), 6)
        self.assertTrue(record.otp.isdigit())
        self.assertEqual(record.expires_at, NOON + 600)

        user = workflows.verify_phone(self.db, "+1", record.otp, Settings())
        self.assertTrue(user.phone_verified)
        with self.assertRaises(InvalidState):
            workflows.verify_phone(self.db, "+1", record.otp, Settings())

    def test_failed_delivery_is_reported(self):
        record, delivered = workflows.issue_otp(
            self.db, FakeSms(accept=False), "+1", ttl_seconds=600
        )
        self.assertFalse(delivered)
        self.assertFalse(record.verified)

    def test_verify_before_registration(self):
        record = self.db.create_otp("+99", "123123", NOON + 60)
        self.assertIsNone(workflows.verify_phone(self.db, "+99", record.otp, Settings()))

    def test_dev_bypass_only_when_enabled(self):
        with self.assertRaises(InvalidState):
            workflows.verify_phone(self.db, "+1", "123456", Settings(dev_otp_bypass=False))
        user = workflows.verify_phone(
            self.db, "+1", "123456", Settings(dev_otp_bypass=True)
        )
        self.assertTrue(user.phone_verified)
        # The ledger itself never honours the shortcut.
        self.assertFalse(self.db.verify_otp("+1", "123456"))


class EmailVerificationTests(WorkflowTestCase):
    def test_issued_token_verifies_the_owner(self):
        self.db.update_user(self.owner.id, UserUpdate(email="owner@example.org"))
        record = workflows.issue_email_token(
            self.db, "owner@example.org", ttl_seconds=3600, clock=lambda: self.now
        )
        self.assertEqual(record.expires_at, NOON + 3600)
        self.assertGreaterEqual(len(record.token), 32)
        other = workflows.issue_email_token(self.db, "owner@example.org", 3600)
        self.assertNotEqual(other.token, record.token)

        self.assertTrue(self.db.verify_email_token("owner@example.org", record.token))
        self.assertTrue(self.db.get_user(self.owner.id).email_verified)


class AccountTests(WorkflowTestCase):
    def test_register_and_authenticate(self):
        hasher = FakeHasher()
        user = workflows.register_user(
            self.db, hasher, NewUser(phone="+3", name="Ravi"), "s3cret"
        )
        self.assertEqual(user.password_hash, "hashed:s3cret")

        self.now = NOON + 30
        signed_in = workflows.authenticate(
            self.db, hasher, "+3", "s3cret", clock=lambda: self.now
        )
        self.assertEqual(signed_in.id, user.id)
        self.assertEqual(signed_in.last_active, NOON + 30)
        self.assertIsNone(workflows.authenticate(self.db, hasher, "+3", "wrong"))
        self.assertIsNone(workflows.authenticate(self.db, hasher, "+404", "s3cret"))

    def test_account_without_password_cannot_sign_in(self):
        self.assertIsNone(workflows.authenticate(self.db, FakeHasher(), "+1", "any"))


class ProfileImageTests(WorkflowTestCase):
    def test_upload_sets_profile_image(self):
        store = InMemoryObjectStore()
        user = workflows.upload_profile_image(
            self.db, store, self.owner.id, b"\x89PNG", "me.png"
        )
        self.assertTrue(user.profile_image.startswith(store.base_url))
        [path] = store.stored_objects
        self.assertTrue(path.startswith(f"profile-images/{self.owner.id}/"))
        self.assertTrue(path.endswith(".png"))
        self.assertEqual(store.get_bytes(path), b"\x89PNG")

    def test_rejects_unsupported_or_large_files(self):
        store = InMemoryObjectStore()
        with self.assertRaises(InvalidState):
            workflows.upload_profile_image(self.db, store, self.owner.id, b"x", "notes.txt")
        with self.assertRaises(InvalidState):
            workflows.upload_profile_image(
                self.db,
                store,
                self.owner.id,
                b"0" * (workflows.PROFILE_IMAGE_MAX_BYTES + 1),
                "big.jpg",
            )
        with self.assertRaises(NotFound):
            workflows.upload_profile_image(self.db, store, 404, b"x", "a.png")
        self.assertEqual(store.stored_objects, {})


if __name__ == "__main__":
    unittest.main()
