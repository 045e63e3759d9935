import json
import os
import shutil
import tempfile
import unittest
from unittest.mock import patch

from helpexchange.errors import BackendUnavailable, InvalidState
from helpexchange.records import RequestStatus, ReviewRecord
from helpexchange.schemas import NewRequest, NewResponse, NewReview, NewUser
from helpexchange.snapshot import SnapshotDbClient

# 2024-03-10 12:00:00 UTC
NOON = 1710072000.0


class SnapshotDbClientTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.tmpdir, True)
        self.path = os.path.join(self.tmpdir, "data", "store.json")
        self.now = NOON

    def open(self):
        return SnapshotDbClient(self.path, clock=lambda: self.now)

    def seed(self, db):
        owner = db.create_user(NewUser(phone="+1", name="Owner"))
        expert = db.create_user(NewUser(phone="+2", name="Expert", is_expert=True))
        request = db.create_request(
            NewRequest(
                user_id=owner.id, title="Leak", description="Pipe burst", urgency="high"
            )
        )
        response = db.create_response(
            NewResponse(request_id=request.id, expert_id=expert.id, content="Turn valve")
        )
        db.mark_best_response(request.id, response.id)
        return owner, expert, request, response

    def test_missing_file_means_empty_store(self):
        db = self.open()
        self.assertEqual(db.list_users(), [])
        self.assertFalse(os.path.exists(self.path))

    def test_reload_restores_rows_and_counters(self):
        owner, expert, request, response = self.seed(self.open())

        reopened = self.open()
        self.assertEqual(reopened.get_user(owner.id).name, "Owner")
        loaded = reopened.get_request(request.id)
        self.assertEqual(loaded.status, RequestStatus.RESOLVED)
        self.assertEqual(loaded.best_response_id, response.id)
        self.assertEqual(reopened.get_expert_stats(expert.id).total_responses, 1)
        self.assertEqual(reopened.get_available_slots(expert.id), 2)

        newcomer = reopened.create_user(NewUser(phone="+3", name="New"))
        self.assertEqual(newcomer.id, 3)

    def test_write_leaves_no_temp_files(self):
        self.seed(self.open())
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["store.json"])
        with open(self.path, encoding="utf-8") as f:
            state = json.load(f)
        self.assertEqual(state["version"], 1)
        self.assertEqual(state["next_ids"]["users"], 3)
        self.assertEqual(state["requests"][0]["status"], "resolved")
        self.assertEqual(len(state["expert_stats"]), 1)

    def test_failed_replace_keeps_previous_snapshot(self):
        db = self.open()
        db.create_user(NewUser(phone="+1", name="First"))
        with open(self.path, encoding="utf-8") as f:
            before = f.read()

        with patch("helpexchange.snapshot.os.replace", side_effect=OSError("disk")):
            with self.assertRaises(OSError):
                db.create_user(NewUser(phone="+2", name="Second"))

        with open(self.path, encoding="utf-8") as f:
            self.assertEqual(f.read(), before)
        self.assertEqual(os.listdir(os.path.dirname(self.path)), ["store.json"])

        # The failed write is rolled back, so a later save must not carry it.
        self.assertIsNone(db.get_user_by_phone("+2"))
        third = db.create_user(NewUser(phone="+3", name="Third"))
        self.assertEqual(third.id, 2)
        reopened = self.open()
        self.assertEqual([u.phone for u in reopened.list_users()], ["+1", "+3"])

    def test_failed_write_body_leaves_state_untouched(self):
        db = self.open()
        db.create_user(NewUser(phone="+1", name="First"))
        with self.assertRaises(InvalidState):
            db.create_user(NewUser(phone="+1", name="Again"))
        self.assertEqual(db.next_ids["users"], 2)
        self.assertEqual([u.name for u in self.open().list_users()], ["First"])

    def test_corrupt_snapshot_is_unavailable(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as f:
            f.write("{not json")
        with self.assertRaises(BackendUnavailable):
            self.open()

    def test_unknown_version_is_unavailable(self):
        os.makedirs(os.path.dirname(self.path))
        with open(self.path, "w", encoding="utf-8") as f:
            json.dump({"version": 99}, f)
        with self.assertRaises(BackendUnavailable):
            self.open()

    def test_malformed_rating_keeps_stored_stats(self):
        db = self.open()
        owner, expert, request, _ = self.seed(db)
        db.create_review(
            NewReview(request_id=request.id, expert_id=expert.id, user_id=owner.id, rating=4)
        )
        before = db.get_expert_stats(expert.id)

        # A row that bypassed validation, e.g. a hand-edited snapshot.
        db.reviews.put(
            ReviewRecord(
                id=99, request_id=request.id, expert_id=expert.id, user_id=owner.id, rating=9
            )
        )
        with self.assertRaises(InvalidState):
            db.recompute_expert_stats(expert.id)
        self.assertEqual(db.get_expert_stats(expert.id), before)


if __name__ == "__main__":
    unittest.main()
