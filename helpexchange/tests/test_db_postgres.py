import unittest

from sqlalchemy import select

from helpexchange.errors import BackendUnavailable, InvalidState
from helpexchange.schemas import NewRequest, NewResponse, NewReview, NewUser
from helpexchange.sql import ExpertStatsRow, PostgresDbClient, ReviewRow

# 2024-03-10 12:00:00 UTC
NOON = 1710072000.0


class PostgresDbClientTests(unittest.TestCase):
    """
    Uses SQLite via SQLAlchemy URL for fast/local testing of the Postgres client logic.
    """

    def setUp(self):
        self.db = PostgresDbClient("sqlite+pysqlite:///:memory:", clock=lambda: NOON)
        self.owner = self.db.create_user(NewUser(phone="+1", name="Owner"))
        self.expert = self.db.create_user(
            NewUser(phone="+2", name="Expert", is_expert=True)
        )
        self.request = self.db.create_request(
            NewRequest(
                user_id=self.owner.id, title="Tax", description="Form help", urgency="high"
            )
        )

    def test_requires_url(self):
        with self.assertRaises(ValueError):
            PostgresDbClient("")

    def test_unknown_driver_is_unavailable(self):
        with self.assertRaises(BackendUnavailable):
            PostgresDbClient("nosuchdialect://localhost/db")

    def test_stats_upsert_keeps_one_row(self):
        for _ in range(3):
            self.db.create_response(
                NewResponse(
                    request_id=self.request.id, expert_id=self.expert.id, content="a"
                )
            )
        with self.db.Session() as session:
            rows = session.execute(
                select(ExpertStatsRow).where(ExpertStatsRow.expert_id == self.expert.id)
            ).scalars().all()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0].total_responses, 3)
        self.assertEqual(rows[0].today_responses, 3)

    def test_malformed_rating_keeps_stored_stats(self):
        self.db.create_review(
            NewReview(
                request_id=self.request.id,
                expert_id=self.expert.id,
                user_id=self.owner.id,
                rating=5,
            )
        )
        before = self.db.get_expert_stats(self.expert.id)
        with self.db.Session() as session:
            session.add(
                ReviewRow(
                    request_id=self.request.id,
                    expert_id=self.expert.id,
                    user_id=self.owner.id,
                    rating=11,
                    created_at=NOON,
                )
            )
            session.commit()

        with self.assertRaises(InvalidState):
            self.db.recompute_expert_stats(self.expert.id)
        self.assertEqual(self.db.get_expert_stats(self.expert.id), before)


if __name__ == "__main__":
    unittest.main()
