"""
Quota and reputation computations shared by every storage backend.

Everything here is a pure function of persisted rows so the derived
numbers can be recomputed at any time. Calendar days are UTC days.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Optional

from helpexchange.errors import InvalidState
from helpexchange.records import (
    ExpertStatsRecord,
    HelperMetrics,
    HelperRanking,
    RequestRecord,
    ResponseRecord,
    ResponseReviewRecord,
    UserRecord,
    UserSummary,
)

SECONDS_PER_DAY = 86400
RANKING_WINDOW_DAYS = 30
TOP_HELPERS_LIMIT = 3

RATING_WEIGHT = 0.4
VOLUME_WEIGHT = 0.3
BEST_ANSWER_WEIGHT = 0.3


def utc_date(ts: float) -> str:
    """ISO calendar date (UTC) of an epoch timestamp."""
    return datetime.fromtimestamp(ts, tz=timezone.utc).date().isoformat()


def day_bounds(ts: float) -> tuple[float, float]:
    """Return the ``[start, end)`` epoch bounds of the UTC day containing ``ts``."""
    moment = datetime.fromtimestamp(ts, tz=timezone.utc)
    start = datetime(
        moment.year, moment.month, moment.day, tzinfo=timezone.utc
    ).timestamp()
    return start, start + SECONDS_PER_DAY


def window_start(now: float, days: int = RANKING_WINDOW_DAYS) -> float:
    return now - days * SECONDS_PER_DAY


def round_half_up(value: float, places: int = 1) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def available_slots(daily_limit: Optional[int], today_responses: int) -> int:
    return max(0, (daily_limit or 0) - today_responses)


def roll_over(stats: ExpertStatsRecord, today: str) -> ExpertStatsRecord:
    """
    Reset the daily counter when the stats row belongs to an earlier day.

    Safe to apply on every read or write; a row already stamped with
    ``today`` is returned unchanged.
    """
    if stats.last_reset_date == today:
        return stats
    return replace(stats, today_responses=0, last_reset_date=today)


def validate_rating(rating: object) -> int:
    if isinstance(rating, bool) or not isinstance(rating, int):
        raise InvalidState(f"Malformed rating {rating!r}")
    if not 1 <= rating <= 5:
        raise InvalidState(f"Rating {rating} outside 1..5")
    return rating


def stats_from_aggregates(
    expert_id: int,
    *,
    total_responses: int,
    helpful_responses: int,
    today_responses: int,
    rating_count: int,
    rating_sum: int,
    rating_min: Optional[int],
    rating_max: Optional[int],
    now: float,
) -> ExpertStatsRecord:
    """Build a complete stats row; raises before producing anything on bad ratings."""
    if rating_count:
        if rating_min is None or rating_max is None:
            raise InvalidState(f"Ratings for expert {expert_id} are incomplete")
        validate_rating(int(rating_min))
        validate_rating(int(rating_max))
        average = round_half_up(rating_sum / rating_count, 1)
    else:
        average = 0.0
    return ExpertStatsRecord(
        expert_id=expert_id,
        total_responses=total_responses,
        total_reviews=rating_count,
        average_rating=average,
        helpful_responses=helpful_responses,
        today_responses=today_responses,
        last_reset_date=utc_date(now),
    )


def compute_expert_stats(
    expert_id: int,
    responses: Iterable[ResponseRecord],
    ratings: Iterable[int],
    now: float,
) -> ExpertStatsRecord:
    """
    Recompute an expert's stats from their response rows and every rating
    attached to them (expert reviews plus reviews of their responses).
    """
    start, end = day_bounds(now)
    mine = [r for r in responses if r.expert_id == expert_id]
    checked = [validate_rating(rating) for rating in ratings]
    return stats_from_aggregates(
        expert_id,
        total_responses=len(mine),
        helpful_responses=sum(1 for r in mine if r.helpful_count > 0),
        today_responses=sum(1 for r in mine if start <= r.created_at < end),
        rating_count=len(checked),
        rating_sum=sum(checked),
        rating_min=min(checked) if checked else None,
        rating_max=max(checked) if checked else None,
        now=now,
    )


@dataclass(frozen=True)
class HelperCandidate:
    """Raw in-window aggregates for one user."""

    user: UserSummary
    total_responses: int
    rating_count: int
    total_rating: int
    best_answers: int

    @property
    def average_rating(self) -> float:
        if not self.rating_count:
            return 0.0
        return self.total_rating / self.rating_count

    @property
    def score(self) -> float:
        return helper_score(
            self.average_rating, self.total_responses, self.best_answers
        )


def helper_score(average_rating: float, total_responses: int, best_answers: int) -> float:
    # Raw counts, deliberately not normalized.
    return (
        average_rating * RATING_WEIGHT
        + total_responses * VOLUME_WEIGHT
        + best_answers * BEST_ANSWER_WEIGHT
    )


def rank_helpers(
    candidates: Iterable[HelperCandidate], limit: int = TOP_HELPERS_LIMIT
) -> list[HelperRanking]:
    active = [c for c in candidates if c.total_responses > 0]
    active.sort(key=lambda c: (-c.score, -c.total_responses, c.user.id))
    return [
        HelperRanking(
            user=c.user,
            metrics=HelperMetrics(
                average_rating=round_half_up(c.average_rating, 1),
                total_responses=c.total_responses,
                best_answers=c.best_answers,
                total_rating=c.total_rating,
                score=round_half_up(c.score, 2),
            ),
        )
        for c in active[:limit]
    ]


def collect_helper_candidates(
    users: Iterable[UserRecord],
    responses: Iterable[ResponseRecord],
    response_reviews: Iterable[ResponseReviewRecord],
    requests: Iterable[RequestRecord],
    now: float,
) -> list[HelperCandidate]:
    """Scan rows for the rolling window; used by backends without SQL."""
    cutoff = window_start(now)
    recent: dict[int, list[int]] = {}
    for response in responses:
        if response.created_at >= cutoff:
            recent.setdefault(response.expert_id, []).append(response.id)

    ratings: dict[int, list[int]] = {}
    for review in response_reviews:
        ratings.setdefault(review.response_id, []).append(review.rating)

    best_ids = {r.best_response_id for r in requests if r.best_response_id is not None}

    candidates = []
    for user in users:
        response_ids = recent.get(user.id)
        if not response_ids:
            continue
        user_ratings = [
            rating for rid in response_ids for rating in ratings.get(rid, [])
        ]
        candidates.append(
            HelperCandidate(
                user=UserSummary.of(user),
                total_responses=len(response_ids),
                rating_count=len(user_ratings),
                total_rating=sum(user_ratings),
                best_answers=sum(1 for rid in response_ids if rid in best_ids),
            )
        )
    return candidates
