"""
In-memory storage backend for development and tests.
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from contextlib import contextmanager
from typing import Callable, Generic, Iterable, Iterator, Optional, TypeVar

from helpexchange import reputation
from helpexchange.db import (
    DEFAULT_EXPERT_LIMIT,
    DEFAULT_NOTIFICATION_LIMIT,
    DEFAULT_PAGE_SIZE,
    page_offset,
    summarize_conversations,
)
from helpexchange.errors import InvalidState, NotFound
from helpexchange.records import (
    ConversationSummary,
    DashboardStats,
    EmailVerificationRecord,
    ExpertStatsRecord,
    ExpertView,
    HelperRanking,
    MessageRecord,
    MessageView,
    NotificationRecord,
    NotificationView,
    OtpRecord,
    PersonalStats,
    RequestPage,
    RequestRecord,
    RequestStatus,
    RequestView,
    ResponseRecord,
    ResponseReviewRecord,
    ResponseView,
    ReviewRecord,
    UserRecord,
    UserSummary,
)
from helpexchange.schemas import (
    NewMessage,
    NewNotification,
    NewRequest,
    NewResponse,
    NewResponseReview,
    NewReview,
    NewUser,
    UserUpdate,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

# Table name -> (record type, key attribute). Order is the snapshot order.
TABLE_RECORDS = {
    "users": (UserRecord, "id"),
    "requests": (RequestRecord, "id"),
    "responses": (ResponseRecord, "id"),
    "reviews": (ReviewRecord, "id"),
    "response_reviews": (ResponseReviewRecord, "id"),
    "expert_stats": (ExpertStatsRecord, "expert_id"),
    "otp_verifications": (OtpRecord, "id"),
    "email_verifications": (EmailVerificationRecord, "id"),
    "private_messages": (MessageRecord, "id"),
    "notifications": (NotificationRecord, "id"),
}

ID_COUNTERS = tuple(name for name in TABLE_RECORDS if name != "expert_stats")


class Table(Generic[R]):
    """Ordered rows plus a key -> position index."""

    def __init__(self, key: str = "id"):
        self.key = key
        self.rows: list[R] = []
        self.index: dict[int, int] = {}

    def __iter__(self) -> Iterator[R]:
        return iter(self.rows)

    def __len__(self) -> int:
        return len(self.rows)

    def get(self, key: Optional[int]) -> Optional[R]:
        pos = self.index.get(key) if key is not None else None
        return None if pos is None else self.rows[pos]

    def put(self, row: R) -> None:
        """Insert a row, or replace the row stored under the same key."""
        key = getattr(row, self.key)
        pos = self.index.get(key)
        if pos is None:
            self.index[key] = len(self.rows)
            self.rows.append(row)
        else:
            self.rows[pos] = row

    def remove_where(self, predicate: Callable[[R], bool]) -> int:
        kept = [row for row in self.rows if not predicate(row)]
        removed = len(self.rows) - len(kept)
        if removed:
            self.rows = kept
            self.index = {getattr(row, self.key): i for i, row in enumerate(kept)}
        return removed

    def clear(self) -> None:
        self.rows.clear()
        self.index.clear()


def _recent_first(row) -> tuple:
    return (-row.created_at, row.id)


def _oldest_first(row) -> tuple:
    return (row.created_at, row.id)


class InMemoryDbClient:
    """
    Simple in-memory database for development and tests.

    Rows live in arena tables; filters, sorts and joins are linear scans.
    One re-entrant lock serialises every mutating call, and records handed
    to callers are copies so they can never patch stored rows directly.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self.clock = clock
        self._lock = threading.RLock()
        self.tables: dict[str, Table] = {
            name: Table(key) for name, (_, key) in TABLE_RECORDS.items()
        }
        self.next_ids: dict[str, int] = {name: 1 for name in ID_COUNTERS}

    # Table shortcuts

    @property
    def users(self) -> Table[UserRecord]:
        return self.tables["users"]

    @property
    def requests(self) -> Table[RequestRecord]:
        return self.tables["requests"]

    @property
    def responses(self) -> Table[ResponseRecord]:
        return self.tables["responses"]

    @property
    def reviews(self) -> Table[ReviewRecord]:
        return self.tables["reviews"]

    @property
    def response_reviews(self) -> Table[ResponseReviewRecord]:
        return self.tables["response_reviews"]

    @property
    def expert_stats(self) -> Table[ExpertStatsRecord]:
        return self.tables["expert_stats"]

    @property
    def otp_verifications(self) -> Table[OtpRecord]:
        return self.tables["otp_verifications"]

    @property
    def email_verifications(self) -> Table[EmailVerificationRecord]:
        return self.tables["email_verifications"]

    @property
    def private_messages(self) -> Table[MessageRecord]:
        return self.tables["private_messages"]

    @property
    def notifications(self) -> Table[NotificationRecord]:
        return self.tables["notifications"]

    # Internals

    @contextmanager
    def _writing(self) -> Iterator[None]:
        """Hold the lock around one mutation; subclasses add durability here."""
        with self._lock:
            yield

    def _next_id(self, table: str) -> int:
        value = self.next_ids[table]
        self.next_ids[table] = value + 1
        return value

    def _summary(self, user_id: Optional[int]) -> Optional[UserSummary]:
        user = self.users.get(user_id)
        return UserSummary.of(user) if user else None

    def _require(self, table: str, key: int, entity: str):
        row = self.tables[table].get(key)
        if row is None:
            raise NotFound(entity, key)
        return row

    def reset(self) -> None:
        """Clear all stored data (useful in tests)."""
        with self._writing():
            for table in self.tables.values():
                table.clear()
            self.next_ids = {name: 1 for name in ID_COUNTERS}

    # Users

    def create_user(self, payload: NewUser) -> UserRecord:
        with self._writing():
            if self._find_user_by_phone(payload.phone):
                raise InvalidState(f"Phone {payload.phone} is already registered")
            now = self.clock()
            user = UserRecord(
                id=self._next_id("users"),
                created_at=now,
                last_active=now,
                **payload.model_dump(mode="json"),
            )
            self.users.put(user)
            return copy.deepcopy(user)

    def _find_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        for user in self.users:
            if user.phone == phone:
                return user
        return None

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        user = self.users.get(user_id)
        return copy.deepcopy(user) if user else None

    def get_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        user = self._find_user_by_phone(phone)
        return copy.deepcopy(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        for user in self.users:
            if user.email == email:
                return copy.deepcopy(user)
        return None

    def list_users(self) -> list[UserRecord]:
        return [copy.deepcopy(user) for user in self.users]

    def update_user(self, user_id: int, updates: UserUpdate) -> UserRecord:
        with self._writing():
            user = self._require("users", user_id, "User")
            changes = updates.changes()
            phone = changes.get("phone")
            if phone and phone != user.phone and self._find_user_by_phone(phone):
                raise InvalidState(f"Phone {phone} is already registered")
            for name, value in changes.items():
                setattr(user, name, value)
            return copy.deepcopy(user)

    def list_experts(self, limit: int = DEFAULT_EXPERT_LIMIT) -> list[ExpertView]:
        experts = [u for u in self.users if u.is_expert and u.is_active][:limit]
        return [self._expert_view(user) for user in experts]

    def list_experts_by_expertise(self, expertise: str) -> list[ExpertView]:
        experts = [
            u
            for u in self.users
            if u.is_expert and u.is_active and expertise in (u.expertise_areas or [])
        ]
        return [self._expert_view(user) for user in experts]

    def _expert_view(self, user: UserRecord) -> ExpertView:
        stats = self._current_stats(user.id)
        today = stats.today_responses if stats else 0
        return ExpertView(
            user=copy.deepcopy(user),
            stats=copy.deepcopy(stats),
            available_slots=reputation.available_slots(user.daily_request_limit, today),
        )

    # Requests

    def create_request(self, payload: NewRequest) -> RequestRecord:
        with self._writing():
            self._require("users", payload.user_id, "User")
            now = self.clock()
            request = RequestRecord(
                id=self._next_id("requests"),
                created_at=now,
                updated_at=now,
                **payload.model_dump(mode="json"),
            )
            self.requests.put(request)
            return copy.deepcopy(request)

    def get_request(self, request_id: int) -> Optional[RequestRecord]:
        request = self.requests.get(request_id)
        return copy.deepcopy(request) if request else None

    def get_request_detail(self, request_id: int) -> Optional[RequestView]:
        request = self.requests.get(request_id)
        if not request:
            return None
        return self._request_view(request)

    def _request_view(self, request: RequestRecord) -> RequestView:
        return RequestView(
            request=copy.deepcopy(request),
            user=self._summary(request.user_id),
            response_count=sum(
                1 for r in self.responses if r.request_id == request.id
            ),
        )

    def _request_page(
        self, rows: Iterable[RequestRecord], page: int, page_size: int
    ) -> RequestPage:
        offset = page_offset(page, page_size)
        ordered = sorted(rows, key=_recent_first)
        return RequestPage(
            items=[
                self._request_view(r) for r in ordered[offset : offset + page_size]
            ],
            total=len(ordered),
            page=page,
            page_size=page_size,
        )

    def list_requests_by_user(
        self,
        user_id: int,
        status: Optional[RequestStatus] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> RequestPage:
        wanted = RequestStatus(status) if status else None
        rows = [
            r
            for r in self.requests
            if r.user_id == user_id and (wanted is None or r.status == wanted)
        ]
        return self._request_page(rows, page, page_size)

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> RequestPage:
        wanted = RequestStatus(status) if status else None
        rows = [r for r in self.requests if wanted is None or r.status == wanted]
        return self._request_page(rows, page, page_size)

    def update_request_fields(
        self,
        request_id: int,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> RequestRecord:
        with self._writing():
            request = self._require("requests", request_id, "Request")
            if title is not None:
                request.title = title
            if description is not None:
                request.description = description
            request.updated_at = self.clock()
            return copy.deepcopy(request)

    def update_request_status(
        self, request_id: int, status: RequestStatus | str
    ) -> RequestRecord:
        new_status = RequestStatus(status)
        with self._writing():
            request = self._require("requests", request_id, "Request")
            request.status = new_status
            request.resolved = new_status == RequestStatus.RESOLVED
            if not request.resolved:
                request.best_response_id = None
            request.updated_at = self.clock()
            return copy.deepcopy(request)

    def mark_best_response(self, request_id: int, response_id: int) -> RequestRecord:
        with self._writing():
            request = self.requests.get(request_id)
            if request is None:
                raise InvalidState(f"Request {request_id} does not exist")
            response = self.responses.get(response_id)
            if response is None or response.request_id != request_id:
                raise InvalidState(
                    f"Response {response_id} does not belong to request {request_id}"
                )
            request.best_response_id = response_id
            request.status = RequestStatus.RESOLVED
            request.resolved = True
            request.updated_at = self.clock()
            return copy.deepcopy(request)

    # Responses and reviews

    def create_response(self, payload: NewResponse) -> ResponseRecord:
        with self._writing():
            self._require("requests", payload.request_id, "Request")
            self._require("users", payload.expert_id, "User")
            response = ResponseRecord(
                id=self._next_id("responses"),
                created_at=self.clock(),
                **payload.model_dump(mode="json"),
            )
            stats = self._compute_stats(payload.expert_id, extra_responses=[response])
            self.responses.put(response)
            self.expert_stats.put(stats)
            return copy.deepcopy(response)

    def get_response(self, response_id: int) -> Optional[ResponseRecord]:
        response = self.responses.get(response_id)
        return copy.deepcopy(response) if response else None

    def list_responses_for_request(self, request_id: int) -> list[ResponseView]:
        rows = sorted(
            (r for r in self.responses if r.request_id == request_id),
            key=_recent_first,
        )
        return [
            ResponseView(response=copy.deepcopy(r), expert=self._summary(r.expert_id))
            for r in rows
        ]

    def increment_helpful(self, response_id: int) -> ResponseRecord:
        with self._writing():
            response = self._require("responses", response_id, "Response")
            response.helpful_count += 1
            response.is_helpful = True
            self.expert_stats.put(self._compute_stats(response.expert_id))
            return copy.deepcopy(response)

    def create_review(self, payload: NewReview) -> ReviewRecord:
        with self._writing():
            self._require("requests", payload.request_id, "Request")
            self._require("users", payload.expert_id, "User")
            review = ReviewRecord(
                id=self._next_id("reviews"),
                created_at=self.clock(),
                **payload.model_dump(mode="json"),
            )
            stats = self._compute_stats(
                payload.expert_id, extra_ratings=[review.rating]
            )
            self.reviews.put(review)
            self.expert_stats.put(stats)
            return copy.deepcopy(review)

    def list_reviews_for_expert(self, expert_id: int) -> list[ReviewRecord]:
        rows = sorted(
            (r for r in self.reviews if r.expert_id == expert_id), key=_recent_first
        )
        return [copy.deepcopy(r) for r in rows]

    def create_response_review(
        self, payload: NewResponseReview
    ) -> ResponseReviewRecord:
        with self._writing():
            response = self._require("responses", payload.response_id, "Response")
            review = ResponseReviewRecord(
                id=self._next_id("response_reviews"),
                created_at=self.clock(),
                **payload.model_dump(mode="json"),
            )
            stats = self._compute_stats(
                response.expert_id, extra_ratings=[review.rating]
            )
            self.response_reviews.put(review)
            self.expert_stats.put(stats)
            return copy.deepcopy(review)

    def list_response_reviews(self, response_id: int) -> list[ResponseReviewRecord]:
        rows = sorted(
            (r for r in self.response_reviews if r.response_id == response_id),
            key=_oldest_first,
        )
        return [copy.deepcopy(r) for r in rows]

    # Expert stats and quotas

    def _expert_ratings(self, expert_id: int) -> list[int]:
        ratings = [r.rating for r in self.reviews if r.expert_id == expert_id]
        for review in self.response_reviews:
            response = self.responses.get(review.response_id)
            if response and response.expert_id == expert_id:
                ratings.append(review.rating)
        return ratings

    def _compute_stats(
        self,
        expert_id: int,
        extra_responses: Iterable[ResponseRecord] = (),
        extra_ratings: Iterable[int] = (),
    ) -> ExpertStatsRecord:
        """Build the replacement stats row without touching stored state."""
        responses = [*self.responses, *extra_responses]
        ratings = [*self._expert_ratings(expert_id), *extra_ratings]
        stats = reputation.compute_expert_stats(
            expert_id, responses, ratings, self.clock()
        )
        logger.debug("Recomputed stats for expert %s: %s", expert_id, stats)
        return stats

    def _current_stats(self, expert_id: int) -> Optional[ExpertStatsRecord]:
        stats = self.expert_stats.get(expert_id)
        if stats is None:
            return None
        rolled = reputation.roll_over(stats, reputation.utc_date(self.clock()))
        if rolled is not stats:
            with self._writing():
                self.expert_stats.put(rolled)
        return rolled

    def get_expert_stats(self, expert_id: int) -> Optional[ExpertStatsRecord]:
        return copy.deepcopy(self._current_stats(expert_id))

    def recompute_expert_stats(self, expert_id: int) -> ExpertStatsRecord:
        with self._writing():
            self._require("users", expert_id, "User")
            stats = self._compute_stats(expert_id)
            self.expert_stats.put(stats)
            return copy.deepcopy(stats)

    def get_available_slots(self, expert_id: int) -> int:
        user = self._require("users", expert_id, "User")
        stats = self._current_stats(expert_id)
        return reputation.available_slots(
            user.daily_request_limit, stats.today_responses if stats else 0
        )

    # OTP ledger

    def create_otp(self, phone: str, otp: str, expires_at: float) -> OtpRecord:
        with self._writing():
            record = OtpRecord(
                id=self._next_id("otp_verifications"),
                phone=phone,
                otp=otp,
                expires_at=expires_at,
                created_at=self.clock(),
            )
            self.otp_verifications.put(record)
            return copy.deepcopy(record)

    def verify_otp(self, phone: str, otp: str) -> bool:
        with self._lock:
            now = self.clock()
            matches = [
                v
                for v in self.otp_verifications
                if v.phone == phone
                and v.otp == otp
                and not v.verified
                and v.expires_at > now
            ]
            if not matches:
                logger.info("OTP rejected for %s", phone)
                return False
            with self._writing():
                max(matches, key=lambda v: (v.created_at, v.id)).verified = True
            logger.info("OTP verified for %s", phone)
            return True

    def purge_expired_otps(self) -> int:
        with self._lock:
            now = self.clock()
            expired = sum(1 for v in self.otp_verifications if v.expires_at <= now)
            if not expired:
                return 0
            with self._writing():
                return self.otp_verifications.remove_where(
                    lambda v: v.expires_at <= now
                )

    # Email verification ledger

    def create_email_verification(
        self, email: str, token: str, expires_at: float
    ) -> EmailVerificationRecord:
        with self._writing():
            record = EmailVerificationRecord(
                id=self._next_id("email_verifications"),
                email=email,
                token=token,
                expires_at=expires_at,
                created_at=self.clock(),
            )
            self.email_verifications.put(record)
            return copy.deepcopy(record)

    def verify_email_token(self, email: str, token: str) -> bool:
        """Consume the newest live token for ``email`` and mark its owners verified."""
        with self._lock:
            now = self.clock()
            matches = [
                v
                for v in self.email_verifications
                if v.email == email
                and v.token == token
                and not v.verified
                and v.expires_at > now
            ]
            if not matches:
                logger.info("Email token rejected for %s", email)
                return False
            with self._writing():
                max(matches, key=lambda v: (v.created_at, v.id)).verified = True
                for user in self.users:
                    if user.email == email:
                        user.email_verified = True
            logger.info("Email verified for %s", email)
            return True

    # Private messages

    def create_message(self, payload: NewMessage) -> MessageRecord:
        with self._writing():
            self._require("requests", payload.request_id, "Request")
            message = MessageRecord(
                id=self._next_id("private_messages"),
                created_at=self.clock(),
                **payload.model_dump(mode="json"),
            )
            self.private_messages.put(message)
            return copy.deepcopy(message)

    def _message_view(self, message: MessageRecord) -> MessageView:
        return MessageView(
            message=copy.deepcopy(message),
            sender=self._summary(message.sender_id),
            receiver=self._summary(message.receiver_id),
        )

    def list_conversation(
        self, request_id: int, user_a: int, user_b: int
    ) -> list[MessageView]:
        pair = {user_a, user_b}
        rows = sorted(
            (
                m
                for m in self.private_messages
                if m.request_id == request_id and {m.sender_id, m.receiver_id} == pair
            ),
            key=_oldest_first,
        )
        return [self._message_view(m) for m in rows]

    def list_messages_for_request(self, request_id: int) -> list[MessageView]:
        rows = sorted(
            (m for m in self.private_messages if m.request_id == request_id),
            key=_oldest_first,
        )
        return [self._message_view(m) for m in rows]

    def list_conversations_for_user(self, user_id: int) -> list[ConversationSummary]:
        return summarize_conversations(user_id, self.private_messages)

    def mark_message_read(self, message_id: int, user_id: int) -> bool:
        with self._lock:
            message = self.private_messages.get(message_id)
            if message is None or message.receiver_id != user_id or message.is_read:
                return False
            with self._writing():
                message.is_read = True
            return True

    # Notifications

    def create_notification(self, payload: NewNotification) -> NotificationRecord:
        with self._writing():
            notification = NotificationRecord(
                id=self._next_id("notifications"),
                created_at=self.clock(),
                **payload.model_dump(mode="json"),
            )
            self.notifications.put(notification)
            return copy.deepcopy(notification)

    def list_notifications(
        self, user_id: int, limit: int = DEFAULT_NOTIFICATION_LIMIT
    ) -> list[NotificationView]:
        rows = sorted(
            (n for n in self.notifications if n.user_id == user_id),
            key=_recent_first,
        )[:limit]
        return [
            NotificationView(
                notification=copy.deepcopy(n),
                action_user=self._summary(n.action_user_id),
            )
            for n in rows
        ]

    def unread_notification_count(self, user_id: int) -> int:
        return sum(
            1 for n in self.notifications if n.user_id == user_id and not n.is_read
        )

    def mark_notification_read(self, notification_id: int, user_id: int) -> bool:
        with self._lock:
            notification = self.notifications.get(notification_id)
            if (
                notification is None
                or notification.user_id != user_id
                or notification.is_read
            ):
                return False
            with self._writing():
                notification.is_read = True
            return True

    def mark_all_notifications_read(self, user_id: int) -> int:
        with self._lock:
            pending = [
                n for n in self.notifications if n.user_id == user_id and not n.is_read
            ]
            if not pending:
                return 0
            with self._writing():
                for notification in pending:
                    notification.is_read = True
            return len(pending)

    # Aggregates

    def get_dashboard_stats(self) -> DashboardStats:
        return DashboardStats(
            total_requests=len(self.requests),
            active_experts=sum(1 for u in self.users if u.is_expert and u.is_active),
            resolved_requests=sum(1 for r in self.requests if r.resolved),
            total_responses=len(self.responses),
        )

    def get_top_community_helpers(self) -> list[HelperRanking]:
        candidates = reputation.collect_helper_candidates(
            self.users,
            self.responses,
            self.response_reviews,
            self.requests,
            self.clock(),
        )
        return reputation.rank_helpers(candidates)

    def get_personal_stats(self, user_id: int) -> PersonalStats:
        own_requests = [r for r in self.requests if r.user_id == user_id]
        own_response_ids = {r.id for r in self.responses if r.expert_id == user_id}
        return PersonalStats(
            requests_posted=len(own_requests),
            requests_responded=len(own_response_ids),
            requests_resolved=sum(1 for r in own_requests if r.resolved),
            reviews_given=sum(1 for r in self.reviews if r.user_id == user_id)
            + sum(1 for r in self.response_reviews if r.user_id == user_id),
            reviews_received=sum(1 for r in self.reviews if r.expert_id == user_id)
            + sum(
                1 for r in self.response_reviews if r.response_id in own_response_ids
            ),
        )
