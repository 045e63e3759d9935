"""
Storage contract implemented by every backend.
"""

from __future__ import annotations

from typing import Iterable, Optional, Protocol

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

DEFAULT_PAGE_SIZE = 20
DEFAULT_EXPERT_LIMIT = 10
DEFAULT_NOTIFICATION_LIMIT = 50


class DbClient(Protocol):
    """
    Interface for persistence.

    Writes return the fully populated record. Reads that find nothing
    return ``None`` (or an empty list); update paths raise ``NotFound``.
    """

    # Users

    def create_user(self, payload: NewUser) -> UserRecord:
        ...

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        ...

    def get_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        ...

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        ...

    def list_users(self) -> list[UserRecord]:
        ...

    def update_user(self, user_id: int, updates: UserUpdate) -> UserRecord:
        ...

    def list_experts(self, limit: int = DEFAULT_EXPERT_LIMIT) -> list[ExpertView]:
        ...

    def list_experts_by_expertise(self, expertise: str) -> list[ExpertView]:
        ...

    # Requests

    def create_request(self, payload: NewRequest) -> RequestRecord:
        ...

    def get_request(self, request_id: int) -> Optional[RequestRecord]:
        ...

    def get_request_detail(self, request_id: int) -> Optional[RequestView]:
        ...

    def list_requests_by_user(
        self,
        user_id: int,
        status: Optional[RequestStatus] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> RequestPage:
        ...

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> RequestPage:
        ...

    def update_request_fields(
        self,
        request_id: int,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> RequestRecord:
        ...

    def update_request_status(
        self, request_id: int, status: RequestStatus | str
    ) -> RequestRecord:
        ...

    def mark_best_response(self, request_id: int, response_id: int) -> RequestRecord:
        ...

    # Responses and reviews

    def create_response(self, payload: NewResponse) -> ResponseRecord:
        ...

    def get_response(self, response_id: int) -> Optional[ResponseRecord]:
        ...

    def list_responses_for_request(self, request_id: int) -> list[ResponseView]:
        ...

    def increment_helpful(self, response_id: int) -> ResponseRecord:
        ...

    def create_review(self, payload: NewReview) -> ReviewRecord:
        ...

    def list_reviews_for_expert(self, expert_id: int) -> list[ReviewRecord]:
        ...

    def create_response_review(
        self, payload: NewResponseReview
    ) -> ResponseReviewRecord:
        ...

    def list_response_reviews(self, response_id: int) -> list[ResponseReviewRecord]:
        ...

    # Expert stats and quotas

    def get_expert_stats(self, expert_id: int) -> Optional[ExpertStatsRecord]:
        ...

    def recompute_expert_stats(self, expert_id: int) -> ExpertStatsRecord:
        ...

    def get_available_slots(self, expert_id: int) -> int:
        ...

    # OTP ledger

    def create_otp(self, phone: str, otp: str, expires_at: float) -> OtpRecord:
        ...

    def verify_otp(self, phone: str, otp: str) -> bool:
        ...

    def purge_expired_otps(self) -> int:
        ...

    # Email verification ledger

    def create_email_verification(
        self, email: str, token: str, expires_at: float
    ) -> EmailVerificationRecord:
        ...

    def verify_email_token(self, email: str, token: str) -> bool:
        ...

    # Private messages

    def create_message(self, payload: NewMessage) -> MessageRecord:
        ...

    def list_conversation(
        self, request_id: int, user_a: int, user_b: int
    ) -> list[MessageView]:
        ...

    def list_messages_for_request(self, request_id: int) -> list[MessageView]:
        ...

    def list_conversations_for_user(self, user_id: int) -> list[ConversationSummary]:
        ...

    def mark_message_read(self, message_id: int, user_id: int) -> bool:
        ...

    # Notifications

    def create_notification(self, payload: NewNotification) -> NotificationRecord:
        ...

    def list_notifications(
        self, user_id: int, limit: int = DEFAULT_NOTIFICATION_LIMIT
    ) -> list[NotificationView]:
        ...

    def unread_notification_count(self, user_id: int) -> int:
        ...

    def mark_notification_read(self, notification_id: int, user_id: int) -> bool:
        ...

    def mark_all_notifications_read(self, user_id: int) -> int:
        ...

    # Aggregates

    def get_dashboard_stats(self) -> DashboardStats:
        ...

    def get_top_community_helpers(self) -> list[HelperRanking]:
        ...

    def get_personal_stats(self, user_id: int) -> PersonalStats:
        ...


def page_offset(page: int, page_size: int) -> int:
    if page < 1:
        raise ValueError("page must be >= 1")
    if page_size < 1:
        raise ValueError("page_size must be >= 1")
    return (page - 1) * page_size


def summarize_conversations(
    user_id: int, messages: Iterable[MessageRecord]
) -> list[ConversationSummary]:
    """
    Group a user's messages by ``(request_id, other participant)``.

    Each summary carries the latest message and the number of unread
    messages the other participant sent to ``user_id`` in that thread.
    Newest conversation first.
    """
    latest: dict[tuple[int, int], MessageRecord] = {}
    unread: dict[tuple[int, int], int] = {}
    for message in sorted(messages, key=lambda m: (m.created_at, m.id)):
        if user_id not in (message.sender_id, message.receiver_id):
            continue
        if message.sender_id == user_id:
            other = message.receiver_id
        else:
            other = message.sender_id
        key = (message.request_id, other)
        latest[key] = message
        unread.setdefault(key, 0)
        if message.receiver_id == user_id and not message.is_read:
            unread[key] += 1
    conversations = [
        ConversationSummary(
            request_id=request_id,
            other_user_id=other,
            last_message=message.content,
            last_message_time=message.created_at,
            unread_count=unread[(request_id, other)],
        )
        for (request_id, other), message in latest.items()
    ]
    conversations.sort(
        key=lambda c: (-c.last_message_time, c.request_id, c.other_user_id)
    )
    return conversations
