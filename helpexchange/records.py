"""
Entity records and joined views returned by the storage backends.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, fields
from enum import Enum
from typing import Optional


class Urgency(str, Enum):
    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"


class HelpType(str, Enum):
    GENERAL = "general"
    SPECIFIC = "specific"


class RequestStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    RESOLVED = "resolved"
    CLOSED = "closed"


class NotificationType(str, Enum):
    NEW_RESPONSE = "new_response"
    NEW_MESSAGE = "new_message"
    NEW_RATING = "new_rating"
    BEST_RESPONSE = "best_response"


def _now() -> float:
    return time.time()


class _Record:
    """Mixin giving records a plain-dict form and a tolerant constructor."""

    def as_dict(self) -> dict:
        data = asdict(self)
        for key, value in data.items():
            if isinstance(value, Enum):
                data[key] = value.value
        return data

    @classmethod
    def from_dict(cls, data: dict):
        names = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in names})


@dataclass
class UserRecord(_Record):
    id: int
    phone: str
    name: str
    email: Optional[str] = None
    gender: Optional[str] = None
    batch_year: Optional[int] = None
    profession: Optional[str] = None
    state: Optional[str] = None
    district: Optional[str] = None
    pin_code: Optional[str] = None
    help_areas: list[str] = field(default_factory=list)
    expertise_areas: list[str] = field(default_factory=list)
    is_expert: bool = False
    daily_request_limit: int = 3
    phone_visible: bool = False
    phone_verified: bool = False
    email_verified: bool = False
    upi_id: Optional[str] = None
    bio: Optional[str] = None
    profile_image: Optional[str] = None
    is_active: bool = True
    password_hash: Optional[str] = None
    last_active: float = field(default_factory=_now)
    created_at: float = field(default_factory=_now)


@dataclass
class RequestRecord(_Record):
    id: int
    user_id: int
    title: str
    description: str
    urgency: Urgency
    help_type: HelpType = HelpType.GENERAL
    expertise_required: Optional[str] = None
    help_location_state: Optional[str] = None
    help_location_district: Optional[str] = None
    target_expert_id: Optional[int] = None
    status: RequestStatus = RequestStatus.OPEN
    attachments: list[str] = field(default_factory=list)
    resolved: bool = False
    best_response_id: Optional[int] = None
    created_at: float = field(default_factory=_now)
    updated_at: float = field(default_factory=_now)

    def __post_init__(self):
        self.urgency = Urgency(self.urgency)
        self.help_type = HelpType(self.help_type)
        self.status = RequestStatus(self.status)


@dataclass
class ResponseRecord(_Record):
    id: int
    request_id: int
    expert_id: int
    content: str
    attachments: list[str] = field(default_factory=list)
    helpful_count: int = 0
    is_helpful: bool = False
    created_at: float = field(default_factory=_now)


@dataclass
class ReviewRecord(_Record):
    id: int
    request_id: int
    expert_id: int
    user_id: int
    rating: int
    comment: Optional[str] = None
    created_at: float = field(default_factory=_now)


@dataclass
class ResponseReviewRecord(_Record):
    id: int
    response_id: int
    request_id: int
    user_id: int
    rating: int
    comment: Optional[str] = None
    created_at: float = field(default_factory=_now)


@dataclass
class ExpertStatsRecord(_Record):
    expert_id: int
    total_responses: int = 0
    total_reviews: int = 0
    average_rating: float = 0.0
    helpful_responses: int = 0
    today_responses: int = 0
    last_reset_date: str = ""


@dataclass
class OtpRecord(_Record):
    id: int
    phone: str
    otp: str
    expires_at: float
    verified: bool = False
    created_at: float = field(default_factory=_now)


@dataclass
class EmailVerificationRecord(_Record):
    id: int
    email: str
    token: str
    expires_at: float
    verified: bool = False
    created_at: float = field(default_factory=_now)


@dataclass
class MessageRecord(_Record):
    id: int
    request_id: int
    sender_id: int
    receiver_id: int
    content: str
    attachments: list[str] = field(default_factory=list)
    is_read: bool = False
    created_at: float = field(default_factory=_now)


@dataclass
class NotificationRecord(_Record):
    id: int
    user_id: int
    type: str
    title: str
    message: str
    entity_type: Optional[str] = None
    entity_id: Optional[int] = None
    action_user_id: Optional[int] = None
    is_read: bool = False
    created_at: float = field(default_factory=_now)


# Joined views


@dataclass(frozen=True)
class UserSummary:
    id: int
    name: str
    profession: Optional[str] = None
    batch_year: Optional[int] = None
    profile_image: Optional[str] = None

    @classmethod
    def of(cls, user: UserRecord) -> "UserSummary":
        return cls(
            id=user.id,
            name=user.name,
            profession=user.profession,
            batch_year=user.batch_year,
            profile_image=user.profile_image,
        )


@dataclass
class RequestView:
    request: RequestRecord
    user: Optional[UserSummary]
    response_count: int = 0


@dataclass
class RequestPage:
    items: list[RequestView]
    total: int
    page: int
    page_size: int


@dataclass
class ResponseView:
    response: ResponseRecord
    expert: Optional[UserSummary]


@dataclass
class MessageView:
    message: MessageRecord
    sender: Optional[UserSummary]
    receiver: Optional[UserSummary]


@dataclass
class ConversationSummary:
    request_id: int
    other_user_id: int
    last_message: str
    last_message_time: float
    unread_count: int


@dataclass
class NotificationView:
    notification: NotificationRecord
    action_user: Optional[UserSummary] = None


@dataclass
class ExpertView:
    user: UserRecord
    stats: Optional[ExpertStatsRecord]
    available_slots: int


@dataclass(frozen=True)
class HelperMetrics:
    average_rating: float
    total_responses: int
    best_answers: int
    total_rating: int
    score: float


@dataclass(frozen=True)
class HelperRanking:
    user: UserSummary
    metrics: HelperMetrics


@dataclass(frozen=True)
class DashboardStats:
    total_requests: int
    active_experts: int
    resolved_requests: int
    total_responses: int


@dataclass(frozen=True)
class PersonalStats:
    requests_posted: int
    requests_responded: int
    requests_resolved: int
    reviews_given: int
    reviews_received: int
