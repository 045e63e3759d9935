"""
SQLAlchemy storage backend.

Counts, averages and "today" windows are computed in SQL so concurrent
callers never depend on a cached counter read by another process.
"""

from __future__ import annotations

import logging
import time
from dataclasses import fields
from typing import Callable, Optional

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    and_,
    case,
    create_engine,
    delete,
    func,
    or_,
    select,
    union_all,
    update,
)
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased, declarative_base, sessionmaker

from helpexchange import reputation
from helpexchange.db import (
    DEFAULT_EXPERT_LIMIT,
    DEFAULT_NOTIFICATION_LIMIT,
    DEFAULT_PAGE_SIZE,
    page_offset,
    summarize_conversations,
)
from helpexchange.errors import BackendUnavailable, InvalidState, NotFound
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

Base = declarative_base()


class UserRow(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String, nullable=False, unique=True)
    name = Column(String, nullable=False)
    email = Column(String, nullable=True)
    gender = Column(String, nullable=True)
    batch_year = Column(Integer, nullable=True)
    profession = Column(String, nullable=True)
    state = Column(String, nullable=True)
    district = Column(String, nullable=True)
    pin_code = Column(String, nullable=True)
    help_areas = Column(JSON, nullable=False, default=list)
    expertise_areas = Column(JSON, nullable=False, default=list)
    is_expert = Column(Boolean, nullable=False, default=False, index=True)
    daily_request_limit = Column(Integer, nullable=False, default=3)
    phone_visible = Column(Boolean, nullable=False, default=False)
    phone_verified = Column(Boolean, nullable=False, default=False)
    email_verified = Column(Boolean, nullable=False, default=False)
    upi_id = Column(String, nullable=True)
    bio = Column(Text, nullable=True)
    profile_image = Column(String, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    password_hash = Column(String, nullable=True)
    last_active = Column(Float, nullable=False)
    created_at = Column(Float, nullable=False)


class RequestRow(Base):
    __tablename__ = "requests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=False)
    urgency = Column(String, nullable=False)
    help_type = Column(String, nullable=False)
    expertise_required = Column(String, nullable=True)
    help_location_state = Column(String, nullable=True)
    help_location_district = Column(String, nullable=True)
    target_expert_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    status = Column(String, nullable=False, default="open", index=True)
    attachments = Column(JSON, nullable=False, default=list)
    resolved = Column(Boolean, nullable=False, default=False)
    best_response_id = Column(Integer, nullable=True, index=True)
    created_at = Column(Float, nullable=False, index=True)
    updated_at = Column(Float, nullable=False)


class ResponseRow(Base):
    __tablename__ = "responses"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    expert_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    attachments = Column(JSON, nullable=False, default=list)
    helpful_count = Column(Integer, nullable=False, default=0)
    is_helpful = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False, index=True)


class ReviewRow(Base):
    __tablename__ = "reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False)
    expert_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)


class ResponseReviewRow(Base):
    __tablename__ = "response_reviews"

    id = Column(Integer, primary_key=True, autoincrement=True)
    response_id = Column(
        Integer, ForeignKey("responses.id"), nullable=False, index=True
    )
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    rating = Column(Integer, nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(Float, nullable=False)


class ExpertStatsRow(Base):
    __tablename__ = "expert_stats"

    expert_id = Column(Integer, ForeignKey("users.id"), primary_key=True)
    total_responses = Column(Integer, nullable=False, default=0)
    total_reviews = Column(Integer, nullable=False, default=0)
    average_rating = Column(Float, nullable=False, default=0.0)
    helpful_responses = Column(Integer, nullable=False, default=0)
    today_responses = Column(Integer, nullable=False, default=0)
    last_reset_date = Column(String, nullable=False)


class OtpRow(Base):
    __tablename__ = "otp_verifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    phone = Column(String, nullable=False, index=True)
    otp = Column(String, nullable=False)
    expires_at = Column(Float, nullable=False)
    verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class EmailVerificationRow(Base):
    __tablename__ = "email_verifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String, nullable=False, index=True)
    token = Column(String, nullable=False)
    expires_at = Column(Float, nullable=False)
    verified = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class MessageRow(Base):
    __tablename__ = "private_messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    request_id = Column(Integer, ForeignKey("requests.id"), nullable=False, index=True)
    sender_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    receiver_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    content = Column(Text, nullable=False)
    attachments = Column(JSON, nullable=False, default=list)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


class NotificationRow(Base):
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    type = Column(String, nullable=False)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    entity_type = Column(String, nullable=True)
    entity_id = Column(Integer, nullable=True)
    action_user_id = Column(Integer, ForeignKey("users.id"), nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)
    created_at = Column(Float, nullable=False)


def _to_record(record_type, row):
    values = {}
    for f in fields(record_type):
        value = getattr(row, f.name)
        if value is None and f.name in ("help_areas", "expertise_areas", "attachments"):
            value = []
        values[f.name] = value
    return record_type(**values)


def _summary(row: Optional[UserRow]) -> Optional[UserSummary]:
    if row is None:
        return None
    return UserSummary(
        id=row.id,
        name=row.name,
        profession=row.profession,
        batch_year=row.batch_year,
        profile_image=row.profile_image,
    )


class PostgresDbClient:
    """
    SQLAlchemy-backed implementation. Accepts any SQLAlchemy URL (e.g., Postgres or SQLite for tests).
    """

    def __init__(self, database_url: str, clock: Callable[[], float] = time.time):
        if not database_url:
            raise ValueError("DATABASE_URL is required for PostgresDbClient")
        self.clock = clock
        try:
            self.engine = create_engine(
                database_url,
                future=True,
                pool_pre_ping=True,
                pool_recycle=1800,
            )
            Base.metadata.create_all(self.engine)
        except (SQLAlchemyError, ImportError) as exc:
            raise BackendUnavailable(f"Cannot open database: {exc}") from exc
        self.Session = sessionmaker(
            bind=self.engine, class_=Session, expire_on_commit=False, future=True
        )

    def _response_count(self):
        return (
            select(func.count(ResponseRow.id))
            .where(ResponseRow.request_id == RequestRow.id)
            .correlate(RequestRow)
            .scalar_subquery()
        )

    def _today_count(self, now: float):
        start, end = reputation.day_bounds(now)
        return (
            select(func.count(ResponseRow.id))
            .where(
                ResponseRow.expert_id == UserRow.id,
                ResponseRow.created_at >= start,
                ResponseRow.created_at < end,
            )
            .correlate(UserRow)
            .scalar_subquery()
        )

    def _count_today(self, session: Session, expert_id: int, now: float) -> int:
        start, end = reputation.day_bounds(now)
        return session.scalar(
            select(func.count(ResponseRow.id)).where(
                ResponseRow.expert_id == expert_id,
                ResponseRow.created_at >= start,
                ResponseRow.created_at < end,
            )
        )

    # Users

    def create_user(self, payload: NewUser) -> UserRecord:
        now = self.clock()
        with self.Session() as session:
            existing = session.execute(
                select(UserRow.id).where(UserRow.phone == payload.phone)
            ).first()
            if existing:
                raise InvalidState(f"Phone {payload.phone} is already registered")
            row = UserRow(created_at=now, last_active=now, **payload.model_dump(mode="json"))
            session.add(row)
            try:
                session.commit()
            except IntegrityError as exc:
                session.rollback()
                raise InvalidState(
                    f"Phone {payload.phone} is already registered"
                ) from exc
            session.refresh(row)
            return _to_record(UserRecord, row)

    def get_user(self, user_id: int) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            return _to_record(UserRecord, row) if row else None

    def get_user_by_phone(self, phone: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow).where(UserRow.phone == phone)
            ).scalar_one_or_none()
            return _to_record(UserRecord, row) if row else None

    def get_user_by_email(self, email: str) -> Optional[UserRecord]:
        with self.Session() as session:
            row = session.execute(
                select(UserRow)
                .where(UserRow.email == email)
                .order_by(UserRow.id)
                .limit(1)
            ).scalar_one_or_none()
            return _to_record(UserRecord, row) if row else None

    def list_users(self) -> list[UserRecord]:
        with self.Session() as session:
            rows = session.execute(select(UserRow).order_by(UserRow.id)).scalars()
            return [_to_record(UserRecord, row) for row in rows]

    def update_user(self, user_id: int, updates: UserUpdate) -> UserRecord:
        changes = updates.changes()
        with self.Session() as session:
            row = session.get(UserRow, user_id)
            if not row:
                raise NotFound("User", user_id)
            phone = changes.get("phone")
            if phone and phone != row.phone:
                taken = session.execute(
                    select(UserRow.id).where(UserRow.phone == phone)
                ).first()
                if taken:
                    raise InvalidState(f"Phone {phone} is already registered")
            for name, value in changes.items():
                setattr(row, name, value)
            session.commit()
            session.refresh(row)
            return _to_record(UserRecord, row)

    def _expert_views(self, session: Session, stmt) -> list[ExpertView]:
        now = self.clock()
        today = reputation.utc_date(now)
        views = []
        for user_row, stats_row, today_count in session.execute(stmt):
            user = _to_record(UserRecord, user_row)
            stats = None
            if stats_row is not None:
                stats = _to_record(ExpertStatsRecord, stats_row)
                stats.today_responses = today_count
                stats.last_reset_date = today
            views.append(
                ExpertView(
                    user=user,
                    stats=stats,
                    available_slots=reputation.available_slots(
                        user.daily_request_limit, today_count
                    ),
                )
            )
        return views

    def _experts_stmt(self):
        return (
            select(UserRow, ExpertStatsRow, self._today_count(self.clock()))
            .outerjoin(ExpertStatsRow, ExpertStatsRow.expert_id == UserRow.id)
            .where(UserRow.is_expert.is_(True), UserRow.is_active.is_(True))
            .order_by(UserRow.id)
        )

    def list_experts(self, limit: int = DEFAULT_EXPERT_LIMIT) -> list[ExpertView]:
        with self.Session() as session:
            return self._expert_views(session, self._experts_stmt().limit(limit))

    def list_experts_by_expertise(self, expertise: str) -> list[ExpertView]:
        with self.Session() as session:
            views = self._expert_views(session, self._experts_stmt())
        # JSON list containment differs per dialect; filter after the join.
        return [v for v in views if expertise in (v.user.expertise_areas or [])]

    # Requests

    def create_request(self, payload: NewRequest) -> RequestRecord:
        now = self.clock()
        with self.Session() as session:
            if not session.get(UserRow, payload.user_id):
                raise NotFound("User", payload.user_id)
            row = RequestRow(
                created_at=now,
                updated_at=now,
                status=RequestStatus.OPEN.value,
                resolved=False,
                **payload.model_dump(mode="json"),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(RequestRecord, row)

    def get_request(self, request_id: int) -> Optional[RequestRecord]:
        with self.Session() as session:
            row = session.get(RequestRow, request_id)
            return _to_record(RequestRecord, row) if row else None

    def _request_views_stmt(self):
        return select(RequestRow, UserRow, self._response_count()).outerjoin(
            UserRow, RequestRow.user_id == UserRow.id
        )

    def _request_view(self, request_row, user_row, response_count) -> RequestView:
        return RequestView(
            request=_to_record(RequestRecord, request_row),
            user=_summary(user_row),
            response_count=response_count or 0,
        )

    def get_request_detail(self, request_id: int) -> Optional[RequestView]:
        with self.Session() as session:
            result = session.execute(
                self._request_views_stmt().where(RequestRow.id == request_id)
            ).first()
            if not result:
                return None
            return self._request_view(*result)

    def _request_page(self, conditions, page: int, page_size: int) -> RequestPage:
        offset = page_offset(page, page_size)
        with self.Session() as session:
            total = session.scalar(
                select(func.count(RequestRow.id)).where(*conditions)
            )
            rows = session.execute(
                self._request_views_stmt()
                .where(*conditions)
                .order_by(RequestRow.created_at.desc(), RequestRow.id.asc())
                .limit(page_size)
                .offset(offset)
            ).all()
            return RequestPage(
                items=[self._request_view(*row) for row in rows],
                total=total or 0,
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
        conditions = [RequestRow.user_id == user_id]
        if status:
            conditions.append(RequestRow.status == RequestStatus(status).value)
        return self._request_page(conditions, page, page_size)

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> RequestPage:
        conditions = []
        if status:
            conditions.append(RequestRow.status == RequestStatus(status).value)
        return self._request_page(conditions, page, page_size)

    def update_request_fields(
        self,
        request_id: int,
        *,
        title: Optional[str] = None,
        description: Optional[str] = None,
    ) -> RequestRecord:
        with self.Session() as session:
            row = session.get(RequestRow, request_id)
            if not row:
                raise NotFound("Request", request_id)
            if title is not None:
                row.title = title
            if description is not None:
                row.description = description
            row.updated_at = self.clock()
            session.commit()
            session.refresh(row)
            return _to_record(RequestRecord, row)

    def update_request_status(
        self, request_id: int, status: RequestStatus | str
    ) -> RequestRecord:
        new_status = RequestStatus(status)
        with self.Session() as session:
            row = session.get(RequestRow, request_id)
            if not row:
                raise NotFound("Request", request_id)
            row.status = new_status.value
            row.resolved = new_status == RequestStatus.RESOLVED
            if not row.resolved:
                row.best_response_id = None
            row.updated_at = self.clock()
            session.commit()
            session.refresh(row)
            return _to_record(RequestRecord, row)

    def mark_best_response(self, request_id: int, response_id: int) -> RequestRecord:
        with self.Session() as session:
            row = session.get(RequestRow, request_id)
            if not row:
                raise InvalidState(f"Request {request_id} does not exist")
            response = session.get(ResponseRow, response_id)
            if not response or response.request_id != request_id:
                raise InvalidState(
                    f"Response {response_id} does not belong to request {request_id}"
                )
            row.best_response_id = response_id
            row.status = RequestStatus.RESOLVED.value
            row.resolved = True
            row.updated_at = self.clock()
            session.commit()
            session.refresh(row)
            return _to_record(RequestRecord, row)

    # Responses and reviews

    def create_response(self, payload: NewResponse) -> ResponseRecord:
        with self.Session() as session:
            if not session.get(RequestRow, payload.request_id):
                raise NotFound("Request", payload.request_id)
            if not session.get(UserRow, payload.expert_id):
                raise NotFound("User", payload.expert_id)
            row = ResponseRow(
                created_at=self.clock(),
                helpful_count=0,
                is_helpful=False,
                **payload.model_dump(mode="json"),
            )
            session.add(row)
            session.flush()
            self._store_stats(session, payload.expert_id)
            session.commit()
            session.refresh(row)
            return _to_record(ResponseRecord, row)

    def get_response(self, response_id: int) -> Optional[ResponseRecord]:
        with self.Session() as session:
            row = session.get(ResponseRow, response_id)
            return _to_record(ResponseRecord, row) if row else None

    def list_responses_for_request(self, request_id: int) -> list[ResponseView]:
        with self.Session() as session:
            rows = session.execute(
                select(ResponseRow, UserRow)
                .outerjoin(UserRow, ResponseRow.expert_id == UserRow.id)
                .where(ResponseRow.request_id == request_id)
                .order_by(ResponseRow.created_at.desc(), ResponseRow.id.asc())
            ).all()
            return [
                ResponseView(
                    response=_to_record(ResponseRecord, response),
                    expert=_summary(expert),
                )
                for response, expert in rows
            ]

    def increment_helpful(self, response_id: int) -> ResponseRecord:
        with self.Session() as session:
            result = session.execute(
                update(ResponseRow)
                .where(ResponseRow.id == response_id)
                .values(
                    helpful_count=ResponseRow.helpful_count + 1,
                    is_helpful=True,
                )
            )
            if result.rowcount == 0:
                raise NotFound("Response", response_id)
            row = session.get(ResponseRow, response_id)
            self._store_stats(session, row.expert_id)
            session.commit()
            session.refresh(row)
            return _to_record(ResponseRecord, row)

    def create_review(self, payload: NewReview) -> ReviewRecord:
        with self.Session() as session:
            if not session.get(RequestRow, payload.request_id):
                raise NotFound("Request", payload.request_id)
            if not session.get(UserRow, payload.expert_id):
                raise NotFound("User", payload.expert_id)
            row = ReviewRow(created_at=self.clock(), **payload.model_dump(mode="json"))
            session.add(row)
            session.flush()
            self._store_stats(session, payload.expert_id)
            session.commit()
            session.refresh(row)
            return _to_record(ReviewRecord, row)

    def list_reviews_for_expert(self, expert_id: int) -> list[ReviewRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(ReviewRow)
                .where(ReviewRow.expert_id == expert_id)
                .order_by(ReviewRow.created_at.desc(), ReviewRow.id.asc())
            ).scalars()
            return [_to_record(ReviewRecord, row) for row in rows]

    def create_response_review(
        self, payload: NewResponseReview
    ) -> ResponseReviewRecord:
        with self.Session() as session:
            response = session.get(ResponseRow, payload.response_id)
            if not response:
                raise NotFound("Response", payload.response_id)
            row = ResponseReviewRow(
                created_at=self.clock(), **payload.model_dump(mode="json")
            )
            session.add(row)
            session.flush()
            self._store_stats(session, response.expert_id)
            session.commit()
            session.refresh(row)
            return _to_record(ResponseReviewRecord, row)

    def list_response_reviews(self, response_id: int) -> list[ResponseReviewRecord]:
        with self.Session() as session:
            rows = session.execute(
                select(ResponseReviewRow)
                .where(ResponseReviewRow.response_id == response_id)
                .order_by(ResponseReviewRow.created_at.asc(), ResponseReviewRow.id.asc())
            ).scalars()
            return [_to_record(ResponseReviewRecord, row) for row in rows]

    # Expert stats and quotas

    def _compute_stats(self, session: Session, expert_id: int) -> ExpertStatsRecord:
        now = self.clock()
        start, end = reputation.day_bounds(now)
        total, helpful, today = session.execute(
            select(
                func.count(ResponseRow.id),
                func.coalesce(
                    func.sum(case((ResponseRow.helpful_count > 0, 1), else_=0)), 0
                ),
                func.coalesce(
                    func.sum(
                        case(
                            (
                                and_(
                                    ResponseRow.created_at >= start,
                                    ResponseRow.created_at < end,
                                ),
                                1,
                            ),
                            else_=0,
                        )
                    ),
                    0,
                ),
            ).where(ResponseRow.expert_id == expert_id)
        ).one()
        ratings = union_all(
            select(ReviewRow.rating.label("rating")).where(
                ReviewRow.expert_id == expert_id
            ),
            select(ResponseReviewRow.rating.label("rating"))
            .join(ResponseRow, ResponseReviewRow.response_id == ResponseRow.id)
            .where(ResponseRow.expert_id == expert_id),
        ).subquery()
        count, rating_sum, rating_min, rating_max = session.execute(
            select(
                func.count(),
                func.coalesce(func.sum(ratings.c.rating), 0),
                func.min(ratings.c.rating),
                func.max(ratings.c.rating),
            ).select_from(ratings)
        ).one()
        return reputation.stats_from_aggregates(
            expert_id,
            total_responses=int(total),
            helpful_responses=int(helpful),
            today_responses=int(today),
            rating_count=int(count),
            rating_sum=int(rating_sum),
            rating_min=rating_min,
            rating_max=rating_max,
            now=now,
        )

    def _upsert_stats(self, session: Session, stats: ExpertStatsRecord) -> None:
        values = stats.as_dict()
        dialect = self.engine.dialect.name
        if dialect in ("postgresql", "sqlite"):
            insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = insert(ExpertStatsRow).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=[ExpertStatsRow.expert_id],
                set_={k: stmt.excluded[k] for k in values if k != "expert_id"},
            )
            session.execute(stmt)
            return
        row = session.get(ExpertStatsRow, stats.expert_id)
        if row:
            for name, value in values.items():
                setattr(row, name, value)
        else:
            session.add(ExpertStatsRow(**values))

    def _store_stats(self, session: Session, expert_id: int) -> ExpertStatsRecord:
        stats = self._compute_stats(session, expert_id)
        self._upsert_stats(session, stats)
        logger.debug("Recomputed stats for expert %s: %s", expert_id, stats)
        return stats

    def get_expert_stats(self, expert_id: int) -> Optional[ExpertStatsRecord]:
        now = self.clock()
        today = reputation.utc_date(now)
        with self.Session() as session:
            row = session.get(ExpertStatsRow, expert_id)
            if not row:
                return None
            live = self._count_today(session, expert_id, now)
            if row.last_reset_date != today or row.today_responses != live:
                row.last_reset_date = today
                row.today_responses = live
                session.commit()
            return _to_record(ExpertStatsRecord, row)

    def recompute_expert_stats(self, expert_id: int) -> ExpertStatsRecord:
        with self.Session() as session:
            if not session.get(UserRow, expert_id):
                raise NotFound("User", expert_id)
            try:
                stats = self._store_stats(session, expert_id)
                session.commit()
            except Exception:
                session.rollback()
                raise
            return stats

    def get_available_slots(self, expert_id: int) -> int:
        with self.Session() as session:
            user = session.get(UserRow, expert_id)
            if not user:
                raise NotFound("User", expert_id)
            today = self._count_today(session, expert_id, self.clock())
            return reputation.available_slots(user.daily_request_limit, today)

    # OTP ledger

    def create_otp(self, phone: str, otp: str, expires_at: float) -> OtpRecord:
        with self.Session() as session:
            row = OtpRow(
                phone=phone,
                otp=otp,
                expires_at=expires_at,
                verified=False,
                created_at=self.clock(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(OtpRecord, row)

    def verify_otp(self, phone: str, otp: str) -> bool:
        now = self.clock()
        with self.Session() as session:
            candidate = session.execute(
                select(OtpRow.id)
                .where(
                    OtpRow.phone == phone,
                    OtpRow.otp == otp,
                    OtpRow.verified.is_(False),
                    OtpRow.expires_at > now,
                )
                .order_by(OtpRow.created_at.desc(), OtpRow.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if candidate is None:
                logger.info("OTP rejected for %s", phone)
                return False
            # Conditional update so two racing verifications cannot both win.
            result = session.execute(
                update(OtpRow)
                .where(OtpRow.id == candidate, OtpRow.verified.is_(False))
                .values(verified=True)
            )
            session.commit()
            verified = result.rowcount == 1
            logger.info("OTP %s for %s", "verified" if verified else "rejected", phone)
            return verified

    def purge_expired_otps(self) -> int:
        with self.Session() as session:
            result = session.execute(
                delete(OtpRow).where(OtpRow.expires_at <= self.clock())
            )
            session.commit()
            return result.rowcount or 0

    # Email verification ledger

    def create_email_verification(
        self, email: str, token: str, expires_at: float
    ) -> EmailVerificationRecord:
        with self.Session() as session:
            row = EmailVerificationRow(
                email=email,
                token=token,
                expires_at=expires_at,
                verified=False,
                created_at=self.clock(),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(EmailVerificationRecord, row)

    def verify_email_token(self, email: str, token: str) -> bool:
        now = self.clock()
        with self.Session() as session:
            candidate = session.execute(
                select(EmailVerificationRow.id)
                .where(
                    EmailVerificationRow.email == email,
                    EmailVerificationRow.token == token,
                    EmailVerificationRow.verified.is_(False),
                    EmailVerificationRow.expires_at > now,
                )
                .order_by(
                    EmailVerificationRow.created_at.desc(),
                    EmailVerificationRow.id.desc(),
                )
                .limit(1)
            ).scalar_one_or_none()
            if candidate is None:
                logger.info("Email token rejected for %s", email)
                return False
            result = session.execute(
                update(EmailVerificationRow)
                .where(
                    EmailVerificationRow.id == candidate,
                    EmailVerificationRow.verified.is_(False),
                )
                .values(verified=True)
            )
            if result.rowcount != 1:
                session.rollback()
                logger.info("Email token rejected for %s", email)
                return False
            session.execute(
                update(UserRow).where(UserRow.email == email).values(email_verified=True)
            )
            session.commit()
            logger.info("Email verified for %s", email)
            return True

    # Private messages

    def create_message(self, payload: NewMessage) -> MessageRecord:
        with self.Session() as session:
            if not session.get(RequestRow, payload.request_id):
                raise NotFound("Request", payload.request_id)
            row = MessageRow(
                created_at=self.clock(), is_read=False, **payload.model_dump(mode="json")
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(MessageRecord, row)

    def _message_views(self, session: Session, *conditions) -> list[MessageView]:
        sender = aliased(UserRow)
        receiver = aliased(UserRow)
        rows = session.execute(
            select(MessageRow, sender, receiver)
            .outerjoin(sender, MessageRow.sender_id == sender.id)
            .outerjoin(receiver, MessageRow.receiver_id == receiver.id)
            .where(*conditions)
            .order_by(MessageRow.created_at.asc(), MessageRow.id.asc())
        ).all()
        return [
            MessageView(
                message=_to_record(MessageRecord, message),
                sender=_summary(sender_row),
                receiver=_summary(receiver_row),
            )
            for message, sender_row, receiver_row in rows
        ]

    def list_conversation(
        self, request_id: int, user_a: int, user_b: int
    ) -> list[MessageView]:
        with self.Session() as session:
            return self._message_views(
                session,
                MessageRow.request_id == request_id,
                or_(
                    and_(MessageRow.sender_id == user_a, MessageRow.receiver_id == user_b),
                    and_(MessageRow.sender_id == user_b, MessageRow.receiver_id == user_a),
                ),
            )

    def list_messages_for_request(self, request_id: int) -> list[MessageView]:
        with self.Session() as session:
            return self._message_views(session, MessageRow.request_id == request_id)

    def list_conversations_for_user(self, user_id: int) -> list[ConversationSummary]:
        with self.Session() as session:
            rows = session.execute(
                select(MessageRow).where(
                    or_(MessageRow.sender_id == user_id, MessageRow.receiver_id == user_id)
                )
            ).scalars()
            messages = [_to_record(MessageRecord, row) for row in rows]
        return summarize_conversations(user_id, messages)

    def mark_message_read(self, message_id: int, user_id: int) -> bool:
        with self.Session() as session:
            result = session.execute(
                update(MessageRow)
                .where(
                    MessageRow.id == message_id,
                    MessageRow.receiver_id == user_id,
                    MessageRow.is_read.is_(False),
                )
                .values(is_read=True)
            )
            session.commit()
            return result.rowcount == 1

    # Notifications

    def create_notification(self, payload: NewNotification) -> NotificationRecord:
        with self.Session() as session:
            row = NotificationRow(
                created_at=self.clock(), is_read=False, **payload.model_dump(mode="json")
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            return _to_record(NotificationRecord, row)

    def list_notifications(
        self, user_id: int, limit: int = DEFAULT_NOTIFICATION_LIMIT
    ) -> list[NotificationView]:
        with self.Session() as session:
            rows = session.execute(
                select(NotificationRow, UserRow)
                .outerjoin(UserRow, NotificationRow.action_user_id == UserRow.id)
                .where(NotificationRow.user_id == user_id)
                .order_by(NotificationRow.created_at.desc(), NotificationRow.id.asc())
                .limit(limit)
            ).all()
            return [
                NotificationView(
                    notification=_to_record(NotificationRecord, notification),
                    action_user=_summary(actor),
                )
                for notification, actor in rows
            ]

    def unread_notification_count(self, user_id: int) -> int:
        with self.Session() as session:
            return session.scalar(
                select(func.count(NotificationRow.id)).where(
                    NotificationRow.user_id == user_id,
                    NotificationRow.is_read.is_(False),
                )
            ) or 0

    def mark_notification_read(self, notification_id: int, user_id: int) -> bool:
        with self.Session() as session:
            result = session.execute(
                update(NotificationRow)
                .where(
                    NotificationRow.id == notification_id,
                    NotificationRow.user_id == user_id,
                    NotificationRow.is_read.is_(False),
                )
                .values(is_read=True)
            )
            session.commit()
            return result.rowcount == 1

    def mark_all_notifications_read(self, user_id: int) -> int:
        with self.Session() as session:
            result = session.execute(
                update(NotificationRow)
                .where(
                    NotificationRow.user_id == user_id,
                    NotificationRow.is_read.is_(False),
                )
                .values(is_read=True)
            )
            session.commit()
            return result.rowcount or 0

    # Aggregates

    def get_dashboard_stats(self) -> DashboardStats:
        with self.Session() as session:
            return DashboardStats(
                total_requests=session.scalar(select(func.count(RequestRow.id))) or 0,
                active_experts=session.scalar(
                    select(func.count(UserRow.id)).where(
                        UserRow.is_expert.is_(True), UserRow.is_active.is_(True)
                    )
                )
                or 0,
                resolved_requests=session.scalar(
                    select(func.count(RequestRow.id)).where(
                        RequestRow.resolved.is_(True)
                    )
                )
                or 0,
                total_responses=session.scalar(select(func.count(ResponseRow.id)))
                or 0,
            )

    def get_top_community_helpers(self) -> list[HelperRanking]:
        cutoff = reputation.window_start(self.clock())
        recent = (
            select(ResponseRow.id, ResponseRow.expert_id)
            .where(ResponseRow.created_at >= cutoff)
            .subquery()
        )
        stmt = (
            select(
                UserRow,
                func.count(recent.c.id.distinct()),
                func.count(ResponseReviewRow.id),
                func.coalesce(func.sum(ResponseReviewRow.rating), 0),
                func.count(RequestRow.id.distinct()),
            )
            .join(recent, recent.c.expert_id == UserRow.id)
            .outerjoin(ResponseReviewRow, ResponseReviewRow.response_id == recent.c.id)
            .outerjoin(RequestRow, RequestRow.best_response_id == recent.c.id)
            .group_by(UserRow.id)
        )
        with self.Session() as session:
            candidates = [
                reputation.HelperCandidate(
                    user=_summary(user),
                    total_responses=int(total),
                    rating_count=int(rating_count),
                    total_rating=int(total_rating),
                    best_answers=int(best),
                )
                for user, total, rating_count, total_rating, best in session.execute(stmt)
            ]
        return reputation.rank_helpers(candidates)

    def get_personal_stats(self, user_id: int) -> PersonalStats:
        own_responses = select(ResponseRow.id).where(ResponseRow.expert_id == user_id)
        with self.Session() as session:

            def count(stmt) -> int:
                return session.scalar(stmt) or 0

            return PersonalStats(
                requests_posted=count(
                    select(func.count(RequestRow.id)).where(RequestRow.user_id == user_id)
                ),
                requests_responded=count(
                    select(func.count(ResponseRow.id)).where(
                        ResponseRow.expert_id == user_id
                    )
                ),
                requests_resolved=count(
                    select(func.count(RequestRow.id)).where(
                        RequestRow.user_id == user_id, RequestRow.resolved.is_(True)
                    )
                ),
                reviews_given=count(
                    select(func.count(ReviewRow.id)).where(ReviewRow.user_id == user_id)
                )
                + count(
                    select(func.count(ResponseReviewRow.id)).where(
                        ResponseReviewRow.user_id == user_id
                    )
                ),
                reviews_received=count(
                    select(func.count(ReviewRow.id)).where(
                        ReviewRow.expert_id == user_id
                    )
                )
                + count(
                    select(func.count(ResponseReviewRow.id)).where(
                        ResponseReviewRow.response_id.in_(own_responses)
                    )
                ),
            )
