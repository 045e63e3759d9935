"""
Caller-side operations composed from storage primitives.

Storage never creates notifications on its own; the functions here decide
when a write deserves one, and never notify users about their own actions.
"""

from __future__ import annotations

import logging
import mimetypes
import secrets
import time
import uuid
from typing import Callable, Optional

from helpexchange.capabilities import PasswordHasher, SmsSender
from helpexchange.config import Settings
from helpexchange.db import DbClient
from helpexchange.errors import InvalidState, NotFound
from helpexchange.records import (
    EmailVerificationRecord,
    MessageRecord,
    NotificationType,
    OtpRecord,
    RequestRecord,
    ResponseRecord,
    ResponseReviewRecord,
    UserRecord,
)
from helpexchange.schemas import (
    NewMessage,
    NewNotification,
    NewResponse,
    NewResponseReview,
    NewUser,
    UserUpdate,
)
from helpexchange.storage import ObjectStore

logger = logging.getLogger(__name__)

DEV_BYPASS_CODE = "123456"
OTP_DIGITS = 6

PROFILE_IMAGE_TYPES = ("image/jpeg", "image/png", "image/gif", "image/webp")
PROFILE_IMAGE_MAX_BYTES = 5 * 1024 * 1024


def _notify(
    db: DbClient,
    recipient_id: int,
    actor_id: int,
    kind: NotificationType,
    title: str,
    message: str,
    entity_type: str,
    entity_id: int,
) -> None:
    if recipient_id == actor_id:
        return
    db.create_notification(
        NewNotification(
            user_id=recipient_id,
            type=kind,
            title=title,
            message=message,
            entity_type=entity_type,
            entity_id=entity_id,
            action_user_id=actor_id,
        )
    )


def _actor_name(db: DbClient, user_id: int) -> str:
    user = db.get_user(user_id)
    return user.name if user else "Someone"


# Requests and responses


def post_response(db: DbClient, payload: NewResponse) -> ResponseRecord:
    """Store a response and tell the request owner about it."""
    request = db.get_request(payload.request_id)
    if request is None:
        raise NotFound("Request", payload.request_id)
    response = db.create_response(payload)
    _notify(
        db,
        recipient_id=request.user_id,
        actor_id=payload.expert_id,
        kind=NotificationType.NEW_RESPONSE,
        title="New response to your request",
        message=f'{_actor_name(db, payload.expert_id)} responded to "{request.title}"',
        entity_type="request",
        entity_id=request.id,
    )
    return response


def send_message(db: DbClient, payload: NewMessage) -> MessageRecord:
    message = db.create_message(payload)
    _notify(
        db,
        recipient_id=payload.receiver_id,
        actor_id=payload.sender_id,
        kind=NotificationType.NEW_MESSAGE,
        title="New message",
        message=f"{_actor_name(db, payload.sender_id)} sent you a message",
        entity_type="request",
        entity_id=payload.request_id,
    )
    return message


def rate_response(db: DbClient, payload: NewResponseReview) -> ResponseReviewRecord:
    response = db.get_response(payload.response_id)
    if response is None:
        raise NotFound("Response", payload.response_id)
    review = db.create_response_review(payload)
    _notify(
        db,
        recipient_id=response.expert_id,
        actor_id=payload.user_id,
        kind=NotificationType.NEW_RATING,
        title="Your response was rated",
        message=(
            f"{_actor_name(db, payload.user_id)} rated your response "
            f"{payload.rating}/5"
        ),
        entity_type="response",
        entity_id=response.id,
    )
    return review


def choose_best_response(
    db: DbClient, request_id: int, response_id: int, owner_id: int
) -> RequestRecord:
    """Mark the best response on behalf of the request owner."""
    request = db.get_request(request_id)
    if request is None:
        raise InvalidState(f"Request {request_id} does not exist")
    if request.user_id != owner_id:
        raise InvalidState(
            f"User {owner_id} cannot choose the best response for request {request_id}"
        )
    updated = db.mark_best_response(request_id, response_id)
    response = db.get_response(response_id)
    _notify(
        db,
        recipient_id=response.expert_id,
        actor_id=owner_id,
        kind=NotificationType.BEST_RESPONSE,
        title="Your response was chosen as the best",
        message=f'Your answer to "{request.title}" was marked as the best response',
        entity_type="request",
        entity_id=request_id,
    )
    return updated


# Phone verification


def generate_otp() -> str:
    return "".join(secrets.choice("0123456789") for _ in range(OTP_DIGITS))


def issue_otp(
    db: DbClient,
    sms: SmsSender,
    phone: str,
    ttl_seconds: int,
    clock: Callable[[], float] = time.time,
) -> tuple[OtpRecord, bool]:
    """
    Store a fresh code for ``phone`` and hand it to the SMS sender.

    Earlier codes stay valid until they expire or are used. Returns the
    stored row and whether delivery was accepted.
    """
    record = db.create_otp(phone, generate_otp(), clock() + ttl_seconds)
    delivered = sms.send(phone, record.otp)
    if not delivered:
        logger.warning("SMS delivery failed for %s", phone)
    return record, delivered


def issue_email_token(
    db: DbClient,
    email: str,
    ttl_seconds: int,
    clock: Callable[[], float] = time.time,
) -> EmailVerificationRecord:
    """Store a fresh single-use token for ``email``; delivery is the caller's job."""
    return db.create_email_verification(
        email, secrets.token_urlsafe(32), clock() + ttl_seconds
    )


def verify_phone(
    db: DbClient, phone: str, code: str, settings: Settings
) -> Optional[UserRecord]:
    """
    Consume ``code`` for ``phone`` and flag the matching user as verified.

    Returns the updated user, or ``None`` when no account uses the phone
    yet (verification before registration). Raises ``InvalidState`` when
    the code is rejected.
    """
    accepted = db.verify_otp(phone, code)
    if not accepted and settings.dev_otp_bypass and code == DEV_BYPASS_CODE:
        logger.warning("Accepting development OTP for %s", phone)
        accepted = True
    if not accepted:
        raise InvalidState(f"Invalid or expired code for {phone}")
    user = db.get_user_by_phone(phone)
    if user is None:
        return None
    return db.update_user(user.id, UserUpdate(phone_verified=True))


# Accounts


def register_user(
    db: DbClient, hasher: PasswordHasher, payload: NewUser, secret: Optional[str]
) -> UserRecord:
    data = payload.model_dump()
    data["password_hash"] = hasher.hash(secret) if secret else None
    return db.create_user(NewUser(**data))


def authenticate(
    db: DbClient,
    hasher: PasswordHasher,
    phone: str,
    secret: str,
    clock: Callable[[], float] = time.time,
) -> Optional[UserRecord]:
    """Return the user when ``secret`` matches, else ``None``."""
    user = db.get_user_by_phone(phone)
    if user is None or not user.is_active or not user.password_hash:
        return None
    if not hasher.verify(secret, user.password_hash):
        logger.info("Password rejected for user %s", user.id)
        return None
    return db.update_user(user.id, UserUpdate(last_active=clock()))


def upload_profile_image(
    db: DbClient,
    store: ObjectStore,
    user_id: int,
    data: bytes,
    filename: str,
    content_type: Optional[str] = None,
) -> UserRecord:
    if db.get_user(user_id) is None:
        raise NotFound("User", user_id)
    content_type = content_type or mimetypes.guess_type(filename)[0]
    if content_type not in PROFILE_IMAGE_TYPES:
        raise InvalidState(f"Unsupported image type {content_type!r}")
    if len(data) > PROFILE_IMAGE_MAX_BYTES:
        raise InvalidState(f"Image is larger than {PROFILE_IMAGE_MAX_BYTES} bytes")
    extension = mimetypes.guess_extension(content_type) or ""
    path = f"profile-images/{user_id}/profile-{uuid.uuid4().hex}{extension}"
    url = store.put_object(path, data, content_type)
    logger.info("Stored profile image for user %s at %s", user_id, path)
    return db.update_user(user_id, UserUpdate(profile_image=url))
