"""
Pydantic schemas validating payloads before they reach a storage backend.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field, field_validator

from helpexchange.records import HelpType, NotificationType, Urgency


class NewUser(BaseModel):
    phone: str = Field(..., min_length=1, max_length=32)
    name: str = Field(..., min_length=1)
    email: Optional[str] = None
    gender: Optional[str] = None
    batch_year: Optional[int] = None
    profession: Optional[str] = None
    state: Optional[str] = None
    district: Optional[str] = None
    pin_code: Optional[str] = None
    help_areas: list[str] = Field(default_factory=list)
    expertise_areas: list[str] = Field(default_factory=list)
    is_expert: bool = False
    daily_request_limit: int = Field(default=3, ge=0)
    phone_visible: bool = False
    phone_verified: bool = False
    email_verified: bool = False
    upi_id: Optional[str] = None
    bio: Optional[str] = None
    profile_image: Optional[str] = None
    is_active: bool = True
    password_hash: Optional[str] = None


class UserUpdate(BaseModel):
    """Partial update; only explicitly set fields are applied."""

    phone: Optional[str] = Field(default=None, min_length=1, max_length=32)
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[str] = None
    gender: Optional[str] = None
    batch_year: Optional[int] = None
    profession: Optional[str] = None
    state: Optional[str] = None
    district: Optional[str] = None
    pin_code: Optional[str] = None
    help_areas: Optional[list[str]] = None
    expertise_areas: Optional[list[str]] = None
    is_expert: Optional[bool] = None
    daily_request_limit: Optional[int] = Field(default=None, ge=0)
    phone_visible: Optional[bool] = None
    phone_verified: Optional[bool] = None
    email_verified: Optional[bool] = None
    upi_id: Optional[str] = None
    bio: Optional[str] = None
    profile_image: Optional[str] = None
    is_active: Optional[bool] = None
    password_hash: Optional[str] = None
    last_active: Optional[float] = None

    @field_validator(
        "phone",
        "name",
        "help_areas",
        "expertise_areas",
        "is_expert",
        "daily_request_limit",
        "phone_visible",
        "phone_verified",
        "email_verified",
        "is_active",
        "last_active",
    )
    @classmethod
    def _not_null(cls, value):
        # These columns cannot be cleared, only changed.
        if value is None:
            raise ValueError("may be omitted but not set to null")
        return value

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class NewRequest(BaseModel):
    user_id: int
    title: str = Field(..., min_length=1)
    description: str = Field(..., min_length=1)
    urgency: Urgency
    help_type: HelpType = HelpType.GENERAL
    expertise_required: Optional[str] = None
    help_location_state: Optional[str] = None
    help_location_district: Optional[str] = None
    target_expert_id: Optional[int] = None
    attachments: list[str] = Field(default_factory=list)


class NewResponse(BaseModel):
    request_id: int
    expert_id: int
    content: str = Field(..., min_length=1)
    attachments: list[str] = Field(default_factory=list)


class NewReview(BaseModel):
    request_id: int
    expert_id: int
    user_id: int
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class NewResponseReview(BaseModel):
    response_id: int
    request_id: int
    user_id: int
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class NewMessage(BaseModel):
    request_id: int
    sender_id: int
    receiver_id: int
    content: str = Field(..., min_length=1)
    attachments: list[str] = Field(default_factory=list)


class NewNotification(BaseModel):
    user_id: int
    type: NotificationType
    title: str
    message: str
    entity_type: Optional[str] = None
    entity_id: Optional[int] = None
    action_user_id: Optional[int] = None
