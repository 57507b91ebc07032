from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Any, Generic, List, Optional, TypeVar
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from istream.storage.models import (
    ChannelProfile,
    Page,
    SubscriptionEdge,
    TokenPair,
    User,
    UserSnapshot,
    Video,
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "not_found",
    "validation_error",
    "invalid_otp",
    "invalid_operation",
    "conflict",
    "dependency_error",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body carrying a stable machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


# -- requests ---------------------------------------------------------------


class VerifyOtpRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    otp: str = Field(..., max_length=16)


class ResendOtpRequest(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=64)


class LoginRequest(BaseModel):
    username: Optional[str] = Field(default=None, max_length=254)
    email: Optional[str] = Field(default=None, max_length=254)
    password: str = Field(..., max_length=128)

    @model_validator(mode="after")
    def _require_identifier(self):
        if not (self.username or self.email):
            raise ValueError("username or email is required")
        return self

    @property
    def identifier(self) -> str:
        return (self.username or self.email or "").strip()


class TokenRefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class PasswordChangeRequest(BaseModel):
    old_password: str = Field(..., max_length=128)
    new_password: str = Field(..., max_length=128)
    confirm_password: str = Field(..., max_length=128)


class UpdateAccountRequest(BaseModel):
    full_name: Optional[str] = Field(default=None, max_length=128)
    email: Optional[str] = Field(default=None, max_length=254)
    username: Optional[str] = Field(default=None, max_length=64)
    description: Optional[str] = Field(default=None, max_length=5000)


# -- responses --------------------------------------------------------------


class UserResponse(BaseModel):
    """Public view of an account; credential and OTP state never leave the service."""

    id: str
    username: str
    email: str
    full_name: str
    avatar: str
    cover_image: str
    description: str
    role: str
    auth_provider: str
    is_verified: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            full_name=user.full_name,
            avatar=user.avatar,
            cover_image=user.cover_image,
            description=user.description,
            role=user.role.value,
            auth_provider=user.auth_provider.value,
            is_verified=user.is_verified,
            created_at=user.created_at,
            updated_at=user.updated_at,
        )


class AuthResponse(BaseModel):
    user: UserResponse
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime

    @classmethod
    def build(cls, user: User, pair: TokenPair) -> "AuthResponse":
        return cls(
            user=UserResponse.from_user(user),
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            token_type=pair.token_type,
            access_expires_at=pair.access_expires_at,
            refresh_expires_at=pair.refresh_expires_at,
        )


class RegisterResponse(BaseModel):
    user_id: str
    username: str
    email: str
    is_verified: bool = False


class SnapshotResponse(BaseModel):
    id: str
    username: str
    avatar: str
    cover_image: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: UserSnapshot) -> "SnapshotResponse":
        return cls(
            id=snapshot.id,
            username=snapshot.username,
            avatar=snapshot.avatar,
            cover_image=snapshot.cover_image,
        )


class SubscriptionResponse(BaseModel):
    id: str
    subscriber: SnapshotResponse
    channel: SnapshotResponse
    created_at: datetime

    @classmethod
    def from_edge(cls, edge: SubscriptionEdge) -> "SubscriptionResponse":
        return cls(
            id=edge.id,
            subscriber=SnapshotResponse.from_snapshot(edge.subscriber),
            channel=SnapshotResponse.from_snapshot(edge.channel),
            created_at=edge.created_at,
        )


class VideoResponse(BaseModel):
    id: str
    owner_id: str
    title: str
    description: str
    video_url: str
    thumbnail: str
    views: int
    created_at: datetime

    @classmethod
    def from_video(cls, video: Video) -> "VideoResponse":
        return cls(
            id=video.id,
            owner_id=video.owner_id,
            title=video.title,
            description=video.description,
            video_url=video.video_url,
            thumbnail=video.thumbnail,
            views=video.views,
            created_at=video.created_at,
        )


class ChannelProfileResponse(BaseModel):
    id: str
    username: str
    full_name: str
    avatar: str
    cover_image: str
    description: str
    subscribers_count: int
    channels_subscribed_to_count: int
    is_subscribed: bool

    @classmethod
    def from_profile(cls, profile: ChannelProfile) -> "ChannelProfileResponse":
        return cls(**dataclasses.asdict(profile))


class ReactionResponse(BaseModel):
    video_id: str
    reaction: Optional[str] = None
    likes: int
    dislikes: int


class ViewResponse(BaseModel):
    video_id: str
    views: int
    counted: bool


T = TypeVar("T")


class PageResponse(BaseModel, Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int
    total_pages: int
    has_next: bool
    has_prev: bool

    @classmethod
    def from_page(cls, page: Page, items: List[T]) -> "PageResponse[T]":
        return cls(
            items=items,
            total=page.total,
            page=page.page,
            page_size=page.page_size,
            total_pages=page.total_pages,
            has_next=page.has_next,
            has_prev=page.has_prev,
        )
