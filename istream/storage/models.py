from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, List, Optional, TypeVar


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    USER = "user"
    ADMIN = "admin"


class AuthProvider(str, Enum):
    LOCAL = "local"
    GOOGLE = "google"


class ReactionType(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"


def next_reaction(
    current: Optional[ReactionType], action: ReactionType
) -> Optional[ReactionType]:
    """Reaction state after ``action``: repeating the current reaction clears it."""
    if current == action:
        return None
    return action


@dataclass
class OtpChallenge:
    code: str
    expires_at: datetime


@dataclass
class User:
    id: str
    username: str
    email: str
    full_name: str
    avatar: str
    cover_image: str = ""
    description: str = ""
    role: Role = Role.USER
    auth_provider: AuthProvider = AuthProvider.LOCAL
    google_id: Optional[str] = None
    is_verified: bool = False
    otp: Optional[OtpChallenge] = None
    watch_history: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        *,
        username: str,
        email: str,
        full_name: str,
        avatar: str,
        cover_image: str = "",
        auth_provider: AuthProvider = AuthProvider.LOCAL,
        google_id: Optional[str] = None,
        is_verified: bool = False,
        otp: Optional[OtpChallenge] = None,
    ) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            username=username.strip().lower(),
            email=email.strip().lower(),
            full_name=full_name.strip(),
            avatar=avatar,
            cover_image=cover_image or "",
            auth_provider=auth_provider,
            google_id=google_id,
            is_verified=is_verified,
            otp=otp,
            created_at=now,
            updated_at=now,
        )

    def snapshot(self) -> "UserSnapshot":
        return UserSnapshot(
            id=self.id,
            username=self.username,
            avatar=self.avatar,
            cover_image=self.cover_image or None,
        )


@dataclass
class UserSnapshot:
    """Copy of a user's display fields taken when an edge is written; never refreshed."""

    id: str
    username: str
    avatar: str
    cover_image: Optional[str] = None


@dataclass
class SubscriptionEdge:
    id: str
    subscriber: UserSnapshot
    channel: UserSnapshot
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, subscriber: User, channel: User) -> "SubscriptionEdge":
        return cls(
            id=str(uuid.uuid4()),
            subscriber=UserSnapshot(
                id=subscriber.id, username=subscriber.username, avatar=subscriber.avatar
            ),
            channel=channel.snapshot(),
        )


@dataclass
class Reaction:
    user_id: str
    video_id: str
    type: ReactionType
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class Video:
    id: str
    owner_id: str
    title: str
    description: str = ""
    video_url: str = ""
    thumbnail: str = ""
    views: int = 0
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass
class ReactionCounts:
    likes: int = 0
    dislikes: int = 0


@dataclass
class ViewResult:
    views: int
    counted: bool


@dataclass
class ChannelProfile:
    id: str
    username: str
    full_name: str
    avatar: str
    cover_image: str
    description: str
    subscribers_count: int
    channels_subscribed_to_count: int
    is_subscribed: bool = False


T = TypeVar("T")


@dataclass
class Page(Generic[T]):
    items: List[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.page_size) if self.total else 0

    @property
    def has_next(self) -> bool:
        return self.page < self.total_pages

    @property
    def has_prev(self) -> bool:
        return self.page > 1
