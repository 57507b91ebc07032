from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from istream.logging import get_logger
from istream.service.errors import (
    ConflictError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
)
from istream.storage.errors import ConstraintViolation
from istream.storage.models import ChannelProfile, Page, SubscriptionEdge, User

logger = get_logger(__name__)


class SubscriptionStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def create_subscription(self, edge: SubscriptionEdge) -> SubscriptionEdge: ...

    def get_subscription(
        self, subscriber_id: str, channel_id: str
    ) -> Optional[SubscriptionEdge]: ...

    def delete_subscription(self, subscriber_id: str, channel_id: str) -> bool: ...

    def list_subscriptions(
        self, subscriber_id: str, *, offset: int = 0, limit: int = 10
    ) -> Tuple[List[SubscriptionEdge], int]: ...

    def list_subscribers(
        self, channel_id: str, *, offset: int = 0, limit: int = 10
    ) -> Tuple[List[SubscriptionEdge], int]: ...

    def count_subscribers(self, channel_id: str) -> int: ...

    def count_subscriptions(self, subscriber_id: str) -> int: ...


def page_window(
    page: int, page_size: Optional[int], *, default_size: int, max_size: int
) -> Tuple[int, int]:
    """Validate 1-based paging input and return ``(page_size, offset)``."""
    size = default_size if page_size is None else page_size
    if page < 1 or size < 1:
        raise ValidationError(
            "page and page_size must be positive",
            detail={"page": page, "page_size": size},
        )
    size = min(size, max_size)
    return size, (page - 1) * size


class SubscriptionService:
    """Directed subscriber to channel edges with point-in-time display snapshots."""

    def __init__(
        self, store: SubscriptionStore, *, default_page_size: int = 10, max_page_size: int = 100
    ) -> None:
        self.store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def subscribe(self, subscriber_id: str, channel_id: str) -> SubscriptionEdge:
        if subscriber_id == channel_id:
            raise InvalidOperationError("You cannot subscribe to yourself")
        channel = self.store.get_user(channel_id)
        if not channel:
            raise NotFoundError("Channel not found")
        subscriber = self.store.get_user(subscriber_id)
        if not subscriber:
            raise NotFoundError("Subscriber not found")
        try:
            edge = self.store.create_subscription(SubscriptionEdge.new(subscriber, channel))
        except ConstraintViolation as exc:
            raise ConflictError("Already subscribed to this channel", detail=exc.detail) from exc
        logger.info("channel_subscribed", subscriber_id=subscriber_id, channel_id=channel_id)
        return edge

    def unsubscribe(self, subscriber_id: str, channel_id: str) -> None:
        if not self.store.delete_subscription(subscriber_id, channel_id):
            raise NotFoundError("Subscription not found")
        logger.info("channel_unsubscribed", subscriber_id=subscriber_id, channel_id=channel_id)

    def is_subscribed(self, subscriber_id: str, channel_id: str) -> bool:
        return self.store.get_subscription(subscriber_id, channel_id) is not None

    def list_subscriptions(
        self, subscriber_id: str, page: int = 1, page_size: Optional[int] = None
    ) -> Page[SubscriptionEdge]:
        size, offset = page_window(
            page, page_size, default_size=self.default_page_size, max_size=self.max_page_size
        )
        items, total = self.store.list_subscriptions(subscriber_id, offset=offset, limit=size)
        return Page(items=items, total=total, page=page, page_size=size)

    def list_subscribers(
        self, channel_id: str, page: int = 1, page_size: Optional[int] = None
    ) -> Page[SubscriptionEdge]:
        size, offset = page_window(
            page, page_size, default_size=self.default_page_size, max_size=self.max_page_size
        )
        items, total = self.store.list_subscribers(channel_id, offset=offset, limit=size)
        return Page(items=items, total=total, page=page, page_size=size)

    def subscriber_count(self, channel_id: str) -> int:
        return self.store.count_subscribers(channel_id)

    def subscription_count(self, subscriber_id: str) -> int:
        return self.store.count_subscriptions(subscriber_id)

    def channel_profile(self, username: str, viewer_id: Optional[str] = None) -> ChannelProfile:
        if not (username or "").strip():
            raise ValidationError("username is missing")
        channel = self.store.get_user_by_username(username)
        if not channel:
            raise NotFoundError("channel does not exist")
        return ChannelProfile(
            id=channel.id,
            username=channel.username,
            full_name=channel.full_name,
            avatar=channel.avatar,
            cover_image=channel.cover_image,
            description=channel.description,
            subscribers_count=self.subscriber_count(channel.id),
            channels_subscribed_to_count=self.subscription_count(channel.id),
            is_subscribed=bool(viewer_id) and self.is_subscribed(viewer_id, channel.id),
        )
