from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from istream.logging import get_logger
from istream.service.errors import NotFoundError, ValidationError
from istream.service.subscriptions import page_window
from istream.storage.models import (
    Page,
    ReactionCounts,
    ReactionType,
    Video,
    ViewResult,
)

logger = get_logger(__name__)


class EngagementStore(Protocol):
    def get_video(self, video_id: str) -> Optional[Video]: ...

    def get_videos(self, video_ids: List[str]) -> List[Video]: ...

    def record_view(self, video_id: str, user_id: Optional[str] = None) -> Optional[ViewResult]: ...

    def get_watch_history(self, user_id: str) -> Optional[List[str]]: ...

    def clear_watch_history(self, user_id: str) -> bool: ...

    def remove_from_watch_history(self, user_id: str, video_id: str) -> bool: ...

    def get_reaction(self, user_id: str, video_id: str) -> Optional[ReactionType]: ...

    def apply_reaction(
        self, user_id: str, video_id: str, action: ReactionType
    ) -> Optional[ReactionType]: ...

    def count_reactions(self, video_id: str) -> ReactionCounts: ...

    def list_liked_videos(
        self, user_id: str, *, offset: int = 0, limit: int = 10
    ) -> Tuple[List[Video], int]: ...


@dataclass
class ReactionSummary:
    likes: int
    dislikes: int
    user_reaction: Optional[ReactionType] = None


class EngagementService:
    """View counting, watch history and like/dislike state per (user, video)."""

    def __init__(
        self, store: EngagementStore, *, default_page_size: int = 10, max_page_size: int = 100
    ) -> None:
        self.store = store
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size

    def _require_video(self, video_id: str) -> Video:
        video = self.store.get_video(video_id)
        if not video:
            raise NotFoundError("Video not found")
        return video

    def toggle_reaction(
        self, user_id: str, video_id: str, action: ReactionType | str
    ) -> Optional[ReactionType]:
        try:
            action = ReactionType(action)
        except ValueError as exc:
            raise ValidationError(
                "reaction must be 'like' or 'dislike'", detail={"action": str(action)}
            ) from exc
        self._require_video(video_id)
        state = self.store.apply_reaction(user_id, video_id, action)
        logger.info(
            "reaction_applied",
            user_id=user_id,
            video_id=video_id,
            action=action.value,
            state=state.value if state else None,
        )
        return state

    def like(self, user_id: str, video_id: str) -> Optional[ReactionType]:
        return self.toggle_reaction(user_id, video_id, ReactionType.LIKE)

    def dislike(self, user_id: str, video_id: str) -> Optional[ReactionType]:
        return self.toggle_reaction(user_id, video_id, ReactionType.DISLIKE)

    def reaction_counts(self, video_id: str) -> ReactionCounts:
        self._require_video(video_id)
        return self.store.count_reactions(video_id)

    def user_reaction(self, user_id: str, video_id: str) -> Optional[ReactionType]:
        return self.store.get_reaction(user_id, video_id)

    def reaction_summary(self, video_id: str, user_id: Optional[str] = None) -> ReactionSummary:
        counts = self.reaction_counts(video_id)
        return ReactionSummary(
            likes=counts.likes,
            dislikes=counts.dislikes,
            user_reaction=self.user_reaction(user_id, video_id) if user_id else None,
        )

    def record_view(self, video_id: str, user_id: Optional[str] = None) -> ViewResult:
        """Count a view; signed-in viewers count once per video until removed from history."""
        self._require_video(video_id)
        result = self.store.record_view(video_id, user_id)
        if result is None:
            # video vanished between the check and the write, or the viewer is gone
            raise NotFoundError("Video or user not found")
        logger.info(
            "view_recorded",
            video_id=video_id,
            user_id=user_id,
            counted=result.counted,
            views=result.views,
        )
        return result

    def watch_history(self, user_id: str) -> List[Video]:
        history = self.store.get_watch_history(user_id)
        if history is None:
            raise NotFoundError("user not found")
        return self.store.get_videos(history)

    def clear_watch_history(self, user_id: str) -> None:
        if not self.store.clear_watch_history(user_id):
            raise NotFoundError("user not found")

    def remove_from_watch_history(self, user_id: str, video_id: str) -> None:
        if not self.store.remove_from_watch_history(user_id, video_id):
            raise NotFoundError("user not found")

    def liked_videos(
        self, user_id: str, page: int = 1, page_size: Optional[int] = None
    ) -> Page[Video]:
        size, offset = page_window(
            page, page_size, default_size=self.default_page_size, max_size=self.max_page_size
        )
        items, total = self.store.list_liked_videos(user_id, offset=offset, limit=size)
        return Page(items=items, total=total, page=page, page_size=size)
