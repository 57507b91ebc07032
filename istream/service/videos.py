from __future__ import annotations

from typing import List, Optional, Protocol, Tuple

from istream.config import Settings
from istream.logging import get_logger
from istream.service.auth import bounded_call
from istream.service.errors import DependencyError, NotFoundError, ServiceError, ValidationError
from istream.service.media import ObjectStorage, media_ref_from_url
from istream.storage.errors import ConstraintViolation
from istream.storage.models import User, Video

logger = get_logger(__name__)


class VideoStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

    def create_video(
        self,
        owner_id: str,
        title: str,
        *,
        description: str = "",
        video_url: str = "",
        thumbnail: str = "",
    ) -> Video: ...

    def get_video(self, video_id: str) -> Optional[Video]: ...


class VideoService:
    """Registers uploaded videos so views and reactions have something to count.

    Files are stored as uploaded; they are not inspected or transcoded.
    """

    def __init__(self, store: VideoStore, media: ObjectStorage, settings: Settings) -> None:
        self.store = store
        self.media = media
        self.settings = settings

    async def _store(self, local_path: str, kind: str) -> str:
        stored = await bounded_call(
            self.media.store,
            local_path,
            kind,
            timeout=self.settings.storage_timeout_seconds,
            dependency="object_storage",
        )
        return stored.url

    async def _discard(self, stored: List[Tuple[str, str]]) -> None:
        for url, kind in stored:
            ref = media_ref_from_url(url, self.settings.media_base_url)
            if not ref:
                continue
            try:
                await bounded_call(
                    self.media.delete,
                    ref,
                    kind,
                    timeout=self.settings.storage_timeout_seconds,
                    dependency="object_storage",
                )
            except DependencyError:
                logger.warning("media_cleanup_failed", kind=kind, ref=ref)

    async def publish(
        self,
        owner_id: str,
        title: str,
        description: str,
        video_path: str,
        thumbnail_path: str,
    ) -> Video:
        title = (title or "").strip()
        description = (description or "").strip()
        if not title or not description:
            raise ValidationError("Title and description are required.")
        if not (video_path and thumbnail_path):
            raise ValidationError("Both video and thumbnail files are required.")
        if not self.store.get_user(owner_id):
            raise NotFoundError("user not found")

        stored: List[Tuple[str, str]] = []
        try:
            video_url = await self._store(video_path, "video")
            stored.append((video_url, "video"))
            thumbnail_url = await self._store(thumbnail_path, "thumbnail")
            stored.append((thumbnail_url, "thumbnail"))
            try:
                video = self.store.create_video(
                    owner_id,
                    title,
                    description=description,
                    video_url=video_url,
                    thumbnail=thumbnail_url,
                )
            except ConstraintViolation as exc:
                raise NotFoundError("user not found", detail=exc.detail) from exc
        except ServiceError:
            await self._discard(stored)
            raise
        logger.info("video_published", video_id=video.id, owner_id=owner_id)
        return video

    def get_video(self, video_id: str) -> Video:
        video = self.store.get_video(video_id)
        if not video:
            raise NotFoundError("Video not found")
        return video
