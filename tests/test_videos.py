"""Tests for registering uploaded videos."""

from pathlib import Path

import pytest

from istream.config import Settings
from istream.service.errors import DependencyError, NotFoundError, ValidationError
from istream.service.media import LocalObjectStorage
from istream.service.videos import VideoService
from istream.storage.memory import MemoryStore
from istream.storage.models import User


class ThumbnailFailingStorage(LocalObjectStorage):
    def store(self, local_path, kind):
        if kind == "thumbnail":
            raise OSError("disk full")
        return super().store(local_path, kind)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        media_base_url="http://cdn.test/media",
        access_token_secret="a" * 40,
        refresh_token_secret="b" * 40,
    )


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def owner(store):
    return store.create_user(
        User.new(
            username="maker",
            email="maker@example.com",
            full_name="Maker",
            avatar="http://cdn.test/media/avatar/m.png",
        ),
        "hash",
    )


def staged_files(tmp_path: Path):
    video = tmp_path / "upload.mp4"
    video.write_bytes(b"video-bytes")
    thumb = tmp_path / "upload.png"
    thumb.write_bytes(b"thumb-bytes")
    return str(video), str(thumb)


async def test_publish_stores_files_and_registers_video(tmp_path, settings, store, owner):
    media = LocalObjectStorage(str(tmp_path), settings.media_base_url)
    service = VideoService(store, media, settings)
    video_path, thumb_path = staged_files(tmp_path)

    video = await service.publish(owner.id, " Launch ", "First cut", video_path, thumb_path)

    assert video.title == "Launch"
    assert video.views == 0
    assert video.video_url.startswith("http://cdn.test/media/video/")
    assert service.get_video(video.id).thumbnail == video.thumbnail
    ref = video.video_url.rsplit("/media/", 1)[1]
    assert media.resolve(ref).read_bytes() == b"video-bytes"


async def test_publish_requires_title_and_description(tmp_path, settings, store, owner):
    service = VideoService(store, LocalObjectStorage(str(tmp_path), settings.media_base_url), settings)
    video_path, thumb_path = staged_files(tmp_path)
    with pytest.raises(ValidationError):
        await service.publish(owner.id, "", "First cut", video_path, thumb_path)
    with pytest.raises(ValidationError):
        await service.publish(owner.id, "Launch", "First cut", video_path, "")


async def test_publish_for_unknown_owner(tmp_path, settings, store):
    service = VideoService(store, LocalObjectStorage(str(tmp_path), settings.media_base_url), settings)
    video_path, thumb_path = staged_files(tmp_path)
    with pytest.raises(NotFoundError):
        await service.publish("ghost", "Launch", "First cut", video_path, thumb_path)


async def test_storage_failure_discards_stored_video(tmp_path, settings, store, owner):
    media = ThumbnailFailingStorage(str(tmp_path), settings.media_base_url)
    service = VideoService(store, media, settings)
    video_path, thumb_path = staged_files(tmp_path)

    with pytest.raises(DependencyError):
        await service.publish(owner.id, "Launch", "First cut", video_path, thumb_path)

    assert list((media.root / "video").iterdir()) == []
    assert store.videos == {}


def test_get_unknown_video(tmp_path, settings, store):
    service = VideoService(store, LocalObjectStorage(str(tmp_path), settings.media_base_url), settings)
    with pytest.raises(NotFoundError):
        service.get_video("missing")
