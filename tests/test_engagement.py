"""Tests for view counting, watch history and like/dislike state."""

import threading

import pytest

from istream.service.engagement import EngagementService
from istream.service.errors import NotFoundError, ValidationError
from istream.storage.memory import MemoryStore
from istream.storage.models import ReactionType, User, next_reaction

LIKE = ReactionType.LIKE
DISLIKE = ReactionType.DISLIKE


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def service(store):
    return EngagementService(store)


@pytest.fixture
def viewer(store):
    return store.create_user(
        User.new(
            username="viewer",
            email="viewer@example.com",
            full_name="Viewer",
            avatar="http://testserver/media/avatar/v.png",
        ),
        "hash",
    )


@pytest.fixture
def video(store, viewer):
    return store.create_video(viewer.id, "First upload")


class TestReactionTransitions:
    @pytest.mark.parametrize(
        "current,action,expected",
        [
            (None, LIKE, LIKE),
            (None, DISLIKE, DISLIKE),
            (LIKE, LIKE, None),
            (LIKE, DISLIKE, DISLIKE),
            (DISLIKE, DISLIKE, None),
            (DISLIKE, LIKE, LIKE),
        ],
    )
    def test_next_reaction_table(self, current, action, expected):
        assert next_reaction(current, action) == expected

    def test_like_dislike_sequence(self, service, viewer, video):
        assert service.like(viewer.id, video.id) == LIKE
        assert service.reaction_counts(video.id).likes == 1

        assert service.dislike(viewer.id, video.id) == DISLIKE
        counts = service.reaction_counts(video.id)
        assert (counts.likes, counts.dislikes) == (0, 1)

        assert service.dislike(viewer.id, video.id) is None
        counts = service.reaction_counts(video.id)
        assert (counts.likes, counts.dislikes) == (0, 0)
        assert service.user_reaction(viewer.id, video.id) is None

    def test_invalid_action(self, service, viewer, video):
        with pytest.raises(ValidationError):
            service.toggle_reaction(viewer.id, video.id, "love")

    def test_missing_video(self, service, viewer):
        with pytest.raises(NotFoundError):
            service.like(viewer.id, "missing")

    def test_reaction_summary(self, service, store, viewer, video):
        service.like(viewer.id, video.id)
        summary = service.reaction_summary(video.id, viewer.id)
        assert summary.likes == 1
        assert summary.user_reaction == LIKE
        assert service.reaction_summary(video.id).user_reaction is None

    def test_concurrent_likes_leave_at_most_one_reaction(self, service, store, viewer, video):
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            service.like(viewer.id, video.id)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        counts = service.reaction_counts(video.id)
        # six toggles from neutral end neutral
        assert counts.likes == 0
        assert counts.dislikes == 0
        assert len([k for k in store.reactions if k == (viewer.id, video.id)]) == 0


class TestViews:
    def test_signed_in_view_counts_once(self, service, viewer, video):
        first = service.record_view(video.id, viewer.id)
        second = service.record_view(video.id, viewer.id)
        assert (first.views, first.counted) == (1, True)
        assert (second.views, second.counted) == (1, False)

    def test_guest_views_always_count(self, service, video):
        assert service.record_view(video.id).views == 1
        assert service.record_view(video.id).views == 2

    def test_history_is_deduplicated_and_promoted(self, service, store, viewer):
        a = store.create_video(viewer.id, "A")
        b = store.create_video(viewer.id, "B")
        service.record_view(a.id, viewer.id)
        service.record_view(b.id, viewer.id)
        service.record_view(a.id, viewer.id)

        assert [v.id for v in service.watch_history(viewer.id)] == [a.id, b.id]

    def test_removed_video_counts_again(self, service, viewer, video):
        service.record_view(video.id, viewer.id)
        service.remove_from_watch_history(viewer.id, video.id)
        again = service.record_view(video.id, viewer.id)
        assert again.counted is True
        assert again.views == 2

    def test_clear_history(self, service, viewer, video):
        service.record_view(video.id, viewer.id)
        service.clear_watch_history(viewer.id)
        assert service.watch_history(viewer.id) == []

    def test_remove_absent_video_is_a_no_op(self, service, viewer):
        service.remove_from_watch_history(viewer.id, "never-watched")

    def test_unknown_video(self, service, viewer):
        with pytest.raises(NotFoundError):
            service.record_view("missing", viewer.id)

    def test_history_of_unknown_user(self, service):
        with pytest.raises(NotFoundError):
            service.watch_history("missing")

    def test_concurrent_first_views_count_once(self, service, viewer, video):
        barrier = threading.Barrier(8)
        counted = []
        lock = threading.Lock()

        def worker():
            barrier.wait()
            result = service.record_view(video.id, viewer.id)
            with lock:
                counted.append(result.counted)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert counted.count(True) == 1
        assert service.record_view(video.id).views == 2


class TestLikedVideos:
    def test_liked_videos_newest_first(self, service, store, viewer):
        videos = [store.create_video(viewer.id, f"V{i}") for i in range(3)]
        for v in videos:
            service.like(viewer.id, v.id)
        service.dislike(viewer.id, videos[1].id)

        page = service.liked_videos(viewer.id, page=1, page_size=10)
        assert [v.title for v in page.items] == ["V2", "V0"]
        assert page.total == 2

    def test_liked_videos_paging(self, service, store, viewer):
        for i in range(3):
            service.like(viewer.id, store.create_video(viewer.id, f"V{i}").id)
        page = service.liked_videos(viewer.id, page=2, page_size=2)
        assert len(page.items) == 1
        assert page.has_prev is True
        assert page.has_next is False
