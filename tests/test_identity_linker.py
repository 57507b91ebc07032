"""Tests for mapping federated profiles onto local accounts."""

import pytest

from istream.service.errors import ConflictError, DependencyError, ValidationError
from istream.service.identity import FederatedProfile, IdentityLinker, placeholder_avatar
from istream.storage.errors import ConstraintViolation
from istream.storage.memory import MemoryStore
from istream.storage.models import AuthProvider, User


@pytest.fixture
def store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def linker(store):
    return IdentityLinker(store)


def _local_user(store, username="dave", email="dave@example.com"):
    return store.create_user(
        User.new(
            username=username,
            email=email,
            full_name="Dave",
            avatar="http://testserver/media/avatar/d.png",
        ),
        "hash",
    )


class TestResolve:
    def test_provisions_new_verified_account(self, linker, store):
        profile = FederatedProfile(
            provider_id="google-1",
            email="New.Person+yt@Example.com",
            display_name="New Person",
        )
        user = linker.resolve(profile)

        assert user.google_id == "google-1"
        assert user.email == "new.person+yt@example.com"
        assert user.is_verified is True
        assert user.auth_provider == AuthProvider.GOOGLE
        assert user.username.startswith("new.personyt_")
        assert user.avatar == placeholder_avatar("New Person")
        assert store.get_password_hash(user.id) is None

    def test_uses_provider_avatar_when_present(self, linker):
        user = linker.resolve(
            FederatedProfile(
                provider_id="google-2",
                email="pic@example.com",
                avatar_url="https://lh3.example/pic.jpg",
            )
        )
        assert user.avatar == "https://lh3.example/pic.jpg"

    def test_returning_user_found_by_provider_id(self, linker):
        profile = FederatedProfile(provider_id="google-3", email="back@example.com")
        first = linker.resolve(profile)
        second = linker.resolve(profile)
        assert first.id == second.id

    def test_links_existing_account_by_email(self, linker, store):
        local = _local_user(store)
        user = linker.resolve(FederatedProfile(provider_id="google-4", email="DAVE@example.com"))

        assert user.id == local.id
        assert user.google_id == "google-4"
        assert user.auth_provider == AuthProvider.GOOGLE
        # the password credential survives linking
        assert store.get_password_hash(local.id) == "hash"

    def test_account_linked_to_other_google_id_conflicts(self, linker, store):
        local = _local_user(store)
        store.link_google_identity(local.id, "google-old")
        with pytest.raises(ConflictError):
            linker.resolve(FederatedProfile(provider_id="google-new", email="dave@example.com"))

    @pytest.mark.parametrize(
        "profile",
        [
            FederatedProfile(provider_id="", email="x@example.com"),
            FederatedProfile(provider_id="google-5", email=""),
        ],
    )
    def test_incomplete_profile_rejected(self, linker, profile):
        with pytest.raises(ValidationError):
            linker.resolve(profile)

    def test_unexpected_store_failure_is_dependency_error(self, store):
        class BrokenStore:
            def get_user_by_google_id(self, google_id):
                raise RuntimeError("connection reset")

        with pytest.raises(DependencyError):
            IdentityLinker(BrokenStore()).resolve(
                FederatedProfile(provider_id="google-6", email="e@example.com")
            )

    def test_concurrent_provision_re_resolves(self, store):
        profile = FederatedProfile(provider_id="google-7", email="race@example.com")

        class RacingStore:
            """First lookup misses; the insert then loses to a parallel login."""

            def __init__(self, inner):
                self.inner = inner
                self.winner = None

            def get_user_by_google_id(self, google_id):
                return self.inner.get_user_by_google_id(google_id)

            def get_user_by_email(self, email):
                return self.inner.get_user_by_email(email)

            def link_google_identity(self, user_id, google_id):
                return self.inner.link_google_identity(user_id, google_id)

            def create_user(self, user, password_hash=None):
                if self.winner is None:
                    self.winner = IdentityLinker(self.inner).resolve(profile)
                    raise ConstraintViolation("email already exists", {"field": "email"})
                return self.inner.create_user(user, password_hash)

        racing = RacingStore(store)
        user = IdentityLinker(racing).resolve(profile)
        assert user.id == racing.winner.id
