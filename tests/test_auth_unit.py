"""Unit tests for the credential store operations.

Tests for:
- Registration and rollback when the verification email cannot be sent
- OTP verification (single use, expiry)
- Password authentication and login
- Password change
- Account updates
"""

import time
from datetime import datetime, timedelta, timezone

import pytest

from istream.config import Settings
from istream.service.auth import AuthService
from istream.service.email import smtp_socket_timeout
from istream.service.errors import (
    AuthenticationError,
    ConflictError,
    DependencyError,
    InvalidOperationError,
    InvalidOtpError,
    NotFoundError,
    ValidationError,
)
from istream.service.identity import IdentityLinker
from istream.service.media import LocalObjectStorage
from istream.service.otp import OtpEngine
from istream.service.runtime import get_runtime
from istream.service.tokens import TokenAuthority
from istream.storage.memory import MemoryStore
from istream.storage.models import OtpChallenge

PASSWORD = "TestPassword123!"


class RecordingSender:
    """Email collaborator that remembers every code it was asked to send."""

    def __init__(self, result=True, delay=0.0, exc=None):
        self.result = result
        self.delay = delay
        self.exc = exc
        self.sent = []

    def send_otp(self, to_email, code):
        if self.delay:
            time.sleep(self.delay)
        if self.exc:
            raise self.exc
        self.sent.append((to_email, code))
        return self.result


@pytest.fixture
def settings(tmp_path):
    """Create test settings."""
    return Settings(
        shared_fs_root=str(tmp_path),
        access_token_secret="Test-Access-Secret_for-Automation-Only-987654321!",
        refresh_token_secret="Test-Refresh-Secret_for-Automation-Only-123456789!",
        media_base_url="http://testserver/media",
        email_timeout_seconds=0.2,
    )


@pytest.fixture
def memory_store(tmp_path):
    """Create memory store for testing."""
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def sender():
    return RecordingSender()


def build_auth(store, settings, sender):
    tokens = TokenAuthority(
        store,
        access_secret=settings.access_token_secret,
        refresh_secret=settings.refresh_token_secret,
        issuer=settings.jwt_issuer,
    )
    return AuthService(
        store,
        settings,
        otp=OtpEngine(store, ttl_minutes=settings.otp_ttl_minutes),
        tokens=tokens,
        identity=IdentityLinker(store),
        email=sender,
        media=LocalObjectStorage(settings.shared_fs_root, settings.media_base_url),
    )


@pytest.fixture
def auth_service(memory_store, settings, sender):
    """Create auth service for testing."""
    return build_auth(memory_store, settings, sender)


async def _register(auth_service, username="alice", email="alice@example.com"):
    return await auth_service.register(
        full_name="Alice Example",
        email=email,
        username=username,
        password=PASSWORD,
        avatar="http://testserver/media/avatar/a.png",
    )


class TestRegistration:
    """Tests for password account creation."""

    async def test_register_creates_unverified_user_and_sends_code(
        self, auth_service, memory_store, sender
    ):
        user = await _register(auth_service, username="Alice", email=" Alice@Example.com ")

        assert user.username == "alice"
        assert user.email == "alice@example.com"
        assert user.is_verified is False
        stored = memory_store.get_user(user.id)
        assert stored.otp is not None
        assert sender.sent == [("alice@example.com", stored.otp.code)]
        assert len(stored.otp.code) == 6 and stored.otp.code.isdigit()

    async def test_password_is_hashed(self, auth_service, memory_store):
        user = await _register(auth_service)
        stored_hash = memory_store.get_password_hash(user.id)
        assert stored_hash and stored_hash != PASSWORD
        assert stored_hash.startswith("$argon2id$")

    async def test_missing_field_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register(
                full_name="  ",
                email="bob@example.com",
                username="bob",
                password=PASSWORD,
                avatar="http://testserver/media/avatar/b.png",
            )

    async def test_missing_avatar_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await auth_service.register(
                full_name="Bob",
                email="bob@example.com",
                username="bob",
                password=PASSWORD,
                avatar="",
            )

    async def test_malformed_email_rejected(self, auth_service):
        with pytest.raises(ValidationError):
            await _register(auth_service, email="not-an-email")

    async def test_duplicate_username_or_email_conflicts(self, auth_service):
        await _register(auth_service)
        with pytest.raises(ConflictError):
            await _register(auth_service, username="ALICE", email="other@example.com")
        with pytest.raises(ConflictError):
            await _register(auth_service, username="other", email="alice@example.com")

    async def test_email_failure_rolls_back_user(self, memory_store, settings):
        auth = build_auth(memory_store, settings, RecordingSender(result=False))
        with pytest.raises(DependencyError):
            await _register(auth)
        assert memory_store.get_user_by_username("alice") is None
        assert memory_store.get_user_by_email("alice@example.com") is None

    async def test_email_exception_rolls_back_user(self, memory_store, settings):
        auth = build_auth(memory_store, settings, RecordingSender(exc=OSError("smtp down")))
        with pytest.raises(DependencyError):
            await _register(auth)
        assert memory_store.get_user_by_username("alice") is None

    async def test_email_timeout_rolls_back_user(self, memory_store, settings):
        auth = build_auth(memory_store, settings, RecordingSender(delay=0.5))
        with pytest.raises(DependencyError):
            await _register(auth)
        assert memory_store.get_user_by_username("alice") is None


class TestOtpVerification:
    """Tests for the OTP verification engine through the auth service."""

    async def test_correct_code_verifies_once(self, auth_service, memory_store):
        user = await _register(auth_service)
        code = memory_store.get_user(user.id).otp.code

        await auth_service.verify_otp(user.id, code)
        stored = memory_store.get_user(user.id)
        assert stored.is_verified is True
        assert stored.otp is None

        with pytest.raises(InvalidOtpError):
            await auth_service.verify_otp(user.id, code)

    async def test_wrong_code_rejected(self, auth_service, memory_store):
        user = await _register(auth_service)
        code = memory_store.get_user(user.id).otp.code
        wrong = "1" * 6 if code != "1" * 6 else "2" * 6

        with pytest.raises(InvalidOtpError):
            await auth_service.verify_otp(user.id, wrong)
        assert memory_store.get_user(user.id).is_verified is False

    async def test_expired_code_rejected(self, auth_service, memory_store):
        user = await _register(auth_service)
        code = memory_store.get_user(user.id).otp.code
        past = datetime.now(timezone.utc) - timedelta(seconds=1)
        memory_store.set_otp(user.id, OtpChallenge(code=code, expires_at=past))

        with pytest.raises(InvalidOtpError):
            await auth_service.verify_otp(user.id, code)
        assert memory_store.get_user(user.id).is_verified is False

    async def test_non_numeric_code_rejected(self, auth_service, memory_store):
        user = await _register(auth_service)
        with pytest.raises(InvalidOtpError):
            await auth_service.verify_otp(user.id, "abcdef")

    async def test_resend_replaces_code(self, auth_service, memory_store, sender):
        user = await _register(auth_service)
        await auth_service.resend_otp(user.id)
        second = memory_store.get_user(user.id).otp.code
        assert len(sender.sent) == 2
        assert sender.sent[-1][1] == second
        await auth_service.verify_otp(user.id, second)
        assert memory_store.get_user(user.id).is_verified is True

    async def test_resend_for_verified_account_rejected(self, auth_service, memory_store):
        user = await _register(auth_service)
        await auth_service.verify_otp(user.id, memory_store.get_user(user.id).otp.code)
        with pytest.raises(InvalidOperationError):
            await auth_service.resend_otp(user.id)

    async def test_resend_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.resend_otp("missing")


class TestAuthentication:
    """Tests for password authentication and session issue."""

    async def test_authenticate_by_username_or_email(self, auth_service):
        user = await _register(auth_service)
        assert (await auth_service.authenticate("ALICE", PASSWORD)).id == user.id
        assert (await auth_service.authenticate("alice@example.com", PASSWORD)).id == user.id

    async def test_unknown_identifier(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.authenticate("nobody", PASSWORD)

    async def test_wrong_password(self, auth_service):
        await _register(auth_service)
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate("alice", "wrong-password")

    async def test_login_unverified_allowed_by_default(self, auth_service):
        user = await _register(auth_service)
        logged_in, pair = await auth_service.login("alice", PASSWORD)
        assert logged_in.id == user.id
        assert auth_service.tokens.verify_access(pair.access_token).user_id == user.id

    async def test_login_unverified_blocked_when_required(self, memory_store, settings, sender):
        strict = settings.model_copy(update={"require_verified_login": True})
        auth = build_auth(memory_store, strict, sender)
        await _register(auth)
        with pytest.raises(AuthenticationError):
            await auth.login("alice", PASSWORD)

    async def test_federated_account_cannot_password_login(self, auth_service):
        from istream.service.identity import FederatedProfile

        user, _ = await auth_service.federated_login(
            FederatedProfile(provider_id="g-1", email="fed@example.com", display_name="Fed")
        )
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate(user.email, PASSWORD)

    async def test_logout_revokes_refresh(self, auth_service):
        await _register(auth_service)
        user, pair = await auth_service.login("alice", PASSWORD)
        await auth_service.logout(user.id)
        with pytest.raises(AuthenticationError):
            await auth_service.refresh(pair.refresh_token)

    async def test_refresh_returns_user_and_new_pair(self, auth_service):
        await _register(auth_service)
        user, pair = await auth_service.login("alice", PASSWORD)
        refreshed_user, new_pair = await auth_service.refresh(pair.refresh_token)
        assert refreshed_user.id == user.id
        assert new_pair.refresh_token != pair.refresh_token


class TestPasswordChange:
    """Tests for password change."""

    async def test_change_password(self, auth_service):
        user = await _register(auth_service)
        await auth_service.change_password(user.id, PASSWORD, "NewPassword456!", "NewPassword456!")
        with pytest.raises(AuthenticationError):
            await auth_service.authenticate("alice", PASSWORD)
        assert (await auth_service.authenticate("alice", "NewPassword456!")).id == user.id

    async def test_confirmation_mismatch(self, auth_service):
        user = await _register(auth_service)
        with pytest.raises(ValidationError):
            await auth_service.change_password(user.id, PASSWORD, "NewPassword456!", "Other456!")

    async def test_wrong_old_password(self, auth_service):
        user = await _register(auth_service)
        with pytest.raises(AuthenticationError):
            await auth_service.change_password(user.id, "nope", "NewPassword456!", "NewPassword456!")

    async def test_unknown_user(self, auth_service):
        with pytest.raises(NotFoundError):
            await auth_service.change_password("missing", PASSWORD, "x", "x")


class TestAccountUpdate:
    """Tests for profile field updates."""

    async def test_update_fields(self, auth_service):
        user = await _register(auth_service)
        updated = await auth_service.update_account(
            user.id, full_name="Alice B", description="hello"
        )
        assert updated.full_name == "Alice B"
        assert updated.description == "hello"

    async def test_update_requires_a_field(self, auth_service):
        user = await _register(auth_service)
        with pytest.raises(ValidationError):
            await auth_service.update_account(user.id)

    async def test_update_username_conflict(self, auth_service):
        user = await _register(auth_service)
        await _register(auth_service, username="bob", email="bob@example.com")
        with pytest.raises(ConflictError):
            await auth_service.update_account(user.id, username="Bob")

    async def test_update_avatar_replaces_previous_object(self, auth_service, tmp_path):
        user = await _register(auth_service)
        first_upload = tmp_path / "first.png"
        first_upload.write_bytes(b"first")
        first = await auth_service.update_avatar(user.id, str(first_upload))
        first_file = auth_service.media.root / first.avatar.rsplit("/media/", 1)[1]
        assert first_file.exists()

        second_upload = tmp_path / "second.png"
        second_upload.write_bytes(b"second")
        second = await auth_service.update_avatar(user.id, str(second_upload))
        assert second.avatar != first.avatar
        assert not first_file.exists()

    async def test_update_cover_image_missing_file(self, auth_service, tmp_path):
        user = await _register(auth_service)
        with pytest.raises(DependencyError):
            await auth_service.update_cover_image(user.id, str(tmp_path / "missing.png"))


def test_smtp_socket_timeout_is_shorter_than_send_deadline():
    runtime = get_runtime()
    assert runtime.email.timeout < runtime.settings.email_timeout_seconds
    assert smtp_socket_timeout(10.0) == 5.0
