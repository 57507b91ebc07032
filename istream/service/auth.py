from __future__ import annotations

import asyncio
from typing import Any, Callable, Optional, Protocol, Tuple

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from istream.config import Settings
from istream.logging import email_fingerprint, get_logger
from istream.service.email import EmailSender
from istream.service.errors import (
    AuthenticationError,
    ConflictError,
    DependencyError,
    InvalidOperationError,
    NotFoundError,
    ValidationError,
)
from istream.service.identity import FederatedProfile, IdentityLinker
from istream.service.media import ObjectStorage, StoredObject, media_ref_from_url
from istream.service.otp import OtpEngine
from istream.service.tokens import TokenAuthority
from istream.storage.errors import ConstraintViolation
from istream.storage.models import AuthProvider, OtpChallenge, TokenPair, User

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, user: User, password_hash: Optional[str] = None) -> User: ...

    def delete_user(self, user_id: str) -> bool: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_identifier(self, identifier: str) -> Optional[User]: ...

    def update_user(self, user_id: str, **fields) -> Optional[User]: ...

    def save_password(self, user_id: str, password_hash: str) -> None: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def set_otp(self, user_id: str, challenge: OtpChallenge) -> bool: ...


def _normalize_email(email: str) -> str:
    normalized = (email or "").strip().lower()
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or "@" in domain:
        raise ValidationError("invalid email address", detail={"field": "email"})
    return normalized


async def bounded_call(
    func: Callable[..., Any], *args: Any, timeout: float, dependency: str
) -> Any:
    """Run a blocking collaborator call in a worker thread with a deadline.

    A timeout abandons the wait, not the thread: the call may still complete
    afterwards, so collaborators carry their own shorter socket timeouts.
    """
    try:
        return await asyncio.wait_for(asyncio.to_thread(func, *args), timeout)
    except asyncio.TimeoutError as exc:
        logger.error("dependency_timeout", dependency=dependency, timeout=timeout)
        raise DependencyError(f"{dependency} timed out") from exc
    except DependencyError:
        raise
    except Exception as exc:
        logger.error(
            "dependency_failed",
            dependency=dependency,
            error_type=type(exc).__name__,
            error=str(exc),
        )
        raise DependencyError(f"{dependency} failed") from exc


def _require_fields(**fields: Optional[str]) -> None:
    missing = [name for name, value in fields.items() if not (value or "").strip()]
    if missing:
        raise ValidationError("All fields are required", detail={"missing": missing})


class AuthService:
    """Password accounts, OTP verification and session lifecycle.

    Collaborator calls (email, object storage) are bounded by the configured
    timeouts and surface as ``DependencyError``.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        otp: OtpEngine,
        tokens: TokenAuthority,
        identity: IdentityLinker,
        email: EmailSender,
        media: ObjectStorage,
    ) -> None:
        self.store = store
        self.settings = settings
        self.otp = otp
        self.tokens = tokens
        self.identity = identity
        self.email = email
        self.media = media
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    async def _deliver_otp(self, email: str, code: str) -> None:
        sent = await bounded_call(
            self.email.send_otp,
            email,
            code,
            timeout=self.settings.email_timeout_seconds,
            dependency="email",
        )
        if not sent:
            raise DependencyError("verification email could not be delivered")

    def _hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user_id: str, password: str) -> bool:
        """Verify a user's password against the stored hash."""
        stored_hash = self.store.get_password_hash(user_id)
        if not stored_hash:
            self.logger.warning("password_record_missing", user_id=user_id)
            return False
        try:
            return self._pwd_hasher.verify(stored_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            self.logger.warning("password_verification_failed", user_id=user_id)
            return False

    # -- media -------------------------------------------------------------

    async def store_media(self, local_path: str, kind: str) -> StoredObject:
        return await bounded_call(
            self.media.store,
            local_path,
            kind,
            timeout=self.settings.storage_timeout_seconds,
            dependency="object_storage",
        )

    async def discard_media(self, url: str, kind: str) -> None:
        """Best-effort delete of an object this service stored earlier."""
        ref = media_ref_from_url(url, self.settings.media_base_url)
        if not ref:
            return
        try:
            await bounded_call(
                self.media.delete,
                ref,
                kind,
                timeout=self.settings.storage_timeout_seconds,
                dependency="object_storage",
            )
        except DependencyError:
            self.logger.warning("media_cleanup_failed", kind=kind, ref=ref)

    # -- registration ------------------------------------------------------

    async def register(
        self,
        full_name: str,
        email: str,
        username: str,
        password: str,
        avatar: str,
        cover_image: str = "",
    ) -> User:
        """Create an unverified account and email its code.

        A failed or timed out send deletes the account again. The SMTP socket
        timeout is shorter than the send deadline so an abandoned send cannot
        linger long after the rollback.
        """
        _require_fields(
            full_name=full_name,
            email=email,
            username=username,
            password=password,
            avatar=avatar,
        )
        email = _normalize_email(email)
        username = username.strip().lower()
        if self.store.get_user_by_username(username) or self.store.get_user_by_email(email):
            raise ConflictError("User with email or username already exists")

        challenge = self.otp.issue()
        candidate = User.new(
            username=username,
            email=email,
            full_name=full_name,
            avatar=avatar,
            cover_image=cover_image,
            otp=challenge,
        )
        try:
            user = self.store.create_user(candidate, self._hash_password(password))
        except ConstraintViolation as exc:
            raise ConflictError(
                "User with email or username already exists", detail=exc.detail
            ) from exc

        try:
            await self._deliver_otp(user.email, challenge.code)
        except DependencyError:
            self.store.delete_user(user.id)
            self.logger.warning(
                "registration_rolled_back",
                user_id=user.id,
                fingerprint=email_fingerprint(email),
            )
            raise
        self.logger.info(
            "user_registered", user_id=user.id, fingerprint=email_fingerprint(email)
        )
        return user

    async def verify_otp(self, user_id: str, code: str) -> None:
        self.otp.verify(user_id, code)

    async def resend_otp(self, user_id: str) -> None:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if user.is_verified:
            raise InvalidOperationError("account is already verified")
        challenge = self.otp.issue()
        if not self.store.set_otp(user_id, challenge):
            raise NotFoundError("user not found")
        await self._deliver_otp(user.email, challenge.code)
        self.logger.info("otp_resent", user_id=user_id)

    # -- credentials -------------------------------------------------------

    async def authenticate(self, identifier: str, password: str) -> User:
        """Resolve a username or email and check the password.

        Verification status is not consulted here.
        """
        if not (identifier or "").strip() or not password:
            raise ValidationError("username or email and password are required")
        user = self.store.get_user_by_identifier(identifier)
        if not user:
            raise NotFoundError("User does not exist")
        if not self.verify_password(user.id, password):
            raise AuthenticationError("Invalid credential")
        return user

    async def login(self, identifier: str, password: str) -> Tuple[User, TokenPair]:
        user = await self.authenticate(identifier, password)
        if not user.is_verified and user.auth_provider == AuthProvider.LOCAL:
            if self.settings.require_verified_login:
                self.logger.info("login_blocked_unverified", user_id=user.id)
                raise AuthenticationError("Email is not verified")
            self.logger.warning("login_unverified_account", user_id=user.id)
        pair = self.tokens.issue(user.id, user.role)
        self.logger.info("user_logged_in", user_id=user.id)
        return user, pair

    async def logout(self, user_id: str) -> None:
        self.tokens.revoke(user_id)

    async def refresh(self, refresh_token: str) -> Tuple[User, TokenPair]:
        if not refresh_token:
            raise AuthenticationError("unauthorized request")
        pair = self.tokens.rotate(refresh_token)
        user_id = self.tokens.verify_access(pair.access_token).user_id
        user = self.store.get_user(user_id)
        if not user:
            raise AuthenticationError("Invalid refresh token")
        return user, pair

    async def federated_login(self, profile: FederatedProfile) -> Tuple[User, TokenPair]:
        user = self.identity.resolve(profile)
        pair = self.tokens.issue(user.id, user.role)
        self.logger.info("federated_login", user_id=user.id)
        return user, pair

    async def change_password(
        self, user_id: str, old_password: str, new_password: str, confirm_password: str
    ) -> None:
        if not (new_password or "").strip():
            raise ValidationError("new password is required")
        if new_password != confirm_password:
            raise ValidationError("new password and confirmation do not match")
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found")
        if not self.verify_password(user_id, old_password or ""):
            raise AuthenticationError("Invalid old password")
        self.store.save_password(user_id, self._hash_password(new_password))
        self.logger.info("password_changed", user_id=user_id)

    # -- profile -----------------------------------------------------------

    async def get_current_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def update_account(
        self,
        user_id: str,
        *,
        full_name: Optional[str] = None,
        email: Optional[str] = None,
        username: Optional[str] = None,
        description: Optional[str] = None,
    ) -> User:
        updates: dict[str, str] = {}
        if full_name is not None and full_name.strip():
            updates["full_name"] = full_name.strip()
        if email is not None and email.strip():
            updates["email"] = _normalize_email(email)
        if username is not None and username.strip():
            updates["username"] = username.strip().lower()
        if description is not None:
            updates["description"] = description.strip()
        if not updates:
            raise ValidationError("At least one field is required")
        try:
            user = self.store.update_user(user_id, **updates)
        except ConstraintViolation as exc:
            raise ConflictError(f"{exc.field or 'value'} already in use", detail=exc.detail) from exc
        if not user:
            raise NotFoundError("user not found")
        self.logger.info("account_updated", user_id=user_id, fields=sorted(updates))
        return user

    async def _replace_image(self, user_id: str, local_path: str, kind: str) -> User:
        if not (local_path or "").strip():
            raise ValidationError(f"{kind} file is missing")
        current = self.store.get_user(user_id)
        if not current:
            raise NotFoundError("user not found")
        stored = await self.store_media(local_path, kind)
        user = self.store.update_user(user_id, **{kind: stored.url})
        if not user:
            await self.discard_media(stored.url, kind)
            raise NotFoundError("user not found")
        previous = getattr(current, kind)
        if previous:
            await self.discard_media(previous, kind)
        self.logger.info("profile_image_updated", user_id=user_id, kind=kind)
        return user

    async def update_avatar(self, user_id: str, local_path: str) -> User:
        return await self._replace_image(user_id, local_path, "avatar")

    async def update_cover_image(self, user_id: str, local_path: str) -> User:
        return await self._replace_image(user_id, local_path, "cover_image")
