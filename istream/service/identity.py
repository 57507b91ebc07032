from __future__ import annotations

import re
import secrets
import time
from dataclasses import dataclass
from typing import Optional, Protocol
from urllib.parse import quote

from istream.logging import email_fingerprint, get_logger
from istream.service.errors import (
    ConflictError,
    DependencyError,
    ServiceError,
    ValidationError,
)
from istream.storage.errors import ConstraintViolation
from istream.storage.models import AuthProvider, User

logger = get_logger(__name__)

_USERNAME_STRIP = re.compile(r"[^a-z0-9._-]")
_MAX_PROVISION_ATTEMPTS = 3


@dataclass
class FederatedProfile:
    provider_id: str
    email: str
    display_name: str = ""
    avatar_url: Optional[str] = None


class IdentityStore(Protocol):
    def get_user_by_google_id(self, google_id: str) -> Optional[User]:
        ...

    def get_user_by_email(self, email: str) -> Optional[User]:
        ...

    def link_google_identity(self, user_id: str, google_id: str) -> Optional[User]:
        ...

    def create_user(self, user: User, password_hash: Optional[str] = None) -> User:
        ...


def placeholder_avatar(display_name: str) -> str:
    name = quote(display_name or "user", safe="")
    return f"https://ui-avatars.com/api/?name={name}&background=random&size=200"


class IdentityLinker:
    """Maps a federated profile onto exactly one local account.

    Lookup order is provider id, then email (attaching the provider id to the
    existing account), then provisioning a fresh verified account with no
    password.
    """

    def __init__(self, store: IdentityStore) -> None:
        self.store = store

    def _username_base(self, email: str) -> str:
        local = email.split("@", 1)[0].lower()
        return _USERNAME_STRIP.sub("", local) or "user"

    def _candidate_username(self, base: str, attempt: int) -> str:
        candidate = f"{base}_{int(time.time() * 1000)}"
        if attempt:
            candidate = f"{candidate}{secrets.token_hex(2)}"
        return candidate

    def resolve(self, profile: FederatedProfile) -> User:
        provider_id = (profile.provider_id or "").strip()
        email = (profile.email or "").strip().lower()
        if not provider_id or not email:
            raise ValidationError(
                "federated profile is missing provider id or email",
                detail={"provider_id": bool(provider_id), "email": bool(email)},
            )
        try:
            return self._resolve(profile, provider_id, email, retry_on_race=True)
        except ServiceError:
            raise
        except Exception as exc:
            logger.error(
                "identity_resolve_failed",
                provider_id=provider_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DependencyError("unable to resolve federated identity") from exc

    def _resolve(
        self, profile: FederatedProfile, provider_id: str, email: str, *, retry_on_race: bool
    ) -> User:
        user = self.store.get_user_by_google_id(provider_id)
        if user:
            return user

        user = self.store.get_user_by_email(email)
        if user:
            return self._link(user, provider_id)

        base = self._username_base(email)
        for attempt in range(_MAX_PROVISION_ATTEMPTS):
            candidate = User.new(
                username=self._candidate_username(base, attempt),
                email=email,
                full_name=profile.display_name or base,
                avatar=profile.avatar_url or placeholder_avatar(profile.display_name),
                auth_provider=AuthProvider.GOOGLE,
                google_id=provider_id,
                is_verified=True,
            )
            try:
                created = self.store.create_user(candidate)
            except ConstraintViolation as exc:
                if exc.field == "username":
                    continue
                if retry_on_race:
                    # another login for the same person won the insert
                    logger.info("identity_provision_race", field=exc.field)
                    return self._resolve(profile, provider_id, email, retry_on_race=False)
                raise ConflictError(exc.message, detail=exc.detail) from exc
            logger.info(
                "federated_user_provisioned",
                user_id=created.id,
                fingerprint=email_fingerprint(email),
            )
            return created
        raise ConflictError("could not allocate a unique username")

    def _link(self, user: User, provider_id: str) -> User:
        try:
            linked = self.store.link_google_identity(user.id, provider_id)
        except ConstraintViolation as exc:
            raise ConflictError(
                "google account is already linked to another user", detail=exc.detail
            ) from exc
        if not linked:
            raise ConflictError("account is already linked to a different google account")
        logger.info("federated_identity_linked", user_id=user.id)
        return linked
