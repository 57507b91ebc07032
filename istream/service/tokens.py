from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Optional, Protocol

from istream.logging import get_logger
from istream.service.errors import AuthenticationError, NotFoundError
from istream.storage.models import Role, TokenPair, User

logger = get_logger(__name__)


class TokenStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]:
        ...

    def set_refresh_digest(self, user_id: str, digest: Optional[str]) -> bool:
        ...

    def swap_refresh_digest(self, user_id: str, expected: str, new: str) -> bool:
        ...


@dataclass
class AuthContext:
    user_id: str
    role: str


def token_digest(token: str) -> str:
    """SHA-256 hex digest stored in place of the refresh token itself."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenAuthority:
    """Mints HS256 access/refresh pairs and rotates the refresh token single-use.

    Access tokens are verified statelessly. The store keeps only the digest of
    the one live refresh token per account.
    """

    def __init__(
        self,
        store: TokenStore,
        *,
        access_secret: str,
        refresh_secret: str,
        issuer: str = "istream",
        access_ttl_minutes: int = 15,
        refresh_ttl_minutes: int = 60 * 24 * 10,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self.store = store
        self._secrets = {"access": access_secret, "refresh": refresh_secret}
        self.issuer = issuer
        self.access_ttl = timedelta(minutes=access_ttl_minutes)
        self.refresh_ttl = timedelta(minutes=refresh_ttl_minutes)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str, token_type: str) -> str:
        digest = hmac.new(
            self._secrets[token_type].encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return self._encode_segment(digest)

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, payload['token_type'])}"

    def _decode_jwt(self, token: str, token_type: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = (token or "").split(".")
        except ValueError:
            return None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict):
            return None
        if header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg"))
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", token_type)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.issuer or payload.get("token_type") != token_type:
            return None
        if not payload.get("sub"):
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= time.time():
            return None
        return payload

    def _mint(self, user_id: str, role: str) -> TokenPair:
        now = self._now()
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        access_token = self._encode_jwt(
            {
                "iss": self.issuer,
                "sub": user_id,
                "role": role,
                "token_type": "access",
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int(access_exp.timestamp()),
            }
        )
        refresh_token = self._encode_jwt(
            {
                "iss": self.issuer,
                "sub": user_id,
                "token_type": "refresh",
                "jti": str(uuid.uuid4()),
                "iat": int(now.timestamp()),
                "exp": int(refresh_exp.timestamp()),
            }
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_exp,
            refresh_expires_at=refresh_exp,
        )

    def issue(self, user_id: str, role: Role | str = Role.USER) -> TokenPair:
        """Start a new session, replacing whatever session the account had."""
        pair = self._mint(user_id, Role(role).value)
        if not self.store.set_refresh_digest(user_id, token_digest(pair.refresh_token)):
            raise NotFoundError("user not found")
        logger.info("session_issued", user_id=user_id)
        return pair

    def verify_access(self, token: str) -> AuthContext:
        payload = self._decode_jwt(token, "access")
        if not payload:
            raise AuthenticationError("invalid or expired access token")
        return AuthContext(user_id=str(payload["sub"]), role=str(payload.get("role", "user")))

    def rotate(self, refresh_token: str) -> TokenPair:
        """Exchange a live refresh token for a new pair; the presented token dies."""
        payload = self._decode_jwt(refresh_token, "refresh")
        if not payload:
            raise AuthenticationError("Invalid refresh token")
        user = self.store.get_user(str(payload["sub"]))
        if not user:
            raise AuthenticationError("Invalid refresh token")
        pair = self._mint(user.id, user.role.value)
        swapped = self.store.swap_refresh_digest(
            user.id, token_digest(refresh_token), token_digest(pair.refresh_token)
        )
        if not swapped:
            logger.warning("refresh_token_reuse_detected", user_id=user.id)
            raise AuthenticationError("Refresh token is expired or used")
        logger.info("session_rotated", user_id=user.id)
        return pair

    def revoke(self, user_id: str) -> None:
        if self.store.set_refresh_digest(user_id, None):
            logger.info("session_revoked", user_id=user_id)
