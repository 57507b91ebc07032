from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import Protocol

from istream.logging import get_logger
from istream.service.errors import InvalidOtpError
from istream.storage.models import OtpChallenge

logger = get_logger(__name__)


class OtpStore(Protocol):
    def set_otp(self, user_id: str, challenge: OtpChallenge) -> bool:
        ...

    def consume_otp(self, user_id: str, code: str, now: datetime) -> bool:
        ...


class OtpEngine:
    """Issues numeric one-time codes and consumes them with a single conditional write."""

    def __init__(self, store: OtpStore, *, ttl_minutes: int = 10, length: int = 6) -> None:
        self.store = store
        self.ttl = timedelta(minutes=ttl_minutes)
        self.length = length

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue(self) -> OtpChallenge:
        low = 10 ** (self.length - 1)
        # uniform over [10^(n-1), 10^n), never a leading zero
        code = str(low + secrets.randbelow(9 * low))
        return OtpChallenge(code=code, expires_at=self._now() + self.ttl)

    def verify(self, user_id: str, code: str) -> None:
        """Mark the account verified, or raise ``InvalidOtpError``.

        A wrong code, an expired code, a missing challenge and an already
        consumed code are indistinguishable to the caller.
        """
        normalized = (code or "").strip()
        if len(normalized) != self.length or not normalized.isdigit():
            raise InvalidOtpError("Invalid or expired OTP")
        if not self.store.consume_otp(user_id, normalized, self._now()):
            logger.warning("otp_rejected", user_id=user_id)
            raise InvalidOtpError("Invalid or expired OTP")
        logger.info("otp_verified", user_id=user_id)
