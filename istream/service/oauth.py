from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol
from urllib.parse import urlencode

import httpx

from istream.logging import get_logger
from istream.service.errors import AuthenticationError, DependencyError
from istream.service.identity import FederatedProfile

logger = get_logger(__name__)

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"
GOOGLE_SCOPE = "openid email profile"

STATE_TTL = timedelta(minutes=10)


class OAuthStateStore(Protocol):
    def save_oauth_state(self, state: str, expires_at: datetime) -> None: ...

    def consume_oauth_state(self, state: str, now: datetime) -> bool: ...


class GoogleOAuthClient:
    """Authorization-code flow against Google, yielding a ``FederatedProfile``.

    ``state`` values live in the shared store so any worker can finish a flow
    another worker started. They expire after ten minutes and are consumed on
    first use.
    """

    def __init__(
        self,
        store: OAuthStateStore,
        *,
        client_id: Optional[str],
        client_secret: Optional[str],
        redirect_uri: Optional[str],
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.timeout = timeout
        self._transport = transport
        self.store = store

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    def authorization_url(self) -> str:
        if not self.is_configured:
            logger.warning("oauth_not_configured", provider="google")
            raise DependencyError("google sign-in is not configured")
        state = uuid.uuid4().hex
        self.store.save_oauth_state(state, self._now() + STATE_TTL)
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": GOOGLE_SCOPE,
            "state": state,
            "access_type": "online",
            "prompt": "select_account",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    async def exchange(self, code: str, state: str) -> FederatedProfile:
        if not state or not self.store.consume_oauth_state(state, self._now()):
            logger.warning("oauth_state_invalid", provider="google")
            raise AuthenticationError("invalid or expired oauth state")
        if not code:
            raise AuthenticationError("missing authorization code")
        if not self.is_configured:
            raise DependencyError("google sign-in is not configured")

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, follow_redirects=False, transport=self._transport
            ) as client:
                token_response = await client.post(
                    GOOGLE_TOKEN_URL,
                    data={
                        "client_id": self.client_id,
                        "client_secret": self.client_secret,
                        "code": code,
                        "redirect_uri": self.redirect_uri,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider="google")
                    raise DependencyError("identity provider returned no access token")

                userinfo_response = await client.get(
                    GOOGLE_USERINFO_URL,
                    headers={"Authorization": f"Bearer {access_token}"},
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
        except httpx.TimeoutException as exc:
            logger.error("oauth_exchange_timeout", provider="google", error=str(exc))
            raise DependencyError("identity provider timed out") from exc
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider="google",
                status_code=exc.response.status_code,
            )
            raise DependencyError("identity provider rejected the exchange") from exc
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("oauth_exchange_error", provider="google", error=str(exc))
            raise DependencyError("identity provider exchange failed") from exc

        if not isinstance(userinfo, dict):
            logger.error("oauth_userinfo_invalid_format", provider="google")
            raise DependencyError("identity provider returned malformed profile")
        profile = FederatedProfile(
            provider_id=str(userinfo.get("id") or userinfo.get("sub") or ""),
            email=userinfo.get("email") or "",
            display_name=userinfo.get("name") or "",
            avatar_url=userinfo.get("picture"),
        )
        logger.info("oauth_exchange_success", provider="google", provider_id=profile.provider_id)
        return profile
