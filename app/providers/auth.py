from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict

import httpx
import jwt

from app.domain.errors import AuthenticationFailed

logger = logging.getLogger(__name__)

JWT_BEARER_GRANT = "urn:ietf:params:oauth:grant-type:jwt-bearer"


@dataclass
class CachedToken:
    value: str
    expires_at: float


class TokenProvider(ABC):
    """Fetch and cache a gateway access token.

    Adapters ask for a token on every outbound call. The token is kept for
    its reported lifetime minus ``margin_seconds`` and fetched again after
    that, or immediately when ``force`` is set (e.g. after a 401).
    """

    def __init__(
        self,
        *,
        margin_seconds: int = 60,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.margin_seconds = margin_seconds
        self.timeout = timeout
        self.transport = transport
        self.clock = clock
        self._cached: CachedToken | None = None
        self._refresh_lock: asyncio.Lock | None = None
        self._refresh_loop: asyncio.AbstractEventLoop | None = None

    @property
    def cached(self) -> CachedToken | None:
        return self._cached

    def invalidate(self) -> None:
        self._cached = None

    def _lock_for_loop(self) -> asyncio.Lock:
        # asyncio locks are bound to the loop that first waits on them
        loop = asyncio.get_running_loop()
        if self._refresh_lock is None or self._refresh_loop is not loop:
            self._refresh_lock = asyncio.Lock()
            self._refresh_loop = loop
        return self._refresh_lock

    def _valid(self, cached: CachedToken | None) -> bool:
        return cached is not None and self.clock() < cached.expires_at

    async def get_token(self, *, force: bool = False) -> str:
        seen = self._cached
        if not force and self._valid(seen):
            return seen.value  # type: ignore[union-attr]
        async with self._lock_for_loop():
            current = self._cached
            # another caller refreshed while this one waited
            if current is not seen and self._valid(current):
                return current.value  # type: ignore[union-attr]
            try:
                value, expires_in = await self._fetch()
            except AuthenticationFailed:
                self.invalidate()
                raise
            except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
                self.invalidate()
                raise AuthenticationFailed(f"Token exchange failed: {exc}") from exc
            ttl = max(int(expires_in) - self.margin_seconds, 0)
            self._cached = CachedToken(value=value, expires_at=self.clock() + ttl)
        logger.info("gateway token refreshed", extra={"event": type(self).__name__})
        return value

    @abstractmethod
    async def _fetch(self) -> tuple[str, int]:
        """Return ``(token, lifetime_seconds)`` from the token endpoint."""

    async def _post(self, url: str, **kwargs: Any) -> Dict[str, Any]:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            resp = await client.post(url, **kwargs)
        try:
            data = resp.json()
        except ValueError:
            data = {"text": resp.text[:512]}
        if resp.status_code >= 400 or not isinstance(data, dict):
            raise AuthenticationFailed(
                f"Token endpoint answered HTTP {resp.status_code}",
                payload=data if isinstance(data, dict) else {"data": data},
            )
        return data


class PasswordGrantTokenProvider(TokenProvider):
    """Username/password plus app key grant (bKash tokenized checkout)."""

    def __init__(self, *, url: str, username: str, password: str, app_key: str, app_secret: str, **kwargs: Any):
        super().__init__(**kwargs)
        self.url = url
        self.username = username
        self.password = password
        self.app_key = app_key
        self.app_secret = app_secret

    async def _fetch(self) -> tuple[str, int]:
        data = await self._post(
            self.url,
            headers={"username": self.username, "password": self.password, "Accept": "application/json"},
            json={"app_key": self.app_key, "app_secret": self.app_secret},
        )
        token = data.get("id_token")
        if not token:
            raise AuthenticationFailed(
                str(data.get("statusMessage") or data.get("errorMessage") or "id_token missing"),
                payload=data,
            )
        return str(token), int(data.get("expires_in", 3600))


class ClientCredentialsTokenProvider(TokenProvider):
    """OAuth2 client credentials grant."""

    def __init__(self, *, url: str, client_id: str, client_secret: str, **kwargs: Any):
        super().__init__(**kwargs)
        self.url = url
        self.client_id = client_id
        self.client_secret = client_secret

    async def _fetch(self) -> tuple[str, int]:
        data = await self._post(
            self.url,
            json={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "grant_type": "client_credentials",
            },
        )
        return str(data["access_token"]), int(data.get("expires_in", 3600))


class SignedAssertionTokenProvider(TokenProvider):
    """Exchange a self-signed RS256 JWT assertion for an access token."""

    def __init__(
        self,
        *,
        url: str,
        issuer: str,
        private_key: str,
        audience: str | None = None,
        scope: str | None = None,
        assertion_lifetime: int = 3600,
        **kwargs: Any,
    ):
        super().__init__(**kwargs)
        self.url = url
        self.issuer = issuer
        self.private_key = private_key
        self.audience = audience or url
        self.scope = scope
        self.assertion_lifetime = assertion_lifetime

    def build_assertion(self, now: int | None = None) -> str:
        issued_at = int(now if now is not None else time.time())
        claims: Dict[str, Any] = {
            "iss": self.issuer,
            "sub": self.issuer,
            "aud": self.audience,
            "iat": issued_at,
            "exp": issued_at + self.assertion_lifetime,
        }
        if self.scope:
            claims["scope"] = self.scope
        try:
            return jwt.encode(claims, self.private_key, algorithm="RS256")
        except (ValueError, TypeError, jwt.PyJWTError) as exc:
            raise AuthenticationFailed(f"Could not sign token assertion: {exc}") from exc

    async def _fetch(self) -> tuple[str, int]:
        data = await self._post(
            self.url,
            data={"grant_type": JWT_BEARER_GRANT, "assertion": self.build_assertion()},
        )
        return str(data["access_token"]), int(data.get("expires_in", 3600))
