"""Expiry-aware control-plane session context."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable

import structlog
from pydantic import BaseModel, ConfigDict

from sddc_cli.core.exceptions import AuthenticationError, SddcError, TransportError

logger = structlog.get_logger(__name__)


class AccessToken(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: str
    expires_at: float


Authenticator = Callable[[], Awaitable[AccessToken]]


class SessionContext:
    """Holds the bearer token shared by every call made through one client.

    The token is refreshed lazily when it is about to expire, and eagerly when
    a caller reports that the control plane rejected it.
    """

    def __init__(
        self,
        authenticator: Authenticator,
        *,
        refresh_margin: float = 60.0,
        now: Callable[[], float] = time.monotonic,
    ) -> None:
        self._authenticator = authenticator
        self._refresh_margin = refresh_margin
        self._now = now
        self._token: AccessToken | None = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    @property
    def is_valid(self) -> bool:
        if self._token is None:
            return False
        return self._token.expires_at - self._refresh_margin > self._now()

    async def token(self) -> str:
        """Return a usable token, refreshing it first when it is close to expiry."""
        if self._token is not None and self.is_valid:
            return self._token.value
        return await self._refresh(stale=self._token)

    async def refresh(self) -> str:
        """Force a new token, e.g. after the control plane answered 401."""
        return await self._refresh(stale=self._token)

    def invalidate(self) -> None:
        self._token = None

    async def _refresh(self, *, stale: AccessToken | None) -> str:
        async with self._lock:
            # Another coroutine may have refreshed while we waited for the lock.
            if self._token is not None and self._token is not stale and self.is_valid:
                return self._token.value
            try:
                token = await self._authenticator()
            except (AuthenticationError, TransportError):
                self._token = None
                raise
            except SddcError as exc:
                self._token = None
                raise AuthenticationError(f"Unable to authenticate: {exc}") from exc
            self._token = token
            self.refresh_count += 1
            logger.info("session-authenticated", refresh_count=self.refresh_count)
            return token.value


__all__ = ["AccessToken", "Authenticator", "SessionContext"]
