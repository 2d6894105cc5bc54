"""Bearer credentials for hub negotiation.

A connection never stores a credential beyond the current attempt; it asks
its :class:`TokenProvider` before every negotiation and calls ``refresh()``
when the hub rejects the token during reconnection.
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

from jose import JWTError, jwt

from .errors import AuthError, HubClientError


@dataclass(frozen=True, slots=True)
class Credential:
    """Bearer token with an optional expiry (epoch seconds)."""

    token: str
    expires_at: float | None = None

    def is_expired(self, *, now: float | None = None, leeway: float = 0.0) -> bool:
        """Return True when the token expires within ``leeway`` seconds."""
        if self.expires_at is None:
            return False
        current = time.time() if now is None else now
        return current + leeway >= self.expires_at

    @classmethod
    def from_jwt(cls, token: str) -> Credential:
        """Build a credential from a JWT, reading ``exp`` without verification.

        Raises:
            AuthError: If the token is not a JWT or ``exp`` is not numeric.
        """
        try:
            claims = jwt.get_unverified_claims(token)
        except JWTError as err:
            raise AuthError("Token is not a valid JWT") from err

        exp = claims.get("exp")
        if exp is None:
            return cls(token)
        if isinstance(exp, bool) or not isinstance(exp, (int, float)):
            raise AuthError("JWT 'exp' claim must be numeric")
        return cls(token, float(exp))

    @classmethod
    def from_token(cls, token: str) -> Credential:
        """Build a credential, picking up the JWT expiry when there is one."""
        try:
            return cls.from_jwt(token)
        except AuthError:
            return cls(token)


class TokenProvider(Protocol):
    """Supplies and refreshes bearer credentials."""

    async def current_token(self) -> Credential:
        """Return the credential for the next negotiation attempt."""
        ...

    async def refresh(self) -> Credential:
        """Obtain a new credential or raise :class:`AuthError`."""
        ...


class StaticTokenProvider:
    """Provider for a fixed token that cannot be refreshed."""

    def __init__(self, token: str | Credential) -> None:
        self._credential = (
            token if isinstance(token, Credential) else Credential.from_token(token)
        )

    async def current_token(self) -> Credential:
        return self._credential

    async def refresh(self) -> Credential:
        raise AuthError("Static token cannot be refreshed")


class CallbackTokenProvider:
    """Provider that fetches tokens through an application coroutine.

    The cached credential is reused until it is within ``refresh_leeway``
    seconds of expiry. Concurrent refreshes share a single fetch.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[str | Credential]],
        *,
        refresh_leeway: float = 5.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._fetch = fetch
        self._refresh_leeway = refresh_leeway
        self._clock = clock
        self._credential: Credential | None = None
        self._lock = asyncio.Lock()

    async def current_token(self) -> Credential:
        credential = self._credential
        if credential is None or credential.is_expired(
            now=self._clock(), leeway=self._refresh_leeway
        ):
            return await self.refresh()
        return credential

    async def refresh(self) -> Credential:
        previous = self._credential
        async with self._lock:
            # Another caller refreshed while we waited for the lock
            if self._credential is not previous and self._credential is not None:
                return self._credential
            try:
                result = await self._fetch()
            except HubClientError:
                raise
            except Exception as err:
                raise AuthError("Credential refresh failed") from err

            credential = (
                result if isinstance(result, Credential) else Credential.from_token(result)
            )
            self._credential = credential
            return credential
