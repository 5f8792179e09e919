"""
G-Portal credential lifecycle.

TokenManager exchanges the refresh token for an access token, keeps the
single Credential up to date, and schedules the next exchange for when the
access token expires. CredentialStore optionally persists that credential
as one JSON file so a restarted process can continue from the newest
refresh token instead of the one it was started with.

Key behaviours:
- A missing or corrupt credential file is ignored.
- If the persisted refresh token is stale, the first failed exchange is
  retried once with the token originally supplied by the caller.
- Persistence failures are logged, never fatal.
"""

from __future__ import annotations

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Optional

import httpx
from pydantic import ValidationError

from .constants import AUTH_RETRY_DELAY, REQUEST_TIMEOUT, TOKEN_CLIENT_ID, GPortalRoutes
from .errors import AuthError
from .models import Credential
from .scheduler import TaskScheduler

logger = logging.getLogger("rce-manager.auth")

REFRESH_TASK = "token-refresh"


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"


class CredentialStore:
    """
    Reads and writes the credential as a single JSON document.

    Attributes:
        path: Location of the credential file
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Optional[Credential]:
        """
        Load the saved credential.

        Returns:
            The stored Credential, or None if the file is missing or unreadable
        """
        try:
            with self.path.open("r", encoding="utf-8") as f:
                data = json.load(f)
            return Credential.model_validate(data)
        except (OSError, json.JSONDecodeError, ValidationError):
            return None

    def save(self, credential: Credential) -> None:
        """Write the credential, replacing any previous file.

        Raises:
            OSError: If the file cannot be written
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("w", encoding="utf-8") as f:
            json.dump(credential.model_dump(), f)


class TokenManager:
    """
    Owns the access/refresh token pair.

    Attributes:
        credential: The live Credential, updated in place on every refresh
        state: Current AuthState
        _provided_token: Refresh token the caller started with
        _failed_auth: Whether an exchange has failed since the last success
        _store: Optional CredentialStore for persistence
    """

    def __init__(
        self,
        refresh_token: str,
        http: httpx.AsyncClient,
        *,
        store: Optional[CredentialStore] = None,
        token_url: str = GPortalRoutes.REFRESH,
        retry_delay: float = AUTH_RETRY_DELAY,
        request_timeout: float = REQUEST_TIMEOUT,
        scheduler: Optional[TaskScheduler] = None,
    ) -> None:
        self.credential = Credential(refresh_token=refresh_token)
        self.state = AuthState.UNAUTHENTICATED
        self._provided_token = refresh_token
        self._failed_auth = False
        self._http = http
        self._store = store
        self._token_url = token_url
        self._retry_delay = retry_delay
        self._request_timeout = request_timeout
        self._scheduler = scheduler or TaskScheduler("auth")

    @property
    def access_token(self) -> str:
        return self.credential.access_token

    @property
    def authorization(self) -> str:
        """``Authorization`` header value for GraphQL requests."""
        return self.credential.authorization

    @property
    def is_authenticated(self) -> bool:
        return self.state is AuthState.AUTHENTICATED and bool(self.credential.access_token)

    async def refresh(self) -> bool:
        """
        Exchange the refresh token for a new credential.

        Returns:
            True if a new access token was obtained, False otherwise
        """
        logger.debug("Attempting to refresh token")
        self.state = AuthState.AUTHENTICATING
        try:
            await self._exchange()
        except AuthError as e:
            logger.error(f"Failed to refresh token: {e}")
            self.state = AuthState.UNAUTHENTICATED
            return False

        self.state = AuthState.AUTHENTICATED
        logger.debug("Token refreshed successfully")
        return True

    async def _exchange(self) -> None:
        if self._store is not None:
            logger.debug("Checking for saved auth data")
            saved = self._store.load()
            if saved is not None:
                self._assign(saved)
            if self.credential.refresh_token != self._provided_token and self._failed_auth:
                logger.warning("Saved refresh token was rejected; using the provided token")
                self.credential.refresh_token = self._provided_token

        if not self.credential.refresh_token:
            raise AuthError("No refresh token")

        try:
            response = await self._http.post(
                self._token_url,
                data={
                    "grant_type": "refresh_token",
                    "client_id": TOKEN_CLIENT_ID,
                    "refresh_token": self.credential.refresh_token,
                },
                timeout=self._request_timeout,
            )
        except httpx.RequestError as e:
            raise AuthError(f"Token endpoint unreachable: {e}") from None

        if response.is_error:
            if not self._failed_auth:
                self._failed_auth = True
                logger.warning(
                    f"Token exchange rejected (HTTP {response.status_code}); retrying once"
                )
                return await self._exchange()
            raise AuthError(f"HTTP {response.status_code} {response.reason_phrase}")

        try:
            fresh = Credential.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise AuthError(f"Invalid token response: {e}") from None

        self._assign(fresh)
        self._failed_auth = False

        if self.credential.expires_in > 0:
            self._scheduler.call_later(
                REFRESH_TASK, self.credential.expires_in, self._scheduled_refresh
            )
        else:
            logger.warning("Token response has no expiry; automatic refresh disabled")
        self._persist()

    def _assign(self, source: Credential) -> None:
        for name in Credential.model_fields:
            setattr(self.credential, name, getattr(source, name))

    def _persist(self) -> None:
        if self._store is None:
            return
        logger.debug("Saving auth data")
        try:
            self._store.save(self.credential)
        except OSError as e:
            logger.warning(f"Failed to save auth data: {e}")

    async def _scheduled_refresh(self) -> None:
        if not await self.refresh():
            logger.error(f"Scheduled token refresh failed; retrying in {self._retry_delay:.0f}s")
            self._scheduler.call_later(REFRESH_TASK, self._retry_delay, self._scheduled_refresh)

    def close(self) -> None:
        """Cancel the pending refresh timer."""
        self._scheduler.cancel_all()


__all__ = [
    "AuthState",
    "CredentialStore",
    "TokenManager",
]
