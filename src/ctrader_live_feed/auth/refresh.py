from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Protocol

from ctrader_live_feed.auth.credentials import Credentials
from ctrader_live_feed.auth.oauth import OAuthTokenClient, RefreshError
from ctrader_live_feed.core.time_utils import utc_now

logger = logging.getLogger(__name__)


class CredentialStore(Protocol):
    def save(self, credentials: Credentials) -> object: ...


class CredentialRefreshPolicy:
    """Owns the active credentials and replaces them wholesale on refresh."""

    def __init__(
        self,
        credentials: Credentials,
        client: OAuthTokenClient,
        store: CredentialStore | None = None,
        *,
        skew_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._credentials = credentials
        self._client = client
        self._store = store
        self._skew_seconds = skew_seconds
        self._clock = clock
        self.refresh_count = 0

    @property
    def current(self) -> Credentials:
        return self._credentials

    def needs_refresh(self, *, force: bool = False) -> bool:
        if force:
            return True
        return self._credentials.is_expired(now=self._clock(), skew_seconds=self._skew_seconds)

    async def refresh(self, credentials: Credentials | None = None, *, reason: str = "") -> Credentials:
        base = credentials or self._credentials
        if not base.refresh_token:
            raise RefreshError("no refresh token is configured (CTRADER_REFRESH_TOKEN)")

        logger.info("Refreshing access token", extra={"reason": reason})
        grant = await self._client.refresh(
            client_id=base.application_id,
            client_secret=base.application_secret,
            refresh_token=base.refresh_token,
        )
        expires_at = None
        if grant.expires_in is not None:
            expires_at = self._clock() + timedelta(seconds=grant.expires_in)

        refreshed = base.with_tokens(
            access_token=grant.access_token,
            refresh_token=grant.refresh_token,
            expires_at=expires_at,
        )
        if self._store is not None:
            self._store.save(refreshed)

        self._credentials = refreshed
        self.refresh_count += 1
        logger.info(
            "Access token refreshed",
            extra={
                "reason": reason,
                "expires_at": expires_at.isoformat() if expires_at else None,
                "refresh_token_rotated": grant.refresh_token is not None,
            },
        )
        return refreshed
