from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import httpx

logger = logging.getLogger(__name__)


class RefreshError(RuntimeError):
    """The refresh token could not be exchanged for a new access token."""


@dataclass(frozen=True, slots=True)
class TokenGrant:
    access_token: str
    refresh_token: str | None = None
    expires_in: int | None = None
    token_type: str | None = None


class OAuthTokenClient:
    def __init__(
        self,
        token_url: str,
        timeout_seconds: int = 20,
        retries: int = 5,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        min_retry_delay_seconds: float = 1.0,
        max_backoff_seconds: float = 30.0,
        jitter_seconds: float = 0.3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._token_url = token_url
        self._client = httpx.AsyncClient(timeout=timeout_seconds, transport=transport)
        self._retries = max(1, retries)
        self._min_retry_delay_seconds = min_retry_delay_seconds
        self._max_backoff_seconds = max_backoff_seconds
        self._jitter_seconds = jitter_seconds
        self._sleep = sleep

    async def aclose(self) -> None:
        await self._client.aclose()

    async def refresh(self, *, client_id: str, client_secret: str, refresh_token: str) -> TokenGrant:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
            "client_id": client_id,
            "client_secret": client_secret,
        }
        last_error: str | None = None

        for attempt in range(1, self._retries + 1):
            try:
                response = await self._client.post(
                    self._token_url,
                    data=form,
                    headers={"Accept": "application/json"},
                )
            except httpx.TransportError as exc:
                last_error = f"{exc.__class__.__name__}: {exc}"
                if attempt >= self._retries:
                    break
                await self._sleep_before_retry(attempt=attempt, status_code=None, reason=exc.__class__.__name__)
                continue

            if response.status_code < 400:
                return _parse_grant(_json_body(response))

            last_error = f"HTTP {response.status_code}"
            if self._is_retryable_status(response.status_code):
                if attempt >= self._retries:
                    break
                await self._sleep_before_retry(
                    attempt=attempt,
                    status_code=response.status_code,
                    reason=last_error,
                )
                continue

            raise RefreshError(
                f"token endpoint rejected the refresh: HTTP {response.status_code} {response.text[:200]}"
            )

        raise RefreshError(f"token refresh failed after {self._retries} attempts: {last_error}")

    @staticmethod
    def _is_retryable_status(status_code: int) -> bool:
        return status_code == 429 or 500 <= status_code < 600

    async def _sleep_before_retry(self, *, attempt: int, status_code: int | None, reason: str) -> None:
        delay = min(
            self._max_backoff_seconds,
            self._min_retry_delay_seconds * (2 ** max(attempt - 1, 0)),
        )
        if self._jitter_seconds > 0:
            delay += random.uniform(0.0, self._jitter_seconds)  # noqa: S311

        logger.warning(
            "Retrying token refresh",
            extra={
                "url": self._token_url,
                "attempt": attempt,
                "max_attempts": self._retries,
                "status_code": status_code,
                "reason": reason,
                "sleep_seconds": round(delay, 3),
            },
        )
        await self._sleep(delay)


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise RefreshError(f"token endpoint returned a non-JSON body: {response.text[:200]}") from exc


def _first(payload: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return value
    return None


def _parse_grant(payload: Any) -> TokenGrant:
    # The token endpoint answers in camelCase; standard OAuth snake_case is
    # accepted as well.
    if not isinstance(payload, dict):
        raise RefreshError("token endpoint returned an unexpected payload")

    error_code = _first(payload, "errorCode", "error")
    if error_code is not None:
        description = _first(payload, "description", "error_description") or ""
        raise RefreshError(f"token endpoint refused the refresh: {error_code} {description}".rstrip())

    access_token = _first(payload, "accessToken", "access_token")
    if not isinstance(access_token, str):
        raise RefreshError("token endpoint response carries no access token")

    refresh_token = _first(payload, "refreshToken", "refresh_token")
    expires_in = _first(payload, "expiresIn", "expires_in")
    token_type = _first(payload, "tokenType", "token_type")
    try:
        expires_seconds = int(expires_in) if expires_in is not None else None
    except (TypeError, ValueError):
        logger.warning("Ignoring unparseable token lifetime", extra={"expires_in": expires_in})
        expires_seconds = None

    return TokenGrant(
        access_token=access_token,
        refresh_token=str(refresh_token) if refresh_token is not None else None,
        expires_in=expires_seconds,
        token_type=str(token_type) if token_type is not None else None,
    )
