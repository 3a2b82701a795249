from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from ctrader_live_feed.core.config import Settings
from ctrader_live_feed.core.time_utils import from_epoch_seconds

_REQUIRED_SETTINGS = {
    "application_id": "CTRADER_CLIENT_ID",
    "application_secret": "CTRADER_CLIENT_SECRET",
    "access_token": "CTRADER_ACCESS_TOKEN",
}


class MissingCredentials(RuntimeError):
    def __init__(self, variables: list[str]) -> None:
        super().__init__(f"missing credentials: {', '.join(variables)}")
        self.variables = variables


@dataclass(frozen=True, slots=True)
class Credentials:
    application_id: str
    application_secret: str = field(repr=False)
    access_token: str = field(repr=False)
    refresh_token: str = field(default="", repr=False)
    account_id: int | None = None
    expires_at: datetime | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> Credentials:
        return cls(
            application_id=settings.client_id,
            application_secret=settings.client_secret,
            access_token=settings.access_token,
            refresh_token=settings.refresh_token,
            account_id=settings.account_id,
            expires_at=from_epoch_seconds(settings.token_expires_at),
        )

    def missing_variables(self) -> list[str]:
        return [variable for name, variable in _REQUIRED_SETTINGS.items() if not getattr(self, name)]

    def require_complete(self) -> None:
        missing = self.missing_variables()
        if missing:
            raise MissingCredentials(missing)

    def is_expired(self, *, now: datetime, skew_seconds: int = 0) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at - timedelta(seconds=skew_seconds) <= now

    def with_tokens(
        self,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime | None,
    ) -> Credentials:
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token or self.refresh_token,
            expires_at=expires_at,
        )
