from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    host: str = Field(default="live.ctraderapi.com")
    port: int = Field(default=5035, ge=1, le=65535)
    use_tls: bool = Field(default=True)

    client_id: str = Field(default="")
    client_secret: str = Field(default="")
    access_token: str = Field(default="")
    refresh_token: str = Field(default="")
    account_id: int | None = Field(default=None)
    token_expires_at: int | None = Field(default=None, description="Access token expiry, epoch seconds")
    symbols: str = Field(default="", description="Comma separated symbol names or ids")

    oauth_token_url: str = Field(default="https://connect.spotware.com/apps/token")

    connect_timeout_seconds: float = Field(default=10.0, gt=0)
    max_frame_bytes: int = Field(default=10 * 1024 * 1024, ge=1024)
    heartbeat_interval_seconds: float = Field(default=10.0, gt=0)
    reconnect_initial_seconds: float = Field(default=5.0, ge=0)
    reconnect_max_seconds: float = Field(default=60.0, ge=0)
    max_reconnect_attempts: int = Field(default=20, ge=1)

    refresh_timeout_seconds: int = Field(default=20, ge=1)
    refresh_max_retries: int = Field(default=5, ge=1)
    refresh_on_start: bool = Field(default=False)
    token_expiry_skew_seconds: int = Field(default=300, ge=0)
    max_consecutive_refreshes: int = Field(default=1, ge=1, description="Refreshes before a token must be accepted")
    credential_error_codes: str = Field(default="OA_AUTH_TOKEN_EXPIRED,CH_ACCESS_TOKEN_INVALID")

    event_queue_size: int = Field(default=10_000, ge=1)
    env_file: Path = Field(default=Path(".env"))
    symbols_csv: Path = Field(default=Path("symbols.csv"))

    log_level: str = Field(default="INFO")

    model_config = SettingsConfigDict(
        env_prefix="CTRADER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def symbol_selection(self) -> tuple[str, ...]:
        return _split_csv(self.symbols)

    @property
    def credential_error_code_set(self) -> frozenset[str]:
        return frozenset(code.upper() for code in _split_csv(self.credential_error_codes))


def _split_csv(value: str) -> tuple[str, ...]:
    return tuple(item.strip() for item in value.split(",") if item.strip())
