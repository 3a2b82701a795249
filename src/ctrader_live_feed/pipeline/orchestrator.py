from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Iterable

import httpx

from ctrader_live_feed.auth.credentials import Credentials, MissingCredentials
from ctrader_live_feed.auth.oauth import OAuthTokenClient, RefreshError
from ctrader_live_feed.auth.refresh import CredentialRefreshPolicy, CredentialStore
from ctrader_live_feed.core.config import Settings
from ctrader_live_feed.core.events import CredentialsRefreshed, EventBus, FatalError
from ctrader_live_feed.protocol.framing import FrameCodec
from ctrader_live_feed.protocol.registry import MessageRegistry, UnknownKind, default_registry
from ctrader_live_feed.session.handshake import (
    HandshakeStateMachine,
    ProtocolError,
    Session,
    SessionMode,
    UnknownInstrument,
)
from ctrader_live_feed.session.runner import ProtocolSession
from ctrader_live_feed.transport.connection import (
    Backoff,
    ConnectError,
    ConnectionManager,
    Endpoint,
    Opener,
    SessionOutcome,
    Stream,
)
from ctrader_live_feed.writer.atomic import EnvCredentialStore

logger = logging.getLogger(__name__)

FATAL_ERRORS: tuple[type[Exception], ...] = (
    ConnectError,
    RefreshError,
    ProtocolError,
    UnknownInstrument,
    UnknownKind,
    MissingCredentials,
)


class LiveFeed:
    """Credential refresh, connection manager and handshake wired together."""

    def __init__(
        self,
        settings: Settings,
        *,
        mode: SessionMode = SessionMode.STREAM,
        selection: Iterable[str] | None = None,
        bus: EventBus | None = None,
        registry: MessageRegistry | None = None,
        store: CredentialStore | None = None,
        opener: Opener | None = None,
        oauth_transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._settings = settings
        self._mode = mode
        self._selection = tuple(selection) if selection is not None else settings.symbol_selection
        self.bus = bus or EventBus(maxsize=settings.event_queue_size)
        self._registry = registry or default_registry()
        self._codec = FrameCodec(max_frame_bytes=settings.max_frame_bytes)
        self._oauth = OAuthTokenClient(
            settings.oauth_token_url,
            timeout_seconds=settings.refresh_timeout_seconds,
            retries=settings.refresh_max_retries,
            transport=oauth_transport,
            sleep=sleep,
        )
        self._policy = CredentialRefreshPolicy(
            Credentials.from_settings(settings),
            self._oauth,
            store if store is not None else EnvCredentialStore(settings.env_file),
            skew_seconds=settings.token_expiry_skew_seconds,
        )
        self._manager = ConnectionManager(
            Endpoint.from_settings(settings),
            Backoff.from_settings(settings),
            opener=opener,
            sleep=sleep,
            on_reconnecting=self.bus.publish,
        )
        self._active: ProtocolSession | None = None

    @property
    def mode(self) -> SessionMode:
        return self._mode

    @property
    def credentials(self) -> Credentials:
        return self._policy.current

    @property
    def refresh_policy(self) -> CredentialRefreshPolicy:
        return self._policy

    async def run(self) -> None:
        try:
            self._policy.current.require_complete()
            if self._policy.needs_refresh(force=self._settings.refresh_on_start):
                reason = "refresh on start" if self._settings.refresh_on_start else "token expired before connect"
                refreshed = await self._policy.refresh(reason=reason)
                self.bus.publish(CredentialsRefreshed(expires_at=refreshed.expires_at))
            await self._manager.run(self._run_session)
        except FATAL_ERRORS as exc:
            logger.error("Live feed stopped", extra={"mode": self._mode.value, "error": str(exc)})
            self.bus.publish(FatalError(message=str(exc)))
            raise
        finally:
            await self._oauth.aclose()
            self.bus.close()

    async def refresh_now(self) -> Credentials:
        try:
            refreshed = await self._policy.refresh(reason="requested")
        finally:
            await self._oauth.aclose()
        self.bus.publish(CredentialsRefreshed(expires_at=refreshed.expires_at))
        return refreshed

    async def stop(self) -> None:
        active = self._active
        if active is not None:
            await active.shutdown()
        await self._manager.stop()

    async def _run_session(self, connection: Stream) -> SessionOutcome:
        machine = HandshakeStateMachine(
            Session.fresh(self._policy.current),
            mode=self._mode,
            selection=self._selection,
            credential_error_codes=self._settings.credential_error_code_set,
            max_consecutive_refreshes=self._settings.max_consecutive_refreshes,
        )
        session = ProtocolSession(
            connection,
            machine,
            registry=self._registry,
            codec=self._codec,
            refresh_policy=self._policy,
            bus=self.bus,
            heartbeat_interval_seconds=self._settings.heartbeat_interval_seconds,
            on_streaming=self._manager.reset_backoff,
        )
        self._active = session
        try:
            return await session.run()
        finally:
            self._active = None
