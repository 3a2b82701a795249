"""Handshake and steady-state dispatch for one Open API connection.

The machine is sans-IO: every input returns the list of actions the session
driver must execute, in order. It never touches the socket, the OAuth client
or the event bus itself.

Stage flow::

    disconnected -> awaiting_version_ack -> awaiting_app_auth_ack
        -> [awaiting_account_discovery] -> awaiting_account_auth_ack
        -> awaiting_symbol_list -> awaiting_subscribe_ack -> streaming
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ctrader_live_feed.auth.credentials import Credentials
from ctrader_live_feed.core.events import (
    AccountsListed,
    ErrorReported,
    FeedEvent,
    Instrument,
    InstrumentList,
    SpotTick,
    StageChanged,
    TradingAccount,
    scale_price,
)
from ctrader_live_feed.core.time_utils import from_epoch_ms
from ctrader_live_feed.protocol.registry import DecodedMessage, MessageKind, Unrecognized

logger = logging.getLogger(__name__)

DEFAULT_CREDENTIAL_ERROR_CODES = frozenset({"OA_AUTH_TOKEN_EXPIRED", "CH_ACCESS_TOKEN_INVALID"})
DEFAULT_MAX_CONSECUTIVE_REFRESHES = 1


class HandshakeStage(StrEnum):
    DISCONNECTED = "disconnected"
    AWAITING_VERSION_ACK = "awaiting_version_ack"
    AWAITING_APP_AUTH_ACK = "awaiting_app_auth_ack"
    AWAITING_ACCOUNT_DISCOVERY = "awaiting_account_discovery"
    AWAITING_ACCOUNT_AUTH_ACK = "awaiting_account_auth_ack"
    AWAITING_SYMBOL_LIST = "awaiting_symbol_list"
    AWAITING_SUBSCRIBE_ACK = "awaiting_subscribe_ack"
    STREAMING = "streaming"


class SessionMode(StrEnum):
    STREAM = "stream"
    SYMBOLS = "symbols"
    ACCOUNTS = "accounts"


class ProtocolError(RuntimeError):
    def __init__(self, code: str, description: str, stage: HandshakeStage) -> None:
        super().__init__(f"{code} during {stage}: {description}" if description else f"{code} during {stage}")
        self.code = code
        self.description = description
        self.stage = stage


class UnknownInstrument(RuntimeError):
    def __init__(self, requested: Iterable[str]) -> None:
        self.requested = tuple(requested)
        if self.requested:
            message = f"none of the requested instruments are offered by the server: {', '.join(self.requested)}"
        else:
            message = "no instrument selected"
        super().__init__(message)


@dataclass(frozen=True, slots=True)
class SendRequest:
    kind: MessageKind
    fields: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class PublishEvent:
    event: FeedEvent


@dataclass(frozen=True, slots=True)
class RefreshCredentials:
    reason: str


@dataclass(frozen=True, slots=True)
class Reconnect:
    reason: str


@dataclass(frozen=True, slots=True)
class Finish:
    reason: str


@dataclass(frozen=True, slots=True)
class Abort:
    error: Exception


Action = SendRequest | PublishEvent | RefreshCredentials | Reconnect | Finish | Abort


@dataclass(slots=True)
class Session:
    """Mutable state of a single connection attempt."""

    credentials: Credentials
    stage: HandshakeStage = HandshakeStage.DISCONNECTED
    account_id: int | None = None
    app_authenticated: bool = False
    refresh_in_flight: bool = False
    # refreshes since the server last accepted the credentials
    consecutive_refreshes: int = 0
    symbol_names: dict[int, str] = field(default_factory=dict)
    subscribed: tuple[int, ...] = ()

    @classmethod
    def fresh(cls, credentials: Credentials) -> Session:
        return cls(credentials=credentials, account_id=credentials.account_id)


class HandshakeStateMachine:
    def __init__(
        self,
        session: Session,
        *,
        mode: SessionMode = SessionMode.STREAM,
        selection: Iterable[str] = (),
        credential_error_codes: Iterable[str] = DEFAULT_CREDENTIAL_ERROR_CODES,
        max_consecutive_refreshes: int = DEFAULT_MAX_CONSECUTIVE_REFRESHES,
    ) -> None:
        self._session = session
        self._mode = mode
        self._selection = tuple(selection)
        self._credential_error_codes = frozenset(code.upper() for code in credential_error_codes)
        self._max_consecutive_refreshes = max_consecutive_refreshes

    @property
    def session(self) -> Session:
        return self._session

    @property
    def stage(self) -> HandshakeStage:
        return self._session.stage

    def start(self) -> list[Action]:
        return [
            self._transition(HandshakeStage.AWAITING_VERSION_ACK),
            SendRequest(MessageKind.VERSION_REQUEST),
        ]

    def handle(self, message: DecodedMessage | Unrecognized) -> list[Action]:
        match message:
            case Unrecognized(wire_code=code):
                logger.debug("Ignoring unrecognized message", extra={"wire_code": code, "stage": self.stage})
                return []
            case DecodedMessage(kind=MessageKind.HEARTBEAT_EVENT):
                return []
            case DecodedMessage(kind=MessageKind.ERROR_RESPONSE | MessageKind.COMMON_ERROR_RESPONSE):
                return self._on_error(message)
            case DecodedMessage(kind=MessageKind.TOKEN_INVALIDATED_EVENT):
                reason = message.value.reason or "access token invalidated"
                return self._request_refresh("TOKEN_INVALIDATED", reason=reason, description=reason)
            case DecodedMessage(kind=MessageKind.CLIENT_DISCONNECT_EVENT):
                reason = message.value.reason or "server disconnected the client"
                return [self._error_event("CLIENT_DISCONNECTED", reason), Reconnect(reason)]
            case DecodedMessage(kind=MessageKind.ACCOUNT_DISCONNECT_EVENT):
                reason = f"account {message.value.ctidTraderAccountId} was disconnected"
                return [self._error_event("ACCOUNT_DISCONNECTED", reason), Reconnect(reason)]
            case DecodedMessage():
                return self._advance(message)
        return []

    def credentials_refreshed(self, credentials: Credentials) -> list[Action]:
        """Resume after a successful refresh.

        An authenticated application re-enters account discovery or account
        authentication on the same connection; otherwise the connection is
        replaced.
        """
        self._session.refresh_in_flight = False
        self._session.credentials = credentials
        if not self._session.app_authenticated:
            return [Reconnect("credentials refreshed before application auth completed")]
        if self._mode is SessionMode.ACCOUNTS or self._session.account_id is None:
            return self._enter_account_discovery(detail="credentials refreshed")
        return self._enter_account_auth(detail="credentials refreshed")

    def connection_lost(self) -> list[Action]:
        if self.stage is HandshakeStage.DISCONNECTED:
            return []
        return [self._transition(HandshakeStage.DISCONNECTED, detail="connection lost")]

    def unsubscribe(self) -> list[Action]:
        if self.stage is not HandshakeStage.STREAMING or not self._session.subscribed:
            return []
        return [
            SendRequest(
                MessageKind.UNSUBSCRIBE_SPOTS_REQUEST,
                {"ctidTraderAccountId": self._session.account_id, "symbolId": list(self._session.subscribed)},
            )
        ]

    def _advance(self, message: DecodedMessage) -> list[Action]:
        value = message.value
        match (self.stage, message.kind):
            case (HandshakeStage.AWAITING_VERSION_ACK, MessageKind.VERSION_RESPONSE):
                logger.info("Server protocol version", extra={"version": value.version})
                return [
                    self._transition(HandshakeStage.AWAITING_APP_AUTH_ACK, detail=f"server version {value.version}"),
                    SendRequest(
                        MessageKind.APPLICATION_AUTH_REQUEST,
                        {
                            "clientId": self._session.credentials.application_id,
                            "clientSecret": self._session.credentials.application_secret,
                        },
                    ),
                ]
            case (HandshakeStage.AWAITING_APP_AUTH_ACK, MessageKind.APPLICATION_AUTH_RESPONSE):
                self._session.app_authenticated = True
                if self._mode is SessionMode.ACCOUNTS or self._session.account_id is None:
                    return self._enter_account_discovery()
                return self._enter_account_auth()
            case (HandshakeStage.AWAITING_ACCOUNT_DISCOVERY, MessageKind.ACCOUNT_LIST_RESPONSE):
                self._session.consecutive_refreshes = 0
                return self._on_accounts(value)
            case (HandshakeStage.AWAITING_ACCOUNT_AUTH_ACK, MessageKind.ACCOUNT_AUTH_RESPONSE):
                self._session.consecutive_refreshes = 0
                return [
                    self._transition(HandshakeStage.AWAITING_SYMBOL_LIST),
                    SendRequest(
                        MessageKind.SYMBOL_LIST_REQUEST,
                        {"ctidTraderAccountId": self._session.account_id, "includeArchivedSymbols": False},
                    ),
                ]
            case (HandshakeStage.AWAITING_SYMBOL_LIST, MessageKind.SYMBOL_LIST_RESPONSE):
                return self._on_symbols(value)
            case (HandshakeStage.AWAITING_SUBSCRIBE_ACK, MessageKind.SUBSCRIBE_SPOTS_RESPONSE):
                names = [self._session.symbol_names.get(item, str(item)) for item in self._session.subscribed]
                return [self._transition(HandshakeStage.STREAMING, detail=", ".join(names))]
            case (HandshakeStage.STREAMING, MessageKind.SPOT_EVENT):
                return [PublishEvent(self._spot_tick(value))]
            case (HandshakeStage.STREAMING, MessageKind.UNSUBSCRIBE_SPOTS_RESPONSE):
                logger.info("Spot subscription cancelled", extra={"account_id": self._session.account_id})
                return []

        logger.debug("Ignoring unexpected message", extra={"stage": self.stage, "kind": message.kind})
        return []

    def _enter_account_discovery(self, detail: str = "") -> list[Action]:
        return [
            self._transition(HandshakeStage.AWAITING_ACCOUNT_DISCOVERY, detail=detail),
            SendRequest(
                MessageKind.ACCOUNT_LIST_REQUEST,
                {"accessToken": self._session.credentials.access_token},
            ),
        ]

    def _enter_account_auth(self, detail: str = "") -> list[Action]:
        return [
            self._transition(HandshakeStage.AWAITING_ACCOUNT_AUTH_ACK, detail=detail),
            SendRequest(
                MessageKind.ACCOUNT_AUTH_REQUEST,
                {
                    "ctidTraderAccountId": self._session.account_id,
                    "accessToken": self._session.credentials.access_token,
                },
            ),
        ]

    def _on_accounts(self, value: Any) -> list[Action]:
        accounts = tuple(
            TradingAccount(
                account_id=item.ctidTraderAccountId,
                is_live=item.isLive if item.HasField("isLive") else None,
                trader_login=item.traderLogin if item.HasField("traderLogin") else None,
                broker=item.brokerTitleShort or None,
            )
            for item in value.ctidTraderAccount
        )
        actions: list[Action] = [PublishEvent(AccountsListed(accounts=accounts))]

        if self._mode is SessionMode.ACCOUNTS:
            actions.append(Finish(f"{len(accounts)} accounts listed"))
            return actions
        if not accounts:
            error = ProtocolError("NO_TRADING_ACCOUNTS", "the access token grants no trading accounts", self.stage)
            actions.append(self._error_event(error.code, error.description, fatal=True))
            actions.append(Abort(error))
            return actions

        self._session.account_id = accounts[0].account_id
        logger.info(
            "Using first trading account",
            extra={"account_id": self._session.account_id, "accounts": len(accounts)},
        )
        actions.extend(self._enter_account_auth(detail=f"account {self._session.account_id}"))
        return actions

    def _on_symbols(self, value: Any) -> list[Action]:
        instruments = tuple(
            Instrument(
                symbol_id=item.symbolId,
                symbol_name=item.symbolName,
                enabled=item.enabled if item.HasField("enabled") else True,
                description=item.description,
            )
            for item in value.symbol
        )
        self._session.symbol_names = {item.symbol_id: item.symbol_name for item in instruments}
        actions: list[Action] = [
            PublishEvent(InstrumentList(account_id=self._session.account_id or 0, instruments=instruments))
        ]

        if self._mode is SessionMode.SYMBOLS:
            actions.append(Finish(f"{len(instruments)} instruments listed"))
            return actions

        resolved = resolve_instruments(self._selection, instruments)
        if not resolved:
            error = UnknownInstrument(self._selection)
            actions.append(self._error_event("UNKNOWN_INSTRUMENT", str(error), fatal=True))
            actions.append(Abort(error))
            return actions

        self._session.subscribed = tuple(item.symbol_id for item in resolved)
        actions.append(self._transition(HandshakeStage.AWAITING_SUBSCRIBE_ACK))
        actions.append(
            SendRequest(
                MessageKind.SUBSCRIBE_SPOTS_REQUEST,
                {"ctidTraderAccountId": self._session.account_id, "symbolId": list(self._session.subscribed)},
            )
        )
        return actions

    def _on_error(self, message: DecodedMessage) -> list[Action]:
        code = (message.value.errorCode or "UNKNOWN_ERROR").upper()
        description = message.value.description
        if code in self._credential_error_codes:
            logger.warning("Credentials rejected", extra={"code": code, "stage": self.stage})
            return self._request_refresh(code, reason=code, description=description)

        if self.stage is HandshakeStage.STREAMING:
            logger.warning("Server error while streaming", extra={"code": code, "description": description})
            return [self._error_event(code, description)]

        logger.error("Server error during handshake", extra={"code": code, "stage": self.stage})
        return [self._error_event(code, description, fatal=True), Abort(ProtocolError(code, description, self.stage))]

    def _request_refresh(self, code: str, *, reason: str, description: str = "") -> list[Action]:
        if self._session.refresh_in_flight:
            logger.debug("Refresh already in flight", extra={"code": code})
            return []
        if self._session.consecutive_refreshes >= self._max_consecutive_refreshes:
            detail = f"credentials still rejected after {self._session.consecutive_refreshes} refresh(es)"
            if description:
                detail = f"{detail}: {description}"
            logger.error("Refreshed credentials rejected", extra={"code": code, "stage": self.stage})
            return [self._error_event(code, detail, fatal=True), Abort(ProtocolError(code, detail, self.stage))]
        self._session.refresh_in_flight = True
        self._session.consecutive_refreshes += 1
        return [RefreshCredentials(reason)]

    def _spot_tick(self, value: Any) -> SpotTick:
        symbol_id = value.symbolId
        return SpotTick(
            account_id=value.ctidTraderAccountId,
            symbol_id=symbol_id,
            symbol_name=self._session.symbol_names.get(symbol_id),
            bid=scale_price(value.bid) if value.HasField("bid") else None,
            ask=scale_price(value.ask) if value.HasField("ask") else None,
            timestamp=from_epoch_ms(value.timestamp) if value.HasField("timestamp") else None,
        )

    def _error_event(self, code: str, description: str, *, fatal: bool = False) -> PublishEvent:
        return PublishEvent(ErrorReported(code=code, description=description, stage=self.stage.value, fatal=fatal))

    def _transition(self, stage: HandshakeStage, *, detail: str = "") -> PublishEvent:
        previous = self._session.stage
        self._session.stage = stage
        logger.info("Handshake stage changed", extra={"previous": previous.value, "current": stage.value})
        return PublishEvent(StageChanged(previous=previous.value, current=stage.value, detail=detail))


def resolve_instruments(selection: Iterable[str], instruments: Iterable[Instrument]) -> list[Instrument]:
    """Match names (case-insensitive) or numeric ids against the server list."""
    offered = list(instruments)
    by_name = {item.symbol_name.upper(): item for item in offered}
    by_id = {item.symbol_id: item for item in offered}
    resolved: list[Instrument] = []
    for token in selection:
        wanted = token.strip()
        found = by_name.get(wanted.upper())
        if found is None and wanted.isdigit():
            found = by_id.get(int(wanted))
        if found is None:
            logger.warning("Instrument not offered by the server", extra={"instrument": wanted})
            continue
        if found not in resolved:
            resolved.append(found)
    return resolved
