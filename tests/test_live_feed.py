import asyncio
from pathlib import Path

import httpx
import pytest
from conftest import GatewayScript

from ctrader_live_feed.auth.credentials import MissingCredentials
from ctrader_live_feed.core.config import Settings
from ctrader_live_feed.core.events import CredentialsRefreshed, FatalError, InstrumentList, Reconnecting, SpotTick
from ctrader_live_feed.pipeline.orchestrator import LiveFeed
from ctrader_live_feed.protocol.registry import MessageKind
from ctrader_live_feed.session.handshake import SessionMode, UnknownInstrument
from ctrader_live_feed.transport.connection import ConnectError, Endpoint

HANDSHAKE = [
    MessageKind.VERSION_REQUEST,
    MessageKind.APPLICATION_AUTH_REQUEST,
    MessageKind.ACCOUNT_AUTH_REQUEST,
    MessageKind.SYMBOL_LIST_REQUEST,
    MessageKind.SUBSCRIBE_SPOTS_REQUEST,
]


def _settings(tmp_path: Path, **overrides) -> Settings:
    values = {
        "client_id": "app-id",
        "client_secret": "app-secret",
        "access_token": "access-1",
        "refresh_token": "refresh-1",
        "account_id": 1001,
        "symbols": "EURUSD",
        "max_reconnect_attempts": 1,
        "heartbeat_interval_seconds": 3600,
        "env_file": tmp_path / ".env",
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


async def _no_sleep(delay: float) -> None:
    return None


def _unused_token_endpoint(request: httpx.Request) -> httpx.Response:
    raise AssertionError("token endpoint must not be called")


def test_reconnect_restarts_handshake_with_fresh_session(tmp_path: Path, make_gateway) -> None:
    gateways = []

    async def opener(endpoint: Endpoint):
        if len(gateways) == 2:
            raise ConnectError("gateway went away")
        gateway = make_gateway(GatewayScript())
        gateways.append(gateway)
        return gateway

    feed = LiveFeed(
        _settings(tmp_path),
        opener=opener,
        oauth_transport=httpx.MockTransport(_unused_token_endpoint),
        sleep=_no_sleep,
    )

    with pytest.raises(ConnectError, match="after 1 reconnect attempts"):
        asyncio.run(feed.run())

    assert len(gateways) == 2
    for gateway in gateways:
        assert gateway.sent_kinds == HANDSHAKE
        assert gateway.closed is True
    events = feed.bus.drain()
    assert len([event for event in events if isinstance(event, SpotTick)]) == 2
    assert [event.attempt for event in events if isinstance(event, Reconnecting)] == [1, 1]
    assert isinstance(events[-1], FatalError)


def test_symbols_mode_finishes_after_instrument_list(tmp_path: Path, make_gateway) -> None:
    gateway = make_gateway(GatewayScript())

    async def opener(endpoint: Endpoint):
        return gateway

    feed = LiveFeed(
        _settings(tmp_path, symbols=""),
        mode=SessionMode.SYMBOLS,
        opener=opener,
        oauth_transport=httpx.MockTransport(_unused_token_endpoint),
        sleep=_no_sleep,
    )

    asyncio.run(feed.run())

    assert gateway.sent_kinds == HANDSHAKE[:4]
    assert gateway.closed is True
    (listed,) = [event for event in feed.bus.drain() if isinstance(event, InstrumentList)]
    assert [item.symbol_name for item in listed.instruments] == ["EURUSD", "GBPUSD", "XAUUSD"]


def test_expired_token_is_refreshed_before_connecting(tmp_path: Path, make_gateway) -> None:
    (tmp_path / ".env").write_text("CTRADER_ACCESS_TOKEN=access-1\nCTRADER_SYMBOLS=EURUSD\n", encoding="utf-8")
    gateway = make_gateway(GatewayScript())

    def token_endpoint(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            request=request,
            json={"accessToken": "access-2", "refreshToken": "refresh-2", "expiresIn": 3600},
        )

    async def opener(endpoint: Endpoint):
        return gateway

    feed = LiveFeed(
        _settings(tmp_path, token_expires_at=1_000_000_000),
        mode=SessionMode.SYMBOLS,
        opener=opener,
        oauth_transport=httpx.MockTransport(token_endpoint),
        sleep=_no_sleep,
    )

    asyncio.run(feed.run())

    (account_auth,) = gateway.sent_of(MessageKind.ACCOUNT_AUTH_REQUEST)
    assert account_auth.value.accessToken == "access-2"
    env_lines = (tmp_path / ".env").read_text(encoding="utf-8").splitlines()
    assert "CTRADER_ACCESS_TOKEN=access-2" in env_lines
    assert "CTRADER_REFRESH_TOKEN=refresh-2" in env_lines
    assert "CTRADER_SYMBOLS=EURUSD" in env_lines
    assert any(isinstance(event, CredentialsRefreshed) for event in feed.bus.drain())


def test_missing_credentials_fail_before_connecting(tmp_path: Path) -> None:
    async def opener(endpoint: Endpoint):
        raise AssertionError("must not connect")

    feed = LiveFeed(
        _settings(tmp_path, client_secret=""),
        opener=opener,
        oauth_transport=httpx.MockTransport(_unused_token_endpoint),
        sleep=_no_sleep,
    )

    with pytest.raises(MissingCredentials):
        asyncio.run(feed.run())

    (event,) = feed.bus.drain()
    assert isinstance(event, FatalError)
    assert "CTRADER_CLIENT_SECRET" in event.message


def test_unknown_instrument_stops_without_reconnecting(tmp_path: Path, make_gateway) -> None:
    gateways = []

    async def opener(endpoint: Endpoint):
        gateway = make_gateway(GatewayScript())
        gateways.append(gateway)
        return gateway

    feed = LiveFeed(
        _settings(tmp_path, symbols="USDJPY", max_reconnect_attempts=5),
        opener=opener,
        oauth_transport=httpx.MockTransport(_unused_token_endpoint),
        sleep=_no_sleep,
    )

    with pytest.raises(UnknownInstrument):
        asyncio.run(feed.run())

    assert len(gateways) == 1
    assert gateways[0].closed is True
    assert not any(isinstance(event, Reconnecting) for event in feed.bus.drain())
