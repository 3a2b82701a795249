import asyncio

import pytest

from ctrader_live_feed.core.events import Reconnecting
from ctrader_live_feed.protocol.framing import MalformedFrame
from ctrader_live_feed.transport.connection import (
    Backoff,
    ConnectError,
    ConnectionManager,
    Endpoint,
    SessionOutcome,
    open_tls_connection,
)

ENDPOINT = Endpoint(host="gateway.test", port=5035)


class _RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _silent(message):
    return []


def test_backoff_is_capped_exponential() -> None:
    backoff = Backoff(initial_seconds=5.0, max_seconds=60.0, max_attempts=10)

    assert [backoff.delay(attempt) for attempt in range(1, 7)] == [5.0, 10.0, 20.0, 40.0, 60.0, 60.0]


def test_connect_failures_are_bounded() -> None:
    opened = 0

    async def opener(endpoint: Endpoint):
        nonlocal opened
        opened += 1
        raise ConnectError(f"refused by {endpoint.address}")

    sleep = _RecordingSleep()
    events: list[Reconnecting] = []
    manager = ConnectionManager(
        ENDPOINT,
        Backoff(initial_seconds=1.0, max_seconds=4.0, max_attempts=3),
        opener=opener,
        sleep=sleep,
        on_reconnecting=events.append,
    )

    async def handler(connection):
        raise AssertionError("handler must not run without a connection")

    with pytest.raises(ConnectError, match="after 3 reconnect attempts"):
        asyncio.run(manager.run(handler))

    assert opened == 4
    assert sleep.delays == [1.0, 2.0, 4.0]
    assert [event.attempt for event in events] == [1, 2, 3]
    assert events[0].reason == "refused by gateway.test:5035"


def test_os_error_from_opener_is_retried(make_gateway) -> None:
    gateway = make_gateway(_silent)
    attempts = 0

    async def opener(endpoint: Endpoint):
        nonlocal attempts
        attempts += 1
        if attempts == 1:
            raise OSError("network unreachable")
        return gateway

    async def handler(connection):
        return SessionOutcome.FINISHED

    sleep = _RecordingSleep()
    manager = ConnectionManager(ENDPOINT, Backoff(initial_seconds=0.5), opener=opener, sleep=sleep)

    asyncio.run(manager.run(handler))

    assert attempts == 2
    assert sleep.delays == [0.5]
    assert gateway.closed is True


def test_protocol_violation_closes_socket_and_reconnects(make_gateway) -> None:
    gateways = [make_gateway(_silent), make_gateway(_silent)]
    handled = []

    async def opener(endpoint: Endpoint):
        return gateways[len(handled)]

    async def handler(connection):
        handled.append(connection)
        if len(handled) == 1:
            raise MalformedFrame("garbage")
        return SessionOutcome.FINISHED

    sleep = _RecordingSleep()
    manager = ConnectionManager(ENDPOINT, Backoff(initial_seconds=2.0), opener=opener, sleep=sleep)

    asyncio.run(manager.run(handler))

    assert handled == gateways
    assert all(gateway.closed for gateway in gateways)
    assert sleep.delays == [2.0]


def test_reset_backoff_restarts_delays_after_streaming(make_gateway) -> None:
    sessions = 0

    async def opener(endpoint: Endpoint):
        return make_gateway(_silent)

    sleep = _RecordingSleep()
    manager = ConnectionManager(
        ENDPOINT,
        Backoff(initial_seconds=1.0, max_seconds=30.0, max_attempts=5),
        opener=opener,
        sleep=sleep,
    )

    async def handler(connection):
        nonlocal sessions
        sessions += 1
        if sessions == 4:
            return SessionOutcome.FINISHED
        if sessions >= 2:
            manager.reset_backoff()
        return SessionOutcome.DISCONNECTED

    asyncio.run(manager.run(handler))

    assert sleep.delays == [1.0, 1.0, 1.0]
    assert manager.attempt == 1


def test_session_requested_reconnect_skips_the_delay(make_gateway) -> None:
    outcomes = [SessionOutcome.RECONNECT, SessionOutcome.FINISHED]

    async def opener(endpoint: Endpoint):
        return make_gateway(_silent)

    async def handler(connection):
        return outcomes.pop(0)

    sleep = _RecordingSleep()
    events: list[Reconnecting] = []
    manager = ConnectionManager(ENDPOINT, opener=opener, sleep=sleep, on_reconnecting=events.append)

    asyncio.run(manager.run(handler))

    assert sleep.delays == []
    assert [event.delay_seconds for event in events] == [0.0]


def test_stop_unblocks_pending_read(make_gateway) -> None:
    gateway = make_gateway(_silent)
    reads: list[bytes] = []

    async def opener(endpoint: Endpoint):
        return gateway

    sleep = _RecordingSleep()
    manager = ConnectionManager(ENDPOINT, opener=opener, sleep=sleep)

    async def handler(connection):
        reads.append(await connection.read())
        return SessionOutcome.DISCONNECTED

    async def scenario() -> None:
        runner = asyncio.create_task(manager.run(handler))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        await manager.stop()
        await asyncio.wait_for(runner, timeout=1.0)

    asyncio.run(scenario())

    assert reads == [b""]
    assert gateway.closed is True
    assert sleep.delays == []


def test_tcp_connection_sends_reads_and_closes_once() -> None:
    async def scenario() -> tuple[bytes, bytes, bool]:
        received = asyncio.get_running_loop().create_future()

        async def serve(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
            data = await reader.readexactly(5)
            received.set_result(data)
            writer.write(b"pong!")
            await writer.drain()
            writer.close()

        server = await asyncio.start_server(serve, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        async with server:
            connection = await open_tls_connection(Endpoint(host="127.0.0.1", port=port, use_tls=False))
            async with connection:
                await connection.send(b"ping!")
                reply = await connection.read()
            await connection.close()
            return await received, reply, connection.closed

    sent, reply, closed = asyncio.run(scenario())

    assert sent == b"ping!"
    assert reply == b"pong!"
    assert closed is True


def test_unreachable_gateway_raises_connect_error() -> None:
    async def scenario() -> None:
        server = await asyncio.start_server(lambda reader, writer: None, "127.0.0.1", 0)
        port = server.sockets[0].getsockname()[1]
        server.close()
        await server.wait_closed()
        await open_tls_connection(Endpoint(host="127.0.0.1", port=port, use_tls=False, connect_timeout_seconds=2.0))

    with pytest.raises(ConnectError, match="127.0.0.1"):
        asyncio.run(scenario())
