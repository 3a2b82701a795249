from __future__ import annotations

import asyncio
import logging
import ssl
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Protocol

from ctrader_live_feed.core.config import Settings
from ctrader_live_feed.core.events import Reconnecting
from ctrader_live_feed.protocol.framing import ProtocolViolation

logger = logging.getLogger(__name__)

READ_CHUNK_BYTES = 64 * 1024


class ConnectError(RuntimeError):
    """The gateway could not be reached, or reconnect attempts ran out."""


class SessionOutcome(StrEnum):
    FINISHED = "finished"
    DISCONNECTED = "disconnected"
    RECONNECT = "reconnect"


@dataclass(frozen=True, slots=True)
class Endpoint:
    host: str
    port: int
    use_tls: bool = True
    connect_timeout_seconds: float = 10.0

    @classmethod
    def from_settings(cls, settings: Settings) -> Endpoint:
        return cls(
            host=settings.host,
            port=settings.port,
            use_tls=settings.use_tls,
            connect_timeout_seconds=settings.connect_timeout_seconds,
        )

    @property
    def address(self) -> str:
        return f"{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class Backoff:
    initial_seconds: float = 5.0
    max_seconds: float = 60.0
    max_attempts: int = 20

    @classmethod
    def from_settings(cls, settings: Settings) -> Backoff:
        return cls(
            initial_seconds=settings.reconnect_initial_seconds,
            max_seconds=settings.reconnect_max_seconds,
            max_attempts=settings.max_reconnect_attempts,
        )

    def delay(self, attempt: int) -> float:
        return min(self.max_seconds, self.initial_seconds * (2 ** max(attempt - 1, 0)))


class Stream(Protocol):
    async def read(self) -> bytes: ...

    async def send(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class Connection:
    """One TLS byte stream to the gateway."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        *,
        peer: str,
        read_size: int = READ_CHUNK_BYTES,
    ) -> None:
        self._reader = reader
        self._writer = writer
        self._peer = peer
        self._read_size = read_size
        self._write_lock = asyncio.Lock()
        self._closed = False

    @property
    def peer(self) -> str:
        return self._peer

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aenter__(self) -> Connection:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def read(self) -> bytes:
        """Next chunk from the stream; ``b""`` once it is closed."""
        if self._closed:
            return b""
        return await self._reader.read(self._read_size)

    async def send(self, data: bytes) -> None:
        if self._closed:
            raise ConnectionResetError(f"connection to {self._peer} is closed")
        async with self._write_lock:
            self._writer.write(data)
            await self._writer.drain()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except (OSError, ssl.SSLError) as exc:
            logger.debug("Socket close raised", extra={"peer": self._peer, "error": repr(exc)})


Opener = Callable[[Endpoint], Awaitable[Stream]]
Handler = Callable[[Stream], Awaitable[SessionOutcome]]


async def open_tls_connection(endpoint: Endpoint) -> Connection:
    ssl_context = ssl.create_default_context() if endpoint.use_tls else None
    try:
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(
                endpoint.host,
                endpoint.port,
                ssl=ssl_context,
                server_hostname=endpoint.host if ssl_context is not None else None,
            ),
            timeout=endpoint.connect_timeout_seconds,
        )
    except TimeoutError as exc:
        raise ConnectError(
            f"timed out after {endpoint.connect_timeout_seconds}s connecting to {endpoint.address}"
        ) from exc
    except OSError as exc:
        raise ConnectError(f"cannot connect to {endpoint.address}: {exc}") from exc

    logger.info("Connected", extra={"peer": endpoint.address, "tls": endpoint.use_tls})
    return Connection(reader, writer, peer=endpoint.address)


class ConnectionManager:
    """Runs one session per connection and reconnects with capped backoff.

    The attempt counter only grows across consecutive failures; a session that
    reaches streaming calls ``reset_backoff`` so a later drop starts over at
    the initial delay.
    """

    def __init__(
        self,
        endpoint: Endpoint,
        backoff: Backoff | None = None,
        *,
        opener: Opener | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        on_reconnecting: Callable[[Reconnecting], None] | None = None,
    ) -> None:
        self._endpoint = endpoint
        self._backoff = backoff or Backoff()
        self._opener = opener or open_tls_connection
        self._sleep = sleep
        self._on_reconnecting = on_reconnecting
        self._active: Stream | None = None
        self._stopping = False
        self._attempt = 0

    @property
    def attempt(self) -> int:
        return self._attempt

    async def connect(self) -> Stream:
        try:
            return await self._opener(self._endpoint)
        except ConnectError:
            raise
        except (TimeoutError, OSError) as exc:
            raise ConnectError(f"cannot connect to {self._endpoint.address}: {exc}") from exc

    async def run(self, handler: Handler) -> None:
        self._stopping = False
        while not self._stopping:
            try:
                connection = await self.connect()
            except ConnectError as exc:
                logger.warning("Connect failed", extra={"peer": self._endpoint.address, "error": str(exc)})
                await self._wait_before_retry(reason=str(exc))
                continue

            self._active = connection
            delay_override: float | None = None
            try:
                async with connection:
                    outcome = await handler(connection)
            except (ProtocolViolation, OSError) as exc:
                logger.warning(
                    "Session dropped",
                    extra={"peer": self._endpoint.address, "error": f"{exc.__class__.__name__}: {exc}"},
                )
                reason = f"{exc.__class__.__name__}: {exc}"
            else:
                if outcome is SessionOutcome.FINISHED:
                    logger.info("Session finished", extra={"peer": self._endpoint.address})
                    return
                if outcome is SessionOutcome.RECONNECT:
                    reason = "session requested a fresh connection"
                    delay_override = 0.0
                else:
                    reason = "connection closed by peer"
            finally:
                self._active = None

            if self._stopping:
                break
            await self._wait_before_retry(reason=reason, delay_override=delay_override)

        logger.info("Connection manager stopped", extra={"peer": self._endpoint.address})

    async def stop(self) -> None:
        """Stop reconnecting and close the live connection, if any."""
        self._stopping = True
        active = self._active
        if active is not None:
            await active.close()

    def reset_backoff(self) -> None:
        if self._attempt:
            logger.debug("Reconnect counter reset", extra={"previous_attempt": self._attempt})
        self._attempt = 0

    async def _wait_before_retry(self, *, reason: str, delay_override: float | None = None) -> None:
        self._attempt += 1
        if self._attempt > self._backoff.max_attempts:
            raise ConnectError(
                f"giving up on {self._endpoint.address} after {self._backoff.max_attempts} reconnect attempts: {reason}"
            )
        delay = self._backoff.delay(self._attempt) if delay_override is None else delay_override
        event = Reconnecting(
            attempt=self._attempt,
            max_attempts=self._backoff.max_attempts,
            delay_seconds=delay,
            reason=reason,
        )
        logger.warning(
            "Reconnecting",
            extra={
                "peer": self._endpoint.address,
                "attempt": self._attempt,
                "max_attempts": self._backoff.max_attempts,
                "sleep_seconds": round(delay, 3),
                "reason": reason,
            },
        )
        if self._on_reconnecting is not None:
            self._on_reconnecting(event)
        if delay > 0:
            await self._sleep(delay)
