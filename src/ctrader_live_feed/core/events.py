from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from datetime import datetime

logger = logging.getLogger(__name__)

PRICE_SCALE = 100_000


@dataclass(frozen=True, slots=True)
class FeedEvent:
    """Base class for everything the core hands to the presentation layer."""


@dataclass(frozen=True, slots=True)
class StageChanged(FeedEvent):
    previous: str
    current: str
    detail: str = ""


@dataclass(frozen=True, slots=True)
class SpotTick(FeedEvent):
    account_id: int
    symbol_id: int
    symbol_name: str | None
    bid: float | None
    ask: float | None
    timestamp: datetime | None = None

    @property
    def label(self) -> str:
        return self.symbol_name or f"ID {self.symbol_id}"


@dataclass(frozen=True, slots=True)
class Instrument:
    symbol_id: int
    symbol_name: str
    enabled: bool = True
    description: str = ""


@dataclass(frozen=True, slots=True)
class InstrumentList(FeedEvent):
    account_id: int
    instruments: tuple[Instrument, ...]


@dataclass(frozen=True, slots=True)
class TradingAccount:
    account_id: int
    is_live: bool | None = None
    trader_login: int | None = None
    broker: str | None = None


@dataclass(frozen=True, slots=True)
class AccountsListed(FeedEvent):
    accounts: tuple[TradingAccount, ...]


@dataclass(frozen=True, slots=True)
class ErrorReported(FeedEvent):
    code: str
    description: str
    stage: str
    fatal: bool = False


@dataclass(frozen=True, slots=True)
class Reconnecting(FeedEvent):
    attempt: int
    max_attempts: int
    delay_seconds: float
    reason: str


@dataclass(frozen=True, slots=True)
class CredentialsRefreshed(FeedEvent):
    expires_at: datetime | None


@dataclass(frozen=True, slots=True)
class FatalError(FeedEvent):
    message: str


def scale_price(raw: int | None) -> float | None:
    if not raw:
        return None
    return raw / PRICE_SCALE


class EventBus:
    """Bounded hand-off between the protocol core and its consumers.

    ``publish`` never waits: when the queue is full the oldest event is
    discarded and counted in ``dropped``.
    """

    def __init__(self, maxsize: int = 10_000) -> None:
        self._queue: asyncio.Queue[FeedEvent | None] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def publish(self, event: FeedEvent) -> None:
        self._make_room()
        self._queue.put_nowait(event)

    def close(self) -> None:
        """Wake up ``events()`` consumers once pending events are read."""
        self._make_room()
        self._queue.put_nowait(None)

    def _make_room(self) -> None:
        if not self._queue.full():
            return
        try:
            self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return
        self.dropped += 1
        if self.dropped == 1 or self.dropped % 1000 == 0:
            logger.warning("Event consumer is lagging; dropping oldest events", extra={"dropped": self.dropped})

    def drain(self) -> list[FeedEvent]:
        drained: list[FeedEvent] = []
        while True:
            try:
                event = self._queue.get_nowait()
            except asyncio.QueueEmpty:
                return drained
            if event is not None:
                drained.append(event)

    async def events(self) -> AsyncIterator[FeedEvent]:
        while True:
            event = await self._queue.get()
            if event is None:
                return
            yield event
