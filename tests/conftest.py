from __future__ import annotations

import asyncio
from collections import defaultdict, deque
from collections.abc import Callable, Iterable, Mapping
from typing import Any

import pytest

from ctrader_live_feed.protocol.framing import Envelope, FrameCodec, ReceiveBuffer
from ctrader_live_feed.protocol.registry import DecodedMessage, MessageKind, MessageRegistry, default_registry

ACCOUNT_ID = 1001

# (kind, fields) is encoded into a frame, raw bytes are delivered as-is and
# None closes the stream.
Reply = tuple[MessageKind, Mapping[str, Any]] | bytes | None


def encode_frame(
    registry: MessageRegistry,
    codec: FrameCodec,
    kind: MessageKind,
    fields: Mapping[str, Any] | None = None,
) -> bytes:
    envelope = Envelope(payload_type=registry.wire_code(kind), payload=registry.encode(kind, fields))
    return codec.serialize(envelope)


def spot(symbol_id: int, bid: int, ask: int) -> tuple[MessageKind, dict[str, Any]]:
    return (
        MessageKind.SPOT_EVENT,
        {"ctidTraderAccountId": ACCOUNT_ID, "symbolId": symbol_id, "bid": bid, "ask": ask},
    )


def oa_error(code: str, description: str = "") -> tuple[MessageKind, dict[str, Any]]:
    return MessageKind.ERROR_RESPONSE, {"errorCode": code, "description": description}


def happy_replies() -> dict[MessageKind, list[Reply]]:
    return {
        MessageKind.VERSION_REQUEST: [(MessageKind.VERSION_RESPONSE, {"version": "99"})],
        MessageKind.APPLICATION_AUTH_REQUEST: [(MessageKind.APPLICATION_AUTH_RESPONSE, {})],
        MessageKind.ACCOUNT_LIST_REQUEST: [
            (
                MessageKind.ACCOUNT_LIST_RESPONSE,
                {
                    "accessToken": "access-1",
                    "ctidTraderAccount": [
                        {
                            "ctidTraderAccountId": ACCOUNT_ID,
                            "isLive": False,
                            "traderLogin": 555,
                            "brokerTitleShort": "Demo Broker",
                        }
                    ],
                },
            )
        ],
        MessageKind.ACCOUNT_AUTH_REQUEST: [(MessageKind.ACCOUNT_AUTH_RESPONSE, {"ctidTraderAccountId": ACCOUNT_ID})],
        MessageKind.SYMBOL_LIST_REQUEST: [
            (
                MessageKind.SYMBOL_LIST_RESPONSE,
                {
                    "ctidTraderAccountId": ACCOUNT_ID,
                    "symbol": [
                        {"symbolId": 1, "symbolName": "EURUSD", "enabled": True},
                        {"symbolId": 2, "symbolName": "GBPUSD", "enabled": True},
                        {"symbolId": 41, "symbolName": "XAUUSD", "enabled": True},
                    ],
                },
            )
        ],
        MessageKind.SUBSCRIBE_SPOTS_REQUEST: [
            (MessageKind.SUBSCRIBE_SPOTS_RESPONSE, {"ctidTraderAccountId": ACCOUNT_ID}),
            spot(1, 108_512, 108_530),
            None,
        ],
    }


class GatewayScript:
    """Answers every request kind with canned replies.

    ``queue`` overrides the answer to the next request of a kind only; later
    requests of that kind fall back to the defaults.
    """

    def __init__(self, replies: Mapping[MessageKind, list[Reply]] | None = None) -> None:
        self.replies = dict(happy_replies() if replies is None else replies)
        self._queued: dict[MessageKind, deque[list[Reply]]] = defaultdict(deque)

    def queue(self, kind: MessageKind, replies: list[Reply]) -> GatewayScript:
        self._queued[kind].append(replies)
        return self

    def __call__(self, message: DecodedMessage) -> list[Reply]:
        if self._queued[message.kind]:
            return self._queued[message.kind].popleft()
        return list(self.replies.get(message.kind, []))


class FakeGateway:
    """In-memory stand-in for a gateway connection."""

    def __init__(
        self,
        registry: MessageRegistry,
        codec: FrameCodec,
        responder: Callable[[DecodedMessage], Iterable[Reply]],
    ) -> None:
        self._registry = registry
        self._codec = codec
        self._responder = responder
        self._buffer = ReceiveBuffer(codec)
        self._inbox: asyncio.Queue[bytes] = asyncio.Queue()
        self.sent: list[DecodedMessage] = []
        self.closed = False

    @property
    def sent_kinds(self) -> list[MessageKind]:
        return [message.kind for message in self.sent if message.kind is not MessageKind.HEARTBEAT_EVENT]

    def sent_of(self, kind: MessageKind) -> list[DecodedMessage]:
        return [message for message in self.sent if message.kind is kind]

    def push(self, reply: Reply) -> None:
        if reply is None:
            self._inbox.put_nowait(b"")
        elif isinstance(reply, bytes):
            self._inbox.put_nowait(reply)
        else:
            kind, fields = reply
            self._inbox.put_nowait(encode_frame(self._registry, self._codec, kind, fields))

    async def __aenter__(self) -> FakeGateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def read(self) -> bytes:
        if self.closed and self._inbox.empty():
            return b""
        return await self._inbox.get()

    async def send(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionResetError("fake gateway is closed")
        for frame in self._buffer.feed(data):
            envelope = self._codec.decode_envelope(frame)
            message = self._registry.decode(envelope.payload_type, envelope.payload)
            assert isinstance(message, DecodedMessage)
            self.sent.append(message)
            for reply in self._responder(message):
                self.push(reply)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._inbox.put_nowait(b"")


@pytest.fixture
def registry() -> MessageRegistry:
    return default_registry()


@pytest.fixture
def codec() -> FrameCodec:
    return FrameCodec()


@pytest.fixture
def make_gateway(registry: MessageRegistry, codec: FrameCodec) -> Callable[..., FakeGateway]:
    def factory(responder: Callable[[DecodedMessage], Iterable[Reply]] | None = None) -> FakeGateway:
        return FakeGateway(registry, codec, responder or GatewayScript())

    return factory
