"""Length-prefixed framing for the Open API stream.

Wire layout of one frame::

    uint32 big-endian length | ProtoMessage envelope (length bytes)

The envelope carries the payload type (wire discriminator), the serialized
payload message and an optional client message id.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Final

from google.protobuf.message import DecodeError

from . import schema

HEADER_SIZE: Final = 4
DEFAULT_MAX_FRAME_BYTES: Final = 10 * 1024 * 1024

_HEADER: Final = struct.Struct(">I")


class ProtocolViolation(RuntimeError):
    """The peer sent bytes that cannot be a valid frame."""


class FrameTooLarge(ProtocolViolation):
    def __init__(self, length: int, limit: int) -> None:
        super().__init__(f"declared frame length {length} exceeds limit {limit}")
        self.length = length
        self.limit = limit


class MalformedFrame(ProtocolViolation):
    pass


@dataclass(frozen=True, slots=True)
class Frame:
    body: bytes


@dataclass(frozen=True, slots=True)
class Envelope:
    payload_type: int
    payload: bytes = b""
    client_msg_id: str | None = None


class FrameCodec:
    def __init__(self, max_frame_bytes: int = DEFAULT_MAX_FRAME_BYTES) -> None:
        self._max_frame_bytes = max_frame_bytes
        self._envelope_cls = schema.message_class("ProtoMessage")

    @property
    def max_frame_bytes(self) -> int:
        return self._max_frame_bytes

    def serialize(self, envelope: Envelope) -> bytes:
        body = self.encode_envelope(envelope)
        if len(body) > self._max_frame_bytes:
            raise FrameTooLarge(len(body), self._max_frame_bytes)
        return _HEADER.pack(len(body)) + body

    def consume(self, buffer: bytes | bytearray) -> tuple[list[Frame], bytes]:
        """Split every complete frame off the front of ``buffer``.

        Returns the frames in arrival order plus the unconsumed tail, which
        the caller keeps and prepends to the next delivery.
        """
        frames: list[Frame] = []
        offset = 0
        total = len(buffer)

        while total - offset >= HEADER_SIZE:
            (length,) = _HEADER.unpack_from(buffer, offset)
            if length > self._max_frame_bytes:
                raise FrameTooLarge(length, self._max_frame_bytes)
            end = offset + HEADER_SIZE + length
            if end > total:
                break
            frames.append(Frame(body=bytes(buffer[offset + HEADER_SIZE : end])))
            offset = end

        return frames, bytes(buffer[offset:])

    def encode_envelope(self, envelope: Envelope) -> bytes:
        message = self._envelope_cls(payloadType=envelope.payload_type, payload=envelope.payload)
        if envelope.client_msg_id is not None:
            message.clientMsgId = envelope.client_msg_id
        return message.SerializeToString()

    def decode_envelope(self, frame: Frame) -> Envelope:
        message = self._envelope_cls()
        try:
            message.ParseFromString(frame.body)
        except DecodeError as exc:
            raise MalformedFrame(f"frame of {len(frame.body)} bytes is not a ProtoMessage envelope") from exc
        if not message.HasField("payloadType"):
            raise MalformedFrame("envelope carries no payloadType")
        return Envelope(
            payload_type=message.payloadType,
            payload=message.payload,
            client_msg_id=message.clientMsgId if message.HasField("clientMsgId") else None,
        )


class ReceiveBuffer:
    """Accumulates stream bytes for exactly one connection."""

    def __init__(self, codec: FrameCodec) -> None:
        self._codec = codec
        self._data = bytearray()

    def __len__(self) -> int:
        return len(self._data)

    def feed(self, chunk: bytes) -> list[Frame]:
        self._data.extend(chunk)
        frames, remainder = self._codec.consume(self._data)
        if frames:
            del self._data[: len(self._data) - len(remainder)]
        return frames

    def reset(self) -> None:
        self._data.clear()
