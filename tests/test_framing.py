import struct

import pytest

from ctrader_live_feed.protocol.framing import (
    HEADER_SIZE,
    Envelope,
    Frame,
    FrameCodec,
    FrameTooLarge,
    MalformedFrame,
    ReceiveBuffer,
)


def _raw_frame(body: bytes) -> bytes:
    return struct.pack(">I", len(body)) + body


def test_two_frames_delivered_in_three_chunks_yield_exactly_two_frames() -> None:
    stream = _raw_frame(b"a" * 15) + _raw_frame(b"b" * 14)
    assert len(stream) == 37

    buffer = ReceiveBuffer(FrameCodec())

    assert buffer.feed(stream[:10]) == []
    assert buffer.feed(stream[10:15]) == []
    frames = buffer.feed(stream[15:])

    assert frames == [Frame(body=b"a" * 15), Frame(body=b"b" * 14)]
    assert len(buffer) == 0


def test_consume_is_independent_of_chunk_boundaries() -> None:
    codec = FrameCodec()
    envelopes = [
        Envelope(payload_type=2104),
        Envelope(payload_type=2131, payload=b"\x10\x01\x18\x02", client_msg_id="m-1"),
        Envelope(payload_type=51),
    ]
    stream = b"".join(codec.serialize(envelope) for envelope in envelopes)
    expected, remainder = codec.consume(stream)
    assert remainder == b""
    assert [codec.decode_envelope(frame) for frame in expected] == envelopes

    for split in range(len(stream) + 1):
        buffer = ReceiveBuffer(codec)
        frames = buffer.feed(stream[:split]) + buffer.feed(stream[split:])
        assert frames == expected, f"split at {split}"


def test_consume_keeps_incomplete_header_and_body() -> None:
    codec = FrameCodec()
    complete = _raw_frame(b"xyz")
    partial = _raw_frame(b"0123456789")[:7]

    frames, remainder = codec.consume(complete + partial)

    assert frames == [Frame(body=b"xyz")]
    assert remainder == partial

    frames, remainder = codec.consume(b"\x00\x00")
    assert frames == []
    assert remainder == b"\x00\x00"


def test_zero_length_frame_is_extracted() -> None:
    frames, remainder = FrameCodec().consume(_raw_frame(b""))
    assert frames == [Frame(body=b"")]
    assert remainder == b""


def test_oversized_length_is_rejected_as_soon_as_header_arrives() -> None:
    buffer = ReceiveBuffer(FrameCodec(max_frame_bytes=1024))

    with pytest.raises(FrameTooLarge) as excinfo:
        buffer.feed(struct.pack(">I", 2048))

    assert excinfo.value.length == 2048
    assert excinfo.value.limit == 1024
    buffer.reset()
    assert len(buffer) == 0


def test_serialize_writes_big_endian_length_prefix() -> None:
    codec = FrameCodec()
    data = codec.serialize(Envelope(payload_type=2104, payload=b"\x08\x01"))

    (length,) = struct.unpack(">I", data[:HEADER_SIZE])
    assert length == len(data) - HEADER_SIZE
    assert codec.decode_envelope(Frame(body=data[HEADER_SIZE:])) == Envelope(payload_type=2104, payload=b"\x08\x01")


def test_undecodable_envelope_is_malformed() -> None:
    codec = FrameCodec()

    with pytest.raises(MalformedFrame):
        codec.decode_envelope(Frame(body=b"\x08"))


def test_envelope_without_payload_type_is_malformed() -> None:
    codec = FrameCodec()

    with pytest.raises(MalformedFrame, match="payloadType"):
        codec.decode_envelope(Frame(body=b""))


def test_receive_buffer_reset_drops_partial_frame() -> None:
    buffer = ReceiveBuffer(FrameCodec())
    buffer.feed(_raw_frame(b"hello")[:6])
    assert len(buffer) == 6

    buffer.reset()

    assert len(buffer) == 0
    assert buffer.feed(_raw_frame(b"ok")) == [Frame(body=b"ok")]
