"""Wire protocol — header layout, streaming parser, blocking reader.

Usage:
    python3 -m pytest tests/test_protocol.py
"""

import io
import random
import struct

import pytest

from rgbd_link.errors import ProtocolError
from rgbd_link.protocol import (
    HEADER_FORMAT, HEADER_SIZE, MAX_PAYLOAD_SIZE,
    CompressedUnit, PacketParser, StreamKind,
    decode_packet, encode_packet, read_packet,
)


def make_units(n, seed=0):
    rng = random.Random(seed)
    numbers = {StreamKind.RGB: 0, StreamKind.DEPTH: 0}
    units = []
    for i in range(n):
        kind = rng.choice([StreamKind.RGB, StreamKind.DEPTH])
        payload = bytes(rng.randrange(256) for _ in range(rng.randrange(0, 64)))
        units.append(CompressedUnit(kind, i * 0.033, numbers[kind],
                                    kind == StreamKind.RGB and i % 5 == 0, payload))
        numbers[kind] += 1
    return units


def test_header_is_18_bytes():
    assert HEADER_SIZE == 18
    assert struct.calcsize(HEADER_FORMAT) == 18


def test_rgb_keyframe_packet_layout():
    unit = CompressedUnit(StreamKind.RGB, 1.000, 5, True, bytes([0xAA, 0xBB, 0xCC]))
    packet = encode_packet(unit)

    assert len(packet) == 21
    assert packet[0] == 1
    assert struct.unpack("<d", packet[1:9])[0] == 1.0
    assert struct.unpack("<I", packet[9:13])[0] == 5
    assert struct.unpack("<I", packet[13:17])[0] == 3
    assert packet[17] == 1
    assert packet[18:] == b"\xaa\xbb\xcc"

    assert decode_packet(packet) == unit


def test_depth_packet_type_byte():
    packet = encode_packet(CompressedUnit(StreamKind.DEPTH, 0.5, 0, True, b"x"))
    assert packet[0] == 2


def test_empty_payload():
    unit = CompressedUnit(StreamKind.DEPTH, 0.0, 7, False, b"")
    packet = encode_packet(unit)
    assert len(packet) == HEADER_SIZE
    assert decode_packet(packet) == unit


def test_encode_rejects_oversized_payload():
    unit = CompressedUnit(StreamKind.RGB, 0.0, 0, True, bytes(MAX_PAYLOAD_SIZE + 1))
    with pytest.raises(ProtocolError):
        encode_packet(unit)


def test_encode_rejects_frame_number_out_of_range():
    with pytest.raises(ProtocolError):
        encode_packet(CompressedUnit(StreamKind.RGB, 0.0, 2 ** 32, True, b""))
    with pytest.raises(ProtocolError):
        encode_packet(CompressedUnit(StreamKind.RGB, 0.0, -1, True, b""))


def test_decode_rejects_unknown_type():
    header = struct.pack(HEADER_FORMAT, 9, 0.0, 0, 0, 0)
    with pytest.raises(ProtocolError):
        decode_packet(header)


def test_decode_rejects_size_mismatch():
    packet = encode_packet(CompressedUnit(StreamKind.RGB, 0.0, 0, True, b"abc"))
    with pytest.raises(ProtocolError):
        decode_packet(packet[:-1])
    with pytest.raises(ProtocolError):
        decode_packet(packet + b"\x00")
    with pytest.raises(ProtocolError):
        decode_packet(packet[:10])


def test_parser_one_byte_at_a_time():
    units = make_units(40)
    stream = b"".join(encode_packet(u) for u in units)

    parser = PacketParser()
    received = []
    for i in range(len(stream)):
        received.extend(parser.feed(stream[i:i + 1]))

    assert received == units
    assert parser.buffered == 0


@pytest.mark.parametrize("seed", [1, 2, 3])
def test_parser_random_chunks(seed):
    units = make_units(60, seed=seed)
    stream = b"".join(encode_packet(u) for u in units)

    rng = random.Random(seed)
    parser = PacketParser()
    received = []
    pos = 0
    while pos < len(stream):
        size = rng.randrange(1, 200)
        received.extend(parser.feed(stream[pos:pos + size]))
        pos += size

    assert received == units


def test_parser_never_returns_partial_units():
    packet = encode_packet(CompressedUnit(StreamKind.RGB, 2.0, 3, False, b"0123456789"))
    parser = PacketParser()

    assert parser.feed(packet[:HEADER_SIZE]) == []
    assert parser.next_unit() is None
    assert parser.feed(packet[HEADER_SIZE:-1]) == []
    assert parser.buffered == len(packet) - 1

    (unit,) = parser.feed(packet[-1:])
    assert unit.payload == b"0123456789"


def test_parser_rejects_oversized_payload_from_header_alone():
    header = struct.pack(HEADER_FORMAT, 1, 0.0, 0, MAX_PAYLOAD_SIZE + 1, 1)
    parser = PacketParser()
    with pytest.raises(ProtocolError):
        parser.feed(header)


def test_parser_returns_units_ahead_of_a_bad_header():
    good = CompressedUnit(StreamKind.DEPTH, 0.5, 7, True, b"intact")
    oversized = struct.pack(HEADER_FORMAT, 1, 0.0, 0, MAX_PAYLOAD_SIZE + 1, 1)
    parser = PacketParser()

    assert parser.feed(encode_packet(good) + oversized) == [good]
    assert isinstance(parser.error, ProtocolError)
    # The parser stays poisoned
    with pytest.raises(ProtocolError):
        parser.feed(encode_packet(good))
    with pytest.raises(ProtocolError):
        parser.next_unit()


def test_depth_then_rgb_in_one_chunk_keeps_order():
    depth = CompressedUnit(StreamKind.DEPTH, 0.1, 0, True, b"d")
    rgb = CompressedUnit(StreamKind.RGB, 0.1, 0, True, b"r")
    parser = PacketParser()
    assert parser.feed(encode_packet(depth) + encode_packet(rgb)) == [depth, rgb]


def test_read_packet_from_file_like():
    units = make_units(10)
    source = io.BytesIO(b"".join(encode_packet(u) for u in units))

    received = []
    while True:
        unit = read_packet(source)
        if unit is None:
            break
        received.append(unit)
    assert received == units


def test_read_packet_truncated_stream():
    packet = encode_packet(CompressedUnit(StreamKind.RGB, 0.0, 0, True, b"abcdef"))
    with pytest.raises(ProtocolError):
        read_packet(io.BytesIO(packet[:-2]))
    with pytest.raises(ProtocolError):
        read_packet(io.BytesIO(packet[:5]))


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
