"""Wire protocol for the rgbd-link TCP stream.

One connection carries two independently clocked streams (colour and depth),
multiplexed by arrival order. Every packet is one fully encoded frame:

    Header: type(1) + timestamp(8, f64) + frame_number(4) + payload_size(4) + keyframe(1)
    Total header: 18 bytes, little-endian, no padding, followed by the payload
    Types: 1=rgb, 2=depth

There is no magic, version, checksum or handshake.
"""

import enum
import struct
from dataclasses import dataclass
from typing import List, Optional

from .errors import ProtocolError

HEADER_FORMAT = "<BdIIB"
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 18 bytes

MAX_PAYLOAD_SIZE = 16 * 1024 * 1024
MAX_FRAME_NUMBER = 0xFFFFFFFF

DEFAULT_PORT = 5600
DEFAULT_ENDPOINT = f"tcp://127.0.0.1:{DEFAULT_PORT}"
DEFAULT_BIND_ENDPOINT = f"tcp://0.0.0.0:{DEFAULT_PORT}"


class StreamKind(enum.IntEnum):
    RGB = 1
    DEPTH = 2


STREAM_NAMES = {StreamKind.RGB: "rgb", StreamKind.DEPTH: "depth"}


@dataclass(frozen=True)
class CompressedUnit:
    """One compressed frame of either stream, as carried by one packet."""

    kind: StreamKind
    timestamp: float
    frame_number: int
    is_keyframe: bool
    payload: bytes

    @property
    def name(self) -> str:
        return STREAM_NAMES[self.kind]


def _parse_kind(value: int) -> StreamKind:
    try:
        return StreamKind(value)
    except ValueError:
        raise ProtocolError(f"Unknown stream type: {value}") from None


def encode_packet(unit: CompressedUnit) -> bytes:
    """Serialize *unit* into header + payload bytes."""
    kind = _parse_kind(int(unit.kind))
    size = len(unit.payload)
    if size > MAX_PAYLOAD_SIZE:
        raise ProtocolError(
            f"Payload too large: {size} bytes (max {MAX_PAYLOAD_SIZE})")
    if not 0 <= unit.frame_number <= MAX_FRAME_NUMBER:
        raise ProtocolError(f"Frame number out of range: {unit.frame_number}")

    header = struct.pack(HEADER_FORMAT, kind, float(unit.timestamp),
                         unit.frame_number, size, 1 if unit.is_keyframe else 0)
    return header + bytes(unit.payload)


def _unpack_header(header: bytes):
    type_id, timestamp, frame_number, size, keyframe = struct.unpack(
        HEADER_FORMAT, header)
    kind = _parse_kind(type_id)
    if size > MAX_PAYLOAD_SIZE:
        raise ProtocolError(
            f"Payload size {size} exceeds maximum {MAX_PAYLOAD_SIZE}")
    return kind, timestamp, frame_number, size, bool(keyframe)


def decode_packet(data: bytes) -> CompressedUnit:
    """Parse exactly one complete packet held in *data*.

    Raises ProtocolError on a short, long or malformed buffer.
    """
    if len(data) < HEADER_SIZE:
        raise ProtocolError(f"Packet too short: {len(data)} bytes")

    kind, timestamp, frame_number, size, keyframe = _unpack_header(
        bytes(data[:HEADER_SIZE]))

    expected_size = HEADER_SIZE + size
    if len(data) != expected_size:
        raise ProtocolError(
            f"Size mismatch: got {len(data)}, expected {expected_size}")

    return CompressedUnit(kind, timestamp, frame_number, keyframe,
                          bytes(data[HEADER_SIZE:]))


class PacketParser:
    """Incremental parser for a byte stream of packets.

    Bytes may arrive in chunks of any size. A unit is only produced once its
    header and full payload have been received; until then :meth:`next_unit`
    returns ``None``.

    A malformed header poisons the parser: units completed before it are
    still returned, and every later call raises the same :class:`ProtocolError`.
    """

    def __init__(self):
        self._buffer = bytearray()
        self._header = None
        self.error: Optional[ProtocolError] = None

    @property
    def buffered(self) -> int:
        """Bytes received but not yet consumed by a complete packet."""
        pending = len(self._buffer)
        if self._header is not None:
            pending += HEADER_SIZE
        return pending

    def feed(self, chunk: bytes) -> List[CompressedUnit]:
        """Append *chunk* and return every unit completed so far, in order.

        If the stream turns malformed after some units, those units are
        returned and the error is raised on the next call.
        """
        if self.error is not None:
            raise self.error
        self._buffer += chunk
        units = []
        while True:
            try:
                unit = self.next_unit()
            except ProtocolError:
                if units:
                    return units
                raise
            if unit is None:
                return units
            units.append(unit)

    def next_unit(self) -> Optional[CompressedUnit]:
        if self.error is not None:
            raise self.error
        if self._header is None:
            if len(self._buffer) < HEADER_SIZE:
                return None
            # Oversized payload_size raises here, before any payload is buffered
            try:
                self._header = _unpack_header(bytes(self._buffer[:HEADER_SIZE]))
            except ProtocolError as e:
                self.error = e
                raise
            del self._buffer[:HEADER_SIZE]

        kind, timestamp, frame_number, size, keyframe = self._header
        if len(self._buffer) < size:
            return None

        payload = bytes(self._buffer[:size])
        del self._buffer[:size]
        self._header = None
        return CompressedUnit(kind, timestamp, frame_number, keyframe, payload)


def _read_exactly(source, n: int) -> bytes:
    chunks = []
    remaining = n
    while remaining > 0:
        chunk = source.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def read_packet(source) -> Optional[CompressedUnit]:
    """Blocking read of one packet from a file-like *source*.

    Returns ``None`` on a clean end of stream at a packet boundary.
    """
    header = _read_exactly(source, HEADER_SIZE)
    if not header:
        return None
    if len(header) < HEADER_SIZE:
        raise ProtocolError(
            f"Stream ended inside a header ({len(header)} of {HEADER_SIZE} bytes)")

    kind, timestamp, frame_number, size, keyframe = _unpack_header(header)
    payload = _read_exactly(source, size)
    if len(payload) < size:
        raise ProtocolError(
            f"Stream ended inside a payload ({len(payload)} of {size} bytes)")
    return CompressedUnit(kind, timestamp, frame_number, keyframe, payload)
