"""Transport sender — one ordered, atomic packet stream over one TCP connection.

The capture device is the client. The socket is a ``zmq.STREAM`` socket,
i.e. plain TCP on the wire: the peer sees nothing but packet bytes.
Reconnection is disabled; a lost connection surfaces as ConnectionError and
the decision to reconnect belongs to the caller.
"""

import errno
import threading
import time
from typing import Any, Dict, Optional

import zmq

from .errors import ConfigurationError
from .protocol import DEFAULT_ENDPOINT, STREAM_NAMES, CompressedUnit, encode_packet


class TransportSender:
    """Serializes packets from concurrent producers onto one connection.

    Parameters
    ----------
    endpoint : str
        ``tcp://host:port`` of the listening consumer.
    connect_timeout : float
        Seconds to wait for the TCP connection to be established.
    send_timeout : float
        Seconds a single packet may wait for socket buffer space.
    """

    def __init__(self, endpoint: str = DEFAULT_ENDPOINT,
                 connect_timeout: float = 5.0, send_timeout: float = 2.0,
                 linger: float = 1.0):
        self._endpoint = endpoint
        self._connect_timeout = connect_timeout
        self._send_timeout = send_timeout
        self._linger = linger

        self._lock = threading.Lock()
        self._ctx: Optional[zmq.Context] = None
        self._socket: Optional[zmq.Socket] = None
        self._peer: Optional[bytes] = None

        self._packets: Dict[str, int] = {name: 0 for name in STREAM_NAMES.values()}
        self._bytes: Dict[str, int] = {name: 0 for name in STREAM_NAMES.values()}
        self._first_packet = True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def connect(self):
        """Open the TCP connection.

        Raises
        ------
        ConnectionError
            If the consumer cannot be reached within ``connect_timeout``.
        """
        if self._ctx is not None:
            raise ConfigurationError("Sender already connected")

        ctx = zmq.Context()
        socket = ctx.socket(zmq.STREAM)
        socket.setsockopt(zmq.RECONNECT_IVL, -1)
        socket.setsockopt(zmq.SNDTIMEO, int(self._send_timeout * 1000))
        socket.setsockopt(zmq.LINGER, int(self._linger * 1000))
        socket.connect(self._endpoint)

        # STREAM sockets announce a new connection with an empty message
        peer = None
        deadline = time.monotonic() + self._connect_timeout
        while time.monotonic() < deadline:
            if socket.poll(timeout=50):
                routing_id, data = socket.recv_multipart()
                if not data:
                    peer = routing_id
                    break
        if peer is None:
            socket.close(linger=0)
            ctx.term()
            raise ConnectionError(f"Could not connect to {self._endpoint}")

        self._ctx, self._socket, self._peer = ctx, socket, peer
        print(f"[sender] Connected to {self._endpoint}")

    def send_unit(self, unit: CompressedUnit):
        """Packetize *unit* and write it in full, or fail with ConnectionError."""
        with self._lock:
            packet = encode_packet(unit)
            self._write(packet)
            name = STREAM_NAMES[unit.kind]
            self._packets[name] += 1
            self._bytes[name] += len(packet)
            if self._first_packet:
                self._first_packet = False
                print(f"[sender] First packet! stream={name} "
                      f"size={len(packet)} bytes")

    def send_packet(self, packet: bytes):
        """Write pre-encoded packet bytes under the same writer lock."""
        with self._lock:
            self._write(packet)

    def close(self):
        with self._lock:
            self._close()

    @property
    def is_connected(self) -> bool:
        return self._socket is not None

    @property
    def stats(self) -> Dict[str, Any]:
        with self._lock:
            return {"packets": dict(self._packets), "bytes": dict(self._bytes),
                    "endpoint": self._endpoint}

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self):
        if self._ctx is None:
            self.connect()
        return self

    def __exit__(self, *exc):
        self.close()

    # ------------------------------------------------------------------
    # Internals (caller holds self._lock)
    # ------------------------------------------------------------------

    def _write(self, packet: bytes):
        if self._socket is None:
            raise ConnectionError("Sender is not connected")

        self._check_peer()
        try:
            self._socket.send_multipart([self._peer, packet])
        except zmq.Again:
            self._close()
            raise ConnectionError(
                f"Send timed out after {self._send_timeout}s") from None
        except zmq.ZMQError as e:
            self._close()
            if e.errno == errno.EHOSTUNREACH:
                raise ConnectionError("Connection to consumer lost") from e
            raise ConnectionError(f"Send failed: {e}") from e

    def _check_peer(self):
        """Fail fast if the consumer has already hung up."""
        while self._socket.poll(timeout=0):
            routing_id, data = self._socket.recv_multipart()
            if routing_id == self._peer and not data:
                self._close()
                raise ConnectionError("Connection closed by consumer")

    def _close(self):
        if self._socket is not None:
            self._socket.close()
            self._socket = None
        if self._ctx is not None:
            self._ctx.term()
            self._ctx = None
        self._peer = None
