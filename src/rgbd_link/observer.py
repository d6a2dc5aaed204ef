"""Consumer side — listens for capture devices and decodes both streams.

Binds a ``zmq.STREAM`` socket (plain TCP), runs one sequential receive loop,
keeps one :class:`Demultiplexer` per connected device and stores the latest
decoded colour and depth frame.

Usage:
    rgbd-consume
    rgbd-consume --bind tcp://0.0.0.0:5600 --codec h264
"""

import argparse
import signal
import sys
import threading
import time
import traceback
from typing import Any, Callable, Dict, Optional

import numpy as np
import zmq

from .codecs import CODEC_NAMES, create_decoder
from .demux import Demultiplexer, FrameCallback
from .depth_codec import DEFAULT_DEPTH_RANGE, DepthRange
from .errors import ProtocolError
from .protocol import DEFAULT_BIND_ENDPOINT, STREAM_NAMES, CompressedUnit, StreamKind


class Frame:
    """A decoded frame from one of the two streams."""

    __slots__ = ("image", "timestamp", "frame_number", "stream", "shape")

    def __init__(self, image: np.ndarray, timestamp: float, frame_number: int,
                 stream: str):
        self.image = image
        self.timestamp = timestamp
        self.frame_number = frame_number
        self.stream = stream
        self.shape = image.shape


class RGBDObserver:
    """Receives colour + depth over TCP and makes them available as numpy arrays.

    Colour frames are BGR ``uint8``; depth frames are ``float32`` metres with
    ``NaN`` for "no measurement".

    Usage::

        observer = RGBDObserver("tcp://0.0.0.0:5600")
        depth = observer.get_frame("depth")  # float32 or None
        observer.stop()
    """

    def __init__(self, bind_endpoint: str = DEFAULT_BIND_ENDPOINT,
                 codec: str = "jpeg",
                 depth_range: DepthRange = DEFAULT_DEPTH_RANGE,
                 on_rgb: Optional[FrameCallback] = None,
                 on_depth: Optional[FrameCallback] = None,
                 decoder_factory: Optional[Callable] = None,
                 stats_interval: int = 300):
        self._decoder_factory = decoder_factory or (lambda: create_decoder(codec))
        self._depth_range = depth_range
        self._user_callbacks = {StreamKind.RGB: on_rgb, StreamKind.DEPTH: on_depth}
        self._stats_interval = stats_interval

        self._lock = threading.Lock()
        self._stop_event = threading.Event()

        self._frames: Dict[str, Optional[Frame]] = {
            name: None for name in STREAM_NAMES.values()}
        self._frame_counts: Dict[str, int] = {k: 0 for k in self._frames}
        self._connections: Dict[bytes, Demultiplexer] = {}
        self._hung_up = set()
        self._closed_stats = []
        self._protocol_errors = 0
        self._start_time = time.monotonic()
        self.error: Optional[BaseException] = None

        # Bound here so a wildcard port is known before the loop starts;
        # the socket is only used by the receive thread from then on.
        self._ctx = zmq.Context()
        self._socket = self._ctx.socket(zmq.STREAM)
        self._socket.bind(bind_endpoint)
        self._endpoint = self._socket.getsockopt_string(zmq.LAST_ENDPOINT)

        self._thread = threading.Thread(target=self._receive_loop,
                                        name="rgbd-observer", daemon=True)
        self._thread.start()
        print(f"[observer] Listening on {self._endpoint}")

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def endpoint(self) -> str:
        """Actual bound endpoint (resolves wildcard ports)."""
        return self._endpoint

    def get_frame(self, stream: str = "rgb") -> Optional[np.ndarray]:
        """Most recent image for *stream* (``"rgb"`` or ``"depth"``), or ``None``."""
        with self._lock:
            frame = self._frames.get(stream)
            return frame.image.copy() if frame is not None else None

    def get_latest(self, stream: str = "rgb") -> Optional[Frame]:
        """Most recent :class:`Frame` for *stream*, or ``None``."""
        with self._lock:
            frame = self._frames.get(stream)
            if frame is None:
                return None
            return Frame(frame.image.copy(), frame.timestamp, frame.frame_number,
                         frame.stream)

    def get_stats(self) -> Dict[str, Any]:
        elapsed = time.monotonic() - self._start_time
        with self._lock:
            connections = {rid.hex(): demux.get_stats()
                           for rid, demux in self._connections.items()}
            return {
                "source": "rgbd-link",
                "frames": dict(self._frame_counts),
                "fps": {k: v / elapsed for k, v in self._frame_counts.items() if v > 0},
                "connections": connections,
                "closed_connections": list(self._closed_stats),
                "protocol_errors": self._protocol_errors,
                "uptime": elapsed,
                "endpoint": self._endpoint,
            }

    @property
    def connections(self) -> int:
        with self._lock:
            return len(self._connections)

    def stop(self):
        """Stop the background receive thread."""
        self._stop_event.set()
        self._thread.join(timeout=2)

    @property
    def is_running(self) -> bool:
        return self._thread.is_alive()

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.stop()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _store(self, kind: StreamKind):
        name = STREAM_NAMES[kind]
        user_callback = self._user_callbacks[kind]

        def callback(unit: CompressedUnit, image: np.ndarray):
            with self._lock:
                self._frames[name] = Frame(image, unit.timestamp, unit.frame_number, name)
                self._frame_counts[name] += 1
                total = sum(self._frame_counts.values())
            if user_callback is not None:
                user_callback(unit, image)
            if self._stats_interval and total % self._stats_interval == 0:
                self._print_fps(total)

        return callback

    def _print_fps(self, total):
        elapsed = time.monotonic() - self._start_time
        with self._lock:
            fps = {k: v / elapsed for k, v in self._frame_counts.items() if v > 0}
        fps_str = " ".join(f"{k}={v:.1f}" for k, v in fps.items())
        print(f"[observer] {fps_str} fps (total={total})")

    def _open(self, routing_id: bytes):
        demux = Demultiplexer(
            on_rgb=self._store(StreamKind.RGB),
            on_depth=self._store(StreamKind.DEPTH),
            decoder_factory=self._decoder_factory,
            depth_range=self._depth_range,
        )
        with self._lock:
            self._connections[routing_id] = demux
        print(f"[observer] Device connected ({routing_id.hex()})")

    def _close(self, routing_id: bytes, hang_up: bool = False):
        with self._lock:
            demux = self._connections.pop(routing_id, None)
        if demux is None:
            return
        if hang_up:
            # Empty message tells a STREAM socket to drop that connection
            self._socket.send_multipart([routing_id, b""])
            self._hung_up.add(routing_id)
        demux.close()
        with self._lock:
            self._closed_stats.append(demux.get_stats())
        print(f"[observer] Device disconnected ({routing_id.hex()}) "
              f"stats={demux.get_stats()}")

    def _handle(self, routing_id: bytes, data: bytes):
        demux = self._connections.get(routing_id)
        if demux is None:
            return
        try:
            demux.feed(data)
        except ProtocolError as e:
            # The byte stream cannot be resynchronised; drop the connection
            with self._lock:
                self._protocol_errors += 1
            print(f"[observer] Protocol error from {routing_id.hex()}: {e}",
                  file=sys.stderr)
            self._close(routing_id, hang_up=True)
            return
        if demux.failed:
            print(f"[observer] Decode stage for {routing_id.hex()} failed "
                  f"({demux.error!r}), closing connection", file=sys.stderr)
            self._close(routing_id, hang_up=True)

    def _receive_loop(self):
        poller = zmq.Poller()
        poller.register(self._socket, zmq.POLLIN)

        try:
            while not self._stop_event.is_set():
                events = dict(poller.poll(timeout=100))
                if self._socket not in events:
                    continue

                routing_id, data = self._socket.recv_multipart()
                if data:
                    self._handle(routing_id, data)
                elif routing_id in self._connections:
                    self._close(routing_id)
                elif routing_id in self._hung_up:
                    self._hung_up.discard(routing_id)
                else:
                    self._open(routing_id)
        except Exception as e:
            self.error = e
            print(f"[observer] ERROR in receive thread: {e}", file=sys.stderr, flush=True)
            traceback.print_exc()
        finally:
            for routing_id in list(self._connections):
                self._close(routing_id)
            self._socket.close(linger=0)
            self._ctx.term()


def run(bind_endpoint, codec, depth_range, stats_every=5.0):
    """Consume until SIGINT/SIGTERM, printing stats every *stats_every* seconds."""
    observer = RGBDObserver(bind_endpoint, codec=codec, depth_range=depth_range)

    shutdown = False

    def handle_signal(sig, frame):
        nonlocal shutdown
        shutdown = True

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    print("[observer] Waiting for frames...")
    last_report = time.monotonic()
    while not shutdown and observer.is_running:
        time.sleep(0.1)
        if time.monotonic() - last_report >= stats_every:
            last_report = time.monotonic()
            for rid, streams in observer.get_stats()["connections"].items():
                parts = " ".join(
                    f"{name}: fps={s['fps']:.1f} frames={s['frames']} "
                    f"dropped={s['dropped_frames']} backlog={s['backlog_drops']} "
                    f"errors={s['decode_errors']}"
                    for name, s in streams.items())
                print(f"[observer] {rid} {parts}")

    stats = observer.get_stats()
    observer.stop()

    print("\n[observer] Summary:")
    print(f"  Frames: {stats['frames']}")
    print(f"  Duration: {stats['uptime']:.1f}s")
    print(f"  Protocol errors: {stats['protocol_errors']}")
    for closed in stats["closed_connections"]:
        print(f"  Connection: {closed}")


def main():
    parser = argparse.ArgumentParser(description="rgbd-link consumer (listening server)")
    parser.add_argument("--bind", default=DEFAULT_BIND_ENDPOINT)
    parser.add_argument("--codec", choices=CODEC_NAMES, default="jpeg")
    parser.add_argument("--min-depth", type=float, default=DEFAULT_DEPTH_RANGE.min_depth)
    parser.add_argument("--max-depth", type=float, default=DEFAULT_DEPTH_RANGE.max_depth)
    args = parser.parse_args()

    run(args.bind, args.codec, DepthRange(args.min_depth, args.max_depth))


if __name__ == "__main__":
    main()
