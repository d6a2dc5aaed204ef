"""Device side — capture colour + depth, compress each, stream both over one TCP link.

Example::

    from rgbd_link import CaptureStreamer, SyntheticSensorSession

    with CaptureStreamer(SyntheticSensorSession(), "tcp://192.168.1.20:5600") as s:
        while s.is_running:
            time.sleep(1)
            print(s.get_stats())

Usage:
    rgbd-stream --endpoint tcp://192.168.1.20:5600
    rgbd-stream --codec h264 --fps 30 --duration 60
"""

import argparse
import signal
import sys
import threading
import time
import traceback
from typing import Any, Dict, List, Optional

import numpy as np

from .codecs import CODEC_NAMES, EncodedUnit, Encoder, create_encoder
from .depth_codec import DEFAULT_DEPTH_RANGE, DepthRange, encode_depth
from .errors import CodecError, ConfigurationError
from .protocol import DEFAULT_ENDPOINT, STREAM_NAMES, CompressedUnit, StreamKind
from .sender import TransportSender
from .sensors import SensorSession, SyntheticSensorSession
from .session import FrameSlot, SessionEpoch


class CaptureStreamer:
    """Streams a :class:`SensorSession` to a remote consumer.

    Capture callbacks never block: each stream hands frames to a single-slot
    queue and a frame is dropped if the previous one of that stream is still
    being encoded. Those drops show up as gaps in the frame numbers on the
    receiving side; every unit the encoder emits gets a number of its own.

    Parameters
    ----------
    session : SensorSession
        Frame source.
    endpoint : str
        Consumer endpoint, ``tcp://host:port``.
    codec : str
        Colour codec, ``"jpeg"`` or ``"h264"``.
    depth_range : DepthRange
        Calibration range of the 16-bit depth transport encoding.
    recorder : DualOutputSynchronizer or None
        Optional local recording tap; receives every captured frame.
    """

    def __init__(self, session: SensorSession, endpoint: str = DEFAULT_ENDPOINT,
                 codec: str = "jpeg", depth_range: DepthRange = DEFAULT_DEPTH_RANGE,
                 jpeg_quality: int = 80, bit_rate: int = 2_000_000,
                 sender: Optional[TransportSender] = None,
                 encoder: Optional[Encoder] = None, recorder=None):
        self._session = session
        self._endpoint = endpoint
        self._codec = codec
        self._depth_range = depth_range
        self._jpeg_quality = jpeg_quality
        self._bit_rate = bit_rate
        self._sender = sender
        self._encoder = encoder
        self._recorder = recorder

        self._epoch = SessionEpoch()
        self._slots = {kind: FrameSlot() for kind in StreamKind}
        self._frame_numbers = {kind: 0 for kind in StreamKind}
        # Wire numbering, owned by each stream's encode worker
        self._last_capture = {kind: -1 for kind in StreamKind}
        self._next_wire = {kind: 0 for kind in StreamKind}
        self._last_relative = {kind: 0.0 for kind in StreamKind}
        self._sent = {kind: 0 for kind in StreamKind}
        self._codec_errors = {kind: 0 for kind in StreamKind}
        self._counter_lock = threading.Lock()

        self._stop_event = threading.Event()
        self._workers = []
        self._start_time = None
        self.error: Optional[BaseException] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self):
        """Connect to the consumer and start capturing.

        Raises
        ------
        ConfigurationError
            If already started or the sensor is not available.
        ConnectionError
            If the consumer cannot be reached.
        """
        if self._workers:
            raise ConfigurationError("Streamer already started")
        if not self._session.is_available():
            raise ConfigurationError("Sensor session is not available on this device")

        if self._encoder is None:
            width, height = self._session.color_size
            self._encoder = create_encoder(self._codec, width, height,
                                           fps=self._session.fps,
                                           quality=self._jpeg_quality,
                                           bit_rate=self._bit_rate)
        if self._sender is None:
            self._sender = TransportSender(self._endpoint)
        if not self._sender.is_connected:
            self._sender.connect()

        self._stop_event.clear()
        self._start_time = time.monotonic()
        self._workers = [
            threading.Thread(target=self._encode_loop, args=(kind,),
                             name=f"encode-{STREAM_NAMES[kind]}", daemon=True)
            for kind in StreamKind
        ]
        for worker in self._workers:
            worker.start()

        self._session.start(self.on_color, self.on_depth)
        print(f"[streamer] Streaming to {self._endpoint} (codec={self._codec})")

    def stop(self):
        """Stop capture, drain the encoders and close the connection."""
        self._session.stop()
        self._stop_event.set()
        for slot in self._slots.values():
            slot.close()
        for worker in self._workers:
            worker.join(timeout=5)
        self._workers = []
        if self._encoder is not None:
            self._flush_encoder()
            self._encoder.close()
        if self._sender is not None:
            self._sender.close()

    def on_color(self, frame: np.ndarray, timestamp: float):
        self._capture(StreamKind.RGB, frame, timestamp)

    def on_depth(self, frame: np.ndarray, timestamp: float):
        self._capture(StreamKind.DEPTH, frame, timestamp)

    def get_stats(self) -> Dict[str, Any]:
        elapsed = time.monotonic() - self._start_time if self._start_time else 0.0
        with self._counter_lock:
            stats = {
                "captured": {STREAM_NAMES[k]: v for k, v in self._frame_numbers.items()},
                "sent": {STREAM_NAMES[k]: v for k, v in self._sent.items()},
                "dropped": {STREAM_NAMES[k]: s.dropped for k, s in self._slots.items()},
                "codec_errors": {STREAM_NAMES[k]: v for k, v in self._codec_errors.items()},
                "fps": {STREAM_NAMES[k]: v / elapsed
                        for k, v in self._sent.items() if v > 0 and elapsed > 0},
            }
        stats["uptime"] = elapsed
        stats["endpoint"] = self._endpoint
        stats["error"] = repr(self.error) if self.error else None
        return stats

    @property
    def is_running(self) -> bool:
        return bool(self._workers) and not self._stop_event.is_set() and self.error is None

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self):
        self.start()
        return self

    def __exit__(self, *exc):
        self.stop()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _capture(self, kind: StreamKind, frame: np.ndarray, timestamp: float):
        """Runs on the sensor's producer thread; must return immediately."""
        if self._recorder is not None:
            self._recorder.write_frame(kind, frame, timestamp)
        if self._stop_event.is_set():
            return
        relative = self._epoch.relative(kind, timestamp)
        if relative is None:
            return
        with self._counter_lock:
            frame_number = self._frame_numbers[kind]
            self._frame_numbers[kind] += 1
        self._slots[kind].offer(frame, relative, frame_number)

    def _encode(self, kind, frame) -> List[EncodedUnit]:
        if kind == StreamKind.DEPTH:
            return [EncodedUnit(encode_depth(frame, self._depth_range), True)]
        return self._encoder.encode(frame)

    def _number_units(self, kind, encoded, relative, capture_number):
        """Give every emitted unit its own consecutive frame number.

        Frames dropped at capture (or lost to a codec error) advance the
        numbering by the same amount, so the receiver sees them as a gap. A
        frame the encoder is still buffering uses no number.
        """
        skipped = capture_number - self._last_capture[kind] - 1
        self._last_capture[kind] = capture_number
        self._last_relative[kind] = relative
        number = self._next_wire[kind] + skipped
        units = []
        for u in encoded:
            units.append(CompressedUnit(kind, relative, number, u.is_keyframe, u.payload))
            number += 1
        self._next_wire[kind] = number
        return units

    def _send(self, kind, units):
        for unit in units:
            self._sender.send_unit(unit)
            with self._counter_lock:
                self._sent[kind] += 1

    def _flush_encoder(self):
        """Send whatever the colour encoder still buffers, before hanging up."""
        if self.error is not None or self._sender is None or not self._sender.is_connected:
            return
        kind = StreamKind.RGB
        try:
            units = []
            for u in self._encoder.flush():
                units.append(CompressedUnit(kind, self._last_relative[kind],
                                            self._next_wire[kind], u.is_keyframe, u.payload))
                self._next_wire[kind] += 1
            self._send(kind, units)
        except (CodecError, ConnectionError) as e:
            print(f"[streamer] Could not flush colour encoder: {e}", file=sys.stderr)

    def _encode_loop(self, kind: StreamKind):
        slot = self._slots[kind]
        name = STREAM_NAMES[kind]
        try:
            while True:
                item = slot.take(timeout=0.1)
                if item is None:
                    if slot.closed:
                        return
                    continue
                frame, relative, capture_number = item
                try:
                    encoded = self._encode(kind, frame)
                    self._send(kind, self._number_units(kind, encoded, relative,
                                                        capture_number))
                except CodecError as e:
                    with self._counter_lock:
                        self._codec_errors[kind] += 1
                    print(f"[streamer] Dropped {name} frame: {e}", file=sys.stderr)
                finally:
                    slot.task_done()
        except ConnectionError as e:
            # No retry here; the owner decides whether to reconnect
            self.error = e
            self._stop_event.set()
            print(f"[streamer] Connection lost: {e}", file=sys.stderr, flush=True)
        except Exception as e:
            self.error = e
            self._stop_event.set()
            print(f"[streamer] ERROR in {name} encode thread: {e}", file=sys.stderr, flush=True)
            traceback.print_exc()


def run(endpoint, codec, fps, color_size, depth_size, depth_range, duration=None):
    session = SyntheticSensorSession(color_size, depth_size, fps)
    streamer = CaptureStreamer(session, endpoint, codec=codec, depth_range=depth_range)

    shutdown = False

    def handle_signal(sig, frame):
        nonlocal shutdown
        shutdown = True

    signal.signal(signal.SIGINT, handle_signal)
    signal.signal(signal.SIGTERM, handle_signal)

    streamer.start()
    print("[streamer] Streaming active. Press Ctrl+C to stop.")

    deadline = time.monotonic() + duration if duration else None
    last_report = time.monotonic()
    while not shutdown and streamer.is_running:
        time.sleep(0.1)
        if deadline and time.monotonic() >= deadline:
            break
        if time.monotonic() - last_report >= 5.0:
            last_report = time.monotonic()
            stats = streamer.get_stats()
            fps_str = " ".join(f"{k}={v:.1f}" for k, v in stats["fps"].items())
            print(f"[streamer] {fps_str} fps sent={stats['sent']} dropped={stats['dropped']}")

    print("[streamer] Shutting down...")
    stats = streamer.get_stats()
    streamer.stop()
    print(f"[streamer] Done. Sent {stats['sent']}, dropped {stats['dropped']}.")
    if streamer.error is not None:
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(description="Stream colour + depth to a remote consumer")
    parser.add_argument("--endpoint", default=DEFAULT_ENDPOINT)
    parser.add_argument("--codec", choices=CODEC_NAMES, default="jpeg")
    parser.add_argument("--fps", type=int, default=30)
    parser.add_argument("--width", type=int, default=640)
    parser.add_argument("--height", type=int, default=480)
    parser.add_argument("--depth-width", type=int, default=256)
    parser.add_argument("--depth-height", type=int, default=192)
    parser.add_argument("--min-depth", type=float, default=DEFAULT_DEPTH_RANGE.min_depth)
    parser.add_argument("--max-depth", type=float, default=DEFAULT_DEPTH_RANGE.max_depth)
    parser.add_argument("--duration", type=float, default=None,
                        help="Stop after this many seconds (default: until Ctrl+C)")
    args = parser.parse_args()

    try:
        run(args.endpoint, args.codec, args.fps, (args.width, args.height),
            (args.depth_width, args.depth_height),
            DepthRange(args.min_depth, args.max_depth), args.duration)
    except (ConnectionError, ConfigurationError) as e:
        print(f"[streamer] {e}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
