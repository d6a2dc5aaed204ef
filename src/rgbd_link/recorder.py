"""Local recording — two time-aligned video files from the colour and depth streams.

The depth file holds the 8-bit inverted grayscale visualization, not the
16-bit transport encoding. Both files share one epoch: the timestamp of the
first frame of the designated epoch stream (colour by default).

Usage:
    rgbd-record --duration 10
    rgbd-record --output-dir recordings --codec mpeg4 --container mp4
"""

import argparse
import concurrent.futures
import enum
import sys
import threading
import time
import traceback
from dataclasses import dataclass, field
from fractions import Fraction
from pathlib import Path
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from .depth_codec import DEFAULT_DEPTH_RANGE, DepthRange, DepthVisualizer
from .errors import ConfigurationError, RecordingError
from .protocol import STREAM_NAMES, StreamKind
from .session import FrameSlot, SessionEpoch

# Presentation timestamps are kept in milliseconds
TIME_BASE = Fraction(1, 1000)


class MediaWriter:
    """Accepts raw frames with epoch-relative timestamps; finalizes asynchronously."""

    path: Path

    def append(self, frame: np.ndarray, pts: float) -> bool:
        """Queue *frame* at *pts* seconds. ``False`` if it was dropped."""
        raise NotImplementedError

    def finalize(self) -> concurrent.futures.Future:
        """Signal end of stream. The future resolves to the finished file's path."""
        raise NotImplementedError

    @property
    def frame_count(self) -> int:
        raise NotImplementedError


class AvMediaWriter(MediaWriter):
    """PyAV container writer fed through a single-slot queue.

    Encoding and muxing run on a worker thread. A frame offered while the
    previous one is still being encoded is dropped, never waited for.
    """

    def __init__(self, path, width: int, height: int, fps: int = 30,
                 codec: str = "h264", bit_rate: int = 2_000_000,
                 pixel_format: str = "bgr24"):
        import av

        self._av = av
        self.path = Path(path)
        self._pixel_format = pixel_format
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._container = av.open(str(self.path), "w")
            stream = self._container.add_stream(codec, rate=fps)
            stream.width, stream.height = width, height
            stream.pix_fmt = "yuv420p"
            stream.time_base = TIME_BASE
            stream.codec_context.time_base = TIME_BASE
            stream.codec_context.framerate = Fraction(fps)
            stream.codec_context.bit_rate = bit_rate
            self._stream = stream
        except Exception as e:
            raise RecordingError(f"Could not open {self.path.name}: {e}") from e

        self._slot = FrameSlot(copy=True)
        self._future: concurrent.futures.Future = concurrent.futures.Future()
        self._frame_count = 0
        self._last_pts = -1
        self._error: Optional[BaseException] = None

        self._thread = threading.Thread(target=self._run, name=f"writer-{self.path.name}",
                                        daemon=True)
        self._thread.start()

    @property
    def frame_count(self) -> int:
        return self._frame_count

    @property
    def dropped(self) -> int:
        return self._slot.dropped

    def append(self, frame, pts):
        if self._error is not None:
            return False
        return self._slot.offer(frame, pts)

    def finalize(self):
        self._slot.close()
        return self._future

    def _encode(self, frame, pts_seconds):
        pts = int(round(pts_seconds / TIME_BASE))
        if pts <= self._last_pts:
            return
        av_frame = self._av.VideoFrame.from_ndarray(frame, format=self._pixel_format)
        av_frame.pts = pts
        for packet in self._stream.encode(av_frame):
            self._container.mux(packet)
        self._last_pts = pts
        self._frame_count += 1

    def _run(self):
        while True:
            item = self._slot.take(timeout=0.1)
            if item is None:
                if not self._slot.closed:
                    continue
                item = self._slot.take(timeout=0)
                if item is None:
                    break
            try:
                if self._error is None:
                    self._encode(*item)
            except Exception as e:
                self._error = e
                print(f"[recorder] ERROR encoding {self.path.name}: {e}", file=sys.stderr)
                traceback.print_exc()
            finally:
                self._slot.task_done()

        try:
            for packet in self._stream.encode(None):
                self._container.mux(packet)
            self._container.close()
        except Exception as e:
            self._error = self._error or e

        if self._error is not None:
            self._future.set_exception(
                RecordingError(f"{self.path.name} failed: {self._error}"))
        else:
            self._future.set_result(self.path)


class RecordingState(enum.Enum):
    IDLE = "idle"
    ACTIVE = "active"
    STOPPING = "stopping"


@dataclass
class RecordingConfig:
    """Parameters of one recording. Sizes are ``(width, height)``."""

    output_dir: Path = Path(".")
    rgb_size: Tuple[int, int] = (1920, 1440)
    depth_size: Tuple[int, int] = (256, 192)
    fps: int = 30
    codec: str = "h264"
    rgb_bit_rate: int = 2_000_000
    depth_bit_rate: int = 1_000_000
    container: str = "mov"
    depth_range: DepthRange = DEFAULT_DEPTH_RANGE
    epoch_stream: Optional[StreamKind] = StreamKind.RGB
    finalize_timeout: float = 5.0
    file_stamp: Optional[str] = None

    def paths(self) -> Dict[StreamKind, Path]:
        stamp = self.file_stamp or time.strftime("%Y%m%d-%H%M%S")
        out = Path(self.output_dir)
        return {
            StreamKind.RGB: out / f"RGB_{stamp}.{self.container}",
            StreamKind.DEPTH: out / f"Depth_{stamp}.{self.container}",
        }


@dataclass
class RecordingResult:
    rgb_path: Optional[Path]
    depth_path: Optional[Path]
    frame_count: int
    errors: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


class DualOutputSynchronizer:
    """Writes colour and depth into two files aligned to one shared epoch.

    State machine: ``IDLE -> ACTIVE -> STOPPING -> IDLE``.

    Parameters
    ----------
    writer_factory : callable
        ``factory(path, width, height, fps=, codec=, bit_rate=, pixel_format=)``
        returning a :class:`MediaWriter`. Defaults to :class:`AvMediaWriter`.
    """

    def __init__(self, writer_factory: Optional[Callable[..., MediaWriter]] = None):
        self._writer_factory = writer_factory or AvMediaWriter
        self._lock = threading.Lock()
        self._state = RecordingState.IDLE
        self._config: Optional[RecordingConfig] = None
        self._writers: Dict[StreamKind, MediaWriter] = {}
        self._epoch = SessionEpoch(StreamKind.RGB)
        self._visualizer: Optional[DepthVisualizer] = None

        self.frame_count = 0
        self.depth_frame_count = 0
        self.dropped_frames = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> RecordingState:
        return self._state

    @property
    def epoch(self) -> Optional[float]:
        return self._epoch.epoch

    @property
    def is_recording(self) -> bool:
        return self._state is RecordingState.ACTIVE

    def start(self, config: RecordingConfig):
        """Open both outputs and become ACTIVE.

        Raises
        ------
        ConfigurationError
            If a recording is already active or stopping.
        RecordingError
            If either writer cannot be created.
        """
        with self._lock:
            if self._state is not RecordingState.IDLE:
                raise ConfigurationError(f"Cannot start while {self._state.value}")

            paths = config.paths()
            for path in paths.values():
                path.unlink(missing_ok=True)

            rgb_writer = self._open_writer(paths[StreamKind.RGB], config.rgb_size,
                                           config, config.rgb_bit_rate, "bgr24")
            try:
                depth_writer = self._open_writer(paths[StreamKind.DEPTH], config.depth_size,
                                                 config, config.depth_bit_rate, "gray")
            except RecordingError:
                rgb_writer.finalize()
                raise

            width, height = config.depth_size
            self._visualizer = DepthVisualizer((height, width), config.depth_range)
            self._writers = {StreamKind.RGB: rgb_writer, StreamKind.DEPTH: depth_writer}
            self._epoch = SessionEpoch(config.epoch_stream)
            self._config = config
            self.frame_count = 0
            self.depth_frame_count = 0
            self.dropped_frames = 0
            self._state = RecordingState.ACTIVE

        print("[recorder] Recording started")
        print(f"   RGB: {paths[StreamKind.RGB].name}")
        print(f"   Depth: {paths[StreamKind.DEPTH].name}")

    def write_frame(self, kind: StreamKind, frame: np.ndarray, timestamp: float) -> bool:
        """Hand one frame to its output. No-op (``False``) unless ACTIVE."""
        with self._lock:
            if self._state is not RecordingState.ACTIVE:
                return False
            pts = self._epoch.relative(kind, timestamp)
            if pts is None:
                self.dropped_frames += 1
                return False
            writer = self._writers[kind]

        if kind == StreamKind.DEPTH:
            frame = self._visualizer.convert(frame)

        accepted = writer.append(frame, pts)
        with self._lock:
            if not accepted:
                self.dropped_frames += 1
            elif kind == StreamKind.RGB:
                self.frame_count += 1
            else:
                self.depth_frame_count += 1
        return accepted

    def stop(self) -> RecordingResult:
        """Finalize both outputs, waiting at most ``finalize_timeout`` seconds.

        Raises
        ------
        ConfigurationError
            If no recording is active.
        RecordingError
            If either output failed or did not finalize in time. ``result``
            holds the output that did finish; it is left on disk.
        """
        with self._lock:
            if self._state is not RecordingState.ACTIVE:
                raise ConfigurationError("Not recording")
            self._state = RecordingState.STOPPING
            writers = dict(self._writers)
            config = self._config

        print(f"[recorder] Stopping recording... ({self.frame_count} frames)")

        futures = {kind: self._finalize(writer) for kind, writer in writers.items()}
        done, _ = concurrent.futures.wait(futures.values(), timeout=config.finalize_timeout)

        paths: Dict[StreamKind, Path] = {}
        errors: Dict[str, str] = {}
        for kind, future in futures.items():
            name = STREAM_NAMES[kind]
            if future not in done:
                errors[name] = f"finalize timed out after {config.finalize_timeout}s"
            elif future.exception() is not None:
                errors[name] = str(future.exception())
            else:
                paths[kind] = future.result()

        result = RecordingResult(paths.get(StreamKind.RGB), paths.get(StreamKind.DEPTH),
                                 self.frame_count, errors)

        with self._lock:
            self._writers = {}
            self._state = RecordingState.IDLE

        if errors:
            for name, message in errors.items():
                print(f"[recorder] {name} output failed: {message}", file=sys.stderr)
            raise RecordingError(f"Recording failed: {errors}", result=result)

        print("[recorder] Recording saved successfully")
        print(f"   RGB: {result.rgb_path}")
        print(f"   Depth: {result.depth_path}")
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _open_writer(self, path, size, config, bit_rate, pixel_format) -> MediaWriter:
        width, height = size
        try:
            return self._writer_factory(path, width, height, fps=config.fps,
                                        codec=config.codec, bit_rate=bit_rate,
                                        pixel_format=pixel_format)
        except RecordingError:
            raise
        except Exception as e:
            raise RecordingError(f"Could not create writer for {path}: {e}") from e

    @staticmethod
    def _finalize(writer: MediaWriter) -> concurrent.futures.Future:
        try:
            return writer.finalize()
        except Exception as e:
            future = concurrent.futures.Future()
            future.set_exception(e)
            return future


def run(config: RecordingConfig, duration: float):
    from .sensors import SyntheticSensorSession

    session = SyntheticSensorSession(config.rgb_size, config.depth_size, config.fps)
    recorder = DualOutputSynchronizer()
    recorder.start(config)
    session.start(lambda frame, ts: recorder.write_frame(StreamKind.RGB, frame, ts),
                  lambda frame, ts: recorder.write_frame(StreamKind.DEPTH, frame, ts))
    try:
        time.sleep(duration)
    except KeyboardInterrupt:
        pass
    finally:
        session.stop()
    return recorder.stop()


def main():
    parser = argparse.ArgumentParser(description="Record colour + depth to two aligned files")
    parser.add_argument("--output-dir", type=Path, default=Path("."))
    parser.add_argument("--duration", type=float, default=5.0)
    parser.add_argument("--fps", type=int, default=30)
    parser.add_argument("--codec", default="h264")
    parser.add_argument("--container", default="mov")
    parser.add_argument("--width", type=int, default=640)
    parser.add_argument("--height", type=int, default=480)
    parser.add_argument("--depth-width", type=int, default=256)
    parser.add_argument("--depth-height", type=int, default=192)
    parser.add_argument("--min-depth", type=float, default=DEFAULT_DEPTH_RANGE.min_depth)
    parser.add_argument("--max-depth", type=float, default=DEFAULT_DEPTH_RANGE.max_depth)
    args = parser.parse_args()

    config = RecordingConfig(
        output_dir=args.output_dir,
        rgb_size=(args.width, args.height),
        depth_size=(args.depth_width, args.depth_height),
        fps=args.fps,
        codec=args.codec,
        container=args.container,
        depth_range=DepthRange(args.min_depth, args.max_depth),
    )
    try:
        run(config, args.duration)
    except RecordingError as e:
        print(f"[recorder] {e}", file=sys.stderr)
        if e.result is not None:
            for path in (e.result.rgb_path, e.result.depth_path):
                if path is not None:
                    print(f"[recorder] Kept {path}")
        sys.exit(1)


if __name__ == "__main__":
    main()
