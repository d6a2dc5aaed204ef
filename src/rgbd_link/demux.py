"""Per-connection demultiplexer: bytes -> units -> per-stream decode stages.

Units are routed in arrival order. Each stream has its own decode stage;
in threaded mode a slow colour decode never holds up depth (and vice versa),
while ordering within a stream is preserved by a FIFO per stage.
"""

import queue
import sys
import threading
import traceback
from typing import Callable, Dict, Optional

import numpy as np

from .codecs import Decoder, JpegDecoder
from .depth_codec import DEFAULT_DEPTH_RANGE, DepthRange, decode_depth
from .errors import CodecError
from .protocol import STREAM_NAMES, CompressedUnit, PacketParser, StreamKind
from .stats import StreamStats

FrameCallback = Callable[[CompressedUnit, np.ndarray], None]

_STOP = object()


class DecodeStage:
    """Decodes the units of one stream and hands pictures to a callback.

    A per-unit :class:`CodecError` drops that unit and bumps the stream's
    ``decode_errors``. A failure to build the decoder session is fatal: the
    stage records it in :attr:`error` and stops accepting units.

    In threaded mode the backlog holds at most *queue_size* units; when the
    decoder falls behind the oldest pending unit is dropped and counted in
    the stream's ``backlog_drops``.
    """

    def __init__(self, name: str, decode: Callable[[CompressedUnit], Optional[np.ndarray]],
                 callback: Optional[FrameCallback], stats: StreamStats,
                 threaded: bool = True, queue_size: int = 30):
        self.name = name
        self._decode = decode
        self._callback = callback
        self._stats = stats
        self.error: Optional[BaseException] = None

        self._queue: Optional[queue.Queue] = None
        self._thread: Optional[threading.Thread] = None
        if threaded:
            self._queue = queue.Queue(maxsize=queue_size)
            self._thread = threading.Thread(
                target=self._run, name=f"decode-{name}", daemon=True)
            self._thread.start()

    @property
    def failed(self) -> bool:
        return self.error is not None

    def submit(self, unit: CompressedUnit):
        if self.failed:
            return
        if self._queue is None:
            self._process(unit)
        else:
            self._put(unit)

    def close(self, timeout: float = 2.0):
        if self._thread is None:
            return
        self._put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None

    def _put(self, item):
        while True:
            try:
                self._queue.put_nowait(item)
                return
            except queue.Full:
                pass
            try:
                dropped = self._queue.get_nowait()
            except queue.Empty:
                continue
            if dropped is not _STOP:
                self._stats.record_backlog_drop()

    def _run(self):
        while True:
            unit = self._queue.get()
            if unit is _STOP:
                return
            if not self.failed:
                self._process(unit)

    def _process(self, unit: CompressedUnit):
        try:
            frame = self._decode(unit)
        except CodecError as e:
            self._stats.record_decode_error()
            print(f"[demux] Dropped {self.name} frame {unit.frame_number}: {e}",
                  file=sys.stderr)
            return
        except Exception as e:
            self.error = e
            print(f"[demux] ERROR in {self.name} decode stage: {e}", file=sys.stderr)
            traceback.print_exc()
            return

        if frame is not None and self._callback is not None:
            try:
                self._callback(unit, frame)
            except Exception as e:
                print(f"[demux] {self.name} callback raised: {e}", file=sys.stderr)
                traceback.print_exc()


class _ColorDecode:
    """Lazily (re)builds the decoder session; construction errors are fatal."""

    def __init__(self, decoder_factory: Callable[[], Decoder]):
        self._factory = decoder_factory
        self._decoder: Optional[Decoder] = None

    def __call__(self, unit: CompressedUnit):
        if self._decoder is None:
            self._decoder = self._factory()
        return self._decoder.decode(unit.payload, unit.is_keyframe)

    def close(self):
        if self._decoder is not None:
            self._decoder.close()
            self._decoder = None


class Demultiplexer:
    """Parses one connection's byte stream and routes units by kind.

    Parameters
    ----------
    on_rgb, on_depth : callable or None
        ``callback(unit, frame)`` with a decoded BGR frame / float32 depth map.
    decoder_factory : callable
        Builds the colour decoder session (defaults to JPEG).
    threaded : bool
        Run each stream's decode stage on its own thread. With ``False`` the
        whole path runs inline inside :meth:`feed`.
    queue_size : int
        Per-stream decode backlog in threaded mode; oldest units are dropped
        beyond it.
    """

    def __init__(self, on_rgb: Optional[FrameCallback] = None,
                 on_depth: Optional[FrameCallback] = None,
                 decoder_factory: Callable[[], Decoder] = JpegDecoder,
                 depth_range: DepthRange = DEFAULT_DEPTH_RANGE,
                 threaded: bool = True, stats_window: float = 2.0,
                 queue_size: int = 30):
        self._parser = PacketParser()
        self._depth_range = depth_range
        self.stats: Dict[StreamKind, StreamStats] = {
            kind: StreamStats(window=stats_window) for kind in StreamKind
        }
        self._color = _ColorDecode(decoder_factory)
        self._stages = {
            StreamKind.RGB: DecodeStage(
                "rgb", self._color, on_rgb, self.stats[StreamKind.RGB],
                threaded, queue_size),
            StreamKind.DEPTH: DecodeStage(
                "depth", self._decode_depth, on_depth, self.stats[StreamKind.DEPTH],
                threaded, queue_size),
        }

    def _decode_depth(self, unit: CompressedUnit):
        return decode_depth(unit.payload, self._depth_range)

    @property
    def failed(self) -> bool:
        return any(stage.failed for stage in self._stages.values())

    @property
    def error(self) -> Optional[BaseException]:
        """First fatal decode-stage error, colour before depth."""
        for stage in self._stages.values():
            if stage.error is not None:
                return stage.error
        return None

    def feed(self, chunk: bytes) -> int:
        """Consume *chunk*; returns the number of units routed.

        Raises ProtocolError when the stream is malformed, after routing the
        units that arrived intact ahead of the bad header.
        """
        units = self._parser.feed(chunk)
        for unit in units:
            self.stats[unit.kind].record(unit.frame_number, len(unit.payload))
            self._stages[unit.kind].submit(unit)
        if self._parser.error is not None:
            raise self._parser.error
        return len(units)

    def get_stats(self):
        stats = {}
        for kind, s in self.stats.items():
            snapshot = s.snapshot()
            error = self._stages[kind].error
            snapshot["error"] = repr(error) if error else None
            stats[STREAM_NAMES[kind]] = snapshot
        return stats

    def close(self, timeout: float = 2.0):
        for stage in self._stages.values():
            stage.close(timeout)
        self._color.close()
