"""Session timing and capture-side hand-off primitives."""

import threading
from typing import Any, Optional

import numpy as np

from .protocol import StreamKind


class SessionEpoch:
    """Shared zero-time for the two streams of one session.

    The epoch latches on the first frame of *epoch_stream* (either stream
    when ``None``). Frames that arrive before the epoch exists, or carry a
    timestamp earlier than it, get ``None`` and must be dropped.
    """

    def __init__(self, epoch_stream: Optional[StreamKind] = None):
        self.epoch_stream = epoch_stream
        self._epoch: Optional[float] = None
        self._lock = threading.Lock()

    @property
    def epoch(self) -> Optional[float]:
        return self._epoch

    @property
    def established(self) -> bool:
        return self._epoch is not None

    def reset(self):
        with self._lock:
            self._epoch = None

    def relative(self, kind: StreamKind, timestamp: float) -> Optional[float]:
        with self._lock:
            if self._epoch is None:
                if self.epoch_stream is not None and kind != self.epoch_stream:
                    return None
                self._epoch = timestamp
            offset = timestamp - self._epoch
        return offset if offset >= 0 else None


class FrameSlot:
    """Single-slot hand-off between a capture callback and one worker.

    :meth:`offer` never blocks: while the previous item is still pending or
    being processed the new one is dropped and counted. The consumer calls
    :meth:`take` and then :meth:`task_done` once it has finished with the item.

    With ``copy=True`` array payloads are copied into one buffer that is
    reused for every frame, so the producer may recycle its own memory.
    """

    def __init__(self, copy: bool = False):
        self._copy = copy
        self._buffer: Optional[np.ndarray] = None
        self._cond = threading.Condition()
        self._item = None
        self._busy = False
        self._closed = False
        self.offered = 0
        self.dropped = 0

    def offer(self, frame: Any, *meta) -> bool:
        with self._cond:
            if self._closed:
                return False
            self.offered += 1
            if self._busy:
                self.dropped += 1
                return False
            if self._copy and isinstance(frame, np.ndarray):
                if self._buffer is None or self._buffer.shape != frame.shape \
                        or self._buffer.dtype != frame.dtype:
                    self._buffer = np.empty_like(frame)
                np.copyto(self._buffer, frame)
                frame = self._buffer
            self._item = (frame,) + meta
            self._busy = True
            self._cond.notify()
            return True

    def take(self, timeout: Optional[float] = None):
        """Next item tuple, or ``None`` on timeout or once closed and empty."""
        with self._cond:
            if not self._cond.wait_for(
                    lambda: self._item is not None or self._closed, timeout):
                return None
            item, self._item = self._item, None
            return item

    def task_done(self):
        with self._cond:
            self._busy = False

    def close(self):
        """Reject further offers and wake the consumer.

        An item already pending is still delivered by :meth:`take`.
        """
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    @property
    def busy(self) -> bool:
        return self._busy

    @property
    def closed(self) -> bool:
        return self._closed
