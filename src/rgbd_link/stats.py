"""Per-stream liveness statistics for the receiving side."""

import threading
import time
from collections import deque
from typing import Any, Dict, Optional

from .errors import ProtocolError


class StreamStats:
    """Frame/byte counters, gap detection and rolling FPS for one stream.

    Frame numbers start at 0 per session, so a first frame numbered ``n``
    already accounts for ``n`` dropped frames. Every update is O(1) under a
    private lock and never waits on anything else.
    """

    def __init__(self, window: float = 2.0, clock=time.monotonic):
        self.window = window
        self._clock = clock
        self._lock = threading.Lock()
        self._arrivals = deque()

        self.frames = 0
        self.bytes = 0
        self.last_frame_number: Optional[int] = None
        self.dropped_frames = 0
        self.decode_errors = 0
        self.backlog_drops = 0

    def record(self, frame_number: int, nbytes: int) -> int:
        """Account for one received unit. Returns the gap size before it.

        Raises ProtocolError if *frame_number* does not increase.
        """
        now = self._clock()
        with self._lock:
            last = -1 if self.last_frame_number is None else self.last_frame_number
            if frame_number <= last:
                raise ProtocolError(
                    f"Frame number went from {last} to {frame_number}")
            gap = frame_number - last - 1

            self.last_frame_number = frame_number
            self.dropped_frames += gap
            self.frames += 1
            self.bytes += nbytes

            self._arrivals.append(now)
            self._expire(now)
        return gap

    def record_decode_error(self):
        with self._lock:
            self.decode_errors += 1

    def record_backlog_drop(self):
        with self._lock:
            self.backlog_drops += 1

    def _expire(self, now):
        cutoff = now - self.window
        while self._arrivals and self._arrivals[0] < cutoff:
            self._arrivals.popleft()

    @property
    def fps(self) -> float:
        with self._lock:
            self._expire(self._clock())
            count = len(self._arrivals)
            if count < 2:
                return 0.0
            span = self._arrivals[-1] - self._arrivals[0]
            return (count - 1) / span if span > 0 else 0.0

    def snapshot(self) -> Dict[str, Any]:
        fps = self.fps
        with self._lock:
            return {
                "frames": self.frames,
                "bytes": self.bytes,
                "last_frame_number": self.last_frame_number,
                "dropped_frames": self.dropped_frames,
                "decode_errors": self.decode_errors,
                "backlog_drops": self.backlog_drops,
                "fps": fps,
            }
