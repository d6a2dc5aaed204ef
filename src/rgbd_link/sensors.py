"""Sensor sessions — the capture collaborator feeding colour + depth frames.

Real devices implement :class:`SensorSession` per platform. The synthetic
session generates frames for testing without hardware.
"""

import threading
import time
from typing import Callable, Optional, Tuple

import numpy as np

FrameSink = Callable[[np.ndarray, float], None]


class SensorSession:
    """Yields timestamped colour and depth frames from one shared clock.

    ``on_color(frame, timestamp)`` receives BGR ``uint8`` frames and
    ``on_depth(frame, timestamp)`` float32 metre maps. Either may be called
    from its own producer thread, at its own cadence.
    """

    color_size: Tuple[int, int] = (0, 0)  # (width, height)
    depth_size: Tuple[int, int] = (0, 0)
    fps: int = 30

    def is_available(self) -> bool:
        raise NotImplementedError

    def start(self, on_color: FrameSink, on_depth: FrameSink):
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError


class SyntheticSensorSession(SensorSession):
    """Moving gradient colour frames and a sweeping depth ramp.

    Each stream runs on its own thread so the two cadences are independent.
    Depth frames have a band of invalid (zero) pixels along the top rows.
    """

    def __init__(self, color_size: Tuple[int, int] = (640, 480),
                 depth_size: Tuple[int, int] = (256, 192), fps: int = 30,
                 depth_fps: Optional[int] = None, clock=time.monotonic):
        self.color_size = color_size
        self.depth_size = depth_size
        self.fps = fps
        self.depth_fps = depth_fps or fps
        self._clock = clock
        self._stop_event = threading.Event()
        self._threads = []

    def is_available(self) -> bool:
        return True

    def color_frame(self, index: int) -> np.ndarray:
        width, height = self.color_size
        x = np.linspace(0, 1, width, dtype=np.float32)
        y = np.linspace(0, 1, height, dtype=np.float32)
        phase = (index % 60) / 60.0
        r = np.outer(y, np.roll(x, int(phase * width)))
        g = np.outer(np.roll(y, int(phase * height)), x)
        b = np.full((height, width), phase, dtype=np.float32)
        # BGR order
        return (np.stack([b, g, r], axis=2) * 255).astype(np.uint8)

    def depth_frame(self, index: int) -> np.ndarray:
        width, height = self.depth_size
        phase = (index % 90) / 90.0
        ramp = np.linspace(0.3, 6.0, width, dtype=np.float32)
        depth = np.tile(np.roll(ramp, int(phase * width)), (height, 1))
        depth[: max(1, height // 16)] = 0.0
        return depth

    def start(self, on_color: FrameSink, on_depth: FrameSink):
        if self._threads:
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(target=self._produce, args=(self.color_frame, on_color, self.fps),
                             name="synthetic-color", daemon=True),
            threading.Thread(target=self._produce, args=(self.depth_frame, on_depth, self.depth_fps),
                             name="synthetic-depth", daemon=True),
        ]
        for t in self._threads:
            t.start()

    def stop(self):
        self._stop_event.set()
        for t in self._threads:
            t.join(timeout=2)
        self._threads = []

    def _produce(self, make_frame, sink, fps):
        frame_interval = 1.0 / fps
        index = 0
        while not self._stop_event.is_set():
            t0 = self._clock()
            sink(make_frame(index), t0)
            index += 1

            # Rate limit
            sleep_time = frame_interval - (self._clock() - t0)
            if sleep_time > 0:
                self._stop_event.wait(sleep_time)
