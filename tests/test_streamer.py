"""CaptureStreamer — capture callbacks, frame numbering, encode loops.

Usage:
    python3 -m pytest tests/test_streamer.py -v
"""

import threading
import time

import numpy as np
import pytest

from rgbd_link.codecs import EncodedUnit, Encoder
from rgbd_link.errors import ConfigurationError
from rgbd_link.observer import RGBDObserver
from rgbd_link.protocol import StreamKind
from rgbd_link.sensors import SensorSession, SyntheticSensorSession
from rgbd_link.streamer import CaptureStreamer


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False


class ManualSession(SensorSession):
    """Frames are pushed by the test through the stored callbacks."""

    color_size = (32, 24)
    depth_size = (16, 12)

    def __init__(self, available=True):
        self.available = available
        self.on_color = None
        self.on_depth = None

    def is_available(self):
        return self.available

    def start(self, on_color, on_depth):
        self.on_color, self.on_depth = on_color, on_depth

    def stop(self):
        pass


class RecordingSender:
    """Collects units instead of writing them to a socket."""

    def __init__(self, fail_after=None):
        self.units = []
        self.fail_after = fail_after
        self.closed = False
        self.gate = threading.Event()
        self.gate.set()

    @property
    def is_connected(self):
        return not self.closed

    def connect(self):
        pass

    def send_unit(self, unit):
        self.gate.wait(timeout=5)
        if self.fail_after is not None and len(self.units) >= self.fail_after:
            raise ConnectionError("Connection closed by consumer")
        self.units.append(unit)

    def close(self):
        self.closed = True


def color(value=0):
    return np.full((24, 32, 3), value, dtype=np.uint8)


def depth(value=1.0):
    return np.full((12, 16), value, dtype=np.float32)


def test_timestamps_relative_to_first_frame():
    session, sender = ManualSession(), RecordingSender()
    streamer = CaptureStreamer(session, sender=sender)
    streamer.start()
    try:
        session.on_depth(depth(), 50.0)
        assert wait_for(lambda: len(sender.units) == 1)
        session.on_color(color(), 50.25)
        assert wait_for(lambda: len(sender.units) == 2)
    finally:
        streamer.stop()

    first, second = sender.units
    assert first.kind == StreamKind.DEPTH and first.timestamp == 0.0
    assert first.is_keyframe
    assert second.kind == StreamKind.RGB and second.timestamp == pytest.approx(0.25)
    assert first.frame_number == 0 and second.frame_number == 0
    assert sender.closed


def test_busy_encoder_drops_and_leaves_gap():
    session, sender = ManualSession(), RecordingSender()
    streamer = CaptureStreamer(session, sender=sender)
    streamer.start()
    try:
        sender.gate.clear()  # hold the colour encode loop inside send
        session.on_color(color(1), 1.0)
        assert wait_for(lambda: streamer._slots[StreamKind.RGB].busy)
        session.on_color(color(2), 1.1)
        session.on_color(color(3), 1.2)
        sender.gate.set()

        assert wait_for(lambda: len(sender.units) == 1
                        and not streamer._slots[StreamKind.RGB].busy)
        session.on_color(color(4), 1.3)
        assert wait_for(lambda: len(sender.units) == 2)
    finally:
        streamer.stop()

    assert [u.frame_number for u in sender.units] == [0, 3]
    stats = streamer.get_stats()
    assert stats["dropped"]["rgb"] == 2
    assert stats["captured"]["rgb"] == 4
    assert stats["sent"]["rgb"] == 2


class ScriptedEncoder(Encoder):
    """Emits a scripted list of units per encode call, plus a flush tail."""

    def __init__(self, script, tail=()):
        self.script = list(script)
        self.tail = list(tail)
        self.closed = False

    def encode(self, frame):
        return self.script.pop(0) if self.script else []

    def flush(self):
        tail, self.tail = self.tail, []
        return tail

    def close(self):
        self.closed = True


def test_every_emitted_unit_is_sent_with_its_own_number():
    encoder = ScriptedEncoder([
        [EncodedUnit(b"sps-pps-idr", True), EncodedUnit(b"delta", False)],
        [EncodedUnit(b"next", False)],
    ])
    session, sender = ManualSession(), RecordingSender()
    streamer = CaptureStreamer(session, sender=sender, encoder=encoder)
    streamer.start()
    try:
        session.on_color(color(), 1.0)
        assert wait_for(lambda: len(sender.units) == 2
                        and not streamer._slots[StreamKind.RGB].busy)
        session.on_color(color(), 1.1)
        assert wait_for(lambda: len(sender.units) == 3)
    finally:
        streamer.stop()

    assert [u.payload for u in sender.units] == [b"sps-pps-idr", b"delta", b"next"]
    assert [u.frame_number for u in sender.units] == [0, 1, 2]
    assert [u.is_keyframe for u in sender.units] == [True, False, False]
    assert streamer.get_stats()["sent"]["rgb"] == 3


def test_buffered_frame_leaves_no_gap_and_flush_is_sent_on_stop():
    encoder = ScriptedEncoder([[], [EncodedUnit(b"idr", True)]],
                              tail=[EncodedUnit(b"tail", False)])
    session, sender = ManualSession(), RecordingSender()
    streamer = CaptureStreamer(session, sender=sender, encoder=encoder)
    streamer.start()
    try:
        session.on_color(color(), 1.0)
        assert wait_for(lambda: encoder.script == [[EncodedUnit(b"idr", True)]]
                        and not streamer._slots[StreamKind.RGB].busy)
        session.on_color(color(), 1.1)
        assert wait_for(lambda: len(sender.units) == 1)
    finally:
        streamer.stop()

    assert [u.payload for u in sender.units] == [b"idr", b"tail"]
    assert [u.frame_number for u in sender.units] == [0, 1]
    assert sender.units[1].timestamp == pytest.approx(0.1)
    assert encoder.closed and sender.closed


def test_connection_loss_stops_streaming():
    session, sender = ManualSession(), RecordingSender(fail_after=1)
    streamer = CaptureStreamer(session, sender=sender)
    streamer.start()
    try:
        session.on_depth(depth(), 0.0)
        assert wait_for(lambda: len(sender.units) == 1)
        session.on_depth(depth(), 0.1)
        assert wait_for(lambda: streamer.error is not None)
        assert isinstance(streamer.error, ConnectionError)
        assert not streamer.is_running
    finally:
        streamer.stop()


def test_recorder_tap_sees_every_frame():
    taps = []

    class Tap:
        def write_frame(self, kind, frame, timestamp):
            taps.append((kind, timestamp))

    session = ManualSession()
    streamer = CaptureStreamer(session, sender=RecordingSender(), recorder=Tap())
    streamer.start()
    try:
        session.on_color(color(), 3.0)
        session.on_depth(depth(), 3.0)
    finally:
        streamer.stop()
    assert taps == [(StreamKind.RGB, 3.0), (StreamKind.DEPTH, 3.0)]


def test_start_checks():
    with pytest.raises(ConfigurationError):
        CaptureStreamer(ManualSession(available=False), sender=RecordingSender()).start()

    streamer = CaptureStreamer(ManualSession(), sender=RecordingSender())
    streamer.start()
    try:
        with pytest.raises(ConfigurationError):
            streamer.start()
    finally:
        streamer.stop()


def test_unknown_codec_rejected():
    streamer = CaptureStreamer(ManualSession(), codec="vp9", sender=RecordingSender())
    with pytest.raises(ConfigurationError):
        streamer.start()


def test_synthetic_session_end_to_end():
    observer = RGBDObserver("tcp://127.0.0.1:*", stats_interval=0)
    session = SyntheticSensorSession(color_size=(64, 48), depth_size=(32, 24), fps=30)
    try:
        with CaptureStreamer(session, observer.endpoint) as streamer:
            assert wait_for(lambda: observer.get_stats()["frames"]["rgb"] >= 5
                            and observer.get_stats()["frames"]["depth"] >= 5)
            assert streamer.is_running
        stats = streamer.get_stats()
        assert stats["sent"]["rgb"] >= 5

        rgb = observer.get_frame("rgb")
        assert rgb.shape == (48, 64, 3)
        assert rgb.dtype == np.uint8

        depth_map = observer.get_frame("depth")
        assert depth_map.shape == (24, 32)
        assert np.all(np.isnan(depth_map[0]))
        assert np.all(np.isfinite(depth_map[1:]))
        assert np.nanmin(depth_map) >= 0.5 - 1e-3
        assert np.nanmax(depth_map) <= 5.0 + 1e-3

        assert wait_for(lambda: observer.connections == 0)
        assert observer.get_stats()["protocol_errors"] == 0
    finally:
        observer.stop()


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
