"""Session epoch latching and the single-slot capture hand-off.

Usage:
    python3 -m pytest tests/test_session.py
"""

import threading

import numpy as np
import pytest

from rgbd_link.protocol import StreamKind
from rgbd_link.session import FrameSlot, SessionEpoch


def test_epoch_from_either_stream():
    epoch = SessionEpoch()
    assert not epoch.established
    assert epoch.relative(StreamKind.DEPTH, 10.0) == 0.0
    assert epoch.epoch == 10.0
    assert epoch.relative(StreamKind.RGB, 10.5) == pytest.approx(0.5)


def test_designated_stream_sets_epoch():
    epoch = SessionEpoch(StreamKind.RGB)
    assert epoch.relative(StreamKind.DEPTH, 4.0) is None
    assert not epoch.established

    assert epoch.relative(StreamKind.RGB, 5.0) == 0.0
    assert epoch.relative(StreamKind.DEPTH, 5.0) == 0.0
    assert epoch.relative(StreamKind.DEPTH, 5.25) == pytest.approx(0.25)


def test_samples_before_epoch_are_dropped():
    epoch = SessionEpoch()
    epoch.relative(StreamKind.RGB, 2.0)
    assert epoch.relative(StreamKind.DEPTH, 1.9) is None


def test_reset():
    epoch = SessionEpoch()
    epoch.relative(StreamKind.RGB, 2.0)
    epoch.reset()
    assert epoch.epoch is None


def test_slot_drops_newest_while_busy():
    slot = FrameSlot()
    assert slot.offer("a", 1)
    assert not slot.offer("b", 2)

    assert slot.take(timeout=0) == ("a", 1)
    # Still being processed: new frames keep being dropped
    assert not slot.offer("c", 3)
    slot.task_done()
    assert slot.offer("d", 4)
    assert slot.take(timeout=0) == ("d", 4)

    assert slot.offered == 4
    assert slot.dropped == 2


def test_slot_take_times_out():
    assert FrameSlot().take(timeout=0.01) is None


def test_slot_close_delivers_pending_then_stops():
    slot = FrameSlot()
    slot.offer("last")
    slot.close()
    assert not slot.offer("late")
    assert slot.take(timeout=0) == ("last",)
    assert slot.take(timeout=1) is None
    assert slot.closed


def test_slot_copy_reuses_one_buffer():
    slot = FrameSlot(copy=True)
    source = np.arange(12, dtype=np.uint8).reshape(3, 4)

    slot.offer(source, 0.0)
    first, _ = slot.take()
    slot.task_done()
    source[:] = 7  # producer recycles its memory
    assert first[0, 1] == 1

    slot.offer(source, 0.1)
    second, _ = slot.take()
    assert second is first
    assert np.all(second == 7)


def test_offer_never_blocks_producer():
    slot = FrameSlot()
    slot.offer(0)
    results = []
    producer = threading.Thread(target=lambda: results.extend(slot.offer(i) for i in range(100)))
    producer.start()
    producer.join(timeout=1)
    assert not producer.is_alive()
    assert results == [False] * 100


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
