#!/usr/bin/env python3
"""Minimal example — receive colour + depth from a capture device.

Start this first, then point the device (or ``rgbd-stream``) at this host.

Usage:
    python examples/basic_consumer.py
    python examples/basic_consumer.py --bind tcp://0.0.0.0:5600 --codec h264
"""

import argparse
import time

import numpy as np

from rgbd_link import DEFAULT_BIND_ENDPOINT, RGBDObserver


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--bind", default=DEFAULT_BIND_ENDPOINT)
    parser.add_argument("--codec", choices=["jpeg", "h264"], default="jpeg")
    args = parser.parse_args()

    with RGBDObserver(args.bind, codec=args.codec, stats_interval=0) as observer:
        print("Waiting for a device — press Ctrl+C to stop\n")

        count = 0
        last_number = None
        t0 = time.monotonic()

        try:
            while observer.is_running:
                frame = observer.get_latest("depth")
                if frame is None or frame.frame_number == last_number:
                    time.sleep(0.01)
                    continue
                last_number = frame.frame_number

                count += 1
                if count % 30 == 0:
                    elapsed = time.monotonic() - t0
                    valid = np.isfinite(frame.image).mean()
                    h, w = frame.shape[:2]
                    print(f"  depth frames={count}  fps={count / elapsed:.1f}  "
                          f"shape={w}x{h}  valid={valid:.0%}  "
                          f"median={np.nanmedian(frame.image):.2f}m")
        except KeyboardInterrupt:
            pass


if __name__ == "__main__":
    main()
