"""Colour and raster codecs.

Usage:
    python3 -m pytest tests/test_codecs.py
"""

import numpy as np
import pytest

from rgbd_link.codecs import (
    H264Decoder, H264Encoder, JpegDecoder, JpegEncoder, PngRasterCodec,
    create_decoder, create_encoder,
)
from rgbd_link.errors import CodecError, ConfigurationError


def gradient(width=64, height=48):
    x = np.linspace(0, 255, width, dtype=np.float32)
    frame = np.zeros((height, width, 3), dtype=np.uint8)
    frame[:, :, 0] = x.astype(np.uint8)
    frame[:, :, 1] = 128
    frame[:, :, 2] = 255 - x.astype(np.uint8)
    return frame


def test_jpeg_units_are_keyframes():
    encoder = JpegEncoder(quality=90)
    (unit,) = encoder.encode(gradient())
    assert unit.is_keyframe
    assert unit.payload[:2] == b"\xff\xd8"
    assert encoder.flush() == []


def test_jpeg_round_trip_is_close():
    frame = gradient()
    (unit,) = JpegEncoder(quality=95).encode(frame)
    decoded = JpegDecoder().decode(unit.payload, unit.is_keyframe)

    assert decoded.shape == frame.shape
    assert np.mean(np.abs(decoded.astype(int) - frame.astype(int))) < 4


@pytest.mark.parametrize("payload", [b"", b"\x00\x01garbage"])
def test_jpeg_garbage_raises(payload):
    with pytest.raises(CodecError):
        JpegDecoder().decode(payload, True)


def test_png_keeps_16_bit_exactly():
    raster = np.arange(0, 65536, 257, dtype=np.uint16).reshape(16, 16)
    codec = PngRasterCodec()
    decoded = codec.decode(codec.encode(raster))
    assert decoded.dtype == np.uint16
    assert np.array_equal(decoded, raster)


def test_png_garbage_raises():
    with pytest.raises(CodecError):
        PngRasterCodec().decode(b"\x89PNG broken")


def test_factories():
    assert isinstance(create_encoder("jpeg"), JpegEncoder)
    assert isinstance(create_decoder("jpeg"), JpegDecoder)
    with pytest.raises(ConfigurationError):
        create_encoder("vp9")
    with pytest.raises(ConfigurationError):
        create_decoder("vp9")


def test_h264_stream():
    pytest.importorskip("av")
    try:
        encoder = H264Encoder(64, 48, fps=30, gop_size=10)
    except ConfigurationError as e:
        pytest.skip(str(e))
    decoder = H264Decoder()

    units = []
    for i in range(20):
        units.extend(encoder.encode(gradient()))
    units.extend(encoder.flush())
    assert units
    assert units[0].is_keyframe

    # Delta units before the first keyframe are dropped, not errors
    deltas = [u for u in units if not u.is_keyframe]
    if deltas:
        assert H264Decoder().decode(deltas[0].payload, False) is None

    decoded = [decoder.decode(u.payload, u.is_keyframe) for u in units]
    frames = [f for f in decoded if f is not None]
    assert frames
    assert frames[-1].shape == (48, 64, 3)


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__, "-v"]))
