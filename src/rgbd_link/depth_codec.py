"""Depth codec — float metres <-> fixed-point encodings.

Two encodings share one calibration range and clamp policy:

* transport: 16-bit linear quantization, 0 reserved for "no measurement",
  compressed losslessly (PNG) for the wire;
* visualization: 8-bit inverted grayscale for local preview and recording.
  Never sent over the wire.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from .codecs import PngRasterCodec, RasterCodec
from .errors import CodecError, ConfigurationError

INVALID_DEPTH = np.float32("nan")

QUANT_MAX = 65535
VIS_MAX = 255

# Preview fallback range when a frame has no valid pixel at all
AUTO_RANGE_FALLBACK = (0.0, 10.0)


@dataclass(frozen=True)
class DepthRange:
    """Calibration range in metres."""

    min_depth: float = 0.5
    max_depth: float = 5.0

    def __post_init__(self):
        if not (np.isfinite(self.min_depth) and np.isfinite(self.max_depth)):
            raise ConfigurationError("Depth range must be finite")
        if self.min_depth < 0 or self.min_depth >= self.max_depth:
            raise ConfigurationError(
                f"Invalid depth range: {self.min_depth}..{self.max_depth}")

    @property
    def span(self) -> float:
        return self.max_depth - self.min_depth

    @property
    def step(self) -> float:
        """Quantization step of the 16-bit transport encoding."""
        return self.span / QUANT_MAX


DEFAULT_DEPTH_RANGE = DepthRange()

_DEFAULT_RASTER_CODEC = PngRasterCodec()


def valid_mask(frame: np.ndarray) -> np.ndarray:
    """True where *frame* holds a measurement (finite and > 0)."""
    with np.errstate(invalid="ignore"):
        return np.isfinite(frame) & (frame > 0)


def quantize_depth(frame: np.ndarray,
                   depth_range: DepthRange = DEFAULT_DEPTH_RANGE) -> np.ndarray:
    """Float metres -> uint16 raster, 0 for invalid pixels."""
    depth = np.asarray(frame, dtype=np.float64)
    valid = valid_mask(depth)

    normalized = (np.clip(np.where(valid, depth, depth_range.min_depth),
                          depth_range.min_depth, depth_range.max_depth)
                  - depth_range.min_depth) / depth_range.span
    quantized = np.rint(normalized * QUANT_MAX)
    # 0 is the sentinel; a valid sample at min_depth lands one step above it
    quantized = np.maximum(quantized, 1)
    quantized[~valid] = 0
    return quantized.astype(np.uint16)


def dequantize_depth(raster: np.ndarray,
                     depth_range: DepthRange = DEFAULT_DEPTH_RANGE) -> np.ndarray:
    """uint16 raster -> float32 metres, NaN where the sentinel was."""
    values = np.asarray(raster)
    if values.dtype != np.uint16:
        raise CodecError(f"Depth raster must be uint16, got {values.dtype}")
    depth = depth_range.min_depth + (values.astype(np.float64) / QUANT_MAX) * depth_range.span
    depth = depth.astype(np.float32)
    depth[values == 0] = INVALID_DEPTH
    return depth


def encode_depth(frame: np.ndarray,
                 depth_range: DepthRange = DEFAULT_DEPTH_RANGE,
                 codec: Optional[RasterCodec] = None) -> bytes:
    """Quantize *frame* to 16 bits and compress it for transport."""
    if np.ndim(frame) != 2:
        raise CodecError(f"Depth frame must be 2-D, got shape {np.shape(frame)}")
    codec = codec or _DEFAULT_RASTER_CODEC
    return codec.encode(quantize_depth(frame, depth_range))


def decode_depth(data: bytes,
                 depth_range: DepthRange = DEFAULT_DEPTH_RANGE,
                 codec: Optional[RasterCodec] = None) -> np.ndarray:
    """Inverse of :func:`encode_depth`. Invalid pixels come back as NaN."""
    codec = codec or _DEFAULT_RASTER_CODEC
    raster = codec.decode(data)
    if raster.ndim != 2:
        raise CodecError(f"Depth raster must be single-channel, got {raster.shape}")
    return dequantize_depth(raster, depth_range)


class DepthVisualizer:
    """8-bit inverted grayscale conversion with buffers reused across frames.

    ``value8 = round((1 - normalized) * 255)``, invalid pixels -> 0. Runs at
    capture rate, so scratch and output arrays are allocated once per shape.
    The returned array is overwritten by the next :meth:`convert` call.

    With ``auto_range=True`` each frame is normalised over its own valid
    min/max instead of the fixed calibration range (preview only).
    """

    def __init__(self, shape: Optional[Tuple[int, int]] = None,
                 depth_range: DepthRange = DEFAULT_DEPTH_RANGE,
                 auto_range: bool = False):
        self.depth_range = depth_range
        self.auto_range = auto_range
        self._shape = None
        if shape is not None:
            self._allocate(tuple(shape))

    def _allocate(self, shape):
        self._shape = shape
        self._scratch = np.empty(shape, dtype=np.float32)
        self._valid = np.empty(shape, dtype=bool)
        self._invalid = np.empty(shape, dtype=bool)
        self._out = np.empty(shape, dtype=np.uint8)

    @property
    def shape(self):
        return self._shape

    def _range_for(self, frame):
        if not self.auto_range:
            return self.depth_range.min_depth, self.depth_range.max_depth
        if not self._valid.any():
            return AUTO_RANGE_FALLBACK
        values = frame[self._valid]
        lo, hi = float(values.min()), float(values.max())
        if hi <= lo:
            return lo, lo + 1.0
        return lo, hi

    def convert(self, frame: np.ndarray) -> np.ndarray:
        if frame.ndim != 2:
            raise CodecError(f"Depth frame must be 2-D, got shape {frame.shape}")
        if frame.shape != self._shape:
            self._allocate(frame.shape)

        scratch, valid, invalid, out = self._scratch, self._valid, self._invalid, self._out

        np.isfinite(frame, out=valid)
        with np.errstate(invalid="ignore"):
            np.greater(frame, 0, out=invalid)
        np.logical_and(valid, invalid, out=valid)
        np.logical_not(valid, out=invalid)
        lo, hi = self._range_for(frame)

        # scratch = round((1 - (clip(d) - lo) / (hi - lo)) * 255)
        np.copyto(scratch, frame, casting="same_kind")
        np.copyto(scratch, lo, where=invalid)
        np.clip(scratch, lo, hi, out=scratch)
        np.subtract(scratch, lo, out=scratch)
        np.multiply(scratch, -VIS_MAX / (hi - lo), out=scratch)
        np.add(scratch, VIS_MAX, out=scratch)
        np.rint(scratch, out=scratch)
        np.copyto(out, scratch, casting="unsafe")
        out[invalid] = 0
        return out


def depth_to_visualization(frame: np.ndarray,
                           depth_range: DepthRange = DEFAULT_DEPTH_RANGE) -> np.ndarray:
    """One-shot 8-bit visualization (allocates; use DepthVisualizer in loops)."""
    return DepthVisualizer(frame.shape, depth_range).convert(frame).copy()
