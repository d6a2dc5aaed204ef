"""Colour and raster codecs behind abstract capability interfaces.

The wire protocol and depth codec only see :class:`Encoder`, :class:`Decoder`
and :class:`RasterCodec`. JPEG and PNG go through OpenCV; H.264 goes through
PyAV codec contexts.
"""

from dataclasses import dataclass
from fractions import Fraction
from typing import List, Optional

import cv2
import numpy as np

from .errors import CodecError, ConfigurationError


@dataclass(frozen=True)
class EncodedUnit:
    payload: bytes
    is_keyframe: bool


class Encoder:
    """ColorFrame (BGR uint8) -> compressed access units."""

    def encode(self, frame: np.ndarray) -> List[EncodedUnit]:
        raise NotImplementedError

    def flush(self) -> List[EncodedUnit]:
        return []

    def close(self):
        pass


class Decoder:
    """Streaming decoder session for one connection's colour stream."""

    def decode(self, payload: bytes, is_keyframe: bool) -> Optional[np.ndarray]:
        """Decoded BGR frame, ``None`` if nothing is ready yet.

        Raises CodecError when the unit cannot be decoded.
        """
        raise NotImplementedError

    def close(self):
        pass


class RasterCodec:
    """Lossless raster <-> bytes."""

    def encode(self, raster: np.ndarray) -> bytes:
        raise NotImplementedError

    def decode(self, data: bytes) -> np.ndarray:
        raise NotImplementedError


# ----------------------------------------------------------------------
# OpenCV
# ----------------------------------------------------------------------

class JpegEncoder(Encoder):
    """Intra-only colour encoder: every unit is a keyframe."""

    def __init__(self, quality: int = 80):
        self.quality = quality

    def encode(self, frame):
        ok, buf = cv2.imencode(".jpg", frame,
                               [int(cv2.IMWRITE_JPEG_QUALITY), self.quality])
        if not ok:
            raise CodecError("JPEG encode failed")
        return [EncodedUnit(buf.tobytes(), True)]


class JpegDecoder(Decoder):

    def decode(self, payload, is_keyframe):
        buf = np.frombuffer(payload, dtype=np.uint8)
        frame = cv2.imdecode(buf, cv2.IMREAD_COLOR) if buf.size else None
        if frame is None:
            raise CodecError(f"JPEG decode failed ({len(payload)} bytes)")
        return frame


class PngRasterCodec(RasterCodec):
    """PNG via OpenCV; keeps 16-bit single-channel rasters intact."""

    def __init__(self, compression: int = 3):
        self.compression = compression

    def encode(self, raster):
        ok, buf = cv2.imencode(".png", raster,
                               [int(cv2.IMWRITE_PNG_COMPRESSION), self.compression])
        if not ok:
            raise CodecError("PNG encode failed")
        return buf.tobytes()

    def decode(self, data):
        buf = np.frombuffer(data, dtype=np.uint8)
        raster = cv2.imdecode(buf, cv2.IMREAD_UNCHANGED) if buf.size else None
        if raster is None:
            raise CodecError(f"PNG decode failed ({len(data)} bytes)")
        return raster


# ----------------------------------------------------------------------
# PyAV
# ----------------------------------------------------------------------

class H264Encoder(Encoder):
    """H.264 colour encoder on a PyAV codec context.

    Parameters
    ----------
    width, height : int
        Frame size; must match every frame passed to :meth:`encode`.
    fps : int
        Nominal frame rate (codec time base is ``1/fps``).
    gop_size : int
        Keyframe interval in frames.
    codec_name : str
        ``"h264"`` picks FFmpeg's default H.264 encoder, ``"libx264"`` forces x264.
    """

    def __init__(self, width: int, height: int, fps: int = 30,
                 bit_rate: int = 2_000_000, gop_size: int = 30,
                 codec_name: str = "h264"):
        import av

        self._av = av
        try:
            ctx = av.CodecContext.create(codec_name, "w")
        except Exception as e:
            raise ConfigurationError(f"H.264 encoder unavailable: {e}") from e
        ctx.width = width
        ctx.height = height
        ctx.bit_rate = bit_rate
        ctx.pix_fmt = "yuv420p"
        ctx.time_base = Fraction(1, fps)
        ctx.framerate = Fraction(fps)
        ctx.gop_size = gop_size
        ctx.max_b_frames = 0
        ctx.options = {"tune": "zerolatency", "preset": "ultrafast"}
        self._ctx = ctx
        self._pts = 0

    def encode(self, frame):
        av_frame = self._av.VideoFrame.from_ndarray(frame, format="bgr24")
        av_frame.pts = self._pts
        self._pts += 1
        try:
            packets = self._ctx.encode(av_frame)
        except self._av.error.FFmpegError as e:
            raise CodecError(f"H.264 encode failed: {e}") from e
        return [EncodedUnit(bytes(p), bool(p.is_keyframe)) for p in packets]

    def flush(self):
        try:
            packets = self._ctx.encode(None)
        except self._av.error.FFmpegError:
            return []
        return [EncodedUnit(bytes(p), bool(p.is_keyframe)) for p in packets]

    def close(self):
        self._ctx = None


class H264Decoder(Decoder):
    """H.264 decoder session. Delta units are dropped until a keyframe seeds it."""

    def __init__(self, codec_name: str = "h264"):
        import av

        self._av = av
        self._ctx = av.CodecContext.create(codec_name, "r")
        self._awaiting_keyframe = True

    def decode(self, payload, is_keyframe):
        if is_keyframe:
            self._awaiting_keyframe = False
        elif self._awaiting_keyframe:
            return None

        frame = None
        try:
            for packet in self._ctx.parse(payload):
                for decoded in self._ctx.decode(packet):
                    frame = decoded.to_ndarray(format="bgr24")
        except self._av.error.FFmpegError as e:
            # Reference chain is broken; wait for the next keyframe to reseed
            self._awaiting_keyframe = True
            raise CodecError(f"H.264 decode failed: {e}") from e
        return frame

    def close(self):
        self._ctx = None


# ----------------------------------------------------------------------
# Factories
# ----------------------------------------------------------------------

CODEC_NAMES = ("jpeg", "h264")


def create_encoder(name: str, width: int = 0, height: int = 0, fps: int = 30,
                   quality: int = 80, bit_rate: int = 2_000_000) -> Encoder:
    if name == "jpeg":
        return JpegEncoder(quality=quality)
    if name == "h264":
        return H264Encoder(width, height, fps=fps, bit_rate=bit_rate,
                           gop_size=fps)
    raise ConfigurationError(f"Unknown colour codec: {name!r}")


def create_decoder(name: str) -> Decoder:
    if name == "jpeg":
        return JpegDecoder()
    if name == "h264":
        return H264Decoder()
    raise ConfigurationError(f"Unknown colour codec: {name!r}")
