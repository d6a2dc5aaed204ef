"""rgbd-link — stream or record synchronized colour + depth from a mobile rig.

Quick start (consumer)::

    from rgbd_link import RGBDObserver

    with RGBDObserver("tcp://0.0.0.0:5600") as observer:
        depth = observer.get_frame("depth")  # float32 metres, NaN = no data

Quick start (device)::

    from rgbd_link import CaptureStreamer, SyntheticSensorSession

    with CaptureStreamer(SyntheticSensorSession(), "tcp://192.168.1.20:5600"):
        ...

For local recording use :class:`DualOutputSynchronizer`.
"""

from .depth_codec import (
    DEFAULT_DEPTH_RANGE, INVALID_DEPTH, DepthRange, DepthVisualizer,
    decode_depth, encode_depth, depth_to_visualization,
)
from .errors import (
    CodecError, ConfigurationError, ProtocolError, RecordingError, RGBDLinkError,
)
from .observer import Frame, RGBDObserver
from .protocol import (
    DEFAULT_BIND_ENDPOINT, DEFAULT_ENDPOINT, HEADER_SIZE, MAX_PAYLOAD_SIZE,
    CompressedUnit, PacketParser, StreamKind,
    decode_packet, encode_packet, read_packet,
)
from .recorder import (
    DualOutputSynchronizer, RecordingConfig, RecordingResult, RecordingState,
)
from .sender import TransportSender
from .sensors import SensorSession, SyntheticSensorSession
from .streamer import CaptureStreamer

__version__ = "0.1.0"

__all__ = [
    "CaptureStreamer",
    "RGBDObserver",
    "Frame",
    "TransportSender",
    "DualOutputSynchronizer",
    "RecordingConfig",
    "RecordingResult",
    "RecordingState",
    "SensorSession",
    "SyntheticSensorSession",
    "CompressedUnit",
    "StreamKind",
    "PacketParser",
    "encode_packet",
    "decode_packet",
    "read_packet",
    "DepthRange",
    "DepthVisualizer",
    "encode_depth",
    "decode_depth",
    "depth_to_visualization",
    "DEFAULT_DEPTH_RANGE",
    "INVALID_DEPTH",
    "DEFAULT_ENDPOINT",
    "DEFAULT_BIND_ENDPOINT",
    "HEADER_SIZE",
    "MAX_PAYLOAD_SIZE",
    "RGBDLinkError",
    "ProtocolError",
    "CodecError",
    "RecordingError",
    "ConfigurationError",
    "__version__",
]
