"""Exception taxonomy shared by every rgbd-link component.

Transport failures use the built-in :class:`ConnectionError`.
"""


class RGBDLinkError(Exception):
    """Base class for rgbd-link errors."""


class ProtocolError(RGBDLinkError, ValueError):
    """Malformed header, oversized payload or frame-number violation."""


class CodecError(RGBDLinkError, ValueError):
    """Encoding or decoding of a single unit failed."""


class ConfigurationError(RGBDLinkError, RuntimeError):
    """Illegal state transition or unsupported device/parameters."""


class RecordingError(RGBDLinkError, RuntimeError):
    """Writer initialisation or finalisation failed.

    ``result`` carries whatever did finalise, so partial output stays usable.
    """

    def __init__(self, message, result=None):
        super().__init__(message)
        self.result = result
