"""Audio and video encoders built on PyAV codec sessions."""

from __future__ import annotations

__all__ = [
    "AudioCodecSession",
    "AudioEncoder",
    "EncodedPacket",
    "FillResult",
    "LazyResourceState",
    "LifecycleSignals",
    "SessionState",
    "VideoCompressionSession",
    "VideoEncoder",
    "VideoProperty",
    "VideoSessionAttributes",
]

from .audio import AudioEncoder
from .lifecycle import LifecycleSignals
from .session import (
    AudioCodecSession,
    EncodedPacket,
    FillResult,
    VideoCompressionSession,
    VideoProperty,
    VideoSessionAttributes,
)
from .state import LazyResourceState, SessionState
from .video import VideoEncoder
