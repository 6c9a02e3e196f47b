"""Encode captured audio and video into timed compressed buffers and release them on a clock."""

from .delivery import PeriodicClock, TimedDeliveryQueue
from .encoder import AudioEncoder, LifecycleSignals, VideoEncoder
from .errors import (
    BitrateUnattainableError,
    ConfigurationError,
    MediaPipeError,
    SessionCreationError,
    SessionPropertyError,
    TransientEncodeError,
)
from .models import (
    AudioEncoderSettings,
    DeliveryQueueSettings,
    FormatDescriptor,
    PipelineSettings,
    TimedBuffer,
    VideoEncoderSettings,
)

__all__ = [
    "AudioEncoder",
    "AudioEncoderSettings",
    "BitrateUnattainableError",
    "ConfigurationError",
    "DeliveryQueueSettings",
    "FormatDescriptor",
    "LifecycleSignals",
    "MediaPipeError",
    "PeriodicClock",
    "PipelineSettings",
    "SessionCreationError",
    "SessionPropertyError",
    "TimedBuffer",
    "TimedDeliveryQueue",
    "TransientEncodeError",
    "VideoEncoder",
    "VideoEncoderSettings",
]
