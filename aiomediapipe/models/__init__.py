"""Models shared by the aiomediapipe encoders and delivery queue."""

from __future__ import annotations

__all__ = [
    "DISABLED_DATA_RATE_LIMITS",
    "MINIMUM_AUDIO_BITRATE",
    "AudioEncoderSettings",
    "AudioProfile",
    "CodecType",
    "DeliveryQueueSettings",
    "FillStatus",
    "FormatDescriptor",
    "LifecycleEvent",
    "MediaType",
    "PipelineSettings",
    "PixelFormat",
    "ProfileLevel",
    "PropertyStatus",
    "SampleFormat",
    "ScalingMode",
    "TimedBuffer",
    "VideoEncoderSettings",
    "buffer",
    "config",
    "types",
]

from . import buffer, config, types
from .buffer import FormatDescriptor, TimedBuffer
from .config import (
    DISABLED_DATA_RATE_LIMITS,
    MINIMUM_AUDIO_BITRATE,
    AudioEncoderSettings,
    DeliveryQueueSettings,
    PipelineSettings,
    VideoEncoderSettings,
)
from .types import (
    AudioProfile,
    CodecType,
    FillStatus,
    LifecycleEvent,
    MediaType,
    PixelFormat,
    ProfileLevel,
    PropertyStatus,
    SampleFormat,
    ScalingMode,
)
