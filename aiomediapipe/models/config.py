"""
Typed settings for the encoders and the delivery queue.

Every recognised option is an explicit field, validated when the settings
object is built. Settings round-trip through JSON so applications can keep
them in configuration files.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from aiomediapipe.errors import ConfigurationError

from .types import AudioProfile, ProfileLevel, ScalingMode

MINIMUM_AUDIO_BITRATE = 8 * 1024
"""Floor of the audio bitrate degradation ladder, and its step size."""
DEFAULT_AUDIO_BITRATE = 32 * 1024
DEFAULT_VIDEO_BITRATE = 160 * 1024
DEFAULT_VIDEO_WIDTH = 480
DEFAULT_VIDEO_HEIGHT = 272
DEFAULT_FRAME_RATE = 30.0
DEFAULT_BUFFER_TIME_US = 100_000
DISABLED_DATA_RATE_LIMITS: tuple[int, int] = (0, 0)


@dataclass(frozen=True)
class AudioEncoderSettings(DataClassORJSONMixin):
    """Settings of an AudioEncoder."""

    muted: bool = False
    """Encode silence in place of the captured samples."""
    bitrate: int = DEFAULT_AUDIO_BITRATE
    """Requested bitrate per channel in bits per second."""
    profile: AudioProfile = AudioProfile.AAC_LC
    """AAC object type."""
    sample_rate: int = 0
    """Output sample rate in Hz, 0 to follow the source."""
    channels: int = 0
    """Output channel count, 0 to follow the source."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.bitrate < MINIMUM_AUDIO_BITRATE:
            raise ConfigurationError(
                f"bitrate must be at least {MINIMUM_AUDIO_BITRATE}, got {self.bitrate}"
            )
        if self.sample_rate < 0:
            raise ConfigurationError(f"sample_rate must not be negative, got {self.sample_rate}")
        if self.channels not in (0, 1, 2):
            raise ConfigurationError(f"channels must be 0, 1 or 2, got {self.channels}")


@dataclass(frozen=True)
class VideoEncoderSettings(DataClassORJSONMixin):
    """Settings of a VideoEncoder."""

    muted: bool = False
    """Repeat the last live image instead of encoding new ones."""
    width: int = DEFAULT_VIDEO_WIDTH
    """Encoded width in pixels."""
    height: int = DEFAULT_VIDEO_HEIGHT
    """Encoded height in pixels."""
    bitrate: int = DEFAULT_VIDEO_BITRATE
    """Average bitrate in bits per second."""
    profile_level: ProfileLevel = ProfileLevel.BASELINE_3_1
    """H.264 profile and level."""
    scaling_mode: ScalingMode = ScalingMode.TRIM
    """How source images are fitted into width x height."""
    max_key_frame_interval_duration: float = 2.0
    """Longest distance between key frames in seconds."""
    expected_frame_rate: float = DEFAULT_FRAME_RATE
    """Frame rate hint for rate control."""
    hardware_encoder_enabled: bool = True
    """Prefer a hardware encoder when one is available."""
    data_rate_limits: tuple[int, int] = DISABLED_DATA_RATE_LIMITS
    """Hard cap as (bytes, seconds); (0, 0) disables the cap."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.width <= 0 or self.height <= 0:
            raise ConfigurationError(f"invalid dimensions {self.width}x{self.height}")
        if self.width % 2 or self.height % 2:
            raise ConfigurationError(
                f"dimensions must be even for 4:2:0 encoding, got {self.width}x{self.height}"
            )
        if self.bitrate <= 0:
            raise ConfigurationError(f"bitrate must be positive, got {self.bitrate}")
        if self.max_key_frame_interval_duration <= 0:
            raise ConfigurationError(
                "max_key_frame_interval_duration must be positive, "
                f"got {self.max_key_frame_interval_duration}"
            )
        if self.expected_frame_rate <= 0:
            raise ConfigurationError(
                f"expected_frame_rate must be positive, got {self.expected_frame_rate}"
            )
        limit_bytes, limit_seconds = self.data_rate_limits
        if limit_bytes < 0 or limit_seconds < 0:
            raise ConfigurationError(f"invalid data_rate_limits {self.data_rate_limits}")
        if (limit_bytes == 0) != (limit_seconds == 0):
            raise ConfigurationError(
                f"data_rate_limits must set both values or neither, got {self.data_rate_limits}"
            )

    @property
    def data_rate_limits_enabled(self) -> bool:
        """Return True when a hard data rate cap is configured."""
        return self.data_rate_limits != DISABLED_DATA_RATE_LIMITS


@dataclass(frozen=True)
class DeliveryQueueSettings(DataClassORJSONMixin):
    """Settings of a TimedDeliveryQueue."""

    buffer_time_us: int = DEFAULT_BUFFER_TIME_US
    """Accumulated duration that must be exceeded before release starts."""
    max_deliveries_per_tick: int = 1
    """Upper bound of entries released per clock tick."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.buffer_time_us < 0:
            raise ConfigurationError(
                f"buffer_time_us must not be negative, got {self.buffer_time_us}"
            )
        if self.max_deliveries_per_tick < 1:
            raise ConfigurationError(
                f"max_deliveries_per_tick must be at least 1, got {self.max_deliveries_per_tick}"
            )


@dataclass(frozen=True)
class PipelineSettings(DataClassORJSONMixin):
    """Settings for a complete capture-to-delivery setup."""

    audio: AudioEncoderSettings = field(default_factory=AudioEncoderSettings)
    video: VideoEncoderSettings = field(default_factory=VideoEncoderSettings)
    delivery: DeliveryQueueSettings = field(default_factory=DeliveryQueueSettings)

    class Config(BaseConfig):
        """Config for parsing json settings."""

        omit_none = True


def changed_fields(old: object, new: object) -> list[str]:
    """Return the names of dataclass fields whose values differ."""
    return [f.name for f in fields(old) if getattr(old, f.name) != getattr(new, f.name)]  # type: ignore[arg-type]


def settings_keys(settings_type: type) -> tuple[str, ...]:
    """Return the recognised option names of a settings dataclass."""
    return tuple(f.name for f in fields(settings_type))
