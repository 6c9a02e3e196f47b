"""
Timed media buffers and their format descriptions.

A TimedBuffer is the single unit of media exchanged between capture, the
encoders, the delivery queue and whatever consumes their output. Timestamps
are integer microseconds throughout.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass

from mashumaro.config import BaseConfig
from mashumaro.mixins.orjson import DataClassORJSONMixin

from .types import CodecType, MediaType, PixelFormat, SampleFormat

BytesLike = bytes | bytearray | memoryview


@dataclass(frozen=True)
class FormatDescriptor(DataClassORJSONMixin):
    """Layout and codec parameters of a TimedBuffer payload."""

    media_type: MediaType
    """Audio or video."""
    codec: CodecType
    """Codec of the payload."""
    sample_rate: int = 0
    """Audio sample rate in Hz."""
    channels: int = 0
    """Audio channel count."""
    bits_per_channel: int = 0
    """Bits per sample of one channel (0 for compressed audio)."""
    sample_format: SampleFormat | None = None
    """PCM sample layout, None for compressed audio and video."""
    width: int = 0
    """Image width in pixels."""
    height: int = 0
    """Image height in pixels."""
    pixel_format: PixelFormat | None = None
    """Raw image layout, None for compressed video and audio."""
    frames_per_packet: int = 0
    """Audio frames carried by one compressed packet."""
    profile: str | None = None
    """Codec profile (e.g. 'aac_low', 'baseline_3_1')."""
    extradata: bytes | None = None
    """Out-of-band codec configuration (AudioSpecificConfig, avcC)."""

    def __post_init__(self) -> None:
        """Validate field values."""
        if self.media_type == MediaType.AUDIO:
            if self.sample_rate <= 0:
                raise ValueError(f"sample_rate must be positive, got {self.sample_rate}")
            if self.channels <= 0:
                raise ValueError(f"channels must be positive, got {self.channels}")
            if self.codec == CodecType.PCM and self.sample_format is None:
                raise ValueError("sample_format is required for PCM audio")
        else:
            if self.width <= 0 or self.height <= 0:
                raise ValueError(f"invalid dimensions {self.width}x{self.height}")
            if self.codec == CodecType.RAW_VIDEO and self.pixel_format is None:
                raise ValueError("pixel_format is required for raw video")

    @classmethod
    def pcm(
        cls,
        sample_rate: int,
        channels: int,
        sample_format: SampleFormat = SampleFormat.S16,
    ) -> FormatDescriptor:
        """Describe uncompressed audio as delivered by a capture source."""
        return cls(
            media_type=MediaType.AUDIO,
            codec=CodecType.PCM,
            sample_rate=sample_rate,
            channels=channels,
            bits_per_channel=sample_format.bytes_per_sample * 8,
            sample_format=sample_format,
        )

    @classmethod
    def image(
        cls,
        width: int,
        height: int,
        pixel_format: PixelFormat = PixelFormat.RGB24,
    ) -> FormatDescriptor:
        """Describe an uncompressed image as delivered by a camera."""
        return cls(
            media_type=MediaType.VIDEO,
            codec=CodecType.RAW_VIDEO,
            width=width,
            height=height,
            pixel_format=pixel_format,
        )

    @property
    def is_compressed(self) -> bool:
        """Return True unless the payload is raw PCM or raw pixels."""
        return self.codec not in (CodecType.PCM, CodecType.RAW_VIDEO)

    @property
    def bytes_per_frame(self) -> int:
        """Return bytes of one audio frame within a single payload region."""
        if self.sample_format is None:
            return 0
        if self.sample_format.is_planar:
            return self.sample_format.bytes_per_sample
        return self.sample_format.bytes_per_sample * self.channels

    class Config(BaseConfig):
        """Config for serializing format descriptors."""

        omit_none = True


def _as_planes(payload: BytesLike | Iterable[BytesLike]) -> list[bytearray]:
    """Normalise a payload into mutable regions, keeping bytearrays as-is."""
    if isinstance(payload, (bytes, bytearray, memoryview)):
        payload = [payload]
    return [p if isinstance(p, bytearray) else bytearray(p) for p in payload]


@dataclass(slots=True)
class TimedBuffer:
    """One unit of timed media: payload, format and timing."""

    planes: list[bytearray]
    """Payload regions: one for interleaved data, one per channel/plane otherwise."""
    format: FormatDescriptor
    """Format of the payload."""
    presentation_time_us: int
    """When the unit should be presented, in microseconds."""
    duration_us: int
    """How long the unit lasts, in microseconds."""
    decode_time_us: int | None = None
    """When the unit must be decoded; defaults to the presentation time."""
    sample_count: int | None = None
    """Audio frames (or 1 for an image); derived from the payload when omitted."""
    depends_on_others: bool = False
    """Whether decoding needs a prior unit (non-key video frames)."""

    def __post_init__(self) -> None:
        """Normalise payload and derive defaults."""
        self.planes = _as_planes(self.planes)
        if self.duration_us < 0:
            raise ValueError(f"duration_us must not be negative, got {self.duration_us}")
        if self.decode_time_us is None:
            self.decode_time_us = self.presentation_time_us
        if self.sample_count is None:
            self.sample_count = self._derive_sample_count()

    def _derive_sample_count(self) -> int:
        fmt = self.format
        if fmt.media_type == MediaType.VIDEO or fmt.is_compressed:
            return 1
        if not self.planes or fmt.bytes_per_frame == 0:
            return 0
        return len(self.planes[0]) // fmt.bytes_per_frame

    @property
    def payload(self) -> bytes:
        """Return all payload regions concatenated."""
        if len(self.planes) == 1:
            return bytes(self.planes[0])
        return b"".join(self.planes)

    @property
    def byte_count(self) -> int:
        """Return the total payload size in bytes."""
        return sum(len(p) for p in self.planes)

    @property
    def is_keyframe(self) -> bool:
        """Return True when the unit decodes on its own."""
        return not self.depends_on_others

    def zero_fill(self) -> None:
        """Overwrite every payload byte with zero, in place."""
        for plane in self.planes:
            plane[:] = bytes(len(plane))
