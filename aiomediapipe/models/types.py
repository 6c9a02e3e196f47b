"""Models for enum types used by aiomediapipe."""

from enum import Enum


class MediaType(Enum):
    """Kind of media carried by a buffer."""

    AUDIO = "audio"
    VIDEO = "video"


class CodecType(Enum):
    """Codec identifier of a buffer payload."""

    PCM = "pcm"
    """Uncompressed audio samples."""
    AAC = "aac"
    """MPEG-4 AAC compressed audio."""
    RAW_VIDEO = "raw_video"
    """Uncompressed images."""
    H264 = "h264"
    """H.264/AVC compressed video."""


class SampleFormat(Enum):
    """PCM sample layouts, named after their PyAV format strings."""

    S16 = "s16"
    S32 = "s32"
    FLT = "flt"
    S16P = "s16p"
    S32P = "s32p"
    FLTP = "fltp"

    @property
    def is_planar(self) -> bool:
        """Return True when each channel lives in its own payload region."""
        return self.value.endswith("p")

    @property
    def bytes_per_sample(self) -> int:
        """Return the byte width of one sample of one channel."""
        return 2 if self.value.startswith("s16") else 4


class PixelFormat(Enum):
    """Raw image layouts, named after their PyAV format strings."""

    RGB24 = "rgb24"
    BGR24 = "bgr24"
    RGBA = "rgba"
    BGRA = "bgra"
    GRAY = "gray"
    YUV420P = "yuv420p"
    NV12 = "nv12"

    @property
    def is_packed(self) -> bool:
        """Return True for single-plane interleaved pixel layouts."""
        return self not in (PixelFormat.YUV420P, PixelFormat.NV12)

    @property
    def components(self) -> int:
        """Return bytes per pixel for packed formats (1 for planar luma rows)."""
        return {
            PixelFormat.RGB24: 3,
            PixelFormat.BGR24: 3,
            PixelFormat.RGBA: 4,
            PixelFormat.BGRA: 4,
        }.get(self, 1)

    def frame_size(self, width: int, height: int) -> int:
        """Return the number of bytes one image of this format occupies."""
        if self.is_packed:
            return width * height * self.components
        return width * height * 3 // 2


class AudioProfile(Enum):
    """AAC object types supported by the audio encoder."""

    AAC_LC = "aac_low"
    """Low complexity, the default."""
    AAC_HE = "aac_he"
    """High efficiency (SBR)."""
    AAC_HE_V2 = "aac_he_v2"
    """High efficiency v2 (SBR + PS)."""
    AAC_LD = "aac_ld"
    """Low delay."""
    AAC_ELD = "aac_eld"
    """Enhanced low delay."""


class ProfileLevel(Enum):
    """H.264 profile and level combinations."""

    BASELINE_3_0 = "baseline_3_0"
    BASELINE_3_1 = "baseline_3_1"
    BASELINE_4_1 = "baseline_4_1"
    BASELINE_AUTO = "baseline_auto"
    MAIN_3_1 = "main_3_1"
    MAIN_4_1 = "main_4_1"
    MAIN_AUTO = "main_auto"
    HIGH_4_0 = "high_4_0"
    HIGH_4_1 = "high_4_1"
    HIGH_AUTO = "high_auto"

    @property
    def profile(self) -> str:
        """Return the profile name (e.g. 'baseline')."""
        return self.value.split("_", 1)[0]

    @property
    def level(self) -> str | None:
        """Return the level as a dotted string, or None for automatic."""
        _, level = self.value.split("_", 1)
        if level == "auto":
            return None
        return level.replace("_", ".")

    @property
    def is_baseline(self) -> bool:
        """Return True for the baseline profile (no B-frames, no CABAC)."""
        return self.profile == "baseline"


class ScalingMode(Enum):
    """How a source image is fitted into the encoder's dimensions."""

    NORMAL = "normal"
    """Stretch to the target size."""
    LETTERBOX = "letterbox"
    """Fit inside the target, padding the remainder with black."""
    TRIM = "trim"
    """Fill the target, cropping the overflowing edges."""
    CROP_SOURCE_TO_CLEAN_APERTURE = "crop_source_to_clean_aperture"
    """Take the centred target-sized region of the source without scaling."""


class LifecycleEvent(Enum):
    """Application lifecycle signals that affect hardware codec sessions."""

    WILL_ENTER_FOREGROUND = "will_enter_foreground"
    """The application returned from the background."""
    AUDIO_INTERRUPTION_BEGAN = "audio_interruption_began"
    """Another application took over the audio session."""
    AUDIO_INTERRUPTION_ENDED = "audio_interruption_ended"
    """The audio session interruption is over."""


class FillStatus(Enum):
    """Outcome of one pull-style codec fill request."""

    OK = "ok"
    """One compressed packet was produced."""
    INSUFFICIENT_INPUT = "insufficient_input"
    """Input was consumed but the codec needs more before it can emit."""
    END_OF_INPUT = "end_of_input"
    """No input left for this cycle."""
    FAILED = "failed"
    """The codec rejected the input."""


class PropertyStatus(Enum):
    """Result of the last property set on a video session."""

    OK = "ok"
    REJECTED = "rejected"
