"""
Codec sessions: owned handles around PyAV codec contexts.

Each session wraps exactly one live codec context together with the property
values applied to it and a weak reference to the encoder that owns it. Codec
activity reaches the owner through a single adapter method per session
(`_pull_input` for audio input, `_on_packet` for video output), so the
encoders never deal with PyAV objects directly.

This module avoids importing PyAV at import time; it loads PyAV lazily.
"""

from __future__ import annotations

import logging
import weakref
from collections import deque
from collections.abc import Sequence
from dataclasses import dataclass
from fractions import Fraction
from typing import TYPE_CHECKING, Any, NamedTuple

from aiomediapipe.errors import (
    BitrateUnattainableError,
    SessionCreationError,
    SessionPropertyError,
    TransientEncodeError,
)
from aiomediapipe.models import (
    AudioProfile,
    FillStatus,
    FormatDescriptor,
    PixelFormat,
    ProfileLevel,
    ScalingMode,
    TimedBuffer,
)
from aiomediapipe.util import get_av

from .pixel_transfer import image_to_ndarray, transfer_image

if TYPE_CHECKING:
    import av

    from .audio import AudioEncoder
    from .video import VideoEncoder

logger = logging.getLogger(__name__)

# Upper bound of AAC: 6144 bits per channel per 1024-sample frame
_AAC_MAX_BITS_PER_SAMPLE = 6144 / 1024
_TIME_BASE_US = Fraction(1, 1_000_000)
_FALLBACK_AUDIO_PROFILE = AudioProfile.AAC_LC.value

DEFAULT_AUDIO_CODECS: tuple[str, ...] = ("aac",)
HARDWARE_VIDEO_CODECS: tuple[str, ...] = ("h264_videotoolbox", "h264_nvenc")
SOFTWARE_VIDEO_CODECS: tuple[str, ...] = ("libx264",)


def _layout_for(channels: int) -> str:
    if channels == 1:
        return "mono"
    if channels == 2:
        return "stereo"
    raise ValueError("Only mono and stereo layouts are supported")


def _capture_av_logs(action: str, func: Any) -> Any:
    """Run func while routing PyAV's own log output to our debug log."""
    av = get_av()
    with av.logging.Capture() as logs:
        result = func()
    for log in logs:
        logger.debug("%s log from av: %s", action, log)
    return result


class FillResult(NamedTuple):
    """Outcome of one AudioCodecSession.fill() request."""

    status: FillStatus
    """Whether a packet was produced, or why not."""
    packet: bytes | None = None
    """Compressed packet for FillStatus.OK."""


class AudioCodecSession:
    """
    Live AAC encoder fed through a pull-style input callback.

    The session asks its owner for input through `owner._pull_input()` until
    it can return one compressed packet, or until the owner has nothing more
    to give for this cycle.
    """

    def __init__(
        self,
        owner: AudioEncoder,
        source: FormatDescriptor,
        destination: FormatDescriptor,
        *,
        codec_names: Sequence[str] = DEFAULT_AUDIO_CODECS,
    ) -> None:
        """
        Record the formats; the codec itself is opened by prepare().

        Raises:
            SessionCreationError: If the destination channel layout is unsupported.
        """
        self._owner = weakref.ref(owner)
        self.source = source
        self.destination = destination
        self.properties: dict[str, object] = {}
        self.invalid = False
        self._codec_names = tuple(codec_names)
        self._context: av.AudioCodecContext | None = None
        self._resampler: av.AudioResampler | None = None
        self._fifo: av.AudioFifo | None = None
        self._pending: deque[bytes] = deque()
        self._next_pts = 0
        self._codec_name: str | None = None
        self._profile = destination.profile
        self._bit_rate = 0
        self._opened = False
        try:
            self._layout = _layout_for(destination.channels)
        except ValueError as err:
            raise SessionCreationError(str(err)) from err

    @property
    def codec_name(self) -> str | None:
        """Return the name of the codec actually opened."""
        return self._codec_name

    @property
    def profile(self) -> str | None:
        """Return the AAC profile the open codec runs with."""
        return self._profile

    @property
    def extradata(self) -> bytes | None:
        """Return the AudioSpecificConfig once the codec is open."""
        if self._context is None or not self._context.extradata:
            return None
        return bytes(self._context.extradata)

    def _max_bit_rate(self) -> int:
        return int(_AAC_MAX_BITS_PER_SAMPLE * self.destination.sample_rate * self.destination.channels)

    def set_bitrate(self, bit_rate: int) -> None:
        """
        Apply the total bitrate (all channels) to the session.

        Raises:
            BitrateUnattainableError: If the codec cannot run at this bitrate.
        """
        if bit_rate <= 0 or bit_rate > self._max_bit_rate():
            raise BitrateUnattainableError(
                bit_rate, f"outside 1..{self._max_bit_rate()} for {self.destination.sample_rate} Hz"
            )
        self._bit_rate = bit_rate
        self.properties["bitrate"] = bit_rate
        if self._opened:
            # Rate control is fixed at open time
            self._flush()
            try:
                self._open()
            except SessionCreationError as err:
                self.invalid = True
                raise BitrateUnattainableError(bit_rate, str(err)) from err

    def prepare(self) -> None:
        """Open the codec.

        Raises:
            SessionCreationError: If no candidate codec can be opened.
        """
        self._open()

    def _flush(self) -> None:
        """Drain the packets the open codec still holds into the pending queue."""
        if self._context is None:
            return
        try:
            for packet in self._context.encode(None):
                self._pending.append(bytes(packet))
        except (get_av().error.FFmpegError, ValueError) as err:
            logger.debug("Audio codec flush failed: %s", err)

    def _open(self) -> None:
        requested = self._profile
        try:
            self._open_with_profile(requested)
        except SessionCreationError:
            if requested in (None, _FALLBACK_AUDIO_PROFILE):
                raise
            logger.warning(
                "No audio codec among %s supports profile %s, falling back to %s",
                self._codec_names,
                requested,
                _FALLBACK_AUDIO_PROFILE,
            )
            self._open_with_profile(_FALLBACK_AUDIO_PROFILE)

    def _open_with_profile(self, profile: str | None) -> None:
        av = get_av()
        last_error: Exception | None = None
        for name in self._codec_names:
            try:
                context = av.AudioCodecContext.create(name, "w")
                formats = context.codec.audio_formats
                codec_format = formats[0].name if formats else "fltp"
                context.sample_rate = self.destination.sample_rate
                context.layout = self._layout
                context.format = codec_format
                context.time_base = Fraction(1, self.destination.sample_rate)
                if self._bit_rate:
                    context.bit_rate = self._bit_rate
                if profile:
                    context.options = {"profile": profile}
                _capture_av_logs("Opening AudioCodecContext", context.open)
            except (av.error.FFmpegError, ValueError) as err:
                logger.debug("Audio codec %s unavailable: %s", name, err)
                last_error = err
                continue
            self._context = context
            self._codec_name = name
            self._profile = profile
            self._resampler = av.AudioResampler(
                format=codec_format,
                layout=self._layout,
                rate=self.destination.sample_rate,
            )
            if self._fifo is None:
                self._fifo = av.AudioFifo()
            self._opened = True
            self.properties["codec"] = name
            logger.info(
                "Opened audio codec %s: %d Hz, %d ch, %d bps",
                name,
                self.destination.sample_rate,
                self.destination.channels,
                context.bit_rate,
            )
            return
        raise SessionCreationError(
            f"No usable audio codec among {self._codec_names} for profile {profile}: {last_error}"
        )

    def fill(self) -> FillResult:
        """Produce one compressed packet, pulling input from the owner as needed."""
        if self._pending:
            return FillResult(FillStatus.OK, self._pending.popleft())
        fed = False
        while not self._pending:
            planes = self._pull_input()
            if planes is None:
                break
            fed = True
            try:
                self._feed(planes)
            except TransientEncodeError as err:
                logger.debug("Skipping audio input: %s", err)
                return FillResult(FillStatus.FAILED)
            except (get_av().error.FFmpegError, ValueError) as err:
                logger.warning("Audio codec rejected input: %s", err)
                return FillResult(FillStatus.FAILED)
        if self._pending:
            return FillResult(FillStatus.OK, self._pending.popleft())
        return FillResult(FillStatus.INSUFFICIENT_INPUT if fed else FillStatus.END_OF_INPUT)

    def _pull_input(self) -> list[bytearray] | None:
        """Adapter from the codec's input request to the owning encoder."""
        owner = self._owner()
        if owner is None:
            return None
        return owner._pull_input()  # noqa: SLF001

    def _feed(self, planes: list[bytearray]) -> None:
        if self._context is None or self._resampler is None or self._fifo is None:
            raise TransientEncodeError("session not prepared")
        sample_format = self.source.sample_format
        if sample_format is None:
            raise TransientEncodeError("source has no sample format")
        stride = self.source.bytes_per_frame
        samples = min(len(p) for p in planes) // stride if planes else 0
        if samples == 0:
            raise TransientEncodeError("empty audio buffer")
        expected_planes = self.source.channels if sample_format.is_planar else 1
        if len(planes) < expected_planes:
            raise TransientEncodeError(f"expected {expected_planes} planes, got {len(planes)}")

        av = get_av()
        frame = av.AudioFrame(
            format=sample_format.value,
            layout=_layout_for(self.source.channels),
            samples=samples,
        )
        frame.sample_rate = self.source.sample_rate
        for plane, region in zip(frame.planes, planes[:expected_planes]):
            plane.update(bytes(region[: samples * stride]))
        for resampled in self._resampler.resample(frame):
            resampled.pts = None
            self._fifo.write(resampled)

        frame_size = self._context.frame_size or self.destination.frames_per_packet
        while self._fifo.samples >= frame_size:
            chunk = self._fifo.read(frame_size)
            if chunk is None:
                break
            chunk.pts = self._next_pts
            chunk.time_base = self._context.time_base
            self._next_pts += chunk.samples
            for packet in self._context.encode(chunk):
                self._pending.append(bytes(packet))

    def close(self) -> None:
        """Release the codec context."""
        self._context = None
        self._resampler = None
        self._fifo = None
        self._pending.clear()
        self._opened = False


class EncodedPacket(NamedTuple):
    """One compressed video access unit handed back by a session."""

    data: bytes
    presentation_time_us: int
    decode_time_us: int
    duration_us: int
    is_keyframe: bool


@dataclass(frozen=True)
class VideoSessionAttributes:
    """Attributes fixed for the lifetime of a video session."""

    width: int
    height: int
    scaling_mode: ScalingMode
    hardware_encoder_enabled: bool


class VideoProperty:
    """Keys of the video session property set."""

    REALTIME = "realtime"
    PROFILE_LEVEL = "profile_level"
    AVERAGE_BITRATE = "average_bitrate"
    EXPECTED_FRAME_RATE = "expected_frame_rate"
    MAX_KEY_FRAME_INTERVAL_DURATION = "max_key_frame_interval_duration"
    ALLOW_FRAME_REORDERING = "allow_frame_reordering"
    ENTROPY_MODE = "entropy_mode"
    DATA_RATE_LIMITS = "data_rate_limits"


def _gop_size(properties: dict[str, Any]) -> int:
    fps = float(properties.get(VideoProperty.EXPECTED_FRAME_RATE, 30.0))
    interval = float(properties.get(VideoProperty.MAX_KEY_FRAME_INTERVAL_DURATION, 2.0))
    return max(1, round(fps * interval))


def _codec_options(name: str, properties: dict[str, Any]) -> dict[str, str]:
    """Translate the property set into the private options of one encoder."""
    profile_level = ProfileLevel(properties[VideoProperty.PROFILE_LEVEL])
    options: dict[str, str] = {"profile": profile_level.profile}
    if profile_level.level is not None:
        options["level"] = profile_level.level
    if entropy := properties.get(VideoProperty.ENTROPY_MODE):
        options["coder"] = str(entropy)
    realtime = bool(properties.get(VideoProperty.REALTIME, True))
    if name == "libx264":
        options["preset"] = "veryfast"
        options["forced-idr"] = "1"
        if realtime:
            options["tune"] = "zerolatency"
    elif name == "h264_videotoolbox":
        options["realtime"] = "1" if realtime else "0"
        options["allow_sw"] = "0"
    elif name == "h264_nvenc":
        options["zerolatency"] = "1" if realtime else "0"
    limits = properties.get(VideoProperty.DATA_RATE_LIMITS)
    if limits:
        limit_bytes, limit_seconds = limits
        options["maxrate"] = str(int(limit_bytes * 8 / limit_seconds))
        options["bufsize"] = str(int(limit_bytes * 8))
    return options


def _supported_option_names(context: Any) -> list[str]:
    descriptor = getattr(context.codec, "descriptor", None)
    options = getattr(descriptor, "options", None) or ()
    return sorted(str(getattr(option, "name", option)) for option in options)


class VideoCompressionSession:
    """Live H.264 compression session whose output is routed to its owner."""

    def __init__(
        self,
        owner: VideoEncoder,
        attributes: VideoSessionAttributes,
        properties: dict[str, Any],
    ) -> None:
        """
        Create and open the codec.

        Raises:
            SessionCreationError: If no candidate codec can be opened.
        """
        self._owner = weakref.ref(owner)
        self.attributes = attributes
        self.properties = dict(properties)
        self.invalid = False
        self._context: av.VideoCodecContext | None = None
        self._codec_name: str | None = None
        self._durations: dict[int, int] = {}
        self._frames_since_key = 0
        self._open()

    @property
    def codec_name(self) -> str | None:
        """Return the name of the codec actually opened."""
        return self._codec_name

    @property
    def extradata(self) -> bytes | None:
        """Return the codec configuration record, if the codec exposes one."""
        if self._context is None or not self._context.extradata:
            return None
        return bytes(self._context.extradata)

    @property
    def pix_fmt(self) -> str | None:
        """Return the pixel format the codec consumes."""
        return None if self._context is None else str(self._context.pix_fmt)

    def _candidates(self) -> tuple[str, ...]:
        if self.attributes.hardware_encoder_enabled:
            return HARDWARE_VIDEO_CODECS + SOFTWARE_VIDEO_CODECS
        return SOFTWARE_VIDEO_CODECS

    def _open(self) -> None:
        av = get_av()
        attrs = self.attributes
        props = self.properties
        last_error: Exception | None = None
        for name in self._candidates():
            try:
                context = av.CodecContext.create(name, "w")
                context.width = attrs.width
                context.height = attrs.height
                context.pix_fmt = "nv12" if name == "h264_videotoolbox" else "yuv420p"
                context.time_base = _TIME_BASE_US
                context.framerate = Fraction(props[VideoProperty.EXPECTED_FRAME_RATE]).limit_denominator(1001)
                context.bit_rate = int(props[VideoProperty.AVERAGE_BITRATE])
                context.gop_size = _gop_size(props)
                context.max_b_frames = 2 if props.get(VideoProperty.ALLOW_FRAME_REORDERING) else 0
                context.options = _codec_options(name, props)
                _capture_av_logs("Opening VideoCodecContext", context.open)
            except (av.error.FFmpegError, ValueError) as err:
                if name in HARDWARE_VIDEO_CODECS:
                    logger.warning("Hardware encoder %s unavailable (%s), trying next", name, err)
                else:
                    logger.debug("Video codec %s unavailable: %s", name, err)
                last_error = err
                continue
            self._context = context
            self._codec_name = name
            if logger.isEnabledFor(logging.INFO):
                logger.info(
                    "Video session %s %dx%d supports: %s",
                    name,
                    attrs.width,
                    attrs.height,
                    ", ".join(_supported_option_names(context)),
                )
            return
        raise SessionCreationError(f"No usable H.264 encoder: {last_error}")

    def set_property(self, key: str, value: Any) -> None:
        """
        Apply a property to the live session.

        Raises:
            SessionPropertyError: If the session cannot take the value.
        """
        context = self._context
        if context is None:
            raise SessionPropertyError(key, value, "session closed")
        try:
            if key == VideoProperty.AVERAGE_BITRATE:
                context.bit_rate = int(value)
            elif key in (VideoProperty.EXPECTED_FRAME_RATE, VideoProperty.MAX_KEY_FRAME_INTERVAL_DURATION):
                # An open encoder keeps its keyint, encode() forces key frames instead
                _gop_size({**self.properties, key: value})
            elif key == VideoProperty.DATA_RATE_LIMITS:
                limit_bytes, limit_seconds = value
                context.rc_max_rate = int(limit_bytes * 8 / limit_seconds)
                context.rc_buffer_size = int(limit_bytes * 8)
            else:
                raise SessionPropertyError(key, value, "not settable on a live session")
        except (AttributeError, TypeError, ValueError) as err:
            raise SessionPropertyError(key, value, str(err)) from err
        self.properties[key] = value

    def encode(self, image: TimedBuffer, presentation_time_us: int, duration_us: int) -> None:
        """Submit one image; compressed output arrives through the owner's handler."""
        context = self._context
        if context is None:
            raise TransientEncodeError("session closed")
        av = get_av()
        fmt = image.format
        pixel_format = fmt.pixel_format or PixelFormat.RGB24
        try:
            source = av.VideoFrame.from_ndarray(
                image_to_ndarray(image.planes, fmt), format=pixel_format.value
            )
            frame = transfer_image(
                source,
                self.attributes.width,
                self.attributes.height,
                self.attributes.scaling_mode,
                str(context.pix_fmt),
            )
            frame.pts = presentation_time_us
            frame.time_base = _TIME_BASE_US
            if self._frames_since_key >= _gop_size(self.properties):
                frame.pict_type = av.video.frame.PictureType.I
                self._frames_since_key = 0
            self._durations[presentation_time_us] = duration_us
            packets = context.encode(frame)
        except (av.error.FFmpegError, ValueError) as err:
            self._durations.pop(presentation_time_us, None)
            raise TransientEncodeError(f"frame at {presentation_time_us} us: {err}") from err
        self._frames_since_key += 1
        for packet in packets:
            self._on_packet(packet)

    def _on_packet(self, packet: av.Packet) -> None:
        """Adapter from a codec output packet to the owning encoder."""
        owner = self._owner()
        if owner is None:
            return
        pts = int(packet.pts) if packet.pts is not None else 0
        dts = int(packet.dts) if packet.dts is not None else pts
        duration = self._durations.pop(pts, None)
        if duration is None:
            duration = int(packet.duration or 0)
        owner._handle_encoded_packet(  # noqa: SLF001
            self,
            EncodedPacket(
                data=bytes(packet),
                presentation_time_us=pts,
                decode_time_us=dts,
                duration_us=duration,
                is_keyframe=bool(packet.is_keyframe),
            ),
        )

    def close(self) -> None:
        """Release the codec context."""
        self._context = None
        self._durations.clear()
        self._frames_since_key = 0
