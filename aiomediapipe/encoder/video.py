"""
H.264 encoder fed with raw image TimedBuffers.

The compression session is created lazily from the current settings on the
first frame and rebuilt on the next frame whenever a structural setting
changes or a lifecycle event says the hardware session may be gone. Other
settings are applied to the live session in place.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any, Protocol

from aiomediapipe.errors import (
    ConfigurationError,
    SessionCreationError,
    SessionPropertyError,
    TransientEncodeError,
)
from aiomediapipe.models import (
    DISABLED_DATA_RATE_LIMITS,
    CodecType,
    FormatDescriptor,
    LifecycleEvent,
    MediaType,
    PropertyStatus,
    TimedBuffer,
    VideoEncoderSettings,
)
from aiomediapipe.models.config import changed_fields, settings_keys
from aiomediapipe.util import ListenerSet, SerialQueue

from .lifecycle import LifecycleSignals
from .session import EncodedPacket, VideoCompressionSession, VideoProperty, VideoSessionAttributes
from .state import LazyResourceState

logger = logging.getLogger(__name__)

_STRUCTURAL_FIELDS = frozenset(
    {"width", "height", "profile_level", "scaling_mode", "hardware_encoder_enabled"}
)
_LIVE_PROPERTIES = {
    "bitrate": VideoProperty.AVERAGE_BITRATE,
    "expected_frame_rate": VideoProperty.EXPECTED_FRAME_RATE,
    "max_key_frame_interval_duration": VideoProperty.MAX_KEY_FRAME_INTERVAL_DURATION,
    "data_rate_limits": VideoProperty.DATA_RATE_LIMITS,
}
_INVALIDATING_EVENTS = frozenset(
    {LifecycleEvent.WILL_ENTER_FOREGROUND, LifecycleEvent.AUDIO_INTERRUPTION_ENDED}
)


class VideoSession(Protocol):
    """What the encoder needs from a compression session."""

    @property
    def extradata(self) -> bytes | None:
        """Out-of-band codec configuration."""

    def set_property(self, key: str, value: Any) -> None:
        """Apply a property or raise SessionPropertyError."""

    def encode(self, image: TimedBuffer, presentation_time_us: int, duration_us: int) -> None:
        """Compress one image; output goes to the owner's packet handler."""

    def close(self) -> None:
        """Release the codec."""


VideoSessionFactory = Callable[
    ["VideoEncoder", VideoSessionAttributes, dict[str, Any]], VideoSession
]


def session_attributes(settings: VideoEncoderSettings) -> VideoSessionAttributes:
    """Return the attributes a session is created with."""
    return VideoSessionAttributes(
        width=settings.width,
        height=settings.height,
        scaling_mode=settings.scaling_mode,
        hardware_encoder_enabled=settings.hardware_encoder_enabled,
    )


def session_properties(settings: VideoEncoderSettings) -> dict[str, Any]:
    """Return the property set a session is created with."""
    baseline = settings.profile_level.is_baseline
    properties: dict[str, Any] = {
        VideoProperty.REALTIME: True,
        VideoProperty.PROFILE_LEVEL: settings.profile_level.value,
        VideoProperty.AVERAGE_BITRATE: settings.bitrate,
        VideoProperty.EXPECTED_FRAME_RATE: settings.expected_frame_rate,
        VideoProperty.MAX_KEY_FRAME_INTERVAL_DURATION: settings.max_key_frame_interval_duration,
        VideoProperty.ALLOW_FRAME_REORDERING: not baseline,
        VideoProperty.ENTROPY_MODE: "cavlc" if baseline else "cabac",
    }
    if settings.data_rate_limits_enabled:
        properties[VideoProperty.DATA_RATE_LIMITS] = settings.data_rate_limits
    return properties


class VideoEncoder:
    """Encode raw image TimedBuffers into H.264 TimedBuffers."""

    SUPPORTED_SETTINGS: tuple[str, ...] = settings_keys(VideoEncoderSettings)

    def __init__(
        self,
        settings: VideoEncoderSettings | None = None,
        *,
        lifecycle: LifecycleSignals | None = None,
        session_factory: VideoSessionFactory | None = None,
    ) -> None:
        """
        Create an idle encoder.

        Args:
            settings: Initial settings, defaults when omitted.
            lifecycle: Source of lifecycle events that invalidate the session.
            session_factory: Builds compression sessions; a PyAV session by default.
        """
        self._settings = settings or VideoEncoderSettings()
        self._lifecycle = lifecycle
        self._session_factory: VideoSessionFactory = session_factory or VideoCompressionSession
        self._queue = SerialQueue("video-encoder")
        self._running = False
        self._session: VideoSession | None = None
        self._session_state = LazyResourceState("video session")
        self._last_image: TimedBuffer | None = None
        self._published_format: FormatDescriptor | None = None
        self._last_status = PropertyStatus.OK
        self._remove_lifecycle_listener: Callable[[], None] | None = None
        self._format_listeners: ListenerSet[FormatDescriptor | None] = ListenerSet("video format")
        self._sample_listeners: ListenerSet[TimedBuffer] = ListenerSet("video sample")

    @property
    def settings(self) -> VideoEncoderSettings:
        """Return the most recently configured settings."""
        return self._settings

    @property
    def running(self) -> bool:
        """Return True between start() and stop()."""
        return self._running

    @property
    def last_status(self) -> PropertyStatus:
        """Return the outcome of the last live property change."""
        return self._last_status

    @property
    def session_rebuilds(self) -> int:
        """Return how many times an invalidated session was rebuilt."""
        return self._session_state.rebuilds

    @property
    def destination_format(self) -> FormatDescriptor | None:
        """Return the published output format."""
        return self._published_format

    def add_format_listener(
        self, callback: Callable[[FormatDescriptor | None], None]
    ) -> Callable[[], None]:
        """Add a listener for output format changes. Returns a remover."""
        return self._format_listeners.add(callback)

    def add_sample_listener(self, callback: Callable[[TimedBuffer], None]) -> Callable[[], None]:
        """Add a listener for compressed buffers. Returns a remover."""
        return self._sample_listeners.add(callback)

    def configure(self, settings: VideoEncoderSettings) -> None:
        """
        Apply new settings in submission order with frames.

        Raises:
            ConfigurationError: If settings is not a VideoEncoderSettings.
        """
        if not isinstance(settings, VideoEncoderSettings):
            raise ConfigurationError(f"expected VideoEncoderSettings, got {type(settings).__name__}")
        self._queue.dispatch(self._apply_settings, settings)

    def start(self) -> None:
        """Start accepting frames and listening for lifecycle events."""
        self._queue.dispatch(self._start)

    def stop(self) -> None:
        """Stop, dispose the session and forget the last image. Safe to call repeatedly."""
        self._queue.dispatch(self._stop)

    def invalidate(self) -> None:
        """Mark the session stale; the next frame rebuilds it."""
        self._queue.dispatch(self._session_state.invalidate)

    def encode_frame(self, image: TimedBuffer, presentation_time_us: int, duration_us: int) -> None:
        """Queue an image for encoding at the given time. Never blocks."""
        self._queue.dispatch(self._encode_frame, image, presentation_time_us, duration_us)

    async def wait_idle(self) -> None:
        """Wait until everything dispatched so far has run."""
        await self._queue.wait_idle()

    def join(self, timeout: float | None = None) -> None:
        """Block until everything dispatched so far has run."""
        self._queue.join(timeout)

    def close(self) -> None:
        """Stop and release the worker thread."""
        self.stop()
        self._queue.shutdown()

    def _on_lifecycle_event(self, event: LifecycleEvent) -> None:
        # Runs on the notifier's thread
        if event in _INVALIDATING_EVENTS:
            self.invalidate()

    # Everything below runs on the serial queue

    def _start(self) -> None:
        if self._running:
            return
        self._running = True
        if self._lifecycle is not None:
            self._remove_lifecycle_listener = self._lifecycle.add_listener(self._on_lifecycle_event)
        logger.info("Video encoder started")

    def _stop(self) -> None:
        was_running = self._running
        self._running = False
        if self._remove_lifecycle_listener is not None:
            self._remove_lifecycle_listener()
            self._remove_lifecycle_listener = None
        self._dispose_session()
        self._session_state.reset()
        self._last_image = None
        self._publish_format(None)
        if was_running:
            logger.info("Video encoder stopped")

    def _apply_settings(self, settings: VideoEncoderSettings) -> None:
        changed = changed_fields(self._settings, settings)
        self._settings = settings
        if not changed:
            return
        logger.debug("Video settings changed: %s", ", ".join(changed))
        structural = set(_STRUCTURAL_FIELDS.intersection(changed))
        if "data_rate_limits" in changed and settings.data_rate_limits == DISABLED_DATA_RATE_LIMITS:
            structural.add("data_rate_limits")
        if structural:
            self._session_state.invalidate()
            return
        if self._session is None or self._session_state.needs_build:
            # Picked up when the session is built
            return
        for name in changed:
            if key := _LIVE_PROPERTIES.get(name):
                self._set_session_property(key, getattr(settings, name))

    def _set_session_property(self, key: str, value: Any) -> None:
        if self._session is None:
            return
        try:
            self._session.set_property(key, value)
        except SessionPropertyError as err:
            self._last_status = PropertyStatus.REJECTED
            logger.warning("Video session kept its previous %s: %s", key, err)
            return
        self._last_status = PropertyStatus.OK
        logger.debug("Video session %s set to %r", key, value)

    def _dispose_session(self) -> None:
        if self._session is None:
            return
        self._session.close()
        self._session = None
        logger.info("Video session disposed")

    def _ensure_session(self) -> VideoSession | None:
        if self._session is not None and not self._session_state.needs_build:
            return self._session
        self._dispose_session()
        settings = self._settings
        try:
            session = self._session_factory(
                self, session_attributes(settings), session_properties(settings)
            )
        except SessionCreationError:
            logger.exception(
                "Could not create %dx%d video session, dropping frame",
                settings.width,
                settings.height,
            )
            return None
        self._session = session
        self._session_state.mark_configured()
        logger.info(
            "Video session created: %dx%d %s at %d bps",
            settings.width,
            settings.height,
            settings.profile_level.value,
            settings.bitrate,
        )
        return session

    def _encode_frame(self, image: TimedBuffer, presentation_time_us: int, duration_us: int) -> None:
        if not self._running:
            return
        if image.format.media_type != MediaType.VIDEO or image.format.is_compressed:
            logger.warning("Video encoder ignoring %s buffer", image.format.codec.value)
            return
        session = self._ensure_session()
        if session is None:
            return
        muted = self._settings.muted
        source = self._last_image if muted and self._last_image is not None else image
        try:
            session.encode(source, presentation_time_us, duration_us)
        except TransientEncodeError as err:
            logger.warning("Video frame at %d us not encoded: %s", presentation_time_us, err)
        if not muted:
            self._last_image = image

    def _handle_encoded_packet(self, session: VideoSession, packet: EncodedPacket) -> None:
        """Turn one compressed access unit from the current session into output."""
        if session is not self._session:
            logger.debug("Dropping output of a disposed video session")
            return
        settings = self._settings
        fmt = FormatDescriptor(
            media_type=MediaType.VIDEO,
            codec=CodecType.H264,
            width=settings.width,
            height=settings.height,
            profile=settings.profile_level.value,
            extradata=session.extradata,
        )
        self._publish_format(fmt)
        self._sample_listeners.signal(
            TimedBuffer(
                planes=[bytearray(packet.data)],
                format=self._published_format or fmt,
                presentation_time_us=packet.presentation_time_us,
                duration_us=packet.duration_us,
                decode_time_us=packet.decode_time_us,
                sample_count=1,
                depends_on_others=not packet.is_keyframe,
            )
        )

    def _publish_format(self, fmt: FormatDescriptor | None) -> None:
        if fmt == self._published_format:
            return
        self._published_format = fmt
        self._format_listeners.signal(fmt)
