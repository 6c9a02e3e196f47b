"""
AAC encoder fed with captured PCM TimedBuffers.

The encoder captures the source format from the first buffer it sees, derives
the destination format lazily and creates its codec session on first use.
Every public call returns immediately; the work runs on the encoder's own
serial queue and results are delivered to listeners from there.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import replace
from typing import Protocol

from aiomediapipe.errors import ConfigurationError, SessionCreationError, SessionPropertyError
from aiomediapipe.models import (
    MINIMUM_AUDIO_BITRATE,
    AudioEncoderSettings,
    CodecType,
    FillStatus,
    FormatDescriptor,
    MediaType,
    TimedBuffer,
)
from aiomediapipe.models.config import changed_fields, settings_keys
from aiomediapipe.util import ListenerSet, SerialQueue

from .session import DEFAULT_AUDIO_CODECS, AudioCodecSession, FillResult
from .state import LazyResourceState

logger = logging.getLogger(__name__)

AAC_FRAMES_PER_PACKET = 1024
MAX_PACKETS_PER_CYCLE = 64
"""Upper bound of packets drained from the codec for one input buffer."""

# Changing one of these requires a new destination format and session
_DESTINATION_FIELDS = frozenset({"sample_rate", "channels", "profile"})


class AudioSession(Protocol):
    """What the encoder needs from a codec session."""

    @property
    def extradata(self) -> bytes | None:
        """Out-of-band codec configuration."""

    invalid: bool

    @property
    def profile(self) -> str | None:
        """AAC profile the codec actually runs with."""

    def set_bitrate(self, bit_rate: int) -> None:
        """Apply a total bitrate or raise SessionPropertyError."""

    def prepare(self) -> None:
        """Open the codec or raise SessionCreationError."""

    def fill(self) -> FillResult:
        """Produce at most one packet."""

    def close(self) -> None:
        """Release the codec."""


AudioSessionFactory = Callable[["AudioEncoder", FormatDescriptor, FormatDescriptor], AudioSession]


class AudioEncoder:
    """Encode PCM TimedBuffers into AAC TimedBuffers."""

    SUPPORTED_SETTINGS: tuple[str, ...] = settings_keys(AudioEncoderSettings)

    def __init__(
        self,
        settings: AudioEncoderSettings | None = None,
        *,
        session_factory: AudioSessionFactory | None = None,
        codec_names: Sequence[str] = DEFAULT_AUDIO_CODECS,
    ) -> None:
        """
        Create an idle encoder.

        Args:
            settings: Initial settings, defaults when omitted.
            session_factory: Builds codec sessions; a PyAV session by default.
            codec_names: Encoder names tried in order by the default factory.
        """
        self._settings = settings or AudioEncoderSettings()
        self._codec_names = tuple(codec_names)
        self._session_factory = session_factory or self._create_codec_session
        self._queue = SerialQueue("audio-encoder")
        self._running = False
        self._source_format: FormatDescriptor | None = None
        self._destination_format: FormatDescriptor | None = None
        self._destination_state = LazyResourceState("audio destination")
        self._session: AudioSession | None = None
        self._published_format: FormatDescriptor | None = None
        self._current_planes: list[bytearray] | None = None
        self._actual_bitrate: int | None = None
        self._format_listeners: ListenerSet[FormatDescriptor | None] = ListenerSet("audio format")
        self._sample_listeners: ListenerSet[TimedBuffer] = ListenerSet("audio sample")
        self._bitrate_listeners: ListenerSet[int] = ListenerSet("audio bitrate")

    def _create_codec_session(
        self, owner: AudioEncoder, source: FormatDescriptor, destination: FormatDescriptor
    ) -> AudioSession:
        return AudioCodecSession(owner, source, destination, codec_names=self._codec_names)

    @property
    def settings(self) -> AudioEncoderSettings:
        """Return the most recently configured settings."""
        return self._settings

    @property
    def running(self) -> bool:
        """Return True between start() and stop()."""
        return self._running

    @property
    def actual_bitrate(self) -> int | None:
        """Return the per-channel bitrate the codec accepted, None before the first session."""
        return self._actual_bitrate

    @property
    def source_format(self) -> FormatDescriptor | None:
        """Return the format captured from the first input buffer."""
        return self._source_format

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

    def add_actual_bitrate_listener(self, callback: Callable[[int], None]) -> Callable[[], None]:
        """Add a listener for the achieved per-channel bitrate. Returns a remover."""
        return self._bitrate_listeners.add(callback)

    def configure(self, settings: AudioEncoderSettings) -> None:
        """
        Apply new settings; they take effect in submission order with encodes.

        Raises:
            ConfigurationError: If settings is not an AudioEncoderSettings.
        """
        if not isinstance(settings, AudioEncoderSettings):
            raise ConfigurationError(f"expected AudioEncoderSettings, got {type(settings).__name__}")
        self._queue.dispatch(self._apply_settings, settings)

    def start(self) -> None:
        """Start accepting buffers."""
        self._queue.dispatch(self._start)

    def stop(self) -> None:
        """Stop, dispose the session and forget the formats. Safe to call repeatedly."""
        self._queue.dispatch(self._stop)

    def invalidate(self) -> None:
        """Drop formats and session; the next buffer rebuilds them."""
        self._queue.dispatch(self._invalidate)

    def encode(self, buffer: TimedBuffer) -> None:
        """Queue a PCM buffer for encoding. Never blocks."""
        self._queue.dispatch(self._encode_buffer, buffer)

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

    # Everything below runs on the serial queue

    def _start(self) -> None:
        if self._running:
            return
        self._running = True
        logger.info("Audio encoder started")

    def _stop(self) -> None:
        was_running = self._running
        self._running = False
        self._dispose_session()
        self._source_format = None
        self._destination_format = None
        self._destination_state.reset()
        self._current_planes = None
        self._publish_format(None)
        if was_running:
            logger.info("Audio encoder stopped")

    def _invalidate(self) -> None:
        self._dispose_session()
        self._source_format = None
        self._destination_format = None
        self._destination_state.reset()

    def _apply_settings(self, settings: AudioEncoderSettings) -> None:
        changed = changed_fields(self._settings, settings)
        self._settings = settings
        if not changed:
            return
        logger.debug("Audio settings changed: %s", ", ".join(changed))
        if _DESTINATION_FIELDS.intersection(changed):
            self._dispose_session()
            self._destination_state.invalidate()
        elif "bitrate" in changed and self._session is not None:
            self._apply_bitrate(self._session)

    def _dispose_session(self) -> None:
        if self._session is None:
            return
        self._session.close()
        self._session = None
        logger.info("Audio session disposed")

    def _make_destination(self, source: FormatDescriptor) -> FormatDescriptor:
        settings = self._settings
        return FormatDescriptor(
            media_type=MediaType.AUDIO,
            codec=CodecType.AAC,
            sample_rate=settings.sample_rate or source.sample_rate,
            channels=settings.channels or source.channels,
            frames_per_packet=AAC_FRAMES_PER_PACKET,
            profile=settings.profile.value,
        )

    def _ensure_session(self) -> AudioSession | None:
        if self._session is not None and not self._session.invalid:
            return self._session
        self._dispose_session()
        source = self._source_format
        if source is None:
            return None
        if self._destination_format is None or self._destination_state.needs_build:
            self._destination_format = self._make_destination(source)
            self._destination_state.mark_configured()
        destination = self._destination_format
        try:
            session = self._session_factory(self, source, destination)
            self._apply_bitrate(session)
            session.prepare()
        except SessionCreationError:
            logger.exception("Could not create audio session for %s", destination)
            return None
        if session.profile != destination.profile:
            logger.info(
                "Audio destination profile is %s instead of %s", session.profile, destination.profile
            )
            destination = replace(destination, profile=session.profile)
            self._destination_format = destination
        self._session = session
        logger.info(
            "Audio session created: %d Hz, %d ch, %s",
            destination.sample_rate,
            destination.channels,
            destination.profile,
        )
        self._publish_format(replace(destination, extradata=session.extradata))
        return session

    def _apply_bitrate(self, session: AudioSession) -> None:
        """Set the configured bitrate, stepping down until the session accepts one."""
        requested = self._settings.bitrate
        channels = self._destination_format.channels if self._destination_format else 1
        candidate = requested
        while True:
            try:
                session.set_bitrate(candidate * channels)
                break
            except SessionPropertyError as err:
                if candidate > MINIMUM_AUDIO_BITRATE:
                    logger.debug("Bitrate %d rejected (%s), stepping down", candidate, err)
                    candidate = max(candidate - MINIMUM_AUDIO_BITRATE, MINIMUM_AUDIO_BITRATE)
                    continue
                logger.warning("Codec rejected the minimum bitrate %d, keeping it anyway", candidate)
                break
        self._actual_bitrate = candidate
        logger.info("Audio bitrate %d bps per channel (requested %d)", candidate, requested)
        self._bitrate_listeners.signal(candidate)

    def _publish_format(self, fmt: FormatDescriptor | None) -> None:
        if fmt == self._published_format:
            return
        self._published_format = fmt
        self._format_listeners.signal(fmt)

    def _accepts(self, buffer: TimedBuffer) -> bool:
        fmt = buffer.format
        if fmt.media_type != MediaType.AUDIO or fmt.codec != CodecType.PCM:
            logger.warning("Audio encoder ignoring %s %s buffer", fmt.media_type.value, fmt.codec.value)
            return False
        if buffer.sample_count == 0:
            logger.debug("Skipping empty audio buffer at %d us", buffer.presentation_time_us)
            return False
        return True

    def _encode_buffer(self, buffer: TimedBuffer) -> None:
        if not self._running or not self._accepts(buffer):
            return
        if self._source_format is None:
            self._source_format = buffer.format
        elif buffer.format != self._source_format:
            logger.info("Audio source format changed, rebuilding session")
            self._dispose_session()
            self._source_format = buffer.format
            self._destination_state.invalidate()

        session = self._ensure_session()
        if session is None:
            return
        if self._settings.muted:
            buffer.zero_fill()

        self._current_planes = buffer.planes
        try:
            self._drain(session, buffer)
        finally:
            self._current_planes = None

    def _drain(self, session: AudioSession, buffer: TimedBuffer) -> None:
        for index in range(MAX_PACKETS_PER_CYCLE):
            result = session.fill()
            if result.status == FillStatus.OK and result.packet is not None:
                self._emit(buffer, index, result.packet)
                continue
            if result.status == FillStatus.INSUFFICIENT_INPUT:
                logger.debug("Codec needs more input after %d us", buffer.presentation_time_us)
            elif result.status == FillStatus.FAILED:
                logger.debug("Encode cycle ended early at %d us", buffer.presentation_time_us)
            return
        logger.warning("Audio codec kept producing after %d packets, ending cycle", MAX_PACKETS_PER_CYCLE)

    def _emit(self, source: TimedBuffer, index: int, packet: bytes) -> None:
        """Publish the index-th packet of this cycle, one packet duration after the previous."""
        destination = self._published_format or self._destination_format
        if destination is None:
            return
        frames = destination.frames_per_packet or AAC_FRAMES_PER_PACKET
        duration_us = frames * 1_000_000 // destination.sample_rate
        self._sample_listeners.signal(
            TimedBuffer(
                planes=[bytearray(packet)],
                format=destination,
                presentation_time_us=source.presentation_time_us + index * duration_us,
                duration_us=duration_us,
                sample_count=frames,
            )
        )

    def _pull_input(self) -> list[bytearray] | None:
        """Hand the current buffer's payload to the codec, once per encode cycle."""
        planes, self._current_planes = self._current_planes, None
        return planes


