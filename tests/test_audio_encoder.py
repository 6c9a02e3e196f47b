from __future__ import annotations

from dataclasses import replace

import pytest

from aiomediapipe.encoder import AudioEncoder, FillResult
from aiomediapipe.errors import BitrateUnattainableError, ConfigurationError, SessionCreationError
from aiomediapipe.models import (
    AudioEncoderSettings,
    AudioProfile,
    CodecType,
    FillStatus,
    FormatDescriptor,
    MediaType,
    SampleFormat,
    TimedBuffer,
)

FRAMES = 1024
STEREO = FormatDescriptor.pcm(44100, 2, SampleFormat.S16)


class _FakeAudioSession:
    """Codec stand-in that emits one packet per pulled buffer."""

    extradata = b"\x12\x10"

    def __init__(
        self,
        owner: AudioEncoder,
        source: FormatDescriptor,
        destination: FormatDescriptor,
        *,
        max_bit_rate: int | None = None,
        endless: bool = False,
        burst: int = 1,
        profiles: frozenset[str] | None = None,
    ) -> None:
        self._owner = owner
        self.source = source
        self.destination = destination
        self.invalid = False
        self.closed = False
        self.prepared = False
        self.bit_rates: list[int] = []
        self.pulled: list[list[bytes]] = []
        self._max_bit_rate = max_bit_rate
        self._endless = endless
        self._burst = burst
        self._profiles = profiles
        self._pending: list[bytes] = []
        self.profile = destination.profile

    def set_bitrate(self, bit_rate: int) -> None:
        self.bit_rates.append(bit_rate)
        if self._max_bit_rate is not None and bit_rate > self._max_bit_rate:
            raise BitrateUnattainableError(bit_rate, "too high")

    def prepare(self) -> None:
        if self._profiles is not None and self.profile not in self._profiles:
            self.profile = "aac_low"
        self.prepared = True

    def fill(self) -> FillResult:
        if self._endless:
            return FillResult(FillStatus.OK, b"\xff")
        if self._pending:
            return FillResult(FillStatus.OK, self._pending.pop(0))
        planes = self._owner._pull_input()
        if planes is None:
            return FillResult(FillStatus.INSUFFICIENT_INPUT)
        self.pulled.append([bytes(p) for p in planes])
        self._pending.extend(b"\x21\x10" + bytes([n]) for n in range(1, self._burst))
        return FillResult(FillStatus.OK, b"\x21\x10" + bytes(planes[0][:6]))

    def close(self) -> None:
        self.closed = True


class _Harness:
    def __init__(self, settings: AudioEncoderSettings | None = None, **session_kwargs: object) -> None:
        self._session_kwargs = session_kwargs
        self.sessions: list[_FakeAudioSession] = []
        self.failures_left = 0
        self.encoder = AudioEncoder(settings, session_factory=self._factory)
        self.samples: list[TimedBuffer] = []
        self.formats: list[FormatDescriptor | None] = []
        self.bitrates: list[int] = []
        self.encoder.add_sample_listener(self.samples.append)
        self.encoder.add_format_listener(self.formats.append)
        self.encoder.add_actual_bitrate_listener(self.bitrates.append)

    def _factory(
        self, owner: AudioEncoder, source: FormatDescriptor, destination: FormatDescriptor
    ) -> _FakeAudioSession:
        if self.failures_left:
            self.failures_left -= 1
            raise SessionCreationError("codec busy")
        session = _FakeAudioSession(owner, source, destination, **self._session_kwargs)  # type: ignore[arg-type]
        self.sessions.append(session)
        return session


def _pcm(index: int, fmt: FormatDescriptor = STEREO, fill: int = 7) -> TimedBuffer:
    duration = FRAMES * 1_000_000 // fmt.sample_rate
    return TimedBuffer(
        planes=[bytes([fill]) * (FRAMES * fmt.bytes_per_frame)],
        format=fmt,
        presentation_time_us=index * duration,
        duration_us=duration,
    )


def test_encodes_with_input_timing() -> None:
    h = _Harness()
    h.encoder.start()
    inputs = [_pcm(i) for i in range(3)]
    for buffer in inputs:
        h.encoder.encode(buffer)
    h.encoder.join(timeout=5)

    assert len(h.samples) == 3
    for out, src in zip(h.samples, inputs):
        assert out.format.codec == CodecType.AAC
        assert out.presentation_time_us == src.presentation_time_us
        assert out.duration_us == src.duration_us
        assert out.sample_count == FRAMES
    assert len(h.sessions) == 1
    assert h.sessions[0].prepared
    h.encoder.close()


def test_destination_format_published_once() -> None:
    h = _Harness()
    h.encoder.start()
    for i in range(4):
        h.encoder.encode(_pcm(i))
    h.encoder.join(timeout=5)

    assert len(h.formats) == 1
    fmt = h.formats[0]
    assert fmt is not None
    assert fmt.media_type == MediaType.AUDIO
    assert fmt.codec == CodecType.AAC
    assert fmt.sample_rate == 44100
    assert fmt.channels == 2
    assert fmt.frames_per_packet == 1024
    assert fmt.profile == "aac_low"
    assert fmt.extradata == b"\x12\x10"
    assert h.encoder.source_format == STEREO
    h.encoder.close()


def test_destination_overrides() -> None:
    h = _Harness(AudioEncoderSettings(sample_rate=48000, channels=1))
    h.encoder.start()
    h.encoder.encode(_pcm(0))
    h.encoder.join(timeout=5)

    destination = h.sessions[0].destination
    assert destination.sample_rate == 48000
    assert destination.channels == 1
    assert h.sessions[0].source == STEREO
    h.encoder.close()


def test_bitrate_steps_down_until_accepted() -> None:
    # Session refuses anything above 16 kbit/s per channel
    h = _Harness(max_bit_rate=16384 * 2)
    h.encoder.start()
    h.encoder.encode(_pcm(0))
    h.encoder.join(timeout=5)

    assert h.sessions[0].bit_rates == [65536, 49152, 32768]
    assert h.encoder.actual_bitrate == 16384
    assert h.encoder.actual_bitrate <= h.encoder.settings.bitrate
    assert h.bitrates == [16384]
    assert len(h.samples) == 1
    h.encoder.close()


def test_bitrate_floor_adopted_when_everything_rejected() -> None:
    h = _Harness(max_bit_rate=0)
    h.encoder.start()
    h.encoder.encode(_pcm(0, FormatDescriptor.pcm(44100, 1)))
    h.encoder.join(timeout=5)

    assert h.sessions[0].bit_rates == [32768, 24576, 16384, 8192]
    assert h.encoder.actual_bitrate == 8192
    h.encoder.close()


def test_bitrate_change_applies_to_live_session() -> None:
    h = _Harness()
    h.encoder.start()
    h.encoder.encode(_pcm(0))
    h.encoder.configure(replace(h.encoder.settings, bitrate=64 * 1024))
    h.encoder.encode(_pcm(1))
    h.encoder.join(timeout=5)

    assert len(h.sessions) == 1
    assert h.sessions[0].bit_rates == [65536, 131072]
    assert h.bitrates == [32768, 65536]
    h.encoder.close()


def test_mute_zeroes_payload_and_keeps_timing() -> None:
    h = _Harness(AudioEncoderSettings(muted=True))
    h.encoder.start()
    source = _pcm(2, fill=99)
    h.encoder.encode(source)
    h.encoder.join(timeout=5)

    pulled = h.sessions[0].pulled
    assert len(pulled) == 1
    assert pulled[0][0] == bytes(FRAMES * STEREO.bytes_per_frame)
    assert len(h.samples) == 1
    assert h.samples[0].presentation_time_us == source.presentation_time_us
    assert h.samples[0].duration_us == source.duration_us
    assert h.samples[0].sample_count == FRAMES
    h.encoder.close()


def test_channel_change_rebuilds_session() -> None:
    h = _Harness()
    h.encoder.start()
    h.encoder.encode(_pcm(0))
    h.encoder.configure(replace(h.encoder.settings, channels=1))
    h.encoder.encode(_pcm(1))
    h.encoder.join(timeout=5)

    assert len(h.sessions) == 2
    assert h.sessions[0].closed
    assert h.sessions[1].destination.channels == 1
    assert [f.channels for f in h.formats if f is not None] == [2, 1]
    h.encoder.close()


def test_source_format_change_rebuilds_session() -> None:
    h = _Harness()
    h.encoder.start()
    h.encoder.encode(_pcm(0))
    h.encoder.encode(_pcm(1, FormatDescriptor.pcm(48000, 2)))
    h.encoder.join(timeout=5)

    assert len(h.sessions) == 2
    assert h.sessions[1].destination.sample_rate == 48000
    h.encoder.close()


def test_session_creation_failure_is_retried() -> None:
    h = _Harness()
    h.failures_left = 1
    h.encoder.start()
    h.encoder.encode(_pcm(0))
    h.encoder.encode(_pcm(1))
    h.encoder.join(timeout=5)

    assert len(h.sessions) == 1
    assert [s.presentation_time_us for s in h.samples] == [_pcm(1).presentation_time_us]
    h.encoder.close()


def test_runaway_codec_is_capped() -> None:
    h = _Harness(endless=True)
    h.encoder.start()
    h.encoder.encode(_pcm(0))
    h.encoder.join(timeout=5)

    assert 0 < len(h.samples) <= 64
    h.encoder.close()


def test_packets_of_one_buffer_get_consecutive_timestamps() -> None:
    h = _Harness(burst=3)
    h.encoder.start()
    source = _pcm(2)
    h.encoder.encode(source)
    h.encoder.join(timeout=5)

    packet_us = 1024 * 1_000_000 // 44100
    assert [s.presentation_time_us for s in h.samples] == [
        source.presentation_time_us + k * packet_us for k in range(3)
    ]
    assert all(s.duration_us == packet_us for s in h.samples)
    assert all(s.sample_count == 1024 for s in h.samples)
    h.encoder.close()


def test_unsupported_profile_falls_back_to_low_complexity() -> None:
    h = _Harness(AudioEncoderSettings(profile=AudioProfile.AAC_HE), profiles=frozenset({"aac_low"}))
    h.encoder.start()
    h.encoder.encode(_pcm(0))
    h.encoder.encode(_pcm(1))
    h.encoder.join(timeout=5)

    assert len(h.sessions) == 1
    assert len(h.samples) == 2
    assert [f.profile for f in h.formats if f is not None] == ["aac_low"]
    assert all(s.format.profile == "aac_low" for s in h.samples)
    assert h.encoder.settings.profile == AudioProfile.AAC_HE
    h.encoder.close()


def test_ignores_buffers_when_not_running_or_not_pcm() -> None:
    h = _Harness()
    h.encoder.encode(_pcm(0))
    h.encoder.start()
    image = TimedBuffer(
        planes=[bytes(48)],
        format=FormatDescriptor.image(4, 4),
        presentation_time_us=0,
        duration_us=33_333,
    )
    h.encoder.encode(image)
    h.encoder.join(timeout=5)

    assert h.samples == []
    assert h.sessions == []
    h.encoder.close()


def test_stop_is_idempotent_and_resets() -> None:
    h = _Harness()
    h.encoder.start()
    h.encoder.encode(_pcm(0))
    h.encoder.stop()
    h.encoder.stop()
    h.encoder.encode(_pcm(1))
    h.encoder.join(timeout=5)

    assert h.formats[-1] is None
    assert len(h.formats) == 2
    assert h.sessions[0].closed
    assert len(h.samples) == 1
    assert not h.encoder.running
    assert h.encoder.source_format is None
    h.encoder.close()


def test_start_stop_cycles_are_equivalent() -> None:
    h = _Harness()
    for cycle in range(2):
        h.encoder.start()
        h.encoder.encode(_pcm(cycle))
        h.encoder.stop()
    h.encoder.join(timeout=5)

    assert len(h.sessions) == 2
    assert all(s.closed for s in h.sessions)
    assert [f is None for f in h.formats] == [False, True, False, True]
    assert len(h.samples) == 2
    h.encoder.close()


def test_invalidate_recaptures_source() -> None:
    h = _Harness()
    h.encoder.start()
    h.encoder.encode(_pcm(0))
    h.encoder.invalidate()
    h.encoder.encode(_pcm(1))
    h.encoder.join(timeout=5)

    assert len(h.sessions) == 2
    assert h.sessions[0].closed
    assert h.encoder.running
    h.encoder.close()


def test_configure_rejects_wrong_type() -> None:
    encoder = AudioEncoder()
    with pytest.raises(ConfigurationError):
        encoder.configure({"bitrate": 1})  # type: ignore[arg-type]
    encoder.close()


def test_supported_settings() -> None:
    assert AudioEncoder.SUPPORTED_SETTINGS == (
        "muted",
        "bitrate",
        "profile",
        "sample_rate",
        "channels",
    )
