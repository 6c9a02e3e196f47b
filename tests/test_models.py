from __future__ import annotations

import pytest

from aiomediapipe.errors import ConfigurationError
from aiomediapipe.models import (
    AudioEncoderSettings,
    CodecType,
    DeliveryQueueSettings,
    FormatDescriptor,
    MediaType,
    PipelineSettings,
    PixelFormat,
    ProfileLevel,
    SampleFormat,
    ScalingMode,
    TimedBuffer,
    VideoEncoderSettings,
)
from aiomediapipe.models.config import changed_fields, settings_keys


def test_pipeline_settings_json_roundtrip() -> None:
    settings = PipelineSettings(
        audio=AudioEncoderSettings(muted=True, bitrate=64 * 1024, channels=1),
        video=VideoEncoderSettings(
            width=640,
            height=360,
            profile_level=ProfileLevel.HIGH_AUTO,
            scaling_mode=ScalingMode.LETTERBOX,
            data_rate_limits=(500_000, 1),
        ),
        delivery=DeliveryQueueSettings(buffer_time_us=250_000, max_deliveries_per_tick=4),
    )
    parsed = PipelineSettings.from_json(settings.to_json())
    assert parsed == settings
    assert parsed.video.data_rate_limits == (500_000, 1)


def test_pipeline_settings_from_partial_json() -> None:
    parsed = PipelineSettings.from_json('{"video": {"width": 1280, "height": 720}}')
    assert parsed.video.width == 1280
    assert parsed.video.bitrate == VideoEncoderSettings().bitrate
    assert parsed.audio == AudioEncoderSettings()


def test_defaults() -> None:
    audio = AudioEncoderSettings()
    assert audio.bitrate == 32 * 1024
    assert audio.sample_rate == 0
    assert audio.channels == 0
    assert not audio.muted

    video = VideoEncoderSettings()
    assert (video.width, video.height) == (480, 272)
    assert video.bitrate == 160 * 1024
    assert video.profile_level == ProfileLevel.BASELINE_3_1
    assert video.max_key_frame_interval_duration == 2.0
    assert video.hardware_encoder_enabled
    assert not video.data_rate_limits_enabled

    assert DeliveryQueueSettings().max_deliveries_per_tick == 1


@pytest.mark.parametrize(
    "kwargs",
    [
        {"bitrate": 4096},
        {"sample_rate": -1},
        {"channels": 6},
    ],
)
def test_audio_settings_validation(kwargs: dict[str, int]) -> None:
    with pytest.raises(ConfigurationError):
        AudioEncoderSettings(**kwargs)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"width": 0},
        {"width": 481},
        {"bitrate": 0},
        {"expected_frame_rate": 0.0},
        {"max_key_frame_interval_duration": -1.0},
        {"data_rate_limits": (1000, 0)},
    ],
)
def test_video_settings_validation(kwargs: dict[str, object]) -> None:
    with pytest.raises(ConfigurationError):
        VideoEncoderSettings(**kwargs)  # type: ignore[arg-type]


def test_configuration_error_is_value_error() -> None:
    with pytest.raises(ValueError, match="max_deliveries_per_tick"):
        DeliveryQueueSettings(max_deliveries_per_tick=0)


def test_changed_fields_and_keys() -> None:
    old = VideoEncoderSettings()
    new = VideoEncoderSettings(width=640, bitrate=old.bitrate + 1)
    assert changed_fields(old, new) == ["width", "bitrate"]
    assert changed_fields(old, VideoEncoderSettings()) == []
    assert "muted" in settings_keys(AudioEncoderSettings)
    assert "data_rate_limits" in settings_keys(VideoEncoderSettings)


def test_profile_level_parts() -> None:
    assert ProfileLevel.BASELINE_3_1.profile == "baseline"
    assert ProfileLevel.BASELINE_3_1.level == "3.1"
    assert ProfileLevel.BASELINE_3_1.is_baseline
    assert ProfileLevel.HIGH_AUTO.level is None
    assert not ProfileLevel.MAIN_4_1.is_baseline


def test_format_descriptor_validation() -> None:
    with pytest.raises(ValueError):
        FormatDescriptor(media_type=MediaType.AUDIO, codec=CodecType.PCM, sample_rate=0, channels=2)
    with pytest.raises(ValueError):
        FormatDescriptor(media_type=MediaType.VIDEO, codec=CodecType.RAW_VIDEO, width=4, height=4)


def test_format_descriptor_json_omits_none() -> None:
    fmt = FormatDescriptor.pcm(48000, 2, SampleFormat.FLTP)
    data = fmt.to_dict()
    assert "pixel_format" not in data
    assert data["sample_format"] == "fltp"
    assert FormatDescriptor.from_json(fmt.to_json()) == fmt


def test_pixel_format_frame_size() -> None:
    assert PixelFormat.RGB24.frame_size(4, 2) == 24
    assert PixelFormat.BGRA.frame_size(4, 2) == 32
    assert PixelFormat.GRAY.frame_size(4, 2) == 8
    assert PixelFormat.YUV420P.frame_size(4, 2) == 12
    assert PixelFormat.NV12.frame_size(4, 2) == 12


def test_timed_buffer_derives_sample_count() -> None:
    interleaved = TimedBuffer(
        planes=[bytes(4096)],
        format=FormatDescriptor.pcm(44100, 2),
        presentation_time_us=0,
        duration_us=23_220,
    )
    assert interleaved.sample_count == 1024
    assert interleaved.decode_time_us == 0

    planar = TimedBuffer(
        planes=[bytes(4096), bytes(4096)],
        format=FormatDescriptor.pcm(44100, 2, SampleFormat.FLTP),
        presentation_time_us=10,
        duration_us=23_220,
    )
    assert planar.sample_count == 1024
    assert planar.byte_count == 8192

    image = TimedBuffer(
        planes=[bytes(48)],
        format=FormatDescriptor.image(4, 4),
        presentation_time_us=0,
        duration_us=33_333,
    )
    assert image.sample_count == 1


def test_timed_buffer_rejects_negative_duration() -> None:
    with pytest.raises(ValueError):
        TimedBuffer(
            planes=[b""],
            format=FormatDescriptor.image(4, 4),
            presentation_time_us=0,
            duration_us=-1,
        )


def test_zero_fill_is_in_place() -> None:
    plane = bytearray(b"\x01\x02\x03\x04")
    buffer = TimedBuffer(
        planes=[plane],
        format=FormatDescriptor.pcm(8000, 1),
        presentation_time_us=5,
        duration_us=250,
    )
    buffer.zero_fill()
    assert buffer.planes[0] is plane
    assert plane == bytearray(4)
    assert buffer.sample_count == 2
    assert buffer.presentation_time_us == 5
