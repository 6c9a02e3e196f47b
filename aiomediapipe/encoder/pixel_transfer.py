"""Fit captured images into the encoder's dimensions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from aiomediapipe.models import FormatDescriptor, PixelFormat, ScalingMode
from aiomediapipe.util import get_av, get_numpy

if TYPE_CHECKING:
    import av


def image_to_ndarray(planes: list[bytearray], fmt: FormatDescriptor) -> Any:
    """View a raw image payload as the ndarray layout PyAV expects for its format."""
    np = get_numpy()
    pixel_format = fmt.pixel_format
    if pixel_format is None:
        raise ValueError("image buffer has no pixel format")
    data = planes[0] if len(planes) == 1 else b"".join(planes)
    expected = pixel_format.frame_size(fmt.width, fmt.height)
    if len(data) < expected:
        raise ValueError(
            f"image payload too short: {len(data)} bytes for {fmt.width}x{fmt.height} "
            f"{pixel_format.value}"
        )
    flat = np.frombuffer(bytes(data[:expected]), dtype=np.uint8)
    if pixel_format == PixelFormat.GRAY:
        return flat.reshape(fmt.height, fmt.width)
    if pixel_format.is_packed:
        return flat.reshape(fmt.height, fmt.width, pixel_format.components)
    # yuv420p and nv12: luma rows followed by chroma rows
    return flat.reshape(fmt.height * 3 // 2, fmt.width)


def _fit_size(src_w: int, src_h: int, dst_w: int, dst_h: int, *, cover: bool) -> tuple[int, int]:
    """Scale (src_w, src_h) to fit inside, or cover, (dst_w, dst_h) keeping aspect."""
    scale_w = dst_w / src_w
    scale_h = dst_h / src_h
    scale = max(scale_w, scale_h) if cover else min(scale_w, scale_h)
    # 4:2:0 targets need even sizes
    width = max(2, int(round(src_w * scale)) // 2 * 2)
    height = max(2, int(round(src_h * scale)) // 2 * 2)
    return width, height


def _centre_crop(array: Any, width: int, height: int) -> Any:
    top = max(0, (array.shape[0] - height) // 2)
    left = max(0, (array.shape[1] - width) // 2)
    return array[top : top + height, left : left + width]


def transfer_image(
    frame: av.VideoFrame,
    width: int,
    height: int,
    mode: ScalingMode,
    pix_fmt: str,
) -> av.VideoFrame:
    """
    Produce a frame of exactly width x height in pix_fmt from an arbitrary frame.

    Args:
        frame: Source frame in any format and size.
        width: Target width.
        height: Target height.
        mode: How the source is fitted into the target.
        pix_fmt: Pixel format the codec expects.

    Returns:
        A new frame ready for encoding.
    """
    if frame.width == width and frame.height == height:
        return frame.reformat(format=pix_fmt)
    if mode == ScalingMode.NORMAL:
        return frame.reformat(width=width, height=height, format=pix_fmt)

    av = get_av()
    np = get_numpy()
    if mode == ScalingMode.CROP_SOURCE_TO_CLEAN_APERTURE:
        rgb = frame.to_ndarray(format="rgb24")
        if rgb.shape[1] < width or rgb.shape[0] < height:
            # Source smaller than the aperture: nothing to crop, stretch instead
            return frame.reformat(width=width, height=height, format=pix_fmt)
        cropped = np.ascontiguousarray(_centre_crop(rgb, width, height))
        return av.VideoFrame.from_ndarray(cropped, format="rgb24").reformat(format=pix_fmt)

    cover = mode == ScalingMode.TRIM
    fit_w, fit_h = _fit_size(frame.width, frame.height, width, height, cover=cover)
    rgb = frame.reformat(width=fit_w, height=fit_h, format="rgb24").to_ndarray()
    if cover:
        out = np.ascontiguousarray(_centre_crop(rgb, width, height))
    else:
        out = np.zeros((height, width, 3), dtype=np.uint8)
        top = (height - fit_h) // 2
        left = (width - fit_w) // 2
        out[top : top + fit_h, left : left + fit_w] = rgb
    return av.VideoFrame.from_ndarray(out, format="rgb24").reformat(format=pix_fmt)
