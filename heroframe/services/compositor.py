"""Flatten an AI portrait into its frame.

Layer order, bottom to top: optional background fill, the resized portrait,
then the frame overlay so borders and captions stay unobstructed.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

from PIL import Image, ImageOps, UnidentifiedImageError

from heroframe.errors import DecodeError, EncodeError
from heroframe.templates.frames import FrameDescriptor, FrameRegistry, open_frame_overlay

logger = logging.getLogger(__name__)

RESAMPLE_LANCZOS = Image.Resampling.LANCZOS


@dataclass(frozen=True)
class Placement:
    box: tuple[int, int]
    size: tuple[int, int]
    offset: tuple[int, int]


@dataclass(frozen=True)
class CompositeImage:
    data: bytes
    width: int
    height: int
    frame_type: str
    placement: Placement
    content_type: str = "image/png"


def fit_inside(width: int, height: int, box_width: int, box_height: int) -> tuple[int, int]:
    """Scale ``width`` x ``height`` to fit the box without upscaling or distortion."""

    if width <= 0 or height <= 0:
        raise ValueError("image dimensions must be positive")
    if width <= box_width and height <= box_height:
        return width, height
    # width binds when width/box_width >= height/box_height
    if width * box_height >= height * box_width:
        new_w = box_width
        new_h = max(min(round(height * box_width / width), box_height), 1)
    else:
        new_h = box_height
        new_w = max(min(round(width * box_height / height), box_width), 1)
    return new_w, new_h


def centered_offset(
    canvas: tuple[int, int], size: tuple[int, int], *, vertical_bias: int = 0
) -> tuple[int, int]:
    canvas_w, canvas_h = canvas
    portrait_w, portrait_h = size
    offset_x = round((canvas_w - portrait_w) / 2)
    offset_y = round((canvas_h - portrait_h) / 2) - vertical_bias
    return offset_x, max(offset_y, 0)


def plan_placement(descriptor: FrameDescriptor, source_size: tuple[int, int]) -> Placement:
    box = descriptor.target_box
    size = fit_inside(source_size[0], source_size[1], box[0], box[1])
    offset = centered_offset(descriptor.canvas_size, size, vertical_bias=descriptor.vertical_bias)
    return Placement(box=box, size=size, offset=offset)


def decode_portrait(data: bytes) -> Image.Image:
    if not data:
        raise DecodeError("Portrait image is empty")
    try:
        image = Image.open(BytesIO(data))
        image.load()
        image = ImageOps.exif_transpose(image) or image
        return image.convert("RGBA")
    except Image.DecompressionBombError as exc:
        raise DecodeError(
            "Portrait image is too large to decode",
            details={"max_pixels": Image.MAX_IMAGE_PIXELS},
        ) from exc
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise DecodeError(f"Portrait image could not be decoded: {exc}") from exc


def _encode_png(image: Image.Image) -> bytes:
    buffer = BytesIO()
    try:
        image.save(buffer, format="PNG")
    except (OSError, ValueError) as exc:
        raise EncodeError(f"Composite image could not be encoded: {exc}") from exc
    return buffer.getvalue()


def compose_portrait(
    portrait: bytes,
    frame_type: str,
    *,
    registry: FrameRegistry,
    asset_dir: Path,
) -> CompositeImage:
    descriptor = registry.resolve(frame_type)
    overlay = open_frame_overlay(descriptor, asset_dir)
    source = decode_portrait(portrait)

    placement = plan_placement(descriptor, source.size)
    if placement.size != source.size:
        resized = source.resize(placement.size, RESAMPLE_LANCZOS)
    else:
        resized = source

    background = descriptor.background or (0, 0, 0, 0)
    canvas = Image.new("RGBA", descriptor.canvas_size, tuple(background))
    layer = Image.new("RGBA", descriptor.canvas_size, (0, 0, 0, 0))
    layer.paste(resized, placement.offset)
    canvas.alpha_composite(layer)
    canvas.alpha_composite(overlay)

    data = _encode_png(canvas)
    logger.info(
        "composite.rendered",
        extra={
            "frame_type": descriptor.frame_type,
            "source_size": source.size,
            "portrait_size": placement.size,
            "offset": placement.offset,
            "bytes": len(data),
        },
    )
    return CompositeImage(
        data=data,
        width=canvas.width,
        height=canvas.height,
        frame_type=descriptor.frame_type,
        placement=placement,
    )


__all__ = [
    "CompositeImage",
    "Placement",
    "centered_offset",
    "compose_portrait",
    "decode_portrait",
    "fit_inside",
    "plan_placement",
]
