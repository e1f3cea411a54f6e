"""Default frame artwork drawn from the descriptor colours.

Overlays keep the portrait window fully transparent so the compositor can
layer them over the framed portrait.
"""
from __future__ import annotations

from pathlib import Path

from PIL import Image, ImageDraw, ImageFont

from heroframe.templates.frames import FrameDescriptor

BORDER_RATIO = 0.03
CAPTION_RATIO = 0.08


def draw_default_overlay(descriptor: FrameDescriptor) -> Image.Image:
    width, height = descriptor.canvas_size
    box_w, box_h = descriptor.target_box
    accent = tuple(descriptor.accent)

    overlay = Image.new("RGBA", (width, height), (0, 0, 0, 0))
    draw = ImageDraw.Draw(overlay)

    border = max(int(min(width, height) * BORDER_RATIO), 2)
    draw.rectangle((0, 0, width - 1, height - 1), outline=accent, width=border)

    # the caption band sits below the portrait window
    band_h = max(int(height * CAPTION_RATIO), 12)
    window_bottom = (height + box_h) // 2 - descriptor.vertical_bias
    band_top = max(window_bottom, height - band_h)
    draw.rectangle((0, band_top, width, height), fill=accent)

    font = ImageFont.load_default()
    left, top, right, bottom = draw.textbbox((0, 0), descriptor.label, font=font)
    text_x = (width - (right - left)) // 2
    text_y = band_top + ((height - band_top) - (bottom - top)) // 2
    draw.text((text_x, text_y), descriptor.label, fill=(255, 255, 255, 255), font=font)

    corner = max((width - box_w) // 4, border * 2)
    for x0, y0 in ((0, 0), (width - corner, 0)):
        draw.rectangle((x0, y0, x0 + corner, y0 + corner), fill=accent)
    return overlay


def write_default_overlay(descriptor: FrameDescriptor, asset_dir: Path) -> Path:
    asset_dir.mkdir(parents=True, exist_ok=True)
    target = asset_dir / descriptor.overlay
    draw_default_overlay(descriptor).save(target, format="PNG")
    return target


__all__ = ["draw_default_overlay", "write_default_overlay"]
