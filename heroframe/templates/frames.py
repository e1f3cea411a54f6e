"""Frame presets and their overlay assets."""

from __future__ import annotations

import base64
import binascii
import json
import logging
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Tuple

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict, Field

from heroframe.errors import AssetMissing, UnknownFrame

log = logging.getLogger(__name__)

_TEMPLATES_DIR = Path(__file__).resolve().parent
FRAMES_FILE = _TEMPLATES_DIR / "frames.json"

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
JPG_MAGIC = b"\xff\xd8\xff"

RGBA = Tuple[int, int, int, int]


class CanvasSize(BaseModel):
    model_config = ConfigDict(frozen=True)

    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)


class FrameDescriptor(BaseModel):
    """Layout rules for one frame variant."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    frame_type: str
    label: str
    description: str = ""
    canvas: CanvasSize
    portrait_scale: float = Field(..., gt=0.0, le=1.0)
    vertical_bias: int = Field(0, ge=0)
    background: Optional[RGBA] = None
    accent: RGBA = (0, 0, 0, 255)
    overlay: str
    prompt: str

    @property
    def canvas_size(self) -> tuple[int, int]:
        return self.canvas.width, self.canvas.height

    @property
    def target_box(self) -> tuple[int, int]:
        return (
            max(round(self.canvas.width * self.portrait_scale), 1),
            max(round(self.canvas.height * self.portrait_scale), 1),
        )


class FrameRegistry(Mapping[str, FrameDescriptor]):
    """Immutable lookup table of frame descriptors keyed by frame type."""

    def __init__(self, descriptors: list[FrameDescriptor]) -> None:
        self._frames = {item.frame_type: item for item in descriptors}

    def __getitem__(self, frame_type: str) -> FrameDescriptor:
        return self._frames[frame_type]

    def __iter__(self) -> Iterator[str]:
        return iter(self._frames)

    def __len__(self) -> int:
        return len(self._frames)

    def resolve(self, frame_type: str | None) -> FrameDescriptor:
        descriptor = self._frames.get((frame_type or "").strip())
        if descriptor is None:
            allowed = ", ".join(sorted(self._frames))
            raise UnknownFrame(
                f"Invalid frame type '{frame_type}'. Must be one of: {allowed}",
                details={"frame_type": frame_type, "allowed": sorted(self._frames)},
            )
        return descriptor

    def prompt_for(self, frame_type: str) -> str:
        return self.resolve(frame_type).prompt


def parse_frame_registry(payload: dict[str, Any]) -> FrameRegistry:
    frames = [FrameDescriptor.model_validate(item) for item in payload.get("frames", [])]
    return FrameRegistry(frames)


@lru_cache(maxsize=None)
def load_frame_registry(path: Path = FRAMES_FILE) -> FrameRegistry:
    """Load the frame table once; later lookups are synchronous dict reads."""

    with path.open("r", encoding="utf-8") as handle:
        payload: dict[str, Any] = json.load(handle)
    registry = parse_frame_registry(payload)
    log.info("[frames] loaded path=%s frames=%s", str(path), sorted(registry))
    return registry


def _decode_b64_text(text: str) -> bytes:
    t = text.strip()
    if t.startswith("data:image/"):
        comma = t.find(",")
        if comma >= 0:
            t = t[comma + 1 :].strip()
    try:
        return base64.b64decode(t, validate=False)
    except binascii.Error as e:
        raise ValueError(f"invalid base64 content: {e}") from e


def detect_magic(b: bytes) -> str:
    if b.startswith(PNG_MAGIC):
        return "png"
    if b.startswith(JPG_MAGIC):
        return "jpg"
    return "unknown"


def resolve_overlay_path(descriptor: FrameDescriptor, asset_dir: Path) -> Path | None:
    """Return the overlay file for ``descriptor``; ``<name>.b64`` is the fallback."""

    png_path = Path(asset_dir) / descriptor.overlay
    if png_path.exists():
        return png_path
    b64_path = png_path.with_suffix(".b64")
    if b64_path.exists():
        return b64_path
    return None


def missing_overlays(registry: FrameRegistry, asset_dir: Path) -> list[str]:
    return [name for name in registry if resolve_overlay_path(registry[name], asset_dir) is None]


def open_frame_overlay(descriptor: FrameDescriptor, asset_dir: Path) -> Image.Image:
    """Load the overlay as RGBA, scaled to the descriptor canvas."""

    path = resolve_overlay_path(descriptor, asset_dir)
    if path is None:
        raise AssetMissing(
            f"Frame file not found: {descriptor.overlay}",
            details={"frame_type": descriptor.frame_type, "asset_dir": str(asset_dir)},
        )

    try:
        if path.suffix.lower() == ".b64":
            raw = _decode_b64_text(path.read_text(encoding="utf-8", errors="ignore"))
        else:
            raw = path.read_bytes()
        log.debug(
            "[frames] open path=%s bytes=%d magic=%s",
            str(path),
            len(raw),
            detect_magic(raw),
        )
        overlay = Image.open(BytesIO(raw))
        overlay.load()
    except (OSError, ValueError, UnidentifiedImageError, Image.DecompressionBombError) as exc:
        raise AssetMissing(
            f"Frame file unreadable: {path.name}",
            details={"frame_type": descriptor.frame_type, "path": str(path)},
        ) from exc

    overlay = overlay.convert("RGBA")
    if overlay.size != descriptor.canvas_size:
        overlay = overlay.resize(descriptor.canvas_size, Image.Resampling.LANCZOS)
    return overlay


__all__ = [
    "FRAMES_FILE",
    "FrameDescriptor",
    "FrameRegistry",
    "load_frame_registry",
    "missing_overlays",
    "open_frame_overlay",
    "parse_frame_registry",
    "resolve_overlay_path",
]
