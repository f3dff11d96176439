"""
Image validation and loading for RMBG.

Inputs are fitted into a fixed square canvas (letterboxed, centered, aspect
ratio preserved) because the segmentation model works on square inputs and
the mask is composited back onto that same canvas.
"""

from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from . import config
from .errors import DecodeError, ValidationError

TRANSPARENT = (0, 0, 0, 0)


@dataclass
class FittedImage:
    pixels: np.ndarray  # (H, W, 4) uint8 RGBA
    canvas_size: Tuple[int, int]  # (width, height)
    orig_size: Tuple[int, int]  # (width, height)
    scaled_size: Tuple[int, int]
    offset: Tuple[int, int]  # (x, y) of the drawn image inside the canvas

    @property
    def canvas_width(self) -> int:
        return self.canvas_size[0]

    @property
    def canvas_height(self) -> int:
        return self.canvas_size[1]

    @property
    def original_width(self) -> int:
        return self.orig_size[0]

    @property
    def original_height(self) -> int:
        return self.orig_size[1]

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    def to_model_input(self) -> Image.Image:
        """RGB view of the canvas; segmentation models take 3 channels."""
        return Image.fromarray(np.ascontiguousarray(self.pixels[..., :3]))


def _sniff_format(image_bytes: bytes) -> Optional[str]:
    try:
        with Image.open(BytesIO(image_bytes)) as image:
            return image.format
    except (UnidentifiedImageError, OSError):
        return None


def validate_image_bytes(
    image_bytes: bytes,
    content_type: Optional[str] = None,
    settings: Optional[config.Settings] = None,
) -> Optional[str]:
    """
    Reject inputs outside the format allow-list or above the size limit.

    Returns the detected format name (e.g. ``"PNG"``), or None when Pillow
    cannot identify the bytes; those are left to `load_and_fit` to report as
    a `DecodeError`.
    """
    settings = settings or config.get_settings()
    if not image_bytes:
        raise ValidationError("Empty file.")

    if len(image_bytes) > settings.max_file_size:
        limit_mb = settings.max_file_size / (1024 * 1024)
        raise ValidationError(f"File too large. Maximum size is {limit_mb:g}MB.")

    if content_type:
        mime = content_type.split(";")[0].strip().lower()
        if config.SUPPORTED_MIME_TYPES.get(mime) not in settings.allowed_formats:
            raise ValidationError("Unsupported format. Please use JPG, PNG, or WebP.")

    detected = _sniff_format(image_bytes)
    if detected is not None and detected not in settings.allowed_formats:
        raise ValidationError("Unsupported format. Please use JPG, PNG, or WebP.")
    return detected


def compute_fit(width: int, height: int, target_size: int) -> Tuple[Tuple[int, int], Tuple[int, int]]:
    """Uniform scale into a `target_size` square; returns (scaled_size, offset)."""
    scale = min(target_size / width, target_size / height)
    scaled_w = min(target_size, max(1, int(round(width * scale))))
    scaled_h = min(target_size, max(1, int(round(height * scale))))
    offset = ((target_size - scaled_w) // 2, (target_size - scaled_h) // 2)
    return (scaled_w, scaled_h), offset


def load_and_fit(
    image_bytes: bytes,
    target_size: int,
    background: Tuple[int, int, int, int] = TRANSPARENT,
) -> FittedImage:
    """
    Decode an image and letterbox it into a `target_size` x `target_size` canvas.

    The border is filled with `background` (transparent by default) before
    the scaled image is composited over it.
    """
    if target_size <= 0:
        raise ValueError("target_size must be positive")

    try:
        image = Image.open(BytesIO(image_bytes))
        image.load()
        image = ImageOps.exif_transpose(image)
        image = image.convert("RGBA")
    except Exception as exc:  # noqa: BLE001
        raise DecodeError("Failed to load image") from exc

    orig_w, orig_h = image.size
    if orig_w == 0 or orig_h == 0:
        raise DecodeError("Image has no pixels")

    (scaled_w, scaled_h), offset = compute_fit(orig_w, orig_h, target_size)
    if (scaled_w, scaled_h) != (orig_w, orig_h):
        image = image.resize((scaled_w, scaled_h), Image.BILINEAR)

    canvas = Image.new("RGBA", (target_size, target_size), tuple(background))
    canvas.alpha_composite(image, dest=offset)

    return FittedImage(
        pixels=np.array(canvas, dtype=np.uint8),
        canvas_size=(target_size, target_size),
        orig_size=(orig_w, orig_h),
        scaled_size=(scaled_w, scaled_h),
        offset=offset,
    )
