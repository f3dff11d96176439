"""Compositing of the opacity buffer into the canvas, plus PNG/data-URI output."""

from __future__ import annotations

import base64
from io import BytesIO
import logging
from pathlib import Path

import cv2
import numpy as np
from PIL import Image

from .errors import CompositingError

logger = logging.getLogger(__name__)

PNG_MIME = "image/png"


def apply_alpha(pixels: np.ndarray, alpha: np.ndarray) -> np.ndarray:
    """
    Write `alpha` into the alpha channel of an (H, W, 4) RGBA buffer, in place.

    RGB channels are untouched. `alpha` must hold exactly H * W values.
    """
    if pixels.ndim != 3 or pixels.shape[2] != 4:
        raise CompositingError(f"expected an (H, W, 4) RGBA buffer, got shape {pixels.shape}")
    height, width = pixels.shape[:2]
    if alpha.size != width * height:
        raise CompositingError(
            f"opacity buffer has {alpha.size} values, canvas has {width * height} pixels"
        )
    pixels[..., 3] = np.asarray(alpha, dtype=np.uint8).reshape(height, width)
    return pixels


def encode_png(pixels: np.ndarray) -> bytes:
    """Encode an RGBA buffer as PNG bytes (lossless, alpha preserved)."""
    image = Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8))
    buf = BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def to_data_uri(png_bytes: bytes, mime: str = PNG_MIME) -> str:
    return f"data:{mime};base64," + base64.b64encode(png_bytes).decode("ascii")


def dump_debug_mask(alpha: np.ndarray, width: int, height: int, debug_dir: Path) -> None:
    """Write the normalized mask as a grayscale PNG when DEBUG is enabled."""
    try:
        debug_dir.mkdir(parents=True, exist_ok=True)
        mask_path = debug_dir / "mask.png"
        cv2.imwrite(str(mask_path), np.asarray(alpha, dtype=np.uint8).reshape(height, width))
        logger.debug("postprocess: wrote debug mask to %s", mask_path)
    except Exception as exc:  # noqa: BLE001
        logger.warning("postprocess: failed to write debug outputs: %s", exc)
