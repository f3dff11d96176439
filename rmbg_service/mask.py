"""
Mask normalization: turn any segmentation result into a canonical opacity buffer.

`normalize_mask` never raises. Whatever the backend returned, the caller gets
a freshly allocated ``uint8`` buffer of exactly ``width * height`` values
(0 = background, 255 = foreground). When no usable mask can be extracted it
degrades to a fully opaque buffer, i.e. no background removed, and reports
that through ``used_fallback``.
"""

from __future__ import annotations

import logging
from typing import Any, NamedTuple

import numpy as np

from .segmentation import (
    ConfidenceScore,
    EmptyResult,
    MaskBuffer,
    MaskSurface,
    RawBuffer,
    UnrecognizedResult,
    classify_result,
)

logger = logging.getLogger(__name__)

DEFAULT_SCORE_THRESHOLD = 0.5


class NormalizedMask(NamedTuple):
    alpha: np.ndarray  # (width * height,) uint8
    used_fallback: bool


def opaque_mask(width: int, height: int) -> np.ndarray:
    return np.full(width * height, 255, dtype=np.uint8)


def normalize_values(values: Any) -> np.ndarray:
    """
    Map raw mask values onto 0-255.

    Values <= 1 are fractions (``round(v * 255)``); larger values are taken as
    already 0-255 (``round(v)``). Missing (NaN) entries become 0. Rounding is
    half-up.
    """
    v = np.asarray(values, dtype=np.float64)
    v = np.where(np.isnan(v), 0.0, v)
    scaled = np.where(v <= 1.0, v * 255.0, v)
    return np.clip(np.floor(scaled + 0.5), 0, 255).astype(np.uint8)


def _fit_length(values: np.ndarray, length: int) -> np.ndarray:
    """Truncate or zero-pad a flat array to `length`."""
    if values.size >= length:
        return values[:length]
    out = np.zeros(length, dtype=values.dtype)
    out[: values.size] = values
    return out


def resample_nearest(src: np.ndarray, src_w: int, src_h: int, dst_w: int, dst_h: int) -> np.ndarray:
    """
    Nearest-neighbour resample of a flat single-channel buffer.

    Destination pixel (x, y) takes source pixel
    ``(floor(x * src_w / dst_w), floor(y * src_h / dst_h))``. No interpolation,
    so every output value is one of the source values; lossy for large ratios.
    """
    grid = _fit_length(np.asarray(src).ravel(), src_w * src_h).reshape(src_h, src_w)
    ys = (np.arange(dst_h, dtype=np.int64) * src_h) // dst_h
    xs = (np.arange(dst_w, dtype=np.int64) * src_w) // dst_w
    return grid[ys[:, None], xs[None, :]].ravel()


def _from_surface(surface: MaskSurface, width: int, height: int) -> np.ndarray:
    # Grayscale mask replicated across channels; the first one is enough.
    channel = surface.read_pixels()[..., 0].ravel()
    if (surface.width, surface.height) != (width, height):
        return resample_nearest(channel, surface.width, surface.height, width, height).astype(np.uint8)
    return channel.astype(np.uint8, copy=True)


def _from_buffer(buffer: MaskBuffer, width: int, height: int) -> np.ndarray:
    total = width * height
    if not buffer.has_dimensions:
        return _fit_length(normalize_values(buffer.values.ravel()), total)

    src_w, src_h = buffer.source_size(width, height)
    if (src_w, src_h) != (width, height):
        return normalize_values(resample_nearest(buffer.values, src_w, src_h, width, height))
    return normalize_values(_fit_length(buffer.values.ravel(), total))


def _from_raw(raw: RawBuffer, width: int, height: int) -> np.ndarray:
    total = width * height
    alpha = np.zeros(total, dtype=np.uint8)
    count = min(raw.values.size, total)
    alpha[:count] = normalize_values(raw.values.ravel()[:count])
    return alpha


def normalize_mask(
    result: Any,
    width: int,
    height: int,
    score_threshold: float = DEFAULT_SCORE_THRESHOLD,
) -> NormalizedMask:
    """
    Produce an opacity buffer of ``width * height`` values from any segmentation result.

    `result` may be a `SegmentationResult` variant or raw backend output, which
    is classified first. Never raises: failures degrade to an opaque buffer
    with ``used_fallback=True``.
    """
    try:
        variant = classify_result(result)
    except Exception as exc:  # noqa: BLE001
        logger.warning("mask: could not classify segmentation result (%s), using opaque fallback", exc)
        return NormalizedMask(opaque_mask(width, height), True)

    if isinstance(variant, EmptyResult):
        logger.warning("mask: %s, using opaque fallback", variant.reason)
        return NormalizedMask(opaque_mask(width, height), True)

    if isinstance(variant, ConfidenceScore):
        value = 255 if variant.score > score_threshold else 0
        logger.debug("mask: score-only result %.3f -> %d", variant.score, value)
        return NormalizedMask(np.full(width * height, value, dtype=np.uint8), False)

    if isinstance(variant, UnrecognizedResult):
        logger.warning("mask: %s, using opaque fallback", variant.description)
        return NormalizedMask(opaque_mask(width, height), True)

    try:
        if isinstance(variant, MaskSurface):
            alpha = _from_surface(variant, width, height)
        elif isinstance(variant, MaskBuffer):
            alpha = _from_buffer(variant, width, height)
        elif isinstance(variant, RawBuffer):
            alpha = _from_raw(variant, width, height)
        else:
            raise TypeError(f"unhandled segmentation variant {type(variant).__name__}")
    except Exception as exc:  # noqa: BLE001
        logger.warning("mask: failed to extract mask data (%s), using opaque fallback", exc)
        return NormalizedMask(opaque_mask(width, height), True)

    if alpha.size != width * height:
        logger.warning(
            "mask: extracted %d values for a %dx%d canvas, using opaque fallback",
            alpha.size,
            width,
            height,
        )
        return NormalizedMask(opaque_mask(width, height), True)
    return NormalizedMask(alpha, False)
