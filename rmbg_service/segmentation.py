"""
Segmentation result variants.

Segmentation backends return masks in inconsistent shapes depending on their
post-processing (a list of ``{"mask": PIL.Image, "score": ...}`` dicts, a bare
PIL image, numpy arrays, torch tensors, objects with ``.data``/``.width``/
``.height``). `classify_result` discriminates that output once, at the
adapter boundary, into one of the small closed set of variants below; the
mask normalizer then handles each variant explicitly.
"""

from __future__ import annotations

from dataclasses import dataclass
from numbers import Real
from typing import Any, Optional, Tuple, Union

import numpy as np
from PIL import Image


@dataclass(frozen=True)
class EmptyResult:
    """No result, or a result list whose first segment is empty."""

    reason: str = "empty result"


@dataclass(frozen=True)
class MaskSurface:
    """Renderable mask with its own size and per-pixel readback."""

    image: Image.Image

    @property
    def width(self) -> int:
        return self.image.width

    @property
    def height(self) -> int:
        return self.image.height

    def read_pixels(self) -> np.ndarray:
        """Interleaved RGBA readback, shape (H, W, 4) uint8."""
        return np.asarray(self.image.convert("RGBA"), dtype=np.uint8)


@dataclass(frozen=True)
class MaskBuffer:
    """Flat numeric mask; width/height are None when the backend did not declare them."""

    values: np.ndarray
    width: Optional[int] = None
    height: Optional[int] = None

    @property
    def has_dimensions(self) -> bool:
        return bool(self.width) or bool(self.height)

    def source_size(self, width: int, height: int) -> Tuple[int, int]:
        """Declared size, with each undeclared axis taken from the target."""
        return int(self.width or width), int(self.height or height)


@dataclass(frozen=True)
class ConfidenceScore:
    """Scalar foreground confidence with no spatial information."""

    score: float


@dataclass(frozen=True)
class RawBuffer:
    """Numeric buffer carried by the top-level result rather than a segment."""

    values: np.ndarray


@dataclass(frozen=True)
class UnrecognizedResult:
    description: str


SegmentationResult = Union[
    EmptyResult, MaskSurface, MaskBuffer, ConfidenceScore, RawBuffer, UnrecognizedResult
]
VARIANTS = (EmptyResult, MaskSurface, MaskBuffer, ConfidenceScore, RawBuffer, UnrecognizedResult)


def _get(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _is_empty(obj: Any) -> bool:
    if obj is None:
        return True
    if isinstance(obj, (dict, list, tuple)):
        return len(obj) == 0
    return False


def _to_numpy(value: Any) -> Optional[np.ndarray]:
    """Best-effort conversion of array-likes (numpy, torch, lists) to a float array."""
    if value is None or isinstance(value, (str, bytes, Image.Image)):
        return None
    if hasattr(value, "detach"):
        value = value.detach()
    if hasattr(value, "cpu"):
        value = value.cpu()
    if hasattr(value, "numpy") and not isinstance(value, np.ndarray):
        value = value.numpy()
    try:
        array = np.asarray(value, dtype=np.float64)
    except (TypeError, ValueError):
        return None
    if array.ndim == 0:
        return None
    return array


def _dimension(value: Any) -> Optional[int]:
    if isinstance(value, Real) and not isinstance(value, bool) and value > 0:
        return int(value)
    return None


def _classify_mask(mask: Any) -> Optional[SegmentationResult]:
    if isinstance(mask, Image.Image):
        return MaskSurface(mask)

    if isinstance(mask, np.ndarray) or hasattr(mask, "detach"):
        array = _to_numpy(mask)
        if array is None or array.size == 0:
            return None
        if array.ndim == 3 and array.shape[0] != 1 and array.shape[-1] in (3, 4):
            # Interleaved pixels; readback only needs the first channel.
            return MaskBuffer(array[..., 0].ravel(), width=array.shape[1], height=array.shape[0])
        array = np.squeeze(array)
        if array.ndim == 2:
            return MaskBuffer(array.ravel(), width=array.shape[1], height=array.shape[0])
        return MaskBuffer(array.ravel())

    data = _get(mask, "data")
    if data is not None:
        values = _to_numpy(data)
        if values is None or values.size == 0:
            return None
        return MaskBuffer(
            values.ravel(),
            width=_dimension(_get(mask, "width")),
            height=_dimension(_get(mask, "height")),
        )
    return None


def classify_result(raw: Any) -> SegmentationResult:
    """Map raw backend output onto exactly one `SegmentationResult` variant."""
    if isinstance(raw, VARIANTS):
        return raw
    if _is_empty(raw):
        return EmptyResult("no segmentation result")

    if isinstance(raw, Image.Image):
        return MaskSurface(raw)

    if isinstance(raw, (list, tuple)):
        segment = raw[0]
        if _is_empty(segment):
            return EmptyResult("empty segment in result")

        mask = _get(segment, "mask")
        if mask is not None:
            classified = _classify_mask(mask)
            if classified is not None:
                return classified

        score = _get(segment, "score")
        if isinstance(score, Real) and not isinstance(score, bool):
            return ConfidenceScore(float(score))

    if not isinstance(raw, (list, tuple)):
        data = raw if isinstance(raw, np.ndarray) or hasattr(raw, "detach") else _get(raw, "data")
        values = _to_numpy(data)
        if values is not None:
            if values.size == 0:
                return EmptyResult("empty buffer in result")
            return RawBuffer(values.ravel())

    return UnrecognizedResult(f"unrecognized segmentation output of type {type(raw).__name__}")
