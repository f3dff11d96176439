"""
High-level background-removal pipeline.

`BackgroundRemover.process` is the main entry point used by the HTTP API and
the local runner. Orchestration is linear:
bytes in -> validate -> load model -> letterbox fit -> segment ->
normalize mask -> composite alpha -> RGBA result out.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re
import time
from typing import Callable, Optional

import numpy as np

from . import config
from .errors import BackgroundRemovalError
from .mask import normalize_mask
from .model_loader import ProgressCallback, SegmenterManager
from .postprocessing import apply_alpha, dump_debug_mask, encode_png, to_data_uri
from .preprocessing import load_and_fit, validate_image_bytes

logger = logging.getLogger(__name__)

STAGES = ("loading-model", "preprocessing", "inference", "postprocessing", "complete")
DEFAULT_OUTPUT_FILENAME = "removed-background.png"


@dataclass(frozen=True)
class ProgressEvent:
    stage: str
    percent: int
    message: Optional[str] = None


StageCallback = Callable[[ProgressEvent], None]


@dataclass(frozen=True)
class ProcessingResult:
    image: np.ndarray  # (H, W, 4) uint8 RGBA, read-only
    original_width: int
    original_height: int
    processing_time_ms: float
    used_fallback_mask: bool = False

    @property
    def width(self) -> int:
        return int(self.image.shape[1])

    @property
    def height(self) -> int:
        return int(self.image.shape[0])

    def to_png_bytes(self) -> bytes:
        return encode_png(self.image)

    def to_data_uri(self) -> str:
        return to_data_uri(self.to_png_bytes())


def default_output_filename(original_name: Optional[str]) -> str:
    """``photo.jpg`` -> ``photo-no-bg.png``."""
    if not original_name:
        return DEFAULT_OUTPUT_FILENAME
    stem = re.sub(r"\.[^/.]+$", "", original_name.rsplit("/", 1)[-1])
    return f"{stem}-no-bg.png" if stem else DEFAULT_OUTPUT_FILENAME


class BackgroundRemover:
    """
    One pipeline run at a time.

    A `process` call made while another is in flight on the same instance is
    ignored (logged, returns None); it is neither queued nor allowed to
    supersede the running one.
    """

    def __init__(
        self,
        manager: SegmenterManager,
        settings: Optional[config.Settings] = None,
        on_progress: Optional[StageCallback] = None,
        on_model_progress: Optional[ProgressCallback] = None,
    ):
        self.manager = manager
        self.settings = settings or manager.settings
        self.on_progress = on_progress
        self.on_model_progress = on_model_progress
        self.state = "idle"
        self.error_message: Optional[str] = None
        self.result: Optional[ProcessingResult] = None
        self._busy = False

    @property
    def is_processing(self) -> bool:
        return self._busy

    def reset(self) -> None:
        if self._busy:
            logger.warning("Cannot reset while processing is in progress")
            return
        self.state = "idle"
        self.error_message = None
        self.result = None

    def _emit(self, stage: str, percent: int, message: Optional[str] = None) -> None:
        self.state = stage
        if self.on_progress:
            self.on_progress(ProgressEvent(stage=stage, percent=percent, message=message))

    def _fail(self, exc: BaseException) -> None:
        self.state = "error"
        self.error_message = str(exc) or exc.__class__.__name__
        logger.error("Background removal failed: %s", self.error_message)

    async def process(self, image_bytes: bytes, content_type: Optional[str] = None) -> Optional[ProcessingResult]:
        """
        Run the full pipeline on raw image bytes.

        Raises:
            ValidationError: input rejected; no stage ran.
            DecodeError, ModelLoadError, InferenceError: a stage failed.
        """
        if self._busy:
            logger.warning("Processing already in progress")
            return None

        self._busy = True
        try:
            self.state = "validating"
            self.error_message = None
            self.result = None
            try:
                validate_image_bytes(image_bytes, content_type=content_type, settings=self.settings)
                self.result = await self._run(image_bytes)
            except Exception as exc:
                self._fail(exc)
                raise
            return self.result
        finally:
            self._busy = False

    async def _run(self, image_bytes: bytes) -> ProcessingResult:
        settings = self.settings
        start = time.perf_counter()

        self._emit("loading-model", 0, "Loading AI model...")
        segmenter = await self.manager.get_segmenter(self.on_model_progress)
        self._emit("loading-model", 100, "Model ready")

        self._emit("preprocessing", 0, "Loading image...")
        fitted = load_and_fit(image_bytes, settings.target_size, background=settings.background_rgba)
        self._emit("preprocessing", 100, "Image loaded")

        self._emit("inference", 0, "Processing image...")
        segmentation = await segmenter.segment(fitted.to_model_input())
        self._emit("inference", 100, "Segmentation complete")

        self._emit("postprocessing", 0, "Applying transparency...")
        width, height = fitted.canvas_size
        mask = normalize_mask(segmentation, width, height, score_threshold=settings.score_threshold)
        if settings.debug:
            dump_debug_mask(mask.alpha, width, height, settings.debug_output_dir)
        pixels = apply_alpha(fitted.pixels, mask.alpha)
        pixels.setflags(write=False)
        self._emit("postprocessing", 100, "Processing complete")

        elapsed_ms = (time.perf_counter() - start) * 1000.0
        result = ProcessingResult(
            image=pixels,
            original_width=fitted.original_width,
            original_height=fitted.original_height,
            processing_time_ms=elapsed_ms,
            used_fallback_mask=mask.used_fallback,
        )
        logger.debug(
            "pipeline: %dx%d -> %dx%d canvas in %.1fms (fallback=%s)",
            fitted.original_width,
            fitted.original_height,
            width,
            height,
            elapsed_ms,
            mask.used_fallback,
        )
        self._emit("complete", 100, "Done")
        return result


async def remove_background(
    image_bytes: bytes,
    manager: SegmenterManager,
    content_type: Optional[str] = None,
    on_progress: Optional[StageCallback] = None,
    on_model_progress: Optional[ProgressCallback] = None,
) -> ProcessingResult:
    remover = BackgroundRemover(manager, on_progress=on_progress, on_model_progress=on_model_progress)
    result = await remover.process(image_bytes, content_type=content_type)
    if result is None:
        raise BackgroundRemovalError("Processing already in progress")
    return result


async def remove_background_to_png(image_bytes: bytes, manager: SegmenterManager, **kwargs) -> bytes:
    result = await remove_background(image_bytes, manager, **kwargs)
    return result.to_png_bytes()


async def remove_background_to_data_uri(image_bytes: bytes, manager: SegmenterManager, **kwargs) -> str:
    result = await remove_background(image_bytes, manager, **kwargs)
    return result.to_data_uri()
