"""
Model loading utilities for RMBG.

`SegmenterManager` owns the loaded segmentation backend:
 - loads it once, on first `get_segmenter()` call,
 - makes concurrent callers share the single in-flight load,
 - forgets failed loads so the next call retries from scratch,
 - releases the backend on `dispose()`.

The backend itself is opaque: any callable ``backend(image, **kwargs)``
returning raw segmentation output. The default loader builds a
`transformers` image-segmentation pipeline for ``briaai/RMBG-1.4``.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
import inspect
import logging
from typing import Any, Callable, Dict, Optional

from PIL import Image
import torch

from . import config
from .errors import InferenceError, ModelLoadError
from .segmentation import SegmentationResult, classify_result

logger = logging.getLogger(__name__)

MODEL_TASK = "image-segmentation"

Backend = Callable[..., Any]


@dataclass(frozen=True)
class ModelProgress:
    status: str  # initiate | download | progress | done | ready
    progress: int = 0
    file: Optional[str] = None
    loaded: Optional[int] = None
    total: Optional[int] = None


ProgressCallback = Callable[[ModelProgress], None]
Loader = Callable[[config.Settings, ProgressCallback], Backend]


def normalize_progress(info: ModelProgress) -> ModelProgress:
    """Derive an integer 0-100 percentage from whatever the loader reported."""
    progress = 0
    if info.status == "progress" and info.loaded and info.total:
        progress = int(round(info.loaded / info.total * 100))
    elif info.status in ("done", "ready"):
        progress = 100
    return replace(info, progress=min(max(progress, 0), 100))


def get_device(preference: str = "auto") -> torch.device:
    """Return the inference device; `auto` prefers CUDA, then Apple MPS, then CPU."""
    if preference and preference != "auto":
        return torch.device(preference)
    if torch.cuda.is_available():
        return torch.device("cuda")
    if torch.backends.mps.is_available():  # type: ignore[attr-defined]
        return torch.device("mps")
    return torch.device("cpu")


def _download_snapshot(settings: config.Settings, on_progress: ProgressCallback) -> str:
    """Fetch the model files into the hub cache, reporting per-file progress."""
    from huggingface_hub import snapshot_download
    from tqdm.auto import tqdm

    class _ProgressBar(tqdm):
        def __init__(self, *args, **kwargs):
            kwargs["disable"] = True
            super().__init__(*args, **kwargs)
            # Disabled bars do not advance `n`.
            self.completed = 0

        def update(self, n=1):
            self.completed += n or 0
            on_progress(
                ModelProgress(
                    status="progress",
                    file=settings.model_id,
                    loaded=int(self.completed),
                    total=int(self.total) if self.total else None,
                )
            )
            return super().update(n)

    return snapshot_download(
        repo_id=settings.model_id,
        revision=settings.model_revision,
        tqdm_class=_ProgressBar,
    )


def load_transformers_backend(settings: config.Settings, on_progress: ProgressCallback) -> Backend:
    """Default loader: hub snapshot + `transformers.pipeline` on the preferred device."""
    from transformers import pipeline

    on_progress(ModelProgress(status="download", file=settings.model_id))
    model_path = _download_snapshot(settings, on_progress)
    on_progress(ModelProgress(status="done", file=settings.model_id))

    device = get_device(settings.device)
    segmenter = pipeline(
        MODEL_TASK,
        model=model_path,
        trust_remote_code=settings.trust_remote_code,
        device=device,
    )
    logger.info("Segmentation model %s loaded on device: %s", settings.model_id, device)
    return segmenter


def get_model_info() -> Dict[str, str]:
    return {"name": "RMBG-1.4", "size": "~176MB", "parameters": "44.1M"}


class Segmenter:
    """Handle to a loaded backend; `segment` runs it off the event loop."""

    def __init__(
        self,
        backend: Backend,
        call_kwargs: Optional[Dict[str, Any]] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.backend = backend
        self.call_kwargs = dict(call_kwargs or {})
        self.timeout_seconds = timeout_seconds

    def _run(self, image: Image.Image) -> Any:
        if image.mode != "RGB":
            image = image.convert("RGB")
        with torch.no_grad():
            return self.backend(image, **self.call_kwargs)

    async def segment(self, image: Image.Image) -> SegmentationResult:
        try:
            call = asyncio.to_thread(self._run, image)
            if self.timeout_seconds:
                raw = await asyncio.wait_for(call, timeout=self.timeout_seconds)
            else:
                raw = await call
        except asyncio.TimeoutError as exc:
            raise InferenceError(f"Segmentation timed out after {self.timeout_seconds:g}s") from exc
        except Exception as exc:  # noqa: BLE001
            raise InferenceError(f"Segmentation failed: {exc}") from exc
        return classify_result(raw)

    async def close(self) -> None:
        release = getattr(self.backend, "dispose", None)
        if callable(release):
            outcome = release()
            if inspect.isawaitable(outcome):
                await outcome
        elif hasattr(self.backend, "model"):
            # transformers pipelines have no dispose; dropping the model frees weights.
            self.backend.model = None
            if torch.cuda.is_available():
                torch.cuda.empty_cache()


class SegmenterManager:
    """Owns the single loaded `Segmenter` and de-duplicates concurrent loads."""

    def __init__(self, loader: Optional[Loader] = None, settings: Optional[config.Settings] = None):
        self.settings = settings or config.get_settings()
        self._loader = loader or load_transformers_backend
        self._segmenter: Optional[Segmenter] = None
        self._loading: Optional[asyncio.Task] = None
        self.load_count = 0

    @property
    def is_ready(self) -> bool:
        return self._segmenter is not None

    @property
    def is_loading(self) -> bool:
        return self._loading is not None and self._segmenter is None

    def _call_kwargs(self) -> Dict[str, Any]:
        return {"return_mask": True} if self.settings.return_mask else {}

    async def get_segmenter(self, on_progress: Optional[ProgressCallback] = None) -> Segmenter:
        if self._segmenter is not None:
            if on_progress:
                on_progress(ModelProgress(status="ready", progress=100))
            return self._segmenter

        if self._loading is None:
            self._loading = asyncio.ensure_future(self._load(on_progress))
        return await asyncio.shield(self._loading)

    def _forget_task(self) -> None:
        if self._loading is asyncio.current_task():
            self._loading = None

    async def _load(self, on_progress: Optional[ProgressCallback]) -> Segmenter:
        loop = asyncio.get_running_loop()
        last = {"progress": 0}

        def emit(info: ModelProgress) -> None:
            info = normalize_progress(info)
            # Percentages never go backwards within one load.
            info = replace(info, progress=max(info.progress, last["progress"]))
            last["progress"] = info.progress
            if on_progress:
                on_progress(info)

        def emit_threadsafe(info: ModelProgress) -> None:
            loop.call_soon_threadsafe(emit, info)

        self.load_count += 1
        emit(ModelProgress(status="initiate"))
        logger.info("Loading segmentation model %s", self.settings.model_id)
        try:
            backend = await asyncio.to_thread(self._loader, self.settings, emit_threadsafe)
        except Exception as exc:  # noqa: BLE001
            self._forget_task()
            logger.warning("Segmentation model load failed: %s", exc)
            raise ModelLoadError(f"Failed to load model: {exc}") from exc

        self._segmenter = Segmenter(
            backend,
            call_kwargs=self._call_kwargs(),
            timeout_seconds=self.settings.inference_timeout_seconds,
        )
        self._forget_task()
        emit(ModelProgress(status="ready", progress=100))
        return self._segmenter

    def preload(self, on_progress: Optional[ProgressCallback] = None) -> Optional[asyncio.Task]:
        """Start loading without waiting; failures are only logged."""
        if self._segmenter is not None or self._loading is not None:
            return None

        async def _run() -> None:
            try:
                await self.get_segmenter(on_progress)
            except ModelLoadError as exc:
                logger.error("Model preload failed: %s", exc)

        return asyncio.ensure_future(_run())

    async def dispose(self) -> None:
        """Release the loaded backend so the next call reloads it; no-op when empty."""
        segmenter, self._segmenter = self._segmenter, None
        self._loading = None
        if segmenter is None:
            return
        try:
            await segmenter.close()
        except Exception as exc:  # noqa: BLE001
            logger.warning("Error disposing model: %s", exc)
