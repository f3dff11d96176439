"""
FastAPI layer exposing RMBG background removal.

Endpoints:
 - GET /health
 - POST /remove-bg          (JSON body with an image URL)
 - POST /remove-bg/upload   (multipart file upload)
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
import logging
from typing import Optional

from fastapi import FastAPI, File, HTTPException, Query, UploadFile
from fastapi.responses import Response
from pydantic import BaseModel, HttpUrl
import requests

from . import config
from .errors import InferenceError, ModelLoadError
from .model_loader import SegmenterManager, get_model_info
from .pipeline import BackgroundRemover, ProcessingResult, default_output_filename

settings = config.get_settings()
logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))
logger = logging.getLogger(__name__)

segmenter_manager = SegmenterManager(settings=settings)

RESPONSE_FORMATS = ("png", "data_uri")


@asynccontextmanager
async def lifespan(_app: FastAPI):
    if settings.preload_model:
        segmenter_manager.preload()
    yield
    await segmenter_manager.dispose()


app = FastAPI(title="RMBG Background Removal Service", version="0.1.0", lifespan=lifespan)


class RemoveBgRequest(BaseModel):
    imageUrl: HttpUrl
    responseFormat: Optional[str] = None  # "png" | "data_uri"


class RemoveBgResponse(BaseModel):
    dataUri: str
    originalWidth: int
    originalHeight: int
    processingTimeMs: float
    usedFallbackMask: bool


def _download_image(url: str) -> tuple[bytes, Optional[str]]:
    resp = requests.get(url, timeout=(5, settings.request_timeout_seconds))
    resp.raise_for_status()
    return resp.content, resp.headers.get("Content-Type")


def _image_content_type(content_type: Optional[str]) -> Optional[str]:
    # Generic types (octet-stream etc.) say nothing; the bytes are sniffed instead.
    if content_type and content_type.lower().startswith("image/"):
        return content_type
    return None


def _check_format(response_format: Optional[str]) -> str:
    fmt = (response_format or "png").lower()
    if fmt not in RESPONSE_FORMATS:
        raise HTTPException(status_code=400, detail="responseFormat must be one of png | data_uri")
    return fmt


async def _run_pipeline(image_bytes: bytes, content_type: Optional[str]) -> ProcessingResult:
    remover = BackgroundRemover(segmenter_manager, settings=settings)
    try:
        result = await remover.process(image_bytes, content_type=content_type)
    except ValueError as ve:
        raise HTTPException(status_code=400, detail=str(ve)) from ve
    except ModelLoadError as exc:
        logger.exception("Model load failed: %s", exc)
        raise HTTPException(status_code=503, detail="Segmentation model unavailable") from exc
    except InferenceError as exc:
        logger.exception("Segmentation failed: %s", exc)
        raise HTTPException(status_code=500, detail="Background removal failed") from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Background removal failed: %s", exc)
        raise HTTPException(status_code=500, detail="Background removal failed") from exc
    if result is None:
        raise HTTPException(status_code=409, detail="Processing already in progress")
    return result


def _render(result: ProcessingResult, fmt: str, filename: str):
    if fmt == "data_uri":
        return RemoveBgResponse(
            dataUri=result.to_data_uri(),
            originalWidth=result.original_width,
            originalHeight=result.original_height,
            processingTimeMs=result.processing_time_ms,
            usedFallbackMask=result.used_fallback_mask,
        )
    return Response(
        content=result.to_png_bytes(),
        media_type="image/png",
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "X-Processing-Time-Ms": f"{result.processing_time_ms:.1f}",
            "X-Used-Fallback-Mask": str(result.used_fallback_mask).lower(),
        },
    )


@app.get("/health")
def health():
    return {
        "status": "ok",
        "modelReady": segmenter_manager.is_ready,
        "modelLoading": segmenter_manager.is_loading,
        "model": get_model_info(),
    }


@app.post("/remove-bg")
async def remove_bg(body: RemoveBgRequest):
    fmt = _check_format(body.responseFormat)
    try:
        image_bytes, content_type = await asyncio.to_thread(_download_image, str(body.imageUrl))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Failed to download image: %s", exc)
        raise HTTPException(status_code=400, detail="Could not download image") from exc

    result = await _run_pipeline(image_bytes, _image_content_type(content_type))
    filename = default_output_filename(body.imageUrl.path)
    return _render(result, fmt, filename)


@app.post("/remove-bg/upload")
async def remove_bg_upload(
    file: UploadFile = File(...),
    response_format: Optional[str] = Query(None),
):
    fmt = _check_format(response_format)
    image_bytes = await file.read()
    result = await _run_pipeline(image_bytes, _image_content_type(file.content_type))
    return _render(result, fmt, default_output_filename(file.filename))
