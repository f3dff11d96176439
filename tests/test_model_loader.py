"""Tests for the segmenter lifecycle manager, using a fake backend (no downloads)."""

from __future__ import annotations

import asyncio
import importlib.util
import threading
import time

from PIL import Image
import pytest

from rmbg_service.config import Settings
from rmbg_service.errors import InferenceError, ModelLoadError
from rmbg_service.model_loader import (
    ModelProgress,
    Segmenter,
    SegmenterManager,
    get_model_info,
    normalize_progress,
)
from rmbg_service.segmentation import ConfidenceScore, EmptyResult

from conftest import FakeBackend, FakeLoader


def test_concurrent_callers_share_one_load(settings):
    loader = FakeLoader(FakeBackend(), hook=lambda _progress: time.sleep(0.05))
    manager = SegmenterManager(loader=loader, settings=settings)

    async def scenario():
        return await asyncio.gather(manager.get_segmenter(), manager.get_segmenter(), manager.get_segmenter())

    first, second, third = asyncio.run(scenario())
    assert loader.calls == 1
    assert manager.load_count == 1
    assert first is second is third
    assert manager.is_ready


def test_loaded_segmenter_is_cached(settings):
    loader = FakeLoader(FakeBackend())
    manager = SegmenterManager(loader=loader, settings=settings)
    events = []

    async def scenario():
        a = await manager.get_segmenter()
        b = await manager.get_segmenter(events.append)
        return a, b

    a, b = asyncio.run(scenario())
    assert a is b
    assert loader.calls == 1
    assert events == [ModelProgress(status="ready", progress=100)]


def test_failed_load_is_not_cached(settings):
    loader = FakeLoader(FakeBackend(), errors=[RuntimeError("network down")])
    manager = SegmenterManager(loader=loader, settings=settings)

    async def scenario():
        with pytest.raises(ModelLoadError, match="network down"):
            await manager.get_segmenter()
        assert not manager.is_loading
        assert not manager.is_ready
        return await manager.get_segmenter()

    segmenter = asyncio.run(scenario())
    assert isinstance(segmenter, Segmenter)
    assert loader.calls == 2


def test_concurrent_callers_all_see_the_failure(settings):
    loader = FakeLoader(FakeBackend(), errors=[RuntimeError("boom")], hook=lambda _p: time.sleep(0.02))
    manager = SegmenterManager(loader=loader, settings=settings)

    async def scenario():
        return await asyncio.gather(manager.get_segmenter(), manager.get_segmenter(), return_exceptions=True)

    results = asyncio.run(scenario())
    assert loader.calls == 1
    assert all(isinstance(r, ModelLoadError) for r in results)


def test_dispose_releases_backend_and_allows_reload(settings):
    backend = FakeBackend()
    loader = FakeLoader(backend)
    manager = SegmenterManager(loader=loader, settings=settings)

    async def scenario():
        await manager.dispose()  # nothing loaded: no-op
        await manager.get_segmenter()
        await manager.dispose()
        assert not manager.is_ready
        await manager.get_segmenter()

    asyncio.run(scenario())
    assert backend.disposed
    assert loader.calls == 2


def test_dispose_errors_are_swallowed(settings):
    backend = FakeBackend()

    def broken_dispose():
        raise RuntimeError("already freed")

    backend.dispose = broken_dispose
    manager = SegmenterManager(loader=FakeLoader(backend), settings=settings)

    async def scenario():
        await manager.get_segmenter()
        await manager.dispose()

    asyncio.run(scenario())
    assert not manager.is_ready


def test_progress_is_normalized_and_monotonic(settings):
    def report(on_progress):
        on_progress(ModelProgress(status="download", file="model.onnx"))
        on_progress(ModelProgress(status="progress", loaded=50, total=100))
        on_progress(ModelProgress(status="progress", loaded=20, total=100))
        on_progress(ModelProgress(status="progress", loaded=75, total=100))

    manager = SegmenterManager(loader=FakeLoader(FakeBackend(), hook=report), settings=settings)
    events = []
    asyncio.run(manager.get_segmenter(events.append))

    assert events[0].status == "initiate"
    assert events[-1] == ModelProgress(status="ready", progress=100)
    percents = [e.progress for e in events]
    assert percents == sorted(percents)
    assert 75 in percents
    assert all(isinstance(p, int) and 0 <= p <= 100 for p in percents)


@pytest.mark.parametrize(
    "info,expected",
    [
        (ModelProgress(status="initiate"), 0),
        (ModelProgress(status="download"), 0),
        (ModelProgress(status="progress", loaded=1, total=3), 33),
        (ModelProgress(status="progress", loaded=5), 0),
        (ModelProgress(status="done"), 100),
        (ModelProgress(status="ready"), 100),
    ],
)
def test_normalize_progress(info, expected):
    assert normalize_progress(info).progress == expected


def test_preload_logs_failures(settings, caplog):
    manager = SegmenterManager(loader=FakeLoader(FakeBackend(), errors=[RuntimeError("nope")]), settings=settings)

    async def scenario():
        task = manager.preload()
        await asyncio.sleep(0)
        assert manager.preload() is None  # already loading
        await task

    with caplog.at_level("ERROR", logger="rmbg_service.model_loader"):
        asyncio.run(scenario())
    assert not manager.is_ready
    assert "Model preload failed" in caplog.text


def test_segment_passes_return_mask_and_classifies(settings):
    backend = FakeBackend(output=[{"score": 0.8}])
    manager = SegmenterManager(loader=FakeLoader(backend), settings=settings)

    async def scenario():
        segmenter = await manager.get_segmenter()
        return await segmenter.segment(Image.new("RGBA", (8, 8)))

    result = asyncio.run(scenario())
    assert result == ConfidenceScore(0.8)
    assert backend.calls == [((8, 8), "RGB", {"return_mask": True})]


def test_return_mask_can_be_disabled():
    backend = FakeBackend(output=None)
    manager = SegmenterManager(loader=FakeLoader(backend), settings=Settings(return_mask=False))

    async def scenario():
        segmenter = await manager.get_segmenter()
        return await segmenter.segment(Image.new("RGBA", (2, 2)))

    assert isinstance(asyncio.run(scenario()), EmptyResult)
    assert backend.calls[0][2] == {}


def test_segment_wraps_backend_errors():
    segmenter = Segmenter(FakeBackend(error=RuntimeError("CUDA out of memory")))
    with pytest.raises(InferenceError, match="CUDA out of memory"):
        asyncio.run(segmenter.segment(Image.new("RGBA", (2, 2))))


def test_segment_timeout_raises_inference_error():
    gate = threading.Event()
    segmenter = Segmenter(FakeBackend(hook=lambda: gate.wait(0.5)), timeout_seconds=0.05)
    try:
        with pytest.raises(InferenceError, match="timed out"):
            asyncio.run(segmenter.segment(Image.new("RGBA", (2, 2))))
    finally:
        gate.set()


def test_model_info():
    assert get_model_info()["name"] == "RMBG-1.4"


@pytest.mark.parametrize("module", ["torchvision", "skimage"])
def test_remote_model_code_requirements_are_installed(module):
    # RMBG-1.4's remote code imports these when the pipeline is built.
    assert importlib.util.find_spec(module) is not None
