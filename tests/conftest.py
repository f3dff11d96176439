"""Shared fixtures: small settings, synthetic images, and a fake segmentation backend."""

from __future__ import annotations

from io import BytesIO
from typing import Any, Callable, List, Optional

from PIL import Image
import pytest

from rmbg_service.config import Settings


def make_image_bytes(
    width: int,
    height: int,
    color=(200, 30, 30),
    fmt: str = "PNG",
    mode: str = "RGB",
) -> bytes:
    image = Image.new(mode, (width, height), color)
    buf = BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


class FakeBackend:
    """Stands in for the segmentation pipeline; returns a canned raw output."""

    def __init__(self, output: Any = None, error: Optional[Exception] = None, hook: Optional[Callable] = None):
        self.output = output
        self.error = error
        self.hook = hook
        self.calls: List[tuple] = []
        self.disposed = False

    def __call__(self, image, **kwargs):
        self.calls.append((image.size, image.mode, kwargs))
        if self.hook:
            self.hook()
        if self.error:
            raise self.error
        if callable(self.output):
            return self.output(image)
        return self.output

    def dispose(self):
        self.disposed = True


class FakeLoader:
    """Loader returning `backend`; raises the queued errors first, one per call."""

    def __init__(self, backend: FakeBackend, errors: Optional[List[Exception]] = None, hook: Optional[Callable] = None):
        self.backend = backend
        self.errors = list(errors or [])
        self.hook = hook
        self.calls = 0

    def __call__(self, settings, on_progress):
        self.calls += 1
        if self.hook:
            self.hook(on_progress)
        if self.errors:
            raise self.errors.pop(0)
        return self.backend


@pytest.fixture
def settings() -> Settings:
    return Settings(target_size=64, max_file_size=1024 * 1024)


@pytest.fixture
def png_bytes() -> bytes:
    return make_image_bytes(32, 32)


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    return make_image_bytes
