"""Exception hierarchy for the background-removal pipeline."""

from __future__ import annotations


class BackgroundRemovalError(Exception):
    """Base class for failures that abort a pipeline run."""


class ValidationError(BackgroundRemovalError, ValueError):
    """Input rejected before any pipeline stage runs (format or size)."""


class DecodeError(BackgroundRemovalError, ValueError):
    """Image bytes could not be decoded."""


class ModelLoadError(BackgroundRemovalError):
    """The segmentation backend failed to initialize."""


class InferenceError(BackgroundRemovalError):
    """The segmentation backend raised (or timed out) during inference."""


class CompositingError(AssertionError):
    """Opacity buffer does not match the pixel buffer; an internal invariant was broken."""
