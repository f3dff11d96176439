"""
Configuration loader for the RMBG background-removal service.

Environment variables (prefixed with ``RMBG_``) are centralized here to keep
the rest of the code focused on the pipeline and to make operational tuning
clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional, Tuple

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

SUPPORTED_FORMATS = ("JPEG", "PNG", "WEBP")
SUPPORTED_MIME_TYPES = {
    "image/jpeg": "JPEG",
    "image/png": "PNG",
    "image/webp": "WEBP",
}


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RMBG_",
        env_file=".env",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Model
    model_id: str = "briaai/RMBG-1.4"
    model_revision: Optional[str] = None
    trust_remote_code: bool = True
    return_mask: bool = True
    device: str = "auto"

    # Preprocessing / input validation
    target_size: int = 1024
    max_file_size: int = 10 * 1024 * 1024
    allowed_formats: Tuple[str, ...] = SUPPORTED_FORMATS
    background_rgba: Tuple[int, int, int, int] = (0, 0, 0, 0)

    # Mask extraction
    score_threshold: float = 0.5
    inference_timeout_seconds: Optional[float] = None

    # API
    request_timeout_seconds: int = 30
    preload_model: bool = False
    log_level: str = "INFO"

    # Debugging
    debug: bool = False
    debug_output_dir: Path = Field(Path("/tmp/rmbg_debug"))

    @field_validator("target_size", "max_file_size")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v

    @field_validator("allowed_formats")
    @classmethod
    def validate_formats(cls, v: Tuple[str, ...]) -> Tuple[str, ...]:
        formats = tuple(fmt.upper() for fmt in v)
        unknown = set(formats) - set(SUPPORTED_FORMATS)
        if unknown:
            raise ValueError(f"RMBG_ALLOWED_FORMATS contains unsupported formats: {sorted(unknown)}")
        return formats

    @field_validator("background_rgba")
    @classmethod
    def validate_background(cls, v: Tuple[int, int, int, int]) -> Tuple[int, int, int, int]:
        if any(c < 0 or c > 255 for c in v):
            raise ValueError("RMBG_BACKGROUND_RGBA channels must be within 0-255")
        return v

    @field_validator("score_threshold")
    @classmethod
    def validate_threshold(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError("RMBG_SCORE_THRESHOLD must be within [0, 1]")
        return v

    @field_validator("inference_timeout_seconds")
    @classmethod
    def validate_timeout(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            return None
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()
