"""
Configuration loader for the RMBG background-removal service.

Environment variables are centralized here to keep the rest of the code
focused on business logic and to make operational tuning clear.
"""

from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

PACKAGE_DIR = Path(__file__).resolve().parent
MODEL_SUBDIR = Path("models") / "RMBG-2.0" / "onnx"

DEFAULT_MODEL_URL_TEMPLATE = (
    "https://huggingface.co/camenduru/RMBG-2.0/resolve/main/onnx/{model_id}?download=true"
)


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
        protected_namespaces=("settings_",),
    )

    # Model storage + download
    models_dir: Optional[Path] = Field(None)
    hf_token: Optional[str] = Field(None)
    model_url_template: str = Field(DEFAULT_MODEL_URL_TEMPLATE)
    download_connect_timeout_seconds: int = Field(10)
    download_read_timeout_seconds: int = Field(60)
    download_chunk_bytes: int = Field(1024 * 1024)
    progress_interval_ms: int = Field(200)

    # Inference
    force_cpu: bool = Field(False)

    # Output
    png_compress_level: int = Field(9)

    # API
    log_level: str = Field("INFO")

    # Debugging
    debug: bool = Field(False)
    debug_output_dir: Path = Field(Path("/tmp/rmbg_debug"))

    @field_validator("model_url_template")
    @classmethod
    def validate_url_template(cls, v: str) -> str:
        if "{model_id}" not in v:
            raise ValueError("MODEL_URL_TEMPLATE must contain a {model_id} placeholder")
        return v

    @field_validator("png_compress_level")
    @classmethod
    def validate_compress_level(cls, v: int) -> int:
        if not 0 <= v <= 9:
            raise ValueError("PNG_COMPRESS_LEVEL must be between 0 and 9")
        return v

    @field_validator("progress_interval_ms", "download_chunk_bytes")
    @classmethod
    def validate_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be a positive integer")
        return v


@lru_cache()
def get_settings() -> Settings:
    """Return cached settings to avoid reparsing env on every call."""
    return Settings()


def resolve_models_dir(settings: Optional[Settings] = None) -> Path:
    """
    Locate the root directory holding installed model files.

    Search order:
     1. ``MODELS_DIR`` when set,
     2. ``<project root>/models/RMBG-2.0/onnx`` when it already exists,
     3. ``<package dir>/models/RMBG-2.0/onnx`` (created by the first download).
    """
    settings = settings or get_settings()
    if settings.models_dir is not None:
        return Path(settings.models_dir)

    project_dir = PACKAGE_DIR.parent / MODEL_SUBDIR
    if project_dir.is_dir():
        return project_dir
    return PACKAGE_DIR / MODEL_SUBDIR
