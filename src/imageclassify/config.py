"""Environment-based configuration for imageclassify."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from imageclassify.ml.model_manager import ModelWeight
from imageclassify.ml.providers import DeviceClass


class Settings(BaseSettings):
    """Application settings loaded from IMAGECLASSIFY_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGECLASSIFY_",
        case_sensitive=False,
    )

    # Authentication (None = disabled)
    api_key: str | None = None

    # Model selection
    model: ModelWeight = ModelWeight.MOBILENET_V3_SMALL
    device: DeviceClass = DeviceClass.DEFAULT

    # Model files
    models_dir: str = "models"
    models_repo: str | None = None

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Used when the model declares symbolic spatial dimensions
    default_input_size: int = Field(default=224, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
