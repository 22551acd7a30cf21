"""Environment-based configuration for ClassifyX."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from CLASSIFYX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="CLASSIFYX_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Classifier variant and model source
    variant: Literal["fashion", "brain_tumor"] = "fashion"
    model_repo_id: str = "classifyx/classifyx-models"
    model_filename: str | None = None
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Sessions idle longer than this many seconds are dropped (0 = never)
    session_ttl: int = Field(default=3600, ge=0)

    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
