"""Environment-based configuration for PetClassifier."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Classifier settings loaded from PETCLASSIFIER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PETCLASSIFIER_",
        case_sensitive=False,
    )

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model artifacts
    models_dir: str = "models"
    models_repo: str = "petclassifier/pet-models"
    allow_download: bool = True

    # Model selection
    gate_model: str = "pet_gate_v1"
    species_model: str = "pet_species_v1"
    pet_label: str = "pets"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)

    # Startup
    preload_models: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


def get_settings() -> Settings:
    """Create and return classifier settings."""
    return Settings()
