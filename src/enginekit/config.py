#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Persisted engine settings and on-disk layout.

EngineSettings is the desired configuration: which model the service should
serve and how (compute mode, GPU backend, CUDA build, offloaded layers). It
is written only when a setup session completes successfully, or when the
caller edits it explicitly.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

from .models.catalog import DEFAULT_MODEL_ID, sanitize_model_id
from .models.tiers import parse_preferred_tier
from .schema import (
    ComputeConfig,
    default_gpu_backend,
    effective_gpu_layers,
    normalize_compute_mode,
    normalize_cuda_version,
    normalize_gpu_backend,
    normalize_preferred_compute,
)

logger = logging.getLogger(__name__)

# ============================================================================
# CONFIGURATION CONSTANTS
# ============================================================================

HOME_ENV = "ENGINEKIT_HOME"
BUNDLED_ENV = "ENGINEKIT_BUNDLED_DIR"
DEFAULT_GPU_LAYERS = 20
MAX_GPU_LAYERS = 200


# ============================================================================
# PATHS
# ============================================================================

class EngineKitPaths(BaseModel):
    """Directory layout for settings, runtimes and models."""
    home: Path = Field(..., description="Root directory for all EngineKit state")
    bundled_dir: Optional[Path] = Field(None, description="Read-only directory with pre-shipped runtimes/models")

    @classmethod
    def default(cls) -> "EngineKitPaths":
        home = os.environ.get(HOME_ENV) or str(Path.home() / ".enginekit")
        bundled = os.environ.get(BUNDLED_ENV)
        return cls(home=Path(home).expanduser(), bundled_dir=Path(bundled) if bundled else None)

    @property
    def llm_dir(self) -> Path:
        return self.home / "llm"

    @property
    def models_dir(self) -> Path:
        return self.llm_dir / "models"

    @property
    def runtime_root(self) -> Path:
        return self.llm_dir / "runtime"

    @property
    def settings_file(self) -> Path:
        return self.home / "settings.json"


# ============================================================================
# SETTINGS
# ============================================================================

class EngineSettings(BaseModel):
    """Desired inference configuration, persisted as JSON."""
    model_id: str = Field(DEFAULT_MODEL_ID, description="Model the service should serve")
    compute_mode: str = Field("cpu", description="'cpu', 'gpu' or 'hybrid'")
    gpu_backend: str = Field(default_factory=default_gpu_backend, description="'cuda', 'vulkan', 'metal' or 'none'")
    cuda_version: str = Field("12.4", description="CUDA build for the cuda backend")
    gpu_layers: int = Field(DEFAULT_GPU_LAYERS, description="Layers offloaded in hybrid mode (0..200)")
    auto_start: bool = Field(False, description="Start the service when the application launches")
    preferred_tier: Optional[int] = Field(None, description="Pinned model tier for quick recommendations; None means auto")
    preferred_compute: Optional[str] = Field(None, description="Pinned compute mode for quick recommendations")
    download_urls: Dict[str, str] = Field(
        default_factory=dict,
        description="Per-artifact download URL overrides, keyed by model id or 'runtime:<key>'",
    )

    @field_validator("model_id", mode="before")
    @classmethod
    def _sanitize_model_id(cls, value):
        return sanitize_model_id(value)

    @field_validator("compute_mode", mode="before")
    @classmethod
    def _normalize_mode(cls, value):
        return normalize_compute_mode(value)

    @field_validator("gpu_backend", mode="before")
    @classmethod
    def _normalize_backend(cls, value):
        return normalize_gpu_backend(value)

    @field_validator("cuda_version", mode="before")
    @classmethod
    def _normalize_cuda(cls, value):
        return normalize_cuda_version(value)

    @field_validator("preferred_tier", mode="before")
    @classmethod
    def _parse_preferred_tier(cls, value):
        return parse_preferred_tier(value)

    @field_validator("preferred_compute", mode="before")
    @classmethod
    def _normalize_preferred_compute(cls, value):
        return normalize_preferred_compute(value)

    @field_validator("gpu_layers", mode="before")
    @classmethod
    def _clamp_layers(cls, value):
        try:
            layers = int(value)
        except (TypeError, ValueError):
            return DEFAULT_GPU_LAYERS
        return max(0, min(MAX_GPU_LAYERS, layers))

    @property
    def compute_config(self) -> ComputeConfig:
        return ComputeConfig.from_raw(self.compute_mode, self.gpu_backend, self.cuda_version)

    def hardware_key(self):
        """The fields that must match a running service for it to be current."""
        config = self.compute_config
        cuda = config.cuda_version if config.gpu_backend == "cuda" else None
        layers = effective_gpu_layers(config.compute_mode, self.gpu_layers)
        return (config.compute_mode, config.gpu_backend, cuda, layers)

    def override_url(self, key: str) -> Optional[str]:
        url = (self.download_urls.get(key) or "").strip()
        return url or None


class SettingsStore:
    """
    Loads and saves EngineSettings as a JSON file.

    Writes go to a temporary file in the same directory and are moved into
    place with os.replace, so a crash never leaves a half-written file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> EngineSettings:
        """Return persisted settings, or defaults if the file is missing or unreadable."""
        if not self.path.exists():
            return EngineSettings()
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
            return EngineSettings.model_validate(data)
        except (OSError, ValueError, ValidationError) as e:
            logger.warning("Ignoring unreadable settings file %s: %s", self.path, e)
            return EngineSettings()

    def save(self, settings: EngineSettings) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=".settings-", suffix=".json", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(settings.model_dump_json(indent=2))
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("Saved settings to %s", self.path)

    def update(self, **changes) -> EngineSettings:
        """Apply field changes to the persisted settings and save them."""
        current = self.load().model_dump()
        current.update(changes)
        settings = EngineSettings.model_validate(current)
        self.save(settings)
        return settings
