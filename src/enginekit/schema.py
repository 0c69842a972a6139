#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Schema Definitions

Pydantic models shared across the setup flow: compute configurations and
candidates, benchmark results, runtime/model records and the live service
state. All of them are immutable value objects, so equality is structural.
"""

import platform
from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

ComputeMode = Literal["cpu", "gpu", "hybrid"]
GpuBackend = Literal["none", "cuda", "vulkan", "metal"]
CudaVersion = Literal["12.4", "13.1"]

DEFAULT_CUDA_VERSION = "12.4"
FULL_OFFLOAD_LAYERS = 999


def normalize_compute_mode(value: Optional[str]) -> str:
    """Map loose user/config input to a compute mode; unknown values become 'cpu'."""
    value = (value or "").strip().lower()
    return value if value in ("cpu", "gpu", "hybrid") else "cpu"


def normalize_preferred_compute(value: Optional[str]) -> Optional[str]:
    """Like normalize_compute_mode, but "auto" and unknown values mean no preference."""
    value = str(value or "").strip().lower()
    return value if value in ("cpu", "gpu", "hybrid") else None


def default_gpu_backend(system: Optional[str] = None) -> str:
    """Preferred GPU backend for a platform when none is configured."""
    system = system or platform.system()
    return "metal" if system == "Darwin" else "vulkan"


def normalize_gpu_backend(value: Optional[str], system: Optional[str] = None) -> str:
    value = (value or "").strip().lower()
    if value in ("none", "cuda", "vulkan", "metal"):
        return value
    return default_gpu_backend(system)


def effective_gpu_layers(compute_mode: str, gpu_layers: int) -> int:
    """Layers a compute mode offloads before any VRAM cap: none on CPU, all on GPU."""
    if compute_mode == "cpu":
        return 0
    if compute_mode == "gpu":
        return FULL_OFFLOAD_LAYERS
    return max(0, int(gpu_layers))


def normalize_cuda_version(value: Optional[str]) -> str:
    """Only the CUDA builds that are actually published are accepted."""
    value = (value or "").strip()
    return "13.1" if value == "13.1" else DEFAULT_CUDA_VERSION


class ComputeConfig(BaseModel):
    """How a runtime executes: compute mode, GPU backend and CUDA build."""
    model_config = ConfigDict(frozen=True)

    compute_mode: ComputeMode = Field("cpu", description="'cpu', 'gpu' (full offload) or 'hybrid' (partial offload)")
    gpu_backend: GpuBackend = Field("none", description="GPU API used by the runtime build")
    cuda_version: CudaVersion = Field(DEFAULT_CUDA_VERSION, description="CUDA build; meaningful only for the cuda backend")

    @classmethod
    def from_raw(cls, compute_mode: Optional[str], gpu_backend: Optional[str] = None,
                 cuda_version: Optional[str] = None) -> "ComputeConfig":
        """Build a config from unvalidated strings, normalizing each field."""
        mode = normalize_compute_mode(compute_mode)
        backend = "none" if mode == "cpu" else normalize_gpu_backend(gpu_backend)
        return cls(compute_mode=mode, gpu_backend=backend, cuda_version=normalize_cuda_version(cuda_version))

    @property
    def runtime_key(self) -> str:
        """
        Directory name of the runtime build this config needs.

        CPU configs share one build regardless of backend; cuda builds are
        per CUDA version.
        """
        if self.compute_mode == "cpu":
            return "cpu"
        if self.gpu_backend == "cuda":
            return f"cuda-{self.cuda_version}"
        if self.gpu_backend == "metal":
            return "metal"
        return "vulkan"


class ComputeCandidate(BaseModel):
    """One compute backend the benchmark sweep will try."""
    model_config = ConfigDict(frozen=True)

    label: str = Field(..., description="Display label, e.g. 'CUDA 12.4'")
    compute_mode: ComputeMode = Field(..., description="Compute mode")
    gpu_backend: GpuBackend = Field(..., description="GPU backend")
    cuda_version: CudaVersion = Field(DEFAULT_CUDA_VERSION, description="CUDA build for the cuda backend")

    @property
    def config(self) -> ComputeConfig:
        return ComputeConfig(
            compute_mode=self.compute_mode,
            gpu_backend=self.gpu_backend,
            cuda_version=self.cuda_version,
        )


class BenchmarkResult(BaseModel):
    """Throughput measured for one candidate and the tier it implies."""
    model_config = ConfigDict(frozen=True)

    tokens_per_second: float = Field(..., description="Generated tokens divided by wall-clock seconds")
    recommended_tier: int = Field(..., ge=0, description="Model tier the throughput supports")
    recommended_model_id: str = Field(..., description="Catalog model id for the recommended tier")
    gpu_layers: int = Field(0, description="Layers offloaded to the GPU during the pass")


class BenchmarkEntry(BaseModel):
    """A benchmarked candidate, as accumulated during a sweep."""
    model_config = ConfigDict(frozen=True)

    candidate: ComputeCandidate
    tokens_per_second: float
    tier: int
    model_id: str

    @classmethod
    def from_result(cls, candidate: ComputeCandidate, result: BenchmarkResult) -> "BenchmarkEntry":
        return cls(
            candidate=candidate,
            tokens_per_second=result.tokens_per_second,
            tier=result.recommended_tier,
            model_id=result.recommended_model_id,
        )


class RuntimeRecord(BaseModel):
    """Install state of one runtime build."""
    model_config = ConfigDict(frozen=True)

    compute_mode: ComputeMode
    gpu_backend: GpuBackend
    cuda_version: CudaVersion = DEFAULT_CUDA_VERSION
    installed: bool = Field(..., description="Whether a server binary was found in the install dir")
    dir: Path = Field(..., description="Install directory for this runtime key")


class InstalledModel(BaseModel):
    """A model weight file found on disk."""
    model_config = ConfigDict(frozen=True)

    model_id: str
    file_name: str
    size_bytes: int
    architecture: Optional[str] = Field(None, description="general.architecture from the GGUF header, if readable")


class StartedConfig(BaseModel):
    """The exact configuration a running service was launched with."""
    model_config = ConfigDict(frozen=True)

    model_id: str
    compute_mode: ComputeMode
    gpu_backend: GpuBackend
    cuda_version: CudaVersion = DEFAULT_CUDA_VERSION
    gpu_layers: int = 0

    def hardware_key(self):
        cuda = self.cuda_version if self.gpu_backend == "cuda" else None
        layers = effective_gpu_layers(self.compute_mode, self.gpu_layers)
        return (self.compute_mode, self.gpu_backend, cuda, layers)


class ServiceState(BaseModel):
    """Live state of the inference service."""
    model_config = ConfigDict(frozen=True)

    running: bool = False
    running_model_id: Optional[str] = None
    running_this_model: bool = Field(False, description="Running and serving the desired model id")
    base_url: Optional[str] = None
    started: Optional[StartedConfig] = None
    config_changed: bool = Field(False, description="Running configuration differs from the desired one")
