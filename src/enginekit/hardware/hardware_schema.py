#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Hardware Schema Definitions

Pydantic schema for the output of HardwareInspector.inspect(): the handful
of capabilities that decide which compute backends are worth benchmarking.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class HardwareProfile(BaseModel):
    """Host capabilities relevant to local LLM inference."""
    model_config = ConfigDict(frozen=True)

    cpu_cores: int = Field(1, ge=1, description="Logical CPU core count")
    cpu_brand: str = Field("", description="Raw CPU brand string")
    total_memory_bytes: int = Field(0, ge=0, description="Total system RAM in bytes")
    vram_bytes: Optional[int] = Field(None, description="Dedicated VRAM of the primary GPU, in bytes")
    gpu_name: Optional[str] = Field(None, description="Name of the primary GPU")
    has_cuda: bool = Field(False, description="NVIDIA CUDA driver library is loadable")
    has_vulkan: bool = Field(False, description="Vulkan loader library is loadable")
    has_metal: bool = Field(False, description="Metal is available (macOS)")
    is_apple_silicon: bool = Field(False, description="macOS on arm64")

    @classmethod
    def minimal(cls, cpu_cores: int = 1, total_memory_bytes: int = 0) -> "HardwareProfile":
        """Profile with no accelerators, used when probing fails."""
        return cls(cpu_cores=max(1, cpu_cores), total_memory_bytes=total_memory_bytes)

    @property
    def total_memory_gb(self) -> float:
        return round(self.total_memory_bytes / (1024 ** 3), 2)

    @property
    def vram_gb(self) -> Optional[float]:
        if self.vram_bytes is None:
            return None
        return round(self.vram_bytes / (1024 ** 3), 2)
