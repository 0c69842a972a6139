#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Benchmark-free recommendations.

Estimates a model tier and compute configuration from the hardware profile
alone (RAM, VRAM, core count). Used where running llama-bench is not an
option, such as auto-start on application launch, and as the fallback
ladder when the persisted configuration fails to start.
"""

from typing import Iterator, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..config import DEFAULT_GPU_LAYERS
from ..hardware.candidates import quick_candidates
from ..hardware.hardware_schema import HardwareProfile
from ..models.catalog import model_for_tier
from ..models.tiers import MAX_TIER, cap_tier, clamp_gpu_layers, parse_preferred_tier, tier_from_resources
from ..schema import DEFAULT_CUDA_VERSION, ComputeCandidate, ComputeConfig


class QuickRecommendation(BaseModel):
    """A model and compute configuration chosen without benchmarking."""
    model_config = ConfigDict(frozen=True)

    model_id: str = Field(..., description="Catalog model for the tier")
    tier: int = Field(..., ge=0, description="Model tier")
    candidate: ComputeCandidate = Field(..., description="Compute backend to run it on")
    gpu_layers: int = Field(0, ge=0, description="Layers to offload (0 for cpu)")

    @property
    def config(self) -> ComputeConfig:
        return self.candidate.config


def _start_tier(profile: HardwareProfile, compute_mode: str, preferred_tier: Optional[int]) -> int:
    tier = preferred_tier
    if tier is None:
        tier = tier_from_resources(profile.total_memory_bytes, profile.vram_bytes, compute_mode, profile.cpu_cores)
    tier = max(0, min(MAX_TIER, tier))
    if compute_mode in ("gpu", "hybrid"):
        tier = cap_tier(tier, None, profile.vram_bytes, compute_mode)
    return tier


def fallback_ladder(
    profile: HardwareProfile,
    preferred_tier=None,
    preferred_compute: Optional[str] = None,
    cuda_version: str = DEFAULT_CUDA_VERSION,
    gpu_layers: int = DEFAULT_GPU_LAYERS,
) -> Iterator[QuickRecommendation]:
    """
    Yield recommendations from most to least ambitious.

    For each quick candidate, start at the resource (or preferred) tier and
    step down one tier at a time to tier 0, then move to the next
    candidate. The first item is the recommendation proper.
    """
    preferred_tier = parse_preferred_tier(preferred_tier)
    requested_layers = max(0, int(gpu_layers))
    for candidate in quick_candidates(profile, preferred_compute, cuda_version):
        mode = candidate.compute_mode
        layers = clamp_gpu_layers(requested_layers, profile.vram_bytes) if mode != "cpu" else 0
        for tier in range(_start_tier(profile, mode, preferred_tier), -1, -1):
            yield QuickRecommendation(
                model_id=model_for_tier(tier).id,
                tier=tier,
                candidate=candidate,
                gpu_layers=layers,
            )


def recommend_from_profile(
    profile: HardwareProfile,
    preferred_tier=None,
    preferred_compute: Optional[str] = None,
    cuda_version: str = DEFAULT_CUDA_VERSION,
    gpu_layers: int = DEFAULT_GPU_LAYERS,
) -> QuickRecommendation:
    """
    Recommend a model and compute configuration from hardware alone.

    Args:
        profile: Probed hardware
        preferred_tier: "0".."5" or an int pins the tier; "auto"/None estimates it
        preferred_compute: "cpu", "gpu" or "hybrid" pins the mode
        cuda_version: CUDA build used when the backend is cuda
        gpu_layers: Requested offload for gpu/hybrid modes

    Returns:
        The top rung of fallback_ladder()
    """
    return next(fallback_ladder(profile, preferred_tier, preferred_compute, cuda_version, gpu_layers))
