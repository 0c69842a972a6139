#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Throughput-to-tier mapping.

A benchmark pass on the tier-0 reference model yields a tokens/sec figure;
the faster the reference runs, the larger the model the same backend can
serve at an acceptable speed. The mapping is a plain threshold table so it
can be tuned without touching the lookup code.
"""

from typing import List, Optional, Tuple

from pydantic import BaseModel, Field

from .catalog import CATALOG, model_for_tier

GIB = 1024 ** 3

# ============================================================================
# TIER THRESHOLDS
# ============================================================================

# (minimum tokens/sec, tier), highest first. Bounds are closed at the
# lower end: exactly 420 tok/s is tier 5, 419.9 is tier 4.
TIER_THRESHOLDS: Tuple[Tuple[float, int], ...] = (
    (420.0, 5),
    (185.0, 4),
    (100.0, 3),
    (50.0, 2),
    (20.0, 1),
    (0.0, 0),
)

# (upper bound in GiB, max tier); memory at or above every bound allows tier 5
RAM_TIER_CAPS: Tuple[Tuple[float, int], ...] = (
    (8, 0),
    (12, 1),
    (20, 2),
    (32, 3),
    (48, 4),
)

VRAM_TIER_CAPS: Tuple[Tuple[float, int], ...] = (
    (4, 0),
    (6, 1),
    (10, 2),
    (12, 3),
    (24, 4),
)

# (upper bound in GiB, max offloaded layers) for hybrid offload
VRAM_LAYER_CAPS: Tuple[Tuple[float, int], ...] = (
    (4, 0),
    (6, 8),
    (8, 16),
)

# (minimum CPU cores, max tier) when layers stay on the CPU
CPU_CORE_TIERS: Tuple[Tuple[int, int], ...] = (
    (24, 3),
    (20, 2),
    (8, 1),
)

MAX_TIER = 5


class TierRow(BaseModel):
    """One row of the tier table shown at the model-selection step."""
    tier: int = Field(..., description="Ordinal tier")
    min_tokens_per_second: float = Field(..., description="Reference throughput needed for this tier")
    model_id: str
    title: str
    memory_hint: str


def select_tier(tokens_per_second: float, thresholds=TIER_THRESHOLDS) -> int:
    """
    Map reference-model throughput to a model tier.

    Args:
        tokens_per_second: Measured throughput of the reference model
        thresholds: (lower bound, tier) pairs, highest bound first

    Returns:
        The tier of the first band whose lower bound is met, or 0
    """
    for lower_bound, tier in thresholds:
        if tokens_per_second >= lower_bound:
            return tier
    return 0


def recommend(tokens_per_second: float) -> Tuple[int, str]:
    """Return (tier, catalog model id) for a throughput figure."""
    tier = select_tier(tokens_per_second)
    return tier, model_for_tier(tier).id


def _cap(caps, gib: float, default: int = 5) -> int:
    for upper, value in caps:
        if gib < upper:
            return value
    return default


def cap_tier(
    tier: int,
    total_memory_bytes: Optional[int] = None,
    vram_bytes: Optional[int] = None,
    compute_mode: str = "cpu",
) -> int:
    """
    Limit a throughput-derived tier by what the machine can hold.

    A fast GPU with little memory would otherwise be recommended a model it
    cannot load. RAM always applies; VRAM applies only when layers are
    offloaded (gpu/hybrid) and the VRAM size is known.
    """
    if total_memory_bytes:
        tier = min(tier, _cap(RAM_TIER_CAPS, total_memory_bytes / GIB))
    if compute_mode in ("gpu", "hybrid") and vram_bytes:
        tier = min(tier, _cap(VRAM_TIER_CAPS, vram_bytes / GIB))
    return tier


def clamp_gpu_layers(layers: int, vram_bytes: Optional[int]) -> int:
    """Cap offloaded layers for small GPUs; unknown VRAM leaves the request as is."""
    if not vram_bytes:
        return layers
    return min(layers, _cap(VRAM_LAYER_CAPS, vram_bytes / GIB, default=layers))


def cpu_performance_tier(cpu_cores: int) -> int:
    """Largest tier a CPU-only engine sustains for a core count."""
    for min_cores, tier in CPU_CORE_TIERS:
        if (cpu_cores or 0) >= min_cores:
            return tier
    return 0


def tier_from_resources(
    total_memory_bytes: Optional[int],
    vram_bytes: Optional[int],
    compute_mode: str,
    cpu_cores: int,
) -> int:
    """
    Estimate a tier from memory sizes and core count, without benchmarking.

    RAM bounds every mode. Full GPU offload is further bounded by VRAM
    (unknown VRAM counts as none); cpu and hybrid are bounded by the core
    count.
    """
    tier = _cap(RAM_TIER_CAPS, (total_memory_bytes or 0) / GIB)
    if compute_mode == "gpu":
        return min(tier, _cap(VRAM_TIER_CAPS, (vram_bytes or 0) / GIB))
    return min(tier, cpu_performance_tier(cpu_cores))


def parse_preferred_tier(value) -> Optional[int]:
    """
    Read a user tier preference.

    "0".."5" (or the int) pins that tier; "auto", blank, None and anything
    else mean no preference.
    """
    if value is None or isinstance(value, bool):
        return None
    text = str(value).strip()
    if text.isdigit() and 0 <= int(text) <= MAX_TIER:
        return int(text)
    return None


def tier_table() -> List[TierRow]:
    """Tier table, smallest tier first, joined with the catalog."""
    bounds = {tier: lower for lower, tier in TIER_THRESHOLDS}
    return [
        TierRow(
            tier=m.tier,
            min_tokens_per_second=bounds.get(m.tier, 0.0),
            model_id=m.id,
            title=m.title,
            memory_hint=m.memory_hint,
        )
        for m in CATALOG
    ]
