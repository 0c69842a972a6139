"""
Built-in model catalog.

Six Qwen3 Q4_K_M GGUF builds, one per tier, from the smallest (tier 0) that
runs anywhere to the largest (tier 5) that needs a 24GB GPU. Tier 0 doubles
as the reference model for benchmarking.
"""

import re
from typing import List, Optional, Tuple

from huggingface_hub import hf_hub_url
from pydantic import BaseModel, ConfigDict, Field

# ============================================================================
# CATALOG CONSTANTS
# ============================================================================

DEFAULT_MODEL_ID = "qwen3_0_6b_q4_k_m"
REFERENCE_MODEL_ID = DEFAULT_MODEL_ID
MAX_MODEL_ID_LENGTH = 80

MODELSCOPE_BASE = "https://www.modelscope.cn/models"
HF_ORG = "unsloth"


class ModelDescriptor(BaseModel):
    """A catalog model and where to get it."""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="Stable model identifier")
    title: str = Field(..., description="Display title")
    tier: int = Field(..., ge=0, le=5, description="Ordinal size tier (0 = smallest)")
    memory_hint: str = Field(..., description="Approximate memory requirement")
    file_name: str = Field(..., description="GGUF file name on disk")
    urls: Tuple[str, ...] = Field(..., description="Mirror URLs in priority order")


def _qwen3(tier: int, size: str, memory_hint: str) -> ModelDescriptor:
    model_id = f"qwen3_{size.lower().replace('.', '_')}_q4_k_m"
    repo = f"Qwen3-{size}-GGUF"
    file_name = f"Qwen3-{size}-Q4_K_M.gguf"
    return ModelDescriptor(
        id=model_id,
        title=f"Qwen3 {size} (Q4_K_M)",
        tier=tier,
        memory_hint=memory_hint,
        file_name=file_name,
        urls=(
            f"{MODELSCOPE_BASE}/{HF_ORG}/{repo}/resolve/master/{file_name}",
            hf_hub_url(repo_id=f"{HF_ORG}/{repo}", filename=file_name),
        ),
    )


CATALOG: Tuple[ModelDescriptor, ...] = (
    _qwen3(0, "0.6B", "≥4GB RAM"),
    _qwen3(1, "1.7B", "≥8GB RAM"),
    _qwen3(2, "4B", "≥12GB RAM"),
    _qwen3(3, "8B", "≥16GB RAM / dGPU"),
    _qwen3(4, "14B", "≥10GB VRAM"),
    _qwen3(5, "32B", "≥24GB VRAM"),
)


def _validate_catalog(catalog) -> None:
    tiers = [m.tier for m in catalog]
    if tiers != list(range(len(catalog))):
        raise ValueError(f"Catalog must hold exactly one model per tier in order, got tiers {tiers}")
    ids = [m.id for m in catalog]
    if len(set(ids)) != len(ids):
        raise ValueError("Catalog model ids must be unique")


_validate_catalog(CATALOG)


def sanitize_model_id(model_id: Optional[str]) -> str:
    """
    Normalize a user- or file-derived model id.

    Characters outside [A-Za-z0-9_.-] become underscores, leading/trailing
    separators are stripped and the result is capped at 80 characters.
    Empty input maps to the default model.
    """
    raw = (model_id or "").strip()
    if not raw:
        return DEFAULT_MODEL_ID
    cleaned = re.sub(r"[^A-Za-z0-9_.\-]", "_", raw).strip("._-")
    if not cleaned:
        return DEFAULT_MODEL_ID
    return cleaned[:MAX_MODEL_ID_LENGTH]


def get_model(model_id: str) -> Optional[ModelDescriptor]:
    for descriptor in CATALOG:
        if descriptor.id == model_id:
            return descriptor
    return None


def model_for_tier(tier: int) -> ModelDescriptor:
    """Catalog entry for a tier; out-of-range tiers clamp to the ends."""
    tier = max(0, min(len(CATALOG) - 1, int(tier)))
    return CATALOG[tier]


def model_file_name(model_id: str) -> str:
    """GGUF file name for a model id; non-catalog ids map to '<id>.gguf'."""
    descriptor = get_model(model_id)
    if descriptor is not None:
        return descriptor.file_name
    return f"{sanitize_model_id(model_id)}.gguf"


def model_id_for_file(file_name: str) -> str:
    """Inverse of model_file_name for files found on disk."""
    for descriptor in CATALOG:
        if descriptor.file_name == file_name:
            return descriptor.id
    stem = file_name[:-5] if file_name.lower().endswith(".gguf") else file_name
    return sanitize_model_id(stem)


def list_catalog() -> List[ModelDescriptor]:
    return list(CATALOG)
