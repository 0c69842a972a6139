"""
Model catalog, tier selection and weight provisioning.

Example:
    >>> from enginekit.models import recommend
    >>> recommend(130.0)
    (3, 'qwen3_8b_q4_k_m')
"""

from .catalog import (
    CATALOG,
    DEFAULT_MODEL_ID,
    REFERENCE_MODEL_ID,
    ModelDescriptor,
    get_model,
    model_for_tier,
    sanitize_model_id,
)
from .tiers import (
    TIER_THRESHOLDS,
    TierRow,
    cap_tier,
    clamp_gpu_layers,
    cpu_performance_tier,
    parse_preferred_tier,
    recommend,
    select_tier,
    tier_from_resources,
    tier_table,
)
from .provisioner import ModelProvisioner, check_gguf_magic

__all__ = [
    # Catalog
    "CATALOG",
    "DEFAULT_MODEL_ID",
    "REFERENCE_MODEL_ID",
    "ModelDescriptor",
    "get_model",
    "model_for_tier",
    "sanitize_model_id",

    # Tiers
    "TIER_THRESHOLDS",
    "TierRow",
    "select_tier",
    "recommend",
    "cap_tier",
    "clamp_gpu_layers",
    "cpu_performance_tier",
    "tier_from_resources",
    "parse_preferred_tier",
    "tier_table",

    # Provisioning
    "ModelProvisioner",
    "check_gguf_magic",
]
