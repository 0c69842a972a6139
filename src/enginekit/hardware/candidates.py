"""
Compute candidate enumeration.

Turns a HardwareProfile into the ordered list of backends the benchmark
sweep tries: native vendor accelerators first, the portable Vulkan path
next, and CPU last as the guaranteed fallback.
"""

from typing import List, Optional

from ..schema import (
    DEFAULT_CUDA_VERSION,
    ComputeCandidate,
    ComputeConfig,
    default_gpu_backend,
    normalize_cuda_version,
    normalize_preferred_compute,
)
from .hardware_schema import HardwareProfile

MIN_USEFUL_VRAM_BYTES = 2 * 1024 ** 3

# Integrated or virtual adapters that are slower than the CPU path for llama.cpp
_WEAK_GPU_MARKERS = ("intel(r) uhd", "intel uhd", "intel(r) hd", "intel hd", "iris")
_VIRTUAL_GPU_MARKERS = ("virtual", "idddriver", "remote")

CPU_CANDIDATE = ComputeCandidate(label="CPU", compute_mode="cpu", gpu_backend="none")


def is_gpu_worth_using(profile: HardwareProfile) -> bool:
    """
    Decide whether offloading to the detected GPU can beat the CPU.

    Apple Silicon always qualifies (unified memory, Metal). Otherwise a GPU
    with under 2GB of known VRAM, an Intel UHD/HD/Iris iGPU, or a virtual or
    remote display adapter is not worth benchmarking.
    """
    if profile.is_apple_silicon:
        return True
    if profile.vram_bytes is not None and profile.vram_bytes < MIN_USEFUL_VRAM_BYTES:
        return False
    name = (profile.gpu_name or "").lower()
    if any(marker in name for marker in _WEAK_GPU_MARKERS):
        return False
    if any(marker in name for marker in _VIRTUAL_GPU_MARKERS):
        return False
    return True


def enumerate_candidates(
    profile: HardwareProfile,
    cuda_version: str = DEFAULT_CUDA_VERSION,
    require_useful_gpu: bool = False,
) -> List[ComputeCandidate]:
    """
    Ordered compute candidates for a hardware profile.

    Args:
        profile: Probed hardware
        cuda_version: CUDA build to use for the CUDA candidate
        require_useful_gpu: Drop GPU candidates when is_gpu_worth_using()
            says the GPU is not worth it

    Returns:
        Metal, CUDA, Vulkan (each only if available), then CPU. Never empty;
        CPU is always last and appears once.
    """
    candidates = []
    if not require_useful_gpu or is_gpu_worth_using(profile):
        if profile.is_apple_silicon or profile.has_metal:
            candidates.append(ComputeCandidate(label="Metal", compute_mode="gpu", gpu_backend="metal"))
        if profile.has_cuda:
            version = normalize_cuda_version(cuda_version)
            candidates.append(ComputeCandidate(
                label=f"CUDA {version}",
                compute_mode="gpu",
                gpu_backend="cuda",
                cuda_version=version,
            ))
        if profile.has_vulkan:
            candidates.append(ComputeCandidate(label="Vulkan", compute_mode="hybrid", gpu_backend="vulkan"))
    candidates.append(CPU_CANDIDATE)
    return candidates


def candidate_for_config(config: ComputeConfig) -> ComputeCandidate:
    """Wrap a ComputeConfig in a candidate with its display label."""
    if config.compute_mode == "cpu":
        return CPU_CANDIDATE
    labels = {"metal": "Metal", "cuda": f"CUDA {config.cuda_version}", "vulkan": "Vulkan"}
    return ComputeCandidate(label=labels.get(config.gpu_backend, config.runtime_key), **config.model_dump())


def quick_candidates(
    profile: HardwareProfile,
    preferred_compute: Optional[str] = None,
    cuda_version: str = DEFAULT_CUDA_VERSION,
) -> List[ComputeCandidate]:
    """
    Candidates for a recommendation made without benchmarking.

    A preferred compute mode yields exactly one candidate: CUDA when the
    machine has it, then Metal, else the platform default backend. Without
    a preference this is enumerate_candidates() with weak GPUs dropped.
    """
    mode = normalize_preferred_compute(preferred_compute)
    if mode is None:
        return enumerate_candidates(profile, cuda_version, require_useful_gpu=True)
    if mode != "cpu" and profile.has_cuda:
        backend = "cuda"
    elif mode != "cpu" and profile.has_metal:
        backend = "metal"
    else:
        backend = default_gpu_backend()
    return [candidate_for_config(ComputeConfig.from_raw(mode, backend, cuda_version))]
