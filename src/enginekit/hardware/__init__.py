"""
Hardware probing and compute candidate enumeration.

Example:
    >>> from enginekit.hardware import probe_hardware, enumerate_candidates
    >>> [c.label for c in enumerate_candidates(probe_hardware())][-1]
    'CPU'
"""

from .hardware_schema import HardwareProfile
from .probe import HardwareInspector, probe_hardware
from .candidates import (
    CPU_CANDIDATE,
    candidate_for_config,
    enumerate_candidates,
    is_gpu_worth_using,
    quick_candidates,
)

__all__ = [
    "HardwareProfile",
    "HardwareInspector",
    "probe_hardware",
    "CPU_CANDIDATE",
    "enumerate_candidates",
    "quick_candidates",
    "candidate_for_config",
    "is_gpu_worth_using",
]
