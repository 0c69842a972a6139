"""
EngineKit - Hardware-aware setup of a local llama.cpp inference engine.

Submodules:
    - enginekit.hardware: Hardware probing and compute candidates
    - enginekit.models: Model catalog, tiers and weight provisioning
    - enginekit.runtime: llama.cpp runtime builds
    - enginekit.engine: Benchmark runner and inference service
    - enginekit.orchestrator: The setup state machine
"""

# Import submodules for namespace access (ek.hardware.probe_hardware())
from . import hardware
from . import models
from . import runtime
from . import engine
from . import orchestrator

# Top-level convenience exports (most common operations)
from .hardware import HardwareProfile, probe_hardware, enumerate_candidates
from .models import recommend, select_tier, tier_table
from .engine import recommend_from_profile
from .config import EngineKitPaths, EngineSettings, SettingsStore
from .orchestrator import SetupOrchestrator, SetupPhase
from .kit import EngineKit, create_engine_kit
from .exceptions import (
    EngineKitError,
    ProbeError,
    DownloadError,
    InstallError,
    BenchmarkError,
    AggregateBenchmarkFailure,
    ServiceStartError,
    UserCancelled,
)

__version__ = "0.1.0"

__all__ = [
    # Submodules
    "hardware",
    "models",
    "runtime",
    "engine",
    "orchestrator",

    # Primary API
    "HardwareProfile",
    "probe_hardware",
    "enumerate_candidates",
    "recommend",
    "select_tier",
    "tier_table",
    "recommend_from_profile",
    "EngineKitPaths",
    "EngineSettings",
    "SettingsStore",
    "SetupOrchestrator",
    "SetupPhase",
    "EngineKit",
    "create_engine_kit",

    # Errors
    "EngineKitError",
    "ProbeError",
    "DownloadError",
    "InstallError",
    "BenchmarkError",
    "AggregateBenchmarkFailure",
    "ServiceStartError",
    "UserCancelled",
]
