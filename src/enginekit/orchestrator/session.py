"""Setup session state."""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple

from ..hardware.hardware_schema import HardwareProfile
from ..schema import BenchmarkEntry, ComputeCandidate


class SetupPhase(Enum):
    """Phases of a setup session."""
    IDLE = "idle"
    DETECTING = "detecting"
    PROVISIONING = "provisioning"
    BENCHMARKING = "benchmarking"
    SELECTING = "selecting"
    INSTALLING_FINAL = "installingFinal"
    STARTING = "starting"
    DONE = "done"
    ERROR = "error"

    def __str__(self):
        return self.value


TERMINAL_PHASES = (SetupPhase.IDLE, SetupPhase.DONE, SetupPhase.ERROR)


@dataclass
class SetupSession:
    """
    State of one setup invocation.

    Lives only in memory; the orchestrator discards it on cancellation and a
    new run() replaces it. Only the final outcome is ever persisted.
    """
    phase: SetupPhase = SetupPhase.IDLE
    cancelled: bool = False
    profile: Optional[HardwareProfile] = None
    candidates: List[ComputeCandidate] = field(default_factory=list)
    candidate_index: int = 0
    entries: List[BenchmarkEntry] = field(default_factory=list)
    failures: List[Tuple[ComputeCandidate, Exception]] = field(default_factory=list)
    reference_ready: bool = False
    chosen: Optional[BenchmarkEntry] = None
    recommended_model_id: Optional[str] = None
    selected_model_id: Optional[str] = None
    service_started: bool = False
    error: Optional[Exception] = None
    error_phase: Optional[SetupPhase] = None

    @property
    def active(self) -> bool:
        return self.phase not in TERMINAL_PHASES

    @property
    def current_candidate(self) -> Optional[ComputeCandidate]:
        if 0 <= self.candidate_index < len(self.candidates):
            return self.candidates[self.candidate_index]
        return None
