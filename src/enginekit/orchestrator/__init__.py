"""Setup session state machine."""

from .session import SetupPhase, SetupSession
from .orchestrator import SetupOrchestrator, select_best_entry

__all__ = ["SetupPhase", "SetupSession", "SetupOrchestrator", "select_best_entry"]
