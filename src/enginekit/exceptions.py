"""
Exception hierarchy for EngineKit.

Every failure the setup flow can surface is one of these types, so callers
(and the orchestrator) can decide per type whether a failure skips a
candidate, ends a phase, or is a plain cancellation.
"""

from typing import Any, List, Optional, Sequence


class EngineKitError(Exception):
    """Base class for all EngineKit errors."""
    pass


class ProbeError(EngineKitError):
    """
    Raised when a hardware query fails outright.

    The orchestrator treats this as "no accelerators detected"; it is never
    fatal to a setup session.
    """
    pass


class DownloadError(EngineKitError):
    """
    Raised when no mirror could deliver a file.

    Retried only by explicit user action; the downloader makes a single
    ordered pass over its mirrors and then gives up.
    """

    def __init__(self, message: str, urls: Optional[Sequence[str]] = None, label: Optional[str] = None):
        """
        Initialize the download error.

        Args:
            message: Human-readable error message
            urls: Mirror URLs that were attempted
            label: Progress label of the artifact being fetched
        """
        self.urls = list(urls or [])
        self.label = label
        super().__init__(message)


class InstallError(EngineKitError):
    """Raised when an artifact is present but cannot be installed or validated."""

    def __init__(self, message: str, target: Optional[Any] = None):
        """
        Initialize the install error.

        Args:
            message: Human-readable error message
            target: The model id, runtime key or path involved (optional)
        """
        self.target = target
        super().__init__(message)


class BenchmarkError(EngineKitError):
    """Raised when a benchmark pass cannot produce a throughput figure."""

    def __init__(self, message: str, candidate: Optional[Any] = None):
        self.candidate = candidate
        super().__init__(message)


class AggregateBenchmarkFailure(EngineKitError):
    """
    Raised when every compute candidate failed to provision or benchmark.

    Attributes:
        failures: List of (candidate, exception) pairs, in the order tried
    """

    def __init__(self, failures: Optional[List[Any]] = None):
        self.failures = list(failures or [])
        details = "; ".join(f"{cand.label}: {err}" for cand, err in self.failures)
        message = "No compute backend could be benchmarked"
        if details:
            message = f"{message} ({details})"
        super().__init__(message)


class ServiceStartError(EngineKitError):
    """Raised when the inference service cannot be launched."""

    def __init__(self, message: str, model_id: Optional[str] = None):
        self.model_id = model_id
        super().__init__(message)


class ServicePreconditionError(ServiceStartError):
    """Raised when a start is refused because the model or runtime is missing."""
    pass


class UserCancelled(EngineKitError):
    """Raised internally when the user cancels; a normal transition to idle."""
    pass


class DownloadCancelled(UserCancelled):
    """Raised by the downloader when its cancel flag is set mid-transfer."""
    pass


class SetupInProgressError(EngineKitError):
    """Raised when a setup session is requested while another is active."""
    pass


class SetupStateError(EngineKitError):
    """Raised when an orchestrator action is invalid for the current phase."""
    pass
