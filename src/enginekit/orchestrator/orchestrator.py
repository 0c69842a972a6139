#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Setup orchestrator.

Drives one setup session through its phases:

    idle -> detecting -> (provisioning -> benchmarking)* -> selecting
         -> installingFinal -> starting -> done

Candidates are provisioned and benchmarked strictly one after another so
throughput numbers are not distorted by contention. A candidate that fails
to provision or benchmark is skipped; only an empty benchmark table ends the
sweep in error. The model choice at `selecting` is the caller's decision,
and the new configuration is persisted only once the service is up.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Union

from ..config import EngineSettings, SettingsStore
from ..exceptions import (
    AggregateBenchmarkFailure,
    BenchmarkError,
    DownloadError,
    EngineKitError,
    InstallError,
    SetupInProgressError,
    SetupStateError,
    UserCancelled,
)
from ..hardware.candidates import enumerate_candidates
from ..hardware.hardware_schema import HardwareProfile
from ..hardware.probe import probe_hardware
from ..models.catalog import REFERENCE_MODEL_ID, model_for_tier, sanitize_model_id
from ..models.tiers import TierRow, tier_table
from ..progress import ProgressChannel
from ..schema import BenchmarkEntry, ComputeCandidate
from .session import SetupPhase, SetupSession

logger = logging.getLogger(__name__)


def select_best_entry(entries: List[BenchmarkEntry]) -> Optional[BenchmarkEntry]:
    """
    Pick the engine to run: highest tier, then highest throughput.

    Exact ties keep the entry that was benchmarked first.
    """
    best = None
    for entry in entries:
        if best is None or (entry.tier, entry.tokens_per_second) > (best.tier, best.tokens_per_second):
            best = entry
    return best


class SetupOrchestrator:
    """
    Cancellable, resumable setup flow over the provisioning, benchmark and
    service collaborators.

    Args:
        runtimes: RuntimeProvisioner-like (install_runtime, cancel_active_download)
        models: ModelProvisioner-like (install_model, cancel_active_download)
        bench: BenchmarkRunner-like (benchmark, abort)
        service: ServiceController-like (start, stop, status)
        settings: SettingsStore the outcome is persisted to
        probe: Callable returning a HardwareProfile
        get_desired_config: Accessor for the current EngineSettings, called
            each time a value is needed (defaults to settings.load)
        progress: Progress channel cleared on every phase transition
        reference_model_id: Model used for benchmarking
        require_useful_gpu: Skip GPU candidates for weak/virtual GPUs
    """

    def __init__(
        self,
        runtimes,
        models,
        bench,
        service,
        settings: SettingsStore,
        probe: Callable[[], HardwareProfile] = probe_hardware,
        get_desired_config: Optional[Callable[[], EngineSettings]] = None,
        progress: Optional[ProgressChannel] = None,
        reference_model_id: str = REFERENCE_MODEL_ID,
        require_useful_gpu: bool = False,
    ):
        self.runtimes = runtimes
        self.models = models
        self.bench = bench
        self.service = service
        self.settings = settings
        self.probe = probe
        self.get_desired_config = get_desired_config or settings.load
        self.progress = progress or ProgressChannel()
        self.reference_model_id = reference_model_id
        self.require_useful_gpu = require_useful_gpu
        self._session: Optional[SetupSession] = None
        self._busy = False

    # ------------------------------------------------------------------
    # Caller-facing state
    # ------------------------------------------------------------------

    @property
    def session(self) -> Optional[SetupSession]:
        return self._session

    @property
    def phase(self) -> SetupPhase:
        return self._session.phase if self._session else SetupPhase.IDLE

    @property
    def entries(self) -> List[BenchmarkEntry]:
        return list(self._session.entries) if self._session else []

    @property
    def recommended_model_id(self) -> Optional[str]:
        return self._session.recommended_model_id if self._session else None

    @property
    def selected_model_id(self) -> Optional[str]:
        return self._session.selected_model_id if self._session else None

    @property
    def tier_table(self) -> List[TierRow]:
        return tier_table()

    @property
    def config_changed(self) -> bool:
        """Drift flag: the running service no longer matches the desired config."""
        return self.service.status(self.get_desired_config()).config_changed

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    async def run(self) -> SetupSession:
        """
        Start a new session and run it up to the `selecting` decision point.

        Returns:
            The session, in `selecting`, `error`, or `idle` if cancelled

        Raises:
            SetupInProgressError: If another session is active
        """
        if self._busy or (self._session is not None and self._session.active):
            raise SetupInProgressError("A setup session is already running")
        session = SetupSession()
        self._session = session
        return await self._drive(session, self._detect_and_sweep)

    async def confirm(self, model_id: Optional[str] = None, tier: Optional[int] = None) -> SetupSession:
        """
        Accept the recommendation, or choose another model, and finish setup.

        Args:
            model_id: Explicit model id to install and serve
            tier: Catalog tier to use instead (ignored if model_id is given)

        Raises:
            SetupStateError: If the session is not at the selection step
        """
        session = self._session
        if self._busy or session is None or session.phase is not SetupPhase.SELECTING:
            raise SetupStateError("Nothing to confirm: setup is not waiting for a model selection")
        if model_id:
            session.selected_model_id = sanitize_model_id(model_id)
        elif tier is not None:
            session.selected_model_id = model_for_tier(tier).id
        else:
            session.selected_model_id = session.recommended_model_id
        return await self._drive(session, self._finish)

    async def retry_from_phase(self, phase: Union[SetupPhase, str]) -> SetupSession:
        """
        Resume a failed session from a phase, keeping what was collected.

        INSTALLING_FINAL/STARTING rerun only the final step with the engine
        already chosen. PROVISIONING/BENCHMARKING continue the sweep at the
        candidate that failed (from the first candidate after an aggregate
        failure). DETECTING re-probes and sweeps from scratch.

        Raises:
            SetupStateError: If the session is not in error, or the phase
                cannot be resumed
        """
        phase = SetupPhase(phase)
        session = self._session
        if self._busy or session is None or session.phase is not SetupPhase.ERROR:
            raise SetupStateError("Only a failed setup session can be retried")

        if phase in (SetupPhase.INSTALLING_FINAL, SetupPhase.STARTING):
            if session.chosen is None or not session.selected_model_id:
                raise SetupStateError("No engine has been chosen yet; retry the sweep instead")
            step = self._finish
        elif phase is SetupPhase.DETECTING or (
                phase in (SetupPhase.PROVISIONING, SetupPhase.BENCHMARKING) and session.profile is None):
            session.entries = []
            session.failures = []
            session.candidate_index = 0
            session.chosen = None
            step = self._detect_and_sweep
        elif phase in (SetupPhase.PROVISIONING, SetupPhase.BENCHMARKING):
            step = self._sweep
        else:
            raise SetupStateError(f"Cannot resume setup from phase {phase}")

        logger.info("Retrying setup from %s", phase)
        session.error = None
        session.error_phase = None
        return await self._drive(session, step)

    async def cancel(self) -> bool:
        """
        Cancel the active session.

        Aborts the in-flight download or benchmark, stops a service started
        by this session and returns to idle. While a step is still running
        its task unwinds and stops the service itself, so a start that is
        still in flight cannot leave a process behind. Persisted settings
        are not touched.

        Returns:
            True if a session was cancelled, False if there was nothing to cancel
        """
        session = self._session
        if session is None or session.phase in (SetupPhase.DONE, SetupPhase.ERROR):
            return False
        logger.info("Cancelling setup during %s", session.phase)
        session.cancelled = True
        self._abort_inflight()
        await self._discard(session, stop_service=not self._busy)
        return True

    # ------------------------------------------------------------------
    # Session plumbing
    # ------------------------------------------------------------------

    async def _drive(self, session: SetupSession, step) -> SetupSession:
        self._busy = True
        self.runtimes.reset_cancel()
        self.models.reset_cancel()
        try:
            await step(session)
        except asyncio.CancelledError:
            session.cancelled = True
            self._abort_inflight()
            await self._discard(session)
            raise
        except Exception as e:
            if session.cancelled or isinstance(e, UserCancelled):
                await self._discard(session)
            else:
                self._fail(session, e)
        finally:
            self._busy = False
        return session

    def _enter(self, session: SetupSession, phase: SetupPhase) -> None:
        self._checkpoint(session)
        session.phase = phase
        self.progress.clear()
        logger.info("Setup phase: %s", phase)

    def _checkpoint(self, session: SetupSession) -> None:
        if session.cancelled:
            raise UserCancelled("Setup cancelled")

    def _abort_inflight(self) -> None:
        self.runtimes.cancel_active_download()
        self.models.cancel_active_download()
        self.bench.abort()

    async def _discard(self, session: SetupSession, stop_service: bool = True) -> None:
        if stop_service and session.service_started:
            session.service_started = False
            await self.service.stop()
        session.phase = SetupPhase.IDLE
        self.progress.clear()
        if self._session is session:
            self._session = None

    def _fail(self, session: SetupSession, error: Exception) -> None:
        session.error = error
        session.error_phase = session.phase
        session.phase = SetupPhase.ERROR
        self.progress.clear()
        if isinstance(error, EngineKitError):
            logger.error("Setup failed during %s: %s", session.error_phase, error)
        else:
            logger.exception("Setup failed during %s", session.error_phase, exc_info=error)

    def _skip(self, session: SetupSession, candidate: ComputeCandidate, error: Exception) -> None:
        self._checkpoint(session)
        logger.warning("Skipping %s during %s: %s", candidate.label, session.phase, error)
        session.failures.append((candidate, error))
        session.candidate_index += 1

    # ------------------------------------------------------------------
    # Phases
    # ------------------------------------------------------------------

    async def _probe_profile(self) -> HardwareProfile:
        try:
            return await asyncio.to_thread(self.probe)
        except Exception as e:
            logger.warning("Hardware probe failed, assuming no accelerators: %s", e)
            return HardwareProfile.minimal()

    async def _detect_and_sweep(self, session: SetupSession) -> None:
        self._enter(session, SetupPhase.DETECTING)
        session.profile = await self._probe_profile()
        self._checkpoint(session)
        session.candidates = enumerate_candidates(
            session.profile,
            cuda_version=self.get_desired_config().cuda_version,
            require_useful_gpu=self.require_useful_gpu,
        )
        session.candidate_index = 0
        logger.info("Compute candidates: %s", ", ".join(c.label for c in session.candidates))
        await self._sweep(session)

    async def _sweep(self, session: SetupSession) -> None:
        while session.candidate_index < len(session.candidates):
            candidate = session.candidates[session.candidate_index]

            self._enter(session, SetupPhase.PROVISIONING)
            if not session.reference_ready:
                # Without the reference model no candidate can be measured
                await asyncio.to_thread(self.models.install_model, self.reference_model_id, candidate.config)
                self._checkpoint(session)
                session.reference_ready = True
            try:
                await asyncio.to_thread(self.runtimes.install_runtime, candidate.config)
            except (DownloadError, InstallError) as e:
                self._skip(session, candidate, e)
                continue
            self._checkpoint(session)

            self._enter(session, SetupPhase.BENCHMARKING)
            gpu_layers = self.get_desired_config().gpu_layers
            try:
                result = await self.bench.benchmark(candidate, self.reference_model_id, gpu_layers, session.profile)
            except BenchmarkError as e:
                self._skip(session, candidate, e)
                continue
            self._checkpoint(session)
            session.entries.append(BenchmarkEntry.from_result(candidate, result))
            session.candidate_index += 1

        if not session.entries:
            failures = list(session.failures)
            session.failures = []
            session.candidate_index = 0
            raise AggregateBenchmarkFailure(failures)

        best = select_best_entry(session.entries)
        session.chosen = best
        session.recommended_model_id = best.model_id
        session.selected_model_id = best.model_id
        logger.info("Chosen engine: %s (tier %d, %.1f tok/s)", best.candidate.label, best.tier, best.tokens_per_second)
        self._enter(session, SetupPhase.SELECTING)

    async def _finish(self, session: SetupSession) -> None:
        config = session.chosen.candidate.config
        model_id = session.selected_model_id

        self._enter(session, SetupPhase.INSTALLING_FINAL)
        await asyncio.to_thread(self.models.install_model, model_id, config)
        self._checkpoint(session)

        self._enter(session, SetupPhase.STARTING)
        desired = self.get_desired_config()
        vram = session.profile.vram_bytes if session.profile else None
        session.service_started = True
        await self.service.start(model_id, config, desired.gpu_layers, vram)
        self._checkpoint(session)

        outcome = EngineSettings.model_validate({
            **desired.model_dump(),
            "model_id": model_id,
            "compute_mode": config.compute_mode,
            "gpu_backend": config.gpu_backend,
            "cuda_version": config.cuda_version,
            "auto_start": True,
        })
        self.settings.save(outcome)
        session.phase = SetupPhase.DONE
        self.progress.clear()
        logger.info("Setup complete: serving %s on %s", model_id, config.runtime_key)
