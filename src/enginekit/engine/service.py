#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Inference service controller.

Owns the long-running llama-server process: starts it for a (model, compute
config) pair, stops it, and reports whether what is running still matches
the desired configuration ("drift"). Drift is only reported; restarting is
always an explicit caller action.
"""

import asyncio
import logging
import os
import subprocess
from pathlib import Path
from typing import Callable, Optional

from ..exceptions import DownloadError, InstallError, ServicePreconditionError, ServiceStartError
from ..schema import ComputeConfig, ServiceState, StartedConfig
from ..utils.network import pick_free_port, wait_for_port
from .benchmark import offload_layers
from .recommend import fallback_ladder

logger = logging.getLogger(__name__)

# ============================================================================
# SERVICE CONSTANTS
# ============================================================================

SERVICE_HOST = "127.0.0.1"
START_TIMEOUT = 12.0
STOP_TIMEOUT = 5.0
CONTEXT_SIZE = 4096


def _spawn_kwargs():
    if os.name == "nt":
        return {"creationflags": subprocess.CREATE_NO_WINDOW}
    return {}


class ServiceController:
    """
    Starts, stops and inspects the llama-server process.

    Args:
        runtimes: RuntimeProvisioner used to locate llama-server
        models: ModelProvisioner used to locate model files
        get_desired_config: Accessor for the desired EngineSettings, used by
            status() when no explicit desired config is passed
        spawn: Subprocess factory with the asyncio.create_subprocess_exec
            signature (injectable for tests)
        log_path: File receiving the server's stdout/stderr (default: discarded)
    """

    def __init__(
        self,
        runtimes,
        models,
        get_desired_config: Optional[Callable] = None,
        spawn=None,
        log_path: Optional[Path] = None,
        start_timeout: float = START_TIMEOUT,
        stop_timeout: float = STOP_TIMEOUT,
    ):
        self.runtimes = runtimes
        self.models = models
        self.get_desired_config = get_desired_config
        self.log_path = Path(log_path) if log_path else None
        self.start_timeout = start_timeout
        self.stop_timeout = stop_timeout
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._process = None
        self._started: Optional[StartedConfig] = None
        self._port: Optional[int] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def base_url(self) -> Optional[str]:
        if not self.running or self._port is None:
            return None
        return f"http://{SERVICE_HOST}:{self._port}"

    def running_model_id(self) -> Optional[str]:
        return self._started.model_id if self.running and self._started else None

    def status(self, desired=None) -> ServiceState:
        """
        Report the live service state against a desired configuration.

        Args:
            desired: EngineSettings to compare with; defaults to
                get_desired_config() when that accessor was given

        Returns:
            ServiceState. config_changed is True when a process is running
            and its model or hardware configuration differs from desired.
        """
        if desired is None and self.get_desired_config is not None:
            desired = self.get_desired_config()

        running = self.running
        started = self._started if running else None
        running_model = started.model_id if started else None

        if desired is None:
            this_model = running
            changed = False
        else:
            this_model = running and running_model == desired.model_id
            changed = running and (
                running_model != desired.model_id
                or started.hardware_key() != desired.hardware_key()
            )

        return ServiceState(
            running=running,
            running_model_id=running_model,
            running_this_model=this_model,
            base_url=self.base_url,
            started=started,
            config_changed=changed,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _check_prerequisites(self, model_id: str, config: ComputeConfig):
        if not self.models.is_installed(model_id):
            raise ServicePreconditionError(f"Model {model_id} is not installed", model_id=model_id)
        server = self.runtimes.find_server_binary(config)
        if server is None:
            raise ServicePreconditionError(
                f"Runtime {config.runtime_key} is not installed",
                model_id=model_id,
            )
        return self.models.model_path(model_id), server

    async def start(
        self,
        model_id: str,
        config: ComputeConfig,
        gpu_layers: int = 20,
        vram_bytes: Optional[int] = None,
    ) -> ServiceState:
        """
        Launch llama-server for a model and compute config.

        Nothing is spawned unless both the model file and the runtime build
        are present. A service already running with the identical
        configuration is left alone.

        Raises:
            ServicePreconditionError: Model or runtime not provisioned
            ServiceStartError: Launch failed or the port never opened
        """
        model_path, server = self._check_prerequisites(model_id, config)
        wanted = StartedConfig(
            model_id=model_id,
            compute_mode=config.compute_mode,
            gpu_backend=config.gpu_backend,
            cuda_version=config.cuda_version,
            gpu_layers=gpu_layers,
        )
        if (self.running and self._started.model_id == wanted.model_id
                and self._started.hardware_key() == wanted.hardware_key()):
            logger.debug("Service already running with the requested configuration")
            return self.status()

        await self.stop()

        port = pick_free_port(SERVICE_HOST)
        cmd = [
            str(server), "-m", str(model_path),
            "--host", SERVICE_HOST, "--port", str(port),
            "--ctx-size", str(CONTEXT_SIZE), "--jinja",
            "--n-gpu-layers", str(offload_layers(config, gpu_layers, vram_bytes)),
        ]
        logger.info("Starting llama-server for %s on port %d (%s)", model_id, port, config.runtime_key)
        logger.debug("Running %s", " ".join(cmd))

        log_file = None
        if self.log_path is not None:
            self.log_path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(self.log_path, "ab")
        try:
            self._process = await self._spawn(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=log_file or asyncio.subprocess.DEVNULL,
                stderr=log_file or asyncio.subprocess.DEVNULL,
                cwd=str(server.parent),
                **_spawn_kwargs(),
            )
        except OSError as e:
            raise ServiceStartError(f"Failed to launch llama-server: {e}", model_id=model_id) from e
        finally:
            if log_file is not None:
                log_file.close()

        self._port = port
        process = self._process
        ready = await wait_for_port(
            SERVICE_HOST, port,
            timeout=self.start_timeout,
            alive=lambda: process.returncode is None,
        )
        if not ready or process.returncode is not None:
            code = process.returncode
            await self.stop()
            if code is not None:
                raise ServiceStartError(f"llama-server exited with status {code} during startup", model_id=model_id)
            raise ServiceStartError(
                f"llama-server did not open port {port} within {self.start_timeout:.0f}s",
                model_id=model_id,
            )

        self._started = wanted
        logger.info("llama-server ready at %s", self.base_url)
        return self.status()

    async def stop(self) -> None:
        """Stop the service. Safe to call when nothing is running."""
        process = self._process
        self._process = None
        self._started = None
        self._port = None
        if process is None:
            return
        if process.returncode is None:
            logger.info("Stopping llama-server")
            try:
                process.terminate()
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self.stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("llama-server did not exit in %.0fs; killing it", self.stop_timeout)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()

    async def restart(self, desired) -> ServiceState:
        """Apply a new desired configuration: stop, then start with it."""
        await self.stop()
        return await self.start(desired.model_id, desired.compute_config, desired.gpu_layers)

    async def autostart(self, settings, profile=None, allow_download: bool = False) -> Optional[ServiceState]:
        """
        Start the persisted configuration on application launch.

        When a hardware profile is given and the persisted configuration
        cannot be started, the benchmark-free fallback ladder is walked:
        smaller tiers first, then the next compute candidate. Rungs whose
        model is not installed are skipped unless allow_download is set.
        The fallback is not persisted; status() reports it as drift.

        Args:
            settings: Persisted EngineSettings
            profile: HardwareProfile enabling the fallback ladder
            allow_download: Provision missing models and runtimes while falling back

        Returns:
            The service state, or None when auto-start is off, or the model
            is not installed and there is no profile to fall back on

        Raises:
            ServiceStartError: If the persisted configuration fails with no
                profile given, or every fallback failed
        """
        if not settings.auto_start:
            return None
        if self.models.is_installed(settings.model_id):
            try:
                return await self.start(settings.model_id, settings.compute_config, settings.gpu_layers)
            except ServiceStartError as e:
                if profile is None:
                    raise
                logger.warning("Auto-start of %s failed, trying fallbacks: %s", settings.model_id, e)
        elif profile is None:
            logger.info("Auto-start skipped: model %s is not installed", settings.model_id)
            return None

        ladder = fallback_ladder(
            profile,
            settings.preferred_tier,
            settings.preferred_compute,
            settings.cuda_version,
            settings.gpu_layers,
        )
        vram = profile.vram_bytes
        for rung in ladder:
            if not await self._provision(rung, allow_download):
                continue
            try:
                state = await self.start(rung.model_id, rung.config, rung.gpu_layers, vram)
            except ServiceStartError as e:
                logger.info("Fallback %s on %s failed: %s", rung.model_id, rung.candidate.label, e)
                continue
            logger.info("Auto-start fell back to %s on %s", rung.model_id, rung.candidate.label)
            return state
        raise ServiceStartError("Auto-start failed after trying fallbacks", model_id=settings.model_id)

    async def _provision(self, rung, allow_download: bool) -> bool:
        if not allow_download:
            return self.models.is_installed(rung.model_id)
        try:
            await asyncio.to_thread(self.runtimes.install_runtime, rung.config)
            await asyncio.to_thread(self.models.install_model, rung.model_id, rung.config)
        except (DownloadError, InstallError) as e:
            logger.info("Cannot provision %s on %s: %s", rung.model_id, rung.candidate.label, e)
            return False
        return True
