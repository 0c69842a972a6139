"""
Shared fakes and fixtures for the EngineKit tests.

Nothing here touches the network or spawns real binaries.
"""

import asyncio
import os
import threading
from pathlib import Path

import pytest

from enginekit.config import EngineSettings, SettingsStore
from enginekit.exceptions import BenchmarkError, DownloadCancelled, InstallError, ServiceStartError
from enginekit.hardware.hardware_schema import HardwareProfile
from enginekit.models.catalog import model_file_name
from enginekit.models.tiers import recommend
from enginekit.progress import DownloadProgress, ProgressChannel
from enginekit.schema import BenchmarkResult, ServiceState

GGUF_PAYLOAD = b"GGUF" + b"\x00" * 28
GIB = 1024 ** 3


# ============================================================================
# SUBPROCESS FAKES
# ============================================================================

class FakeProcess:
    """Stand-in for asyncio.subprocess.Process."""

    def __init__(self, stdout=b"", stderr=b"", returncode=0, hang=False, exited=False):
        self._stdout = stdout
        self._stderr = stderr
        self._final_code = returncode
        self.hang = hang
        self.returncode = returncode if exited else None
        self._exited = asyncio.Event()
        if exited:
            self._exited.set()
        self.killed = False
        self.terminated = False

    def _finish(self, code):
        if self.returncode is None:
            self.returncode = code
        self._exited.set()

    async def communicate(self):
        if self.hang:
            await self._exited.wait()
        else:
            self._finish(self._final_code)
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True
        self._finish(-9)

    def terminate(self):
        self.terminated = True
        self._finish(-15)

    async def wait(self):
        await self._exited.wait()
        return self.returncode


class FakeSpawner:
    """Records spawn calls and hands out processes built by a factory."""

    def __init__(self, factory):
        self.factory = factory
        self.calls = []
        self.processes = []

    async def __call__(self, *cmd, **kwargs):
        self.calls.append((list(cmd), kwargs))
        process = self.factory()
        self.processes.append(process)
        return process


# ============================================================================
# DOWNLOAD FAKES
# ============================================================================

class FakeDownloader:
    """Writes a fixed payload instead of fetching URLs."""

    def __init__(self, payload=GGUF_PAYLOAD, progress=None):
        self.payload = payload
        self.progress = progress
        self.calls = []
        self.cancelled = False

    def download(self, urls, dest, label, validate=None, probe=True):
        self.calls.append({"urls": list(urls), "dest": Path(dest), "label": label})
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        part = dest.with_name(dest.name + ".part")
        part.write_bytes(self.payload)
        if self.progress is not None:
            self.progress.publish(DownloadProgress(written_bytes=len(self.payload), total_bytes=len(self.payload), label=label))
        if validate is not None:
            try:
                validate(part)
            except Exception:
                part.unlink()
                raise
        os.replace(part, dest)
        return dest

    def cancel(self):
        self.cancelled = True

    def reset_cancel(self):
        self.cancelled = False


# ============================================================================
# ORCHESTRATOR COLLABORATOR FAKES
# ============================================================================

class FakeRuntimes:
    def __init__(self, fail_keys=()):
        self.fail_keys = set(fail_keys)
        self.installed = []
        self.cancel_calls = 0
        self.reset_calls = 0

    def install_runtime(self, config, source_url=None):
        if config.runtime_key in self.fail_keys:
            raise InstallError(f"cannot install {config.runtime_key}", target=config.runtime_key)
        self.installed.append(config.runtime_key)

    def cancel_active_download(self):
        self.cancel_calls += 1

    def reset_cancel(self):
        self.reset_calls += 1


class FakeModels:
    """
    Model provisioner fake.

    When block_on names a model id, installing it waits (on the worker
    thread) until cancel_active_download() is called and then fails like a
    cancelled download. A cancel that arrives before the install starts is
    kept until reset_cancel(), as with the real downloader.
    """

    def __init__(self, progress=None, fail_ids=(), block_on=None):
        self.progress = progress
        self.fail_ids = set(fail_ids)
        self.block_on = block_on
        self.installed = []
        self.cancel_calls = 0
        self.reset_calls = 0
        self.entered = threading.Event()
        self._cancelled = threading.Event()

    def install_model(self, model_id, config=None, source_url=None):
        if self._cancelled.is_set():
            raise DownloadCancelled(f"Download of {model_id} cancelled")
        if model_id == self.block_on:
            self.entered.set()
            self._cancelled.wait(timeout=5)
            if self._cancelled.is_set():
                raise DownloadCancelled(f"Download of {model_id} cancelled")
        if model_id in self.fail_ids:
            raise InstallError(f"cannot install {model_id}", target=model_id)
        if self.progress is not None:
            self.progress.publish(DownloadProgress(written_bytes=10, total_bytes=10, label=model_id))
        if model_id not in self.installed:
            self.installed.append(model_id)
        return Path(model_file_name(model_id))

    def is_installed(self, model_id):
        return model_id in self.installed

    def cancel_active_download(self):
        self.cancel_calls += 1
        self._cancelled.set()

    def reset_cancel(self):
        self.reset_calls += 1
        self._cancelled.clear()


class FakeBench:
    """
    Benchmark fake driven by a label -> tokens/sec (or exception) table.

    When block_on names a candidate label, that benchmark waits until
    abort() is called, which makes it fail like a killed subprocess.
    """

    def __init__(self, outcomes, block_on=None):
        self.outcomes = outcomes
        self.block_on = block_on
        self.calls = []
        self.aborted = False
        self.started = asyncio.Event()
        self._release = asyncio.Event()

    async def benchmark(self, candidate, reference_model_id, gpu_layers=20, profile=None):
        self.calls.append((candidate.label, reference_model_id, gpu_layers))
        if candidate.label == self.block_on:
            self.started.set()
            await self._release.wait()
            if self.aborted:
                raise BenchmarkError("aborted", candidate=candidate)
        outcome = self.outcomes.get(candidate.label, BenchmarkError("no outcome"))
        if isinstance(outcome, Exception):
            raise outcome
        tier, model_id = recommend(outcome)
        return BenchmarkResult(tokens_per_second=outcome, recommended_tier=tier, recommended_model_id=model_id)

    def abort(self):
        self.aborted = True
        self._release.set()


class FakeService:
    """
    Service controller fake.

    With gated=True, start() waits until release() so a test can act while
    the launch is still in flight.
    """

    def __init__(self, fail_times=0, gated=False):
        self.fail_times = fail_times
        self.starts = []
        self.stop_calls = 0
        self.running_model = None
        self.entered = asyncio.Event()
        self._gate = asyncio.Event()
        if not gated:
            self._gate.set()

    def release(self):
        self._gate.set()

    async def start(self, model_id, config, gpu_layers=20, vram_bytes=None):
        self.starts.append((model_id, config, gpu_layers))
        self.entered.set()
        await self._gate.wait()
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ServiceStartError("port never opened", model_id=model_id)
        self.running_model = model_id
        return ServiceState(running=True, running_model_id=model_id, running_this_model=True)

    async def stop(self):
        self.stop_calls += 1
        self.running_model = None

    def status(self, desired=None):
        running = self.running_model is not None
        changed = running and desired is not None and desired.model_id != self.running_model
        return ServiceState(running=running, running_model_id=self.running_model, config_changed=changed)


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def cpu_profile():
    return HardwareProfile(cpu_cores=8, cpu_brand="Test CPU", total_memory_bytes=64 * GIB)


@pytest.fixture
def cuda_vulkan_profile():
    return HardwareProfile(
        cpu_cores=16,
        cpu_brand="Test CPU",
        total_memory_bytes=64 * GIB,
        vram_bytes=24 * GIB,
        gpu_name="NVIDIA GeForce RTX 4090",
        has_cuda=True,
        has_vulkan=True,
    )


@pytest.fixture
def settings_store(tmp_path):
    return SettingsStore(tmp_path / "settings.json")


@pytest.fixture
def progress():
    return ProgressChannel()


@pytest.fixture
def make_orchestrator(settings_store, progress):
    """Build a SetupOrchestrator over fakes; keyword arguments replace collaborators."""
    from enginekit.orchestrator import SetupOrchestrator

    def _make(profile, bench, runtimes=None, models=None, service=None, get_desired_config=None):
        orchestrator = SetupOrchestrator(
            runtimes=runtimes or FakeRuntimes(),
            models=models or FakeModels(progress=progress),
            bench=bench,
            service=service or FakeService(),
            settings=settings_store,
            probe=lambda: profile,
            get_desired_config=get_desired_config,
            progress=progress,
        )
        return orchestrator

    return _make


@pytest.fixture
def default_settings():
    return EngineSettings()
