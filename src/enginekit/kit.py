"""
Default wiring of the EngineKit components.

Example:
    >>> kit = create_engine_kit()
    >>> session = await kit.orchestrator.run()
    >>> await kit.orchestrator.confirm()
"""

from dataclasses import dataclass
from typing import Optional

from .config import EngineKitPaths, SettingsStore
from .engine.benchmark import BenchmarkRunner
from .engine.service import ServiceController
from .models.provisioner import ModelProvisioner
from .orchestrator.orchestrator import SetupOrchestrator
from .progress import ProgressChannel
from .runtime.provisioner import RuntimeProvisioner
from .utils.download import Downloader


@dataclass
class EngineKit:
    """All collaborators of one application instance, sharing a downloader and progress channel."""
    paths: EngineKitPaths
    settings: SettingsStore
    progress: ProgressChannel
    downloader: Downloader
    runtimes: RuntimeProvisioner
    models: ModelProvisioner
    bench: BenchmarkRunner
    service: ServiceController
    orchestrator: SetupOrchestrator


def create_engine_kit(paths: Optional[EngineKitPaths] = None) -> EngineKit:
    paths = paths or EngineKitPaths.default()
    settings = SettingsStore(paths.settings_file)
    progress = ProgressChannel()
    downloader = Downloader(progress=progress)

    def url_override(key):
        return settings.load().override_url(key)

    runtimes = RuntimeProvisioner(paths.runtime_root, downloader, paths.bundled_dir, url_override=url_override)
    models = ModelProvisioner(paths.models_dir, downloader, paths.bundled_dir, url_override=url_override)
    service = ServiceController(
        runtimes,
        models,
        get_desired_config=settings.load,
        log_path=paths.llm_dir / "llama-server.log",
    )
    models.in_use = service.running_model_id
    bench = BenchmarkRunner(runtimes, models)
    orchestrator = SetupOrchestrator(
        runtimes, models, bench, service, settings,
        get_desired_config=settings.load,
        progress=progress,
    )
    return EngineKit(
        paths=paths,
        settings=settings,
        progress=progress,
        downloader=downloader,
        runtimes=runtimes,
        models=models,
        bench=bench,
        service=service,
        orchestrator=orchestrator,
    )
