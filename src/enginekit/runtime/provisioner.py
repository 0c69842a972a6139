#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Inference runtime provisioning.

Each compute configuration needs its own llama.cpp build (CPU, a CUDA
version, Metal or Vulkan). Builds live side by side under
`<runtime_root>/<runtime key>`; installing one never touches another.
"""

import logging
import os
import shutil
import time
from pathlib import Path
from typing import Callable, Iterable, List, Optional

from ..exceptions import InstallError
from ..schema import ComputeConfig, RuntimeRecord
from ..utils.download import Downloader
from .archives import archive_urls, extract_archive, runtime_archive_names

logger = logging.getLogger(__name__)

SERVER_NAMES = ("llama-server", "server")
BENCH_NAMES = ("llama-bench",)
RUNTIME_KEYS = ("cpu", "cuda-12.4", "cuda-13.1", "metal", "vulkan")


def _exe_names(names: Iterable[str]) -> List[str]:
    names = list(names)
    if os.name == "nt":
        return [f"{n}.exe" for n in names] + names
    return names


def find_binary(root: Path, names: Iterable[str]) -> Optional[Path]:
    """
    Locate a binary under root.

    Release archives nest their binaries differently across platforms
    (flat on Windows, under build/bin or a versioned folder elsewhere), so
    the top level is checked first, then the whole tree.
    """
    root = Path(root)
    if not root.is_dir():
        return None
    wanted = _exe_names(names)
    for name in wanted:
        direct = root / name
        if direct.is_file():
            return direct
    for name in wanted:
        for match in sorted(root.rglob(name)):
            if match.is_file():
                return match
    return None


def _config_for_key(key: str) -> ComputeConfig:
    if key == "cpu":
        return ComputeConfig(compute_mode="cpu", gpu_backend="none")
    if key.startswith("cuda-"):
        return ComputeConfig(compute_mode="gpu", gpu_backend="cuda", cuda_version=key[len("cuda-"):])
    if key == "metal":
        return ComputeConfig(compute_mode="gpu", gpu_backend="metal")
    return ComputeConfig(compute_mode="hybrid", gpu_backend="vulkan")


class RuntimeProvisioner:
    """
    Installs and manages llama.cpp runtime builds.

    Args:
        runtime_root: Directory holding one subdirectory per runtime key
        downloader: Shared Downloader
        bundled_dir: Optional directory with pre-shipped builds under
            `runtime/<key>`
        url_override: Callable mapping 'runtime:<key>' to an override base URL
    """

    def __init__(
        self,
        runtime_root: Path,
        downloader: Optional[Downloader] = None,
        bundled_dir: Optional[Path] = None,
        url_override: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.runtime_root = Path(runtime_root)
        self.downloader = downloader or Downloader()
        self.bundled_dir = Path(bundled_dir) if bundled_dir else None
        self.url_override = url_override

    def runtime_dir(self, config: ComputeConfig) -> Path:
        return self.runtime_root / config.runtime_key

    def find_server_binary(self, config: ComputeConfig) -> Optional[Path]:
        return find_binary(self.runtime_dir(config), SERVER_NAMES)

    def find_bench_binary(self, config: ComputeConfig) -> Optional[Path]:
        return find_binary(self.runtime_dir(config), BENCH_NAMES)

    def runtime_status(self, config: ComputeConfig) -> RuntimeRecord:
        return RuntimeRecord(
            compute_mode=config.compute_mode,
            gpu_backend=config.gpu_backend,
            cuda_version=config.cuda_version,
            installed=self.find_server_binary(config) is not None,
            dir=self.runtime_dir(config),
        )

    def list_runtimes(self) -> List[RuntimeRecord]:
        """Installed runtime builds, one per key."""
        records = []
        for key in RUNTIME_KEYS:
            record = self.runtime_status(_config_for_key(key))
            if record.installed:
                records.append(record)
        return records

    def cancel_active_download(self) -> None:
        self.downloader.cancel()

    def reset_cancel(self) -> None:
        self.downloader.reset_cancel()

    def install_runtime(self, config: ComputeConfig, source_url: Optional[str] = None) -> RuntimeRecord:
        """
        Make sure the runtime build for a config is installed.

        Preference order: already installed, bundled copy, download.

        Args:
            config: Compute configuration whose build is needed
            source_url: Base URL tried before the release mirrors

        Returns:
            The installed RuntimeRecord

        Raises:
            DownloadError: If an archive could not be fetched
            DownloadCancelled: If the download was cancelled
            InstallError: If extraction fails or no server binary results
        """
        status = self.runtime_status(config)
        if status.installed:
            logger.debug("Runtime %s already installed at %s", config.runtime_key, status.dir)
            return status

        target = self.runtime_dir(config)
        if self._install_bundled(config, target):
            return self._verified(config)

        override = source_url
        if override is None and self.url_override is not None:
            override = self.url_override(f"runtime:{config.runtime_key}")

        downloads = self.runtime_root / ".downloads"
        archives = []
        for name in runtime_archive_names(config):
            dest = downloads / name
            if not dest.is_file():
                try:
                    self.downloader.download(archive_urls(name, override), dest, label=name)
                except OSError as e:
                    raise InstallError(f"Cannot store {name}: {e}", target=config.runtime_key) from e
            archives.append(dest)

        try:
            return self.import_runtime(config, archives)
        finally:
            for archive in archives:
                archive.unlink(missing_ok=True)

    def _install_bundled(self, config: ComputeConfig, target: Path) -> bool:
        if self.bundled_dir is None:
            return False
        source = self.bundled_dir / "runtime" / config.runtime_key
        if find_binary(source, SERVER_NAMES) is None:
            return False
        logger.info("Copying bundled runtime %s", source)
        try:
            if target.exists():
                shutil.rmtree(target)
            shutil.copytree(source, target)
        except OSError as e:
            shutil.rmtree(target, ignore_errors=True)
            raise InstallError(
                f"Failed to copy bundled runtime {config.runtime_key}: {e}",
                target=config.runtime_key,
            ) from e
        return True

    def import_runtime(self, config: ComputeConfig, archive_paths: Iterable[Path]) -> RuntimeRecord:
        """
        Install a runtime from local release archives.

        Raises:
            InstallError: If an archive is missing, unreadable, or the result
                holds no server binary
        """
        target = self.runtime_dir(config)
        try:
            target.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise InstallError(f"Cannot create runtime directory {target}: {e}", target=config.runtime_key) from e
        for archive in archive_paths:
            archive = Path(archive)
            if not archive.is_file():
                raise InstallError(f"Runtime archive not found: {archive}", target=config.runtime_key)
            logger.info("Extracting %s into %s", archive.name, target)
            extract_archive(archive, target)
        return self._verified(config)

    def _verified(self, config: ComputeConfig) -> RuntimeRecord:
        status = self.runtime_status(config)
        if not status.installed:
            raise InstallError(
                f"No llama-server binary found after installing runtime {config.runtime_key}",
                target=config.runtime_key,
            )
        logger.info("Runtime %s installed at %s", config.runtime_key, status.dir)
        return status

    def delete_runtime(self, config: ComputeConfig, attempts: int = 3) -> bool:
        """
        Remove a runtime build.

        The caller must stop a service using this runtime first; on Windows
        a running binary keeps its directory locked, hence the retries.

        Returns:
            True if a directory was removed, False if none existed

        Raises:
            InstallError: If the directory could not be removed
        """
        target = self.runtime_dir(config)
        if not target.exists():
            return False
        last_error = None
        for attempt in range(attempts):
            try:
                shutil.rmtree(target)
                logger.info("Deleted runtime %s", config.runtime_key)
                return True
            except OSError as e:
                last_error = e
                time.sleep(0.3 * (attempt + 1))
        raise InstallError(f"Failed to delete runtime {config.runtime_key}: {last_error}", target=config.runtime_key)
