"""
llama.cpp release archives: naming, mirrors and safe extraction.
"""

import logging
import os
import platform
import stat
import tarfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import List, Optional

from ..exceptions import InstallError
from ..schema import ComputeConfig

logger = logging.getLogger(__name__)

# ============================================================================
# RELEASE CONSTANTS
# ============================================================================

LLAMA_CPP_BUILD = "b7966"

RUNTIME_MIRRORS = (
    f"https://www.modelscope.cn/datasets/Lissajous/llamacppforall/resolve/master/{LLAMA_CPP_BUILD}",
    f"https://github.com/ggml-org/llama.cpp/releases/download/{LLAMA_CPP_BUILD}",
)


def runtime_archive_names(config: ComputeConfig, system: Optional[str] = None,
                          machine: Optional[str] = None) -> List[str]:
    """
    Release archives needed for a compute config on a platform.

    Windows CUDA builds need the separate cudart archive next to the main
    one. Linux has no CUDA release build, so CUDA configs fall back to the
    Vulkan build there.

    Returns:
        Archive file names, main archive first

    Raises:
        InstallError: On platforms without a published build
    """
    system = system or platform.system()
    machine = (machine or platform.machine()).lower()
    key = config.runtime_key
    prefix = f"llama-{LLAMA_CPP_BUILD}-bin"

    if system == "Windows":
        if key.startswith("cuda-"):
            version = config.cuda_version
            return [
                f"{prefix}-win-cuda-{version}-x64.zip",
                f"cudart-llama-bin-win-cuda-{version}-x64.zip",
            ]
        flavor = "cpu" if key == "cpu" else "vulkan"
        return [f"{prefix}-win-{flavor}-x64.zip"]

    if system == "Darwin":
        arch = "arm64" if machine in ("arm64", "aarch64") else "x64"
        return [f"{prefix}-macos-{arch}.tar.gz"]

    if system == "Linux":
        flavor = "x64" if key == "cpu" else "vulkan-x64"
        return [f"{prefix}-ubuntu-{flavor}.tar.gz"]

    raise InstallError(f"No llama.cpp build is published for {system}", target=key)


def archive_urls(archive_name: str, override_base: Optional[str] = None) -> List[str]:
    bases = ([override_base.rstrip("/")] if override_base else []) + list(RUNTIME_MIRRORS)
    return [f"{base}/{archive_name}" for base in bases]


def _is_safe_member(name: str) -> bool:
    path = PurePosixPath(name.replace("\\", "/"))
    if path.is_absolute() or name.startswith(("/", "\\")) or (len(name) > 1 and name[1] == ":"):
        return False
    return ".." not in path.parts


def extract_archive(archive: Path, dest: Path) -> None:
    """
    Extract a .zip or .tar.gz into dest, skipping unsafe member paths.

    Raises:
        InstallError: If the archive type is unknown or the archive is corrupt
    """
    archive = Path(archive)
    dest = Path(dest)
    dest.mkdir(parents=True, exist_ok=True)
    name = archive.name.lower()

    try:
        if name.endswith(".zip"):
            with zipfile.ZipFile(archive) as zf:
                for member in zf.infolist():
                    if not _is_safe_member(member.filename):
                        logger.warning("Skipping unsafe archive entry %s", member.filename)
                        continue
                    zf.extract(member, dest)
        elif name.endswith((".tar.gz", ".tgz", ".tar")):
            with tarfile.open(archive) as tf:
                members = []
                for member in tf.getmembers():
                    if not _is_safe_member(member.name):
                        logger.warning("Skipping unsafe archive entry %s", member.name)
                        continue
                    members.append(member)
                tf.extractall(dest, members=members, filter="data")
        else:
            raise InstallError(f"Unsupported runtime archive: {archive.name}", target=str(archive))
    except (zipfile.BadZipFile, tarfile.TarError, OSError) as e:
        raise InstallError(f"Failed to extract {archive.name}: {e}", target=str(archive)) from e

    mark_executables(dest)


def mark_executables(root: Path) -> None:
    """chmod +x the llama-* binaries under root (no-op on Windows)."""
    if os.name == "nt":
        return
    for path in Path(root).rglob("*"):
        if path.is_file() and (path.name.startswith("llama-") or path.name == "server") and not path.suffix:
            mode = path.stat().st_mode
            path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
