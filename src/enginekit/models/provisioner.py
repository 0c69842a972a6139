#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Model weight provisioning.

Ensures GGUF weight files are present in the models directory: copied from a
bundled directory when the application ships one, otherwise downloaded from
the catalog mirrors. Also lists, imports and deletes model files.
"""

import logging
import shutil
from pathlib import Path
from typing import Callable, List, Optional

from gguf import GGUFReader

from ..exceptions import InstallError
from ..schema import ComputeConfig, InstalledModel
from ..utils.download import Downloader
from .catalog import get_model, model_file_name, model_id_for_file, sanitize_model_id

logger = logging.getLogger(__name__)

GGUF_MAGIC = b'GGUF'


def check_gguf_magic(path: Path) -> None:
    """
    Reject files that do not start with the GGUF magic.

    Mirrors sometimes answer with an HTML error page and a 200 status; this
    catches that before the file is moved into place.

    Raises:
        InstallError: If the file is unreadable or not GGUF
    """
    try:
        with open(path, "rb") as fh:
            head = fh.read(4)
    except OSError as e:
        raise InstallError(f"Cannot read model file {path}: {e}", target=str(path)) from e
    if head != GGUF_MAGIC:
        raise InstallError(f"{Path(path).name} is not a GGUF model file", target=str(path))


def read_gguf_architecture(path: Path) -> Optional[str]:
    """Best-effort read of general.architecture from a GGUF header."""
    try:
        reader = GGUFReader(path)
        field = reader.fields.get("general.architecture")
        if field is None or not field.data:
            return None
        return bytes(field.parts[field.data[0]]).decode("utf-8")
    except Exception:
        return None


class ModelProvisioner:
    """
    Installs and manages model weight files.

    Args:
        models_dir: Directory holding *.gguf files
        downloader: Shared Downloader (its cancel flag is shared too)
        bundled_dir: Optional directory with pre-shipped model files
        in_use: Callable returning the model id the service is serving, used
            to refuse deleting it
        url_override: Callable mapping a model id to an override URL
    """

    def __init__(
        self,
        models_dir: Path,
        downloader: Optional[Downloader] = None,
        bundled_dir: Optional[Path] = None,
        in_use: Optional[Callable[[], Optional[str]]] = None,
        url_override: Optional[Callable[[str], Optional[str]]] = None,
    ):
        self.models_dir = Path(models_dir)
        self.downloader = downloader or Downloader()
        self.bundled_dir = Path(bundled_dir) if bundled_dir else None
        self.in_use = in_use
        self.url_override = url_override

    def model_path(self, model_id: str) -> Path:
        return self.models_dir / model_file_name(sanitize_model_id(model_id))

    def is_installed(self, model_id: str) -> bool:
        return self.model_path(model_id).is_file()

    def cancel_active_download(self) -> None:
        self.downloader.cancel()

    def reset_cancel(self) -> None:
        self.downloader.reset_cancel()

    def _bundled_file(self, file_name: str) -> Optional[Path]:
        if self.bundled_dir is None:
            return None
        candidate = self.bundled_dir / "models" / file_name
        return candidate if candidate.is_file() else None

    def install_model(
        self,
        model_id: str,
        config: Optional[ComputeConfig] = None,
        source_url: Optional[str] = None,
    ) -> Path:
        """
        Make sure a model's weight file is on disk.

        Already-present files are returned as is. The compute config does not
        affect which file is used; it is accepted so every provisioner shares
        one call shape.

        Args:
            model_id: Catalog or imported model id
            config: Compute configuration the model will run under (unused)
            source_url: Explicit URL tried before the catalog mirrors

        Returns:
            Path of the installed model file

        Raises:
            DownloadError: If no mirror delivered the file
            DownloadCancelled: If the download was cancelled
            InstallError: If the download is not a GGUF file, or the model
                is unknown and has no source URL
        """
        model_id = sanitize_model_id(model_id)
        dest = self.model_path(model_id)
        if dest.is_file():
            logger.debug("Model %s already installed at %s", model_id, dest)
            return dest

        bundled = self._bundled_file(dest.name)
        try:
            self.models_dir.mkdir(parents=True, exist_ok=True)
            if bundled is not None:
                logger.info("Copying bundled model %s", bundled)
                shutil.copy2(bundled, dest)
                return dest
        except OSError as e:
            dest.unlink(missing_ok=True)
            raise InstallError(f"Failed to place model {model_id}: {e}", target=model_id) from e

        urls = []
        if source_url:
            urls.append(source_url)
        elif self.url_override is not None:
            override = self.url_override(model_id)
            if override:
                urls.append(override)

        descriptor = get_model(model_id)
        if descriptor is not None:
            urls.extend(descriptor.urls)
        if not urls:
            raise InstallError(
                f"Model {model_id} is not in the catalog; import its GGUF file instead",
                target=model_id,
            )

        label = descriptor.title if descriptor else model_id
        try:
            self.downloader.download(urls, dest, label=label, validate=check_gguf_magic)
        except OSError as e:
            raise InstallError(f"Cannot store model {model_id}: {e}", target=model_id) from e
        logger.info("Installed model %s at %s", model_id, dest)
        return dest

    def list_installed_models(self) -> List[InstalledModel]:
        """All *.gguf files in the models directory, sorted by file name."""
        if not self.models_dir.is_dir():
            return []
        models = []
        for path in sorted(self.models_dir.glob("*.gguf")):
            if not path.is_file():
                continue
            models.append(InstalledModel(
                model_id=model_id_for_file(path.name),
                file_name=path.name,
                size_bytes=path.stat().st_size,
                architecture=read_gguf_architecture(path),
            ))
        return models

    def delete_model(self, model_id: str) -> bool:
        """
        Delete a model file.

        Returns:
            True if a file was removed, False if it was not installed

        Raises:
            InstallError: If the service is currently serving this model
        """
        model_id = sanitize_model_id(model_id)
        if self.in_use is not None and self.in_use() == model_id:
            raise InstallError(f"Model {model_id} is in use; stop the service first", target=model_id)
        path = self.model_path(model_id)
        if not path.is_file():
            return False
        path.unlink()
        logger.info("Deleted model %s", model_id)
        return True

    def import_model(self, source: Path) -> InstalledModel:
        """
        Copy a local GGUF file into the models directory.

        A name collision gets a numeric suffix (model-1.gguf, model-2.gguf...)
        rather than overwriting the existing file.

        Raises:
            InstallError: If the source is missing or not a GGUF file
        """
        source = Path(source)
        if not source.is_file():
            raise InstallError(f"Model file not found: {source}", target=str(source))
        check_gguf_magic(source)

        self.models_dir.mkdir(parents=True, exist_ok=True)
        stem = sanitize_model_id(source.stem)
        dest = self.models_dir / f"{stem}.gguf"
        counter = 1
        while dest.exists():
            dest = self.models_dir / f"{stem}-{counter}.gguf"
            counter += 1

        shutil.copy2(source, dest)
        logger.info("Imported model %s as %s", source, dest.name)
        return InstalledModel(
            model_id=model_id_for_file(dest.name),
            file_name=dest.name,
            size_bytes=dest.stat().st_size,
            architecture=read_gguf_architecture(dest),
        )
