"""Safe loading of optional Python modules and native shared libraries."""

import ctypes
import logging
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


def safe_import(module_name: str):
    """
    Import a module, returning None if it is unavailable.

    Use this for optional dependencies or platform-specific modules that may
    not be installed on every system (pynvml, ctypes.wintypes, ...).

    Args:
        module_name: The module to import (e.g., "pynvml")

    Returns:
        The imported module, or None if the import fails

    Examples:
        >>> pynvml = safe_import("pynvml")
        >>> if pynvml:
        ...     pynvml.nvmlInit()
    """
    try:
        return __import__(module_name, fromlist=[''])
    except Exception:
        logger.debug("Optional module %s is not available", module_name)
        return None


def can_load_library(names: Iterable[str]) -> bool:
    """
    Check whether any of the given native libraries can be loaded.

    Loading the driver library (libcuda, libvulkan, nvcuda.dll, ...) is the
    cheapest reliable signal that the corresponding accelerator API is
    usable on this host.

    Args:
        names: Candidate library file names, tried in order

    Returns:
        True if one of them loaded, False otherwise
    """
    for name in names:
        handle = _load_library(name)
        if handle is not None:
            return True
    return False


def _load_library(name: str) -> Optional[ctypes.CDLL]:
    try:
        return ctypes.CDLL(name)
    except OSError:
        return None
