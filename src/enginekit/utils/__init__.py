"""Utility functions for EngineKit."""

from .imports import safe_import, can_load_library
from .network import pick_free_port, wait_for_port
from .download import Downloader

__all__ = ["safe_import", "can_load_library", "pick_free_port", "wait_for_port", "Downloader"]
