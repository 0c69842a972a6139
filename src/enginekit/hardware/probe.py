#!/usr/bin/env python3
# -*- coding: utf-8 -*-
"""
Hardware capability probe.

Collects the CPU, memory, GPU and accelerator-API facts that decide which
llama.cpp builds are worth benchmarking on this host. Everything is gathered
in-process through Python libraries (py-cpuinfo, psutil, pynvml), ctypes
library loading and sysfs, without shelling out to vendor tools.

The probe fails closed: a query that errors out simply leaves its capability
reported as absent (False/None). Callers never see an exception.
"""

import glob
import logging
import os
import platform
from typing import Any, Dict, Optional

from ..utils import can_load_library, safe_import
from .hardware_schema import HardwareProfile
from .windows_adapters import list_display_adapters

logger = logging.getLogger(__name__)

# --- Constants ---
CUDA_LIBRARIES = {
    "Windows": ("nvcuda.dll",),
    "Linux": ("libcuda.so.1", "libcuda.so"),
}
VULKAN_LIBRARIES = {
    "Windows": ("vulkan-1.dll",),
    "Linux": ("libvulkan.so.1", "libvulkan.so"),
}
AMD_VENDOR_ID = "0x1002"


def _decode(value) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else str(value)


class HardwareInspector:
    """
    Inspects the host and produces a HardwareProfile.

    Args:
        system: Override for platform.system() (tests)
        machine: Override for platform.machine() (tests)
    """

    def __init__(self, system: Optional[str] = None, machine: Optional[str] = None):
        self.system = system or platform.system()
        self.machine = (machine or platform.machine()).lower()
        self.info: Dict[str, Any] = {
            "cpu_cores": os.cpu_count() or 1,
            "cpu_brand": "",
            "total_memory_bytes": 0,
            "vram_bytes": None,
            "gpu_name": None,
            "has_cuda": False,
            "has_vulkan": False,
            "has_metal": False,
            "is_apple_silicon": False,
        }

    def _get_cpu_details(self):
        """CPU brand via py-cpuinfo, logical core count via psutil."""
        cpuinfo = safe_import("cpuinfo")
        if cpuinfo:
            try:
                self.info["cpu_brand"] = cpuinfo.get_cpu_info().get("brand_raw") or ""
            except Exception:
                pass
        if not self.info["cpu_brand"]:
            self.info["cpu_brand"] = platform.processor() or ""

        psutil = safe_import("psutil")
        if psutil:
            try:
                self.info["cpu_cores"] = psutil.cpu_count(logical=True) or self.info["cpu_cores"]
            except Exception:
                pass

    def _get_memory_details(self):
        psutil = safe_import("psutil")
        if psutil:
            try:
                self.info["total_memory_bytes"] = int(psutil.virtual_memory().total)
            except Exception:
                pass

    def _get_accelerator_apis(self):
        """CUDA/Vulkan are usable when their driver libraries load; Metal is any macOS."""
        if self.system == "Darwin":
            self.info["has_metal"] = True
            self.info["is_apple_silicon"] = self.machine in ("arm64", "aarch64")
            return
        self.info["has_cuda"] = can_load_library(CUDA_LIBRARIES.get(self.system, ()))
        self.info["has_vulkan"] = can_load_library(VULKAN_LIBRARIES.get(self.system, ()))

    def _get_nvidia_gpu(self) -> bool:
        """Largest NVIDIA GPU via pynvml. Returns True if one was found."""
        pynvml = safe_import("pynvml")
        if not pynvml:
            return False
        try:
            pynvml.nvmlInit()
        except Exception:
            return False
        try:
            best = None
            for i in range(pynvml.nvmlDeviceGetCount()):
                handle = pynvml.nvmlDeviceGetHandleByIndex(i)
                total = int(pynvml.nvmlDeviceGetMemoryInfo(handle).total)
                if best is None or total > best[1]:
                    best = (_decode(pynvml.nvmlDeviceGetName(handle)), total)
            if best is None:
                return False
            self.info["gpu_name"], self.info["vram_bytes"] = best
            return True
        except Exception:
            return False
        finally:
            try:
                pynvml.nvmlShutdown()
            except Exception:
                pass

    def _get_amd_vram_linux(self) -> bool:
        """Dedicated VRAM of the largest AMD GPU from the amdgpu sysfs nodes."""
        best = 0
        for card in glob.glob("/sys/class/drm/card[0-9]*/device"):
            try:
                with open(os.path.join(card, "vendor")) as fh:
                    if fh.read().strip().lower() != AMD_VENDOR_ID:
                        continue
                with open(os.path.join(card, "mem_info_vram_total")) as fh:
                    best = max(best, int(fh.read().strip()))
            except (OSError, ValueError):
                continue
        if best <= 0:
            return False
        self.info["vram_bytes"] = best
        self.info["gpu_name"] = self.info["gpu_name"] or "AMD Radeon GPU"
        return True

    def _get_windows_adapter(self) -> bool:
        """Primary hardware display adapter (largest dedicated VRAM) via DXGI."""
        try:
            adapters = [a for a in list_display_adapters() if not a.is_software]
        except Exception:
            return False
        if not adapters:
            return False
        primary = max(adapters, key=lambda a: a.dedicated_vram_bytes)
        self.info["gpu_name"] = primary.name
        self.info["vram_bytes"] = primary.dedicated_vram_bytes or None
        return True

    def _get_gpu_details(self):
        if self.info["is_apple_silicon"]:
            # Unified memory: the GPU can address all of system RAM
            self.info["gpu_name"] = "Apple Silicon GPU"
            self.info["vram_bytes"] = self.info["total_memory_bytes"] or None
            return
        if self._get_nvidia_gpu():
            return
        if self.system == "Windows":
            self._get_windows_adapter()
        elif self.system == "Linux":
            self._get_amd_vram_linux()

    def inspect(self) -> HardwareProfile:
        """
        Run every probe step and build the profile.

        Returns:
            HardwareProfile: Never raises; failed steps report absence.
        """
        for step in (self._get_cpu_details, self._get_memory_details,
                     self._get_accelerator_apis, self._get_gpu_details):
            try:
                step()
            except Exception as e:
                logger.debug("Hardware probe step %s failed: %s", step.__name__, e)

        try:
            profile = HardwareProfile(**self.info)
        except Exception as e:
            logger.warning("Discarding inconsistent hardware probe result: %s", e)
            profile = HardwareProfile.minimal(cpu_cores=os.cpu_count() or 1)
        logger.info(
            "Detected %s, %.1f GB RAM, GPU=%s, cuda=%s vulkan=%s metal=%s",
            profile.cpu_brand or "unknown CPU",
            profile.total_memory_gb,
            profile.gpu_name,
            profile.has_cuda,
            profile.has_vulkan,
            profile.has_metal,
        )
        return profile


def probe_hardware() -> HardwareProfile:
    """
    Probe the host once.

    Example:
        >>> profile = probe_hardware()
        >>> profile.cpu_cores >= 1
        True
    """
    return HardwareInspector().inspect()
