"""llama.cpp runtime builds: archives and provisioning."""

from .archives import LLAMA_CPP_BUILD, extract_archive, runtime_archive_names
from .provisioner import RuntimeProvisioner, find_binary

__all__ = [
    "LLAMA_CPP_BUILD",
    "extract_archive",
    "runtime_archive_names",
    "RuntimeProvisioner",
    "find_binary",
]
