"""
enclaveplan - Plan engine for service enclaves

Interprets scripts into plans of instructions, validates the whole plan
against the enclave's state, and executes it through a container backend.
"""

__version__ = "0.1.0"
__author__ = "enclaveplan contributors"


__all__ = [
    "EnclaveConfig",
    "EnclavePlanEngine",
    "ServiceNetwork",
    "load_config",
    "get_enclaveplan_home",
]

from .config import EnclaveConfig, get_enclaveplan_home, load_config
from .engine import EnclavePlanEngine
from .network import ServiceNetwork
