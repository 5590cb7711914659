"""Concrete provider adapters and the default adapter registry."""

from typing import Dict

from core.generation.adapters.http_adapter import HttpProviderAdapter
from core.generation.adapters.local_adapter import LocalReconstructionAdapter
from core.generation.adapters.protocols import PROTOCOLS, ProviderProtocol, protocol_for
from core.generation.base_adapter import ProviderAdapter
from core.generation.provider_selector import LOCAL_PROVIDER_ID
from core.reconstruction.engine import ReconstructionEngine


def default_adapters(config=None) -> Dict[str, ProviderAdapter]:
    """One adapter per known provider id, configured from *config*."""
    adapters: Dict[str, ProviderAdapter] = {
        provider_id: HttpProviderAdapter(protocol_for(provider_id, config)) for provider_id in PROTOCOLS
    }
    adapters[LOCAL_PROVIDER_ID] = LocalReconstructionAdapter(ReconstructionEngine.from_config(config))
    return adapters


__all__ = [
    "HttpProviderAdapter",
    "LocalReconstructionAdapter",
    "ProviderProtocol",
    "PROTOCOLS",
    "protocol_for",
    "default_adapters",
]
