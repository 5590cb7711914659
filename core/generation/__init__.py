"""
Provider-fallback generation subsystem.

Provides:
- Provider catalogue, credentials and queue construction
- Cooperative cancellation and per-attempt resource tracking
- The submit/poll/fetch adapter contract

The orchestrator and concrete adapters live in
``core.generation.orchestrator`` and ``core.generation.adapters``.
"""

from core.generation.cancellation import CancellationToken, ResourceScope
from core.generation.provider_selector import (
    Credentials,
    PollSchedule,
    Provider,
    ProviderId,
    ProviderSelector,
    LOCAL_PROVIDER_ID,
)
from core.generation.base_adapter import (
    AttemptContext,
    JobHandle,
    ModelOutput,
    PollState,
    PollStatus,
    ProviderAdapter,
    RawModelAsset,
)

__all__ = [
    "CancellationToken",
    "ResourceScope",
    "Credentials",
    "PollSchedule",
    "Provider",
    "ProviderId",
    "ProviderSelector",
    "LOCAL_PROVIDER_ID",
    "AttemptContext",
    "JobHandle",
    "ModelOutput",
    "PollState",
    "PollStatus",
    "ProviderAdapter",
    "RawModelAsset",
]
