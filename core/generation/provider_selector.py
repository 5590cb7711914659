"""
Provider catalogue and queue construction.

Describes the image-to-3D services the product knows about, their default
priority and timing policy, and builds the ordered queue a generation session
walks.  Credentials are resolved per call from an explicit
:class:`Credentials` object rather than from process-wide state.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)


class ProviderId(str, Enum):
    """Known generation providers."""

    HUGGINGFACE = "huggingface"
    RODIN = "rodin"
    CSM = "csm"
    MESHY = "meshy"
    LOCAL = "local"


LOCAL_PROVIDER_ID = ProviderId.LOCAL.value


@dataclass(frozen=True)
class PollSchedule:
    """Linearly increasing, capped delay between status checks."""

    initial_seconds: float = 3.0
    step_seconds: float = 0.5
    max_seconds: float = 5.0

    def interval(self, poll_index: int) -> float:
        return min(self.initial_seconds + poll_index * self.step_seconds, self.max_seconds)


@dataclass(frozen=True)
class Provider:
    """One entry of a provider queue.  Never mutated by the orchestrator."""

    id: str
    priority: int
    requires_credential: bool = False
    credential: Optional[str] = field(default=None, repr=False)
    timeout_seconds: Optional[float] = 120.0
    poll_schedule: PollSchedule = field(default_factory=PollSchedule)

    @property
    def is_local(self) -> bool:
        return self.id == LOCAL_PROVIDER_ID


class Credentials:
    """API keys for one ``generate`` call, keyed by provider id."""

    ENV_VARS = {
        ProviderId.HUGGINGFACE.value: "HF_TOKEN",
        ProviderId.RODIN.value: "RODIN_API_KEY",
        ProviderId.CSM.value: "CSM_API_KEY",
        ProviderId.MESHY.value: "MESHY_API_KEY",
    }

    def __init__(self, keys: Optional[Mapping[str, str]] = None):
        self._keys: Dict[str, str] = {}
        for provider_id, key in (keys or {}).items():
            self.set(provider_id, key)

    def __repr__(self) -> str:
        return f"Credentials(providers={sorted(self._keys)})"

    def set(self, provider_id: str, key: Optional[str]) -> None:
        provider_id = getattr(provider_id, "value", provider_id)
        if key and key.strip():
            self._keys[provider_id] = key.strip()
        else:
            self._keys.pop(provider_id, None)

    def get(self, provider_id: str) -> Optional[str]:
        return self._keys.get(provider_id)

    def has(self, provider_id: str) -> bool:
        return provider_id in self._keys

    def available_providers(self) -> List[str]:
        return sorted(self._keys)

    @classmethod
    def from_sources(
        cls,
        explicit: Optional[Mapping[str, str]] = None,
        config=None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "Credentials":
        """Merge keys: explicit > environment > config file."""
        environ = os.environ if environ is None else environ
        explicit = explicit or {}
        creds = cls()
        for provider_id, env_var in cls.ENV_VARS.items():
            from_config = config.get(f"credentials.{provider_id}", "") if config is not None else ""
            creds.set(provider_id, explicit.get(provider_id) or environ.get(env_var) or from_config)
        return creds

    def get_for(self, provider: "Provider") -> Optional[str]:
        """Credential for *provider*: its own field first, then this mapping."""
        return provider.credential or self.get(provider.id)


# Cost tier drives the wall-clock budget: free endpoints give up sooner.
_CATALOGUE: Dict[str, Provider] = {
    ProviderId.HUGGINGFACE.value: Provider(
        id=ProviderId.HUGGINGFACE.value,
        priority=1,
        timeout_seconds=60.0,
    ),
    ProviderId.RODIN.value: Provider(
        id=ProviderId.RODIN.value,
        priority=2,
        timeout_seconds=120.0,
    ),
    ProviderId.CSM.value: Provider(
        id=ProviderId.CSM.value,
        priority=3,
        timeout_seconds=90.0,
        poll_schedule=PollSchedule(initial_seconds=4.0, step_seconds=0.0, max_seconds=4.0),
    ),
    ProviderId.MESHY.value: Provider(
        id=ProviderId.MESHY.value,
        priority=4,
        requires_credential=True,
        timeout_seconds=180.0,
        poll_schedule=PollSchedule(initial_seconds=2.0, step_seconds=0.5, max_seconds=6.0),
    ),
    LOCAL_PROVIDER_ID: Provider(
        id=LOCAL_PROVIDER_ID,
        priority=99,
        timeout_seconds=None,
    ),
}

_REQUIREMENTS = {
    ProviderId.HUGGINGFACE.value: {
        "name": "HuggingFace Inference",
        "cost_tier": "free",
        "requires_api_key": False,
        "estimated_time_seconds": 30,
        "quality": "Good",
        "description": "Free public inference endpoint; rate limited",
    },
    ProviderId.RODIN.value: {
        "name": "Hyper3D Rodin",
        "cost_tier": "free",
        "requires_api_key": False,
        "estimated_time_seconds": 90,
        "quality": "High",
        "description": "Advanced 3D generation with detailed geometry (API key optional)",
    },
    ProviderId.CSM.value: {
        "name": "CSM AI",
        "cost_tier": "free",
        "requires_api_key": False,
        "estimated_time_seconds": 60,
        "quality": "Good",
        "description": "Fast and reliable 3D model creation (API key optional)",
    },
    ProviderId.MESHY.value: {
        "name": "Meshy AI",
        "cost_tier": "paid",
        "requires_api_key": True,
        "estimated_time_seconds": 120,
        "quality": "Highest",
        "description": "Premium service with high-quality textures (requires API key)",
    },
    LOCAL_PROVIDER_ID: {
        "name": "Enhanced Local Generation",
        "cost_tier": "local",
        "requires_api_key": False,
        "estimated_time_seconds": 5,
        "quality": "Basic",
        "description": "Displacement-mapped relief built from image pixels; always available",
    },
}


class ProviderSelector:
    """Builds ordered provider queues from the catalogue and configuration."""

    @staticmethod
    def default_provider(provider_id: str) -> Provider:
        return _CATALOGUE[ProviderId(provider_id).value]

    @staticmethod
    def local_provider() -> Provider:
        return _CATALOGUE[LOCAL_PROVIDER_ID]

    @staticmethod
    def build_queue(
        config=None,
        preferred: Optional[Iterable[str]] = None,
        local_only: bool = False,
    ) -> List[Provider]:
        """Build the provider queue, local reconstruction last.

        Args:
            config: Application config (supports ``config.get(key, default)``);
                may disable providers or override timing.
            preferred: Provider ids to restrict and order the queue by.  When
                ``None`` every enabled catalogue provider is used by priority.
            local_only: Skip every remote provider.

        Returns:
            Ordered list of :class:`Provider` entries.
        """
        if local_only:
            return [ProviderSelector.local_provider()]

        if preferred is not None:
            ids = [ProviderId(p).value for p in preferred]
            providers = [ProviderSelector._configured(_CATALOGUE[pid], config) for pid in ids]
            providers = [replace(p, priority=i + 1) for i, p in enumerate(providers) if not p.is_local]
        else:
            providers = [
                ProviderSelector._configured(p, config)
                for p in _CATALOGUE.values()
                if not p.is_local and ProviderSelector._enabled(p.id, config)
            ]
            providers.sort(key=lambda p: p.priority)

        providers.append(ProviderSelector._configured(ProviderSelector.local_provider(), config))
        logger.info("Provider queue: %s", [p.id for p in providers])
        return providers

    @staticmethod
    def _enabled(provider_id: str, config) -> bool:
        if config is None:
            return True
        return bool(config.get(f"providers.{provider_id}.enabled", True))

    @staticmethod
    def _configured(provider: Provider, config) -> Provider:
        """Apply ``providers.<id>.*`` overrides from config."""
        if config is None:
            return provider
        prefix = f"providers.{provider.id}"
        schedule = provider.poll_schedule
        return replace(
            provider,
            priority=int(config.get(f"{prefix}.priority", provider.priority)),
            timeout_seconds=config.get(f"{prefix}.timeout_seconds", provider.timeout_seconds),
            poll_schedule=PollSchedule(
                initial_seconds=float(config.get(f"{prefix}.poll_initial_seconds", schedule.initial_seconds)),
                step_seconds=float(config.get(f"{prefix}.poll_step_seconds", schedule.step_seconds)),
                max_seconds=float(config.get(f"{prefix}.poll_max_seconds", schedule.max_seconds)),
            ),
        )

    @staticmethod
    def get_provider_requirements(provider_id: str) -> dict:
        """Get display metadata for a provider."""
        return _REQUIREMENTS.get(provider_id, {})
