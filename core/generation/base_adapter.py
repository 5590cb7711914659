"""
Abstract base class for every generation provider adapter.

Each remote image-to-3D service (and the local reconstruction fallback)
inherits from ``ProviderAdapter`` and implements :meth:`submit`,
:meth:`poll` and :meth:`fetch`.  The orchestrator drives polling cadence,
timeouts and cancellation; adapters perform exactly one step per call and are
stateless, so everything an attempt owns lives on :class:`AttemptContext`.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

import httpx

from core.generation.cancellation import CancellationToken, ResourceScope
from image2mesh.errors import GenerationError
from image2mesh.source_image import SourceImage

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelOutput:
    """Where a finished model lives: a download URL or bytes already in hand."""

    url: Optional[str] = None
    payload: Optional[Any] = None


@dataclass(frozen=True)
class JobHandle:
    """Opaque reference to a submitted job."""

    provider_id: str
    job_id: str
    ready_output: Optional[ModelOutput] = None

    @property
    def is_ready(self) -> bool:
        return self.ready_output is not None


class PollState(Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class PollStatus:
    """Result of a single status check."""

    state: PollState
    output: Optional[ModelOutput] = None
    reason: str = ""

    @property
    def is_terminal(self) -> bool:
        return self.state in (PollState.COMPLETED, PollState.FAILED)

    @classmethod
    def queued(cls) -> "PollStatus":
        return cls(PollState.QUEUED)

    @classmethod
    def running(cls, reason: str = "") -> "PollStatus":
        return cls(PollState.RUNNING, reason=reason)

    @classmethod
    def completed(cls, output: ModelOutput) -> "PollStatus":
        return cls(PollState.COMPLETED, output=output)

    @classmethod
    def failed(cls, reason: str) -> "PollStatus":
        return cls(PollState.FAILED, reason=reason)


@dataclass
class RawModelAsset:
    """Binary 3D model as produced by a provider or the local engine."""

    data: bytes
    format: str
    source_provider_id: str
    material_maps: Dict[str, Any] = field(default_factory=dict)

    @property
    def size_bytes(self) -> int:
        return len(self.data)


@dataclass
class AttemptContext:
    """Everything one attempt owns: HTTP client, cancellation, buffers, failure.

    Adapters normalise errors to ``None``/``failed`` results; the classified
    error is recorded here so the attempt log can say why.
    """

    cancellation: CancellationToken
    resources: ResourceScope
    http: Optional[httpx.AsyncClient] = None
    credential: Optional[str] = field(default=None, repr=False)
    failure: Optional[GenerationError] = None

    def record_failure(self, error: GenerationError) -> None:
        self.failure = error


class ProviderAdapter(ABC):
    """Uniform submit/poll/fetch contract over one provider's wire protocol."""

    #: Matches :attr:`Provider.id` of the queue entry this adapter serves.
    provider_id: str = ""

    @abstractmethod
    async def submit(
        self,
        image: SourceImage,
        credential: Optional[str],
        context: AttemptContext,
    ) -> Optional[JobHandle]:
        """Upload *image* and start a job.

        Returns:
            A :class:`JobHandle`, or ``None`` when the provider cannot be
            attempted or the upload failed or was cancelled.
        """

    @abstractmethod
    async def poll(self, job: JobHandle, context: AttemptContext) -> PollStatus:
        """Check job status once."""

    @abstractmethod
    async def fetch(self, output: ModelOutput, context: AttemptContext) -> Optional[RawModelAsset]:
        """Download the finished model; ``None`` for corrupt or undersized payloads."""

    def get_provider_name(self) -> str:
        return self.provider_id
