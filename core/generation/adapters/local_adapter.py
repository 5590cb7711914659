"""
LocalReconstructionAdapter: the always-available last provider.

Runs :class:`~core.reconstruction.engine.ReconstructionEngine` behind the same
submit/poll/fetch contract as the remote services.  The work happens in
``submit``; the returned handle is already complete.  Unlike remote adapters
it never answers ``None``: a :class:`ReconstructionError` escapes because no
fallback exists after it.
"""
from __future__ import annotations

import logging
from typing import Optional

from core.generation.base_adapter import (
    AttemptContext,
    JobHandle,
    ModelOutput,
    PollStatus,
    ProviderAdapter,
    RawModelAsset,
)
from core.generation.provider_selector import LOCAL_PROVIDER_ID
from core.reconstruction.engine import ReconstructionEngine
from image2mesh.errors import MalformedResponse
from image2mesh.source_image import SourceImage

logger = logging.getLogger(__name__)


class LocalReconstructionAdapter(ProviderAdapter):
    provider_id = LOCAL_PROVIDER_ID

    def __init__(self, engine: Optional[ReconstructionEngine] = None):
        self.engine = engine or ReconstructionEngine()

    async def submit(
        self,
        image: SourceImage,
        credential: Optional[str],
        context: AttemptContext,
    ) -> Optional[JobHandle]:
        context.cancellation.raise_if_cancelled()
        logger.info("Running local reconstruction on %dx%d image", image.width, image.height)
        asset = self.engine.reconstruct(image, context.resources)
        context.cancellation.raise_if_cancelled()
        return JobHandle(self.provider_id, "local", ready_output=ModelOutput(payload=asset))

    async def poll(self, job: JobHandle, context: AttemptContext) -> PollStatus:
        return PollStatus.completed(job.ready_output)

    async def fetch(self, output: ModelOutput, context: AttemptContext) -> Optional[RawModelAsset]:
        if not isinstance(output.payload, RawModelAsset):
            raise MalformedResponse("Local reconstruction produced no model", provider_id=self.provider_id)
        return output.payload

    def get_provider_name(self) -> str:
        return "Enhanced Local Generation"
