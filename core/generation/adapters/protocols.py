"""
Wire-protocol descriptions for the remote image-to-3D providers.

Everything that differs between services (endpoints, multipart field names,
job-id and status fields, output-URL path, auth) is data in
:class:`ProviderProtocol`; :class:`HttpProviderAdapter` is the only code that
speaks HTTP.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Dict, FrozenSet, Optional, Tuple

from core.generation.provider_selector import ProviderId

MIN_SOURCE_IMAGE_BYTES = 1000
MIN_MODEL_BYTES = 5000


@dataclass(frozen=True)
class ProviderProtocol:
    """Table entry describing one provider's submit/poll/fetch protocol."""

    provider_id: str
    base_url: str
    submit_path: str
    image_field: str = "image"
    form_fields: Dict[str, str] = field(default_factory=dict)
    job_id_field: Optional[str] = "id"
    status_path: str = "/task/{job_id}"
    status_field: str = "status"
    completed_statuses: FrozenSet[str] = frozenset({"completed"})
    failed_statuses: FrozenSet[str] = frozenset({"failed"})
    queued_statuses: FrozenSet[str] = frozenset({"queued", "pending"})
    output_url_path: Tuple[str, ...] = ("output_url",)
    # Some services answer the submit call with a finished model URL.
    immediate_output_url_path: Optional[Tuple[str, ...]] = None
    # The submit response body is the model itself (no job, no polling).
    synchronous: bool = False
    auth_scheme: str = "Bearer"
    model_format: str = "glb"
    min_image_bytes: int = MIN_SOURCE_IMAGE_BYTES
    min_model_bytes: int = MIN_MODEL_BYTES

    @property
    def submit_url(self) -> str:
        return f"{self.base_url.rstrip('/')}{self.submit_path}"

    def status_url(self, job_id: str) -> str:
        return f"{self.base_url.rstrip('/')}{self.status_path.format(job_id=job_id)}"


HUGGINGFACE_PROTOCOL = ProviderProtocol(
    provider_id=ProviderId.HUGGINGFACE.value,
    base_url="https://api-inference.huggingface.co/models",
    submit_path="/svenhw/SDXLPointGeneration",
    image_field="file",
    job_id_field=None,
    synchronous=True,
)

RODIN_PROTOCOL = ProviderProtocol(
    provider_id=ProviderId.RODIN.value,
    base_url="https://developer.hyper3d.ai/api/v1",
    submit_path="/image-to-3d",
    form_fields={"type": "image_to_3d", "quality": "high", "detail": "high"},
    job_id_field="task_id",
    status_path="/task/{job_id}",
    output_url_path=("result", "model_url"),
)

CSM_PROTOCOL = ProviderProtocol(
    provider_id=ProviderId.CSM.value,
    base_url="https://api.csm.ai/v1",
    submit_path="/image-to-3d",
    form_fields={"workflow": "image_to_3d", "output_format": "glb"},
    job_id_field="task_id",
    status_path="/task/{job_id}",
    queued_statuses=frozenset({"queued", "pending", "processing"}),
    output_url_path=("output_url",),
    immediate_output_url_path=("output_url",),
)

MESHY_PROTOCOL = ProviderProtocol(
    provider_id=ProviderId.MESHY.value,
    base_url="https://api.meshy.ai/v2",
    submit_path="/image-to-3d",
    form_fields={"type": "textured-mesh"},
    job_id_field="id",
    status_path="/image-to-3d/{job_id}",
    completed_statuses=frozenset({"completed", "succeeded"}),
    failed_statuses=frozenset({"failed", "error", "cancelled", "expired"}),
    output_url_path=("output", "glb"),
)

PROTOCOLS: Dict[str, ProviderProtocol] = {
    p.provider_id: p for p in (HUGGINGFACE_PROTOCOL, RODIN_PROTOCOL, CSM_PROTOCOL, MESHY_PROTOCOL)
}


def protocol_for(provider_id: str, config=None) -> ProviderProtocol:
    """Look up a protocol, applying ``providers.<id>.base_url`` from config."""
    protocol = PROTOCOLS[provider_id]
    if config is not None:
        base_url = config.get(f"providers.{provider_id}.base_url")
        if base_url:
            protocol = replace(protocol, base_url=base_url)
    return protocol
