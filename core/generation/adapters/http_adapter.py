"""
HttpProviderAdapter: table-driven submit/poll/fetch over httpx.

One class serves every remote provider; the differences live in
:class:`~core.generation.adapters.protocols.ProviderProtocol`.  Every network
error, HTTP error status and undersized or malformed payload is classified,
recorded on the :class:`AttemptContext` and turned into ``None`` or a
``failed`` status; nothing escapes to the orchestrator as an exception.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Tuple

import httpx

from core.generation.adapters.protocols import ProviderProtocol
from core.generation.base_adapter import (
    AttemptContext,
    JobHandle,
    ModelOutput,
    PollStatus,
    ProviderAdapter,
    RawModelAsset,
)
from image2mesh.errors import (
    AuthError,
    GenerationCancelledError,
    GenerationError,
    MalformedResponse,
    ProviderReportedFailure,
    TransientNetworkError,
    ValidationError,
)
from image2mesh.source_image import SourceImage

logger = logging.getLogger(__name__)

_AUTH_STATUSES = (401, 403)


def _dig(body: Any, path: Tuple[str, ...]) -> Optional[Any]:
    """Follow *path* through nested dicts, ``None`` if any key is missing."""
    value = body
    for key in path:
        if not isinstance(value, dict) or key not in value:
            return None
        value = value[key]
    return value


class HttpProviderAdapter(ProviderAdapter):
    """Adapter for one remote provider described by a :class:`ProviderProtocol`."""

    def __init__(self, protocol: ProviderProtocol):
        self.protocol = protocol
        self.provider_id = protocol.provider_id

    # ------------------------------------------------------------------
    # ProviderAdapter contract
    # ------------------------------------------------------------------

    async def submit(
        self,
        image: SourceImage,
        credential: Optional[str],
        context: AttemptContext,
    ) -> Optional[JobHandle]:
        proto = self.protocol
        if image.size_bytes < proto.min_image_bytes:
            self._fail(
                context,
                ValidationError(
                    f"Image too small for {self.provider_id}: {image.size_bytes} bytes",
                    provider_id=self.provider_id,
                ),
            )
            return None
        if not image.is_readable:
            self._fail(
                context,
                ValidationError(f"Image data unreadable; not sent to {self.provider_id}", provider_id=self.provider_id),
            )
            return None

        files = {proto.image_field: (image.filename, image.data, image.mime_type)}
        try:
            response = await self._request(
                context,
                "POST",
                proto.submit_url,
                headers=self._headers(credential),
                data=dict(proto.form_fields),
                files=files,
            )
            self._raise_for_status(response)

            if proto.synchronous:
                logger.info("%s returned %d bytes synchronously", self.provider_id, len(response.content))
                return JobHandle(self.provider_id, "inline", ready_output=ModelOutput(payload=response.content))

            body = self._json(response)
            if proto.immediate_output_url_path:
                url = _dig(body, proto.immediate_output_url_path)
                if url and str(body.get(proto.status_field, "")).lower() not in proto.queued_statuses:
                    return JobHandle(self.provider_id, str(body.get(proto.job_id_field, "inline")), ModelOutput(url=url))

            job_id = body.get(proto.job_id_field) if proto.job_id_field else None
            if not job_id:
                raise MalformedResponse(
                    f"No '{proto.job_id_field}' in {self.provider_id} submit response",
                    provider_id=self.provider_id,
                )
            logger.info("%s job submitted: %s", self.provider_id, job_id)
            return JobHandle(self.provider_id, str(job_id))
        except GenerationCancelledError:
            logger.info("%s submit aborted by cancellation", self.provider_id)
            return None
        except GenerationError as exc:
            self._fail(context, exc)
            return None

    async def poll(self, job: JobHandle, context: AttemptContext) -> PollStatus:
        if job.is_ready:
            return PollStatus.completed(job.ready_output)

        proto = self.protocol
        try:
            response = await self._request(
                context,
                "GET",
                proto.status_url(job.job_id),
                headers=self._headers(context.credential),
            )
        except GenerationCancelledError:
            return PollStatus.failed("cancelled")
        except TransientNetworkError as exc:
            logger.warning("%s status check failed, will retry: %s", self.provider_id, exc)
            return PollStatus.running(str(exc))

        if response.status_code == 429 or response.status_code >= 500:
            logger.warning("%s status check returned HTTP %d, will retry", self.provider_id, response.status_code)
            return PollStatus.running(f"HTTP {response.status_code}")

        try:
            self._raise_for_status(response)
            body = self._json(response)
        except GenerationError as exc:
            self._fail(context, exc)
            return PollStatus.failed(str(exc))

        status = str(body.get(proto.status_field, "")).lower()
        if status in proto.completed_statuses:
            url = _dig(body, proto.output_url_path)
            if not url:
                error = MalformedResponse(
                    f"{self.provider_id} reported '{status}' without a model URL",
                    provider_id=self.provider_id,
                )
                self._fail(context, error)
                return PollStatus.failed(str(error))
            return PollStatus.completed(ModelOutput(url=str(url)))

        if status in proto.failed_statuses:
            reason = body.get("error") or body.get("message") or status
            error = ProviderReportedFailure(f"{self.provider_id} job failed: {reason}", provider_id=self.provider_id)
            self._fail(context, error)
            return PollStatus.failed(str(error))

        if status in proto.queued_statuses:
            return PollStatus.queued()
        return PollStatus.running()

    async def fetch(self, output: ModelOutput, context: AttemptContext) -> Optional[RawModelAsset]:
        proto = self.protocol
        try:
            if output.payload is not None:
                data = output.payload
            elif output.url:
                response = await self._request(context, "GET", output.url)
                self._raise_for_status(response)
                data = response.content
            else:
                raise MalformedResponse(f"{self.provider_id} gave no model location", provider_id=self.provider_id)
        except GenerationCancelledError:
            return None
        except GenerationError as exc:
            self._fail(context, exc)
            return None

        context.resources.track(f"{self.provider_id}-model-bytes", data)
        if len(data) < proto.min_model_bytes:
            self._fail(
                context,
                MalformedResponse(
                    f"{self.provider_id} returned {len(data)} bytes (minimum {proto.min_model_bytes})",
                    provider_id=self.provider_id,
                ),
            )
            return None

        logger.info("%s model downloaded: %d bytes", self.provider_id, len(data))
        return RawModelAsset(data=bytes(data), format=proto.model_format, source_provider_id=self.provider_id)

    def get_provider_name(self) -> str:
        return f"{self.provider_id} (HTTP)"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _request(self, context: AttemptContext, method: str, url: str, **kwargs) -> httpx.Response:
        """Issue one request through the cancellation guard.

        Raises:
            GenerationCancelledError: Cancellation fired before or during the call.
            TransientNetworkError: Connection-level failure.
        """
        if context.http is None:
            raise TransientNetworkError("No HTTP client for this attempt", provider_id=self.provider_id)
        try:
            response = await context.cancellation.guard(context.http.request(method, url, **kwargs))
        except httpx.HTTPError as exc:
            raise TransientNetworkError(f"{method} {url} failed: {exc}", provider_id=self.provider_id) from exc
        context.cancellation.raise_if_cancelled()
        return response

    def _headers(self, credential: Optional[str]) -> Dict[str, str]:
        headers = {} if self.protocol.synchronous else {"Accept": "application/json"}
        if credential:
            headers["Authorization"] = f"{self.protocol.auth_scheme} {credential}"
        return headers

    def _raise_for_status(self, response: httpx.Response) -> None:
        code = response.status_code
        if code < 400:
            return
        if code in _AUTH_STATUSES:
            raise AuthError(f"{self.provider_id} rejected credentials (HTTP {code})", provider_id=self.provider_id)
        if code == 429 or code >= 500:
            raise TransientNetworkError(f"{self.provider_id} unavailable (HTTP {code})", provider_id=self.provider_id)
        raise ProviderReportedFailure(
            f"{self.provider_id} rejected request (HTTP {code}): {response.text[:200]}",
            provider_id=self.provider_id,
        )

    def _json(self, response: httpx.Response) -> dict:
        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponse(f"{self.provider_id} returned non-JSON body", provider_id=self.provider_id) from exc
        if not isinstance(body, dict):
            raise MalformedResponse(f"{self.provider_id} returned unexpected JSON", provider_id=self.provider_id)
        return body

    def _fail(self, context: AttemptContext, error: GenerationError) -> None:
        logger.warning("%s: %s", self.provider_id, error)
        context.record_failure(error)

