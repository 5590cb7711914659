"""
GenerationOrchestrator — sequential provider fallback for one image.

Walks the provider queue in priority order (remote services first, local
reconstruction last), driving each adapter through submit → poll → fetch →
normalize under a per-provider wall-clock timeout.  The first attempt that
yields a model ends the session; every other outcome advances to the next
provider.  Only two things reach the caller: a :class:`NormalizedModel`, or a
single :class:`GenerationExhaustedError` / :class:`GenerationCancelledError`.

Attempts never overlap.  Progress is delivered through a plain callback so the
orchestrator stays independent of any UI framework.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Union

import httpx

from core.generation.adapters import default_adapters
from core.generation.base_adapter import AttemptContext, PollState, ProviderAdapter
from core.generation.cancellation import CancellationToken, ResourceScope
from core.generation.provider_selector import Credentials, Provider, ProviderSelector
from core.normalizer import AssetNormalizer, NormalizedModel
from image2mesh.errors import (
    GenerationCancelledError,
    GenerationError,
    GenerationExhaustedError,
    GenerationTimeoutError,
    MalformedResponse,
    ProviderReportedFailure,
    ReconstructionError,
)
from image2mesh.source_image import SourceImage, load_source_image

logger = logging.getLogger(__name__)

# (attempt_index, provider_id, phase)
_ProgressCB = Optional[Callable[[int, str, str], None]]

DEFAULT_HTTP_TIMEOUT = 60.0


class SessionState(Enum):
    IDLE = "idle"
    SELECTING = "selecting"
    ATTEMPTING = "attempting"
    SUCCEEDED = "succeeded"
    EXHAUSTED = "exhausted"
    CANCELLED = "cancelled"


class AttemptStatus(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (AttemptStatus.PENDING, AttemptStatus.RUNNING)


@dataclass
class GenerationAttempt:
    """One provider's bounded try.  Terminal once resolved; never resumed."""

    index: int
    provider: Provider
    status: AttemptStatus = AttemptStatus.PENDING
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    failure: Optional[GenerationError] = None
    resources: Optional[ResourceScope] = None

    @property
    def duration_seconds(self) -> float:
        if self.started_at is None or self.finished_at is None:
            return 0.0
        return self.finished_at - self.started_at

    def describe(self) -> str:
        reason = f" ({self.failure})" if self.failure else ""
        return f"{self.provider.id}: {self.status.value}{reason}"


@dataclass(frozen=True)
class Success:
    model: NormalizedModel


@dataclass(frozen=True)
class Failure:
    status: AttemptStatus
    error: Optional[GenerationError] = None


AttemptOutcome = Union[Success, Failure]


@dataclass
class GenerationSession:
    """State of one ``generate`` call; mutated only by the orchestrator."""

    source_image: SourceImage
    provider_queue: List[Provider]
    cancellation_token: CancellationToken
    state: SessionState = SessionState.IDLE
    active_index: int = 0
    attempts: List[GenerationAttempt] = field(default_factory=list)
    result: Optional[NormalizedModel] = None

    @property
    def is_active(self) -> bool:
        return self.state in (SessionState.SELECTING, SessionState.ATTEMPTING)

    def running_attempts(self) -> List[GenerationAttempt]:
        return [a for a in self.attempts if a.status is AttemptStatus.RUNNING]

    def statuses(self) -> List[tuple]:
        return [(a.provider.id, a.status.value) for a in self.attempts]


class GenerationOrchestrator:
    """Drives provider adapters in order with timeouts, cancellation and fallback.

    Progress is reported through ``on_progress(attempt_index, provider_id,
    phase)`` where *phase* is one of ``selecting``, ``skipped``,
    ``submitting``, ``polling``, ``fetching``, ``normalizing``,
    ``succeeded``, ``failed``, ``timed_out`` or ``cancelled``.
    """

    def __init__(
        self,
        config=None,
        adapters: Optional[Dict[str, ProviderAdapter]] = None,
        normalizer: Optional[AssetNormalizer] = None,
        client_factory: Optional[Callable[[], httpx.AsyncClient]] = None,
    ):
        """Initialise the orchestrator.

        Args:
            config: Application config object (supports ``config.get(key, default)``).
                    May be ``None`` when not required.
            adapters: Provider id → adapter.  Defaults to the built-in registry.
            normalizer: Post-processor for produced assets.
            client_factory: Builds the session's ``httpx.AsyncClient``.
        """
        self.config = config
        self.adapters = adapters if adapters is not None else default_adapters(config)
        self.normalizer = normalizer or AssetNormalizer.from_config(config)
        self._client_factory = client_factory or self._default_client
        self.session: Optional[GenerationSession] = None
        self._active_token: Optional[CancellationToken] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def generate(
        self,
        image: Union[SourceImage, bytes, str, Path],
        provider_queue: Optional[Iterable[Provider]] = None,
        credentials: Optional[Credentials] = None,
        cancellation_token: Optional[CancellationToken] = None,
        on_progress: _ProgressCB = None,
    ) -> NormalizedModel:
        """Produce a normalized model for *image*, falling back through the queue.

        Args:
            image: A :class:`SourceImage`, encoded bytes, a path or an HTTP(S) URL.
            provider_queue: Providers to try.  Local reconstruction is moved
                to (or appended at) the end.  ``None`` builds the default queue
                from config.
            credentials: API keys for this call only.
            cancellation_token: Token the caller may fire to abort the session.
            on_progress: Called with ``(attempt_index, provider_id, phase)``.

        Returns:
            The first successful :class:`NormalizedModel`.

        Raises:
            GenerationExhaustedError: Local reconstruction failed after every
                remote provider did.
            GenerationCancelledError: The session was cancelled.
        """
        if self._active_token is not None:
            raise RuntimeError("A generation session is already running on this orchestrator")

        token = cancellation_token or CancellationToken()
        self._active_token = token
        try:
            source = await self._resolve_image(image, token)
            queue = self._prepare_queue(provider_queue)
            credentials = credentials or Credentials()
            session = GenerationSession(source_image=source, provider_queue=queue, cancellation_token=token)
            self.session = session

            logger.info("Generation session started: %s", [p.id for p in queue])
            async with self._client_factory() as client:
                try:
                    return await self._run(session, credentials, client, on_progress)
                except (GenerationCancelledError, asyncio.CancelledError):
                    session.state = SessionState.CANCELLED
                    logger.info("Generation session cancelled")
                    raise
        finally:
            self._active_token = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        """Cancel the active session; in-flight network calls are aborted."""
        if self._active_token is not None:
            self._active_token.cancel(reason)
        elif self.session is not None:
            self.session.cancellation_token.cancel(reason)

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    async def _run(
        self,
        session: GenerationSession,
        credentials: Credentials,
        client: httpx.AsyncClient,
        on_progress: _ProgressCB,
    ) -> NormalizedModel:
        token = session.cancellation_token
        while session.active_index < len(session.provider_queue):
            token.raise_if_cancelled()
            session.state = SessionState.SELECTING
            index = session.active_index
            provider = session.provider_queue[index]
            attempt = GenerationAttempt(index=index, provider=provider)
            session.attempts.append(attempt)
            self._emit(on_progress, index, provider.id, "selecting")

            credential = credentials.get_for(provider)
            if provider.requires_credential and not credential and not provider.is_local:
                attempt.status = AttemptStatus.SKIPPED
                logger.info("Skipping %s: no API key configured", provider.id)
                self._emit(on_progress, index, provider.id, "skipped")
                session.active_index += 1
                continue

            outcome = await self._attempt(session, attempt, credential, client, on_progress)
            if isinstance(outcome, Success):
                session.state = SessionState.SUCCEEDED
                session.result = outcome.model
                logger.info(
                    "%s succeeded in %.1fs",
                    provider.id,
                    attempt.duration_seconds,
                )
                return outcome.model

            logger.warning("%s %s: %s", provider.id, outcome.status.value, outcome.error)
            if isinstance(outcome.error, ReconstructionError):
                break
            session.active_index += 1

        session.state = SessionState.EXHAUSTED
        last = session.attempts[-1].failure if session.attempts else None
        raise self._build_exhausted_error(session) from last

    async def _attempt(
        self,
        session: GenerationSession,
        attempt: GenerationAttempt,
        credential: Optional[str],
        client: httpx.AsyncClient,
        on_progress: _ProgressCB,
    ) -> AttemptOutcome:
        provider = attempt.provider
        scope = ResourceScope(f"{provider.id}#{attempt.index}")
        context = AttemptContext(
            cancellation=session.cancellation_token,
            resources=scope,
            http=client,
            credential=credential,
        )
        self._begin(session, attempt, scope)

        try:
            adapter = self._get_adapter(provider)
            operation = self._drive(session, attempt, adapter, context, on_progress)
            if provider.timeout_seconds:
                model = await asyncio.wait_for(operation, timeout=provider.timeout_seconds)
            else:
                model = await operation
        except asyncio.TimeoutError as exc:
            # GenerationTimeoutError is itself a TimeoutError; keep the adapter's own.
            error = exc if isinstance(exc, GenerationError) else GenerationTimeoutError(
                f"{provider.id} exceeded {provider.timeout_seconds or 0:.0f}s",
                provider_id=provider.id,
            )
            return self._finish(attempt, AttemptStatus.TIMED_OUT, on_progress, error)
        except (GenerationCancelledError, asyncio.CancelledError):
            self._finish(attempt, AttemptStatus.CANCELLED, on_progress)
            raise
        except GenerationError as exc:
            return self._finish(attempt, AttemptStatus.FAILED, on_progress, exc)
        except Exception as exc:
            logger.exception("Unexpected error during %s attempt", provider.id)
            error_cls = ReconstructionError if provider.is_local else ProviderReportedFailure
            error = error_cls(f"{provider.id} raised {type(exc).__name__}: {exc}", provider_id=provider.id)
            error.__cause__ = exc
            return self._finish(attempt, AttemptStatus.FAILED, on_progress, error)
        finally:
            scope.release_all()

        self._finish(attempt, AttemptStatus.SUCCEEDED, on_progress)
        return Success(model)

    async def _drive(
        self,
        session: GenerationSession,
        attempt: GenerationAttempt,
        adapter: ProviderAdapter,
        context: AttemptContext,
        on_progress: _ProgressCB,
    ) -> NormalizedModel:
        """submit → poll until terminal → fetch → normalize."""
        provider = attempt.provider
        token = context.cancellation
        index = attempt.index

        self._emit(on_progress, index, provider.id, "submitting")
        job = await adapter.submit(session.source_image, context.credential, context)
        token.raise_if_cancelled()
        if job is None:
            raise context.failure or ProviderReportedFailure(
                f"{provider.id} could not start a job", provider_id=provider.id
            )

        poll_index = 0
        while True:
            if not job.is_ready:
                await token.sleep(provider.poll_schedule.interval(poll_index))
                self._emit(on_progress, index, provider.id, "polling")
            status = await adapter.poll(job, context)
            token.raise_if_cancelled()
            if status.state is PollState.COMPLETED:
                break
            if status.state is PollState.FAILED:
                raise context.failure or ProviderReportedFailure(status.reason, provider_id=provider.id)
            poll_index += 1

        self._emit(on_progress, index, provider.id, "fetching")
        asset = await adapter.fetch(status.output, context)
        token.raise_if_cancelled()
        if asset is None:
            raise context.failure or MalformedResponse(
                f"{provider.id} returned no usable model", provider_id=provider.id
            )

        self._emit(on_progress, index, provider.id, "normalizing")
        return self.normalizer.normalize(asset)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get_adapter(self, provider: Provider) -> ProviderAdapter:
        """Look up the adapter serving *provider*."""
        try:
            return self.adapters[provider.id]
        except KeyError:
            raise ProviderReportedFailure(f"No adapter registered for {provider.id}", provider_id=provider.id)

    def _begin(self, session: GenerationSession, attempt: GenerationAttempt, scope: ResourceScope) -> None:
        running = session.running_attempts()
        if running:
            raise RuntimeError(f"Attempt for {running[0].provider.id} is still running")
        session.state = SessionState.ATTEMPTING
        attempt.status = AttemptStatus.RUNNING
        attempt.started_at = time.monotonic()
        attempt.resources = scope

    def _finish(
        self,
        attempt: GenerationAttempt,
        status: AttemptStatus,
        on_progress: _ProgressCB,
        error: Optional[GenerationError] = None,
    ) -> Failure:
        attempt.status = status
        attempt.failure = error
        attempt.finished_at = time.monotonic()
        self._emit(on_progress, attempt.index, attempt.provider.id, status.value)
        return Failure(status=status, error=error)

    def _prepare_queue(self, provider_queue: Optional[Iterable[Provider]]) -> List[Provider]:
        """Order by priority and pin local reconstruction to the end."""
        if provider_queue is None:
            return ProviderSelector.build_queue(self.config)
        queue = sorted(provider_queue, key=lambda p: p.priority)
        local = [p for p in queue if p.is_local]
        queue = [p for p in queue if not p.is_local]
        queue.append(local[0] if local else ProviderSelector.local_provider())
        return queue

    async def _resolve_image(self, image, token: CancellationToken) -> SourceImage:
        # Undecodable content is left to each attempt to reject.
        if isinstance(image, SourceImage):
            return image
        if isinstance(image, (bytes, bytearray)):
            return SourceImage.from_bytes(bytes(image), strict=False)
        return await token.guard(load_source_image(str(image), strict=False))

    def _default_client(self) -> httpx.AsyncClient:
        timeout = DEFAULT_HTTP_TIMEOUT
        if self.config is not None:
            timeout = float(self.config.get("http.timeout_seconds", DEFAULT_HTTP_TIMEOUT))
        return httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    def _emit(self, cb: _ProgressCB, index: int, provider_id: str, phase: str) -> None:
        """Fire progress callback and log at DEBUG level."""
        if cb:
            cb(index, provider_id, phase)
        logger.debug("[%d] %s: %s", index, provider_id, phase)

    def _build_exhausted_error(self, session: GenerationSession) -> GenerationExhaustedError:
        """Build the single aggregate failure naming every attempt."""
        parts = [attempt.describe() for attempt in session.attempts]
        message = (
            "All providers failed:\n" + "\n".join(parts)
            if parts
            else "No provider could be attempted"
        )
        logger.error(message)
        return GenerationExhaustedError(message, attempts=list(session.attempts))
