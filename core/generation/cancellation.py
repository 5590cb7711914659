"""
Cooperative cancellation and per-attempt resource tracking.

Every suspension point in a generation session (HTTP request, poll delay)
goes through :class:`CancellationToken` so an external ``cancel()`` wins the
race against whatever is in flight.  :class:`ResourceScope` collects the
intermediate buffers one attempt allocates so the orchestrator can release
them before the next attempt starts.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TypeVar

from image2mesh.errors import GenerationCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal shared by a session and its adapters."""

    def __init__(self):
        self._event = asyncio.Event()
        self._reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str:
        return self._reason

    def cancel(self, reason: str = "cancelled by caller") -> None:
        if not self._event.is_set():
            self._reason = reason
            logger.info("Cancellation requested: %s", reason)
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelledError(self._reason or "Operation was cancelled")

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await *awaitable* unless cancellation fires first.

        The losing side is cancelled, so an aborted HTTP request is torn down
        rather than left running in the background.

        Raises:
            GenerationCancelledError: If the token fires before completion.
        """
        self.raise_if_cancelled()
        operation = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({operation, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            operation.cancel()
            raise
        finally:
            waiter.cancel()
        if operation in done and not self._event.is_set():
            return operation.result()
        operation.cancel()
        await asyncio.wait({operation})
        if not operation.cancelled():
            # Result arrived together with the cancel; discard it.
            operation.exception()
        raise GenerationCancelledError(self._reason or "Operation was cancelled")

    async def sleep(self, delay: float) -> None:
        """Sleep for *delay* seconds, waking early (and raising) on cancel."""
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise GenerationCancelledError(self._reason or "Operation was cancelled")


class ResourceScope:
    """Registry of buffers allocated during one attempt.

    ``track`` records an object with an optional release callable; ``release_all``
    runs the callables in reverse order and forgets the objects.
    """

    def __init__(self, name: str = "attempt"):
        self.name = name
        self._entries: List[Tuple[str, Any, Optional[Callable[[], Any]]]] = []
        self.allocated = 0
        self.released = 0

    def __len__(self) -> int:
        return len(self._entries)

    def track(self, label: str, obj: T, release: Optional[Callable[[], Any]] = None) -> T:
        self._entries.append((label, obj, release))
        self.allocated += 1
        return obj

    def release_all(self) -> None:
        while self._entries:
            label, _obj, release = self._entries.pop()
            if release is not None:
                try:
                    release()
                except Exception as exc:
                    logger.warning("Releasing %s in %s failed: %s", label, self.name, exc)
            self.released += 1
        logger.debug("%s: released %d/%d buffers", self.name, self.released, self.allocated)
