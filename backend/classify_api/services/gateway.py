"""
Classify API Backend — Bounded Inference Gateway
=================================================

What:  Admission-controlled queue in front of the inference backend.
How:   Caps in-flight units of work at `max_concurrent`, queues the excess in
       FIFO order up to `max_queue_size`, rejects overflow immediately, and
       expires queued work that waited longer than `queue_timeout`.
Who:   Built once in the application lifespan; ClassificationService submits
       one unit of work per classify request; the status route reads
       get_status().

Admission (submit):
    in_flight < max_concurrent   → run now
    queued    < max_queue_size   → append to the pending deque
    otherwise                    → raise QueueFullError (no waiting)

Drain (after every completion):
    pop head → caller cancelled?     → discard, next
             → waited > timeout?      → resolve QueueTimeoutError, next
             → otherwise              → run it
    until the deque is empty or every slot is taken.

    Expiry is evaluated lazily, when an item reaches the head. An expired
    item is resolved and dropped before the execute branch is considered, so
    it can never run.

Concurrency model:
    Everything runs on one asyncio event loop. `_in_flight` and `_pending`
    are only mutated inside synchronous sections (submit, _start, the
    finally block of _execute, _drain) that contain no `await`, so no other
    coroutine can interleave between a capacity check and the matching
    mutation. The slot taken in _start is released in a `finally` block that
    covers success, failure and cancellation of the unit of work.

Resolution:
    Each InferenceRequest owns an asyncio.Future. It is resolved exactly once
    with the work's result or exception; `future.done()` guards every
    resolution so a caller that already cancelled is left alone.
"""

import asyncio
import collections
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Deque, Optional, Set

from classify_api.exceptions import (
    QueueFullError,
    QueueTimeoutError,
    ServiceUnavailableError,
)
from classify_api.services.inference_base import InferenceBackend

logger = logging.getLogger(__name__)

Work = Callable[[], Awaitable[Any]]


@dataclass(eq=False)
class InferenceRequest:
    """One unit of work waiting for, or holding, a gateway slot."""

    work: Work
    future: asyncio.Future
    enqueued_at: float
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])


@dataclass
class ServiceStatus:
    """
    Point-in-time snapshot of the inference backend and the queue.

    Derived on demand by InferenceGateway.get_status(); never stored.
    """

    reachable: bool
    model_ready: bool
    in_flight: int
    queued: int
    max_concurrent: int
    max_queue_size: int
    utilization_percent: float
    error: Optional[str] = None

    @property
    def healthy(self) -> bool:
        return self.reachable and self.model_ready


class InferenceGateway:
    """
    Bounded concurrency gateway for calls to the inference backend.

    Args:
        backend:         Availability prober used by get_status()
        max_concurrent:  Max units of work running at once (slots)
        max_queue_size:  Max units of work waiting for a slot
        queue_timeout:   Seconds a unit may wait in the queue before it expires
        clock:           Monotonic time source (injectable for tests)
    """

    def __init__(
        self,
        backend: InferenceBackend,
        max_concurrent: int = 3,
        max_queue_size: int = 10,
        queue_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        if max_queue_size < 0:
            raise ValueError("max_queue_size must not be negative")

        self.backend = backend
        self.max_concurrent = max_concurrent
        self.max_queue_size = max_queue_size
        self.queue_timeout = queue_timeout
        self._clock = clock

        self._in_flight = 0
        self._pending: Deque[InferenceRequest] = collections.deque()
        # Strong references to running tasks; the event loop only keeps weak ones
        self._tasks: Set[asyncio.Task] = set()
        self._closed = False

        logger.info(
            "InferenceGateway initialized (max_concurrent=%d, max_queue_size=%d, queue_timeout=%.0fs)",
            max_concurrent,
            max_queue_size,
            queue_timeout,
        )

    # ── Counters ──────────────────────────────────────────────────────────

    @property
    def in_flight(self) -> int:
        return self._in_flight

    @property
    def queued_count(self) -> int:
        return len(self._pending)

    # ── Admission ─────────────────────────────────────────────────────────

    def submit(self, work: Work, request_id: Optional[str] = None) -> asyncio.Future:
        """
        Admit a unit of work, queue it, or reject it.

        Must be called from the event loop thread. Returns immediately with a
        future that resolves to the work's result (or raises its exception).

        Raises:
            QueueFullError:           every slot is busy and the queue is at capacity
            ServiceUnavailableError:  the gateway has been closed
        """
        if self._closed:
            raise ServiceUnavailableError(
                message="Classification service is shutting down. Please try again later."
            )

        loop = asyncio.get_running_loop()
        item = InferenceRequest(
            work=work,
            future=loop.create_future(),
            enqueued_at=self._clock(),
        )
        if request_id:
            item.request_id = request_id

        if self._in_flight < self.max_concurrent:
            self._start(item)
        elif len(self._pending) < self.max_queue_size:
            self._pending.append(item)
            item.future.add_done_callback(lambda _: self._forget_cancelled(item))
            logger.info(
                "[%s] Request queued. Queue size: %d/%d",
                item.request_id,
                len(self._pending),
                self.max_queue_size,
            )
        else:
            logger.warning(
                "[%s] Request rejected: queue full (%d in flight, %d queued)",
                item.request_id,
                self._in_flight,
                len(self._pending),
            )
            raise QueueFullError(retry_after=int(self.queue_timeout))

        return item.future

    async def run(self, work: Work, request_id: Optional[str] = None) -> Any:
        """Submit `work` and wait for its result."""
        return await self.submit(work, request_id=request_id)

    # ── Execution ─────────────────────────────────────────────────────────

    def _start(self, item: InferenceRequest) -> None:
        self._in_flight += 1
        task = asyncio.get_running_loop().create_task(self._execute(item))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _execute(self, item: InferenceRequest) -> None:
        try:
            result = await item.work()
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as exc:
            if not item.future.done():
                item.future.set_exception(exc)
        else:
            if not item.future.done():
                item.future.set_result(result)
        finally:
            self._in_flight -= 1
            self._drain()

    def _forget_cancelled(self, item: InferenceRequest) -> None:
        # Cancelled waiters free their queue place right away
        if item.future.cancelled() and item in self._pending:
            self._pending.remove(item)
            logger.debug(
                "[%s] Queued request cancelled. Queue size: %d", item.request_id, len(self._pending)
            )

    def _drain(self) -> None:
        while self._pending and self._in_flight < self.max_concurrent:
            item = self._pending.popleft()

            if item.future.done():
                # Caller went away while waiting
                logger.debug("[%s] Dropping cancelled queued request", item.request_id)
                continue

            waited = self._clock() - item.enqueued_at
            if waited > self.queue_timeout:
                logger.warning(
                    "[%s] Request expired after %.1fs in queue",
                    item.request_id,
                    waited,
                )
                item.future.set_exception(QueueTimeoutError(waited_seconds=waited))
                continue

            logger.info(
                "[%s] Processing queued request after %.1fs. Queue size: %d",
                item.request_id,
                waited,
                len(self._pending),
            )
            self._start(item)

    # ── Status ────────────────────────────────────────────────────────────

    async def get_status(self) -> ServiceStatus:
        """
        Probe the backend and snapshot the queue counters.

        One availability round-trip answers both backend fields. Never
        raises: a failing check reports both as False and records the
        message in `error`.
        """
        error = None
        try:
            reachable, model_ready = await self.backend.availability()
        except Exception as e:
            logger.warning("Status check failed: %s", str(e))
            reachable = model_ready = False
            error = str(e) or type(e).__name__

        in_flight = self._in_flight
        return ServiceStatus(
            reachable=reachable,
            model_ready=model_ready,
            in_flight=in_flight,
            queued=len(self._pending),
            max_concurrent=self.max_concurrent,
            max_queue_size=self.max_queue_size,
            utilization_percent=float(round(in_flight / self.max_concurrent * 100)),
            error=error,
        )

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def close(self) -> None:
        """
        Stop admitting work, fail everything still queued, and wait for the
        running units to finish.
        """
        self._closed = True

        rejected = 0
        while self._pending:
            item = self._pending.popleft()
            if not item.future.done():
                item.future.set_exception(
                    ServiceUnavailableError(
                        message="Classification service is shutting down. Please try again later."
                    )
                )
                rejected += 1

        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)

        logger.info("InferenceGateway closed (%d queued requests rejected)", rejected)
