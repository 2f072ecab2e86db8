"""Gateway worker: turns decryption requests into coordinator callbacks.

The worker listens for `DecryptionRequested` / `WithdrawalRequested`
events, asks the resolver for the plaintext, and delivers it through a
`CallbackSubmitter`. It may crash, restart and retry; the coordinator's
processed-request set makes redelivery harmless.

Flow:
    Event source → pending map → resolver.decrypt → submitter → processed set
    Timeout sweep: pending older than the decryption timeout → failed → coordinator timeout
    History: processed and failed ids are forgotten after the retention window
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from confidential_futures.coordinator.models import (
    DecryptionFailed,
    DecryptionRequested,
    GatewayCallbackProcessed,
    LedgerEvent,
    WithdrawalRequested,
)
from confidential_futures.coordinator.resolver import ResolverError
from confidential_futures.gateway.state import (
    FailureRecord,
    GatewayState,
    GatewayStateError,
    TrackedRequest,
)
from confidential_futures.gateway.submitters import CallbackSubmissionError
from confidential_futures.storage.models import RequestKind

if TYPE_CHECKING:
    from confidential_futures.coordinator.resolver import ResolverClient
    from confidential_futures.gateway.chain import ChainClient, HealthReport
    from confidential_futures.gateway.sources import GatewayEventSource
    from confidential_futures.gateway.state import GatewayStateStore
    from confidential_futures.gateway.submitters import CallbackSubmitter

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0
DEFAULT_DECRYPTION_TIMEOUT_SECONDS = 24 * 3600
DEFAULT_TIMEOUT_CHECK_INTERVAL_SECONDS = 60.0
DEFAULT_STATUS_INTERVAL_SECONDS = 300.0
DEFAULT_MAX_CONCURRENCY = 16


class WorkerState(Enum):
    """Gateway worker lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class WorkerStats:
    """Statistics for the gateway worker."""

    started_at: datetime | None = None
    requests_seen: int = 0
    callbacks_submitted: int = 0
    retries: int = 0
    failures: int = 0
    timeouts: int = 0
    duplicates_ignored: int = 0
    pruned: int = 0
    last_error: str | None = None


class _ZeroPlaintextError(ResolverError):
    """The resolver answered with zero, which the coordinator treats as a failure."""


class GatewayWorker:
    """Off-chain worker delivering decryption results to the coordinator.

    Pending, processed and failed requests are kept in three maps guarded by
    one lock. Each request runs in its own task (bounded by a semaphore) so
    that the event listener never blocks.

    Example:
        ```python
        worker = GatewayWorker(
            BusEventSource(coordinator.bus),
            resolver,
            CoordinatorCallbackSubmitter(coordinator, gateway_address),
            state_store=FileGatewayStateStore(Path(".gateway-state.json")),
        )
        async with worker:
            ...
        ```
    """

    def __init__(
        self,
        source: GatewayEventSource,
        resolver: ResolverClient,
        submitter: CallbackSubmitter,
        *,
        state_store: GatewayStateStore | None = None,
        chain: ChainClient | None = None,
        operator_address: str | None = None,
        min_operator_balance_eth: Decimal = Decimal("0.1"),
        max_retries: int = DEFAULT_MAX_RETRIES,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        decryption_timeout_seconds: float = DEFAULT_DECRYPTION_TIMEOUT_SECONDS,
        retention_seconds: float | None = None,
        timeout_check_interval_seconds: float = DEFAULT_TIMEOUT_CHECK_INTERVAL_SECONDS,
        status_interval_seconds: float = DEFAULT_STATUS_INTERVAL_SECONDS,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the worker.

        Args:
            source: Where decryption events come from.
            resolver: Decryption capability.
            submitter: Delivers callbacks to the coordinator.
            state_store: Optional persistence for the tracking maps.
            chain: Optional chain client used by `health_check`.
            operator_address: Address whose balance pays for callbacks.
            min_operator_balance_eth: Low-balance warning threshold.
            max_retries: Retries after the first failed attempt.
            retry_delay_seconds: Delay between attempts.
            decryption_timeout_seconds: Age after which a pending request is timed out.
            retention_seconds: How long processed and failed ids are remembered;
                defaults to twice the decryption timeout.
            timeout_check_interval_seconds: Period of the timeout sweep.
            status_interval_seconds: Period of the status report.
            max_concurrency: Maximum requests processed at once.
            clock: Wall-clock source (epoch seconds).
        """
        self._source = source
        self._resolver = resolver
        self._submitter = submitter
        self._state_store = state_store
        self._chain = chain
        self._operator_address = operator_address
        self._min_operator_balance_eth = min_operator_balance_eth
        self._max_retries = max_retries
        self._retry_delay = retry_delay_seconds
        self._decryption_timeout = decryption_timeout_seconds
        self._retention = (
            retention_seconds if retention_seconds is not None else 2 * decryption_timeout_seconds
        )
        self._timeout_check_interval = timeout_check_interval_seconds
        self._status_interval = status_interval_seconds
        self._clock = clock

        self._state = WorkerState.STOPPED
        self._stats = WorkerStats()

        self._lock = asyncio.Lock()
        self._pending: dict[int, TrackedRequest] = {}
        self._processed: dict[int, float] = {}
        self._failed: dict[int, FailureRecord] = {}

        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._tasks: dict[int, asyncio.Task[None]] = {}
        self._stop_event: asyncio.Event | None = None
        self._sweep_task: asyncio.Task[None] | None = None
        self._status_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> WorkerState:
        """Current worker state."""
        return self._state

    @property
    def stats(self) -> WorkerStats:
        """Current worker statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == WorkerState.RUNNING

    async def start(self) -> None:
        """Restore state, attach to the event source and start background loops.

        Raises:
            RuntimeError: If the worker is not stopped.
        """
        if self._state != WorkerState.STOPPED:
            raise RuntimeError(f"Cannot start gateway worker in state {self._state}")

        self._state = WorkerState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting gateway worker...")

        try:
            await self._restore_state()
            await self._source.start(self.handle_event)
            self._sweep_task = asyncio.create_task(self._run_timeout_loop(), name="gateway-timeout-sweep")
            self._status_task = asyncio.create_task(self._run_status_loop(), name="gateway-status")
            async with self._lock:
                restored = list(self._pending)
            for request_id in restored:
                self._dispatch(request_id)
            self._stats.started_at = datetime.now(UTC)
            self._state = WorkerState.RUNNING
            logger.info("Gateway worker started (%d restored pending requests)", len(restored))
        except Exception as e:
            self._state = WorkerState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start gateway worker: %s", e)
            await self._stop_background_tasks()
            raise

    async def stop(self) -> None:
        """Stop listening, cancel in-flight work and persist the tracking maps."""
        if self._state == WorkerState.STOPPED:
            return

        self._state = WorkerState.STOPPING
        logger.info("Stopping gateway worker...")
        if self._stop_event:
            self._stop_event.set()

        await self._source.stop()
        await self._stop_background_tasks()
        await self._save_state()

        self._state = WorkerState.STOPPED
        logger.info("Gateway worker stopped")

    def request_stop(self) -> None:
        """Ask `run()` to return. Safe to call from a signal handler."""
        if self._stop_event and not self._stop_event.is_set():
            logger.info("Gateway worker stop requested")
            self._stop_event.set()

    async def _stop_background_tasks(self) -> None:
        for task in (self._sweep_task, self._status_task):
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
        self._sweep_task = None
        self._status_task = None

        in_flight = list(self._tasks.values())
        for task in in_flight:
            task.cancel()
        for task in in_flight:
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._tasks.clear()

    async def run(self) -> None:
        """Start the worker and run until `stop()` is called or the task is cancelled."""
        await self.start()
        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def drain(self) -> None:
        """Wait until no request task is in flight."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    # ------------------------------------------------------------------
    # Event handling
    # ------------------------------------------------------------------

    async def handle_event(self, event: LedgerEvent) -> None:
        """Entry point for the event source."""
        if isinstance(event, DecryptionRequested):
            await self._track(
                TrackedRequest(
                    request_id=event.request_id,
                    kind=RequestKind.SETTLEMENT,
                    created_at=float(event.timestamp),
                    contract_id=event.contract_id,
                )
            )
        elif isinstance(event, WithdrawalRequested):
            await self._track(
                TrackedRequest(
                    request_id=event.request_id,
                    kind=RequestKind.WITHDRAWAL,
                    created_at=float(event.timestamp),
                )
            )
        elif isinstance(event, GatewayCallbackProcessed):
            if event.success:
                async with self._lock:
                    self._pending.pop(event.request_id, None)
                    self._processed[event.request_id] = self._clock()
            logger.debug("Callback %d processed on coordinator (success=%s)", event.request_id, event.success)
        elif isinstance(event, DecryptionFailed):
            logger.warning("Coordinator reported decryption failure for %d: %s", event.request_id, event.reason)

    async def _track(self, request: TrackedRequest) -> None:
        async with self._lock:
            rid = request.request_id
            if rid in self._pending or rid in self._processed or rid in self._failed:
                self._stats.duplicates_ignored += 1
                logger.debug("Ignoring duplicate event for request %d", rid)
                return
            self._pending[rid] = request
            self._stats.requests_seen += 1
        logger.info("Tracking %s request %d", request.kind.value, request.request_id)
        self._dispatch(request.request_id)

    def _dispatch(self, request_id: int) -> None:
        if request_id in self._tasks:
            return
        task = asyncio.create_task(self._process(request_id), name=f"gateway-request-{request_id}")
        self._tasks[request_id] = task
        task.add_done_callback(lambda _t, rid=request_id: self._tasks.pop(rid, None))

    async def _process(self, request_id: int) -> None:
        async with self._semaphore:
            while True:
                async with self._lock:
                    request = self._pending.get(request_id)
                if request is None:
                    return

                try:
                    await self._attempt(request)
                except CallbackSubmissionError as e:
                    if not e.retryable:
                        await self._mark_failed(request, str(e))
                        return
                    error = str(e)
                except ResolverError as e:
                    error = str(e) or type(e).__name__
                except asyncio.CancelledError:
                    raise
                except Exception as e:
                    logger.error("Unexpected error processing request %d: %s", request_id, e)
                    error = str(e)
                else:
                    async with self._lock:
                        self._pending.pop(request_id, None)
                        self._processed[request_id] = self._clock()
                    self._stats.callbacks_submitted += 1
                    logger.info("Request %d delivered", request_id)
                    return

                self._stats.last_error = error
                async with self._lock:
                    if request_id not in self._pending:
                        return
                    exhausted = request.retries >= self._max_retries
                    if not exhausted:
                        request.retries += 1
                if exhausted:
                    await self._mark_failed(request, f"max retries exceeded: {error}")
                    return
                self._stats.retries += 1
                logger.warning(
                    "Request %d failed (%s); retry %d/%d",
                    request_id,
                    error,
                    request.retries,
                    self._max_retries,
                )
                await asyncio.sleep(self._retry_delay)

    async def _attempt(self, request: TrackedRequest) -> None:
        plaintext = await self._resolver.decrypt(request.request_id)
        if plaintext == 0:
            raise _ZeroPlaintextError("resolver returned zero")
        if request.kind == RequestKind.SETTLEMENT:
            await self._submitter.submit_settlement(request.request_id, plaintext)
        else:
            await self._submitter.submit_withdrawal(request.request_id, plaintext)

    async def _mark_failed(self, request: TrackedRequest, reason: str) -> None:
        async with self._lock:
            self._pending.pop(request.request_id, None)
            self._failed[request.request_id] = FailureRecord(
                request_id=request.request_id,
                kind=request.kind,
                reason=reason,
                failed_at=self._clock(),
            )
        self._stats.failures += 1
        logger.error("Request %d failed: %s", request.request_id, reason)

    # ------------------------------------------------------------------
    # Timeout sweep
    # ------------------------------------------------------------------

    async def sweep_timeouts(self) -> list[int]:
        """Move stale pending requests to failed and trigger the coordinator timeout.

        Returns:
            Ids of the requests that were timed out.
        """
        now = self._clock()
        async with self._lock:
            stale = [r for r in self._pending.values() if now - r.created_at >= self._decryption_timeout]
            for request in stale:
                del self._pending[request.request_id]
                self._failed[request.request_id] = FailureRecord(
                    request_id=request.request_id,
                    kind=request.kind,
                    reason="timeout",
                    failed_at=now,
                )
            pruned = self._prune_history(now)

        if pruned:
            self._stats.pruned += pruned
            logger.info("Pruned %d processed/failed ids older than %.0fs", pruned, self._retention)

        for request in stale:
            task = self._tasks.get(request.request_id)
            if task is not None:
                task.cancel()
            self._stats.timeouts += 1
            logger.error(
                "Request %d timed out after %.0fs; triggering refund",
                request.request_id,
                now - request.created_at,
            )
            try:
                await self._submitter.submit_timeout(request.request_id)
            except CallbackSubmissionError as e:
                logger.error("Timeout delivery for request %d failed: %s", request.request_id, e)
        return [r.request_id for r in stale]

    def _prune_history(self, now: float) -> int:
        """Forget processed and failed ids older than the retention window. Caller holds the lock."""
        cutoff = now - self._retention
        old_processed = [rid for rid, at in self._processed.items() if at < cutoff]
        old_failed = [rid for rid, record in self._failed.items() if record.failed_at < cutoff]
        for rid in old_processed:
            del self._processed[rid]
        for rid in old_failed:
            del self._failed[rid]
        return len(old_processed) + len(old_failed)

    async def _run_timeout_loop(self) -> None:
        if not self._stop_event:
            return
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._timeout_check_interval)
                    break
                except TimeoutError:
                    pass
                await self.sweep_timeouts()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Timeout sweep error: %s", e)

    # ------------------------------------------------------------------
    # Status and health
    # ------------------------------------------------------------------

    async def get_pending_status(self) -> dict[str, Any]:
        """Counts plus per-request age and retries."""
        now = self._clock()
        async with self._lock:
            return {
                "pending": [
                    {
                        "request_id": r.request_id,
                        "kind": r.kind.value,
                        "age_seconds": int(now - r.created_at),
                        "retries": r.retries,
                    }
                    for r in self._pending.values()
                ],
                "processed": len(self._processed),
                "failed": [f.to_dict() for f in self._failed.values()],
            }

    async def log_status(self) -> None:
        status = await self.get_pending_status()
        logger.info(
            "Gateway status: pending=%d processed=%d failed=%d",
            len(status["pending"]),
            status["processed"],
            len(status["failed"]),
        )
        for entry in status["pending"]:
            logger.info(
                "  pending %d (%s): %.1fh elapsed, %d retries",
                entry["request_id"],
                entry["kind"],
                entry["age_seconds"] / 3600,
                entry["retries"],
            )
        for entry in status["failed"]:
            logger.info("  failed %d: %s", entry["request_id"], entry["reason"])

    async def _run_status_loop(self) -> None:
        if not self._stop_event:
            return
        while not self._stop_event.is_set():
            try:
                try:
                    await asyncio.wait_for(self._stop_event.wait(), timeout=self._status_interval)
                    break
                except TimeoutError:
                    pass
                await self.log_status()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning("Status report error: %s", e)

    async def health_check(self) -> HealthReport | None:
        """Chain health for the operator key; None without a chain client."""
        if self._chain is None:
            return None
        return await self._chain.health_check(
            self._operator_address,
            min_balance_eth=self._min_operator_balance_eth,
        )

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def snapshot(self) -> GatewayState:
        async with self._lock:
            return GatewayState(
                pending={rid: TrackedRequest.from_dict(r.to_dict()) for rid, r in self._pending.items()},
                processed=dict(self._processed),
                failed=dict(self._failed),
                saved_at=self._clock(),
            )

    async def _save_state(self) -> None:
        if self._state_store is None:
            return
        try:
            await self._state_store.save(await self.snapshot())
            logger.info("Gateway state saved")
        except GatewayStateError as e:
            logger.error("Failed to save gateway state: %s", e)

    async def _restore_state(self) -> None:
        if self._state_store is None:
            return
        try:
            state = await self._state_store.load()
        except GatewayStateError as e:
            logger.error("Failed to restore gateway state: %s", e)
            return
        if state is None:
            return
        async with self._lock:
            self._pending.update(state.pending)
            self._processed.update(state.processed)
            self._failed.update(state.failed)
        logger.info(
            "Gateway state restored: pending=%d processed=%d failed=%d",
            len(state.pending),
            len(state.processed),
            len(state.failed),
        )

    async def __aenter__(self) -> GatewayWorker:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
