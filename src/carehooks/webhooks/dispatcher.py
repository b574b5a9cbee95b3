"""Outbound webhook dispatcher.

Fans recorded events out to matching subscriptions, then delivers each
queued task with a signed HTTP POST, classifying the outcome and either
retiring the task or requeueing it with exponential backoff. Every
attempt lands in the ledger before the queue is acknowledged.
"""

import asyncio
import logging
import random
import time
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Dict, Optional, Sequence

import httpx

from .circuit_breaker import CircuitBreaker, CircuitBreakerError, CircuitBreakerRegistry
from .errors import (
    LeaseLostError,
    StorageUnavailableError,
    TerminalDeliveryError,
    TransientDeliveryError,
)
from .ledger import DeliveryLedger
from .models import (
    DeliveryAttempt,
    DeliveryOutcome,
    DeliveryTask,
    Subscription,
    TaskState,
    utcnow,
)
from .queue import DeliveryQueue
from .registry import SubscriptionRegistry, SubscriptionSnapshot
from .security import DEFAULT_USER_AGENT, generate_webhook_headers

logger = logging.getLogger(__name__)

REASON_EXHAUSTED = "max attempts exhausted"
REASON_INACTIVE = "subscription inactive"
REASON_NOT_FOUND = "subscription not found"
REASON_ENDPOINT_BUSY = "endpoint busy"


def classify_status(status_code: int) -> None:
    """Raise the delivery error matching a non-2xx status; return on 2xx."""
    if 200 <= status_code < 300:
        return
    if status_code == 429 or status_code >= 500:
        raise TransientDeliveryError(status_code, f"HTTP {status_code}")
    if 400 <= status_code < 500:
        raise TerminalDeliveryError(status_code, f"HTTP {status_code}")
    raise TransientDeliveryError(status_code, f"unexpected HTTP {status_code}")


class WebhookDispatcher:
    """Delivers queued webhook tasks to subscription endpoints.

    Features:
    - Async HTTP delivery with a hard per-request timeout
    - HMAC-SHA256 signed bodies
    - Exponential backoff with bounded jitter, persisted in the queue
    - Per-endpoint concurrency limit and circuit breaker
    - Crash recovery through queue leases

    Example:
        dispatcher = WebhookDispatcher(registry, queue, ledger)
        await dispatcher.drain()          # process everything ready now
        await dispatcher.run(stop_event)  # or keep workers running
    """

    def __init__(
        self,
        registry: SubscriptionRegistry,
        queue: DeliveryQueue,
        ledger: DeliveryLedger,
        client: Optional[httpx.AsyncClient] = None,
        timeout_seconds: float = 10.0,
        worker_concurrency: int = 8,
        per_endpoint_concurrency: int = 2,
        poll_interval_seconds: float = 1.0,
        snapshot_refresh_seconds: float = 5.0,
        resolution_batch_size: int = 100,
        circuit_breakers: Optional[CircuitBreakerRegistry] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        partition: Optional[Sequence[str]] = None,
        rng: Optional[random.Random] = None,
    ):
        """Initialize dispatcher.

        Args:
            registry: Source of subscription snapshots.
            queue: Delivery queue to claim tasks from.
            ledger: Ledger receiving one row per attempt.
            client: Shared HTTP client; created lazily when omitted.
            timeout_seconds: Hard timeout for each outbound request.
            worker_concurrency: Number of worker loops started by run().
            per_endpoint_concurrency: Max simultaneous requests per subscription.
            poll_interval_seconds: Idle sleep when nothing is ready.
            snapshot_refresh_seconds: Max age of the subscription snapshot.
            resolution_batch_size: Events fanned out per resolution pass.
            circuit_breakers: Per-endpoint breakers; None disables them.
            user_agent: User-Agent header for deliveries.
            partition: Only claim tasks for these subscription ids.
            rng: Random source for backoff jitter.
        """
        self.registry = registry
        self.queue = queue
        self.ledger = ledger
        self.timeout = timeout_seconds
        self.worker_concurrency = worker_concurrency
        self.per_endpoint_concurrency = per_endpoint_concurrency
        self.poll_interval = poll_interval_seconds
        self.snapshot_refresh_seconds = snapshot_refresh_seconds
        self.resolution_batch_size = resolution_batch_size
        self.circuit_breakers = circuit_breakers
        self.user_agent = user_agent
        self.partition = list(partition) if partition is not None else None
        self._rng = rng or random.Random()
        self._client = client
        self._owns_client = client is None
        self._snapshot: Optional[SubscriptionSnapshot] = None
        self._endpoint_limits: Dict[str, asyncio.Semaphore] = {}

    async def __aenter__(self) -> "WebhookDispatcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, follow_redirects=False)
            self._owns_client = True
        return self._client

    # ------------------------------------------------------------------
    # Subscription snapshots
    # ------------------------------------------------------------------

    async def current_snapshot(self, force: bool = False) -> SubscriptionSnapshot:
        """Return the cached snapshot, refreshing it once it is too old."""
        snapshot = self._snapshot
        if force or snapshot is None or snapshot.age_seconds() >= self.snapshot_refresh_seconds:
            snapshot = await asyncio.to_thread(self.registry.snapshot)
            self._snapshot = snapshot
        return snapshot

    async def _subscription_for(self, subscription_id: str) -> Optional[Subscription]:
        snapshot = await self.current_snapshot()
        subscription = snapshot.get(subscription_id)
        if subscription is None:
            # Possibly created after the snapshot was taken
            subscription = (await self.current_snapshot(force=True)).get(subscription_id)
        return subscription

    # ------------------------------------------------------------------
    # Resolution (fan-out)
    # ------------------------------------------------------------------

    async def resolve_pending(self, limit: Optional[int] = None) -> int:
        """Fan out recorded events to matching subscriptions.

        Returns:
            Number of events resolved in this pass.
        """
        events = await asyncio.to_thread(self.queue.unresolved_events, limit or self.resolution_batch_size)
        if not events:
            return 0

        # Fan-out is final for each event, so it must see every subscription
        # created before the event was recorded.
        snapshot = await self.current_snapshot(force=True)
        for event in events:
            targets = snapshot.resolve(event.type)
            created = await asyncio.to_thread(self.queue.fan_out, event, [s.id for s in targets])
            if targets:
                logger.info(f"Event {event.id} ({event.type}) fanned out to {len(created)} subscription(s)")
            else:
                logger.debug(f"No subscriptions for event {event.id} ({event.type})")
        return len(events)

    # ------------------------------------------------------------------
    # Task processing
    # ------------------------------------------------------------------

    async def claim_next(self, now: Optional[datetime] = None) -> Optional[DeliveryTask]:
        return await asyncio.to_thread(self.queue.claim_ready, now, self.partition)

    async def process_task(self, task: DeliveryTask) -> Optional[DeliveryOutcome]:
        """Run one delivery attempt for a claimed task.

        Returns:
            The ledger outcome recorded for the attempt, or None when the
            task was postponed without an attempt (open circuit or no
            free endpoint slot within its lease).
        """
        subscription = await self._subscription_for(task.subscription_id)
        if subscription is None:
            return await self._finish(task, DeliveryOutcome.FAILED_TERMINAL, reason=REASON_NOT_FOUND)
        if not subscription.active:
            return await self._finish(task, DeliveryOutcome.FAILED_TERMINAL, reason=REASON_INACTIVE)

        if await asyncio.to_thread(self.ledger.has_succeeded, task.event.id, task.subscription_id):
            # Crashed between ledger append and retire on a previous claim
            await self._ack(self.queue.retire, task, TaskState.SUCCESS, "already delivered")
            return DeliveryOutcome.SUCCESS

        policy = subscription.retry_policy
        if task.attempt_count > policy.max_attempts:
            return await self._finish(task, DeliveryOutcome.FAILED_TERMINAL, reason=REASON_EXHAUSTED)

        async with self._endpoint_slot(task) as acquired:
            if not acquired:
                return await self._postpone(task, utcnow(), REASON_ENDPOINT_BUSY)

            breaker = self._breaker_for(subscription.id)
            if breaker is not None:
                try:
                    breaker.allow_request()
                except CircuitBreakerError as exc:
                    return await self._postpone(task, exc.until, f"circuit open until {exc.until.isoformat()}")

            sent_at = utcnow()
            started = time.monotonic()
            try:
                status = await self._send(task, subscription)
            except asyncio.CancelledError:
                if breaker is not None:
                    breaker.release_trial()
                raise
            except TerminalDeliveryError as exc:
                latency = (time.monotonic() - started) * 1000
                if breaker is not None:
                    if exc.status_code is None:
                        # Never reached the endpoint
                        breaker.release_trial()
                    else:
                        breaker.record_success()
                logger.warning(
                    f"Terminal failure delivering {task.event.id} to {subscription.id}: {exc.reason}"
                )
                return await self._finish(
                    task, DeliveryOutcome.FAILED_TERMINAL, exc.status_code, exc.reason, sent_at, latency
                )
            except TransientDeliveryError as exc:
                latency = (time.monotonic() - started) * 1000
                if breaker is not None:
                    breaker.record_failure()
                return await self._handle_transient(task, subscription, exc, sent_at, latency)

        latency = (time.monotonic() - started) * 1000
        if breaker is not None:
            breaker.record_success()
        logger.info(
            f"Webhook delivered: {task.event.type} {task.event.id} -> {subscription.id} "
            f"(attempt {task.attempt_count}, HTTP {status})"
        )
        return await self._finish(task, DeliveryOutcome.SUCCESS, status, None, sent_at, latency)

    async def _handle_transient(
        self,
        task: DeliveryTask,
        subscription: Subscription,
        exc: TransientDeliveryError,
        sent_at: datetime,
        latency: float,
    ) -> DeliveryOutcome:
        policy = subscription.retry_policy

        if task.attempt_count >= policy.max_attempts:
            logger.error(
                f"Webhook delivery failed after {task.attempt_count} attempts "
                f"for {subscription.id}: {exc.reason}"
            )
            return await self._finish(
                task, DeliveryOutcome.FAILED_TERMINAL, exc.status_code,
                f"{REASON_EXHAUSTED} ({exc.reason})", sent_at, latency,
            )

        # Fresh read: a deactivation must stop retries even if the snapshot is stale.
        if not await asyncio.to_thread(self.registry.is_active, subscription.id):
            logger.info(f"Not retrying {task.task_id}: {REASON_INACTIVE}")
            return await self._finish(
                task, DeliveryOutcome.FAILED_TERMINAL, exc.status_code,
                f"{REASON_INACTIVE} ({exc.reason})", sent_at, latency,
            )

        delay = policy.delay_for(task.attempt_count, self._rng)
        await self._record(task, DeliveryOutcome.FAILED_RETRYABLE, exc.status_code, exc.reason, sent_at, latency)
        await self._ack(self.queue.requeue, task, utcnow() + timedelta(seconds=delay), exc.reason)
        logger.warning(
            f"Webhook delivery failed for {subscription.id} ({exc.reason}), "
            f"retrying in {delay:.1f}s (attempt {task.attempt_count}/{policy.max_attempts})"
        )
        return DeliveryOutcome.FAILED_RETRYABLE

    async def _send(self, task: DeliveryTask, subscription: Subscription) -> int:
        """POST the event to the subscription endpoint.

        Returns:
            The 2xx status code.

        Raises:
            TransientDeliveryError: Network error, timeout, 429, 5xx.
            TerminalDeliveryError: Any other 4xx, or a request that could
                not be built (status None).
        """
        client = self._get_client()
        try:
            body = task.event.raw_body()
            headers = generate_webhook_headers(
                body,
                subscription.signing_secret,
                event_id=task.event.id,
                event_type=task.event.type,
                subscription_id=subscription.id,
                attempt=task.attempt_count,
                user_agent=self.user_agent,
            )
            request = client.build_request("POST", str(subscription.target_url), content=body, headers=headers)
        except Exception as exc:
            raise TerminalDeliveryError(None, f"could not build request: {type(exc).__name__}: {exc}") from exc

        try:
            response = await asyncio.wait_for(client.send(request), timeout=self.timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TransientDeliveryError(None, f"timeout after {self.timeout}s") from exc
        except httpx.HTTPError as exc:
            raise TransientDeliveryError(None, f"network error: {type(exc).__name__}: {exc}") from exc

        classify_status(response.status_code)
        return response.status_code

    # ------------------------------------------------------------------
    # Ledger and queue acknowledgement
    # ------------------------------------------------------------------

    async def _record(
        self,
        task: DeliveryTask,
        outcome: DeliveryOutcome,
        status: Optional[int] = None,
        reason: Optional[str] = None,
        sent_at: Optional[datetime] = None,
        latency_ms: Optional[float] = None,
    ) -> DeliveryAttempt:
        attempt = DeliveryAttempt(
            event_id=task.event.id,
            subscription_id=task.subscription_id,
            attempt_number=task.attempt_count,
            sent_at=sent_at or utcnow(),
            response_status=status,
            outcome=outcome,
            reason=reason,
            latency_ms=latency_ms,
        )
        return await asyncio.to_thread(self.ledger.append, attempt)

    async def _finish(
        self,
        task: DeliveryTask,
        outcome: DeliveryOutcome,
        status: Optional[int] = None,
        reason: Optional[str] = None,
        sent_at: Optional[datetime] = None,
        latency_ms: Optional[float] = None,
    ) -> DeliveryOutcome:
        """Record a final attempt and retire the task."""
        stored = await self._record(task, outcome, status, reason, sent_at, latency_ms)
        state = TaskState.SUCCESS if outcome is DeliveryOutcome.SUCCESS else TaskState.FAILED_TERMINAL
        await self._ack(self.queue.retire, task, state, reason)
        return stored.outcome

    async def _ack(self, operation, task: DeliveryTask, *args) -> bool:
        try:
            await asyncio.to_thread(operation, task, *args)
            return True
        except LeaseLostError:
            logger.warning(
                f"Lease on task {task.task_id} expired before acknowledgement; "
                f"another worker owns it now"
            )
            return False

    def _breaker_for(self, subscription_id: str) -> Optional[CircuitBreaker]:
        if self.circuit_breakers is None:
            return None
        return self.circuit_breakers.get_or_create(subscription_id)

    @asynccontextmanager
    async def _endpoint_slot(self, task: DeliveryTask) -> AsyncIterator[bool]:
        """Hold one of the subscription's request slots.

        Yields False when no slot frees up early enough for the request
        to finish inside the task's lease.
        """
        semaphore = self._endpoint_limits.get(task.subscription_id)
        if semaphore is None:
            semaphore = self._endpoint_limits.setdefault(
                task.subscription_id, asyncio.Semaphore(self.per_endpoint_concurrency)
            )

        budget = None
        if task.lease_expires_at is not None:
            budget = (task.lease_expires_at - utcnow()).total_seconds() - self.timeout

        acquired = False
        if budget is None or budget > 0:
            if semaphore.locked():
                try:
                    await asyncio.wait_for(semaphore.acquire(), timeout=budget)
                    acquired = True
                except asyncio.TimeoutError:
                    logger.debug(f"No free slot for {task.subscription_id} within the lease of {task.task_id}")
            else:
                await semaphore.acquire()
                acquired = True

        try:
            yield acquired
        finally:
            if acquired:
                semaphore.release()

    async def _postpone(self, task: DeliveryTask, until: datetime, reason: str) -> None:
        # No request is made, so the claimed attempt is handed back.
        task.attempt_count -= 1
        await self._ack(self.queue.requeue, task, until, reason)
        logger.info(f"Postponed task {task.task_id}: {reason}")

    def circuit_stats(self) -> Dict[str, dict]:
        if self.circuit_breakers is None:
            return {}
        return self.circuit_breakers.get_stats()

    # ------------------------------------------------------------------
    # Worker loops
    # ------------------------------------------------------------------

    async def drain(self, concurrency: int = 1) -> int:
        """Resolve all recorded events and process every ready task.

        Returns when nothing is ready, leaving tasks scheduled for later
        in the queue.

        Returns:
            Number of tasks processed.
        """
        while await self.resolve_pending():
            pass

        processed = 0

        async def worker() -> None:
            nonlocal processed
            while True:
                task = await self.claim_next()
                if task is None:
                    return
                await self.process_task(task)
                processed += 1

        await asyncio.gather(*(worker() for _ in range(max(concurrency, 1))))
        return processed

    async def run(self, stop_event: Optional[asyncio.Event] = None) -> None:
        """Run the resolver and worker loops until stop_event is set."""
        stop = stop_event or asyncio.Event()
        logger.info(f"Starting dispatcher with {self.worker_concurrency} worker(s)")
        loops = [asyncio.create_task(self._resolver_loop(stop))]
        loops.extend(
            asyncio.create_task(self._worker_loop(number, stop))
            for number in range(self.worker_concurrency)
        )
        try:
            await asyncio.gather(*loops)
        finally:
            for loop in loops:
                loop.cancel()
            await asyncio.gather(*loops, return_exceptions=True)
            logger.info("Dispatcher stopped")

    async def _resolver_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                resolved = await self.resolve_pending()
            except StorageUnavailableError:
                logger.exception("Event resolution failed")
                resolved = 0
            if not resolved:
                await self._idle(stop)

    async def _worker_loop(self, number: int, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                task = await self.claim_next()
            except StorageUnavailableError:
                logger.exception(f"Worker {number} could not claim a task")
                await self._idle(stop)
                continue

            if task is None:
                await self._idle(stop)
                continue

            try:
                await self.process_task(task)
            except Exception:
                logger.exception(
                    f"Worker {number} failed on task {task.task_id}; "
                    f"it returns to the queue when its lease expires"
                )

    async def _idle(self, stop: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
