from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from hostplane.core.config import get_settings
from hostplane.core.errors import QueueUnavailableError
from hostplane.services.provisioning.orchestrator import OUTCOME_DEFERRED, ProvisioningOrchestrator
from hostplane.services.provisioning.queue import OUTCOME_DEAD_LETTERED, ProvisioningTask, TaskQueue, get_task_queue
from hostplane.services.telemetry import increment_counter, set_gauge


logger = logging.getLogger(__name__)

Handler = Callable[[ProvisioningTask], Awaitable[str]]
DeadLetterHook = Callable[[ProvisioningTask, str], Awaitable[None]]

# Extra visibility beyond the task budget so a slow ack is not reclaimed.
_VISIBILITY_MARGIN_S = 60


def default_operation_timeouts() -> dict[str, float]:
    settings = get_settings()
    return {
        "create": float(settings.task_timeout_create_s),
        "delete": float(settings.task_timeout_delete_s),
        "resize": float(settings.task_timeout_resize_s),
    }


class WorkerPool:
    """Run ``concurrency`` asyncio workers that pull tasks and hand them to ``handler``.

    Each task runs under its operation's wall-clock budget. ``done`` acks,
    ``deferred`` re-schedules without spending an attempt, and any exception
    fails the task back to the queue (or into the dead-letter lane). Broker
    outages are retried with capped exponential backoff.
    """

    def __init__(
        self,
        queue: TaskQueue,
        handler: Handler,
        *,
        concurrency: int | None = None,
        on_dead_letter: DeadLetterHook | None = None,
        operation_timeouts: dict[str, float] | None = None,
        idle_poll_s: float | None = None,
        defer_s: float | None = None,
        backoff_max_s: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        settings = get_settings()
        self._queue = queue
        self._handler = handler
        self._concurrency = max(1, concurrency or settings.worker_concurrency)
        self._on_dead_letter = on_dead_letter
        self._timeouts = operation_timeouts or default_operation_timeouts()
        self._idle_poll_s = settings.worker_idle_poll_s if idle_poll_s is None else idle_poll_s
        self._defer_s = float(settings.queue_defer_s if defer_s is None else defer_s)
        self._backoff_max_s = settings.worker_backoff_max_s if backoff_max_s is None else backoff_max_s
        self._sleep = sleep
        self._workers: list[asyncio.Task] = []
        self._stopping = asyncio.Event()
        self._in_flight = 0

    @property
    def running(self) -> bool:
        return any(not worker.done() for worker in self._workers)

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"provisioning-worker-{index}")
            for index in range(self._concurrency)
        ]
        logger.info("worker_pool_started concurrency=%s", self._concurrency)

    async def stop(self, *, timeout_s: float | None = None) -> None:
        # Let in-flight tasks finish, then cancel anything still running after the grace period.
        self._stopping.set()
        if not self._workers:
            return
        _, pending = await asyncio.wait(self._workers, timeout=timeout_s)
        for worker in pending:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("worker_pool_stopped cancelled=%s", len(pending))

    async def run_once(self, *, timeout_s: float = 0.0) -> bool:
        """Dequeue and process at most one task; returns False when none was available."""
        task = await self._queue.dequeue(timeout_s=timeout_s)
        if task is None:
            return False
        await self.process(task)
        return True

    async def drain(self, *, max_tasks: int = 1000) -> int:
        # Process until nothing is immediately visible; used by scripts and tests.
        processed = 0
        while processed < max_tasks and await self.run_once():
            processed += 1
        return processed

    async def _worker_loop(self, index: int) -> None:
        failures = 0
        while not self._stopping.is_set():
            try:
                task = await self._queue.dequeue(timeout_s=self._idle_poll_s)
            except QueueUnavailableError as exc:
                failures += 1
                delay_s = min(self._backoff_max_s, 0.5 * (2 ** (failures - 1)))
                logger.warning(
                    "worker_queue_unavailable worker=%s failures=%s delay_s=%.1f error=%s",
                    index,
                    failures,
                    delay_s,
                    exc,
                )
                await self._sleep(delay_s)
                continue
            except Exception:  # noqa: BLE001 - keep the worker alive and surface failures in logs
                logger.exception("worker_dequeue_failed worker=%s", index)
                await self._sleep(self._idle_poll_s)
                continue
            failures = 0
            if task is None:
                continue
            await self.process(task)

    async def process(self, task: ProvisioningTask) -> None:
        budget_s = self._timeouts.get(task.operation, max(self._timeouts.values()))
        self._in_flight += 1
        set_gauge("worker_pool_in_flight", float(self._in_flight))
        try:
            await self._queue.extend(task, budget_s + _VISIBILITY_MARGIN_S)
            try:
                outcome = await asyncio.wait_for(self._handler(task), timeout=budget_s)
            except asyncio.TimeoutError:
                logger.error(
                    "task_budget_exceeded task_id=%s operation=%s budget_s=%s",
                    task.task_id,
                    task.operation,
                    budget_s,
                )
                increment_counter("worker_task_timeouts_total")
                await self._fail(task, f"{task.operation} exceeded {int(budget_s)}s budget")
                return
            except Exception as exc:  # noqa: BLE001 - one task's failure never stops the pool
                logger.exception("task_failed task_id=%s operation=%s", task.task_id, task.operation)
                await self._fail(task, str(exc) or type(exc).__name__)
                return
            if outcome == OUTCOME_DEFERRED:
                increment_counter("worker_tasks_deferred_total")
                await self._queue.defer(task, self._defer_s)
            else:
                increment_counter("worker_tasks_done_total")
                await self._queue.ack(task)
        except QueueUnavailableError as exc:
            # The reservation lapses and the task is reclaimed once the broker is back.
            logger.warning("task_settle_failed task_id=%s error=%s", task.task_id, exc)
        finally:
            self._in_flight -= 1
            set_gauge("worker_pool_in_flight", float(self._in_flight))

    async def _fail(self, task: ProvisioningTask, error: str) -> None:
        increment_counter("worker_tasks_failed_total")
        outcome = await self._queue.fail(task, error)
        logger.info("task_requeue_outcome task_id=%s outcome=%s attempts=%s", task.task_id, outcome, task.attempts + 1)
        if outcome != OUTCOME_DEAD_LETTERED or self._on_dead_letter is None:
            return
        try:
            await self._on_dead_letter(task, error)
        except Exception:  # noqa: BLE001 - dead-letter cleanup is best-effort
            logger.exception("dead_letter_hook_failed task_id=%s", task.task_id)


def build_worker_pool(
    queue: TaskQueue | None = None,
    *,
    orchestrator: ProvisioningOrchestrator | None = None,
    concurrency: int | None = None,
) -> WorkerPool:
    queue = queue or get_task_queue()
    orchestrator = orchestrator or ProvisioningOrchestrator()
    return WorkerPool(
        queue,
        orchestrator.handle,
        concurrency=concurrency,
        on_dead_letter=orchestrator.abandon,
    )
