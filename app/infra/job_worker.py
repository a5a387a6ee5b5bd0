# app/infra/job_worker.py
"""
In-process async job worker with handler dispatch.

Polls the jobs table, claims pending jobs, and routes them
to registered handler functions. The ``notify`` handler drains the
notification outbox through ``NotificationFanout``. Supports concurrent
batch execution with automatic retry on failure.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable

from app.core.notifications.events import NotificationEvent
from app.core.notifications.fanout import NotificationFanout
from app.infra.logging_config import get_logger
from app.infra.metrics import inc_counter
from app.infra.pg_job_repo_async import NOTIFY_JOB, AsyncPostgresJobRepository, Job

logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Job handler functions
# ---------------------------------------------------------------------------

def make_notify_handler(fanout: NotificationFanout) -> Callable[[Job], Awaitable[None]]:
    """
    Build the ``notify`` job handler.

    A raised exception (all pushes failed, store error) leaves the job to
    the queue's retry/backoff; ``fanout.deliver`` is idempotent per event.
    """

    async def handle_notify(job: Job) -> None:
        event = NotificationEvent.from_payload(job.payload)
        result = await fanout.deliver(event)
        logger.debug(
            f"Notify job done: id={job.id[:8]}, event={event.event_type.value}, status={result.status}",
            extra={"job_id": job.id, "service_request_id": event.request_id},
        )

    return handle_notify


def build_job_worker(repo: AsyncPostgresJobRepository, fanout: NotificationFanout) -> "JobWorker":
    """Worker wired with the handlers this service runs."""
    from app.config import settings

    worker = JobWorker(
        repo,
        poll_interval=settings.job_worker_poll_interval,
        batch_size=settings.job_worker_batch_size,
        base_retry_delay=settings.job_worker_base_retry_delay,
        stale_timeout=settings.job_worker_stale_timeout,
    )
    worker.register(NOTIFY_JOB, make_notify_handler(fanout))
    return worker


# ---------------------------------------------------------------------------
# Worker
# ---------------------------------------------------------------------------

class JobWorker:
    """
    In-process async worker that polls the jobs table and executes handlers.

    Usage:
        worker = JobWorker(repo=get_job_repo())
        worker.register("notify", make_notify_handler(fanout))
        await worker.start()
        ...
        await worker.stop()
    """

    def __init__(
        self,
        repo: AsyncPostgresJobRepository,
        *,
        poll_interval: float = 1.0,
        batch_size: int = 5,
        base_retry_delay: float = 5.0,
        stale_timeout: int = 300,
    ):
        self._repo = repo
        self._poll_interval = poll_interval
        self._batch_size = batch_size
        self._base_retry_delay = base_retry_delay
        self._stale_timeout = stale_timeout
        self._handlers: dict[str, Callable[[Job], Awaitable[None]]] = {}
        self._task: asyncio.Task | None = None
        self._running = False
        self._loop_count = 0

    def register(self, job_type: str, handler: Callable[[Job], Awaitable[None]]) -> None:
        """Register a handler function for a job type."""
        self._handlers[job_type] = handler

    async def start(self) -> None:
        """Start the worker loop as an asyncio task."""
        self._running = True
        self._task = asyncio.create_task(self._loop(), name="job_worker")
        self._task.add_done_callback(self._on_task_done)
        logger.info(
            f"Job worker started: poll={self._poll_interval}s, "
            f"batch={self._batch_size}, handlers={list(self._handlers.keys())}",
        )

    async def stop(self) -> None:
        """Graceful shutdown: stop polling and wait for current batch to finish."""
        self._running = False
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        logger.info("Job worker stopped")

    async def _loop(self) -> None:
        """Main poll loop."""
        while self._running:
            try:
                self._loop_count += 1

                # Periodically reset stale running jobs (~every 60 loops)
                if self._loop_count % 60 == 0:
                    try:
                        await self._repo.reset_stale_running(self._stale_timeout)
                    except Exception as exc:
                        logger.warning(f"Stale job reset failed: {exc}")

                jobs = await self._repo.claim_batch(self._batch_size)

                if jobs:
                    # Process claimed jobs concurrently within batch
                    tasks = [self._execute(job) for job in jobs]
                    await asyncio.gather(*tasks, return_exceptions=True)
                    # Small delay between batches when there's work
                    await asyncio.sleep(0.1)
                else:
                    # No work: back off to poll interval
                    await asyncio.sleep(self._poll_interval)

            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.error(f"Job worker loop error: {exc}", exc_info=True)
                inc_counter("job_worker_loop_errors")
                await asyncio.sleep(self._poll_interval * 2)

    async def _execute(self, job: Job) -> None:
        """Execute a single job via its registered handler."""
        handler = self._handlers.get(job.job_type)
        if handler is None:
            error = f"No handler registered for job_type={job.job_type}"
            logger.error(error)
            await self._repo.fail(job.id, error, base_delay=self._base_retry_delay)
            inc_counter("jobs_unknown_type")
            return

        try:
            await handler(job)
            await self._repo.complete(job.id)
            inc_counter("jobs_completed", job_type=job.job_type)
            logger.info(
                f"Job completed: id={job.id[:8]}, type={job.job_type}, "
                f"attempt={job.attempts + 1}",
            )
        except Exception as exc:
            error_msg = f"{exc.__class__.__name__}: {exc}"[:500]
            await self._repo.fail(
                job.id, error_msg, base_delay=self._base_retry_delay,
            )
            inc_counter("jobs_failed_attempt", job_type=job.job_type)
            logger.warning(
                f"Job failed: id={job.id[:8]}, type={job.job_type}, "
                f"attempt={job.attempts + 1}, error={error_msg[:100]}",
            )

    @staticmethod
    def _on_task_done(task: asyncio.Task) -> None:
        """Log unexpected worker death."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                f"Job worker task died unexpectedly: {exc}",
                exc_info=(type(exc), exc, exc.__traceback__),
            )
