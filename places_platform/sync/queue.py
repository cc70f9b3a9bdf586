# sync/queue.py
# ─────────────────────────────────────────────────────────────────
# Job queue with per-key dedup, bounded retries and exponential
# backoff. Completed jobs are dropped; jobs that run out of attempts
# are kept as FAILED for inspection.
# ─────────────────────────────────────────────────────────────────
import asyncio
import inspect
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional

import structlog
from asgiref.sync import sync_to_async
from django.db import IntegrityError, close_old_connections
from django.db.models import F
from django.utils import timezone

from .config import BACKOFF_SECONDS, MAX_ATTEMPTS, POLL_INTERVAL, WORKER_CONCURRENCY
from .errors import PersistenceError, wraps_db_errors

log = structlog.get_logger()

PENDING = 'pending'
ACTIVE = 'active'
FAILED = 'failed'
RETRYING = 'retrying'


@dataclass
class Job:
    id: str  # dedup key
    topic: str
    payload: dict
    max_attempts: int = MAX_ATTEMPTS
    backoff_delay: float = BACKOFF_SECONDS
    attempts_made: int = 0
    status: str = PENDING
    available_at: Optional[datetime] = None
    last_error: str = ''
    pk: Optional[int] = None


Handler = Callable[[Job], Awaitable[Any]]


def retry_delay(attempts_made: int, base: float) -> float:
    """Seconds to wait after the given attempt: base, 2×base, 4×base..."""
    return base * 2 ** max(attempts_made - 1, 0)


async def _notify(callback, *args):
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        log.error("queue.callback_failed", callback=getattr(callback, '__name__', ''), error=str(e))


class BaseQueue(ABC):

    @abstractmethod
    async def enqueue(self, topic: str, payload: dict, *, dedup_key: str,
                      max_attempts: int = MAX_ATTEMPTS,
                      backoff_delay: float = BACKOFF_SECONDS) -> bool:
        """Add a job. No-op returning False while a job with the same
        dedup key is pending or active."""

    @abstractmethod
    async def claim(self, topic: str, now: datetime) -> Optional[Job]:
        """Take the next due pending job, mark it active, count the attempt."""

    @abstractmethod
    async def complete(self, job: Job):
        pass

    @abstractmethod
    async def fail(self, job: Job, error: str, *, retryable: bool, now: datetime) -> str:
        """Returns RETRYING if the job was rescheduled, else FAILED."""

    @abstractmethod
    async def get_job(self, dedup_key: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def failed_jobs(self, topic: str) -> List[Job]:
        pass

    async def reset_connections(self):
        """Called after a failed claim, before polling again."""

    async def consume(
        self,
        topic: str,
        handler: Handler,
        concurrency: int = WORKER_CONCURRENCY,
        *,
        poll_interval: float = POLL_INTERVAL,
        stop_event: asyncio.Event = None,
        stop_when_idle: bool = False,
        on_completed: Callable = None,
        on_failed: Callable = None,
    ):
        """
        Run `handler` over jobs of `topic`, at most `concurrency` at once.

        A slow or failing job only holds its own slot. Returns when
        `stop_event` is set (after in-flight jobs finish), or with
        `stop_when_idle` once nothing is running and nothing is due.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        stop_event = stop_event or asyncio.Event()
        running = set()
        log.info("queue.consume", topic=topic, concurrency=concurrency)

        while not stop_event.is_set():
            if len(running) >= concurrency:
                await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                continue

            try:
                job = await self.claim(topic, timezone.now())
            except PersistenceError as e:
                log.error("queue.claim_failed", topic=topic, error=str(e))
                await self.reset_connections()
                try:
                    await asyncio.wait_for(stop_event.wait(), poll_interval)
                except asyncio.TimeoutError:
                    pass
                continue

            if job is not None:
                task = asyncio.create_task(
                    self._process(job, handler, on_completed, on_failed)
                )
                running.add(task)
                task.add_done_callback(running.discard)
                continue

            if stop_when_idle and not running:
                break

            if running:
                await asyncio.wait(running, timeout=poll_interval,
                                   return_when=asyncio.FIRST_COMPLETED)
            else:
                try:
                    await asyncio.wait_for(stop_event.wait(), poll_interval)
                except asyncio.TimeoutError:
                    pass

        if running:
            await asyncio.gather(*running, return_exceptions=True)
        log.info("queue.stopped", topic=topic)

    async def _process(self, job: Job, handler: Handler, on_completed, on_failed):
        try:
            result = await handler(job)
        except Exception as e:
            error = str(e) or e.__class__.__name__
            retryable = getattr(e, 'retryable', True)
            try:
                status = await self.fail(job, error, retryable=retryable, now=timezone.now())
            except PersistenceError as pe:
                log.error("job.fail_not_recorded", job_id=job.id, error=str(pe))
                return

            if status == FAILED:
                log.error("job.failed",
                          job_id=job.id,
                          topic=job.topic,
                          attempts=job.attempts_made,
                          retryable=retryable,
                          error=error)
                if on_failed:
                    await _notify(on_failed, job, e)
            else:
                log.warning("job.retrying",
                            job_id=job.id,
                            attempt=job.attempts_made,
                            max_attempts=job.max_attempts,
                            error=error)
            return

        try:
            await self.complete(job)
        except PersistenceError as e:
            log.error("job.complete_not_recorded", job_id=job.id, error=str(e))
            return

        log.info("job.completed", job_id=job.id, topic=job.topic, attempts=job.attempts_made)
        if on_completed:
            await _notify(on_completed, job, result)


class InMemoryQueue(BaseQueue):
    """Single-process queue. Same dedup and retry rules as DatabaseQueue."""

    def __init__(self):
        self._lock = asyncio.Lock()
        self._open: Dict[str, Job] = {}
        self._failed: Dict[str, Job] = {}
        self._seq = itertools.count()
        self._order: Dict[str, int] = {}
        self.completed_count = 0

    async def enqueue(self, topic, payload, *, dedup_key,
                      max_attempts=MAX_ATTEMPTS, backoff_delay=BACKOFF_SECONDS) -> bool:
        async with self._lock:
            if dedup_key in self._open:
                return False
            self._open[dedup_key] = Job(
                id=dedup_key,
                topic=topic,
                payload=dict(payload),
                max_attempts=max_attempts,
                backoff_delay=backoff_delay,
                available_at=timezone.now(),
            )
            self._order[dedup_key] = next(self._seq)
            return True

    async def claim(self, topic, now) -> Optional[Job]:
        async with self._lock:
            due = [
                j for j in self._open.values()
                if j.topic == topic and j.status == PENDING and j.available_at <= now
            ]
            if not due:
                return None
            job = min(due, key=lambda j: (j.available_at, self._order[j.id]))
            job.status = ACTIVE
            job.attempts_made += 1
            return job

    async def complete(self, job):
        async with self._lock:
            self._open.pop(job.id, None)
            self._order.pop(job.id, None)
            self.completed_count += 1

    async def fail(self, job, error, *, retryable, now) -> str:
        async with self._lock:
            job.last_error = error
            if retryable and job.attempts_made < job.max_attempts:
                job.status = PENDING
                job.available_at = now + timedelta(
                    seconds=retry_delay(job.attempts_made, job.backoff_delay)
                )
                return RETRYING

            job.status = FAILED
            self._open.pop(job.id, None)
            self._order.pop(job.id, None)
            self._failed[job.id] = job
            return FAILED

    async def get_job(self, dedup_key) -> Optional[Job]:
        return self._open.get(dedup_key) or self._failed.get(dedup_key)

    async def failed_jobs(self, topic) -> List[Job]:
        return [j for j in self._failed.values() if j.topic == topic]

    def open_count(self, topic: str = None) -> int:
        return sum(1 for j in self._open.values() if topic is None or j.topic == topic)


class DatabaseQueue(BaseQueue):
    """
    Queue on the `refresh_jobs` table, shared by every worker process.

    Dedup is the partial unique constraint on open rows. Claims are a
    conditional UPDATE from pending to active, so two workers can never
    both win the same row. Active rows untouched for `stalled_after`
    (crashed worker) go back to pending.

    There is no heartbeat: `stalled_after` must exceed the longest a
    handler can run, or a live job is reclaimed and runs twice. The
    first holder's complete or fail is then a no-op, since both only
    touch the row while it is still active at the attempt they claimed.
    """

    def __init__(self, stalled_after: timedelta = timedelta(minutes=10), claim_batch: int = 10):
        self.stalled_after = stalled_after
        self.claim_batch = claim_batch

    async def reset_connections(self):
        await sync_to_async(close_old_connections)()

    @staticmethod
    def _to_job(row) -> Job:
        return Job(
            id=row.dedup_key,
            topic=row.topic,
            payload=row.payload,
            max_attempts=row.max_attempts,
            backoff_delay=row.backoff_delay,
            attempts_made=row.attempts_made,
            status=row.status,
            available_at=row.available_at,
            last_error=row.last_error,
            pk=row.pk,
        )

    @staticmethod
    def _held(job: Job):
        """The job's row, only while still active at the claimed attempt."""
        from cells.models import RefreshJob

        return RefreshJob.objects.filter(
            pk=job.pk, status=ACTIVE, attempts_made=job.attempts_made,
        )

    @wraps_db_errors
    async def enqueue(self, topic, payload, *, dedup_key,
                      max_attempts=MAX_ATTEMPTS, backoff_delay=BACKOFF_SECONDS) -> bool:
        from cells.models import RefreshJob

        try:
            await RefreshJob.objects.acreate(
                topic=topic,
                dedup_key=dedup_key,
                payload=payload,
                max_attempts=max_attempts,
                backoff_delay=backoff_delay,
                available_at=timezone.now(),
            )
        except IntegrityError:
            return False
        return True

    @wraps_db_errors
    async def claim(self, topic, now) -> Optional[Job]:
        from cells.models import RefreshJob

        await self._recover_stalled(topic, now)

        candidates = RefreshJob.objects.filter(
            topic=topic, status=PENDING, available_at__lte=now,
        ).order_by('available_at', 'id').values_list('id', flat=True)

        async for pk in candidates[:self.claim_batch]:
            won = await RefreshJob.objects.filter(pk=pk, status=PENDING).aupdate(
                status=ACTIVE,
                attempts_made=F('attempts_made') + 1,
                updated_at=now,
            )
            if won:
                return self._to_job(await RefreshJob.objects.aget(pk=pk))
        return None

    async def _recover_stalled(self, topic, now):
        from cells.models import RefreshJob

        stalled = RefreshJob.objects.filter(
            topic=topic, status=ACTIVE, updated_at__lt=now - self.stalled_after,
        )
        exhausted = await stalled.filter(attempts_made__gte=F('max_attempts')).aupdate(
            status=FAILED, last_error='stalled', finished_at=now, updated_at=now,
        )
        requeued = await stalled.aupdate(
            status=PENDING, available_at=now, updated_at=now,
        )
        if exhausted or requeued:
            log.warning("queue.stalled", topic=topic, failed=exhausted, requeued=requeued)

    @wraps_db_errors
    async def complete(self, job):
        deleted, _ = await self._held(job).adelete()
        if not deleted:
            log.warning("job.superseded", job_id=job.id, attempt=job.attempts_made)

    @wraps_db_errors
    async def fail(self, job, error, *, retryable, now) -> str:
        job.last_error = error
        row = self._held(job)
        if retryable and job.attempts_made < job.max_attempts:
            job.status = PENDING
            job.available_at = now + timedelta(
                seconds=retry_delay(job.attempts_made, job.backoff_delay)
            )
            await row.aupdate(
                status=PENDING,
                available_at=job.available_at,
                last_error=error,
                updated_at=now,
            )
            return RETRYING

        job.status = FAILED
        await row.aupdate(
            status=FAILED,
            last_error=error,
            finished_at=now,
            updated_at=now,
        )
        return FAILED

    @wraps_db_errors
    async def get_job(self, dedup_key) -> Optional[Job]:
        from cells.models import RefreshJob

        row = await RefreshJob.objects.filter(dedup_key=dedup_key).order_by('-id').afirst()
        return self._to_job(row) if row else None

    @wraps_db_errors
    async def failed_jobs(self, topic) -> List[Job]:
        from cells.models import RefreshJob

        return [
            self._to_job(row) async for row in RefreshJob.objects.filter(
                topic=topic, status=FAILED,
            ).order_by('-finished_at')
        ]
