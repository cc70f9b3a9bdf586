# sync/worker.py
import asyncio
import threading
from dataclasses import dataclass
from datetime import datetime

import structlog
from django.utils import timezone

from .config import PROVIDER_PAGE_CAP, REFRESH_TOPIC, WORKER_CONCURRENCY, POLL_INTERVAL
from .errors import ValidationError
from .queue import BaseQueue, Job
from .store import CellStore, PlaceStore

log = structlog.get_logger()


@dataclass(frozen=True)
class RefreshResult:
    cell_id: str
    fetched: int
    inserted: int
    hit_cap: bool


class RefreshWorker:
    """
    Fetches one cell's places and merges them in.

    Safe under redelivery: places are insert-if-absent, so re-running a
    job whose metadata update failed only catches up that update.
    """

    def __init__(self, cell_store: CellStore, place_store: PlaceStore, provider,
                 page_cap: int = PROVIDER_PAGE_CAP, clock=timezone.now):
        self.cell_store = cell_store
        self.place_store = place_store
        self.provider = provider
        self.page_cap = page_cap
        self.clock = clock

    async def refresh_cell(self, cell_id: str, now: datetime = None) -> RefreshResult:
        log.info("cell.refresh.start", cell_id=cell_id)

        # NotFoundError here is terminal for the job
        cell = await self.cell_store.get_cell(cell_id)

        places = await self.provider.nearby_search(
            cell.center_lat, cell.center_lng, cell.query_radius_m,
        )

        inserted = 0
        for place in places:
            _, created = await self.place_store.upsert_by_external_id(place)
            inserted += int(created)

        hit_cap = await self.cell_store.mark_fetched(
            cell_id, len(places), now or self.clock(), self.page_cap,
        )

        log.info("cell.refresh.done",
                 cell_id=cell_id,
                 fetched=len(places),
                 inserted=inserted,
                 hit_cap=hit_cap)
        return RefreshResult(cell_id, len(places), inserted, hit_cap)

    async def handle(self, job: Job) -> RefreshResult:
        cell_id = job.payload.get('cell_id')
        if not cell_id:
            raise ValidationError(f"job {job.id} has no cell_id")
        return await self.refresh_cell(cell_id)


class RefreshWorkerPool:
    """
    Fixed-size pool consuming refresh jobs. Several pools (threads or
    processes) can consume the same DatabaseQueue; each is bounded by its
    own `concurrency`.
    """

    def __init__(self, queue: BaseQueue, worker: RefreshWorker,
                 concurrency: int = WORKER_CONCURRENCY,
                 topic: str = REFRESH_TOPIC,
                 poll_interval: float = POLL_INTERVAL):
        self.queue = queue
        self.worker = worker
        self.concurrency = concurrency
        self.topic = topic
        self.poll_interval = poll_interval
        self._stop = None
        self._loop = None
        self._stop_requested = False
        self.thread = None

    async def run(self, stop_when_idle: bool = False):
        self._stop = asyncio.Event()
        self._loop = asyncio.get_running_loop()
        if self._stop_requested:
            self._stop.set()
        log.info("pool.started", topic=self.topic, concurrency=self.concurrency)
        await self.queue.consume(
            self.topic,
            self.worker.handle,
            self.concurrency,
            poll_interval=self.poll_interval,
            stop_event=self._stop,
            stop_when_idle=stop_when_idle,
            on_completed=self._on_completed,
            on_failed=self._on_failed,
        )

    def stop(self):
        """Ask the pool to finish in-flight jobs and return. Thread safe,
        and remembered if the pool has not started running yet."""
        self._stop_requested = True
        if self._loop is not None and self._stop is not None:
            self._loop.call_soon_threadsafe(self._stop.set)

    def start_in_thread(self) -> threading.Thread:
        """Run the pool on its own event loop in a daemon thread."""
        def run_in_thread():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            try:
                loop.run_until_complete(self.run())
            except Exception as e:
                log.error("pool.crashed", topic=self.topic, error=str(e))
                raise
            finally:
                loop.run_until_complete(self._close_provider())
                loop.close()

        self.thread = threading.Thread(target=run_in_thread, daemon=True)
        self.thread.start()
        return self.thread

    async def _close_provider(self):
        close = getattr(self.worker.provider, 'close', None)
        if close is not None:
            await close()

    @staticmethod
    def _on_completed(job: Job, result: RefreshResult):
        log.info("pool.job.completed",
                 job_id=job.id,
                 cell_id=job.payload.get('cell_id'),
                 fetched=result.fetched,
                 hit_cap=result.hit_cap)

    @staticmethod
    def _on_failed(job: Job, error: Exception):
        log.error("pool.job.failed",
                  job_id=job.id,
                  cell_id=job.payload.get('cell_id'),
                  attempts=job.attempts_made,
                  error=str(error))
