# cells/tasks.py
import structlog
from asgiref.sync import async_to_sync

from sync.config import SyncConfig
from sync.dispatcher import RefreshDispatcher
from sync.pipeline import GridInitResult, GridSyncService
from sync.provider import PlaceSearchClient
from sync.queue import BaseQueue, DatabaseQueue
from sync.store import CellStore, PlaceStore
from sync.worker import RefreshWorker, RefreshWorkerPool

log = structlog.get_logger()


def build_grid_service(config: SyncConfig = None, queue: BaseQueue = None) -> GridSyncService:
    config = config or SyncConfig.from_settings()
    dispatcher = RefreshDispatcher(
        queue or DatabaseQueue(),
        max_attempts=config.max_attempts,
        backoff_delay=config.backoff_seconds,
    )
    return GridSyncService(CellStore(), dispatcher, config)


def build_worker_pool(config: SyncConfig = None, queue: BaseQueue = None,
                      provider=None) -> RefreshWorkerPool:
    config = config or SyncConfig.from_settings()
    worker = RefreshWorker(
        CellStore(),
        PlaceStore(),
        provider or PlaceSearchClient(config.api_key, timeout=config.http_timeout),
        page_cap=config.page_cap,
    )
    return RefreshWorkerPool(
        queue or DatabaseQueue(),
        worker,
        concurrency=config.worker_concurrency,
        poll_interval=config.poll_interval,
    )


def start_refresh_workers(config: SyncConfig = None) -> RefreshWorkerPool:
    """
    Starts one refresh pool in a background thread.
    Run several processes for more throughput; they share the queue table.
    """
    config = config or SyncConfig.from_settings()
    if not config.api_key:
        log.warning("workers.no_api_key", message="GOOGLE_PLACES_API_KEY is not set")

    pool = build_worker_pool(config)
    pool.start_in_thread()
    log.info("workers.started", concurrency=config.worker_concurrency)
    return pool


def initialize_grid(entity_id: str, center, radius_m: float,
                    level: int = None, stale_after=None) -> GridInitResult:
    """Blocking entry point for entity creation code (views, signals)."""
    service = build_grid_service()
    return async_to_sync(service.initialize_grid)(
        entity_id, center, radius_m, level=level, stale_after=stale_after,
    )
