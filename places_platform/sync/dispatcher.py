# sync/dispatcher.py
from typing import Sequence

import structlog

from .config import BACKOFF_SECONDS, MAX_ATTEMPTS, REFRESH_TOPIC
from .grid import CellDescriptor
from .queue import BaseQueue

log = structlog.get_logger()


def refresh_dedup_key(cell_id: str) -> str:
    return f"cell:{cell_id}"


class RefreshDispatcher:
    """
    Enqueues one refresh job per cell. The dedup key is derived from the
    cell id alone, so overlapping entities initialized at the same time
    share a single pending or active job per cell.
    """

    def __init__(self, queue: BaseQueue, topic: str = REFRESH_TOPIC,
                 max_attempts: int = MAX_ATTEMPTS,
                 backoff_delay: float = BACKOFF_SECONDS):
        self.queue = queue
        self.topic = topic
        self.max_attempts = max_attempts
        self.backoff_delay = backoff_delay

    async def enqueue_refresh_jobs(self, cells: Sequence[CellDescriptor]) -> int:
        """Returns how many new jobs were created; duplicates are skipped."""
        created = 0
        for cell in cells:
            added = await self.queue.enqueue(
                self.topic,
                {'cell_id': cell.cell_id, 'level': cell.level},
                dedup_key=refresh_dedup_key(cell.cell_id),
                max_attempts=self.max_attempts,
                backoff_delay=self.backoff_delay,
            )
            created += int(added)

        log.info("refresh.enqueued",
                 requested=len(cells),
                 created=created,
                 deduplicated=len(cells) - created)
        return created
