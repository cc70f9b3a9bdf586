# sync/pipeline.py
# ─────────────────────────────────────────────────────────────────
# GRID INITIALIZATION
#
# entity area → covering cells → insert-if-absent → link entity
#             → stale subset → deduplicated refresh jobs
#
# Each step is idempotent on its own, so calling again with the same
# inputs repairs an interrupted run without side effects.
# ─────────────────────────────────────────────────────────────────
from dataclasses import dataclass
from datetime import datetime
from typing import Tuple

import structlog
from django.utils import timezone

from .config import SyncConfig
from .dispatcher import RefreshDispatcher
from .errors import ValidationError
from .grid import covering_cells, validate_area
from .staleness import StaleAfter
from .store import CellStore

log = structlog.get_logger()


@dataclass(frozen=True)
class GridInitResult:
    total_cells: int
    stale_cells: int


class GridSyncService:

    def __init__(self, cell_store: CellStore, dispatcher: RefreshDispatcher,
                 config: SyncConfig = None):
        self.cell_store = cell_store
        self.dispatcher = dispatcher
        self.config = config or SyncConfig()

    async def initialize_grid(
        self,
        entity_id: str,
        center: Tuple[float, float],
        radius_m: float,
        level: int = None,
        stale_after: StaleAfter = None,
        now: datetime = None,
    ) -> GridInitResult:
        """
        Make sure place data covering `radius_m` around `center` exists or
        is on its way for `entity_id`.

        Returns as soon as refresh jobs are queued; whether they later
        succeed is visible on the queue only.
        """
        level = self.config.h3_level if level is None else level
        stale_after = self.config.stale_after if stale_after is None else stale_after
        if not entity_id:
            raise ValidationError("entity_id is required")
        validate_area(center, radius_m, level)

        # 1. Compute covering cells
        cells = covering_cells(center, radius_m, level, self.config.query_radius_m)
        log.info("grid.init.cells", entity_id=entity_id, cell_count=len(cells))

        # 2. Insert the ones we have never seen
        await self.cell_store.upsert_cells(cells)

        # 3. Link entity to every covering cell
        await self.cell_store.link_entity_to_cells(entity_id, [c.cell_id for c in cells])

        # 4. Stale subset of the same set
        stale = await self.cell_store.cells_needing_refresh(
            cells, stale_after, now or timezone.now(),
        )
        log.info("grid.init.stale", entity_id=entity_id, stale_count=len(stale))

        # 5. Queue refreshes
        if stale:
            await self.dispatcher.enqueue_refresh_jobs(stale)

        return GridInitResult(total_cells=len(cells), stale_cells=len(stale))
