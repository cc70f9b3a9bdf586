# sync/store.py
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from cells.models import EntityCell, GridCell, Place
from .errors import NotFoundError, ValidationError, wraps_db_errors
from .grid import CellDescriptor
from .staleness import StaleAfter, needs_refresh

log = structlog.get_logger()


def _chunks(items: Sequence, size: int):
    for i in range(0, len(items), size):
        yield items[i:i + size]


def describe(cell: GridCell) -> CellDescriptor:
    return CellDescriptor(
        cell_id=cell.id,
        level=cell.level,
        center_lat=cell.center_lat,
        center_lng=cell.center_lng,
        query_radius_m=cell.query_radius_m,
    )


class CellStore:
    """
    Grid cell rows and entity links.

    Cells are shared across entities, so every write here is
    insert-if-absent: two overlapping grid initializations never reset
    each other's fetch metadata.
    """

    def __init__(self, batch_size: int = 500):
        self.batch_size = batch_size

    @wraps_db_errors
    async def upsert_cells(self, cells: Sequence[CellDescriptor]) -> int:
        if not cells:
            return 0

        await GridCell.objects.abulk_create(
            [GridCell(
                id=c.cell_id,
                level=c.level,
                center_lat=c.center_lat,
                center_lng=c.center_lng,
                query_radius_m=c.query_radius_m,
                last_fetched_at=None,
                result_count_last_fetch=None,
                hit_cap_last_fetch=None,
            ) for c in cells],
            ignore_conflicts=True,
            batch_size=self.batch_size,
        )
        log.info("cells.upserted", submitted=len(cells))
        return len(cells)

    @wraps_db_errors
    async def get_cell(self, cell_id: str) -> GridCell:
        try:
            return await GridCell.objects.aget(id=cell_id)
        except GridCell.DoesNotExist:
            raise NotFoundError(f"Cell {cell_id} not found")

    @wraps_db_errors
    async def get_cells(self, cell_ids: Iterable[str]) -> Dict[str, GridCell]:
        ids = list(dict.fromkeys(cell_ids))
        found = {}
        for chunk in _chunks(ids, self.batch_size):
            async for cell in GridCell.objects.filter(id__in=chunk):
                found[cell.id] = cell
        return found

    async def cells_needing_refresh(
        self,
        cells: Sequence[CellDescriptor],
        stale_after: StaleAfter,
        now: datetime,
    ) -> List[CellDescriptor]:
        """
        Subset of `cells` whose stored row was never fetched or is older
        than `stale_after`. Input order is kept. A descriptor with no
        stored row counts as never fetched.
        """
        if not cells:
            return []

        stored = await self.get_cells(c.cell_id for c in cells)
        stale_ids = {
            row.id for row in needs_refresh(stored.values(), stale_after, now)
        }
        return [
            describe(stored[c.cell_id]) if c.cell_id in stored else c
            for c in cells
            if c.cell_id not in stored or c.cell_id in stale_ids
        ]

    @wraps_db_errors
    async def mark_fetched(
        self,
        cell_id: str,
        result_count: int,
        now: datetime,
        page_cap: int,
    ) -> bool:
        """Record a completed fetch. Returns the hit-cap flag."""
        hit_cap = result_count == page_cap
        updated = await GridCell.objects.filter(id=cell_id).aupdate(
            last_fetched_at=now,
            result_count_last_fetch=result_count,
            hit_cap_last_fetch=hit_cap,
            updated_at=now,
        )
        if not updated:
            raise NotFoundError(f"Cell {cell_id} not found")
        return hit_cap

    @wraps_db_errors
    async def link_entity_to_cells(self, entity_id: str, cell_ids: Sequence[str]) -> int:
        if not entity_id:
            raise ValidationError("entity_id is required")
        if not cell_ids:
            return 0

        await EntityCell.objects.abulk_create(
            [EntityCell(entity_id=entity_id, cell_id=cid) for cid in cell_ids],
            ignore_conflicts=True,
            batch_size=self.batch_size,
        )
        log.info("cells.linked", entity_id=entity_id, cells=len(cell_ids))
        return len(cell_ids)

    @wraps_db_errors
    async def cells_for_entity(self, entity_id: str) -> List[GridCell]:
        return [
            cell async for cell in GridCell.objects.filter(
                entity_links__entity_id=entity_id
            ).order_by('id')
        ]


class PlaceStore:
    """Places keyed by provider id. Refresh never overwrites a stored place."""

    @wraps_db_errors
    async def upsert_by_external_id(self, place) -> Tuple[Place, bool]:
        """
        Insert `place` (a ProviderPlace) unless a row with its external id
        exists. Returns (stored place, created).
        """
        return await Place.objects.aget_or_create(
            external_id=place.external_id,
            defaults={
                'name': place.name[:500],
                'address': place.address or '',
                'latitude': Decimal(str(round(place.lat, 7))),
                'longitude': Decimal(str(round(place.lng, 7))),
                'categories': list(place.categories),
                'rating': (
                    Decimal(str(round(place.rating, 2)))
                    if place.rating is not None else None
                ),
                'review_count': place.review_count or 0,
            },
        )

    @wraps_db_errors
    async def get_by_external_id(self, external_id: str) -> Optional[Place]:
        return await Place.objects.filter(external_id=external_id).afirst()

    @wraps_db_errors
    async def get_by_id(self, place_id: int) -> Optional[Place]:
        return await Place.objects.filter(id=place_id).afirst()
