import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sync.config import DEFAULT_STALE_AFTER
from sync.staleness import as_timedelta, is_stale, needs_refresh

TWELVE_HOURS_MS = 12 * 60 * 60 * 1000


@dataclass
class StoredCell:
    id: str
    last_fetched_at: Optional[datetime]


def test_scenario_thirteen_one_and_never(now):
    a = StoredCell('A', now - timedelta(hours=13))
    b = StoredCell('B', now - timedelta(hours=1))
    c = StoredCell('C', None)

    stale = needs_refresh([a, b, c], TWELVE_HOURS_MS, now)

    assert [s.id for s in stale] == ['A', 'C']


def test_threshold_boundary_is_not_stale(now):
    exactly = StoredCell('edge', now - timedelta(hours=12))
    just_over = StoredCell('over', now - timedelta(hours=12, microseconds=1))

    stale = needs_refresh([exactly, just_over], timedelta(hours=12), now)

    assert [s.id for s in stale] == ['over']


def test_randomized_mix_matches_rule(now):
    rng = random.Random(7)
    threshold = timedelta(hours=12)
    cells = []
    for i in range(500):
        if rng.random() < 0.2:
            fetched = None
        else:
            fetched = now - timedelta(minutes=rng.randint(0, 48 * 60))
        cells.append(StoredCell(str(i), fetched))

    stale = {c.id for c in needs_refresh(cells, threshold, now)}
    expected = {
        c.id for c in cells
        if c.last_fetched_at is None or c.last_fetched_at < now - threshold
    }
    assert stale == expected


def test_result_depends_only_on_supplied_now(now):
    cell = StoredCell('x', now - timedelta(hours=6))
    assert needs_refresh([cell], TWELVE_HOURS_MS, now) == []
    assert needs_refresh([cell], TWELVE_HOURS_MS, now + timedelta(hours=7)) == [cell]


def test_threshold_forms():
    assert as_timedelta(None) == DEFAULT_STALE_AFTER == timedelta(hours=12)
    assert as_timedelta(TWELVE_HOURS_MS) == timedelta(hours=12)
    assert as_timedelta(1500.0) == timedelta(seconds=1.5)
    assert as_timedelta(timedelta(minutes=5)) == timedelta(minutes=5)


def test_is_stale_never_fetched(now):
    assert is_stale(None, timedelta(days=365), now)
