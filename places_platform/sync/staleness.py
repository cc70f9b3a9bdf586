# sync/staleness.py
from datetime import datetime, timedelta
from typing import Iterable, List, TypeVar, Union

from .config import DEFAULT_STALE_AFTER

T = TypeVar('T')

StaleAfter = Union[timedelta, int, float]


def as_timedelta(stale_after: StaleAfter) -> timedelta:
    """Accept a timedelta or a threshold in milliseconds."""
    if stale_after is None:
        return DEFAULT_STALE_AFTER
    if isinstance(stale_after, timedelta):
        return stale_after
    return timedelta(milliseconds=stale_after)


def is_stale(last_fetched_at, stale_after: StaleAfter, now: datetime) -> bool:
    if last_fetched_at is None:
        return True
    return last_fetched_at < now - as_timedelta(stale_after)


def needs_refresh(
    cells: Iterable[T],
    stale_after: StaleAfter,
    now: datetime,
) -> List[T]:
    """
    Cells never fetched, or fetched before `now - stale_after`.

    `cells` are stored cell records (anything with `last_fetched_at`).
    `now` always comes from the caller so two processes with skewed
    clocks agree on the answer for the same inputs.
    """
    threshold = as_timedelta(stale_after)
    return [c for c in cells if is_stale(c.last_fetched_at, threshold, now)]
