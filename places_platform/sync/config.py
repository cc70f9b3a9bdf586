# sync/config.py
from dataclasses import dataclass, field
from datetime import timedelta

# ── DEFAULTS ───────────────────────────────────────────────────────
# H3 level 10 hexagons have ~76m edges
DEFAULT_H3_LEVEL = 10
DEFAULT_STALE_AFTER = timedelta(hours=12)
# One Places query per cell, radius sized generously over the hex footprint
CELL_QUERY_RADIUS_M = 1000
# Nearby Search returns at most 20 results per page
PROVIDER_PAGE_CAP = 20

REFRESH_TOPIC = 'sync-places:refresh-cell'
WORKER_CONCURRENCY = 5
MAX_ATTEMPTS = 3
BACKOFF_SECONDS = 1.0
POLL_INTERVAL = 0.5
HTTP_TIMEOUT = 10.0


@dataclass(frozen=True)
class SyncConfig:
    api_key: str = ''
    h3_level: int = DEFAULT_H3_LEVEL
    stale_after: timedelta = field(default=DEFAULT_STALE_AFTER)
    query_radius_m: int = CELL_QUERY_RADIUS_M
    page_cap: int = PROVIDER_PAGE_CAP
    worker_concurrency: int = WORKER_CONCURRENCY
    max_attempts: int = MAX_ATTEMPTS
    backoff_seconds: float = BACKOFF_SECONDS
    poll_interval: float = POLL_INTERVAL
    http_timeout: float = HTTP_TIMEOUT

    @classmethod
    def from_settings(cls, overrides: dict = None) -> 'SyncConfig':
        """Build from settings.PLACES_SYNC, falling back to the defaults
        above for any missing key."""
        from django.conf import settings

        values = dict(getattr(settings, 'PLACES_SYNC', {}))
        values.update(overrides or {})

        stale_hours = values.get('STALE_AFTER_HOURS')
        return cls(
            api_key=values.get('GOOGLE_PLACES_API_KEY', ''),
            h3_level=int(values.get('H3_LEVEL', DEFAULT_H3_LEVEL)),
            stale_after=(
                timedelta(hours=float(stale_hours))
                if stale_hours is not None else DEFAULT_STALE_AFTER
            ),
            query_radius_m=int(values.get('QUERY_RADIUS_M', CELL_QUERY_RADIUS_M)),
            page_cap=int(values.get('PAGE_CAP', PROVIDER_PAGE_CAP)),
            worker_concurrency=int(values.get('WORKER_CONCURRENCY', WORKER_CONCURRENCY)),
            max_attempts=int(values.get('MAX_ATTEMPTS', MAX_ATTEMPTS)),
            backoff_seconds=float(values.get('BACKOFF_SECONDS', BACKOFF_SECONDS)),
            poll_interval=float(values.get('POLL_INTERVAL', POLL_INTERVAL)),
            http_timeout=float(values.get('HTTP_TIMEOUT', HTTP_TIMEOUT)),
        )
