# sync/errors.py
import functools

import structlog
from django.db import Error as DjangoDBError

log = structlog.get_logger()


class SyncError(Exception):
    """Base class for place sync failures. `retryable` tells the queue
    consumer whether another delivery attempt can succeed."""
    retryable = True


class NotFoundError(SyncError):
    """Referenced cell or entity is missing. A retry will not make it appear."""
    retryable = False


class ValidationError(SyncError):
    """Malformed geometry or radius input, rejected before any I/O."""
    retryable = False


class TransientProviderError(SyncError):
    """Network or provider-side failure while searching places."""


class ProviderStatusError(TransientProviderError):
    """Provider answered with a status other than OK / ZERO_RESULTS."""

    def __init__(self, status: str, message: str = ''):
        self.status = status
        super().__init__(
            f"Places API error: {status}" + (f" ({message})" if message else '')
        )


class PersistenceError(SyncError):
    """Cell, place or queue store unavailable."""


def wraps_db_errors(fn):
    """Surface database failures from an async store method as
    PersistenceError so the queue retries the job. Covers InterfaceError
    (closed connection), which is not a DatabaseError."""
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except DjangoDBError as e:
            log.error("store.failed", op=fn.__name__, error=str(e))
            raise PersistenceError(f"{fn.__name__}: {e}") from e
    return wrapper
