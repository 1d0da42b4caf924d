"""
shared/errors.py
Domain error taxonomy shared by every core operation, plus the
store-timeout guard that turns slow or broken store calls into a
retryable failure.
"""

import asyncio
import functools
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError

from config.settings import settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DomainError(Exception):
    """Base class. Carries the HTTP status the API layer renders it with."""

    status_code: int = 400
    code: str = "domain_error"
    retryable: bool = False

    def __init__(self, message: str, *, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(DomainError):
    """Malformed input. Raised before any store access."""
    status_code = 400
    code = "validation_error"


class PermissionDeniedError(DomainError):
    status_code = 403
    code = "permission_denied"


class NotFoundError(DomainError):
    status_code = 404
    code = "not_found"


class ConflictError(DomainError):
    """Overlapping booking, concurrent winner, or incompatible request state."""
    status_code = 409
    code = "conflict"


class InvalidTransitionError(DomainError):
    """Status change not allowed from the current status."""
    status_code = 409
    code = "invalid_transition"

    def __init__(self, entity: str, current: Any, target: Any):
        current_value = getattr(current, "value", current)
        target_value = getattr(target, "value", target)
        super().__init__(f"Cannot move {entity} from '{current_value}' to '{target_value}'")
        self.current = current_value
        self.target = target_value


class StoreTimeoutError(DomainError):
    """The store did not answer in time. Outcome of the attempt is unknown."""
    status_code = 503
    code = "store_unavailable"
    retryable = True
    retry_after_seconds = 2


def bounded_store_call(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
    """
    Run a core operation under STORE_TIMEOUT_SECONDS.
    Timeouts, pool exhaustion and dropped connections surface as StoreTimeoutError.
    """

    @functools.wraps(func)
    async def wrapper(*args, **kwargs) -> T:
        try:
            return await asyncio.wait_for(
                func(*args, **kwargs), timeout=settings.STORE_TIMEOUT_SECONDS
            )
        except asyncio.TimeoutError as exc:
            logger.warning(f"{func.__qualname__} timed out after {settings.STORE_TIMEOUT_SECONDS}s")
            raise StoreTimeoutError("The data store did not respond in time. Please retry.") from exc
        except (OperationalError, PoolTimeoutError) as exc:
            logger.error(f"{func.__qualname__} store failure: {exc}")
            raise StoreTimeoutError("The data store is temporarily unavailable. Please retry.") from exc

    return wrapper
