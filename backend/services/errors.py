from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)


class GymBrosError(Exception):
    """Base class for errors raised by the friend graph, feed and discovery services."""


class NotFound(GymBrosError):
    """Referenced entity does not exist."""


class DuplicateRequest(GymBrosError):
    """A pending request already exists for this sender/recipient pair."""


class AlreadyFriends(GymBrosError):
    pass


class AlreadyResolved(GymBrosError):
    """The friend request was already accepted or rejected."""


class SelfRequest(GymBrosError):
    pass


class InvalidCodeFormat(GymBrosError):
    """Friend codes are exactly four ASCII digits."""


class CodeSpaceExhausted(GymBrosError):
    pass


class TransientError(GymBrosError):
    """The store failed or timed out; the caller may retry with backoff."""

    retryable = True


@contextmanager
def store_call(db: Session, operation: str) -> Iterator[None]:
    """Roll back and re-raise store failures as ``TransientError``.

    Domain errors raised inside the block pass through untouched.
    """
    try:
        yield
    except (OperationalError, PoolTimeoutError) as exc:
        db.rollback()
        logger.warning("Store call %s failed: %s", operation, exc)
        raise TransientError(f"{operation} failed: store unavailable") from exc
    except DBAPIError as exc:
        db.rollback()
        logger.warning("Store call %s failed: %s", operation, exc)
        raise TransientError(f"{operation} failed: {exc.__class__.__name__}") from exc
