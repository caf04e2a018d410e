"""Classification of storage-layer failures.

Callers decide how to recover from a failed statement by its kind, not by
reading driver messages. Where a driver error is ambiguous (an IntegrityError
may be a duplicate key or some other constraint) the caller supplies the
result of an explicit existence probe.
"""

from enum import Enum
from typing import Optional

from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    OperationalError,
)


class StorageErrorKind(str, Enum):
    """Kinds of storage failure the store knows how to react to"""

    DUPLICATE_KEY = "duplicate_key"
    ALREADY_EXISTS = "already_exists"
    CONNECTION = "connection"
    INTEGRITY = "integrity"
    UNEXPECTED = "unexpected"


def classify_storage_error(exc: BaseException, exists: Optional[bool] = None) -> StorageErrorKind:
    """
    Classify a storage exception.

    Args:
        exc: The exception raised by the storage layer
        exists: Result of an existence probe run after the failure, if any.
            For an IntegrityError this distinguishes a primary-key collision
            from other constraint violations; for DDL it identifies a table
            that was created concurrently.

    Returns:
        The StorageErrorKind for the failure
    """
    if isinstance(exc, IntegrityError):
        return StorageErrorKind.DUPLICATE_KEY if exists else StorageErrorKind.INTEGRITY
    if exists:
        return StorageErrorKind.ALREADY_EXISTS
    if isinstance(exc, DisconnectionError):
        return StorageErrorKind.CONNECTION
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return StorageErrorKind.CONNECTION
    if isinstance(exc, OperationalError):
        return StorageErrorKind.CONNECTION
    return StorageErrorKind.UNEXPECTED
