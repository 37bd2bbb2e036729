"""Error taxonomy for the core.

Every error carries an explicit kind tag set where it is raised, so retry
decisions and audit categories never depend on parsing message text.
"""

from __future__ import annotations

import asyncio
import sqlite3
from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    NETWORK = "network"
    TIMEOUT = "timeout"
    DATABASE = "database"
    PERMISSION = "permission"
    APPLICATION = "application"
    VALIDATION = "validation"


class CaptionSyncError(Exception):
    """Base class for errors raised by the core."""

    kind: ErrorKind = ErrorKind.APPLICATION
    retryable: bool = True

    def __init__(self, message: str, kind: Optional[ErrorKind] = None) -> None:
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class ValidationError(CaptionSyncError):
    """Missing or malformed input. Rejected immediately and never retried."""

    kind = ErrorKind.VALIDATION
    retryable = False


class NoSourceAvailable(CaptionSyncError):
    """No group member qualifies as the canonical source."""

    retryable = False

    def __init__(self, group_id: str, reason: str = "no completed member with analyzed content") -> None:
        super().__init__(f"No source available for media group {group_id}: {reason}")
        self.group_id = group_id
        self.reason = reason


class TransientFailure(CaptionSyncError):
    """Network-shaped failure that is worth retrying."""

    kind = ErrorKind.NETWORK


class OperationTimeout(TransientFailure):
    kind = ErrorKind.TIMEOUT

    def __init__(self, operation: str, timeout_ms: float) -> None:
        super().__init__(f"{operation} timed out after {timeout_ms:g}ms")
        self.operation = operation
        self.timeout_ms = timeout_ms


class StoreError(CaptionSyncError):
    """A message store or audit store call failed."""

    kind = ErrorKind.DATABASE


class PersistenceFailure(CaptionSyncError):
    """A store write still failed after the retry budget was spent."""

    kind = ErrorKind.DATABASE
    retryable = False

    def __init__(self, message: str, attempts: int, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


# Substring fallback for foreign exceptions that carry no tag. Advisory only.
_KIND_HINTS = (
    (ErrorKind.NETWORK, ("fetch failed", "network", "econnrefused", "etimedout", "connection")),
    (ErrorKind.TIMEOUT, ("timeout", "timed out")),
    (ErrorKind.DATABASE, ("database", "sql", "query", "constraint")),
    (ErrorKind.PERMISSION, ("permission", "unauthorized", "access denied", "forbidden")),
)


def classify_error(error: BaseException) -> ErrorKind:
    """Return the error kind for any exception."""

    if isinstance(error, CaptionSyncError):
        return error.kind
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return ErrorKind.TIMEOUT
    if isinstance(error, ConnectionError):
        return ErrorKind.NETWORK
    if isinstance(error, PermissionError):
        return ErrorKind.PERMISSION
    if isinstance(error, sqlite3.Error):
        return ErrorKind.DATABASE

    text = str(error).lower()
    for kind, hints in _KIND_HINTS:
        if any(hint in text for hint in hints):
            return kind
    return ErrorKind.APPLICATION


def is_retryable(error: BaseException) -> bool:
    """Foreign exceptions are assumed transient; tagged ones decide for themselves."""

    if isinstance(error, CaptionSyncError):
        return error.retryable
    return True
