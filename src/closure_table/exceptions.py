"""
Exception classes for closure table maintenance.

Every error raised by a closure protocol derives from ClosureTableError and
carries the protocol name and the node it was acting on. Database errors are
translated, never swallowed: the driver exception stays reachable through
``__cause__`` (and ``orig`` for the DBAPI-level error).

Hierarchy:
    ClosureTableError
        UniquenessViolation         duplicate (ancestor, descendant) pair
        DanglingReferenceViolation  id missing from the entity table (FK)
        TransactionAbort            any other database failure mid-protocol
        CycleError                  move under the node's own subtree
        ConfigurationError          invalid table/column configuration
"""

import logging
from typing import Any, Optional

from sqlalchemy.exc import DBAPIError, IntegrityError

logger = logging.getLogger(__name__)

# SQLSTATE classes (PostgreSQL, and any driver that exposes sqlstate)
SQLSTATE_UNIQUE_VIOLATION = "23505"
SQLSTATE_FOREIGN_KEY_VIOLATION = "23503"


class ClosureTableError(Exception):
    """
    Base class for closure table errors.

    Attributes:
        operation: Protocol that failed (e.g. "insert_node", "move_node_to")
        node_id: Node the protocol was acting on, if any
        orig: Underlying DBAPI exception for translated database errors
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        node_id: Any = None,
        orig: Optional[BaseException] = None,
    ):
        self.operation = operation
        self.node_id = node_id
        self.orig = orig
        super().__init__(message)


class UniquenessViolation(ClosureTableError):
    """A closure row for an existing (ancestor, descendant) pair was inserted."""


class DanglingReferenceViolation(ClosureTableError):
    """An ancestor or descendant id does not exist in the entity table."""


class TransactionAbort(ClosureTableError):
    """The database rejected a protocol statement; the protocol was rolled back."""


class CycleError(ClosureTableError, ValueError):
    """A node was moved under itself or one of its own descendants."""


class ConfigurationError(ClosureTableError, ValueError):
    """Invalid closure table configuration."""


def _sqlstate(orig: Optional[BaseException]) -> Optional[str]:
    """Extract a SQLSTATE code from a DBAPI exception, when the driver has one."""
    if orig is None:
        return None
    for attr in ("pgcode", "sqlstate"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    diag = getattr(orig, "diag", None)
    code = getattr(diag, "sqlstate", None) if diag is not None else None
    return str(code) if code else None


def translate_db_error(
    exc: DBAPIError,
    operation: str,
    node_id: Any = None,
) -> ClosureTableError:
    """
    Map a SQLAlchemy DBAPIError to the closure error taxonomy.

    SQLSTATE codes are preferred; drivers without them (sqlite3, most MySQL
    drivers) are classified by message text.

    Args:
        exc: The SQLAlchemy exception raised while executing a protocol
        operation: Protocol name, recorded on the returned error
        node_id: Node the protocol was acting on

    Returns:
        A ClosureTableError subclass instance. The caller raises it with
        ``from exc`` so the original stays chained.
    """
    orig = getattr(exc, "orig", None)
    detail = str(orig if orig is not None else exc)
    lowered = detail.lower()
    state = _sqlstate(orig)

    if isinstance(exc, IntegrityError):
        if state == SQLSTATE_UNIQUE_VIOLATION or "unique" in lowered or "duplicate" in lowered:
            error_cls = UniquenessViolation
        elif state == SQLSTATE_FOREIGN_KEY_VIOLATION or "foreign key" in lowered:
            error_cls = DanglingReferenceViolation
        else:
            error_cls = TransactionAbort
    else:
        error_cls = TransactionAbort

    message = f"{operation} failed for node {node_id!r}: {detail}"
    logger.warning("%s (%s)", message, error_cls.__name__)
    return error_cls(message, operation=operation, node_id=node_id, orig=orig)


__all__ = [
    "ClosureTableError",
    "UniquenessViolation",
    "DanglingReferenceViolation",
    "TransactionAbort",
    "CycleError",
    "ConfigurationError",
    "translate_db_error",
]
