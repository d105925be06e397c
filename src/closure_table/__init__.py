"""
Closure table maintenance for tree-structured data.

A closure table stores every (ancestor, descendant, depth) triple of a forest,
so ancestor, descendant and depth lookups are single indexed queries. This
package keeps that relation consistent under insert, move and detach using
set-based SQL only.

    Tree:  1 -> 2 -> 3

    ancestor | descendant | depth
    ---------|------------|------
    1        | 1          | 0
    1        | 2          | 1
    1        | 3          | 2
    2        | 2          | 0
    2        | 3          | 1
    3        | 3          | 0

Example:
    >>> from closure_table import ClosureTable, ClosureTableConfig
    >>>
    >>> closure = ClosureTable(
    ...     url="sqlite:///:memory:",
    ...     config=ClosureTableConfig(table_name="category_closure"),
    ... )
    >>> closure.insert_node(None, 1)
    1
    >>> closure.insert_node(1, 2)
    2
    >>> closure.move_node_to(2, None)
    True
"""

from .config import (
    ClosureTableConfig,
    load_closure_config,
    parse_closure_config,
    resolve_closure_config,
)
from .exceptions import (
    ClosureTableError,
    ConfigurationError,
    CycleError,
    DanglingReferenceViolation,
    TransactionAbort,
    UniquenessViolation,
)
from .manager import UNSET, ClosureTable
from .schema import ClosureRow, build_closure_table

__version__ = "0.1.0"

__all__ = [
    "ClosureTable",
    "ClosureTableConfig",
    "ClosureRow",
    "UNSET",
    "build_closure_table",
    "load_closure_config",
    "parse_closure_config",
    "resolve_closure_config",
    "ClosureTableError",
    "ConfigurationError",
    "CycleError",
    "DanglingReferenceViolation",
    "TransactionAbort",
    "UniquenessViolation",
]
