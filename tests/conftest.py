"""
Pytest configuration and shared fixtures for closure table tests.

Every fixture runs against SQLite in-memory for speed.
"""

import sys
from pathlib import Path

import pytest

# Ensure src is in path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from closure_table import ClosureTable


def build_tree(closure, edges, connection=None):
    """
    Insert nodes in order from (parent, child) pairs.

    A parent of None inserts the child as a root.
    """
    for parent, child in edges:
        closure.insert_node(parent, child, connection=connection)


def row_set(closure):
    """Closure rows as a set of plain (ancestor, descendant, depth) tuples."""
    return {tuple(row) for row in closure.rows()}


@pytest.fixture
def closure():
    """Fresh in-memory closure table."""
    closure = ClosureTable(url="sqlite:///:memory:")
    yield closure
    closure.close()


@pytest.fixture
def sample_tree(closure):
    """
    Closure table holding:

        1
        ├── 2
        │   ├── 4
        │   │   └── 6
        │   └── 5
        └── 3
        7
    """
    build_tree(
        closure,
        [(None, 1), (1, 2), (1, 3), (2, 4), (2, 5), (4, 6), (None, 7)],
    )
    return closure
