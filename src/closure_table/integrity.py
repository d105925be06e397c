"""
Set-based audit of closure table invariants.

Each check is a single aggregate query over the relation; nothing is walked
row by row in Python.

Checks:
    missing_self_rows: ids named by any row that have no (id, id, 0) row
    duplicate_pairs:   (ancestor, descendant) pairs stored more than once
    broken_paths:      descendants whose depths are not exactly 0..n-1
    inconsistent_chains: rows (A, D, k > 0) without a matching (A, parent(D), k-1)
    negative_depths:   rows with depth < 0
"""

from typing import Any, Dict, List, Tuple

from sqlalchemy import Table, distinct, exists, func, or_, select, union


def find_missing_self_rows(conn, table: Table, config) -> List[Any]:
    anc = table.c[config.ancestor_column]
    desc = table.c[config.descendant_column]

    nodes = union(
        select(anc.label("node")),
        select(desc.label("node")),
    ).subquery("nodes")

    selfrow = table.alias("selfrow")
    has_self_row = (
        exists()
        .where(selfrow.c[config.ancestor_column] == nodes.c.node)
        .where(selfrow.c[config.descendant_column] == nodes.c.node)
        .where(selfrow.c[config.depth_column] == 0)
    )

    stmt = select(nodes.c.node).where(~has_self_row).order_by(nodes.c.node)
    return [row[0] for row in conn.execute(stmt)]


def find_duplicate_pairs(conn, table: Table, config) -> List[Tuple[Any, Any]]:
    anc = table.c[config.ancestor_column]
    desc = table.c[config.descendant_column]

    stmt = (
        select(anc, desc)
        .group_by(anc, desc)
        .having(func.count() > 1)
        .order_by(anc, desc)
    )
    return [(row[0], row[1]) for row in conn.execute(stmt)]


def find_broken_paths(conn, table: Table, config) -> List[Any]:
    desc = table.c[config.descendant_column]
    depth = table.c[config.depth_column]

    # A descendant's rows must carry the depths 0, 1, ..., n-1 exactly once
    stmt = (
        select(desc)
        .group_by(desc)
        .having(
            or_(
                func.min(depth) != 0,
                func.max(depth) + 1 != func.count(),
                func.count(distinct(depth)) != func.count(),
            )
        )
        .order_by(desc)
    )
    return [row[0] for row in conn.execute(stmt)]


def find_inconsistent_chains(conn, table: Table, config) -> List[Tuple[Any, Any]]:
    link = table.alias("link")
    parent = table.alias("parent_row")
    upper = table.alias("upper_row")

    # (A, D, k) needs a parent P of D with (A, P, k - 1) on file
    has_chain = (
        exists()
        .where(parent.c[config.descendant_column] == link.c[config.descendant_column])
        .where(parent.c[config.depth_column] == 1)
        .where(upper.c[config.ancestor_column] == link.c[config.ancestor_column])
        .where(upper.c[config.descendant_column] == parent.c[config.ancestor_column])
        .where(upper.c[config.depth_column] == link.c[config.depth_column] - 1)
    )

    stmt = (
        select(link.c[config.ancestor_column], link.c[config.descendant_column])
        .where(link.c[config.depth_column] > 0)
        .where(~has_chain)
        .order_by(link.c[config.ancestor_column], link.c[config.descendant_column])
    )
    return [(row[0], row[1]) for row in conn.execute(stmt)]


def count_negative_depths(conn, table: Table, config) -> int:
    depth = table.c[config.depth_column]
    stmt = select(func.count()).select_from(table).where(depth < 0)
    return conn.execute(stmt).scalar() or 0


def audit(conn, table: Table, config) -> Dict[str, Any]:
    """
    Run every invariant check on ``conn``.

    Returns:
        {
            "valid": bool,
            "missing_self_rows": [...],
            "duplicate_pairs": [(ancestor, descendant), ...],
            "broken_paths": [...],
            "inconsistent_chains": [(ancestor, descendant), ...],
            "negative_depths": int,
        }
    """
    report = {
        "missing_self_rows": find_missing_self_rows(conn, table, config),
        "duplicate_pairs": find_duplicate_pairs(conn, table, config),
        "broken_paths": find_broken_paths(conn, table, config),
        "inconsistent_chains": find_inconsistent_chains(conn, table, config),
        "negative_depths": count_negative_depths(conn, table, config),
    }
    report["valid"] = (
        not report["missing_self_rows"]
        and not report["duplicate_pairs"]
        and not report["broken_paths"]
        and not report["inconsistent_chains"]
        and report["negative_depths"] == 0
    )
    return report


__all__ = [
    "audit",
    "find_missing_self_rows",
    "find_duplicate_pairs",
    "find_broken_paths",
    "find_inconsistent_chains",
    "count_negative_depths",
]
