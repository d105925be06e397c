"""
Closure table schema.

Builds the SQLAlchemy Table backing the closure relation:

    closure_id | ancestor | descendant | depth
    -----------|----------|------------|------
    1          | 1        | 1          | 0
    2          | 1        | 2          | 1
    3          | 2        | 2          | 0

The surrogate primary key is never used by the protocols; the logical key is
the (ancestor, descendant) pair, enforced by a unique constraint.
"""

from typing import Any, NamedTuple

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    UniqueConstraint,
)

from .config import ClosureTableConfig


class ClosureRow(NamedTuple):
    """One closure row under its logical column names."""

    ancestor: Any
    descendant: Any
    depth: int

    @property
    def is_self_row(self) -> bool:
        return self.depth == 0 and self.ancestor == self.descendant


def _id_type(config: ClosureTableConfig):
    if config.id_type == "string":
        return String(config.id_length)
    return BigInteger()


def _id_column(name: str, config: ClosureTableConfig) -> Column:
    args = [name, _id_type(config)]
    if config.entity_table:
        args.append(
            ForeignKey(
                f"{config.entity_table}.{config.entity_key}",
                ondelete="CASCADE",
            )
        )
    return Column(*args, nullable=False)


def build_closure_table(metadata: MetaData, config: ClosureTableConfig) -> Table:
    """
    Create (or return the already registered) closure Table on ``metadata``.

    When ``config.entity_table`` is set the entity table must be registered on
    the same MetaData before ``metadata.create_all()`` runs.
    """
    name = config.prefixed_table
    if name in metadata.tables:
        return metadata.tables[name]

    return Table(
        name,
        metadata,
        Column(config.primary_key, Integer, primary_key=True, autoincrement=True),
        _id_column(config.ancestor_column, config),
        _id_column(config.descendant_column, config),
        Column(config.depth_column, Integer, nullable=False),
        UniqueConstraint(
            config.ancestor_column,
            config.descendant_column,
            name=f"uq_{name}_pair",
        ),
        CheckConstraint(
            f"{config.depth_column} >= 0",
            name=f"ck_{name}_depth",
        ),
        Index(f"idx_{name}_ancestor", config.ancestor_column),
        Index(f"idx_{name}_descendant", config.descendant_column),
    )


__all__ = ["ClosureRow", "build_closure_table"]
