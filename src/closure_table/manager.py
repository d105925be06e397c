"""
Closure Relation Manager.

Maintains the transitive closure of a forest stored in an entity table. Every
protocol is one or two set-based statements evaluated by the database
(INSERT ... SELECT with UNION ALL, cross joins, DELETE with IN subqueries);
no closure row is read into Python and processed individually.

Example:
    >>> from closure_table import ClosureTable
    >>>
    >>> closure = ClosureTable(url="sqlite:///tree.db")
    >>> closure.insert_node(None, 1)        # 1 is a root
    1
    >>> closure.insert_node(1, 2)           # 2 under 1
    2
    >>> closure.insert_node(2, 3)           # 3 under 2
    3
    >>> closure.move_node_to(2, None)       # detach 2 (and 3) into its own tree
    True
    >>> [tuple(r) for r in closure.rows()]
    [(1, 1, 0), (2, 2, 0), (2, 3, 1), (3, 3, 0)]

Transactions:
    Pass ``connection=`` (a SQLAlchemy Connection or Session) to run a protocol
    inside a transaction you own; nothing is committed by the manager and a
    failed protocol must be rolled back by you. Without it the manager wraps
    the protocol in ``engine.begin()``, which commits on success and rolls
    back on any error.
"""

import logging
import threading
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional

from sqlalchemy import (
    Integer,
    MetaData,
    cast,
    create_engine,
    delete,
    event,
    exists,
    insert,
    literal,
    or_,
    select,
    true,
    union_all,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, MultipleResultsFound

from .config import ClosureTableConfig
from .exceptions import ClosureTableError, CycleError, translate_db_error
from .integrity import audit
from .schema import ClosureRow, build_closure_table

logger = logging.getLogger(__name__)


class _Unset:
    def __repr__(self):
        return "UNSET"


# Marks "current ancestor not supplied by the caller" (None means root)
UNSET: Any = _Unset()


class ClosureTable:
    """
    Manages a closure table for O(1) ancestor/descendant/depth lookups.

    Works with any SQLAlchemy-compatible database (PostgreSQL, SQLite, ...).

    Args:
        url: SQLAlchemy connection URL (mutually exclusive with engine)
        engine: Existing Engine to use; it is not disposed by close()
        config: Table and column naming (default: ClosureTableConfig())
        metadata: MetaData to register the closure table on. Required when
            config.entity_table is set, so the foreign key can resolve.
        pool_size: Maximum pool connections (default: 5)
        echo: Enable SQL logging (default: False)
        auto_migrate: Create schema on init (default: True)
        lazy: Defer engine creation until first use (default: False)

    Example:
        >>> closure = ClosureTable(url="sqlite:///:memory:")
        >>> closure.insert_node(None, 10)
        1
        >>> closure.get_parent(10) is None
        True
    """

    def __init__(
        self,
        url: Optional[str] = None,
        engine: Optional[Engine] = None,
        config: Optional[ClosureTableConfig] = None,
        metadata: Optional[MetaData] = None,
        pool_size: int = 5,
        echo: bool = False,
        auto_migrate: bool = True,
        lazy: bool = False,
    ):
        if (url is None) == (engine is None):
            raise ValueError("Exactly one of url or engine must be provided")

        self._url = url
        self._config = config or ClosureTableConfig()
        self._metadata = metadata if metadata is not None else MetaData()
        self._table = build_closure_table(self._metadata, self._config)
        self._pool_size = pool_size
        self._echo = echo
        self._auto_migrate = auto_migrate
        self._lock = threading.Lock()

        self._engine = engine
        self._owns_engine = engine is None
        self._initialized = False
        self._closed = False

        if not lazy:
            self._ensure_initialized()

    # ------------------------------------------------------------------
    # Engine lifecycle
    # ------------------------------------------------------------------

    def _create_engine(self) -> Engine:
        url = self._url
        if url.startswith("sqlite"):
            from sqlalchemy.pool import StaticPool

            if ":memory:" in url or url == "sqlite://":
                engine = create_engine(
                    url,
                    echo=self._echo,
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                )
            else:
                engine = create_engine(
                    url,
                    echo=self._echo,
                    pool_size=self._pool_size,
                    connect_args={"check_same_thread": False},
                )

            # Foreign keys back DanglingReferenceViolation on SQLite
            @event.listens_for(engine, "connect")
            def set_sqlite_pragma(dbapi_connection, connection_record):
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA foreign_keys=ON")
                cursor.close()

            return engine

        return create_engine(
            url,
            echo=self._echo,
            pool_size=self._pool_size,
            max_overflow=self._pool_size * 2,
        )

    def _ensure_initialized(self) -> None:
        """Lazily create the engine and schema."""
        if self._closed:
            raise ClosureTableError("ClosureTable is closed", operation="connect")

        if self._initialized:
            return

        with self._lock:
            if self._initialized:
                return

            if self._engine is None:
                self._engine = self._create_engine()

            if self._auto_migrate:
                self._metadata.create_all(self._engine)

            self._initialized = True
            logger.debug(
                "ClosureTable initialized on table %s", self._config.prefixed_table
            )

    @property
    def engine(self) -> Engine:
        self._ensure_initialized()
        return self._engine

    @contextmanager
    def _scope(self, connection, operation: str, node_id: Any = None) -> Iterator[Any]:
        """
        Yield something to execute statements on, translating database errors.

        A caller-supplied connection is used as is; otherwise a transaction is
        opened and committed (or rolled back) around the block.
        """
        try:
            if connection is not None:
                yield connection
            else:
                with self.engine.begin() as conn:
                    yield conn
        except DBAPIError as e:
            raise translate_db_error(e, operation, node_id) from e

    # ------------------------------------------------------------------
    # Column metadata
    # ------------------------------------------------------------------

    @property
    def config(self) -> ClosureTableConfig:
        return self._config

    @property
    def table(self):
        """The SQLAlchemy Table backing the closure relation."""
        return self._table

    @property
    def prefixed_table(self) -> str:
        return self._config.prefixed_table

    @property
    def ancestor_column(self) -> str:
        return self._config.ancestor_column

    @property
    def descendant_column(self) -> str:
        return self._config.descendant_column

    @property
    def depth_column(self) -> str:
        return self._config.depth_column

    @property
    def qualified_ancestor_column(self) -> str:
        return self._config.qualified_ancestor_column

    @property
    def qualified_descendant_column(self) -> str:
        return self._config.qualified_descendant_column

    @property
    def qualified_depth_column(self) -> str:
        return self._config.qualified_depth_column

    def _cols(self, table):
        c = self._config
        return (
            table.c[c.ancestor_column],
            table.c[c.descendant_column],
            table.c[c.depth_column],
        )

    def _id_literal(self, value: Any):
        """Bound id cast to the id column type (needed inside UNION ALL on Postgres)."""
        id_type = self._table.c[self._config.descendant_column].type
        return cast(literal(value), id_type)

    # ------------------------------------------------------------------
    # Insert protocol
    # ------------------------------------------------------------------

    def insert_node(self, ancestor_id: Any, descendant_id: Any, connection=None) -> int:
        """
        Insert the closure rows for a node attached under ``ancestor_id``.

        Copies every ancestor row of ``ancestor_id`` (its self-row included)
        onto ``descendant_id`` one level deeper, and adds the node's self-row,
        in a single INSERT ... SELECT ... UNION ALL.

        Args:
            ancestor_id: Parent node id, or None to insert a new root
            descendant_id: Id of the node being inserted
            connection: Optional Connection/Session owning the transaction

        Returns:
            Number of rows inserted (driver-reported)

        Raises:
            UniquenessViolation: If the node already has closure rows
            DanglingReferenceViolation: If an id is missing from the entity
                table (only with a configured, enforced foreign key)
            TransactionAbort: On any other database failure
        """
        c = self._config
        anc, desc, depth = self._cols(self._table)

        self_row = select(
            self._id_literal(descendant_id).label(c.ancestor_column),
            self._id_literal(descendant_id).label(c.descendant_column),
            literal(0, Integer).label(c.depth_column),
        )

        if ancestor_id is None:
            source = self_row
        else:
            tbl = self._table.alias("tbl")
            tbl_anc, tbl_desc, tbl_depth = self._cols(tbl)
            chain = select(
                tbl_anc.label(c.ancestor_column),
                self._id_literal(descendant_id).label(c.descendant_column),
                (tbl_depth + 1).label(c.depth_column),
            ).where(tbl_desc == ancestor_id)
            source = union_all(chain, self_row)

        stmt = insert(self._table).from_select(list(c.columns), source)

        with self._scope(connection, "insert_node", descendant_id) as conn:
            inserted = conn.execute(stmt).rowcount

        logger.debug(
            "Inserted node %r under %r (%s rows)",
            descendant_id,
            ancestor_id,
            inserted,
        )
        return inserted

    # ------------------------------------------------------------------
    # Unbind protocol
    # ------------------------------------------------------------------

    def _unbind(self, conn, node_id: Any) -> int:
        anc, desc, _ = self._cols(self._table)

        sub = self._table.alias("sub")
        sub_anc, sub_desc, _ = self._cols(sub)
        subtree = select(sub_desc).where(sub_anc == node_id)

        sup = self._table.alias("sup")
        sup_anc, sup_desc, _ = self._cols(sup)
        external_ancestors = select(sup_anc).where(
            sup_desc == node_id,
            sup_anc != node_id,
        )

        stmt = delete(self._table).where(
            desc.in_(subtree),
            anc.in_(external_ancestors),
        )
        return conn.execute(stmt).rowcount

    def unbind_relationships(self, node_id: Any, connection=None) -> int:
        """
        Detach the subtree rooted at ``node_id`` from its ancestors.

        Deletes every row linking an ancestor outside the subtree to a node
        inside it. Rows internal to the subtree and all self-rows are kept,
        so the subtree becomes a tree of its own rooted at ``node_id``.

        Returns:
            Number of rows deleted (0 for a root)
        """
        with self._scope(connection, "unbind_relationships", node_id) as conn:
            deleted = self._unbind(conn, node_id)

        logger.debug("Unbound node %r (%s rows deleted)", node_id, deleted)
        return deleted

    # ------------------------------------------------------------------
    # Move protocol
    # ------------------------------------------------------------------

    def _rebind(self, conn, node_id: Any, new_ancestor_id: Any) -> int:
        c = self._config

        supertbl = self._table.alias("supertbl")
        super_anc, super_desc, super_depth = self._cols(supertbl)
        subtbl = self._table.alias("subtbl")
        sub_anc, sub_desc, sub_depth = self._cols(subtbl)

        # ancestors of the new parent x members of the moved subtree
        source = (
            select(
                super_anc.label(c.ancestor_column),
                sub_desc.label(c.descendant_column),
                (super_depth + sub_depth + 1).label(c.depth_column),
            )
            .select_from(supertbl.join(subtbl, true()))
            .where(super_desc == new_ancestor_id, sub_anc == node_id)
        )

        stmt = insert(self._table).from_select(list(c.columns), source)
        return conn.execute(stmt).rowcount

    def move_node_to(
        self,
        node_id: Any,
        new_ancestor_id: Any = None,
        current_ancestor_id: Any = UNSET,
        connection=None,
    ) -> bool:
        """
        Reparent ``node_id`` (with its subtree) under ``new_ancestor_id``.

        Runs in one transaction: unbind from the old ancestors, then (unless
        ``new_ancestor_id`` is None) insert the cross product of the new
        parent's ancestors and the subtree, with depth
        ``depth(a -> new parent) + depth(node -> d) + 1``.

        Args:
            node_id: Root of the subtree being moved
            new_ancestor_id: New parent id, or None to make the node a root
            current_ancestor_id: The node's current parent as known to the
                caller. When supplied it is trusted for the no-op check and
                must be fresh; when omitted the parent is read from the table
                inside the same transaction.
            connection: Optional Connection/Session owning the transaction

        Returns:
            False if the node already sits under ``new_ancestor_id`` (nothing
            was written), True otherwise

        Raises:
            CycleError: If ``new_ancestor_id`` is the node or one of its
                descendants
            UniquenessViolation, TransactionAbort: On database failures
        """
        with self._scope(connection, "move_node_to", node_id) as conn:
            if new_ancestor_id is not None:
                if current_ancestor_id is UNSET:
                    current_ancestor_id = self._get_parent(conn, node_id)

                if current_ancestor_id == new_ancestor_id:
                    logger.debug(
                        "Node %r already under %r, move skipped", node_id, new_ancestor_id
                    )
                    return False

                if self._is_descendant(conn, node_id, new_ancestor_id):
                    raise CycleError(
                        f"Cannot move node {node_id!r} under {new_ancestor_id!r}: "
                        "target is inside the node's own subtree",
                        operation="move_node_to",
                        node_id=node_id,
                    )

            deleted = self._unbind(conn, node_id)

            # Unbinding alone leaves the node as a root
            inserted = 0
            if new_ancestor_id is not None:
                inserted = self._rebind(conn, node_id, new_ancestor_id)

        logger.debug(
            "Moved node %r to %r (%s rows deleted, %s inserted)",
            node_id,
            new_ancestor_id,
            deleted,
            inserted,
        )
        return True

    # ------------------------------------------------------------------
    # Node removal
    # ------------------------------------------------------------------

    def remove_node(self, node_id: Any, connection=None) -> int:
        """
        Delete every row naming ``node_id`` as ancestor or descendant.

        Children are not reattached: move or unbind them first to keep the
        remaining trees gap-free.

        Returns:
            Number of rows deleted
        """
        anc, desc, _ = self._cols(self._table)
        stmt = delete(self._table).where(or_(anc == node_id, desc == node_id))

        with self._scope(connection, "remove_node", node_id) as conn:
            deleted = conn.execute(stmt).rowcount

        logger.debug("Removed node %r (%s rows deleted)", node_id, deleted)
        return deleted

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _get_parent(self, conn, node_id: Any) -> Any:
        anc, desc, depth = self._cols(self._table)
        stmt = select(anc).where(desc == node_id, depth == 1)
        try:
            return conn.execute(stmt).scalar_one_or_none()
        except MultipleResultsFound as e:
            raise ClosureTableError(
                f"Node {node_id!r} has more than one direct ancestor",
                operation="get_parent",
                node_id=node_id,
                orig=e,
            ) from e

    def _is_descendant(self, conn, ancestor_id: Any, descendant_id: Any) -> bool:
        anc, desc, _ = self._cols(self._table)
        stmt = select(exists().where(anc == ancestor_id, desc == descendant_id))
        return bool(conn.execute(stmt).scalar())

    def get_parent(self, node_id: Any, connection=None) -> Any:
        """Return the direct ancestor of ``node_id``, or None for a root."""
        with self._scope(connection, "get_parent", node_id) as conn:
            return self._get_parent(conn, node_id)

    def is_descendant(self, ancestor_id: Any, descendant_id: Any, connection=None) -> bool:
        """True if ``descendant_id`` is in the subtree of ``ancestor_id`` (itself included)."""
        with self._scope(connection, "is_descendant", descendant_id) as conn:
            return self._is_descendant(conn, ancestor_id, descendant_id)

    def rows(self, connection=None) -> List[ClosureRow]:
        """Return the whole relation ordered by (ancestor, depth, descendant)."""
        anc, desc, depth = self._cols(self._table)
        stmt = select(anc, desc, depth).order_by(anc, depth, desc)

        with self._scope(connection, "rows") as conn:
            return [ClosureRow(*row) for row in conn.execute(stmt)]

    def check_integrity(self, connection=None) -> Dict[str, Any]:
        """
        Audit the relation's invariants.

        Returns:
            {"valid": bool, "missing_self_rows": [...], "duplicate_pairs": [...],
             "broken_paths": [...], "negative_depths": int}
        """
        with self._scope(connection, "check_integrity") as conn:
            report = audit(conn, self._table, self._config)

        if not report["valid"]:
            logger.warning("Closure table %s failed integrity check: %s", self.prefixed_table, report)
        return report

    # ------------------------------------------------------------------
    # Cleanup
    # ------------------------------------------------------------------

    def close(self) -> None:
        """
        Dispose the engine if this instance created it.

        The instance cannot be reused afterwards; calls that need the engine
        raise ClosureTableError.
        """
        if self._engine is not None and self._owns_engine:
            self._engine.dispose()
            self._engine = None
        self._initialized = False
        self._closed = True
        logger.debug("ClosureTable closed")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
        return False


__all__ = ["ClosureTable", "UNSET"]
