"""
Tests for database error translation and referential integrity.
"""

import unittest

import pytest
from sqlalchemy import BigInteger, Column, MetaData, Table, delete
from sqlalchemy.exc import IntegrityError, OperationalError

from closure_table import (
    ClosureTable,
    ClosureTableConfig,
    ClosureTableError,
    DanglingReferenceViolation,
    TransactionAbort,
    UniquenessViolation,
)
from closure_table.exceptions import translate_db_error

from conftest import build_tree, row_set


class _PgError(Exception):
    def __init__(self, message, pgcode):
        super().__init__(message)
        self.pgcode = pgcode


class TestTranslateDbError(unittest.TestCase):
    """Classification of driver errors into the closure taxonomy."""

    def test_sqlite_unique_message(self):
        exc = IntegrityError(
            "INSERT", {}, Exception("UNIQUE constraint failed: entities_closure.ancestor")
        )
        error = translate_db_error(exc, "insert_node", 5)
        self.assertIsInstance(error, UniquenessViolation)
        self.assertEqual(error.operation, "insert_node")
        self.assertEqual(error.node_id, 5)
        self.assertIs(error.orig, exc.orig)

    def test_sqlite_foreign_key_message(self):
        exc = IntegrityError("INSERT", {}, Exception("FOREIGN KEY constraint failed"))
        error = translate_db_error(exc, "insert_node", 5)
        self.assertIsInstance(error, DanglingReferenceViolation)

    def test_postgres_sqlstate_unique(self):
        exc = IntegrityError("INSERT", {}, _PgError("violates constraint", "23505"))
        self.assertIsInstance(translate_db_error(exc, "move_node_to"), UniquenessViolation)

    def test_postgres_sqlstate_foreign_key(self):
        exc = IntegrityError("INSERT", {}, _PgError("violates constraint", "23503"))
        self.assertIsInstance(
            translate_db_error(exc, "move_node_to"), DanglingReferenceViolation
        )

    def test_other_integrity_error_aborts(self):
        exc = IntegrityError("INSERT", {}, Exception("CHECK constraint failed: ck_depth"))
        self.assertIsInstance(translate_db_error(exc, "insert_node"), TransactionAbort)

    def test_operational_error_aborts(self):
        exc = OperationalError("DELETE", {}, Exception("database is locked"))
        error = translate_db_error(exc, "unbind_relationships", 3)
        self.assertIsInstance(error, TransactionAbort)
        self.assertIn("database is locked", str(error))

    def test_all_errors_share_base(self):
        for cls in (UniquenessViolation, DanglingReferenceViolation, TransactionAbort):
            self.assertTrue(issubclass(cls, ClosureTableError))


@pytest.fixture
def entity_closure():
    """Closure table with foreign keys to a categories table."""
    metadata = MetaData()
    categories = Table(
        "categories",
        metadata,
        Column("id", BigInteger, primary_key=True, autoincrement=False),
    )
    closure = ClosureTable(
        url="sqlite:///:memory:",
        config=ClosureTableConfig(
            table_name="categories_closure",
            entity_table="categories",
        ),
        metadata=metadata,
    )
    with closure.engine.begin() as conn:
        conn.execute(categories.insert(), [{"id": i} for i in (1, 2, 3)])

    yield closure, categories
    closure.close()


class TestReferentialIntegrity:
    def test_known_entities_insert(self, entity_closure):
        closure, _ = entity_closure
        build_tree(closure, [(None, 1), (1, 2), (2, 3)])
        assert closure.check_integrity()["valid"] is True

    def test_unknown_descendant_raises_dangling_reference(self, entity_closure):
        closure, _ = entity_closure
        closure.insert_node(None, 1)

        with pytest.raises(DanglingReferenceViolation) as exc_info:
            closure.insert_node(1, 99)

        assert exc_info.value.node_id == 99
        assert row_set(closure) == {(1, 1, 0)}

    def test_entity_delete_cascades_to_closure(self, entity_closure):
        closure, categories = entity_closure
        build_tree(closure, [(None, 1), (1, 2), (2, 3)])
        closure.unbind_relationships(3)

        with closure.engine.begin() as conn:
            conn.execute(delete(categories).where(categories.c.id == 3))

        assert row_set(closure) == {(1, 1, 0), (1, 2, 1), (2, 2, 0)}

    def test_duplicate_insert_still_uniqueness(self, entity_closure):
        closure, _ = entity_closure
        closure.insert_node(None, 1)
        with pytest.raises(UniquenessViolation):
            closure.insert_node(None, 1)
