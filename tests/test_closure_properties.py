"""
Property-based tests for closure table protocols.

Random forests are built with insert_node, then reshaped with random moves.
After every step the whole relation is compared with the closure computed
from a networkx reference tree: one row per (ancestor, descendant) pair on a
root path, with depth equal to the path length.
"""

import networkx as nx
import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

from closure_table import ClosureTable, CycleError

from conftest import row_set


@st.composite
def forests_and_moves(draw):
    """(parents, moves): parents[i] is None or an earlier index; moves are (node, new_parent)."""
    size = draw(st.integers(min_value=1, max_value=10))
    parents = [None]
    for i in range(1, size):
        parents.append(draw(st.one_of(st.none(), st.integers(0, i - 1))))

    node = st.integers(0, size - 1)
    moves = draw(st.lists(st.tuples(node, st.one_of(st.none(), node)), max_size=8))
    return parents, moves


def expected_rows(graph):
    rows = set()
    for node in graph.nodes:
        rows.add((node, node, 0))
        for ancestor in nx.ancestors(graph, node):
            rows.add((ancestor, node, nx.shortest_path_length(graph, ancestor, node)))
    return rows


def reference_parent(graph, node):
    predecessors = list(graph.predecessors(node))
    return predecessors[0] if predecessors else None


@settings(max_examples=60, deadline=None, suppress_health_check=[HealthCheck.too_slow])
@given(forests_and_moves())
def test_closure_matches_reference_tree(case):
    parents, moves = case
    graph = nx.DiGraph()

    with ClosureTable(url="sqlite:///:memory:") as closure:
        for child, parent in enumerate(parents):
            closure.insert_node(parent, child)
            graph.add_node(child)
            if parent is not None:
                graph.add_edge(parent, child)

        assert row_set(closure) == expected_rows(graph)

        for node, new_parent in moves:
            before = row_set(closure)

            if new_parent is not None and (
                new_parent == node or new_parent in nx.descendants(graph, node)
            ):
                with pytest.raises(CycleError):
                    closure.move_node_to(node, new_parent)
                assert row_set(closure) == before
                continue

            old_parent = reference_parent(graph, node)
            changed = closure.move_node_to(node, new_parent)

            if new_parent is not None and new_parent == old_parent:
                assert changed is False
            else:
                assert changed is True
                if old_parent is not None:
                    graph.remove_edge(old_parent, node)
                if new_parent is not None:
                    graph.add_edge(new_parent, node)

            assert row_set(closure) == expected_rows(graph)
            assert closure.get_parent(node) == new_parent

        assert closure.check_integrity()["valid"] is True


@settings(max_examples=40, deadline=None)
@given(forests_and_moves())
def test_unbind_disconnects_subtree(case):
    parents, moves = case
    graph = nx.DiGraph()

    with ClosureTable(url="sqlite:///:memory:") as closure:
        for child, parent in enumerate(parents):
            closure.insert_node(parent, child)
            graph.add_node(child)
            if parent is not None:
                graph.add_edge(parent, child)

        for node, _ in moves[:1]:
            members = {node} | nx.descendants(graph, node)
            inside_before = {
                row for row in row_set(closure) if row[0] in members and row[1] in members
            }

            closure.unbind_relationships(node)

            rows = row_set(closure)
            assert not any(a not in members and d in members for a, d, _ in rows)
            assert {r for r in rows if r[0] in members and r[1] in members} == inside_before
            assert closure.check_integrity()["valid"] is True
