"""Tests for the dependency graph shared by the validator and the pipeline."""

import pytest

from clinical_forms.engine.graph import DependencyGraph


def test_topological_order_respects_dependencies():
    graph = DependencyGraph()
    graph.add_node("store", ["normalize"])
    graph.add_node("validate", ["resolve"])
    graph.add_node("resolve")
    graph.add_node("normalize", ["validate"])

    assert graph.topological_order() == ["resolve", "validate", "normalize", "store"]


def test_independent_nodes_keep_insertion_order():
    graph = DependencyGraph().add_node("b").add_node("a").add_node("c")
    assert graph.topological_order() == ["b", "a", "c"]


def test_repeated_edges_are_collapsed():
    graph = DependencyGraph()
    graph.add_node("b", ["a", "a"])
    graph.add_node("b", ["a"])
    assert graph.depends_on("b") == ["a"]
    assert "b" in graph
    assert "a" not in graph


def test_unknown_dependencies():
    graph = DependencyGraph().add_node("details", ["stage"])

    assert graph.unknown_dependencies() == [("details", "stage")]
    with pytest.raises(ValueError, match="unknown node 'stage'"):
        graph.topological_order()


def test_cycle_members_exclude_downstream_nodes():
    graph = DependencyGraph()
    graph.add_node("a", ["b"])
    graph.add_node("b", ["a"])
    graph.add_node("c", ["a"])
    graph.add_node("d")

    assert graph.cycle_members() == ["a", "b"]
    with pytest.raises(ValueError, match="Cycle detected"):
        graph.topological_order()


def test_self_loop_is_a_cycle():
    graph = DependencyGraph().add_node("a", ["a"])
    assert graph.cycle_members() == ["a"]


def test_acyclic_graph_has_no_cycle_members():
    graph = DependencyGraph().add_node("a").add_node("b", ["a"])
    assert graph.cycle_members() == []
