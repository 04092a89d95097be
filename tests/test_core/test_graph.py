"""Tests for the execution graph."""

import pytest
from hypothesis import given, strategies as st

from conftest import make_graph
from genflow.core.errors import CycleError, ValidationError
from genflow.core.graph import ExecutionGraph, topological_order
from genflow.models.workflow import (
    Capability,
    NodeKind,
    WorkflowGraph,
    WorkflowGraphEdge,
    WorkflowGraphNode,
)


@st.composite
def dags(draw):
    """Random acyclic graphs declared in shuffled order."""
    size = draw(st.integers(min_value=1, max_value=12))
    rank = list(range(size))
    pairs = [(a, b) for a in rank for b in rank if a < b]
    chosen = draw(st.lists(st.sampled_from(pairs), unique=True, max_size=20)) if pairs else []
    declared = draw(st.permutations(rank))
    nodes = [(f"n{i}", NodeKind.TRANSFORM) for i in declared]
    edges = [(f"n{a}", f"n{b}") for a, b in chosen]
    return make_graph(nodes, edges)


class TestTopologicalOrder:
    """Tests for dependency ordering."""

    def test_chain(self):
        """Test a linear chain comes out in dependency order."""
        graph = make_graph(
            [("c", NodeKind.TRANSFORM), ("a", NodeKind.INPUT), ("b", NodeKind.TRANSFORM)],
            [("a", "b"), ("b", "c")],
        )

        assert topological_order(graph) == ["a", "b", "c"]

    def test_ties_follow_declaration_order(self):
        """Test independent nodes keep their declared order."""
        graph = make_graph(
            [("x", NodeKind.INPUT), ("y", NodeKind.INPUT), ("z", NodeKind.INPUT)],
            [],
        )

        assert topological_order(graph) == ["x", "y", "z"]

    @given(dags())
    def test_every_edge_points_forward(self, graph: WorkflowGraph):
        """Property test: sources always precede their targets."""
        order = topological_order(graph)
        position = {node_id: i for i, node_id in enumerate(order)}

        assert sorted(order) == sorted(n.id for n in graph.nodes)
        for edge in graph.edges:
            assert position[edge.source] < position[edge.target]

    def test_cycle_raises(self):
        """Test a cycle is reported with the nodes on it."""
        graph = make_graph(
            [("a", NodeKind.INPUT), ("b", NodeKind.TRANSFORM), ("c", NodeKind.TRANSFORM)],
            [("a", "b"), ("b", "c"), ("c", "b")],
        )

        with pytest.raises(CycleError) as exc_info:
            topological_order(graph)

        assert exc_info.value.error_code == "CYCLE_DETECTED"
        assert set(exc_info.value.node_ids) == {"b", "c"}


class TestGraphQueries:
    """Tests for dependency lookups."""

    def test_dependencies_and_dependents(self):
        """Test diamond lookups."""
        graph = ExecutionGraph(
            make_graph(
                [
                    ("a", NodeKind.INPUT),
                    ("b", NodeKind.TRANSFORM),
                    ("c", NodeKind.TRANSFORM),
                    ("d", NodeKind.TRANSFORM),
                ],
                [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
            )
        )

        assert graph.dependencies_of("d") == {"b", "c"}
        assert graph.dependents_of("a") == {"b", "c"}
        assert graph.ancestors_of("d") == {"a", "b", "c"}
        assert "d" in graph
        assert "e" not in graph


class TestValidation:
    """Tests for structural validation."""

    def test_valid_graph_returns_order(self):
        """Test validate() returns the topological order."""
        graph = ExecutionGraph(
            make_graph([("a", NodeKind.INPUT), ("b", NodeKind.GENERATOR)], [("a", "b")])
        )

        assert graph.validate() == ["a", "b"]

    def test_unknown_edge_endpoint(self):
        """Test edges must reference existing nodes."""
        graph = ExecutionGraph(make_graph([("a", NodeKind.INPUT)], [("a", "ghost")]))

        with pytest.raises(ValidationError) as exc_info:
            graph.validate()

        assert "Edge references unknown target node: ghost" in exc_info.value.errors

    def test_duplicate_ids_and_self_loop(self):
        """Test duplicate IDs and self-loops are both reported."""
        graph = make_graph(
            [("a", NodeKind.INPUT), ("a", NodeKind.INPUT), ("b", NodeKind.TRANSFORM)],
            [("b", "b")],
        )

        errors = ExecutionGraph(graph).validation_errors()

        assert "Duplicate node IDs detected" in errors
        assert "Self-loop detected on node: b" in errors

    def test_generator_requires_capability(self):
        """Test a generator node without a capability is rejected."""
        graph = WorkflowGraph(nodes=[WorkflowGraphNode(id="gen", type=NodeKind.GENERATOR)])

        errors = ExecutionGraph(graph).validation_errors()

        assert errors == ["Generator node 'gen' has no capability"]

    def test_missing_required_input(self):
        """Test declared input slots must be fed by an edge."""
        graph = WorkflowGraph(
            nodes=[
                WorkflowGraphNode(id="prompt", type=NodeKind.INPUT),
                WorkflowGraphNode(
                    id="video",
                    type=NodeKind.GENERATOR,
                    capability=Capability.VIDEO_GENERATION,
                    config={"required_inputs": ["image", "prompt"]},
                ),
            ],
            edges=[WorkflowGraphEdge(source="prompt", target="video", targetHandle="prompt")],
        )

        errors = ExecutionGraph(graph).validation_errors()

        assert errors == ["Node 'video' is missing required input 'image'"]
