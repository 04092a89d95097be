"""Tests for scheduling decisions."""

import pytest

from conftest import make_graph
from genflow.core.errors import ValidationError
from genflow.core.graph import ExecutionGraph
from genflow.core.scheduler import (
    DEBUG_PLACEHOLDERS,
    ScopePlan,
    Termination,
    debug_output,
    evaluate,
    gather_inputs,
    initial_results,
    resolve_scope,
    runnable_nodes,
)
from genflow.models.execution import ExecutionRecord, NodeResult, NodeStatus
from genflow.models.workflow import Capability, NodeKind, WorkflowGraph, WorkflowGraphEdge


@pytest.fixture
def diamond() -> WorkflowGraph:
    return make_graph(
        [
            ("a", NodeKind.INPUT),
            ("b", NodeKind.GENERATOR),
            ("c", NodeKind.GENERATOR),
            ("d", NodeKind.TRANSFORM),
        ],
        [("a", "b"), ("a", "c"), ("b", "d"), ("c", "d")],
    )


def record_for(graph: WorkflowGraph, statuses: dict[str, NodeStatus]) -> ExecutionRecord:
    return ExecutionRecord(
        workflow_id="wf-1",
        graph=graph,
        scope_node_ids=list(statuses),
        node_results={n: NodeResult(node_id=n, status=s) for n, s in statuses.items()},
    )


class TestResolveScope:
    """Tests for run scoping."""

    def test_full_run(self, diamond: WorkflowGraph):
        """Test no subset means every node in topological order."""
        plan = resolve_scope(ExecutionGraph(diamond))

        assert plan.node_ids == ["a", "b", "c", "d"]
        assert plan.preset_outputs == {}

    def test_subset_with_known_outputs(self, diamond: WorkflowGraph):
        """Test outside dependencies join the scope as preset outputs."""
        plan = resolve_scope(
            ExecutionGraph(diamond),
            node_ids=["d"],
            known_outputs={"b": "img-b", "c": "img-c", "a": "unused"},
        )

        assert plan.node_ids == ["b", "c", "d"]
        assert plan.preset_outputs == {"b": "img-b", "c": "img-c"}

    def test_subset_nodes_rerun_even_if_known(self, diamond: WorkflowGraph):
        """Test a requested node is never preset from a known output."""
        plan = resolve_scope(
            ExecutionGraph(diamond),
            node_ids=["b"],
            known_outputs={"a": "prompt", "b": "old"},
        )

        assert plan.node_ids == ["a", "b"]
        assert plan.preset_outputs == {"a": "prompt"}

    def test_subset_missing_dependency(self, diamond: WorkflowGraph):
        """Test an unsatisfied outside dependency is rejected."""
        with pytest.raises(ValidationError) as exc_info:
            resolve_scope(ExecutionGraph(diamond), node_ids=["d"], known_outputs={"b": "x"})

        assert str(exc_info.value) == "missing required input"
        assert exc_info.value.errors == ["Node 'd' is missing required input from 'c'"]

    def test_unknown_node(self, diamond: WorkflowGraph):
        """Test unknown node IDs are rejected."""
        with pytest.raises(ValidationError):
            resolve_scope(ExecutionGraph(diamond), node_ids=["nope"])

    def test_initial_results(self):
        """Test preset nodes start complete and the rest idle."""
        results = initial_results(ScopePlan(node_ids=["a", "b"], preset_outputs={"a": 1}))

        assert results["a"].status == NodeStatus.COMPLETE
        assert results["a"].output == 1
        assert results["b"].status == NodeStatus.IDLE


class TestRunnableNodes:
    """Tests for dispatch readiness."""

    def test_roots_first(self, diamond: WorkflowGraph):
        """Test only nodes without dependencies are runnable at start."""
        record = record_for(diamond, {n: NodeStatus.IDLE for n in "abcd"})

        assert runnable_nodes(ExecutionGraph(diamond), record) == ["a"]

    def test_join_waits_for_every_branch(self, diamond: WorkflowGraph):
        """Test a join node waits until all of its dependencies complete."""
        record = record_for(
            diamond,
            {
                "a": NodeStatus.COMPLETE,
                "b": NodeStatus.COMPLETE,
                "c": NodeStatus.PROCESSING,
                "d": NodeStatus.IDLE,
            },
        )

        assert runnable_nodes(ExecutionGraph(diamond), record) == []

        record.node_results["c"].status = NodeStatus.COMPLETE
        assert runnable_nodes(ExecutionGraph(diamond), record) == ["d"]


class TestGatherInputs:
    """Tests for input collection."""

    def test_source_handle_selects_output_entry(self):
        """Test a mapping output contributes the entry named by sourceHandle."""
        graph = make_graph([("a", NodeKind.INPUT), ("b", NodeKind.TRANSFORM)], [])
        graph.edges.append(
            WorkflowGraphEdge(source="a", target="b", sourceHandle="image", targetHandle="frame")
        )
        results = {"a": NodeResult(node_id="a", output={"image": "x.png", "seed": 7})}

        assert gather_inputs(ExecutionGraph(graph), "b", results) == {"frame": "x.png"}

    def test_shared_slot_collects_list(self, diamond: WorkflowGraph):
        """Test several edges into one slot produce a list in edge order."""
        results = {
            "b": NodeResult(node_id="b", output={"output": "img-b"}),
            "c": NodeResult(node_id="c", output="img-c"),
        }

        inputs = gather_inputs(ExecutionGraph(diamond), "d", results)

        assert inputs == {"input": ["img-b", "img-c"]}


class TestEvaluate:
    """Tests for termination decisions."""

    def test_completed(self, diamond: WorkflowGraph):
        record = record_for(diamond, {n: NodeStatus.COMPLETE for n in "abcd"})

        assert evaluate(ExecutionGraph(diamond), record) == Termination.COMPLETED

    def test_failure_waits_for_processing_branch(self, diamond: WorkflowGraph):
        """Test an error is not terminal while a sibling is still processing."""
        record = record_for(
            diamond,
            {
                "a": NodeStatus.COMPLETE,
                "b": NodeStatus.ERROR,
                "c": NodeStatus.PROCESSING,
                "d": NodeStatus.IDLE,
            },
        )
        graph = ExecutionGraph(diamond)

        assert evaluate(graph, record) == Termination.RUNNING

        record.node_results["c"].status = NodeStatus.COMPLETE
        assert evaluate(graph, record) == Termination.FAILED

    def test_stuck(self, diamond: WorkflowGraph):
        """Test idle nodes that can never run are reported as stuck."""
        record = record_for(
            diamond,
            {"b": NodeStatus.IDLE, "c": NodeStatus.IDLE, "d": NodeStatus.IDLE},
        )

        assert evaluate(ExecutionGraph(diamond), record) == Termination.STUCK


def test_debug_output_placeholders():
    """Test placeholders per capability with a generic fallback."""
    assert debug_output(Capability.IMAGE_GENERATION) == DEBUG_PLACEHOLDERS[Capability.IMAGE_GENERATION]
    assert "placehold.co" in debug_output(Capability.VIDEO_GENERATION)["video"]
    assert debug_output(Capability.DELIVERY) == {"debug": True}


def test_debug_output_returns_independent_copies():
    """Test mutating one placeholder output leaves later ones untouched."""
    first = debug_output(Capability.IMAGE_GENERATION)
    first["image"] = "mutated"
    first["extra"] = True

    second = debug_output(Capability.IMAGE_GENERATION)
    assert second is not first
    assert second == DEBUG_PLACEHOLDERS[Capability.IMAGE_GENERATION]
    assert "extra" not in DEBUG_PLACEHOLDERS[Capability.IMAGE_GENERATION]

    fallback = debug_output(None)
    fallback["debug"] = False
    assert debug_output(None) == {"debug": True}
