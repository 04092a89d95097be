"""Pure scheduling decisions for one execution.

Nothing here mutates state or performs I/O. The orchestrator asks these
functions what to do and applies the answers under its per-execution lock.
"""

import copy
from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from genflow.core.errors import ValidationError
from genflow.core.graph import ExecutionGraph
from genflow.models.execution import ExecutionRecord, NodeResult, NodeStatus
from genflow.models.workflow import Capability, WorkflowGraphNode

DEBUG_PLACEHOLDERS: dict[Capability, Any] = {
    Capability.IMAGE_GENERATION: {
        "image": "https://placehold.co/1024x1024/1a1a2e/ffd700?text=DEBUG+IMAGE"
    },
    Capability.VIDEO_GENERATION: {
        "video": "https://placehold.co/1280x720/1a1a2e/ffd700?text=DEBUG+VIDEO"
    },
    Capability.TEXT_GENERATION: {"text": "[DEBUG] generated text placeholder"},
}


class Termination(str, Enum):
    """Where an execution stands after a tick."""

    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    STUCK = "stuck"


@dataclass
class ScopePlan:
    """Nodes an execution will track and the outputs it starts with."""

    node_ids: list[str]
    preset_outputs: dict[str, Any] = field(default_factory=dict)


def resolve_scope(
    graph: ExecutionGraph,
    node_ids: list[str] | None = None,
    known_outputs: dict[str, Any] | None = None,
) -> ScopePlan:
    """Work out which nodes a run covers.

    Without a subset the whole graph is in scope. With a subset, every
    dependency outside the subset must already have a known output; those
    dependencies join the scope as completed nodes.

    Args:
        graph: Validated execution graph
        node_ids: Optional subset of nodes to run
        known_outputs: Outputs already produced, by node ID

    Returns:
        Scope plan in topological order

    Raises:
        ValidationError: On unknown node IDs or an unsatisfied dependency
    """
    known_outputs = {k: v for k, v in (known_outputs or {}).items() if k in graph}
    order = graph.topological_order()

    if not node_ids:
        return ScopePlan(node_ids=order, preset_outputs=known_outputs)

    unknown = [n for n in node_ids if n not in graph]
    if unknown:
        raise ValidationError(
            "Unknown node IDs in run request",
            errors=[f"Unknown node: {n}" for n in unknown],
        )

    subset = set(node_ids)
    universe = set(subset)
    errors = []
    for node_id in node_ids:
        for dependency in graph.dependencies_of(node_id):
            if dependency in subset:
                continue
            if dependency in known_outputs:
                universe.add(dependency)
            else:
                errors.append(
                    f"Node '{node_id}' is missing required input from '{dependency}'"
                )
    if errors:
        raise ValidationError("missing required input", errors=errors)

    # Subset nodes always re-run, even when a previous output is known.
    preset = {n: known_outputs[n] for n in universe - subset}
    return ScopePlan(
        node_ids=[n for n in order if n in universe],
        preset_outputs=preset,
    )


def initial_results(plan: ScopePlan) -> dict[str, NodeResult]:
    """NodeResults for a fresh run: preset nodes complete, the rest idle."""
    results = {}
    for node_id in plan.node_ids:
        result = NodeResult(node_id=node_id)
        if node_id in plan.preset_outputs:
            result.status = NodeStatus.COMPLETE
            result.output = plan.preset_outputs[node_id]
            result.completed_at = datetime.now(timezone.utc)
        results[node_id] = result
    return results


def runnable_nodes(graph: ExecutionGraph, record: ExecutionRecord) -> list[str]:
    """In-scope idle nodes whose dependencies are all complete.

    Returned in the execution's topological scope order.
    """
    results = record.node_results
    runnable = []
    for node_id in record.scope_node_ids:
        result = results.get(node_id)
        if result is None or result.status != NodeStatus.IDLE:
            continue
        dependencies = graph.dependencies_of(node_id)
        if all(
            d in results and results[d].status == NodeStatus.COMPLETE
            for d in dependencies
        ):
            runnable.append(node_id)
    return runnable


def gather_inputs(
    graph: ExecutionGraph,
    node_id: str,
    results: dict[str, NodeResult],
) -> dict[str, Any]:
    """Collect dependency outputs keyed by the target input slot.

    An edge whose source output is a mapping containing ``sourceHandle``
    contributes that entry; otherwise the whole output. Several edges into
    the same slot produce a list in edge order.
    """
    edges = graph.incoming_edges(node_id)
    slot_counts = Counter(e.targetHandle for e in edges)

    inputs: dict[str, Any] = {}
    for edge in edges:
        source = results.get(edge.source)
        if source is None:
            continue
        output = source.output
        if isinstance(output, dict) and edge.sourceHandle in output:
            value = output[edge.sourceHandle]
        else:
            value = output

        slot = edge.targetHandle
        if slot_counts[slot] > 1:
            inputs.setdefault(slot, []).append(value)
        else:
            inputs[slot] = value
    return inputs


def build_payload(node: WorkflowGraphNode, inputs: dict[str, Any]) -> dict[str, Any]:
    """Payload handed to the provider adapter for a node."""
    return {
        "node_id": node.id,
        "config": dict(node.config),
        "inputs": inputs,
    }


def debug_output(capability: Capability | None) -> Any:
    """Placeholder output a generator node completes with in debug mode."""
    return copy.deepcopy(DEBUG_PLACEHOLDERS.get(capability, {"debug": True}))


def evaluate(graph: ExecutionGraph, record: ExecutionRecord) -> Termination:
    """Decide whether an execution is done, still moving, failed or stuck.

    Failure is declared only once nothing is processing and nothing else is
    dispatchable, so independent branches run to completion first.
    """
    statuses = [record.node_results[n].status for n in record.scope_node_ids]
    if all(s == NodeStatus.COMPLETE for s in statuses):
        return Termination.COMPLETED
    if any(s == NodeStatus.PROCESSING for s in statuses):
        return Termination.RUNNING
    if runnable_nodes(graph, record):
        return Termination.RUNNING
    if any(s == NodeStatus.ERROR for s in statuses):
        return Termination.FAILED
    return Termination.STUCK
