"""Dependency graph over a workflow version.

Pure structural queries used by the orchestrator and the workflow service:
topological ordering, dependency lookups and validation.
"""

from collections import deque

from genflow.core.errors import CycleError, ValidationError
from genflow.models.workflow import (
    NodeKind,
    WorkflowGraph,
    WorkflowGraphEdge,
    WorkflowGraphNode,
)


class ExecutionGraph:
    """Indexed, read-only view of a WorkflowGraph.

    Example usage:
        graph = ExecutionGraph(workflow_graph)
        graph.validate()
        for node_id in graph.topological_order():
            print(node_id, graph.dependencies_of(node_id))
    """

    def __init__(self, graph: WorkflowGraph) -> None:
        self._graph = graph
        self._nodes: dict[str, WorkflowGraphNode] = {}
        for node in graph.nodes:
            self._nodes.setdefault(node.id, node)

        self._incoming: dict[str, list[WorkflowGraphEdge]] = {n: [] for n in self._nodes}
        self._outgoing: dict[str, list[WorkflowGraphEdge]] = {n: [] for n in self._nodes}
        for edge in graph.edges:
            if edge.source in self._nodes and edge.target in self._nodes:
                self._incoming[edge.target].append(edge)
                self._outgoing[edge.source].append(edge)

    @property
    def graph(self) -> WorkflowGraph:
        return self._graph

    @property
    def node_ids(self) -> list[str]:
        return list(self._nodes)

    def node(self, node_id: str) -> WorkflowGraphNode:
        """Get a node by ID.

        Raises:
            KeyError: If the node is not in the graph
        """
        return self._nodes[node_id]

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def incoming_edges(self, node_id: str) -> list[WorkflowGraphEdge]:
        return list(self._incoming.get(node_id, []))

    def dependencies_of(self, node_id: str) -> set[str]:
        """Nodes with an edge into ``node_id``."""
        return {e.source for e in self._incoming.get(node_id, [])}

    def dependents_of(self, node_id: str) -> set[str]:
        """Nodes with an edge out of ``node_id``."""
        return {e.target for e in self._outgoing.get(node_id, [])}

    def ancestors_of(self, node_id: str) -> set[str]:
        """Every node ``node_id`` transitively depends on."""
        seen: set[str] = set()
        stack = list(self.dependencies_of(node_id))
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            stack.extend(self.dependencies_of(current) - seen)
        return seen

    def topological_order(self) -> list[str]:
        """Order nodes so every node follows all of its dependencies.

        Uses Kahn's algorithm. Ties are broken by declaration order so the
        result is deterministic for a given graph.

        Returns:
            All node IDs in dependency order

        Raises:
            CycleError: If some nodes never reach in-degree zero
        """
        position = {n: i for i, n in enumerate(self._nodes)}
        in_degree = {n: len(self.dependencies_of(n)) for n in self._nodes}
        ready = deque(n for n in self._nodes if in_degree[n] == 0)
        order: list[str] = []

        while ready:
            current = ready.popleft()
            order.append(current)
            for dependent in sorted(self.dependents_of(current), key=position.__getitem__):
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    ready.append(dependent)

        if len(order) != len(self._nodes):
            done = set(order)
            remaining = [n for n in self._nodes if n not in done]
            raise CycleError(remaining)

        return order

    def validation_errors(self) -> list[str]:
        """Structural problems that make the graph unrunnable.

        Cycles are reported separately by topological_order().

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        node_ids = [n.id for n in self._graph.nodes]
        if len(node_ids) != len(set(node_ids)):
            errors.append("Duplicate node IDs detected")

        for edge in self._graph.edges:
            if edge.source not in self._nodes:
                errors.append(f"Edge references unknown source node: {edge.source}")
            if edge.target not in self._nodes:
                errors.append(f"Edge references unknown target node: {edge.target}")
            if edge.source == edge.target:
                errors.append(f"Self-loop detected on node: {edge.source}")

        for node in self._nodes.values():
            if node.type == NodeKind.GENERATOR and node.capability is None:
                errors.append(f"Generator node '{node.id}' has no capability")

            fed_slots = {e.targetHandle for e in self._incoming[node.id]}
            for slot in node.required_inputs:
                if slot not in fed_slots:
                    errors.append(
                        f"Node '{node.id}' is missing required input '{slot}'"
                    )

        return errors

    def validate(self) -> list[str]:
        """Validate the graph before anything is dispatched.

        Returns:
            Node IDs in topological order

        Raises:
            ValidationError: On structural errors
            CycleError: If the graph is not acyclic
        """
        errors = self.validation_errors()
        if errors:
            raise ValidationError("Invalid workflow graph", errors=errors)
        return self.topological_order()


def topological_order(graph: WorkflowGraph) -> list[str]:
    """Shortcut for ExecutionGraph(graph).topological_order()."""
    return ExecutionGraph(graph).topological_order()
