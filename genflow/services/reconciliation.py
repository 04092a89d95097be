"""Pull-based reconciliation of pushed status.

ExecutionObserver keeps a consumer-side mirror of one execution. Pushed
snapshots may be dropped, duplicated or arrive late; a pull of the
authoritative record overwrites the mirror so it always converges.
Propagation of completed node outputs downstream happens at most once per
node, however many times its completion is observed.
"""

from typing import Callable

import structlog

from genflow.models.execution import (
    TERMINAL_EXECUTION_STATUSES,
    ExecutionRecord,
    ExecutionStatus,
    NodeResult,
    NodeStatus,
)
from genflow.services.status_channel import ExecutionSnapshot

logger = structlog.get_logger()

PropagationCallback = Callable[[str, NodeResult], None]


class ExecutionObserver:
    """Consumer-side mirror of an execution.

    Example usage:
        observer = ExecutionObserver(execution_id, on_propagate=show_output)
        async for snapshot in subscription:
            observer.apply(snapshot)
        observer.reconcile(await store.get(execution_id))
    """

    def __init__(
        self,
        execution_id: str,
        on_propagate: PropagationCallback | None = None,
    ) -> None:
        self.execution_id = execution_id
        self.status: ExecutionStatus = ExecutionStatus.PENDING
        self.node_results: dict[str, NodeResult] = {}
        self.last_failed_node_id: str | None = None
        self.error: str | None = None
        self.sequence = -1
        self._on_propagate = on_propagate
        self._propagated: set[str] = set()

    @property
    def is_done(self) -> bool:
        return self.status in TERMINAL_EXECUTION_STATUSES

    @property
    def propagated_node_ids(self) -> set[str]:
        return set(self._propagated)

    def apply(self, snapshot: ExecutionSnapshot) -> bool:
        """Apply a pushed snapshot.

        Returns:
            False if the snapshot was stale or a duplicate and was ignored
        """
        if snapshot.execution_id != self.execution_id:
            return False
        if snapshot.sequence <= self.sequence:
            logger.debug(
                "stale_snapshot_ignored",
                execution_id=self.execution_id,
                sequence=snapshot.sequence,
                current=self.sequence,
            )
            return False

        self.sequence = snapshot.sequence
        self.status = snapshot.status
        self.error = snapshot.error
        for node_id, result in snapshot.node_results.items():
            self.node_results[node_id] = result.model_copy(deep=True)
            if result.status == NodeStatus.COMPLETE:
                self._propagate(node_id, result)
        self.last_failed_node_id = snapshot.last_failed_node_id or self._derive_failed_node()
        return True

    def reconcile(self, record: ExecutionRecord) -> list[str]:
        """Overwrite the mirror with the authoritative record.

        Complete nodes have any stale error cleared.

        Returns:
            IDs of nodes whose status changed
        """
        changed = []
        for node_id, result in record.node_results.items():
            fresh = result.model_copy(deep=True)
            if fresh.status == NodeStatus.COMPLETE:
                fresh.error = None
                fresh.error_code = None
            previous = self.node_results.get(node_id)
            if previous is None or previous.status != fresh.status:
                changed.append(node_id)
            self.node_results[node_id] = fresh
            if fresh.status == NodeStatus.COMPLETE:
                self._propagate(node_id, fresh)

        self.status = record.status
        self.error = record.error
        self.sequence = max(self.sequence, record.sequence)
        self.last_failed_node_id = record.last_failed_node_id or self._derive_failed_node()

        if changed:
            logger.info(
                "execution_reconciled",
                execution_id=self.execution_id,
                changed=changed,
                status=record.status.value,
            )
        return changed

    def _propagate(self, node_id: str, result: NodeResult) -> None:
        if node_id in self._propagated:
            return
        self._propagated.add(node_id)
        if self._on_propagate is not None:
            self._on_propagate(node_id, result)

    def _derive_failed_node(self) -> str | None:
        for node_id, result in self.node_results.items():
            if result.status == NodeStatus.ERROR:
                return node_id
        return None
