"""Execution orchestrator.

Owns the lifecycle of every execution: validates and scopes a run,
dispatches runnable nodes to the job queue, consumes job outcomes, and
decides completion, failure, cancellation and resume. All mutations of one
execution are serialized by its lock and committed (persisted, then
published) one at a time.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

import structlog

from genflow.config import Settings, settings as default_settings
from genflow.core.errors import (
    JobCancelledError,
    OrchestrationError,
    PredictionTimeoutError,
    ProviderError,
    ValidationError,
)
from genflow.core.graph import ExecutionGraph
from genflow.core.poller import (
    PollEvent,
    PollOptions,
    PollSignals,
    PollStatus,
    poll_options_for,
    poll_until_terminal,
)
from genflow.core.scheduler import (
    Termination,
    build_payload,
    debug_output,
    evaluate,
    gather_inputs,
    initial_results,
    resolve_scope,
    runnable_nodes,
)
from genflow.models.execution import (
    ExecutionRecord,
    ExecutionStatus,
    JobRecord,
    JobStatus,
    NodeStatus,
    utc_now,
)
from genflow.models.workflow import Capability, NodeKind, WorkflowGraph
from genflow.providers.base import ProviderHandle
from genflow.providers.registry import ProviderRegistry
from genflow.services.execution_store import ExecutionStore
from genflow.services.job_queue import (
    JobAttempt,
    JobEvent,
    JobEventType,
    JobHandle,
    JobQueue,
)
from genflow.services.status_channel import StatusHub

logger = structlog.get_logger()

POLL_TO_JOB_STATUS = {
    PollStatus.SUCCEEDED: JobStatus.SUCCEEDED,
    PollStatus.FAILED: JobStatus.FAILED,
    PollStatus.CANCELED: JobStatus.CANCELED,
    PollStatus.TIMEOUT: JobStatus.FAILED,
}


class ExecutionStateError(Exception):
    """Operation not allowed in the execution's current status."""

    pass


@dataclass
class ExecutionRun:
    """In-memory runtime of one non-terminal execution.

    Rebuildable from the persisted record alone.
    """

    record: ExecutionRecord
    graph: ExecutionGraph
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    finished: asyncio.Event = field(default_factory=asyncio.Event)
    queue_jobs: dict[str, JobHandle] = field(default_factory=dict)
    wake_events: dict[str, asyncio.Event] = field(default_factory=dict)

    @property
    def execution_id(self) -> str:
        return self.record.id


class Orchestrator:
    """Drives executions from start to a terminal status.

    Example usage:
        orchestrator = Orchestrator(store, queue, providers, hub)
        record = await orchestrator.start(
            workflow_id="wf-1",
            workflow_version=3,
            graph=graph,
        )
        final = await orchestrator.wait_for_terminal(record.id, timeout=600)
    """

    def __init__(
        self,
        store: ExecutionStore,
        queue: JobQueue,
        providers: ProviderRegistry,
        hub: StatusHub,
        settings: Settings | None = None,
        poll_options: dict[Capability, PollOptions] | None = None,
    ) -> None:
        """Initialize the orchestrator.

        Args:
            store: Execution persistence
            queue: Job queue used for provider work
            providers: Capability to adapter lookup
            hub: Status channels for pushed snapshots
            settings: Settings for default poll options
            poll_options: Per-capability poll overrides
        """
        self._store = store
        self._queue = queue
        self._providers = providers
        self._hub = hub
        self._settings = settings or default_settings
        self._poll_options = dict(poll_options or {})
        self._runs: dict[str, ExecutionRun] = {}
        self._predictions: dict[str, str] = {}
        self._resuming: set[str] = set()
        self._shutting_down = False
        self._queue.add_listener(self._on_job_event)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def start(
        self,
        workflow_id: str,
        graph: WorkflowGraph,
        workflow_version: int = 1,
        node_ids: list[str] | None = None,
        debug_mode: bool = False,
        known_outputs: dict[str, Any] | None = None,
    ) -> ExecutionRecord:
        """Validate a graph and start executing it.

        Args:
            workflow_id: Workflow being run
            graph: Graph of the version being run
            workflow_version: Version number of ``graph``
            node_ids: Optional subset of nodes to run
            debug_mode: Complete generator nodes with placeholders
            known_outputs: Outputs of nodes produced elsewhere

        Returns:
            The execution record after the first dispatch tick

        Raises:
            ValidationError: If the graph or request is invalid (nothing is dispatched)
            CycleError: If the graph has a cycle (nothing is dispatched)
        """
        execution_graph = ExecutionGraph(graph)
        execution_graph.validate()
        plan = resolve_scope(execution_graph, node_ids, known_outputs)
        self._check_providers(execution_graph, plan.node_ids, plan.preset_outputs, debug_mode)

        record = ExecutionRecord(
            workflow_id=workflow_id,
            workflow_version=workflow_version,
            graph=graph,
            scope_node_ids=plan.node_ids,
            debug_mode=debug_mode,
            node_results=initial_results(plan),
            propagated_node_ids=list(plan.preset_outputs),
        )
        await self._store.create(record)

        run = self._open_run(record, execution_graph)
        async with run.lock:
            run.record.status = ExecutionStatus.RUNNING
            run.record.started_at = utc_now()
            await self._commit(run)

            logger.info(
                "execution_started",
                execution_id=record.id,
                workflow_id=workflow_id,
                workflow_version=workflow_version,
                node_count=len(plan.node_ids),
                debug_mode=debug_mode,
            )
            await self._tick(run)
            return run.record.model_copy(deep=True)

    async def dispatch_tick(self, execution_id: str) -> None:
        """Dispatch whatever is runnable. Safe to call any number of times."""
        run = self._runs.get(execution_id)
        if run is None:
            return
        async with run.lock:
            await self._tick(run)

    async def stop(self, execution_id: str) -> ExecutionRecord:
        """Cancel an execution.

        Live provider jobs are cancelled where the provider supports it;
        node results keep their last observed state.

        Raises:
            ExecutionNotFoundError: If the execution doesn't exist
            ExecutionStateError: If the execution already finished
        """
        run = self._runs.get(execution_id)
        if run is None:
            record = await self._store.get(execution_id)
            if record.is_terminal:
                raise ExecutionStateError(
                    f"Execution '{execution_id}' is already {record.status.value}"
                )
            # Active in the store but not running here; cancel the record directly.
            for prediction_id in list(record.jobs):
                record.jobs[prediction_id].status = JobStatus.CANCELED
                record.archive_job(prediction_id)
            record.status = ExecutionStatus.CANCELLED
            record.completed_at = utc_now()
            record.sequence += 1
            await self._store.save(record)
            self._hub.publish(record)
            self._hub.close(execution_id)
            return record

        async with run.lock:
            if run.record.is_terminal:
                raise ExecutionStateError(
                    f"Execution '{execution_id}' is already {run.record.status.value}"
                )
            run.cancel_event.set()
            for handle in run.queue_jobs.values():
                self._queue.cancel(handle)
            run.queue_jobs.clear()

            cancelled_jobs = []
            for prediction_id in list(run.record.jobs):
                job = run.record.jobs[prediction_id]
                job.status = JobStatus.CANCELED
                job.updated_at = utc_now()
                cancelled_jobs.append(job.model_copy())
                run.record.archive_job(prediction_id)

            await self._finish(run, ExecutionStatus.CANCELLED)
            snapshot = run.record.model_copy(deep=True)

        await self._cancel_remote(cancelled_jobs)
        return snapshot

    async def resume(self, execution_id: str) -> ExecutionRecord:
        """Re-run the last failed node of a failed or cancelled execution.

        Only the last failed node is reset; complete results are kept. A
        cancelled execution without a failed node returns its interrupted
        nodes to idle instead.

        Raises:
            ExecutionNotFoundError: If the execution doesn't exist
            ExecutionStateError: If the execution cannot be resumed
        """
        if execution_id in self._runs or execution_id in self._resuming:
            raise ExecutionStateError(f"Execution '{execution_id}' is still running")

        self._resuming.add(execution_id)
        try:
            record = await self._store.get(execution_id)
            if record.status not in (ExecutionStatus.FAILED, ExecutionStatus.CANCELLED):
                raise ExecutionStateError(
                    f"Execution '{execution_id}' is {record.status.value} and cannot be resumed"
                )

            reset = []
            failed_node_id = record.last_failed_node_id
            if failed_node_id and record.node_results[failed_node_id].status == NodeStatus.ERROR:
                reset.append(failed_node_id)
            if record.status == ExecutionStatus.CANCELLED:
                reset.extend(record.nodes_with_status(NodeStatus.PROCESSING))
            if not reset and not runnable_nodes(ExecutionGraph(record.graph), record):
                raise ExecutionStateError(f"Execution '{execution_id}' has nothing to resume")

            for node_id in reset:
                record.node_results[node_id].reset()
            record.propagated_node_ids = [
                n for n in record.propagated_node_ids if n not in reset
            ]
            for prediction_id in list(record.jobs):
                record.archive_job(prediction_id)

            remaining_errors = record.nodes_with_status(NodeStatus.ERROR)
            record.last_failed_node_id = remaining_errors[-1] if remaining_errors else None
            record.status = ExecutionStatus.RUNNING
            record.error = None
            record.error_code = None
            record.completed_at = None
            record.resume_count += 1

            run = self._open_run(record, ExecutionGraph(record.graph))
        finally:
            self._resuming.discard(execution_id)

        async with run.lock:
            await self._commit(run)
            logger.info(
                "execution_resumed",
                execution_id=execution_id,
                reset_nodes=reset,
                resume_count=record.resume_count,
            )
            await self._tick(run)
            return run.record.model_copy(deep=True)

    async def recover_active(self) -> list[str]:
        """Rebuild runs for every non-terminal execution in the store.

        Processing nodes with a live job resume polling the same prediction;
        processing nodes without one go back to idle.

        Returns:
            IDs of recovered executions
        """
        recovered = []
        for record in await self._store.list_active():
            if record.id in self._runs:
                continue

            run = self._open_run(record, ExecutionGraph(record.graph))
            async with run.lock:
                if run.record.status == ExecutionStatus.PENDING:
                    run.record.status = ExecutionStatus.RUNNING
                    run.record.started_at = utc_now()

                for node_id in run.record.nodes_with_status(NodeStatus.PROCESSING):
                    job = run.record.live_job_for(node_id)
                    if job is None:
                        run.record.node_results[node_id].reset()
                        continue
                    await self._submit_node(
                        run,
                        node_id,
                        job.capability,
                        self._node_payload(run, node_id),
                        resume_prediction_id=job.prediction_id,
                    )

                await self._commit(run)
                await self._tick(run)

            recovered.append(record.id)
            logger.info("execution_recovered", execution_id=record.id)
        return recovered

    def handle_callback(self, prediction_id: str) -> bool:
        """Wake the poller of a prediction so it re-checks status now.

        Returns:
            True if a poller was waiting on the prediction
        """
        execution_id = self._predictions.get(prediction_id)
        run = self._runs.get(execution_id) if execution_id else None
        wake = run.wake_events.get(prediction_id) if run else None
        if wake is None:
            logger.debug("prediction_callback_unmatched", prediction_id=prediction_id)
            return False
        wake.set()
        logger.info(
            "prediction_callback_received",
            prediction_id=prediction_id,
            execution_id=execution_id,
        )
        return True

    async def wait_for_terminal(
        self,
        execution_id: str,
        timeout: float | None = None,
    ) -> ExecutionRecord:
        """Wait until an execution finishes and return its record."""
        run = self._runs.get(execution_id)
        if run is not None:
            await asyncio.wait_for(run.finished.wait(), timeout=timeout)
        return await self._store.get(execution_id)

    def is_running(self, execution_id: str) -> bool:
        return execution_id in self._runs

    async def shutdown(self) -> None:
        """Stop in-process work without cancelling executions.

        Records stay non-terminal so recover_active() can pick them up.
        """
        self._shutting_down = True
        await self._queue.shutdown()
        self._queue.remove_listener(self._on_job_event)
        for run in self._runs.values():
            run.cancel_event.set()
        self._runs.clear()
        self._predictions.clear()
        self._hub.close_all()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def _open_run(self, record: ExecutionRecord, graph: ExecutionGraph) -> ExecutionRun:
        run = ExecutionRun(record=record, graph=graph)
        self._runs[record.id] = run
        self._hub.open(record.id)
        return run

    def _check_providers(
        self,
        graph: ExecutionGraph,
        scope: list[str],
        preset: dict[str, Any],
        debug_mode: bool,
    ) -> None:
        errors = []
        for node_id in scope:
            node = graph.node(node_id)
            if node_id in preset or node.type == NodeKind.INPUT:
                continue
            if debug_mode and node.type == NodeKind.GENERATOR:
                continue
            capability = node.resolved_capability()
            if capability is None or not self._providers.has(capability):
                errors.append(
                    f"No provider for node '{node_id}' "
                    f"(capability {capability.value if capability else 'none'})"
                )
        if errors:
            raise ValidationError("Unsupported node capabilities", errors=errors)

    def _node_payload(self, run: ExecutionRun, node_id: str) -> dict[str, Any]:
        node = run.graph.node(node_id)
        inputs = gather_inputs(run.graph, node_id, run.record.node_results)
        return build_payload(node, inputs)

    async def _tick(self, run: ExecutionRun) -> None:
        """Dispatch runnable nodes until only provider work remains.

        Caller must hold the run's lock.
        """
        record = run.record
        if record.is_terminal or run.cancel_event.is_set():
            return

        while True:
            runnable = runnable_nodes(run.graph, record)
            if not runnable:
                break

            completed_inline = False
            dispatched = False
            for node_id in runnable:
                node = run.graph.node(node_id)
                result = record.node_results[node_id]
                payload = self._node_payload(run, node_id)

                if node.type == NodeKind.INPUT:
                    output = node.config["value"] if "value" in node.config else payload["inputs"]
                    result.mark_processing()
                    result.mark_complete(output)
                    self._mark_propagated(record, node_id)
                    completed_inline = True
                    continue

                capability = node.resolved_capability()
                if record.debug_mode and node.type == NodeKind.GENERATOR:
                    result.mark_processing()
                    result.debug_payload = payload
                    result.mark_complete(debug_output(capability))
                    self._mark_propagated(record, node_id)
                    completed_inline = True
                    logger.info(
                        "node_debug_completed",
                        execution_id=record.id,
                        node_id=node_id,
                        capability=capability.value if capability else None,
                    )
                    continue

                if node_id in run.queue_jobs or record.live_job_for(node_id):
                    continue
                result.mark_processing()
                result.attempts = 0
                await self._submit_node(run, node_id, capability, payload)
                dispatched = True

            if completed_inline or dispatched:
                await self._commit(run)
            if not completed_inline:
                break

        await self._settle(run)

    async def _submit_node(
        self,
        run: ExecutionRun,
        node_id: str,
        capability: Capability,
        payload: dict[str, Any],
        resume_prediction_id: str | None = None,
    ) -> JobHandle:
        resume = {"prediction_id": resume_prediction_id}

        async def handler(handle: JobHandle, attempt: JobAttempt) -> dict[str, Any]:
            return await self._run_node_attempt(
                run,
                node_id,
                capability,
                handle,
                attempt,
                resume_prediction_id=resume.pop("prediction_id", None),
            )

        handle = await self._queue.submit(
            capability,
            node_id=node_id,
            payload=payload,
            handler=handler,
            execution_id=run.execution_id,
        )
        run.queue_jobs[node_id] = handle
        logger.info(
            "node_dispatched",
            execution_id=run.execution_id,
            node_id=node_id,
            capability=capability.value,
            job_id=handle.id,
            resumed=resume_prediction_id is not None,
        )
        return handle

    async def _run_node_attempt(
        self,
        run: ExecutionRun,
        node_id: str,
        capability: Capability,
        handle: JobHandle,
        attempt: JobAttempt,
        resume_prediction_id: str | None = None,
    ) -> dict[str, Any]:
        """One attempt at a node: submit (or reattach), poll, record the job.

        Raises:
            JobCancelledError: If the execution was stopped
            ProviderError: If the prediction failed
            PredictionTimeoutError: If polling ran out of attempts
        """
        adapter = self._providers.get(capability)

        async with run.lock:
            if run.record.is_terminal or run.cancel_event.is_set():
                raise JobCancelledError()
            run.record.node_results[node_id].attempts = attempt.number
            existing = run.record.jobs.get(resume_prediction_id) if resume_prediction_id else None

        if existing is not None and not existing.is_terminal:
            provider_handle = ProviderHandle(
                prediction_id=existing.prediction_id,
                capability=capability,
            )
            async with run.lock:
                existing.queue_job_id = handle.id
                existing.attempt = attempt.number
                await self._commit(run)
        else:
            provider_handle = await adapter.submit(capability, handle.payload)
            await self._register_job(run, node_id, capability, handle, attempt, provider_handle)

        prediction_id = provider_handle.prediction_id
        wake = asyncio.Event()
        run.wake_events[prediction_id] = wake
        self._predictions[prediction_id] = run.execution_id

        async def observe(event: PollEvent) -> None:
            await self._on_poll_event(run, handle, event)

        try:
            outcome = await poll_until_terminal(
                adapter,
                provider_handle,
                self._poll_options_for(capability),
                observer=observe,
                signals=PollSignals(cancel=run.cancel_event, wake=wake),
            )
        except Exception as e:
            await self._finish_job(run, prediction_id, JobStatus.FAILED, error=str(e))
            raise
        finally:
            run.wake_events.pop(prediction_id, None)
            self._predictions.pop(prediction_id, None)

        await self._finish_job(
            run,
            prediction_id,
            POLL_TO_JOB_STATUS[outcome.status],
            output=outcome.output,
            error=outcome.error,
            cost=outcome.cost,
            progress=outcome.progress,
        )

        if outcome.status == PollStatus.SUCCEEDED:
            return {
                "output": outcome.output,
                "cost": outcome.cost,
                "prediction_id": prediction_id,
            }
        if outcome.status == PollStatus.CANCELED and run.cancel_event.is_set():
            raise JobCancelledError()
        if outcome.status == PollStatus.TIMEOUT:
            raise PredictionTimeoutError()
        raise ProviderError(outcome.error or "Prediction failed")

    async def _register_job(
        self,
        run: ExecutionRun,
        node_id: str,
        capability: Capability,
        handle: JobHandle,
        attempt: JobAttempt,
        provider_handle: ProviderHandle,
    ) -> None:
        async with run.lock:
            record = run.record
            if record.is_terminal:
                return
            # A node never has two live jobs.
            stale = record.live_job_for(node_id)
            if stale is not None:
                stale.status = JobStatus.FAILED
                stale.error = "Superseded by a new attempt"
                record.archive_job(stale.prediction_id)

            record.jobs[provider_handle.prediction_id] = JobRecord(
                prediction_id=provider_handle.prediction_id,
                node_id=node_id,
                queue_job_id=handle.id,
                capability=capability,
                status=JobStatus.STARTING,
                attempt=attempt.number,
            )
            await self._commit(run)

    async def _finish_job(
        self,
        run: ExecutionRun,
        prediction_id: str,
        status: JobStatus,
        output: Any = None,
        error: str | None = None,
        cost: float | None = None,
        progress: int | None = None,
    ) -> None:
        async with run.lock:
            if run.record.is_terminal:
                return
            job = run.record.jobs.get(prediction_id)
            if job is None:
                return
            job.status = status
            job.output = output
            job.error = error
            job.cost = cost
            if progress is not None:
                job.progress = progress
            job.updated_at = utc_now()
            run.record.archive_job(prediction_id)
            await self._commit(run)

    async def _on_poll_event(self, run: ExecutionRun, handle: JobHandle, event: PollEvent) -> None:
        if event.type == "heartbeat":
            await self._queue.heartbeat(handle)
            async with run.lock:
                job = run.record.jobs.get(event.prediction_id)
                if job is None or run.record.is_terminal:
                    return
                job.last_heartbeat_at = utc_now()
                if job.stalled:
                    job.stalled = False
                    await self._commit(run)
            return

        await self._queue.update_status(
            handle,
            progress=event.progress,
            provider_status=event.provider_status,
        )
        async with run.lock:
            job = run.record.jobs.get(event.prediction_id)
            if job is None or run.record.is_terminal:
                return
            if event.progress is not None:
                job.progress = event.progress
            job.status = JobStatus.PROCESSING
            job.updated_at = utc_now()
            await self._commit(run)

    def _poll_options_for(self, capability: Capability) -> PollOptions:
        options = self._poll_options.get(capability)
        if options is None:
            options = poll_options_for(capability, self._settings)
        return options

    async def _cancel_remote(self, jobs: list[JobRecord]) -> None:
        for job in jobs:
            if not self._providers.has(job.capability):
                continue
            adapter = self._providers.get(job.capability)
            if not adapter.supports_cancel:
                continue
            try:
                await adapter.cancel(
                    ProviderHandle(prediction_id=job.prediction_id, capability=job.capability)
                )
            except ProviderError as e:
                logger.warning(
                    "prediction_cancel_failed",
                    prediction_id=job.prediction_id,
                    error=str(e),
                )

    # ------------------------------------------------------------------
    # Consume
    # ------------------------------------------------------------------

    async def _on_job_event(self, event: JobEvent) -> None:
        if self._shutting_down or event.execution_id is None:
            return
        run = self._runs.get(event.execution_id)
        if run is None:
            return

        if event.type == JobEventType.STALLED:
            async with run.lock:
                for job in run.record.jobs.values():
                    if job.queue_job_id == event.job_id:
                        job.stalled = True
                        await self._commit(run)
                        break
        elif event.type == JobEventType.RETRYING:
            logger.info(
                "node_retry_scheduled",
                execution_id=event.execution_id,
                node_id=event.node_id,
                attempt=event.attempt,
                delay=event.data.get("delay"),
                error=event.data.get("error"),
            )
        elif event.type in (
            JobEventType.SUCCEEDED,
            JobEventType.FAILED,
            JobEventType.CANCELLED,
        ):
            await self._consume(run, event)

    async def _consume(self, run: ExecutionRun, event: JobEvent) -> None:
        """Apply a job's terminal outcome to its node and re-tick."""
        async with run.lock:
            handle = run.queue_jobs.get(event.node_id)
            if handle is None or handle.id != event.job_id:
                return
            del run.queue_jobs[event.node_id]

            record = run.record
            if record.is_terminal:
                return
            result = record.node_results[event.node_id]

            if event.type == JobEventType.SUCCEEDED:
                outcome = event.data.get("result") or {}
                result.mark_complete(outcome.get("output"), outcome.get("cost"))
                self._mark_propagated(record, event.node_id)
                logger.info(
                    "node_completed",
                    execution_id=record.id,
                    node_id=event.node_id,
                    attempts=result.attempts,
                )
            else:
                if event.type == JobEventType.CANCELLED:
                    error, error_code = "Job cancelled", "CANCELLED"
                else:
                    error = event.data.get("error") or "Job failed"
                    error_code = event.data.get("error_code")
                result.mark_error(error, error_code)
                record.last_failed_node_id = event.node_id
                logger.warning(
                    "node_failed",
                    execution_id=record.id,
                    node_id=event.node_id,
                    error=error,
                    error_code=error_code,
                    dead_lettered=event.data.get("dead_lettered", False),
                )

            await self._commit(run)
            await self._tick(run)

    def _mark_propagated(self, record: ExecutionRecord, node_id: str) -> None:
        if node_id not in record.propagated_node_ids:
            record.propagated_node_ids.append(node_id)

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    async def _settle(self, run: ExecutionRun) -> None:
        termination = evaluate(run.graph, run.record)
        if termination == Termination.RUNNING:
            return

        if termination == Termination.COMPLETED:
            await self._finish(run, ExecutionStatus.COMPLETED)
            return

        if termination == Termination.FAILED:
            failed = run.record.last_failed_node_id
            result = run.record.node_results.get(failed) if failed else None
            await self._finish(
                run,
                ExecutionStatus.FAILED,
                error=f"Node '{failed}' failed: {result.error if result else 'unknown error'}",
                error_code=(result.error_code if result else None) or "NODE_FAILED",
            )
            return

        error = OrchestrationError(
            "Execution cannot make progress: no node is runnable, processing or failed"
        )
        logger.error(
            "execution_stuck",
            execution_id=run.execution_id,
            statuses={n: r.status.value for n, r in run.record.node_results.items()},
        )
        await self._finish(run, ExecutionStatus.FAILED, error=str(error), error_code=error.error_code)

    async def _finish(
        self,
        run: ExecutionRun,
        status: ExecutionStatus,
        error: str | None = None,
        error_code: str | None = None,
    ) -> None:
        record = run.record
        record.status = status
        record.error = error
        record.error_code = error_code
        record.completed_at = utc_now()
        await self._commit(run)

        self._runs.pop(run.execution_id, None)
        self._hub.close(run.execution_id)
        run.finished.set()

        logger.info(
            "execution_finished",
            execution_id=record.id,
            status=status.value,
            error_code=error_code,
            total_cost=record.total_cost,
        )

    async def _commit(self, run: ExecutionRun) -> None:
        """Persist then publish the run's record."""
        run.record.sequence += 1
        await self._store.save(run.record)
        self._hub.publish(run.record)
