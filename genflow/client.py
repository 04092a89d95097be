"""HTTP client for the execution engine.

EngineClient wraps the REST API. follow_execution() consumes the snapshot
stream and falls back to pulling the authoritative record whenever the
stream errors, closes early, or is reconnected, so the local mirror
always converges on the stored state.
"""

import asyncio
import json
from typing import Any, AsyncIterator

import httpx
import structlog

from genflow.models.execution import ExecutionRecord
from genflow.services.reconciliation import ExecutionObserver, PropagationCallback
from genflow.services.status_channel import ExecutionSnapshot

logger = structlog.get_logger()


class EngineClientError(Exception):
    """Base exception for client errors."""

    pass


class EngineClient:
    """Async client for the engine REST API.

    Example usage:
        async with EngineClient("http://localhost:8000/api/v1") as client:
            record = await client.run("wf-1", debug_mode=True)
            observer = await client.follow_execution(record.id)
            print(observer.status)
    """

    def __init__(
        self,
        api_url: str = "http://localhost:8000/api/v1",
        timeout: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._client = client or httpx.AsyncClient(base_url=api_url, timeout=timeout)
        self._owns_client = client is None

    async def __aenter__(self) -> "EngineClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise EngineClientError(
                f"{method} {path} failed with {e.response.status_code}: {e.response.text}"
            ) from e
        except httpx.HTTPError as e:
            raise EngineClientError(f"{method} {path} failed: {e}") from e
        return response.json()

    async def run(
        self,
        workflow_id: str,
        workflow_version: int | None = None,
        node_ids: list[str] | None = None,
        debug_mode: bool = False,
        known_outputs: dict[str, Any] | None = None,
    ) -> ExecutionRecord:
        """Start an execution."""
        body: dict[str, Any] = {"workflow_id": workflow_id, "debug_mode": debug_mode}
        if workflow_version is not None:
            body["workflow_version"] = workflow_version
        if node_ids is not None:
            body["node_ids"] = node_ids
        if known_outputs:
            body["known_outputs"] = known_outputs
        data = await self._request("POST", "/executions", json=body)
        return ExecutionRecord.model_validate(data)

    async def get(self, execution_id: str) -> ExecutionRecord:
        data = await self._request("GET", f"/executions/{execution_id}")
        return ExecutionRecord.model_validate(data)

    async def stop(self, execution_id: str) -> ExecutionRecord:
        data = await self._request("POST", f"/executions/{execution_id}/stop")
        return ExecutionRecord.model_validate(data)

    async def resume(self, execution_id: str) -> ExecutionRecord:
        data = await self._request("POST", f"/executions/{execution_id}/resume")
        return ExecutionRecord.model_validate(data)

    async def stream(self, execution_id: str) -> AsyncIterator[ExecutionSnapshot]:
        """Yield snapshots from the SSE stream.

        Raises:
            EngineClientError: On an error event or transport failure
        """
        event = None
        try:
            async with self._client.stream(
                "GET",
                f"/executions/{execution_id}/stream",
                timeout=None,
            ) as response:
                response.raise_for_status()
                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line:
                        event = None
                    elif line.startswith("event:"):
                        event = line[6:].strip()
                    elif line.startswith("data:"):
                        data = json.loads(line[5:].strip())
                        if event == "error":
                            raise EngineClientError(data.get("error", "stream error"))
                        yield ExecutionSnapshot.from_dict(data)
        except httpx.HTTPError as e:
            raise EngineClientError(f"Stream for {execution_id} failed: {e}") from e

    async def follow_execution(
        self,
        execution_id: str,
        on_propagate: PropagationCallback | None = None,
        max_reconnects: int = 5,
        reconnect_delay: float = 1.0,
    ) -> ExecutionObserver:
        """Follow an execution until it reaches a terminal status.

        Args:
            execution_id: Execution to follow
            on_propagate: Called once per completed node
            max_reconnects: Stream reconnects allowed before giving up
            reconnect_delay: Seconds to wait before reconnecting

        Returns:
            Observer holding the reconciled final state
        """
        observer = ExecutionObserver(execution_id, on_propagate=on_propagate)
        observer.reconcile(await self.get(execution_id))
        reconnects = 0

        while not observer.is_done:
            try:
                async for snapshot in self.stream(execution_id):
                    observer.apply(snapshot)
                    if observer.is_done:
                        break
            except EngineClientError as e:
                logger.warning(
                    "execution_stream_dropped",
                    execution_id=execution_id,
                    error=str(e),
                )

            # Pushed state may have been dropped; the stored record wins.
            observer.reconcile(await self.get(execution_id))
            if observer.is_done:
                break

            reconnects += 1
            if reconnects > max_reconnects:
                raise EngineClientError(
                    f"Gave up following {execution_id} after {max_reconnects} reconnects"
                )
            logger.info(
                "execution_stream_reconnecting",
                execution_id=execution_id,
                attempt=reconnects,
            )
            await asyncio.sleep(reconnect_delay)

        return observer
