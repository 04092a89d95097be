#!/usr/bin/env python3
"""
Execution watcher.
Starts a workflow run (or attaches to an existing one) and follows it to the end.
"""

import argparse
import asyncio
import json
import sys

import structlog

from genflow.client import EngineClient, EngineClientError
from genflow.models.execution import ExecutionStatus, NodeResult

logger = structlog.get_logger()


def print_node_output(node_id: str, result: NodeResult) -> None:
    """Print a node output the first time it completes."""
    output = json.dumps(result.output, ensure_ascii=False)
    if len(output) > 120:
        output = output[:117] + "..."
    print(f"  ✓ {node_id}: {output}")


async def watch_execution(
    api_url: str,
    workflow_id: str | None = None,
    execution_id: str | None = None,
    node_ids: list[str] | None = None,
    debug_mode: bool = False,
    max_reconnects: int = 5,
) -> dict:
    """Start or attach to an execution and follow it until it finishes.

    Args:
        api_url: Engine API URL
        workflow_id: Workflow to run (ignored when execution_id is given)
        execution_id: Existing execution to attach to
        node_ids: Optional subset of nodes to run
        debug_mode: Use placeholder outputs instead of real predictions
        max_reconnects: Stream reconnects allowed before giving up

    Returns:
        Final execution record as a dict
    """
    async with EngineClient(api_url) as client:
        if execution_id is None:
            record = await client.run(
                workflow_id,
                node_ids=node_ids,
                debug_mode=debug_mode,
            )
            execution_id = record.id
            logger.info(
                "execution_started",
                execution_id=execution_id,
                status=record.status.value,
            )

        observer = await client.follow_execution(
            execution_id,
            on_propagate=print_node_output,
            max_reconnects=max_reconnects,
        )
        logger.info(
            "execution_followed",
            execution_id=execution_id,
            status=observer.status.value,
            last_failed_node_id=observer.last_failed_node_id,
        )

        final = await client.get(execution_id)
        return final.model_dump(mode="json")


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run a workflow and follow its execution"
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--workflow-id", help="Workflow to run")
    target.add_argument("--execution-id", help="Attach to an existing execution")
    parser.add_argument(
        "--node",
        action="append",
        dest="node_ids",
        help="Run only this node (repeatable)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Use placeholder outputs for generator nodes",
    )
    parser.add_argument(
        "--max-reconnects",
        type=int,
        default=5,
        help="Stream reconnects before giving up",
    )
    parser.add_argument(
        "--api-url",
        default="http://localhost:8000/api/v1",
        help="API URL",
    )

    args = parser.parse_args()

    print(f"\n{'=' * 60}")
    if args.execution_id:
        print(f"Execution: {args.execution_id}")
    else:
        print(f"Workflow: {args.workflow_id}")
    print(f"{'=' * 60}\n")

    try:
        result = asyncio.run(
            watch_execution(
                api_url=args.api_url,
                workflow_id=args.workflow_id,
                execution_id=args.execution_id,
                node_ids=args.node_ids,
                debug_mode=args.debug,
                max_reconnects=args.max_reconnects,
            )
        )
    except EngineClientError as e:
        logger.error("watch_failed", error=str(e))
        print(f"\n✗ Error: {e}\n")
        sys.exit(1)

    print(f"\n{'=' * 60}")
    print("EXECUTION RESULT")
    print(f"{'=' * 60}")
    print(json.dumps(result, indent=2, ensure_ascii=False))
    print()

    if result["status"] == ExecutionStatus.COMPLETED.value:
        print("✓ Execution completed")
        sys.exit(0)
    print(f"✗ Execution {result['status']}")
    sys.exit(1)


if __name__ == "__main__":
    main()
