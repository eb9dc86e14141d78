"""
Batch orchestrator: run independent graphs with bounded concurrency.

At most ``concurrency`` executions are in flight; items start in input
order and results keep that order whatever order they finish in.
"""

from __future__ import annotations

import asyncio
import logging
import time

from comfyflow.models.execution import (
    BatchExecutionResult,
    BatchItem,
    ExecutionResult,
    orchestrator_failure,
)
from comfyflow.services.execution_monitor import ExecutionMonitor
from comfyflow.services.graph_builder import NotFoundError
from comfyflow.services.graph_sources import (
    GraphSourceError,
    InvalidGraphError,
    ensure_valid,
    prepare_context,
)
from comfyflow.services.graph_store import GraphStore

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 2


async def _run_item(
    monitor: ExecutionMonitor,
    item: BatchItem,
    label: str,
    timeout: float | None,
    store: GraphStore | None,
) -> ExecutionResult:
    started = time.perf_counter()
    try:
        ctx = ensure_valid(prepare_context(item, item.params, store))
    except (GraphSourceError, InvalidGraphError, NotFoundError) as exc:
        logger.warning("Batch %s could not be prepared: %s", label, exc)
        return orchestrator_failure(str(exc), execution_time_ms=_elapsed_ms(started))

    try:
        return await monitor.submit_and_wait(ctx.graph, timeout)
    except Exception as e:
        logger.exception("Batch %s failed", label)
        return orchestrator_failure(f"{type(e).__name__}: {e}", execution_time_ms=_elapsed_ms(started))


async def run_batch(
    monitor: ExecutionMonitor,
    items: list[BatchItem],
    *,
    concurrency: int = DEFAULT_CONCURRENCY,
    timeout: float | None = None,
    stop_on_error: bool = False,
    store: GraphStore | None = None,
) -> BatchExecutionResult:
    """
    Execute ``items`` with at most ``concurrency`` in flight.

    With ``stop_on_error`` no new item starts once one has ended in
    anything other than ``completed``; items already running finish, and
    the rest are recorded as skipped.
    """
    start_time = time.perf_counter()
    semaphore = asyncio.Semaphore(max(1, concurrency))
    stopped = asyncio.Event()
    results: list[ExecutionResult | None] = [None] * len(items)

    async def worker(index: int, item: BatchItem) -> None:
        label = item.label or f"item {index}"
        async with semaphore:
            if stopped.is_set():
                results[index] = orchestrator_failure(
                    "Skipped: batch stopped after an earlier failure", skipped=True
                )
                return
            logger.info("Running batch %s (%d/%d)", label, index + 1, len(items))
            result = await _run_item(monitor, item, label, timeout, store)
            results[index] = result
            if result.status != "completed" and stop_on_error:
                stopped.set()

    await asyncio.gather(*(worker(index, item) for index, item in enumerate(items)))

    final = [r for r in results if r is not None]
    failed = [i for i, r in enumerate(final) if r.status != "completed"]
    error = None
    if failed:
        first = final[failed[0]]
        error = f"{len(failed)} of {len(final)} item(s) did not complete; first: item {failed[0]} {first.status}: {first.error}"

    return BatchExecutionResult(
        success=not failed,
        results=final,
        error=error,
        total_execution_time_ms=_elapsed_ms(start_time),
    )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
