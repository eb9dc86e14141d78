"""
Execution monitor: submit a graph and wait for its terminal result.

Two observers race for every job:
- push: the engine's live progress stream (fast, but may drop or stall)
- pull: polling the durable history record (slow, but authoritative)

Whichever publishes a terminal result first wins; an independent deadline
resolves ``timeout`` if neither does. When the push stream reports a node
at 100% and then goes quiet, a stall fallback checks the history record
shortly afterwards instead of waiting for the next regular poll.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
import time
from typing import Any, AsyncIterator, Awaitable, Callable

from comfyflow.config import Settings
from comfyflow.models.execution import (
    CapturedExecution,
    ExecutionProgress,
    ExecutionResult,
    ExecutionStatusReport,
    ResultSource,
)
from comfyflow.models.graph import Graph
from comfyflow.services.engine_client import EngineService, EngineTransportError

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ExecutionProgress], "Awaitable[None] | None"]

DEFAULT_POLL_INTERVAL = 1.5
DEFAULT_STALL_GRACE = 1.0
DEFAULT_STALL_POLL_TIMEOUT = 10.0
DEFAULT_TIMEOUT = 300.0


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def _sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"


# ---------------------------------------------------------------------------
# History record interpretation
# ---------------------------------------------------------------------------


def _record_error(status: dict[str, Any]) -> str:
    for message in status.get("messages") or []:
        if not isinstance(message, (list, tuple)) or len(message) != 2:
            continue
        kind, data = message
        data = data if isinstance(data, dict) else {}
        if kind == "execution_error":
            text = str(data.get("exception_message") or "Execution error").strip()
            node_type = data.get("node_type")
            return f"{node_type} ({data.get('node_id')}): {text}" if node_type else text
        if kind == "execution_interrupted":
            return f"Execution interrupted at node {data.get('node_id')}"
    return "Execution failed"


def result_from_record(
    job_id: str,
    record: dict[str, Any] | None,
    source: ResultSource = "pull",
) -> ExecutionResult | None:
    """
    Turn a history record into a terminal result, or None while the job is
    still in flight.
    """
    if not record:
        return None
    outputs = record.get("outputs") or {}
    status = record.get("status")
    if not isinstance(status, dict):
        # Records without a status block are only written for finished jobs.
        return ExecutionResult(job_id=job_id, status="completed", outputs=outputs, source=source)

    status_str = status.get("status_str")
    if status_str == "success" or (status_str is None and status.get("completed")):
        return ExecutionResult(job_id=job_id, status="completed", outputs=outputs, source=source)
    if status_str == "error":
        return ExecutionResult(
            job_id=job_id,
            status="failed",
            outputs=outputs or None,
            error=_record_error(status),
            source=source,
        )
    if status_str:
        return ExecutionResult(
            job_id=job_id,
            status="failed",
            outputs=outputs or None,
            error=f"Execution ended with status {status_str}",
            source=source,
        )
    return None


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------


class _Watch:
    """Per-job state shared by the observers: the result slot and their tasks."""

    def __init__(self, job_id: str, on_progress: ProgressCallback | None):
        self.job_id = job_id
        self.on_progress = on_progress
        self.slot: asyncio.Future[ExecutionResult] = asyncio.get_running_loop().create_future()
        self.tasks: list[asyncio.Task] = []
        self.stall_task: asyncio.Task | None = None

    def settle(self, result: ExecutionResult) -> bool:
        if self.slot.done():
            return False
        self.slot.set_result(result)
        return True

    def spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self.tasks.append(task)
        return task


class ExecutionMonitor:
    def __init__(
        self,
        engine: EngineService,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        stall_grace: float = DEFAULT_STALL_GRACE,
        stall_poll_timeout: float = DEFAULT_STALL_POLL_TIMEOUT,
        default_timeout: float = DEFAULT_TIMEOUT,
    ):
        self.engine = engine
        self.poll_interval = poll_interval
        self.stall_grace = stall_grace
        self.stall_poll_timeout = stall_poll_timeout
        self.default_timeout = default_timeout

    @classmethod
    def from_settings(cls, engine: EngineService, settings: Settings) -> "ExecutionMonitor":
        return cls(
            engine,
            poll_interval=settings.poll_interval,
            stall_grace=settings.stall_grace,
            stall_poll_timeout=settings.stall_poll_timeout,
            default_timeout=settings.execution_timeout,
        )

    # -- submission ---------------------------------------------------------

    async def submit(self, graph: Graph) -> str:
        """Submit without waiting. Raises EngineTransportError."""
        return await self.engine.submit_graph(graph)

    async def submit_and_wait(
        self,
        graph: Graph,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExecutionResult:
        started = time.perf_counter()
        try:
            job_id = await self.submit(graph)
        except EngineTransportError as exc:
            logger.warning("Submission failed: %s", exc)
            return ExecutionResult(
                status="failed",
                error=str(exc),
                source="submit",
                execution_time_ms=_elapsed_ms(started),
            )
        result = await self.wait_for_completion(job_id, timeout, on_progress)
        return result.model_copy(update={"execution_time_ms": _elapsed_ms(started)})

    async def submit_and_capture(self, graph: Graph, timeout: float | None = None) -> CapturedExecution:
        """Like submit_and_wait, but also returns every progress event seen."""
        events: list[ExecutionProgress] = []
        started = time.perf_counter()
        try:
            job_id = await self.submit(graph)
        except EngineTransportError as exc:
            logger.warning("Submission failed: %s", exc)
            result = ExecutionResult(
                status="failed",
                error=str(exc),
                source="submit",
                execution_time_ms=_elapsed_ms(started),
            )
            return CapturedExecution(result=result, events=events)

        events.append(ExecutionProgress(job_id=job_id, status="submitted", event="submitted"))
        result = await self.wait_for_completion(job_id, timeout, events.append)
        result = result.model_copy(update={"execution_time_ms": _elapsed_ms(started)})
        return CapturedExecution(result=result, events=events)

    async def stream(self, graph: Graph, timeout: float | None = None) -> AsyncIterator[str]:
        """
        Submit ``graph`` and yield server-sent-event lines: ``submitted``,
        one ``progress`` per push event, then ``execution_complete``.
        """
        started = time.perf_counter()
        try:
            job_id = await self.submit(graph)
        except EngineTransportError as exc:
            logger.warning("Submission failed: %s", exc)
            result = ExecutionResult(
                status="failed",
                error=str(exc),
                source="submit",
                execution_time_ms=_elapsed_ms(started),
            )
            yield _sse({"event": "execution_complete", **result.model_dump()})
            return

        yield _sse({"event": "submitted", "job_id": job_id})

        event_queue: asyncio.Queue[dict[str, Any] | None] = asyncio.Queue()

        def forward(progress: ExecutionProgress) -> None:
            event_queue.put_nowait({"event": "progress", **progress.model_dump()})

        async def coordinator() -> None:
            try:
                result = await self.wait_for_completion(job_id, timeout, forward)
                result = result.model_copy(update={"execution_time_ms": _elapsed_ms(started)})
                await event_queue.put({"event": "execution_complete", **result.model_dump()})
            except Exception as e:
                logger.exception("Monitor error for job %s: %s", job_id, e)
                await event_queue.put({
                    "event": "execution_complete",
                    "job_id": job_id,
                    "status": "failed",
                    "error": f"Internal error: {type(e).__name__}: {e}",
                    "execution_time_ms": _elapsed_ms(started),
                })
            finally:
                # Signal end of events
                await event_queue.put(None)

        coordinator_task = asyncio.create_task(coordinator())
        try:
            while True:
                event = await event_queue.get()
                if event is None:
                    break
                yield _sse(event)
        finally:
            if not coordinator_task.done():
                coordinator_task.cancel()
                try:
                    await coordinator_task
                except asyncio.CancelledError:
                    pass

    # -- waiting ------------------------------------------------------------

    async def wait_for_completion(
        self,
        job_id: str,
        timeout: float | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ExecutionResult:
        """Race the push and pull observers for ``job_id`` under a deadline."""
        timeout = self.default_timeout if timeout is None else timeout
        started = time.perf_counter()
        watch = _Watch(job_id, on_progress)
        watch.spawn(self._observe_push(watch))
        watch.spawn(self._observe_pull(watch))

        try:
            result = await asyncio.wait_for(asyncio.shield(watch.slot), timeout)
        except asyncio.TimeoutError:
            watch.settle(
                ExecutionResult(
                    job_id=job_id,
                    status="timeout",
                    error=f"Execution did not finish within {timeout:g}s",
                    source="deadline",
                )
            )
            result = watch.slot.result()
        finally:
            for task in watch.tasks:
                task.cancel()
            await asyncio.gather(*watch.tasks, return_exceptions=True)

        logger.info("Job %s finished %s via %s", job_id, result.status, result.source)
        return result.model_copy(update={"execution_time_ms": _elapsed_ms(started)})

    async def _notify(self, watch: _Watch, progress: ExecutionProgress) -> None:
        if watch.on_progress is None:
            return
        try:
            outcome = watch.on_progress(progress)
            if inspect.isawaitable(outcome):
                await outcome
        except Exception:
            logger.exception("Progress callback failed for job %s", watch.job_id)

    async def _observe_push(self, watch: _Watch) -> None:
        try:
            async for progress in self.engine.stream_progress(watch.job_id):
                await self._notify(watch, progress)
                if progress.status in ("completed", "failed"):
                    watch.settle(
                        ExecutionResult(
                            job_id=watch.job_id,
                            status=progress.status,
                            outputs=progress.outputs,
                            error=progress.error,
                            source="push",
                        )
                    )
                    return
                node_progress = progress.current_node_progress
                if node_progress is not None and node_progress >= 1:
                    self._arm_stall_fallback(watch)
                elif watch.stall_task is not None:
                    # Work moved on (new node or fresh progress).
                    watch.stall_task.cancel()
                    watch.stall_task = None
        except Exception as exc:
            logger.warning(
                "Progress stream for job %s unavailable, relying on polling: %s",
                watch.job_id,
                exc,
            )

    def _arm_stall_fallback(self, watch: _Watch) -> None:
        if watch.stall_task is not None and not watch.stall_task.done():
            return
        watch.stall_task = watch.spawn(self._stall_fallback(watch))

    async def _stall_fallback(self, watch: _Watch) -> None:
        await asyncio.sleep(self.stall_grace)
        logger.info("Job %s stalled at 100%% progress, checking history", watch.job_id)
        result = await self._poll_result(
            watch.job_id, "stall_fallback", timeout=self.stall_poll_timeout
        )
        if result is None:
            result = ExecutionResult(
                job_id=watch.job_id,
                status="timeout",
                error=(
                    "Progress stalled at 100% and no final record appeared "
                    f"within {self.stall_poll_timeout:g}s"
                ),
                source="stall_fallback",
            )
        watch.settle(result)

    async def _observe_pull(self, watch: _Watch) -> None:
        result = await self._poll_result(watch.job_id, "pull")
        if result is not None:
            watch.settle(result)

    async def _poll_result(
        self,
        job_id: str,
        source: ResultSource,
        timeout: float | None = None,
    ) -> ExecutionResult | None:
        """
        Poll the history record until it is final. With ``timeout`` set,
        gives up and returns None once it has elapsed.
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            try:
                record = await self.engine.get_job_record(job_id)
            except Exception as exc:
                logger.warning("Polling job %s failed, retrying: %s", job_id, exc)
            else:
                result = result_from_record(job_id, record, source)
                if result is not None:
                    return result
                logger.debug("Job %s has no final record yet", job_id)

            delay = self.poll_interval
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                delay = min(delay, remaining)
            await asyncio.sleep(delay)

    # -- status -------------------------------------------------------------

    async def get_status(self, job_id: str) -> ExecutionStatusReport:
        """
        One-shot status: the history record when it is final, otherwise the
        job's position in the queue. Raises EngineTransportError.
        """
        record = await self.engine.get_job_record(job_id)
        result = result_from_record(job_id, record)
        if result is not None:
            return ExecutionStatusReport(
                job_id=job_id,
                state=result.status,
                outputs=result.outputs,
                error=result.error,
            )
        snapshot = await self.engine.list_queue()
        return ExecutionStatusReport(job_id=job_id, state=snapshot.locate(job_id) or "unknown")
