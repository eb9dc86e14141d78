"""
Scripted stand-ins for the ComfyUI engine and the execution monitor.

FakeEngine plays back one JobPlan per submission: push events with delays,
and a history record that appears after a delay. StubMonitor replaces the
monitor entirely for orchestrator tests.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Any, Callable

from comfyflow.models.execution import ExecutionProgress, ExecutionResult, QueueSnapshot
from comfyflow.models.graph import Graph
from comfyflow.services.engine_client import EngineTransportError
from comfyflow.services.graph_builder import copy_graph


def success_record(outputs: dict[str, Any] | None = None) -> dict[str, Any]:
    return {
        "outputs": outputs or {},
        "status": {"status_str": "success", "completed": True, "messages": []},
    }


def error_record(message: str = "boom", node_type: str = "KSampler", node_id: str = "5") -> dict[str, Any]:
    return {
        "outputs": {},
        "status": {
            "status_str": "error",
            "completed": False,
            "messages": [
                ["execution_start", {"prompt_id": "x"}],
                [
                    "execution_error",
                    {"node_id": node_id, "node_type": node_type, "exception_message": message},
                ],
            ],
        },
    }


def progress(status: str = "running", **kwargs: Any) -> dict[str, Any]:
    return {"status": status, **kwargs}


@dataclass
class JobPlan:
    # (delay before the event, ExecutionProgress fields without job_id)
    events: list[tuple[float, dict[str, Any]]] = field(default_factory=list)
    record: dict[str, Any] | None = field(default_factory=success_record)
    record_delay: float = 0.0
    # Keep the stream open after the scripted events instead of ending it.
    hang_stream: bool = False
    stream_error: Exception | None = None


class FakeEngine:
    def __init__(self, plans: list[JobPlan] | None = None):
        self.plans = list(plans or [])
        self.default_plan = JobPlan()
        self.submitted: list[Graph] = []
        self.job_plans: dict[str, JobPlan] = {}
        self.submitted_at: dict[str, float] = {}
        self.submit_error: Exception | None = None
        self.record_failures = 0
        self.record_calls = 0

        self.running: list[Any] = []
        self.pending: list[Any] = []
        self.queue_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.cancelled: list[str | None] = []
        self.removed: list[list[str]] = []
        self.cleared = 0
        self.closed = False

    async def submit_graph(self, graph: Graph) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        job_id = f"job-{len(self.submitted) + 1}"
        self.submitted.append(copy_graph(graph))
        self.job_plans[job_id] = self.plans.pop(0) if self.plans else self.default_plan
        self.submitted_at[job_id] = time.monotonic()
        return job_id

    async def get_job_record(self, job_id: str) -> dict[str, Any] | None:
        self.record_calls += 1
        if self.record_failures > 0:
            self.record_failures -= 1
            raise EngineTransportError("history unavailable")
        plan = self.job_plans.get(job_id)
        if plan is None or plan.record is None:
            return None
        if time.monotonic() - self.submitted_at[job_id] < plan.record_delay:
            return None
        return {**plan.record, "prompt_id": job_id}

    async def stream_progress(self, job_id: str):
        plan = self.job_plans.get(job_id, self.default_plan)
        if plan.stream_error is not None:
            raise plan.stream_error
        for delay, fields in plan.events:
            await asyncio.sleep(delay)
            yield ExecutionProgress(job_id=job_id, **fields)
        if plan.hang_stream:
            await asyncio.sleep(3600)

    async def cancel_job(self, job_id: str | None = None) -> None:
        self.cancelled.append(job_id)

    async def list_queue(self) -> QueueSnapshot:
        if self.queue_error is not None:
            raise self.queue_error
        return QueueSnapshot(running=list(self.running), pending=list(self.pending))

    async def remove_from_queue(self, job_ids: list[str]) -> None:
        if self.remove_error is not None:
            raise self.remove_error
        if not job_ids:
            return
        self.removed.append(list(job_ids))
        self.running = [e for e in self.running if e[1] not in job_ids]
        self.pending = [e for e in self.pending if e[1] not in job_ids]

    async def clear_queue(self) -> None:
        self.cleared += 1
        self.pending = []

    async def aclose(self) -> None:
        self.closed = True


class StubMonitor:
    """
    Records submitted graphs and answers with ``outcome(graph)``. Tracks
    how many executions overlap.
    """

    def __init__(
        self,
        outcome: Callable[[Graph], ExecutionResult] | None = None,
        delay: Callable[[Graph], float] | float = 0.0,
    ):
        self.outcome = outcome or (lambda graph: ExecutionResult(status="completed", outputs={}))
        self.delay = delay
        self.submitted: list[Graph] = []
        self.in_flight = 0
        self.max_in_flight = 0

    async def submit_and_wait(self, graph: Graph, timeout=None, on_progress=None) -> ExecutionResult:
        self.submitted.append(copy_graph(graph))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            delay = self.delay(graph) if callable(self.delay) else self.delay
            await asyncio.sleep(delay)
            return self.outcome(graph)
        finally:
            self.in_flight -= 1
