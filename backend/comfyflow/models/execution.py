"""
Execution models: progress snapshots, terminal results, queue state and
the inputs/outputs of the chain and batch orchestrators.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


ProgressStatus = Literal["submitted", "running", "completed", "failed"]
ResultStatus = Literal["completed", "failed", "timeout"]
ResultSource = Literal["push", "pull", "stall_fallback", "deadline", "submit", "orchestrator"]


class ExecutionProgress(BaseModel):
    job_id: str
    status: ProgressStatus
    event: str | None = None
    current_node: str | None = None
    current_node_progress: float | None = None
    outputs: dict[str, Any] | None = None
    error: str | None = None


class ExecutionResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str | None = None
    status: ResultStatus
    outputs: dict[str, Any] | None = None
    error: str | None = None
    skipped: bool = False
    source: ResultSource | None = None
    execution_time_ms: int = 0


class CapturedExecution(BaseModel):
    result: ExecutionResult
    events: list[ExecutionProgress] = Field(default_factory=list)


class ExecutionStatusReport(BaseModel):
    job_id: str
    state: Literal["completed", "failed", "running", "pending", "unknown"]
    outputs: dict[str, Any] | None = None
    error: str | None = None


# ---------------------------------------------------------------------------
# Queue
# ---------------------------------------------------------------------------


def queue_entry_job_id(entry: Any) -> str | None:
    """Extract the job id from a raw queue entry.

    ComfyUI lists entries as ``[number, prompt_id, prompt, extra_data,
    outputs_to_execute]``; some proxies return dicts with ``prompt_id``.
    """
    if isinstance(entry, (list, tuple)) and len(entry) > 1 and isinstance(entry[1], str):
        return entry[1]
    if isinstance(entry, dict):
        job_id = entry.get("prompt_id") or entry.get("job_id")
        return str(job_id) if job_id else None
    return None


class QueueSnapshot(BaseModel):
    running: list[Any] = Field(default_factory=list)
    pending: list[Any] = Field(default_factory=list)

    def running_ids(self) -> list[str]:
        return [jid for jid in (queue_entry_job_id(e) for e in self.running) if jid]

    def pending_ids(self) -> list[str]:
        return [jid for jid in (queue_entry_job_id(e) for e in self.pending) if jid]

    def locate(self, job_id: str) -> Literal["running", "pending"] | None:
        if job_id in self.running_ids():
            return "running"
        if job_id in self.pending_ids():
            return "pending"
        return None


class CleanupReport(BaseModel):
    job_id: str
    status: Literal["not_queued", "removed", "error"]
    location: Literal["running", "pending"] | None = None
    message: str


class InterruptReport(BaseModel):
    job_id: str | None = None
    interrupted: bool = True
    cleanup: CleanupReport | None = None


# ---------------------------------------------------------------------------
# Orchestration inputs
# ---------------------------------------------------------------------------


NodeOverrides = dict[str, dict[str, Any]]


class GraphRef(BaseModel):
    """Where a graph comes from: inline, a live session, or a template."""

    # Wire object keyed by node id; parsed by graph_from_wire on use.
    graph: dict[str, Any] | None = None
    workflow_id: str | None = None
    template: str | None = None
    template_params: dict[str, Any] = Field(default_factory=dict)


class ChainInputBinding(BaseModel):
    step: int
    output_node: str
    output_index: int = 0


class ChainStep(GraphRef):
    label: str | None = None
    params: NodeOverrides = Field(default_factory=dict)
    input_from: ChainInputBinding | None = None
    output_to: str | None = None
    target_node: str | None = None


class BatchItem(GraphRef):
    label: str | None = None
    params: NodeOverrides = Field(default_factory=dict)


class ChainExecutionResult(BaseModel):
    success: bool
    results: list[ExecutionResult]
    error: str | None = None
    total_execution_time_ms: int = 0


class BatchExecutionResult(BaseModel):
    success: bool
    results: list[ExecutionResult]
    error: str | None = None
    total_execution_time_ms: int = 0


def orchestrator_failure(
    error: str,
    *,
    job_id: str | None = None,
    skipped: bool = False,
    execution_time_ms: int = 0,
) -> ExecutionResult:
    """A failed entry for a chain step or batch item that never produced its own result."""
    return ExecutionResult(
        job_id=job_id,
        status="failed",
        error=error,
        skipped=skipped,
        source="orchestrator",
        execution_time_ms=execution_time_ms,
    )
