"""
Chain orchestrator: run graphs one after another, threading an output
artifact of an earlier step into an input of a later one.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Awaitable, Callable

from comfyflow.models.execution import (
    ChainExecutionResult,
    ChainStep,
    ExecutionResult,
    orchestrator_failure,
)
from comfyflow.models.graph import GraphContext
from comfyflow.services.execution_monitor import ExecutionMonitor, ProgressCallback
from comfyflow.services.graph_builder import NotFoundError, set_input
from comfyflow.services.graph_sources import (
    GraphSourceError,
    InvalidGraphError,
    ensure_valid,
    prepare_context,
)
from comfyflow.services.graph_store import GraphStore

logger = logging.getLogger(__name__)

ArtifactResolver = Callable[[Any], Awaitable[Any]]


class ChainBindingError(ValueError):
    """A step's ``input_from`` binding cannot be satisfied."""


def artifact_value(artifact: Any) -> Any:
    """
    Default value installed for a threaded artifact: a produced file
    becomes ``"subfolder/filename"`` (or just ``filename``), anything else
    is passed through as is.
    """
    if isinstance(artifact, dict) and artifact.get("filename"):
        filename = str(artifact["filename"])
        subfolder = artifact.get("subfolder")
        return f"{subfolder}/{filename}" if subfolder else filename
    return artifact


def pick_artifact(outputs: dict[str, Any] | None, output_node: str, output_index: int) -> Any:
    """
    Return artifact ``output_index`` of ``output_node``. A node's artifacts
    are the items of the list values in its output mapping, in key order.
    """
    node_outputs = (outputs or {}).get(output_node)
    if not isinstance(node_outputs, dict):
        raise ChainBindingError(f'Node "{output_node}" produced no outputs')
    artifacts = [
        item
        for value in node_outputs.values()
        if isinstance(value, list)
        for item in value
    ]
    if not 0 <= output_index < len(artifacts):
        raise ChainBindingError(
            f'Node "{output_node}" has {len(artifacts)} artifact(s), '
            f"index {output_index} is out of range"
        )
    return artifacts[output_index]


def install_value(ctx: GraphContext, step: ChainStep, value: Any) -> list[str]:
    """Write ``value`` to the step's ``output_to`` input; returns the node ids touched."""
    input_name = step.output_to
    if not input_name:
        raise ChainBindingError("input_from requires output_to")

    if step.target_node is not None:
        try:
            set_input(ctx, step.target_node, input_name, value)
        except NotFoundError as exc:
            raise ChainBindingError(str(exc)) from exc
        return [step.target_node]

    targets = [node_id for node_id, node in ctx.graph.items() if input_name in node.inputs]
    if not targets:
        raise ChainBindingError(f'No node declares an input named "{input_name}"')
    for node_id in targets:
        set_input(ctx, node_id, input_name, value)
    return targets


async def _bind_input(
    ctx: GraphContext,
    step: ChainStep,
    results: list[ExecutionResult],
    artifact_resolver: ArtifactResolver | None,
) -> None:
    binding = step.input_from
    artifact = pick_artifact(results[binding.step].outputs, binding.output_node, binding.output_index)
    value = await artifact_resolver(artifact) if artifact_resolver else artifact_value(artifact)
    targets = install_value(ctx, step, value)
    logger.debug("Threaded step %d output into %s.%s", binding.step, targets, step.output_to)


async def run_chain(
    monitor: ExecutionMonitor,
    steps: list[ChainStep],
    *,
    stop_on_error: bool = True,
    timeout: float | None = None,
    store: GraphStore | None = None,
    artifact_resolver: ArtifactResolver | None = None,
    on_progress: ProgressCallback | None = None,
) -> ChainExecutionResult:
    """
    Execute ``steps`` strictly in order.

    With ``stop_on_error`` the chain halts after the first step that does
    not complete. Otherwise it carries on, and steps bound to a step that
    did not complete are recorded as skipped without being submitted.
    """
    start_time = time.perf_counter()
    results: list[ExecutionResult] = []
    first_error: str | None = None

    for index, step in enumerate(steps):
        label = step.label or f"step {index}"
        step_start = time.perf_counter()
        binding = step.input_from

        if binding is not None and not 0 <= binding.step < index:
            result = orchestrator_failure(
                f"{label}: input_from.step must refer to an earlier step, got {binding.step}"
            )
        elif binding is not None and results[binding.step].status != "completed":
            logger.info("Skipping %s: step %d did not complete", label, binding.step)
            result = orchestrator_failure(
                f"Skipped: step {binding.step} did not complete",
                skipped=True,
            )
        else:
            try:
                ctx = prepare_context(step, step.params, store)
                if binding is not None:
                    await _bind_input(ctx, step, results, artifact_resolver)
                ensure_valid(ctx)
            except (ChainBindingError, GraphSourceError, InvalidGraphError, NotFoundError) as exc:
                logger.warning("Chain %s could not be prepared: %s", label, exc)
                result = orchestrator_failure(str(exc), execution_time_ms=_elapsed_ms(step_start))
            except Exception as e:
                logger.exception("Chain %s failed during preparation", label)
                result = orchestrator_failure(
                    f"{type(e).__name__}: {e}", execution_time_ms=_elapsed_ms(step_start)
                )
            else:
                logger.info("Running chain %s (%d/%d)", label, index + 1, len(steps))
                try:
                    result = await monitor.submit_and_wait(ctx.graph, timeout, on_progress)
                except Exception as e:
                    logger.exception("Chain %s failed during execution", label)
                    result = orchestrator_failure(
                        f"{type(e).__name__}: {e}", execution_time_ms=_elapsed_ms(step_start)
                    )

        results.append(result)
        if result.status == "completed":
            continue
        if first_error is None:
            first_error = f"Step {index} ({label}) {result.status}: {result.error}"
        if stop_on_error:
            break

    return ChainExecutionResult(
        success=first_error is None and len(results) == len(steps),
        results=results,
        error=first_error,
        total_execution_time_ms=_elapsed_ms(start_time),
    )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
