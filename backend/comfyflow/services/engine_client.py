"""
ComfyUI engine client:
- workflow submission, history and queue over HTTP (httpx)
- live execution progress over the engine's websocket

The rest of the package only depends on the EngineService protocol, so
tests and alternative backends can stand in for the real server.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections import OrderedDict, deque
from typing import Any, AsyncIterator, Protocol
from urllib.parse import quote
from uuid import uuid4

import httpx
import websockets

from comfyflow.config import DEFAULT_HOST, Settings
from comfyflow.models.execution import ExecutionProgress, QueueSnapshot
from comfyflow.models.graph import Graph
from comfyflow.services.graph_builder import graph_to_wire

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 60.0
MAX_RETRIES = 2
RETRY_DELAY = 0.5

# Messages kept for jobs nobody is streaming yet (fast or cached jobs can
# finish before their stream subscribes).
BACKLOG_JOBS = 64
BACKLOG_MESSAGES = 512

# Failures where the request never reached the server; safe to resend
# even for non-idempotent calls.
_UNSENT_ERRORS = (httpx.ConnectError, httpx.ConnectTimeout)


class EngineTransportError(RuntimeError):
    """Raised when the engine is unreachable or answers with an error."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


class EngineService(Protocol):
    async def submit_graph(self, graph: Graph) -> str: ...

    async def get_job_record(self, job_id: str) -> dict[str, Any] | None: ...

    def stream_progress(self, job_id: str) -> AsyncIterator[ExecutionProgress]: ...

    async def cancel_job(self, job_id: str | None = None) -> None: ...

    async def list_queue(self) -> QueueSnapshot: ...

    async def remove_from_queue(self, job_ids: list[str]) -> None: ...

    async def clear_queue(self) -> None: ...

    async def aclose(self) -> None: ...


# ---------------------------------------------------------------------------
# Response parsing
# ---------------------------------------------------------------------------


def normalize_history_entry(data: Any, job_id: str) -> dict[str, Any] | None:
    """
    Pick the record for ``job_id`` out of a GET /history/{id} response.

    ComfyUI answers either ``{job_id: {outputs, status}}`` or the flat
    ``{outputs, status}``; an empty object means there is no record yet.
    """
    if not isinstance(data, dict) or not data:
        return None
    if isinstance(data.get(job_id), dict):
        entry = data[job_id]
    elif "outputs" in data or "status" in data:
        entry = data
    else:
        # Keyed by some other job: not ours.
        return None
    return {**entry, "prompt_id": job_id}


class ProgressTracker:
    """
    Turns the engine's websocket messages for one job into progress
    snapshots. Node outputs reported by ``executed`` messages accumulate so
    the final snapshot carries all of them.
    """

    def __init__(self, job_id: str):
        self.job_id = job_id
        self.current_node: str | None = None
        self.current_node_progress: float | None = None
        self.outputs: dict[str, Any] = {}

    def _snapshot(self, event: str, status: str = "running", error: str | None = None) -> ExecutionProgress:
        return ExecutionProgress(
            job_id=self.job_id,
            status=status,
            event=event,
            current_node=self.current_node,
            current_node_progress=self.current_node_progress,
            outputs=dict(self.outputs) if self.outputs else None,
            error=error,
        )

    def apply(self, message: dict[str, Any]) -> ExecutionProgress | None:
        msg_type = str(message.get("type") or "")
        data = message.get("data")
        if not isinstance(data, dict) or data.get("prompt_id") != self.job_id:
            return None

        if msg_type in ("execution_start", "execution_cached"):
            return self._snapshot(msg_type)

        if msg_type == "executing":
            node = data.get("node")
            if node is None:
                # Legacy completion marker: "executing" with no node.
                return self._snapshot(msg_type, status="completed")
            self.current_node = str(node)
            self.current_node_progress = None
            return self._snapshot(msg_type)

        if msg_type == "progress":
            try:
                value = float(data.get("value", 0))
                maximum = float(data.get("max", 0))
            except (TypeError, ValueError):
                return None
            if data.get("node") is not None:
                self.current_node = str(data["node"])
            if maximum > 0:
                self.current_node_progress = min(max(value / maximum, 0.0), 1.0)
            return self._snapshot(msg_type)

        if msg_type == "executed":
            node = data.get("node")
            if node is not None and isinstance(data.get("output"), dict):
                self.outputs[str(node)] = data["output"]
            return self._snapshot(msg_type)

        if msg_type == "execution_success":
            return self._snapshot(msg_type, status="completed")

        if msg_type == "execution_error":
            node_label = data.get("node_type") or data.get("node_id") or "unknown node"
            message_text = data.get("exception_message") or "Execution error"
            return self._snapshot(
                msg_type,
                status="failed",
                error=f"{node_label} ({data.get('node_id')}): {str(message_text).strip()}",
            )

        if msg_type == "execution_interrupted":
            return self._snapshot(
                msg_type,
                status="failed",
                error=f"Execution interrupted at node {data.get('node_id')}",
            )

        return None


def _parse_ws_payload(raw: str | bytes) -> dict[str, Any] | None:
    if isinstance(raw, bytes):
        # Binary frames carry preview images.
        return None
    try:
        data = json.loads(raw)
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class EngineClient:
    """
    HTTP + websocket client for one ComfyUI server.

    ComfyUI keeps one socket per client id, so every job submitted by this
    client reports on a single shared socket. It is opened before the first
    submission and its messages are routed to the stream of the job they
    name.
    """

    def __init__(
        self,
        base_url: str = DEFAULT_HOST,
        *,
        timeout: float = DEFAULT_TIMEOUT,
        max_retries: int = MAX_RETRIES,
        retry_delay: float = RETRY_DELAY,
        client_id: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.client_id = client_id or uuid4().hex
        self.timeout = timeout
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout, connect=min(timeout, 10.0)),
            headers={"Content-Type": "application/json"},
            transport=transport,
        )
        self._listener: asyncio.Task | None = None
        self._connect_lock = asyncio.Lock()
        self._subscribers: dict[str, asyncio.Queue] = {}
        self._backlog: OrderedDict[str, deque] = OrderedDict()

    @classmethod
    def from_settings(cls, settings: Settings) -> "EngineClient":
        return cls(
            settings.engine_host,
            timeout=settings.request_timeout,
            max_retries=settings.max_retries,
        )

    @property
    def websocket_url(self) -> str:
        if self.base_url.startswith("https://"):
            ws_base = "wss://" + self.base_url[len("https://"):]
        elif self.base_url.startswith("http://"):
            ws_base = "ws://" + self.base_url[len("http://"):]
        else:
            ws_base = self.base_url
        return f"{ws_base}/ws?clientId={quote(self.client_id)}"

    async def aclose(self) -> None:
        if self._listener is not None:
            self._listener.cancel()
            await asyncio.gather(self._listener, return_exceptions=True)
            self._listener = None
        await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        payload: Any = None,
        idempotent: bool = True,
    ) -> httpx.Response:
        """
        Send a request, retrying transport failures a fixed number of times.

        A non-idempotent request is only resent when it never reached the
        server; any later failure is raised at once.
        """
        last_exc: Exception | None = None
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            if attempt > 1 and self.retry_delay > 0:
                await asyncio.sleep(self.retry_delay)
            try:
                response = await self._client.request(method, path, json=payload)
            except httpx.TransportError as exc:
                if not idempotent and not isinstance(exc, _UNSENT_ERRORS):
                    raise EngineTransportError(
                        f"ComfyUI {method} {path} failed after the request was sent: {exc}"
                    ) from exc
                last_exc = exc
                logger.debug(
                    "ComfyUI %s %s attempt %d/%d failed: %s", method, path, attempt, attempts, exc
                )
                continue
            if response.status_code >= 400:
                detail = response.text[:500] or response.reason_phrase
                raise EngineTransportError(
                    f"ComfyUI {method} {path} failed ({response.status_code}): {detail}",
                    status_code=response.status_code,
                )
            return response
        raise EngineTransportError(
            f"ComfyUI {method} {path} unreachable at {self.base_url} after {attempts} attempts: {last_exc}"
        ) from last_exc

    @staticmethod
    def _json(response: httpx.Response, path: str) -> Any:
        try:
            return response.json()
        except ValueError as exc:
            raise EngineTransportError(f"ComfyUI {path} returned invalid JSON") from exc

    async def submit_graph(self, graph: Graph) -> str:
        """POST /prompt and return the engine's job id."""
        try:
            await self._ensure_listener()
        except EngineTransportError as exc:
            logger.warning("Progress socket unavailable, submitting without it: %s", exc)

        body = {
            "prompt": graph_to_wire(graph, operator_key="class_type"),
            "client_id": self.client_id,
        }
        response = await self._request("POST", "/prompt", payload=body, idempotent=False)
        data = self._json(response, "/prompt")
        job_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not job_id:
            raise EngineTransportError("ComfyUI /prompt did not return prompt_id")
        logger.info("Submitted workflow with %d node(s) as job %s", len(graph), job_id)
        return str(job_id)

    async def get_job_record(self, job_id: str) -> dict[str, Any] | None:
        path = f"/history/{quote(job_id)}"
        response = await self._request("GET", path)
        return normalize_history_entry(self._json(response, path), job_id)

    async def list_queue(self) -> QueueSnapshot:
        response = await self._request("GET", "/queue")
        data = self._json(response, "/queue") or {}
        return QueueSnapshot(
            running=list(data.get("queue_running") or []),
            pending=list(data.get("queue_pending") or []),
        )

    async def cancel_job(self, job_id: str | None = None) -> None:
        await self._request("POST", "/interrupt", payload={"prompt_id": job_id} if job_id else {})

    async def remove_from_queue(self, job_ids: list[str]) -> None:
        if not job_ids:
            return
        await self._request("POST", "/queue", payload={"delete": list(job_ids)})

    async def clear_queue(self) -> None:
        await self._request("POST", "/queue", payload={"clear": True})

    # -- progress socket ----------------------------------------------------

    async def _ensure_listener(self) -> None:
        """Open the shared progress socket unless it is already up."""
        async with self._connect_lock:
            if self._listener is not None and not self._listener.done():
                return
            try:
                ws = await websockets.connect(
                    self.websocket_url,
                    open_timeout=min(self.timeout, 10.0),
                    max_size=32 * 1024 * 1024,
                    ping_interval=20,
                    ping_timeout=20,
                    close_timeout=5,
                )
            except Exception as exc:
                raise EngineTransportError(f"ComfyUI progress stream failed: {exc}") from exc
            logger.debug("Opened progress socket %s", self.websocket_url)
            self._listener = asyncio.create_task(self._listen(ws))

    async def _listen(self, ws) -> None:
        error: Exception | None = None
        try:
            async for raw in ws:
                payload = _parse_ws_payload(raw)
                if payload is not None:
                    self._dispatch(payload)
        except Exception as exc:
            error = exc
            logger.warning("ComfyUI progress socket failed: %s", exc)
        finally:
            try:
                await ws.close()
            except Exception as exc:
                logger.debug("Closing progress socket failed: %s", exc)
            end = EngineTransportError(f"ComfyUI progress stream failed: {error}") if error else None
            for queue in self._subscribers.values():
                queue.put_nowait(end)

    def _dispatch(self, payload: dict[str, Any]) -> None:
        data = payload.get("data")
        job_id = data.get("prompt_id") if isinstance(data, dict) else None
        if not job_id:
            return
        queue = self._subscribers.get(job_id)
        if queue is not None:
            queue.put_nowait(payload)
            return
        backlog = self._backlog.get(job_id)
        if backlog is None:
            backlog = self._backlog[job_id] = deque(maxlen=BACKLOG_MESSAGES)
            while len(self._backlog) > BACKLOG_JOBS:
                self._backlog.popitem(last=False)
        backlog.append(payload)

    async def stream_progress(self, job_id: str) -> AsyncIterator[ExecutionProgress]:
        """
        Yield progress snapshots for ``job_id`` until it completes or fails.

        Messages that arrived before the stream started are replayed first.
        The stream may also end silently; callers must not rely on it alone.
        """
        tracker = ProgressTracker(job_id)
        await self._ensure_listener()
        queue: asyncio.Queue = asyncio.Queue()
        for payload in self._backlog.pop(job_id, ()):
            queue.put_nowait(payload)
        self._subscribers[job_id] = queue
        try:
            while True:
                item = await queue.get()
                if isinstance(item, EngineTransportError):
                    raise item
                if item is None:
                    return
                progress = tracker.apply(item)
                if progress is None:
                    continue
                yield progress
                if progress.status in ("completed", "failed"):
                    return
        finally:
            if self._subscribers.get(job_id) is queue:
                del self._subscribers[job_id]
