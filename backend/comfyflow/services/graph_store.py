"""
In-memory store of graph-construction sessions with a TTL.

One store is created by the application and passed to whatever needs it.
Expired sessions are only evicted when ``cleanup()`` is called; the create
route does that on every new session.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from comfyflow.models.graph import GraphContext
from comfyflow.services.graph_builder import NotFoundError, create_graph

logger = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 30 * 60


class GraphNotFoundError(NotFoundError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f'Workflow "{workflow_id}" not found or expired')


class GraphStore:
    def __init__(self, ttl_seconds: float = DEFAULT_TTL_SECONDS):
        self.ttl = timedelta(seconds=ttl_seconds)
        self._contexts: dict[str, GraphContext] = {}

    def __len__(self) -> int:
        return len(self._contexts)

    def __contains__(self, workflow_id: object) -> bool:
        return workflow_id in self._contexts

    def create(self) -> GraphContext:
        ctx = create_graph()
        self._contexts[ctx.id] = ctx
        return ctx

    def get(self, workflow_id: str) -> GraphContext | None:
        return self._contexts.get(workflow_id)

    def require(self, workflow_id: str) -> GraphContext:
        ctx = self._contexts.get(workflow_id)
        if ctx is None:
            raise GraphNotFoundError(workflow_id)
        return ctx

    def update(self, workflow_id: str, ctx: GraphContext) -> None:
        """Replace the context stored under ``workflow_id``."""
        self._contexts[workflow_id] = ctx

    def delete(self, workflow_id: str) -> bool:
        return self._contexts.pop(workflow_id, None) is not None

    def cleanup(self, now: datetime | None = None) -> int:
        """Evict contexts older than the TTL. Returns how many were removed."""
        now = now or datetime.now(timezone.utc)
        expired = [
            workflow_id
            for workflow_id, ctx in self._contexts.items()
            if now - ctx.created_at > self.ttl
        ]
        for workflow_id in expired:
            del self._contexts[workflow_id]
        if expired:
            logger.info("Evicted %d expired workflow context(s)", len(expired))
        return len(expired)
