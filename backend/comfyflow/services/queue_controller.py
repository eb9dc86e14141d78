"""
Queue controller: interrupt jobs and make sure they leave the engine queue.

An interrupt only stops the node that is currently executing; a job that
was still pending, or one the engine re-queues, stays in the queue. The
cleanup step re-checks the queue after a short wait and deletes the job if
it is still there.
"""

from __future__ import annotations

import asyncio
import logging

from comfyflow.config import Settings
from comfyflow.models.execution import CleanupReport, InterruptReport, QueueSnapshot
from comfyflow.services.engine_client import EngineService

logger = logging.getLogger(__name__)

DEFAULT_CLEANUP_WAIT = 1.0


class QueueController:
    def __init__(self, engine: EngineService, *, cleanup_wait: float = DEFAULT_CLEANUP_WAIT):
        self.engine = engine
        self.cleanup_wait = cleanup_wait

    @classmethod
    def from_settings(cls, engine: EngineService, settings: Settings) -> "QueueController":
        return cls(engine, cleanup_wait=settings.cleanup_wait)

    async def interrupt(
        self,
        job_id: str | None = None,
        *,
        cleanup: bool = False,
        wait_seconds: float | None = None,
    ) -> InterruptReport:
        """
        Send the cancellation signal. Without ``job_id`` the engine stops
        whatever is running. Raises EngineTransportError if the signal
        cannot be delivered.
        """
        await self.engine.cancel_job(job_id)
        logger.info("Interrupt sent for %s", job_id or "the running job")
        report = InterruptReport(job_id=job_id, interrupted=True)
        if cleanup and job_id:
            report.cleanup = await self.cleanup(job_id, wait_seconds)
        return report

    async def cleanup(self, job_id: str, wait_seconds: float | None = None) -> CleanupReport:
        """Remove ``job_id`` from the queue if it is still there. Never raises."""
        wait = self.cleanup_wait if wait_seconds is None else max(wait_seconds, 0.0)
        if wait:
            await asyncio.sleep(wait)

        try:
            snapshot = await self.engine.list_queue()
        except Exception as exc:
            logger.warning("Queue check for job %s failed: %s", job_id, exc)
            return CleanupReport(
                job_id=job_id,
                status="error",
                message=f"Could not check the queue ({exc}); remove the job manually if it is still queued",
            )

        location = snapshot.locate(job_id)
        if location is None:
            return CleanupReport(job_id=job_id, status="not_queued", message="Job is no longer queued")

        try:
            await self.engine.remove_from_queue([job_id])
        except Exception as exc:
            logger.warning("Removing job %s from the queue failed: %s", job_id, exc)
            return CleanupReport(
                job_id=job_id,
                status="error",
                location=location,
                message=f"Could not remove the job ({exc}); remove it manually",
            )

        logger.info("Removed job %s from the %s queue", job_id, location)
        return CleanupReport(
            job_id=job_id,
            status="removed",
            location=location,
            message=f"Removed {location} job from the queue",
        )

    async def list_queue(self) -> QueueSnapshot:
        return await self.engine.list_queue()

    async def clear(self) -> None:
        """Drop every pending item. The running job is left alone."""
        await self.engine.clear_queue()
        logger.info("Cleared pending queue")

    async def delete(self, job_ids: list[str]) -> None:
        await self.engine.remove_from_queue(job_ids)
