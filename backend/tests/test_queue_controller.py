import pytest

import sys
from pathlib import Path

backend_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(backend_root))

from comfyflow.config import Settings
from comfyflow.services.engine_client import EngineTransportError
from comfyflow.services.queue_controller import QueueController

from fake_engine import FakeEngine


def _entry(number: int, job_id: str) -> list:
    return [number, job_id, {}, {}, ["9"]]


class TestCleanup:
    @pytest.mark.asyncio
    async def test_interrupt_then_cleanup_removes_lingering_job(self):
        engine = FakeEngine()
        engine.running = [_entry(1, "job-1")]
        engine.pending = [_entry(2, "job-2")]
        controller = QueueController(engine, cleanup_wait=0.01)

        await controller.interrupt("job-2")
        report = await controller.cleanup("job-2", wait_seconds=0.01)

        assert engine.cancelled == ["job-2"]
        assert engine.removed == [["job-2"]]
        assert report.status == "removed"
        assert report.location == "pending"
        assert "job-2" not in (await controller.list_queue()).pending_ids()

    @pytest.mark.asyncio
    async def test_interrupt_with_cleanup(self):
        engine = FakeEngine()
        engine.running = [_entry(1, "job-1")]
        controller = QueueController(engine, cleanup_wait=0)

        report = await controller.interrupt("job-1", cleanup=True)

        assert report.interrupted
        assert report.cleanup.status == "removed"
        assert report.cleanup.location == "running"
        assert engine.running == []

    @pytest.mark.asyncio
    async def test_job_already_gone(self):
        engine = FakeEngine()
        controller = QueueController(engine, cleanup_wait=0)

        report = await controller.cleanup("job-1")

        assert report.status == "not_queued"
        assert engine.removed == []

    @pytest.mark.asyncio
    async def test_queue_check_failure_is_reported(self):
        engine = FakeEngine()
        engine.queue_error = EngineTransportError("connection refused")
        controller = QueueController(engine, cleanup_wait=0)

        report = await controller.cleanup("job-1")

        assert report.status == "error"
        assert "connection refused" in report.message
        assert "manually" in report.message

    @pytest.mark.asyncio
    async def test_remove_failure_is_reported(self):
        engine = FakeEngine()
        engine.pending = [_entry(1, "job-1")]
        engine.remove_error = EngineTransportError("500")
        controller = QueueController(engine, cleanup_wait=0)

        report = await controller.cleanup("job-1")

        assert report.status == "error"
        assert report.location == "pending"

    @pytest.mark.asyncio
    async def test_interrupt_without_job_id_skips_cleanup(self):
        engine = FakeEngine()
        controller = QueueController(engine)

        report = await controller.interrupt(cleanup=True)

        assert engine.cancelled == [None]
        assert report.job_id is None
        assert report.cleanup is None

    @pytest.mark.asyncio
    async def test_interrupt_transport_error_propagates(self):
        class DownEngine(FakeEngine):
            async def cancel_job(self, job_id=None):
                raise EngineTransportError("down")

        with pytest.raises(EngineTransportError):
            await QueueController(DownEngine()).interrupt("job-1")


class TestQueueOperations:
    @pytest.mark.asyncio
    async def test_clear_and_delete(self):
        engine = FakeEngine()
        engine.pending = [_entry(1, "job-1"), _entry(2, "job-2"), _entry(3, "job-3")]
        controller = QueueController(engine)

        await controller.delete(["job-1"])
        assert (await controller.list_queue()).pending_ids() == ["job-2", "job-3"]

        await controller.clear()
        assert engine.cleared == 1
        assert (await controller.list_queue()).pending_ids() == []

    def test_from_settings(self):
        controller = QueueController.from_settings(FakeEngine(), Settings(cleanup_wait=2.5))
        assert controller.cleanup_wait == 2.5
