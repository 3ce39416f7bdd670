"""Tests for the deferred request queue and its processor."""
import pytest

from campaign_provisioner.provisioning.errors import JobNotFound
from campaign_provisioner.provisioning.models import QueueStatus, ResourceKind
from campaign_provisioner.provisioning.queue_manager import QueueManager
from campaign_provisioner.provisioning.queue_processor import QueueProcessor

from fakes import ACCOUNT, USER


@pytest.fixture
def queue(db, clock):
    return QueueManager(db, max_attempts=3, failure_backoff=900, clock=clock)


class Resumer:
    def __init__(self, result=True, error=None):
        self.result = result
        self.error = error
        self.resumed = []

    async def __call__(self, job_id):
        self.resumed.append(job_id)
        if self.error is not None:
            raise self.error
        return self.result


class TestQueueManager:
    async def test_one_active_entry_per_job(self, queue):
        first = await queue.enqueue("job-1", USER, ACCOUNT, "create_slot", 60,
                                    slot_kind=ResourceKind.GROUP, slot_number=3)
        second = await queue.enqueue("job-1", USER, ACCOUNT, "reconcile", 120)
        assert first.id == second.id
        entries = await queue.list_for_user(USER)
        assert len(entries) == 1
        assert entries[0].step == "reconcile"

    async def test_ready_respects_schedule(self, queue, clock):
        await queue.enqueue("job-1", USER, ACCOUNT, "create_slot", 60)
        assert await queue.ready() == []
        clock.advance(61)
        assert [e.job_id for e in await queue.ready()] == ["job-1"]

    async def test_claim_is_exclusive(self, queue):
        entry = await queue.enqueue("job-1", USER, ACCOUNT, "create_slot", 0)
        assert await queue.claim(entry.id, "worker-a")
        assert not await queue.claim(entry.id, "worker-b")
        claimed = await queue.get(entry.id)
        assert claimed.status == QueueStatus.PROCESSING
        assert claimed.claimed_by == "worker-a"

    async def test_failure_backoff_then_final_failure(self, queue):
        entry = await queue.enqueue("job-1", USER, ACCOUNT, "create_slot", 0)
        first = await queue.mark_failed(entry.id, "boom")
        assert first.status == QueueStatus.QUEUED
        assert first.attempts == 1
        await queue.mark_failed(entry.id, "boom")
        last = await queue.mark_failed(entry.id, "boom")
        assert last.status == QueueStatus.FAILED
        assert last.attempts == 3

    async def test_release_stale(self, queue, clock):
        entry = await queue.enqueue("job-1", USER, ACCOUNT, "create_slot", 0)
        await queue.claim(entry.id, "worker-a")
        clock.advance(1801)
        assert await queue.release_stale(1800) == 1
        assert (await queue.get(entry.id)).status == QueueStatus.QUEUED

    async def test_cancel_for_job(self, queue):
        await queue.enqueue("job-1", USER, ACCOUNT, "create_slot", 0)
        assert await queue.cancel_for_job("job-1") == 1
        assert await queue.list_for_user(USER) == []

    async def test_stats(self, queue):
        await queue.enqueue("job-1", USER, ACCOUNT, "create_slot", 10)
        await queue.enqueue("job-2", USER, ACCOUNT, "create_slot", 20)
        stats = await queue.get_stats()
        assert stats["by_status"]["queued"] == 2
        assert stats["next_due_at"] is not None


class TestQueueProcessor:
    async def test_resumes_ready_entries(self, queue, router):
        entry = await queue.enqueue("job-1", USER, ACCOUNT, "create_slot", 0)
        resume = Resumer()
        processor = QueueProcessor(queue, router, resume, poll_interval=0.01)

        stats = await processor.process_once()

        assert stats["resumed"] == 1
        assert resume.resumed == ["job-1"]
        assert (await queue.get(entry.id)).status == QueueStatus.COMPLETED

    async def test_reschedules_while_still_limited(self, queue, router, tracker, clock):
        entry = await queue.enqueue("job-1", USER, ACCOUNT, "create_slot", 0)
        tracker.mark_exhausted("pool-a", reset_at=clock() + 500)
        resume = Resumer()
        processor = QueueProcessor(queue, router, resume)

        stats = await processor.process_once()

        assert stats["rescheduled"] == 1
        assert resume.resumed == []
        entry = await queue.get(entry.id)
        assert entry.status == QueueStatus.QUEUED
        assert entry.attempts == 0
        assert await queue.ready() == []
        clock.advance(501)
        assert len(await queue.ready()) == 1

    async def test_resume_failure_counts_an_attempt(self, queue, router):
        entry = await queue.enqueue("job-1", USER, ACCOUNT, "create_slot", 0)
        processor = QueueProcessor(queue, router, Resumer(error=JobNotFound("gone")))

        stats = await processor.process_once()

        assert stats["failed"] == 1
        entry = await queue.get(entry.id)
        assert entry.attempts == 1
        assert entry.error == "gone"

    async def test_start_and_stop(self, queue, router):
        processor = QueueProcessor(queue, router, Resumer(), poll_interval=0.01)
        task = processor.start()
        await processor.stop()
        assert task.done()
