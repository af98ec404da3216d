import asyncio
import pytest

from autoresearch.errors import DuplicateJobError
from autoresearch.models.job import ResearchJobData, ResearchJobResult
from autoresearch.models.research import CategoryAutomation
from autoresearch.queue import EntryState, JobOptions, ResearchQueue, RetentionPolicy


class FakeTimer:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def payload(job_id: str = "job-1", user_id: str = "user-1") -> ResearchJobData:
    return ResearchJobData(
        job_id=job_id,
        task_id="task-1",
        task_name="IIT Ropar",
        user_id=user_id,
        automation_config=CategoryAutomation(),
    )


@pytest.mark.unit
def test_exponential_backoff():
    opts = JobOptions(backoff_delay=1.0)
    assert [opts.backoff_for(n) for n in (1, 2, 3)] == [1.0, 2.0, 4.0]
    assert JobOptions(backoff_type="fixed", backoff_delay=5).backoff_for(3) == 5


@pytest.mark.unit
class TestResearchQueue:
    @pytest.fixture
    def timer(self):
        return FakeTimer()

    @pytest.fixture
    def queue(self, timer):
        opts = JobOptions(
            attempts=3,
            backoff_delay=0.01,
            remove_on_complete=RetentionPolicy(age=60, count=2),
            remove_on_fail=RetentionPolicy(age=120, count=2),
        )
        return ResearchQueue(default_opts=opts, timer=timer)

    @pytest.mark.asyncio
    async def test_handles(self, queue):
        first = await queue.add_research_job(payload())
        resume = await queue.resume_research_job(payload())
        recover = await queue.recover_job(payload())
        assert first == "job-1"
        assert resume.startswith("job-1-resume-")
        assert recover.startswith("job-1-recover-")
        assert {e.handle for e in queue.entries_for_job("job-1")} == {first, resume, recover}

    @pytest.mark.asyncio
    async def test_duplicate_handle_rejected(self, queue):
        await queue.add_research_job(payload())
        with pytest.raises(DuplicateJobError):
            await queue.add_research_job(payload())

    @pytest.mark.asyncio
    async def test_duplicate_rejected_while_retained(self, queue, timer):
        await queue.add_research_job(payload())
        entry = await queue.next_entry()
        queue.complete(entry, ResearchJobResult(status="completed"))
        with pytest.raises(DuplicateJobError):
            await queue.add_research_job(payload())

        # Retention expires and the handle becomes free again
        timer.now += 61
        await queue.add_research_job(payload())

    @pytest.mark.asyncio
    async def test_next_entry_marks_active(self, queue):
        await queue.add_research_job(payload())
        entry = await queue.next_entry()
        assert entry.state == EntryState.ACTIVE
        assert entry.attempts_made == 1
        assert queue.stats()["active"] == 1

    @pytest.mark.asyncio
    async def test_fail_retries_then_fails(self, queue):
        await queue.add_research_job(payload())

        for attempt in (1, 2):
            entry = await asyncio.wait_for(queue.next_entry(), timeout=1)
            assert entry.attempts_made == attempt
            assert queue.fail(entry, RuntimeError("boom")) is True
            assert entry.state == EntryState.DELAYED

        entry = await asyncio.wait_for(queue.next_entry(), timeout=1)
        assert entry.is_final_attempt
        assert queue.fail(entry, RuntimeError("boom")) is False
        status = queue.get_job_status("job-1")
        assert status["state"] == "failed"
        assert status["failed_reason"] == "boom"
        assert status["attempts_made"] == 3

    @pytest.mark.asyncio
    async def test_failure_after_close_keeps_retry_pending(self, queue):
        await queue.add_research_job(payload())
        entry = await queue.next_entry()
        await queue.close()

        assert queue.fail(entry, RuntimeError("boom")) is False

        assert entry.state == EntryState.DELAYED
        assert queue.get_entry("job-1") is entry
        assert queue.pending_retries() == [entry]
        assert queue.stats()["failed"] == 0

    @pytest.mark.asyncio
    async def test_cancel_waiting_only(self, queue):
        await queue.add_research_job(payload("job-1"))
        await queue.add_research_job(payload("job-2"))
        active = await queue.next_entry()
        assert active.handle == "job-1"

        assert queue.cancel("job-1") is False
        assert queue.cancel("job-2") is True
        assert queue.get_entry("job-2") is None

    @pytest.mark.asyncio
    async def test_requeue_returns_attempt(self, queue):
        await queue.add_research_job(payload())
        entry = await queue.next_entry()
        await queue.requeue(entry)
        assert entry.state == EntryState.WAITING
        again = await queue.next_entry()
        assert again.handle == entry.handle
        assert again.attempts_made == 1

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, queue):
        await queue.pause()
        await queue.add_research_job(payload())
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(queue.next_entry(), timeout=0.05)
        assert queue.stats()["paused"] == 1
        await queue.resume()
        entry = await asyncio.wait_for(queue.next_entry(), timeout=1)
        assert entry.handle == "job-1"

    @pytest.mark.asyncio
    async def test_close_releases_consumers(self, queue):
        consumer = asyncio.create_task(queue.next_entry())
        await asyncio.sleep(0)
        await queue.close()
        assert await asyncio.wait_for(consumer, timeout=1) is None

    @pytest.mark.asyncio
    async def test_clean_and_stats(self, queue, timer):
        for job_id in ("job-1", "job-2"):
            await queue.add_research_job(payload(job_id))
            entry = await queue.next_entry()
            queue.complete(entry)
        assert queue.stats()["completed"] == 2

        timer.now += 30
        assert sorted(queue.clean(grace=10)) == ["job-1", "job-2"]
        assert queue.stats()["completed"] == 0

    @pytest.mark.asyncio
    async def test_active_for_user_and_progress(self, queue):
        await queue.add_research_job(payload("job-1", user_id="user-1"))
        await queue.add_research_job(payload("job-2", user_id="user-2"))
        assert [e.handle for e in queue.get_active_for_user("user-1")] == ["job-1"]

        queue.update_progress("job-1", 40)
        assert queue.get_job_status("job-1")["progress"] == 40
