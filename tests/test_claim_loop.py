"""
Tests for the periodic claim loop.
"""

import asyncio
from datetime import timedelta

from guestcomms import storage
from guestcomms.claim_loop import ClaimLoop
from guestcomms.models import MessageLogEntry, MessageStatus
from guestcomms.storage import SessionLocal


class RecordingExecutor:
    """Settles every job as sent, optionally blowing up on selected jobs."""

    def __init__(self, explode_on=()):
        self.executed = []
        self.explode_on = set(explode_on)

    def execute(self, job):
        self.executed.append(job.id)
        if job.id in self.explode_on:
            raise RuntimeError("executor crashed")
        with SessionLocal() as db:
            storage.mark_message_sent(db, job.id, "sent body")
        return MessageStatus.SENT.value


def _status_counts(db):
    db.expire_all()
    counts = {}
    for entry in db.query(MessageLogEntry).all():
        counts[entry.status] = counts.get(entry.status, 0) + 1
    return counts


class TestTick:
    def test_tick_drains_due_jobs_across_batches(self, db, make_conversation, enqueue):
        for index in range(5):
            enqueue(make_conversation(f"R{index}"))
        enqueue(make_conversation("future"), offset=timedelta(days=1))
        executor = RecordingExecutor()

        processed = ClaimLoop(SessionLocal, executor, batch_size=2).tick()

        assert processed == 5
        assert _status_counts(db) == {"sent": 5, "pending": 1}

    def test_tick_is_capped_by_max_iterations(self, db, make_conversation, enqueue):
        for index in range(5):
            enqueue(make_conversation(f"R{index}"))

        processed = ClaimLoop(SessionLocal, RecordingExecutor(), batch_size=2, max_iterations=2).tick()

        assert processed == 4
        assert _status_counts(db) == {"sent": 4, "pending": 1}

    def test_one_failing_job_does_not_abort_the_tick(self, db, make_conversation, enqueue):
        ids = [enqueue(make_conversation(f"R{index}")) for index in range(3)]
        executor = RecordingExecutor(explode_on={ids[0]})

        processed = ClaimLoop(SessionLocal, executor).tick()

        assert processed == 3
        assert sorted(executor.executed) == sorted(ids)
        assert _status_counts(db) == {"processing": 1, "sent": 2}

    def test_empty_tick(self, tables):
        executor = RecordingExecutor()

        assert ClaimLoop(SessionLocal, executor).tick() == 0
        assert executor.executed == []

    def test_tick_with_real_executor(self, db, tenant, pipeline, pms, make_conversation, enqueue):
        conversation = make_conversation()
        enqueue(conversation, "pre_arrival_24h")
        enqueue(conversation, "door_code_3h")
        storage.set_conversation_status(db, tenant.id, conversation.id, "paused_by_human")
        enqueue(make_conversation("R2"), "same_day_checkin")

        assert pipeline.claim_loop.tick() == 3
        assert _status_counts(db) == {"failed": 2, "sent": 1}
        assert [s[1] for s in pms.reservation_sends] == ["R2"]


class TestRunForever:
    def test_runs_until_stopped(self, db, make_conversation, enqueue):
        enqueue(make_conversation())
        executor = RecordingExecutor()
        loop = ClaimLoop(SessionLocal, executor)

        async def scenario():
            stop_event = asyncio.Event()
            task = asyncio.create_task(loop.run_forever(0.01, stop_event))
            for _ in range(200):
                if executor.executed:
                    break
                await asyncio.sleep(0.01)
            stop_event.set()
            await asyncio.wait_for(task, timeout=5)

        asyncio.run(scenario())

        assert len(executor.executed) == 1
        assert _status_counts(db) == {"sent": 1}
