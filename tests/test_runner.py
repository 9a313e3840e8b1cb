"""
Batch runner tests: whole workflows driven through polling passes
"""
import asyncio
from datetime import timedelta

import pytest

from nurture_engine.core.engine import NurtureEngine
from nurture_engine.exceptions import StoreError
from nurture_engine.integrations.email import EmailSender, SendResult
from nurture_engine.models.execution import ExecutionStatus, StepLogStatus
from nurture_engine.models.subscriber import Subscriber
from nurture_engine.storage.repository import InMemoryExecutionRepository


class SlowEmailSender(EmailSender):
    """Yields to the loop mid-send so concurrent passes interleave"""

    def __init__(self):
        self.sent = []

    async def send(self, from_address, to, subject, html):
        await asyncio.sleep(0.01)
        self.sent.append((to, subject))
        return SendResult(success=True, recipient=to)


class SnapshotExecutionRepository(InMemoryExecutionRepository):
    """Yields after reading, like a store round trip, so two passes can read the same row"""

    async def list_due(self, now, limit=100):
        due = await super().list_due(now, limit)
        await asyncio.sleep(0)
        return due


class UnavailableExecutionRepository(InMemoryExecutionRepository):

    async def list_due(self, now, limit=100):
        raise StoreError("connection refused")


async def enroll(engine, email, now, workflow="Onboarding", **fields):
    subscriber = await engine.subscriber_repository.create(Subscriber(email=email, **fields))
    return await engine.trigger_service.trigger(
        workflow_name=workflow, subscriber_id=subscriber.id, now=now
    )


class TestBatchRunner:
    """Batch runner tests"""

    @pytest.mark.asyncio
    async def test_scenario_branches_to_step_eight(self, engine, email_sender, scenario_workflow, now):
        await engine.create_workflow(scenario_workflow)
        result = await enroll(engine, "quiet@example.com", now, name="Quinn", total_opens=0)

        # step 1: welcome email, then wait two days for step 2
        summary = await engine.runner.run_due(now)
        assert summary.to_dict() == {"processed": 1, "errors": 0, "skipped": 0}
        cursor = await engine.get_execution(result.execution_id)
        assert cursor.current_step == 2
        assert abs((cursor.next_step_at - (now + timedelta(milliseconds=172800000))).total_seconds()) < 1

        # nothing is due before the delay elapses
        summary = await engine.runner.run_due(now + timedelta(days=1))
        assert summary.processed == 0

        # step 2 (delay) and then step 3 (condition) on consecutive passes
        later = now + timedelta(days=2)
        await engine.runner.run_due(later)
        assert (await engine.get_execution(result.execution_id)).current_step == 3
        await engine.runner.run_due(later)
        cursor = await engine.get_execution(result.execution_id)
        assert cursor.current_step == 8

        # step 8 is the last step
        await engine.runner.run_due(later)
        cursor = await engine.get_execution(result.execution_id)
        assert cursor.status == ExecutionStatus.COMPLETED
        assert cursor.completed_at == later

        subscriber = await engine.subscriber_repository.get(result.subscriber_id)
        assert "Engaged" not in subscriber.tags
        assert [m.subject for m in email_sender.sent] == ["Welcome Quinn", "Still there?"]

        logs = await engine.get_execution_logs(result.execution_id)
        assert [log.step_order for log in logs] == [1, 2, 3, 8]
        assert all(log.status == StepLogStatus.SENT for log in logs)

        # a completed cursor is no longer selected
        summary = await engine.runner.run_due(later + timedelta(days=30))
        assert summary.processed == 0
        assert len(await engine.get_execution_logs(result.execution_id)) == 4

    @pytest.mark.asyncio
    async def test_scenario_true_branch_tags(self, engine, scenario_workflow, now):
        await engine.create_workflow(scenario_workflow)
        result = await enroll(engine, "fan@example.com", now, total_opens=5)

        # three days apart so every step is due on its pass
        for i in range(5):
            await engine.runner.run_due(now + timedelta(days=3 * i))

        cursor = await engine.get_execution(result.execution_id)
        assert cursor.status == ExecutionStatus.COMPLETED
        assert cursor.current_step == 4
        subscriber = await engine.subscriber_repository.get(result.subscriber_id)
        assert "Engaged" in subscriber.tags

    @pytest.mark.asyncio
    async def test_concurrent_passes_send_once(self, settings, scenario_workflow, now):
        sender = SlowEmailSender()
        engine = NurtureEngine(
            execution_repository=SnapshotExecutionRepository(),
            email_sender=sender,
            settings=settings
        )
        await engine.create_workflow(scenario_workflow)
        result = await enroll(engine, "once@example.com", now)

        first, second = await asyncio.gather(
            engine.runner.run_due(now),
            engine.runner.run_due(now)
        )

        assert sender.sent == [("once@example.com", "Welcome there")]
        assert first.processed + second.processed == 1
        assert first.skipped + second.skipped == 1
        assert first.errors + second.errors == 0
        assert (await engine.get_execution(result.execution_id)).current_step == 2

    @pytest.mark.asyncio
    async def test_failures_are_isolated_per_cursor(self, engine, email_sender, scenario_workflow, now):
        await engine.create_workflow(scenario_workflow)
        healthy = await enroll(engine, "ok@example.com", now)
        orphan = await enroll(engine, "orphan@example.com", now)
        del engine.subscriber_repository.subscribers[orphan.subscriber_id]

        summary = await engine.runner.run_due(now)

        assert summary.processed == 1
        assert summary.errors == 1
        assert (await engine.get_execution(healthy.execution_id)).current_step == 2

        cursor = await engine.get_execution(orphan.execution_id)
        assert cursor.current_step == 1
        assert cursor.attempts == 1
        log = (await engine.get_execution_logs(orphan.execution_id))[0]
        assert log.status == StepLogStatus.FAILED
        assert log.step_id is None
        assert "Subscriber not found" in log.error_message

    @pytest.mark.asyncio
    async def test_failing_cursor_is_dead_lettered(self, engine, scenario_workflow, now):
        await engine.create_workflow(scenario_workflow)
        orphan = await enroll(engine, "orphan@example.com", now)
        del engine.subscriber_repository.subscribers[orphan.subscriber_id]

        # max_step_attempts is 3 in the test settings
        for _ in range(5):
            await engine.runner.run_due(now)

        cursor = await engine.get_execution(orphan.execution_id)
        assert cursor.status == ExecutionStatus.FAILED
        assert cursor.attempts == 3
        assert len(await engine.get_execution_logs(orphan.execution_id)) == 3

    @pytest.mark.asyncio
    async def test_inactive_workflow_keeps_advancing(self, engine, scenario_workflow, now):
        workflow_id = await engine.create_workflow(scenario_workflow)
        result = await enroll(engine, "a@example.com", now)
        await engine.workflow_repository.set_active(workflow_id, False)

        summary = await engine.runner.run_due(now)

        assert summary.processed == 1
        assert (await engine.get_execution(result.execution_id)).current_step == 2

    @pytest.mark.asyncio
    async def test_paused_cursor_is_not_selected(self, engine, scenario_workflow, now):
        await engine.create_workflow(scenario_workflow)
        result = await enroll(engine, "a@example.com", now)
        await engine.pause_execution(result.execution_id)

        summary = await engine.runner.run_due(now)
        assert summary.to_dict() == {"processed": 0, "errors": 0, "skipped": 0}

        await engine.resume_execution(result.execution_id)
        summary = await engine.runner.run_due(now)
        assert summary.processed == 1

    @pytest.mark.asyncio
    async def test_batch_size_limits_a_pass(self, engine, scenario_workflow, now):
        engine.runner.batch_size = 2
        await engine.create_workflow(scenario_workflow)
        for i in range(3):
            await enroll(engine, f"user{i}@example.com", now)

        first = await engine.runner.run_due(now)
        second = await engine.runner.run_due(now)

        assert first.processed == 2
        assert second.processed == 1

    @pytest.mark.asyncio
    async def test_store_error_aborts_the_pass(self, settings):
        engine = NurtureEngine(execution_repository=UnavailableExecutionRepository(), settings=settings)

        with pytest.raises(StoreError):
            await engine.run_due()
