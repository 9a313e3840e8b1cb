"""
Step processor tests
"""
from datetime import timedelta

import pytest

from nurture_engine.core.parser import WorkflowParser
from nurture_engine.core.processor import StepProcessor, StepExecutor, StepOutcome
from nurture_engine.exceptions import StoreError
from nurture_engine.integrations.actions import ActionDispatcher, DispatchResult
from nurture_engine.integrations.email import EmailSender, SendResult, DryRunEmailSender
from nurture_engine.models.execution import AdvanceOutcome, ExecutionStatus, StepLogStatus
from nurture_engine.models.workflow import StepKind
from nurture_engine.storage.repository import InMemoryExecutionRepository


class FailingEmailSender(EmailSender):
    """Fails a fixed number of times, then succeeds"""

    def __init__(self, failures: int):
        self.failures = failures
        self.calls = 0

    async def send(self, from_address, to, subject, html):
        self.calls += 1
        if self.calls <= self.failures:
            return SendResult(success=False, recipient=to, error="relay refused")
        return SendResult(success=True, recipient=to)


class RecordingDispatcher(ActionDispatcher):

    def __init__(self, success: bool = True):
        self.success = success
        self.calls = []

    async def execute(self, subscriber_id, action_type, params, execution_id=None):
        self.calls.append((subscriber_id, action_type, params, execution_id))
        return DispatchResult(
            success=self.success,
            action_type=action_type,
            error=None if self.success else "crm unavailable"
        )


class ExplodingExecutor(StepExecutor):

    async def execute(self, step, cursor, subscriber, now):
        raise RuntimeError("boom")


@pytest.fixture
def executions():
    return InMemoryExecutionRepository()


@pytest.fixture
def graph(scenario_workflow):
    return WorkflowParser().parse(scenario_workflow).graph


async def enroll(executions, subscriber, now, workflow_id="wf-1"):
    return await executions.upsert_enrollment(workflow_id, subscriber.id, next_step_at=now, started_at=now)


class TestStepProcessor:
    """Step processor tests"""

    @pytest.mark.asyncio
    async def test_email_step_sends_and_advances(self, executions, graph, subscriber, now):
        sender = DryRunEmailSender()
        processor = StepProcessor(executions, sender, RecordingDispatcher(), from_address="news@example.com")
        cursor = await enroll(executions, subscriber, now)

        result = await processor.advance(cursor, graph, subscriber, now)

        assert result.outcome == AdvanceOutcome.ADVANCED
        assert result.next_step == 2
        assert len(sender.sent) == 1
        assert sender.sent[0].to == "jane@example.com"
        assert sender.sent[0].subject == "Welcome Jane"
        assert sender.sent[0].html == "<p>Hello Jane from Acme</p>"

        stored = await executions.get(cursor.id)
        assert stored.current_step == 2
        assert stored.claimed_until is None
        # the delay of step 2 is applied when moving onto it
        assert stored.next_step_at == now + timedelta(milliseconds=172800000)

        logs = await executions.list_logs(cursor.id)
        assert [(log.status, log.step_order) for log in logs] == [(StepLogStatus.SENT, 1)]
        assert logs[0].step_id == graph.step_at(1).id

    @pytest.mark.asyncio
    async def test_condition_false_branch(self, executions, graph, subscriber, now):
        subscriber.total_opens = 0
        processor = StepProcessor(executions, DryRunEmailSender(), RecordingDispatcher())
        cursor = await enroll(executions, subscriber, now)
        cursor = await executions.get(cursor.id)
        await executions.advance(cursor, 3, now)

        result = await processor.advance(await executions.get(cursor.id), graph, subscriber, now)

        assert result.outcome == AdvanceOutcome.ADVANCED
        assert result.next_step == 8

    @pytest.mark.asyncio
    async def test_action_step_dispatches_and_completes(self, executions, graph, subscriber, now):
        dispatcher = RecordingDispatcher()
        processor = StepProcessor(executions, DryRunEmailSender(), dispatcher)
        cursor = await enroll(executions, subscriber, now)
        await executions.advance(cursor, 4, now)
        cursor = await executions.get(cursor.id)

        result = await processor.advance(cursor, graph, subscriber, now)

        # step 5 does not exist, so the true branch ends here
        assert result.outcome == AdvanceOutcome.COMPLETED
        assert dispatcher.calls == [(subscriber.id, "add_tag", {"tag_name": "Engaged"}, cursor.id)]

    @pytest.mark.asyncio
    async def test_missing_next_step_completes(self, executions, graph, subscriber, now):
        processor = StepProcessor(executions, DryRunEmailSender(), RecordingDispatcher())
        cursor = await enroll(executions, subscriber, now)
        await executions.advance(cursor, 8, now)
        cursor = await executions.get(cursor.id)

        result = await processor.advance(cursor, graph, subscriber, now)

        assert result.outcome == AdvanceOutcome.COMPLETED
        stored = await executions.get(cursor.id)
        assert stored.status == ExecutionStatus.COMPLETED
        assert stored.completed_at == now
        assert stored.current_step == 8

    @pytest.mark.asyncio
    async def test_cursor_on_missing_step_completes_without_effect(self, executions, graph, subscriber, now):
        sender = DryRunEmailSender()
        processor = StepProcessor(executions, sender, RecordingDispatcher())
        cursor = await enroll(executions, subscriber, now)
        await executions.advance(cursor, 6, now)
        cursor = await executions.get(cursor.id)

        result = await processor.advance(cursor, graph, subscriber, now)

        assert result.outcome == AdvanceOutcome.COMPLETED
        assert sender.sent == []
        assert await executions.list_logs(cursor.id) == []

    @pytest.mark.asyncio
    async def test_email_failure_keeps_step_and_logs(self, executions, graph, subscriber, now):
        sender = FailingEmailSender(failures=1)
        processor = StepProcessor(executions, sender, RecordingDispatcher(), max_step_attempts=3)
        cursor = await enroll(executions, subscriber, now)

        result = await processor.advance(cursor, graph, subscriber, now)

        assert result.outcome == AdvanceOutcome.FAILED
        stored = await executions.get(cursor.id)
        assert stored.current_step == 1
        assert stored.status == ExecutionStatus.ACTIVE
        assert stored.attempts == 1
        assert stored.claimed_until is None
        assert stored.is_due(now)

        logs = await executions.list_logs(cursor.id)
        assert logs[0].status == StepLogStatus.FAILED
        assert "relay refused" in logs[0].error_message

        # next poll succeeds and resets the attempt counter
        retry = await processor.advance(stored, graph, subscriber, now)
        assert retry.outcome == AdvanceOutcome.ADVANCED
        assert (await executions.get(cursor.id)).attempts == 0

    @pytest.mark.asyncio
    async def test_dead_letter_after_max_attempts(self, executions, graph, subscriber, now):
        processor = StepProcessor(executions, FailingEmailSender(failures=10), RecordingDispatcher(), max_step_attempts=2)
        cursor = await enroll(executions, subscriber, now)

        first = await processor.advance(cursor, graph, subscriber, now)
        second = await processor.advance(await executions.get(cursor.id), graph, subscriber, now)

        assert first.outcome == AdvanceOutcome.FAILED
        assert second.outcome == AdvanceOutcome.DEAD_LETTERED
        stored = await executions.get(cursor.id)
        assert stored.status == ExecutionStatus.FAILED
        assert not stored.is_due(now)
        assert len(await executions.list_logs(cursor.id)) == 2

    @pytest.mark.asyncio
    async def test_unlimited_attempts(self, executions, graph, subscriber, now):
        processor = StepProcessor(executions, FailingEmailSender(failures=10), RecordingDispatcher(), max_step_attempts=0)
        cursor = await enroll(executions, subscriber, now)

        for _ in range(6):
            result = await processor.advance(await executions.get(cursor.id), graph, subscriber, now)
            assert result.outcome == AdvanceOutcome.FAILED
        assert (await executions.get(cursor.id)).attempts == 6

    @pytest.mark.asyncio
    async def test_action_failure_is_retryable(self, executions, graph, subscriber, now):
        processor = StepProcessor(executions, DryRunEmailSender(), RecordingDispatcher(success=False))
        cursor = await enroll(executions, subscriber, now)
        await executions.advance(cursor, 4, now)

        result = await processor.advance(await executions.get(cursor.id), graph, subscriber, now)

        assert result.outcome == AdvanceOutcome.FAILED
        assert "crm unavailable" in result.error
        assert (await executions.get(cursor.id)).current_step == 4

    @pytest.mark.asyncio
    async def test_unexpected_error_is_logged_against_the_step(self, executions, graph, subscriber, now):
        processor = StepProcessor(executions, DryRunEmailSender(), RecordingDispatcher())
        processor.register_executor(StepKind.EMAIL, ExplodingExecutor())
        cursor = await enroll(executions, subscriber, now)

        result = await processor.advance(cursor, graph, subscriber, now)

        assert result.outcome == AdvanceOutcome.FAILED
        log = (await executions.list_logs(cursor.id))[0]
        assert log.step_id == graph.step_at(1).id
        assert log.step_order == 1
        assert log.error_message == "boom"

    @pytest.mark.asyncio
    async def test_stale_cursor_is_a_conflict(self, executions, graph, subscriber, now):
        sender = DryRunEmailSender()
        processor = StepProcessor(executions, sender, RecordingDispatcher())
        cursor = await enroll(executions, subscriber, now)

        await processor.advance(cursor, graph, subscriber, now)
        again = await processor.advance(cursor, graph, subscriber, now)

        assert again.outcome == AdvanceOutcome.CONFLICT
        assert len(sender.sent) == 1

    @pytest.mark.asyncio
    async def test_inactive_cursor_is_not_advanced(self, executions, graph, subscriber, now):
        processor = StepProcessor(executions, DryRunEmailSender(), RecordingDispatcher())
        cursor = await enroll(executions, subscriber, now)
        paused = await executions.set_status(cursor.id, ExecutionStatus.PAUSED, cursor.version)

        result = await processor.advance(paused, graph, subscriber, now)

        assert result.outcome == AdvanceOutcome.CONFLICT
        assert "paused" in result.error

    @pytest.mark.asyncio
    async def test_store_error_propagates(self, executions, graph, subscriber, now):

        class BrokenStoreExecutor(StepExecutor):
            async def execute(self, step, cursor, subscriber, now):
                raise StoreError("database is down")

        processor = StepProcessor(executions, DryRunEmailSender(), RecordingDispatcher())
        processor.register_executor(StepKind.EMAIL, BrokenStoreExecutor())
        cursor = await enroll(executions, subscriber, now)

        with pytest.raises(StoreError):
            await processor.advance(cursor, graph, subscriber, now)

    @pytest.mark.asyncio
    async def test_due_time_never_moves_backwards(self, executions, graph, subscriber, now):

        class SkipToDelay(StepExecutor):
            async def execute(self, step, cursor, subscriber, now):
                return StepOutcome(success=True, next_order=3)

        processor = StepProcessor(executions, DryRunEmailSender(), RecordingDispatcher())
        processor.register_executor(StepKind.EMAIL, SkipToDelay())
        later = now + timedelta(days=5)
        cursor = await executions.upsert_enrollment("wf-1", subscriber.id, next_step_at=later, started_at=now)

        result = await processor.advance(cursor, graph, subscriber, now)

        assert result.next_step == 3
        assert result.next_step_at == later
