"""
SQLAlchemy repository tests against a SQLite file database
"""
import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio

from nurture_engine.core.engine import NurtureEngine
from nurture_engine.core.parser import WorkflowParser
from nurture_engine.exceptions import StoreError
from nurture_engine.integrations.email import DryRunEmailSender
from nurture_engine.models.execution import ExecutionStatus, StepLog, StepLogStatus
from nurture_engine.models.subscriber import Subscriber, SubscriberTask
from nurture_engine.models.workflow import DelayUnit
from nurture_engine.storage.sqlalchemy_repository import (
    DatabaseManager,
    SQLAlchemyWorkflowRepository,
    SQLAlchemySubscriberRepository,
    SQLAlchemyExecutionRepository
)


@pytest_asyncio.fixture
async def db(tmp_path):
    db_manager = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'nurture.db'}")
    await db_manager.initialize()
    yield db_manager
    await db_manager.close()


@pytest.fixture
def workflows(db):
    return SQLAlchemyWorkflowRepository(db)


@pytest.fixture
def subscribers(db):
    return SQLAlchemySubscriberRepository(db)


@pytest.fixture
def executions(db):
    return SQLAlchemyExecutionRepository(db)


class TestWorkflowRepository:

    @pytest.mark.asyncio
    async def test_round_trip(self, workflows, flat_workflow):
        workflow = WorkflowParser().parse(flat_workflow)
        await workflows.save(workflow)

        loaded = await workflows.get(workflow.id)

        assert loaded.name == "Re-engagement"
        assert loaded.trigger_value == "inactive"
        assert loaded.graph.orders == [1, 2, 3, 4]
        assert loaded.step_at(1) == workflow.step_at(1)
        condition = loaded.step_at(2)
        assert condition.true_next == 3
        assert condition.delay.unit == DelayUnit.DAYS
        assert loaded.step_at(3).action_params == {"score_change": 10}

    @pytest.mark.asyncio
    async def test_save_replaces_steps(self, workflows, scenario_workflow):
        parser = WorkflowParser()
        workflow = parser.parse(scenario_workflow)
        await workflows.save(workflow)

        definition = parser.dump(workflow)
        definition["steps"] = definition["steps"][:2]
        await workflows.save(parser.parse(definition))

        loaded = await workflows.get(workflow.id)
        assert loaded.graph.orders == [1, 2]

    @pytest.mark.asyncio
    async def test_lookup_and_activation(self, workflows, scenario_workflow, flat_workflow):
        parser = WorkflowParser()
        first = parser.parse(scenario_workflow)
        second = parser.parse(flat_workflow)
        await workflows.save(first)
        await workflows.save(second)

        assert (await workflows.get_by_name("Onboarding")).id == first.id
        assert await workflows.get("missing") is None

        assert await workflows.set_active(second.id, False)
        assert not await workflows.set_active("missing", False)

        active = await workflows.list(active_only=True)
        assert [w.id for w in active] == [first.id]
        assert len(await workflows.list()) == 2


class TestSubscriberRepository:

    @pytest.mark.asyncio
    async def test_create_and_lookup(self, subscribers, subscriber):
        await subscribers.create(subscriber)

        loaded = await subscribers.get_by_email("JANE@example.com")
        assert loaded.id == subscriber.id
        assert loaded.tags == ["Newsletter", "vip"]
        assert loaded.custom_fields == {"company": "Acme", "plan": "pro"}

    @pytest.mark.asyncio
    async def test_duplicate_email_returns_existing(self, subscribers, subscriber):
        await subscribers.create(subscriber)

        duplicate = await subscribers.create(Subscriber(email="jane@example.com"))

        assert duplicate.id == subscriber.id

    @pytest.mark.asyncio
    async def test_update_and_tasks(self, subscribers, subscriber):
        await subscribers.create(subscriber)
        subscriber.lead_score = 90
        subscriber.tags = ["vip", "hot"]
        assert await subscribers.update(subscriber)

        loaded = await subscribers.get(subscriber.id)
        assert loaded.lead_score == 90
        assert loaded.tags == ["vip", "hot"]

        task_id = await subscribers.create_task(SubscriberTask(subscriber_id=subscriber.id, title="Call"))
        tasks = await subscribers.list_tasks(subscriber.id)
        assert [t.id for t in tasks] == [task_id]


class TestExecutionRepository:

    @pytest.mark.asyncio
    async def test_upsert_resets_the_same_row(self, executions, now):
        first = await executions.upsert_enrollment("wf", "sub", next_step_at=now, started_at=now, metadata={"a": 1})
        assert first.version == 0
        assert first.metadata == {"a": 1}

        assert await executions.advance(first, 3, now + timedelta(days=1))
        moved = await executions.get(first.id)
        assert await executions.complete(moved, now)

        later = now + timedelta(hours=5)
        second = await executions.upsert_enrollment("wf", "sub", next_step_at=later, started_at=later)

        assert second.id == first.id
        assert second.current_step == 1
        assert second.status == ExecutionStatus.ACTIVE
        assert second.completed_at is None
        assert second.next_step_at == later
        assert second.metadata == {}
        assert second.version == 3

    @pytest.mark.asyncio
    async def test_concurrent_upserts_keep_one_row(self, executions, now):
        results = await asyncio.gather(*[
            executions.upsert_enrollment("wf", "sub", next_step_at=now, started_at=now)
            for _ in range(4)
        ])

        assert len({r.id for r in results}) == 1
        assert len(await executions.list_by_workflow("wf")) == 1

    @pytest.mark.asyncio
    async def test_claim_is_exclusive(self, executions, now):
        cursor = await executions.upsert_enrollment("wf", "sub", next_step_at=now, started_at=now)

        claimed = await executions.claim(cursor, now + timedelta(minutes=5))
        assert claimed is not None
        assert claimed.version == cursor.version + 1
        assert await executions.claim(cursor, now + timedelta(minutes=5)) is None

        # invisible to other pollers until the lease runs out
        assert await executions.list_due(now) == []
        assert len(await executions.list_due(now + timedelta(minutes=6))) == 1

        # later writes are conditional on the claimed version
        assert not await executions.advance(cursor, 2, now)
        assert await executions.advance(claimed, 2, now)
        stored = await executions.get(cursor.id)
        assert stored.current_step == 2
        assert stored.claimed_until is None

    @pytest.mark.asyncio
    async def test_record_failure(self, executions, now):
        cursor = await executions.upsert_enrollment("wf", "sub", next_step_at=now, started_at=now)
        claimed = await executions.claim(cursor, now + timedelta(minutes=5))

        assert await executions.record_failure(claimed, 1)
        stored = await executions.get(cursor.id)
        assert stored.attempts == 1
        assert stored.status == ExecutionStatus.ACTIVE
        assert stored.claimed_until is None

        assert await executions.record_failure(stored, 2, dead_letter=True)
        assert (await executions.get(cursor.id)).status == ExecutionStatus.FAILED

    @pytest.mark.asyncio
    async def test_list_due_filters(self, executions, now):
        due = await executions.upsert_enrollment("wf", "due", next_step_at=now, started_at=now)
        await executions.upsert_enrollment("wf", "future", next_step_at=now + timedelta(hours=1), started_at=now)
        paused = await executions.upsert_enrollment("wf", "paused", next_step_at=now, started_at=now)
        await executions.set_status(paused.id, ExecutionStatus.PAUSED, paused.version)

        assert [c.id for c in await executions.list_due(now)] == [due.id]
        assert len(await executions.list_by_workflow("wf", status=ExecutionStatus.PAUSED)) == 1

    @pytest.mark.asyncio
    async def test_set_status_checks_version(self, executions, now):
        cursor = await executions.upsert_enrollment("wf", "sub", next_step_at=now, started_at=now)

        paused = await executions.set_status(cursor.id, ExecutionStatus.PAUSED, cursor.version)
        assert paused.status == ExecutionStatus.PAUSED
        assert await executions.set_status(cursor.id, ExecutionStatus.ACTIVE, cursor.version) is None

    @pytest.mark.asyncio
    async def test_logs(self, executions, now):
        cursor = await executions.upsert_enrollment("wf", "sub", next_step_at=now, started_at=now)
        await executions.append_log(StepLog(
            execution_id=cursor.id, step_id="s1", step_order=1, status=StepLogStatus.SENT, created_at=now
        ))
        await executions.append_log(StepLog(
            execution_id=cursor.id, step_order=2, status=StepLogStatus.FAILED,
            error_message="relay refused", created_at=now + timedelta(seconds=1)
        ))

        logs = await executions.list_logs(cursor.id)

        assert [log.status for log in logs] == [StepLogStatus.SENT, StepLogStatus.FAILED]
        assert logs[1].step_id is None
        assert logs[1].error_message == "relay refused"


class TestEngineOnDatabase:

    @pytest.mark.asyncio
    async def test_trigger_and_poll(self, db, workflows, subscribers, executions, settings, scenario_workflow, now):
        sender = DryRunEmailSender()
        engine = NurtureEngine(
            workflow_repository=workflows,
            subscriber_repository=subscribers,
            execution_repository=executions,
            email_sender=sender,
            settings=settings
        )
        await engine.create_workflow(scenario_workflow)

        result = await engine.trigger_service.trigger(
            workflow_name="Onboarding", subscriber_email="db@example.com", now=now
        )
        again = await engine.trigger_service.trigger(
            workflow_name="Onboarding", subscriber_email="db@example.com", now=now
        )
        assert again.execution_id == result.execution_id

        summary = await engine.runner.run_due(now)

        assert summary.processed == 1
        assert len(sender.sent) == 1
        cursor = await engine.get_execution(result.execution_id)
        assert cursor.current_step == 2
        assert cursor.next_step_at == now + timedelta(days=2)
        logs = await engine.get_execution_logs(result.execution_id)
        assert [log.status for log in logs] == [StepLogStatus.SENT]

    @pytest.mark.asyncio
    async def test_uninitialized_manager_raises_store_error(self):
        repository = SQLAlchemyExecutionRepository(DatabaseManager("sqlite+aiosqlite:///:memory:"))
        with pytest.raises(StoreError):
            await repository.get("anything")
