"""
SQLAlchemy repository implementations
"""
import logging
from typing import Optional, List, Dict, Any
from datetime import datetime
from contextlib import asynccontextmanager
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, create_async_engine, async_sessionmaker
from sqlalchemy.orm import selectinload
from sqlalchemy import select, update, delete, and_, or_, func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.dialects import postgresql, sqlite

from ..exceptions import StoreError
from ..models.workflow import (
    Workflow, WorkflowGraph, Step, StepKind, Delay, DelayUnit, STEP_CLASSES
)
from ..models.subscriber import Subscriber, SubscriberTask
from ..models.execution import (
    ExecutionCursor, ExecutionStatus, StepLog, StepLogStatus, utcnow
)
from .repository import WorkflowRepository, SubscriberRepository, ExecutionRepository
from .sqlalchemy_models import (
    EmailWorkflowDB,
    WorkflowStepDB,
    SubscriberDB,
    SubscriberTaskDB,
    WorkflowExecutionDB,
    WorkflowStepLogDB,
    Base
)


logger = logging.getLogger(__name__)


class DatabaseManager:
    """Database engine and session factory"""

    def __init__(self, database_url: str, echo: bool = False):
        self.database_url = database_url
        self.echo = echo
        self.engine: Optional[AsyncEngine] = None
        self.async_session_maker = None

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name if self.engine else ""

    async def initialize(self, create_tables: bool = True):
        """Create the engine and, optionally, the tables"""
        engine_kwargs: Dict[str, Any] = {"echo": self.echo}
        if not self.database_url.startswith("sqlite"):
            engine_kwargs.update(pool_size=20, max_overflow=10, pool_pre_ping=True)

        self.engine = create_async_engine(self.database_url, **engine_kwargs)
        self.async_session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        if create_tables:
            await self.create_tables()

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self):
        if self.engine:
            await self.engine.dispose()

    @asynccontextmanager
    async def get_session(self):
        """Transactional session; database failures surface as StoreError"""
        if self.async_session_maker is None:
            raise StoreError("Database is not initialized")
        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except SQLAlchemyError as e:
                await session.rollback()
                logger.error(f"Database operation failed: {e}")
                raise StoreError(f"Database operation failed: {e}") from e
            except Exception:
                await session.rollback()
                raise

    def insert(self, table):
        """Dialect insert supporting ON CONFLICT"""
        if self.dialect == "postgresql":
            return postgresql.insert(table)
        if self.dialect == "sqlite":
            return sqlite.insert(table)
        raise StoreError(f"Unsupported database dialect for upsert: {self.dialect}")


def _step_to_row(workflow_id: str, step: Step) -> WorkflowStepDB:
    row = WorkflowStepDB(
        id=step.id,
        workflow_id=workflow_id,
        step_order=step.order,
        step_type=step.kind.value,
        name=step.name,
        delay_value=step.delay.value if step.delay else None,
        delay_unit=step.delay.unit.value if step.delay else None,
    )
    if step.kind == StepKind.EMAIL:
        row.subject = step.subject
        row.body = step.body
    elif step.kind == StepKind.CONDITION:
        row.condition_field = step.condition_field
        row.condition_operator = step.condition_operator
        row.condition_value = step.condition_value
        row.true_next_step = step.true_next
        row.false_next_step = step.false_next
    elif step.kind == StepKind.ACTION:
        row.action_type = step.action_type
        row.action_params = dict(step.action_params)
    return row


def _row_to_step(row: WorkflowStepDB) -> Step:
    kind = StepKind(row.step_type)
    delay = None
    if row.delay_value or row.delay_unit:
        delay = Delay(value=row.delay_value or 0, unit=DelayUnit.parse(row.delay_unit))

    common = dict(id=row.id, order=row.step_order, name=row.name or "", delay=delay)
    if kind == StepKind.EMAIL:
        return STEP_CLASSES[kind](subject=row.subject or "", body=row.body or "", **common)
    if kind == StepKind.CONDITION:
        return STEP_CLASSES[kind](
            condition_field=row.condition_field,
            condition_operator=row.condition_operator,
            condition_value=row.condition_value,
            true_next=row.true_next_step,
            false_next=row.false_next_step,
            **common
        )
    if kind == StepKind.ACTION:
        return STEP_CLASSES[kind](
            action_type=row.action_type,
            action_params=row.action_params or {},
            **common
        )
    return STEP_CLASSES[kind](**common)


class SQLAlchemyWorkflowRepository(WorkflowRepository):
    """SQLAlchemy workflow repository"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def save(self, workflow: Workflow) -> str:
        async with self.db.get_session() as session:
            await session.execute(
                delete(WorkflowStepDB).where(WorkflowStepDB.workflow_id == workflow.id)
            )

            workflow_db = await session.get(EmailWorkflowDB, workflow.id)
            if workflow_db is None:
                workflow_db = EmailWorkflowDB(id=workflow.id, created_at=workflow.created_at)
                session.add(workflow_db)
            workflow_db.name = workflow.name
            workflow_db.description = workflow.description
            workflow_db.is_active = workflow.is_active
            workflow_db.trigger_type = workflow.trigger_type
            workflow_db.trigger_value = workflow.trigger_value
            workflow_db.meta = workflow.metadata
            workflow_db.updated_at = utcnow()
            await session.flush()

            session.add_all([_step_to_row(workflow.id, step) for step in workflow.graph])
            await session.flush()
            return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(EmailWorkflowDB)
                .options(selectinload(EmailWorkflowDB.steps))
                .where(EmailWorkflowDB.id == workflow_id)
            )
            workflow_db = result.scalar_one_or_none()
            return self._db_to_workflow(workflow_db) if workflow_db else None

    async def get_by_name(self, name: str) -> Optional[Workflow]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(EmailWorkflowDB)
                .options(selectinload(EmailWorkflowDB.steps))
                .where(EmailWorkflowDB.name == name)
                .order_by(EmailWorkflowDB.created_at.desc())
                .limit(1)
            )
            workflow_db = result.scalar_one_or_none()
            return self._db_to_workflow(workflow_db) if workflow_db else None

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        active_only: bool = False
    ) -> List[Workflow]:
        async with self.db.get_session() as session:
            query = select(EmailWorkflowDB).options(selectinload(EmailWorkflowDB.steps))
            if active_only:
                query = query.where(EmailWorkflowDB.is_active.is_(True))
            query = query.order_by(EmailWorkflowDB.created_at.desc()).offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._db_to_workflow(w) for w in result.scalars().all()]

    async def set_active(self, workflow_id: str, is_active: bool) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(EmailWorkflowDB)
                .where(EmailWorkflowDB.id == workflow_id)
                .values(is_active=is_active, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def _db_to_workflow(self, workflow_db: EmailWorkflowDB) -> Workflow:
        return Workflow(
            id=workflow_db.id,
            name=workflow_db.name,
            description=workflow_db.description,
            is_active=workflow_db.is_active,
            trigger_type=workflow_db.trigger_type,
            trigger_value=workflow_db.trigger_value,
            graph=WorkflowGraph([_row_to_step(row) for row in workflow_db.steps]),
            metadata=workflow_db.meta or {},
            created_at=workflow_db.created_at,
            updated_at=workflow_db.updated_at
        )


class SQLAlchemySubscriberRepository(SubscriberRepository):
    """SQLAlchemy subscriber repository"""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def get(self, subscriber_id: str) -> Optional[Subscriber]:
        async with self.db.get_session() as session:
            subscriber_db = await session.get(SubscriberDB, subscriber_id)
            return self._db_to_subscriber(subscriber_db) if subscriber_db else None

    async def get_by_email(self, email: str) -> Optional[Subscriber]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(SubscriberDB).where(func.lower(SubscriberDB.email) == (email or "").strip().lower())
            )
            subscriber_db = result.scalars().first()
            return self._db_to_subscriber(subscriber_db) if subscriber_db else None

    async def create(self, subscriber: Subscriber) -> Subscriber:
        try:
            async with self.db.get_session() as session:
                session.add(SubscriberDB(
                    id=subscriber.id,
                    email=subscriber.email,
                    name=subscriber.name,
                    subscribed=subscriber.subscribed,
                    source=subscriber.source,
                    lead_score=subscriber.lead_score,
                    engagement_level=subscriber.engagement_level,
                    total_opens=subscriber.total_opens,
                    total_clicks=subscriber.total_clicks,
                    purchase_count=subscriber.purchase_count,
                    total_spent=subscriber.total_spent,
                    tags=list(subscriber.tags),
                    custom_fields=dict(subscriber.custom_fields),
                    last_activity_at=subscriber.last_activity_at,
                    created_at=subscriber.created_at
                ))
            return subscriber
        except StoreError as e:
            if not isinstance(e.__cause__, IntegrityError):
                raise
        # lost a creation race on the email
        existing = await self.get_by_email(subscriber.email)
        if existing is None:
            raise StoreError(f"Failed to create subscriber: {subscriber.email}")
        return existing

    async def update(self, subscriber: Subscriber) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(SubscriberDB)
                .where(SubscriberDB.id == subscriber.id)
                .values(
                    name=subscriber.name,
                    subscribed=subscriber.subscribed,
                    lead_score=subscriber.lead_score,
                    engagement_level=subscriber.engagement_level,
                    total_opens=subscriber.total_opens,
                    total_clicks=subscriber.total_clicks,
                    purchase_count=subscriber.purchase_count,
                    total_spent=subscriber.total_spent,
                    tags=list(subscriber.tags),
                    custom_fields=dict(subscriber.custom_fields),
                    last_activity_at=subscriber.last_activity_at
                )
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    async def create_task(self, task: SubscriberTask) -> str:
        async with self.db.get_session() as session:
            session.add(SubscriberTaskDB(
                id=task.id,
                subscriber_id=task.subscriber_id,
                execution_id=task.execution_id,
                title=task.title,
                description=task.description,
                priority=task.priority,
                due_at=task.due_at,
                created_at=task.created_at
            ))
            return task.id

    async def list_tasks(self, subscriber_id: str) -> List[SubscriberTask]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(SubscriberTaskDB)
                .where(SubscriberTaskDB.subscriber_id == subscriber_id)
                .order_by(SubscriberTaskDB.created_at)
            )
            return [
                SubscriberTask(
                    id=t.id,
                    subscriber_id=t.subscriber_id,
                    execution_id=t.execution_id,
                    title=t.title,
                    description=t.description,
                    priority=t.priority,
                    due_at=t.due_at,
                    created_at=t.created_at
                )
                for t in result.scalars().all()
            ]

    def _db_to_subscriber(self, subscriber_db: SubscriberDB) -> Subscriber:
        return Subscriber(
            id=subscriber_db.id,
            email=subscriber_db.email,
            name=subscriber_db.name,
            subscribed=subscriber_db.subscribed,
            source=subscriber_db.source,
            lead_score=subscriber_db.lead_score or 0,
            engagement_level=subscriber_db.engagement_level,
            total_opens=subscriber_db.total_opens or 0,
            total_clicks=subscriber_db.total_clicks or 0,
            purchase_count=subscriber_db.purchase_count or 0,
            total_spent=subscriber_db.total_spent or 0.0,
            tags=list(subscriber_db.tags or []),
            custom_fields=dict(subscriber_db.custom_fields or {}),
            last_activity_at=subscriber_db.last_activity_at,
            created_at=subscriber_db.created_at
        )


class SQLAlchemyExecutionRepository(ExecutionRepository):
    """SQLAlchemy execution repository

    Cursor writes are single conditional UPDATE statements; a rowcount of
    zero means another worker got there first.
    """

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    async def upsert_enrollment(
        self,
        workflow_id: str,
        subscriber_id: str,
        next_step_at: datetime,
        started_at: datetime,
        metadata: Dict[str, Any] = None
    ) -> ExecutionCursor:
        table = WorkflowExecutionDB.__table__
        now = utcnow()
        reset = {
            "current_step": 1,
            "status": ExecutionStatus.ACTIVE.value,
            "next_step_at": next_step_at,
            "started_at": started_at,
            "completed_at": None,
            "metadata": dict(metadata or {}),
            "attempts": 0,
            "claimed_until": None,
            "updated_at": now,
        }
        stmt = self.db.insert(table).values(
            id=str(uuid4()),
            workflow_id=workflow_id,
            subscriber_id=subscriber_id,
            version=0,
            **reset
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[table.c.workflow_id, table.c.subscriber_id],
            set_={**reset, "version": table.c.version + 1}
        )

        async with self.db.get_session() as session:
            await session.execute(stmt)
            result = await session.execute(
                select(WorkflowExecutionDB).where(and_(
                    WorkflowExecutionDB.workflow_id == workflow_id,
                    WorkflowExecutionDB.subscriber_id == subscriber_id
                ))
            )
            return self._db_to_cursor(result.scalar_one())

    async def get(self, execution_id: str) -> Optional[ExecutionCursor]:
        async with self.db.get_session() as session:
            execution_db = await session.get(WorkflowExecutionDB, execution_id)
            return self._db_to_cursor(execution_db) if execution_db else None

    async def get_for_pair(self, workflow_id: str, subscriber_id: str) -> Optional[ExecutionCursor]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowExecutionDB).where(and_(
                    WorkflowExecutionDB.workflow_id == workflow_id,
                    WorkflowExecutionDB.subscriber_id == subscriber_id
                ))
            )
            execution_db = result.scalar_one_or_none()
            return self._db_to_cursor(execution_db) if execution_db else None

    async def list_due(self, now: datetime, limit: int = 100) -> List[ExecutionCursor]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowExecutionDB)
                .where(and_(
                    WorkflowExecutionDB.status == ExecutionStatus.ACTIVE.value,
                    or_(
                        WorkflowExecutionDB.next_step_at.is_(None),
                        WorkflowExecutionDB.next_step_at <= now
                    ),
                    or_(
                        WorkflowExecutionDB.claimed_until.is_(None),
                        WorkflowExecutionDB.claimed_until <= now
                    )
                ))
                .order_by(WorkflowExecutionDB.next_step_at, WorkflowExecutionDB.id)
                .limit(limit)
            )
            return [self._db_to_cursor(e) for e in result.scalars().all()]

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ExecutionCursor]:
        async with self.db.get_session() as session:
            query = select(WorkflowExecutionDB).where(WorkflowExecutionDB.workflow_id == workflow_id)
            if status:
                query = query.where(WorkflowExecutionDB.status == status.value)
            query = query.order_by(WorkflowExecutionDB.started_at.desc()).offset(offset).limit(limit)

            result = await session.execute(query)
            return [self._db_to_cursor(e) for e in result.scalars().all()]

    async def claim(
        self,
        cursor: ExecutionCursor,
        claimed_until: datetime
    ) -> Optional[ExecutionCursor]:
        now = utcnow()
        updated = await self._conditional_update(
            cursor,
            WorkflowExecutionDB.status == ExecutionStatus.ACTIVE.value,
            claimed_until=claimed_until,
            updated_at=now
        )
        if not updated:
            return None
        return cursor.copy(
            claimed_until=claimed_until,
            version=cursor.version + 1,
            status=ExecutionStatus.ACTIVE,
            updated_at=now
        )

    async def advance(
        self,
        cursor: ExecutionCursor,
        next_step: int,
        next_step_at: datetime
    ) -> bool:
        return await self._conditional_update(
            cursor,
            current_step=next_step,
            next_step_at=next_step_at,
            attempts=0,
            claimed_until=None,
            updated_at=utcnow()
        )

    async def complete(self, cursor: ExecutionCursor, completed_at: datetime) -> bool:
        return await self._conditional_update(
            cursor,
            WorkflowExecutionDB.status.notin_([s.value for s in ExecutionStatus if s.is_terminal]),
            status=ExecutionStatus.COMPLETED.value,
            completed_at=completed_at,
            claimed_until=None,
            updated_at=utcnow()
        )

    async def record_failure(
        self,
        cursor: ExecutionCursor,
        attempts: int,
        dead_letter: bool = False
    ) -> bool:
        values = dict(attempts=attempts, claimed_until=None, updated_at=utcnow())
        if dead_letter:
            values["status"] = ExecutionStatus.FAILED.value
        return await self._conditional_update(cursor, **values)

    async def set_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        expected_version: int
    ) -> Optional[ExecutionCursor]:
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowExecutionDB)
                .where(and_(
                    WorkflowExecutionDB.id == execution_id,
                    WorkflowExecutionDB.version == expected_version
                ))
                .values(
                    status=status.value,
                    claimed_until=None,
                    version=WorkflowExecutionDB.version + 1,
                    updated_at=utcnow()
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                return None
        return await self.get(execution_id)

    async def append_log(self, log: StepLog) -> str:
        async with self.db.get_session() as session:
            session.add(WorkflowStepLogDB(
                id=log.id,
                execution_id=log.execution_id,
                step_id=log.step_id,
                step_order=log.step_order,
                status=log.status.value,
                error_message=log.error_message,
                created_at=log.created_at
            ))
            return log.id

    async def list_logs(self, execution_id: str) -> List[StepLog]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(WorkflowStepLogDB)
                .where(WorkflowStepLogDB.execution_id == execution_id)
                .order_by(WorkflowStepLogDB.created_at)
            )
            return [
                StepLog(
                    id=row.id,
                    execution_id=row.execution_id,
                    step_id=row.step_id,
                    step_order=row.step_order,
                    status=StepLogStatus(row.status),
                    error_message=row.error_message,
                    created_at=row.created_at
                )
                for row in result.scalars().all()
            ]

    async def _conditional_update(self, cursor: ExecutionCursor, *conditions, **values) -> bool:
        """UPDATE ... WHERE id, version and current_step still match what was read"""
        async with self.db.get_session() as session:
            result = await session.execute(
                update(WorkflowExecutionDB)
                .where(and_(
                    WorkflowExecutionDB.id == cursor.id,
                    WorkflowExecutionDB.version == cursor.version,
                    WorkflowExecutionDB.current_step == cursor.current_step,
                    *conditions
                ))
                .values(version=WorkflowExecutionDB.version + 1, **values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    def _db_to_cursor(self, execution_db: WorkflowExecutionDB) -> ExecutionCursor:
        return ExecutionCursor(
            id=execution_db.id,
            workflow_id=execution_db.workflow_id,
            subscriber_id=execution_db.subscriber_id,
            current_step=execution_db.current_step,
            status=ExecutionStatus(execution_db.status),
            next_step_at=execution_db.next_step_at,
            started_at=execution_db.started_at,
            completed_at=execution_db.completed_at,
            metadata=dict(execution_db.meta or {}),
            attempts=execution_db.attempts or 0,
            version=execution_db.version or 0,
            claimed_until=execution_db.claimed_until,
            updated_at=execution_db.updated_at
        )
