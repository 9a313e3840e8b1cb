"""
Storage repository interfaces
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..models.workflow import Workflow
from ..models.subscriber import Subscriber, SubscriberTask
from ..models.execution import (
    ExecutionCursor, ExecutionStatus, StepLog, utcnow
)


class WorkflowRepository(ABC):
    """Workflow repository interface"""

    @abstractmethod
    async def save(self, workflow: Workflow) -> str:
        """Insert or replace a workflow and its steps"""
        pass

    @abstractmethod
    async def get(self, workflow_id: str) -> Optional[Workflow]:
        """Get workflow by id"""
        pass

    @abstractmethod
    async def get_by_name(self, name: str) -> Optional[Workflow]:
        """Get workflow by name"""
        pass

    @abstractmethod
    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        active_only: bool = False
    ) -> List[Workflow]:
        """List workflows"""
        pass

    @abstractmethod
    async def set_active(self, workflow_id: str, is_active: bool) -> bool:
        """Activate or deactivate a workflow"""
        pass


class SubscriberRepository(ABC):
    """Subscriber repository interface"""

    @abstractmethod
    async def get(self, subscriber_id: str) -> Optional[Subscriber]:
        """Get subscriber by id"""
        pass

    @abstractmethod
    async def get_by_email(self, email: str) -> Optional[Subscriber]:
        """Get subscriber by email (case-insensitive)"""
        pass

    @abstractmethod
    async def create(self, subscriber: Subscriber) -> Subscriber:
        """Create a subscriber; returns the existing row on an email clash"""
        pass

    @abstractmethod
    async def update(self, subscriber: Subscriber) -> bool:
        """Update subscriber attributes"""
        pass

    @abstractmethod
    async def create_task(self, task: SubscriberTask) -> str:
        """Create a follow-up task"""
        pass

    @abstractmethod
    async def list_tasks(self, subscriber_id: str) -> List[SubscriberTask]:
        """List tasks of a subscriber"""
        pass


class ExecutionRepository(ABC):
    """Execution cursor and step log repository interface

    Every write that changes a cursor is conditional on the version that was
    read; a method returning None or False means the caller lost the race.
    """

    @abstractmethod
    async def upsert_enrollment(
        self,
        workflow_id: str,
        subscriber_id: str,
        next_step_at: datetime,
        started_at: datetime,
        metadata: Dict[str, Any] = None
    ) -> ExecutionCursor:
        """Atomically create or reset the single cursor of the pair"""
        pass

    @abstractmethod
    async def get(self, execution_id: str) -> Optional[ExecutionCursor]:
        """Get cursor by id"""
        pass

    @abstractmethod
    async def get_for_pair(self, workflow_id: str, subscriber_id: str) -> Optional[ExecutionCursor]:
        """Get the cursor of a (workflow, subscriber) pair"""
        pass

    @abstractmethod
    async def list_due(self, now: datetime, limit: int = 100) -> List[ExecutionCursor]:
        """Active cursors with next_step_at <= now and no live claim"""
        pass

    @abstractmethod
    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ExecutionCursor]:
        """List cursors of a workflow"""
        pass

    @abstractmethod
    async def claim(
        self,
        cursor: ExecutionCursor,
        claimed_until: datetime
    ) -> Optional[ExecutionCursor]:
        """Take the processing lease if id, version, current_step and status still match"""
        pass

    @abstractmethod
    async def advance(
        self,
        cursor: ExecutionCursor,
        next_step: int,
        next_step_at: datetime
    ) -> bool:
        """Move a claimed cursor to its next step"""
        pass

    @abstractmethod
    async def complete(self, cursor: ExecutionCursor, completed_at: datetime) -> bool:
        """Mark a claimed cursor completed"""
        pass

    @abstractmethod
    async def record_failure(
        self,
        cursor: ExecutionCursor,
        attempts: int,
        dead_letter: bool = False
    ) -> bool:
        """Release a claimed cursor after a failed attempt, optionally dead-lettering it"""
        pass

    @abstractmethod
    async def set_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        expected_version: int
    ) -> Optional[ExecutionCursor]:
        """External status change (pause, resume, cancel)"""
        pass

    @abstractmethod
    async def append_log(self, log: StepLog) -> str:
        """Append a step log row"""
        pass

    @abstractmethod
    async def list_logs(self, execution_id: str) -> List[StepLog]:
        """Step logs of a cursor, oldest first"""
        pass


# In-memory implementations (tests, CLI dry runs)
class InMemoryWorkflowRepository(WorkflowRepository):
    """In-memory workflow repository"""

    def __init__(self):
        self.workflows: Dict[str, Workflow] = {}

    async def save(self, workflow: Workflow) -> str:
        workflow.updated_at = utcnow()
        self.workflows[workflow.id] = workflow
        return workflow.id

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        return self.workflows.get(workflow_id)

    async def get_by_name(self, name: str) -> Optional[Workflow]:
        for workflow in self.workflows.values():
            if workflow.name == name:
                return workflow
        return None

    async def list(
        self,
        offset: int = 0,
        limit: int = 100,
        active_only: bool = False
    ) -> List[Workflow]:
        workflows = [
            w for w in self.workflows.values()
            if w.is_active or not active_only
        ]
        return workflows[offset:offset + limit]

    async def set_active(self, workflow_id: str, is_active: bool) -> bool:
        workflow = self.workflows.get(workflow_id)
        if not workflow:
            return False
        workflow.is_active = is_active
        workflow.updated_at = utcnow()
        return True


class InMemorySubscriberRepository(SubscriberRepository):
    """In-memory subscriber repository"""

    def __init__(self):
        self.subscribers: Dict[str, Subscriber] = {}
        self.tasks: Dict[str, SubscriberTask] = {}
        self._lock = asyncio.Lock()

    async def get(self, subscriber_id: str) -> Optional[Subscriber]:
        return self.subscribers.get(subscriber_id)

    async def get_by_email(self, email: str) -> Optional[Subscriber]:
        wanted = (email or "").strip().lower()
        for subscriber in self.subscribers.values():
            if subscriber.email.lower() == wanted:
                return subscriber
        return None

    async def create(self, subscriber: Subscriber) -> Subscriber:
        async with self._lock:
            existing = await self.get_by_email(subscriber.email)
            if existing:
                return existing
            self.subscribers[subscriber.id] = subscriber
            return subscriber

    async def update(self, subscriber: Subscriber) -> bool:
        if subscriber.id not in self.subscribers:
            return False
        self.subscribers[subscriber.id] = subscriber
        return True

    async def create_task(self, task: SubscriberTask) -> str:
        self.tasks[task.id] = task
        return task.id

    async def list_tasks(self, subscriber_id: str) -> List[SubscriberTask]:
        return [t for t in self.tasks.values() if t.subscriber_id == subscriber_id]


class InMemoryExecutionRepository(ExecutionRepository):
    """In-memory execution repository

    A single asyncio lock stands in for the store's atomic conditional write.
    Cursors handed out are copies, so callers never mutate stored state.
    """

    def __init__(self):
        self.executions: Dict[str, ExecutionCursor] = {}
        self.logs: List[StepLog] = []
        self._lock = asyncio.Lock()

    async def upsert_enrollment(
        self,
        workflow_id: str,
        subscriber_id: str,
        next_step_at: datetime,
        started_at: datetime,
        metadata: Dict[str, Any] = None
    ) -> ExecutionCursor:
        async with self._lock:
            existing = self._find_pair(workflow_id, subscriber_id)
            if existing:
                existing.current_step = 1
                existing.status = ExecutionStatus.ACTIVE
                existing.next_step_at = next_step_at
                existing.started_at = started_at
                existing.completed_at = None
                existing.metadata = dict(metadata or {})
                existing.attempts = 0
                existing.claimed_until = None
                existing.version += 1
                existing.updated_at = utcnow()
                return existing.copy()

            cursor = ExecutionCursor(
                workflow_id=workflow_id,
                subscriber_id=subscriber_id,
                next_step_at=next_step_at,
                started_at=started_at,
                metadata=dict(metadata or {})
            )
            self.executions[cursor.id] = cursor
            return cursor.copy()

    async def get(self, execution_id: str) -> Optional[ExecutionCursor]:
        cursor = self.executions.get(execution_id)
        return cursor.copy() if cursor else None

    async def get_for_pair(self, workflow_id: str, subscriber_id: str) -> Optional[ExecutionCursor]:
        cursor = self._find_pair(workflow_id, subscriber_id)
        return cursor.copy() if cursor else None

    async def list_due(self, now: datetime, limit: int = 100) -> List[ExecutionCursor]:
        due = [c for c in self.executions.values() if c.is_due(now)]
        due.sort(key=lambda c: (c.next_step_at or datetime.min, c.id))
        return [c.copy() for c in due[:limit]]

    async def list_by_workflow(
        self,
        workflow_id: str,
        status: ExecutionStatus = None,
        offset: int = 0,
        limit: int = 100
    ) -> List[ExecutionCursor]:
        results = []
        for cursor in self.executions.values():
            if cursor.workflow_id != workflow_id:
                continue
            if status and cursor.status != status:
                continue
            results.append(cursor.copy())
        return results[offset:offset + limit]

    async def claim(
        self,
        cursor: ExecutionCursor,
        claimed_until: datetime
    ) -> Optional[ExecutionCursor]:
        async with self._lock:
            stored = self._matching(cursor)
            if not stored or stored.status != ExecutionStatus.ACTIVE:
                return None
            stored.claimed_until = claimed_until
            stored.version += 1
            stored.updated_at = utcnow()
            return stored.copy()

    async def advance(
        self,
        cursor: ExecutionCursor,
        next_step: int,
        next_step_at: datetime
    ) -> bool:
        async with self._lock:
            stored = self._matching(cursor)
            if not stored:
                return False
            stored.current_step = next_step
            stored.next_step_at = next_step_at
            stored.attempts = 0
            stored.claimed_until = None
            stored.version += 1
            stored.updated_at = utcnow()
            return True

    async def complete(self, cursor: ExecutionCursor, completed_at: datetime) -> bool:
        async with self._lock:
            stored = self._matching(cursor)
            if not stored or stored.status.is_terminal:
                return False
            stored.status = ExecutionStatus.COMPLETED
            stored.completed_at = completed_at
            stored.claimed_until = None
            stored.version += 1
            stored.updated_at = utcnow()
            return True

    async def record_failure(
        self,
        cursor: ExecutionCursor,
        attempts: int,
        dead_letter: bool = False
    ) -> bool:
        async with self._lock:
            stored = self._matching(cursor)
            if not stored:
                return False
            stored.attempts = attempts
            stored.claimed_until = None
            if dead_letter:
                stored.status = ExecutionStatus.FAILED
            stored.version += 1
            stored.updated_at = utcnow()
            return True

    async def set_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        expected_version: int
    ) -> Optional[ExecutionCursor]:
        async with self._lock:
            stored = self.executions.get(execution_id)
            if not stored or stored.version != expected_version:
                return None
            stored.status = status
            stored.claimed_until = None
            stored.version += 1
            stored.updated_at = utcnow()
            return stored.copy()

    async def append_log(self, log: StepLog) -> str:
        self.logs.append(log)
        return log.id

    async def list_logs(self, execution_id: str) -> List[StepLog]:
        return [log for log in self.logs if log.execution_id == execution_id]

    def _find_pair(self, workflow_id: str, subscriber_id: str) -> Optional[ExecutionCursor]:
        for cursor in self.executions.values():
            if cursor.workflow_id == workflow_id and cursor.subscriber_id == subscriber_id:
                return cursor
        return None

    def _matching(self, cursor: ExecutionCursor) -> Optional[ExecutionCursor]:
        """Stored cursor if it is still exactly the version the caller read"""
        stored = self.executions.get(cursor.id)
        if (
            stored is None
            or stored.version != cursor.version
            or stored.current_step != cursor.current_step
        ):
            return None
        return stored
