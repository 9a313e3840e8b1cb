"""
Workflow execution models
"""
from dataclasses import dataclass, field, replace
from typing import Dict, Any, Optional
from enum import Enum
from datetime import datetime, timezone
from uuid import uuid4


def utcnow() -> datetime:
    """Naive UTC timestamp, the representation every store uses"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ExecutionStatus(Enum):
    """Cursor status"""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({
    ExecutionStatus.COMPLETED,
    ExecutionStatus.CANCELLED,
    ExecutionStatus.FAILED,
})


class StepLogStatus(Enum):
    """Step log status"""
    SENT = "sent"
    FAILED = "failed"


class AdvanceOutcome(Enum):
    """What a single advance attempt did to a cursor"""
    ADVANCED = "advanced"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTERED = "dead_lettered"
    CONFLICT = "conflict"


@dataclass
class ExecutionCursor:
    """Durable pointer of one subscriber through one workflow"""
    workflow_id: str
    subscriber_id: str
    id: str = field(default_factory=lambda: str(uuid4()))
    current_step: int = 1
    status: ExecutionStatus = ExecutionStatus.ACTIVE
    next_step_at: Optional[datetime] = None
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    version: int = 0
    claimed_until: Optional[datetime] = None
    updated_at: datetime = field(default_factory=utcnow)

    def is_due(self, now: datetime) -> bool:
        """Eligible for advancement at `now`"""
        if self.status != ExecutionStatus.ACTIVE:
            return False
        if self.next_step_at is not None and self.next_step_at > now:
            return False
        if self.claimed_until is not None and self.claimed_until > now:
            return False
        return True

    def is_terminal_state(self) -> bool:
        return self.status.is_terminal

    def copy(self, **changes) -> "ExecutionCursor":
        changes.setdefault("metadata", dict(self.metadata))
        return replace(self, **changes)


@dataclass
class StepLog:
    """Append-only record of one processing attempt"""
    execution_id: str
    status: StepLogStatus
    step_id: Optional[str] = None
    step_order: Optional[int] = None
    error_message: Optional[str] = None
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "execution_id": self.execution_id,
            "step_id": self.step_id,
            "step_order": self.step_order,
            "status": self.status.value,
            "error_message": self.error_message,
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class AdvanceResult:
    """Result of StepProcessor.advance"""
    execution_id: str
    outcome: AdvanceOutcome
    step_order: Optional[int] = None
    next_step: Optional[int] = None
    next_step_at: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome in (AdvanceOutcome.ADVANCED, AdvanceOutcome.COMPLETED)


@dataclass
class TriggerResult:
    """Result of an enrollment"""
    execution_id: str
    workflow_id: str
    subscriber_id: str
    next_step_at: datetime
    created: bool = True


@dataclass
class RunSummary:
    """Aggregate counts of one poller pass"""
    processed: int = 0
    errors: int = 0
    skipped: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "processed": self.processed,
            "errors": self.errors,
            "skipped": self.skipped,
        }
