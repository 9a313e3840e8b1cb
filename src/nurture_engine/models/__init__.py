"""Workflow, execution and subscriber models"""

from .execution import (
    ExecutionCursor, ExecutionStatus, StepLog, StepLogStatus,
    AdvanceOutcome, AdvanceResult, TriggerResult, RunSummary,
    TERMINAL_STATUSES, utcnow
)
from .workflow import (
    Workflow, WorkflowGraph, Step, EmailStep, ConditionStep, ActionStep,
    DelayStep, StepKind, Delay, DelayUnit, DELAY_UNIT_MS, STEP_CLASSES, delay_of
)
from .subscriber import Subscriber, SubscriberTask

__all__ = [
    "Workflow",
    "WorkflowGraph",
    "Step",
    "EmailStep",
    "ConditionStep",
    "ActionStep",
    "DelayStep",
    "StepKind",
    "Delay",
    "DelayUnit",
    "DELAY_UNIT_MS",
    "STEP_CLASSES",
    "delay_of",
    "ExecutionCursor",
    "ExecutionStatus",
    "StepLog",
    "StepLogStatus",
    "AdvanceOutcome",
    "AdvanceResult",
    "TriggerResult",
    "RunSummary",
    "TERMINAL_STATUSES",
    "utcnow",
    "Subscriber",
    "SubscriberTask"
]
