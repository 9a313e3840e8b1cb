"""Storage and repository interfaces"""

from .repository import (
    WorkflowRepository,
    SubscriberRepository,
    ExecutionRepository,
    InMemoryWorkflowRepository,
    InMemorySubscriberRepository,
    InMemoryExecutionRepository
)

__all__ = [
    "WorkflowRepository",
    "SubscriberRepository",
    "ExecutionRepository",
    "InMemoryWorkflowRepository",
    "InMemorySubscriberRepository",
    "InMemoryExecutionRepository"
]
