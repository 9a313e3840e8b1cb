"""
Nurture Engine - marketing automation workflow runtime
"""

__version__ = "0.1.0"

from .core.engine import NurtureEngine
from .core.trigger import TriggerService
from .core.runner import BatchRunner
from .core.processor import StepProcessor
from .core.parser import WorkflowParser
from .models.workflow import Workflow, WorkflowGraph
from .models.execution import ExecutionCursor, StepLog

__all__ = [
    "NurtureEngine",
    "TriggerService",
    "BatchRunner",
    "StepProcessor",
    "WorkflowParser",
    "Workflow",
    "WorkflowGraph",
    "ExecutionCursor",
    "StepLog"
]
