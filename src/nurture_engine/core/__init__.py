"""Core workflow engine components"""

from .conditions import ConditionEvaluator, ConditionOperator
from .parser import WorkflowParser
from .processor import StepProcessor, StepExecutor
from .trigger import TriggerService
from .runner import BatchRunner
from .scheduler import DueQueue, PollingScheduler
from .engine import NurtureEngine, build_email_sender

__all__ = [
    "ConditionEvaluator",
    "ConditionOperator",
    "WorkflowParser",
    "StepProcessor",
    "StepExecutor",
    "TriggerService",
    "BatchRunner",
    "DueQueue",
    "PollingScheduler",
    "NurtureEngine",
    "build_email_sender"
]
