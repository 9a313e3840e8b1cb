"""
Workflow definition models
"""
from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Iterator, Union
from enum import Enum
from uuid import uuid4
from datetime import datetime, timedelta
import logging

from .execution import utcnow


logger = logging.getLogger(__name__)


class StepKind(Enum):
    """Step kinds"""
    EMAIL = "email"
    CONDITION = "condition"
    ACTION = "action"
    DELAY = "delay"


class DelayUnit(Enum):
    """Delay units"""
    MINUTES = "minutes"
    HOURS = "hours"
    DAYS = "days"
    WEEKS = "weeks"

    @classmethod
    def parse(cls, value: Optional[str]) -> "DelayUnit":
        """Unknown or empty units fall back to hours"""
        if isinstance(value, cls):
            return value
        try:
            return cls((value or "hours").lower())
        except ValueError:
            logger.warning(f"Unknown delay unit '{value}', falling back to hours")
            return cls.HOURS


# unit -> milliseconds
DELAY_UNIT_MS: Dict[DelayUnit, int] = {
    DelayUnit.MINUTES: 60 * 1000,
    DelayUnit.HOURS: 60 * 60 * 1000,
    DelayUnit.DAYS: 24 * 60 * 60 * 1000,
    DelayUnit.WEEKS: 7 * 24 * 60 * 60 * 1000,
}


@dataclass(frozen=True)
class Delay:
    """Wait before a step becomes due"""
    value: float = 0
    unit: DelayUnit = DelayUnit.HOURS

    def __post_init__(self):
        if self.value < 0:
            raise ValueError("Delay value must not be negative")

    @property
    def milliseconds(self) -> int:
        return int(self.value * DELAY_UNIT_MS[self.unit])

    def to_timedelta(self) -> timedelta:
        return timedelta(milliseconds=self.milliseconds)


def delay_of(step: Optional["Step"]) -> timedelta:
    """Delay before `step` is due; a missing step or delay is due immediately"""
    if step is None or step.delay is None:
        return timedelta(0)
    return step.delay.to_timedelta()


@dataclass(frozen=True)
class Step:
    """Common fields for every step kind"""
    order: int
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    delay: Optional[Delay] = None

    kind = None  # type: StepKind

    def __post_init__(self):
        if not isinstance(self.order, int) or self.order < 1:
            raise ValueError(f"Step order must be a positive integer, got {self.order!r}")

    @property
    def default_next(self) -> int:
        return self.order + 1


@dataclass(frozen=True)
class EmailStep(Step):
    """Send a personalized email"""
    subject: str = ""
    body: str = ""

    kind = StepKind.EMAIL


@dataclass(frozen=True)
class ConditionStep(Step):
    """Branch on a subscriber attribute"""
    condition_field: str = ""
    condition_operator: str = ""
    condition_value: Optional[str] = None
    true_next: Optional[int] = None
    false_next: Optional[int] = None

    kind = StepKind.CONDITION

    def __post_init__(self):
        super().__post_init__()
        if not self.condition_field or not self.condition_operator:
            raise ValueError(f"Condition step {self.order} requires a field and an operator")

    def next_for(self, result: bool) -> int:
        target = self.true_next if result else self.false_next
        return target or self.default_next


@dataclass(frozen=True)
class ActionStep(Step):
    """Apply a named side effect to the subscriber"""
    action_type: Optional[str] = None
    action_params: Dict[str, Any] = field(default_factory=dict)

    kind = StepKind.ACTION


@dataclass(frozen=True)
class DelayStep(Step):
    """Wait only; has no effect of its own"""

    kind = StepKind.DELAY


STEP_CLASSES = {
    StepKind.EMAIL: EmailStep,
    StepKind.CONDITION: ConditionStep,
    StepKind.ACTION: ActionStep,
    StepKind.DELAY: DelayStep,
}

AnyStep = Union[EmailStep, ConditionStep, ActionStep, DelayStep]


class WorkflowGraph:
    """Immutable, order-indexed set of steps for one workflow"""

    def __init__(self, steps: Optional[List[AnyStep]] = None):
        by_order: Dict[int, AnyStep] = {}
        for step in steps or []:
            if step.order in by_order:
                raise ValueError(f"Duplicate step order: {step.order}")
            by_order[step.order] = step
        self._steps = dict(sorted(by_order.items()))

    def step_at(self, order: Optional[int]) -> Optional[AnyStep]:
        """Step with the given order, or None"""
        if order is None:
            return None
        return self._steps.get(order)

    def default_next(self, order: int) -> int:
        return order + 1

    def first_step(self) -> Optional[AnyStep]:
        for step in self._steps.values():
            return step
        return None

    @property
    def orders(self) -> List[int]:
        return list(self._steps)

    @property
    def steps(self) -> List[AnyStep]:
        return list(self._steps.values())

    def validate(self) -> List[str]:
        """Report branch targets that do not resolve to a step"""
        errors = []
        for step in self._steps.values():
            if isinstance(step, ConditionStep):
                for label, target in (("true", step.true_next), ("false", step.false_next)):
                    if target is not None and target not in self._steps:
                        errors.append(
                            f"Condition step {step.order} {label} branch targets missing step {target}"
                        )
        return errors

    def __len__(self) -> int:
        return len(self._steps)

    def __iter__(self) -> Iterator[AnyStep]:
        return iter(self._steps.values())

    def __bool__(self) -> bool:
        return bool(self._steps)


@dataclass
class Workflow:
    """Workflow definition"""
    id: str = field(default_factory=lambda: str(uuid4()))
    name: str = ""
    description: Optional[str] = None
    is_active: bool = True
    trigger_type: str = "manual"
    trigger_value: Optional[str] = None
    graph: WorkflowGraph = field(default_factory=WorkflowGraph)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def step_at(self, order: int) -> Optional[AnyStep]:
        return self.graph.step_at(order)
