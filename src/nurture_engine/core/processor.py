"""
Step processor: advances one execution cursor by one step
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional

from ..models.workflow import (
    WorkflowGraph, Step, StepKind, EmailStep, ConditionStep, ActionStep, delay_of
)
from ..models.execution import (
    ExecutionCursor, ExecutionStatus, StepLog, StepLogStatus,
    AdvanceOutcome, AdvanceResult, utcnow
)
from ..models.subscriber import Subscriber
from ..exceptions import ExternalServiceError, StoreError
from ..storage.repository import ExecutionRepository
from ..integrations.email import EmailSender
from ..integrations.actions import ActionDispatcher
from .conditions import ConditionEvaluator
from .personalization import personalize, personalize_params


logger = logging.getLogger(__name__)


DEFAULT_MAX_STEP_ATTEMPTS = 5
DEFAULT_CLAIM_LEASE = timedelta(minutes=5)


@dataclass
class StepOutcome:
    """What running a step's effect produced"""
    success: bool
    next_order: Optional[int] = None
    error: Optional[str] = None


class StepExecutor:
    """Step executor base class"""

    async def execute(
        self,
        step: Step,
        cursor: ExecutionCursor,
        subscriber: Subscriber,
        now: datetime
    ) -> StepOutcome:
        raise NotImplementedError


class EmailStepExecutor(StepExecutor):
    """Personalize and send one email"""

    def __init__(self, email_sender: EmailSender, from_address: str):
        self.email_sender = email_sender
        self.from_address = from_address

    async def execute(self, step: EmailStep, cursor, subscriber, now) -> StepOutcome:
        subject = personalize(step.subject, subscriber, now)
        html = personalize(step.body, subscriber, now)

        result = await self.email_sender.send(self.from_address, subscriber.email, subject, html)
        if not result.success:
            raise ExternalServiceError("email", result.error or "send failed")

        logger.info(f"Email sent to {subscriber.email}: {subject}")
        return StepOutcome(success=True)


class ConditionStepExecutor(StepExecutor):
    """Pick the branch; never fails"""

    def __init__(self, evaluator: ConditionEvaluator):
        self.evaluator = evaluator

    async def execute(self, step: ConditionStep, cursor, subscriber, now) -> StepOutcome:
        result = self.evaluator.evaluate(
            subscriber,
            step.condition_field,
            step.condition_operator,
            step.condition_value
        )
        next_order = step.next_for(result)
        logger.info(
            f"Condition {step.condition_field} {step.condition_operator} "
            f"{step.condition_value} = {result} for {subscriber.email}, next step {next_order}"
        )
        return StepOutcome(success=True, next_order=next_order)


class ActionStepExecutor(StepExecutor):
    """Run a named action against the subscriber"""

    def __init__(self, action_dispatcher: ActionDispatcher):
        self.action_dispatcher = action_dispatcher

    async def execute(self, step: ActionStep, cursor, subscriber, now) -> StepOutcome:
        params = personalize_params(dict(step.action_params or {}), subscriber, now)
        result = await self.action_dispatcher.execute(
            subscriber.id,
            step.action_type,
            params,
            execution_id=cursor.id
        )
        if not result.success:
            raise ExternalServiceError(f"action {step.action_type}", result.error or "action failed")
        return StepOutcome(success=True)


class DelayStepExecutor(StepExecutor):
    """Wait only"""

    async def execute(self, step, cursor, subscriber, now) -> StepOutcome:
        return StepOutcome(success=True)


class StepProcessor:
    """Claim, run and persist a single step of one cursor.

    The cursor is claimed with a conditional write before any side effect
    runs, so of several workers racing for the same due cursor only one
    sends. Every later write is conditional on the claimed version.
    """

    def __init__(
        self,
        execution_repository: ExecutionRepository,
        email_sender: EmailSender,
        action_dispatcher: ActionDispatcher,
        evaluator: ConditionEvaluator = None,
        from_address: str = "noreply@localhost",
        max_step_attempts: int = DEFAULT_MAX_STEP_ATTEMPTS,
        claim_lease: timedelta = DEFAULT_CLAIM_LEASE
    ):
        self.executions = execution_repository
        self.max_step_attempts = max_step_attempts
        self.claim_lease = claim_lease
        self.executors: Dict[StepKind, StepExecutor] = {
            StepKind.EMAIL: EmailStepExecutor(email_sender, from_address),
            StepKind.CONDITION: ConditionStepExecutor(evaluator or ConditionEvaluator()),
            StepKind.ACTION: ActionStepExecutor(action_dispatcher),
            StepKind.DELAY: DelayStepExecutor(),
        }

    def register_executor(self, kind: StepKind, executor: StepExecutor):
        self.executors[kind] = executor

    async def advance(
        self,
        cursor: ExecutionCursor,
        graph: WorkflowGraph,
        subscriber: Subscriber,
        now: Optional[datetime] = None
    ) -> AdvanceResult:
        now = now or utcnow()

        if cursor.status != ExecutionStatus.ACTIVE:
            return AdvanceResult(
                execution_id=cursor.id,
                outcome=AdvanceOutcome.CONFLICT,
                step_order=cursor.current_step,
                error=f"Execution is {cursor.status.value}"
            )

        claimed = await self.executions.claim(cursor, now + self.claim_lease)
        if claimed is None:
            logger.info(f"Execution {cursor.id} was claimed by another worker, skipping")
            return AdvanceResult(
                execution_id=cursor.id,
                outcome=AdvanceOutcome.CONFLICT,
                step_order=cursor.current_step
            )

        step = graph.step_at(claimed.current_step)
        if step is None:
            return await self._complete(claimed, now, claimed.current_step)

        try:
            outcome = await self.executors[step.kind].execute(step, claimed, subscriber, now)
        except ExternalServiceError as e:
            return await self._record_failure(claimed, step, e.message)
        except StoreError:
            raise
        except Exception as e:
            logger.error(f"Execution {claimed.id} step {step.order} raised: {e}", exc_info=True)
            return await self._record_failure(claimed, step, str(e))

        await self.executions.append_log(StepLog(
            execution_id=claimed.id,
            step_id=step.id,
            step_order=step.order,
            status=StepLogStatus.SENT
        ))

        next_order = outcome.next_order or step.default_next
        next_step = graph.step_at(next_order)
        if next_step is None:
            return await self._complete(claimed, now, step.order)

        # a due time already pushed further out is never pulled back
        next_step_at = now + delay_of(next_step)
        if claimed.next_step_at is not None and claimed.next_step_at > next_step_at:
            next_step_at = claimed.next_step_at

        if not await self.executions.advance(claimed, next_order, next_step_at):
            logger.warning(f"Execution {claimed.id} changed while step {step.order} ran")
            return AdvanceResult(
                execution_id=claimed.id,
                outcome=AdvanceOutcome.CONFLICT,
                step_order=step.order
            )

        logger.info(f"Execution {claimed.id} advanced from step {step.order} to {next_order}")
        return AdvanceResult(
            execution_id=claimed.id,
            outcome=AdvanceOutcome.ADVANCED,
            step_order=step.order,
            next_step=next_order,
            next_step_at=next_step_at
        )

    async def release_failed(
        self,
        cursor: ExecutionCursor,
        error: str,
        step: Optional[Step] = None
    ) -> AdvanceResult:
        """Record a failure that happened outside a step's effect"""
        return await self._record_failure(cursor, step, error)

    async def _complete(self, cursor: ExecutionCursor, now: datetime, step_order: int) -> AdvanceResult:
        if not await self.executions.complete(cursor, now):
            return AdvanceResult(
                execution_id=cursor.id,
                outcome=AdvanceOutcome.CONFLICT,
                step_order=step_order
            )
        logger.info(f"Execution {cursor.id} completed")
        return AdvanceResult(
            execution_id=cursor.id,
            outcome=AdvanceOutcome.COMPLETED,
            step_order=step_order
        )

    async def _record_failure(
        self,
        cursor: ExecutionCursor,
        step: Optional[Step],
        error: str
    ) -> AdvanceResult:
        attempts = cursor.attempts + 1
        dead_letter = 0 < self.max_step_attempts <= attempts

        await self.executions.append_log(StepLog(
            execution_id=cursor.id,
            step_id=step.id if step else None,
            step_order=step.order if step else cursor.current_step,
            status=StepLogStatus.FAILED,
            error_message=error
        ))

        if not await self.executions.record_failure(cursor, attempts, dead_letter=dead_letter):
            return AdvanceResult(
                execution_id=cursor.id,
                outcome=AdvanceOutcome.CONFLICT,
                step_order=cursor.current_step,
                error=error
            )

        if dead_letter:
            logger.error(
                f"Execution {cursor.id} dead-lettered at step {cursor.current_step} "
                f"after {attempts} attempts: {error}"
            )
            outcome = AdvanceOutcome.DEAD_LETTERED
        else:
            logger.warning(
                f"Execution {cursor.id} step {cursor.current_step} failed "
                f"(attempt {attempts}): {error}"
            )
            outcome = AdvanceOutcome.FAILED

        return AdvanceResult(
            execution_id=cursor.id,
            outcome=outcome,
            step_order=cursor.current_step,
            next_step=cursor.current_step,
            next_step_at=cursor.next_step_at,
            error=error
        )
