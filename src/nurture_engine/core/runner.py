"""
Batch runner: one polling pass over every due cursor
"""
import logging
from datetime import datetime
from typing import Dict, Optional

from ..models.workflow import Workflow
from ..models.execution import AdvanceOutcome, ExecutionCursor, RunSummary, utcnow
from ..exceptions import StoreError, NotFoundError
from ..storage.repository import WorkflowRepository, SubscriberRepository, ExecutionRepository
from .processor import StepProcessor
from .scheduler import DueQueue


logger = logging.getLogger(__name__)


class BatchRunner:
    """Select due cursors and advance each one, isolating per-cursor failures.

    Holds no state between passes; safe to invoke from several workers at
    once since StepProcessor claims each cursor before acting on it.
    """

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        subscriber_repository: SubscriberRepository,
        execution_repository: ExecutionRepository,
        processor: StepProcessor,
        batch_size: int = 100
    ):
        self.workflows = workflow_repository
        self.subscribers = subscriber_repository
        self.executions = execution_repository
        self.processor = processor
        self.batch_size = batch_size

    async def run_due(self, now: Optional[datetime] = None) -> RunSummary:
        """
        Advance every due cursor once

        StoreError aborts the pass and propagates; anything else is counted
        against the single cursor it happened on.
        """
        now = now or utcnow()
        summary = RunSummary()

        queue = DueQueue(await self.executions.list_due(now, limit=self.batch_size))
        logger.info(f"Processing {len(queue)} due executions")

        # graphs are loaded once per pass
        workflows: Dict[str, Optional[Workflow]] = {}

        for cursor in queue.pop_due(now):
            try:
                outcome = await self._process(cursor, workflows, now)
            except StoreError:
                raise
            except Exception as e:
                logger.error(f"Error processing execution {cursor.id}: {e}", exc_info=True)
                await self.processor.release_failed(cursor, str(e))
                summary.errors += 1
                continue

            if outcome in (AdvanceOutcome.ADVANCED, AdvanceOutcome.COMPLETED):
                summary.processed += 1
            elif outcome == AdvanceOutcome.CONFLICT:
                summary.skipped += 1
            else:
                summary.errors += 1

        logger.info(f"Processed {summary.processed} executions, {summary.errors} errors")
        return summary

    async def _process(
        self,
        cursor: ExecutionCursor,
        workflows: Dict[str, Optional[Workflow]],
        now: datetime
    ) -> AdvanceOutcome:
        if cursor.workflow_id not in workflows:
            workflows[cursor.workflow_id] = await self.workflows.get(cursor.workflow_id)
        workflow = workflows[cursor.workflow_id]
        if workflow is None:
            raise NotFoundError("workflow", cursor.workflow_id)

        subscriber = await self.subscribers.get(cursor.subscriber_id)
        if subscriber is None:
            raise NotFoundError("subscriber", cursor.subscriber_id)

        result = await self.processor.advance(cursor, workflow.graph, subscriber, now)
        return result.outcome
