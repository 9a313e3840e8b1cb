"""
Enrollment of subscribers into workflows
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from ..models.workflow import Workflow, delay_of
from ..models.execution import TriggerResult, utcnow
from ..models.subscriber import Subscriber
from ..exceptions import ValidationError, NotFoundError, InactiveWorkflowError, StoreError
from ..storage.repository import WorkflowRepository, SubscriberRepository, ExecutionRepository


logger = logging.getLogger(__name__)


class TriggerService:
    """Create or reset the single cursor of a (workflow, subscriber) pair"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository,
        subscriber_repository: SubscriberRepository,
        execution_repository: ExecutionRepository,
        new_subscriber_source: str = "webhook"
    ):
        self.workflows = workflow_repository
        self.subscribers = subscriber_repository
        self.executions = execution_repository
        self.new_subscriber_source = new_subscriber_source

    async def trigger(
        self,
        workflow_id: Optional[str] = None,
        workflow_name: Optional[str] = None,
        subscriber_id: Optional[str] = None,
        subscriber_email: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        now: Optional[datetime] = None
    ) -> TriggerResult:
        """
        Enroll a subscriber

        Args:
            workflow_id / workflow_name: workflow reference, id wins
            subscriber_id / subscriber_email: subscriber reference, id wins;
                an unknown email creates the subscriber
            metadata: stored on the cursor, replacing any previous value
            now: enrollment time, defaults to the current UTC time

        Returns:
            TriggerResult
        """
        if not workflow_id and not workflow_name:
            raise ValidationError("Either workflow_id or workflow_name is required")
        if not subscriber_id and not subscriber_email:
            raise ValidationError("Either subscriber_id or subscriber_email is required")

        now = now or utcnow()
        workflow = await self._resolve_workflow(workflow_id, workflow_name)
        subscriber = await self._resolve_subscriber(subscriber_id, subscriber_email)

        next_step_at = now + delay_of(workflow.step_at(1))
        existing = await self.executions.get_for_pair(workflow.id, subscriber.id)

        cursor = await self.executions.upsert_enrollment(
            workflow.id,
            subscriber.id,
            next_step_at=next_step_at,
            started_at=now,
            metadata=metadata
        )

        created = existing is None
        logger.info(
            f"Subscriber {subscriber.email} {'enrolled in' if created else 're-triggered'} "
            f"workflow {workflow.name} (execution {cursor.id})"
        )
        return TriggerResult(
            execution_id=cursor.id,
            workflow_id=workflow.id,
            subscriber_id=subscriber.id,
            next_step_at=cursor.next_step_at,
            created=created
        )

    async def _resolve_workflow(self, workflow_id: Optional[str], workflow_name: Optional[str]) -> Workflow:
        if workflow_id:
            workflow = await self.workflows.get(workflow_id)
        else:
            workflow = await self.workflows.get_by_name(workflow_name)

        if workflow is None:
            raise NotFoundError("workflow", workflow_id or workflow_name)
        if not workflow.is_active:
            raise InactiveWorkflowError(workflow.id)
        if not workflow.graph:
            raise ValidationError("Workflow has no steps configured", {"workflow_id": workflow.id})
        return workflow

    async def _resolve_subscriber(self, subscriber_id: Optional[str], email: Optional[str]) -> Subscriber:
        if subscriber_id:
            subscriber = await self.subscribers.get(subscriber_id)
            if subscriber is None:
                raise NotFoundError("subscriber", subscriber_id)
            return subscriber

        email = email.strip().lower()
        if "@" not in email:
            raise ValidationError(f"Invalid subscriber email: {email}")

        subscriber = await self.subscribers.get_by_email(email)
        if subscriber is not None:
            return subscriber

        subscriber = await self.subscribers.create(Subscriber(
            email=email,
            subscribed=True,
            source=self.new_subscriber_source
        ))
        if subscriber is None:
            raise StoreError("Failed to create subscriber")
        logger.info(f"Created subscriber {email} from trigger")
        return subscriber
