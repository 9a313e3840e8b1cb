"""
Engine facade: wires repositories, integrations and the core services
"""
import logging
from typing import Any, Dict, List, Optional, Union

from ..config import EngineSettings
from ..models.workflow import Workflow
from ..models.execution import (
    ExecutionCursor, ExecutionStatus, StepLog, TriggerResult, RunSummary
)
from ..exceptions import NotFoundError, InvalidStatusTransition, ConcurrencyConflict
from ..storage.repository import (
    WorkflowRepository, SubscriberRepository, ExecutionRepository,
    InMemoryWorkflowRepository, InMemorySubscriberRepository, InMemoryExecutionRepository
)
from ..integrations.email import EmailSender, SMTPEmailSender, DryRunEmailSender
from ..integrations.actions import ActionDispatcher, SubscriberActionDispatcher
from .parser import WorkflowParser
from .processor import StepProcessor
from .trigger import TriggerService
from .runner import BatchRunner
from .scheduler import PollingScheduler


logger = logging.getLogger(__name__)


# status -> statuses an external actor may move it to
ALLOWED_TRANSITIONS = {
    ExecutionStatus.ACTIVE: {ExecutionStatus.PAUSED, ExecutionStatus.CANCELLED},
    ExecutionStatus.PAUSED: {ExecutionStatus.ACTIVE, ExecutionStatus.CANCELLED},
}

STATUS_CHANGE_RETRIES = 3


def build_email_sender(settings: EngineSettings) -> EmailSender:
    """SMTP when a host is configured, otherwise a dry-run sender"""
    if settings.smtp_host:
        return SMTPEmailSender(
            host=settings.smtp_host,
            port=settings.smtp_port,
            user=settings.smtp_user,
            password=settings.smtp_password,
            use_tls=settings.smtp_use_tls
        )
    logger.warning("No SMTP host configured, emails will only be logged")
    return DryRunEmailSender()


class NurtureEngine:
    """Workflow execution engine"""

    def __init__(
        self,
        workflow_repository: WorkflowRepository = None,
        subscriber_repository: SubscriberRepository = None,
        execution_repository: ExecutionRepository = None,
        email_sender: EmailSender = None,
        action_dispatcher: ActionDispatcher = None,
        settings: EngineSettings = None
    ):
        self.settings = settings or EngineSettings()
        self.workflow_repository = workflow_repository or InMemoryWorkflowRepository()
        self.subscriber_repository = subscriber_repository or InMemorySubscriberRepository()
        self.execution_repository = execution_repository or InMemoryExecutionRepository()
        self.email_sender = email_sender or build_email_sender(self.settings)
        self.action_dispatcher = action_dispatcher or SubscriberActionDispatcher(
            self.subscriber_repository,
            email_sender=self.email_sender,
            from_address=self.settings.email_sender,
            notification_address=self.settings.notification_email,
            webhook_timeout=self.settings.webhook_timeout_seconds
        )

        self.parser = WorkflowParser()
        self.processor = StepProcessor(
            self.execution_repository,
            self.email_sender,
            self.action_dispatcher,
            from_address=self.settings.email_sender,
            max_step_attempts=self.settings.max_step_attempts,
            claim_lease=self.settings.claim_lease
        )
        self.trigger_service = TriggerService(
            self.workflow_repository,
            self.subscriber_repository,
            self.execution_repository
        )
        self.runner = BatchRunner(
            self.workflow_repository,
            self.subscriber_repository,
            self.execution_repository,
            self.processor,
            batch_size=self.settings.poll_batch_size
        )
        self.scheduler = PollingScheduler(self.runner, interval=self.settings.poll_interval_seconds)

    async def create_workflow(self, workflow_def: Union[str, Dict[str, Any], Workflow]) -> str:
        """Parse (if needed) and store a workflow definition"""
        if isinstance(workflow_def, Workflow):
            workflow = workflow_def
        else:
            workflow = self.parser.parse(workflow_def)
        workflow_id = await self.workflow_repository.save(workflow)
        logger.info(f"Saved workflow {workflow.name} ({workflow_id}) with {len(workflow.graph)} steps")
        return workflow_id

    async def trigger(self, **kwargs) -> TriggerResult:
        return await self.trigger_service.trigger(**kwargs)

    async def run_due(self) -> RunSummary:
        return await self.runner.run_due()

    async def get_execution(self, execution_id: str) -> ExecutionCursor:
        cursor = await self.execution_repository.get(execution_id)
        if cursor is None:
            raise NotFoundError("execution", execution_id)
        return cursor

    async def get_execution_logs(self, execution_id: str) -> List[StepLog]:
        await self.get_execution(execution_id)
        return await self.execution_repository.list_logs(execution_id)

    async def pause_execution(self, execution_id: str) -> ExecutionCursor:
        return await self._change_status(execution_id, ExecutionStatus.PAUSED)

    async def resume_execution(self, execution_id: str) -> ExecutionCursor:
        return await self._change_status(execution_id, ExecutionStatus.ACTIVE)

    async def cancel_execution(self, execution_id: str) -> ExecutionCursor:
        return await self._change_status(execution_id, ExecutionStatus.CANCELLED)

    async def _change_status(self, execution_id: str, target: ExecutionStatus) -> ExecutionCursor:
        """External status change, retried when a poller writes in between"""
        for _ in range(STATUS_CHANGE_RETRIES):
            cursor = await self.get_execution(execution_id)
            if target not in ALLOWED_TRANSITIONS.get(cursor.status, set()):
                raise InvalidStatusTransition(cursor.status.value, target.value)

            updated = await self.execution_repository.set_status(execution_id, target, cursor.version)
            if updated is not None:
                logger.info(f"Execution {execution_id} {cursor.status.value} -> {target.value}")
                return updated

        raise ConcurrencyConflict(execution_id)

    async def start(self):
        if self.settings.enable_scheduler:
            await self.scheduler.start()

    async def stop(self):
        await self.scheduler.stop()
