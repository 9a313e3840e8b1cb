"""
Workflow action dispatch

Actions are the only way a workflow mutates a subscriber or reaches an
outside system. Each action type declares a JSON Schema for its params.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional

import httpx
from jsonschema import Draft7Validator

from ..models.execution import utcnow
from ..models.subscriber import Subscriber, SubscriberTask
from ..storage.repository import SubscriberRepository
from .email import EmailSender


logger = logging.getLogger(__name__)


ACTION_SCHEMAS: Dict[str, Dict[str, Any]] = {
    "add_tag": {
        "type": "object",
        "properties": {"tag_name": {"type": "string", "minLength": 1}},
        "required": ["tag_name"],
    },
    "remove_tag": {
        "type": "object",
        "properties": {"tag_name": {"type": "string", "minLength": 1}},
        "required": ["tag_name"],
    },
    "update_lead_score": {
        "type": "object",
        "properties": {
            "score_change": {
                "type": ["number", "string"],
                "pattern": r"^\s*[-+]?\d+(\.\d+)?\s*$",
            }
        },
        "required": ["score_change"],
    },
    "update_engagement": {
        "type": "object",
        "properties": {"engagement_level": {"type": "string", "minLength": 1}},
        "required": ["engagement_level"],
    },
    "create_task": {
        "type": "object",
        "properties": {
            "title": {"type": "string", "minLength": 1},
            "description": {"type": ["string", "null"]},
            "priority": {"enum": ["low", "medium", "high", "urgent"]},
            "due_days": {"type": ["number", "null"], "minimum": 0},
        },
        "required": ["title"],
    },
    "send_notification": {
        "type": "object",
        "properties": {
            "title": {"type": "string", "minLength": 1},
            "message": {"type": "string"},
            "recipient": {"type": "string"},
        },
        "required": ["title"],
    },
    "send_webhook": {
        "type": "object",
        "properties": {
            "url": {"type": "string", "pattern": "^https?://"},
            "method": {"enum": ["GET", "POST", "PUT", "PATCH", "DELETE",
                                "get", "post", "put", "patch", "delete"]},
            "headers": {"type": "object", "additionalProperties": {"type": "string"}},
            "payload": {},
        },
        "required": ["url"],
    },
}


@dataclass
class DispatchResult:
    """Result of one action execution"""
    success: bool
    action_type: Optional[str]
    error: Optional[str] = None
    output: Dict[str, Any] = field(default_factory=dict)


class ActionDispatcher(ABC):
    """Action execution contract"""

    @abstractmethod
    async def execute(
        self,
        subscriber_id: str,
        action_type: Optional[str],
        params: Dict[str, Any],
        execution_id: Optional[str] = None
    ) -> DispatchResult:
        """Run one action; failures are reported, not raised"""
        ...


class SubscriberActionDispatcher(ActionDispatcher):
    """Built-in actions over the subscriber store, email and HTTP"""

    def __init__(
        self,
        subscribers: SubscriberRepository,
        email_sender: Optional[EmailSender] = None,
        from_address: str = "noreply@localhost",
        notification_address: Optional[str] = None,
        webhook_timeout: float = 15.0,
        http_client: Optional[httpx.AsyncClient] = None
    ):
        self.subscribers = subscribers
        self.email_sender = email_sender
        self.from_address = from_address
        self.notification_address = notification_address
        self.webhook_timeout = webhook_timeout
        self.http_client = http_client
        self.validators = {name: Draft7Validator(schema) for name, schema in ACTION_SCHEMAS.items()}
        self.handlers = {
            "add_tag": self._add_tag,
            "remove_tag": self._remove_tag,
            "update_lead_score": self._update_lead_score,
            "update_engagement": self._update_engagement,
            "create_task": self._create_task,
            "send_notification": self._send_notification,
            "send_webhook": self._send_webhook,
        }

    def validate(self, action_type: str, params: Dict[str, Any]) -> List[str]:
        """Schema errors for an action's params"""
        validator = self.validators.get(action_type)
        if validator is None:
            return [f"Unknown action type: {action_type}"]
        errors = []
        for error in validator.iter_errors(params):
            path = ".".join(str(p) for p in error.absolute_path) if error.absolute_path else "root"
            errors.append(f"{path}: {error.message}")
        return errors

    async def execute(
        self,
        subscriber_id: str,
        action_type: Optional[str],
        params: Dict[str, Any],
        execution_id: Optional[str] = None
    ) -> DispatchResult:
        if not action_type:
            return DispatchResult(success=True, action_type=None, output={"skipped": True})

        params = params or {}
        errors = self.validate(action_type, params)
        if errors:
            return DispatchResult(success=False, action_type=action_type, error="; ".join(errors))

        subscriber = await self.subscribers.get(subscriber_id)
        if subscriber is None:
            return DispatchResult(
                success=False,
                action_type=action_type,
                error=f"Subscriber not found: {subscriber_id}"
            )

        try:
            output = await self.handlers[action_type](subscriber, params, execution_id)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Action {action_type} failed for {subscriber.email}: {e}")
            return DispatchResult(success=False, action_type=action_type, error=str(e))

        logger.info(f"Action {action_type} executed for {subscriber.email}")
        return DispatchResult(success=True, action_type=action_type, output=output or {})

    async def _add_tag(self, subscriber: Subscriber, params, execution_id):
        tag = params["tag_name"].strip()
        if not subscriber.has_tag(tag):
            subscriber.tags = list(subscriber.tags) + [tag]
            await self.subscribers.update(subscriber)
        return {"tags": list(subscriber.tags)}

    async def _remove_tag(self, subscriber: Subscriber, params, execution_id):
        wanted = params["tag_name"].strip().lower()
        remaining = [t for t in subscriber.tags if t.lower() != wanted]
        if len(remaining) != len(subscriber.tags):
            subscriber.tags = remaining
            await self.subscribers.update(subscriber)
        return {"tags": list(subscriber.tags)}

    async def _update_lead_score(self, subscriber: Subscriber, params, execution_id):
        change = int(float(params["score_change"]))
        subscriber.lead_score = min(100, max(0, (subscriber.lead_score or 0) + change))
        await self.subscribers.update(subscriber)
        return {"lead_score": subscriber.lead_score}

    async def _update_engagement(self, subscriber: Subscriber, params, execution_id):
        subscriber.engagement_level = params["engagement_level"]
        await self.subscribers.update(subscriber)
        return {"engagement_level": subscriber.engagement_level}

    async def _create_task(self, subscriber: Subscriber, params, execution_id):
        due_days = params.get("due_days")
        task = SubscriberTask(
            subscriber_id=subscriber.id,
            title=params["title"],
            description=params.get("description"),
            priority=params.get("priority") or "medium",
            due_at=utcnow() + timedelta(days=due_days) if due_days is not None else None,
            execution_id=execution_id
        )
        task_id = await self.subscribers.create_task(task)
        return {"task_id": task_id}

    async def _send_notification(self, subscriber: Subscriber, params, execution_id):
        recipient = params.get("recipient") or self.notification_address
        if not self.email_sender or not recipient:
            raise ValueError("No notification address or email transport configured")
        message = params.get("message") or ""
        html = (
            f"<h2>{params['title']}</h2>"
            f"<p>{message}</p>"
            f"<p>Subscriber: {subscriber.email}</p>"
        )
        result = await self.email_sender.send(self.from_address, recipient, params["title"], html)
        if not result.success:
            raise ValueError(result.error or "Notification email failed")
        return {"recipient": recipient}

    async def _send_webhook(self, subscriber: Subscriber, params, execution_id):
        method = (params.get("method") or "POST").upper()
        headers = {
            "Content-Type": "application/json",
            "X-Workflow-Event": "workflow.action",
            **(params.get("headers") or {}),
        }
        payload = params.get("payload")
        if payload is None:
            payload = {
                "subscriber_id": subscriber.id,
                "email": subscriber.email,
                "execution_id": execution_id,
                "timestamp": utcnow().isoformat(),
            }

        request_kwargs = {"headers": headers}
        if method != "GET":
            request_kwargs["json"] = payload

        if self.http_client is not None:
            response = await self.http_client.request(method, params["url"], **request_kwargs)
        else:
            async with httpx.AsyncClient(timeout=self.webhook_timeout) as client:
                response = await client.request(method, params["url"], **request_kwargs)
        response.raise_for_status()
        return {"status_code": response.status_code}
