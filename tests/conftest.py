"""
Shared pytest fixtures
"""
from datetime import datetime

import pytest

from nurture_engine.config import EngineSettings
from nurture_engine.core.engine import NurtureEngine
from nurture_engine.integrations.email import DryRunEmailSender
from nurture_engine.models.subscriber import Subscriber
from nurture_engine.storage.repository import (
    InMemoryWorkflowRepository,
    InMemorySubscriberRepository,
    InMemoryExecutionRepository
)


NOW = datetime(2024, 3, 1, 9, 0, 0)


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def email_sender() -> DryRunEmailSender:
    return DryRunEmailSender()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        database_url="sqlite+aiosqlite:///:memory:",
        email_sender="news@example.com",
        notification_email="sales@example.com",
        max_step_attempts=3
    )


@pytest.fixture
def engine(settings, email_sender) -> NurtureEngine:
    """Engine over in-memory stores and a dry-run email sender"""
    return NurtureEngine(
        workflow_repository=InMemoryWorkflowRepository(),
        subscriber_repository=InMemorySubscriberRepository(),
        execution_repository=InMemoryExecutionRepository(),
        email_sender=email_sender,
        settings=settings
    )


@pytest.fixture
def subscriber() -> Subscriber:
    return Subscriber(
        email="jane@example.com",
        name="Jane",
        lead_score=40,
        engagement_level="warm",
        total_opens=3,
        total_clicks=1,
        tags=["Newsletter", "vip"],
        custom_fields={"company": "Acme", "plan": "pro"}
    )


@pytest.fixture
def scenario_workflow() -> dict:
    """Email, two day delay, then a branch on opens that skips to step 8"""
    return {
        "name": "Onboarding",
        "steps": [
            {
                "order": 1,
                "type": "email",
                "subject": "Welcome {{name}}",
                "body": "<p>Hello {{name}} from {{company}}</p>"
            },
            {
                "order": 2,
                "type": "delay",
                "delay": {"value": 2, "unit": "days"}
            },
            {
                "order": 3,
                "type": "condition",
                "field": "total_opens",
                "operator": "greater_than",
                "value": "1",
                "true_next": 4,
                "false_next": 8
            },
            {
                "order": 4,
                "type": "action",
                "action_type": "add_tag",
                "params": {"tag_name": "Engaged"}
            },
            {
                "order": 8,
                "type": "email",
                "subject": "Still there?",
                "body": "<p>We miss you</p>"
            }
        ]
    }


@pytest.fixture
def flat_workflow() -> dict:
    """Same shape as stored rows: flat step columns"""
    return {
        "name": "Re-engagement",
        "description": "Win back quiet subscribers",
        "trigger_type": "tag_added",
        "trigger_value": "inactive",
        "steps": [
            {
                "step_order": 1,
                "step_type": "email",
                "subject": "We miss you, {{name}}",
                "body": "<p>Come back</p>",
                "delay_value": 0,
                "delay_unit": "hours"
            },
            {
                "step_order": 2,
                "step_type": "condition",
                "condition_field": "has_tag",
                "condition_operator": "equals",
                "condition_value": "vip",
                "true_next_step": 3,
                "false_next_step": 4,
                "delay_value": 3,
                "delay_unit": "days"
            },
            {
                "step_order": 3,
                "step_type": "action",
                "action_type": "update_lead_score",
                "action_params": {"score_change": 10}
            },
            {
                "step_order": 4,
                "step_type": "action",
                "action_type": "remove_tag",
                "action_params": {"tag_name": "inactive"}
            }
        ]
    }
