"""
SQLAlchemy table definitions

Column types stay portable (string ids, JSON lists) so the same tables run
on PostgreSQL and on SQLite in tests.
"""
from sqlalchemy import (
    Column, String, Text, Boolean, Integer, Float,
    DateTime, ForeignKey, UniqueConstraint, CheckConstraint, Index, JSON
)
from sqlalchemy.orm import declarative_base, relationship
import uuid

from ..models.execution import utcnow


Base = declarative_base()


def generate_uuid():
    return str(uuid.uuid4())


class EmailWorkflowDB(Base):
    """Workflow definition"""
    __tablename__ = 'email_workflows'

    id = Column(String(64), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)
    description = Column(Text)
    is_active = Column(Boolean, nullable=False, default=True)
    trigger_type = Column(String(50), nullable=False, default='manual')
    trigger_value = Column(String(255))
    meta = Column('metadata', JSON, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    steps = relationship(
        "WorkflowStepDB",
        back_populates="workflow",
        cascade="all",
        passive_deletes=True,
        order_by="WorkflowStepDB.step_order"
    )

    __table_args__ = (
        Index('idx_email_workflows_name', 'name'),
        Index('idx_email_workflows_active', 'is_active'),
    )


class WorkflowStepDB(Base):
    """One step row; only the columns of its kind are filled"""
    __tablename__ = 'workflow_steps'

    id = Column(String(64), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(64), ForeignKey('email_workflows.id', ondelete='CASCADE'), nullable=False)
    step_order = Column(Integer, nullable=False)
    step_type = Column(String(20), nullable=False)
    name = Column(String(255))
    subject = Column(Text)
    body = Column(Text)
    delay_value = Column(Float)
    delay_unit = Column(String(20))
    condition_field = Column(String(255))
    condition_operator = Column(String(50))
    condition_value = Column(Text)
    true_next_step = Column(Integer)
    false_next_step = Column(Integer)
    action_type = Column(String(50))
    action_params = Column(JSON)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    workflow = relationship("EmailWorkflowDB", back_populates="steps")

    __table_args__ = (
        UniqueConstraint('workflow_id', 'step_order', name='unique_workflow_step_order'),
        CheckConstraint("step_type IN ('email', 'condition', 'action', 'delay')", name='check_step_type'),
        CheckConstraint("step_order > 0", name='check_step_order_positive'),
    )


class SubscriberDB(Base):
    """Newsletter subscriber"""
    __tablename__ = 'newsletter_subscribers'

    id = Column(String(64), primary_key=True, default=generate_uuid)
    email = Column(String(320), nullable=False, unique=True)
    name = Column(String(255))
    subscribed = Column(Boolean, nullable=False, default=True)
    source = Column(String(100))
    lead_score = Column(Integer, nullable=False, default=0)
    engagement_level = Column(String(50))
    total_opens = Column(Integer, nullable=False, default=0)
    total_clicks = Column(Integer, nullable=False, default=0)
    purchase_count = Column(Integer, nullable=False, default=0)
    total_spent = Column(Float, nullable=False, default=0.0)
    tags = Column(JSON, default=list)
    custom_fields = Column(JSON, default=dict)
    last_activity_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)


class SubscriberTaskDB(Base):
    """Follow-up task created by an action step"""
    __tablename__ = 'subscriber_tasks'

    id = Column(String(64), primary_key=True, default=generate_uuid)
    subscriber_id = Column(String(64), ForeignKey('newsletter_subscribers.id', ondelete='CASCADE'), nullable=False)
    execution_id = Column(String(64))
    title = Column(String(255), nullable=False)
    description = Column(Text)
    priority = Column(String(20), nullable=False, default='medium')
    due_at = Column(DateTime)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index('idx_subscriber_tasks_subscriber_id', 'subscriber_id'),
    )


class WorkflowExecutionDB(Base):
    """Execution cursor; one per (workflow, subscriber)"""
    __tablename__ = 'workflow_executions'

    id = Column(String(64), primary_key=True, default=generate_uuid)
    workflow_id = Column(String(64), ForeignKey('email_workflows.id', ondelete='CASCADE'), nullable=False)
    subscriber_id = Column(String(64), ForeignKey('newsletter_subscribers.id', ondelete='CASCADE'), nullable=False)
    current_step = Column(Integer, nullable=False, default=1)
    status = Column(String(20), nullable=False, default='active')
    next_step_at = Column(DateTime)
    started_at = Column(DateTime, nullable=False, default=utcnow)
    completed_at = Column(DateTime)
    meta = Column('metadata', JSON, default=dict)
    attempts = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=0)
    claimed_until = Column(DateTime)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint('workflow_id', 'subscriber_id', name='unique_workflow_subscriber'),
        CheckConstraint(
            "status IN ('active', 'paused', 'completed', 'cancelled', 'failed')",
            name='check_execution_status'
        ),
        Index('idx_workflow_executions_due', 'status', 'next_step_at'),
        Index('idx_workflow_executions_workflow_id', 'workflow_id'),
    )


class WorkflowStepLogDB(Base):
    """Append-only processing log"""
    __tablename__ = 'workflow_step_logs'

    id = Column(String(64), primary_key=True, default=generate_uuid)
    execution_id = Column(String(64), ForeignKey('workflow_executions.id', ondelete='CASCADE'), nullable=False)
    step_id = Column(String(64))
    step_order = Column(Integer)
    status = Column(String(20), nullable=False)
    error_message = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("status IN ('sent', 'failed')", name='check_step_log_status'),
        Index('idx_workflow_step_logs_execution_id', 'execution_id'),
    )
