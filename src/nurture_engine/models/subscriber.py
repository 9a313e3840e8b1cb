"""
Subscriber models
"""
from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List
from datetime import datetime
from uuid import uuid4

from .execution import utcnow


@dataclass
class Subscriber:
    """Subscriber attribute bag"""
    email: str
    id: str = field(default_factory=lambda: str(uuid4()))
    name: Optional[str] = None
    subscribed: bool = True
    source: Optional[str] = None
    lead_score: int = 0
    engagement_level: Optional[str] = None
    total_opens: int = 0
    total_clicks: int = 0
    purchase_count: int = 0
    total_spent: float = 0.0
    tags: List[str] = field(default_factory=list)
    custom_fields: Dict[str, Any] = field(default_factory=dict)
    last_activity_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    # attributes conditions and templates may address
    ATTRIBUTES = (
        "email", "name", "subscribed", "source", "lead_score",
        "engagement_level", "total_opens", "total_clicks",
        "purchase_count", "total_spent", "tags",
    )

    def get_attribute(self, name: str) -> Any:
        """Named attribute, falling back to custom fields; None when absent"""
        if name in self.ATTRIBUTES:
            return getattr(self, name)
        return self.custom_fields.get(name)

    def has_tag(self, tag: str) -> bool:
        wanted = (tag or "").strip().lower()
        return any(t.lower() == wanted for t in self.tags)


@dataclass
class SubscriberTask:
    """Follow-up task created by a workflow action"""
    subscriber_id: str
    title: str
    id: str = field(default_factory=lambda: str(uuid4()))
    description: Optional[str] = None
    priority: str = "medium"
    due_at: Optional[datetime] = None
    execution_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
