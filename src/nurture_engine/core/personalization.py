"""
Template personalization

Placeholders look like ``{{name}}``. Recognised names are the subscriber
attributes below, ``date`` and any key of the subscriber's custom fields.
Anything else is left exactly as written.
"""
import re
from datetime import datetime
from typing import Any, Dict, Optional

from ..models.execution import utcnow
from ..models.subscriber import Subscriber


PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([A-Za-z_][A-Za-z0-9_]*)\s*\}\}")

# attribute -> fallback when the subscriber has no value
ATTRIBUTE_FALLBACKS: Dict[str, Any] = {
    "name": "there",
    "email": "",
    "lead_score": 0,
    "engagement_level": "new",
    "total_opens": 0,
    "total_clicks": 0,
    "purchase_count": 0,
    "total_spent": 0,
}


def _format(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def placeholder_values(subscriber: Subscriber, now: Optional[datetime] = None) -> Dict[str, str]:
    """Substitution table for one subscriber"""
    values = {}
    for key, value in (subscriber.custom_fields or {}).items():
        if value is not None:
            values[key] = _format(value)
    for attribute, fallback in ATTRIBUTE_FALLBACKS.items():
        value = getattr(subscriber, attribute, None)
        values[attribute] = _format(value if value not in (None, "") else fallback)
    values["date"] = (now or utcnow()).strftime("%Y-%m-%d")
    return values


def personalize(content: Optional[str], subscriber: Subscriber, now: Optional[datetime] = None) -> str:
    """Substitute recognised placeholders; unmatched ones stay verbatim"""
    if not content:
        return ""
    values = placeholder_values(subscriber, now)

    def substitute(match):
        return values.get(match.group(1), match.group(0))

    return PLACEHOLDER_PATTERN.sub(substitute, content)


def personalize_params(params: Any, subscriber: Subscriber, now: Optional[datetime] = None) -> Any:
    """Personalize every string inside an action parameter structure"""
    if isinstance(params, str):
        return personalize(params, subscriber, now)
    if isinstance(params, dict):
        return {key: personalize_params(value, subscriber, now) for key, value in params.items()}
    if isinstance(params, list):
        return [personalize_params(item, subscriber, now) for item in params]
    return params
