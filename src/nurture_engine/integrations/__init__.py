"""External system integrations"""

# Email
from .email import EmailSender, SendResult, SMTPEmailSender, DryRunEmailSender, OutgoingEmail

# Actions
from .actions import ActionDispatcher, DispatchResult, SubscriberActionDispatcher, ACTION_SCHEMAS

__all__ = [
    # Email
    "EmailSender",
    "SendResult",
    "SMTPEmailSender",
    "DryRunEmailSender",
    "OutgoingEmail",

    # Actions
    "ActionDispatcher",
    "DispatchResult",
    "SubscriberActionDispatcher",
    "ACTION_SCHEMAS"
]
