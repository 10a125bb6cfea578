from app.models.audit_log import AuditLog
from app.models.conversation import Conversation
from app.models.external_event import ExternalEvent
from app.models.message import Message
from app.models.user import User

__all__ = [
    "AuditLog",
    "Conversation",
    "ExternalEvent",
    "Message",
    "User",
]
