from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy.orm import Session

from app.models import AuditLog


@dataclass
class AuditEntry:
    request_id: str
    source: str
    intent: str
    status: str  # success, failure, requires_auth, duplicate
    message: str
    latency_ms: int
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    http_status: int = 200
    error_code: Optional[str] = None
    metadata: dict = field(default_factory=dict)


def write_audit(db: Session, entry: AuditEntry) -> AuditLog:
    """Append one audit row. Audit rows are never updated."""
    row = AuditLog(
        request_id=entry.request_id,
        user_id=entry.user_id,
        conversation_id=entry.conversation_id,
        source=entry.source,
        intent=entry.intent,
        status=entry.status,
        message=entry.message,
        http_status=entry.http_status,
        error_code=entry.error_code,
        latency_ms=entry.latency_ms,
        audit_metadata=entry.metadata,
        created_at=datetime.now(timezone.utc),
    )
    db.add(row)
    db.commit()
    return row
