import uuid

from sqlalchemy import Column, Integer, Text
from sqlalchemy.dialects.postgresql import JSONB, TIMESTAMP, UUID
from sqlalchemy.sql import func

from app.database import Base


class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    request_id = Column(Text, nullable=False)
    user_id = Column(Text)
    conversation_id = Column(Text)
    source = Column(Text, nullable=False)
    intent = Column(Text, nullable=False)
    status = Column(Text, nullable=False)  # success, failure, requires_auth, duplicate
    message = Column(Text, nullable=False)
    http_status = Column(Integer, nullable=False, default=200)
    error_code = Column(Text)
    latency_ms = Column(Integer, nullable=False)
    audit_metadata = Column("metadata", JSONB, nullable=False, default=dict)
    created_at = Column(TIMESTAMP(timezone=True), nullable=False, server_default=func.now())
