from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional
from uuid import UUID

from sqlalchemy.orm import Session

from app.models import Conversation, Message, User

MAX_HISTORY_MESSAGES = 20


@dataclass
class PersistedTurn:
    user_message_id: UUID
    bot_message_id: UUID


def upsert_user(db: Session, user_id: str) -> User:
    """Find user by id or create a guest profile."""
    user = db.query(User).filter(User.id == user_id).first()
    now = datetime.now(timezone.utc)

    if not user:
        user = User(id=user_id, email=user_id, phone="", name="Customer", created_at=now, updated_at=now)
        db.add(user)
    else:
        user.updated_at = now
    db.flush()

    return user


def upsert_conversation(db: Session, conversation_id: str, user_id: str, channel: str) -> Conversation:
    """Find conversation by id or create it; ownership and channel follow the latest turn."""
    conversation = db.query(Conversation).filter(Conversation.id == conversation_id).first()
    now = datetime.now(timezone.utc)

    if not conversation:
        conversation = Conversation(
            id=conversation_id,
            user_id=user_id,
            channel=channel,
            created_at=now,
            updated_at=now,
        )
        db.add(conversation)
    else:
        conversation.user_id = user_id
        conversation.channel = channel
        conversation.updated_at = now
    db.flush()

    return conversation


def get_conversation_history(db: Session, conversation_id: str, limit: int) -> list[Message]:
    """Most recent messages of a conversation, oldest first."""
    limit = min(max(0, limit), MAX_HISTORY_MESSAGES)
    if limit == 0:
        return []
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return list(reversed(rows))


def get_last_reply_for_event(db: Session, channel: str, external_event_id: str) -> Optional[Message]:
    return (
        db.query(Message)
        .filter(
            Message.channel == channel,
            Message.external_event_id == external_event_id,
            Message.sender == "bot",
        )
        .order_by(Message.created_at.desc())
        .first()
    )


def persist_turn(
    db: Session,
    *,
    conversation_id: str,
    user_id: str,
    source: str,
    external_event_id: str,
    user_message: str,
    bot_message: str,
    metadata: dict,
) -> PersistedTurn:
    """Write the user message and the bot reply of one turn in a single commit."""
    created_at = datetime.now(timezone.utc)
    try:
        user_row = Message(
            conversation_id=conversation_id,
            user_id=user_id,
            sender="user",
            content=user_message,
            channel=source,
            external_event_id=external_event_id,
            message_metadata=dict(metadata),
            created_at=created_at,
        )
        # Offset keeps the reply after the user message in history order.
        bot_row = Message(
            conversation_id=conversation_id,
            user_id=user_id,
            sender="bot",
            content=bot_message,
            channel=source,
            external_event_id=external_event_id,
            message_metadata=dict(metadata),
            created_at=created_at + timedelta(milliseconds=1),
        )
        db.add(user_row)
        db.add(bot_row)
        db.flush()
        db.commit()
    except Exception:
        db.rollback()
        raise

    return PersistedTurn(user_message_id=user_row.id, bot_message_id=bot_row.id)
