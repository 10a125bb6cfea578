from datetime import datetime, timezone
from typing import Any

from sqlalchemy import update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.orm import Session

from app.logging_config import get_logger
from app.models import ExternalEvent

logger = get_logger("idempotency_service")

MAX_ERROR_CHARS = 1000

# Allowed source statuses per target; anything else is left untouched.
PROCESSED_FROM = ("received", "failed")
FAILED_FROM = ("received",)


def start_processing(
    db: Session,
    *,
    source: str,
    external_event_id: str,
    payload: dict[str, Any],
    request_id: str,
) -> bool:
    """Claim an inbound event. Returns True when the event was already claimed (duplicate).

    The claim is committed immediately so concurrent deliveries see it. A failed
    write propagates: the event is not claimed and the caller must not proceed.
    """
    now = datetime.now(timezone.utc)
    stmt = (
        insert(ExternalEvent)
        .values(
            source=source,
            external_event_id=external_event_id,
            request_id=request_id,
            payload=payload,
            status="received",
            received_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["source", "external_event_id"])
    )
    try:
        result = db.execute(stmt)
        db.commit()
    except Exception:
        db.rollback()
        raise
    return result.rowcount == 0


def mark_processed(db: Session, *, source: str, external_event_id: str) -> None:
    now = datetime.now(timezone.utc)
    result = db.execute(
        update(ExternalEvent)
        .where(
            ExternalEvent.source == source,
            ExternalEvent.external_event_id == external_event_id,
            ExternalEvent.status.in_(PROCESSED_FROM),
        )
        .values(status="processed", processed_at=now, error=None, updated_at=now)
    )
    db.commit()
    _log_skipped(result, "processed", source, external_event_id)


def mark_failed(db: Session, *, source: str, external_event_id: str, error_message: str) -> None:
    result = db.execute(
        update(ExternalEvent)
        .where(
            ExternalEvent.source == source,
            ExternalEvent.external_event_id == external_event_id,
            ExternalEvent.status.in_(FAILED_FROM),
        )
        .values(
            status="failed",
            error=(error_message or "Unknown error")[:MAX_ERROR_CHARS],
            updated_at=datetime.now(timezone.utc),
        )
    )
    db.commit()
    _log_skipped(result, "failed", source, external_event_id)


def _log_skipped(result, target: str, source: str, external_event_id: str) -> None:
    if result.rowcount == 0:
        logger.warning(
            "external_event_transition_skipped",
            extra={"context": {"target": target, "source": source, "external_event_id": external_event_id}},
        )
