import hashlib
import json
from functools import lru_cache
from typing import Optional
from uuid import uuid4

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.errors import InvalidChatPayloadError
from app.logging_config import get_logger
from app.schemas.chat import ChatRequest, ChatResponse
from app.services.account_orders_client import AccountOrdersClient, build_account_orders_client
from app.services.context_service import StaticContextEnricher
from app.services.intent_service import KeywordIntentClassifier
from app.services.order_lookup_client import OrderLookupClient, build_order_lookup_client
from app.services.rate_limiter import OrderLookupRateLimiter, build_rate_limiter
from app.services.reply_service import ReplyGenerator, build_reply_generator
from app.services.turn_pipeline import TurnCommand, TurnPipeline

logger = get_logger("chat_router")

router = APIRouter(prefix="/chat")

EVENT_ID_HEADERS = ("x-external-event-id", "x-idempotency-key")
MAX_EVENT_ID_CHARS = 255


@lru_cache(maxsize=1)
def get_lookup_client() -> OrderLookupClient:
    return build_order_lookup_client(settings)


@lru_cache(maxsize=1)
def get_account_orders_client() -> AccountOrdersClient:
    return build_account_orders_client(settings)


@lru_cache(maxsize=1)
def get_rate_limiter() -> OrderLookupRateLimiter:
    return build_rate_limiter(settings)


@lru_cache(maxsize=1)
def get_reply_generator() -> ReplyGenerator:
    return build_reply_generator(settings)


def get_turn_pipeline(db: Session = Depends(get_db)) -> TurnPipeline:
    return TurnPipeline(
        db,
        classifier=KeywordIntentClassifier(),
        enricher=StaticContextEnricher(),
        reply_generator=get_reply_generator(),
        rate_limiter=get_rate_limiter(),
        lookup_client=get_lookup_client(),
        account_orders_client=get_account_orders_client(),
        config=settings,
    )


def resolve_external_event_id(headers, raw_body: bytes, chat_request: ChatRequest) -> str:
    """Caller-supplied event id, else a stable hash of the request body."""
    for header in EVENT_ID_HEADERS:
        value = (headers.get(header) or "").strip()
        if value:
            return value[:MAX_EVENT_ID_CHARS]

    if raw_body:
        return hashlib.sha256(raw_body).hexdigest()

    composed = json.dumps(
        {
            "source": chat_request.source,
            "userId": chat_request.user_id,
            "conversationId": chat_request.conversation_id,
            "text": chat_request.text,
        },
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(composed.encode("utf-8")).hexdigest()


def resolve_client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else None


def _parse_chat_request(raw_body: bytes) -> ChatRequest:
    try:
        payload = json.loads(raw_body or b"{}")
        return ChatRequest.model_validate(payload)
    except (ValueError, ValidationError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Invalid chat payload: {e}")


@router.post("/message", response_model=ChatResponse, response_model_exclude_none=True, response_model_by_alias=True)
async def handle_chat_message(request: Request, pipeline: TurnPipeline = Depends(get_turn_pipeline)):
    """Process one chat turn. Every pipeline outcome is a 200 with `ok` set accordingly."""
    raw_body = await request.body()
    chat_request = _parse_chat_request(raw_body)

    request_id = (request.headers.get("x-request-id") or "").strip() or str(uuid4())
    command = TurnCommand(
        request_id=request_id,
        external_event_id=resolve_external_event_id(request.headers, raw_body, chat_request),
        source=chat_request.source,
        user_id=chat_request.user_id,
        conversation_id=chat_request.conversation_id,
        text=chat_request.text,
        access_token=chat_request.access_token,
        client_ip=resolve_client_ip(request),
        idempotency_payload=chat_request.model_dump(by_alias=True, exclude={"access_token"}, exclude_none=True),
    )

    try:
        return await run_in_threadpool(pipeline.handle, command)
    except InvalidChatPayloadError as e:
        logger.info("Rejected chat payload", extra={"context": {"request_id": request_id, "reason": str(e)}})
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
