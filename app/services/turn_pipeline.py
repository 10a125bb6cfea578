"""One inbound chat turn, end to end.

Steps run in a fixed order, each gated on the previous one:

1. sanitize and bound-check the text
2. claim the event (a duplicate returns the stored reply and stops here)
3. resolve user and conversation, load recent history
4. classify intent and run the guest verification flow
5. resolve the reply (deterministic guest flow, or context + reply generator;
   a signed-in orders question loads the account orders first)
6. persist the turn
7. mark the event processed
8. write the audit entry

Any failure after the claim marks the event failed, writes a failure audit
entry and returns a generic error. A crash between 6 and 7 leaves the event
`received`; that at-least-once window is accepted.
"""

import time
from dataclasses import dataclass, field
from typing import Any, Optional

from sqlalchemy.orm import Session

from app.config import Settings
from app.errors import ExternalServiceError, InvalidChatPayloadError
from app.logging_config import bind_logger, get_logger
from app.schemas.chat import ChatResponse
from app.services.account_orders_client import AccountOrdersClient
from app.services.alert_service import alert_error
from app.services.audit_service import AuditEntry, write_audit
from app.services.context_service import ContextEnricher, build_account_orders_block
from app.services.conversation_service import (
    get_conversation_history,
    get_last_reply_for_event,
    persist_turn,
    upsert_conversation,
    upsert_user,
)
from app.services.guest_order_flow import LookupTelemetry, run_guest_order_flow
from app.services.guest_verification import (
    GUEST_FLOW_METADATA_KEY,
    ORDERS_INTENT,
    classify_guest_message,
    reduce_guest_flow,
    resolve_state_from_history,
    state_to_metadata,
)
from app.services.idempotency_service import mark_failed, mark_processed, start_processing
from app.services.intent_service import IntentClassifier
from app.services.order_lookup_client import OrderLookupClient
from app.services.order_lookup_responses import (
    BACKEND_ERROR_MESSAGE,
    DUPLICATE_FALLBACK_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
)
from app.services.rate_limiter import OrderLookupRateLimiter
from app.services.reply_service import ReplyGenerator, TemplateReplyGenerator
from app.services.text_sanitizer import sanitize_text, sanitize_text_preserving_line_breaks

logger = get_logger("turn_pipeline")

DUPLICATE_INTENT = "duplicate"
ERROR_INTENT = "error"


@dataclass
class TurnCommand:
    request_id: str
    external_event_id: str
    source: str
    user_id: str
    conversation_id: str
    text: str
    access_token: Optional[str] = None
    client_ip: Optional[str] = None
    idempotency_payload: dict[str, Any] = field(default_factory=dict)

    @property
    def authenticated(self) -> bool:
        return bool(self.access_token and self.access_token.strip())


def audit_status_for(response: ChatResponse) -> str:
    if response.ok:
        return "success"
    if response.requires_auth:
        return "requires_auth"
    return "failure"


class TurnPipeline:
    def __init__(
        self,
        db: Session,
        *,
        classifier: IntentClassifier,
        enricher: ContextEnricher,
        reply_generator: ReplyGenerator,
        rate_limiter: OrderLookupRateLimiter,
        lookup_client: OrderLookupClient,
        account_orders_client: AccountOrdersClient,
        config: Settings,
    ):
        self.db = db
        self.classifier = classifier
        self.enricher = enricher
        self.reply_generator = reply_generator
        self.fallback_generator = TemplateReplyGenerator()
        self.rate_limiter = rate_limiter
        self.lookup_client = lookup_client
        self.account_orders_client = account_orders_client
        self.config = config

    def handle(self, cmd: TurnCommand) -> ChatResponse:
        started = time.monotonic()
        log = bind_logger(
            logger,
            request_id=cmd.request_id,
            external_event_id=cmd.external_event_id,
            conversation_id=cmd.conversation_id,
        )

        # 1. Sanitize (raises before any side effect)
        text = self._sanitize(cmd)

        # 2. Claim; a failed claim propagates so the caller retries
        is_duplicate = start_processing(
            self.db,
            source=cmd.source,
            external_event_id=cmd.external_event_id,
            payload=cmd.idempotency_payload,
            request_id=cmd.request_id,
        )
        if is_duplicate:
            return self._handle_duplicate(cmd, started, log)

        try:
            return self._process(cmd, text, started, log)
        except Exception as exc:
            return self._handle_failure(cmd, exc, started, log)

    def _sanitize(self, cmd: TurnCommand) -> str:
        if not cmd.user_id.strip() or not cmd.conversation_id.strip():
            raise InvalidChatPayloadError("userId and conversationId are required")
        text = sanitize_text_preserving_line_breaks(cmd.text)
        if not text:
            raise InvalidChatPayloadError("text is required")
        if len(text) > self.config.chat_max_text_chars:
            raise InvalidChatPayloadError(f"text exceeds {self.config.chat_max_text_chars} characters")
        return text

    def _process(self, cmd: TurnCommand, text: str, started: float, log) -> ChatResponse:
        # 3. Resolve user, conversation, history
        upsert_user(self.db, cmd.user_id)
        upsert_conversation(self.db, cmd.conversation_id, cmd.user_id, cmd.source)
        history = get_conversation_history(self.db, cmd.conversation_id, self.config.chat_history_limit)

        # 4. Classify and run the guest verification flow
        intent_result = self.classifier.classify(sanitize_text(text))
        intent = intent_result.intent
        message = classify_guest_message(
            text,
            intent,
            authenticated=cmd.authenticated,
            entities=intent_result.entities,
        )
        current_state = resolve_state_from_history(history)
        guest_transition = reduce_guest_flow(current_state, message)

        # 5. Resolve the reply
        telemetry = LookupTelemetry()
        context_types: list[str] = []
        if guest_transition.handled:
            outcome = run_guest_order_flow(
                guest_transition,
                request_id=cmd.request_id,
                conversation_id=cmd.conversation_id,
                user_id=cmd.user_id,
                client_ip=cmd.client_ip,
                rate_limiter=self.rate_limiter,
                lookup_client=self.lookup_client,
            )
            response = outcome.response
            telemetry = outcome.telemetry
        else:
            response, context_types = self._reply(cmd, text, intent, history, log)

        metadata = {
            "intent": response.intent or intent,
            "requiresAuth": bool(response.requires_auth),
            "requestId": cmd.request_id,
            "externalEventId": cmd.external_event_id,
            "confidence": intent_result.confidence,
            "entitiesCount": len(intent_result.entities),
            "contextTypes": context_types,
            GUEST_FLOW_METADATA_KEY: state_to_metadata(guest_transition.next_state),
            **telemetry.as_metadata(),
        }

        # 6. Persist
        turn = persist_turn(
            self.db,
            conversation_id=cmd.conversation_id,
            user_id=cmd.user_id,
            source=cmd.source,
            external_event_id=cmd.external_event_id,
            user_message=text,
            bot_message=response.message,
            metadata=metadata,
        )
        response.response_id = str(turn.bot_message_id)
        log.info("turn_persisted", extra={"context": {"response_id": response.response_id}})

        # 7. Mark processed
        mark_processed(self.db, source=cmd.source, external_event_id=cmd.external_event_id)

        # 8. Audit
        self._audit(
            AuditEntry(
                request_id=cmd.request_id,
                source=cmd.source,
                intent=metadata["intent"],
                status=audit_status_for(response),
                message=response.message,
                latency_ms=_elapsed_ms(started),
                user_id=cmd.user_id,
                conversation_id=cmd.conversation_id,
                metadata=metadata,
            ),
            log,
        )
        return response

    def _reply(self, cmd: TurnCommand, text: str, intent: str, history, log) -> tuple[ChatResponse, list[str]]:
        blocks = self.enricher.enrich(intent, text, authenticated=cmd.authenticated)
        if cmd.authenticated and intent == ORDERS_INTENT:
            try:
                account_orders = self.account_orders_client.list_orders(cmd.access_token, request_id=cmd.request_id)
            except ExternalServiceError as exc:
                log.warning(
                    "account_orders_failed",
                    extra={"context": {"status_code": exc.status_code, "error_code": exc.error_code}},
                )
                if exc.status_code == 401:
                    response = ChatResponse(
                        ok=False,
                        message=SESSION_EXPIRED_MESSAGE,
                        conversation_id=cmd.conversation_id,
                        intent=intent,
                        requires_auth=True,
                    )
                else:
                    response = ChatResponse(
                        ok=False,
                        message=BACKEND_ERROR_MESSAGE,
                        conversation_id=cmd.conversation_id,
                        intent=intent,
                    )
                return response, [ORDERS_INTENT]
            blocks = [build_account_orders_block(account_orders), *blocks]

        reply = self.reply_generator.generate(text, history, blocks)
        if not reply.ok:
            log.warning(
                "Reply generator failed, using template",
                extra={"context": {"error_code": reply.error_code}},
            )
            reply = self.fallback_generator.generate(text, history, blocks)
        response = ChatResponse(
            ok=True,
            message=reply.value.message,
            conversation_id=cmd.conversation_id,
            intent=intent,
        )
        return response, [block.context_type for block in blocks]

    def _handle_duplicate(self, cmd: TurnCommand, started: float, log) -> ChatResponse:
        previous = get_last_reply_for_event(self.db, cmd.source, cmd.external_event_id)
        response = ChatResponse(
            ok=True,
            message=previous.content if previous else DUPLICATE_FALLBACK_MESSAGE,
            conversation_id=cmd.conversation_id,
        )
        if previous is not None:
            previous_metadata = previous.message_metadata or {}
            response.intent = previous_metadata.get("intent")
            response.response_id = str(previous.id)
            if previous_metadata.get("requiresAuth"):
                response.requires_auth = True

        log.info("turn_duplicate", extra={"context": {"has_previous_reply": previous is not None}})
        self._audit(
            AuditEntry(
                request_id=cmd.request_id,
                source=cmd.source,
                intent=DUPLICATE_INTENT,
                status="duplicate",
                message=response.message,
                latency_ms=_elapsed_ms(started),
                user_id=cmd.user_id,
                conversation_id=cmd.conversation_id,
                metadata={"externalEventId": cmd.external_event_id},
            ),
            log,
        )
        return response

    def _handle_failure(self, cmd: TurnCommand, exc: Exception, started: float, log) -> ChatResponse:
        error_type = type(exc).__name__
        log.error("turn_failed", extra={"context": {"error_type": error_type}}, exc_info=True)
        self.db.rollback()

        try:
            mark_failed(
                self.db,
                source=cmd.source,
                external_event_id=cmd.external_event_id,
                error_message=str(exc) or "Unknown error",
            )
        except Exception as mark_exc:
            self.db.rollback()
            log.error(
                "Failed to mark event as failed",
                extra={"context": {"error_type": type(mark_exc).__name__}},
            )

        self._audit(
            AuditEntry(
                request_id=cmd.request_id,
                source=cmd.source,
                intent=ERROR_INTENT,
                status="failure",
                message=BACKEND_ERROR_MESSAGE,
                latency_ms=_elapsed_ms(started),
                user_id=cmd.user_id,
                conversation_id=cmd.conversation_id,
                http_status=500,
                error_code=error_type,
                metadata={"externalEventId": cmd.external_event_id},
            ),
            log,
        )
        alert_error(
            "Chat turn failed",
            {"request_id": cmd.request_id, "external_event_id": cmd.external_event_id, "error_type": error_type},
        )
        return ChatResponse(ok=False, message=BACKEND_ERROR_MESSAGE, conversation_id=cmd.conversation_id)

    def _audit(self, entry: AuditEntry, log) -> None:
        """Write one audit row. A failed write is logged and does not change the reply."""
        try:
            write_audit(self.db, entry)
        except Exception as exc:
            self.db.rollback()
            log.error(
                "Failed to write audit entry",
                extra={"context": {"status": entry.status, "error_type": type(exc).__name__}},
            )
            return
        log.info("turn_audited", extra={"context": {"status": entry.status, "latency_ms": entry.latency_ms}})


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
