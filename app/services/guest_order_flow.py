"""Carry out the side effect chosen by the guest verification reducer."""

from dataclasses import dataclass, field
from typing import Optional

from app.errors import ExternalServiceError
from app.logging_config import get_logger
from app.schemas.chat import ChatResponse
from app.services import metrics
from app.services import order_lookup_responses as replies
from app.services.guest_verification import ORDERS_INTENT, GuestAction, GuestTransition
from app.services.order_lookup_client import CODE_TO_STATUS, LookupResultCode, OrderLookupClient
from app.services.rate_limiter import OrderLookupRateLimiter

logger = get_logger("guest_order_flow")

EXCEPTION_RESULT_CODE = "exception"

FAILURE_MESSAGES = {
    LookupResultCode.NOT_FOUND_OR_MISMATCH.value: replies.VERIFICATION_FAILED_MESSAGE,
    LookupResultCode.INVALID_PAYLOAD.value: replies.invalid_format_message(),
    LookupResultCode.UNAUTHORIZED.value: replies.UNAUTHORIZED_MESSAGE,
    LookupResultCode.THROTTLED.value: replies.THROTTLED_MESSAGE,
}


@dataclass
class LookupTelemetry:
    attempted: bool = False
    result_code: Optional[str] = None
    status_code: Optional[int] = None
    rate_limit_degraded: bool = False
    rate_limit_blocked_by: Optional[str] = None

    def as_metadata(self) -> dict:
        return {
            "ordersGuestLookupAttempted": self.attempted,
            "ordersGuestLookupResultCode": self.result_code,
            "ordersGuestLookupStatusCode": self.status_code,
            "rateLimitDegraded": self.rate_limit_degraded,
            "rateLimitBlockedBy": self.rate_limit_blocked_by,
        }


@dataclass
class GuestFlowOutcome:
    response: ChatResponse
    telemetry: LookupTelemetry = field(default_factory=LookupTelemetry)


def _reply(conversation_id: str, message: str, ok: bool = True, requires_auth: Optional[bool] = None) -> ChatResponse:
    return ChatResponse(
        ok=ok,
        message=message,
        conversation_id=conversation_id,
        intent=ORDERS_INTENT,
        requires_auth=requires_auth,
    )


def run_guest_order_flow(
    transition: GuestTransition,
    *,
    request_id: str,
    conversation_id: str,
    user_id: str,
    client_ip: Optional[str],
    rate_limiter: OrderLookupRateLimiter,
    lookup_client: OrderLookupClient,
) -> GuestFlowOutcome:
    action = transition.action
    request = transition.request

    if action == GuestAction.ASK_HAS_DATA:
        return GuestFlowOutcome(_reply(conversation_id, replies.HAS_DATA_QUESTION))
    if action == GuestAction.ASK_LOOKUP_PAYLOAD:
        return GuestFlowOutcome(_reply(conversation_id, replies.provide_data_message()))
    if action == GuestAction.ASK_ORDER_ID:
        return GuestFlowOutcome(_reply(conversation_id, replies.missing_order_id_message()))
    if action == GuestAction.ASK_MISSING_FACTORS:
        return GuestFlowOutcome(_reply(conversation_id, replies.missing_factors_message(request)))
    if action == GuestAction.REJECT_INVALID_FORMAT:
        invalid = request.invalid_factors if request else None
        return GuestFlowOutcome(_reply(conversation_id, replies.invalid_format_message(invalid)))
    if action == GuestAction.REQUIRE_AUTH:
        return GuestFlowOutcome(_reply(conversation_id, replies.REQUIRES_AUTH_MESSAGE, ok=False, requires_auth=True))
    if action != GuestAction.LOOKUP or request is None or request.order_id is None:
        raise ValueError(f"Guest flow cannot handle action {action.value}")

    telemetry = LookupTelemetry()
    decision = rate_limiter.consume(client_ip, user_id, request.order_id, request_id=request_id)
    telemetry.rate_limit_degraded = decision.degraded
    if decision.degraded:
        metrics.record_rate_limit_degraded()
    if not decision.allowed:
        telemetry.rate_limit_blocked_by = decision.blocked_by
        metrics.record_rate_limited(decision.blocked_by)
        logger.info(
            "Order lookup blocked by local rate limit",
            extra={"context": {"request_id": request_id, "blocked_by": decision.blocked_by}},
        )
        return GuestFlowOutcome(_reply(conversation_id, replies.THROTTLED_MESSAGE, ok=False), telemetry)

    telemetry.attempted = True
    try:
        result = lookup_client.lookup_order(request_id, request.order_id, request.identity)
    except ExternalServiceError as exc:
        logger.warning(
            "guest_order_lookup_failed",
            extra={
                "context": {
                    "request_id": request_id,
                    "error_type": type(exc).__name__,
                    "error_code": exc.error_code,
                    "status_code": exc.status_code,
                }
            },
        )
        telemetry.result_code = EXCEPTION_RESULT_CODE
        return GuestFlowOutcome(_reply(conversation_id, replies.BACKEND_ERROR_MESSAGE, ok=False), telemetry)

    if result.ok:
        telemetry.result_code = LookupResultCode.SUCCESS.value
        telemetry.status_code = CODE_TO_STATUS[LookupResultCode.SUCCESS]
        return GuestFlowOutcome(_reply(conversation_id, replies.order_success_message(result.value)), telemetry)

    if result.failed_with(LookupResultCode.NOT_FOUND_OR_MISMATCH.value):
        metrics.record_verification_failed()
    elif result.failed_with(LookupResultCode.THROTTLED.value):
        metrics.record_rate_limited("backend")

    code = LookupResultCode(result.error_code)
    telemetry.result_code = code.value
    telemetry.status_code = CODE_TO_STATUS[code]
    return GuestFlowOutcome(_reply(conversation_id, FAILURE_MESSAGES[code.value], ok=False), telemetry)
