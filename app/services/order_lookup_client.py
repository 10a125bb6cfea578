"""Signed order lookup against the store backend (guest order verification)."""

import json
import time
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

import httpx

from app.config import Settings
from app.errors import ExternalServiceError
from app.logging_config import get_logger
from app.services.result import Result
from app.services.signer import ORDER_LOOKUP_METHOD, RequestSigner

logger = get_logger("order_lookup_client")

ORDER_LOOKUP_REQUEST_PATH = "/bot/order-lookup"
MAX_UNAUTHORIZED_RETRIES = 1


class LookupResultCode(str, Enum):
    SUCCESS = "success"
    NOT_FOUND_OR_MISMATCH = "not_found_or_mismatch"
    INVALID_PAYLOAD = "invalid_payload"
    UNAUTHORIZED = "unauthorized"
    THROTTLED = "throttled"


STATUS_TO_CODE = {
    200: LookupResultCode.SUCCESS,
    401: LookupResultCode.UNAUTHORIZED,
    404: LookupResultCode.NOT_FOUND_OR_MISMATCH,
    422: LookupResultCode.INVALID_PAYLOAD,
    429: LookupResultCode.THROTTLED,
}
CODE_TO_STATUS = {code: status for status, code in STATUS_TO_CODE.items()}


@dataclass(frozen=True)
class Money:
    currency: str
    amount: float


@dataclass(frozen=True)
class LookupIdentity:
    dni: Optional[str] = None
    name: Optional[str] = None
    last_name: Optional[str] = None
    phone: Optional[str] = None


@dataclass(frozen=True)
class OrderSummary:
    id: Any
    state: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    total: Optional[Money] = None
    payment_method: Optional[str] = None
    ship_method: Optional[str] = None
    tracking_code: Optional[str] = None


def should_retry(code: LookupResultCode, retries_so_far: int, retry_max: int) -> bool:
    """Whether a response with this code earns another attempt.

    `retries_so_far` counts earlier retries for the same code.
    """
    if code == LookupResultCode.UNAUTHORIZED:
        return retries_so_far < MAX_UNAUTHORIZED_RETRIES
    if code == LookupResultCode.THROTTLED:
        return retries_so_far < retry_max
    return False


def compute_backoff_ms(base_ms: int, attempt: int) -> int:
    return max(0, base_ms * 2 ** max(0, attempt - 1))


def build_lookup_payload(order_id: int, identity: LookupIdentity) -> dict:
    payload: dict[str, Any] = {"order_id": order_id}
    for key, value in (
        ("dni", identity.dni),
        ("name", identity.name),
        ("last_name", identity.last_name),
        ("phone", identity.phone),
    ):
        normalized = _optional_str(value)
        if normalized:
            payload[key] = normalized
    return payload


def parse_money(value: Any) -> Optional[Money]:
    if not isinstance(value, dict):
        return None
    currency = value.get("currency")
    if not isinstance(currency, str) or not currency.strip():
        return None
    amount = value.get("amount")
    if isinstance(amount, bool):
        return None
    if isinstance(amount, str):
        try:
            amount = float(amount)
        except ValueError:
            return None
    if not isinstance(amount, (int, float)):
        return None
    return Money(currency=currency.strip(), amount=amount)


def normalize_lookup_order(body: Any, fallback_order_id: int) -> OrderSummary:
    data = body if isinstance(body, dict) else {}
    container = data.get("order") if isinstance(data.get("order"), dict) else data

    raw_id = container.get("id")
    if isinstance(raw_id, (int, float)) and not isinstance(raw_id, bool):
        order_id: Any = raw_id
    elif isinstance(raw_id, str) and raw_id.strip():
        order_id = raw_id.strip()
    else:
        order_id = fallback_order_id

    return OrderSummary(
        id=order_id,
        state=_optional_str(container.get("state")) or "Sin estado",
        created_at=_optional_str(container.get("created_at")),
        updated_at=_optional_str(container.get("updated_at")),
        total=parse_money(container.get("total")),
        payment_method=_optional_str(container.get("payment_method")),
        ship_method=_optional_str(container.get("ship_method")),
        tracking_code=_optional_str(container.get("tracking_code")),
    )


def _optional_str(value: Any) -> Optional[str]:
    if isinstance(value, str):
        trimmed = value.strip()
        return trimmed or None
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return {"raw": response.text}


class OrderLookupClient:
    """Issues signed, timeboxed lookups and applies the per-status retry policy.

    Outcomes with business meaning (mismatch, malformed payload, auth, throttling)
    come back as a failed Result whose error_code is a LookupResultCode value.
    Any other status, a timeout or a transport error raises ExternalServiceError.
    """

    def __init__(
        self,
        base_url: str,
        signer: RequestSigner,
        *,
        timeout_ms: int = 8000,
        retry_max: int = 1,
        retry_backoff_ms: int = 500,
        total_budget_ms: int = 20000,
        sleep_func: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.url = f"{base_url.rstrip('/')}{ORDER_LOOKUP_REQUEST_PATH}"
        self.signer = signer
        self.timeout_ms = max(1, timeout_ms)
        self.retry_max = max(0, retry_max)
        self.retry_backoff_ms = max(0, retry_backoff_ms)
        self.total_budget_ms = max(self.timeout_ms, total_budget_ms)
        self._sleep = sleep_func
        self._clock = clock

    def lookup_order(self, request_id: str, order_id: int, identity: LookupIdentity) -> Result[OrderSummary]:
        raw_body = json.dumps(build_lookup_payload(order_id, identity), separators=(",", ":"))
        deadline = self._clock() + self.total_budget_ms / 1000
        retries = {LookupResultCode.UNAUTHORIZED: 0, LookupResultCode.THROTTLED: 0}

        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                raise ExternalServiceError("Order lookup budget exhausted", 0, "timeout")

            status_code, body = self._send(raw_body, timeout_seconds=min(self.timeout_ms / 1000, remaining))
            code = STATUS_TO_CODE.get(status_code)

            if code is None:
                raise ExternalServiceError(f"Order lookup backend error {status_code}", status_code, "http", body)

            if code == LookupResultCode.SUCCESS:
                return Result.success(normalize_lookup_order(body, order_id))

            if not should_retry(code, retries.get(code, 0), self.retry_max):
                return Result.failure(f"Order lookup returned {status_code}", code=code.value)

            retries[code] += 1
            if code == LookupResultCode.UNAUTHORIZED:
                logger.warning(
                    "order_lookup_unauthorized_retry",
                    extra={
                        "context": {
                            "request_id": request_id,
                            "retry_count": retries[code],
                            "canonical_path": self.signer.path,
                        }
                    },
                )
                continue

            backoff_ms = compute_backoff_ms(self.retry_backoff_ms, retries[code])
            if backoff_ms / 1000 >= deadline - self._clock():
                return Result.failure("Order lookup throttled, budget exhausted", code=code.value)
            logger.warning(
                "order_lookup_throttled_retry",
                extra={
                    "context": {
                        "request_id": request_id,
                        "retry_count": retries[code],
                        "backoff_ms": backoff_ms,
                    }
                },
            )
            self._sleep(backoff_ms / 1000)

    def _send(self, raw_body: str, timeout_seconds: float) -> tuple[int, Any]:
        timestamp = str(int(time.time()))
        nonce = str(uuid.uuid4()).lower()
        signature = self.signer.sign(timestamp, nonce, raw_body)

        try:
            with httpx.Client(timeout=timeout_seconds) as client:
                response = client.post(
                    self.url,
                    headers={
                        "Accept": "application/json",
                        "Content-Type": "application/json",
                        "X-Bot-Timestamp": timestamp,
                        "X-Bot-Nonce": nonce,
                        "X-Bot-Signature": signature,
                    },
                    content=raw_body,
                )
        except httpx.TimeoutException as exc:
            raise ExternalServiceError("Order lookup timeout", 0, "timeout") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError("Order lookup network error", 0, "network") from exc

        return response.status_code, _parse_body(response)


def build_order_lookup_client(config: Settings) -> OrderLookupClient:
    """Build a client from settings. Raises SignerConfigurationError when the secret is blank."""
    base_url = config.order_lookup_base_url.rstrip("/")
    signed_path = urlsplit(f"{base_url}{ORDER_LOOKUP_REQUEST_PATH}").path
    signer = RequestSigner(config.bot_order_lookup_hmac_secret, signed_path, method=ORDER_LOOKUP_METHOD)
    return OrderLookupClient(
        base_url,
        signer,
        timeout_ms=config.bot_order_lookup_timeout_ms,
        retry_max=config.bot_order_lookup_retry_max,
        retry_backoff_ms=config.bot_order_lookup_retry_backoff_ms,
        total_budget_ms=config.bot_order_lookup_total_budget_ms,
    )
