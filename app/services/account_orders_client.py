"""Order history for a signed-in customer, read with their own access token."""

from dataclasses import dataclass, field
from typing import Any

import httpx

from app.config import Settings
from app.errors import ExternalServiceError
from app.logging_config import get_logger
from app.services.order_lookup_client import OrderSummary, normalize_lookup_order

logger = get_logger("account_orders_client")

ACCOUNT_ORDERS_PATH = "/account/orders"
UNAUTHENTICATED_MARKERS = (
    "unauthenticated",
    "unauthorized",
    "invalid token",
    "token expired",
    "jwt expired",
    "session expired",
)


@dataclass
class AccountOrders:
    orders: list[OrderSummary] = field(default_factory=list)
    total: int = 0


def is_unauthenticated_payload(body: Any) -> bool:
    """Some store responses come back 200 with an auth error in the body."""
    if not isinstance(body, dict):
        return False
    for candidate in (body.get("message"), body.get("error")):
        if isinstance(candidate, str):
            normalized = candidate.strip().lower()
            if any(marker in normalized for marker in UNAUTHENTICATED_MARKERS):
                return True
    return False


def parse_account_orders(body: Any) -> AccountOrders:
    data = body if isinstance(body, dict) else {}
    raw_orders = data.get("data", data.get("orders"))
    if not isinstance(raw_orders, list):
        raw_orders = []

    orders = [
        normalize_lookup_order(raw, fallback_order_id=0)
        for raw in raw_orders
        if isinstance(raw, dict) and raw.get("id") not in (None, "")
    ]

    total = len(orders)
    pagination = data.get("pagination")
    if isinstance(pagination, dict):
        raw_total = pagination.get("total")
        if isinstance(raw_total, int) and not isinstance(raw_total, bool):
            total = raw_total
        elif isinstance(raw_total, str) and raw_total.strip().isdigit():
            total = int(raw_total.strip())
    return AccountOrders(orders=orders, total=total)


class AccountOrdersClient:
    """GET <base>/account/orders with the customer's bearer token.

    A 401, or a 200 whose body reports an expired session, raises
    ExternalServiceError with status_code 401 so callers can ask the user to
    sign in again. Any other failure raises ExternalServiceError as well.
    """

    def __init__(self, base_url: str, *, timeout_ms: int = 8000):
        self.url = f"{base_url.rstrip('/')}{ACCOUNT_ORDERS_PATH}"
        self.timeout_ms = max(1, timeout_ms)

    def list_orders(self, access_token: str, *, request_id: str = "") -> AccountOrders:
        try:
            with httpx.Client(timeout=self.timeout_ms / 1000) as client:
                response = client.get(
                    self.url,
                    headers={
                        "Accept": "application/json",
                        "Authorization": f"Bearer {access_token.strip()}",
                    },
                )
        except httpx.TimeoutException as exc:
            raise ExternalServiceError("Account orders timeout", 0, "timeout") from exc
        except httpx.HTTPError as exc:
            raise ExternalServiceError("Account orders network error", 0, "network") from exc

        try:
            body = response.json()
        except ValueError:
            body = {"raw": response.text}

        if response.status_code == 401 or is_unauthenticated_payload(body):
            logger.warning(
                "account_orders_unauthorized",
                extra={"context": {"request_id": request_id, "status_code": response.status_code}},
            )
            raise ExternalServiceError("Account orders unauthorized response", 401, "http", body)

        if response.status_code != 200:
            raise ExternalServiceError(
                f"Account orders HTTP {response.status_code}", response.status_code, "http", body
            )

        result = parse_account_orders(body)
        logger.info(
            "account_orders_loaded",
            extra={"context": {"request_id": request_id, "orders_shown": len(result.orders), "total": result.total}},
        )
        return result


def build_account_orders_client(config: Settings) -> AccountOrdersClient:
    return AccountOrdersClient(config.order_lookup_base_url, timeout_ms=config.account_orders_timeout_ms)
