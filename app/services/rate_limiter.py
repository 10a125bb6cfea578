"""Sliding-window gate consulted before any signed order lookup."""

import hashlib
import threading
import time
import uuid
from dataclasses import dataclass
from typing import Optional

import redis

from app.config import Settings
from app.logging_config import get_logger
from app.services.alert_service import alert_warning

logger = get_logger("rate_limiter")

KEY_PREFIX = "orderdesk:order_lookup"
MIN_WINDOW_MS = 1000

RATE_LIMIT_SCRIPT = """
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local member = ARGV[3]
local keys_count = #KEYS

for i = 1, keys_count do
  redis.call('ZREMRANGEBYSCORE', KEYS[i], '-inf', now - window)
  local count = redis.call('ZCARD', KEYS[i])
  local limit = tonumber(ARGV[3 + i])
  if count >= limit then
    redis.call('PEXPIRE', KEYS[i], window)
    return {0, i}
  end
end

for i = 1, keys_count do
  redis.call('ZADD', KEYS[i], now, member)
  redis.call('PEXPIRE', KEYS[i], window)
end

return {1, 0}
""".strip()


@dataclass(frozen=True)
class RateLimitDecision:
    allowed: bool
    degraded: bool = False
    blocked_by: Optional[str] = None  # ip, user, order


@dataclass(frozen=True)
class RateLimitDimension:
    scope: str
    key: str
    limit: int


def normalize_client_ip(value: Optional[str]) -> Optional[str]:
    if not isinstance(value, str):
        return None
    first = value.split(",")[0].strip().lower()
    if not first:
        return None
    if first.startswith("::ffff:"):
        first = first[len("::ffff:"):]
    return first or None


def build_rate_limit_key(scope: str, value: str) -> str:
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}:{scope}:{digest}"


class OrderLookupRateLimiter:
    """Checks ip, user and order dimensions in that order; the first exhausted one blocks.

    With a Redis URL the window lives in Redis so all workers share it. Without one the
    window is kept per process. A Redis failure never blocks a lookup: the call is
    allowed and flagged as degraded.
    """

    def __init__(
        self,
        *,
        enabled: bool = True,
        redis_url: str = "",
        window_ms: int = 900_000,
        ip_max: int = 8,
        user_max: int = 6,
        order_max: int = 4,
        socket_timeout_seconds: float = 0.3,
        redis_client=None,
        clock=time.time,
    ):
        self.enabled = enabled
        self.redis_url = (redis_url or "").strip()
        self.window_ms = max(MIN_WINDOW_MS, window_ms)
        self.ip_max = max(1, ip_max)
        self.user_max = max(1, user_max)
        self.order_max = max(1, order_max)
        self.socket_timeout_seconds = socket_timeout_seconds
        self._redis_client = redis_client
        self._clock = clock
        self._local_windows: dict[str, list[float]] = {}
        self._local_lock = threading.Lock()
        self._last_sweep_ms = 0
        self._degraded_alerted = False
        self._missing_redis_logged = False

    def consume(
        self,
        ip: Optional[str],
        user_id: Optional[str],
        order_id: int,
        request_id: Optional[str] = None,
    ) -> RateLimitDecision:
        if not self.enabled:
            return RateLimitDecision(allowed=True)

        dimensions = self.build_dimensions(ip, user_id, order_id)
        now_ms = int(self._clock() * 1000)

        client = self._get_redis_client()
        if client is None:
            return self._consume_local(dimensions, now_ms)

        member = f"{now_ms}:{request_id or '-'}:{uuid.uuid4().hex[:8]}"
        args = [now_ms, self.window_ms, member, *[dimension.limit for dimension in dimensions]]
        try:
            result = client.eval(RATE_LIMIT_SCRIPT, len(dimensions), *[d.key for d in dimensions], *args)
        except redis.RedisError as exc:
            self._redis_client = None
            self._report_degraded(request_id, type(exc).__name__)
            return RateLimitDecision(allowed=True, degraded=True)

        allowed, blocked_index = int(result[0]), int(result[1])
        if allowed == 1:
            return RateLimitDecision(allowed=True)
        blocked_by = dimensions[blocked_index - 1].scope if 0 < blocked_index <= len(dimensions) else None
        return RateLimitDecision(allowed=False, blocked_by=blocked_by)

    def build_dimensions(self, ip: Optional[str], user_id: Optional[str], order_id: int) -> list[RateLimitDimension]:
        dimensions = []
        normalized_ip = normalize_client_ip(ip)
        if normalized_ip:
            dimensions.append(RateLimitDimension("ip", build_rate_limit_key("ip", normalized_ip), self.ip_max))

        normalized_user = user_id.strip() if isinstance(user_id, str) else ""
        if normalized_user:
            dimensions.append(RateLimitDimension("user", build_rate_limit_key("user", normalized_user), self.user_max))

        dimensions.append(RateLimitDimension("order", build_rate_limit_key("order", str(order_id)), self.order_max))
        return dimensions

    def _consume_local(self, dimensions: list[RateLimitDimension], now_ms: int) -> RateLimitDecision:
        cutoff = now_ms - self.window_ms
        with self._local_lock:
            if now_ms - self._last_sweep_ms >= self.window_ms:
                self._sweep_local(cutoff)
                self._last_sweep_ms = now_ms
            for dimension in dimensions:
                hits = [ts for ts in self._local_windows.get(dimension.key, []) if ts > cutoff]
                if hits:
                    self._local_windows[dimension.key] = hits
                else:
                    self._local_windows.pop(dimension.key, None)
                if len(hits) >= dimension.limit:
                    return RateLimitDecision(allowed=False, blocked_by=dimension.scope)
            for dimension in dimensions:
                self._local_windows.setdefault(dimension.key, []).append(now_ms)
        return RateLimitDecision(allowed=True)

    def _sweep_local(self, cutoff: int) -> None:
        """Drop keys with no hit inside the window. Hits are appended in time order."""
        stale = [key for key, hits in self._local_windows.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._local_windows[key]

    def _get_redis_client(self):
        if self._redis_client is not None:
            return self._redis_client
        if not self.redis_url:
            if not self._missing_redis_logged:
                self._missing_redis_logged = True
                logger.warning(
                    "Order lookup rate limiter using per-process window",
                    extra={"context": {"reason": "missing_redis_url"}},
                )
            return None
        self._redis_client = redis.Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout_seconds,
            socket_connect_timeout=self.socket_timeout_seconds,
        )
        return self._redis_client

    def _report_degraded(self, request_id: Optional[str], error_type: str) -> None:
        logger.warning(
            "order_lookup_rate_limit_degraded",
            extra={"context": {"request_id": request_id, "error_type": error_type}},
        )
        if not self._degraded_alerted:
            alert_warning("Order lookup rate limiter degraded (redis unavailable)", {"error_type": error_type})
            self._degraded_alerted = True


def build_rate_limiter(config: Settings) -> OrderLookupRateLimiter:
    return OrderLookupRateLimiter(
        enabled=config.order_lookup_rate_limit_enabled,
        redis_url=config.redis_url,
        window_ms=config.order_lookup_rate_limit_window_ms,
        ip_max=config.order_lookup_rate_limit_ip_max,
        user_max=config.order_lookup_rate_limit_user_max,
        order_max=config.order_lookup_rate_limit_order_max,
        socket_timeout_seconds=config.redis_socket_timeout_seconds,
    )
