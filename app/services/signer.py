"""HMAC signing for bot-to-backend order lookup requests."""

import hashlib
import hmac

from app.errors import SignerConfigurationError

ORDER_LOOKUP_METHOD = "POST"


def build_canonical_string(method: str, path: str, timestamp: str, nonce: str, raw_body: str) -> str:
    body_hash = hashlib.sha256(raw_body.encode("utf-8")).hexdigest()
    return "\n".join([method.upper(), path, timestamp, nonce, body_hash])


class RequestSigner:
    """Signs requests for a single method + path with a shared secret.

    Timestamp and nonce are supplied by the caller so the output is a pure
    function of the inputs.
    """

    def __init__(self, secret: str, path: str, method: str = ORDER_LOOKUP_METHOD):
        secret = (secret or "").strip()
        if not secret:
            raise SignerConfigurationError("BOT_ORDER_LOOKUP_HMAC_SECRET is required")
        self._secret = secret.encode("utf-8")
        self.method = method.upper()
        self.path = path

    def sign(self, timestamp: str, nonce: str, raw_body: str) -> str:
        canonical = build_canonical_string(self.method, self.path, timestamp, nonce, raw_body)
        return hmac.new(self._secret, canonical.encode("utf-8"), hashlib.sha256).hexdigest()
