import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from app.logging_config import get_logger
from app.services.guest_verification import normalize_answer_text

logger = get_logger("intent_service")


class Intent(str, Enum):
    ORDERS = "orders"  # order status, tracking, "where is my order"
    PAYMENT_SHIPPING = "payment_shipping"
    STORE_INFO = "store_info"  # hours, address, contact
    PRODUCTS = "products"
    GREETING = "greeting"
    THANKS = "thanks"
    GENERAL = "general"


@dataclass
class IntentResult:
    intent: str
    confidence: float
    entities: list[str] = field(default_factory=list)


class IntentClassifier(ABC):
    """Maps free text to an intent label."""

    @abstractmethod
    def classify(self, text: str) -> IntentResult:
        pass


# Checked in order; the first matching intent wins.
INTENT_PATTERNS = (
    (
        Intent.ORDERS,
        (
            re.compile(r"\b(pedido|pedidos|orden|ordenes|order|orders|compra|compras)\b"),
            re.compile(r"\b(tracking|seguimiento|envio de mi|donde esta mi|wheres my|where is my)\b"),
            re.compile(r"\border[_\s-]?id\b"),
        ),
    ),
    (
        Intent.PAYMENT_SHIPPING,
        (
            re.compile(r"\b(pago|pagos|pagar|tarjeta|cuotas|transferencia|mercado ?pago|payment|pay)\b"),
            re.compile(r"\b(envio|envios|enviar|retiro|shipping|delivery)\b"),
        ),
    ),
    (
        Intent.STORE_INFO,
        (
            re.compile(r"\b(horario|horarios|direccion|local|sucursal|abren|cierran|hours|address|open)\b"),
        ),
    ),
    (
        Intent.PRODUCTS,
        (
            re.compile(r"\b(stock|precio|precios|producto|productos|manga|comic|libro|price|product)\b"),
        ),
    ),
    (Intent.THANKS, (re.compile(r"\b(gracias|genial gracias|thanks|thank you|thx)\b"),)),
    (Intent.GREETING, (re.compile(r"^(hola|buenas|buen dia|buenos dias|buenas tardes|hello|hi|hey)\b"),)),
)

ORDER_ENTITY_PATTERN = re.compile(r"(?:#\s*\d{1,12}|\b(?:pedido|orden|order)\s*[:#-]?\s*\d{1,12})", re.IGNORECASE)


def extract_entities(text: str) -> list[str]:
    return [match.group(0).strip() for match in ORDER_ENTITY_PATTERN.finditer(text or "")]


class KeywordIntentClassifier(IntentClassifier):
    """Deterministic keyword routing for storefront chat."""

    def classify(self, text: str) -> IntentResult:
        normalized = normalize_answer_text(text)
        entities = extract_entities(text)
        if not normalized:
            return IntentResult(intent=Intent.GENERAL.value, confidence=0.0, entities=entities)

        for intent, patterns in INTENT_PATTERNS:
            if any(pattern.search(normalized) for pattern in patterns):
                return IntentResult(intent=intent.value, confidence=0.9, entities=entities)

        return IntentResult(intent=Intent.GENERAL.value, confidence=0.5, entities=entities)
