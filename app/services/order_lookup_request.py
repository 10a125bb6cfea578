"""Extract an order id and identity factors from a guest's free-text message."""

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional

from app.services.order_lookup_client import LookupIdentity

MAX_ORDER_ID_DIGITS = 12
MIN_IDENTITY_FACTORS = 2

_ORDER_LABEL = r"(?:order[_\s-]?id|pedido|orden|order)"
_DNI_LABEL = r"(?:dni|documento)"
_PHONE_LABEL = r"(?:telefono|tel[eé]fono|celular|whatsapp|phone)"
_NAME_LABEL = r"(?:nombre|(?<!last )(?<!last_)(?<!last-)name)"
_LAST_NAME_LABEL = r"(?:apellido|last[_\s-]?name)"

ORDER_ID_BY_KEY_PATTERN = re.compile(rf"\b{_ORDER_LABEL}\s*[:=#-]?\s*#?\s*(\d{{1,12}})\b", re.IGNORECASE)
ORDER_ID_BY_HASH_PATTERN = re.compile(r"#\s*(\d{1,12})\b")
DNI_PATTERN = re.compile(rf"\b{_DNI_LABEL}\s*[:=#-]?\s*([0-9.\-\s]{{1,20}})\b", re.IGNORECASE)
PHONE_PATTERN = re.compile(rf"\b{_PHONE_LABEL}\s*[:=#-]?\s*([+0-9()\-.\s]{{1,30}})\b", re.IGNORECASE)
NAME_PATTERN = re.compile(rf"\b{_NAME_LABEL}\s*[:=#-]?\s*([^,;\n]+)", re.IGNORECASE)
LAST_NAME_PATTERN = re.compile(rf"\b{_LAST_NAME_LABEL}\s*[:=#-]?\s*([^,;\n]+)", re.IGNORECASE)
LABELED_SEGMENT_PATTERN = re.compile(
    rf"\b(?:{_ORDER_LABEL}|{_DNI_LABEL}|{_PHONE_LABEL}|{_NAME_LABEL}|{_LAST_NAME_LABEL})\b", re.IGNORECASE
)

NAME_VALUE_PATTERN = re.compile(r"^[a-zA-ZáéíóúÁÉÍÓÚñÑüÜ'\-\s]{1,50}$")
PHONE_VALUE_PATTERN = re.compile(r"^\+?\d{8,20}$")
DNI_VALUE_PATTERN = re.compile(r"^\d{7,8}$")

NAME_STOP_WORDS = {
    "quiero", "saber", "estado", "pedido", "orden", "donde", "esta", "tenes", "tienes",
    "gracias", "ayuda", "consultar", "consulta", "favor", "dale", "nro", "numero", "necesito",
    "mi", "hola", "buenas", "che", "si", "no", "tengo", "claro", "listo", "ok",
    "mis", "pedidos", "tomo", "manga", "comic", "producto",
    "where", "my", "order", "status", "thanks", "help", "hello", "hi", "yes", "sure",
}


@dataclass
class LookupRequest:
    order_id: Optional[int] = None
    identity: LookupIdentity = field(default_factory=LookupIdentity)
    invalid_factors: list[str] = field(default_factory=list)
    inferred_factors: list[str] = field(default_factory=list)

    @property
    def provided_factors(self) -> int:
        identity = self.identity
        return sum(1 for value in (identity.dni, identity.name, identity.last_name, identity.phone) if value)

    @property
    def missing_factors(self) -> int:
        return max(0, MIN_IDENTITY_FACTORS - self.provided_factors)

    @property
    def is_complete(self) -> bool:
        return self.order_id is not None and self.provided_factors >= MIN_IDENTITY_FACTORS

    @property
    def has_signals(self) -> bool:
        return self.order_id is not None or self.provided_factors > 0 or bool(self.invalid_factors)

    @property
    def has_strong_signals(self) -> bool:
        """An order id plus at least one identity hint, valid or not."""
        return self.order_id is not None and (self.provided_factors > 0 or bool(self.invalid_factors))

    @property
    def only_inferred_name(self) -> bool:
        """The sole signal is two unlabeled words read as name and last name."""
        identity = self.identity
        return (
            self.order_id is None
            and not self.invalid_factors
            and not identity.dni
            and not identity.phone
            and "name" in self.inferred_factors
            and "last_name" in self.inferred_factors
        )


def parse_lookup_request(text: str, entities: Iterable[str] = ()) -> LookupRequest:
    text = text or ""
    order_id = _resolve_order_id(text, entities)

    dni, dni_invalid = _validate_dni(_extract(text, DNI_PATTERN))
    name, name_invalid = _validate_name(_extract(text, NAME_PATTERN))
    last_name, last_name_invalid = _validate_name(_extract(text, LAST_NAME_PATTERN))
    phone, phone_invalid = _validate_phone(_extract(text, PHONE_PATTERN))

    inferred, inferred_factors = _infer_unlabeled_identity(
        text, order_id, dni=dni, name=name, last_name=last_name, phone=phone
    )

    invalid_factors = [
        factor
        for factor, invalid in (
            ("dni", dni_invalid),
            ("name", name_invalid),
            ("last_name", last_name_invalid),
            ("phone", phone_invalid),
        )
        if invalid
    ]
    return LookupRequest(
        order_id=order_id,
        identity=inferred,
        invalid_factors=invalid_factors,
        inferred_factors=inferred_factors,
    )


def _resolve_order_id(text: str, entities: Iterable[str]) -> Optional[int]:
    parsed = _order_id_from_labels(text)
    if parsed:
        return parsed

    if re.fullmatch(r"\d{1,12}", text.strip()):
        return _to_positive_int(text.strip())

    for entity in entities:
        if isinstance(entity, str):
            parsed = _order_id_from_labels(entity)
            if parsed:
                return parsed
    return None


def _order_id_from_labels(value: str) -> Optional[int]:
    for pattern in (ORDER_ID_BY_KEY_PATTERN, ORDER_ID_BY_HASH_PATTERN):
        match = pattern.search(value)
        parsed = _to_positive_int(match.group(1)) if match else None
        if parsed:
            return parsed
    return None


def _to_positive_int(value: str) -> Optional[int]:
    value = (value or "").strip()
    if not value.isdigit() or len(value) > MAX_ORDER_ID_DIGITS:
        return None
    parsed = int(value)
    return parsed if parsed > 0 else None


def _extract(text: str, pattern: re.Pattern) -> Optional[str]:
    match = pattern.search(text)
    if not match or not match.group(1):
        return None
    return match.group(1).strip() or None


def _validate_dni(value: Optional[str]) -> tuple[Optional[str], bool]:
    if not value:
        return None, False
    digits = re.sub(r"\D+", "", value)
    if DNI_VALUE_PATTERN.match(digits):
        return digits, False
    return None, True


def _validate_name(value: Optional[str]) -> tuple[Optional[str], bool]:
    if not value:
        return None, False
    normalized = re.sub(r"\s+", " ", value).strip()
    if NAME_VALUE_PATTERN.match(normalized):
        return normalized, False
    return None, True


def _validate_phone(value: Optional[str]) -> tuple[Optional[str], bool]:
    if not value:
        return None, False
    normalized = _normalize_phone(value)
    if PHONE_VALUE_PATTERN.match(normalized):
        return normalized, False
    return None, True


def _normalize_phone(value: str) -> str:
    return re.sub(r"[().\-\s]", "", value).strip()


def _infer_unlabeled_identity(
    text: str,
    order_id: Optional[int],
    *,
    dni: Optional[str],
    name: Optional[str],
    last_name: Optional[str],
    phone: Optional[str],
) -> tuple[LookupIdentity, list[str]]:
    """Fill missing factors from unlabeled segments; also return which ones were filled."""
    order_value = str(order_id) if order_id else None
    found = {"dni": dni, "name": name, "last_name": last_name, "phone": phone}
    inferred = []

    def fill(factor, value):
        if value and not found[factor]:
            found[factor] = value
            inferred.append(factor)

    for segment in _split_segments(text):
        if LABELED_SEGMENT_PATTERN.search(segment):
            if not found["name"] or not found["last_name"]:
                first, last = _name_parts(_strip_labeled_values(segment))
                fill("name", first)
                fill("last_name", last)
            continue

        digits = re.sub(r"\D+", "", segment)
        if digits:
            if order_value and digits == order_value:
                continue
            if not found["dni"] and DNI_VALUE_PATTERN.match(digits):
                fill("dni", digits)
                continue
            if not found["phone"]:
                candidate = _normalize_phone(segment)
                if PHONE_VALUE_PATTERN.match(candidate):
                    fill("phone", candidate)
                    continue

        if not found["name"] or not found["last_name"]:
            first, last = _name_parts(segment)
            fill("name", first)
            fill("last_name", last)

    return LookupIdentity(**found), inferred


def _split_segments(text: str) -> list[str]:
    segments = [segment.strip() for segment in re.split(r"[,;\n]+", text) if segment.strip()]
    if len(segments) > 1:
        return segments
    return [text.strip()] if text.strip() else []


def _strip_labeled_values(segment: str) -> str:
    stripped = re.sub(rf"\b{_ORDER_LABEL}\s*[:=#-]?\s*#?\s*\d{{1,12}}\b", " ", segment, flags=re.IGNORECASE)
    stripped = re.sub(rf"\b{_DNI_LABEL}\s*[:=#-]?\s*[0-9.\-\s]{{1,20}}\b", " ", stripped, flags=re.IGNORECASE)
    stripped = re.sub(rf"\b{_PHONE_LABEL}\s*[:=#-]?\s*[+0-9()\-.\s]{{1,30}}\b", " ", stripped, flags=re.IGNORECASE)
    stripped = re.sub(rf"\b(?:{_NAME_LABEL}|{_LAST_NAME_LABEL})\s*[:=#-]?\s*", " ", stripped, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", stripped).strip()


def _name_parts(segment: str) -> tuple[Optional[str], Optional[str]]:
    normalized = re.sub(r"\s+", " ", segment).strip()
    if not normalized or not NAME_VALUE_PATTERN.match(normalized):
        return None, None
    words = normalized.split(" ")
    if len(words) != 2:
        return None, None
    if any(word.lower() in NAME_STOP_WORDS for word in words):
        return None, None
    return words[0], words[1]
