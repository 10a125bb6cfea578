"""Guest order verification flow.

A guest (no access token) can see one order after proving ownership with the
order id plus at least two identity factors. The current state is not stored
in its own table: it is read back from the metadata of the latest bot turn,
so every rule here must let unrelated messages fall through to normal
handling instead of trapping the user in the flow.

The reducer is pure: `reduce_guest_flow(state, message) -> GuestTransition`.
"""

import re
import unicodedata
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from app.services.order_lookup_request import LookupRequest, parse_lookup_request

GUEST_FLOW_METADATA_KEY = "ordersGuestFlowState"
ORDERS_INTENT = "orders"


class GuestFlowState(str, Enum):
    NONE = "none"
    AWAITING_HAS_DATA_ANSWER = "awaiting_has_data_answer"
    AWAITING_LOOKUP_PAYLOAD = "awaiting_lookup_payload"


class GuestAction(str, Enum):
    PASS_THROUGH = "pass_through"
    ASK_HAS_DATA = "ask_has_data"
    ASK_LOOKUP_PAYLOAD = "ask_lookup_payload"
    ASK_ORDER_ID = "ask_order_id"
    ASK_MISSING_FACTORS = "ask_missing_factors"
    REJECT_INVALID_FORMAT = "reject_invalid_format"
    REQUIRE_AUTH = "require_auth"
    LOOKUP = "lookup"


class HasDataAnswer(str, Enum):
    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"


VALID_TRANSITIONS = {
    GuestFlowState.NONE: [
        GuestFlowState.NONE,
        GuestFlowState.AWAITING_HAS_DATA_ANSWER,
        GuestFlowState.AWAITING_LOOKUP_PAYLOAD,
    ],
    GuestFlowState.AWAITING_HAS_DATA_ANSWER: [
        GuestFlowState.NONE,
        GuestFlowState.AWAITING_HAS_DATA_ANSWER,
        GuestFlowState.AWAITING_LOOKUP_PAYLOAD,
    ],
    GuestFlowState.AWAITING_LOOKUP_PAYLOAD: [
        GuestFlowState.NONE,
        GuestFlowState.AWAITING_LOOKUP_PAYLOAD,
    ],
}


class InvalidTransitionError(Exception):
    def __init__(self, from_state: GuestFlowState, to_state: GuestFlowState):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid guest flow transition: {from_state.value} -> {to_state.value}")


def can_transition(from_state: GuestFlowState, to_state: GuestFlowState) -> bool:
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def transition(from_state: GuestFlowState, to_state: GuestFlowState) -> GuestFlowState:
    """Perform state transition. Raises InvalidTransitionError if not allowed."""
    if not can_transition(from_state, to_state):
        raise InvalidTransitionError(from_state, to_state)
    return to_state


# Answer vocabulary, matched on normalized text (see normalize_answer_text).
STRONG_YES_TERMS = (
    "si", "sii", "tengo", "los tengo", "cuento con", "dispongo", "claro", "de una",
    "yes", "yeah", "yep", "sure", "i have", "i do",
)
WEAK_YES_TERMS = (
    "dale", "ok", "okey", "okay", "listo", "joya", "perfecto", "genial", "buenisimo", "buenisima",
)
STRONG_NO_TERMS = (
    "no", "noo", "nop", "negativo", "no tengo", "no cuento", "no dispongo", "todavia no", "aun no",
    "ni ahi", "nope", "not yet", "i dont", "dont have",
)
AMBIGUOUS_TERMS = (
    "no se", "nose", "quizas", "tal vez", "capaz", "puede ser", "puede que",
    "maybe", "not sure", "dont know", "perhaps",
)
SHORT_ISOLATED_ACK_TERMS = {
    "si", "sii", "claro", "de una", "dale", "ok", "okey", "okay", "listo", "joya", "perfecto",
    "genial", "buenisimo", "buenisima", "yes", "yeah", "yep", "sure",
}
MAX_SHORT_ACK_WORDS = 3


def normalize_answer_text(text: str) -> str:
    """Lowercase, drop accents and apostrophes, squeeze letter runs ("siii" -> "sii")."""
    if not text:
        return ""
    normalized = unicodedata.normalize("NFD", text.lower())
    normalized = "".join(ch for ch in normalized if unicodedata.category(ch) != "Mn")
    normalized = re.sub(r"['’]", "", normalized)
    normalized = re.sub(r"([a-z])\1{2,}", r"\1\1", normalized)
    normalized = re.sub(r"[^\w\s]|_", " ", normalized)
    return re.sub(r"\s+", " ", normalized).strip()


def _contains_term(text: str, terms: Iterable[str]) -> bool:
    return any(re.search(rf"(^|\s){re.escape(term)}(\s|$)", text) for term in terms)


def is_short_isolated_ack(text: str) -> bool:
    normalized = normalize_answer_text(text)
    if not normalized or len(normalized.split()) > MAX_SHORT_ACK_WORDS:
        return False
    return normalized in SHORT_ISOLATED_ACK_TERMS


def classify_has_data_answer(text: str) -> HasDataAnswer:
    """Classify a reply to "do you have your order data?" as yes/no/unknown.

    Ambiguous hedges ("no se", "maybe") are unknown even though they contain "no".
    A weak yes ("ok", "dale") only counts when it is the whole message.
    """
    normalized = normalize_answer_text(text)
    if not normalized:
        return HasDataAnswer.UNKNOWN
    if _contains_term(normalized, AMBIGUOUS_TERMS):
        return HasDataAnswer.UNKNOWN
    if _contains_term(normalized, STRONG_NO_TERMS):
        return HasDataAnswer.NO
    if _contains_term(normalized, STRONG_YES_TERMS):
        return HasDataAnswer.YES
    if _contains_term(normalized, WEAK_YES_TERMS) and is_short_isolated_ack(text):
        return HasDataAnswer.YES
    return HasDataAnswer.UNKNOWN


@dataclass(frozen=True)
class GuestMessage:
    text: str
    intent: str
    authenticated: bool
    request: LookupRequest = field(default_factory=LookupRequest)
    answer: HasDataAnswer = HasDataAnswer.UNKNOWN
    short_ack: bool = False

    @property
    def is_garbled(self) -> bool:
        return not normalize_answer_text(self.text)


@dataclass(frozen=True)
class GuestTransition:
    next_state: GuestFlowState
    action: GuestAction
    request: Optional[LookupRequest] = None

    @property
    def handled(self) -> bool:
        return self.action != GuestAction.PASS_THROUGH


def classify_guest_message(
    text: str,
    intent: str,
    *,
    authenticated: bool,
    entities: Iterable[str] = (),
) -> GuestMessage:
    return GuestMessage(
        text=text,
        intent=intent,
        authenticated=authenticated,
        request=parse_lookup_request(text, entities),
        answer=classify_has_data_answer(text),
        short_ack=is_short_isolated_ack(text),
    )


def _move(state: GuestFlowState, next_state: GuestFlowState, action: GuestAction, request=None) -> GuestTransition:
    return GuestTransition(next_state=transition(state, next_state), action=action, request=request)


def _ask_for_missing(state: GuestFlowState, request: LookupRequest) -> GuestTransition:
    if request.order_id is None:
        action = GuestAction.ASK_ORDER_ID
    elif request.invalid_factors:
        action = GuestAction.REJECT_INVALID_FORMAT
    elif request.provided_factors < 2:
        action = GuestAction.ASK_MISSING_FACTORS
    else:
        action = GuestAction.REJECT_INVALID_FORMAT
    return _move(state, GuestFlowState.AWAITING_LOOKUP_PAYLOAD, action, request)


def reduce_guest_flow(state: GuestFlowState, message: GuestMessage) -> GuestTransition:
    """Decide the next guest flow state and what to do with this message."""
    if message.authenticated:
        return _move(state, GuestFlowState.NONE, GuestAction.PASS_THROUGH)

    if message.is_garbled:
        return GuestTransition(next_state=state, action=GuestAction.PASS_THROUGH)

    request = message.request
    if request.is_complete:
        return _move(state, GuestFlowState.NONE, GuestAction.LOOKUP, request)

    if state == GuestFlowState.NONE:
        if message.intent != ORDERS_INTENT and not request.has_strong_signals:
            return _move(state, GuestFlowState.NONE, GuestAction.PASS_THROUGH)
        if request.has_signals:
            return _ask_for_missing(state, request)
        return _move(state, GuestFlowState.AWAITING_HAS_DATA_ANSWER, GuestAction.ASK_HAS_DATA)

    if message.answer == HasDataAnswer.NO:
        return _move(state, GuestFlowState.NONE, GuestAction.REQUIRE_AUTH)

    # Two loose words ("thank you", "buen dia") are not a lookup payload on their own.
    if request.only_inferred_name and message.intent != ORDERS_INTENT and message.answer != HasDataAnswer.YES:
        return _move(state, GuestFlowState.NONE, GuestAction.PASS_THROUGH)

    if state == GuestFlowState.AWAITING_HAS_DATA_ANSWER:
        if message.answer == HasDataAnswer.YES:
            return _move(state, GuestFlowState.AWAITING_LOOKUP_PAYLOAD, GuestAction.ASK_LOOKUP_PAYLOAD)
        if request.has_signals:
            return _ask_for_missing(state, request)
        return _move(state, GuestFlowState.NONE, GuestAction.PASS_THROUGH)

    if request.has_signals:
        return _ask_for_missing(state, request)
    if message.intent == ORDERS_INTENT or (message.answer == HasDataAnswer.YES and message.short_ack):
        return _move(state, GuestFlowState.AWAITING_LOOKUP_PAYLOAD, GuestAction.ASK_LOOKUP_PAYLOAD)
    return _move(state, GuestFlowState.NONE, GuestAction.PASS_THROUGH)


def parse_state(value) -> GuestFlowState:
    if value is None:
        return GuestFlowState.NONE
    try:
        return GuestFlowState(value)
    except ValueError:
        return GuestFlowState.NONE


def resolve_state_from_history(history) -> GuestFlowState:
    """Read the flow state from the newest bot message that recorded one.

    `history` is oldest first, as returned by get_conversation_history.
    """
    for row in reversed(list(history)):
        if row.sender != "bot":
            continue
        metadata = row.message_metadata
        if isinstance(metadata, dict) and GUEST_FLOW_METADATA_KEY in metadata:
            return parse_state(metadata[GUEST_FLOW_METADATA_KEY])
    return GuestFlowState.NONE


def state_to_metadata(state: GuestFlowState) -> Optional[str]:
    return None if state == GuestFlowState.NONE else state.value
