from types import SimpleNamespace
from unittest.mock import DEFAULT, Mock, patch
from uuid import uuid4

import pytest
from sqlalchemy.exc import OperationalError

from app.config import Settings
from app.errors import ExternalServiceError, InvalidChatPayloadError
from app.schemas.chat import ChatResponse
from app.services import metrics
from app.services.account_orders_client import AccountOrders
from app.services.context_service import StaticContextEnricher
from app.services.conversation_service import PersistedTurn
from app.services.intent_service import KeywordIntentClassifier
from app.services.order_lookup_client import Money, OrderSummary
from app.services.order_lookup_responses import (
    BACKEND_ERROR_MESSAGE,
    DUPLICATE_FALLBACK_MESSAGE,
    HAS_DATA_QUESTION,
    REQUIRES_AUTH_MESSAGE,
    SESSION_EXPIRED_MESSAGE,
    THROTTLED_MESSAGE,
    VERIFICATION_FAILED_MESSAGE,
)
from app.services.rate_limiter import OrderLookupRateLimiter, RateLimitDecision
from app.services.reply_service import FALLBACK_REPLY, TemplateReplyGenerator
from app.services.result import Result
from app.services.turn_pipeline import TurnCommand, TurnPipeline, audit_status_for

PIPELINE = "app.services.turn_pipeline"


@pytest.fixture
def store():
    """Patch every persistence call the pipeline makes."""
    with patch.multiple(
        PIPELINE,
        start_processing=DEFAULT,
        get_last_reply_for_event=DEFAULT,
        upsert_user=DEFAULT,
        upsert_conversation=DEFAULT,
        get_conversation_history=DEFAULT,
        persist_turn=DEFAULT,
        mark_processed=DEFAULT,
        mark_failed=DEFAULT,
        write_audit=DEFAULT,
        alert_error=DEFAULT,
    ) as mocks:
        mocks["start_processing"].return_value = False
        mocks["get_conversation_history"].return_value = []
        mocks["persist_turn"].return_value = PersistedTurn(user_message_id=uuid4(), bot_message_id=uuid4())
        yield SimpleNamespace(**mocks)


@pytest.fixture
def lookup_client():
    return Mock()


@pytest.fixture
def account_orders_client():
    client = Mock()
    client.list_orders.return_value = AccountOrders()
    return client


@pytest.fixture
def rate_limiter():
    return OrderLookupRateLimiter(enabled=False)


@pytest.fixture
def pipeline(db_session, lookup_client, account_orders_client, rate_limiter):
    return TurnPipeline(
        db_session,
        classifier=KeywordIntentClassifier(),
        enricher=StaticContextEnricher(),
        reply_generator=TemplateReplyGenerator(),
        rate_limiter=rate_limiter,
        lookup_client=lookup_client,
        account_orders_client=account_orders_client,
        config=Settings(bot_order_lookup_hmac_secret="secret", chat_max_text_chars=200),
    )


def _command(text, **overrides):
    params = {
        "request_id": "req-1",
        "external_event_id": "evt-1",
        "source": "web",
        "user_id": "guest-1",
        "conversation_id": "conv-1",
        "text": text,
        "client_ip": "203.0.113.7",
    }
    params.update(overrides)
    return TurnCommand(**params)


def _bot_row(metadata):
    return SimpleNamespace(sender="bot", content="...", message_metadata=metadata)


def _persisted_metadata(store):
    return store.persist_turn.call_args.kwargs["metadata"]


def _audit_entry(store):
    return store.write_audit.call_args.args[1]


def _counter(name, labels=None):
    return metrics.registry.get_sample_value(name, labels or {}) or 0.0


class TestSanitize:
    def test_blank_text_rejected_before_claim(self, pipeline, store):
        with pytest.raises(InvalidChatPayloadError):
            pipeline.handle(_command("  <b> </b> "))

        store.start_processing.assert_not_called()

    def test_text_over_limit_rejected(self, pipeline, store):
        with pytest.raises(InvalidChatPayloadError):
            pipeline.handle(_command("a" * 201))

        store.start_processing.assert_not_called()

    def test_blank_conversation_rejected(self, pipeline, store):
        with pytest.raises(InvalidChatPayloadError):
            pipeline.handle(_command("hola", conversation_id=" "))

    def test_persists_sanitized_text(self, pipeline, store):
        pipeline.handle(_command("<script>x</script>hola\x00 che"))

        assert store.persist_turn.call_args.kwargs["user_message"] == "x hola che"


class TestDuplicate:
    def test_returns_previous_reply_without_side_effects(self, pipeline, store):
        store.start_processing.return_value = True
        previous_id = uuid4()
        store.get_last_reply_for_event.return_value = SimpleNamespace(
            id=previous_id, content="Respuesta original", message_metadata={"intent": "products"}
        )

        response = pipeline.handle(_command("tienen stock?"))

        assert response.ok is True
        assert response.message == "Respuesta original"
        assert response.response_id == str(previous_id)
        assert response.intent == "products"
        store.upsert_user.assert_not_called()
        store.persist_turn.assert_not_called()
        store.mark_processed.assert_not_called()

        entry = _audit_entry(store)
        assert entry.status == "duplicate"
        assert entry.intent == "duplicate"
        assert entry.metadata == {"externalEventId": "evt-1"}

    def test_without_previous_reply(self, pipeline, store):
        store.start_processing.return_value = True
        store.get_last_reply_for_event.return_value = None

        response = pipeline.handle(_command("hola"))

        assert response.message == DUPLICATE_FALLBACK_MESSAGE
        assert response.response_id is None

    def test_claim_failure_propagates(self, pipeline, store):
        store.start_processing.side_effect = OperationalError("INSERT", {}, Exception("db down"))

        with pytest.raises(OperationalError):
            pipeline.handle(_command("hola"))

        store.mark_failed.assert_not_called()
        store.write_audit.assert_not_called()


class TestSideEffectOrder:
    def test_persist_then_mark_then_audit(self, pipeline, store):
        calls = Mock()
        calls.attach_mock(store.persist_turn, "persist_turn")
        calls.attach_mock(store.mark_processed, "mark_processed")
        calls.attach_mock(store.write_audit, "write_audit")

        response = pipeline.handle(_command("a que hora abren?"))

        assert [c[0] for c in calls.mock_calls] == ["persist_turn", "mark_processed", "write_audit"]
        assert response.ok is True
        assert response.response_id == str(store.persist_turn.return_value.bot_message_id)
        assert _audit_entry(store).status == "success"

    def test_persist_failure_marks_failed(self, pipeline, store, db_session):
        store.persist_turn.side_effect = OperationalError("INSERT", {}, Exception("disk full"))

        response = pipeline.handle(_command("a que hora abren?"))

        assert response.ok is False
        assert response.message == BACKEND_ERROR_MESSAGE
        store.mark_processed.assert_not_called()
        store.mark_failed.assert_called_once()
        assert "disk full" in store.mark_failed.call_args.kwargs["error_message"]

        entry = _audit_entry(store)
        assert entry.status == "failure"
        assert entry.intent == "error"
        assert entry.error_code == "OperationalError"
        db_session.rollback.assert_called()

    def test_mark_processed_failure_does_not_repersist(self, pipeline, store):
        store.mark_processed.side_effect = RuntimeError("lost connection")

        response = pipeline.handle(_command("a que hora abren?"))

        assert response.ok is False
        assert store.persist_turn.call_count == 1
        store.mark_failed.assert_called_once()
        assert _audit_entry(store).error_code == "RuntimeError"

    def test_audit_failure_keeps_reply(self, pipeline, store):
        store.write_audit.side_effect = RuntimeError("audit table locked")

        response = pipeline.handle(_command("a que hora abren?"))

        assert response.ok is True
        store.mark_failed.assert_not_called()

    def test_reply_generator_failure_uses_template(self, pipeline, store):
        failing = Mock()
        failing.generate.return_value = Result.failure("timeout", code="llm_error")
        pipeline.reply_generator = failing

        response = pipeline.handle(_command("hola"))

        assert response.ok is True
        assert response.message


class TestGuestScenarios:
    def test_order_question_starts_flow(self, pipeline, store):
        response = pipeline.handle(_command("where's my order?"))

        assert response.ok is True
        assert response.message == HAS_DATA_QUESTION
        assert response.intent == "orders"
        assert _persisted_metadata(store)["ordersGuestFlowState"] == "awaiting_has_data_answer"

    def test_no_answer_requires_auth(self, pipeline, store):
        store.get_conversation_history.return_value = [
            _bot_row({"ordersGuestFlowState": "awaiting_has_data_answer"})
        ]

        response = pipeline.handle(_command("no"))

        assert response.ok is False
        assert response.requires_auth is True
        assert response.message == REQUIRES_AUTH_MESSAGE
        metadata = _persisted_metadata(store)
        assert metadata["ordersGuestFlowState"] is None
        assert metadata["requiresAuth"] is True
        assert _audit_entry(store).status == "requires_auth"

    def test_unrelated_reply_is_not_hijacked(self, pipeline, store):
        store.get_conversation_history.return_value = [
            _bot_row({"ordersGuestFlowState": "awaiting_has_data_answer"})
        ]

        response = pipeline.handle(_command("thanks for the help"))

        assert response.ok is True
        assert response.intent == "thanks"
        assert _persisted_metadata(store)["ordersGuestFlowState"] is None

    def test_direct_lookup_success(self, pipeline, store, lookup_client):
        lookup_client.lookup_order.return_value = Result.success(
            OrderSummary(id=12345, state="Enviado", total=Money(currency="ARS", amount=1500))
        )

        response = pipeline.handle(_command("order 12345, dni 30111222, phone +54 11 4444 5555"))

        assert response.ok is True
        assert "[PEDIDO #12345]" in response.message
        assert "Enviado" in response.message
        assert "$1500 ARS" in response.message
        lookup_client.lookup_order.assert_called_once()
        args = lookup_client.lookup_order.call_args.args
        assert args[1] == 12345
        assert args[2].dni == "30111222"

        metadata = _persisted_metadata(store)
        assert metadata["ordersGuestLookupAttempted"] is True
        assert metadata["ordersGuestLookupResultCode"] == "success"
        assert metadata["ordersGuestLookupStatusCode"] == 200
        assert metadata["ordersGuestFlowState"] is None

    def test_single_factor_never_calls_backend(self, pipeline, store, lookup_client):
        store.get_conversation_history.return_value = [
            _bot_row({"ordersGuestFlowState": "awaiting_lookup_payload"})
        ]

        response = pipeline.handle(_command("pedido 12345, telefono 1144445555"))

        lookup_client.lookup_order.assert_not_called()
        assert "#12345" in response.message
        assert _persisted_metadata(store)["ordersGuestFlowState"] == "awaiting_lookup_payload"

    def test_mismatch_message(self, pipeline, store, lookup_client):
        lookup_client.lookup_order.return_value = Result.failure("404", code="not_found_or_mismatch")
        failed_before = _counter("order_lookup_verification_failed_total")

        response = pipeline.handle(_command("pedido 12345, dni 30111222, nombre Juan"))

        assert response.ok is False
        assert response.message == VERIFICATION_FAILED_MESSAGE
        metadata = _persisted_metadata(store)
        assert metadata["ordersGuestLookupResultCode"] == "not_found_or_mismatch"
        assert metadata["ordersGuestLookupStatusCode"] == 404
        assert _counter("order_lookup_verification_failed_total") == failed_before + 1

    def test_backend_error_is_generic(self, pipeline, store, lookup_client):
        lookup_client.lookup_order.side_effect = ExternalServiceError("boom", 503, "http")

        response = pipeline.handle(_command("pedido 12345, dni 30111222, nombre Juan"))

        assert response.ok is False
        assert response.message == BACKEND_ERROR_MESSAGE
        assert _persisted_metadata(store)["ordersGuestLookupResultCode"] == "exception"
        store.mark_processed.assert_called_once()

    def test_rate_limited_lookup_skips_backend(self, pipeline, store, lookup_client):
        limiter = Mock()
        limiter.consume.return_value = RateLimitDecision(allowed=False, blocked_by="order")
        pipeline.rate_limiter = limiter
        blocked_before = _counter("order_lookup_rate_limited_total", {"scope": "order"})

        response = pipeline.handle(_command("pedido 12345, dni 30111222, nombre Juan"))

        assert response.message == THROTTLED_MESSAGE
        assert _counter("order_lookup_rate_limited_total", {"scope": "order"}) == blocked_before + 1
        lookup_client.lookup_order.assert_not_called()
        limiter.consume.assert_called_once_with("203.0.113.7", "guest-1", 12345, request_id="req-1")
        metadata = _persisted_metadata(store)
        assert metadata["ordersGuestLookupAttempted"] is False
        assert metadata["rateLimitBlockedBy"] == "order"

    def test_backend_throttle_is_counted(self, pipeline, store, lookup_client):
        lookup_client.lookup_order.return_value = Result.failure("429", code="throttled")
        before = _counter("order_lookup_rate_limited_total", {"scope": "backend"})

        response = pipeline.handle(_command("pedido 12345, dni 30111222, nombre Juan"))

        assert response.message == THROTTLED_MESSAGE
        assert _counter("order_lookup_rate_limited_total", {"scope": "backend"}) == before + 1

    def test_degraded_limiter_still_looks_up(self, pipeline, store, lookup_client):
        limiter = Mock()
        limiter.consume.return_value = RateLimitDecision(allowed=True, degraded=True)
        pipeline.rate_limiter = limiter
        lookup_client.lookup_order.return_value = Result.success(OrderSummary(id=12345, state="Enviado"))
        before = _counter("order_lookup_rate_limit_degraded_total")

        response = pipeline.handle(_command("pedido 12345, dni 30111222, nombre Juan"))

        assert response.ok is True
        lookup_client.lookup_order.assert_called_once()
        assert _persisted_metadata(store)["rateLimitDegraded"] is True
        assert _counter("order_lookup_rate_limit_degraded_total") == before + 1

    def test_authenticated_user_skips_flow(self, pipeline, store, lookup_client):
        response = pipeline.handle(_command("donde esta mi pedido?", access_token="tok"))

        lookup_client.lookup_order.assert_not_called()
        account_orders_client = pipeline.account_orders_client
        account_orders_client.list_orders.assert_called_once_with("tok", request_id="req-1")
        assert response.ok is True
        assert response.message != HAS_DATA_QUESTION
        assert _persisted_metadata(store)["contextTypes"] == ["orders"]

    @pytest.mark.parametrize(
        "text, intent",
        [("thank you", "thanks"), ("buen dia", "greeting"), ("envio gratis", "payment_shipping")],
    )
    def test_loose_word_pair_leaves_payload_state(self, pipeline, store, lookup_client, text, intent):
        store.get_conversation_history.return_value = [
            _bot_row({"ordersGuestFlowState": "awaiting_lookup_payload"})
        ]

        response = pipeline.handle(_command(text))

        assert response.ok is True
        assert response.intent == intent
        assert "No encontre el numero de pedido" not in response.message
        assert _persisted_metadata(store)["ordersGuestFlowState"] is None
        lookup_client.lookup_order.assert_not_called()


class TestAccountOrders:
    def test_signed_in_orders_question_lists_orders(self, pipeline, store, account_orders_client):
        account_orders_client.list_orders.return_value = AccountOrders(
            orders=[OrderSummary(id=77, state="Enviado", total=Money(currency="ARS", amount=1500))],
            total=4,
        )

        response = pipeline.handle(_command("mis pedidos", access_token="tok"))

        assert response.ok is True
        assert "- Pedido #77: Enviado ($1500 ARS)" in response.message
        assert "Mostrando 1 de 4 pedidos." in response.message
        assert _persisted_metadata(store)["contextTypes"] == ["orders"]

    def test_expired_session_asks_to_sign_in_again(self, pipeline, store, account_orders_client):
        account_orders_client.list_orders.side_effect = ExternalServiceError("unauthorized", 401, "http")

        response = pipeline.handle(_command("mis pedidos", access_token="expired"))

        assert response.ok is False
        assert response.requires_auth is True
        assert response.message == SESSION_EXPIRED_MESSAGE
        store.mark_processed.assert_called_once()
        store.mark_failed.assert_not_called()
        assert _audit_entry(store).status == "requires_auth"

    def test_store_outage_is_generic(self, pipeline, store, account_orders_client):
        account_orders_client.list_orders.side_effect = ExternalServiceError("boom", 503, "http")

        response = pipeline.handle(_command("mis pedidos", access_token="tok"))

        assert response.ok is False
        assert not response.requires_auth
        assert response.message == BACKEND_ERROR_MESSAGE
        store.mark_processed.assert_called_once()
        assert _audit_entry(store).status == "failure"

    def test_guest_never_loads_account_orders(self, pipeline, store, account_orders_client):
        pipeline.handle(_command("mis pedidos"))

        account_orders_client.list_orders.assert_not_called()

    def test_other_intents_skip_account_orders(self, pipeline, store, account_orders_client):
        pipeline.handle(_command("a que hora abren?", access_token="tok"))

        account_orders_client.list_orders.assert_not_called()


class TestRedelivery:
    def test_same_event_twice_has_one_set_of_side_effects(self, pipeline, store):
        store.start_processing.side_effect = [False, True]

        def stored_reply(db, source, external_event_id):
            persisted = store.persist_turn.call_args.kwargs
            return SimpleNamespace(
                id=store.persist_turn.return_value.bot_message_id,
                content=persisted["bot_message"],
                message_metadata=persisted["metadata"],
            )

        store.get_last_reply_for_event.side_effect = stored_reply

        first = pipeline.handle(_command("a que hora abren?"))
        second = pipeline.handle(_command("a que hora abren?"))

        assert store.persist_turn.call_count == 1
        assert store.mark_processed.call_count == 1
        assert second.message == first.message
        assert second.response_id == first.response_id
        assert second.intent == first.intent
        statuses = [c.args[1].status for c in store.write_audit.call_args_list]
        assert statuses == ["success", "duplicate"]


class TestAuditStatus:
    def test_statuses(self):
        assert audit_status_for(ChatResponse(ok=True, message="x")) == "success"
        assert audit_status_for(ChatResponse(ok=False, message="x", requires_auth=True)) == "requires_auth"
        assert audit_status_for(ChatResponse(ok=False, message="x")) == "failure"


def test_fallback_reply_used_for_general_text(pipeline, store):
    response = pipeline.handle(_command("asdf qwerty"))
    assert response.message == FALLBACK_REPLY
