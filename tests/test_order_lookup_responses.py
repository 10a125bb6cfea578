from app.services.order_lookup_client import LookupIdentity, Money, OrderSummary
from app.services.order_lookup_request import LookupRequest
from app.services.order_lookup_responses import (
    LOOKUP_INSTRUCTIONS,
    format_money,
    invalid_format_message,
    missing_factors_message,
    order_success_message,
)


class TestMissingFactorsMessage:
    def test_lists_only_pending_factors(self):
        request = LookupRequest(order_id=12345, identity=LookupIdentity(phone="1144445555"))

        message = missing_factors_message(request)

        assert "#12345" in message
        assert "Necesito 1 dato(s)" in message
        assert "telefono" not in message.split("entre:")[1]
        assert "dni" in message


class TestInvalidFormatMessage:
    def test_names_invalid_factors(self):
        message = invalid_format_message(["dni", "phone"])

        assert message.startswith(LOOKUP_INSTRUCTIONS)
        assert "dni, telefono" in message

    def test_generic(self):
        assert "formato enviado" in invalid_format_message()


class TestOrderSuccessMessage:
    def test_full_order(self):
        order = OrderSummary(
            id=12345,
            state="Enviado",
            total=Money(currency="ARS", amount=2500.5),
            payment_method="Mercado Pago",
            ship_method="Correo",
            tracking_code="AR123",
        )

        message = order_success_message(order)

        assert message.startswith("[PEDIDO #12345]")
        assert "- Estado: Enviado" in message
        assert "- Total: $2500.5 ARS" in message
        assert "- Envio: Correo" in message
        assert "- Tracking: AR123" in message
        assert "- Pago: Mercado Pago" in message

    def test_fallbacks(self):
        message = order_success_message(OrderSummary(id=7, state=""))

        assert "- Estado: Sin estado" in message
        assert "- Total: No disponible" in message
        assert "- Tracking: Pendiente" in message

    def test_whole_amount_has_no_decimals(self):
        assert format_money(Money(currency="USD", amount=40.0)) == "$40 USD"
