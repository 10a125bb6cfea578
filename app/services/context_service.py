from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from app.services.account_orders_client import AccountOrders
from app.services.intent_service import Intent
from app.services.order_lookup_responses import format_money


@dataclass
class ContextBlock:
    context_type: str
    content: str
    data: dict = field(default_factory=dict)


class ContextEnricher(ABC):
    """Supplies reference material for the reply generator."""

    @abstractmethod
    def enrich(self, intent: str, text: str, *, authenticated: bool) -> list[ContextBlock]:
        pass


STATIC_POLICY_BLOCKS = {
    Intent.PAYMENT_SHIPPING.value: ContextBlock(
        context_type="payment_shipping",
        content=(
            "Medios de pago: tarjeta de credito y debito, transferencia y Mercado Pago. "
            "Envios a todo el pais por correo o retiro gratis en sucursal."
        ),
    ),
    Intent.STORE_INFO.value: ContextBlock(
        context_type="store_info",
        content="Atendemos de lunes a sabado de 10 a 20 hs. Consultas por email o por este chat.",
    ),
    Intent.PRODUCTS.value: ContextBlock(
        context_type="products",
        content="El stock y los precios se consultan en la web; los valores pueden cambiar sin aviso.",
    ),
    Intent.GREETING.value: ContextBlock(
        context_type="greeting",
        content="Saluda brevemente y ofrece ayuda con pedidos, pagos, envios o productos.",
    ),
    Intent.THANKS.value: ContextBlock(
        context_type="thanks",
        content="Agradece y ofrece ayuda adicional.",
    ),
}


class StaticContextEnricher(ContextEnricher):
    """Policy text per intent.

    Orders get no static block: signed-in order data is loaded per turn (see
    build_account_orders_block) and guests go through the verification flow.
    """

    def enrich(self, intent: str, text: str, *, authenticated: bool) -> list[ContextBlock]:
        if intent == Intent.ORDERS.value:
            return []
        block = STATIC_POLICY_BLOCKS.get(intent)
        return [block] if block else []


ACCOUNT_ORDERS_MAX_ITEMS = 3
ACCOUNT_ORDERS_HEADER = "TUS ULTIMOS PEDIDOS"
ACCOUNT_ORDERS_EMPTY = "No encontramos pedidos asociados a tu cuenta."
ACCOUNT_ORDERS_FOOTER = "El detalle completo de cada pedido esta en Mi Cuenta > Pedidos."


def build_account_orders_block(account_orders: AccountOrders) -> ContextBlock:
    """Render the newest orders of a signed-in customer as a context block."""
    shown = account_orders.orders[:ACCOUNT_ORDERS_MAX_ITEMS]
    data = {"ordersShown": len(shown), "totalOrders": account_orders.total}
    if not shown:
        return ContextBlock(context_type="orders", content=ACCOUNT_ORDERS_EMPTY, data=data)

    lines = [ACCOUNT_ORDERS_HEADER, ""]
    for order in shown:
        total = format_money(order.total) if order.total else "total no disponible"
        lines.append(f"- Pedido #{order.id}: {order.state} ({total})")
    lines.extend(["", f"Mostrando {len(shown)} de {account_orders.total} pedidos.", ACCOUNT_ORDERS_FOOTER])
    return ContextBlock(context_type="orders", content="\n".join(lines), data=data)
