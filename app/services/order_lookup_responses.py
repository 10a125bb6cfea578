"""User-facing copy for the guest order lookup flow."""

from typing import Optional

from app.services.order_lookup_client import Money, OrderSummary
from app.services.order_lookup_request import MIN_IDENTITY_FACTORS, LookupRequest

BACKEND_ERROR_MESSAGE = "Tuvimos un problema tecnico. Intenta nuevamente en unos minutos."
DUPLICATE_FALLBACK_MESSAGE = "Este mensaje ya fue procesado."

HAS_DATA_QUESTION = (
    "Puedo ayudarte a consultar tu pedido sin iniciar sesion. "
    "Tenes a mano el numero de pedido y tus datos personales (dni, nombre, apellido o telefono)? "
    "Responde si o no."
)

LOOKUP_INSTRUCTIONS = "\n".join(
    [
        "Para consultar tu pedido sin iniciar sesion, enviame todo en un solo mensaje:",
        "- Numero de pedido (order_id)",
        "- Al menos 2 datos entre: dni, nombre, apellido, telefono",
        "",
        "Ejemplo: pedido 12345, dni 12345678, nombre Juan, apellido Perez",
    ]
)

REQUIRES_AUTH_MESSAGE = "\n".join(
    [
        "[NECESITAS INICIAR SESION]",
        "",
        "Para consultar el estado de tus pedidos sin tus datos, necesitas estar autenticado.",
        "",
        "1. Inicia sesion en la tienda",
        "2. Luego vuelve al chat (tu sesion se sincronizara)",
        "",
        "No compartas credenciales en el chat.",
    ]
)

VERIFICATION_FAILED_MESSAGE = (
    "No pudimos validar los datos del pedido. Verifica el numero de pedido y tus datos, e intenta nuevamente."
)
SESSION_EXPIRED_MESSAGE = "\n".join(
    [
        "[TU SESION EXPIRO O ES INVALIDA]",
        "",
        "Para consultar tus pedidos, inicia sesion nuevamente en la tienda y volve a este chat.",
        "",
        "No compartas credenciales en el chat.",
    ]
)
UNAUTHORIZED_MESSAGE = "No pude validar la consulta en este momento. Intenta nuevamente en unos segundos."
THROTTLED_MESSAGE = "Hay alta demanda para consultas de pedidos. Intenta nuevamente en unos segundos."

FACTOR_LABELS = {
    "dni": "dni",
    "name": "nombre",
    "last_name": "apellido",
    "phone": "telefono",
}


def provide_data_message() -> str:
    return LOOKUP_INSTRUCTIONS


def missing_order_id_message() -> str:
    return f"{LOOKUP_INSTRUCTIONS}\n\nNo encontre el numero de pedido en tu mensaje."


def missing_factors_message(request: LookupRequest) -> str:
    """Ask only for what is still missing; the order id and given factors are not requested again."""
    identity = request.identity
    given = {
        "dni": identity.dni,
        "name": identity.name,
        "last_name": identity.last_name,
        "phone": identity.phone,
    }
    pending = [FACTOR_LABELS[key] for key, value in given.items() if not value]
    missing = max(0, MIN_IDENTITY_FACTORS - request.provided_factors)
    return (
        f"Recibi el pedido #{request.order_id} y {request.provided_factors} dato(s) de identidad. "
        f"Necesito {missing} dato(s) mas entre: {', '.join(pending)}."
    )


def invalid_format_message(invalid_factors: Optional[list[str]] = None) -> str:
    if invalid_factors:
        labels = ", ".join(FACTOR_LABELS.get(factor, factor) for factor in invalid_factors)
        return f"{LOOKUP_INSTRUCTIONS}\n\nNo pude validar el formato de: {labels}."
    return f"{LOOKUP_INSTRUCTIONS}\n\nNo pude validar el formato enviado."


def format_money(money: Money) -> str:
    amount = int(money.amount) if float(money.amount).is_integer() else money.amount
    return f"${amount} {money.currency}".strip()


def _optional(value: Optional[str], fallback: str) -> str:
    if not isinstance(value, str) or not value.strip():
        return fallback
    return value.strip()


def order_success_message(order: OrderSummary) -> str:
    total = format_money(order.total) if order.total else "No disponible"
    return "\n".join(
        [
            f"[PEDIDO #{order.id}]",
            "",
            f"- Estado: {_optional(order.state, 'Sin estado')}",
            f"- Total: {total}",
            f"- Envio: {_optional(order.ship_method, 'No disponible')}",
            f"- Tracking: {_optional(order.tracking_code, 'Pendiente')}",
            f"- Pago: {_optional(order.payment_method, 'No disponible')}",
        ]
    )
