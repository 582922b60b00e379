"""
=============================================================================
PAYMENT_GATEWAY.PY — Cliente de la pasarela de pago (YooKassa)
=============================================================================
Envoltorio fino sobre el SDK oficial de YooKassa (paquete `yookassa`):

  - create_payment → Payment.create     (con clave de idempotencia)
  - get_payment    → Payment.find_one

Además:
  - validate_webhook_signature → comprueba la firma de las notificaciones
  - parse_webhook              → convierte los dos formatos de webhook
                                  (moderno y "notification") en un WebhookEvent

Cualquier fallo de red, respuesta 5xx/429 o respuesta ilegible se
convierte en UpstreamUnavailable: el cliente puede reintentar y NO hemos
escrito nada en la BD todavía.
"""

import hashlib
import hmac
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

import requests
from pydantic import BaseModel, ConfigDict
from yookassa import Configuration, Payment
from yookassa.domain.exceptions.api_error import ApiError

from errors import UpstreamUnavailable, ValidationError
from models import PaymentStatus

logger = logging.getLogger("habitstreak.gateway")


# ─────────────────────────────────────────────────────────────────────────────
# RESPUESTAS
# ─────────────────────────────────────────────────────────────────────────────

class GatewayPayment(BaseModel):
    """Lo que nos interesa de un pago de YooKassa"""
    model_config = ConfigDict(extra="ignore")

    id: str
    status: PaymentStatus
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    confirmation_url: Optional[str] = None
    payment_method: Optional[str] = None
    metadata: dict = {}

    @classmethod
    def from_sdk(cls, payment) -> "GatewayPayment":
        """Convierte un PaymentResponse del SDK"""
        amount = getattr(payment, "amount", None)
        value = getattr(amount, "value", None)
        confirmation = getattr(payment, "confirmation", None)
        method = getattr(payment, "payment_method", None)
        metadata = getattr(payment, "metadata", None) or {}
        return cls(
            id=getattr(payment, "id", None),
            status=PaymentStatus.parse(getattr(payment, "status", None)),
            amount=Decimal(str(value)) if value is not None else None,
            currency=getattr(amount, "currency", None),
            confirmation_url=getattr(confirmation, "confirmation_url", None),
            # El método puede venir en payment_method.type o en metadata
            payment_method=getattr(method, "type", None) or metadata.get("payment_method"),
            metadata=dict(metadata),
        )


class WebhookEvent(BaseModel):
    """Notificación normalizada (da igual el formato en que llegó)"""
    event_type: str
    payment_id: str
    status: PaymentStatus
    payment_method: Optional[str] = None


# ─────────────────────────────────────────────────────────────────────────────
# CLIENTE
# ─────────────────────────────────────────────────────────────────────────────

class YooKassaClient:
    """
    Cliente síncrono de YooKassa sobre el SDK oficial.

    `api` es la clase Payment del SDK; en los tests se pasa un doble con
    create/find_one para no salir a la red.
    """

    def __init__(self, shop_id: str, secret_key: str, api=None):
        self.shop_id = shop_id
        self.secret_key = secret_key
        self.api = api or Payment
        if self.configured:
            Configuration.account_id = shop_id
            Configuration.secret_key = secret_key

    @property
    def configured(self) -> bool:
        return bool(self.shop_id and self.secret_key)

    def _call(self, action: str, func, *args) -> GatewayPayment:
        if not self.configured:
            raise UpstreamUnavailable("La pasarela de pago no está configurada")

        try:
            response = func(*args)
        except ApiError as e:
            code = getattr(e, "HTTP_CODE", None)
            logger.error(f"❌ YooKassa rechazó {action}: {code} {e}")
            if code in (400, 401, 403, 404):
                raise UpstreamUnavailable(
                    f"Error de la pasarela de pago: {code}", retryable=False,
                ) from e
            raise UpstreamUnavailable("La pasarela de pago no está disponible, reintente") from e
        except requests.RequestException as e:
            logger.error(f"❌ YooKassa no responde ({action}): {e}")
            raise UpstreamUnavailable("La pasarela de pago no responde, reintente") from e
        except ValueError as e:
            # Respuesta que no es JSON
            logger.error(f"❌ Respuesta ilegible de YooKassa ({action}): {e}")
            raise UpstreamUnavailable("Respuesta ilegible de la pasarela de pago, reintente") from e

        try:
            return GatewayPayment.from_sdk(response)
        except (ValueError, TypeError, AttributeError, ArithmeticError) as e:
            logger.error(f"❌ Pago de YooKassa incompleto ({action}): {e}")
            raise UpstreamUnavailable("Respuesta incompleta de la pasarela de pago, reintente") from e

    def create_payment(self, amount: Decimal, currency: str, description: str,
                       return_url: str, metadata: dict, idempotence_key: str) -> GatewayPayment:
        """
        Crea un pago con confirmación por redirección.

        capture=True → el pago se confirma solo, sin paso de "capture".
        """
        value = Decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
        params = {
            "amount": {"value": f"{value}", "currency": currency},
            "description": description,
            "capture": True,
            "confirmation": {"type": "redirect", "return_url": return_url},
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
        }
        payment = self._call("create", self.api.create, params, idempotence_key)
        logger.info(f"💳 Pago creado en YooKassa: {payment.id} ({payment.status.value})")
        return payment

    def get_payment(self, payment_id: str) -> GatewayPayment:
        """Estado actual (autoritativo) de un pago"""
        return self._call(f"find {payment_id}", self.api.find_one, payment_id)


# ─────────────────────────────────────────────────────────────────────────────
# WEBHOOKS
# ─────────────────────────────────────────────────────────────────────────────

def webhook_signature(event_type: str, object_id: str, object_status: str, secret_key: str) -> str:
    """sha256("tipo&id&estado&clave") en hexadecimal"""
    raw = f"{event_type}&{object_id}&{object_status}&{secret_key}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def validate_webhook_signature(event_type: str, object_id: str, object_status: str,
                               signature: Optional[str], secret_key: str,
                               production: bool) -> bool:
    """
    Comprueba la firma de una notificación.

    Fuera de producción no se comprueba nada (YooKassa en modo test a
    veces no firma). En producción: sin firma o firma distinta → False.
    """
    if not production:
        return True
    if not signature:
        return False
    expected = webhook_signature(event_type, object_id, object_status, secret_key)
    return hmac.compare_digest(expected.lower(), signature.strip().lower())


def parse_webhook(body: dict) -> WebhookEvent:
    """
    Normaliza los dos formatos de notificación:

      Moderno:  {"type": "payment.succeeded", "object": {"id": "...", "status": "succeeded"}}
      Antiguo:  {"type": "notification", "event": "payment.succeeded",
                 "object": {"id": "...", "status": "succeeded"}}

    En el formato antiguo manda object.status; "event" puede faltar.
    """
    if not isinstance(body, dict):
        raise ValidationError("Webhook sin cuerpo JSON")

    obj = body.get("object") or {}
    payment_id = obj.get("id")
    if not payment_id:
        raise ValidationError("Webhook sin id de pago")

    event_type = body.get("type") or ""
    if event_type == "notification":
        raw_status = obj.get("status")
        event_type = body.get("event") or f"payment.{raw_status}"
    elif event_type.startswith("payment."):
        raw_status = obj.get("status") or event_type.split(".", 1)[1]
    else:
        raise ValidationError(f"Tipo de evento no soportado: {event_type or '(vacío)'}")

    if raw_status not in {s.value for s in PaymentStatus}:
        raise ValidationError(f"Estado de pago desconocido: {raw_status}")

    method = obj.get("payment_method") or {}
    return WebhookEvent(
        event_type=event_type,
        payment_id=payment_id,
        status=PaymentStatus(raw_status),
        payment_method=method.get("type") if isinstance(method, dict) else None,
    )
