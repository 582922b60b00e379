"""
=============================================================================
PAYMENTS.PY — Suscripciones y conciliación de pagos
=============================================================================
Un pago pasa por:

  pending ──→ succeeded   (final: activa o prorroga el Premium)
     │
     └─────→ canceled    (final: no pasa nada)

  waiting_for_capture cuenta como "todavía pendiente".

Nos enteramos del estado por CUATRO caminos:
  - push  → webhook de YooKassa
  - poll  → comprobación diferida unos segundos después de crear el pago
  - pull  → el cliente pregunta por un pago (o por el último)
  - sweep → el cron concilia todos los pagos pendientes recientes

Los cuatro acaban en reconcile(), que:
  1. Ignora un "succeeded" repetido si ya lo teníamos como succeeded
  2. Pregunta SIEMPRE a YooKassa el estado real antes de escribir nada
  3. Bloquea la fila del pago y solo guarda si el estado cambió
     (succeeded y canceled son finales, no se tocan)
  4. Activa/prorroga el Premium solo al ENTRAR en succeeded

Así un webhook repetido, un webhook y un pull a la vez, o dos pulls
seguidos nunca prorrogan la suscripción dos veces.
"""

import json
import logging
import math
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Optional

from sqlalchemy.orm import Session

from database import atomic
from errors import (
    AlreadySubscribed, HabitStreakError, MetadataCorrupt, NotFound,
    UnknownPlan, ValidationError,
)
from limits import lock_user
from models import Payment, PaymentStatus, SubscriptionStatus, SubscriptionType, User
from payment_gateway import parse_webhook, validate_webhook_signature
from periods import PeriodClock

logger = logging.getLogger("habitstreak.payments")

CURRENCY = "RUB"
LIVE_PENDING_WINDOW = timedelta(hours=24)
PENDING_STATUSES = (PaymentStatus.pending.value, PaymentStatus.waiting_for_capture.value)

# Catálogo de planes (precio en rublos)
PLANS = {
    "month": {"name": "Mes", "price": Decimal("99"), "duration_days": 30},
    "year": {"name": "Año", "price": Decimal("990"), "duration_days": 365},
}


def list_plans() -> list:
    return [
        {
            "id": plan_id,
            "name": plan["name"],
            "price": float(plan["price"]),
            "duration_days": plan["duration_days"],
        }
        for plan_id, plan in PLANS.items()
    ]


# ─────────────────────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────────────────────

def plan_from_metadata(payment: Payment) -> dict:
    """Lee el plan guardado en el metadata del pago"""
    try:
        metadata = json.loads(payment.metadata_json or "")
    except (TypeError, ValueError) as e:
        logger.error(f"❌ Metadata ilegible en el pago {payment.id}: {payment.metadata_json!r}")
        raise MetadataCorrupt(f"Metadata ilegible en el pago {payment.id}") from e

    if not isinstance(metadata, dict):
        logger.error(f"❌ Metadata con formato inesperado en el pago {payment.id}")
        raise MetadataCorrupt(f"Metadata con formato inesperado en el pago {payment.id}")

    plan_id = metadata.get("planId")
    if plan_id not in PLANS:
        logger.error(f"❌ Plan desconocido '{plan_id}' en el pago {payment.id}")
        raise UnknownPlan(f"Plan desconocido: {plan_id}")
    return dict(PLANS[plan_id], id=plan_id)


def latest_live_pending(db: Session, user_id: int, now) -> Optional[Payment]:
    """El pago pendiente más reciente creado en las últimas 24 horas"""
    return (
        db.query(Payment)
        .filter(
            Payment.user_id == user_id,
            Payment.status.in_(PENDING_STATUSES),
            Payment.created_at >= now - LIVE_PENDING_WINDOW,
        )
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .first()
    )


def _lock_payment(db: Session, payment_id: int) -> Payment:
    payment = (
        db.query(Payment)
        .filter(Payment.id == payment_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if payment is None:
        raise NotFound("Pago no encontrado")
    return payment


def _get_owned_payment(db: Session, owner_id: int, payment_id: int) -> Payment:
    payment = db.query(Payment).filter(
        Payment.id == payment_id, Payment.user_id == owner_id
    ).first()
    if payment is None:
        raise NotFound("Pago no encontrado")
    return payment


def _subscription_active(db: Session, user_id: int, clock: PeriodClock) -> bool:
    user = db.get(User, user_id)
    return bool(user and user.has_active_subscription(clock.now()))


# =============================================================================
# ===================== ACTIVACIÓN ============================================
# =============================================================================

def activate_subscription(db: Session, payment: Payment, clock: PeriodClock) -> User:
    """
    Activa o prorroga el Premium del dueño del pago.

      - Tiene Premium sin caducar → expires_at += duración del plan
      - Si no                     → expires_at = ahora + duración
                                    (started_at solo si no tenía)

    Se llama DENTRO de la transacción de reconcile(): si algo falla aquí,
    no se guarda ni el nuevo estado del pago.
    """
    plan = plan_from_metadata(payment)
    user = lock_user(db, payment.user_id)
    now = clock.now()
    duration = timedelta(days=plan["duration_days"])

    if user.has_active_subscription(now):
        user.subscription_expires_at = user.subscription_expires_at + duration
        logger.info(f"🔁 Premium prorrogado {plan['duration_days']} días (user {user.id}) "
                    f"→ {user.subscription_expires_at}")
    else:
        user.subscription_expires_at = now + duration
        if user.subscription_started_at is None:
            user.subscription_started_at = now
        logger.info(f"⭐ Premium activado {plan['duration_days']} días (user {user.id}) "
                    f"→ {user.subscription_expires_at}")

    user.subscription_type = SubscriptionType.premium.value
    user.subscription_status = SubscriptionStatus.active.value
    return user


# =============================================================================
# ===================== CONCILIACIÓN ==========================================
# =============================================================================

def reconcile(db: Session, gateway, payment_id: int, source: str, clock: PeriodClock,
              observed_status: Optional[PaymentStatus] = None,
              observed_payment_method: Optional[str] = None) -> Payment:
    """
    Lleva el pago local al estado que tiene en YooKassa.

    source → "push", "poll", "pull" o "sweep" (solo para los logs).
    observed_status → lo que nos contaron (webhook); nunca se confía en él
    sin preguntar a la pasarela.
    """
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise NotFound("Pago no encontrado")
    if not payment.yookassa_id:
        raise ValidationError("El pago todavía no tiene id en la pasarela")

    stored = payment.payment_status

    # 1. Entrega repetida de algo que ya sabemos
    if stored == PaymentStatus.succeeded and observed_status == PaymentStatus.succeeded:
        logger.info(f"↩️ [{source}] Pago {payment.id} ya estaba succeeded, se ignora")
        return payment

    # 2. Estado autoritativo ANTES de escribir nada
    fetched = gateway.get_payment(payment.yookassa_id)
    if observed_status is not None and observed_status != fetched.status:
        logger.info(f"🔎 [{source}] Pago {payment.id}: notificado {observed_status.value}, "
                    f"la pasarela dice {fetched.status.value}")

    # 3. y 4. Bajo bloqueo: releer, guardar si cambió, activar si entra en succeeded
    with atomic(db):
        payment = _lock_payment(db, payment_id)
        stored = payment.payment_status

        if fetched.status == stored:
            logger.info(f"⏸️ [{source}] Pago {payment.id} sigue {stored.value}")
            return payment

        # succeeded y canceled son finales: nunca se sale de ellos
        if stored.is_final:
            logger.warning(f"⚠️ [{source}] Pago {payment.id} ya es {stored.value}, "
                           f"la pasarela dice {fetched.status.value}; se ignora")
            return payment

        payment.status = fetched.status.value
        method = fetched.payment_method or observed_payment_method
        if method:
            payment.payment_method = method

        if fetched.status == PaymentStatus.succeeded:
            activate_subscription(db, payment, clock)

        logger.info(f"💳 [{source}] Pago {payment.id}: {stored.value} → {fetched.status.value}")

    return payment


# =============================================================================
# ===================== CREAR PAGO ============================================
# =============================================================================

def create_subscription_payment(db: Session, gateway, owner_id: int, plan_id: str,
                                clock: PeriodClock, settings,
                                idempotence_key: Optional[str] = None,
                                on_created: Optional[Callable[[int], None]] = None) -> dict:
    """
    Crea un pago de suscripción (o devuelve el que ya está en curso).

      1. Plan desconocido → ValidationError
      2. ¿Hay un pago pendiente de <24h? Se pregunta a YooKassa:
           - ya pagado  → AlreadySubscribed
           - pendiente  → se devuelve ese mismo (sin crear otro)
           - cancelado  → seguimos
      3. Crear en YooKassa (Idempotence-Key) y DESPUÉS guardar en la BD
      4. Programar la comprobación diferida (on_created)
    """
    plan = PLANS.get(plan_id)
    if plan is None:
        raise ValidationError(f"Plan no válido: {plan_id}")

    with atomic(db):
        user = lock_user(db, owner_id)
        existing = latest_live_pending(db, user.id, clock.now())
        existing_id = existing.id if existing else None
        existing_has_gateway_id = bool(existing and existing.yookassa_id)

    if existing_id is not None:
        if existing_has_gateway_id:
            existing = reconcile(db, gateway, existing_id, "pull", clock)
        else:
            existing = db.get(Payment, existing_id)

        status = existing.payment_status
        if status == PaymentStatus.succeeded:
            raise AlreadySubscribed("Ya tiene una suscripción activa")
        if status != PaymentStatus.canceled:
            logger.info(f"⏳ Se reutiliza el pago pendiente {existing.id} (user {owner_id})")
            return {
                "payment_id": existing.id,
                "yookassa_id": existing.yookassa_id or "",
                "amount": float(existing.amount),
                "confirmation_url": existing.confirmation_url,
                "status": existing.status,
                "message": "Ya tiene un pago en proceso",
            }

    description = f'Suscripción "{plan["name"]}" - Habit Streak'
    key = idempotence_key or str(uuid.uuid4())
    gateway_payment = gateway.create_payment(
        amount=plan["price"],
        currency=CURRENCY,
        description=description,
        return_url=f"{settings.webapp_url}?payment=success",
        metadata={"userId": owner_id, "planId": plan_id},
        idempotence_key=key,
    )

    with atomic(db):
        user = lock_user(db, owner_id)
        payment = Payment(
            user_id=user.id,
            yookassa_id=gateway_payment.id,
            amount=plan["price"],
            currency=CURRENCY,
            status=gateway_payment.status.value,
            description=description,
            confirmation_url=gateway_payment.confirmation_url,
            idempotence_key=key,
            metadata_json=json.dumps({
                "planId": plan_id,
                "planName": plan["name"],
                "durationDays": plan["duration_days"],
            }),
            created_at=clock.now(),
            updated_at=clock.now(),
        )
        db.add(payment)

    db.refresh(payment)
    logger.info(f"🧾 Pago {payment.id} creado ({plan_id}, {plan['price']} {CURRENCY}) "
                f"para user {owner_id} → YooKassa {payment.yookassa_id}")

    if on_created is not None:
        on_created(payment.id)

    return {
        "payment_id": payment.id,
        "yookassa_id": payment.yookassa_id,
        "amount": float(payment.amount),
        "confirmation_url": payment.confirmation_url,
        "status": payment.status,
    }


# =============================================================================
# ===================== CONSULTAS DEL CLIENTE =================================
# =============================================================================

def get_subscription_status(db: Session, owner_id: int, clock: PeriodClock) -> dict:
    """
    Estado de la suscripción + últimos 10 pagos.

    Si figura "active" pero ya caducó se guarda como "expired", salvo que
    haya un pago pendiente reciente (el usuario está pagando ahora mismo).
    """
    now = clock.now()
    with atomic(db):
        user = lock_user(db, owner_id)
        active = user.has_active_subscription(now)

        if not active and user.subscription_status == SubscriptionStatus.active.value:
            if latest_live_pending(db, user.id, now) is None:
                user.subscription_status = SubscriptionStatus.expired.value
                logger.info(f"⌛ Suscripción caducada → expired (user {user.id})")

        payments = (
            db.query(Payment)
            .filter(Payment.user_id == user.id)
            .order_by(Payment.created_at.desc(), Payment.id.desc())
            .limit(10)
            .all()
        )

        days_remaining = 0
        if active:
            seconds = (user.subscription_expires_at - now).total_seconds()
            days_remaining = math.ceil(seconds / 86400)

        result = {
            "subscription_type": user.subscription_type or SubscriptionType.free.value,
            "subscription_status": (
                SubscriptionStatus.active.value if active
                else user.subscription_status or SubscriptionStatus.free.value
            ),
            "subscription_expires_at": user.subscription_expires_at,
            "subscription_started_at": user.subscription_started_at,
            "days_remaining": days_remaining,
            "recent_payments": [
                {"id": p.id, "amount": float(p.amount), "status": p.status,
                 "created_at": p.created_at}
                for p in payments
            ],
        }
    return result


def check_payment_status(db: Session, gateway, owner_id: int, payment_id: int,
                         clock: PeriodClock) -> dict:
    """El cliente vuelve de YooKassa y pregunta por SU pago"""
    payment = _get_owned_payment(db, owner_id, payment_id)
    if not payment.yookassa_id:
        raise ValidationError("El pago todavía no tiene id en la pasarela")

    payment = reconcile(db, gateway, payment.id, "pull", clock)
    return {
        "payment_id": payment.id,
        "status": payment.status,
        "subscription_active": _subscription_active(db, owner_id, clock),
    }


def check_latest_payment(db: Session, gateway, owner_id: int, clock: PeriodClock) -> dict:
    """Igual que check_payment_status pero con el último pago del usuario"""
    payment = (
        db.query(Payment)
        .filter(Payment.user_id == owner_id)
        .order_by(Payment.created_at.desc(), Payment.id.desc())
        .first()
    )
    if payment is None:
        return {"has_payment": False, "message": "No hay pagos"}

    if payment.payment_status != PaymentStatus.succeeded and payment.yookassa_id:
        payment = reconcile(db, gateway, payment.id, "pull", clock)

    return {
        "has_payment": True,
        "payment_id": payment.id,
        "status": payment.status,
        "subscription_active": _subscription_active(db, owner_id, clock),
    }


# =============================================================================
# ===================== WEBHOOK Y COMPROBACIÓN DIFERIDA =======================
# =============================================================================

def handle_webhook(db: Session, gateway, body: dict, signature: Optional[str],
                   settings, clock: PeriodClock) -> Optional[Payment]:
    """
    Procesa una notificación de YooKassa. NUNCA lanza: la respuesta ya se
    envió y cualquier fallo se arreglará con la siguiente observación
    (otro webhook, un pull o el barrido del cron).
    """
    try:
        event = parse_webhook(body)
    except ValidationError as e:
        logger.warning(f"⚠️ Webhook ignorado: {e.message}")
        return None

    valid = validate_webhook_signature(
        event.event_type, event.payment_id, event.status.value,
        signature, settings.yookassa_secret_key, settings.is_production,
    )
    if not valid:
        # La firma no bloquea: reconcile() pregunta igualmente a YooKassa
        logger.warning(f"⚠️ Firma de webhook ausente o inválida para el pago {event.payment_id}")

    try:
        payment = db.query(Payment).filter(Payment.yookassa_id == event.payment_id).first()
        if payment is None:
            logger.warning(f"⚠️ Webhook de un pago desconocido: {event.payment_id}")
            return None

        logger.info(f"📨 Webhook {event.event_type} para el pago {payment.id}")
        return reconcile(
            db, gateway, payment.id, "push", clock,
            observed_status=event.status,
            observed_payment_method=event.payment_method,
        )
    except HabitStreakError as e:
        logger.error(f"❌ Fallo al procesar el webhook del pago {event.payment_id}: {e.message}")
    except Exception as e:
        db.rollback()
        logger.error(f"❌ Error inesperado en el webhook del pago {event.payment_id}: {e}")
    return None


def poll_payment(session_factory, gateway, payment_id: int, clock: PeriodClock):
    """Comprobación diferida tras crear un pago (la lanza el scheduler)"""
    db = session_factory()
    try:
        reconcile(db, gateway, payment_id, "poll", clock)
    except HabitStreakError as e:
        logger.error(f"❌ Comprobación diferida del pago {payment_id} fallida: {e.message}")
    except Exception as e:
        logger.error(f"❌ Error inesperado en la comprobación diferida del pago {payment_id}: {e}")
    finally:
        db.close()


# =============================================================================
# ===================== BARRIDOS (CRON) =======================================
# =============================================================================

def expire_subscriptions(db: Session, clock: PeriodClock) -> dict:
    """Pasa a "expired" las suscripciones activas ya caducadas"""
    now = clock.now()
    with atomic(db):
        users = (
            db.query(User)
            .filter(User.subscription_status == SubscriptionStatus.active.value)
            .with_for_update()
            .all()
        )
        changed = 0
        for user in users:
            if not user.has_active_subscription(now):
                user.subscription_status = SubscriptionStatus.expired.value
                changed += 1

    if changed:
        logger.info(f"⌛ {changed} suscripciones caducadas")
    return {"processed": len(users), "changed": changed}


def reconcile_pending_payments(db: Session, gateway, clock: PeriodClock) -> dict:
    """Concilia todos los pagos pendientes recientes; un fallo no para el resto"""
    now = clock.now()
    pending = (
        db.query(Payment.id, Payment.status)
        .filter(
            Payment.status.in_(PENDING_STATUSES),
            Payment.yookassa_id.isnot(None),
            Payment.created_at >= now - LIVE_PENDING_WINDOW,
        )
        .order_by(Payment.created_at)
        .all()
    )

    changed = failed = 0
    for payment_id, before in pending:
        try:
            payment = reconcile(db, gateway, payment_id, "sweep", clock)
        except HabitStreakError as e:
            failed += 1
            logger.error(f"❌ No se pudo conciliar el pago {payment_id}: {e.message}")
            continue
        except Exception as e:
            db.rollback()
            failed += 1
            logger.error(f"❌ Error inesperado conciliando el pago {payment_id}: {e}")
            continue
        if payment.status != before:
            changed += 1

    logger.info(f"🧹 Pagos pendientes: {len(pending)} revisados, {changed} cambiados, {failed} fallidos")
    return {"processed": len(pending), "changed": changed, "failed": failed}
