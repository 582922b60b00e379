"""
=============================================================================
MAIN.PY — La API de Habit Streak
=============================================================================
Este archivo define TODOS los endpoints de la API REST.

Organización por secciones:
  1. HABITS        → CRUD de hábitos, marcar, estadísticas
  2. SUBSCRIPTION  → Planes, estado, crear pago, comprobar pagos
  3. PAYMENTS      → Webhook de YooKassa
  4. CRON          → Recordatorios, caducar suscripciones, barrer pagos

Todo lo que la lógica necesita del "mundo exterior" (BD, reloj, pasarela
de pago, bot de Telegram) llega como dependencia de FastAPI, así los
tests pueden sustituirlo con app.dependency_overrides.
"""

import logging
import traceback
from contextlib import asynccontextmanager
from functools import lru_cache, partial
from typing import Optional

from fastapi import BackgroundTasks, Depends, FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

import limits
import payments
from auth import get_current_user, require_cron_secret
from config import Settings, get_settings
from database import SessionLocal, get_db, init_db
from errors import HabitStreakError, UpstreamUnavailable
from models import User
from payment_gateway import YooKassaClient
from periods import PeriodClock
from reminders import TelegramNotifier, send_due_reminders
from scheduler import create_scheduler, schedule_payment_check, start_scheduler, stop_scheduler
from schemas import (
    CreatePaymentRequest, CreatePaymentResponse, HabitCreate, HabitResponse,
    HabitStatsResponse, HabitUpdate, LatestPaymentResponse, PaymentStatusResponse,
    PlansResponse, ReminderSweepResponse, SubscriptionStatusResponse, SweepResponse,
    ToggleResponse,
)

# ─────────────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────────────

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s"
)
logger = logging.getLogger("habitstreak.api")

APP_VERSION = "1.0.0"


# ─────────────────────────────────────────────────────────────────────────────
# DEPENDENCIAS (reloj, pasarela, bot, sesiones)
# ─────────────────────────────────────────────────────────────────────────────

def get_clock(settings: Settings = Depends(get_settings)) -> PeriodClock:
    return PeriodClock(period_length_minutes=settings.period_length_minutes)


@lru_cache
def _yookassa_client(shop_id: str, secret_key: str) -> YooKassaClient:
    return YooKassaClient(shop_id, secret_key)


def get_gateway(settings: Settings = Depends(get_settings)) -> YooKassaClient:
    """Cliente de YooKassa (uno por par de credenciales)"""
    return _yookassa_client(settings.yookassa_shop_id, settings.yookassa_secret_key)


@lru_cache
def _telegram_notifier(token: str, webapp_url: str) -> TelegramNotifier:
    return TelegramNotifier(token, webapp_url=webapp_url)


def get_notifier(settings: Settings = Depends(get_settings)) -> Optional[TelegramNotifier]:
    """None si no hay TELEGRAM_BOT_TOKEN (los recordatorios se saltan)"""
    if not settings.telegram_bot_token:
        return None
    return _telegram_notifier(settings.telegram_bot_token, settings.webapp_url)


def get_session_factory():
    """Para las tareas que corren DESPUÉS de la respuesta (sesión propia)"""
    return SessionLocal


# ─────────────────────────────────────────────────────────────────────────────
# LIFESPAN (Arranque y apagado)
# ─────────────────────────────────────────────────────────────────────────────

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Arranque:
      1. Crear tablas si no existen
      2. Validar credenciales de YooKassa (claves test en producción → no arranca)
      3. Arrancar el scheduler de comprobaciones diferidas (si el polling está activo)

    Apagado:
      - Parar el scheduler
    """
    settings = get_settings()
    logger.info("🚀 Arrancando Habit Streak...")

    init_db()
    logger.info("✅ Base de datos inicializada")

    settings.validate_payment_credentials()

    if settings.payment_polling_enabled:
        create_scheduler()
        start_scheduler()
    else:
        logger.info("⏸️ Comprobación diferida de pagos desactivada")

    logger.info("🎉 Habit Streak operativo")

    yield  # ← La aplicación está corriendo

    logger.info("🛑 Apagando Habit Streak...")
    stop_scheduler()
    logger.info("👋 Apagado completo")


# ─────────────────────────────────────────────────────────────────────────────
# APLICACIÓN FASTAPI
# ─────────────────────────────────────────────────────────────────────────────

app = FastAPI(
    title="Habit Streak API",
    description="Tracker de hábitos con rachas y suscripción Premium (Telegram Mini App)",
    version=APP_VERSION,
    lifespan=lifespan,
)

# CORS → la Mini App se sirve desde otro dominio
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────────────────────────────────────────
# ERROR HANDLERS
# ─────────────────────────────────────────────────────────────────────────────

@app.exception_handler(HabitStreakError)
async def habit_streak_error_handler(request: Request, exc: HabitStreakError):
    """Errores de negocio → JSON con código, detalle y flags"""
    if exc.status_code >= 500:
        logger.error(f"❌ {exc.code} en {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(OperationalError)
async def database_error_handler(request: Request, exc: OperationalError):
    """La BD no responde → 503, el cliente puede reintentar"""
    logger.error(f"❌ BD no disponible en {request.url.path}: {exc}")
    error = UpstreamUnavailable("La base de datos no responde, reintente")
    return JSONResponse(status_code=error.status_code, content=error.to_dict())


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Captura errores no manejados y devuelve detalles útiles"""
    error_msg = str(exc)
    error_trace = traceback.format_exc()
    logger.error(f"❌ Error no manejado en {request.url}: {error_msg}\n{error_trace}")
    return JSONResponse(
        status_code=500,
        content={
            "error": "internal_error",
            "detail": error_msg,
            "type": type(exc).__name__,
            "path": str(request.url.path),
        }
    )


# =============================================================================
# ===================== HEALTH CHECK ==========================================
# =============================================================================

@app.get("/", tags=["Health"])
def health_check(clock: PeriodClock = Depends(get_clock)):
    """Verifica que la API está viva"""
    return {
        "status": "ok",
        "app": "Habit Streak",
        "version": APP_VERSION,
        "timestamp": clock.now().isoformat(),
    }


# =============================================================================
# ===================== SECCIÓN 1: HABITS =====================================
# =============================================================================

@app.get("/api/habits", response_model=list[HabitResponse], tags=["Habits"])
def list_habits(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
):
    """Hábitos del usuario con racha y estado de hoy (más nuevos primero)"""
    return limits.list_habits(db, user.id, clock)


@app.post("/api/habits", response_model=HabitResponse, status_code=201, tags=["Habits"])
def create_habit(
    data: HabitCreate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
):
    """
    Crea un hábito.

    Plan gratuito: máximo 3 hábitos (403 limit_exceeded) y sin
    recordatorios ni objetivos (403 premium_required).
    """
    habit = limits.create_habit(
        db, user.id, data.model_dump(), clock,
        free_limit=settings.free_habits_limit,
    )
    return limits.describe_habit(habit, [], clock)


@app.put("/api/habits/{habit_id}", response_model=HabitResponse, tags=["Habits"])
def update_habit(
    habit_id: int,
    data: HabitUpdate,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
):
    """Actualiza solo los campos enviados"""
    limits.update_habit(db, user.id, habit_id, data.model_dump(exclude_unset=True), clock)
    return limits.get_habit_view(db, user.id, habit_id, clock)


@app.delete("/api/habits/{habit_id}", tags=["Habits"])
def delete_habit(
    habit_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Borra el hábito y su historial"""
    limits.delete_habit(db, user.id, habit_id)
    return {"success": True}


@app.post("/api/habits/{habit_id}/complete", response_model=ToggleResponse, tags=["Habits"])
def complete_habit(
    habit_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
):
    """Marca el hábito en el periodo actual (o lo desmarca si ya estaba)"""
    result = limits.toggle_completion(db, habit_id, user.id, clock)
    return {
        "completed": result["completed"],
        "streak": limits.habit_streak(db, habit_id, clock),
    }


@app.get("/api/habits/{habit_id}/stats", response_model=HabitStatsResponse, tags=["Habits"])
def habit_stats(
    habit_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
):
    """Últimos 7 periodos + racha"""
    return limits.habit_stats(db, user.id, habit_id, clock)


# =============================================================================
# ===================== SECCIÓN 2: SUBSCRIPTION ===============================
# =============================================================================

@app.get("/api/subscription/plans", response_model=PlansResponse, tags=["Subscription"])
def subscription_plans():
    """Planes disponibles (no requiere usuario)"""
    return {"plans": payments.list_plans()}


@app.get("/api/subscription/status", response_model=SubscriptionStatusResponse, tags=["Subscription"])
def subscription_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
):
    """Tipo, estado, fechas, días restantes y últimos 10 pagos"""
    return payments.get_subscription_status(db, user.id, clock)


@app.post("/api/subscription/create-payment", response_model=CreatePaymentResponse,
          tags=["Subscription"])
def create_payment(
    data: CreatePaymentRequest,
    idempotence_key: Optional[str] = Header(default=None, alias="Idempotence-Key"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
    gateway: YooKassaClient = Depends(get_gateway),
    session_factory=Depends(get_session_factory),
):
    """
    Crea el pago en YooKassa y devuelve la URL de confirmación.

    Si ya hay un pago pendiente reciente, se devuelve ese.
    """
    on_created = None
    if settings.payment_polling_enabled:
        job = partial(payments.poll_payment, session_factory, gateway, clock=clock)
        on_created = partial(
            schedule_payment_check, job=job,
            delay_seconds=settings.payment_poll_delay_seconds,
        )

    return payments.create_subscription_payment(
        db, gateway, user.id, data.plan_id, clock, settings,
        idempotence_key=idempotence_key,
        on_created=on_created,
    )


@app.get("/api/subscription/payment/latest/status", response_model=LatestPaymentResponse,
         tags=["Subscription"])
def latest_payment_status(
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
    gateway: YooKassaClient = Depends(get_gateway),
):
    """Estado del último pago del usuario (se concilia con YooKassa)"""
    return payments.check_latest_payment(db, gateway, user.id, clock)


@app.get("/api/subscription/payment/{payment_id}/status", response_model=PaymentStatusResponse,
         tags=["Subscription"])
def payment_status(
    payment_id: int,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
    gateway: YooKassaClient = Depends(get_gateway),
):
    """Estado de un pago concreto (se concilia con YooKassa)"""
    return payments.check_payment_status(db, gateway, user.id, payment_id, clock)


# =============================================================================
# ===================== SECCIÓN 3: PAYMENTS (WEBHOOK) =========================
# =============================================================================

def process_webhook(session_factory, gateway, body, signature, settings, clock):
    """Corre DESPUÉS de responder a YooKassa, con su propia sesión"""
    db = session_factory()
    try:
        payments.handle_webhook(db, gateway, body, signature, settings, clock)
    finally:
        db.close()


@app.post("/api/payments/webhook", tags=["Payments"])
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_yookassa_signature: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
    clock: PeriodClock = Depends(get_clock),
    gateway: YooKassaClient = Depends(get_gateway),
    session_factory=Depends(get_session_factory),
):
    """
    Notificación de YooKassa.

    Se responde {"received": true} al instante (YooKassa reintenta si
    tardamos) y la conciliación se hace en segundo plano.
    """
    try:
        body = await request.json()
    except ValueError:
        logger.warning("⚠️ Webhook con cuerpo no JSON, se ignora")
        return {"received": True}

    background_tasks.add_task(
        process_webhook, session_factory, gateway, body,
        x_yookassa_signature, settings, clock,
    )
    return {"received": True}


# =============================================================================
# ===================== SECCIÓN 4: CRON =======================================
# =============================================================================
# Los llama un cron externo (cron-job.org o similar) con
# "Authorization: Bearer <CRON_SECRET>". Todos son idempotentes.

@app.post("/api/reminders/send", response_model=ReminderSweepResponse, tags=["Cron"],
          dependencies=[Depends(require_cron_secret)])
async def send_reminders(
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
    settings: Settings = Depends(get_settings),
    notifier: Optional[TelegramNotifier] = Depends(get_notifier),
):
    """Envía los recordatorios que tocan ahora"""
    now = clock.now()
    result = await send_due_reminders(db, notifier, clock, settings, now=now)
    return {"success": True, "timestamp": now, **result}


@app.post("/api/cron/expire-subscriptions", response_model=SweepResponse, tags=["Cron"],
          dependencies=[Depends(require_cron_secret)])
def expire_subscriptions(
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
):
    """Pasa a "expired" las suscripciones caducadas"""
    result = payments.expire_subscriptions(db, clock)
    return {"success": True, "timestamp": clock.now(), **result}


@app.post("/api/cron/reconcile-payments", response_model=SweepResponse, tags=["Cron"],
          dependencies=[Depends(require_cron_secret)])
def reconcile_payments(
    db: Session = Depends(get_db),
    clock: PeriodClock = Depends(get_clock),
    gateway: YooKassaClient = Depends(get_gateway),
):
    """Concilia con YooKassa los pagos pendientes de las últimas 24h"""
    result = payments.reconcile_pending_payments(db, gateway, clock)
    return {"success": True, "timestamp": clock.now(), **result}
