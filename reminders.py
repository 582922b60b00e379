"""
=============================================================================
REMINDERS.PY — Recordatorios de hábitos por Telegram
=============================================================================
El cron externo llama a POST /api/reminders/send cada pocos minutos.
En cada llamada:

  1. Se buscan los hábitos con recordatorio activo (solo usuarios Premium)
  2. Se pasa la hora LOCAL del recordatorio a UTC con la zona del usuario
  3. ¿Toca ya? → sí si han pasado entre 0 y `tolerancia` minutos
  4. Si el hábito ya se marcó en el periodo actual → no se molesta
  5. Se envía el mensaje

La comparación es "módulo 24h": un recordatorio a las 23:58 UTC sigue
tocando a las 00:01 UTC con tolerancia 5. Nunca se avisa antes de hora.

Zonas horarias aceptadas: "UTC+3", "GMT-5", "+3", "+05:30", "-2" y
nombres IANA ("Europe/Moscow", vía pytz). Lo que no se entiende → la
zona por defecto (UTC+3).
"""

import logging
import re
from datetime import datetime
from typing import Optional

import pytz
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup, WebAppInfo
from telegram.constants import ParseMode
from telegram.error import TelegramError
from telegram.helpers import escape_markdown

from models import Habit, HabitLog, User
from periods import DAY_MINUTES, PeriodClock, utcnow

logger = logging.getLogger("habitstreak.reminders")

DEFAULT_OFFSET_MINUTES = 180   # UTC+3
DEFAULT_TOLERANCE_MINUTES = 5

_OFFSET_RE = re.compile(r"^(?:UTC|GMT)?\s*([+-])\s*(\d{1,2})(?::?(\d{2}))?$", re.IGNORECASE)
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


# =============================================================================
# ===================== ZONAS HORARIAS ========================================
# =============================================================================

def _offset_minutes(value: Optional[str], now: datetime) -> Optional[int]:
    """Desfase en minutos respecto a UTC, o None si no se entiende"""
    if not value or not value.strip():
        return None
    value = value.strip()

    if value.upper() in ("UTC", "GMT", "Z"):
        return 0

    match = _OFFSET_RE.match(value)
    if match:
        sign, hours, minutes = match.groups()
        hours, minutes = int(hours), int(minutes or 0)
        if hours > 14 or minutes >= 60:
            return None
        total = hours * 60 + minutes
        return -total if sign == "-" else total

    try:
        tz = pytz.timezone(value)
    except pytz.UnknownTimeZoneError:
        return None
    offset = pytz.utc.localize(now).astimezone(tz).utcoffset()
    return int(offset.total_seconds() // 60)


def parse_timezone_offset(value: Optional[str], default: str = "UTC+3",
                          now: Optional[datetime] = None) -> int:
    """
    "UTC+3" → 180, "-05:30" → -330, "Europe/Moscow" → 180...

    Si `value` no se entiende se usa `default`; si tampoco, UTC+3.
    Las zonas IANA se evalúan en el instante `now` (por el horario de verano).
    """
    now = now or utcnow()
    offset = _offset_minutes(value, now)
    if offset is None:
        offset = _offset_minutes(default, now)
    if offset is None:
        offset = DEFAULT_OFFSET_MINUTES
    return offset


def reminder_utc_minutes(time_local: str, offset_minutes: int) -> int:
    """
    "09:00" en UTC+3 → 360 (06:00 UTC).

    El resultado siempre está en [0, 1440): "01:00" en UTC+3 → 1320 (22:00
    UTC del día anterior).
    """
    match = _TIME_RE.match(time_local or "")
    if not match:
        raise ValueError(f"Hora de recordatorio no válida: {time_local!r}")
    local = int(match.group(1)) * 60 + int(match.group(2))
    return (local - offset_minutes) % DAY_MINUTES


def is_reminder_due(reminder_time: Optional[str], timezone: Optional[str], now_utc: datetime,
                    tolerance_minutes: int = DEFAULT_TOLERANCE_MINUTES,
                    default_timezone: str = "UTC+3") -> bool:
    """¿Toca enviar? 0 ≤ (ahora − recordatorio) ≤ tolerancia, módulo 24h"""
    try:
        offset = parse_timezone_offset(timezone, default_timezone, now_utc)
        target = reminder_utc_minutes(reminder_time, offset)
    except ValueError:
        return False

    now_minutes = now_utc.hour * 60 + now_utc.minute
    return (now_minutes - target) % DAY_MINUTES <= tolerance_minutes


# =============================================================================
# ===================== ENVÍO =================================================
# =============================================================================

class TelegramNotifier:
    """Envía los recordatorios con python-telegram-bot"""

    def __init__(self, token: str, webapp_url: Optional[str] = None, bot: Optional[Bot] = None):
        self.bot = bot or Bot(token)
        self.webapp_url = webapp_url

    async def send_reminder(self, telegram_id: int, habit_name: str) -> bool:
        text = (
            "⏰ *¡Recordatorio\\!*\n\n"
            f"No olvide completar su hábito: *{escape_markdown(habit_name, version=2)}*\n\n"
            "¡Aún está a tiempo\\! 💪"
        )
        keyboard = None
        if self.webapp_url:
            keyboard = InlineKeyboardMarkup([
                [InlineKeyboardButton("📱 Abrir tracker", web_app=WebAppInfo(url=self.webapp_url))]
            ])

        try:
            await self.bot.send_message(
                chat_id=telegram_id,
                text=text,
                parse_mode=ParseMode.MARKDOWN_V2,
                reply_markup=keyboard,
            )
            return True
        except TelegramError as e:
            logger.error(f"Error enviando recordatorio a {telegram_id}: {e}")
            return False


def find_due_reminders(db: Session, clock: PeriodClock, settings, now: datetime) -> dict:
    """
    Parte síncrona del barrido (solo BD): qué hábitos hay que avisar ahora.

    Devuelve {"processed", "failed", "due": [(habit_id, telegram_id, nombre), ...]}.
    """
    period = clock.period_start(now)
    processed = failed = 0
    due = []

    rows = (
        db.query(Habit, User)
        .join(User, Habit.user_id == User.id)
        .filter(Habit.reminder_enabled.is_(True), Habit.reminder_time.isnot(None))
        .all()
    )

    for habit, user in rows:
        processed += 1
        try:
            if not user.has_active_subscription(now):
                continue
            if not is_reminder_due(habit.reminder_time, user.timezone, now,
                                   settings.reminder_tolerance_minutes,
                                   settings.default_timezone):
                continue

            done = db.query(HabitLog.id).filter(
                HabitLog.habit_id == habit.id,
                HabitLog.period_start == period,
            ).first()
            if done:
                continue

            due.append((habit.id, user.telegram_id, habit.name))
        except Exception as e:
            failed += 1
            logger.error(f"Error procesando el recordatorio del hábito {habit.id}: {e}")

    return {"processed": processed, "failed": failed, "due": due}


async def send_due_reminders(db: Session, notifier, clock: PeriodClock, settings,
                             now: Optional[datetime] = None) -> dict:
    """
    Barrido de recordatorios. Devuelve {processed, due, sent, failed}.

    Las consultas van al threadpool para no bloquear el event loop; solo
    los envíos a Telegram corren en él. Un fallo con un hábito (Telegram
    caído, BD...) se registra y se sigue con el siguiente. Llamarlo dos
    veces en la misma ventana puede repetir un aviso: no guardamos qué
    se envió.
    """
    now = now or clock.now()

    if notifier is None:
        logger.warning("⚠️ TELEGRAM_BOT_TOKEN no configurado, no se envían recordatorios")
        return {"processed": 0, "due": 0, "sent": 0, "failed": 0}

    found = await run_in_threadpool(find_due_reminders, db, clock, settings, now)
    sent = 0
    failed = found["failed"]

    for habit_id, telegram_id, habit_name in found["due"]:
        try:
            if await notifier.send_reminder(telegram_id, habit_name):
                sent += 1
                logger.info(f"✅ Recordatorio '{habit_name}' → {telegram_id}")
            else:
                failed += 1
        except Exception as e:
            failed += 1
            logger.error(f"Error enviando el recordatorio del hábito {habit_id}: {e}")

    processed, due = found["processed"], len(found["due"])
    logger.info(f"📊 {processed} hábitos revisados, {due} pendientes, {sent} enviados, {failed} fallidos")
    return {"processed": processed, "due": due, "sent": sent, "failed": failed}
