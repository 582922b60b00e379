"""
=============================================================================
SCHEDULER.PY — Comprobación diferida de pagos
=============================================================================
Cuando se crea un pago, YooKassa suele tardar unos segundos en tenerlo
como "succeeded" y el webhook puede no llegar nunca (red, firewall...).
Por eso, unos segundos después de crear cada pago, preguntamos nosotros.

Usa APScheduler con un DateTrigger: una tarea que se ejecuta UNA vez.

Lo periódico (recordatorios, caducar suscripciones, barrer pagos
pendientes) NO vive aquí: lo dispara un cron externo llamando a
/api/reminders/send y /api/cron/*. Así, con varias réplicas de la API,
nada se ejecuta dos veces.

Es "best effort": si el proceso se reinicia antes de la comprobación,
se pierde, y el pago se concilia por webhook, por el cliente o por el cron.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.date import DateTrigger

logger = logging.getLogger("habitstreak.scheduler")

scheduler: AsyncIOScheduler = None


def create_scheduler() -> AsyncIOScheduler:
    """Crea el scheduler (sin tareas: se añaden al crear cada pago)"""
    global scheduler
    scheduler = AsyncIOScheduler(timezone="UTC")
    logger.info("⏰ Scheduler configurado: comprobación diferida de pagos")
    return scheduler


def start_scheduler():
    """Arranca el scheduler"""
    global scheduler
    if scheduler and not scheduler.running:
        scheduler.start()
        logger.info("⏰ Scheduler arrancado")


def stop_scheduler():
    """Para el scheduler"""
    global scheduler
    if scheduler and scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("⏰ Scheduler parado")


def schedule_payment_check(payment_id: int, job: Callable[[int], None], delay_seconds: int = 5) -> bool:
    """
    Programa job(payment_id) dentro de `delay_seconds`.

    Si el scheduler no está en marcha (tests, polling desactivado) no hace
    nada y devuelve False.
    """
    if not scheduler or not scheduler.running:
        return False

    run_at = datetime.now(timezone.utc) + timedelta(seconds=delay_seconds)
    scheduler.add_job(
        job,
        DateTrigger(run_date=run_at),
        args=[payment_id],
        id=f"payment_check_{payment_id}",
        name=f"Comprobar pago {payment_id}",
        replace_existing=True,
    )
    logger.info(f"⏰ Comprobación del pago {payment_id} en {delay_seconds}s")
    return True
