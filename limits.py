"""
=============================================================================
LIMITS.PY — Hábitos con límites del plan
=============================================================================
Todo lo que MODIFICA hábitos pasa por aquí:

  - Crear hábito   → comprueba el límite del plan gratuito (3 hábitos)
                     y que reminders/objetivos sean solo Premium
  - Editar hábito  → si el Premium caducó, quita reminders/objetivos
  - Borrar hábito  → borra también su historial
  - Marcar hábito  → toggle: si ya estaba marcado hoy, se desmarca

¿Por qué bloquear la fila del usuario?
  Sin bloqueo, dos peticiones simultáneas de un usuario gratuito con 2
  hábitos verían ambas "2 < 3" y crearían el 3º y el 4º. Con
  SELECT ... FOR UPDATE sobre el usuario, la segunda espera a que la
  primera haga commit y entonces ve 3 hábitos.

Al final del archivo están las LECTURAS (lista con rachas, estadísticas
de 7 días), que no escriben nada.
"""

import logging
from typing import Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from database import atomic
from errors import LimitExceeded, NotFound, PremiumRequired, ValidationError
from models import GoalType, Habit, HabitLog, SubscriptionStatus, User
from periods import PeriodClock
from streaks import compute_streak, completion_history, goal_progress, is_completed

logger = logging.getLogger("habitstreak.limits")

FREE_HABITS_LIMIT = 3

PREMIUM_FIELDS = (
    "reminder_enabled", "reminder_time",
    "goal_enabled", "goal_type", "goal_target", "goal_period_days",
)


# ─────────────────────────────────────────────────────────────────────────────
# HELPERS
# ─────────────────────────────────────────────────────────────────────────────

def lock_user(db: Session, user_id: int) -> User:
    """Carga el usuario con bloqueo de fila (hasta el commit/rollback)"""
    user = (
        db.query(User)
        .filter(User.id == user_id)
        .populate_existing()
        .with_for_update()
        .first()
    )
    if user is None:
        raise NotFound("Usuario no encontrado")
    return user


def effective_premium(user: User, now) -> bool:
    """
    ¿Tiene Premium AHORA? El estado guardado es solo una caché.

    Si figura "active" pero ya caducó, lo bajamos a "expired" (se guarda
    con el commit de la operación en curso).
    """
    if user.has_active_subscription(now):
        return True
    if user.subscription_status == SubscriptionStatus.active.value:
        user.subscription_status = SubscriptionStatus.expired.value
        logger.info(f"⌛ Suscripción caducada → expired (user {user.id})")
    return False


def _get_owned_habit(db: Session, habit_id: int, user_id: int) -> Habit:
    habit = db.query(Habit).filter(Habit.id == habit_id, Habit.user_id == user_id).first()
    if habit is None:
        raise NotFound("Hábito no encontrado")
    return habit


def _requests_premium(draft: dict) -> bool:
    return bool(draft.get("reminder_enabled") or draft.get("goal_enabled"))


def _strip_premium(values: dict) -> dict:
    values = dict(values)
    values.update(
        reminder_enabled=False, reminder_time=None,
        goal_enabled=False, goal_type=None, goal_target=None, goal_period_days=None,
    )
    return values


def _clean_values(values: dict) -> dict:
    """Normaliza lo que llega de fuera (Enums → string, nombre sin espacios)"""
    values = dict(values)
    if "name" in values:
        name = (values["name"] or "").strip()
        if not 1 <= len(name) <= 100:
            raise ValidationError("El nombre debe tener entre 1 y 100 caracteres")
        values["name"] = name
    if "description" in values and values["description"] is not None:
        description = values["description"].strip()
        if len(description) > 500:
            raise ValidationError("La descripción no puede superar 500 caracteres")
        values["description"] = description or None
    if isinstance(values.get("goal_type"), GoalType):
        values["goal_type"] = values["goal_type"].value
    return values


def find_period_log(db: Session, habit_id: int, period) -> Optional[HabitLog]:
    return db.query(HabitLog).filter(
        HabitLog.habit_id == habit_id,
        HabitLog.period_start == period,
    ).first()


# =============================================================================
# ===================== CREAR / EDITAR / BORRAR ===============================
# =============================================================================

def create_habit(db: Session, owner_id: int, draft: dict, clock: PeriodClock,
                 free_limit: int = FREE_HABITS_LIMIT) -> Habit:
    """
    Crea un hábito respetando el plan del usuario.

    Orden OBLIGATORIO:
      1. Bloquear usuario y contar sus hábitos
      2. ¿Premium efectivo?
      3. Gratis y ya tiene free_limit → LimitExceeded (antes de nada más)
      4. Pide reminder/objetivo sin Premium → PremiumRequired
      5. Insertar (sin campos Premium si es gratuito)
    """
    values = _clean_values(draft)

    with atomic(db):
        user = lock_user(db, owner_id)
        habit_count = db.query(func.count(Habit.id)).filter(Habit.user_id == user.id).scalar()
        premium = effective_premium(user, clock.now())

        if not premium and habit_count >= free_limit:
            raise LimitExceeded(
                f"En el plan gratuito puede crear como máximo {free_limit} hábitos",
                limit=free_limit,
                current=habit_count,
            )

        if not premium and _requests_premium(values):
            raise PremiumRequired("Los recordatorios y objetivos son funciones Premium")

        if not premium:
            values = _strip_premium(values)

        habit = Habit(user_id=user.id, created_at=clock.now(), updated_at=clock.now(), **values)
        db.add(habit)

    db.refresh(habit)
    logger.info(f"➕ Hábito creado: {habit.name} (user {owner_id}, premium={premium})")
    return habit


def update_habit(db: Session, owner_id: int, habit_id: int, changes: dict,
                 clock: PeriodClock) -> Habit:
    """
    Actualiza solo los campos enviados.

    La suscripción se relee AHORA: si el Premium caducó desde que se creó
    el hábito, se quitan reminder y objetivo sin dar error.
    """
    values = _clean_values(changes)

    with atomic(db):
        user = lock_user(db, owner_id)
        habit = _get_owned_habit(db, habit_id, user.id)
        premium = effective_premium(user, clock.now())

        if not premium:
            values = {k: v for k, v in values.items() if k not in PREMIUM_FIELDS}
            values = _strip_premium(values)

        for key, value in values.items():
            setattr(habit, key, value)

    db.refresh(habit)
    return habit


def delete_habit(db: Session, owner_id: int, habit_id: int):
    """Borra el hábito y todo su historial (cascade)"""
    with atomic(db):
        habit = _get_owned_habit(db, habit_id, owner_id)
        name = habit.name
        db.delete(habit)
    logger.info(f"🗑️ Hábito borrado: {name} (user {owner_id})")


# =============================================================================
# ===================== MARCAR (TOGGLE) =======================================
# =============================================================================

def toggle_completion(db: Session, habit_id: int, owner_id: int, clock: PeriodClock) -> dict:
    """
    Marca/desmarca el hábito en el periodo actual.

      - Hay log → se borra → {"completed": False}
      - No hay  → se crea  → {"completed": True}

    Carrera: si otra petición insertó el mismo (hábito, periodo) entre
    nuestra lectura y nuestro INSERT, salta la restricción única. Entonces
    borramos la fila ganadora: dos "completar" simultáneos se anulan, igual
    que dos toques seguidos. Nunca quedan dos logs.
    """
    with atomic(db):
        habit = _get_owned_habit(db, habit_id, owner_id)
        period = clock.current_period_start()

        existing = find_period_log(db, habit.id, period)
        if existing is not None:
            db.delete(existing)
            completed = False
        else:
            try:
                with db.begin_nested():
                    db.add(HabitLog(habit_id=habit.id, period_start=period))
                completed = True
            except IntegrityError:
                logger.info(f"🔁 Inserción duplicada en hábito {habit.id}, se resuelve como toggle")
                winner = find_period_log(db, habit.id, period)
                if winner is not None:
                    db.delete(winner)
                completed = False

    return {"completed": completed}


# =============================================================================
# ===================== LECTURAS ==============================================
# =============================================================================

def habit_periods(db: Session, habit_id: int) -> list:
    rows = db.query(HabitLog.period_start).filter(HabitLog.habit_id == habit_id).all()
    return [row[0] for row in rows]


def habit_streak(db: Session, habit_id: int, clock: PeriodClock) -> int:
    return compute_streak(habit_periods(db, habit_id), clock.current_period_start(), clock)


def describe_habit(habit: Habit, periods: list, clock: PeriodClock) -> dict:
    """Hábito + racha + ¿hecho hoy? + progreso del objetivo"""
    current = clock.current_period_start()
    streak = compute_streak(periods, current, clock)
    return {
        "id": habit.id,
        "name": habit.name,
        "description": habit.description,
        "reminder_enabled": habit.reminder_enabled,
        "reminder_time": habit.reminder_time,
        "goal_enabled": habit.goal_enabled,
        "goal_type": habit.goal_type,
        "goal_target": habit.goal_target,
        "goal_period_days": habit.goal_period_days,
        "created_at": habit.created_at,
        "updated_at": habit.updated_at,
        "streak": streak,
        "is_completed_today": is_completed(periods, current, clock),
        "goal_progress": goal_progress(habit, streak),
    }


def list_habits(db: Session, owner_id: int, clock: PeriodClock) -> list:
    """Hábitos del usuario (más nuevos primero) con sus rachas"""
    habits = (
        db.query(Habit)
        .filter(Habit.user_id == owner_id)
        .order_by(Habit.created_at.desc(), Habit.id.desc())
        .all()
    )
    if not habits:
        return []

    periods_by_habit = {h.id: [] for h in habits}
    rows = db.query(HabitLog.habit_id, HabitLog.period_start).filter(
        HabitLog.habit_id.in_(periods_by_habit.keys())
    ).all()
    for habit_id, period in rows:
        periods_by_habit[habit_id].append(period)

    return [describe_habit(h, periods_by_habit[h.id], clock) for h in habits]


def get_habit_view(db: Session, owner_id: int, habit_id: int, clock: PeriodClock) -> dict:
    habit = _get_owned_habit(db, habit_id, owner_id)
    return describe_habit(habit, habit_periods(db, habit.id), clock)


def habit_stats(db: Session, owner_id: int, habit_id: int, clock: PeriodClock) -> dict:
    """Últimos 7 periodos + racha"""
    habit = _get_owned_habit(db, habit_id, owner_id)
    periods = habit_periods(db, habit.id)
    current = clock.current_period_start()
    return {
        "habit_id": habit.id,
        "habit_name": habit.name,
        "last7_days": completion_history(periods, current, clock),
        "streak": compute_streak(periods, current, clock),
    }
