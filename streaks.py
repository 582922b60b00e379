"""
=============================================================================
STREAKS.PY — Motor de Rachas
=============================================================================
Calcula la racha (periodos consecutivos completados) de un hábito.

Funciones PURAS: reciben los periodos completados y el periodo actual,
no tocan la BD. Quien llama carga los logs y nos pasa sus period_start.

Lógica de la racha:
  - Si se completó en el periodo actual → cuenta 1 y seguimos hacia atrás
  - Si no → empezamos a contar desde el periodo anterior (ayer)
  - Cualquier hueco corta la cuenta

  Ejemplo (periodo = día, hoy = 10):
    completado 10, 9, 8, 6  → racha 3 (el 7 es un hueco)
    completado 9, 8         → racha 2 (hoy aún no, pero ayer sí)
    completado 5            → racha 0
"""

from datetime import datetime
from typing import Iterable, Optional

from models import GoalType, Habit
from periods import PeriodClock

HISTORY_DAYS = 7


def normalize_periods(completions: Iterable[datetime], clock: PeriodClock) -> set:
    """Lleva cada instante al inicio de su periodo (lo ya normalizado no cambia)"""
    return {clock.period_start(c) for c in completions}


def compute_streak(completions: Iterable[datetime], current_period: datetime,
                   clock: PeriodClock) -> int:
    """
    Periodos consecutivos completados que terminan en el periodo actual
    o en el inmediatamente anterior.

    No depende del orden de entrada: ordenamos nosotros de más reciente
    a más antiguo antes de recorrer.
    """
    periods = normalize_periods(completions, clock)
    if not periods:
        return 0

    current = clock.period_start(current_period)
    ordered = sorted(periods, reverse=True)

    has_current = current in periods
    streak = 1 if has_current else 0
    cursor = clock.previous_period(current)
    start = ordered.index(current) + 1 if has_current else 0

    for period in ordered[start:]:
        if period != cursor:
            break
        streak += 1
        cursor = clock.previous_period(cursor)

    return streak


def is_completed(completions: Iterable[datetime], current_period: datetime,
                 clock: PeriodClock) -> bool:
    """¿Hay log para el periodo actual?"""
    return clock.period_start(current_period) in normalize_periods(completions, clock)


def completion_history(completions: Iterable[datetime], current_period: datetime,
                       clock: PeriodClock, days: int = HISTORY_DAYS) -> list:
    """
    Últimos N periodos (del más antiguo al actual) con su estado.

      [{"date": "2025-03-04", "completed": False}, ..., {"date": "2025-03-10", "completed": True}]

    Con periodos cortos (modo prueba) "date" lleva también la hora.
    """
    periods = normalize_periods(completions, clock)
    cursor = clock.period_start(current_period)
    window = []
    for _ in range(days):
        window.append(cursor)
        cursor = clock.previous_period(cursor)

    history = []
    for period in reversed(window):
        if clock.period_length_minutes % 1440 == 0:
            label = period.date().isoformat()
        else:
            label = period.isoformat(timespec="minutes")
        history.append({"date": label, "completed": period in periods})
    return history


def goal_progress(habit: Habit, streak: int) -> Optional[dict]:
    """
    Progreso del objetivo de tipo racha.

    Los demás tipos (count, period) se muestran en el cliente; aquí solo
    devolvemos None para ellos.
    """
    if not habit.goal_enabled or habit.goal_type != GoalType.streak.value:
        return None
    if not habit.goal_target:
        return None

    done = min(streak, habit.goal_target)
    return {
        "type": habit.goal_type,
        "target": habit.goal_target,
        "done": done,
        "achieved": done >= habit.goal_target,
    }
