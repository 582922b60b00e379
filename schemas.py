"""
=============================================================================
SCHEMAS.PY — Esquemas de Validación (Pydantic)
=============================================================================
  - Models (SQLAlchemy) → definen las TABLAS de la BD
  - Schemas (Pydantic) → definen qué DATOS acepta/devuelve la API

La web (Telegram Mini App) habla en camelCase ("reminderTime",
"isCompletedToday"), así que los esquemas usan alias camelCase y aceptan
también snake_case al recibir.

Convención de nombres:
  XxxCreate → para crear algo nuevo (POST)
  XxxUpdate → para actualizar algo (PUT)
  XxxResponse → lo que devuelve la API (GET)
"""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from models import GoalType

REMINDER_TIME_PATTERN = r"^([01]\d|2[0-3]):[0-5]\d$"


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True,
                              from_attributes=True)


# =============================================================================
# ===================== HABITS ================================================
# =============================================================================

def _clean_name(value):
    if value is None:
        return value
    value = value.strip()
    if not value:
        raise ValueError("El nombre del hábito es obligatorio")
    return value


def _clean_description(value):
    if value is None:
        return value
    return value.strip() or None


class HabitCreate(ApiModel):
    name: str = Field(min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    reminder_enabled: bool = False
    reminder_time: Optional[str] = Field(default=None, pattern=REMINDER_TIME_PATTERN)
    goal_enabled: bool = False
    goal_type: Optional[GoalType] = None
    goal_target: Optional[int] = Field(default=None, ge=1)
    goal_period_days: Optional[int] = Field(default=None, ge=1)

    @field_validator("name")
    @classmethod
    def clean_name(cls, value):
        return _clean_name(value)

    @field_validator("description")
    @classmethod
    def clean_description(cls, value):
        return _clean_description(value)


class HabitUpdate(ApiModel):
    """Solo se aplican los campos enviados (exclude_unset)"""
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    description: Optional[str] = Field(default=None, max_length=500)
    reminder_enabled: Optional[bool] = None
    reminder_time: Optional[str] = Field(default=None, pattern=REMINDER_TIME_PATTERN)
    goal_enabled: Optional[bool] = None
    goal_type: Optional[GoalType] = None
    goal_target: Optional[int] = Field(default=None, ge=1)
    goal_period_days: Optional[int] = Field(default=None, ge=1)

    @field_validator("name")
    @classmethod
    def clean_name(cls, value):
        return _clean_name(value)

    @field_validator("description")
    @classmethod
    def clean_description(cls, value):
        return _clean_description(value)


class GoalProgress(ApiModel):
    type: str
    target: int
    done: int
    achieved: bool


class HabitResponse(ApiModel):
    id: int
    name: str
    description: Optional[str]
    reminder_enabled: bool
    reminder_time: Optional[str]
    goal_enabled: bool
    goal_type: Optional[str]
    goal_target: Optional[int]
    goal_period_days: Optional[int]
    created_at: datetime
    updated_at: datetime
    streak: int = 0
    is_completed_today: bool = False
    goal_progress: Optional[GoalProgress] = None


class ToggleResponse(ApiModel):
    completed: bool
    streak: int


class DayStatus(ApiModel):
    date: str
    completed: bool


class HabitStatsResponse(ApiModel):
    habit_id: int
    habit_name: str
    last7_days: list[DayStatus] = Field(alias="last7Days")
    streak: int


# =============================================================================
# ===================== SUBSCRIPTION ==========================================
# =============================================================================

class PlanResponse(ApiModel):
    id: str
    name: str
    price: float
    duration_days: int


class PlansResponse(ApiModel):
    plans: list[PlanResponse]


class PaymentSummary(ApiModel):
    id: int
    amount: float
    status: str
    created_at: datetime


class SubscriptionStatusResponse(ApiModel):
    subscription_type: str
    subscription_status: str
    subscription_expires_at: Optional[datetime]
    subscription_started_at: Optional[datetime]
    days_remaining: int
    recent_payments: list[PaymentSummary]


class CreatePaymentRequest(ApiModel):
    plan_id: str


class CreatePaymentResponse(ApiModel):
    payment_id: int
    yookassa_id: str
    amount: float
    confirmation_url: Optional[str]
    status: str
    message: Optional[str] = None


class PaymentStatusResponse(ApiModel):
    payment_id: int
    status: str
    subscription_active: bool


class LatestPaymentResponse(ApiModel):
    has_payment: bool
    payment_id: Optional[int] = None
    status: Optional[str] = None
    subscription_active: Optional[bool] = None
    message: Optional[str] = None


# =============================================================================
# ===================== CRON ==================================================
# =============================================================================

class ReminderSweepResponse(ApiModel):
    success: bool = True
    timestamp: datetime
    processed: int
    due: int
    sent: int
    failed: int


class SweepResponse(ApiModel):
    success: bool = True
    timestamp: datetime
    processed: int
    changed: int
    failed: int = 0
