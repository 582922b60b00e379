"""
=============================================================================
MODELS.PY — Modelos (Tablas) de la Base de Datos
=============================================================================
Cada clase aquí = una tabla en la base de datos.

RELACIONES:
  USER
  ├── habits[] ──→ habit_logs[]
  └── payments[]

Los estados (tipo de suscripción, estado de pago...) son Enums en Python.
En la BD y en la API viajan como strings; dentro del código siempre
comparamos contra el Enum, nunca contra un literal suelto.
"""

import enum

from sqlalchemy import (
    Column, Integer, BigInteger, String, Boolean, Text, DateTime,
    Numeric, ForeignKey, UniqueConstraint, Index
)
from sqlalchemy.orm import relationship

from database import Base
from periods import utcnow


# =============================================================================
# ===================== ENUMS (Tipos predefinidos) ============================
# =============================================================================

class SubscriptionType(str, enum.Enum):
    """Tipo de suscripción"""
    free = "free"
    premium = "premium"
    trial = "trial"


class SubscriptionStatus(str, enum.Enum):
    """Estado de la suscripción (caché: la verdad es expires_at vs ahora)"""
    active = "active"
    expired = "expired"
    canceled = "canceled"
    free = "free"


class PaymentStatus(str, enum.Enum):
    """Estados de pago de YooKassa"""
    pending = "pending"
    waiting_for_capture = "waiting_for_capture"
    succeeded = "succeeded"
    canceled = "canceled"

    @classmethod
    def parse(cls, value) -> "PaymentStatus":
        """Convierte el string de la pasarela. Lo desconocido cuenta como pending."""
        try:
            return cls(value)
        except ValueError:
            return cls.pending

    @property
    def is_final(self) -> bool:
        return self in (PaymentStatus.succeeded, PaymentStatus.canceled)


class GoalType(str, enum.Enum):
    """Tipo de objetivo de un hábito"""
    streak = "streak"    # X periodos seguidos
    count = "count"      # X veces en total
    period = "period"    # X veces en N días


# =============================================================================
# ===================== TABLA 1: USERS ========================================
# =============================================================================

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, autoincrement=True)

    # ── Telegram ──
    telegram_id = Column(BigInteger, unique=True, nullable=False, index=True)
    # telegram_id → identificador externo; el usuario se crea en su primer contacto
    name = Column(String(100), nullable=True)

    # ── Configuración ──
    timezone = Column(String(50), nullable=True)
    # timezone → "UTC+3", "+3", "Europe/Moscow"... si es NULL se usa el por defecto

    # ── Suscripción ──
    subscription_type = Column(String(20), default=SubscriptionType.free.value, nullable=False)
    subscription_status = Column(String(20), default=SubscriptionStatus.free.value, nullable=False)
    subscription_started_at = Column(DateTime, nullable=True)
    # subscription_started_at → primera activación; se conserva al prorrogar
    subscription_expires_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    # ── Relaciones ──
    habits = relationship("Habit", back_populates="user", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="user", cascade="all, delete-orphan")

    def has_active_subscription(self, now) -> bool:
        """Premium efectivo: estado activo Y fecha de expiración en el futuro"""
        return (
            self.subscription_status == SubscriptionStatus.active.value
            and self.subscription_expires_at is not None
            and self.subscription_expires_at > now
        )


# =============================================================================
# ===================== TABLA 2: HABITS =======================================
# =============================================================================

class Habit(Base):
    __tablename__ = "habits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True)

    name = Column(String(100), nullable=False)
    description = Column(String(500), nullable=True)

    # ── Recordatorio (solo Premium) ──
    reminder_enabled = Column(Boolean, default=False, nullable=False)
    reminder_time = Column(String(5), nullable=True)
    # reminder_time → "09:00" en la hora LOCAL del usuario

    # ── Objetivo (solo Premium) ──
    goal_enabled = Column(Boolean, default=False, nullable=False)
    goal_type = Column(String(20), nullable=True)
    goal_target = Column(Integer, nullable=True)
    goal_period_days = Column(Integer, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    user = relationship("User", back_populates="habits")
    logs = relationship("HabitLog", back_populates="habit", cascade="all, delete-orphan")


# =============================================================================
# ===================== TABLA 3: HABIT_LOGS ===================================
# =============================================================================
# "El hábito se completó en el periodo P". Un registro por hábito por periodo.

class HabitLog(Base):
    __tablename__ = "habit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    habit_id = Column(Integer, ForeignKey("habits.id", ondelete="CASCADE"), nullable=False)

    period_start = Column(DateTime, nullable=False)
    # period_start → inicio del periodo (medianoche UTC con periodos de un día)

    created_at = Column(DateTime, default=utcnow)

    # ── Restricción única: un log por hábito por periodo ──
    __table_args__ = (
        UniqueConstraint("habit_id", "period_start", name="uq_habit_period"),
    )

    habit = relationship("Habit", back_populates="logs")


# =============================================================================
# ===================== TABLA 4: PAYMENTS =====================================
# =============================================================================

class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False)

    yookassa_id = Column(String(64), unique=True, nullable=True)
    # yookassa_id → id del pago en la pasarela (NULL hasta que responde)

    amount = Column(Numeric(10, 2), nullable=False)
    currency = Column(String(3), default="RUB", nullable=False)
    status = Column(String(30), default=PaymentStatus.pending.value, nullable=False)
    payment_method = Column(String(50), nullable=True)
    description = Column(Text, nullable=True)
    confirmation_url = Column(Text, nullable=True)
    idempotence_key = Column(String(64), nullable=True)

    metadata_json = Column(Text, nullable=True)
    # metadata_json → '{"planId": "month", "planName": "Mes", "durationDays": 30}'

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_payments_user_status", "user_id", "status"),
    )

    user = relationship("User", back_populates="payments")

    @property
    def payment_status(self) -> PaymentStatus:
        return PaymentStatus.parse(self.status)
