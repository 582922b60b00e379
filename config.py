"""
=============================================================================
CONFIG.PY — Configuración centralizada
=============================================================================
Todas las variables de entorno se leen AQUÍ, una sola vez.

El resto del código nunca llama a os.getenv: recibe un objeto Settings
(inyectado como dependencia de FastAPI con get_settings). Así los tests
pueden sustituir la configuración sin tocar variables de entorno.

Variables principales:
  DATABASE_URL            → SQLite en local, PostgreSQL en producción
  PERIOD_LENGTH_MINUTES   → cuánto dura un "día" para las rachas (1440 = día real)
  YUKASSA_*               → credenciales de la pasarela de pago
  TELEGRAM_BOT_TOKEN      → para enviar recordatorios
  CRON_SECRET             → protege los endpoints que llama el cron externo
"""

import os
import logging
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("habitstreak.config")


class ConfigurationError(RuntimeError):
    """Configuración inválida detectada al arrancar"""


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class Settings(BaseModel):
    # ── Base de datos ──
    database_url: str = "sqlite:///./habitstreak.db"

    # ── Rachas ──
    period_length_minutes: int = Field(default=1440, gt=0)
    # 1440 → un día natural UTC. Valores más pequeños solo para pruebas aceleradas.

    # ── Límites del plan gratuito ──
    free_habits_limit: int = 3

    # ── YooKassa ──
    yookassa_shop_id: str = ""
    yookassa_secret_key: str = ""
    yookassa_mode: str = "test"
    # yookassa_mode → "test" o "production". Las URLs son las mismas, cambian las claves.

    # ── URLs ──
    webapp_url: str = "http://localhost:3000"

    # ── Comprobación diferida tras crear un pago ──
    payment_polling_enabled: bool = True
    payment_poll_delay_seconds: int = 5

    # ── Telegram y recordatorios ──
    telegram_bot_token: str = ""
    cron_secret: Optional[str] = None
    reminder_tolerance_minutes: int = 5
    default_timezone: str = "UTC+3"

    @property
    def is_production(self) -> bool:
        return self.yookassa_mode == "production"

    @property
    def yookassa_configured(self) -> bool:
        return bool(self.yookassa_shop_id and self.yookassa_secret_key)

    @classmethod
    def from_env(cls) -> "Settings":
        """Construye la configuración desde las variables de entorno"""
        mode = "production" if os.getenv("YUKASSA_MODE") == "production" else "test"
        webapp_url = (
            os.getenv("WEBAPP_URL")
            or os.getenv("FRONTEND_URL")
            or "http://localhost:3000"
        )
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./habitstreak.db"),
            period_length_minutes=int(os.getenv("PERIOD_LENGTH_MINUTES", "1440")),
            free_habits_limit=int(os.getenv("FREE_HABITS_LIMIT", "3")),
            yookassa_shop_id=os.getenv("YUKASSA_SHOP_ID", ""),
            yookassa_secret_key=os.getenv("YUKASSA_SECRET_KEY", ""),
            yookassa_mode=mode,
            webapp_url=webapp_url.rstrip("/"),
            # En producción el polling está apagado salvo que se pida explícitamente
            payment_polling_enabled=_env_bool("ENABLE_PAYMENT_POLLING", mode != "production"),
            payment_poll_delay_seconds=int(os.getenv("PAYMENT_POLL_DELAY_SECONDS", "5")),
            telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", ""),
            cron_secret=os.getenv("CRON_SECRET") or None,
            reminder_tolerance_minutes=int(os.getenv("REMINDER_TOLERANCE_MINUTES", "5")),
            default_timezone=os.getenv("DEFAULT_TIMEZONE", "UTC+3"),
        )

    def validate_payment_credentials(self):
        """
        Comprueba que las claves de YooKassa corresponden al modo.

          - Producción con clave "test_..." → error fatal (nunca cobrar con claves de prueba)
          - Modo test con clave real → solo aviso
          - Sin credenciales → aviso; los endpoints de pago responderán 503
        """
        if not self.yookassa_configured:
            logger.error("❌ YUKASSA_SHOP_ID o YUKASSA_SECRET_KEY no configurados")
            return

        if self.is_production:
            if self.yookassa_secret_key.startswith("test_"):
                raise ConfigurationError(
                    "No se pueden usar credenciales de prueba en modo producción"
                )
            logger.info("🔒 YooKassa en modo producción (claves reales)")
        else:
            if not self.yookassa_secret_key.startswith("test_"):
                logger.warning("⚠️ Claves reales de YooKassa en modo test")
            logger.info("🧪 YooKassa en modo test")

        logger.info(
            f"📋 Shop ID: {self.yookassa_shop_id}, "
            f"clave: {self.yookassa_secret_key[:10]}..."
        )


@lru_cache
def get_settings() -> Settings:
    """Dependencia de FastAPI: configuración única por proceso"""
    return Settings.from_env()
