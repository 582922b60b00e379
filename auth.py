"""
=============================================================================
AUTH.PY — Identificación del usuario
=============================================================================
La web es una Telegram Mini App: Telegram ya sabe quién es el usuario y
la web nos lo pasa en la cabecera "X-Telegram-Id" de cada petición.

  - Sin cabecera o no numérica → 401
  - Primer contacto → se crea el usuario (plan gratuito)

Los endpoints del cron externo (/api/reminders/send, /api/cron/*) se
protegen aparte con "Authorization: Bearer <CRON_SECRET>".
"""

import hmac
import logging
from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import Settings, get_settings
from database import get_db
from errors import Unauthenticated
from models import User

logger = logging.getLogger("habitstreak.auth")


def parse_telegram_id(raw: Optional[str]) -> int:
    """"123456" → 123456. Cualquier otra cosa → Unauthenticated"""
    if raw is None or not raw.strip():
        raise Unauthenticated("Falta la cabecera X-Telegram-Id: abra la app desde Telegram")
    raw = raw.strip()
    if not raw.isdigit():
        logger.warning(f"⚠️ X-Telegram-Id no válido: {raw!r}")
        raise Unauthenticated("Identificador de Telegram no válido")
    return int(raw)


def get_or_create_user(db: Session, telegram_id: int) -> User:
    """Busca el usuario; si es su primera vez, lo crea"""
    user = db.query(User).filter(User.telegram_id == telegram_id).first()
    if user is not None:
        return user

    try:
        user = User(telegram_id=telegram_id)
        db.add(user)
        db.commit()
    except IntegrityError:
        # Otra petición del mismo usuario lo creó a la vez
        db.rollback()
        return db.query(User).filter(User.telegram_id == telegram_id).one()

    db.refresh(user)
    logger.info(f"👤 Nuevo usuario: telegram_id {telegram_id}")
    return user


# ─────────────────────────────────────────────────────────────────────────────
# DEPENDENCIAS DE FASTAPI
# ─────────────────────────────────────────────────────────────────────────────

def get_current_user(
    x_telegram_id: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
) -> User:
    """
    Usuario de la petición.

      @app.get("/api/habits")
      def list_habits(user: User = Depends(get_current_user)):
          ...
    """
    return get_or_create_user(db, parse_telegram_id(x_telegram_id))


def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: Settings = Depends(get_settings),
):
    """
    Protege los endpoints del cron externo.

    Sin CRON_SECRET configurado el endpoint queda abierto (solo se avisa).
    """
    if not settings.cron_secret:
        logger.warning("⚠️ CRON_SECRET no configurado: el endpoint es público")
        return

    expected = f"Bearer {settings.cron_secret}"
    if not authorization or not hmac.compare_digest(authorization, expected):
        raise Unauthenticated("Se requiere Authorization: Bearer <CRON_SECRET>")
