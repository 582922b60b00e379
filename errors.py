"""
=============================================================================
ERRORS.PY — Errores de negocio
=============================================================================
Cada error sabe qué código HTTP le corresponde y si el cliente debe:
  - ofrecer pasar a Premium (upgrade_required)
  - reintentar más tarde (retryable)

main.py tiene UN handler que convierte cualquier HabitStreakError en JSON.
La lógica (limits.py, payments.py...) solo lanza estas excepciones, nunca
HTTPException, para poder usarse también fuera de FastAPI.
"""


class HabitStreakError(Exception):
    status_code = 500
    code = "internal_error"
    upgrade_required = False
    retryable = False

    def __init__(self, message: str = "", **extra):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.extra = extra

    def to_dict(self) -> dict:
        body = {
            "error": self.code,
            "detail": self.message,
            "upgradeRequired": self.upgrade_required,
            "retryable": self.retryable,
        }
        body.update(self.extra)
        return body


class ValidationError(HabitStreakError):
    status_code = 400
    code = "validation_error"


class Unauthenticated(HabitStreakError):
    status_code = 401
    code = "unauthenticated"


class NotFound(HabitStreakError):
    status_code = 404
    code = "not_found"


class LimitExceeded(HabitStreakError):
    status_code = 403
    code = "limit_exceeded"
    upgrade_required = True


class PremiumRequired(HabitStreakError):
    status_code = 403
    code = "premium_required"
    upgrade_required = True


class AlreadySubscribed(HabitStreakError):
    status_code = 409
    code = "already_subscribed"


class Conflict(HabitStreakError):
    status_code = 409
    code = "conflict"


class UpstreamUnavailable(HabitStreakError):
    """La pasarela de pago o la BD no responden. Se puede reintentar."""
    status_code = 503
    code = "upstream_unavailable"
    retryable = True


class UnknownPlan(HabitStreakError):
    """El pago guarda un planId que no existe en el catálogo"""
    code = "unknown_plan"


class MetadataCorrupt(HabitStreakError):
    """El metadata del pago no se puede leer"""
    code = "metadata_corrupt"
