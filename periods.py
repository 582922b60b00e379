"""
=============================================================================
PERIODS.PY — Reloj y Periodos
=============================================================================
Responde a la pregunta "¿qué es HOY?" para las rachas.

Un "periodo" normalmente es un día natural UTC (1440 minutos, empieza a
medianoche UTC). Para pruebas aceleradas se puede configurar un periodo más
corto (ej: 5 minutos) y todo el sistema de rachas sigue funcionando igual.

Todos los límites de periodo están alineados a múltiplos de la duración
contados desde el minuto 0 de la época UTC (1970-01-01 00:00):

  periodo de 1440 min → 00:00, 00:00 del día siguiente...
  periodo de 5 min    → 10:00, 10:05, 10:10...

Propiedad clave: next_period(previous_period(t)) == t para todo t alineado.

Las fechas se manejan como datetime NAIVE en UTC (así se guardan en la BD).
"""

from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

EPOCH = datetime(1970, 1, 1)
DAY_MINUTES = 1440


def utcnow() -> datetime:
    """Instante actual en UTC, sin tzinfo (formato de la BD)"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(moment: datetime) -> datetime:
    """Convierte un datetime con zona a UTC naive. Los naive se asumen UTC."""
    if moment.tzinfo is not None:
        return moment.astimezone(timezone.utc).replace(tzinfo=None)
    return moment


class PeriodClock:
    """
    Proveedor de reloj + periodos.

    Se inyecta en todo lo que necesita saber "qué hora es", así los tests
    pueden fijar el instante y la duración del periodo:

        clock = PeriodClock(period_length_minutes=1440, now=lambda: datetime(2025, 3, 10, 12))
        clock.current_period_start()  → datetime(2025, 3, 10, 0, 0)
    """

    def __init__(self, period_length_minutes: int = DAY_MINUTES,
                 now: Optional[Callable[[], datetime]] = None):
        if period_length_minutes <= 0:
            raise ValueError("period_length_minutes debe ser positivo")
        self.period_length_minutes = period_length_minutes
        self.period_length = timedelta(minutes=period_length_minutes)
        self._now = now or utcnow

    def now(self) -> datetime:
        return to_naive_utc(self._now())

    def period_start(self, moment: datetime) -> datetime:
        """Normaliza un instante al inicio de su periodo (idempotente)"""
        moment = to_naive_utc(moment)
        minutes = (moment - EPOCH) // timedelta(minutes=1)
        aligned = (minutes // self.period_length_minutes) * self.period_length_minutes
        return EPOCH + timedelta(minutes=aligned)

    def current_period_start(self) -> datetime:
        return self.period_start(self.now())

    def next_period(self, moment: datetime) -> datetime:
        return self.period_start(moment) + self.period_length

    def previous_period(self, moment: datetime) -> datetime:
        return self.period_start(moment) - self.period_length
