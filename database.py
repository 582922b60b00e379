"""
=============================================================================
DATABASE.PY — Configuración de la Base de Datos
=============================================================================
En DESARROLLO: SQLite (un archivo .db)
En PRODUCCIÓN: PostgreSQL (vía psycopg v3)

¿Cómo sabe cuál usar?
→ DATABASE_URL en la configuración. Si no existe, SQLite local.

Transacciones:
  Todas las operaciones con varios pasos (límite + crear hábito,
  marcar hábito, conciliar un pago) se hacen dentro de UNA sesión y
  terminan en un único commit. Si algo falla antes del commit, rollback
  y la BD queda como estaba.
"""

import logging
from contextlib import contextmanager

from sqlalchemy import create_engine, event
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, declarative_base

from config import get_settings
from errors import UpstreamUnavailable

logger = logging.getLogger("habitstreak.database")


def normalize_database_url(url: str) -> str:
    """
    Railway/Heroku dan la URL con "postgres://" pero SQLAlchemy necesita
    "postgresql://". Además usamos psycopg (v3) como driver.
    """
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def create_db_engine(url: str, **kwargs):
    """
    Crea el engine.

    Con SQLite aplicamos la receta de SQLAlchemy para que BEGIN y SAVEPOINT
    funcionen de verdad (el driver pysqlite los gestiona mal por defecto).
    Sin esto, begin_nested() al marcar hábitos no sería fiable.
    """
    url = normalize_database_url(url)
    engine_args = dict(kwargs)
    if url.startswith("sqlite"):
        engine_args.setdefault("connect_args", {"check_same_thread": False})

    engine = create_engine(url, echo=False, **engine_args)

    if url.startswith("sqlite"):
        @event.listens_for(engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


# ─────────────────────────────────────────────────────────────────────────────
# ENGINE + SESSION
# ─────────────────────────────────────────────────────────────────────────────

engine = create_db_engine(get_settings().database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """
    Dependencia de FastAPI: una sesión por petición.

      @app.get("/algo")
      def mi_endpoint(db: Session = Depends(get_db)):
          ...
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None):
    """Crea todas las tablas si no existen. Se llama al arrancar."""
    import models  # noqa: F401  (registra las tablas en Base.metadata)

    Base.metadata.create_all(bind=bind or engine)


# ─────────────────────────────────────────────────────────────────────────────
# TRANSACCIONES
# ─────────────────────────────────────────────────────────────────────────────

@contextmanager
def atomic(db):
    """
    Ejecuta un bloque como UNA transacción: commit al final, rollback si falla.

        with atomic(db):
            user = lock_user(db, user_id)
            db.add(Habit(...))

    Un fallo de conexión con la BD se convierte en UpstreamUnavailable
    (el cliente puede reintentar).
    """
    try:
        yield db
        db.commit()
    except OperationalError as e:
        db.rollback()
        logger.error(f"❌ Error de conexión con la BD: {e}")
        raise UpstreamUnavailable("La base de datos no responde, reintente") from e
    except Exception:
        db.rollback()
        raise
