from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator

from sqlalchemy import DateTime, create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Base ORM per tutti i modelli."""
    pass


class UTCDateTime(TypeDecorator):
    """
    Istante assoluto.
    - in scrittura: datetime aware convertito in UTC (naive sul DB)
    - in lettura: UTC riattaccato
    I datetime naive sono rifiutati: l'ora locale non e' un istante.
    """
    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("UTCDateTime richiede un datetime timezone-aware.")
        return value.astimezone(timezone.utc).replace(tzinfo=None)

    def process_result_value(self, value: datetime | None, dialect) -> datetime | None:
        if value is None:
            return None
        return value.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
    # SQLite non applica le FK (ON DELETE CASCADE / SET NULL) senza questo pragma
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """
    Handle unico verso lo store, creato all'avvio del processo e condiviso
    in sola lettura da tutti i componenti. Chiuso con dispose() allo shutdown.
    """

    def __init__(self, url: str, echo: bool = False) -> None:
        connect_args: dict = {}
        if url.startswith("sqlite"):
            # richieste servite da un threadpool + attesa sui lock di scrittura
            connect_args = {"check_same_thread": False, "timeout": 30}

        self.engine: Engine = create_engine(url, echo=echo, future=True, connect_args=connect_args)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine, "connect", _sqlite_pragmas)

        self.SessionLocal = sessionmaker(
            bind=self.engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )

    def create_all(self) -> None:
        """Crea le tabelle se non esistono."""
        # registra i modelli nel metadata
        from clinic_backend import auth_models, models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def session(self) -> Iterator[Session]:
        """
        Context manager per gestire correttamente la sessione:
        - commit se tutto ok
        - rollback su eccezioni
        - close sempre
        """
        session: Session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def dispose(self) -> None:
        self.engine.dispose()
