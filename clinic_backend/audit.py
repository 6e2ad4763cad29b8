from __future__ import annotations

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import select

from .db import Database, utcnow
from .models import AuditEvent

logger = logging.getLogger(__name__)


# =========================
# Azioni registrate
# =========================
LOGIN_SUCCESS = "LOGIN_SUCCESS"
LOGIN_FAILURE = "LOGIN_FAILURE"
REGISTER_USER = "REGISTER_USER"
UPDATE_USER = "UPDATE_USER"
DELETE_USER = "DELETE_USER"
CHANGE_PASSWORD = "CHANGE_PASSWORD"
CREATE_CLIENT = "CREATE_CLIENT"
UPDATE_CLIENT = "UPDATE_CLIENT"
DELETE_CLIENT = "DELETE_CLIENT"
BOOK_APPOINTMENT = "BOOK_APPOINTMENT"
BOOK_APPOINTMENT_CONFLICT = "BOOK_APPOINTMENT_CONFLICT"
CLEAR_DATABASE_SUCCESS = "CLEAR_DATABASE_SUCCESS"
CLEAR_DATABASE_FAILURE = "CLEAR_DATABASE_FAILURE"


@dataclass(frozen=True)
class AuditRecord:
    action: str
    actor_user_id: str | None = None
    target_type: str | None = None
    target_id: str | None = None
    details: str | None = None
    timestamp: datetime = field(default_factory=utcnow)


class AuditSink:
    """
    Canale laterale asincrono per l'audit log.
    - record() non blocca e non solleva mai
    - la scrittura avviene su un worker dedicato, in una sessione propria
    - un errore di scrittura finisce nel log operativo, non al chiamante
    Un solo worker: le scritture sono eseguite in ordine FIFO.
    """

    def __init__(self, db: Database) -> None:
        self._db = db
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="audit")

    def record(
        self,
        action: str,
        *,
        actor_user_id: str | None = None,
        target_type: str | None = None,
        target_id: str | None = None,
        details: str | None = None,
    ) -> None:
        rec = AuditRecord(
            action=action,
            actor_user_id=actor_user_id,
            target_type=target_type,
            target_id=target_id,
            details=details,
        )
        try:
            future = self._executor.submit(self._write, rec)
        except RuntimeError:
            # executor gia' chiuso (shutdown in corso)
            logger.error("Audit sink closed, dropping event %s", rec.action)
            return
        future.add_done_callback(lambda f: self._report(f, rec))

    def _write(self, rec: AuditRecord) -> None:
        with self._db.session() as s:
            s.add(
                AuditEvent(
                    actor_user_id=rec.actor_user_id,
                    action=rec.action,
                    target_type=rec.target_type,
                    target_id=rec.target_id,
                    details=rec.details,
                    timestamp=rec.timestamp,
                )
            )

    @staticmethod
    def _report(future: Future, rec: AuditRecord) -> None:
        exc = future.exception()
        if exc is not None:
            logger.error(
                "Failed to record audit event %s (actor=%s)",
                rec.action,
                rec.actor_user_id,
                exc_info=exc,
            )

    def drain(self, timeout: float | None = None) -> None:
        """Attende che gli eventi gia' accodati siano scritti."""
        self._executor.submit(lambda: None).result(timeout=timeout)

    def close(self) -> None:
        self._executor.shutdown(wait=True)


# =========================
# Lettura (vista Admin)
# =========================
def list_events(
    db: Database,
    limit: int = 100,
    actor_user_id: str | None = None,
    action: str | None = None,
) -> list[AuditEvent]:
    q = select(AuditEvent)
    if actor_user_id:
        q = q.where(AuditEvent.actor_user_id == actor_user_id)
    if action:
        q = q.where(AuditEvent.action == action)
    q = q.order_by(AuditEvent.timestamp.desc(), AuditEvent.id.desc()).limit(limit)

    with db.session() as s:
        return list(s.scalars(q))
