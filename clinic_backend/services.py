from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import delete, select

from . import audit
from .audit import AuditSink
from .auth_models import find_therapist
from .auth_security import TokenClaims
from .auth_service import reauthenticate
from .db import Database
from .errors import InvalidRequest, NotFound, Unauthenticated
from .models import DOCUMENT_FIELDS, Appointment, Client, ClientStatus
from .policy import Action, Resource, enforce, scope_filter

logger = logging.getLogger(__name__)

CLIENT_FIELDS = frozenset({
    "name",
    "age",
    "gender",
    "contact_no",
    "address_city",
    "case_type",
    "assigned_therapist_id",
    "status",
    "case_history_document",
    "session_summary_document",
})


# =========================
# Bootstrap DB
# =========================
def init_db(db: Database) -> None:
    """Crea le tabelle se non esistono."""
    db.create_all()


# =========================
# Helper
# =========================
def client_resource(c: Client) -> Resource:
    return Resource(kind="client", id=c.id, owner_id=c.assigned_therapist_id)


def _check_therapist(s, therapist_id: str | None) -> None:
    if therapist_id is None:
        return
    if find_therapist(s, therapist_id) is None:
        raise InvalidRequest("assigned_therapist_id must reference an existing therapist")


def _clean_fields(fields: dict[str, Any]) -> dict[str, Any]:
    unknown = set(fields) - CLIENT_FIELDS
    if unknown:
        raise InvalidRequest(f"Unknown client fields: {', '.join(sorted(unknown))}")

    cleaned = dict(fields)
    if "name" in cleaned:
        name = (cleaned["name"] or "").strip()
        if not name:
            raise InvalidRequest("Client name is required")
        cleaned["name"] = name
    if "status" in cleaned:
        try:
            cleaned["status"] = ClientStatus(cleaned["status"])
        except ValueError:
            raise InvalidRequest("Status must be Open or Closed") from None
    return cleaned


# =========================
# CRUD clienti
# =========================
def create_client(
    db: Database,
    claims: TokenClaims,
    fields: dict[str, Any],
    audit_sink: AuditSink | None = None,
) -> Client:
    enforce(claims, Action.CREATE_CLIENT)
    fields = _clean_fields(fields)
    if "name" not in fields:
        raise InvalidRequest("Client name is required")

    with db.session() as s:
        _check_therapist(s, fields.get("assigned_therapist_id"))
        c = Client(**fields)
        s.add(c)
        s.flush()

    if audit_sink:
        audit_sink.record(
            audit.CREATE_CLIENT, actor_user_id=claims.user_id, target_type="client", target_id=c.id, details=c.name
        )
    return c


def list_clients(db: Database, claims: TokenClaims) -> list[Client]:
    """Lista clienti ristretta dallo scope del chiamante, dentro la query."""
    enforce(claims, Action.LIST_CLIENTS)
    q = (
        select(Client)
        .where(scope_filter(claims, Client.assigned_therapist_id))
        .order_by(Client.name, Client.id)
    )
    with db.session() as s:
        return list(s.scalars(q))


def get_client(db: Database, claims: TokenClaims, client_id: str) -> Client:
    with db.session() as s:
        c = s.get(Client, client_id)
    if c is None:
        raise NotFound("Client not found")
    enforce(claims, Action.READ_CLIENT, client_resource(c))
    return c


def update_client(
    db: Database,
    claims: TokenClaims,
    client_id: str,
    fields: dict[str, Any],
    audit_sink: AuditSink | None = None,
) -> Client:
    """
    Aggiornamento parziale.
    Se cambiano solo i documenti basta UPDATE_CLIENT_DOCUMENTS
    (terapeuta assegnato), altrimenti serve UPDATE_CLIENT (Admin).
    """
    fields = _clean_fields(fields)
    action = Action.UPDATE_CLIENT_DOCUMENTS if set(fields) <= DOCUMENT_FIELDS else Action.UPDATE_CLIENT

    with db.session() as s:
        c = s.get(Client, client_id)
        if c is None:
            raise NotFound("Client not found")
        enforce(claims, action, client_resource(c))

        if "assigned_therapist_id" in fields:
            _check_therapist(s, fields["assigned_therapist_id"])
        for key, value in fields.items():
            setattr(c, key, value)
        s.flush()

    if audit_sink:
        audit_sink.record(
            audit.UPDATE_CLIENT,
            actor_user_id=claims.user_id,
            target_type="client",
            target_id=client_id,
            details=", ".join(sorted(fields)) or None,
        )
    return c


def delete_client(db: Database, claims: TokenClaims, client_id: str, audit_sink: AuditSink | None = None) -> None:
    with db.session() as s:
        c = s.get(Client, client_id)
        if c is None:
            raise NotFound("Client not found")
        enforce(claims, Action.DELETE_CLIENT, client_resource(c))

        s.execute(delete(Appointment).where(Appointment.client_id == client_id))
        s.delete(c)
        name = c.name

    if audit_sink:
        audit_sink.record(
            audit.DELETE_CLIENT, actor_user_id=claims.user_id, target_type="client", target_id=client_id, details=name
        )


# =========================
# Sistema
# =========================
def clear_database(
    db: Database,
    claims: TokenClaims,
    password: str | None,
    audit_sink: AuditSink | None = None,
) -> None:
    """
    Operazione distruttiva (solo Admin):
    - ri-autentica l'Admin con la sua password
    - svuota appuntamenti e clienti; utenti e audit restano
    """
    enforce(claims, Action.CLEAR_DATA)
    if not password:
        raise InvalidRequest("Admin password is required to confirm this action.")

    if not reauthenticate(db, claims.user_id, password):
        logger.warning("Clear database refused: wrong password for user %s", claims.user_id)
        if audit_sink:
            audit_sink.record(
                audit.CLEAR_DATABASE_FAILURE,
                actor_user_id=claims.user_id,
                target_type="system",
                details="Incorrect admin password.",
            )
        raise Unauthenticated("Incorrect admin password.")

    try:
        with db.session() as s:
            s.execute(delete(Appointment))
            s.execute(delete(Client))
    except Exception as e:
        if audit_sink:
            audit_sink.record(
                audit.CLEAR_DATABASE_FAILURE,
                actor_user_id=claims.user_id,
                target_type="system",
                details=f"Error: {e.__class__.__name__}",
            )
        raise

    logger.warning("Clients and appointments cleared by user %s", claims.user_id)
    if audit_sink:
        audit_sink.record(
            audit.CLEAR_DATABASE_SUCCESS,
            actor_user_id=claims.user_id,
            target_type="system",
            details="Cleared clients and appointments.",
        )
