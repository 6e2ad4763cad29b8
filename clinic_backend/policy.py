"""
Access Policy Engine.

Funzioni pure: dati i claims del token, un'azione e (opzionale) la risorsa,
decide allow/deny. Per le letture a lista restituisce invece un filtro
da applicare dentro la query (scope filter), mai dopo.

Ordine delle regole:
0. claims assenti o scaduti   -> deny (unauthenticated)
1. Admin                      -> allow, tranne auto-cancellazione
2. Therapist, azioni proprie  -> allow solo se resource.owner_id == user_id
   Therapist, liste / self    -> allow (la lista e' ristretta dallo scope)
3. Therapist, azioni admin    -> deny
"""
from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy import ColumnElement, true

from clinic_backend.auth_models import Role
from clinic_backend.auth_security import TokenClaims
from clinic_backend.errors import Forbidden, Unauthenticated


class Action(enum.Enum):
    LIST_CLIENTS = "list_clients"
    READ_CLIENT = "read_client"
    CREATE_CLIENT = "create_client"
    UPDATE_CLIENT = "update_client"
    UPDATE_CLIENT_DOCUMENTS = "update_client_documents"
    DELETE_CLIENT = "delete_client"

    LIST_APPOINTMENTS = "list_appointments"
    LIST_SLOTS = "list_slots"
    CREATE_APPOINTMENT = "create_appointment"

    LIST_USERS = "list_users"
    READ_USER = "read_user"
    REGISTER_USER = "register_user"
    UPDATE_USER = "update_user"
    DELETE_USER = "delete_user"
    CHANGE_PASSWORD = "change_password"

    CLEAR_DATA = "clear_data"
    READ_AUDIT_LOG = "read_audit_log"
    WRITE_AUDIT_EVENT = "write_audit_event"


@dataclass(frozen=True)
class Resource:
    """
    Risorsa su cui si agisce.
    owner_id: utente "proprietario" (terapeuta assegnato, titolare del calendario,
    utente stesso per le azioni sull'account).
    """
    kind: str
    id: str | None = None
    owner_id: str | None = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: str | None = None
    unauthenticated: bool = False


ALLOW = Decision(True)


def deny(reason: str, unauthenticated: bool = False) -> Decision:
    return Decision(False, reason, unauthenticated)


# Therapist: azioni consentite solo sulle proprie risorse
_THERAPIST_OWNED = frozenset({
    Action.READ_CLIENT,
    Action.UPDATE_CLIENT_DOCUMENTS,
    Action.LIST_APPOINTMENTS,
    Action.LIST_SLOTS,
    Action.CHANGE_PASSWORD,
    Action.READ_USER,
})

# Therapist: liste ristrette dallo scope filter e azioni self-service
_THERAPIST_OPEN = frozenset({
    Action.LIST_CLIENTS,
    Action.WRITE_AUDIT_EVENT,
})


def _admin_rule(claims: TokenClaims, action: Action, resource: Resource | None) -> Decision:
    if action is Action.DELETE_USER and resource is not None and resource.id == claims.user_id:
        return deny("Admins cannot delete their own account")
    return ALLOW


def _therapist_rule(claims: TokenClaims, action: Action, resource: Resource | None) -> Decision:
    if action in _THERAPIST_OPEN:
        return ALLOW
    if action in _THERAPIST_OWNED:
        if resource is not None and resource.owner_id == claims.user_id:
            return ALLOW
        return deny("Access denied. Resource is not assigned to you.")
    return deny("Access denied. Admin role required.")


_RULES: dict[Role, Callable[[TokenClaims, Action, Resource | None], Decision]] = {
    Role.ADMIN: _admin_rule,
    Role.THERAPIST: _therapist_rule,
}


def authorize(
    claims: TokenClaims | None,
    action: Action,
    resource: Resource | None = None,
    now: datetime | None = None,
) -> Decision:
    if claims is None or claims.is_expired(now):
        return deny("Authentication required", unauthenticated=True)

    rule = _RULES.get(claims.role)
    if rule is None:
        return deny("Unknown role")
    return rule(claims, action, resource)


def enforce(claims: TokenClaims | None, action: Action, resource: Resource | None = None) -> TokenClaims:
    """Come authorize, ma solleva Unauthenticated / Forbidden. Ritorna i claims validati."""
    decision = authorize(claims, action, resource)
    if decision.unauthenticated:
        raise Unauthenticated(decision.reason)
    if not decision.allowed:
        raise Forbidden(decision.reason)
    return claims


def is_admin(claims: TokenClaims) -> bool:
    return _RULES.get(claims.role) is _admin_rule


def scope_filter(claims: TokenClaims, owner_column: ColumnElement) -> ColumnElement[bool]:
    """
    Predicato per le letture a lista.
    Admin: nessuna restrizione. Therapist: solo le righe di cui e' owner.
    """
    if is_admin(claims):
        return true()
    return owner_column == claims.user_id
