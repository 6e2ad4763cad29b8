from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError

from clinic_backend import audit
from clinic_backend.audit import AuditSink
from clinic_backend.auth_models import Role, User
from clinic_backend.auth_security import (
    TokenClaims,
    create_access_token,
    decode_token,
    dummy_verify,
    hash_password,
    verify_password,
)
from clinic_backend.config import Settings
from clinic_backend.db import Database
from clinic_backend.errors import Conflict, InvalidCredentials, InvalidRequest, NotFound
from clinic_backend.models import Appointment, Client
from clinic_backend.policy import Action, Resource, enforce

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PublicUser:
    """Vista pubblica dell'utente: mai l'hash."""
    id: str
    username: str
    role: Role

    @classmethod
    def of(cls, u: User) -> "PublicUser":
        return cls(id=u.id, username=u.username, role=u.role)


def _normalize_username(username: str | None) -> str:
    return (username or "").strip().lower()


def _parse_role(role: Role | str | None) -> Role:
    if isinstance(role, Role):
        return role
    try:
        return Role(role)
    except ValueError:
        raise InvalidRequest("Role must be one of: " + ", ".join(r.value for r in Role)) from None


def user_resource(user_id: str) -> Resource:
    return Resource(kind="user", id=user_id, owner_id=user_id)


# =========================
# Registrazione / login
# =========================
def has_users(db: Database) -> bool:
    with db.session() as s:
        return s.execute(select(func.count()).select_from(User)).scalar_one() > 0


def register(
    db: Database,
    settings: Settings,
    username: str,
    password: str,
    role: Role | str,
    audit_sink: AuditSink | None = None,
    actor_user_id: str | None = None,
) -> PublicUser:
    username = _normalize_username(username)
    if not username or not password or not role:
        raise InvalidRequest("Please enter all fields")
    role = _parse_role(role)

    try:
        with db.session() as s:
            exists = s.execute(select(User.id).where(User.username == username)).scalar_one_or_none()
            if exists:
                raise Conflict("User already exists")

            u = User(username=username, password_hash=hash_password(password, settings.bcrypt_rounds), role=role)
            s.add(u)
            s.flush()
            created = PublicUser.of(u)
    except IntegrityError as e:
        # registrazione concorrente con lo stesso username
        raise Conflict("User already exists") from e

    logger.info("Registered user %s (%s)", created.username, created.role.value)
    if audit_sink:
        audit_sink.record(
            audit.REGISTER_USER,
            actor_user_id=actor_user_id or created.id,
            target_type="user",
            target_id=created.id,
            details=f"{created.username} ({created.role.value})",
        )
    return created


def login(
    db: Database,
    settings: Settings,
    username: str,
    password: str,
    audit_sink: AuditSink | None = None,
) -> tuple[str, PublicUser]:
    """
    Verifica le credenziali e firma un token.
    Utente assente e password errata producono lo stesso errore
    (e circa lo stesso tempo di risposta).
    """
    username = _normalize_username(username)
    if not username or not password:
        raise InvalidRequest("Please enter all fields")

    with db.session() as s:
        u = s.execute(select(User).where(User.username == username)).scalar_one_or_none()

    if u is None:
        dummy_verify(settings.bcrypt_rounds)
        ok = False
    else:
        ok = verify_password(password, u.password_hash)

    if not ok:
        logger.warning("Failed login for username %r", username)
        if audit_sink:
            audit_sink.record(
                audit.LOGIN_FAILURE,
                actor_user_id=u.id if u else None,
                target_type="user",
                target_id=u.id if u else None,
                details=f"username={username}",
            )
        raise InvalidCredentials()

    token, _claims = create_access_token(u, settings)
    if audit_sink:
        audit_sink.record(audit.LOGIN_SUCCESS, actor_user_id=u.id, target_type="user", target_id=u.id)
    return token, PublicUser.of(u)


def verify(settings: Settings, token: str | None) -> TokenClaims:
    return decode_token(token, settings)


def reauthenticate(db: Database, user_id: str, password: str | None) -> bool:
    if not password:
        return False
    with db.session() as s:
        u = s.get(User, user_id)
    if u is None:
        return False
    return verify_password(password, u.password_hash)


# =========================
# Password
# =========================
def change_password(
    db: Database,
    settings: Settings,
    claims: TokenClaims,
    target_user_id: str,
    new_password: str,
    old_password: str | None = None,
    audit_sink: AuditSink | None = None,
) -> None:
    """
    - su se stessi: old_password obbligatoria e corretta
    - su altri: serve il ruolo Admin (deciso dalla policy), old_password non richiesta
    I token gia' emessi restano validi fino alla scadenza.
    """
    enforce(claims, Action.CHANGE_PASSWORD, user_resource(target_user_id))
    if not new_password:
        raise InvalidRequest("Password is required")

    with db.session() as s:
        u = s.get(User, target_user_id)
        if u is None:
            raise NotFound("User not found")

        if claims.user_id == target_user_id:
            if not old_password or not verify_password(old_password, u.password_hash):
                raise InvalidCredentials("Current password is incorrect")

        u.password_hash = hash_password(new_password, settings.bcrypt_rounds)

    if audit_sink:
        audit_sink.record(
            audit.CHANGE_PASSWORD,
            actor_user_id=claims.user_id,
            target_type="user",
            target_id=target_user_id,
        )


# =========================
# Gestione utenti (Admin)
# =========================
def list_users(db: Database, claims: TokenClaims, role: Role | None = None) -> list[PublicUser]:
    enforce(claims, Action.LIST_USERS)
    q = select(User)
    if role is not None:
        q = q.where(User.role == role)
    with db.session() as s:
        return [PublicUser.of(u) for u in s.scalars(q.order_by(User.username))]


def list_therapists(db: Database, claims: TokenClaims) -> list[PublicUser]:
    return list_users(db, claims, role=Role.THERAPIST)


def get_user(db: Database, claims: TokenClaims, user_id: str) -> PublicUser:
    enforce(claims, Action.READ_USER, user_resource(user_id))
    with db.session() as s:
        u = s.get(User, user_id)
        if u is None:
            raise NotFound("User not found")
        return PublicUser.of(u)


def update_user(
    db: Database,
    claims: TokenClaims,
    user_id: str,
    username: str | None = None,
    role: Role | str | None = None,
    audit_sink: AuditSink | None = None,
) -> PublicUser:
    enforce(claims, Action.UPDATE_USER, user_resource(user_id))
    try:
        with db.session() as s:
            u = s.get(User, user_id)
            if u is None:
                raise NotFound("User not found")

            if username is not None:
                new_name = _normalize_username(username)
                if not new_name:
                    raise InvalidRequest("Username cannot be empty")
                taken = s.execute(
                    select(User.id).where(User.username == new_name, User.id != user_id)
                ).scalar_one_or_none()
                if taken:
                    raise Conflict("Username already taken")
                u.username = new_name
            if role is not None:
                u.role = _parse_role(role)
            s.flush()
            updated = PublicUser.of(u)
    except IntegrityError as e:
        raise Conflict("Username already taken") from e

    if audit_sink:
        audit_sink.record(
            audit.UPDATE_USER,
            actor_user_id=claims.user_id,
            target_type="user",
            target_id=user_id,
            details=f"{updated.username} ({updated.role.value})",
        )
    return updated


def delete_user(db: Database, claims: TokenClaims, user_id: str, audit_sink: AuditSink | None = None) -> None:
    """
    Cancellazione utente:
    - i clienti assegnati restano, senza terapeuta
    - gli appuntamenti del terapeuta vengono eliminati
    """
    enforce(claims, Action.DELETE_USER, user_resource(user_id))
    with db.session() as s:
        u = s.get(User, user_id)
        if u is None:
            raise NotFound("User not found")

        s.execute(
            update(Client).where(Client.assigned_therapist_id == user_id).values(assigned_therapist_id=None)
        )
        s.execute(delete(Appointment).where(Appointment.therapist_id == user_id))
        s.delete(u)
        username = u.username

    if audit_sink:
        audit_sink.record(
            audit.DELETE_USER,
            actor_user_id=claims.user_id,
            target_type="user",
            target_id=user_id,
            details=username,
        )
