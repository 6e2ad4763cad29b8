from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from clinic_backend import audit, auth_service, scheduling
from clinic_backend.audit import list_events
from clinic_backend.auth_models import Role, User
from clinic_backend.errors import Conflict, Forbidden, InvalidCredentials, InvalidRequest, NotFound
from clinic_backend.models import Appointment, Client

from .conftest import PASSWORD


def test_register_creates_user_without_exposing_hash(db, settings, audit_sink):
    user = auth_service.register(db, settings, "  Alice ", "pw", "Therapist", audit_sink=audit_sink)

    assert user.username == "alice"
    assert user.role is Role.THERAPIST
    assert not hasattr(user, "password_hash")

    audit_sink.drain()
    events = list_events(db, action=audit.REGISTER_USER)
    assert [e.target_id for e in events] == [user.id]


def test_register_duplicate_username_conflicts_and_keeps_first(db, settings):
    first = auth_service.register(db, settings, "alice", "first-pw", Role.THERAPIST)
    with db.session() as s:
        original_hash = s.get(User, first.id).password_hash

    with pytest.raises(Conflict):
        auth_service.register(db, settings, "ALICE", "second-pw", Role.ADMIN)

    with db.session() as s:
        rows = list(s.scalars(select(User).where(User.username == "alice")))
    assert len(rows) == 1
    assert rows[0].password_hash == original_hash
    assert rows[0].role is Role.THERAPIST


@pytest.mark.parametrize(
    "username,password,role",
    [("", "pw", "Admin"), ("bob", "", "Admin"), ("bob", "pw", ""), ("bob", "pw", "Receptionist")],
)
def test_register_rejects_invalid_input(db, settings, username, password, role):
    with pytest.raises(InvalidRequest):
        auth_service.register(db, settings, username, password, role)


def test_login_returns_verifiable_token(db, settings, therapist):
    token, user = auth_service.login(db, settings, "T1", PASSWORD)

    claims = auth_service.verify(settings, token)
    assert user.id == therapist.id
    assert claims.user_id == therapist.id
    assert claims.role is Role.THERAPIST


def test_login_failure_is_generic_and_audited(db, settings, audit_sink, therapist):
    with pytest.raises(InvalidCredentials) as wrong_pw:
        auth_service.login(db, settings, "t1", "nope", audit_sink=audit_sink)
    with pytest.raises(InvalidCredentials) as unknown:
        auth_service.login(db, settings, "ghost", "nope", audit_sink=audit_sink)

    assert wrong_pw.value.message == unknown.value.message

    audit_sink.drain()
    details = {e.details for e in list_events(db, action=audit.LOGIN_FAILURE)}
    assert details == {"username=t1", "username=ghost"}


def test_change_own_password_requires_old_password(db, settings, claims_for, therapist):
    claims = claims_for(therapist)

    with pytest.raises(InvalidCredentials):
        auth_service.change_password(db, settings, claims, therapist.id, "new-pw", old_password="bad")
    with pytest.raises(InvalidCredentials):
        auth_service.change_password(db, settings, claims, therapist.id, "new-pw")

    auth_service.change_password(db, settings, claims, therapist.id, "new-pw", old_password=PASSWORD)
    auth_service.login(db, settings, "t1", "new-pw")


def test_password_change_keeps_existing_tokens_valid(db, settings, therapist):
    token, _ = auth_service.login(db, settings, "t1", PASSWORD)
    claims = auth_service.verify(settings, token)

    auth_service.change_password(db, settings, claims, therapist.id, "new-pw", old_password=PASSWORD)

    assert auth_service.verify(settings, token) == claims


def test_admin_changes_other_password_without_old(db, settings, claims_for, admin, therapist):
    auth_service.change_password(db, settings, claims_for(admin), therapist.id, "reset-pw")
    auth_service.login(db, settings, "t1", "reset-pw")


def test_therapist_cannot_change_other_password(db, settings, claims_for, therapist, other_therapist):
    with pytest.raises(Forbidden):
        auth_service.change_password(db, settings, claims_for(therapist), other_therapist.id, "x", PASSWORD)


def test_change_password_unknown_user(db, settings, claims_for, admin):
    with pytest.raises(NotFound):
        auth_service.change_password(db, settings, claims_for(admin), "missing", "x")


def test_user_administration_is_admin_only(db, claims_for, admin, therapist):
    assert [u.username for u in auth_service.list_users(db, claims_for(admin))] == ["admin", "t1"]
    assert [u.id for u in auth_service.list_therapists(db, claims_for(admin))] == [therapist.id]

    with pytest.raises(Forbidden):
        auth_service.list_users(db, claims_for(therapist))
    with pytest.raises(Forbidden):
        auth_service.update_user(db, claims_for(therapist), therapist.id, role=Role.ADMIN)


def test_update_user_username_conflict(db, claims_for, admin, therapist, other_therapist):
    with pytest.raises(Conflict):
        auth_service.update_user(db, claims_for(admin), therapist.id, username="T2")

    updated = auth_service.update_user(db, claims_for(admin), therapist.id, username="t1-renamed")
    assert updated.username == "t1-renamed"


def test_admin_cannot_delete_self(db, claims_for, admin):
    with pytest.raises(Forbidden):
        auth_service.delete_user(db, claims_for(admin), admin.id)


def test_delete_therapist_unassigns_clients_and_drops_appointments(
    db, claims_for, admin, therapist, make_client
):
    client = make_client("C", therapist)
    scheduling.book(db, claims_for(admin), therapist.id, client.id, datetime(2024, 1, 1, 10, tzinfo=timezone.utc))

    auth_service.delete_user(db, claims_for(admin), therapist.id)

    with db.session() as s:
        assert s.get(User, therapist.id) is None
        assert s.get(Client, client.id).assigned_therapist_id is None
        assert s.scalars(select(Appointment)).all() == []
