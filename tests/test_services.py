from __future__ import annotations

import random
from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from clinic_backend import scheduling, services
from clinic_backend.auth_models import Role, User
from clinic_backend.errors import Forbidden, InvalidRequest, NotFound, Unauthenticated
from clinic_backend.models import Appointment, Client, ClientStatus

from .conftest import PASSWORD


def test_admin_creates_client(db, claims_for, admin, therapist):
    c = services.create_client(
        db, claims_for(admin), {"name": "  Jane Doe ", "age": 34, "assigned_therapist_id": therapist.id}
    )
    assert c.name == "Jane Doe"
    assert c.status is ClientStatus.OPEN
    assert c.assigned_therapist_id == therapist.id


def test_create_client_validation(db, claims_for, admin, therapist):
    claims = claims_for(admin)
    with pytest.raises(InvalidRequest):
        services.create_client(db, claims, {"name": "   "})
    with pytest.raises(InvalidRequest):
        services.create_client(db, claims, {"name": "X", "assigned_therapist_id": admin.id})
    with pytest.raises(InvalidRequest):
        services.create_client(db, claims, {"name": "X", "status": "Pending"})
    with pytest.raises(InvalidRequest):
        services.create_client(db, claims, {"name": "X", "password_hash": "x"})


def test_therapist_cannot_create_client(db, claims_for, therapist):
    with pytest.raises(Forbidden):
        services.create_client(db, claims_for(therapist), {"name": "X"})


@pytest.mark.parametrize("seed", [1, 7, 2024])
def test_therapist_list_is_scoped_to_assigned_clients(db, claims_for, admin, make_user, make_client, seed):
    rnd = random.Random(seed)
    therapists = [make_user(f"t{seed}-{i}", Role.THERAPIST) for i in range(3)]
    expected: dict[str, set[str]] = {t.id: set() for t in therapists}

    for i in range(25):
        owner = rnd.choice(therapists + [None])
        c = make_client(f"client-{i}", owner)
        if owner is not None:
            expected[owner.id].add(c.id)

    for t in therapists:
        visible = services.list_clients(db, claims_for(t))
        assert all(c.assigned_therapist_id == t.id for c in visible)
        assert {c.id for c in visible} == expected[t.id]

    assert len(services.list_clients(db, claims_for(admin))) == 25


def test_get_client_respects_assignment(db, claims_for, therapist, other_therapist, make_client):
    c = make_client("C", therapist)
    assert services.get_client(db, claims_for(therapist), c.id).id == c.id
    with pytest.raises(Forbidden):
        services.get_client(db, claims_for(other_therapist), c.id)
    with pytest.raises(NotFound):
        services.get_client(db, claims_for(therapist), "missing")


def test_therapist_updates_only_documents_of_own_clients(db, claims_for, therapist, other_therapist, make_client):
    c = make_client("C", therapist)

    updated = services.update_client(
        db, claims_for(therapist), c.id, {"session_summary_document": "https://docs.example/s1"}
    )
    assert updated.session_summary_document == "https://docs.example/s1"

    with pytest.raises(Forbidden):
        services.update_client(db, claims_for(therapist), c.id, {"name": "Renamed"})
    with pytest.raises(Forbidden):
        services.update_client(db, claims_for(other_therapist), c.id, {"case_history_document": "x"})

    with db.session() as s:
        assert s.get(Client, c.id).name == "C"


def test_admin_reassigns_client(db, claims_for, admin, therapist, other_therapist, make_client):
    c = make_client("C", therapist)
    updated = services.update_client(
        db, claims_for(admin), c.id, {"assigned_therapist_id": other_therapist.id, "status": "Closed"}
    )
    assert updated.assigned_therapist_id == other_therapist.id
    assert updated.status is ClientStatus.CLOSED


def test_delete_client_cascades_appointments(db, claims_for, admin, therapist, make_client):
    c = make_client("C", therapist)
    scheduling.book(db, claims_for(admin), therapist.id, c.id, datetime(2024, 1, 1, 10, tzinfo=timezone.utc))

    with pytest.raises(Forbidden):
        services.delete_client(db, claims_for(therapist), c.id)
    services.delete_client(db, claims_for(admin), c.id)

    with db.session() as s:
        assert s.get(Client, c.id) is None
        assert s.execute(select(func.count()).select_from(Appointment)).scalar_one() == 0
    with pytest.raises(NotFound):
        services.delete_client(db, claims_for(admin), c.id)


def test_clear_database_requires_admin_password(db, claims_for, admin, therapist, make_client):
    c = make_client("C", therapist)
    scheduling.book(db, claims_for(admin), therapist.id, c.id, datetime(2024, 1, 1, 10, tzinfo=timezone.utc))

    with pytest.raises(Forbidden):
        services.clear_database(db, claims_for(therapist), PASSWORD)
    with pytest.raises(Unauthenticated):
        services.clear_database(db, claims_for(admin), "wrong")
    with pytest.raises(InvalidRequest):
        services.clear_database(db, claims_for(admin), "")

    services.clear_database(db, claims_for(admin), PASSWORD)

    with db.session() as s:
        assert s.execute(select(func.count()).select_from(Client)).scalar_one() == 0
        assert s.execute(select(func.count()).select_from(Appointment)).scalar_one() == 0
        assert s.execute(select(func.count()).select_from(User)).scalar_one() == 2


def test_update_rejects_null_status(db, claims_for, admin, therapist, make_client):
    c = make_client("C", therapist)
    services.update_client(db, claims_for(admin), c.id, {"status": "Closed"})

    with pytest.raises(InvalidRequest):
        services.update_client(db, claims_for(admin), c.id, {"status": None})

    assert services.get_client(db, claims_for(admin), c.id).status is ClientStatus.CLOSED
