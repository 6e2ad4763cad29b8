from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import select

from clinic_backend import cli, scheduling
from clinic_backend.models import Appointment

from .conftest import PASSWORD, with_settings


@pytest.fixture
def run(settings, monkeypatch, capsys):
    monkeypatch.setattr(cli, "get_settings", lambda: settings)

    def _run(*argv: str) -> tuple[int, str]:
        code = cli.main(list(argv))
        return code, capsys.readouterr().out

    return _run


def as_admin(*argv: str) -> tuple[str, ...]:
    return (*argv, "--as-user", "admin", "--password", PASSWORD)


def test_init_seeds_admin_once(run, monkeypatch, settings):
    seeded = with_settings(settings, admin_username="Boss", admin_password=PASSWORD)
    monkeypatch.setattr(cli, "get_settings", lambda: seeded)

    code, first = run("init")
    assert code == 0
    assert "Admin:" in first

    _, second = run("init")
    assert second == first

    code, out = run("list", "users", "--as-user", "boss", "--password", PASSWORD)
    assert code == 0
    assert "boss | Admin" in out


def test_create_user_and_list(run):
    code, out = run("create-user", "--username", "admin", "--new-password", PASSWORD, "--role", "Admin")
    assert code == 0
    assert "admin | Admin" in out

    run("create-user", "--username", "t1", "--new-password", PASSWORD, "--role", "Therapist")
    code, out = run(*as_admin("list", "therapists"))
    assert code == 0
    assert out.strip().endswith("| t1")


def test_domain_errors_exit_with_code(run):
    run("create-user", "--username", "t1", "--new-password", PASSWORD, "--role", "Therapist")

    code, out = run("list", "users", "--as-user", "t1", "--password", PASSWORD)
    assert code == 1
    assert "FORBIDDEN" in out

    code, out = run("list", "users", "--as-user", "t1", "--password", "wrong")
    assert code == 1
    assert "INVALID_CREDENTIALS" in out


# =========================
# Agenda
# =========================
def test_book_naive_time_is_clinic_local(run, monkeypatch, rome_settings, db, admin, therapist, make_client):
    monkeypatch.setattr(cli, "get_settings", lambda: rome_settings)
    client = make_client("C", therapist)
    argv = as_admin("book", "--therapist-id", therapist.id, "--client-id", client.id, "--time", "2024-01-15T10:00")

    code, out = run(*argv)
    assert code == 0
    assert "10:00 AM" in out

    with db.session() as s:
        [app] = s.scalars(select(Appointment)).all()
    # Roma d'inverno = UTC+1
    assert app.appointment_time == datetime(2024, 1, 15, 9, tzinfo=timezone.utc)

    code, out = run(*argv)
    assert code == 1
    assert "SLOT_CONFLICT" in out


def test_slots_output(run, db, claims_for, admin, therapist, make_client):
    client = make_client("C", therapist)
    scheduling.book(
        db, claims_for(admin), therapist.id, client.id, datetime(2024, 1, 1, 9, 45, tzinfo=timezone.utc)
    )

    code, out = run("slots", "--as-user", "t1", "--password", PASSWORD, "--therapist-id", therapist.id, "--day", "2024-01-01")
    assert code == 0

    lines = out.strip().splitlines()
    assert len(lines) == 15
    assert lines[0].startswith("09:00 AM") and lines[0].endswith("libero")
    assert lines[1].startswith("09:45 AM") and lines[1].endswith(f"prenotato ({client.id})")


def test_audit_is_admin_only(run, admin, therapist, make_client):
    client = make_client("C", therapist)
    run(*as_admin("book", "--therapist-id", therapist.id, "--client-id", client.id, "--time", "2024-01-01T10:00+00:00"))

    code, out = run(*as_admin("audit", "--action", "BOOK_APPOINTMENT"))
    assert code == 0
    assert "BOOK_APPOINTMENT" in out
    assert f"actor={admin.id}" in out

    code, out = run("audit", "--as-user", "t1", "--password", PASSWORD)
    assert code == 1
    assert "FORBIDDEN" in out
