from __future__ import annotations

import argparse
from datetime import date, datetime

from clinic_backend import auth_service, scheduling, services
from clinic_backend.audit import AuditSink, list_events
from clinic_backend.auth_models import Role
from clinic_backend.auth_security import TokenClaims
from clinic_backend.config import get_settings
from clinic_backend.db import Database
from clinic_backend.errors import ClinicError
from clinic_backend.logging_config import configure_logging
from clinic_backend.policy import Action, enforce
from clinic_backend.seed import seed_admin


def _login(args: argparse.Namespace, db: Database) -> TokenClaims:
    # le operazioni protette passano dalla stessa policy dell'API
    settings = get_settings()
    token, _user = auth_service.login(db, settings, args.as_user, args.password)
    return auth_service.verify(settings, token)


def cmd_init(args: argparse.Namespace, db: Database) -> None:
    services.init_db(db)
    admin_id = seed_admin(db, get_settings())
    print("DB inizializzato." + (f" Admin: {admin_id}" if admin_id else ""))


def cmd_create_user(args: argparse.Namespace, db: Database) -> None:
    # accesso diretto allo store: uso amministrativo locale
    user = auth_service.register(db, get_settings(), args.username, args.new_password, args.role)
    print(f"Utente creato: {user.id} | {user.username} | {user.role.value}")


def cmd_list(args: argparse.Namespace, db: Database) -> None:
    claims = _login(args, db)
    if args.entity == "users":
        for u in auth_service.list_users(db, claims):
            print(f"{u.id} | {u.username} | {u.role.value}")
    elif args.entity == "therapists":
        for u in auth_service.list_therapists(db, claims):
            print(f"{u.id} | {u.username}")
    elif args.entity == "clients":
        for c in services.list_clients(db, claims):
            print(f"{c.id} | {c.name} | {c.status.value} | {c.assigned_therapist_id or '-'}")


def cmd_slots(args: argparse.Namespace, db: Database) -> None:
    claims = _login(args, db)
    day = date.fromisoformat(args.day)
    for slot in scheduling.list_slots(db, get_settings(), claims, args.therapist_id, day):
        state = "libero" if slot.available else f"prenotato ({slot.appointment.client_id})"
        print(f"{slot.label} | {slot.start.isoformat()} | {state}")


def cmd_book(args: argparse.Namespace, db: Database) -> None:
    claims = _login(args, db)
    settings = get_settings()
    when = datetime.fromisoformat(args.time)  # formato: 2026-01-14T10:30 (+offset opzionale)
    if when.tzinfo is None:
        # ora locale della clinica
        when = when.replace(tzinfo=settings.tz)

    sink = AuditSink(db)
    try:
        app = scheduling.book(db, claims, args.therapist_id, args.client_id, when, audit_sink=sink)
    finally:
        sink.close()
    print(f"Appuntamento confermato: {app.id} | {scheduling.slot_label(app.appointment_time, settings)}")


def cmd_audit(args: argparse.Namespace, db: Database) -> None:
    enforce(_login(args, db), Action.READ_AUDIT_LOG)
    for e in list_events(db, limit=args.limit, action=args.action):
        print(f"[{e.id}] {e.timestamp.isoformat()} | {e.action} | actor={e.actor_user_id or '-'} | {e.details or ''}")


def cmd_serve(args: argparse.Namespace, db: Database) -> None:
    import uvicorn

    uvicorn.run("clinic_backend.api_main:app", host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="clinic_cli", description="CLI gestione clinica")
    sub = p.add_subparsers(required=True)

    def with_login(sp: argparse.ArgumentParser) -> argparse.ArgumentParser:
        sp.add_argument("--as-user", required=True, help="Username con cui autenticarsi")
        sp.add_argument("--password", required=True)
        return sp

    p_init = sub.add_parser("init", help="Crea DB e Admin iniziale (ADMIN_USERNAME/ADMIN_PASSWORD)")
    p_init.set_defaults(func=cmd_init)

    p_user = sub.add_parser("create-user", help="Crea utente")
    p_user.add_argument("--username", required=True)
    p_user.add_argument("--new-password", required=True)
    p_user.add_argument("--role", choices=[r.value for r in Role], required=True)
    p_user.set_defaults(func=cmd_create_user)

    p_list = with_login(sub.add_parser("list", help="Lista entità"))
    p_list.add_argument("entity", choices=["users", "therapists", "clients"])
    p_list.set_defaults(func=cmd_list)

    p_slots = with_login(sub.add_parser("slots", help="Slot giornalieri di un terapeuta"))
    p_slots.add_argument("--therapist-id", required=True)
    p_slots.add_argument("--day", required=True, help="ISO date es: 2026-01-14")
    p_slots.set_defaults(func=cmd_slots)

    p_book = with_login(sub.add_parser("book", help="Prenota appuntamento"))
    p_book.add_argument("--therapist-id", required=True)
    p_book.add_argument("--client-id", required=True)
    p_book.add_argument("--time", required=True, help="ISO datetime es: 2026-01-14T10:30")
    p_book.set_defaults(func=cmd_book)

    p_audit = with_login(sub.add_parser("audit", help="Ultimi eventi di audit (solo Admin)"))
    p_audit.add_argument("--limit", type=int, default=50)
    p_audit.add_argument("--action", default=None)
    p_audit.set_defaults(func=cmd_audit)

    p_serve = sub.add_parser("serve", help="Avvia l'API (uvicorn)")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.set_defaults(func=cmd_serve)

    return p


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    settings = get_settings()
    configure_logging(settings.log_level)

    db = Database(settings.database_url, echo=settings.db_echo)
    try:
        services.init_db(db)  # garantisce tabelle
        args.func(args, db)
    except ClinicError as e:
        print(f"Errore ({e.code}): {e.message}")
        return 1
    finally:
        db.dispose()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
