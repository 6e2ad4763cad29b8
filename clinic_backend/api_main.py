from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from datetime import date, datetime
from typing import Any, AsyncIterator

from fastapi import APIRouter, Depends, FastAPI, Query, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.exc import IntegrityError

from clinic_backend import auth_service, scheduling, services
from clinic_backend.audit import AuditSink, list_events
from clinic_backend.auth_security import TokenClaims
from clinic_backend.config import DEV_JWT_SECRET, Settings, get_settings
from clinic_backend.db import Database
from clinic_backend.errors import ClinicError
from clinic_backend.logging_config import configure_logging
from clinic_backend.policy import Action, enforce
from clinic_backend.schemas import (
    AppointmentIn,
    AppointmentOut,
    AuditEventIn,
    AuditEventOut,
    ChangePasswordIn,
    ClearDatabaseIn,
    ClientIn,
    ClientOut,
    ClientUpdateIn,
    DaySlotsOut,
    LoginIn,
    MessageOut,
    RegisterIn,
    SetPasswordIn,
    SlotOut,
    TokenOut,
    UserOut,
    UserUpdateIn,
)
from clinic_backend.seed import seed_admin

logger = logging.getLogger(__name__)

# OAuth2 Bearer (Authorization: Bearer <token>); il 401 lo solleviamo noi
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)

router = APIRouter()


# Dipendenze

def get_app_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_audit(request: Request) -> AuditSink:
    return request.app.state.audit


def get_current_claims(
    token: str | None = Depends(oauth2_scheme),
    settings: Settings = Depends(get_app_settings),
) -> TokenClaims:
    # verifica locale: firma + scadenza, nessuna query
    return auth_service.verify(settings, token)


# AUTH endpoints

@router.post("/auth/register", response_model=UserOut, status_code=status.HTTP_201_CREATED)
def register(
    payload: RegisterIn,
    token: str | None = Depends(oauth2_scheme),
    settings: Settings = Depends(get_app_settings),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> UserOut:
    """
    Registrazione:
    - primo utente in assoluto: libera (bootstrap dell'Admin)
    - poi serve un token Admin, salvo ALLOW_OPEN_REGISTRATION
    """
    actor_id = None
    if not settings.allow_open_registration and auth_service.has_users(db):
        claims = enforce(auth_service.verify(settings, token), Action.REGISTER_USER)
        actor_id = claims.user_id

    user = auth_service.register(
        db, settings, payload.username, payload.password, payload.role,
        audit_sink=audit_sink, actor_user_id=actor_id,
    )
    return UserOut.model_validate(user)


@router.post("/auth/login", response_model=TokenOut)
def login(
    payload: LoginIn,
    settings: Settings = Depends(get_app_settings),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> TokenOut:
    token, user = auth_service.login(db, settings, payload.username, payload.password, audit_sink=audit_sink)
    return TokenOut(token=token, user=UserOut.model_validate(user))


@router.get("/auth/me", response_model=UserOut)
def me(claims: TokenClaims = Depends(get_current_claims)) -> UserOut:
    return UserOut(id=claims.user_id, username=claims.username, role=claims.role)


@router.get("/health")
def health() -> dict[str, Any]:
    return {"ok": True}


# USERS endpoints

@router.get("/users", response_model=list[UserOut])
def api_users(
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
) -> list[UserOut]:
    return [UserOut.model_validate(u) for u in auth_service.list_users(db, claims)]


@router.get("/users/therapists", response_model=list[UserOut])
def api_therapists(
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
) -> list[UserOut]:
    return [UserOut.model_validate(u) for u in auth_service.list_therapists(db, claims)]


@router.get("/users/{user_id}", response_model=UserOut)
def api_user(
    user_id: str,
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
) -> UserOut:
    return UserOut.model_validate(auth_service.get_user(db, claims, user_id))


@router.put("/users/{user_id}", response_model=UserOut)
def api_update_user(
    user_id: str,
    payload: UserUpdateIn,
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> UserOut:
    user = auth_service.update_user(
        db, claims, user_id, username=payload.username, role=payload.role, audit_sink=audit_sink
    )
    return UserOut.model_validate(user)


@router.delete("/users/{user_id}", status_code=status.HTTP_204_NO_CONTENT)
def api_delete_user(
    user_id: str,
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> Response:
    auth_service.delete_user(db, claims, user_id, audit_sink=audit_sink)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/users/{user_id}/change-password", response_model=MessageOut)
def api_change_password(
    user_id: str,
    payload: ChangePasswordIn,
    claims: TokenClaims = Depends(get_current_claims),
    settings: Settings = Depends(get_app_settings),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> MessageOut:
    auth_service.change_password(
        db, settings, claims, user_id, payload.new_password,
        old_password=payload.old_password, audit_sink=audit_sink,
    )
    return MessageOut(message="Password updated successfully")


@router.put("/users/{user_id}/password", response_model=MessageOut)
def api_set_password(
    user_id: str,
    payload: SetPasswordIn,
    claims: TokenClaims = Depends(get_current_claims),
    settings: Settings = Depends(get_app_settings),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> MessageOut:
    auth_service.change_password(
        db, settings, claims, user_id, payload.password,
        old_password=payload.old_password, audit_sink=audit_sink,
    )
    return MessageOut(message="Password updated successfully")


# CLIENTS endpoints

@router.get("/clients", response_model=list[ClientOut])
def api_clients(
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
) -> list[ClientOut]:
    return [ClientOut.model_validate(c) for c in services.list_clients(db, claims)]


@router.post("/clients", response_model=ClientOut, status_code=status.HTTP_201_CREATED)
def api_create_client(
    payload: ClientIn,
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> ClientOut:
    c = services.create_client(db, claims, payload.model_dump(), audit_sink=audit_sink)
    return ClientOut.model_validate(c)


@router.get("/clients/{client_id}", response_model=ClientOut)
def api_client(
    client_id: str,
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
) -> ClientOut:
    return ClientOut.model_validate(services.get_client(db, claims, client_id))


@router.put("/clients/{client_id}", response_model=ClientOut)
def api_update_client(
    client_id: str,
    payload: ClientUpdateIn,
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> ClientOut:
    c = services.update_client(db, claims, client_id, payload.model_dump(exclude_unset=True), audit_sink=audit_sink)
    return ClientOut.model_validate(c)


@router.delete("/clients/{client_id}", status_code=status.HTTP_204_NO_CONTENT)
def api_delete_client(
    client_id: str,
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> Response:
    services.delete_client(db, claims, client_id, audit_sink=audit_sink)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# APPOINTMENTS endpoints

@router.get("/appointments", response_model=list[AppointmentOut])
def api_appointments(
    therapist_id: str | None = Query(None),
    start_date: datetime | None = Query(None),
    end_date: datetime | None = Query(None),
    end_inclusive: bool = Query(False),
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
) -> list[AppointmentOut]:
    boundary = scheduling.RangeBoundary.INCLUSIVE if end_inclusive else scheduling.RangeBoundary.EXCLUSIVE
    items = scheduling.list_appointments(db, claims, therapist_id, start_date, end_date, boundary)
    return [AppointmentOut.model_validate(a) for a in items]


@router.get("/appointments/slots", response_model=DaySlotsOut)
def api_slots(
    therapist_id: str | None = Query(None),
    day: date | None = Query(None),
    claims: TokenClaims = Depends(get_current_claims),
    settings: Settings = Depends(get_app_settings),
    db: Database = Depends(get_db),
) -> DaySlotsOut:
    slots = [
        SlotOut(
            time=slot.start,
            label=slot.label,
            available=slot.available,
            appointment=AppointmentOut.model_validate(slot.appointment) if slot.appointment else None,
        )
        for slot in scheduling.list_slots(db, settings, claims, therapist_id, day)
    ]
    return DaySlotsOut(therapist_id=therapist_id, day=day, slots=slots)


@router.post("/appointments", response_model=AppointmentOut, status_code=status.HTTP_201_CREATED)
def api_book(
    payload: AppointmentIn,
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> AppointmentOut:
    app_ = scheduling.book(
        db, claims, payload.therapist_id, payload.client_id, payload.appointment_time, audit_sink=audit_sink
    )
    return AppointmentOut.model_validate(app_)


# SYSTEM / LOGS endpoints

@router.post("/system/clear-database", response_model=MessageOut)
def api_clear_database(
    payload: ClearDatabaseIn,
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
    audit_sink: AuditSink = Depends(get_audit),
) -> MessageOut:
    services.clear_database(db, claims, payload.password, audit_sink=audit_sink)
    return MessageOut(message="Client and appointment data has been successfully cleared.")


@router.get("/logs", response_model=list[AuditEventOut])
def api_logs(
    limit: int = Query(100, ge=1, le=1000),
    actor_user_id: str | None = Query(None),
    action: str | None = Query(None),
    claims: TokenClaims = Depends(get_current_claims),
    db: Database = Depends(get_db),
) -> list[AuditEventOut]:
    enforce(claims, Action.READ_AUDIT_LOG)
    events = list_events(db, limit=limit, actor_user_id=actor_user_id, action=action)
    return [AuditEventOut.model_validate(e) for e in events]


@router.post("/logs", status_code=status.HTTP_201_CREATED)
def api_write_log(
    payload: AuditEventIn,
    claims: TokenClaims = Depends(get_current_claims),
    audit_sink: AuditSink = Depends(get_audit),
) -> Response:
    # l'attore e' sempre quello del token, mai quello dichiarato dal client
    enforce(claims, Action.WRITE_AUDIT_EVENT)
    audit_sink.record(
        payload.action,
        actor_user_id=claims.user_id,
        target_type=payload.target_type,
        target_id=payload.target_id,
        details=payload.details,
    )
    return Response(status_code=status.HTTP_201_CREATED)


# Errori -> HTTP

def _error(status_code: int, code: str, message: str) -> JSONResponse:
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=status_code, content={"detail": message, "code": code}, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(ClinicError)
    async def clinic_error_handler(request: Request, exc: ClinicError) -> JSONResponse:
        return _error(exc.status_code, exc.code, exc.message)

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        errors = exc.errors()
        loc = errors[0].get("loc", ()) if errors else ()
        field = ".".join(str(p) for p in loc[1:]) or "body"
        return _error(status.HTTP_400_BAD_REQUEST, "INVALID_REQUEST", f"Invalid or missing field: {field}")

    @app.exception_handler(IntegrityError)
    async def integrity_error_handler(request: Request, exc: IntegrityError) -> JSONResponse:
        # mai il testo del driver al client
        logger.warning("Unhandled integrity error on %s %s", request.method, request.url.path)
        if "foreign key" in str(exc.orig).lower():
            return _error(status.HTTP_400_BAD_REQUEST, "INVALID_REQUEST", "Request references missing data")
        return _error(status.HTTP_409_CONFLICT, "CONFLICT", "Request conflicts with existing data")

    @app.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unexpected error on %s %s", request.method, request.url.path, exc_info=exc)
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL", "Internal server error")


# Startup / shutdown

def create_app(settings: Settings | None = None) -> FastAPI:
    """
    App factory. Lo store viene aperto nel lifespan (una volta per processo),
    condiviso via app.state e chiuso allo shutdown.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        configure_logging(settings.log_level)
        if settings.jwt_secret == DEV_JWT_SECRET:
            logger.warning("JWT_SECRET not set: using the development secret")

        db = Database(settings.database_url, echo=settings.db_echo)
        # Crea tabelle e Admin iniziale (idempotente)
        services.init_db(db)
        seed_admin(db, settings)
        sink = AuditSink(db)

        app.state.settings = settings
        app.state.db = db
        app.state.audit = sink
        try:
            yield
        finally:
            sink.close()
            db.dispose()

    app = FastAPI(title="Clinic Case Management API", version="1.0.0", lifespan=lifespan)
    register_exception_handlers(app)
    app.include_router(router)
    return app


app = create_app()
