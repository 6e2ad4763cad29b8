from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field

from .auth_models import Role
from .models import ClientStatus


# =========================
# Auth
# =========================
class RegisterIn(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)
    role: Role


class LoginIn(BaseModel):
    username: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)


class UserOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    username: str
    role: Role


class TokenOut(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserOut


class UserUpdateIn(BaseModel):
    username: str | None = None
    role: Role | None = None


class ChangePasswordIn(BaseModel):
    old_password: str | None = None
    new_password: str = Field(..., min_length=1)


class SetPasswordIn(BaseModel):
    # variante PUT /users/{id}/password
    password: str = Field(..., min_length=1)
    old_password: str | None = None


# =========================
# Clienti
# =========================
class ClientIn(BaseModel):
    name: str = Field(..., min_length=1)
    age: int | None = Field(default=None, ge=0)
    gender: str | None = None
    contact_no: str | None = None
    address_city: str | None = None
    case_type: str | None = None
    assigned_therapist_id: str | None = None
    status: ClientStatus = ClientStatus.OPEN
    case_history_document: str | None = None
    session_summary_document: str | None = None


class ClientUpdateIn(BaseModel):
    """Aggiornamento parziale: contano solo i campi inviati."""
    name: str | None = None
    age: int | None = Field(default=None, ge=0)
    gender: str | None = None
    contact_no: str | None = None
    address_city: str | None = None
    case_type: str | None = None
    assigned_therapist_id: str | None = None
    status: ClientStatus | None = None
    case_history_document: str | None = None
    session_summary_document: str | None = None


class ClientOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    age: int | None
    gender: str | None
    contact_no: str | None
    address_city: str | None
    case_type: str | None
    assigned_therapist_id: str | None
    status: ClientStatus
    case_history_document: str | None
    session_summary_document: str | None
    created_at: datetime
    updated_at: datetime


# =========================
# Appuntamenti
# =========================
class AppointmentIn(BaseModel):
    client_id: str = Field(..., min_length=1)
    therapist_id: str = Field(..., min_length=1)
    appointment_time: datetime


class AppointmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    client_id: str
    therapist_id: str
    appointment_time: datetime


class SlotOut(BaseModel):
    time: datetime
    label: str
    available: bool
    appointment: AppointmentOut | None = None


class DaySlotsOut(BaseModel):
    therapist_id: str
    day: date
    slots: list[SlotOut]


# =========================
# Sistema / audit
# =========================
class ClearDatabaseIn(BaseModel):
    password: str = Field(..., min_length=1)


class AuditEventIn(BaseModel):
    action: str = Field(..., min_length=1, max_length=80)
    target_type: str | None = None
    target_id: str | None = None
    details: str | None = None


class AuditEventOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    actor_user_id: str | None
    action: str
    target_type: str | None
    target_id: str | None
    details: str | None
    timestamp: datetime


class MessageOut(BaseModel):
    message: str
