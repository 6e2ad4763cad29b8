from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, String, select
from sqlalchemy.orm import Mapped, Session, mapped_column

from clinic_backend.db import Base, UTCDateTime, utcnow


def new_uuid() -> str:
    return str(uuid.uuid4())


class Role(enum.Enum):
    """
    Ruoli chiusi. Letti solo dalla tabella regole di policy.py,
    mai confrontati inline nella logica di dominio.
    """
    ADMIN = "Admin"
    THERAPIST = "Therapist"


class User(Base):
    """
    Utente applicativo (Credential Store).
    - username univoco, salvato strip + lower
    - password_hash con bcrypt (passlib)
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    username: Mapped[str] = mapped_column(String(50), unique=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[Role] = mapped_column(Enum(Role), nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"User({self.username}, {self.role.value})"


def find_therapist(s: Session, user_id: str | None) -> User | None:
    """Utente con ruolo Therapist, None se assente o di altro ruolo."""
    if not user_id:
        return None
    return s.execute(
        select(User).where(User.id == user_id, User.role == Role.THERAPIST)
    ).scalar_one_or_none()
