from __future__ import annotations

import enum
import uuid
from datetime import datetime

from sqlalchemy import Enum, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from .db import Base, UTCDateTime, utcnow


def new_uuid() -> str:
    return str(uuid.uuid4())


class ClientStatus(enum.Enum):
    OPEN = "Open"
    CLOSED = "Closed"


# campi che il terapeuta assegnato puo' modificare
DOCUMENT_FIELDS = frozenset({"case_history_document", "session_summary_document"})


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    name: Mapped[str] = mapped_column(String(160), nullable=False)
    age: Mapped[int | None] = mapped_column(Integer, nullable=True)
    gender: Mapped[str | None] = mapped_column(String(30), nullable=True)
    contact_no: Mapped[str | None] = mapped_column(String(30), nullable=True)
    address_city: Mapped[str | None] = mapped_column(String(120), nullable=True)
    case_type: Mapped[str | None] = mapped_column(String(120), nullable=True)

    assigned_therapist_id: Mapped[str | None] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True
    )
    status: Mapped[ClientStatus] = mapped_column(
        Enum(ClientStatus), default=ClientStatus.OPEN, nullable=False
    )

    case_history_document: Mapped[str | None] = mapped_column(Text, nullable=True)
    session_summary_document: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"Client({self.name})"


class Appointment(Base):
    __tablename__ = "appointments"
    __table_args__ = (
        # garanzia sotto concorrenza: un solo appuntamento per terapeuta e istante
        UniqueConstraint("therapist_id", "appointment_time", name="uq_appointment_therapist_time"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_uuid)
    client_id: Mapped[str] = mapped_column(ForeignKey("clients.id", ondelete="CASCADE"), nullable=False)
    therapist_id: Mapped[str] = mapped_column(ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    appointment_time: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)


class AuditEvent(Base):
    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # niente FK: gli eventi sopravvivono alla cancellazione dell'utente
    actor_user_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    action: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    target_type: Mapped[str | None] = mapped_column(String(40), nullable=True)
    target_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, default=utcnow, nullable=False)
