"""
Scheduling Engine: slot di lavoro per terapeuta e prenotazioni.

Gli istanti sono sempre aware e confrontati in UTC; l'etichetta
("10:00 AM") esiste solo per la visualizzazione, nella zona della clinica.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Iterator

from sqlalchemy import and_, select
from sqlalchemy.exc import IntegrityError

from . import audit
from .audit import AuditSink
from .auth_models import User, find_therapist
from .auth_security import TokenClaims
from .config import Settings
from .db import Database
from .errors import InvalidRequest, NotFound, SlotConflict
from .models import Appointment, Client
from .policy import Action, Resource, enforce

logger = logging.getLogger(__name__)

LABEL_FORMAT = "%I:%M %p"


class RangeBoundary(enum.Enum):
    EXCLUSIVE = "exclusive"  # start <= t < end
    INCLUSIVE = "inclusive"  # start <= t <= end


@dataclass(frozen=True)
class Slot:
    start: datetime
    label: str
    appointment: Appointment | None = None

    @property
    def available(self) -> bool:
        return self.appointment is None


def calendar_resource(therapist_id: str) -> Resource:
    return Resource(kind="calendar", id=therapist_id, owner_id=therapist_id)


# =========================
# Istante <-> etichetta
# =========================
def slot_label(instant: datetime, settings: Settings) -> str:
    if instant.tzinfo is None:
        raise InvalidRequest("Instant must be timezone-aware")
    return instant.astimezone(settings.tz).strftime(LABEL_FORMAT)


def slot_instant(day: date, label: str, settings: Settings) -> datetime:
    """Inverso di slot_label: etichetta del giorno `day` -> istante UTC."""
    try:
        wall = datetime.strptime(label.strip().upper(), LABEL_FORMAT).time()
    except (AttributeError, ValueError):
        raise InvalidRequest(f"Invalid slot label: {label!r}") from None
    local = datetime.combine(day, wall, tzinfo=settings.tz)
    return local.astimezone(timezone.utc)


def day_bounds(day: date, settings: Settings) -> tuple[datetime, datetime]:
    """Inizio e fine (esclusa) della giornata di calendario nella zona della clinica."""
    start = datetime.combine(day, time.min, tzinfo=settings.tz)
    end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=settings.tz)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


def iter_slot_times(day: date, settings: Settings) -> Iterator[datetime]:
    """
    Inizi degli slot in orario di lavoro, passo fisso, in UTC.
    Ultimo slot: l'ultimo che inizia prima di day_end_hour.
    """
    start = datetime.combine(day, time(hour=settings.day_start_hour), tzinfo=settings.tz)
    if settings.day_end_hour == 24:
        end = datetime.combine(day + timedelta(days=1), time.min, tzinfo=settings.tz)
    else:
        end = datetime.combine(day, time(hour=settings.day_end_hour), tzinfo=settings.tz)
    step = timedelta(minutes=settings.slot_minutes)

    current = start
    while current < end:
        yield current.astimezone(timezone.utc)
        current += step


# =========================
# Lettura
# =========================
def _require_therapist(s, therapist_id: str) -> User:
    therapist = find_therapist(s, therapist_id)
    if therapist is None:
        raise NotFound("Therapist not found")
    return therapist


def _require_client(s, client_id: str) -> Client:
    client = s.get(Client, client_id)
    if client is None:
        raise NotFound("Client not found")
    return client


def _slot_taken(s, therapist_id: str, slot_time: datetime) -> bool:
    return s.execute(
        select(Appointment.id).where(
            Appointment.therapist_id == therapist_id,
            Appointment.appointment_time == slot_time,
        )
    ).first() is not None


@dataclass(frozen=True)
class DaySlots:
    """
    Slot di un giorno per un terapeuta: sequenza finita, sola lettura.
    Ogni iterazione rilegge gli appuntamenti e ricomincia dal primo slot.
    """
    db: Database
    settings: Settings
    therapist_id: str
    day: date

    def __iter__(self) -> Iterator[Slot]:
        day_start, day_end = day_bounds(self.day, self.settings)
        with self.db.session() as s:
            _require_therapist(s, self.therapist_id)
            booked = {
                a.appointment_time: a
                for a in s.scalars(
                    select(Appointment).where(
                        and_(
                            Appointment.therapist_id == self.therapist_id,
                            Appointment.appointment_time >= day_start,
                            Appointment.appointment_time < day_end,
                        )
                    )
                )
            }
        for start in iter_slot_times(self.day, self.settings):
            yield Slot(start=start, label=slot_label(start, self.settings), appointment=booked.get(start))


def list_slots(
    db: Database,
    settings: Settings,
    claims: TokenClaims,
    therapist_id: str,
    day: date,
) -> DaySlots:
    """Validazione e permessi subito; la lettura avviene a ogni iterazione."""
    if not therapist_id or day is None:
        raise InvalidRequest("therapist_id and day are required")
    enforce(claims, Action.LIST_SLOTS, calendar_resource(therapist_id))
    return DaySlots(db=db, settings=settings, therapist_id=therapist_id, day=day)


def list_appointments(
    db: Database,
    claims: TokenClaims,
    therapist_id: str | None,
    start: datetime | None,
    end: datetime | None,
    boundary: RangeBoundary = RangeBoundary.EXCLUSIVE,
) -> list[Appointment]:
    if not therapist_id or start is None or end is None:
        raise InvalidRequest("therapist_id, start_date and end_date are required")
    if start.tzinfo is None or end.tzinfo is None:
        raise InvalidRequest("start_date and end_date must include a timezone offset")
    if start > end:
        raise InvalidRequest("start_date must not be after end_date")
    enforce(claims, Action.LIST_APPOINTMENTS, calendar_resource(therapist_id))

    upper = Appointment.appointment_time <= end if boundary is RangeBoundary.INCLUSIVE \
        else Appointment.appointment_time < end

    q = (
        select(Appointment)
        .where(
            and_(
                Appointment.therapist_id == therapist_id,
                Appointment.appointment_time >= start,
                upper,
            )
        )
        .order_by(Appointment.appointment_time.asc())
    )
    with db.session() as s:
        return list(s.scalars(q))


# =========================
# Prenotazione (use case core)
# =========================
def book(
    db: Database,
    claims: TokenClaims,
    therapist_id: str,
    client_id: str,
    slot_time: datetime,
    audit_sink: AuditSink | None = None,
) -> Appointment:
    """
    Use case: prenotare un appuntamento.
    - solo Admin (policy)
    - controllo preventivo dello slot: solo per un errore leggibile
    - il vincolo UNIQUE(therapist_id, appointment_time) decide sotto concorrenza
    """
    enforce(claims, Action.CREATE_APPOINTMENT, calendar_resource(therapist_id))
    if not therapist_id or not client_id or slot_time is None:
        raise InvalidRequest("client_id, therapist_id and appointment_time are required")
    if slot_time.tzinfo is None:
        raise InvalidRequest("appointment_time must include a timezone offset")
    slot_time = slot_time.astimezone(timezone.utc)

    conflict: Exception | None = None
    try:
        with db.session() as s:
            _require_therapist(s, therapist_id)
            _require_client(s, client_id)
            if _slot_taken(s, therapist_id, slot_time):
                raise SlotConflict()

            app = Appointment(client_id=client_id, therapist_id=therapist_id, appointment_time=slot_time)
            s.add(app)
            s.flush()
    except SlotConflict as e:
        conflict = e
    except IntegrityError as e:
        # UNIQUE violato solo se lo slot ora risulta occupato; altrimenti e' una FK
        with db.session() as s:
            taken = _slot_taken(s, therapist_id, slot_time)
        if not taken:
            logger.warning("Booking rejected by a foreign key: therapist %s client %s", therapist_id, client_id)
            raise InvalidRequest("Client or therapist no longer exists") from e
        conflict = e

    if conflict is not None:
        logger.info("Slot conflict for therapist %s at %s", therapist_id, slot_time.isoformat())
        if audit_sink:
            audit_sink.record(
                audit.BOOK_APPOINTMENT_CONFLICT,
                actor_user_id=claims.user_id,
                target_type="appointment",
                details=f"therapist={therapist_id} client={client_id} time={slot_time.isoformat()}",
            )
        if isinstance(conflict, SlotConflict):
            raise conflict
        raise SlotConflict() from conflict

    if audit_sink:
        audit_sink.record(
            audit.BOOK_APPOINTMENT,
            actor_user_id=claims.user_id,
            target_type="appointment",
            target_id=app.id,
            details=f"therapist={therapist_id} client={client_id} time={slot_time.isoformat()}",
        )
    return app
