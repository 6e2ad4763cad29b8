from __future__ import annotations


class ClinicError(Exception):
    """
    Base degli errori di dominio.
    - status_code: codice HTTP usato dall'handler FastAPI
    - code: codice stabile per il client
    """
    status_code = 500
    code = "INTERNAL"
    default_message = "Internal server error"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class InvalidRequest(ClinicError):
    status_code = 400
    code = "INVALID_REQUEST"
    default_message = "Invalid request"


class InvalidCredentials(InvalidRequest):
    # stesso messaggio per utente assente e password errata
    code = "INVALID_CREDENTIALS"
    default_message = "Invalid credentials"


class Unauthenticated(ClinicError):
    status_code = 401
    code = "UNAUTHENTICATED"
    default_message = "Authentication required"


class Forbidden(ClinicError):
    status_code = 403
    code = "FORBIDDEN"
    default_message = "Access denied"


class NotFound(ClinicError):
    status_code = 404
    code = "NOT_FOUND"
    default_message = "Not found"


class Conflict(ClinicError):
    status_code = 409
    code = "CONFLICT"
    default_message = "Conflict"


class SlotConflict(Conflict):
    code = "SLOT_CONFLICT"
    default_message = "Slot already booked for this therapist"


class Internal(ClinicError):
    pass
