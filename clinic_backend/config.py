from __future__ import annotations

from datetime import timezone, tzinfo
from functools import lru_cache
from pathlib import Path
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# DB SQLite su file nella root del progetto
DEFAULT_DB_PATH = Path(__file__).resolve().parents[1] / "clinic.sqlite"
DEV_JWT_SECRET = "CHANGE_ME_DEV_SECRET"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class Settings(BaseSettings):
    """
    Configurazione runtime, letta dall'ambiente (e da `.env`).
    Ogni variabile ha lo stesso nome del campo in maiuscolo
    (JWT_SECRET, CLINIC_TIMEZONE, ...).
    I test costruiscono la propria istanza passando i valori esplicitamente.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    database_url: str = f"sqlite:///{DEFAULT_DB_PATH}"
    db_echo: bool = False

    # Token / password
    jwt_secret: str = DEV_JWT_SECRET
    jwt_alg: str = "HS256"
    jwt_expire_minutes: int = 180
    bcrypt_rounds: int = 12

    # Giornata lavorativa (ora locale della clinica)
    day_start_hour: int = 9
    day_end_hour: int = 20
    slot_minutes: int = 45
    clinic_timezone: str = "UTC"

    # Registrazione / bootstrap
    allow_open_registration: bool = False
    admin_username: str | None = None
    admin_password: str | None = None

    log_level: str = "INFO"

    @field_validator("jwt_expire_minutes", "slot_minutes")
    @classmethod
    def must_be_positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be greater than 0")
        return v

    @field_validator("bcrypt_rounds")
    @classmethod
    def bcrypt_rounds_in_range(cls, v: int) -> int:
        if not 4 <= v <= 31:
            raise ValueError("must be between 4 and 31")
        return v

    @field_validator("day_start_hour", "day_end_hour")
    @classmethod
    def hour_in_range(cls, v: int) -> int:
        if not 0 <= v <= 24:
            raise ValueError("must be between 0 and 24")
        return v

    @field_validator("clinic_timezone")
    @classmethod
    def timezone_must_exist(cls, v: str) -> str:
        # zona sconosciuta => errore all'avvio, non alla prima richiesta
        if v.upper() == "UTC":
            return "UTC"
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"unknown timezone {v!r}") from None
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_known(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"must be one of {', '.join(LOG_LEVELS)}")
        return level

    @field_validator("admin_username", "admin_password", mode="before")
    @classmethod
    def empty_as_unset(cls, v: str | None) -> str | None:
        return v or None

    @model_validator(mode="after")
    def working_day_is_ordered(self) -> "Settings":
        if self.day_start_hour >= self.day_end_hour:
            raise ValueError("DAY_START_HOUR must be before DAY_END_HOUR")
        return self

    @property
    def tz(self) -> tzinfo:
        if self.clinic_timezone == "UTC":
            return timezone.utc
        return ZoneInfo(self.clinic_timezone)


@lru_cache
def get_settings() -> Settings:
    """
    Settings singleton del processo.

    Raises:
        ValidationError: variabile d'ambiente non valida (il messaggio nomina il campo)
    """
    return Settings()
