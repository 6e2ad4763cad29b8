from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Any

from jose import JWTError, jwt
from passlib.context import CryptContext

from clinic_backend.auth_models import Role, User
from clinic_backend.config import Settings
from clinic_backend.errors import Unauthenticated

logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def _pwd_context(rounds: int) -> CryptContext:
    return CryptContext(schemes=["bcrypt"], deprecated="auto", bcrypt__rounds=rounds)


def hash_password(password: str, rounds: int = 12) -> str:
    return _pwd_context(rounds).hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    # il costo e il salt sono nell'hash: il context di default basta
    return _pwd_context(12).verify(password, password_hash)


def dummy_verify(rounds: int = 12) -> None:
    """Stessa fatica di una verify reale, per utenti inesistenti."""
    _pwd_context(rounds).dummy_verify()


@dataclass(frozen=True)
class TokenClaims:
    user_id: str
    username: str
    role: Role
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return now >= self.expires_at


def create_access_token(user: User, settings: Settings, now: datetime | None = None) -> tuple[str, TokenClaims]:
    """
    Firma un token HS256 con {sub, username, role, iat, exp}.
    Usa datetime timezone-aware e secondi interi, cosi' i claims
    decodificati coincidono con quelli emessi.
    """
    now = (now or datetime.now(timezone.utc)).replace(microsecond=0)
    claims = TokenClaims(
        user_id=user.id,
        username=user.username,
        role=user.role,
        issued_at=now,
        expires_at=now + timedelta(minutes=settings.jwt_expire_minutes),
    )
    return encode_claims(claims, settings), claims


def encode_claims(claims: TokenClaims, settings: Settings) -> str:
    payload: dict[str, Any] = {
        "sub": claims.user_id,
        "username": claims.username,
        "role": claims.role.value,
        "iat": int(claims.issued_at.timestamp()),
        "exp": int(claims.expires_at.timestamp()),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_alg)


def decode_token(token: str | None, settings: Settings) -> TokenClaims:
    """
    Verifica firma e scadenza (nessun I/O).
    Qualsiasi problema => Unauthenticated, senza dettagli al client.
    """
    if not token:
        raise Unauthenticated("No token, authorization denied")

    # protezione extra: elimina spazi / virgolette accidentali
    token = token.strip().strip('"').strip("'")

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_alg])
        return TokenClaims(
            user_id=str(payload["sub"]),
            username=str(payload["username"]),
            role=Role(payload["role"]),
            issued_at=datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc),
            expires_at=datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc),
        )
    except JWTError as e:
        logger.info("Token rejected: %s", e.__class__.__name__)
        raise Unauthenticated("Token is not valid") from e
    except (KeyError, TypeError, ValueError) as e:
        logger.warning("Token with incomplete claim set rejected")
        raise Unauthenticated("Token is not valid") from e
