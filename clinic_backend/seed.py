from __future__ import annotations

import logging

from sqlalchemy import select

from .auth_models import Role, User
from .auth_security import hash_password
from .config import Settings
from .db import Database

logger = logging.getLogger(__name__)


def seed_admin(db: Database, settings: Settings) -> str | None:
    """
    Crea l'Admin iniziale da ADMIN_USERNAME / ADMIN_PASSWORD (idempotente).
    Ritorna l'id dell'Admin, None se non configurato.
    """
    if not settings.admin_username or not settings.admin_password:
        return None

    username = settings.admin_username.strip().lower()
    with db.session() as s:
        u = s.execute(select(User).where(User.username == username)).scalar_one_or_none()
        if u is not None:
            return u.id

        u = User(
            username=username,
            password_hash=hash_password(settings.admin_password, settings.bcrypt_rounds),
            role=Role.ADMIN,
        )
        s.add(u)
        s.flush()
        logger.info("Seeded admin user %s", username)
        return u.id
