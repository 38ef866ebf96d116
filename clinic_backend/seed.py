from __future__ import annotations

import logging

from sqlalchemy import select

from .auth_models import User
from .auth_security import hash_password
from .db import db_session

logger = logging.getLogger(__name__)

DEMO_PASSWORD = "ChangeMe123!"


def seed_demo_users() -> None:
    """
    Demo staff accounts (idempotent), all with DEMO_PASSWORD:
    - reception: no second factor
    - doctor   : email codes
    """
    users = [
        ("reception@clinic.local", "Giulia", "Verdi", False),
        ("doctor@clinic.local", "Mario", "Rossi", True),
    ]
    with db_session() as s:
        for email, first_name, last_name, email_2fa in users:
            if s.execute(select(User).where(User.email == email)).scalar_one_or_none() is not None:
                continue
            s.add(
                User(
                    email=email,
                    password_hash=hash_password(DEMO_PASSWORD),
                    first_name=first_name,
                    last_name=last_name,
                    is_active=True,
                    is_verified=True,
                    two_factor_email_enabled=email_2fa,
                )
            )
            logger.info("Demo user created: %s", email)
