from dataclasses import dataclass
from typing import Mapping, Optional

import bcrypt

ADMIN_ROLE = "admin"
USER_ROLE = "user"
ALLOWED_USER_ROLES = {ADMIN_ROLE, USER_ROLE}


@dataclass(frozen=True)
class Principal:
    """Verified identity taken from a session token."""

    user_id: str
    role: str
    email: str = ""
    name: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def normalize_role(value: Optional[str]) -> str:
    normalized = str(value or "").strip().lower()
    return normalized if normalized in ALLOWED_USER_ROLES else USER_ROLE


def principal_from_claims(identity, claims: Mapping) -> Principal:
    return Principal(
        user_id=str(identity or ""),
        role=normalize_role(claims.get("role")),
        email=str(claims.get("email") or ""),
        name=str(claims.get("name") or ""),
    )


def hash_password(password: str, rounds: int = 12) -> bytes:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))


def check_password(password: str, hashed) -> bool:
    if not password or not hashed:
        return False
    if isinstance(hashed, str):
        hashed = hashed.encode("utf-8")
    try:
        return bcrypt.checkpw(password.encode("utf-8"), hashed)
    except ValueError:
        return False
