"""Access policy: who is making the request, and with which role.

Members are identified by an API key sent as ``X-API-Key``. Keys are issued
once when the user is created; only their SHA-256 hash is stored. The
configured bootstrap key (``settings.api_key``) resolves to a built-in admin
identity so a fresh installation can create its first users.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import sqlite3
import uuid
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from library_lending import database
from library_lending.config import settings
from library_lending.errors import (
    DuplicateKeyError,
    ForbiddenError,
    InvalidUserError,
    NotFoundError,
    UnauthenticatedError,
)
from library_lending.timeutil import to_iso, utc_now

logger = logging.getLogger(__name__)

ADMIN_ROLE = "Admin"
MEMBER_ROLE = "Member"
ROLES = (ADMIN_ROLE, MEMBER_ROLE)

BOOTSTRAP_ADMIN_ID = "admin"


@dataclass
class User:
    id: str
    name: str
    email: str
    role: str
    is_active: bool = True
    created_at: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "is_active": self.is_active,
            "created_at": self.created_at,
        }

    def summary(self) -> dict:
        return {"id": self.id, "name": self.name, "email": self.email, "role": self.role}


@dataclass(frozen=True)
class Identity:
    """The authenticated caller. The lending core trusts it unconditionally."""
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def _hash_key(api_key: str) -> str:
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def _user_from_row(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        name=row["name"],
        email=row["email"],
        role=row["role"],
        is_active=bool(row["is_active"]),
        created_at=row["created_at"],
    )


def require_role(identity: Identity, roles: Iterable[str]) -> Identity:
    """Return the identity if its role is allowed, else raise ForbiddenError."""
    allowed = list(roles)
    if identity.role not in allowed:
        raise ForbiddenError(f"Access denied. Required role: {' or '.join(allowed)}")
    return identity


class AccessPolicy:
    def __init__(self, db_file: str, bootstrap_key: Optional[str] = None) -> None:
        self.db_file = db_file
        self.bootstrap_key = settings.api_key if bootstrap_key is None else bootstrap_key

    def create_user(self, name: str, email: str, role: str = MEMBER_ROLE) -> Tuple[User, str]:
        """Create a user and issue its API key. The key is returned only here."""
        name = (name or "").strip()
        email = (email or "").strip()
        if len(name) < 3:
            raise InvalidUserError("Name must be at least 3 characters")
        if "@" not in email:
            raise InvalidUserError("Please provide a valid email")
        if role not in ROLES:
            raise InvalidUserError(f"Role must be either {ADMIN_ROLE} or {MEMBER_ROLE}")

        api_key = secrets.token_hex(24)
        user = User(id=uuid.uuid4().hex, name=name, email=email, role=role, created_at=to_iso(utc_now()))
        try:
            with database.connection(self.db_file) as conn:
                conn.execute("""
                    INSERT INTO users (id, name, email, role, api_key_hash, is_active, created_at)
                    VALUES (?, ?, ?, ?, ?, 1, ?)
                """, (user.id, user.name, user.email, user.role, _hash_key(api_key), user.created_at))
        except sqlite3.IntegrityError as e:
            raise DuplicateKeyError("User already exists") from e
        logger.info(f"User created: {user.id} role={user.role}")
        return user, api_key

    def get_user(self, user_id: str) -> Optional[User]:
        with database.connection(self.db_file) as conn:
            row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def get_users(self, user_ids: Iterable[str]) -> dict:
        ids = list(set(user_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        with database.connection(self.db_file) as conn:
            rows = conn.execute(f"SELECT * FROM users WHERE id IN ({placeholders})", ids).fetchall()
        return {row["id"]: _user_from_row(row) for row in rows}

    def require_active_user(self, user_id: str) -> User:
        """The user, or NotFoundError / ForbiddenError when unknown or deactivated."""
        user = self.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not user.is_active:
            raise ForbiddenError("User account is deactivated")
        return user

    def deactivate_user(self, user_id: str) -> None:
        with database.connection(self.db_file) as conn:
            cursor = conn.execute("UPDATE users SET is_active = 0 WHERE id = ?", (user_id,))
            if cursor.rowcount == 0:
                raise NotFoundError("User not found")
        logger.info(f"User deactivated: {user_id}")

    def resolve(self, api_key: Optional[str]) -> Identity:
        """Map a request credential to an identity or raise UnauthenticatedError."""
        if not api_key:
            raise UnauthenticatedError()
        if self.bootstrap_key and secrets.compare_digest(api_key, self.bootstrap_key):
            return Identity(user_id=BOOTSTRAP_ADMIN_ID, role=ADMIN_ROLE)

        with database.connection(self.db_file) as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE api_key_hash = ?", (_hash_key(api_key),)
            ).fetchone()
        if not row:
            raise UnauthenticatedError("Invalid API key")
        if not row["is_active"]:
            raise UnauthenticatedError("User account is deactivated")
        return Identity(user_id=row["id"], role=row["role"])
