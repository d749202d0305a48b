from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

import bcrypt
from sqlalchemy import func, insert, select
from sqlalchemy.engine import Connection

from pocketbook.store import sessions, users

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL = timedelta(days=14)
BCRYPT_MAX_BYTES = 72


class AuthError(Exception):
    """Raised when a request does not carry a usable session."""


@dataclass(frozen=True)
class CurrentUser:
    id: int
    username: str
    token: str


@dataclass(frozen=True)
class IssuedSession:
    token: str
    expires_at: datetime


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    encoded = password.encode("utf-8")
    if len(encoded) > BCRYPT_MAX_BYTES:
        return False
    return bcrypt.checkpw(encoded, hashed_password.encode("utf-8"))


def bearer_token(authorization: str | None) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        token = authorization[len("Bearer "):].strip()
        return token or None
    return None


def find_user(conn: Connection, username: str) -> dict | None:
    row = conn.execute(
        select(users).where(func.lower(users.c.username) == username.lower())
    ).mappings().first()
    return dict(row) if row else None


def create_user(conn: Connection, username: str, password: str) -> int:
    result = conn.execute(
        insert(users).values(username=username, password_hash=hash_password(password))
    )
    return result.inserted_primary_key[0]


def create_session(
    conn: Connection,
    user_id: int,
    ttl: timedelta = DEFAULT_SESSION_TTL,
    now: datetime | None = None,
) -> IssuedSession:
    token = secrets.token_hex(32)
    expires_at = (now or utcnow()) + ttl
    conn.execute(insert(sessions).values(token=token, user_id=user_id, expires_at=expires_at))
    return IssuedSession(token=token, expires_at=expires_at)


def revoke_session(conn: Connection, token: str) -> None:
    conn.execute(sessions.delete().where(sessions.c.token == token))


def resolve_session(conn: Connection, token: str | None, now: datetime | None = None) -> CurrentUser:
    if not token:
        raise AuthError("Unauthorized.")
    row = conn.execute(
        select(sessions.c.user_id, sessions.c.expires_at, users.c.username)
        .select_from(sessions.join(users, users.c.id == sessions.c.user_id))
        .where(sessions.c.token == token)
    ).mappings().first()
    if not row:
        raise AuthError("Unauthorized.")
    if row["expires_at"] <= (now or utcnow()):
        logger.warning("Expired session presented for user %s", row["user_id"])
        revoke_session(conn, token)
        raise AuthError("Session expired.")
    return CurrentUser(id=int(row["user_id"]), username=row["username"], token=token)
