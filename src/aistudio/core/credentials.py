"""SQLite-backed user accounts and bearer tokens.

Passwords are hashed with bcrypt.  Tokens are opaque random strings; only
their SHA-256 digest is stored, together with the owning user and an expiry.
The generation pipeline consumes a single operation from this module:
:meth:`CredentialStore.authenticate`.
"""

from __future__ import annotations

import hashlib
import logging
import secrets
import sqlite3
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

import bcrypt

from aistudio.core.errors import Conflict, NotInitialized, Unauthorized

logger = logging.getLogger(__name__)


@dataclass
class User:
    """A registered account."""

    id: int
    email: str


def hash_password(password: str) -> str:
    """Hash a password using bcrypt."""
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """Verify a password against its hash."""
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _digest(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CredentialStore:
    """Manage users and bearer tokens.

    Shares the open/close lifecycle of
    :class:`~aistudio.core.generations_db.GenerationsDB`.
    """

    def __init__(self, db_path: Path | str, token_ttl: timedelta = timedelta(days=7)):
        self.db_path = db_path if str(db_path) == ":memory:" else Path(db_path)
        self.token_ttl = token_ttl
        self._conn: sqlite3.Connection | None = None
        self._lock = threading.Lock()

    def open(self) -> "CredentialStore":
        """Open the connection and create the schema if it doesn't exist."""
        if self._conn is not None:
            return self

        if isinstance(self.db_path, Path):
            self.db_path.parent.mkdir(parents=True, exist_ok=True)

        conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
        conn.row_factory = sqlite3.Row

        conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                email TEXT UNIQUE NOT NULL,
                password_hash TEXT NOT NULL
            )
            """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS tokens (
                token_digest TEXT PRIMARY KEY,
                user_id INTEGER NOT NULL REFERENCES users(id),
                expires_at TEXT NOT NULL
            )
            """)
        conn.commit()

        self._conn = conn
        logger.info(f"Opened credential store at {self.db_path}")
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __enter__(self) -> "CredentialStore":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            raise NotInitialized("Credential store used before open()")
        return self._conn

    # -- Accounts -----------------------------------------------------------

    def create_user(self, email: str, password: str) -> User:
        """Register a new user.

        Raises:
            Conflict: If the email is already registered.
        """
        email = email.strip().lower()
        password_hash = hash_password(password)

        with self._lock:
            conn = self._connection()
            try:
                cursor = conn.execute(
                    "INSERT INTO users (email, password_hash) VALUES (?, ?)",
                    (email, password_hash),
                )
                conn.commit()
            except sqlite3.IntegrityError as e:
                conn.rollback()
                raise Conflict("Email already exists") from e

        logger.info(f"Registered user {cursor.lastrowid}")
        return User(id=cursor.lastrowid, email=email)

    def verify_user(self, email: str, password: str) -> User:
        """Check credentials.

        Raises:
            Unauthorized: If the email is unknown or the password is wrong.
        """
        email = email.strip().lower()
        with self._lock:
            row = self._connection().execute(
                "SELECT id, email, password_hash FROM users WHERE email = ?", (email,)
            ).fetchone()

        if row is None or not verify_password(password, row["password_hash"]):
            raise Unauthorized("Invalid credentials")
        return User(id=row["id"], email=row["email"])

    def get_user(self, user_id: int) -> User | None:
        with self._lock:
            row = self._connection().execute(
                "SELECT id, email FROM users WHERE id = ?", (user_id,)
            ).fetchone()
        return User(id=row["id"], email=row["email"]) if row else None

    # -- Tokens -------------------------------------------------------------

    def issue_token(self, user_id: int) -> str:
        """Create a bearer token for *user_id*."""
        token = secrets.token_urlsafe(32)
        expires_at = _utcnow() + self.token_ttl

        with self._lock:
            conn = self._connection()
            conn.execute(
                "INSERT INTO tokens (token_digest, user_id, expires_at) VALUES (?, ?, ?)",
                (_digest(token), user_id, expires_at.isoformat()),
            )
            # Opportunistic cleanup keeps the table from growing unbounded.
            conn.execute("DELETE FROM tokens WHERE expires_at < ?", (_utcnow().isoformat(),))
            conn.commit()

        return token

    def authenticate(self, token: str | None) -> int:
        """Return the user id a bearer token belongs to.

        Raises:
            Unauthorized: If the token is missing, unknown or expired.
        """
        if not token:
            raise Unauthorized()

        with self._lock:
            row = self._connection().execute(
                "SELECT user_id, expires_at FROM tokens WHERE token_digest = ?",
                (_digest(token),),
            ).fetchone()

        if row is None:
            raise Unauthorized()
        if datetime.fromisoformat(row["expires_at"]) <= _utcnow():
            raise Unauthorized("Token expired")
        return row["user_id"]

    def revoke_token(self, token: str) -> bool:
        """Delete a token.  Returns ``True`` if it existed."""
        with self._lock:
            conn = self._connection()
            cursor = conn.execute("DELETE FROM tokens WHERE token_digest = ?", (_digest(token),))
            conn.commit()
        return cursor.rowcount > 0
