"""SQLite-backed persistence for users."""
from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, List, Optional

from .models import User

logger = logging.getLogger("usersapi.database")

_USER_COLUMNS = "id, name, email, created_at, updated_at, deleted_at"

# SQLite INTEGER columns hold signed 64-bit values.
_MIN_ROW_ID = -(2**63)
_MAX_ROW_ID = 2**63 - 1


class UserStoreError(Exception):
    """Base class for failures reported by :class:`Database`."""


class UserNotFoundError(UserStoreError):
    """Raised when no live user matches the requested id."""

    def __init__(self, user_id: int) -> None:
        super().__init__(f"User {user_id} not found")
        self.user_id = user_id


class StorageError(UserStoreError):
    """Raised when the database cannot be reached or a statement fails."""


def _ensure_directory(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "users.sqlite3").resolve(strict=False)


def _current_timestamp() -> datetime:
    return datetime.now(timezone.utc)


def _serialize_datetime(value: datetime) -> str:
    return value.isoformat()


def _parse_datetime(value: str) -> datetime:
    return datetime.fromisoformat(value)


def _is_storable_id(user_id: int) -> bool:
    return _MIN_ROW_ID <= user_id <= _MAX_ROW_ID


class Database:
    """Thin wrapper around SQLite for the ``users`` table.

    Every public method opens its own connection, so a single instance can be
    shared by concurrent request handlers.  Driver exceptions are translated
    into :class:`StorageError`; a missing live row is reported as
    :class:`UserNotFoundError`.
    """

    def __init__(self, path: Path) -> None:
        self._path = path

    @property
    def path(self) -> Path:
        return self._path

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        try:
            conn = self._connect()
        except sqlite3.Error as exc:
            raise StorageError(f"Failed to open database {self._path}: {exc}") from exc

        try:
            with conn:
                yield conn
        except sqlite3.Error as exc:
            raise StorageError(str(exc)) from exc
        finally:
            conn.close()

    def initialize(self) -> None:
        """Create the ``users`` table and add any columns missing from older files.

        Safe to call on every start-up.
        """

        try:
            _ensure_directory(self._path)
        except OSError as exc:
            raise StorageError(f"Cannot create database directory: {exc}") from exc

        with self._session() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS users (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL DEFAULT '',
                    email TEXT NOT NULL DEFAULT '',
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    deleted_at TEXT
                );
                """
            )

            columns = {
                row["name"]
                for row in conn.execute("PRAGMA table_info(users)").fetchall()
            }
            if "updated_at" not in columns:
                conn.execute("ALTER TABLE users ADD COLUMN updated_at TEXT")
                conn.execute("UPDATE users SET updated_at = created_at WHERE updated_at IS NULL")
            if "deleted_at" not in columns:
                conn.execute("ALTER TABLE users ADD COLUMN deleted_at TEXT")

            conn.execute("CREATE INDEX IF NOT EXISTS idx_users_deleted_at ON users(deleted_at)")

        logger.debug("Database schema ready at %s", self._path)

    # ------------------------------------------------------------------
    # User management
    # ------------------------------------------------------------------
    def list_users(self) -> List[User]:
        with self._session() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE deleted_at IS NULL ORDER BY id"
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def get_user(self, user_id: int) -> User:
        if not _is_storable_id(user_id):
            raise UserNotFoundError(user_id)
        with self._session() as conn:
            row = self._fetch_live_row(conn, user_id)
        if row is None:
            raise UserNotFoundError(user_id)
        return self._row_to_user(row)

    def create_user(self, name: str, email: str) -> User:
        """Insert a new user; the database assigns the id."""

        now = _current_timestamp()
        serialized = _serialize_datetime(now)

        with self._session() as conn:
            cursor = conn.execute(
                """
                INSERT INTO users (name, email, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                """,
                (name, email, serialized, serialized),
            )
            user_id = cursor.lastrowid

        logger.info("Created user %s", user_id)
        return User(id=int(user_id), name=name, email=email, created_at=now, updated_at=now)

    def update_user(
        self,
        user_id: int,
        *,
        name: Optional[str] = None,
        email: Optional[str] = None,
    ) -> User:
        """Apply a partial update to a live user.

        Empty strings are treated like omitted values, so a field can never be
        cleared through this method.  ``updated_at`` is refreshed even when no
        other column changes.
        """

        if not _is_storable_id(user_id):
            raise UserNotFoundError(user_id)

        updates: List[str] = []
        values: List[object] = []
        for column, value in (("name", name), ("email", email)):
            if not value:
                continue
            updates.append(f"{column} = ?")
            values.append(value)

        updates.append("updated_at = ?")
        values.append(_serialize_datetime(_current_timestamp()))
        values.append(user_id)
        query = f"UPDATE users SET {', '.join(updates)} WHERE id = ? AND deleted_at IS NULL"

        with self._session() as conn:
            cursor = conn.execute(query, values)
            if cursor.rowcount == 0:
                raise UserNotFoundError(user_id)
            row = self._fetch_live_row(conn, user_id)

        if row is None:
            raise UserNotFoundError(user_id)
        logger.info("Updated user %s", user_id)
        return self._row_to_user(row)

    def delete_user(self, user_id: int) -> bool:
        """Soft-delete a user.

        Returns ``True`` when a live row was marked deleted and ``False`` when
        there was nothing to delete.  Neither case is an error.
        """

        if not _is_storable_id(user_id):
            return False

        serialized = _serialize_datetime(_current_timestamp())
        with self._session() as conn:
            cursor = conn.execute(
                "UPDATE users SET deleted_at = ?, updated_at = ? WHERE id = ? AND deleted_at IS NULL",
                (serialized, serialized, user_id),
            )
            deleted = cursor.rowcount > 0

        if deleted:
            logger.info("Soft-deleted user %s", user_id)
        return deleted

    def count_users(self, *, include_deleted: bool = False) -> int:
        query = "SELECT COUNT(*) FROM users"
        if not include_deleted:
            query += " WHERE deleted_at IS NULL"
        with self._session() as conn:
            (count,) = conn.execute(query).fetchone()
        return int(count)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    @staticmethod
    def _fetch_live_row(conn: sqlite3.Connection, user_id: int) -> Optional[sqlite3.Row]:
        return conn.execute(
            f"SELECT {_USER_COLUMNS} FROM users WHERE id = ? AND deleted_at IS NULL",
            (user_id,),
        ).fetchone()

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> User:
        deleted_at = row["deleted_at"]
        try:
            return User(
                id=int(row["id"]),
                name=str(row["name"]),
                email=str(row["email"]),
                created_at=_parse_datetime(str(row["created_at"])),
                updated_at=_parse_datetime(str(row["updated_at"])),
                deleted_at=_parse_datetime(str(deleted_at)) if deleted_at else None,
            )
        except ValueError as exc:
            raise StorageError(f"User {row['id']} has a malformed timestamp: {exc}") from exc


__all__ = [
    "Database",
    "StorageError",
    "UserNotFoundError",
    "UserStoreError",
    "resolve_database_path",
]
