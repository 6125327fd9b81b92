# leadestate/db.py
# Database abstraction layer supporting PostgreSQL (production) and SQLite (dev)

import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Generator, List, Optional, Sequence, Union
from urllib.parse import urlparse

from sqlalchemy import create_engine, pool, text
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError as SAIntegrityError
from sqlalchemy.exc import SQLAlchemyError

from leadestate.config import Settings

DBConnection = Union[sqlite3.Connection, Connection]

# Driver errors that mean "the store could not answer"
STORE_ERRORS = (sqlite3.Error, SQLAlchemyError)
INTEGRITY_ERRORS = (sqlite3.IntegrityError, SAIntegrityError)


class Database:
    """
    Connection factory for the durable store.

    SQLite is used unless settings.database_url points at PostgreSQL, in which
    case a pooled SQLAlchemy engine is created once per Database instance.
    """

    def __init__(self, settings: Settings):
        self.settings = settings
        self.is_postgres = settings.is_postgres
        self._engine = None

        if self.is_postgres:
            self._init_engine()
        elif settings.is_dev:
            print(f"[DB] Using SQLite ({settings.database_path})")

    def _init_engine(self) -> None:
        url = self.settings.database_url
        parsed = urlparse(url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"Invalid DATABASE_URL: {url[:20]}...")

        # SQLAlchemy wants the postgresql:// scheme
        if url.startswith("postgres://"):
            url = "postgresql://" + url[len("postgres://"):]

        self._engine = create_engine(
            url,
            poolclass=pool.QueuePool,
            pool_size=5,
            max_overflow=10,
            pool_pre_ping=True,  # Verify connections before use
        )
        print(f"[DB] Using PostgreSQL ({parsed.hostname})")

    @contextmanager
    def connect(self) -> Generator[DBConnection, None, None]:
        """
        Context manager for database connections.
        Yields sqlite3.Connection for SQLite or sqlalchemy Connection for Postgres.
        """
        if self.is_postgres:
            with self._engine.connect() as conn:
                yield conn
        else:
            # BEGIN IMMEDIATE: writers queue on the busy timeout instead of failing on lock upgrade
            conn = sqlite3.connect(
                self.settings.database_path,
                timeout=10,
                check_same_thread=False,
                isolation_level="IMMEDIATE",
            )
            conn.row_factory = sqlite3.Row
            try:
                yield conn
            finally:
                conn.close()


def _is_sqlite(conn: DBConnection) -> bool:
    return isinstance(conn, sqlite3.Connection)


def _to_named(query: str, params: Sequence[Any]) -> tuple:
    """Convert ? placeholders to :p1, :p2 ... binds for SQLAlchemy text()."""
    parts = query.split("?")
    if len(parts) - 1 != len(params):
        raise ValueError(f"Expected {len(parts) - 1} parameters, got {len(params)}")
    named = parts[0]
    bound: Dict[str, Any] = {}
    for i in range(1, len(parts)):
        key = f"p{i}"
        named += f":{key}" + parts[i]
        bound[key] = params[i - 1]
    return named, bound


def execute_query(conn: DBConnection, query: str, params: Sequence[Any] = ()) -> Any:
    """
    Execute a query with positional parameters.

    Args:
        conn: Database connection
        query: SQL query using ? placeholders
        params: Query parameters

    Returns:
        Cursor (SQLite) or CursorResult (PostgreSQL)
    """
    if _is_sqlite(conn):
        return conn.execute(query, tuple(params))

    named, bound = _to_named(query, params)
    return conn.execute(text(named), bound)


def row_to_dict(row) -> Dict[str, Any]:
    """
    Convert a driver row to a plain dict.

    Works for sqlite3.Row and SQLAlchemy Row. Returns {} for None.
    """
    if row is None:
        return {}
    if isinstance(row, sqlite3.Row):
        return dict(row)
    return dict(row._mapping)


def fetch_one(conn: DBConnection, query: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
    result = execute_query(conn, query, params)
    row = result.fetchone()
    result.close()
    return row_to_dict(row) if row is not None else None


def fetch_all(conn: DBConnection, query: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
    return [row_to_dict(row) for row in execute_query(conn, query, params).fetchall()]


def fetch_count(conn: DBConnection, query: str, params: Sequence[Any] = ()) -> int:
    """Run a SELECT COUNT(*) AS n query and return n as int (never negative)."""
    row = fetch_one(conn, query, params)
    if not row:
        return 0
    return max(0, int(row.get("n") or 0))


def insert_returning_id(conn: DBConnection, query: str, params: Sequence[Any] = ()) -> int:
    """Run an INSERT and return the new row id."""
    if _is_sqlite(conn):
        cur = conn.execute(query, tuple(params))
        return int(cur.lastrowid)

    result = execute_query(conn, query.rstrip().rstrip(";") + " RETURNING id", params)
    return int(result.scalar_one())


def commit(conn: DBConnection) -> None:
    conn.commit()


def rollback(conn: DBConnection) -> None:
    conn.rollback()


# ---------------------------------------------------------
# Timestamps
# ---------------------------------------------------------
# Stored as fixed-width UTC ISO-8601 text so that string comparison in SQL
# matches chronological order.

def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def to_db_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_db_timestamp(value: Any) -> Optional[datetime]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
