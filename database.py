"""Database connections and transactions.

Connections are checked out of a SQLAlchemy engine pool (created through
SQLModel) and used through the plain DBAPI driver, so that the ticket
procedures can issue their own parameterized SQL with explicit locking.
PostgreSQL is used in production; SQLite is the local development and
test backend.

Statements are written once with ``?`` placeholders and passed through
``sql()``, which rewrites them for psycopg2.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg2.extras
from sqlmodel import SQLModel, create_engine

import models  # noqa: F401  (registers the tables on SQLModel.metadata)

logger = logging.getLogger(__name__)

PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))
DEFAULT_DB_FILENAME = os.path.join(PROJECT_DIR, "queue.db")


def _database_url(raw: Optional[str]) -> str:
    """Turn the DATABASE_URL setting into a URL SQLAlchemy accepts.

    Hosting providers still hand out ``postgres://`` URLs, and a bare path
    is taken to be a SQLite file.
    """
    if not raw:
        return f"sqlite:///{DEFAULT_DB_FILENAME}"
    if raw.startswith("postgres://"):
        return "postgresql://" + raw[len("postgres://"):]
    if "://" not in raw:
        return f"sqlite:///{raw}"
    return raw


DATABASE_URL = _database_url(os.getenv("DATABASE_URL"))
USE_POSTGRES = DATABASE_URL.startswith("postgresql")

if USE_POSTGRES:
    engine = create_engine(DATABASE_URL, pool_pre_ping=True)
else:
    # timeout is how long a writer waits on BEGIN IMMEDIATE before giving up
    engine = create_engine(
        DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 30}
    )


def get_connection():
    """Check a DBAPI connection out of the pool.

    Closing the returned connection hands it back to the pool, which rolls
    back anything left uncommitted.
    """
    conn = engine.raw_connection()
    if not USE_POSTGRES:
        conn.dbapi_connection.row_factory = sqlite3.Row
        conn.dbapi_connection.execute("PRAGMA foreign_keys = ON")
    return conn


def cursor(conn):
    """Return a cursor whose rows can be read by column name."""
    if USE_POSTGRES:
        return conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
    return conn.cursor()


def sql(statement: str) -> str:
    if USE_POSTGRES:
        return statement.replace("?", "%s")
    return statement


def for_update() -> str:
    """Row lock clause for a locking read.

    SQLite has no row locks; there the whole write transaction is
    serialized by ``BEGIN IMMEDIATE`` in ``transaction()``.
    """
    return " FOR UPDATE" if USE_POSTGRES else ""


@contextmanager
def transaction() -> Iterator[Any]:
    """Run one write transaction and yield its cursor.

    Commits when the block exits normally, rolls back and re-raises on any
    exception, and always returns the connection to the pool.
    """
    conn = get_connection()
    try:
        cur = cursor(conn)
        if not USE_POSTGRES:
            # SQLite has no row locks.  This takes the database write lock, so
            # writers on unrelated sequence keys or branches also wait on each
            # other.  Only Postgres gets per-row locking.
            cur.execute("BEGIN IMMEDIATE")
        yield cur
        conn.commit()
    except Exception as exc:
        conn.rollback()
        logger.info("Transaction rolled back: %s", exc)
        raise
    finally:
        conn.close()


def fetch_all(statement: str, params: Sequence[Any] = ()) -> List[Dict[str, Any]]:
    conn = get_connection()
    try:
        cur = cursor(conn)
        cur.execute(sql(statement), tuple(params))
        return [dict(row) for row in cur.fetchall()]
    finally:
        conn.close()


def fetch_one(statement: str, params: Sequence[Any] = ()) -> Optional[Dict[str, Any]]:
    rows = fetch_all(statement, params)
    return rows[0] if rows else None


def init_db() -> None:
    """Create tables if they do not exist."""
    SQLModel.metadata.create_all(engine)


def reset_db() -> None:
    """Drop and recreate every table.  Used by the test suite."""
    SQLModel.metadata.drop_all(engine)
    SQLModel.metadata.create_all(engine)
