from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List

import psycopg2
from psycopg2 import pool, sql
from psycopg2.extras import RealDictCursor

from settings import env_int, history_timestamp_column, required_env
from tracker_fields import FIELD_DEFS, TIMED_FLAG_COLUMN

logger = logging.getLogger(__name__)

DB_POOL: pool.ThreadedConnectionPool | None = None

STATE_COLUMNS = [definition.column for definition in FIELD_DEFS] + [TIMED_FLAG_COLUMN]
RPC_NAMES = {"history_snapshot_rpc", "daily_reset_rpc", "weekly_reset_rpc"}


class StoreError(Exception):
    """The database rejected a statement or could not be reached."""


def get_db_pool() -> pool.ThreadedConnectionPool:
    global DB_POOL
    if DB_POOL is None:
        try:
            DB_POOL = pool.ThreadedConnectionPool(
                minconn=env_int("DB_POOL_MIN", 1),
                maxconn=env_int("DB_POOL_MAX", 10),
                dsn=required_env("DATABASE_URL"),
            )
        except psycopg2.Error as exc:
            raise StoreError(str(exc).strip() or "Database is unavailable") from exc
    return DB_POOL


@contextmanager
def pooled_connection() -> Iterator[Any]:
    db_pool = get_db_pool()
    try:
        db = db_pool.getconn()
    except psycopg2.Error as exc:
        raise StoreError(str(exc).strip() or "Database is unavailable") from exc
    try:
        yield db
    except psycopg2.Error as exc:
        raise StoreError(getattr(exc, "pgerror", None) or str(exc).strip() or "Database error") from exc
    finally:
        try:
            db.rollback()
        except psycopg2.Error:
            logger.warning("Rollback failed while returning connection to pool")
        db_pool.putconn(db)


def fetch_all_rows(query: Any, params: List[Any] | tuple[Any, ...] | None = None) -> List[Dict[str, Any]]:
    with pooled_connection() as db:
        with db.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(query, params)
            return [dict(row) for row in cursor.fetchall()]


def fetch_one(query: Any, params: List[Any] | tuple[Any, ...] | None = None) -> Dict[str, Any] | None:
    with pooled_connection() as db:
        with db.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(query, params)
            row = cursor.fetchone()
            return dict(row) if row is not None else None


def ping() -> bool:
    row = fetch_one("SELECT 1 AS ok")
    return bool(row and row.get("ok") == 1)


def maybe_init_db_on_startup() -> None:
    """Create the tracker tables when RUN_DB_INIT=1.

    Schema changes never run on the request path. Set RUN_DB_INIT=1 for one
    restart, then back to 0.
    """
    if os.environ.get("RUN_DB_INIT", "0") != "1":
        return
    init_db()


def init_db() -> None:
    schema_statements = [
        """
        CREATE TABLE IF NOT EXISTS characters (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            name TEXT NOT NULL
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS daily_state (
            character_id TEXT PRIMARY KEY REFERENCES characters (id) ON DELETE CASCADE,
            user_id TEXT NOT NULL,
            daily_status TEXT,
            wtp TEXT,
            sdn_outskirts TEXT,
            sdn_core TEXT,
            golden_active BOOLEAN,
            golden_started_at TIMESTAMPTZ,
            updated_at TIMESTAMPTZ
        )
        """,
        """
        CREATE TABLE IF NOT EXISTS history_log (
            id BIGSERIAL PRIMARY KEY,
            user_id TEXT NOT NULL,
            snapshot_date DATE,
            created_at TIMESTAMPTZ DEFAULT now(),
            character_id TEXT,
            character_name TEXT,
            action TEXT,
            details TEXT,
            notes TEXT,
            daily_status TEXT,
            wtp TEXT,
            sdn_outskirts TEXT,
            sdn_core TEXT,
            golden_active BOOLEAN,
            golden_started_at TIMESTAMPTZ,
            golden_expired_at TIMESTAMPTZ
        )
        """,
    ]
    with pooled_connection() as db:
        with db.cursor() as cursor:
            for statement in schema_statements:
                cursor.execute(statement)
        db.commit()
    logger.info("Tracker schema is up to date")


def fetch_characters(actor_id: str) -> List[Dict[str, Any]]:
    return fetch_all_rows(
        "SELECT id, name FROM characters WHERE user_id = %s ORDER BY name ASC",
        (actor_id,),
    )


def fetch_daily_states(actor_id: str) -> List[Dict[str, Any]]:
    query = sql.SQL("SELECT character_id, {columns} FROM daily_state WHERE user_id = %s").format(
        columns=sql.SQL(", ").join(sql.Identifier(column) for column in STATE_COLUMNS)
    )
    return fetch_all_rows(query, (actor_id,))


def upsert_daily_state(payload: Dict[str, Any]) -> None:
    columns = ["user_id", "character_id", *STATE_COLUMNS, "updated_at"]
    updates = [column for column in columns if column != "character_id"]
    query = sql.SQL(
        "INSERT INTO daily_state ({columns}) VALUES ({values}) "
        "ON CONFLICT (character_id) DO UPDATE SET {assignments}"
    ).format(
        columns=sql.SQL(", ").join(sql.Identifier(column) for column in columns),
        values=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
        assignments=sql.SQL(", ").join(
            sql.SQL("{column} = EXCLUDED.{column}").format(column=sql.Identifier(column)) for column in updates
        ),
    )
    with pooled_connection() as db:
        with db.cursor() as cursor:
            cursor.execute(query, [payload.get(column) for column in columns])
        db.commit()


def fetch_history_rows(
    actor_id: str,
    lower: datetime | None,
    upper: datetime | None,
    column: str | None = None,
) -> List[Dict[str, Any]]:
    column = column or history_timestamp_column()
    conditions = [sql.SQL("user_id = %s")]
    params: List[Any] = [actor_id]
    if lower is not None:
        conditions.append(sql.SQL("{column} >= %s").format(column=sql.Identifier(column)))
        params.append(lower)
    if upper is not None:
        conditions.append(sql.SQL("{column} <= %s").format(column=sql.Identifier(column)))
        params.append(upper)
    query = sql.SQL("SELECT * FROM history_log WHERE {conditions} ORDER BY {column} DESC").format(
        conditions=sql.SQL(" AND ").join(conditions),
        column=sql.Identifier(column),
    )
    return fetch_all_rows(query, params)


def call_rpc(name: str) -> Any:
    if name not in RPC_NAMES:
        raise ValueError(f"Unknown procedure {name!r}")
    with pooled_connection() as db:
        with db.cursor(cursor_factory=RealDictCursor) as cursor:
            cursor.execute(sql.SQL("SELECT * FROM {name}()").format(name=sql.Identifier(name)))
            rows = [dict(row) for row in cursor.fetchall()] if cursor.description else []
        db.commit()
    if not rows:
        return None
    return rows[0] if len(rows) == 1 else rows
