from __future__ import annotations

import logging

from sqlalchemy import inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncEngine

from chatstore.db import Base
from chatstore.models import core as _core  # noqa: F401  (register models)
from chatstore.services.timestamps import ZERO_TIMESTAMPS, format_datetime_iso_utc, utcnow

logger = logging.getLogger(__name__)


def _schema_upgrades(conn: Connection) -> list[str]:
    insp = inspect(conn)
    table_names = set(insp.get_table_names())

    def has_column(table: str, col: str) -> bool:
        return any(c["name"] == col for c in insp.get_columns(table))

    stmts: list[str] = []

    # Databases created before statistics and token accounting existed.
    if "conversations" in table_names:
        if not has_column("conversations", "message_count"):
            stmts.append("ALTER TABLE conversations ADD COLUMN message_count INTEGER NOT NULL DEFAULT 0")
        if not has_column("conversations", "total_tokens"):
            stmts.append("ALTER TABLE conversations ADD COLUMN total_tokens INTEGER NOT NULL DEFAULT 0")

    if "messages" in table_names:
        if not has_column("messages", "token_count"):
            stmts.append("ALTER TABLE messages ADD COLUMN token_count INTEGER NOT NULL DEFAULT 0")

    return stmts


def _stamp_missing_timestamps(conn: Connection) -> int:
    params = {f"z{i}": value for i, value in enumerate(ZERO_TIMESTAMPS)}
    placeholders = ", ".join(f":{name}" for name in params)
    result = conn.execute(
        text(
            f"""
            UPDATE messages
            SET created_at = :now
            WHERE created_at IS NULL
               OR created_at IN ({placeholders})
               OR created_at LIKE '0001-01-01%'
            """
        ),
        {"now": format_datetime_iso_utc(utcnow()), **params},
    )
    return result.rowcount or 0


def ensure_schema(conn: Connection) -> str:
    Base.metadata.create_all(conn)

    stmts = _schema_upgrades(conn)
    for stmt in stmts:
        conn.execute(text(stmt))

    # Rows written before timestamps were enforced.
    stamped = _stamp_missing_timestamps(conn)
    if stamped:
        logger.info("Updated %s messages with missing timestamps", stamped)

    status = "schema updated" if stmts else "schema ok"
    if stamped:
        status = f"{status}; timestamps repaired={stamped}"
    return status


async def init_db(engine: AsyncEngine) -> str:
    async with engine.begin() as conn:
        return await conn.run_sync(ensure_schema)
