"""
asyncpg_repository.py — Production PostgreSQL repository implementation.

Implements the UpdateRepository interface using an asyncpg connection pool.
Each entity kind lives in its own table keyed by its business key; safety
logs are append-only.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from enum import Enum
from typing import Any, Optional

import asyncpg

from config import Settings, get_settings
from ingestion_orchestrator import UpdateRepository
from models import (
    EntityKind, KEY_FIELDS, RECORD_MODELS, TIMESTAMP_FIELDS,
    PersistenceError, Record, SafetyLog,
)

logger = logging.getLogger(__name__)

TABLES: dict[EntityKind, str] = {
    EntityKind.MACHINE: "machines",
    EntityKind.SAFETY_AREA: "safety_areas",
    EntityKind.ORDER: "orders",
}

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS machines (
    machine_id     TEXT PRIMARY KEY,
    name           TEXT NOT NULL,
    status         TEXT NOT NULL,
    output         INTEGER NOT NULL DEFAULT 0 CHECK (output >= 0),
    error_message  TEXT,
    operator       TEXT,
    last_updated   TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS safety_areas (
    area_name        TEXT PRIMARY KEY,
    zone             TEXT NOT NULL,
    ppe_required     TEXT NOT NULL,
    risk_level       TEXT NOT NULL,
    status           TEXT NOT NULL,
    notes            TEXT,
    last_inspection  TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS safety_logs (
    id              UUID PRIMARY KEY,
    area_name       TEXT NOT NULL,
    zone            TEXT NOT NULL,
    ppe_compliance  TEXT NOT NULL,
    incident_type   TEXT,
    description     TEXT,
    reported_by     TEXT,
    created_at      TIMESTAMPTZ NOT NULL
);

CREATE INDEX IF NOT EXISTS safety_logs_area_created_idx
    ON safety_logs (area_name, created_at DESC);

CREATE TABLE IF NOT EXISTS orders (
    order_id       TEXT PRIMARY KEY,
    customer_name  TEXT,
    stage          TEXT NOT NULL,
    priority       TEXT NOT NULL,
    quantity       INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
    materials      TEXT,
    eta            TEXT,
    status         TEXT NOT NULL,
    assigned_to    TEXT,
    created_at     TIMESTAMPTZ NOT NULL,
    updated_at     TIMESTAMPTZ NOT NULL
);
"""

SAFETY_LOG_COLUMNS = list(SafetyLog.model_fields)


def _db_value(v: Any) -> Any:
    return v.value if isinstance(v, Enum) else v


# ── Connection Pool Manager ──────────────────────────────────────────────────

class DatabasePool:
    """Manages asyncpg connection pool lifecycle."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10,
                 command_timeout: float = 30.0):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self.command_timeout = command_timeout
        self._pool: Optional[asyncpg.Pool] = None

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "DatabasePool":
        settings = settings or get_settings()
        return cls(
            settings.asyncpg_dsn,
            min_size=settings.db_pool_min,
            max_size=settings.db_pool_max,
            command_timeout=settings.db_command_timeout,
        )

    async def initialize(self) -> None:
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=self.command_timeout,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)", self.min_size, self.max_size
        )

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self):
        async with self.pool.acquire() as conn:
            yield conn

    @asynccontextmanager
    async def transaction(self):
        async with self.pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def ensure_schema(self) -> None:
        async with self.transaction() as conn:
            await conn.execute(SCHEMA_SQL)
        logger.info("Database schema ensured")

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Database pool closed")


# ── Update Repository ────────────────────────────────────────────────────────

class AsyncPGUpdateRepository(UpdateRepository):
    """
    Production repository implementing the UpdateRepository interface.

    - find(kind, key) -> Optional[Record]
    - create(kind, record) -> Record          (fails if the key exists)
    - update(kind, key, patch) -> Record      (writes only patched columns)
    - list_records(kind) -> list[Record]      (newest first)
    - append_safety_log(log) -> SafetyLog
    - list_safety_logs(area_name?, limit) -> list[SafetyLog]

    Driver errors surface as PersistenceError.
    """

    def __init__(self, db: DatabasePool):
        self.db = db

    # ── Records ──────────────────────────────────────────────────────────

    async def find(self, kind: EntityKind, key: str) -> Optional[Record]:
        query = f"SELECT * FROM {TABLES[kind]} WHERE {KEY_FIELDS[kind]} = $1"
        try:
            async with self.db.acquire() as conn:
                row = await conn.fetchrow(query, key)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise PersistenceError(f"Failed to load {kind.value} {key}: {e}") from e
        return _to_record(kind, row) if row else None

    async def create(self, kind: EntityKind, record: Record) -> Record:
        data = record.model_dump()
        cols = list(data.keys())
        placeholders = ", ".join(f"${i+1}" for i in range(len(cols)))
        query = (
            f"INSERT INTO {TABLES[kind]} ({', '.join(cols)}) VALUES ({placeholders}) "
            f"ON CONFLICT ({KEY_FIELDS[kind]}) DO NOTHING RETURNING *"
        )
        key = data[KEY_FIELDS[kind]]
        try:
            async with self.db.transaction() as conn:
                row = await conn.fetchrow(query, *(_db_value(v) for v in data.values()))
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise PersistenceError(f"Failed to create {kind.value} {key}: {e}") from e

        if row is None:
            raise PersistenceError(f"{kind.value} {key} already exists")
        logger.info("Inserted %s %s", kind.value, key)
        return _to_record(kind, row)

    async def update(self, kind: EntityKind, key: str, patch: dict[str, Any]) -> Record:
        columns = RECORD_MODELS[kind].model_fields
        key_field = KEY_FIELDS[kind]
        sets, vals, idx = [], [], 1

        for k, v in patch.items():
            if k == key_field:
                continue
            if k not in columns:
                raise PersistenceError(f"Unknown {kind.value} column: {k}")
            sets.append(f"{k} = ${idx}")
            vals.append(_db_value(v))
            idx += 1

        if not sets:
            existing = await self.find(kind, key)
            if existing is None:
                raise PersistenceError(f"{kind.value} {key} not found")
            return existing

        vals.append(key)
        query = (
            f"UPDATE {TABLES[kind]} SET {', '.join(sets)} "
            f"WHERE {key_field} = ${idx} RETURNING *"
        )
        try:
            async with self.db.transaction() as conn:
                row = await conn.fetchrow(query, *vals)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise PersistenceError(f"Failed to update {kind.value} {key}: {e}") from e

        if row is None:
            raise PersistenceError(f"{kind.value} {key} not found")
        return _to_record(kind, row)

    async def list_records(self, kind: EntityKind) -> list[Record]:
        query = f"SELECT * FROM {TABLES[kind]} ORDER BY {TIMESTAMP_FIELDS[kind]} DESC"
        try:
            async with self.db.acquire() as conn:
                rows = await conn.fetch(query)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise PersistenceError(f"Failed to list {kind.value} records: {e}") from e
        return [_to_record(kind, r) for r in rows]

    # ── Safety Logs ──────────────────────────────────────────────────────

    async def append_safety_log(self, log: SafetyLog) -> SafetyLog:
        data = log.model_dump()
        placeholders = ", ".join(f"${i+1}" for i in range(len(SAFETY_LOG_COLUMNS)))
        try:
            async with self.db.acquire() as conn:
                await conn.execute(
                    f"INSERT INTO safety_logs ({', '.join(SAFETY_LOG_COLUMNS)}) "
                    f"VALUES ({placeholders})",
                    *(_db_value(data[c]) for c in SAFETY_LOG_COLUMNS),
                )
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise PersistenceError(f"Failed to append safety log for {log.area_name}: {e}") from e
        return log

    async def list_safety_logs(self, area_name: Optional[str] = None,
                               limit: int = 100) -> list[SafetyLog]:
        conditions, vals, idx = [], [], 1
        if area_name:
            conditions.append(f"area_name = ${idx}")
            vals.append(area_name)
            idx += 1
        vals.append(limit)

        where = "WHERE " + " AND ".join(conditions) if conditions else ""
        query = f"""
            SELECT * FROM safety_logs
            {where}
            ORDER BY created_at DESC
            LIMIT ${idx}
        """
        try:
            async with self.db.acquire() as conn:
                rows = await conn.fetch(query, *vals)
        except (asyncpg.PostgresError, asyncpg.InterfaceError) as e:
            raise PersistenceError(f"Failed to list safety logs: {e}") from e
        return [SafetyLog.model_validate(dict(r)) for r in rows]

    # ── Health Check ─────────────────────────────────────────────────────

    async def health_check(self) -> dict:
        try:
            async with self.db.acquire() as conn:
                version = await conn.fetchval("SELECT version()")
                pool = self.db.pool
                return {
                    "status": "healthy",
                    "postgres_version": version,
                    "pool_size": pool.get_size(),
                    "pool_free": pool.get_idle_size(),
                    "pool_used": pool.get_size() - pool.get_idle_size(),
                }
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, RuntimeError) as e:
            return {"status": "unhealthy", "error": str(e)}


def _to_record(kind: EntityKind, row: Any) -> Record:
    return RECORD_MODELS[kind].model_validate(dict(row))
