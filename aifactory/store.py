"""Durable relational store backed by SQLite through aiosqlite."""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import aiosqlite

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS executions (
    execution_id TEXT PRIMARY KEY,
    request_id TEXT,
    client_id TEXT NOT NULL,
    template_name TEXT NOT NULL,
    parameters TEXT NOT NULL DEFAULT '{}',
    status TEXT NOT NULL,
    priority TEXT NOT NULL DEFAULT 'normal',
    retry_count INTEGER NOT NULL DEFAULT 0,
    retry_of TEXT REFERENCES executions(execution_id),
    total_cost_usd REAL NOT NULL DEFAULT 0,
    total_time_ms INTEGER NOT NULL DEFAULT 0,
    estimated_cost_usd REAL NOT NULL DEFAULT 0,
    estimated_time_ms INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    checkpoint_data TEXT,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL
);
CREATE INDEX IF NOT EXISTS idx_executions_request ON executions(client_id, request_id);
CREATE INDEX IF NOT EXISTS idx_executions_status ON executions(status);

CREATE TABLE IF NOT EXISTS stage_executions (
    stage_id TEXT PRIMARY KEY,
    execution_id TEXT NOT NULL REFERENCES executions(execution_id),
    worker_name TEXT NOT NULL,
    stage_order INTEGER NOT NULL,
    tier INTEGER NOT NULL,
    action TEXT NOT NULL,
    status TEXT NOT NULL,
    input_reference TEXT,
    output_reference TEXT,
    summary_data TEXT,
    cost_usd REAL NOT NULL DEFAULT 0,
    time_ms INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at REAL NOT NULL,
    started_at REAL,
    completed_at REAL,
    UNIQUE (execution_id, stage_order)
);

CREATE TABLE IF NOT EXISTS execution_queue (
    execution_id TEXT PRIMARY KEY REFERENCES executions(execution_id),
    priority TEXT NOT NULL,
    submitted_at REAL NOT NULL,
    status TEXT NOT NULL,
    blocked_reason TEXT,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS cost_breakdown (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id TEXT NOT NULL,
    stage_id TEXT,
    resource_type TEXT NOT NULL,
    resource_name TEXT NOT NULL,
    quantity REAL NOT NULL,
    unit TEXT NOT NULL,
    cost_usd REAL NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_cost_execution ON cost_breakdown(execution_id);
CREATE INDEX IF NOT EXISTS idx_cost_created ON cost_breakdown(created_at);

CREATE TABLE IF NOT EXISTS execution_events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id TEXT NOT NULL,
    event_type TEXT NOT NULL,
    data TEXT NOT NULL DEFAULT '{}',
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_events_execution ON execution_events(execution_id);

CREATE TABLE IF NOT EXISTS handshake_packets (
    packet_id TEXT PRIMARY KEY,
    execution_id TEXT NOT NULL,
    stage_id TEXT NOT NULL,
    worker_name TEXT NOT NULL,
    packet TEXT NOT NULL,
    status TEXT NOT NULL,
    created_at REAL NOT NULL,
    updated_at REAL NOT NULL
);

CREATE TABLE IF NOT EXISTS checkpoints (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    execution_id TEXT NOT NULL,
    tier INTEGER NOT NULL,
    data TEXT NOT NULL,
    created_at REAL NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_checkpoints_execution ON checkpoints(execution_id);

CREATE TABLE IF NOT EXISTS deliverables (
    deliverable_id TEXT PRIMARY KEY,
    execution_id TEXT NOT NULL,
    stage_id TEXT,
    name TEXT NOT NULL,
    data_ref TEXT NOT NULL,
    created_at REAL NOT NULL
);
"""


class Database:
    """Thin async wrapper over one SQLite connection.

    Writes are committed immediately; ``execute`` returns the affected row
    count so callers can build compare-and-set updates on top of it.
    """

    def __init__(self, path: str | Path = ":memory:"):
        self.path = str(path)
        self.connection: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    async def connect(self):
        if self.connection is not None:
            return
        if self.path != ":memory:":
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
        self.connection = await aiosqlite.connect(self.path)
        self.connection.row_factory = aiosqlite.Row
        if self.path != ":memory:":
            await self.connection.execute("PRAGMA journal_mode = WAL")
        await self.connection.execute("PRAGMA foreign_keys = ON")
        await self.connection.executescript(SCHEMA)
        await self.connection.commit()
        logger.info(f"Database ready at {self.path}")

    async def close(self):
        if self.connection is not None:
            await self.connection.close()
            self.connection = None

    async def execute(self, sql: str, params: tuple | list = ()) -> int:
        conn = self._require()
        async with self._lock:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            count = cursor.rowcount
            await cursor.close()
        return count

    async def insert(self, sql: str, params: tuple | list = ()) -> int | None:
        """Run an INSERT and return the new rowid."""
        conn = self._require()
        async with self._lock:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            rowid = cursor.lastrowid
            await cursor.close()
        return rowid

    async def fetchone(self, sql: str, params: tuple | list = ()) -> dict[str, Any] | None:
        conn = self._require()
        async with conn.execute(sql, params) as cursor:
            row = await cursor.fetchone()
        return dict(row) if row is not None else None

    async def fetchall(self, sql: str, params: tuple | list = ()) -> list[dict[str, Any]]:
        conn = self._require()
        async with conn.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [dict(r) for r in rows]

    def _require(self) -> aiosqlite.Connection:
        if self.connection is None:
            raise RuntimeError("Database is not connected")
        return self.connection

    async def __aenter__(self) -> "Database":
        await self.connect()
        return self

    async def __aexit__(self, *exc):
        await self.close()
