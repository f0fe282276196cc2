# core/db_manager.py
"""
Manages all interactions with the SQLite store for the orchestration layer.
Handles connections, versioned schema initialization, and read-only
introspection used by the schema compatibility checker.

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.
"""

from __future__ import annotations

import json
import os
import sqlite3
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import aiosqlite
import numpy as np
import structlog

from config import DATABASE_PATH, settings

logger = structlog.get_logger(__name__)


# Each migration is (version, description, column additions, statements).
# Column additions are applied only when the column is absent so that
# re-running init_schema against an existing store is harmless.
_MIGRATIONS: list[tuple[str, str, list[tuple[str, str, str]], list[str]]] = [
    (
        "0001",
        "generation audit log",
        [],
        [
            """
            CREATE TABLE IF NOT EXISTS generation_logs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                execution_id TEXT NOT NULL UNIQUE,
                project_id TEXT NOT NULL,
                chapter_id TEXT,
                scene_id TEXT,
                template_id TEXT NOT NULL,
                template_version TEXT NOT NULL,
                prompt_signature TEXT NOT NULL,
                prompt_metadata TEXT,
                model_id TEXT,
                model_version TEXT,
                params TEXT,
                cache_path TEXT,
                response_hash TEXT,
                response_summary TEXT,
                tokens_used INTEGER DEFAULT 0,
                cost REAL DEFAULT 0.0,
                retry_count INTEGER DEFAULT 0,
                total_duration_ms INTEGER DEFAULT 0,
                error_type TEXT,
                error_message TEXT,
                status TEXT NOT NULL DEFAULT 'success',
                timestamp TEXT NOT NULL
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_generation_logs_project ON generation_logs (project_id, timestamp);",
        ],
    ),
    (
        "0002",
        "cached executions (single table for all tiers)",
        [],
        [
            """
            CREATE TABLE IF NOT EXISTS cached_executions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                tier TEXT NOT NULL,
                fingerprint TEXT NOT NULL,
                template_id TEXT NOT NULL,
                execution_id TEXT,
                result TEXT NOT NULL,
                metadata TEXT NOT NULL,
                embedding_blob BLOB,
                embedding_dtype TEXT,
                embedding_shape TEXT,
                hit_count INTEGER NOT NULL DEFAULT 0,
                created_at REAL NOT NULL,
                updated_at REAL NOT NULL,
                expires_at REAL NOT NULL,
                UNIQUE (tier, fingerprint)
            )
            """,
            "CREATE INDEX IF NOT EXISTS idx_cached_executions_template ON cached_executions (tier, template_id);",
            "CREATE INDEX IF NOT EXISTS idx_cached_executions_expiry ON cached_executions (expires_at);",
        ],
    ),
    (
        "0003",
        "quality scoring and repair columns",
        [
            ("generation_logs", "quality_score", "TEXT"),
            ("generation_logs", "quality_overall", "REAL"),
            ("generation_logs", "rule_violations", "TEXT"),
            ("generation_logs", "repair_actions", "TEXT"),
        ],
        [],
    ),
    (
        "0004",
        "routing rationale, corrections and append-only enforcement",
        [
            ("generation_logs", "route_decision", "TEXT"),
            ("generation_logs", "cache_hit_count", "INTEGER"),
            ("generation_logs", "error_details", "TEXT"),
            ("generation_logs", "supersedes_execution_id", "TEXT"),
        ],
        [
            """
            CREATE TRIGGER IF NOT EXISTS generation_logs_no_update
            BEFORE UPDATE ON generation_logs
            BEGIN
                SELECT RAISE(ABORT, 'generation_logs is append-only');
            END
            """,
            """
            CREATE TRIGGER IF NOT EXISTS generation_logs_no_delete
            BEFORE DELETE ON generation_logs
            BEGIN
                SELECT RAISE(ABORT, 'generation_logs is append-only');
            END
            """,
            "CREATE INDEX IF NOT EXISTS idx_generation_logs_cache_path ON generation_logs (cache_path);",
            "CREATE INDEX IF NOT EXISTS idx_generation_logs_supersedes ON generation_logs (supersedes_execution_id);",
        ],
    ),
]

LATEST_SCHEMA_VERSION = _MIGRATIONS[-1][0]


def serialize_embedding(embedding: np.ndarray) -> tuple[bytes, str, str]:
    embedding_to_save = embedding.astype(settings.EMBEDDING_DTYPE)
    if embedding_to_save.ndim == 0:
        embedding_to_save = embedding_to_save.reshape(1)
    return (
        embedding_to_save.tobytes(),
        str(embedding_to_save.dtype),
        json.dumps(embedding_to_save.shape),
    )


def deserialize_embedding(blob: bytes, dtype_str: str, shape_str: str) -> np.ndarray:
    """Rebuild an embedding; raises ``ValueError`` on malformed input."""
    try:
        shape = tuple(json.loads(shape_str))
        dtype = np.dtype(dtype_str)
        return np.frombuffer(blob, dtype=dtype).reshape(shape)
    except (json.JSONDecodeError, TypeError, AttributeError) as e:
        raise ValueError(f"Malformed embedding (shape={shape_str}, dtype={dtype_str}): {e}") from e


class DatabaseManager:
    """Handles all interactions with the SQLite database."""

    def __init__(self, db_path: str | None = None):
        self.db_path = db_path or DATABASE_PATH

    def _ensure_db_directory(self) -> None:
        db_dir = os.path.dirname(self.db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)
            logger.info("Created directory for database", path=db_dir)

    @asynccontextmanager
    async def connection(self) -> AsyncIterator[aiosqlite.Connection]:
        """Open a short-lived connection for a single operation."""
        self._ensure_db_directory()
        async with aiosqlite.connect(self.db_path, timeout=10.0) as conn:
            conn.row_factory = aiosqlite.Row
            yield conn

    async def init_schema(self, up_to: str | None = None) -> str:
        """Apply pending migrations (optionally stopping at ``up_to``)."""
        target = up_to or LATEST_SCHEMA_VERSION
        logger.info("Initializing/verifying schema", path=self.db_path, target=target)
        async with self.connection() as conn:
            await conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_migrations (
                    version TEXT PRIMARY KEY,
                    description TEXT NOT NULL,
                    applied_at TEXT NOT NULL
                )
                """
            )
            async with conn.execute("SELECT version FROM schema_migrations") as cursor:
                applied = {row["version"] for row in await cursor.fetchall()}

            for version, description, columns, statements in _MIGRATIONS:
                if version > target:
                    break
                if version in applied:
                    continue
                for table, column, decl in columns:
                    existing = await self._column_names(conn, table)
                    if column not in existing:
                        logger.info("Adding column", table=table, column=column)
                        await conn.execute(f"ALTER TABLE {table} ADD COLUMN {column} {decl};")
                for statement in statements:
                    await conn.execute(statement)
                await conn.execute(
                    "INSERT INTO schema_migrations (version, description, applied_at) VALUES (?, ?, ?)",
                    (version, description, datetime.now(timezone.utc).isoformat()),
                )
                logger.info("Applied migration", version=version, description=description)
            await conn.commit()
        return target

    @staticmethod
    async def _column_names(conn: aiosqlite.Connection, table: str) -> set[str]:
        async with conn.execute(f"PRAGMA table_info({table});") as cursor:
            return {row["name"] for row in await cursor.fetchall()}

    async def execute(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run a write statement and commit; returns the affected row count."""
        async with self.connection() as conn:
            cursor = await conn.execute(sql, params)
            await conn.commit()
            return cursor.rowcount

    async def execute_returning(
        self, sql: str, params: Sequence[Any] = ()
    ) -> aiosqlite.Row | None:
        """Run a write statement with a RETURNING clause and commit."""
        async with self.connection() as conn:
            async with conn.execute(sql, params) as cursor:
                row = await cursor.fetchone()
            await conn.commit()
            return row

    async def fetch_all(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        async with self.connection() as conn:
            async with conn.execute(sql, params) as cursor:
                return list(await cursor.fetchall())

    async def fetch_one(self, sql: str, params: Sequence[Any] = ()) -> aiosqlite.Row | None:
        async with self.connection() as conn:
            async with conn.execute(sql, params) as cursor:
                return await cursor.fetchone()

    async def table_inventory(self) -> dict[str, set[str]]:
        """Map every user table to its column names. Read-only."""
        if not os.path.exists(self.db_path):
            return {}
        inventory: dict[str, set[str]] = {}
        async with self.connection() as conn:
            async with conn.execute(
                "SELECT name FROM sqlite_master WHERE type = 'table' AND name NOT LIKE 'sqlite_%'"
            ) as cursor:
                tables = [row["name"] for row in await cursor.fetchall()]
            for table in tables:
                inventory[table] = await self._column_names(conn, table)
        return inventory

    async def current_schema_version(self) -> str | None:
        if not os.path.exists(self.db_path):
            return None
        try:
            row = await self.fetch_one("SELECT MAX(version) AS version FROM schema_migrations")
        except sqlite3.OperationalError:
            return None
        return row["version"] if row else None
