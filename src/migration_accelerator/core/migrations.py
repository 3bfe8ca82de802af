from __future__ import annotations

import sqlite3
from typing import Callable

from .utils import now_iso

Migration = Callable[[sqlite3.Connection], None]


def _ensure_schema_migrations(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version INTEGER PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )


def _column_exists(conn: sqlite3.Connection, table: str, column: str) -> bool:
    cur = conn.execute(f"PRAGMA table_info({table})")
    return any(row[1] == column for row in cur.fetchall())


def migration_1(conn: sqlite3.Connection) -> None:
    _ensure_schema_migrations(conn)
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS key_value (
            name TEXT PRIMARY KEY,
            value_json TEXT
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS semaphore (
            name TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            expire REAL NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS events (
            event_id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            kind TEXT NOT NULL,
            migration_id TEXT,
            plugin_id TEXT,
            payload_json TEXT
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_events_kind ON events(kind, event_id)"
    )


def migration_2(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS migration_flags (
            migration_id TEXT PRIMARY KEY,
            completed INTEGER NOT NULL DEFAULT 0,
            skipped INTEGER NOT NULL DEFAULT 0,
            last_import_fingerprint TEXT,
            last_computed_fingerprint TEXT,
            last_import_timestamp INTEGER,
            last_import_duration INTEGER
        )
        """
    )


def migration_3(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS migration_messages (
            message_id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            migration_id TEXT,
            plugin_id TEXT NOT NULL,
            source_ids_json TEXT,
            message TEXT NOT NULL,
            level INTEGER,
            category TEXT NOT NULL DEFAULT 'other'
        )
        """
    )
    conn.execute(
        """
        CREATE INDEX IF NOT EXISTS idx_migration_messages_plugin
        ON migration_messages(plugin_id, category)
        """
    )


def migration_4(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS batches (
            batch_id INTEGER PRIMARY KEY AUTOINCREMENT,
            created_at TEXT NOT NULL,
            updated_at TEXT,
            action TEXT NOT NULL,
            migration_id TEXT,
            operations_json TEXT NOT NULL,
            cursor INTEGER NOT NULL DEFAULT 0,
            state_json TEXT,
            finished INTEGER NOT NULL DEFAULT 0,
            error_json TEXT
        )
        """
    )


def migration_5(conn: sqlite3.Connection) -> None:
    # Batches started before session tracking existed have no owner.
    if not _column_exists(conn, "batches", "session_id"):
        conn.execute("ALTER TABLE batches ADD COLUMN session_id TEXT")


MIGRATIONS: list[Migration] = [
    migration_1,
    migration_2,
    migration_3,
    migration_4,
    migration_5,
]


def run_migrations(conn: sqlite3.Connection) -> None:
    _ensure_schema_migrations(conn)
    cur = conn.execute("PRAGMA user_version")
    current = int(cur.fetchone()[0])
    for version, migration in enumerate(MIGRATIONS, start=1):
        if version <= current:
            continue
        migration(conn)
        conn.execute(
            "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
            (version, now_iso()),
        )
        conn.execute(f"PRAGMA user_version = {version}")
