from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable

from .migrations import run_migrations
from .utils import ensure_dir, json_dumps, json_loads, now_iso

_FLAG_COLUMNS = (
    "completed",
    "skipped",
    "last_import_fingerprint",
    "last_computed_fingerprint",
    "last_import_timestamp",
    "last_import_duration",
)


class Storage:
    def __init__(self, db_path: Path, *, initialize: bool = True) -> None:
        ensure_dir(db_path.parent)
        self.db_path = db_path
        if initialize:
            with self.connection() as conn:
                run_migrations(conn)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute("PRAGMA synchronous = NORMAL")
        conn.execute("PRAGMA busy_timeout = 30000")
        return conn

    @contextmanager
    def connection(self) -> Iterable[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def integrity_check(self, full: bool = False) -> tuple[bool, str]:
        pragma = "integrity_check" if full else "quick_check"
        with self.connection() as conn:
            row = conn.execute(f"PRAGMA {pragma}").fetchone()
        msg = str(row[0]) if row else "unknown"
        return msg.lower() == "ok", msg

    # Key-value state.

    def kv_get(self, name: str, default: Any = None) -> Any:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT value_json FROM key_value WHERE name = ?", (name,)
            ).fetchone()
        if row is None:
            return default
        return json_loads(row["value_json"], default)

    def kv_set(self, name: str, value: Any) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO key_value (name, value_json) VALUES (?, ?)
                ON CONFLICT(name) DO UPDATE SET value_json = excluded.value_json
                """,
                (name, json.dumps(value)),
            )

    def kv_delete(self, name: str) -> None:
        with self.connection() as conn:
            conn.execute("DELETE FROM key_value WHERE name = ?", (name,))

    # Semaphore rows backing the persistent lock.

    def semaphore_insert(self, name: str, value: str, expire: float) -> bool:
        try:
            with self.connection() as conn:
                conn.execute(
                    "INSERT INTO semaphore (name, value, expire) VALUES (?, ?, ?)",
                    (name, value, float(expire)),
                )
        except sqlite3.IntegrityError:
            return False
        return True

    def semaphore_fetch(self, name: str) -> dict[str, Any] | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT name, value, expire FROM semaphore WHERE name = ?", (name,)
            ).fetchone()
        return dict(row) if row else None

    def semaphore_renew(self, name: str, value: str, expire: float, now: float) -> bool:
        with self.connection() as conn:
            cur = conn.execute(
                """
                UPDATE semaphore SET expire = ?
                WHERE name = ? AND value = ? AND expire >= ?
                """,
                (float(expire), name, value, float(now)),
            )
            return cur.rowcount > 0

    def semaphore_delete(self, name: str, value: str | None = None) -> None:
        with self.connection() as conn:
            if value is None:
                conn.execute("DELETE FROM semaphore WHERE name = ?", (name,))
            else:
                conn.execute(
                    "DELETE FROM semaphore WHERE name = ? AND value = ?", (name, value)
                )

    def semaphore_delete_expired(self, name: str, now: float) -> bool:
        with self.connection() as conn:
            cur = conn.execute(
                "DELETE FROM semaphore WHERE name = ? AND expire < ?",
                (name, float(now)),
            )
            return cur.rowcount > 0

    # Audit events.

    def insert_event(
        self,
        kind: str,
        created_at: str,
        migration_id: str | None = None,
        plugin_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO events (created_at, kind, migration_id, plugin_id, payload_json)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    created_at,
                    kind,
                    migration_id,
                    plugin_id,
                    json_dumps(payload) if payload else None,
                ),
            )

    def list_events(
        self,
        kind: str | None = None,
        migration_id: str | None = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        clauses: list[str] = []
        params: list[Any] = []
        if kind is not None:
            clauses.append("kind = ?")
            params.append(kind)
        if migration_id is not None:
            clauses.append("migration_id = ?")
            params.append(migration_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        params.append(int(limit))
        with self.connection() as conn:
            cur = conn.execute(
                f"""
                SELECT event_id, created_at, kind, migration_id, plugin_id, payload_json
                FROM events
                {where}
                ORDER BY event_id ASC
                LIMIT ?
                """,
                params,
            )
            rows: list[dict[str, Any]] = []
            for row in cur.fetchall():
                item = dict(row)
                item["payload"] = json_loads(item.pop("payload_json"), None)
                rows.append(item)
            return rows

    # Per-migration flags.

    def ensure_migration_flags(self, migration_id: str, skipped: bool = False) -> bool:
        """Insert default flags; returns True when the row did not exist yet."""

        with self.connection() as conn:
            cur = conn.execute(
                """
                INSERT OR IGNORE INTO migration_flags (migration_id, completed, skipped)
                VALUES (?, 0, ?)
                """,
                (migration_id, 1 if skipped else 0),
            )
            return cur.rowcount > 0

    def fetch_migration_flags(self, migration_id: str) -> dict[str, Any] | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM migration_flags WHERE migration_id = ?", (migration_id,)
            ).fetchone()
        return dict(row) if row else None

    def fetch_all_migration_flags(self) -> dict[str, dict[str, Any]]:
        with self.connection() as conn:
            rows = conn.execute("SELECT * FROM migration_flags").fetchall()
        return {row["migration_id"]: dict(row) for row in rows}

    def update_migration_flags(self, migration_id: str, **fields: Any) -> None:
        unknown = sorted(set(fields) - set(_FLAG_COLUMNS))
        if unknown:
            raise ValueError(f"Unknown migration flag columns: {unknown}")
        if not fields:
            return
        assignments = ", ".join(f"{column} = ?" for column in fields)
        values = [
            int(value) if isinstance(value, bool) else value for value in fields.values()
        ]
        with self.connection() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO migration_flags (migration_id) VALUES (?)",
                (migration_id,),
            )
            conn.execute(
                f"UPDATE migration_flags SET {assignments} WHERE migration_id = ?",
                (*values, migration_id),
            )

    # Row messages.

    def insert_message(
        self,
        plugin_id: str,
        message: str,
        level: int | None = None,
        category: str = "other",
        source_ids: dict[str, Any] | None = None,
        migration_id: str | None = None,
    ) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO migration_messages
                (created_at, migration_id, plugin_id, source_ids_json, message, level, category)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    now_iso(),
                    migration_id,
                    plugin_id,
                    json_dumps(source_ids) if source_ids else None,
                    message,
                    level,
                    category,
                ),
            )

    def count_messages(self, plugin_ids: list[str], category: str | None = None) -> int:
        if not plugin_ids:
            return 0
        placeholders = ", ".join("?" for _ in plugin_ids)
        sql = f"SELECT COUNT(*) FROM migration_messages WHERE plugin_id IN ({placeholders})"
        params: list[Any] = list(plugin_ids)
        if category is not None:
            sql += " AND category = ?"
            params.append(category)
        with self.connection() as conn:
            row = conn.execute(sql, params).fetchone()
        return int(row[0]) if row else 0

    def delete_messages(self, plugin_ids: list[str]) -> None:
        if not plugin_ids:
            return
        placeholders = ", ".join("?" for _ in plugin_ids)
        with self.connection() as conn:
            conn.execute(
                f"DELETE FROM migration_messages WHERE plugin_id IN ({placeholders})",
                list(plugin_ids),
            )

    # Batches.

    def create_batch(
        self,
        action: str,
        operations: list[dict[str, Any]],
        migration_id: str | None = None,
        session_id: str | None = None,
    ) -> int:
        with self.connection() as conn:
            cur = conn.execute(
                """
                INSERT INTO batches
                (created_at, updated_at, action, migration_id, operations_json, cursor,
                 state_json, finished, session_id)
                VALUES (?, ?, ?, ?, ?, 0, ?, 0, ?)
                """,
                (
                    now_iso(),
                    now_iso(),
                    action,
                    migration_id,
                    json_dumps(operations),
                    json_dumps({"sandbox": {}, "results": {}, "finished": 0.0}),
                    session_id,
                ),
            )
            return int(cur.lastrowid)

    def fetch_batch(self, batch_id: int) -> dict[str, Any] | None:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM batches WHERE batch_id = ?", (int(batch_id),)
            ).fetchone()
        if row is None:
            return None
        item = dict(row)
        item["operations"] = json_loads(item.pop("operations_json"), [])
        item["state"] = json_loads(item.pop("state_json"), {})
        item["error"] = json_loads(item.pop("error_json"), None)
        item["finished"] = bool(item["finished"])
        return item

    def update_batch(
        self,
        batch_id: int,
        cursor: int,
        state: dict[str, Any],
        finished: bool = False,
        error: dict[str, Any] | None = None,
    ) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                UPDATE batches
                SET cursor = ?, state_json = ?, finished = ?, error_json = ?, updated_at = ?
                WHERE batch_id = ?
                """,
                (
                    int(cursor),
                    json_dumps(state),
                    1 if finished else 0,
                    json_dumps(error) if error else None,
                    now_iso(),
                    int(batch_id),
                ),
            )

    def delete_batch(self, batch_id: int) -> None:
        with self.connection() as conn:
            conn.execute("DELETE FROM batches WHERE batch_id = ?", (int(batch_id),))
