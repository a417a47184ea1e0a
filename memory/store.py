"""
Key-value store abstractions and the SQLite implementation.

Design goals:
- Per-actor and global scalar values keyed by name
- Every mutating call is committed immediately (no batching/transactions)
- Deterministic leaderboard ordering (value, then first-write order)
"""

from __future__ import annotations

import json
import logging
import math
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any

logger = logging.getLogger(__name__)

_USER_SCOPE = "user"
_GLOBAL_SCOPE = "global"


def to_number(value: Any, default: float = math.nan) -> float:
    """Loose numeric coercion: numbers, numeric strings and booleans."""
    if value is None:
        return default
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    if not text:
        return 0.0
    try:
        return float(text)
    except ValueError:
        return default


def round_number(value: float) -> int | float:
    """Integral results become ints, everything else keeps two decimals."""
    if isinstance(value, float) and (math.isnan(value) or math.isinf(value)):
        return value
    if float(value).is_integer():
        return int(value)
    return round(float(value), 2)


class KeyValueStore(ABC):
    """Scalar persistence used by storage/leaderboard nodes and conditions."""

    @abstractmethod
    def get_user(self, user_id: str, key: str, default: Any = None) -> Any:
        """Return the actor's stored value, or default when unset."""

    @abstractmethod
    def set_user(self, user_id: str, key: str, value: Any) -> bool:
        """Persist a value for the actor."""

    @abstractmethod
    def incr_user(self, user_id: str, key: str, amount: float = 1, default: float = 0) -> int | float:
        """Add amount to the actor's value (initialized from default) and return it."""

    @abstractmethod
    def delete_user(self, user_id: str, key: str) -> bool:
        """Remove the actor's value; False when nothing was stored."""

    @abstractmethod
    def get_global(self, key: str, default: Any = None) -> Any:
        """Return a shared value, or default when unset."""

    @abstractmethod
    def set_global(self, key: str, value: Any) -> bool:
        """Persist a shared value."""

    @abstractmethod
    def incr_global(self, key: str, amount: float = 1, default: float = 0) -> int | float:
        """Add amount to a shared value (initialized from default) and return it."""

    @abstractmethod
    def get_leaderboard(self, key: str, limit: int = 10, ascending: bool = False) -> list[tuple[str, int | float]]:
        """Return ordered (actor, value) pairs for every numeric holder of key."""

    @abstractmethod
    def get_user_rank(self, user_id: str, key: str, ascending: bool = False) -> dict[str, Any]:
        """Return {rank, value, total}; rank is 1-based, 0 when the actor holds no value."""

    @abstractmethod
    def count_users_with_key(self, key: str) -> int:
        """Count actors holding any value for key."""


class SQLiteKeyValueStore(KeyValueStore):
    """SQLite-backed key-value store with a persistent connection."""

    def __init__(self, db_path: str = "workflow_data.db"):
        self.db_path = db_path
        self._conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            isolation_level="DEFERRED",
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA synchronous=NORMAL")
        self._init_db()

    def _init_db(self) -> None:
        self._conn.execute(
            """
            CREATE TABLE IF NOT EXISTS kv_entries (
                scope TEXT NOT NULL,
                owner TEXT NOT NULL,
                key TEXT NOT NULL,
                value_json TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                PRIMARY KEY(scope, owner, key)
            )
            """
        )
        self._conn.execute(
            """
            CREATE INDEX IF NOT EXISTS idx_kv_scope_key
            ON kv_entries(scope, key)
            """
        )
        self._conn.commit()

    # ─── low-level ────────────────────────────────────────────

    def _read(self, scope: str, owner: str, key: str) -> Any | None:
        row = self._conn.execute(
            """
            SELECT value_json
            FROM kv_entries
            WHERE scope = ? AND owner = ? AND key = ?
            LIMIT 1
            """,
            (scope, owner, key),
        ).fetchone()
        if not row:
            return None
        try:
            return json.loads(row["value_json"])
        except Exception:
            return row["value_json"]

    def _write(self, scope: str, owner: str, key: str, value: Any) -> bool:
        try:
            self._conn.execute(
                """
                INSERT INTO kv_entries(scope, owner, key, value_json, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(scope, owner, key) DO UPDATE SET
                    value_json = excluded.value_json,
                    updated_at = excluded.updated_at
                """,
                (
                    scope,
                    owner,
                    key,
                    json.dumps(value, ensure_ascii=False),
                    datetime.now(timezone.utc).isoformat(),
                ),
            )
            self._conn.commit()
            return True
        except (sqlite3.Error, TypeError, ValueError) as exc:
            logger.error("Failed to persist %s/%s/%s: %s", scope, owner, key, exc)
            return False

    def _incr(self, scope: str, owner: str, key: str, amount: float, default: float) -> int | float:
        current = self._read(scope, owner, key)
        base = to_number(default if current is None else current)
        value = round_number(base + float(amount))
        self._write(scope, owner, key, value)
        return value

    def _numeric_holders(self, key: str) -> list[tuple[str, int | float]]:
        rows = self._conn.execute(
            """
            SELECT owner, value_json
            FROM kv_entries
            WHERE scope = ? AND key = ?
            ORDER BY rowid ASC
            """,
            (_USER_SCOPE, key),
        ).fetchall()
        holders: list[tuple[str, int | float]] = []
        for row in rows:
            try:
                raw = json.loads(row["value_json"])
            except Exception:
                raw = row["value_json"]
            if raw is None:
                continue
            number = to_number(raw)
            if math.isnan(number):
                continue
            holders.append((str(row["owner"]), round_number(number)))
        return holders

    def _ranked(self, key: str, ascending: bool) -> list[tuple[str, int | float]]:
        # sorted() is stable: ties keep first-write order in both directions.
        return sorted(self._numeric_holders(key), key=lambda item: item[1], reverse=not ascending)

    # ─── per-actor ────────────────────────────────────────────

    def get_user(self, user_id: str, key: str, default: Any = None) -> Any:
        value = self._read(_USER_SCOPE, str(user_id), key)
        return default if value is None else value

    def set_user(self, user_id: str, key: str, value: Any) -> bool:
        return self._write(_USER_SCOPE, str(user_id), key, value)

    def incr_user(self, user_id: str, key: str, amount: float = 1, default: float = 0) -> int | float:
        return self._incr(_USER_SCOPE, str(user_id), key, amount, default)

    def delete_user(self, user_id: str, key: str) -> bool:
        try:
            cursor = self._conn.execute(
                "DELETE FROM kv_entries WHERE scope = ? AND owner = ? AND key = ?",
                (_USER_SCOPE, str(user_id), key),
            )
            self._conn.commit()
        except sqlite3.Error as exc:
            logger.error("Failed to delete %s/%s: %s", user_id, key, exc)
            return False
        return cursor.rowcount > 0

    # ─── global ───────────────────────────────────────────────

    def get_global(self, key: str, default: Any = None) -> Any:
        value = self._read(_GLOBAL_SCOPE, "", key)
        return default if value is None else value

    def set_global(self, key: str, value: Any) -> bool:
        return self._write(_GLOBAL_SCOPE, "", key, value)

    def incr_global(self, key: str, amount: float = 1, default: float = 0) -> int | float:
        return self._incr(_GLOBAL_SCOPE, "", key, amount, default)

    # ─── leaderboard ──────────────────────────────────────────

    def get_leaderboard(self, key: str, limit: int = 10, ascending: bool = False) -> list[tuple[str, int | float]]:
        return self._ranked(key, ascending)[: max(0, int(limit))]

    def get_user_rank(self, user_id: str, key: str, ascending: bool = False) -> dict[str, Any]:
        ranked = self._ranked(key, ascending)
        for index, (owner, value) in enumerate(ranked):
            if owner == str(user_id):
                return {"rank": index + 1, "value": value, "total": len(ranked)}
        return {"rank": 0, "value": 0, "total": len(ranked)}

    def count_users_with_key(self, key: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) AS total FROM kv_entries WHERE scope = ? AND key = ?",
            (_USER_SCOPE, key),
        ).fetchone()
        return int(row["total"]) if row else 0

    def close(self) -> None:
        self._conn.close()
