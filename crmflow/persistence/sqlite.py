"""SQLite implementation of the data store."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..contracts import new_id
from ..errors import ConcurrencyConflict, RecordNotFound
from .filters import Predicate, pushdown_criteria
from .repository import DataStore


def _json_path(path: str) -> str:
    return "$" + "".join(f'."{part}"' for part in path.split("."))


class SQLiteDataStore(DataStore):
    """Persist records as JSON documents in a single SQLite table."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS records (
                    collection TEXT NOT NULL,
                    id TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    data TEXT NOT NULL,
                    PRIMARY KEY (collection, id)
                )
                """
            )
            self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Helper methods
    def _fetchone(self, collection: str, record_id: str) -> Dict[str, Any] | None:
        with self._lock:
            row = self._conn.execute(
                "SELECT data FROM records WHERE collection = ? AND id = ?",
                (collection, record_id),
            ).fetchone()
        return json.loads(row["data"]) if row else None

    def _fetchall(self, collection: str, criteria: Dict[str, str]) -> List[Dict[str, Any]]:
        query = "SELECT data FROM records WHERE collection = ?"
        params: List[Any] = [collection]
        for path, value in criteria.items():
            query += " AND json_extract(data, ?) = ?"
            params.extend([_json_path(path), value])
        query += " ORDER BY rowid"
        with self._lock:
            rows = self._conn.execute(query, params).fetchall()
        return [json.loads(r["data"]) for r in rows]

    def _insert(self, collection: str, record: Dict[str, Any]) -> None:
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT INTO records (collection, id, version, data) VALUES (?, ?, ?, ?)",
                    (collection, record["id"], record["version"], json.dumps(record)),
                )
            except sqlite3.IntegrityError as e:
                raise ValueError(f"{collection}/{record['id']} already exists") from e
            self._conn.commit()

    def _update(
        self,
        collection: str,
        record_id: str,
        patch: Dict[str, Any],
        expected_version: Optional[int],
    ) -> Dict[str, Any]:
        with self._lock:
            row = self._conn.execute(
                "SELECT version, data FROM records WHERE collection = ? AND id = ?",
                (collection, record_id),
            ).fetchone()
            if row is None:
                raise RecordNotFound(collection, record_id)
            version = row["version"]
            if expected_version is not None and version != expected_version:
                raise ConcurrencyConflict(collection, record_id, expected_version, version)
            record = json.loads(row["data"])
            record.update(patch)
            record["id"] = record_id
            record["version"] = version + 1
            cur = self._conn.execute(
                """
                UPDATE records SET version = ?, data = ?
                WHERE collection = ? AND id = ? AND version = ?
                """,
                (record["version"], json.dumps(record), collection, record_id, version),
            )
            if cur.rowcount != 1:
                self._conn.rollback()
                raise ConcurrencyConflict(collection, record_id, version, None)
            self._conn.commit()
        return record

    def _delete(
        self, collection: str, record_id: str, expected_version: Optional[int]
    ) -> bool:
        query = "DELETE FROM records WHERE collection = ? AND id = ?"
        params: List[Any] = [collection, record_id]
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)
        with self._lock:
            cur = self._conn.execute(query, params)
            self._conn.commit()
        return cur.rowcount == 1

    # ------------------------------------------------------------------
    # DataStore API
    async def find_by_id(self, collection: str, record_id: str) -> Dict[str, Any] | None:
        return await asyncio.to_thread(self._fetchone, collection, record_id)

    async def find_many(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> List[Dict[str, Any]]:
        records = await asyncio.to_thread(
            self._fetchall, collection, pushdown_criteria(predicate)
        )
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    async def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(record)
        stored["id"] = stored.get("id") or new_id()
        stored["version"] = 1
        await asyncio.to_thread(self._insert, collection, stored)
        return stored

    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        return await asyncio.to_thread(
            self._update, collection, record_id, patch, expected_version
        )

    async def delete(
        self, collection: str, record_id: str, expected_version: Optional[int] = None
    ) -> bool:
        return await asyncio.to_thread(self._delete, collection, record_id, expected_version)
