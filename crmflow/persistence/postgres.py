"""PostgreSQL implementation of the data store."""

from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import asyncpg

from ..contracts import new_id
from ..errors import ConcurrencyConflict, RecordNotFound
from .filters import Predicate, pushdown_criteria
from .repository import DataStore


class PostgresDataStore(DataStore):
    """Persist records as JSONB documents using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS records (
                collection TEXT NOT NULL,
                id TEXT NOT NULL,
                version INTEGER NOT NULL,
                data JSONB NOT NULL,
                PRIMARY KEY (collection, id)
            )
            """
        )

    # ------------------------------------------------------------------
    async def find_by_id(self, collection: str, record_id: str) -> Dict[str, Any] | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT data FROM records WHERE collection = $1 AND id = $2",
                collection,
                record_id,
            )
        finally:
            await conn.close()
        return json.loads(row["data"]) if row else None

    async def find_many(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> List[Dict[str, Any]]:
        query = "SELECT data FROM records WHERE collection = $1"
        params: List[Any] = [collection]
        for path, value in pushdown_criteria(predicate).items():
            params.append(path.split("."))
            params.append(value)
            query += f" AND data #>> ${len(params) - 1} = ${len(params)}"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        records = [json.loads(r["data"]) for r in rows]
        if predicate is None:
            return records
        return [r for r in records if predicate(r)]

    async def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        stored = dict(record)
        stored["id"] = stored.get("id") or new_id()
        stored["version"] = 1
        conn = await self._connect()
        try:
            await conn.execute(
                "INSERT INTO records (collection, id, version, data) VALUES ($1, $2, $3, $4)",
                collection,
                stored["id"],
                stored["version"],
                json.dumps(stored),
            )
        except asyncpg.UniqueViolationError as e:
            raise ValueError(f"{collection}/{stored['id']} already exists") from e
        finally:
            await conn.close()
        return stored

    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        conn = await self._connect()
        try:
            async with conn.transaction():
                row = await conn.fetchrow(
                    "SELECT version, data FROM records WHERE collection = $1 AND id = $2 FOR UPDATE",
                    collection,
                    record_id,
                )
                if row is None:
                    raise RecordNotFound(collection, record_id)
                version = row["version"]
                if expected_version is not None and version != expected_version:
                    raise ConcurrencyConflict(
                        collection, record_id, expected_version, version
                    )
                record = json.loads(row["data"])
                record.update(patch)
                record["id"] = record_id
                record["version"] = version + 1
                await conn.execute(
                    "UPDATE records SET version = $1, data = $2 WHERE collection = $3 AND id = $4",
                    record["version"],
                    json.dumps(record),
                    collection,
                    record_id,
                )
        finally:
            await conn.close()
        return record

    async def delete(
        self, collection: str, record_id: str, expected_version: Optional[int] = None
    ) -> bool:
        query = "DELETE FROM records WHERE collection = $1 AND id = $2"
        params: List[Any] = [collection, record_id]
        if expected_version is not None:
            params.append(expected_version)
            query += " AND version = $3"
        conn = await self._connect()
        try:
            status = await conn.execute(query, *params)
        finally:
            await conn.close()
        return status == "DELETE 1"
