"""In-memory implementation of the data store."""

from __future__ import annotations

import asyncio
import copy
from collections import defaultdict
from typing import Any, Dict, List, Optional

from ..contracts import new_id
from ..errors import ConcurrencyConflict, RecordNotFound
from .filters import Predicate
from .repository import DataStore


class InMemoryDataStore(DataStore):
    """Store records in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Records are deep-copied on the way in
    and out so callers never share mutable state with the store.
    """

    def __init__(self) -> None:
        self._collections: Dict[str, Dict[str, Dict[str, Any]]] = defaultdict(dict)
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    async def find_by_id(self, collection: str, record_id: str) -> Dict[str, Any] | None:
        record = self._collections[collection].get(record_id)
        return copy.deepcopy(record) if record is not None else None

    async def find_many(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> List[Dict[str, Any]]:
        records = list(self._collections[collection].values())
        return [
            copy.deepcopy(r) for r in records if predicate is None or predicate(r)
        ]

    async def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        stored = copy.deepcopy(record)
        stored["id"] = stored.get("id") or new_id()
        stored["version"] = 1
        async with self._lock:
            if stored["id"] in self._collections[collection]:
                raise ValueError(f"{collection}/{stored['id']} already exists")
            self._collections[collection][stored["id"]] = stored
        return copy.deepcopy(stored)

    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        async with self._lock:
            current = self._collections[collection].get(record_id)
            if current is None:
                raise RecordNotFound(collection, record_id)
            if expected_version is not None and current["version"] != expected_version:
                raise ConcurrencyConflict(
                    collection, record_id, expected_version, current["version"]
                )
            version = current.get("version", 0)
            current.update(copy.deepcopy(patch))
            current["id"] = record_id
            current["version"] = version + 1
            return copy.deepcopy(current)

    async def delete(
        self, collection: str, record_id: str, expected_version: Optional[int] = None
    ) -> bool:
        async with self._lock:
            current = self._collections[collection].get(record_id)
            if current is None:
                return False
            if expected_version is not None and current["version"] != expected_version:
                return False
            del self._collections[collection][record_id]
            return True
