"""Data store abstraction used by the automation core."""

from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol

from .filters import Predicate

WORKFLOWS = "workflows"
EXECUTIONS = "executions"
EXECUTION_STEPS = "execution_steps"
CONTACTS = "contacts"
RUN_CLAIMS = "run_claims"


class DataStore(Protocol):
    """Protocol for document store backends.

    Records are JSON-compatible dicts keyed by ``id`` within a collection.
    Every record carries a ``version`` counter that ``update`` increments; a
    caller passing ``expected_version`` gets ``ConcurrencyConflict`` when
    another writer got there first.
    """

    async def find_by_id(self, collection: str, record_id: str) -> Dict[str, Any] | None:
        """Return a record or ``None``."""

    async def find_many(
        self, collection: str, predicate: Optional[Predicate] = None
    ) -> List[Dict[str, Any]]:
        """Return all records accepted by ``predicate``."""

    async def create(self, collection: str, record: Dict[str, Any]) -> Dict[str, Any]:
        """Insert a record, assigning ``id`` when missing and ``version`` 1."""

    async def update(
        self,
        collection: str,
        record_id: str,
        patch: Dict[str, Any],
        expected_version: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Merge ``patch`` into the record and return the stored result."""

    async def delete(
        self, collection: str, record_id: str, expected_version: Optional[int] = None
    ) -> bool:
        """Remove a record. Returns ``False`` when it is missing or its version moved on."""
