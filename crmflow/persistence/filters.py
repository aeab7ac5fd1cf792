"""Record predicates shared by all data store backends."""

from __future__ import annotations

from typing import Any, Callable, Dict, Mapping, Optional

Predicate = Callable[[Dict[str, Any]], bool]

_MISSING = object()


def get_path(record: Mapping[str, Any], path: str, default: Any = None) -> Any:
    """Resolve a dotted ``path`` inside nested mappings."""
    current: Any = record
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return default
    return current


class Where:
    """Equality filter over dotted record paths.

    Calling the instance filters a record in memory. Backends that can query
    JSON documents read ``criteria`` to push the filter into storage; they
    must still return exactly the records the in-memory check accepts.

    Example:
        Where({"status": "active", "trigger.type": "tag_added"})
        Where(workflow_id="wf-1", status="running")
    """

    def __init__(
        self, criteria: Optional[Mapping[str, Any]] = None, **equals: Any
    ) -> None:
        self.criteria: Dict[str, Any] = {**(criteria or {}), **equals}

    def __call__(self, record: Dict[str, Any]) -> bool:
        for path, expected in self.criteria.items():
            actual = get_path(record, path, _MISSING)
            if actual is _MISSING:
                if expected is not None:
                    return False
                continue
            if actual != _plain(expected):
                return False
        return True

    def __repr__(self) -> str:
        return f"Where({self.criteria!r})"


def _plain(value: Any) -> Any:
    # enums are stored by value
    return getattr(value, "value", value)


def pushdown_criteria(predicate: Optional[Predicate]) -> Dict[str, str]:
    """Return the string-valued criteria a backend may filter on natively."""
    if not isinstance(predicate, Where):
        return {}
    pushed: Dict[str, str] = {}
    for path, expected in predicate.criteria.items():
        value = _plain(expected)
        if isinstance(value, str):
            pushed[path] = value
    return pushed
