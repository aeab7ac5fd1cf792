"""Exception types raised inside the workflow automation core."""

from __future__ import annotations


class CrmFlowError(Exception):
    """Base class for crmflow errors."""


class WorkflowDefinitionError(CrmFlowError, ValueError):
    """Raised when a workflow's step graph is invalid."""


class RecordNotFound(CrmFlowError, KeyError):
    """Raised when updating a record that does not exist."""

    def __init__(self, collection: str, record_id: str) -> None:
        super().__init__(f"{collection}/{record_id} not found")
        self.collection = collection
        self.record_id = record_id

    def __str__(self) -> str:
        return self.args[0]


class ConcurrencyConflict(CrmFlowError):
    """Raised when a conditional update loses against another writer."""

    def __init__(
        self, collection: str, record_id: str, expected: int, actual: int | None
    ) -> None:
        super().__init__(
            f"{collection}/{record_id}: expected version {expected}, found {actual}"
        )
        self.collection = collection
        self.record_id = record_id
        self.expected = expected
        self.actual = actual


class StepExecutionError(CrmFlowError):
    """A workflow step could not be executed."""


class TemplateError(StepExecutionError):
    """A message template could not be rendered."""


class ConditionError(StepExecutionError):
    """A condition step could not be evaluated."""


class DispatchError(StepExecutionError):
    """The channel dispatcher rejected an action."""


class WorkflowStateError(CrmFlowError):
    """Raised for a workflow status change that is not allowed."""
