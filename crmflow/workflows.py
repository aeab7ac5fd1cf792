"""Workflow definition storage and lifecycle transitions."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Union

from pydantic_core import to_jsonable_python

from .contracts import Workflow, WorkflowStatus, coerce, utcnow
from .engine import WorkflowExecutionEngine
from .errors import RecordNotFound, WorkflowStateError
from .persistence import WORKFLOWS, DataStore, Where

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[WorkflowStatus, set[WorkflowStatus]] = {
    WorkflowStatus.DRAFT: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
    WorkflowStatus.ACTIVE: {WorkflowStatus.PAUSED, WorkflowStatus.ARCHIVED},
    WorkflowStatus.PAUSED: {WorkflowStatus.ACTIVE, WorkflowStatus.ARCHIVED},
    WorkflowStatus.ARCHIVED: set(),
}


class WorkflowCatalog:
    """Create, edit and change the status of workflow definitions.

    Only ``active`` workflows are eligible for triggering. Pausing stops new
    executions and leaves in-flight ones running unless asked otherwise.
    Archiving is terminal and cancels in-flight executions.
    """

    def __init__(self, store: DataStore, engine: WorkflowExecutionEngine) -> None:
        self._store = store
        self._engine = engine

    async def create(self, workflow: Union[Workflow, Mapping[str, Any]]) -> Workflow:
        workflow = coerce(Workflow, workflow)
        record = await self._store.create(WORKFLOWS, workflow.model_dump(mode="json"))
        logger.info(f"Created workflow {record['id']} ({workflow.name})")
        return Workflow.model_validate(record)

    async def get(self, workflow_id: str) -> Optional[Workflow]:
        record = await self._store.find_by_id(WORKFLOWS, workflow_id)
        return Workflow.model_validate(record) if record else None

    async def list_workflows(
        self, status: Optional[WorkflowStatus] = None
    ) -> List[Workflow]:
        predicate = Where(status=status) if status is not None else None
        records = await self._store.find_many(WORKFLOWS, predicate)
        return [Workflow.model_validate(r) for r in records]

    async def update(self, workflow_id: str, changes: Mapping[str, Any]) -> Workflow:
        """Edit a definition. In-flight executions keep the steps they started with."""
        current = await self._require(workflow_id)
        if current.status == WorkflowStatus.ARCHIVED:
            raise WorkflowStateError(f"workflow {workflow_id} is archived")
        editable = {k: v for k, v in changes.items() if k not in ("id", "status", "metrics")}
        merged = Workflow.model_validate(
            {**current.model_dump(mode="json"), **to_jsonable_python(editable)}
        )
        patch = merged.model_dump(mode="json", include=set(editable) | {"updated_at"})
        patch["updated_at"] = utcnow().isoformat()
        record = await self._store.update(
            WORKFLOWS, workflow_id, patch, expected_version=current.version
        )
        logger.info(f"Updated workflow {workflow_id}")
        return Workflow.model_validate(record)

    async def activate(self, workflow_id: str) -> Workflow:
        return await self._transition(workflow_id, WorkflowStatus.ACTIVE)

    async def pause(self, workflow_id: str, cancel_in_flight: bool = False) -> Workflow:
        workflow = await self._transition(workflow_id, WorkflowStatus.PAUSED)
        if cancel_in_flight:
            cancelled = await self._engine.cancel_for_workflow(workflow_id, "workflow paused")
            logger.info(f"Cancelled {cancelled} executions of paused workflow {workflow_id}")
        return workflow

    async def archive(self, workflow_id: str) -> Workflow:
        workflow = await self._transition(workflow_id, WorkflowStatus.ARCHIVED)
        cancelled = await self._engine.cancel_for_workflow(workflow_id, "workflow archived")
        logger.info(f"Cancelled {cancelled} executions of archived workflow {workflow_id}")
        return workflow

    # ------------------------------------------------------------------
    async def _require(self, workflow_id: str) -> Workflow:
        workflow = await self.get(workflow_id)
        if workflow is None:
            raise RecordNotFound(WORKFLOWS, workflow_id)
        return workflow

    async def _transition(self, workflow_id: str, target: WorkflowStatus) -> Workflow:
        workflow = await self._require(workflow_id)
        if workflow.status == target:
            return workflow
        if target not in ALLOWED_TRANSITIONS[workflow.status]:
            raise WorkflowStateError(
                f"cannot move workflow {workflow_id} from {workflow.status.value} to {target.value}"
            )
        record = await self._store.update(
            WORKFLOWS,
            workflow_id,
            {"status": target.value, "updated_at": utcnow().isoformat()},
        )
        logger.info(f"Workflow {workflow_id} is now {target.value}")
        return Workflow.model_validate(record)
