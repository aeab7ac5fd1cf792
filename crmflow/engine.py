"""Execution engine driving workflow runs against contacts."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from pydantic import TypeAdapter, ValidationError
from pydantic_core import to_jsonable_python

from .channels import ChannelDispatcher
from .conditions import evaluate_condition
from .contracts import (
    ACTIVE_STATUSES,
    END_STEP,
    ActionStep,
    ConditionStep,
    Contact,
    ContactOperation,
    DelayStep,
    ExecutionStatus,
    ExecutionStepRecord,
    Step,
    Workflow,
    WorkflowExecution,
    WorkflowStatus,
    coerce,
    ensure_utc,
    utcnow,
)
from .errors import (
    ConcurrencyConflict,
    DispatchError,
    RecordNotFound,
    StepExecutionError,
)
from .persistence import (
    CONTACTS,
    EXECUTION_STEPS,
    EXECUTIONS,
    RUN_CLAIMS,
    WORKFLOWS,
    DataStore,
    Where,
    get_path,
)
from .templating import render_template

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

DEFAULT_TARGET_FIELDS = {
    "email": ("email",),
    "sms": ("phone",),
    "whatsapp": ("whatsapp_number", "phone"),
}

_datetime = TypeAdapter(datetime)

# How long a claim may exist without its execution record before another
# engine treats it as abandoned.
CLAIM_GRACE = timedelta(minutes=5)


def _claim_id(workflow_id: str, contact_id: str) -> str:
    return f"{workflow_id}:{contact_id}"


def _jsonable(patch: Dict[str, Any]) -> Dict[str, Any]:
    return to_jsonable_python(patch)


class WorkflowExecutionEngine:
    """Drive ``WorkflowExecution`` records from start to a terminal state.

    Steps of one execution run strictly in graph order. Action and condition
    steps run inline; a delay step persists ``waiting_delay`` and returns
    control to the caller until ``resume`` is called after ``resume_at``.

    Public entry points never raise. Failures are recorded on the execution
    (``status=failed`` with ``error_message``) and in the log, so a batch of
    executions can be driven without one failure aborting the rest.
    """

    def __init__(
        self,
        store: DataStore,
        dispatcher: ChannelDispatcher,
        clock: Optional[Clock] = None,
    ) -> None:
        self._store = store
        self._dispatcher = dispatcher
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return ensure_utc(self._clock())

    # ------------------------------------------------------------------
    # Public API
    async def start(
        self,
        workflow: Union[Workflow, Mapping[str, Any]],
        contact: Union[Contact, Mapping[str, Any]],
        trigger_payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[WorkflowExecution]:
        """Start ``workflow`` for ``contact``.

        Returns ``None`` when the workflow is not active, when the contact
        already has a non-terminal run of the same workflow, or when the
        execution record could not be created.
        """
        try:
            workflow = coerce(Workflow, workflow)
            contact = coerce(Contact, contact)
            if workflow.status != WorkflowStatus.ACTIVE:
                logger.warning(
                    f"Workflow {workflow.id} is {workflow.status.value}; not starting for contact {contact.id}"
                )
                return None

            execution = WorkflowExecution(
                workflow_id=workflow.id,
                contact_id=contact.id,
                organization_id=workflow.organization_id,
                current_step_id=workflow.graph.first_id,
                started_at=self.now(),
                context={
                    "contact": contact.model_dump(mode="json"),
                    "trigger": trigger_payload or {},
                    "workflow": {"id": workflow.id, "name": workflow.name},
                },
                steps=workflow.steps,
            )
            if not await self._claim(execution):
                logger.info(
                    f"Workflow {workflow.id} already running for contact {contact.id}; skipping"
                )
                return None
            try:
                record = await self._store.create(
                    EXECUTIONS, execution.model_dump(mode="json")
                )
            except Exception:
                await self._release(execution)
                raise
            execution = WorkflowExecution.model_validate(record)
        except Exception:
            logger.exception("Error starting workflow execution")
            return None

        logger.info(
            f"Started execution {execution.id} of workflow {execution.workflow_id} for contact {execution.contact_id}"
        )
        await self._bump_metrics(execution.workflow_id, total_entered=1, active=1)
        return await self._run(execution)

    async def resume(self, execution_id: str) -> Optional[WorkflowExecution]:
        """Continue a ``waiting_delay`` execution whose ``resume_at`` passed.

        Calling this early, on a terminal execution, or repeatedly is a no-op.
        """
        try:
            execution = await self.get_execution(execution_id)
            if execution is None:
                logger.warning(f"Execution {execution_id} not found; nothing to resume")
                return None
            if execution.status != ExecutionStatus.WAITING_DELAY:
                logger.debug(
                    f"Execution {execution_id} is {execution.status.value}; resume ignored"
                )
                return execution
            if execution.resume_at is not None and self.now() < execution.resume_at:
                logger.debug(
                    f"Execution {execution_id} not due until {execution.resume_at.isoformat()}"
                )
                return execution

            workflow = await self._store.find_by_id(WORKFLOWS, execution.workflow_id)
            if workflow is None or workflow.get("status") == WorkflowStatus.ARCHIVED.value:
                return await self._cancel_loaded(execution, "workflow archived")

            step = execution.graph.get(execution.current_step_id)
            if not isinstance(step, DelayStep):
                raise StepExecutionError(
                    f"execution is waiting on '{execution.current_step_id}', which is not a delay step"
                )
            execution = await self._save(
                execution,
                {
                    "status": ExecutionStatus.RUNNING,
                    "resume_at": None,
                    "current_step_id": execution.graph.successor(step),
                },
            )
            await self._close_waiting_steps(execution.id, step.id)
        except ConcurrencyConflict:
            logger.debug(f"Execution {execution_id} was advanced elsewhere; resume dropped")
            return await self.get_execution(execution_id)
        except Exception as e:
            logger.exception(f"Error resuming execution {execution_id}")
            return await self._fail_by_id(execution_id, e)

        logger.info(f"Resumed execution {execution.id}")
        return await self._run(execution)

    async def cancel(
        self, execution_id: str, reason: str = "cancelled"
    ) -> Optional[WorkflowExecution]:
        """Cancel a non-terminal execution. Dispatched actions are not undone."""
        try:
            execution = await self.get_execution(execution_id)
            if execution is None:
                return None
            return await self._cancel_loaded(execution, reason)
        except Exception:
            logger.exception(f"Error cancelling execution {execution_id}")
            return None

    async def cancel_for_workflow(self, workflow_id: str, reason: str) -> int:
        """Cancel every in-flight execution of ``workflow_id``."""
        return await self._cancel_matching(Where(workflow_id=workflow_id), reason)

    async def cancel_for_contact(self, contact_id: str, reason: str) -> int:
        """Cancel every in-flight execution for ``contact_id``."""
        return await self._cancel_matching(Where(contact_id=contact_id), reason)

    async def process_due_executions(self) -> int:
        """Resume every waiting execution whose ``resume_at`` has passed.

        Returns the number of due executions processed.
        """
        try:
            waiting = await self._store.find_many(
                EXECUTIONS, Where(status=ExecutionStatus.WAITING_DELAY)
            )
        except Exception:
            logger.exception("Error loading scheduled executions")
            return 0

        now = self.now()
        processed = 0
        for record in waiting:
            try:
                execution = WorkflowExecution.model_validate(record)
            except ValidationError:
                logger.exception(f"Skipping malformed execution {record.get('id')}")
                continue
            if execution.resume_at is not None and execution.resume_at > now:
                continue
            await self.resume(execution.id)
            processed += 1
        if processed:
            logger.info(f"Processed {processed} scheduled executions")
        return processed

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        record = await self._store.find_by_id(EXECUTIONS, execution_id)
        return WorkflowExecution.model_validate(record) if record else None

    async def list_executions(
        self,
        workflow_id: Optional[str] = None,
        contact_id: Optional[str] = None,
        status: Optional[Union[ExecutionStatus, str]] = None,
    ) -> List[WorkflowExecution]:
        """Find executions by workflow, by contact, or by status."""
        criteria = {
            key: value
            for key, value in (
                ("workflow_id", workflow_id),
                ("contact_id", contact_id),
                ("status", status),
            )
            if value is not None
        }
        records = await self._store.find_many(EXECUTIONS, Where(criteria))
        executions = [WorkflowExecution.model_validate(r) for r in records]
        return sorted(executions, key=lambda e: e.started_at)

    async def list_steps(self, execution_id: str) -> List[ExecutionStepRecord]:
        records = await self._store.find_many(
            EXECUTION_STEPS, Where(execution_id=execution_id)
        )
        steps = [ExecutionStepRecord.model_validate(r) for r in records]
        return sorted(steps, key=lambda s: s.started_at)

    # ------------------------------------------------------------------
    # Stepping
    async def _run(self, execution: WorkflowExecution) -> WorkflowExecution:
        try:
            return await self._advance(execution)
        except ConcurrencyConflict:
            logger.debug(f"Execution {execution.id} was changed elsewhere; stepping dropped")
            return await self.get_execution(execution.id) or execution
        except Exception as e:
            logger.exception(f"Execution {execution.id} failed")
            return await self._fail_by_id(execution.id, e) or execution

    async def _advance(self, execution: WorkflowExecution) -> WorkflowExecution:
        graph = execution.graph
        while True:
            latest = await self.get_execution(execution.id)
            if (
                latest is None
                or latest.status != ExecutionStatus.RUNNING
                or latest.version != execution.version
            ):
                logger.debug(f"Execution {execution.id} is no longer ours to advance")
                return latest or execution

            if execution.current_step_id in (None, END_STEP):
                return await self._finish(execution, ExecutionStatus.COMPLETED)
            step = graph.get(execution.current_step_id)
            if step is None:
                raise StepExecutionError(
                    f"unknown step '{execution.current_step_id}'"
                )

            workflow = await self._store.find_by_id(WORKFLOWS, execution.workflow_id)
            if workflow is None or workflow.get("status") == WorkflowStatus.ARCHIVED.value:
                return await self._cancel_loaded(execution, "workflow archived")
            contact = await self._store.find_by_id(CONTACTS, execution.contact_id)
            if contact is None:
                return await self._cancel_loaded(execution, "contact no longer exists")
            context = {**execution.context, "contact": contact}

            if isinstance(step, DelayStep):
                return await self._suspend(execution, step, context)
            if isinstance(step, ConditionStep):
                next_id = await self._evaluate(execution, step, context)
            else:
                next_id = await self._execute_action(execution, step, context)
            execution = await self._save(
                execution, {"current_step_id": next_id, "context": context}
            )

    async def _execute_action(
        self, execution: WorkflowExecution, step: ActionStep, context: Dict[str, Any]
    ) -> Optional[str]:
        record = await self._begin_step(
            execution, step, {"channel": step.channel, "config": step.config}
        )
        try:
            if step.is_message:
                subject = render_template(step.subject, context)
                body = render_template(step.template, context)
                target = _resolve_target(step, context["contact"])
                delivered = await self._dispatcher.send(
                    step.channel, target, body, {**context, "subject": subject}
                )
                output: Dict[str, Any] = {"target": target}
            else:
                operation = _build_operation(step, context)
                delivered = await self._dispatcher.mutate_contact(
                    execution.contact_id, operation
                )
                output = {"operation": operation.model_dump(mode="json")}
            if not delivered:
                raise DispatchError(f"{step.channel} action '{step.id}' was not delivered")
        except Exception as e:
            await self._end_step(record, "failed", error=str(e))
            raise
        await self._end_step(record, "completed", output=output)
        logger.info(f"Execution {execution.id} ran {step.channel} action '{step.id}'")
        return execution.graph.successor(step)

    async def _evaluate(
        self, execution: WorkflowExecution, step: ConditionStep, context: Dict[str, Any]
    ) -> Optional[str]:
        record = await self._begin_step(
            execution, step, {"field": step.field, "op": step.op, "value": step.value}
        )
        try:
            result = evaluate_condition(step, context)
        except Exception as e:
            await self._end_step(record, "failed", error=str(e))
            raise
        next_id = step.true_next if result else step.false_next
        await self._end_step(record, "completed", output={"result": result, "next": next_id})
        logger.debug(f"Execution {execution.id} condition '{step.id}' -> {result}")
        return next_id

    async def _suspend(
        self, execution: WorkflowExecution, step: DelayStep, context: Dict[str, Any]
    ) -> WorkflowExecution:
        if step.relative_to:
            raw = get_path(context["contact"], step.relative_to)
            if raw is None:
                raise StepExecutionError(
                    f"delay '{step.id}' is relative to missing contact field '{step.relative_to}'"
                )
            base = ensure_utc(_datetime.validate_python(raw))
        else:
            base = self.now()
        resume_at = base + step.delta()

        execution = await self._save(
            execution,
            {
                "status": ExecutionStatus.WAITING_DELAY,
                "resume_at": resume_at,
                "context": context,
            },
        )
        record = await self._begin_step(
            execution,
            step,
            {"duration": step.duration, "unit": step.unit, "relative_to": step.relative_to},
            status="waiting",
        )
        await self._store.update(
            EXECUTION_STEPS, record["id"], _jsonable({"output_data": {"resume_at": resume_at}})
        )
        logger.info(
            f"Execution {execution.id} waiting on '{step.id}' until {resume_at.isoformat()}"
        )
        return execution

    # ------------------------------------------------------------------
    # Terminal transitions
    async def _finish(
        self,
        execution: WorkflowExecution,
        status: ExecutionStatus,
        error: Optional[str] = None,
    ) -> WorkflowExecution:
        execution = await self._save(
            execution,
            {
                "status": status,
                "resume_at": None,
                "completed_at": self.now(),
                "error_message": error,
            },
        )
        if status == ExecutionStatus.COMPLETED:
            logger.info(f"Workflow completed for execution {execution.id}")
            await self._bump_metrics(execution.workflow_id, completed=1, active=-1)
        else:
            logger.info(f"Execution {execution.id} {status.value}: {error}")
            await self._bump_metrics(execution.workflow_id, dropped=1, active=-1)
        await self._release(execution)
        return execution

    async def _fail_by_id(
        self, execution_id: str, error: Exception
    ) -> Optional[WorkflowExecution]:
        try:
            execution = await self.get_execution(execution_id)
            if execution is None or execution.is_terminal:
                return execution
            return await self._finish(execution, ExecutionStatus.FAILED, str(error))
        except ConcurrencyConflict:
            logger.debug(f"Execution {execution_id} changed while recording failure")
            return await self.get_execution(execution_id)
        except Exception:
            logger.exception(f"Error recording failure of execution {execution_id}")
            return None

    async def _cancel_loaded(
        self, execution: WorkflowExecution, reason: str, attempts: int = 3
    ) -> WorkflowExecution:
        for _ in range(attempts):
            if execution.is_terminal:
                return execution
            try:
                execution = await self._finish(execution, ExecutionStatus.CANCELLED, reason)
                await self._close_waiting_steps(execution.id, status="cancelled")
                return execution
            except ConcurrencyConflict:
                latest = await self.get_execution(execution.id)
                if latest is None:
                    return execution
                execution = latest
        logger.warning(f"Gave up cancelling execution {execution.id} after {attempts} conflicts")
        return execution

    async def _cancel_matching(self, predicate: Where, reason: str) -> int:
        try:
            records = await self._store.find_many(EXECUTIONS, predicate)
        except Exception:
            logger.exception(f"Error loading executions to cancel ({predicate!r})")
            return 0
        cancelled = 0
        for record in records:
            if ExecutionStatus(record["status"]) not in ACTIVE_STATUSES:
                continue
            result = await self.cancel(record["id"], reason)
            if result is not None and result.status == ExecutionStatus.CANCELLED:
                cancelled += 1
        return cancelled

    # ------------------------------------------------------------------
    # Persistence helpers
    async def _save(
        self, execution: WorkflowExecution, patch: Dict[str, Any]
    ) -> WorkflowExecution:
        record = await self._store.update(
            EXECUTIONS, execution.id, _jsonable(patch), expected_version=execution.version
        )
        return WorkflowExecution.model_validate(record)

    # ------------------------------------------------------------------
    # Run claims
    #
    # A claim record keyed by (workflow, contact) marks the pair as busy. It is
    # inserted through the store's primary key, so only one engine wins even
    # when several processes share a database. Terminal transitions release
    # it; a claim left behind by a crashed process is taken over once its
    # execution is terminal, or missing for longer than CLAIM_GRACE.
    async def _claim(self, execution: WorkflowExecution) -> bool:
        claim = {
            "id": _claim_id(execution.workflow_id, execution.contact_id),
            "workflow_id": execution.workflow_id,
            "contact_id": execution.contact_id,
            "execution_id": execution.id,
            "claimed_at": self.now().isoformat(),
        }
        for _ in range(2):
            try:
                await self._store.create(RUN_CLAIMS, claim)
                return True
            except ValueError:
                pass
            held = await self._store.find_by_id(RUN_CLAIMS, claim["id"])
            if held is None:
                continue
            if not await self._claim_is_stale(held):
                return False
            try:
                await self._store.update(
                    RUN_CLAIMS,
                    claim["id"],
                    {"execution_id": execution.id, "claimed_at": claim["claimed_at"]},
                    expected_version=held["version"],
                )
                logger.warning(
                    f"Took over stale claim of execution {held.get('execution_id')} for {claim['id']}"
                )
                return True
            except (ConcurrencyConflict, RecordNotFound):
                return False
        return False

    async def _claim_is_stale(self, held: Dict[str, Any]) -> bool:
        owner = await self._store.find_by_id(EXECUTIONS, held.get("execution_id") or "")
        if owner is not None:
            return ExecutionStatus(owner["status"]) not in ACTIVE_STATUSES
        claimed_at = ensure_utc(_datetime.validate_python(held["claimed_at"]))
        return self.now() - claimed_at > CLAIM_GRACE

    async def _release(self, execution: WorkflowExecution) -> None:
        claim_id = _claim_id(execution.workflow_id, execution.contact_id)
        try:
            held = await self._store.find_by_id(RUN_CLAIMS, claim_id)
            if held is not None and held.get("execution_id") == execution.id:
                await self._store.delete(RUN_CLAIMS, claim_id, expected_version=held["version"])
        except Exception:
            logger.exception(f"Error releasing claim {claim_id}")

    async def _begin_step(
        self,
        execution: WorkflowExecution,
        step: Step,
        input_data: Dict[str, Any],
        status: str = "running",
    ) -> Dict[str, Any]:
        record = ExecutionStepRecord(
            execution_id=execution.id,
            step_id=step.id,
            kind=step.kind,
            status=status,
            started_at=self.now(),
            input_data=input_data,
        )
        return await self._store.create(EXECUTION_STEPS, record.model_dump(mode="json"))

    async def _end_step(
        self,
        record: Dict[str, Any],
        status: str,
        output: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ) -> None:
        await self._store.update(
            EXECUTION_STEPS,
            record["id"],
            _jsonable(
                {
                    "status": status,
                    "completed_at": self.now(),
                    "output_data": output,
                    "error_message": error,
                }
            ),
        )

    async def _close_waiting_steps(
        self,
        execution_id: str,
        step_id: Optional[str] = None,
        status: str = "completed",
    ) -> None:
        criteria: Dict[str, Any] = {"execution_id": execution_id, "status": "waiting"}
        if step_id is not None:
            criteria["step_id"] = step_id
        for record in await self._store.find_many(EXECUTION_STEPS, Where(criteria)):
            await self._store.update(
                EXECUTION_STEPS,
                record["id"],
                _jsonable({"status": status, "completed_at": self.now()}),
            )

    async def _bump_metrics(self, workflow_id: str, attempts: int = 5, **deltas: int) -> None:
        for _ in range(attempts):
            try:
                workflow = await self._store.find_by_id(WORKFLOWS, workflow_id)
                if workflow is None:
                    return
                metrics = dict(workflow.get("metrics") or {})
                for name, delta in deltas.items():
                    metrics[name] = max(0, metrics.get(name, 0) + delta)
                await self._store.update(
                    WORKFLOWS,
                    workflow_id,
                    {"metrics": metrics},
                    expected_version=workflow["version"],
                )
                return
            except ConcurrencyConflict:
                continue
            except Exception:
                logger.exception(f"Error updating metrics of workflow {workflow_id}")
                return
        logger.warning(f"Metrics of workflow {workflow_id} not updated after {attempts} conflicts")


def _resolve_target(step: ActionStep, contact: Mapping[str, Any]) -> str:
    fields = (step.target_field,) if step.target_field else DEFAULT_TARGET_FIELDS[step.channel]
    for field in fields:
        value = get_path(contact, field)
        if value:
            return str(value)
    raise StepExecutionError(
        f"contact {contact.get('id')} has no {' or '.join(fields)} for {step.channel} action '{step.id}'"
    )


def _build_operation(step: ActionStep, context: Dict[str, Any]) -> ContactOperation:
    config = {
        key: render_template(value, context) if isinstance(value, str) else value
        for key, value in step.config.items()
    }
    required = {
        "add_tag": "tag",
        "remove_tag": "tag",
        "set_field": "field",
        "move_stage": "stage",
    }[step.channel]
    if not config.get(required):
        raise StepExecutionError(
            f"{step.channel} action '{step.id}' needs a '{required}' setting"
        )
    return ContactOperation(
        type=step.channel,
        tag=config.get("tag"),
        field=config.get("field"),
        value=config.get("value"),
        stage=config.get("stage"),
    )
