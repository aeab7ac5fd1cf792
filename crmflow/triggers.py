"""Trigger matching: map CRM domain events to workflow executions."""

from __future__ import annotations

import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from .contracts import (
    Contact,
    TriggerType,
    Workflow,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowTrigger,
    coerce,
)
from .engine import WorkflowExecutionEngine
from .persistence import CONTACTS, EXECUTIONS, WORKFLOWS, DataStore, Where

logger = logging.getLogger(__name__)

ContactLike = Union[Contact, Mapping[str, Any]]

DATE_TRIGGER_TYPES = ("birthday", "anniversary")


def matches_tag(trigger: WorkflowTrigger, tag: str) -> bool:
    expected = trigger.condition("tag")
    return expected is None or expected == tag


def matches_form(trigger: WorkflowTrigger, form_id: str) -> bool:
    expected = trigger.condition("formId", "form_id")
    return expected is None or expected == form_id


def matches_stage_change(
    trigger: WorkflowTrigger, previous_stage: str, new_stage: str
) -> bool:
    from_stage = trigger.condition("fromStage", "from_stage")
    to_stage = trigger.condition("toStage", "to_stage")
    return (from_stage is None or from_stage == previous_stage) and (
        to_stage is None or to_stage == new_stage
    )


def matches_date(trigger: WorkflowTrigger, contact: Contact, today: date) -> bool:
    """Return whether a date-based trigger fires for ``contact`` today.

    Both ``birthday`` and ``anniversary`` compare the month and day of the
    contact's ``created_at``; contacts have no dedicated date fields yet.
    """
    if trigger.condition("type") not in DATE_TRIGGER_TYPES:
        return False
    if contact.created_at is None:
        return False
    return (contact.created_at.month, contact.created_at.day) == (today.month, today.day)


class WorkflowTriggerService:
    """Find active workflows matching a domain event and start them.

    Every handler is fire-and-forget for the caller: errors are logged, one
    failing workflow or contact never blocks the others, and nothing is
    raised back into the business operation that emitted the event. The
    started executions are returned for callers that want to inspect them.
    """

    def __init__(self, store: DataStore, engine: WorkflowExecutionEngine) -> None:
        self._store = store
        self._engine = engine

    async def on_contact_created(self, contact: ContactLike) -> List[WorkflowExecution]:
        try:
            contact = coerce(Contact, contact)
            workflows = await self._find_workflows_by_trigger(TriggerType.CONTACT_CREATED)
            return await self._start_all(
                workflows, contact, {"type": TriggerType.CONTACT_CREATED.value}
            )
        except Exception:
            logger.exception("Error handling contact created trigger")
            return []

    async def on_tag_added(self, contact: ContactLike, tag: str) -> List[WorkflowExecution]:
        try:
            contact = coerce(Contact, contact)
            workflows = await self._find_workflows_by_trigger(TriggerType.TAG_ADDED)
            matching = [w for w in workflows if matches_tag(w.trigger, tag)]
            return await self._start_all(
                matching, contact, {"type": TriggerType.TAG_ADDED.value, "tag": tag}
            )
        except Exception:
            logger.exception("Error handling tag added trigger")
            return []

    async def on_form_submitted(
        self, contact: ContactLike, form_id: str
    ) -> List[WorkflowExecution]:
        try:
            contact = coerce(Contact, contact)
            workflows = await self._find_workflows_by_trigger(TriggerType.FORM_SUBMITTED)
            matching = [w for w in workflows if matches_form(w.trigger, form_id)]
            return await self._start_all(
                matching,
                contact,
                {"type": TriggerType.FORM_SUBMITTED.value, "form_id": form_id},
            )
        except Exception:
            logger.exception("Error handling form submitted trigger")
            return []

    async def on_deal_stage_changed(
        self, contact_id: str, previous_stage: str, new_stage: str
    ) -> List[WorkflowExecution]:
        try:
            workflows = await self._find_workflows_by_trigger(
                TriggerType.DEAL_STAGE_CHANGED
            )
            record = await self._store.find_by_id(CONTACTS, contact_id)
            if record is None:
                logger.debug(f"Contact {contact_id} not found for stage change")
                return []
            contact = Contact.model_validate(record)
            matching = [
                w
                for w in workflows
                if matches_stage_change(w.trigger, previous_stage, new_stage)
            ]
            return await self._start_all(
                matching,
                contact,
                {
                    "type": TriggerType.DEAL_STAGE_CHANGED.value,
                    "previous_stage": previous_stage,
                    "new_stage": new_stage,
                },
            )
        except Exception:
            logger.exception("Error handling deal stage changed trigger")
            return []

    async def on_contact_deleted(self, contact_id: str) -> int:
        """Cancel the contact's in-flight executions. Returns how many."""
        try:
            return await self._engine.cancel_for_contact(contact_id, "contact deleted")
        except Exception:
            logger.exception("Error handling contact deleted event")
            return 0

    async def run_date_based_triggers(self) -> List[WorkflowExecution]:
        """Sweep all contacts for active date-based workflows due today.

        A contact whose run of the same workflow already started today is
        skipped, so the sweep may be scheduled more often than daily.
        """
        started: List[WorkflowExecution] = []
        try:
            workflows = await self._find_workflows_by_trigger(TriggerType.DATE_BASED)
            if not workflows:
                return started
            today = self._engine.now().date()
            contacts = await self._load_contacts()
        except Exception:
            logger.exception("Error handling date based triggers")
            return started

        for workflow in workflows:
            date_type = workflow.trigger.condition("type")
            if date_type not in DATE_TRIGGER_TYPES:
                logger.warning(
                    f"Workflow {workflow.id} has unsupported date trigger type {date_type!r}"
                )
                continue
            try:
                fired_today = await self._contacts_started_on(workflow.id, today)
                matching = [
                    c
                    for c in contacts
                    if c.id not in fired_today and matches_date(workflow.trigger, c, today)
                ]
                started.extend(
                    await self._start_all(
                        [workflow],
                        matching,
                        {
                            "type": TriggerType.DATE_BASED.value,
                            "date_type": date_type,
                            "date": today.isoformat(),
                        },
                    )
                )
            except Exception:
                logger.exception(f"Error running date trigger of workflow {workflow.id}")
        return started

    # ------------------------------------------------------------------
    async def _find_workflows_by_trigger(self, trigger_type: TriggerType) -> List[Workflow]:
        records = await self._store.find_many(
            WORKFLOWS,
            Where(
                {"status": WorkflowStatus.ACTIVE.value, "trigger.type": trigger_type.value}
            ),
        )
        workflows: List[Workflow] = []
        for record in records:
            try:
                workflows.append(Workflow.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Skipping malformed workflow {record.get('id')}: {e}")
        return workflows

    async def _load_contacts(self) -> List[Contact]:
        contacts: List[Contact] = []
        for record in await self._store.find_many(CONTACTS):
            try:
                contacts.append(Contact.model_validate(record))
            except ValidationError as e:
                logger.warning(f"Skipping malformed contact {record.get('id')}: {e}")
        return contacts

    async def _contacts_started_on(self, workflow_id: str, day: date) -> set[str]:
        records = await self._store.find_many(EXECUTIONS, Where(workflow_id=workflow_id))
        return {
            r["contact_id"]
            for r in records
            if WorkflowExecution.model_validate(r).started_at.date() == day
        }

    async def _start_all(
        self,
        workflows: Iterable[Workflow],
        contacts: Union[Contact, Iterable[Contact]],
        payload: Optional[Dict[str, Any]] = None,
    ) -> List[WorkflowExecution]:
        if isinstance(contacts, Contact):
            contacts = [contacts]
        contacts = list(contacts)
        started: List[WorkflowExecution] = []
        for workflow in workflows:
            for contact in contacts:
                try:
                    execution = await self._engine.start(workflow, contact, payload)
                except Exception:
                    logger.exception(
                        f"Error starting workflow {workflow.id} for contact {contact.id}"
                    )
                    continue
                if execution is not None:
                    started.append(execution)
        return started
