"""crmflow: trigger-driven marketing automation workflows for CRM contacts."""

from .channels import ChannelDispatcher, RetryingDispatcher, StoreChannelDispatcher
from .contracts import (
    ActionStep,
    ConditionStep,
    Contact,
    DelayStep,
    ExecutionStatus,
    TriggerType,
    Workflow,
    WorkflowExecution,
    WorkflowStatus,
    WorkflowTrigger,
)
from .engine import WorkflowExecutionEngine
from .events import DomainEvent, EventConsumer, EventPublisher
from .persistence import get_store
from .scheduler import WorkflowScheduler
from .transports import get_event_queue
from .triggers import WorkflowTriggerService
from .workflows import WorkflowCatalog

__version__ = "0.1.0"
__all__ = [
    "ActionStep",
    "ChannelDispatcher",
    "ConditionStep",
    "Contact",
    "DelayStep",
    "DomainEvent",
    "EventConsumer",
    "EventPublisher",
    "ExecutionStatus",
    "RetryingDispatcher",
    "StoreChannelDispatcher",
    "TriggerType",
    "Workflow",
    "WorkflowCatalog",
    "WorkflowExecution",
    "WorkflowExecutionEngine",
    "WorkflowScheduler",
    "WorkflowStatus",
    "WorkflowTrigger",
    "WorkflowTriggerService",
    "get_store",
    "get_event_queue",
]
