"""Periodic driver for delayed executions and date-based triggers."""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from .contracts import WorkflowExecution
from .engine import WorkflowExecutionEngine
from .triggers import WorkflowTriggerService

logger = logging.getLogger(__name__)


class WorkflowScheduler:
    """Poll for due delay steps and sweep date-based workflows.

    The two jobs run on independent intervals inside one loop. Each tick is
    isolated: an error in one is logged and the loop carries on.
    """

    def __init__(
        self,
        engine: WorkflowExecutionEngine,
        triggers: WorkflowTriggerService,
        execution_interval: float = 60,
        date_trigger_interval: float = 3600,
    ) -> None:
        if execution_interval <= 0 or date_trigger_interval <= 0:
            raise ValueError("Scheduler intervals must be positive")
        self._engine = engine
        self._triggers = triggers
        self._execution_interval = execution_interval
        self._date_trigger_interval = date_trigger_interval
        self._stopped = asyncio.Event()
        self.ticks = 0

    async def tick_executions(self) -> int:
        """Resume every execution whose delay has elapsed."""
        try:
            processed = await self._engine.process_due_executions()
        except Exception:
            logger.exception("Error processing due executions")
            return 0
        if processed:
            logger.info(f"Resumed {processed} due executions")
        return processed

    async def tick_date_triggers(self) -> List[WorkflowExecution]:
        started = await self._triggers.run_date_based_triggers()
        if started:
            logger.info(f"Date based triggers started {len(started)} executions")
        return started

    async def run(self, lifespan: Optional[float] = None) -> None:
        """Run both jobs until ``stop`` is called or ``lifespan`` seconds elapse."""
        self._stopped.clear()
        loop = asyncio.get_running_loop()
        start_time = loop.time()
        next_execution_tick = start_time
        next_date_tick = start_time

        while not self._stopped.is_set():
            now = loop.time()
            if lifespan is not None and now - start_time >= lifespan:
                break

            if now >= next_date_tick:
                await self.tick_date_triggers()
                next_date_tick = now + self._date_trigger_interval
            if now >= next_execution_tick:
                await self.tick_executions()
                next_execution_tick = now + self._execution_interval
            self.ticks += 1

            wake_at = min(next_execution_tick, next_date_tick)
            if lifespan is not None:
                wake_at = min(wake_at, start_time + lifespan)
            timeout = max(wake_at - loop.time(), 0)
            try:
                await asyncio.wait_for(self._stopped.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                pass

        logger.info("Scheduler stopped")

    def stop(self) -> None:
        self._stopped.set()
