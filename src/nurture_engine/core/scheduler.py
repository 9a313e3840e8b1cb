"""
Due-cursor ordering and the in-process polling loop
"""
import asyncio
import heapq
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Any, Dict

from ..models.execution import ExecutionCursor, RunSummary


logger = logging.getLogger(__name__)


@dataclass(order=True)
class DueEntry:
    """Heap entry ordered by due time, then id for a stable order"""
    next_step_at: datetime
    execution_id: str
    cursor: ExecutionCursor = field(compare=False)


class DueQueue:
    """Min-heap of cursors keyed by next_step_at"""

    def __init__(self, cursors: Optional[List[ExecutionCursor]] = None):
        self._heap: List[DueEntry] = []
        for cursor in cursors or []:
            self.push(cursor)

    def push(self, cursor: ExecutionCursor):
        due = cursor.next_step_at or datetime.min
        heapq.heappush(self._heap, DueEntry(due, cursor.id, cursor))

    def peek(self) -> Optional[ExecutionCursor]:
        return self._heap[0].cursor if self._heap else None

    def pop(self) -> Optional[ExecutionCursor]:
        if not self._heap:
            return None
        return heapq.heappop(self._heap).cursor

    def pop_due(self, now: datetime) -> List[ExecutionCursor]:
        """Pop every cursor due at `now`, earliest first"""
        due = []
        while self._heap and self._heap[0].next_step_at <= now:
            due.append(heapq.heappop(self._heap).cursor)
        return due

    def __len__(self) -> int:
        return len(self._heap)

    def __bool__(self) -> bool:
        return bool(self._heap)


class PollingScheduler:
    """Run BatchRunner.run_due on a fixed interval.

    An in-process alternative to an external cron; any number of these may
    run against the same store.
    """

    def __init__(self, runner, interval: float = 60.0):
        self.runner = runner
        self.interval = interval
        self.last_summary: Optional[RunSummary] = None
        self.passes = 0
        self.failed_passes = 0
        self._scheduler_task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._scheduler_task is not None

    async def start(self):
        """Start the polling loop"""
        if self._scheduler_task:
            return

        self._stop_event.clear()
        self._scheduler_task = asyncio.create_task(self._scheduler_loop())
        logger.info(f"Polling scheduler started (interval {self.interval}s)")

    async def stop(self):
        """Stop the polling loop after the current pass"""
        if not self._scheduler_task:
            return

        self._stop_event.set()
        await self._scheduler_task
        self._scheduler_task = None
        logger.info("Polling scheduler stopped")

    async def run_once(self) -> Optional[RunSummary]:
        """One pass; pass-level failures are logged and survived"""
        self.passes += 1
        try:
            self.last_summary = await self.runner.run_due()
            return self.last_summary
        except Exception as e:
            self.failed_passes += 1
            logger.error(f"Polling pass failed: {e}", exc_info=True)
            return None

    async def _scheduler_loop(self):
        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval)
            except asyncio.TimeoutError:
                pass

    def get_scheduler_stats(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval,
            "passes": self.passes,
            "failed_passes": self.failed_passes,
            "last_summary": self.last_summary.to_dict() if self.last_summary else None
        }
