"""Pending-task queue, delayed retries and the concurrency guard."""

from __future__ import annotations

import heapq
import itertools
import time
from collections.abc import Callable

from concord.config import EngineConfig
from concord.log import get_logger
from concord.models import Task, TaskStatus

_log = get_logger(__name__)

WAIT_BONUS_PER_SECOND = 1.0
COMPLEXITY_PENALTY = 0.1
DEADLINE_WINDOW = 60.0
DEADLINE_BONUS = 100.0


class DelayQueue:
    """Min-heap of ``(due, task_id)`` entries with lazy removal."""

    def __init__(self) -> None:
        self._heap: list[tuple[float, int, str]] = []
        self._due: dict[str, float] = {}
        self._seq = itertools.count()

    def push(self, task_id: str, due: float) -> None:
        """Schedule *task_id* for *due*; a later push replaces the earlier one."""
        self._due[task_id] = due
        heapq.heappush(self._heap, (due, next(self._seq), task_id))

    def remove(self, task_id: str) -> bool:
        return self._due.pop(task_id, None) is not None

    def pop_due(self, now: float) -> list[str]:
        """Remove and return every task id due at or before *now*, earliest first."""
        released: list[str] = []
        while self._heap and self._heap[0][0] <= now:
            due, _seq, task_id = heapq.heappop(self._heap)
            if self._due.get(task_id) != due:
                continue
            del self._due[task_id]
            released.append(task_id)
        return released

    @property
    def next_due(self) -> float | None:
        return min(self._due.values()) if self._due else None

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._due

    def __len__(self) -> int:
        return len(self._due)


class Scheduler:
    """Orders pending tasks and guarantees one session per task id.

    The engine owns the task objects; the scheduler only keeps references
    in three disjoint places: the pending queue, the delay queue and the
    active set.

    Args:
        config: Engine configuration.
        clock: Time source, seconds.
    """

    def __init__(self, config: EngineConfig | None = None, clock: Callable[[], float] | None = None) -> None:
        self.config = config or EngineConfig()
        self._clock = clock or time.time
        self._pending: dict[str, Task] = {}
        self._delayed_tasks: dict[str, Task] = {}
        self._delay = DelayQueue()
        self._active: set[str] = set()

    # -- queueing -----------------------------------------------------------

    def is_known(self, task_id: str) -> bool:
        return task_id in self._pending or task_id in self._delay or task_id in self._active

    def schedule_task(self, task: Task) -> bool:
        """Queue *task* as pending.

        Idempotent: returns ``False`` and changes nothing when the task is
        already pending, delayed or has an active session.
        """
        if self.is_known(task.id):
            _log.debug("schedule_task(%s) ignored, already queued or active", task.id)
            return False
        task.status = TaskStatus.PENDING
        if task.enqueued_at is None:
            task.enqueued_at = self._clock()
        self._pending[task.id] = task
        return True

    def defer(self, task: Task, delay: float) -> None:
        """Move *task* out of the pending queue until ``now + delay``."""
        self._pending.pop(task.id, None)
        self._delayed_tasks[task.id] = task
        self._delay.push(task.id, self._clock() + delay)
        _log.debug("deferred %s for %.1fs", task.id, delay)

    def schedule_retry(self, task: Task, delay: float) -> bool:
        """Queue *task* to become pending after *delay* seconds."""
        if self.is_known(task.id):
            return False
        task.status = TaskStatus.PENDING
        self._delayed_tasks[task.id] = task
        self._delay.push(task.id, self._clock() + delay)
        return True

    def release_due(self) -> list[str]:
        """Move due delayed tasks into the pending queue."""
        released = self._delay.pop_due(self._clock())
        for task_id in released:
            task = self._delayed_tasks.pop(task_id)
            self._pending[task_id] = task
        return released

    def remove(self, task_id: str) -> bool:
        """Drop a queued task from both queues; active sessions are untouched."""
        found = self._pending.pop(task_id, None) is not None
        if self._delay.remove(task_id):
            self._delayed_tasks.pop(task_id, None)
            found = True
        return found

    # -- active sessions ----------------------------------------------------

    def mark_active(self, task_id: str) -> None:
        self._pending.pop(task_id, None)
        self._active.add(task_id)

    def mark_finished(self, task_id: str) -> None:
        self._active.discard(task_id)

    def is_active(self, task_id: str) -> bool:
        return task_id in self._active

    @property
    def active_count(self) -> int:
        return len(self._active)

    @property
    def has_capacity(self) -> bool:
        return len(self._active) < self.config.max_concurrent_tasks

    @property
    def system_load(self) -> float:
        return len(self._active) / self.config.max_concurrent_tasks

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    @property
    def delayed_count(self) -> int:
        return len(self._delay)

    @property
    def next_due(self) -> float | None:
        return self._delay.next_due

    # -- ordering -----------------------------------------------------------

    def priority(self, task: Task) -> float:
        """Effective priority: explicit priority, waiting time, complexity and deadline."""
        now = self._clock()
        waited = max(0.0, now - task.created_at)
        score = task.priority + WAIT_BONUS_PER_SECOND * waited - COMPLEXITY_PENALTY * task.complexity
        if task.deadline is not None and task.deadline - now <= DEADLINE_WINDOW:
            score += DEADLINE_BONUS
        return score

    def next_candidate(
        self,
        is_ready: Callable[[Task], bool],
        skip: set[str],
    ) -> Task | None:
        """Highest-priority pending task that is ready and not in *skip*.

        Ties go to the task queued first.
        """
        best: Task | None = None
        best_score = 0.0
        for task in self._pending.values():
            if task.id in skip or not is_ready(task):
                continue
            score = self.priority(task)
            if best is None or score > best_score:
                best, best_score = task, score
        return best
