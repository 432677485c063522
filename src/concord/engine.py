"""The engine facade: owns every entity and drives scheduling ticks.

All bookkeeping is synchronous.  The only suspension point is an agent's
``process_task`` call, which runs as its own asyncio task and reports back
through :meth:`ConcordEngine._on_agent_result` or
:meth:`ConcordEngine._on_agent_failure`.

Usage::

    engine = ConcordEngine()
    engine.register_agent(StaticAgent("a", capabilities=["x"]))
    task_id = engine.submit_task(Task(description="hello"))
    engine.tick()
    await engine.drain()
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from collections import Counter
from collections.abc import Callable, Iterable, Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from concord.affinity import AffinityModel
from concord.agents import to_agent_result
from concord.chain import ChainExecutor, build_chain
from concord.config import EngineConfig
from concord.events import EngineEvent, EventChannel, EventType, Subscription
from concord.log import LogContext, configure_logging, get_logger
from concord.models import (
    AgentState,
    ChainMetrics,
    ChainStatus,
    ChainStrategy,
    EngineStatus,
    Task,
    TaskChain,
    TaskStatus,
)
from concord.recovery import RecoveryManager
from concord.registry import AgentRegistry
from concord.scheduler import Scheduler
from concord.session import CollaborationSession, SessionStatus
from concord.types import (
    AgentExecutionError,
    AgentResult,
    CapabilityMismatchError,
    ChainStructuralFailure,
    ConfigurationError,
    FailureReason,
    SessionExhaustedError,
)

_log = get_logger(__name__)


class ConcordEngine:
    """Coordinates agents, tasks, sessions and chains.

    Args:
        config: Engine configuration; defaults to ``EngineConfig()``.
        affinity: Optional affinity model blended into agent scores.
        clock: Time source in seconds; tests inject a fake one.
    """

    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        affinity: AffinityModel | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self.config = config or EngineConfig()
        if self.config.log_level is not None:
            configure_logging(level=self.config.log_level, fmt=self.config.log_format)
        self._clock = clock or time.time
        self.registry = AgentRegistry(self.config, affinity=affinity, clock=self._clock)
        self.scheduler = Scheduler(self.config, clock=self._clock)
        self.recovery = RecoveryManager(self.registry, self.config, clock=self._clock)
        self.chains = ChainExecutor(self.config)
        self.events = EventChannel(self.config.event_buffer_size)

        self._tasks: dict[str, Task] = {}
        self._chains: dict[str, TaskChain] = {}
        self._sessions: dict[str, CollaborationSession] = {}
        self._session_by_task: dict[str, str] = {}
        self._inflight: set[asyncio.Task[None]] = set()

        self._ticking = False
        self._tick_requested = False
        self._loop_task: asyncio.Task[None] | None = None
        self._stop_event: asyncio.Event | None = None

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def subscribe(self, types: Iterable[EventType] | None = None, *, maxsize: int | None = None) -> Subscription:
        """Open a bounded subscription to engine events."""
        return self.events.subscribe(types, maxsize=maxsize)

    def _emit(self, event_type: EventType, **data: Any) -> None:
        self.events.publish(EngineEvent(type=event_type, timestamp=self._clock(), data=data))

    # ------------------------------------------------------------------
    # Agents
    # ------------------------------------------------------------------

    def register_agent(self, agent: Any) -> AgentState:
        """Register a collaborator; returns a snapshot of its state."""
        state = self.registry.register(agent)
        self._emit(EventType.AGENT_REGISTERED, agent_id=state.id, agent=state.model_dump(mode="json"))
        return state.model_copy(deep=True)

    def unregister_agent(self, agent_id: str) -> list[str]:
        """Remove an agent; every task it held loses that participant.

        Returns the ids of the affected tasks.
        """
        held = self.registry.unregister(agent_id)
        for task_id in held:
            session_id = self._session_by_task.get(task_id)
            if session_id is not None:
                self._on_agent_failure(
                    session_id, agent_id, AgentExecutionError(agent_id, task_id, "agent unregistered")
                )
        self._emit(EventType.AGENT_UNREGISTERED, agent_id=agent_id, tasks=held)
        return held

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit_task(self, task: Task | Mapping[str, Any]) -> str:
        """Queue a standalone task and return its id.

        Raises:
            ConfigurationError: On an invalid mapping, a duplicate id or an
                unknown dependency.
        """
        if isinstance(task, Task):
            task = task.model_copy(deep=True)
        else:
            try:
                task = Task.model_validate(dict(task))
            except ValidationError as exc:
                raise ConfigurationError(f"Invalid task: {exc}") from exc
        if task.id in self._tasks:
            raise ConfigurationError(f"Task id {task.id!r} is already submitted")
        missing = [dep for dep in task.dependencies if dep not in self._tasks]
        if missing:
            raise ConfigurationError(f"Task {task.id!r} depends on unknown task(s) {missing!r}")
        task.created_at = self._clock()
        task.status = TaskStatus.PENDING
        self._tasks[task.id] = task
        self.scheduler.schedule_task(task)
        _log.info("submitted task %s", task.id)
        self._emit(EventType.TASK_SUBMITTED, task_id=task.id, task=task.to_dict())
        return task.id

    def submit_chain(
        self,
        tasks: Sequence[Task | Mapping[str, Any]],
        *,
        name: str = "",
        strategy: ChainStrategy | str = ChainStrategy.SEQUENTIAL,
        chain_id: str | None = None,
    ) -> str:
        """Validate and start a chain; returns its id.

        Raises:
            ConfigurationError: On cycles, unknown or duplicate task ids.
        """
        chain = build_chain(
            [t if isinstance(t, Task) else dict(t) for t in tasks],
            name=name,
            strategy=strategy,
            chain_id=chain_id,
            failure_threshold=self.config.failure_threshold,
            now=self._clock(),
        )
        if chain.id in self._chains:
            raise ConfigurationError(f"Chain id {chain.id!r} is already submitted")
        clashes = sorted(tid for tid in chain.tasks if tid in self._tasks)
        if clashes:
            raise ConfigurationError(f"Chain task ids already submitted: {clashes!r}")

        chain.prediction = self.recovery.predict_path(chain)
        self._chains[chain.id] = chain
        self._tasks.update(chain.tasks)
        for risk in chain.prediction.risk_factors:
            _log.warning("chain %s risk: %s", chain.id, risk)
        _log.info(
            "created chain %s with %d task(s) strategy=%s confidence=%.2f",
            chain.id, len(chain.tasks), chain.strategy, chain.prediction.confidence,
        )
        self._emit(
            EventType.CHAIN_CREATED,
            chain_id=chain.id,
            name=chain.name,
            tasks=list(chain.tasks),
            prediction=chain.prediction.model_dump(mode="json"),
        )
        chain.status = ChainStatus.RUNNING
        chain.started_at = self._clock()
        self._advance_chain(chain)
        return chain.id

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel_task(self, task_id: str) -> bool:
        """Cancel a task that has not finished; returns whether anything changed.

        In-flight agent calls are not aborted; their results are discarded.
        """
        task = self._tasks.get(task_id)
        if task is None or task.status.terminal:
            return False
        self.scheduler.remove(task_id)
        session_id = self._session_by_task.get(task_id)
        if session_id is not None:
            session = self._sessions[session_id]
            outstanding = session.outstanding
            session.close(SessionStatus.CANCELLED)
            self._close_session(session)
            for agent_id in outstanding:
                self._emit(EventType.TASK_CANCEL_REQUESTED, task_id=task_id, agent_id=agent_id)
                self._notify_cancel(agent_id, task_id)
        task.status = TaskStatus.CANCELLED
        task.failure_reason = FailureReason.CANCELLED
        task.completed_at = self._clock()
        _log.info("cancelled task %s", task_id)
        self._emit(EventType.TASK_CANCELLED, task_id=task_id)

        chain = self._chain_of(task)
        if chain is not None and chain.status is ChainStatus.RUNNING:
            self.chains.mark_failed(chain, task_id)
            self._advance_chain(chain)
        elif chain is not None and task_id in chain.active:
            chain.active.remove(task_id)
        self._fail_dependents(task)
        return True

    def cancel_chain(self, chain_id: str) -> bool:
        """Cancel every unfinished task of a chain and mark it cancelled."""
        chain = self._chains.get(chain_id)
        if chain is None or chain.status.terminal:
            return False
        chain.status = ChainStatus.CANCELLED
        chain.completed_at = self._clock()
        for task_id in list(chain.tasks):
            self.cancel_task(task_id)
        self._fail_chain_dependents(chain)
        _log.info("cancelled chain %s", chain_id)
        return True

    def _notify_cancel(self, agent_id: str, task_id: str) -> None:
        if agent_id not in self.registry:
            return
        cancel = getattr(self.registry.collaborator(agent_id), "cancel_task", None)
        if cancel is None:
            return
        try:
            outcome = cancel(task_id)
            if asyncio.iscoroutine(outcome):
                self._spawn(outcome)
        except Exception as exc:
            _log.warning("cancel_task(%s) on agent %s failed: %s", task_id, agent_id, exc)

    # ------------------------------------------------------------------
    # Snapshots
    # ------------------------------------------------------------------

    def get_task(self, task_id: str) -> Task | None:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task is not None else None

    def get_chain(self, chain_id: str) -> TaskChain | None:
        chain = self._chains.get(chain_id)
        return chain.model_copy(deep=True) if chain is not None else None

    def get_agent(self, agent_id: str) -> AgentState | None:
        if agent_id not in self.registry:
            return None
        return self.registry.get(agent_id).model_copy(deep=True)

    def get_session(self, session_id: str) -> CollaborationSession | None:
        session = self._sessions.get(session_id)
        return session.model_copy(deep=True) if session is not None else None

    def session_for_task(self, task_id: str) -> CollaborationSession | None:
        session_id = self._session_by_task.get(task_id)
        return self.get_session(session_id) if session_id is not None else None

    def list_tasks(self) -> list[Task]:
        return [t.model_copy(deep=True) for t in self._tasks.values()]

    def list_chains(self) -> list[TaskChain]:
        return [c.model_copy(deep=True) for c in self._chains.values()]

    def list_agents(self) -> list[AgentState]:
        return [s.model_copy(deep=True) for s in self.registry.states()]

    def chain_metrics(self, chain_id: str) -> ChainMetrics:
        chain = self._chains.get(chain_id)
        if chain is None:
            raise ConfigurationError(f"Unknown chain {chain_id!r}")
        return self.recovery.chain_metrics(chain)

    def status(self) -> EngineStatus:
        return EngineStatus(
            running=self.running,
            agents=len(self.registry),
            pending_tasks=self.scheduler.pending_count,
            delayed_tasks=self.scheduler.delayed_count,
            active_sessions=len(self._sessions),
            tasks_by_status=dict(Counter(str(t.status) for t in self._tasks.values())),
            chains_by_status=dict(Counter(str(c.status) for c in self._chains.values())),
            system_load=self.scheduler.system_load,
        )

    def is_idle(self) -> bool:
        """No queued work, no sessions, no calls in flight and every chain finished."""
        return (
            self.scheduler.pending_count == 0
            and self.scheduler.delayed_count == 0
            and not self._sessions
            and not self._inflight
            and all(c.status.terminal for c in self._chains.values())
        )

    # ------------------------------------------------------------------
    # Ticking
    # ------------------------------------------------------------------

    def tick(self) -> None:
        """Run one scheduling pass.

        A call made while a tick is running is recorded and served right
        after it, never interleaved.
        """
        if self._ticking:
            self._tick_requested = True
            return
        self._ticking = True
        try:
            while True:
                self._tick_requested = False
                self._run_tick()
                if not self._tick_requested:
                    break
        finally:
            self._ticking = False

    def _run_tick(self) -> None:
        now = self._clock()
        for session in [s for s in self._sessions.values() if s.is_expired(now)]:
            self._on_session_timeout(session)

        self.scheduler.release_due()
        for chain in list(self._chains.values()):
            if chain.status is ChainStatus.RUNNING:
                self._advance_chain(chain)

        tried: set[str] = set()
        while self.scheduler.has_capacity:
            task = self.scheduler.next_candidate(self._dependencies_met, tried)
            if task is None:
                break
            tried.add(task.id)
            self._try_assign(task)

    def _dependencies_met(self, task: Task) -> bool:
        return all(
            self._tasks[dep].status is TaskStatus.COMPLETED
            for dep in task.dependencies
            if dep in self._tasks
        )

    def _try_assign(self, task: Task) -> None:
        with LogContext(task_id=task.id):
            try:
                selected = self.registry.select_agents(task)
            except CapabilityMismatchError as exc:
                if task.capability_deferrals >= self.config.max_capability_deferrals:
                    self.scheduler.remove(task.id)
                    self._fail_task(task, FailureReason.NO_CAPABLE_AGENT, str(exc))
                else:
                    task.capability_deferrals += 1
                    _log.info(
                        "no capable agent for %s (%d/%d)",
                        task.id, task.capability_deferrals, self.config.max_capability_deferrals,
                    )
                    self.scheduler.defer(task, self.config.no_agent_backoff)
                return
            if not selected:
                _log.debug("no agent available for %s", task.id)
                self.scheduler.defer(task, self.config.no_agent_backoff)
                return
            self._start_session(task, [state.id for state in selected])

    def _start_session(self, task: Task, agent_ids: list[str]) -> None:
        now = self._clock()
        session = CollaborationSession.open(
            task.id, agent_ids, task.collaboration_type, now=now, timeout=self.config.task_timeout
        )
        self._sessions[session.id] = session
        self._session_by_task[task.id] = session.id
        self.scheduler.mark_active(task.id)
        task.assigned_agents = list(agent_ids)
        task.status = TaskStatus.ASSIGNED
        task.started_at = now
        for agent_id in agent_ids:
            self.registry.assign(agent_id, task.id)

        chain = self._chain_of(task)
        if chain is not None:
            self.recovery.record_dispatch(chain, task.id, agent_ids)

        _log.info("scheduled %s on %s (%s)", task.id, agent_ids, session.strategy)
        self._emit(
            EventType.SESSION_CREATED,
            session_id=session.id,
            task_id=task.id,
            participants=list(agent_ids),
            strategy=str(session.strategy),
        )
        self._emit(EventType.TASK_SCHEDULED, task_id=task.id, agents=list(agent_ids), session_id=session.id)

        task.status = TaskStatus.EXECUTING
        snapshot = task.model_copy(deep=True)
        for agent_id in agent_ids:
            self._spawn(self._call_agent(session.id, agent_id, snapshot))

    def _spawn(self, coro: Any) -> None:
        runner = asyncio.get_running_loop().create_task(coro)
        self._inflight.add(runner)
        runner.add_done_callback(self._inflight.discard)

    async def _call_agent(self, session_id: str, agent_id: str, task: Task) -> None:
        with LogContext(task_id=task.id, agent_id=agent_id):
            try:
                collaborator = self.registry.collaborator(agent_id)
                raw = await collaborator.process_task(task)
                result = to_agent_result(raw, agent_id, task.id)
            except AgentExecutionError as exc:
                self._on_agent_failure(session_id, agent_id, exc)
            except Exception as exc:
                error = AgentExecutionError(agent_id, task.id, str(exc) or type(exc).__name__)
                self._on_agent_failure(session_id, agent_id, error)
            else:
                self._on_agent_result(session_id, agent_id, result)
            self.tick()

    # ------------------------------------------------------------------
    # Session outcomes
    # ------------------------------------------------------------------

    def _on_agent_result(self, session_id: str, agent_id: str, result: AgentResult) -> None:
        session = self._sessions.get(session_id)
        if session is None or not session.add_result(agent_id, result):
            _log.debug("discarding late result from %s for session %s", agent_id, session_id)
            return
        if session.ready:
            self._complete_session(session)

    def _on_agent_failure(self, session_id: str, agent_id: str, error: AgentExecutionError) -> None:
        session = self._sessions.get(session_id)
        if session is None or not session.add_failure(agent_id, error.message):
            _log.debug("ignoring failure from %s for closed session %s", agent_id, session_id)
            return
        task = self._tasks[session.task_id]
        self.registry.record_failure(agent_id)
        self.registry.release(agent_id, task.id)
        _log.warning("agent %s failed task %s: %s", agent_id, task.id, error.message)
        self._emit(
            EventType.AGENT_TASK_FAILED,
            task_id=task.id,
            agent_id=agent_id,
            session_id=session.id,
            error=error.message,
        )
        chain = self._chain_of(task)
        if chain is not None:
            self.recovery.record_failure_point(chain, task.id, agent_id, error.message)

        if session.exhausted:
            session.close(SessionStatus.EXHAUSTED)
            self._close_session(session)
            self._escalate(task, str(SessionExhaustedError(task.id, session.id)))
        elif session.ready:
            self._complete_session(session)

    def _complete_session(self, session: CollaborationSession) -> None:
        task = self._tasks[session.task_id]
        merged = session.converge(self.config)
        for agent_id in merged.contributors:
            self.registry.record_success(agent_id)
        self._close_session(session)
        task.status = TaskStatus.COMPLETED
        task.result = merged
        task.error = None
        task.completed_at = self._clock()
        _log.info("completed %s via %s (confidence %.2f)", task.id, merged.strategy, merged.confidence)
        self._emit(
            EventType.TASK_COMPLETED,
            task_id=task.id,
            result=merged.model_dump(mode="json"),
            session=session.model_dump(mode="json"),
        )
        chain = self._chain_of(task)
        if chain is not None and chain.status is ChainStatus.RUNNING:
            self._on_chain_task_completed(chain, task)

    def _on_session_timeout(self, session: CollaborationSession) -> None:
        task = self._tasks[session.task_id]
        outstanding = session.outstanding
        session.close(SessionStatus.TIMEOUT)
        self._close_session(session)
        chain = self._chain_of(task)
        for agent_id in outstanding:
            self.registry.record_failure(agent_id)
            if chain is not None:
                self.recovery.record_failure_point(chain, task.id, agent_id, FailureReason.SESSION_TIMEOUT)
        _log.warning("session %s for %s timed out waiting on %s", session.id, task.id, outstanding)
        self._emit(
            EventType.SESSION_TIMEOUT,
            task_id=task.id,
            session_id=session.id,
            outstanding=outstanding,
        )
        self._escalate(task, FailureReason.SESSION_TIMEOUT)

    def _close_session(self, session: CollaborationSession) -> None:
        for agent_id in session.participants:
            self.registry.release(agent_id, session.task_id)
        self.scheduler.mark_finished(session.task_id)
        self._sessions.pop(session.id, None)
        self._session_by_task.pop(session.task_id, None)

    def _escalate(self, task: Task, error: str) -> None:
        """Retry after backoff or fail permanently once retries are spent."""
        if task.status.terminal:
            return
        if self.recovery.prepare_retry(task, error):
            self.scheduler.schedule_retry(task, self.config.retry_backoff)
            self._emit(
                EventType.TASK_RETRYING,
                task_id=task.id,
                retry_count=task.retry_count,
                delay=self.config.retry_backoff,
                error=error,
            )
            return
        self._after_task_failed(task)

    def _fail_task(self, task: Task, reason: FailureReason, error: str) -> None:
        task.status = TaskStatus.FAILED
        task.failure_reason = reason
        task.error = error
        task.completed_at = self._clock()
        _log.error("task %s failed (%s): %s", task.id, reason, error)
        self._after_task_failed(task)

    def _after_task_failed(self, task: Task) -> None:
        self._emit(
            EventType.TASK_FAILED,
            task_id=task.id,
            reason=str(task.failure_reason),
            error=task.error,
        )
        chain = self._chain_of(task)
        if chain is not None and chain.status is ChainStatus.RUNNING:
            self.recovery.record_failure_point(chain, task.id, None, task.error or "")
            self.chains.mark_failed(chain, task.id)
            self._advance_chain(chain)
        self._fail_dependents(task)

    def _fail_dependents(self, task: Task) -> None:
        """Fail standalone tasks waiting on *task*, which ended without completing."""
        chain = self._chain_of(task)
        if chain is not None and not chain.status.terminal:
            return
        waiting = [
            other
            for other in self._tasks.values()
            if other.chain_id is None and task.id in other.dependencies and not other.status.terminal
        ]
        for dependent in waiting:
            self.scheduler.remove(dependent.id)
            self._fail_task(
                dependent, FailureReason.DEPENDENCY_FAILED, f"dependency {task.id!r} ended {task.status}"
            )

    def _fail_chain_dependents(self, chain: TaskChain) -> None:
        for task in chain.tasks.values():
            if task.status is not TaskStatus.COMPLETED:
                self._fail_dependents(task)

    # ------------------------------------------------------------------
    # Chains
    # ------------------------------------------------------------------

    def _chain_of(self, task: Task) -> TaskChain | None:
        return self._chains.get(task.chain_id) if task.chain_id else None

    def _advance_chain(self, chain: TaskChain) -> None:
        if chain.status is not ChainStatus.RUNNING:
            return
        reason = self.chains.unrecoverable(chain)
        if reason is not None:
            self._handle_unrecoverable(chain, reason)
            return
        with LogContext(chain_id=chain.id):
            for task_id in self.chains.next_tasks(chain, self.scheduler.system_load):
                self.chains.mark_active(chain, task_id)
                self.scheduler.schedule_task(chain.tasks[task_id])
                _log.debug("released chain task %s", task_id)

    def _on_chain_task_completed(self, chain: TaskChain, task: Task) -> None:
        newly_ready = self.chains.mark_completed(chain, task.id, task.result)
        self._emit(
            EventType.CHAIN_TASK_COMPLETED,
            chain_id=chain.id,
            task_id=task.id,
            result=task.result.model_dump(mode="json") if task.result else None,
            ready=newly_ready,
        )
        if self.chains.is_complete(chain):
            chain.status = ChainStatus.COMPLETED
            chain.completed_at = self._clock()
            metrics = self.recovery.chain_metrics(chain)
            _log.info("chain %s completed (stability %.2f)", chain.id, metrics.path_stability)
            self._emit(
                EventType.CHAIN_COMPLETED,
                chain_id=chain.id,
                results={tid: r.model_dump(mode="json") for tid, r in chain.results.items()},
                metrics=metrics.model_dump(mode="json"),
            )
            return
        self._advance_chain(chain)

    def _handle_unrecoverable(self, chain: TaskChain, reason: FailureReason) -> None:
        chain.status = ChainStatus.REMAPPING
        analysis = self.recovery.analyze(chain)
        path = self.recovery.find_alternative_path(chain, analysis)
        resettable = any(chain.tasks[tid].status is TaskStatus.FAILED for tid in chain.failed)
        _log.warning(
            "chain %s unrecoverable (%s): pattern=%s viability=%.2f",
            chain.id, reason, analysis.pattern, path.viability,
        )
        if resettable and self.recovery.can_remap(chain, path):
            reset = self.recovery.apply_remap(chain, path)
            self.chains.refresh(chain)
            chain.status = ChainStatus.RUNNING
            self._emit(
                EventType.CHAIN_REMAPPED,
                chain_id=chain.id,
                reason=str(reason),
                analysis=analysis.model_dump(mode="json"),
                path=path.model_dump(mode="json"),
                reset=reset,
                remapping_count=chain.remapping_count,
            )
            self._advance_chain(chain)
            return

        if resettable and path.viability > self.config.remap_viability_threshold:
            final = FailureReason.REMAP_LIMIT_REACHED
        else:
            final = FailureReason.NO_VIABLE_PATH
        self._fail_chain(chain, ChainStructuralFailure(chain.id, final, f"after {reason}"), analysis.model_dump(mode="json"))

    def _fail_chain(self, chain: TaskChain, failure: ChainStructuralFailure, analysis: dict[str, Any]) -> None:
        chain.status = ChainStatus.FAILED
        chain.failure_reason = failure.reason
        chain.error = str(failure)
        chain.completed_at = self._clock()
        for task_id in list(chain.active):
            self.cancel_task(task_id)
        self._fail_chain_dependents(chain)
        _log.error("%s", failure)
        self._emit(
            EventType.CHAIN_FAILED,
            chain_id=chain.id,
            reason=str(failure.reason),
            error=chain.error,
            analysis=analysis,
            metrics=self.recovery.chain_metrics(chain).model_dump(mode="json"),
        )

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    async def drain(self) -> None:
        """Wait until no agent call is in flight, including calls started meanwhile."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def start(self) -> None:
        """Tick every ``tick_interval`` seconds in a background task."""
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._loop_task = asyncio.create_task(self._run_loop(self._stop_event))
        _log.info("engine started")

    async def _run_loop(self, stop: asyncio.Event) -> None:
        while not stop.is_set():
            self.tick()
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(stop.wait(), timeout=self.config.tick_interval)

    async def stop(self, *, drain: bool = True) -> None:
        """Stop the tick loop; by default wait for in-flight agent calls."""
        if self._stop_event is not None:
            self._stop_event.set()
        if self._loop_task is not None:
            await self._loop_task
            self._loop_task = None
        if drain:
            await self.drain()
        _log.info("engine stopped")

    async def run_until_idle(self, timeout: float | None = None) -> bool:
        """Run the loop until :meth:`is_idle`; returns ``False`` on timeout."""
        started_here = not self.running
        if started_here:
            await self.start()
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        try:
            while not self.is_idle():
                if deadline is not None and loop.time() >= deadline:
                    return False
                await asyncio.sleep(self.config.tick_interval)
            return True
        finally:
            if started_here:
                await self.stop(drain=False)

    async def __aenter__(self) -> ConcordEngine:
        await self.start()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.stop()
        self.events.close()
