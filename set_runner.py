"""Guided runner for the prescribed sets of one exercise.

The controller moves between three states::

    lifting --complete_set--> rest --start_next_set--> lifting
    lifting --complete_set (last set)--> done

Every event and every clock tick produces a new immutable :class:`RunSnapshot`
which is handed to subscribers; presentation is a function of the latest one.
Async collaborators (persistence, successor lookup) run as tasks on the
running loop and never block input handling.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional, Union

from clock import Clock
from completion_reporter import CancellationScope, CompletionReporter, Navigator, Successor
from data_source import DataSource, ExercisePlan, PersistenceSink, load_plan_or_none, require_plan
from errors import InvalidInput
from rest_timer import RestTimer, TimerState
from set_tracker import PrescribedSet, SetLog, SetProgressTracker
from settings_schema import ExtendPolicy, PersistMode, RunnerSettings
from tools import InputTools, MathTools

logger = logging.getLogger(__name__)

Listener = Callable[["RunSnapshot"], None]


class RunState(str, Enum):
    LIFTING = "lifting"
    REST = "rest"
    DONE = "done"


@dataclass(frozen=True)
class DraftInput:
    weight: float = 0.0
    reps: int = 0


@dataclass(frozen=True)
class RunSnapshot:
    state: RunState
    exercise_id: int
    exercise_name: str
    set_index: int
    total_sets: int
    current_set: Optional[PrescribedSet]
    draft: DraftInput
    timer: TimerState
    logs: tuple[SetLog, ...]
    can_start_next_set: bool
    outcome: Optional[str] = None
    successor: Optional[Successor] = None
    session_id: Optional[int] = None
    closed: bool = False
    last_log: Optional[SetLog] = field(default=None)

    def as_dict(self) -> dict:
        return {
            "state": self.state.value,
            "exercise_id": self.exercise_id,
            "exercise_name": self.exercise_name,
            "set_index": self.set_index,
            "set_number": self.set_index + 1,
            "total_sets": self.total_sets,
            "target_reps": self.current_set.target_reps_label if self.current_set else None,
            "rest_seconds": self.current_set.rest_seconds if self.current_set else None,
            "draft": {"weight": self.draft.weight, "reps": self.draft.reps},
            "timer": self.timer.as_dict(),
            "logs": [log.as_dict() for log in self.logs],
            "last_log": self.last_log.as_dict() if self.last_log else None,
            "can_start_next_set": self.can_start_next_set,
            "outcome": self.outcome,
            "successor": self.successor.as_dict() if self.successor else None,
            "session_id": self.session_id,
            "closed": self.closed,
        }


class SetRunnerController:
    """Walks a user through the prescribed sets of one exercise."""

    def __init__(
        self,
        plan: ExercisePlan,
        *,
        clock: Clock,
        navigator: Navigator,
        data_source: Optional[DataSource] = None,
        sink: Optional[PersistenceSink] = None,
        haptics: Optional[Callable[[], None]] = None,
        settings: Optional[RunnerSettings] = None,
    ) -> None:
        self.plan = plan
        self.settings = settings or RunnerSettings()
        self.clock = clock
        self.navigator = navigator
        self.data_source = data_source
        self.sink = sink
        self.haptics = haptics
        self.tracker = SetProgressTracker(plan.sets)
        self.timer = RestTimer(
            on_expire=self._on_rest_expired, max_seconds=self.settings.max_rest_seconds
        )
        self.reporter = (
            CompletionReporter(data_source, self) if data_source is not None else None
        )
        self.scope = CancellationScope()
        self.session_id: Optional[int] = None
        self._state = RunState.LIFTING
        self._draft = self._default_draft()
        self._listeners: list[Listener] = []
        self._outcome: Optional[str] = None
        self._successor: Optional[Successor] = None
        self._closed = False
        self._write_lock = asyncio.Lock()
        self._writes: set[asyncio.Task] = set()

    @classmethod
    async def from_data_source(
        cls,
        exercise_id: int,
        data_source: DataSource,
        **kwargs,
    ) -> "SetRunnerController":
        """Load the plan for ``exercise_id`` once and build a controller for it.

        Raises :class:`DataUnavailable` when no plan can be loaded.
        """
        plan = require_plan(await load_plan_or_none(data_source, exercise_id), exercise_id)
        return cls(plan, data_source=data_source, **kwargs)

    # state -----------------------------------------------------------------

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def draft(self) -> DraftInput:
        return self._draft

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def can_start_next_set(self) -> bool:
        if self._state is not RunState.REST or self._closed:
            return False
        return self.timer.finished

    def snapshot(self) -> RunSnapshot:
        current = self.tracker.current_set() if self._state is not RunState.DONE else None
        return RunSnapshot(
            state=self._state,
            exercise_id=self.plan.exercise_id,
            exercise_name=self.plan.name,
            set_index=self.tracker.current_index,
            total_sets=self.tracker.total_sets,
            current_set=current,
            draft=self._draft,
            timer=self.timer.state,
            logs=self.tracker.logs,
            can_start_next_set=self.can_start_next_set,
            outcome=self._outcome,
            successor=self._successor,
            session_id=self.session_id,
            closed=self._closed,
            last_log=self.tracker.last_log(),
        )

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register ``listener`` for snapshots; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self) -> None:
        snap = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snap)
            except Exception:
                logger.exception("snapshot listener failed")

    # draft input -------------------------------------------------------------

    def _default_draft(self) -> DraftInput:
        current = self.tracker.current_set()
        label = current.target_reps_label if current else ""
        return DraftInput(
            weight=0.0,
            reps=MathTools.clamp_reps(InputTools.leading_reps(label), self.settings.max_reps),
        )

    def _accepts_input(self, action: str) -> bool:
        if self._closed:
            logger.debug("%s ignored: run closed", action)
            return False
        if self._state is not RunState.LIFTING:
            logger.debug("%s ignored in %s", action, self._state.value)
            return False
        return True

    def set_weight(self, value: Union[str, float, int, None]) -> float:
        """Direct weight entry; strings are stripped to digits, empty means 0."""
        if not self._accepts_input("set_weight"):
            return self._draft.weight
        raw = InputTools.parse_entry(value) if isinstance(value, str) or value is None else value
        weight = MathTools.clamp_weight(raw, self.settings.max_weight)
        self._draft = DraftInput(weight=weight, reps=self._draft.reps)
        self._publish()
        return weight

    def set_reps(self, value: Union[str, int, None]) -> int:
        """Direct reps entry; strings are stripped to digits, empty means 0."""
        if not self._accepts_input("set_reps"):
            return self._draft.reps
        raw = InputTools.parse_entry(value) if isinstance(value, str) or value is None else value
        reps = MathTools.clamp_reps(raw, self.settings.max_reps)
        self._draft = DraftInput(weight=self._draft.weight, reps=reps)
        self._publish()
        return reps

    def step_weight(self, direction: int = 1) -> float:
        if not self._accepts_input("step_weight") or direction == 0:
            return self._draft.weight
        step = self.settings.weight_step if direction > 0 else -self.settings.weight_step
        return self.set_weight(self._draft.weight + step)

    def step_reps(self, direction: int = 1) -> int:
        if not self._accepts_input("step_reps") or direction == 0:
            return self._draft.reps
        step = self.settings.reps_step if direction > 0 else -self.settings.reps_step
        return self.set_reps(self._draft.reps + step)

    # lifting -> rest / done --------------------------------------------------

    def complete_set(self) -> bool:
        """Record the draft for the current set and move on.

        Returns False, leaving every piece of state untouched, when the input
        is rejected or the runner is not lifting.
        """
        if not self._accepts_input("complete_set"):
            return False
        completed = self.tracker.current_set()
        try:
            log = self.tracker.record_completion(self._draft.weight, self._draft.reps)
        except InvalidInput as e:
            logger.warning("set %d rejected: %s", self.tracker.current_index + 1, e)
            return False
        logger.debug("set %d recorded: %s x %s", log.set_number, log.weight, log.reps)
        if self.settings.persist_mode is PersistMode.PER_SET:
            self._enqueue_write(self._save_set(log))
        if self.tracker.is_last_set():
            self._enter_done()
        else:
            self._enter_rest(completed.rest_seconds)
        return True

    def _enter_rest(self, rest_seconds: int) -> None:
        self._state = RunState.REST
        self.timer.start(rest_seconds)
        if not self.timer.finished:
            self.clock.start(self._on_tick)
        logger.debug("resting %ss", self.timer.total)
        self._publish()

    def _enter_done(self) -> None:
        self._state = RunState.DONE
        self.clock.stop()
        self.timer.reset()
        logger.debug("exercise %s done", self.plan.exercise_id)
        logs = self.tracker.logs
        if self.settings.persist_mode is PersistMode.BATCH:
            self._enqueue_write(self._save_batch(logs))
        self._enqueue_write(self._close_session())
        self._publish()
        if self.reporter is None:
            self.go_home()
            return
        try:
            self.scope.spawn(
                self.reporter.report(self.plan.exercise_id, self.scope, self.plan.template_id)
            )
        except RuntimeError:
            logger.warning("no running loop; skipping successor lookup")
            self.go_home()

    # rest --------------------------------------------------------------------

    def _on_tick(self) -> None:
        if self._closed or self._state is not RunState.REST:
            self.clock.stop()
            return
        self.timer.tick()
        self._publish()

    def _on_rest_expired(self) -> None:
        self.clock.stop()
        logger.debug("rest over")
        if self.haptics is not None and self.settings.haptics_enabled:
            try:
                self.haptics()
            except Exception:
                logger.exception("rest-over alert failed")

    def _accepts_rest_action(self, action: str) -> bool:
        if self._closed or self._state is not RunState.REST:
            logger.debug("%s ignored in %s", action, self._state.value)
            return False
        return True

    def add_rest(self, seconds: Optional[int] = None) -> int:
        """Extend the current rest; returns the seconds actually added."""
        if not self._accepts_rest_action("add_rest"):
            return 0
        delta = self.settings.rest_increment_seconds if seconds is None else seconds
        was_finished = self.timer.finished
        applied = self.timer.extend(delta)
        if was_finished and self.settings.extend_policy is ExtendPolicy.REOPEN:
            if self.timer.reopen():
                self.clock.start(self._on_tick)
        self._publish()
        return applied

    def skip_rest(self) -> None:
        if not self._accepts_rest_action("skip_rest"):
            return
        self.timer.skip()
        self.timer.check_expired()
        self._publish()

    def toggle_pause(self) -> bool:
        """Pause or resume the rest countdown; returns the new paused flag."""
        if not self._accepts_rest_action("toggle_pause"):
            return self.timer.paused
        self.timer.toggle_pause()
        self._publish()
        return self.timer.paused

    def start_next_set(self, force: bool = False) -> bool:
        """Leave rest for the next set, carrying the last logged values forward.

        Only allowed once the rest has finished, unless ``force`` is given and
        early starts are enabled in the settings.
        """
        if not self._accepts_rest_action("start_next_set"):
            return False
        if not self.timer.finished:
            if not (force and self.settings.allow_early_next_set):
                logger.debug("start_next_set blocked: rest still running")
                return False
            logger.debug("starting next set early")
        if not self.tracker.advance():
            logger.warning("no set left to advance to")
            return False
        last = self.tracker.last_log()
        if last is not None:
            self._draft = DraftInput(weight=last.weight, reps=last.reps)
        self.clock.stop()
        self.timer.reset()
        self._state = RunState.LIFTING
        self._publish()
        return True

    # navigation --------------------------------------------------------------

    def go_to_successor(self, successor: Successor) -> None:
        if self._outcome is not None:
            return
        self._outcome = "successor"
        self._successor = successor
        logger.info("exercise %s done; next %s %s", self.plan.exercise_id, successor.kind.value, successor.target_id)
        self.navigator.go_to_successor(successor)
        self._publish()

    def go_home(self) -> None:
        if self._outcome is not None:
            return
        self._outcome = "home"
        logger.info("exercise %s done; returning home", self.plan.exercise_id)
        self.navigator.go_home()
        self.tracker.reset()
        self._publish()

    def close(self) -> None:
        """Tear the run down: no more ticks, pending lookups are discarded."""
        if self._closed:
            return
        self._closed = True
        self.clock.stop()
        self.scope.cancel()
        self._publish()
        self._listeners.clear()

    # persistence -------------------------------------------------------------

    async def open_session(self) -> Optional[int]:
        """Open a persistence session; failures leave the run unpersisted."""
        if self.sink is None or self.session_id is not None:
            return self.session_id
        try:
            self.session_id = await self.sink.open_session(self.plan.template_id, self.plan.exercise_id)
        except Exception as e:
            logger.warning("could not open session: %s", e)
            self.session_id = None
        return self.session_id

    def _enqueue_write(self, coro) -> None:
        if self.sink is None or self.session_id is None:
            coro.close()
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning("no running loop; set not persisted")
            return
        task = loop.create_task(self._serialized(coro))
        self._writes.add(task)
        task.add_done_callback(self._writes.discard)

    async def _serialized(self, coro) -> None:
        async with self._write_lock:
            try:
                await coro
            except Exception as e:
                logger.warning("persistence failed: %s", e)

    async def _save_set(self, log: SetLog) -> None:
        await self.sink.save_set(self.session_id, self.plan.exercise_id, log)

    async def _save_batch(self, logs: tuple[SetLog, ...]) -> None:
        await self.sink.save_batch(self.session_id, self.plan.exercise_id, logs)

    async def _close_session(self) -> None:
        await self.sink.close_session(self.session_id)

    async def drain(self) -> None:
        """Wait for pending persistence writes and the successor lookup."""
        pending = list(self._writes) + self.scope.pending
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
