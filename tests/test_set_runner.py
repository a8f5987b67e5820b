import os
import sys
import asyncio
import unittest
import pytest

sys.path.append(os.path.dirname(os.path.dirname(__file__)))
from clock import ManualClock
from completion_reporter import Successor, SuccessorKind
from data_source import ExercisePlan, TemplateInfo
from errors import DataUnavailable
from set_runner import DraftInput, RunState, SetRunnerController
from set_tracker import PrescribedSet, SetLog
from settings_schema import ExtendPolicy, PersistMode, RunnerSettings


class RecordingNavigator:
    def __init__(self) -> None:
        self.successors: list[Successor] = []
        self.home = 0

    def go_to_successor(self, successor: Successor) -> None:
        self.successors.append(successor)

    def go_home(self) -> None:
        self.home += 1


class FakeDataSource:
    """In-memory data source; ``gate`` holds successor lookups until set."""

    def __init__(self, plans, template_exercises=None, templates=None, program_templates=None,
                 fail_lookups=False, gate=None):
        self.plans = {p.exercise_id: p for p in plans}
        self.template_exercises = template_exercises or {}
        self.templates = templates or {}
        self.program_templates = program_templates or {}
        self.fail_lookups = fail_lookups
        self.gate = gate

    async def load_plan(self, exercise_id):
        return self.plans.get(exercise_id)

    async def list_template_exercises(self, template_id):
        if self.gate is not None:
            await self.gate.wait()
        if self.fail_lookups:
            raise ConnectionError("offline")
        return list(self.template_exercises.get(template_id, []))

    async def fetch_template(self, template_id):
        return self.templates.get(template_id)

    async def list_program_templates(self, program_id):
        return list(self.program_templates.get(program_id, []))


class RecordingSink:
    def __init__(self, fail_saves: bool = False) -> None:
        self.calls: list[tuple] = []
        self.fail_saves = fail_saves

    async def open_session(self, template_id, exercise_id):
        self.calls.append(("open", template_id, exercise_id))
        return 7

    async def save_set(self, session_id, exercise_id, log):
        await asyncio.sleep(0)
        if self.fail_saves:
            raise ConnectionError("disk full")
        self.calls.append(("save", session_id, log.set_number))

    async def save_batch(self, session_id, exercise_id, logs):
        await asyncio.sleep(0)
        self.calls.append(("batch", session_id, [l.set_number for l in logs]))

    async def close_session(self, session_id):
        self.calls.append(("close", session_id))


def two_set_plan(exercise_id: int = 1, template_id=None) -> ExercisePlan:
    return ExercisePlan(
        exercise_id=exercise_id,
        name="Bench Press",
        sets=(PrescribedSet("8-10", 90), PrescribedSet("8-10", 90)),
        template_id=template_id,
    )


def lift(controller: SetRunnerController, weight, reps) -> bool:
    controller.set_weight(weight)
    controller.set_reps(reps)
    return controller.complete_set()


class SetRunnerControllerTest(unittest.TestCase):
    def setUp(self) -> None:
        self.clock = ManualClock()
        self.navigator = RecordingNavigator()
        self.alerts: list[int] = []

    def make(self, plan=None, **settings) -> SetRunnerController:
        return SetRunnerController(
            plan or two_set_plan(),
            clock=self.clock,
            navigator=self.navigator,
            haptics=lambda: self.alerts.append(1),
            settings=RunnerSettings(**settings),
        )

    def test_initial_snapshot(self) -> None:
        controller = self.make()
        snap = controller.snapshot()
        self.assertEqual(snap.state, RunState.LIFTING)
        self.assertEqual(snap.set_index, 0)
        self.assertEqual(snap.total_sets, 2)
        self.assertEqual(snap.current_set, PrescribedSet("8-10", 90))
        self.assertEqual(snap.draft, DraftInput(weight=0.0, reps=8))
        self.assertFalse(snap.can_start_next_set)
        self.assertIsNone(snap.outcome)

    def test_two_set_scenario(self) -> None:
        controller = self.make()
        snapshots = []
        controller.subscribe(snapshots.append)

        self.assertTrue(lift(controller, 80, 9))
        self.assertEqual(controller.state, RunState.REST)
        timer = controller.snapshot().timer
        self.assertEqual((timer.total_seconds, timer.remaining_seconds), (90, 90))

        self.assertEqual(self.clock.advance(90), 90)
        self.assertTrue(controller.timer.finished)
        self.assertTrue(controller.can_start_next_set)
        self.assertFalse(self.clock.running)

        self.assertTrue(controller.start_next_set())
        self.assertEqual(controller.state, RunState.LIFTING)
        self.assertEqual(controller.draft, DraftInput(weight=80.0, reps=9))
        self.assertEqual(controller.tracker.current_index, 1)
        self.assertEqual(controller.snapshot().timer.total_seconds, 0)

        controller.set_reps(8)
        self.assertTrue(controller.complete_set())
        self.assertEqual(controller.state, RunState.DONE)
        done = [s for s in snapshots if s.state is RunState.DONE]
        self.assertEqual(done[0].logs, (SetLog(1, 80.0, 9), SetLog(2, 80.0, 8)))

    def test_prefill_carries_last_log_forward(self) -> None:
        controller = self.make()
        lift(controller, 100, 8)
        controller.set_weight(30)
        self.clock.advance(90)
        controller.start_next_set()
        self.assertEqual(controller.draft, DraftInput(weight=100.0, reps=8))

    def test_zero_reps_rejected(self) -> None:
        controller = self.make()
        controller.set_weight(100)
        controller.set_reps(0)
        self.assertFalse(controller.complete_set())
        self.assertEqual(controller.state, RunState.LIFTING)
        self.assertEqual(controller.tracker.logs, ())
        self.assertEqual(controller.tracker.current_index, 0)

    def test_last_set_goes_straight_to_done(self) -> None:
        plan = ExercisePlan(1, "Curl", (PrescribedSet("12", 240),))
        controller = self.make(plan)
        self.assertTrue(lift(controller, 20, 12))
        self.assertEqual(controller.state, RunState.DONE)
        self.assertFalse(self.clock.running)
        self.assertEqual(controller.snapshot().timer.total_seconds, 0)
        self.assertEqual(self.alerts, [])

    def test_done_without_data_source_goes_home_and_clears_history(self) -> None:
        plan = ExercisePlan(1, "Curl", (PrescribedSet("12", 60),))
        controller = self.make(plan)
        lift(controller, 20, 12)
        self.assertEqual(self.navigator.home, 1)
        self.assertEqual(self.navigator.successors, [])
        snap = controller.snapshot()
        self.assertEqual(snap.outcome, "home")
        self.assertEqual(snap.logs, ())

    def test_set_numbers_are_sequential(self) -> None:
        plan = ExercisePlan(1, "Squat", tuple(PrescribedSet("5", 0) for _ in range(4)))
        controller = self.make(plan)
        numbers = []
        controller.subscribe(lambda s: numbers.append([l.set_number for l in s.logs]))
        for _ in range(3):
            lift(controller, 100, 5)
            self.assertTrue(controller.can_start_next_set)
            controller.start_next_set()
        lift(controller, 100, 5)
        self.assertIn([1, 2, 3, 4], numbers)

    def test_zero_rest_is_ready_immediately(self) -> None:
        plan = ExercisePlan(1, "Squat", (PrescribedSet("5", 0), PrescribedSet("5", 0)))
        controller = self.make(plan)
        lift(controller, 100, 5)
        self.assertEqual(controller.state, RunState.REST)
        self.assertTrue(controller.can_start_next_set)
        self.assertFalse(self.clock.running)
        self.assertEqual(self.alerts, [1])

    def test_rest_uses_completed_sets_prescription(self) -> None:
        plan = ExercisePlan(1, "Row", (PrescribedSet("10", 45), PrescribedSet("10", 120)))
        controller = self.make(plan)
        lift(controller, 60, 10)
        self.assertEqual(controller.timer.total, 45)

    def test_start_next_set_gated_until_finished(self) -> None:
        controller = self.make()
        lift(controller, 80, 9)
        self.clock.advance(89)
        self.assertFalse(controller.start_next_set())
        self.assertFalse(controller.start_next_set(force=True))
        self.assertEqual(controller.state, RunState.REST)
        self.clock.advance(1)
        self.assertTrue(controller.start_next_set())

    def test_early_next_set_override(self) -> None:
        controller = self.make(allow_early_next_set=True)
        lift(controller, 80, 9)
        self.clock.advance(10)
        self.assertFalse(controller.start_next_set())
        self.assertTrue(controller.start_next_set(force=True))
        self.assertEqual(controller.state, RunState.LIFTING)
        self.assertFalse(self.clock.running)
        self.assertEqual(self.alerts, [])

    def test_alert_fires_once_per_rest(self) -> None:
        controller = self.make()
        lift(controller, 80, 9)
        self.clock.advance(200)
        self.assertEqual(self.clock.ticks, 90)
        self.assertEqual(self.alerts, [1])

    def test_alert_disabled_in_settings(self) -> None:
        controller = self.make(haptics_enabled=False)
        lift(controller, 80, 9)
        self.clock.advance(90)
        self.assertEqual(self.alerts, [])
        self.assertTrue(controller.can_start_next_set)

    def test_pause_stops_countdown(self) -> None:
        controller = self.make()
        lift(controller, 80, 9)
        self.clock.advance(10)
        self.assertTrue(controller.toggle_pause())
        self.clock.advance(30)
        self.assertEqual(controller.timer.remaining, 80)
        self.assertFalse(controller.toggle_pause())
        self.clock.advance(5)
        self.assertEqual(controller.timer.remaining, 75)
        self.assertEqual(controller.state, RunState.REST)

    def test_skip_rest_finishes_immediately(self) -> None:
        controller = self.make()
        lift(controller, 80, 9)
        controller.skip_rest()
        self.assertTrue(controller.can_start_next_set)
        self.assertFalse(self.clock.running)
        self.assertEqual(self.alerts, [1])

    def test_add_rest_while_running(self) -> None:
        controller = self.make()
        lift(controller, 80, 9)
        self.clock.advance(30)
        self.assertEqual(controller.add_rest(), 30)
        self.assertEqual(controller.timer.total, 120)
        self.assertEqual(controller.timer.remaining, 90)

    def test_add_rest_capped(self) -> None:
        controller = self.make(max_rest_seconds=100)
        lift(controller, 80, 9)
        self.assertEqual(controller.add_rest(60), 10)
        self.assertEqual(controller.timer.total, 100)

    def test_add_rest_after_finish_reopens(self) -> None:
        controller = self.make()
        lift(controller, 80, 9)
        self.clock.advance(90)
        controller.add_rest(30)
        self.assertFalse(controller.timer.finished)
        self.assertFalse(controller.can_start_next_set)
        self.assertTrue(self.clock.running)
        self.clock.advance(30)
        self.assertTrue(controller.can_start_next_set)
        self.assertEqual(self.alerts, [1, 1])

    def test_add_rest_after_finish_keeps_finished(self) -> None:
        controller = self.make(extend_policy=ExtendPolicy.KEEP_FINISHED)
        lift(controller, 80, 9)
        self.clock.advance(90)
        controller.add_rest(30)
        snap = controller.snapshot()
        self.assertTrue(snap.timer.finished)
        self.assertEqual(snap.timer.total_seconds, 120)
        self.assertEqual(snap.timer.remaining_seconds, 30)
        self.assertTrue(snap.can_start_next_set)
        self.assertFalse(self.clock.running)

    def test_rest_actions_ignored_while_lifting(self) -> None:
        controller = self.make()
        self.assertEqual(controller.add_rest(30), 0)
        controller.skip_rest()
        self.assertFalse(controller.start_next_set())
        self.assertEqual(controller.state, RunState.LIFTING)
        self.assertEqual(controller.timer.total, 0)

    def test_input_ignored_during_rest(self) -> None:
        controller = self.make()
        lift(controller, 80, 9)
        controller.set_weight(10)
        self.assertFalse(controller.complete_set())
        self.assertEqual(controller.draft.weight, 80.0)
        self.assertEqual(len(controller.tracker.logs), 1)

    def test_weight_and_reps_are_clamped(self) -> None:
        controller = self.make()
        self.assertEqual(controller.set_weight("600"), 500.0)
        self.assertEqual(controller.step_weight(1), 500.0)
        self.assertEqual(controller.set_weight(""), 0.0)
        self.assertEqual(controller.step_weight(-1), 0.0)
        self.assertEqual(controller.step_weight(1), 5.0)
        self.assertEqual(controller.set_reps("12 reps"), 12)
        self.assertEqual(controller.set_reps(500), 100)
        self.assertEqual(controller.set_reps("abc"), 0)
        self.assertEqual(controller.step_reps(-1), 0)
        self.assertEqual(controller.step_reps(1), 1)

    def test_zero_step_leaves_draft_alone(self) -> None:
        controller = self.make()
        controller.set_weight(80)
        self.assertEqual(controller.step_weight(0), 80.0)
        self.assertEqual(controller.step_reps(0), 8)
        self.assertEqual(controller.draft, DraftInput(weight=80.0, reps=8))

    def test_custom_steps(self) -> None:
        controller = self.make(weight_step=2.5, reps_step=2)
        self.assertEqual(controller.step_weight(1), 2.5)
        self.assertEqual(controller.step_reps(1), 10)

    def test_every_event_publishes_new_snapshot(self) -> None:
        controller = self.make()
        snapshots = []
        controller.subscribe(snapshots.append)
        controller.set_weight(80)
        lift(controller, 80, 9)
        before = len(snapshots)
        self.clock.advance(3)
        self.assertEqual(len(snapshots), before + 3)
        self.assertEqual(
            [s.timer.remaining_seconds for s in snapshots[-3:]], [89, 88, 87]
        )
        self.assertIsNot(snapshots[-1], snapshots[-2])

    def test_unsubscribe_and_failing_listener(self) -> None:
        controller = self.make()
        seen = []

        def broken(_snap) -> None:
            raise RuntimeError("render failed")

        controller.subscribe(broken)
        unsubscribe = controller.subscribe(seen.append)
        controller.set_weight(40)
        self.assertEqual(len(seen), 1)
        unsubscribe()
        controller.set_weight(50)
        self.assertEqual(len(seen), 1)

    def test_close_stops_clock_and_input(self) -> None:
        controller = self.make()
        lift(controller, 80, 9)
        self.clock.advance(5)
        controller.close()
        self.assertTrue(controller.closed)
        self.assertFalse(self.clock.running)
        self.assertEqual(self.clock.advance(100), 0)
        self.assertEqual(controller.timer.remaining, 85)
        self.assertFalse(controller.start_next_set(force=True))
        self.assertFalse(controller.can_start_next_set)
        self.assertTrue(controller.snapshot().closed)

    def test_snapshot_as_dict(self) -> None:
        controller = self.make()
        data = controller.snapshot().as_dict()
        self.assertEqual(data["state"], "lifting")
        self.assertEqual(data["set_number"], 1)
        self.assertEqual(data["target_reps"], "8-10")
        self.assertEqual(data["rest_seconds"], 90)
        self.assertEqual(data["draft"], {"weight": 0.0, "reps": 8})
        self.assertEqual(data["timer"]["display"], "0:00")
        self.assertIsNone(data["last_log"])


def make_async_controller(plan, data_source=None, sink=None, **settings):
    navigator = RecordingNavigator()
    clock = ManualClock()
    controller = SetRunnerController(
        plan,
        clock=clock,
        navigator=navigator,
        data_source=data_source,
        sink=sink,
        settings=RunnerSettings(**settings),
    )
    return controller, navigator, clock


async def finish(controller: SetRunnerController, clock: ManualClock) -> None:
    for _ in range(controller.tracker.total_sets - 1):
        lift(controller, 80, 8)
        clock.advance(controller.timer.total)
        controller.start_next_set()
    lift(controller, 80, 8)
    await controller.drain()


@pytest.mark.asyncio
async def test_successor_is_next_exercise_in_template():
    plan = two_set_plan(exercise_id=1, template_id=10)
    source = FakeDataSource([plan], template_exercises={10: [3, 1, 2]})
    controller, navigator, clock = make_async_controller(plan, source)
    await finish(controller, clock)
    assert navigator.successors == [Successor(SuccessorKind.EXERCISE, 2)]
    assert navigator.home == 0
    snap = controller.snapshot()
    assert snap.outcome == "successor"
    assert snap.successor == Successor(SuccessorKind.EXERCISE, 2)
    assert [l.set_number for l in snap.logs] == [1, 2]


@pytest.mark.asyncio
async def test_successor_is_next_template_in_program():
    plan = two_set_plan(exercise_id=2, template_id=10)
    source = FakeDataSource(
        [plan],
        template_exercises={10: [1, 2]},
        templates={10: TemplateInfo(10, 5, "Push")},
        program_templates={5: [11, 10, 12]},
    )
    controller, navigator, clock = make_async_controller(plan, source)
    await finish(controller, clock)
    assert navigator.successors == [Successor(SuccessorKind.WORKOUT, 11)]


@pytest.mark.asyncio
async def test_no_successor_goes_home():
    plan = two_set_plan(exercise_id=2, template_id=10)
    source = FakeDataSource(
        [plan],
        template_exercises={10: [1, 2]},
        templates={10: TemplateInfo(10, 5, "Push")},
        program_templates={5: [10]},
    )
    controller, navigator, clock = make_async_controller(plan, source)
    await finish(controller, clock)
    assert navigator.successors == []
    assert navigator.home == 1
    assert controller.snapshot().logs == ()


@pytest.mark.asyncio
async def test_failed_lookup_goes_home():
    plan = two_set_plan(exercise_id=1, template_id=10)
    source = FakeDataSource([plan], fail_lookups=True)
    controller, navigator, clock = make_async_controller(plan, source)
    await finish(controller, clock)
    assert navigator.home == 1
    assert controller.snapshot().outcome == "home"


@pytest.mark.asyncio
async def test_teardown_discards_pending_lookup():
    plan = two_set_plan(exercise_id=1, template_id=10)
    gate = asyncio.Event()
    source = FakeDataSource([plan], template_exercises={10: [1, 2]}, gate=gate)
    controller, navigator, clock = make_async_controller(plan, source)
    lift(controller, 80, 8)
    clock.advance(90)
    controller.start_next_set()
    lift(controller, 80, 8)
    assert controller.state is RunState.DONE
    await asyncio.sleep(0)
    controller.close()
    gate.set()
    await asyncio.sleep(0.01)
    await controller.drain()
    assert navigator.successors == []
    assert navigator.home == 0
    assert controller.snapshot().outcome is None


@pytest.mark.asyncio
async def test_from_data_source_loads_plan():
    plan = two_set_plan(exercise_id=4, template_id=None)
    source = FakeDataSource([plan])
    controller = await SetRunnerController.from_data_source(
        4, source, clock=ManualClock(), navigator=RecordingNavigator()
    )
    assert controller.plan == plan
    assert controller.data_source is source


@pytest.mark.asyncio
async def test_from_data_source_without_plan():
    with pytest.raises(DataUnavailable):
        await SetRunnerController.from_data_source(
            99, FakeDataSource([]), clock=ManualClock(), navigator=RecordingNavigator()
        )


@pytest.mark.asyncio
async def test_per_set_persistence_order():
    plan = two_set_plan(exercise_id=1, template_id=10)
    sink = RecordingSink()
    controller, _nav, clock = make_async_controller(plan, sink=sink)
    assert await controller.open_session() == 7
    await finish(controller, clock)
    assert sink.calls == [
        ("open", 10, 1),
        ("save", 7, 1),
        ("save", 7, 2),
        ("close", 7),
    ]


@pytest.mark.asyncio
async def test_batch_persistence():
    plan = two_set_plan(exercise_id=1)
    sink = RecordingSink()
    controller, _nav, clock = make_async_controller(
        plan, sink=sink, persist_mode=PersistMode.BATCH
    )
    await controller.open_session()
    await finish(controller, clock)
    assert sink.calls == [("open", None, 1), ("batch", 7, [1, 2]), ("close", 7)]


@pytest.mark.asyncio
async def test_persistence_failure_does_not_block_run():
    plan = two_set_plan(exercise_id=1)
    sink = RecordingSink(fail_saves=True)
    controller, navigator, clock = make_async_controller(plan, sink=sink)
    await controller.open_session()
    await finish(controller, clock)
    assert controller.state is RunState.DONE
    assert navigator.home == 1
    assert sink.calls[-1] == ("close", 7)


@pytest.mark.asyncio
async def test_without_session_nothing_is_written():
    plan = two_set_plan(exercise_id=1)
    sink = RecordingSink()
    controller, _nav, clock = make_async_controller(plan, sink=sink)
    await finish(controller, clock)
    assert sink.calls == []
