import logging
from typing import Callable

from fastapi import FastAPI, HTTPException

from clock import AsyncioClock, Clock
from completion_reporter import Successor
from config import load_settings
from data_source import (
    NotificationHaptics,
    SqliteDataSource,
    SqlitePersistenceSink,
    load_plan_or_none,
)
from db import (
    NotificationRepository,
    ProgramRepository,
    SessionRepository,
    SetLogRepository,
    TemplateExerciseRepository,
    TemplateSetRepository,
    TemplateWorkoutRepository,
)
from set_runner import SetRunnerController

logger = logging.getLogger(__name__)


class RunNavigator:
    """Keeps the terminal signal of a run so API clients can follow it."""

    def __init__(self) -> None:
        self.signal: dict | None = None

    def go_to_successor(self, successor: Successor) -> None:
        self.signal = {"action": "successor", **successor.as_dict()}

    def go_home(self) -> None:
        self.signal = {"action": "home"}


class RunnerAPI:
    """Provides REST endpoints for building plans and running sets."""

    def __init__(
        self,
        db_path: str = "workout.db",
        yaml_path: str = "settings.yaml",
        *,
        clock_factory: Callable[[], Clock] = AsyncioClock,
    ) -> None:
        self.db_path = db_path
        self.settings = load_settings(yaml_path)
        self.clock_factory = clock_factory
        self.programs = ProgramRepository(db_path)
        self.template_workouts = TemplateWorkoutRepository(db_path)
        self.template_exercises = TemplateExerciseRepository(db_path)
        self.template_sets = TemplateSetRepository(db_path)
        self.sessions = SessionRepository(db_path)
        self.set_logs = SetLogRepository(db_path)
        self.notifications = NotificationRepository(db_path)
        self.data_source = SqliteDataSource(db_path, self.settings.default_rest_seconds)
        self.sink = SqlitePersistenceSink(db_path)
        self.haptics = NotificationHaptics(db_path)
        self.runs: dict[int, tuple[SetRunnerController, RunNavigator]] = {}
        self._next_run_id = 1
        self.app = FastAPI(
            title="Set Runner API",
            description="REST API for guided set logging with rest timers",
        )
        self._setup_routes()

    def _run(self, run_id: int) -> tuple[SetRunnerController, RunNavigator]:
        try:
            return self.runs[run_id]
        except KeyError:
            raise HTTPException(status_code=404, detail="run not found")

    def _run_payload(self, run_id: int) -> dict:
        controller, navigator = self._run(run_id)
        data = controller.snapshot().as_dict()
        data["run_id"] = run_id
        data["navigation"] = navigator.signal
        return data

    async def _served_payload(self, run_id: int) -> dict:
        """Return the run payload, dropping the run once its outcome is served."""
        controller, _nav = self._run(run_id)
        await controller.drain()
        data = self._run_payload(run_id)
        if data["outcome"] is not None:
            controller.close()
            del self.runs[run_id]
            logger.info("run %s finished with %s", run_id, data["outcome"])
        return data

    def close_all_runs(self) -> None:
        for controller, _nav in self.runs.values():
            controller.close()
        self.runs.clear()

    def _setup_routes(self) -> None:
        @self.app.get("/health")
        def health():
            return {"status": "ok"}

        @self.app.post("/programs")
        def create_program(title: str):
            return {"id": self.programs.create(title)}

        @self.app.get("/programs")
        def list_programs():
            return [{"id": pid, "title": title} for pid, title in self.programs.fetch_all()]

        @self.app.post("/programs/{program_id}/activate")
        def activate_program(program_id: int):
            try:
                self.programs.activate(program_id)
                return {"status": "activated"}
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @self.app.get("/programs/{program_id}/templates")
        def list_program_templates(program_id: int):
            return [
                {"id": tid, "name": name}
                for tid, name in self.template_workouts.fetch_for_program(program_id)
            ]

        @self.app.get("/today")
        def today():
            active = self.programs.active_program()
            if active is None:
                return {"program": None, "template": None}
            pid, title = active
            templates = self.template_workouts.fetch_for_program(pid)
            template = None
            if templates:
                template = {"id": templates[0][0], "name": templates[0][1]}
            return {"program": {"id": pid, "title": title}, "template": template}

        @self.app.post("/templates")
        def create_template(name: str, program_id: int | None = None):
            if program_id is not None:
                try:
                    self.programs.fetch_detail(program_id)
                except ValueError as e:
                    raise HTTPException(status_code=400, detail=str(e))
            return {"id": self.template_workouts.create(name, program_id)}

        @self.app.get("/templates/{template_id}")
        def get_template(template_id: int):
            try:
                tid, program_id, name = self.template_workouts.fetch_detail(template_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"id": tid, "program_id": program_id, "name": name}

        @self.app.delete("/templates/{template_id}")
        def delete_template(template_id: int):
            try:
                self.template_workouts.delete(template_id)
                return {"status": "deleted"}
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))

        @self.app.post("/templates/{template_id}/exercises")
        def add_template_exercise(template_id: int, name: str):
            try:
                self.template_workouts.fetch_detail(template_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return {"id": self.template_exercises.add(template_id, name)}

        @self.app.get("/templates/{template_id}/exercises")
        def list_template_exercises(template_id: int):
            return [
                {"id": ex_id, "name": name}
                for ex_id, name in self.template_exercises.fetch_for_template(template_id)
            ]

        @self.app.post("/template_exercises/{exercise_id}/sets")
        def add_template_set(exercise_id: int, target_reps: str, rest_seconds: int = 90):
            try:
                sid = self.template_sets.add(exercise_id, target_reps, rest_seconds)
                return {"id": sid}
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

        @self.app.get("/template_exercises/{exercise_id}/sets")
        def list_template_sets(exercise_id: int):
            return [
                {"id": sid, "target_reps": reps, "rest_seconds": rest}
                for sid, reps, rest in self.template_sets.fetch_for_exercise(exercise_id)
            ]

        @self.app.get("/exercises/{exercise_id}/plan")
        async def exercise_plan(exercise_id: int):
            plan = await load_plan_or_none(self.data_source, exercise_id)
            if plan is None:
                raise HTTPException(status_code=404, detail="exercise has no prescribed sets")
            return {
                "exercise_id": plan.exercise_id,
                "template_id": plan.template_id,
                "name": plan.name,
                "sets": [
                    {"target_reps": s.target_reps_label, "rest_seconds": s.rest_seconds}
                    for s in plan.sets
                ],
            }

        @self.app.post("/runs")
        async def start_run(exercise_id: int):
            plan = await load_plan_or_none(self.data_source, exercise_id)
            if plan is None:
                raise HTTPException(status_code=404, detail="exercise has no prescribed sets")
            navigator = RunNavigator()
            controller = SetRunnerController(
                plan,
                clock=self.clock_factory(),
                navigator=navigator,
                data_source=self.data_source,
                sink=self.sink,
                haptics=self.haptics,
                settings=self.settings,
            )
            await controller.open_session()
            await controller.drain()
            if plan.template_id is not None:
                self.template_workouts.update_last_used(plan.template_id)
            run_id = self._next_run_id
            self._next_run_id += 1
            self.runs[run_id] = (controller, navigator)
            logger.info("run %s started for exercise %s", run_id, exercise_id)
            return self._run_payload(run_id)

        @self.app.get("/runs/{run_id}")
        async def get_run(run_id: int):
            return await self._served_payload(run_id)

        @self.app.post("/runs/{run_id}/weight")
        async def set_weight(
            run_id: int,
            value: str | None = None,
            amount: float | None = None,
            step: int | None = None,
        ):
            # value is typed text kept to digits; amount is a number
            controller, _nav = self._run(run_id)
            if step is not None:
                controller.step_weight(step)
            elif amount is not None:
                controller.set_weight(amount)
            else:
                controller.set_weight(value)
            return self._run_payload(run_id)

        @self.app.post("/runs/{run_id}/reps")
        async def set_reps(
            run_id: int,
            value: str | None = None,
            amount: int | None = None,
            step: int | None = None,
        ):
            controller, _nav = self._run(run_id)
            if step is not None:
                controller.step_reps(step)
            elif amount is not None:
                controller.set_reps(amount)
            else:
                controller.set_reps(value)
            return self._run_payload(run_id)

        @self.app.post("/runs/{run_id}/complete")
        async def complete_set(run_id: int):
            controller, _nav = self._run(run_id)
            if not controller.complete_set():
                raise HTTPException(
                    status_code=400,
                    detail="set rejected; reps must be positive and weight non-negative",
                )
            return await self._served_payload(run_id)

        @self.app.post("/runs/{run_id}/rest/add")
        async def add_rest(run_id: int, seconds: int | None = None):
            controller, _nav = self._run(run_id)
            controller.add_rest(seconds)
            return self._run_payload(run_id)

        @self.app.post("/runs/{run_id}/rest/skip")
        async def skip_rest(run_id: int):
            controller, _nav = self._run(run_id)
            controller.skip_rest()
            return self._run_payload(run_id)

        @self.app.post("/runs/{run_id}/rest/pause")
        async def toggle_pause(run_id: int):
            controller, _nav = self._run(run_id)
            controller.toggle_pause()
            return self._run_payload(run_id)

        @self.app.post("/runs/{run_id}/next")
        async def start_next_set(run_id: int, force: bool = False):
            controller, _nav = self._run(run_id)
            if not controller.start_next_set(force=force):
                raise HTTPException(status_code=409, detail="rest period has not finished")
            return self._run_payload(run_id)

        @self.app.delete("/runs/{run_id}")
        async def close_run(run_id: int):
            controller, _nav = self._run(run_id)
            await controller.drain()
            controller.close()
            del self.runs[run_id]
            return {"status": "closed"}

        @self.app.get("/sessions/{session_id}/sets")
        def list_session_sets(session_id: int):
            try:
                self.sessions.fetch_detail(session_id)
            except ValueError as e:
                raise HTTPException(status_code=404, detail=str(e))
            return [
                {"id": lid, "exercise": name, "set_number": num, "weight": weight, "reps": reps}
                for lid, name, num, weight, reps, _at in self.set_logs.fetch_for_session(session_id)
            ]

        @self.app.get("/notifications")
        def list_notifications(unread_only: bool = False):
            return self.notifications.fetch_all(unread_only)

        @self.app.post("/notifications/{nid}/read")
        def mark_notification_read(nid: int):
            self.notifications.mark_read(nid)
            return {"status": "read"}


api = RunnerAPI()
app = api.app

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app)
