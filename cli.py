import argparse
import asyncio
import logging
import os
from typing import Optional

from clock import AsyncioClock
from completion_reporter import Successor
from config import load_settings, save_settings
from data_source import SqliteDataSource, SqlitePersistenceSink
from db import (
    ProgramRepository,
    SetLogRepository,
    TemplateExerciseRepository,
    TemplateSetRepository,
    TemplateWorkoutRepository,
)
from errors import DataUnavailable
from set_runner import RunSnapshot, RunState, SetRunnerController
from settings_schema import validate_settings

RUN_HELP = (
    "commands: w <kg> | r <reps> | w+ | w- | r+ | r- | done | add [sec] | "
    "skip | pause | next | next! | quit"
)


def demo_data(db_path: str) -> Optional[int]:
    """Populate the database with a demo program if empty.

    Returns the id of the first demo exercise, or None when data already exists.
    """
    programs = ProgramRepository(db_path)
    if programs.fetch_all():
        print("Database already contains programs")
        return None
    templates = TemplateWorkoutRepository(db_path)
    exercises = TemplateExerciseRepository(db_path)
    sets = TemplateSetRepository(db_path)
    pid = programs.create("Demo Program")
    programs.activate(pid)
    push = templates.create("Push Day", pid)
    bench = exercises.add(push, "Bench Press")
    sets.add(bench, "8-10", 90)
    sets.add(bench, "8-10", 90)
    ohp = exercises.add(push, "Overhead Press")
    sets.add(ohp, "6-8", 120)
    sets.add(ohp, "6-8", 120)
    sets.add(ohp, "6-8", 0)
    pull = templates.create("Pull Day", pid)
    row = exercises.add(pull, "Barbell Row")
    sets.add(row, "10", 60)
    print("Demo data inserted")
    return bench


def show_today(db_path: str) -> None:
    programs = ProgramRepository(db_path)
    active = programs.active_program()
    if active is None:
        print("No active program")
        return
    pid, title = active
    print(f"Program: {title}")
    templates = TemplateWorkoutRepository(db_path)
    exercises = TemplateExerciseRepository(db_path)
    sets = TemplateSetRepository(db_path)
    for tid, name in templates.fetch_for_program(pid):
        print(f"  [{tid}] {name}")
        for ex_id, ex_name in exercises.fetch_for_template(tid):
            labels = ", ".join(reps for _sid, reps, _rest in sets.fetch_for_exercise(ex_id))
            print(f"    ({ex_id}) {ex_name}: {labels}")


def export_session(db_path: str, session_id: int, fmt: str, output_dir: str = ".") -> str:
    logs = SetLogRepository(db_path)
    if fmt == "csv":
        data = logs.export_session_csv(session_id)
    else:
        data = logs.export_session_json(session_id)
    out_path = os.path.join(output_dir, f"session_{session_id}.{fmt}")
    with open(out_path, "w", encoding="utf-8") as f:
        f.write(data)
    return out_path


def render(snap: RunSnapshot) -> str:
    """Return a one-line status for the latest run snapshot."""
    if snap.state is RunState.DONE:
        if snap.outcome == "successor" and snap.successor is not None:
            return f"{snap.exercise_name} done, next {snap.successor.kind.value} {snap.successor.target_id}"
        if snap.outcome == "home":
            return f"{snap.exercise_name} done, back to home"
        return f"{snap.exercise_name} done"
    header = f"{snap.exercise_name} set {snap.set_index + 1}/{snap.total_sets}"
    if snap.state is RunState.REST:
        status = "ready" if snap.can_start_next_set else snap.timer.phase.value
        return f"{header} rest {snap.timer.display} ({status})"
    target = snap.current_set.target_reps_label if snap.current_set else ""
    return f"{header} target {target}: {snap.draft.weight:g} x {snap.draft.reps}"


class ConsoleNavigator:
    def __init__(self) -> None:
        self.finished = asyncio.Event()

    def go_to_successor(self, successor: Successor) -> None:
        print(f"Up next: {successor.kind.value} {successor.target_id}")
        self.finished.set()

    def go_home(self) -> None:
        print("Exercise complete")
        self.finished.set()


def handle_command(controller: SetRunnerController, line: str) -> bool:
    """Apply one console command; returns False when the user quits."""
    parts = line.strip().split()
    if not parts:
        return True
    cmd, args = parts[0], parts[1:]
    if cmd == "quit":
        return False
    if cmd == "w" and args:
        controller.set_weight(args[0])
    elif cmd == "r" and args:
        controller.set_reps(args[0])
    elif cmd in ("w+", "w-"):
        controller.step_weight(1 if cmd == "w+" else -1)
    elif cmd in ("r+", "r-"):
        controller.step_reps(1 if cmd == "r+" else -1)
    elif cmd == "done":
        if not controller.complete_set():
            print("Set rejected: reps must be positive")
    elif cmd == "add":
        controller.add_rest(int(args[0]) if args and args[0].lstrip("-").isdigit() else None)
    elif cmd == "skip":
        controller.skip_rest()
    elif cmd == "pause":
        controller.toggle_pause()
    elif cmd in ("next", "next!"):
        if not controller.start_next_set(force=cmd == "next!"):
            print("Rest is not over yet")
    else:
        print(RUN_HELP)
    return True


async def run_exercise(db_path: str, yaml_path: str, exercise_id: int) -> None:
    settings = load_settings(yaml_path)
    navigator = ConsoleNavigator()
    controller = await SetRunnerController.from_data_source(
        exercise_id,
        SqliteDataSource(db_path, settings.default_rest_seconds),
        clock=AsyncioClock(),
        navigator=navigator,
        sink=SqlitePersistenceSink(db_path),
        haptics=lambda: print("\aRest over!"),
        settings=settings,
    )
    session_id = await controller.open_session()
    if session_id is not None:
        print(f"Session {session_id}")

    def show(snap: RunSnapshot) -> None:
        # countdown echoed every 15 seconds and at zero
        if snap.state is RunState.REST and snap.timer.remaining_seconds % 15 == 0:
            print(render(snap))

    unsubscribe = controller.subscribe(show)
    print(render(controller.snapshot()))
    print(RUN_HELP)
    try:
        while not navigator.finished.is_set():
            line = await asyncio.to_thread(input, "> ")
            if not handle_command(controller, line):
                break
            await controller.drain()
            print(render(controller.snapshot()))
        await controller.drain()
    finally:
        unsubscribe()
        controller.close()


def main(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Set runner commands")
    parser.add_argument("--yaml", default="settings.yaml")
    sub = parser.add_subparsers(dest="cmd", required=True)

    demo = sub.add_parser("demo")
    demo.add_argument("--db", default="workout.db")

    today = sub.add_parser("today")
    today.add_argument("--db", default="workout.db")

    run = sub.add_parser("run")
    run.add_argument("--db", default="workout.db")
    run.add_argument("--exercise", type=int, required=True)

    exp = sub.add_parser("export")
    exp.add_argument("--db", default="workout.db")
    exp.add_argument("--session", type=int, required=True)
    exp.add_argument("--fmt", choices=["csv", "json"], default="csv")
    exp.add_argument("--out", default=".")

    cfg = sub.add_parser("settings")
    cfg.add_argument("--set", nargs=2, action="append", metavar=("KEY", "VALUE"), default=[])

    args = parser.parse_args(argv)
    settings = load_settings(args.yaml)
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.cmd == "demo":
        demo_data(args.db)
    elif args.cmd == "today":
        show_today(args.db)
    elif args.cmd == "run":
        try:
            asyncio.run(run_exercise(args.db, args.yaml, args.exercise))
        except DataUnavailable as e:
            parser.exit(1, f"{e}\n")
    elif args.cmd == "export":
        print(export_session(args.db, args.session, args.fmt, args.out))
    elif args.cmd == "settings":
        data = settings.model_dump()
        data.update(dict(args.set))
        try:
            settings = validate_settings(data)
        except ValueError as e:
            parser.exit(2, f"{e}\n")
        save_settings(settings, args.yaml)
        for key, value in settings.model_dump(mode="json").items():
            print(f"{key}: {value}")


if __name__ == "__main__":
    main()
