from db import ProgramRepository, TemplateExerciseRepository, TemplateSetRepository, TemplateWorkoutRepository


def seed(db_path: str = "workout.db") -> None:
    programs = ProgramRepository(db_path)
    if programs.fetch_all():
        print("Database already contains programs")
        return

    pid = programs.create("Sample Program")
    programs.activate(pid)
    tid = TemplateWorkoutRepository(db_path).create("Sample session", pid)
    ex_id = TemplateExerciseRepository(db_path).add(tid, "Bench Press")
    sets = TemplateSetRepository(db_path)
    sets.add(ex_id, "8-10", 90)
    sets.add(ex_id, "8-10", 90)
    print("Seed data inserted")


if __name__ == "__main__":
    seed()
