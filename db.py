import sqlite3
import aiosqlite
import csv
import io
import datetime
import json
from contextlib import contextmanager, asynccontextmanager
from typing import List, Tuple, Optional, Iterable


class Database:
    """Provides SQLite connection management and schema initialization."""

    _TABLE_DEFINITIONS = {
        "programs": (
            """CREATE TABLE programs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    title TEXT NOT NULL
                );""",
            ["id", "title"],
        ),
        "user_programs": (
            """CREATE TABLE user_programs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    program_id INTEGER NOT NULL UNIQUE,
                    active INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY(program_id) REFERENCES programs(id) ON DELETE CASCADE
                );""",
            ["id", "program_id", "active"],
        ),
        "workout_templates": (
            """CREATE TABLE workout_templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    program_id INTEGER,
                    name TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    last_used TEXT,
                    FOREIGN KEY(program_id) REFERENCES programs(id) ON DELETE CASCADE
                );""",
            ["id", "program_id", "name", "position", "last_used"],
        ),
        "template_exercises": (
            """CREATE TABLE template_exercises (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    FOREIGN KEY(template_id) REFERENCES workout_templates(id) ON DELETE CASCADE
                );""",
            ["id", "template_id", "name"],
        ),
        "template_sets": (
            """CREATE TABLE template_sets (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_exercise_id INTEGER NOT NULL,
                    target_reps TEXT NOT NULL,
                    rest_seconds INTEGER NOT NULL DEFAULT 90,
                    position INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY(template_exercise_id) REFERENCES template_exercises(id) ON DELETE CASCADE
                );""",
            ["id", "template_exercise_id", "target_reps", "rest_seconds", "position"],
        ),
        "workout_sessions": (
            """CREATE TABLE workout_sessions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    template_id INTEGER,
                    exercise_id INTEGER,
                    start_time TEXT NOT NULL,
                    end_time TEXT
                );""",
            ["id", "template_id", "exercise_id", "start_time", "end_time"],
        ),
        "set_logs": (
            """CREATE TABLE set_logs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_id INTEGER NOT NULL,
                    exercise_id INTEGER,
                    set_number INTEGER NOT NULL,
                    weight REAL NOT NULL,
                    reps INTEGER NOT NULL,
                    logged_at TEXT NOT NULL,
                    FOREIGN KEY(session_id) REFERENCES workout_sessions(id) ON DELETE CASCADE
                );""",
            ["id", "session_id", "exercise_id", "set_number", "weight", "reps", "logged_at"],
        ),
        "notifications": (
            """CREATE TABLE notifications (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    timestamp TEXT NOT NULL,
                    message TEXT NOT NULL,
                    read INTEGER NOT NULL DEFAULT 0
                );""",
            ["id", "timestamp", "message", "read"],
        ),
    }

    def __init__(self, db_path: str = "workout.db") -> None:
        self._db_path = db_path
        self._ensure_schema()

    @contextmanager
    def _connection(self):
        connection = sqlite3.connect(self._db_path)
        try:
            yield connection
            connection.commit()
        finally:
            connection.close()

    def _ensure_schema(self) -> None:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute("PRAGMA foreign_keys=off;")
            for table, (sql, columns) in self._TABLE_DEFINITIONS.items():
                self._ensure_table(conn, table, sql, columns)
            cursor.execute("PRAGMA foreign_keys=on;")

    def _ensure_table(
        self, conn: sqlite3.Connection, table: str, sql: str, columns: List[str]
    ) -> None:
        cur = conn.execute(
            "SELECT name FROM sqlite_master WHERE type='table' AND name=?;", (table,)
        )
        if cur.fetchone() is None:
            conn.execute(sql)
            return

        cur = conn.execute(f"PRAGMA table_info({table});")
        existing_cols = [row[1] for row in cur.fetchall()]
        if existing_cols == columns:
            return

        conn.execute(f"DROP TABLE IF EXISTS {table}_old;")
        conn.execute(f"ALTER TABLE {table} RENAME TO {table}_old;")
        conn.execute(sql)

        common = [c for c in existing_cols if c in columns]
        if common:
            cols = ", ".join(common)
            missing = [c for c in columns if c not in existing_cols]
            if missing:
                def default_val(col: str) -> str:
                    if col in ("position", "active", "read"):
                        return "0"
                    if col == "rest_seconds":
                        return "90"
                    if col in ("start_time", "logged_at", "timestamp"):
                        return f"'{datetime.datetime.now().isoformat()}'"
                    return "NULL"

                defaults = ", ".join(default_val(c) for c in missing)
                conn.execute(
                    f"INSERT INTO {table} ({cols}, {', '.join(missing)}) SELECT {cols}, {defaults} FROM {table}_old;"
                )
            else:
                conn.execute(
                    f"INSERT INTO {table} ({cols}) SELECT {cols} FROM {table}_old;"
                )
        conn.execute(f"DROP TABLE {table}_old;")


class BaseRepository(Database):
    """Base repository providing helper methods."""

    def execute(self, query: str, params: Tuple = ()) -> int:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.lastrowid

    def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        with self._connection() as conn:
            cursor = conn.cursor()
            cursor.execute(query, params)
            return cursor.fetchall()


class AsyncDatabase(Database):
    """Provides asynchronous connection management."""

    @asynccontextmanager
    async def _async_connection(self):
        conn = await aiosqlite.connect(self._db_path)
        try:
            yield conn
            await conn.commit()
        finally:
            await conn.close()


class AsyncBaseRepository(AsyncDatabase):
    """Asynchronous variant of BaseRepository using aiosqlite."""

    async def execute(self, query: str, params: Tuple = ()) -> int:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            await conn.commit()
            return cursor.lastrowid

    async def fetch_all(self, query: str, params: Tuple = ()) -> List[Tuple]:
        async with self._async_connection() as conn:
            cursor = await conn.execute(query, params)
            rows = await cursor.fetchall()
            return rows


class ProgramRepository(BaseRepository):
    """Repository for training programs and the user's active program."""

    def create(self, title: str) -> int:
        return self.execute("INSERT INTO programs (title) VALUES (?);", (title,))

    def fetch_all(self) -> list[tuple[int, str]]:
        rows = super().fetch_all("SELECT id, title FROM programs ORDER BY id;")
        return [(r[0], r[1]) for r in rows]

    def fetch_detail(self, program_id: int) -> tuple[int, str]:
        rows = super().fetch_all(
            "SELECT id, title FROM programs WHERE id = ?;", (program_id,)
        )
        if not rows:
            raise ValueError("program not found")
        return rows[0]

    def activate(self, program_id: int) -> None:
        self.fetch_detail(program_id)
        with self._connection() as conn:
            conn.execute("UPDATE user_programs SET active = 0;")
            conn.execute(
                "INSERT INTO user_programs (program_id, active) VALUES (?, 1) "
                "ON CONFLICT(program_id) DO UPDATE SET active = 1;",
                (program_id,),
            )

    def active_program(self) -> Optional[tuple[int, str]]:
        rows = super().fetch_all(
            "SELECT p.id, p.title FROM user_programs u JOIN programs p ON p.id = u.program_id "
            "WHERE u.active = 1 LIMIT 1;"
        )
        return (rows[0][0], rows[0][1]) if rows else None


class TemplateWorkoutRepository(BaseRepository):
    """Repository for workout templates."""

    def create(self, name: str, program_id: int | None = None) -> int:
        rows = super().fetch_all(
            "SELECT COALESCE(MAX(position), 0) + 1 FROM workout_templates;"
        )
        position = int(rows[0][0]) if rows else 1
        return self.execute(
            "INSERT INTO workout_templates (program_id, name, position) VALUES (?, ?, ?);",
            (program_id, name, position),
        )

    def fetch_detail(self, template_id: int) -> tuple[int, int | None, str]:
        rows = super().fetch_all(
            "SELECT id, program_id, name FROM workout_templates WHERE id = ?;",
            (template_id,),
        )
        if not rows:
            raise ValueError("template not found")
        return rows[0]

    def fetch_for_program(self, program_id: int) -> list[tuple[int, str]]:
        rows = super().fetch_all(
            "SELECT id, name FROM workout_templates WHERE program_id = ? ORDER BY id ASC;",
            (program_id,),
        )
        return [(r[0], r[1]) for r in rows]

    def delete(self, template_id: int) -> None:
        self.fetch_detail(template_id)
        self.execute("DELETE FROM workout_templates WHERE id = ?;", (template_id,))

    def update_last_used(self, template_id: int) -> None:
        self.execute(
            "UPDATE workout_templates SET last_used = ? WHERE id = ?;",
            (datetime.date.today().isoformat(), template_id),
        )


class TemplateExerciseRepository(BaseRepository):
    """Repository for exercises belonging to templates."""

    def add(self, template_id: int, name: str) -> int:
        return self.execute(
            "INSERT INTO template_exercises (template_id, name) VALUES (?, ?);",
            (template_id, name),
        )

    def remove(self, exercise_id: int) -> None:
        self.execute("DELETE FROM template_exercises WHERE id = ?;", (exercise_id,))

    def fetch_detail(self, exercise_id: int) -> tuple[int, int, str]:
        rows = self.fetch_all(
            "SELECT id, template_id, name FROM template_exercises WHERE id = ?;",
            (exercise_id,),
        )
        if not rows:
            raise ValueError("exercise not found")
        return rows[0]

    def fetch_for_template(self, template_id: int) -> list[tuple[int, str]]:
        return self.fetch_all(
            "SELECT id, name FROM template_exercises WHERE template_id = ? ORDER BY id ASC;",
            (template_id,),
        )


class TemplateSetRepository(BaseRepository):
    """Repository for prescribed template sets."""

    def add(self, exercise_id: int, target_reps: str, rest_seconds: int = 90) -> int:
        if rest_seconds < 0:
            raise ValueError("rest_seconds must be non-negative")
        rows = self.fetch_all(
            "SELECT COALESCE(MAX(position), 0) + 1 FROM template_sets WHERE template_exercise_id = ?;",
            (exercise_id,),
        )
        position = int(rows[0][0]) if rows else 1
        return self.execute(
            "INSERT INTO template_sets (template_exercise_id, target_reps, rest_seconds, position) "
            "VALUES (?, ?, ?, ?);",
            (exercise_id, target_reps, rest_seconds, position),
        )

    def fetch_for_exercise(self, exercise_id: int) -> list[tuple[int, str, int]]:
        return self.fetch_all(
            "SELECT id, target_reps, rest_seconds FROM template_sets "
            "WHERE template_exercise_id = ? ORDER BY position, id;",
            (exercise_id,),
        )


class SetLogRepository(BaseRepository):
    """Repository for sets logged during workout sessions."""

    def fetch_for_session(
        self, session_id: int
    ) -> list[tuple[int, Optional[str], int, float, int, str]]:
        return self.fetch_all(
            "SELECT l.id, e.name, l.set_number, l.weight, l.reps, l.logged_at "
            "FROM set_logs l LEFT JOIN template_exercises e ON e.id = l.exercise_id "
            "WHERE l.session_id = ? ORDER BY l.id;",
            (session_id,),
        )

    def export_session_csv(self, session_id: int) -> str:
        rows = self.fetch_for_session(session_id)
        output = io.StringIO()
        writer = csv.writer(output)
        writer.writerow(["Exercise", "Set", "Weight", "Reps", "Logged"])
        for _lid, name, set_number, weight, reps, logged_at in rows:
            writer.writerow([name or "", set_number, weight, reps, logged_at])
        return output.getvalue()

    def export_session_json(self, session_id: int) -> str:
        """Return the logged sets of a session as a JSON string."""
        rows = self.fetch_for_session(session_id)
        data = [
            {
                "exercise": name,
                "set_number": int(set_number),
                "weight": float(weight),
                "reps": int(reps),
                "logged_at": logged_at,
            }
            for _lid, name, set_number, weight, reps, logged_at in rows
        ]
        return json.dumps(data)


class SessionRepository(BaseRepository):
    """Repository for workout sessions."""

    def fetch_detail(self, session_id: int) -> tuple[int, int | None, int | None, str, str | None]:
        rows = self.fetch_all(
            "SELECT id, template_id, exercise_id, start_time, end_time FROM workout_sessions WHERE id = ?;",
            (session_id,),
        )
        if not rows:
            raise ValueError("session not found")
        return rows[0]


class NotificationRepository(BaseRepository):
    """Repository for user notifications."""

    def add(self, message: str) -> int:
        return self.execute(
            "INSERT INTO notifications (timestamp, message, read) VALUES (?, ?, 0);",
            (datetime.datetime.now().isoformat(), message),
        )

    def fetch_all(self, unread_only: bool = False) -> list[dict[str, object]]:
        sql = "SELECT id, timestamp, message, read FROM notifications"
        if unread_only:
            sql += " WHERE read=0"
        sql += " ORDER BY id;"
        rows = super().fetch_all(sql)
        return [
            {"id": r[0], "timestamp": r[1], "message": r[2], "read": bool(r[3])}
            for r in rows
        ]

    def mark_read(self, nid: int) -> None:
        self.execute("UPDATE notifications SET read=1 WHERE id=?;", (nid,))

    def unread_count(self) -> int:
        rows = super().fetch_all(
            "SELECT COUNT(*) FROM notifications WHERE read=0;"
        )
        return rows[0][0] if rows else 0


class AsyncTemplateWorkoutRepository(AsyncBaseRepository):
    """Async lookups over workout templates."""

    async def fetch_detail(self, template_id: int) -> Optional[tuple[int, int | None, str]]:
        rows = await self.fetch_all(
            "SELECT id, program_id, name FROM workout_templates WHERE id = ?;",
            (template_id,),
        )
        return tuple(rows[0]) if rows else None

    async def fetch_ids_for_program(self, program_id: int) -> list[int]:
        rows = await self.fetch_all(
            "SELECT id FROM workout_templates WHERE program_id = ? ORDER BY id ASC;",
            (program_id,),
        )
        return [r[0] for r in rows]


class AsyncTemplateExerciseRepository(AsyncBaseRepository):
    async def fetch_detail(self, exercise_id: int) -> Optional[tuple[int, int, str]]:
        rows = await self.fetch_all(
            "SELECT id, template_id, name FROM template_exercises WHERE id = ?;",
            (exercise_id,),
        )
        return tuple(rows[0]) if rows else None

    async def fetch_ids_for_template(self, template_id: int) -> list[int]:
        rows = await self.fetch_all(
            "SELECT id FROM template_exercises WHERE template_id = ? ORDER BY id ASC;",
            (template_id,),
        )
        return [r[0] for r in rows]


class AsyncTemplateSetRepository(AsyncBaseRepository):
    async def fetch_for_exercise(self, exercise_id: int) -> list[tuple[int, str, int]]:
        rows = await self.fetch_all(
            "SELECT id, target_reps, rest_seconds FROM template_sets "
            "WHERE template_exercise_id = ? ORDER BY position, id;",
            (exercise_id,),
        )
        return [tuple(r) for r in rows]


class AsyncSessionRepository(AsyncBaseRepository):
    """Async repository opening and closing workout sessions."""

    async def open(self, template_id: int | None, exercise_id: int | None) -> int:
        return await self.execute(
            "INSERT INTO workout_sessions (template_id, exercise_id, start_time) VALUES (?, ?, ?);",
            (template_id, exercise_id, datetime.datetime.now().isoformat()),
        )

    async def close(self, session_id: int) -> None:
        await self.execute(
            "UPDATE workout_sessions SET end_time = ? WHERE id = ?;",
            (datetime.datetime.now().isoformat(), session_id),
        )


class AsyncSetLogRepository(AsyncBaseRepository):
    """Async repository storing completed sets."""

    async def add(
        self,
        session_id: int,
        exercise_id: int | None,
        set_number: int,
        weight: float,
        reps: int,
    ) -> int:
        if reps <= 0:
            raise ValueError("reps must be positive")
        if weight < 0:
            raise ValueError("weight must be non-negative")
        return await self.execute(
            "INSERT INTO set_logs (session_id, exercise_id, set_number, weight, reps, logged_at) "
            "VALUES (?, ?, ?, ?, ?, ?);",
            (
                session_id,
                exercise_id,
                set_number,
                weight,
                reps,
                datetime.datetime.now().isoformat(),
            ),
        )

    async def bulk_add(
        self,
        session_id: int,
        exercise_id: int | None,
        entries: Iterable[tuple[int, float, int]],
    ) -> list[int]:
        ids: list[int] = []
        for set_number, weight, reps in entries:
            ids.append(await self.add(session_id, exercise_id, set_number, weight, reps))
        return ids

    async def fetch_for_session(self, session_id: int) -> list[tuple[int, int, float, int]]:
        rows = await self.fetch_all(
            "SELECT id, set_number, weight, reps FROM set_logs WHERE session_id = ? ORDER BY id;",
            (session_id,),
        )
        return [tuple(r) for r in rows]
