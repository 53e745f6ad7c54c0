from __future__ import annotations

import json
import logging
import sqlite3
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

from .models import (
    ExecutionState,
    Issue,
    IssueSeverity,
    IssueStatus,
    IssueType,
    Iteration,
    IterationKind,
    IterationState,
    IterationStatus,
    Plan,
    Step,
    StepState,
    StepStatus,
)
from .utils import now_iso

_logger = logging.getLogger(__name__)

_MIGRATIONS: tuple[tuple[int, str], ...] = (
    (
        1,
        """
        CREATE TABLE IF NOT EXISTS plans (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            plan_file_path TEXT NOT NULL,
            work_dir TEXT NOT NULL,
            owner TEXT NOT NULL,
            repo TEXT NOT NULL,
            created_at TEXT NOT NULL
        );
        CREATE TABLE IF NOT EXISTS steps (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            plan_id INTEGER NOT NULL REFERENCES plans(id) ON DELETE CASCADE,
            step_number INTEGER NOT NULL,
            title TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (plan_id, step_number)
        );
        CREATE TABLE IF NOT EXISTS iterations (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            step_id INTEGER NOT NULL REFERENCES steps(id) ON DELETE CASCADE,
            iteration_number INTEGER NOT NULL,
            kind TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'in_progress',
            commit_sha TEXT,
            implementation_log TEXT,
            review_log TEXT,
            build_status TEXT,
            review_status TEXT,
            implementation_agent TEXT NOT NULL,
            review_agent TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL,
            UNIQUE (step_id, iteration_number)
        );
        CREATE TABLE IF NOT EXISTS issues (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            iteration_id INTEGER NOT NULL REFERENCES iterations(id) ON DELETE CASCADE,
            type TEXT NOT NULL,
            description TEXT NOT NULL,
            file_path TEXT,
            line_number INTEGER,
            severity TEXT,
            status TEXT NOT NULL DEFAULT 'open',
            created_at TEXT NOT NULL,
            resolved_at TEXT
        );
        CREATE INDEX IF NOT EXISTS idx_steps_plan ON steps(plan_id);
        CREATE INDEX IF NOT EXISTS idx_iterations_step ON iterations(step_id);
        CREATE INDEX IF NOT EXISTS idx_issues_iteration ON issues(iteration_id);
        """,
    ),
    (
        2,
        """
        ALTER TABLE iterations ADD COLUMN head_before TEXT;
        CREATE TABLE IF NOT EXISTS events (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            plan_id INTEGER REFERENCES plans(id) ON DELETE CASCADE,
            type TEXT NOT NULL,
            timestamp TEXT NOT NULL,
            data TEXT NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_events_plan ON events(plan_id, id);
        CREATE TABLE IF NOT EXISTS stop_requests (
            plan_id INTEGER PRIMARY KEY REFERENCES plans(id) ON DELETE CASCADE,
            requested_at TEXT NOT NULL
        );
        """,
    ),
)

SCHEMA_VERSION = _MIGRATIONS[-1][0]

_ITERATION_FIELDS = {
    "status",
    "commit_sha",
    "head_before",
    "implementation_log",
    "review_log",
    "build_status",
    "review_status",
    "review_agent",
}


class StoreError(Exception):
    """Raised when the execution database cannot be read or written."""


def _value(item: Any) -> Any:
    return getattr(item, "value", item)


class ExecutionStore:
    """
    Durable record of plans, steps, iterations and issues.

    Rows are append-mostly: nothing is deleted except pending steps replaced
    from an edited plan document and cascades from their parents.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path
        self._conn: Optional[sqlite3.Connection] = None

    def __enter__(self) -> "ExecutionStore":
        self.initialize()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    @property
    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            raise StoreError("ExecutionStore is not initialized")
        return self._conn

    def initialize(self) -> None:
        if self._conn is not None:
            return
        try:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.db_path), check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            conn.execute("PRAGMA journal_mode = WAL")
            self._conn = conn
            self._migrate()
        except sqlite3.Error as exc:
            self._conn = None
            raise StoreError(f"Failed to open {self.db_path}: {exc}") from exc

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _migrate(self) -> None:
        conn = self.conn
        conn.execute(
            "CREATE TABLE IF NOT EXISTS schema_version (version INTEGER NOT NULL)"
        )
        row = conn.execute("SELECT MAX(version) AS version FROM schema_version").fetchone()
        current = int(row["version"] or 0)
        for version, script in _MIGRATIONS:
            if version <= current:
                continue
            conn.executescript(script)
            with conn:
                conn.execute("INSERT INTO schema_version (version) VALUES (?)", (version,))
            _logger.info("Applied execution store migration %s", version)

    def _execute(self, sql: str, params: Sequence[Any] = ()) -> sqlite3.Cursor:
        try:
            with self.conn:
                return self.conn.execute(sql, params)
        except sqlite3.Error as exc:
            raise StoreError(f"Database write failed: {exc}") from exc

    def _query(self, sql: str, params: Sequence[Any] = ()) -> list[sqlite3.Row]:
        try:
            return list(self.conn.execute(sql, params).fetchall())
        except sqlite3.Error as exc:
            raise StoreError(f"Database read failed: {exc}") from exc

    # Plans

    def create_plan(
        self, plan_file_path: str, work_dir: str, owner: str, repo: str
    ) -> Plan:
        cursor = self._execute(
            "INSERT INTO plans (plan_file_path, work_dir, owner, repo, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (plan_file_path, work_dir, owner, repo, now_iso()),
        )
        plan = self.get_plan(int(cursor.lastrowid or 0))
        if plan is None:
            raise StoreError("Plan vanished after insert")
        return plan

    def get_plan(self, plan_id: int) -> Optional[Plan]:
        rows = self._query("SELECT * FROM plans WHERE id = ?", (plan_id,))
        return Plan(**dict(rows[0])) if rows else None

    def list_plans(self) -> list[Plan]:
        rows = self._query("SELECT * FROM plans ORDER BY id DESC")
        return [Plan(**dict(row)) for row in rows]

    # Steps

    def create_step(self, plan_id: int, step_number: int, title: str) -> Step:
        now = now_iso()
        cursor = self._execute(
            "INSERT INTO steps (plan_id, step_number, title, status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?)",
            (plan_id, step_number, title, StepStatus.PENDING.value, now, now),
        )
        return self.get_step(int(cursor.lastrowid or 0))

    def get_step(self, step_id: int) -> Step:
        rows = self._query("SELECT * FROM steps WHERE id = ?", (step_id,))
        if not rows:
            raise StoreError(f"Step {step_id} not found")
        return Step(**dict(rows[0]))

    def get_steps(self, plan_id: int) -> list[Step]:
        rows = self._query(
            "SELECT * FROM steps WHERE plan_id = ? ORDER BY step_number", (plan_id,)
        )
        return [Step(**dict(row)) for row in rows]

    def update_step_status(self, step_id: int, status: StepStatus) -> Step:
        self._execute(
            "UPDATE steps SET status = ?, updated_at = ? WHERE id = ?",
            (_value(status), now_iso(), step_id),
        )
        return self.get_step(step_id)

    def replace_pending_steps(
        self, plan_id: int, steps: Iterable[tuple[int, str]]
    ) -> list[Step]:
        """
        Sync untouched steps with the plan document.

        Pending steps without iterations are dropped and re-created from
        `steps`; steps that already started keep their rows.
        """
        wanted = list(steps)
        try:
            with self.conn:
                self.conn.execute(
                    "DELETE FROM steps WHERE plan_id = ? AND status = ? "
                    "AND NOT EXISTS (SELECT 1 FROM iterations WHERE step_id = steps.id)",
                    (plan_id, StepStatus.PENDING.value),
                )
                kept = {
                    int(row["step_number"])
                    for row in self.conn.execute(
                        "SELECT step_number FROM steps WHERE plan_id = ?", (plan_id,)
                    ).fetchall()
                }
                now = now_iso()
                for number, title in wanted:
                    if number in kept:
                        continue
                    self.conn.execute(
                        "INSERT INTO steps (plan_id, step_number, title, status, "
                        "created_at, updated_at) VALUES (?, ?, ?, ?, ?, ?)",
                        (plan_id, number, title, StepStatus.PENDING.value, now, now),
                    )
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to sync steps for plan {plan_id}: {exc}") from exc
        return self.get_steps(plan_id)

    # Iterations

    def create_iteration(
        self,
        step_id: int,
        kind: IterationKind,
        implementation_agent: str,
        *,
        head_before: Optional[str] = None,
        review_agent: Optional[str] = None,
    ) -> Iteration:
        now = now_iso()
        try:
            with self.conn:
                active = self.conn.execute(
                    "SELECT iteration_number FROM iterations WHERE step_id = ? AND status = ?",
                    (step_id, IterationStatus.IN_PROGRESS.value),
                ).fetchone()
                if active is not None:
                    raise StoreError(
                        f"Step {step_id} already has iteration "
                        f"{active['iteration_number']} in progress"
                    )
                row = self.conn.execute(
                    "SELECT COALESCE(MAX(iteration_number), 0) AS last "
                    "FROM iterations WHERE step_id = ?",
                    (step_id,),
                ).fetchone()
                cursor = self.conn.execute(
                    "INSERT INTO iterations (step_id, iteration_number, kind, status, "
                    "head_before, implementation_agent, review_agent, created_at, updated_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        step_id,
                        int(row["last"]) + 1,
                        _value(kind),
                        IterationStatus.IN_PROGRESS.value,
                        head_before,
                        implementation_agent,
                        review_agent,
                        now,
                        now,
                    ),
                )
        except sqlite3.Error as exc:
            raise StoreError(f"Failed to create iteration: {exc}") from exc
        return self.get_iteration(int(cursor.lastrowid or 0))

    def get_iteration(self, iteration_id: int) -> Iteration:
        rows = self._query("SELECT * FROM iterations WHERE id = ?", (iteration_id,))
        if not rows:
            raise StoreError(f"Iteration {iteration_id} not found")
        return Iteration(**dict(rows[0]))

    def get_iterations(self, step_id: int) -> list[Iteration]:
        rows = self._query(
            "SELECT * FROM iterations WHERE step_id = ? ORDER BY iteration_number",
            (step_id,),
        )
        return [Iteration(**dict(row)) for row in rows]

    def update_iteration(self, iteration_id: int, **fields: Any) -> Iteration:
        unknown = set(fields) - _ITERATION_FIELDS
        if unknown:
            raise StoreError(f"Unknown iteration fields: {', '.join(sorted(unknown))}")
        if fields:
            assignments = ", ".join(f"{key} = ?" for key in fields)
            params = [_value(v) for v in fields.values()]
            self._execute(
                f"UPDATE iterations SET {assignments}, updated_at = ? WHERE id = ?",
                (*params, now_iso(), iteration_id),
            )
        return self.get_iteration(iteration_id)

    # Issues

    def create_issue(
        self,
        iteration_id: int,
        issue_type: IssueType,
        description: str,
        *,
        file_path: Optional[str] = None,
        line_number: Optional[int] = None,
        severity: Optional[IssueSeverity] = None,
        status: IssueStatus = IssueStatus.OPEN,
    ) -> Issue:
        now = now_iso()
        cursor = self._execute(
            "INSERT INTO issues (iteration_id, type, description, file_path, line_number, "
            "severity, status, created_at, resolved_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (
                iteration_id,
                _value(issue_type),
                description,
                file_path,
                line_number,
                _value(severity),
                _value(status),
                now,
                now if status == IssueStatus.FIXED else None,
            ),
        )
        return self._get_issue(int(cursor.lastrowid or 0))

    def _get_issue(self, issue_id: int) -> Issue:
        rows = self._query("SELECT * FROM issues WHERE id = ?", (issue_id,))
        if not rows:
            raise StoreError(f"Issue {issue_id} not found")
        return Issue(**dict(rows[0]))

    def get_issues(self, iteration_id: int) -> list[Issue]:
        rows = self._query(
            "SELECT * FROM issues WHERE iteration_id = ? ORDER BY id", (iteration_id,)
        )
        return [Issue(**dict(row)) for row in rows]

    def get_issues_for_step(
        self, step_id: int, issue_type: Optional[IssueType] = None
    ) -> list[Issue]:
        sql = (
            "SELECT issues.* FROM issues JOIN iterations ON issues.iteration_id = iterations.id "
            "WHERE iterations.step_id = ?"
        )
        params: list[Any] = [step_id]
        if issue_type is not None:
            sql += " AND issues.type = ?"
            params.append(_value(issue_type))
        rows = self._query(sql + " ORDER BY issues.id", params)
        return [Issue(**dict(row)) for row in rows]

    def get_open_issues(
        self, step_id: int, issue_type: Optional[IssueType] = None
    ) -> list[Issue]:
        return [
            issue
            for issue in self.get_issues_for_step(step_id, issue_type)
            if issue.status == IssueStatus.OPEN
        ]

    def update_issue_status(self, issue_id: int, status: IssueStatus) -> Issue:
        resolved_at = now_iso() if status == IssueStatus.FIXED else None
        self._execute(
            "UPDATE issues SET status = ?, resolved_at = ? WHERE id = ?",
            (_value(status), resolved_at, issue_id),
        )
        return self._get_issue(issue_id)

    # Snapshots

    def get_execution_state(self, plan_id: int) -> ExecutionState:
        plan = self.get_plan(plan_id)
        if plan is None:
            raise StoreError(f"Execution {plan_id} not found")
        steps: list[StepState] = []
        for step in self.get_steps(plan_id):
            iterations = [
                IterationState(
                    **iteration.model_dump(), issues=self.get_issues(iteration.id)
                )
                for iteration in self.get_iterations(step.id)
            ]
            steps.append(StepState(**step.model_dump(), iterations=iterations))
        return ExecutionState(plan=plan, steps=steps)

    # Events

    def record_event(
        self,
        plan_id: Optional[int],
        event_type: str,
        timestamp: str,
        data: dict[str, Any],
    ) -> int:
        cursor = self._execute(
            "INSERT INTO events (plan_id, type, timestamp, data) VALUES (?, ?, ?, ?)",
            (plan_id, event_type, timestamp, json.dumps(data, default=str)),
        )
        return int(cursor.lastrowid or 0)

    def list_events(
        self, plan_id: int, *, since_seq: int = 0, limit: int = 500
    ) -> list[dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM events WHERE plan_id = ? AND id > ? ORDER BY id LIMIT ?",
            (plan_id, since_seq, limit),
        )
        return [
            {
                "seq": int(row["id"]),
                "type": row["type"],
                "timestamp": row["timestamp"],
                "data": json.loads(row["data"]),
            }
            for row in rows
        ]

    # Stop requests

    def request_stop(self, plan_id: int) -> None:
        self._execute(
            "INSERT OR REPLACE INTO stop_requests (plan_id, requested_at) VALUES (?, ?)",
            (plan_id, now_iso()),
        )

    def stop_requested(self, plan_id: int) -> bool:
        rows = self._query("SELECT 1 FROM stop_requests WHERE plan_id = ?", (plan_id,))
        return bool(rows)

    def clear_stop_request(self, plan_id: int) -> None:
        self._execute("DELETE FROM stop_requests WHERE plan_id = ?", (plan_id,))


__all__ = ["ExecutionStore", "SCHEMA_VERSION", "StoreError"]
