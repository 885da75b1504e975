"""Durable plan state on SQLite."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterable
from uuid import uuid4

import aiosqlite

from conductor.planner.errors import PlanStateError, StaleWriteError
from conductor.planner.models import (
    TERMINAL_STATUSES,
    Plan,
    PlanStatus,
    PlanStep,
    StepResult,
    utc_now,
)
from conductor.utils.logging import get_logger

log = get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS plans (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    goal TEXT NOT NULL,
    status TEXT NOT NULL,
    steps_json TEXT NOT NULL DEFAULT '[]',
    step_results_json TEXT NOT NULL DEFAULT '{}',
    current_step_index INTEGER NOT NULL DEFAULT 0,
    total_cost REAL NOT NULL DEFAULT 0,
    estimated_cost REAL NOT NULL DEFAULT 0,
    context_json TEXT NOT NULL DEFAULT '{}',
    error_message TEXT,
    revision INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_plans_user ON plans (user_id, updated_at);
CREATE INDEX IF NOT EXISTS idx_plans_status ON plans (status, updated_at);
"""

_COLUMNS = (
    "id, user_id, goal, status, steps_json, step_results_json, "
    "current_step_index, total_cost, estimated_cost, context_json, "
    "error_message, revision, created_at, updated_at, completed_at"
)

_NOT_TERMINAL = "status NOT IN ({})".format(
    ", ".join(f"'{s.value}'" for s in sorted(TERMINAL_STATUSES, key=lambda s: s.value))
)


def _iso(dt: datetime) -> str:
    # Fixed width so that updated_at compares correctly as text.
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _dump_steps(steps: Iterable[PlanStep]) -> str:
    return json.dumps([s.to_dict() for s in steps])


class PlanStore:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._db: aiosqlite.Connection | None = None

    async def start(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._db_path))
        self._db.row_factory = aiosqlite.Row
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def stop(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # --- Reads ---

    async def get_by_id(self, plan_id: str) -> Plan | None:
        assert self._db is not None
        cursor = await self._db.execute(
            f"SELECT {_COLUMNS} FROM plans WHERE id = ?", (plan_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_plan(row) if row else None

    async def list_by_user(
        self,
        user_id: str,
        statuses: Iterable[PlanStatus] | None = None,
        limit: int = 20,
    ) -> list[Plan]:
        """Most recently updated plans first."""
        assert self._db is not None
        query = f"SELECT {_COLUMNS} FROM plans WHERE user_id = ?"
        params: list[Any] = [user_id]
        wanted = [PlanStatus(s).value for s in statuses] if statuses else []
        if wanted:
            query += " AND status IN ({})".format(", ".join("?" for _ in wanted))
            params.extend(wanted)
        query += " ORDER BY updated_at DESC LIMIT ?"
        params.append(limit)
        cursor = await self._db.execute(query, params)
        rows = await cursor.fetchall()
        return [self._row_to_plan(row) for row in rows]

    async def find_orphaned(
        self, threshold_seconds: float, now: datetime | None = None
    ) -> list[Plan]:
        """Running plans whose last write is older than the threshold."""
        assert self._db is not None
        cutoff = (now or utc_now()) - timedelta(seconds=threshold_seconds)
        cursor = await self._db.execute(
            f"SELECT {_COLUMNS} FROM plans WHERE status = ? AND updated_at < ? "
            "ORDER BY updated_at",
            (PlanStatus.RUNNING.value, _iso(cutoff)),
        )
        rows = await cursor.fetchall()
        return [self._row_to_plan(row) for row in rows]

    # --- Writes ---

    async def create(
        self, user_id: str, goal: str, context: dict[str, Any] | None = None
    ) -> Plan:
        assert self._db is not None
        now = utc_now()
        plan = Plan(
            id=uuid4().hex[:12],
            user_id=user_id,
            goal=goal,
            status=PlanStatus.PLANNING,
            context=dict(context or {}),
            created_at=now,
            updated_at=now,
        )
        await self._db.execute(
            "INSERT INTO plans (id, user_id, goal, status, context_json, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?)",
            (
                plan.id, plan.user_id, plan.goal, plan.status.value,
                json.dumps(plan.context), _iso(now), _iso(now),
            ),
        )
        await self._db.commit()
        log.info("plan_created", plan_id=plan.id, user_id=user_id)
        return plan

    async def save_steps(
        self, plan_id: str, steps: list[PlanStep], estimated_cost: float = 0.0
    ) -> None:
        """Store the planned steps and move the plan from planning to running."""
        assert self._db is not None
        cursor = await self._db.execute(
            "UPDATE plans SET steps_json = ?, estimated_cost = ?, status = ?, "
            "current_step_index = 0, revision = revision + 1, updated_at = ? "
            "WHERE id = ? AND status = ?",
            (
                _dump_steps(steps), estimated_cost, PlanStatus.RUNNING.value,
                _iso(utc_now()), plan_id, PlanStatus.PLANNING.value,
            ),
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            raise PlanStateError(f"Plan {plan_id} is not in planning")

    async def update_status(
        self,
        plan_id: str,
        status: PlanStatus,
        error_message: str | None = None,
    ) -> bool:
        """Change plan status. Returns False if the plan is missing or already terminal."""
        assert self._db is not None
        status = PlanStatus(status)
        now = _iso(utc_now())
        completed_at = now if status in TERMINAL_STATUSES else None
        cursor = await self._db.execute(
            "UPDATE plans SET status = ?, error_message = COALESCE(?, error_message), "
            "completed_at = COALESCE(?, completed_at), revision = revision + 1, "
            f"updated_at = ? WHERE id = ? AND {_NOT_TERMINAL}",
            (status.value, error_message, completed_at, now, plan_id),
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            log.warning("plan_status_write_ignored", plan_id=plan_id, status=status.value)
            return False
        return True

    async def update_steps(
        self, plan_id: str, steps: list[PlanStep], expected_revision: int
    ) -> int:
        """Replace the step list if nobody else wrote since ``expected_revision``.

        Returns the new revision.
        """
        assert self._db is not None
        cursor = await self._db.execute(
            "UPDATE plans SET steps_json = ?, revision = revision + 1, updated_at = ? "
            f"WHERE id = ? AND revision = ? AND {_NOT_TERMINAL}",
            (_dump_steps(steps), _iso(utc_now()), plan_id, expected_revision),
        )
        await self._db.commit()
        if cursor.rowcount == 0:
            raise StaleWriteError(plan_id, expected_revision)
        return expected_revision + 1

    async def record_step_result(
        self,
        plan_id: str,
        step_id: str,
        result: StepResult,
        updated_steps: list[PlanStep],
        next_index: int,
        cost_delta: float = 0.0,
        expected_revision: int | None = None,
        status: PlanStatus | None = None,
        error_message: str | None = None,
    ) -> bool:
        """Store a step result together with the step list and index it produced.

        A ``status`` (and ``error_message``) is applied in the same UPDATE, so
        a plan is never observed with the step outcome but not the plan
        transition it implies. The index never moves backwards. With
        ``expected_revision`` the write is conditional and a lost race raises
        StaleWriteError; without it a refused write returns False.
        """
        assert self._db is not None
        now = _iso(utc_now())
        new_status = PlanStatus(status).value if status is not None else None
        completed_at = now if status in TERMINAL_STATUSES else None
        query = (
            "UPDATE plans SET step_results_json = json_set(step_results_json, ?, json(?)), "
            "steps_json = ?, current_step_index = ?, total_cost = total_cost + ?, "
            "status = COALESCE(?, status), error_message = COALESCE(?, error_message), "
            "completed_at = COALESCE(?, completed_at), revision = revision + 1, updated_at = ? "
            f"WHERE id = ? AND current_step_index <= ? AND {_NOT_TERMINAL}"
        )
        params: list[Any] = [
            f'$."{step_id}"',
            json.dumps(result.to_dict()),
            _dump_steps(updated_steps),
            next_index,
            max(cost_delta, 0.0),
            new_status,
            error_message,
            completed_at,
            now,
            plan_id,
            next_index,
        ]
        if expected_revision is not None:
            query += " AND revision = ?"
            params.append(expected_revision)
        cursor = await self._db.execute(query, params)
        await self._db.commit()
        if cursor.rowcount == 0:
            if expected_revision is not None:
                raise StaleWriteError(plan_id, expected_revision)
            log.warning("step_result_write_ignored", plan_id=plan_id, step_id=step_id)
            return False
        return True

    # --- Helpers ---

    @staticmethod
    def _row_to_plan(row: aiosqlite.Row) -> Plan:
        results = json.loads(row["step_results_json"] or "{}")
        return Plan(
            id=row["id"],
            user_id=row["user_id"],
            goal=row["goal"],
            status=PlanStatus(row["status"]),
            steps=[PlanStep.from_dict(s) for s in json.loads(row["steps_json"] or "[]")],
            step_results={k: StepResult.from_dict(v) for k, v in results.items()},
            current_step_index=row["current_step_index"],
            total_cost=row["total_cost"],
            estimated_cost=row["estimated_cost"],
            context=json.loads(row["context_json"] or "{}"),
            error_message=row["error_message"],
            revision=row["revision"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            completed_at=(
                datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
            ),
        )
