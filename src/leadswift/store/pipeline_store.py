"""SQLite-backed store for pipelines, follow-ups and the records they reference."""

import json
import sqlite3
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Optional

from leadswift.models.opportunity import Opportunity
from leadswift.models.pipeline import Pipeline
from leadswift.models.profile import Profile

if TYPE_CHECKING:
    from leadswift.lifecycle.followups import FollowUp

_MEMORY = ":memory:"


class PipelineStore:
    """
    SQLite store keyed by pipeline id, unique per opportunity id.
    With no path the database lives in memory on a single shared connection.
    """

    def __init__(self, db_path: Optional[str | Path] = None, *, timeout: float = 5.0):
        self._db_path = str(db_path) if db_path else _MEMORY
        self._timeout = timeout
        self._lock = threading.RLock()
        self._shared: Optional[sqlite3.Connection] = None
        if self._db_path == _MEMORY:
            self._shared = self._open()
        self._ensure_schema()

    def _open(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path, timeout=self._timeout, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _connection(self) -> sqlite3.Connection:
        return self._shared if self._shared is not None else self._open()

    def _ensure_schema(self) -> None:
        schema_path = Path(__file__).parent / "schema.sql"
        with self._lock, self._connection() as conn:
            conn.executescript(schema_path.read_text())

    def close(self) -> None:
        if self._shared is not None:
            self._shared.close()
            self._shared = None

    # Pipelines

    def save_pipeline(self, pipeline: Pipeline) -> None:
        """Insert or replace the pipeline row."""
        data = json.dumps(pipeline.model_dump(mode="json"), default=str)
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT INTO pipelines (id, opportunity_id, profile_id, status, tracking_id, data, created_at, last_updated)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    tracking_id = excluded.tracking_id,
                    data = excluded.data,
                    last_updated = excluded.last_updated
                """,
                (
                    pipeline.id,
                    pipeline.opportunity_id,
                    pipeline.profile_id,
                    pipeline.status.value,
                    pipeline.tracking_id,
                    data,
                    pipeline.created_at.isoformat(),
                    pipeline.last_updated.isoformat(),
                ),
            )

    def get_pipeline(self, pipeline_id: str) -> Optional[Pipeline]:
        with self._lock, self._connection() as conn:
            row = conn.execute("SELECT data FROM pipelines WHERE id = ?", (pipeline_id,)).fetchone()
        return Pipeline.model_validate(json.loads(row["data"])) if row else None

    def get_by_opportunity(self, opportunity_id: str) -> Optional[Pipeline]:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                "SELECT data FROM pipelines WHERE opportunity_id = ?", (opportunity_id,)
            ).fetchone()
        return Pipeline.model_validate(json.loads(row["data"])) if row else None

    def list_pipelines(
        self, *, status: Optional[str] = None, profile_id: Optional[str] = None
    ) -> list[Pipeline]:
        """Return pipelines, newest first, optionally filtered."""
        query = "SELECT data FROM pipelines"
        clauses: list[str] = []
        params: list[str] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if profile_id:
            clauses.append("profile_id = ?")
            params.append(profile_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at DESC"
        with self._lock, self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [Pipeline.model_validate(json.loads(r["data"])) for r in rows]

    # Follow-ups

    def save_follow_up(self, follow_up: "FollowUp") -> None:
        data = json.dumps(follow_up.model_dump(mode="json"), default=str)
        with self._lock, self._connection() as conn:
            conn.execute(
                """
                INSERT OR REPLACE INTO follow_ups (id, pipeline_id, status, due_at, data)
                VALUES (?, ?, ?, ?, ?)
                """,
                (
                    follow_up.id,
                    follow_up.pipeline_id,
                    follow_up.status.value,
                    follow_up.due_at.isoformat(),
                    data,
                ),
            )

    def list_follow_ups(
        self, *, status: Optional[str] = None, pipeline_id: Optional[str] = None
    ) -> list["FollowUp"]:
        from leadswift.lifecycle.followups import FollowUp

        query = "SELECT data FROM follow_ups"
        clauses: list[str] = []
        params: list[str] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if pipeline_id:
            clauses.append("pipeline_id = ?")
            params.append(pipeline_id)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY due_at ASC"
        with self._lock, self._connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [FollowUp.model_validate(json.loads(r["data"])) for r in rows]

    # Referenced records

    def save_opportunity(self, opportunity: Opportunity) -> None:
        data = json.dumps(opportunity.model_dump(mode="json"), default=str)
        with self._lock, self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO opportunities (id, data) VALUES (?, ?)",
                (opportunity.id, data),
            )

    def get_opportunity(self, opportunity_id: str) -> Optional[Opportunity]:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                "SELECT data FROM opportunities WHERE id = ?", (opportunity_id,)
            ).fetchone()
        return Opportunity.model_validate(json.loads(row["data"])) if row else None

    def save_profile(self, profile: Profile) -> None:
        data = json.dumps(profile.model_dump(mode="json"), default=str)
        with self._lock, self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO profiles (id, data) VALUES (?, ?)",
                (profile.id, data),
            )

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        with self._lock, self._connection() as conn:
            row = conn.execute("SELECT data FROM profiles WHERE id = ?", (profile_id,)).fetchone()
        return Profile.model_validate(json.loads(row["data"])) if row else None

    # Engine state (daily counter)

    def save_counter(self, date: str, count: int) -> None:
        with self._lock, self._connection() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO engine_state (key, value) VALUES (?, ?)",
                ("daily_counter", json.dumps({"date": date, "count": count})),
            )

    def load_counter(self) -> Optional[tuple[str, int]]:
        with self._lock, self._connection() as conn:
            row = conn.execute(
                "SELECT value FROM engine_state WHERE key = ?", ("daily_counter",)
            ).fetchone()
        if not row:
            return None
        value = json.loads(row["value"])
        return value["date"], int(value["count"])
