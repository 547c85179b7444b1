from __future__ import annotations

import json
import sqlite3
import threading
import uuid
from contextlib import contextmanager, suppress
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterator

from .errors import PersistenceError
from .normalize import SearchResult, normalize_url

RUN_COLUMNS = (
    "id, conversation_id, household_id, created_by_id, status, query, effort, recency_days, "
    "plan_json, metrics_json, quality_score, error, started_at, completed_at, created_at, updated_at"
)
UPDATABLE_RUN_FIELDS = {"status", "plan", "metrics", "quality_score", "error", "started_at", "completed_at"}
DOWNGRADE_NOTE = "Downgraded to unknown: no supporting sources from this run."


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return uuid.uuid4().hex


def _loads(value: str | None, default: Any) -> Any:
    if not value:
        return default
    return json.loads(value)


class ResearchStore:
    """SQLite-backed store for research runs and everything they own."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        except sqlite3.Error as exc:
            raise PersistenceError(f"Cannot open research store: {exc}", context={"path": str(db_path)}) from exc
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._init_schema()

    @contextmanager
    def _locked(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as exc:
                with suppress(sqlite3.Error):
                    self._conn.rollback()
                raise PersistenceError(f"Research store {operation} failed: {exc}", context={"operation": operation}) from exc

    def _init_schema(self) -> None:
        with self._locked("init_schema") as conn:
            conn.executescript(
                """
                PRAGMA journal_mode=WAL;
                PRAGMA foreign_keys=ON;

                CREATE TABLE IF NOT EXISTS research_runs (
                    id TEXT PRIMARY KEY,
                    conversation_id TEXT NOT NULL,
                    household_id TEXT NOT NULL,
                    created_by_id TEXT,
                    status TEXT NOT NULL,
                    query TEXT NOT NULL,
                    effort TEXT NOT NULL,
                    recency_days INTEGER,
                    plan_json TEXT NOT NULL,
                    metrics_json TEXT NOT NULL,
                    quality_score REAL,
                    error TEXT,
                    started_at TEXT,
                    completed_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );
                CREATE INDEX IF NOT EXISTS idx_runs_conversation ON research_runs(conversation_id, household_id);

                CREATE TABLE IF NOT EXISTS research_sources (
                    id TEXT PRIMARY KEY,
                    research_run_id TEXT NOT NULL,
                    url TEXT NOT NULL,
                    url_key TEXT NOT NULL,
                    title TEXT,
                    domain TEXT,
                    snippet TEXT,
                    published_at TEXT,
                    retrieved_at TEXT NOT NULL,
                    score REAL,
                    metadata_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    UNIQUE(research_run_id, url_key),
                    FOREIGN KEY(research_run_id) REFERENCES research_runs(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS research_findings (
                    id TEXT PRIMARY KEY,
                    research_run_id TEXT NOT NULL,
                    sub_question TEXT NOT NULL,
                    claim TEXT NOT NULL,
                    confidence REAL NOT NULL,
                    supporting_source_ids_json TEXT NOT NULL,
                    evidence_json TEXT NOT NULL,
                    status TEXT NOT NULL,
                    notes TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(research_run_id) REFERENCES research_runs(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS research_run_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    research_run_id TEXT NOT NULL,
                    stage TEXT NOT NULL,
                    status TEXT NOT NULL,
                    sub_question TEXT,
                    message TEXT NOT NULL,
                    payload_json TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(research_run_id) REFERENCES research_runs(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS research_reports (
                    id TEXT PRIMARY KEY,
                    research_run_id TEXT NOT NULL UNIQUE,
                    summary TEXT NOT NULL,
                    report_markdown TEXT NOT NULL,
                    actions_json TEXT NOT NULL,
                    presentation_json TEXT,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY(research_run_id) REFERENCES research_runs(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS tasks (
                    id TEXT PRIMARY KEY,
                    household_id TEXT NOT NULL,
                    created_by_id TEXT,
                    conversation_id TEXT,
                    title TEXT NOT NULL,
                    description TEXT,
                    due_date TEXT,
                    assigned_to_id TEXT,
                    priority INTEGER NOT NULL DEFAULT 0,
                    source_run_id TEXT,
                    created_at TEXT NOT NULL
                );
                """
            )
            conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # === Runs ===

    def create_run(
        self,
        conversation_id: str,
        household_id: str,
        created_by_id: str | None,
        query: str,
        effort: str,
        recency_days: int | None,
        plan: dict[str, Any],
        metrics: dict[str, Any],
    ) -> dict[str, Any]:
        run_id = new_id()
        now = utc_now_iso()
        with self._locked("create_run") as conn:
            conn.execute(
                """
                INSERT INTO research_runs (
                    id, conversation_id, household_id, created_by_id, status, query, effort,
                    recency_days, plan_json, metrics_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, 'planning', ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    run_id,
                    conversation_id,
                    household_id,
                    created_by_id,
                    query,
                    effort,
                    recency_days,
                    json.dumps(plan),
                    json.dumps(metrics),
                    now,
                    now,
                ),
            )
            conn.commit()
        run = self.get_run(run_id)
        if run is None:
            raise PersistenceError("Research run vanished after insert", context={"run_id": run_id})
        return run

    def update_run(self, run_id: str, **fields: Any) -> None:
        unknown = set(fields) - UPDATABLE_RUN_FIELDS
        if unknown:
            raise ValueError(f"cannot update run fields: {sorted(unknown)}")

        assignments: list[str] = []
        values: list[Any] = []
        for name, value in fields.items():
            if name in {"plan", "metrics"}:
                assignments.append(f"{name}_json = ?")
                values.append(json.dumps(value))
            else:
                assignments.append(f"{name} = ?")
                values.append(value)
        assignments.append("updated_at = ?")
        values.append(utc_now_iso())

        with self._locked("update_run") as conn:
            conn.execute(
                f"UPDATE research_runs SET {', '.join(assignments)} WHERE id = ?",
                (*values, run_id),
            )
            conn.commit()

    def get_run(self, run_id: str) -> dict[str, Any] | None:
        with self._locked("get_run") as conn:
            row = conn.execute(f"SELECT {RUN_COLUMNS} FROM research_runs WHERE id = ?", (run_id,)).fetchone()
        return self._run_row(row) if row is not None else None

    def find_run(self, run_id: str, conversation_id: str, household_id: str) -> dict[str, Any] | None:
        with self._locked("find_run") as conn:
            row = conn.execute(
                f"SELECT {RUN_COLUMNS} FROM research_runs WHERE id = ? AND conversation_id = ? AND household_id = ?",
                (run_id, conversation_id, household_id),
            ).fetchone()
        return self._run_row(row) if row is not None else None

    def list_runs(self, conversation_id: str, household_id: str, limit: int = 50) -> list[dict[str, Any]]:
        with self._locked("list_runs") as conn:
            rows = conn.execute(
                f"""
                SELECT {RUN_COLUMNS} FROM research_runs
                WHERE conversation_id = ? AND household_id = ?
                ORDER BY created_at DESC
                LIMIT ?
                """,
                (conversation_id, household_id, limit),
            ).fetchall()
        return [self._run_row(row) for row in rows]

    def list_runs_by_status(self, status: str) -> list[dict[str, Any]]:
        with self._locked("list_runs_by_status") as conn:
            rows = conn.execute(
                f"SELECT {RUN_COLUMNS} FROM research_runs WHERE status = ? ORDER BY created_at ASC",
                (status,),
            ).fetchall()
        return [self._run_row(row) for row in rows]

    @staticmethod
    def _run_row(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": row["id"],
            "conversation_id": row["conversation_id"],
            "household_id": row["household_id"],
            "created_by_id": row["created_by_id"],
            "status": row["status"],
            "query": row["query"],
            "effort": row["effort"],
            "recency_days": row["recency_days"],
            "plan": _loads(row["plan_json"], {}),
            "metrics": _loads(row["metrics_json"], {}),
            "quality_score": row["quality_score"],
            "error": row["error"],
            "started_at": row["started_at"],
            "completed_at": row["completed_at"],
            "created_at": row["created_at"],
            "updated_at": row["updated_at"],
        }

    # === Sources ===

    def upsert_source(self, run_id: str, result: SearchResult, retrieved_at: str | None = None) -> dict[str, Any]:
        """Insert a source, or refresh `retrieved_at` on the row already holding its URL."""

        url_key = normalize_url(result.url)
        retrieved = retrieved_at or utc_now_iso()
        with self._locked("upsert_source") as conn:
            existing = conn.execute(
                "SELECT id FROM research_sources WHERE research_run_id = ? AND url_key = ?",
                (run_id, url_key),
            ).fetchone()
            if existing is not None:
                source_id = existing["id"]
                conn.execute("UPDATE research_sources SET retrieved_at = ? WHERE id = ?", (retrieved, source_id))
            else:
                source_id = new_id()
                conn.execute(
                    """
                    INSERT INTO research_sources (
                        id, research_run_id, url, url_key, title, domain, snippet,
                        published_at, retrieved_at, score, metadata_json, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        source_id,
                        run_id,
                        result.url,
                        url_key,
                        result.title,
                        result.domain,
                        result.snippet,
                        result.published_at,
                        retrieved,
                        result.score,
                        json.dumps(result.metadata, default=str),
                        utc_now_iso(),
                    ),
                )
            conn.commit()
            row = conn.execute("SELECT * FROM research_sources WHERE id = ?", (source_id,)).fetchone()
        return self._source_row(row)

    def list_sources(self, run_id: str) -> list[dict[str, Any]]:
        with self._locked("list_sources") as conn:
            rows = conn.execute(
                "SELECT * FROM research_sources WHERE research_run_id = ? ORDER BY created_at ASC, rowid ASC",
                (run_id,),
            ).fetchall()
        return [self._source_row(row) for row in rows]

    def count_sources(self, run_id: str) -> int:
        with self._locked("count_sources") as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS total FROM research_sources WHERE research_run_id = ?",
                (run_id,),
            ).fetchone()
        return int(row["total"])

    def _run_source_ids(self, conn: sqlite3.Connection, run_id: str, source_ids: list[str]) -> set[str]:
        if not source_ids:
            return set()
        placeholders = ",".join("?" for _ in source_ids)
        rows = conn.execute(
            f"SELECT id FROM research_sources WHERE research_run_id = ? AND id IN ({placeholders})",
            (run_id, *source_ids),
        ).fetchall()
        return {row["id"] for row in rows}

    @staticmethod
    def _source_row(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": row["id"],
            "research_run_id": row["research_run_id"],
            "url": row["url"],
            "url_key": row["url_key"],
            "title": row["title"],
            "domain": row["domain"],
            "snippet": row["snippet"],
            "published_at": row["published_at"],
            "retrieved_at": row["retrieved_at"],
            "score": row["score"],
            "metadata": _loads(row["metadata_json"], {}),
            "created_at": row["created_at"],
        }

    # === Findings ===

    def insert_finding(
        self,
        run_id: str,
        sub_question: str,
        claim: str,
        confidence: float,
        supporting_source_ids: list[str],
        evidence: list[dict[str, Any]],
        status: str,
        notes: str | None = None,
    ) -> dict[str, Any]:
        finding_id = new_id()
        now = utc_now_iso()
        with self._locked("insert_finding") as conn:
            valid_ids = self._run_source_ids(conn, run_id, list(dict.fromkeys(supporting_source_ids)))
            source_ids = [source_id for source_id in dict.fromkeys(supporting_source_ids) if source_id in valid_ids]
            kept_evidence = [item for item in evidence if item.get("source_id") in valid_ids]
            if status != "unknown" and not source_ids:
                status = "unknown"
                notes = f"{notes} {DOWNGRADE_NOTE}".strip() if notes else DOWNGRADE_NOTE

            conn.execute(
                """
                INSERT INTO research_findings (
                    id, research_run_id, sub_question, claim, confidence,
                    supporting_source_ids_json, evidence_json, status, notes, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    finding_id,
                    run_id,
                    sub_question,
                    claim,
                    min(1.0, max(0.0, float(confidence))),
                    json.dumps(source_ids),
                    json.dumps(kept_evidence),
                    status,
                    notes,
                    now,
                ),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM research_findings WHERE id = ?", (finding_id,)).fetchone()
        return self._finding_row(row)

    def list_findings(self, run_id: str) -> list[dict[str, Any]]:
        with self._locked("list_findings") as conn:
            rows = conn.execute(
                "SELECT * FROM research_findings WHERE research_run_id = ? ORDER BY created_at ASC, rowid ASC",
                (run_id,),
            ).fetchall()
        return [self._finding_row(row) for row in rows]

    @staticmethod
    def _finding_row(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": row["id"],
            "research_run_id": row["research_run_id"],
            "sub_question": row["sub_question"],
            "claim": row["claim"],
            "confidence": row["confidence"],
            "supporting_source_ids": _loads(row["supporting_source_ids_json"], []),
            "evidence": _loads(row["evidence_json"], []),
            "status": row["status"],
            "notes": row["notes"],
            "created_at": row["created_at"],
        }

    # === Events ===

    def append_event(
        self,
        run_id: str,
        stage: str,
        status: str,
        message: str,
        sub_question: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        now = utc_now_iso()
        payload = payload or {}
        with self._locked("append_event") as conn:
            cursor = conn.execute(
                """
                INSERT INTO research_run_events (research_run_id, stage, status, sub_question, message, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (run_id, stage, status, sub_question, message, json.dumps(payload, default=str), now),
            )
            conn.commit()
            event_id = cursor.lastrowid

        return {
            "id": event_id,
            "research_run_id": run_id,
            "stage": stage,
            "status": status,
            "sub_question": sub_question,
            "message": message,
            "payload": payload,
            "created_at": now,
        }

    def list_events(self, run_id: str, after_id: int = 0, limit: int = 300) -> list[dict[str, Any]]:
        with self._locked("list_events") as conn:
            rows = conn.execute(
                """
                SELECT * FROM research_run_events
                WHERE research_run_id = ? AND id > ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (run_id, after_id, limit),
            ).fetchall()
        return [self._event_row(row) for row in rows]

    def latest_events(self, run_id: str, limit: int = 80) -> list[dict[str, Any]]:
        with self._locked("latest_events") as conn:
            rows = conn.execute(
                "SELECT * FROM research_run_events WHERE research_run_id = ? ORDER BY id DESC LIMIT ?",
                (run_id, limit),
            ).fetchall()
        return [self._event_row(row) for row in reversed(rows)]

    @staticmethod
    def _event_row(row: sqlite3.Row) -> dict[str, Any]:
        return {
            "id": row["id"],
            "research_run_id": row["research_run_id"],
            "stage": row["stage"],
            "status": row["status"],
            "sub_question": row["sub_question"],
            "message": row["message"],
            "payload": _loads(row["payload_json"], {}),
            "created_at": row["created_at"],
        }

    # === Reports ===

    def insert_report(
        self,
        run_id: str,
        summary: str,
        report_markdown: str,
        actions: list[dict[str, Any]],
        presentation: dict[str, Any] | None,
    ) -> dict[str, Any]:
        """Create the run's report; a second call returns the existing one unchanged."""

        with self._locked("insert_report") as conn:
            conn.execute(
                """
                INSERT OR IGNORE INTO research_reports (
                    id, research_run_id, summary, report_markdown, actions_json, presentation_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    new_id(),
                    run_id,
                    summary,
                    report_markdown,
                    json.dumps(actions),
                    json.dumps(presentation) if presentation is not None else None,
                    utc_now_iso(),
                ),
            )
            conn.commit()
        report = self.get_report(run_id)
        if report is None:
            raise PersistenceError("Research report vanished after insert", context={"run_id": run_id})
        return report

    def get_report(self, run_id: str) -> dict[str, Any] | None:
        with self._locked("get_report") as conn:
            row = conn.execute("SELECT * FROM research_reports WHERE research_run_id = ?", (run_id,)).fetchone()
        if row is None:
            return None
        return {
            "id": row["id"],
            "research_run_id": row["research_run_id"],
            "summary": row["summary"],
            "report_markdown": row["report_markdown"],
            "actions": _loads(row["actions_json"], []),
            "presentation": _loads(row["presentation_json"], None),
            "created_at": row["created_at"],
        }

    def update_report_actions(self, run_id: str, actions: list[dict[str, Any]]) -> None:
        with self._locked("update_report_actions") as conn:
            conn.execute(
                "UPDATE research_reports SET actions_json = ? WHERE research_run_id = ?",
                (json.dumps(actions), run_id),
            )
            conn.commit()

    # === Tasks ===

    def insert_task(
        self,
        household_id: str,
        created_by_id: str | None,
        conversation_id: str | None,
        title: str,
        description: str | None = None,
        due_date: str | None = None,
        assigned_to_id: str | None = None,
        priority: int = 0,
        source_run_id: str | None = None,
    ) -> dict[str, Any]:
        task_id = new_id()
        now = utc_now_iso()
        with self._locked("insert_task") as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    id, household_id, created_by_id, conversation_id, title, description,
                    due_date, assigned_to_id, priority, source_run_id, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    task_id,
                    household_id,
                    created_by_id,
                    conversation_id,
                    title,
                    description,
                    due_date,
                    assigned_to_id,
                    priority,
                    source_run_id,
                    now,
                ),
            )
            conn.commit()
        return {
            "id": task_id,
            "household_id": household_id,
            "created_by_id": created_by_id,
            "conversation_id": conversation_id,
            "title": title,
            "description": description,
            "due_date": due_date,
            "assigned_to_id": assigned_to_id,
            "priority": priority,
            "source_run_id": source_run_id,
            "created_at": now,
        }

    def list_tasks(self, source_run_id: str) -> list[dict[str, Any]]:
        with self._locked("list_tasks") as conn:
            rows = conn.execute(
                "SELECT * FROM tasks WHERE source_run_id = ? ORDER BY created_at ASC, rowid ASC",
                (source_run_id,),
            ).fetchall()
        return [dict(row) for row in rows]
