"""SQLite backed job store used by the mail queue."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

import aiosqlite

from .models import (
    Job,
    JobNotFoundError,
    JobStatus,
    JobValidationError,
    Label,
    StatusTransition,
    Template,
)

Clock = Callable[[], datetime]

_JOB_COLUMNS = (
    "id, owner, payload, attachments, scheduled_ts, status, attempts, last_error, "
    "provider_message_id, inserted_ts, updated_ts, claimed_ts, completed_ts"
)


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def _to_ts(value: Optional[datetime]) -> Optional[float]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def _from_ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(float(value), timezone.utc)


class Persistence:
    """Helper class responsible for reading and writing queue state."""

    def __init__(self, db_path: str = "/data/mail_queue.db", clock: Optional[Clock] = None):
        """Persist data to the SQLite file at ``db_path``.

        Every operation opens its own connection, so an in-memory database
        would lose its schema between calls and is rejected.
        """
        if not db_path or db_path == ":memory:":
            raise ValueError("db_path must point to a database file")
        self.db_path = db_path
        self._clock = clock or utc_now

    def _now_ts(self) -> float:
        return _to_ts(self._clock())

    async def init_db(self) -> None:
        """Create the database schema."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS jobs (
                    id TEXT PRIMARY KEY,
                    owner TEXT NOT NULL,
                    payload TEXT NOT NULL,
                    attachments TEXT,
                    scheduled_ts REAL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    attempts INTEGER NOT NULL DEFAULT 0,
                    last_error TEXT,
                    provider_message_id TEXT,
                    inserted_ts REAL NOT NULL,
                    updated_ts REAL,
                    claimed_ts REAL,
                    completed_ts REAL
                )
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_jobs_status_inserted ON jobs(status, inserted_ts)"
            )
            await db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_owner ON jobs(owner)")

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS send_log (
                    owner TEXT,
                    timestamp REAL
                )
                """
            )

            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS labels (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner TEXT NOT NULL,
                    name TEXT NOT NULL,
                    color TEXT NOT NULL,
                    created_ts REAL,
                    UNIQUE (owner, name)
                )
                """
            )
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    owner TEXT NOT NULL,
                    name TEXT NOT NULL,
                    subject TEXT NOT NULL DEFAULT '',
                    body TEXT NOT NULL DEFAULT '',
                    created_ts REAL,
                    UNIQUE (owner, name)
                )
                """
            )
            await db.commit()

    # Jobs ---------------------------------------------------------------------
    @staticmethod
    def _decode_job_row(row: Tuple[Any, ...], columns: Sequence[str]) -> Job:
        data = dict(zip(columns, row))
        attachments = data.get("attachments")
        return Job(
            id=data["id"],
            owner=data["owner"],
            payload=data["payload"],
            attachments=json.loads(attachments) if attachments is not None else None,
            scheduled_for=_from_ts(data["scheduled_ts"]),
            status=JobStatus(data["status"]),
            attempts=int(data["attempts"] or 0),
            last_error=data["last_error"],
            provider_message_id=data["provider_message_id"],
            inserted_at=_from_ts(data["inserted_ts"]),
            updated_at=_from_ts(data["updated_ts"]),
            claimed_at=_from_ts(data["claimed_ts"]),
            completed_at=_from_ts(data["completed_ts"]),
        )

    async def insert_job(self, job: Job) -> Job:
        """Persist a new job, raising :class:`JobValidationError` when the id is taken."""
        async with aiosqlite.connect(self.db_path) as db:
            try:
                await db.execute(
                    f"""
                    INSERT INTO jobs ({_JOB_COLUMNS})
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        job.id,
                        job.owner,
                        job.payload,
                        json.dumps(job.attachments) if job.attachments is not None else None,
                        _to_ts(job.scheduled_for),
                        job.status.value,
                        job.attempts,
                        job.last_error,
                        job.provider_message_id,
                        _to_ts(job.inserted_at),
                        _to_ts(job.updated_at or job.inserted_at),
                        None,
                        None,
                    ),
                )
            except aiosqlite.IntegrityError as exc:
                raise JobValidationError(f"duplicate job id '{job.id}'") from exc
            await db.commit()
        return job

    async def get_job(self, job_id: str) -> Job:
        """Fetch a single job or raise :class:`JobNotFoundError`."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id=?", (job_id,)) as cur:
                row = await cur.fetchone()
                if not row:
                    raise JobNotFoundError(job_id)
                cols = [c[0] for c in cur.description]
        return self._decode_job_row(row, cols)

    async def fetch_eligible_jobs(self, *, now: datetime, max_attempts: int, limit: int) -> List[Job]:
        """Return up to ``limit`` pending jobs due at ``now``, oldest first."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM jobs
                WHERE status = ?
                  AND attempts < ?
                  AND (scheduled_ts IS NULL OR scheduled_ts <= ?)
                ORDER BY inserted_ts ASC, rowid ASC
                LIMIT ?
                """,
                (JobStatus.PENDING.value, int(max_attempts), _to_ts(now), int(limit)),
            ) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_job_row(row, cols) for row in rows]

    async def claim_job(self, job_id: str) -> bool:
        """Move a pending job to ``processing``.

        Returns ``False`` when the job is no longer pending, meaning another
        worker already holds it.
        """
        now_ts = self._now_ts()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET status=?, claimed_ts=?, updated_ts=?
                WHERE id=? AND status=?
                """,
                (JobStatus.PROCESSING.value, now_ts, now_ts, job_id, JobStatus.PENDING.value),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def update_status(self, job_id: str, transition: StatusTransition) -> None:
        """Apply a status transition to a single job."""
        now_ts = self._now_ts()
        completed_ts = now_ts if transition.status == JobStatus.COMPLETED else None
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET status=?,
                    attempts=attempts + ?,
                    last_error=COALESCE(?, last_error),
                    provider_message_id=COALESCE(?, provider_message_id),
                    completed_ts=COALESCE(?, completed_ts),
                    updated_ts=?
                WHERE id=?
                """,
                (
                    transition.status.value,
                    1 if transition.increment_attempts else 0,
                    transition.last_error,
                    transition.provider_message_id,
                    completed_ts,
                    now_ts,
                    job_id,
                ),
            )
            await db.commit()
            if cursor.rowcount == 0:
                raise JobNotFoundError(job_id)

    async def reclaim_expired(
        self, *, claimed_before: datetime, reason: str, max_attempts: Optional[int] = None
    ) -> int:
        """Release jobs stuck in ``processing`` since before ``claimed_before``.

        Each reclaimed job consumes one attempt. It goes back to ``pending``,
        or to ``failed`` once that attempt reaches ``max_attempts``.
        """
        now_ts = self._now_ts()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET status=CASE WHEN ? IS NOT NULL AND attempts + 1 >= ? THEN ? ELSE ? END,
                    attempts=attempts + 1, last_error=?, claimed_ts=NULL, updated_ts=?
                WHERE status=? AND claimed_ts IS NOT NULL AND claimed_ts < ?
                """,
                (
                    max_attempts,
                    max_attempts,
                    JobStatus.FAILED.value,
                    JobStatus.PENDING.value,
                    reason,
                    now_ts,
                    JobStatus.PROCESSING.value,
                    _to_ts(claimed_before),
                ),
            )
            await db.commit()
            return cursor.rowcount

    async def requeue_job(self, job_id: str, *, max_attempts: int) -> bool:
        """Return a failed job with attempts left to ``pending``."""
        now_ts = self._now_ts()
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute(
                """
                UPDATE jobs
                SET status=?, claimed_ts=NULL, updated_ts=?
                WHERE id=? AND status=? AND attempts < ?
                """,
                (JobStatus.PENDING.value, now_ts, job_id, JobStatus.FAILED.value, int(max_attempts)),
            )
            await db.commit()
            return cursor.rowcount > 0

    async def list_jobs(
        self,
        *,
        owner: Optional[str] = None,
        status: Optional[JobStatus] = None,
        limit: Optional[int] = None,
    ) -> List[Job]:
        """Return jobs for inspection purposes, oldest first."""
        query = f"SELECT {_JOB_COLUMNS} FROM jobs"
        clauses: List[str] = []
        params: List[Any] = []
        if owner is not None:
            clauses.append("owner = ?")
            params.append(owner)
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY inserted_ts ASC, rowid ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(int(limit))
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(query, params) as cur:
                rows = await cur.fetchall()
                cols = [c[0] for c in cur.description]
        return [self._decode_job_row(row, cols) for row in rows]

    async def count_jobs_by_status(self) -> Dict[str, int]:
        """Return the number of jobs in each status."""
        counts = {status.value: 0 for status in JobStatus}
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute("SELECT status, COUNT(*) FROM jobs GROUP BY status") as cur:
                rows = await cur.fetchall()
        for status, count in rows:
            counts[status] = int(count)
        return counts

    # Send log -----------------------------------------------------------------
    async def log_send(self, owner: str, timestamp: float) -> None:
        """Record a delivery for rate limiting purposes."""
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute("INSERT INTO send_log (owner, timestamp) VALUES (?, ?)", (owner, timestamp))
            await db.commit()

    async def count_sends_since(self, owner: str, since_ts: float) -> int:
        """Count deliveries recorded after ``since_ts`` for the given owner."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT COUNT(*) FROM send_log WHERE owner=? AND timestamp > ?",
                (owner, since_ts),
            ) as cur:
                row = await cur.fetchone()
        return int(row[0] if row else 0)

    # Labels -------------------------------------------------------------------
    async def add_label(self, label: Label) -> Label:
        """Store a label, raising :class:`JobValidationError` on a duplicate name."""
        created_ts = self._now_ts()
        async with aiosqlite.connect(self.db_path) as db:
            try:
                cursor = await db.execute(
                    "INSERT INTO labels (owner, name, color, created_ts) VALUES (?, ?, ?, ?)",
                    (label.owner, label.name, label.color, created_ts),
                )
            except aiosqlite.IntegrityError as exc:
                raise JobValidationError(f"label '{label.name}' already exists") from exc
            await db.commit()
            label_id = cursor.lastrowid
        return label.model_copy(update={"id": label_id, "created_at": _from_ts(created_ts)})

    async def list_labels(self, owner: str) -> List[Label]:
        """Return the labels of an owner sorted by name."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, owner, name, color, created_ts FROM labels WHERE owner=? ORDER BY name ASC",
                (owner,),
            ) as cur:
                rows = await cur.fetchall()
        return [
            Label(id=row[0], owner=row[1], name=row[2], color=row[3], created_at=_from_ts(row[4]))
            for row in rows
        ]

    async def update_label(self, label: Label) -> bool:
        """Rename or recolor an existing label."""
        async with aiosqlite.connect(self.db_path) as db:
            try:
                cursor = await db.execute(
                    "UPDATE labels SET name=?, color=? WHERE id=? AND owner=?",
                    (label.name, label.color, label.id, label.owner),
                )
            except aiosqlite.IntegrityError as exc:
                raise JobValidationError(f"label '{label.name}' already exists") from exc
            await db.commit()
            return cursor.rowcount > 0

    async def delete_label(self, owner: str, label_id: int) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM labels WHERE id=? AND owner=?", (label_id, owner))
            await db.commit()
            return cursor.rowcount > 0

    # Templates ----------------------------------------------------------------
    async def add_template(self, template: Template) -> Template:
        """Store a template, raising :class:`JobValidationError` on a duplicate name."""
        created_ts = self._now_ts()
        async with aiosqlite.connect(self.db_path) as db:
            try:
                cursor = await db.execute(
                    "INSERT INTO templates (owner, name, subject, body, created_ts) VALUES (?, ?, ?, ?, ?)",
                    (template.owner, template.name, template.subject, template.body, created_ts),
                )
            except aiosqlite.IntegrityError as exc:
                raise JobValidationError(f"template '{template.name}' already exists") from exc
            await db.commit()
            template_id = cursor.lastrowid
        return template.model_copy(update={"id": template_id, "created_at": _from_ts(created_ts)})

    async def get_template(self, owner: str, template_id: int) -> Optional[Template]:
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, owner, name, subject, body, created_ts FROM templates WHERE id=? AND owner=?",
                (template_id, owner),
            ) as cur:
                row = await cur.fetchone()
        if not row:
            return None
        return Template(
            id=row[0], owner=row[1], name=row[2], subject=row[3], body=row[4], created_at=_from_ts(row[5])
        )

    async def list_templates(self, owner: str) -> List[Template]:
        """Return the templates of an owner sorted by name."""
        async with aiosqlite.connect(self.db_path) as db:
            async with db.execute(
                "SELECT id, owner, name, subject, body, created_ts FROM templates WHERE owner=? ORDER BY name ASC",
                (owner,),
            ) as cur:
                rows = await cur.fetchall()
        return [
            Template(id=row[0], owner=row[1], name=row[2], subject=row[3], body=row[4], created_at=_from_ts(row[5]))
            for row in rows
        ]

    async def update_template(self, template: Template) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            try:
                cursor = await db.execute(
                    "UPDATE templates SET name=?, subject=?, body=? WHERE id=? AND owner=?",
                    (template.name, template.subject, template.body, template.id, template.owner),
                )
            except aiosqlite.IntegrityError as exc:
                raise JobValidationError(f"template '{template.name}' already exists") from exc
            await db.commit()
            return cursor.rowcount > 0

    async def delete_template(self, owner: str, template_id: int) -> bool:
        async with aiosqlite.connect(self.db_path) as db:
            cursor = await db.execute("DELETE FROM templates WHERE id=? AND owner=?", (template_id, owner))
            await db.commit()
            return cursor.rowcount > 0
