"""
Durable store for processing jobs and per-message analysis results.

Tables:
    email_processing_jobs  one row per job (provider names only, never tokens)
    email_analyses         one row per (user, message), upserted by message id

PostgresJobRepository is the production store; InMemoryJobRepository backs
tests and single-process development.
"""

import asyncio
import copy
from datetime import UTC, datetime
from typing import Any

from psycopg.types.json import Jsonb

from inbox_triage.db.helpers import DatabaseError, execute_many, execute_query, fetch_all, fetch_one
from inbox_triage.db.pool import DatabasePoolManager
from inbox_triage.errors import StorageError
from inbox_triage.infrastructure.observability.logging import get_logger
from inbox_triage.models.domain.analysis_domain import AnalysisResult, PriorityLevel
from inbox_triage.models.domain.job_domain import JobStatus, ProcessingJob, ProcessingResult
from inbox_triage.models.domain.message_domain import FetchOptions, ProviderCredentials

logger = get_logger(__name__)

MESSAGE_FILTERS = ("all", "unread", "read", "starred", "action_required", "failed") + tuple(
    level.value for level in PriorityLevel
)


def result_to_record(job_id: str | None, user_id: str, result: ProcessingResult) -> dict[str, Any]:
    message = result.message
    analysis = result.analysis
    return {
        "message_id": result.message_id,
        "job_id": job_id,
        "user_id": user_id,
        "provider": message.provider,
        "thread_id": message.thread_id,
        "subject": message.subject,
        "sender": message.sender.address,
        "received_at": message.received_at,
        "is_read": message.is_read,
        "is_starred": message.is_starred,
        "priority_level": analysis.priority.level.value,
        "priority_score": analysis.priority_score,
        "action_required": analysis.action_required,
        "summary": analysis.summary,
        "success": result.success,
        "error": result.error,
        "retryable": result.retryable,
        "processing_time_ms": result.processing_time_ms,
        "analysis": analysis.to_dict(),
        "message": message.to_dict(),
    }


def matches_filter(record: dict[str, Any], status_filter: str | None) -> bool:
    if not status_filter or status_filter == "all":
        return True
    if status_filter == "unread":
        return not record["is_read"]
    if status_filter == "read":
        return bool(record["is_read"])
    if status_filter == "starred":
        return bool(record["is_starred"])
    if status_filter == "action_required":
        return bool(record["action_required"])
    if status_filter == "failed":
        return not record["success"]
    return record["priority_level"] == status_filter


class JobRepository:
    """Storage contract shared by the Postgres and in-memory implementations."""

    async def ensure_schema(self) -> None:
        return None

    async def insert_job(self, job: ProcessingJob) -> None:
        raise NotImplementedError

    async def update_job(self, job: ProcessingJob) -> bool:
        """Persist job state. Terminal rows are final: returns False when the row is already terminal."""
        raise NotImplementedError

    async def get_job(self, job_id: str) -> ProcessingJob | None:
        raise NotImplementedError

    async def list_jobs(self, user_id: str, limit: int = 50) -> list[ProcessingJob]:
        raise NotImplementedError

    async def find_stale_jobs(self, updated_before: datetime) -> list[ProcessingJob]:
        raise NotImplementedError

    async def upsert_results(self, job_id: str | None, user_id: str, results: list[ProcessingResult]) -> int:
        raise NotImplementedError

    async def get_results(self, job_id: str) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def job_stats(self, user_id: str) -> dict[str, Any]:
        raise NotImplementedError

    async def delete_older_than(self, cutoff: datetime) -> dict[str, int]:
        raise NotImplementedError

    async def list_messages(
        self, user_id: str, status_filter: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        raise NotImplementedError

    async def get_message(self, user_id: str, message_id: str) -> dict[str, Any] | None:
        raise NotImplementedError

    async def update_message_state(
        self,
        user_id: str,
        message_id: str,
        *,
        is_read: bool | None = None,
        priority_level: PriorityLevel | None = None,
    ) -> bool:
        raise NotImplementedError

    async def replace_analysis(
        self, user_id: str, message_id: str, result: ProcessingResult
    ) -> bool:
        raise NotImplementedError

    async def delete_message(self, user_id: str, message_id: str) -> bool:
        raise NotImplementedError


class PostgresJobRepository(JobRepository):
    JOB_COLUMNS = """
        id, user_id, providers, options, status, progress, total_emails,
        processed_emails, error, retryable, created_at, updated_at
    """

    MESSAGE_COLUMNS = """
        message_id, job_id, user_id, provider, thread_id, subject, sender, received_at,
        is_read, is_starred, priority_level, priority_score, action_required, summary,
        success, error, retryable, processing_time_ms, analysis, message
    """

    SCHEMA_SQL = """
        CREATE TABLE IF NOT EXISTS email_processing_jobs (
            id TEXT PRIMARY KEY,
            user_id TEXT NOT NULL,
            providers JSONB NOT NULL DEFAULT '[]',
            options JSONB NOT NULL DEFAULT '{}',
            status TEXT NOT NULL,
            progress INTEGER NOT NULL DEFAULT 0,
            total_emails INTEGER NOT NULL DEFAULT 0,
            processed_emails INTEGER NOT NULL DEFAULT 0,
            error TEXT,
            retryable BOOLEAN NOT NULL DEFAULT FALSE,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
        );
        CREATE INDEX IF NOT EXISTS idx_email_processing_jobs_user
            ON email_processing_jobs (user_id, created_at DESC);
        CREATE INDEX IF NOT EXISTS idx_email_processing_jobs_status
            ON email_processing_jobs (status, updated_at);

        CREATE TABLE IF NOT EXISTS email_analyses (
            user_id TEXT NOT NULL,
            message_id TEXT NOT NULL,
            job_id TEXT,
            provider TEXT NOT NULL,
            thread_id TEXT,
            subject TEXT,
            sender TEXT,
            received_at TIMESTAMPTZ,
            is_read BOOLEAN NOT NULL DEFAULT FALSE,
            is_starred BOOLEAN NOT NULL DEFAULT FALSE,
            priority_level TEXT NOT NULL,
            priority_score DOUBLE PRECISION NOT NULL,
            action_required BOOLEAN NOT NULL DEFAULT FALSE,
            summary TEXT,
            success BOOLEAN NOT NULL,
            error TEXT,
            retryable BOOLEAN NOT NULL DEFAULT FALSE,
            processing_time_ms INTEGER NOT NULL DEFAULT 0,
            analysis JSONB NOT NULL,
            message JSONB NOT NULL,
            created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
            PRIMARY KEY (user_id, message_id)
        );
        CREATE INDEX IF NOT EXISTS idx_email_analyses_job ON email_analyses (job_id);
    """

    def __init__(self, pool: DatabasePoolManager):
        self.pool = pool

    async def _run(self, operation: str, coro):
        try:
            return await coro
        except DatabaseError as e:
            raise StorageError(f"{operation} failed: {e}", operation=operation) from e

    @staticmethod
    def _row_to_job(row: dict | None) -> ProcessingJob | None:
        if not row:
            return None
        user_id = str(row["user_id"])
        return ProcessingJob(
            id=str(row["id"]),
            user_id=user_id,
            providers=[
                ProviderCredentials(provider=name, access_token="", user_id=user_id)
                for name in row.get("providers") or []
            ],
            options=FetchOptions.from_dict(row.get("options")),
            status=JobStatus(row["status"]),
            progress=row["progress"],
            total_emails=row["total_emails"],
            processed_emails=row["processed_emails"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            error=row.get("error"),
            retryable=bool(row.get("retryable")),
        )

    async def ensure_schema(self) -> None:
        for statement in filter(None, (s.strip() for s in self.SCHEMA_SQL.split(";"))):
            await self._run("ensure_schema", execute_query(self.pool, statement))
        logger.info("Pipeline tables ensured")

    async def insert_job(self, job: ProcessingJob) -> None:
        query = """
            INSERT INTO email_processing_jobs (
                id, user_id, providers, options, status, progress, total_emails,
                processed_emails, error, retryable, created_at, updated_at
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        """
        params = (
            job.id,
            job.user_id,
            Jsonb(job.provider_names),
            Jsonb(job.options.to_dict()),
            job.status.value,
            job.progress,
            job.total_emails,
            job.processed_emails,
            job.error,
            job.retryable,
            job.created_at,
            job.updated_at,
        )
        await self._run("insert_job", execute_query(self.pool, query, params))

    async def update_job(self, job: ProcessingJob) -> bool:
        query = """
            UPDATE email_processing_jobs
            SET status = %s,
                progress = %s,
                total_emails = %s,
                processed_emails = %s,
                error = %s,
                retryable = %s,
                updated_at = %s
            WHERE id = %s AND status IN ('pending', 'processing')
        """
        params = (
            job.status.value,
            job.progress,
            job.total_emails,
            job.processed_emails,
            (job.error or "")[:1000] or None,
            job.retryable,
            job.updated_at,
            job.id,
        )
        affected = await self._run("update_job", execute_query(self.pool, query, params))
        return affected > 0

    async def get_job(self, job_id: str) -> ProcessingJob | None:
        query = f"SELECT {self.JOB_COLUMNS} FROM email_processing_jobs WHERE id = %s"
        row = await self._run("get_job", fetch_one(self.pool, query, (job_id,)))
        return self._row_to_job(row)

    async def list_jobs(self, user_id: str, limit: int = 50) -> list[ProcessingJob]:
        query = f"""
            SELECT {self.JOB_COLUMNS} FROM email_processing_jobs
            WHERE user_id = %s
            ORDER BY created_at DESC
            LIMIT %s
        """
        rows = await self._run("list_jobs", fetch_all(self.pool, query, (user_id, limit)))
        return [self._row_to_job(row) for row in rows]

    async def find_stale_jobs(self, updated_before: datetime) -> list[ProcessingJob]:
        query = f"""
            SELECT {self.JOB_COLUMNS} FROM email_processing_jobs
            WHERE status = 'processing' AND updated_at < %s
            ORDER BY updated_at
        """
        rows = await self._run("find_stale_jobs", fetch_all(self.pool, query, (updated_before,)))
        return [self._row_to_job(row) for row in rows]

    async def upsert_results(self, job_id: str | None, user_id: str, results: list[ProcessingResult]) -> int:
        query = f"""
            INSERT INTO email_analyses ({self.MESSAGE_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (user_id, message_id) DO UPDATE SET
                job_id = EXCLUDED.job_id,
                priority_level = EXCLUDED.priority_level,
                priority_score = EXCLUDED.priority_score,
                action_required = EXCLUDED.action_required,
                summary = EXCLUDED.summary,
                success = EXCLUDED.success,
                error = EXCLUDED.error,
                retryable = EXCLUDED.retryable,
                processing_time_ms = EXCLUDED.processing_time_ms,
                analysis = EXCLUDED.analysis,
                message = EXCLUDED.message,
                updated_at = NOW()
        """
        params_seq = [self._record_params(result_to_record(job_id, user_id, r)) for r in results]
        return await self._run("upsert_results", execute_many(self.pool, query, params_seq))

    @staticmethod
    def _record_params(record: dict[str, Any]) -> tuple:
        return (
            record["message_id"],
            record["job_id"],
            record["user_id"],
            record["provider"],
            record["thread_id"],
            record["subject"],
            record["sender"],
            record["received_at"],
            record["is_read"],
            record["is_starred"],
            record["priority_level"],
            record["priority_score"],
            record["action_required"],
            record["summary"],
            record["success"],
            record["error"],
            record["retryable"],
            record["processing_time_ms"],
            Jsonb(record["analysis"]),
            Jsonb(record["message"]),
        )

    async def get_results(self, job_id: str) -> list[dict[str, Any]]:
        query = f"""
            SELECT {self.MESSAGE_COLUMNS} FROM email_analyses
            WHERE job_id = %s
            ORDER BY received_at DESC
        """
        return await self._run("get_results", fetch_all(self.pool, query, (job_id,)))

    async def job_stats(self, user_id: str) -> dict[str, Any]:
        query = """
            SELECT
                COUNT(*) AS total_jobs,
                COUNT(*) FILTER (WHERE status = 'completed') AS completed_jobs,
                COUNT(*) FILTER (WHERE status = 'failed') AS failed_jobs,
                COALESCE(SUM(processed_emails) FILTER (WHERE status = 'completed'), 0)
                    AS total_emails_processed,
                COALESCE(
                    AVG(EXTRACT(EPOCH FROM (updated_at - created_at)) * 1000)
                        FILTER (WHERE status = 'completed'),
                    0
                ) AS average_processing_time_ms
            FROM email_processing_jobs
            WHERE user_id = %s
        """
        row = await self._run("job_stats", fetch_one(self.pool, query, (user_id,))) or {}
        return {
            "total_jobs": int(row.get("total_jobs") or 0),
            "completed_jobs": int(row.get("completed_jobs") or 0),
            "failed_jobs": int(row.get("failed_jobs") or 0),
            "total_emails_processed": int(row.get("total_emails_processed") or 0),
            "average_processing_time_ms": float(row.get("average_processing_time_ms") or 0),
        }

    async def delete_older_than(self, cutoff: datetime) -> dict[str, int]:
        jobs_deleted = await self._run(
            "delete_jobs",
            execute_query(
                self.pool,
                "DELETE FROM email_processing_jobs WHERE created_at < %s AND status IN ('completed', 'failed')",
                (cutoff,),
            ),
        )
        analyses_deleted = await self._run(
            "delete_analyses",
            execute_query(self.pool, "DELETE FROM email_analyses WHERE created_at < %s", (cutoff,)),
        )
        return {"jobs_deleted": jobs_deleted, "analyses_deleted": analyses_deleted}

    def _filter_clause(self, status_filter: str | None) -> tuple[str, tuple]:
        if not status_filter or status_filter == "all":
            return "", ()
        clauses = {
            "unread": "AND is_read = FALSE",
            "read": "AND is_read = TRUE",
            "starred": "AND is_starred = TRUE",
            "action_required": "AND action_required = TRUE",
            "failed": "AND success = FALSE",
        }
        if status_filter in clauses:
            return clauses[status_filter], ()
        return "AND priority_level = %s", (status_filter,)

    async def list_messages(
        self, user_id: str, status_filter: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        clause, extra = self._filter_clause(status_filter)
        query = f"""
            SELECT {self.MESSAGE_COLUMNS} FROM email_analyses
            WHERE user_id = %s {clause}
            ORDER BY priority_score DESC, received_at DESC
            LIMIT %s
        """
        return await self._run("list_messages", fetch_all(self.pool, query, (user_id, *extra, limit)))

    async def get_message(self, user_id: str, message_id: str) -> dict[str, Any] | None:
        query = f"""
            SELECT {self.MESSAGE_COLUMNS} FROM email_analyses
            WHERE user_id = %s AND message_id = %s
        """
        return await self._run("get_message", fetch_one(self.pool, query, (user_id, message_id)))

    async def update_message_state(
        self,
        user_id: str,
        message_id: str,
        *,
        is_read: bool | None = None,
        priority_level: PriorityLevel | None = None,
    ) -> bool:
        assignments = []
        params: list[Any] = []
        if is_read is not None:
            assignments.append("is_read = %s")
            params.append(is_read)
        if priority_level is not None:
            assignments.append("priority_level = %s")
            params.append(priority_level.value)
        if not assignments:
            return False

        query = f"""
            UPDATE email_analyses
            SET {", ".join(assignments)}, updated_at = NOW()
            WHERE user_id = %s AND message_id = %s
        """
        affected = await self._run(
            "update_message_state",
            execute_query(self.pool, query, (*params, user_id, message_id)),
        )
        return affected > 0

    async def replace_analysis(
        self, user_id: str, message_id: str, result: ProcessingResult
    ) -> bool:
        record = result_to_record("", user_id, result)
        query = """
            UPDATE email_analyses
            SET priority_level = %s,
                priority_score = %s,
                action_required = %s,
                summary = %s,
                success = %s,
                error = %s,
                retryable = %s,
                processing_time_ms = %s,
                analysis = %s,
                updated_at = NOW()
            WHERE user_id = %s AND message_id = %s
        """
        params = (
            record["priority_level"],
            record["priority_score"],
            record["action_required"],
            record["summary"],
            record["success"],
            record["error"],
            record["retryable"],
            record["processing_time_ms"],
            Jsonb(record["analysis"]),
            user_id,
            message_id,
        )
        affected = await self._run("replace_analysis", execute_query(self.pool, query, params))
        return affected > 0

    async def delete_message(self, user_id: str, message_id: str) -> bool:
        affected = await self._run(
            "delete_message",
            execute_query(
                self.pool,
                "DELETE FROM email_analyses WHERE user_id = %s AND message_id = %s",
                (user_id, message_id),
            ),
        )
        return affected > 0


class InMemoryJobRepository(JobRepository):
    """Process-local store with the same semantics as the Postgres tables."""

    def __init__(self):
        self._jobs: dict[str, ProcessingJob] = {}
        self._messages: dict[tuple[str, str], dict[str, Any]] = {}
        self._lock = asyncio.Lock()

    @staticmethod
    def _snapshot(job: ProcessingJob) -> ProcessingJob:
        """Stored copy without tokens or results, like a database row."""
        return ProcessingJob(
            id=job.id,
            user_id=job.user_id,
            providers=[
                ProviderCredentials(provider=p.provider, access_token="", user_id=job.user_id)
                for p in job.providers
            ],
            options=FetchOptions.from_dict(job.options.to_dict()),
            status=job.status,
            progress=job.progress,
            total_emails=job.total_emails,
            processed_emails=job.processed_emails,
            created_at=job.created_at,
            updated_at=job.updated_at,
            error=job.error,
            retryable=job.retryable,
        )

    async def insert_job(self, job: ProcessingJob) -> None:
        async with self._lock:
            self._jobs[job.id] = self._snapshot(job)

    async def update_job(self, job: ProcessingJob) -> bool:
        async with self._lock:
            stored = self._jobs.get(job.id)
            if stored is None or stored.status.is_terminal:
                return False
            self._jobs[job.id] = self._snapshot(job)
            return True

    async def get_job(self, job_id: str) -> ProcessingJob | None:
        async with self._lock:
            stored = self._jobs.get(job_id)
            return self._snapshot(stored) if stored else None

    async def list_jobs(self, user_id: str, limit: int = 50) -> list[ProcessingJob]:
        async with self._lock:
            jobs = [self._snapshot(j) for j in self._jobs.values() if j.user_id == user_id]
        jobs.sort(key=lambda j: j.created_at, reverse=True)
        return jobs[:limit]

    async def find_stale_jobs(self, updated_before: datetime) -> list[ProcessingJob]:
        async with self._lock:
            return [
                self._snapshot(j)
                for j in self._jobs.values()
                if j.status == JobStatus.PROCESSING and j.updated_at < updated_before
            ]

    async def upsert_results(self, job_id: str | None, user_id: str, results: list[ProcessingResult]) -> int:
        now = datetime.now(UTC)
        async with self._lock:
            for result in results:
                record = result_to_record(job_id, user_id, result)
                key = (user_id, result.message_id)
                existing = self._messages.get(key)
                if existing:
                    # Mutable user state survives a re-run
                    record["is_read"] = existing["is_read"]
                    record["is_starred"] = existing["is_starred"]
                    record["created_at"] = existing["created_at"]
                else:
                    record["created_at"] = now
                record["updated_at"] = now
                self._messages[key] = record
        return len(results)

    async def get_results(self, job_id: str) -> list[dict[str, Any]]:
        async with self._lock:
            records = [copy.deepcopy(r) for r in self._messages.values() if r["job_id"] == job_id]
        records.sort(key=lambda r: r["received_at"], reverse=True)
        return records

    async def job_stats(self, user_id: str) -> dict[str, Any]:
        async with self._lock:
            jobs = [j for j in self._jobs.values() if j.user_id == user_id]
        completed = [j for j in jobs if j.status == JobStatus.COMPLETED]
        durations = [(j.updated_at - j.created_at).total_seconds() * 1000 for j in completed]
        return {
            "total_jobs": len(jobs),
            "completed_jobs": len(completed),
            "failed_jobs": sum(1 for j in jobs if j.status == JobStatus.FAILED),
            "total_emails_processed": sum(j.processed_emails for j in completed),
            "average_processing_time_ms": sum(durations) / len(durations) if durations else 0.0,
        }

    async def delete_older_than(self, cutoff: datetime) -> dict[str, int]:
        async with self._lock:
            doomed_jobs = [
                job_id
                for job_id, job in self._jobs.items()
                if job.created_at < cutoff and job.status.is_terminal
            ]
            for job_id in doomed_jobs:
                del self._jobs[job_id]
            doomed_messages = [k for k, r in self._messages.items() if r["created_at"] < cutoff]
            for key in doomed_messages:
                del self._messages[key]
        return {"jobs_deleted": len(doomed_jobs), "analyses_deleted": len(doomed_messages)}

    async def list_messages(
        self, user_id: str, status_filter: str | None = None, limit: int = 100
    ) -> list[dict[str, Any]]:
        async with self._lock:
            records = [
                copy.deepcopy(r)
                for (owner, _), r in self._messages.items()
                if owner == user_id and matches_filter(r, status_filter)
            ]
        records.sort(key=lambda r: (r["priority_score"], r["received_at"]), reverse=True)
        return records[:limit]

    async def get_message(self, user_id: str, message_id: str) -> dict[str, Any] | None:
        async with self._lock:
            record = self._messages.get((user_id, message_id))
            return copy.deepcopy(record) if record else None

    async def update_message_state(
        self,
        user_id: str,
        message_id: str,
        *,
        is_read: bool | None = None,
        priority_level: PriorityLevel | None = None,
    ) -> bool:
        async with self._lock:
            record = self._messages.get((user_id, message_id))
            if record is None or (is_read is None and priority_level is None):
                return False
            if is_read is not None:
                record["is_read"] = is_read
            if priority_level is not None:
                record["priority_level"] = priority_level.value
            record["updated_at"] = datetime.now(UTC)
            return True

    async def replace_analysis(
        self, user_id: str, message_id: str, result: ProcessingResult
    ) -> bool:
        async with self._lock:
            record = self._messages.get((user_id, message_id))
            if record is None:
                return False
            fresh = result_to_record(record["job_id"], user_id, result)
            for key in (
                "priority_level",
                "priority_score",
                "action_required",
                "summary",
                "success",
                "error",
                "retryable",
                "processing_time_ms",
                "analysis",
            ):
                record[key] = fresh[key]
            record["updated_at"] = datetime.now(UTC)
            return True

    async def delete_message(self, user_id: str, message_id: str) -> bool:
        async with self._lock:
            return self._messages.pop((user_id, message_id), None) is not None
