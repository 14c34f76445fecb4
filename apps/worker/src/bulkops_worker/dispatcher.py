from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
import json
from typing import Any, Callable

from sqlalchemy import DateTime, bindparam, text, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from bulkops_api.jobs import create_job
from bulkops_api.models import BulkJobRecord
from bulkops_api.services.augment import (
    BatchExecutor,
    FatalJobError,
    ItemOutcome,
    JobProgress,
    JobRowProgress,
    ProviderThrottled,
)

ExecutorFactory = Callable[[str], BatchExecutor]

# Arbitrary application-wide key for pg_advisory_xact_lock around the claim.
CLAIM_LOCK_KEY = 7_214_031
DEFAULT_THROTTLE_COOLDOWN = timedelta(seconds=60)

_CLAIM_COLUMNS = """
    id, operation_type, item_ids, options, total_items, processed_items,
    successful_items, failed_items, skipped_items, results, attempts, max_attempts
"""


@dataclass(frozen=True)
class ClaimedJob:
    id: str
    operation_type: str
    item_ids: list[str]
    options: dict[str, Any]
    progress: JobProgress
    attempts: int
    max_attempts: int

    @property
    def dry_run(self) -> bool:
        return bool(self.options.get("dry_run", False))

    @property
    def retry(self) -> bool:
        return bool(self.options.get("retry", False))


@dataclass(frozen=True)
class DispatchResult:
    job_id: str | None
    status: str
    message: str = ""


def _normalize_json(value: Any, expected: type) -> Any:
    if isinstance(value, str) and value.strip():
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            return None
    if isinstance(value, expected):
        return value
    return None


def _to_claimed_job(row: Any) -> ClaimedJob:
    results = _normalize_json(row["results"], list) or []
    progress = JobProgress(
        total=int(row["total_items"] or 0),
        processed=int(row["processed_items"] or 0),
        successful=int(row["successful_items"] or 0),
        failed=int(row["failed_items"] or 0),
        skipped=int(row["skipped_items"] or 0),
        results=tuple(ItemOutcome.from_dict(entry) for entry in results if isinstance(entry, dict)),
    )
    return ClaimedJob(
        id=str(row["id"]),
        operation_type=str(row["operation_type"]),
        item_ids=[str(item_id) for item_id in _normalize_json(row["item_ids"], list) or []],
        options=_normalize_json(row["options"], dict) or {},
        progress=progress,
        attempts=int(row["attempts"] or 0),
        max_attempts=int(row["max_attempts"] or 1),
    )


def _claim_params(now: datetime | None) -> tuple[Any, dict[str, Any]]:
    return bindparam("now", type_=DateTime(timezone=True)), {"now": now or datetime.now(timezone.utc)}


def claim_next_job(engine: Engine, *, now: datetime | None = None) -> ClaimedJob | None:
    """Claim the oldest available queued job, unless another job is already processing.

    Jobs with ``available_at`` in the future (throttle successors) are not
    claimable yet. On PostgreSQL the whole claim runs under a transaction-level
    advisory lock so concurrent claimers are serialized and the "nothing is
    processing" check sees every committed claim.
    """
    now_param, params = _claim_params(now)

    if engine.dialect.name == "postgresql":
        with engine.begin() as connection:
            connection.execute(text("SELECT pg_advisory_xact_lock(:lock_key)"), {"lock_key": CLAIM_LOCK_KEY})
            row = connection.execute(
                text(
                    f"""
                    SELECT {_CLAIM_COLUMNS}
                    FROM bulk_operation_jobs
                    WHERE status = 'queued'
                      AND (available_at IS NULL OR available_at <= :now)
                      AND NOT EXISTS (
                          SELECT 1 FROM bulk_operation_jobs WHERE status = 'processing'
                      )
                    ORDER BY created_at ASC, id ASC
                    LIMIT 1
                    FOR UPDATE SKIP LOCKED
                    """
                ).bindparams(now_param),
                params,
            ).mappings().first()
            if row is None:
                return None

            connection.execute(
                text(
                    """
                    UPDATE bulk_operation_jobs
                    SET status = 'processing',
                        started_at = CURRENT_TIMESTAMP,
                        updated_at = CURRENT_TIMESTAMP,
                        completed_at = NULL,
                        error_message = NULL
                    WHERE id = :job_id
                    """
                ),
                {"job_id": row["id"]},
            )
            return _to_claimed_job(row)

    with engine.begin() as connection:
        row = connection.execute(
            text(
                f"""
                SELECT {_CLAIM_COLUMNS}
                FROM bulk_operation_jobs
                WHERE status = 'queued'
                  AND (available_at IS NULL OR available_at <= :now)
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """
            ).bindparams(now_param),
            params,
        ).mappings().first()
        if row is None:
            return None

        claimed = connection.execute(
            text(
                """
                UPDATE bulk_operation_jobs
                SET status = 'processing',
                    started_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP,
                    completed_at = NULL,
                    error_message = NULL
                WHERE id = :job_id
                  AND status = 'queued'
                  AND NOT EXISTS (
                      SELECT 1 FROM bulk_operation_jobs WHERE status = 'processing'
                  )
                """
            ),
            {"job_id": row["id"]},
        )
        if claimed.rowcount != 1:
            return None

        return _to_claimed_job(row)


def _mark_job_completed(engine: Engine, job: ClaimedJob) -> bool:
    with engine.begin() as connection:
        updated = connection.execute(
            text(
                """
                UPDATE bulk_operation_jobs
                SET status = 'completed',
                    completed_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP,
                    error_message = NULL
                WHERE id = :job_id AND status = 'processing' AND attempts = :attempts
                """
            ),
            {"job_id": job.id, "attempts": job.attempts},
        )
    return updated.rowcount == 1


def _mark_job_failed(engine: Engine, job: ClaimedJob, error_message: str) -> bool:
    with engine.begin() as connection:
        updated = connection.execute(
            text(
                """
                UPDATE bulk_operation_jobs
                SET status = 'failed',
                    error_message = :error,
                    completed_at = CURRENT_TIMESTAMP,
                    updated_at = CURRENT_TIMESTAMP
                WHERE id = :job_id AND status = 'processing' AND attempts = :attempts
                """
            ),
            {"job_id": job.id, "attempts": job.attempts, "error": error_message or "unknown error"},
        )
    return updated.rowcount == 1


def _requeue_remaining_items(
    engine: Engine,
    job: ClaimedJob,
    progress: JobProgress,
    exc: ProviderThrottled,
    *,
    cooldown: timedelta,
) -> str | None:
    """Fail the throttled job and queue its unprocessed items as a new job, atomically.

    The successor becomes claimable once the provider's ``Retry-After`` (or
    ``cooldown`` when none was sent) has elapsed.
    """
    remaining = job.item_ids[progress.processed :]
    delay = timedelta(seconds=exc.retry_after) if exc.retry_after is not None else cooldown
    available_at = datetime.now(timezone.utc) + delay

    with Session(engine) as session:
        successor = create_job(
            session,
            operation_type=job.operation_type,
            item_ids=remaining,
            options={**job.options, "requeued_from_job_id": job.id},
            max_attempts=job.max_attempts,
            available_at=available_at,
        )
        message = (
            f"provider throttled after {progress.processed}/{progress.total} items; "
            f"{len(remaining)} remaining items requeued as job {successor.id} "
            f"available after {available_at.isoformat()}: {exc}"
        )
        failed = session.execute(
            update(BulkJobRecord)
            .where(BulkJobRecord.id == job.id)
            .where(BulkJobRecord.status == "processing")
            .where(BulkJobRecord.attempts == job.attempts)
            .values(status="failed", error_message=message, completed_at=successor.created_at)
            .execution_options(synchronize_session=False)
        )
        if failed.rowcount != 1:
            session.rollback()
            return None
        session.commit()
        return successor.id


def process_claimed_job(
    engine: Engine,
    job: ClaimedJob,
    *,
    executor_factory: ExecutorFactory,
    throttle_cooldown: timedelta = DEFAULT_THROTTLE_COOLDOWN,
) -> DispatchResult:
    progress = JobRowProgress(engine, job.id, job.progress, attempt=job.attempts)

    try:
        if len(job.progress.results) != job.progress.processed:
            raise FatalJobError(
                f"job {job.id} has {len(job.progress.results)} results for "
                f"{job.progress.processed} processed items"
            )
        executor = executor_factory(job.operation_type)
        executor.run(job.item_ids, dry_run=job.dry_run, progress=progress, retry=job.retry)
    except ProviderThrottled as exc:
        successor_id = _requeue_remaining_items(engine, job, progress.current, exc, cooldown=throttle_cooldown)
        print(
            f"[dispatcher] job throttled job_id={job.id} processed={progress.current.processed}/"
            f"{progress.current.total} successor_job_id={successor_id}",
            flush=True,
        )
        return DispatchResult(job_id=job.id, status="throttled", message=str(exc))
    except Exception as exc:
        _mark_job_failed(engine, job, str(exc))
        print(
            f"[dispatcher] job failed job_id={job.id} processed={progress.current.processed}/"
            f"{progress.current.total} error={exc}",
            flush=True,
        )
        return DispatchResult(job_id=job.id, status="failed", message=str(exc))

    if not _mark_job_completed(engine, job):
        print(f"[dispatcher] job {job.id} was reclaimed before it could be completed", flush=True)
        return DispatchResult(job_id=job.id, status="reclaimed")

    final = progress.current
    print(
        f"[dispatcher] job completed job_id={job.id} successful={final.successful} "
        f"failed={final.failed} skipped={final.skipped}",
        flush=True,
    )
    return DispatchResult(job_id=job.id, status="completed")


def dispatch(
    engine: Engine,
    *,
    executor_factory: ExecutorFactory,
    throttle_cooldown: timedelta = DEFAULT_THROTTLE_COOLDOWN,
) -> DispatchResult:
    job = claim_next_job(engine)
    if job is None:
        return DispatchResult(job_id=None, status="idle", message="No queued jobs to process")

    print(
        f"[dispatcher] claimed job_id={job.id} operation={job.operation_type} "
        f"progress={job.progress.processed}/{job.progress.total} attempt={job.attempts}",
        flush=True,
    )
    return process_claimed_job(
        engine,
        job,
        executor_factory=executor_factory,
        throttle_cooldown=throttle_cooldown,
    )
