from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import DateTime, bindparam, text
from sqlalchemy.engine import Engine

ACTION_REQUEUED = "requeued"
ACTION_FAILED = "failed"


@dataclass(frozen=True)
class ReclaimedJob:
    job_id: str
    action: str
    attempts: int
    processed_items: int
    total_items: int


def reclaim_stuck_jobs(
    engine: Engine,
    *,
    stuck_after: timedelta,
    now: datetime | None = None,
) -> list[ReclaimedJob]:
    """Reclaim jobs that have been ``processing`` without progress for too long.

    A job whose last progress write is older than ``stuck_after`` is presumed
    dead. It goes back to ``queued`` (and later resumes after its recorded
    items) until it has been reclaimed ``max_attempts`` times, then it fails.
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - stuck_after
    reclaimed: list[ReclaimedJob] = []

    with engine.begin() as connection:
        rows = connection.execute(
            text(
                """
                SELECT id, attempts, max_attempts, processed_items, total_items
                FROM bulk_operation_jobs
                WHERE status = 'processing' AND updated_at < :cutoff
                ORDER BY started_at ASC, id ASC
                """
            ).bindparams(bindparam("cutoff", type_=DateTime(timezone=True))),
            {"cutoff": cutoff},
        ).mappings().all()

        for row in rows:
            attempts = int(row["attempts"] or 0)
            next_attempts = attempts + 1
            requeue = next_attempts < int(row["max_attempts"] or 1)
            timeout_minutes = int(stuck_after.total_seconds() // 60)

            updated = connection.execute(
                text(
                    """
                    UPDATE bulk_operation_jobs
                    SET status = CAST(:status AS VARCHAR),
                        attempts = :next_attempts,
                        error_message = :error,
                        started_at = CASE WHEN CAST(:status AS VARCHAR) = 'queued' THEN NULL ELSE started_at END,
                        completed_at = CASE WHEN CAST(:status AS VARCHAR) = 'failed' THEN CURRENT_TIMESTAMP ELSE NULL END,
                        updated_at = CURRENT_TIMESTAMP
                    WHERE id = :job_id AND status = 'processing' AND attempts = :attempts
                    """
                ),
                {
                    "job_id": row["id"],
                    "status": "queued" if requeue else "failed",
                    "attempts": attempts,
                    "next_attempts": next_attempts,
                    "error": None
                    if requeue
                    else f"job made no progress for {timeout_minutes} minutes after {next_attempts} attempts",
                },
            )
            if updated.rowcount != 1:
                continue

            job = ReclaimedJob(
                job_id=str(row["id"]),
                action=ACTION_REQUEUED if requeue else ACTION_FAILED,
                attempts=next_attempts,
                processed_items=int(row["processed_items"] or 0),
                total_items=int(row["total_items"] or 0),
            )
            reclaimed.append(job)
            print(
                f"[reconciler] ALERT stuck job job_id={job.job_id} action={job.action} "
                f"attempts={job.attempts} progress={job.processed_items}/{job.total_items}",
                flush=True,
            )

    return reclaimed
