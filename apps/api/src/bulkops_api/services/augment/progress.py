from __future__ import annotations

from datetime import datetime, timezone
from typing import Protocol

from sqlalchemy import update
from sqlalchemy.engine import Engine

from bulkops_api.models import BulkJobRecord
from bulkops_api.services.augment.errors import FatalJobError
from bulkops_api.services.augment.types import STATUS_PROCESSING, ItemOutcome, JobProgress


class ProgressSink(Protocol):
    @property
    def current(self) -> JobProgress: ...

    def record(self, outcome: ItemOutcome) -> JobProgress: ...


class InMemoryProgress:
    def __init__(self, total: int) -> None:
        self._progress = JobProgress(total=total)

    @property
    def current(self) -> JobProgress:
        return self._progress

    def record(self, outcome: ItemOutcome) -> JobProgress:
        self._progress = self._progress.with_outcome(outcome)
        return self._progress


class JobRowProgress:
    """Mirrors progress onto a job row, one atomic UPDATE per item.

    ``attempt`` is the job's ``attempts`` value at claim time. The reconciler
    bumps it when it reclaims a job, so writes from the stale run stop matching.
    """

    def __init__(self, engine: Engine, job_id: str, initial: JobProgress, *, attempt: int | None = None) -> None:
        self._engine = engine
        self._job_id = job_id
        self._progress = initial
        self._attempt = attempt

    @property
    def current(self) -> JobProgress:
        return self._progress

    def record(self, outcome: ItemOutcome) -> JobProgress:
        progress = self._progress.with_outcome(outcome)

        stmt = (
            update(BulkJobRecord)
            .where(BulkJobRecord.id == self._job_id)
            .where(BulkJobRecord.status == STATUS_PROCESSING)
        )
        if self._attempt is not None:
            stmt = stmt.where(BulkJobRecord.attempts == self._attempt)

        with self._engine.begin() as connection:
            updated = connection.execute(
                stmt.values(
                    processed_items=progress.processed,
                    successful_items=progress.successful,
                    failed_items=progress.failed,
                    skipped_items=progress.skipped,
                    results=progress.results_payload(),
                    updated_at=datetime.now(timezone.utc),
                )
            )
        if updated.rowcount != 1:
            raise FatalJobError(f"job {self._job_id} is no longer processing")

        self._progress = progress
        return progress
