from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Sequence
from uuid import uuid4

from sqlalchemy.orm import Session

from bulkops_api.models import BulkJobRecord
from bulkops_api.services.augment.errors import JobValidationError
from bulkops_api.services.augment.operations import supported_operations
from bulkops_api.services.augment.types import STATUS_QUEUED


def validate_operation_type(operation_type: str) -> None:
    if operation_type not in supported_operations():
        raise JobValidationError(
            f"unknown operation_type '{operation_type}'; expected one of {list(supported_operations())}"
        )


def validate_item_ids(item_ids: Sequence[str], *, cap: int | None = None) -> None:
    if not item_ids:
        raise JobValidationError("item_ids must not be empty", cap=cap, received_count=0)
    if any(not item_id.strip() for item_id in item_ids):
        raise JobValidationError("item_ids must not contain blank ids", cap=cap, received_count=len(item_ids))
    if cap is not None and len(item_ids) > cap:
        raise JobValidationError(
            f"Batch size too large. Maximum {cap} items per request; submit a queued job instead.",
            cap=cap,
            received_count=len(item_ids),
        )


def create_job(
    session: Session,
    *,
    operation_type: str,
    item_ids: Sequence[str],
    options: dict[str, Any] | None,
    max_attempts: int,
    available_at: datetime | None = None,
) -> BulkJobRecord:
    validate_operation_type(operation_type)
    validate_item_ids(item_ids)

    normalized_options = dict(options or {})
    normalized_options["dry_run"] = bool(normalized_options.get("dry_run", False))
    normalized_options["retry"] = bool(normalized_options.get("retry", False))

    job = BulkJobRecord(
        id=str(uuid4()),
        operation_type=operation_type,
        status=STATUS_QUEUED,
        item_ids=list(item_ids),
        options=normalized_options,
        total_items=len(item_ids),
        processed_items=0,
        successful_items=0,
        failed_items=0,
        skipped_items=0,
        results=[],
        attempts=0,
        max_attempts=max_attempts,
        created_at=datetime.now(timezone.utc),
        updated_at=datetime.now(timezone.utc),
        available_at=available_at,
    )
    session.add(job)
    return job


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def job_summary(job: BulkJobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "operation_type": job.operation_type,
        "status": job.status,
        "total_items": job.total_items,
        "processed_items": job.processed_items,
    }


def job_detail(job: BulkJobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "operation_type": job.operation_type,
        "status": job.status,
        "item_ids": list(job.item_ids or []),
        "options": dict(job.options or {}),
        "total_items": job.total_items,
        "processed_items": job.processed_items,
        "successful_items": job.successful_items,
        "failed_items": job.failed_items,
        "skipped_items": job.skipped_items,
        "results": list(job.results or []),
        "error_message": job.error_message,
        "attempts": job.attempts,
        "max_attempts": job.max_attempts,
        "created_at": _to_iso(job.created_at),
        "updated_at": _to_iso(job.updated_at),
        "available_at": _to_iso(job.available_at),
        "started_at": _to_iso(job.started_at),
        "completed_at": _to_iso(job.completed_at),
    }


def failed_item_ids(job: BulkJobRecord) -> list[str]:
    return [
        str(outcome["item_id"])
        for outcome in job.results or []
        if isinstance(outcome, dict) and outcome.get("status") == "failed" and outcome.get("item_id")
    ]
