from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Query, Response
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from bulkops_api.config import get_settings
from bulkops_api.db import get_engine
from bulkops_api.jobs import (
    create_job,
    failed_item_ids,
    job_detail,
    job_summary,
    validate_item_ids,
)
from bulkops_api.models import BulkJobRecord
from bulkops_api.services.augment import (
    FatalJobError,
    InMemoryProgress,
    JobValidationError,
    ProviderThrottled,
    build_executor,
)
from bulkops_api.services.augment.client import AugmentationClient, ChatCompletionsClient
from bulkops_api.services.augment.operations import supported_operations
from bulkops_api.services.augment.types import TERMINAL_STATUSES

app = FastAPI(title="Bulk Operations API", version="0.1.0")


class JobOptions(BaseModel):
    model_config = ConfigDict(extra="allow")

    dry_run: bool = False
    retry: bool = False


class SubmitJobRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    operation_type: str = Field(min_length=1)
    item_ids: list[str]
    options: JobOptions = Field(default_factory=JobOptions)


class RunOperationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    item_ids: list[str]
    dry_run: bool = False
    retry: bool = False


@app.on_event("startup")
def startup() -> None:
    get_engine()


def get_augmentation_client() -> AugmentationClient:
    settings = get_settings()
    return ChatCompletionsClient(
        base_url=settings.augment_base_url,
        model=settings.augment_model,
        api_key=settings.augment_api_key,
        temperature=settings.augment_temperature,
        timeout_seconds=settings.augment_timeout_seconds,
    )


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/jobs", status_code=201)
def submit_job(request: SubmitJobRequest) -> dict[str, str]:
    settings = get_settings()

    with Session(get_engine()) as session:
        try:
            job = create_job(
                session,
                operation_type=request.operation_type,
                item_ids=request.item_ids,
                options=request.options.model_dump(),
                max_attempts=settings.job_max_attempts,
            )
        except JobValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        session.commit()
        job_id = job.id
        job_status = job.status

    print(
        f"[api] job queued job_id={job_id} operation={request.operation_type} items={len(request.item_ids)}",
        flush=True,
    )
    return {"job_id": job_id, "status": job_status}


@app.post("/operations/{operation_type}/run")
def run_operation(
    operation_type: str,
    request: RunOperationRequest,
    client: Annotated[AugmentationClient, Depends(get_augmentation_client)],
) -> JSONResponse:
    if operation_type not in supported_operations():
        raise HTTPException(status_code=404, detail=f"unknown operation_type '{operation_type}'")

    settings = get_settings()
    try:
        validate_item_ids(request.item_ids, cap=settings.batch_size)
    except JobValidationError as exc:
        return JSONResponse(
            status_code=400,
            content={
                "error": str(exc),
                "cap": exc.cap,
                "received_count": exc.received_count,
            },
        )

    executor = build_executor(
        operation_type,
        settings=settings,
        engine=get_engine(),
        client=client,
    )
    progress = InMemoryProgress(total=len(request.item_ids))

    try:
        executor.run(request.item_ids, dry_run=request.dry_run, progress=progress, retry=request.retry)
    except ProviderThrottled as exc:
        headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after is not None else None
        return JSONResponse(
            status_code=429,
            headers=headers,
            content={
                "error": str(exc),
                "retry_after": exc.retry_after,
                "summary": progress.current.summary(),
                "results": progress.current.results_payload(),
                "dryRun": request.dry_run,
            },
        )
    except FatalJobError as exc:
        return JSONResponse(
            status_code=500,
            content={
                "error": str(exc),
                "summary": progress.current.summary(),
                "results": progress.current.results_payload(),
                "dryRun": request.dry_run,
            },
        )

    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "summary": progress.current.summary(),
            "results": progress.current.results_payload(),
            "dryRun": request.dry_run,
        },
    )


@app.get("/jobs")
def list_jobs(
    operation_type: str | None = Query(default=None),
    status: str | None = Query(default=None),
) -> list[dict[str, Any]]:
    with Session(get_engine()) as session:
        stmt = select(BulkJobRecord)
        if operation_type is not None:
            stmt = stmt.where(BulkJobRecord.operation_type == operation_type)
        if status is not None:
            stmt = stmt.where(BulkJobRecord.status == status)

        jobs = session.scalars(
            stmt.order_by(BulkJobRecord.created_at.asc(), BulkJobRecord.id.asc())
        ).all()

        return [job_summary(job) for job in jobs]


@app.get("/jobs/{job_id}")
def get_job(job_id: str) -> dict[str, Any]:
    with Session(get_engine()) as session:
        job = session.get(BulkJobRecord, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        return job_detail(job)


@app.post("/jobs/{job_id}/retry-failed", status_code=201)
def retry_failed_items(job_id: str) -> dict[str, Any]:
    settings = get_settings()

    with Session(get_engine()) as session:
        job = session.get(BulkJobRecord, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        if job.status not in TERMINAL_STATUSES:
            raise HTTPException(status_code=409, detail=f"job is {job.status}; wait until it finishes")

        item_ids = failed_item_ids(job)
        if not item_ids:
            raise HTTPException(status_code=400, detail="job has no failed items to retry")

        options = dict(job.options or {})
        options["original_job_id"] = job.id
        retry_job = create_job(
            session,
            operation_type=job.operation_type,
            item_ids=item_ids,
            options=options,
            max_attempts=settings.job_max_attempts,
        )
        session.commit()

        return {"job_id": retry_job.id, "status": retry_job.status, "item_count": len(item_ids)}


@app.delete("/jobs/{job_id}", status_code=204)
def delete_job(job_id: str) -> Response:
    with Session(get_engine()) as session:
        job = session.get(BulkJobRecord, job_id)
        if job is None:
            raise HTTPException(status_code=404, detail="job not found")
        if job.status not in TERMINAL_STATUSES:
            raise HTTPException(status_code=409, detail=f"job is {job.status}; only finished jobs can be deleted")
        session.delete(job)
        session.commit()

    return Response(status_code=204)


def run() -> None:
    import uvicorn

    uvicorn.run("bulkops_api.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
