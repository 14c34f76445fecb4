from __future__ import annotations

from time import sleep as _sleep
from typing import Callable, Sequence

from sqlalchemy.engine import Engine

from bulkops_api.config import Settings
from bulkops_api.services.augment.client import AugmentationClient
from bulkops_api.services.augment.errors import FatalJobError, ItemTransformError, ProviderThrottled
from bulkops_api.services.augment.guard import IdempotencyGuard
from bulkops_api.services.augment.links import HttpLinkChecker
from bulkops_api.services.augment.operations import Operation, build_operation
from bulkops_api.services.augment.progress import ProgressSink
from bulkops_api.services.augment.store import ArticleStore, SqlArticleStore
from bulkops_api.services.augment.types import (
    OUTCOME_FAILED,
    OUTCOME_PREVIEW,
    OUTCOME_SKIPPED,
    OUTCOME_UPDATED,
    ItemOutcome,
    JobProgress,
)


def split_batches(item_ids: Sequence[str], batch_size: int) -> list[list[str]]:
    if batch_size < 1:
        raise ValueError("batch_size must be at least 1")
    return [list(item_ids[start : start + batch_size]) for start in range(0, len(item_ids), batch_size)]


def truncate_preview(text: str, limit: int) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + "..."


class BatchExecutor:
    """Runs one operation over an ordered item list, one item at a time.

    Items are processed strictly in order with a short pause between items and
    a longer pause between batches. Every outcome is handed to the progress
    sink before the next item starts. The run resumes after the items already
    recorded in ``progress``. With ``retry`` set, items the guard reports as
    already augmented are transformed again instead of skipped.
    """

    def __init__(
        self,
        *,
        operation: Operation,
        store: ArticleStore,
        client: AugmentationClient,
        guard: IdempotencyGuard | None = None,
        batch_size: int = 50,
        item_delay_seconds: float = 0.3,
        batch_delay_seconds: float = 1.0,
        preview_chars: int = 200,
        sleep: Callable[[float], None] = _sleep,
    ) -> None:
        self._operation = operation
        self._store = store
        self._client = client
        self._guard = guard or IdempotencyGuard(store)
        self._batch_size = batch_size
        self._item_delay_seconds = item_delay_seconds
        self._batch_delay_seconds = batch_delay_seconds
        self._preview_chars = preview_chars
        self._sleep = sleep

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def run(
        self,
        item_ids: Sequence[str],
        *,
        dry_run: bool,
        progress: ProgressSink,
        retry: bool = False,
    ) -> JobProgress:
        resume_from = progress.current.processed
        instruction: str | None = None
        position = 0
        first_batch = True

        for batch_number, batch in enumerate(split_batches(item_ids, self._batch_size), start=1):
            batch_start = position
            position += len(batch)
            if position <= resume_from:
                continue

            pending = batch[max(0, resume_from - batch_start) :]
            if not first_batch:
                self._sleep(self._batch_delay_seconds)
            first_batch = False

            if instruction is None:
                instruction = self._build_instruction()

            print(
                f"[augment] batch {batch_number} operation={self._operation.name} "
                f"items={len(pending)} progress={progress.current.processed}/{len(item_ids)}",
                flush=True,
            )
            for index, item_id in enumerate(pending):
                if index:
                    self._sleep(self._item_delay_seconds)
                outcome = self._process_item(item_id, instruction=instruction, dry_run=dry_run, retry=retry)
                progress.record(outcome)

        return progress.current

    def _build_instruction(self) -> str:
        try:
            return self._operation.build_instruction(self._store)
        except Exception as exc:
            raise FatalJobError(f"failed to build {self._operation.name} instruction: {exc}") from exc

    def _process_item(self, item_id: str, *, instruction: str, dry_run: bool, retry: bool) -> ItemOutcome:
        try:
            decision = self._guard.evaluate(item_id, self._operation)
            if decision.satisfied and not retry:
                return ItemOutcome(item_id=item_id, status=OUTCOME_SKIPPED, detail=decision.reason)

            result = self._client.transform(
                text=self._operation.build_input(decision.article),
                instruction=instruction,
            )
            fields = self._operation.parse_output(result.content, decision.article)
        except ItemTransformError as exc:
            print(f"[augment] item failed item_id={item_id} error={exc}", flush=True)
            return ItemOutcome(item_id=item_id, status=OUTCOME_FAILED, detail=str(exc))
        except (ProviderThrottled, FatalJobError):
            raise
        except Exception as exc:
            raise FatalJobError(f"item {item_id}: {exc}") from exc

        if dry_run:
            preview = truncate_preview(self._operation.preview(fields), self._preview_chars)
            return ItemOutcome(item_id=item_id, status=OUTCOME_PREVIEW, detail=preview)

        try:
            self._store.update_fields(item_id, fields)
        except Exception as exc:
            raise FatalJobError(f"item {item_id}: failed to save: {exc}") from exc
        return ItemOutcome(
            item_id=item_id,
            status=OUTCOME_UPDATED,
            detail=f"updated {', '.join(sorted(fields))}",
        )


def build_executor(
    operation_type: str,
    *,
    settings: Settings,
    engine: Engine,
    client: AugmentationClient,
    sleep: Callable[[float], None] = _sleep,
) -> BatchExecutor:
    link_checker = (
        HttpLinkChecker(timeout_seconds=settings.link_check_timeout_seconds)
        if settings.validate_links
        else None
    )
    operation = build_operation(
        operation_type,
        max_input_chars=settings.max_input_chars,
        link_checker=link_checker,
    )
    return BatchExecutor(
        operation=operation,
        store=SqlArticleStore(engine),
        client=client,
        batch_size=settings.batch_size,
        item_delay_seconds=settings.item_delay_seconds,
        batch_delay_seconds=settings.batch_delay_seconds,
        preview_chars=settings.preview_chars,
        sleep=sleep,
    )
