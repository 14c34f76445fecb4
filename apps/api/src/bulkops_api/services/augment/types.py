from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

OUTCOME_UPDATED = "updated"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"
OUTCOME_PREVIEW = "preview"

STATUS_QUEUED = "queued"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})


@dataclass(frozen=True)
class Article:
    id: str
    title: str
    slug: str
    category_slug: str | None
    status: str
    content: str
    excerpt: str | None
    meta_title: str | None = None
    seo_title: str | None = None
    focus_keyphrase: str | None = None
    keyphrase_synonyms: str | None = None
    meta_description: str | None = None
    tldr_snapshot: dict[str, Any] | list[Any] | None = None
    published_at: datetime | None = None

    @property
    def path(self) -> str:
        return f"/{self.category_slug or 'news'}/{self.slug}"


@dataclass(frozen=True)
class ItemOutcome:
    item_id: str
    status: str
    detail: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"item_id": self.item_id, "status": self.status, "detail": self.detail}

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ItemOutcome:
        return cls(
            item_id=str(payload.get("item_id", "")),
            status=str(payload.get("status", "")),
            detail=str(payload.get("detail") or ""),
        )


@dataclass(frozen=True)
class JobProgress:
    """Counters and outcomes accumulated by one run over an item list."""

    total: int
    processed: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    results: tuple[ItemOutcome, ...] = field(default_factory=tuple)

    def with_outcome(self, outcome: ItemOutcome) -> JobProgress:
        if self.processed >= self.total:
            raise ValueError(f"progress already complete ({self.processed}/{self.total})")

        successful = self.successful
        failed = self.failed
        skipped = self.skipped
        if outcome.status in (OUTCOME_UPDATED, OUTCOME_PREVIEW):
            successful += 1
        elif outcome.status == OUTCOME_FAILED:
            failed += 1
        elif outcome.status == OUTCOME_SKIPPED:
            skipped += 1
        else:
            raise ValueError(f"unknown outcome status: {outcome.status}")

        return replace(
            self,
            processed=self.processed + 1,
            successful=successful,
            failed=failed,
            skipped=skipped,
            results=self.results + (outcome,),
        )

    def count(self, status: str) -> int:
        return sum(1 for outcome in self.results if outcome.status == status)

    def summary(self) -> dict[str, int]:
        return {
            "total": self.total,
            "processed": self.processed,
            "updated": self.count(OUTCOME_UPDATED),
            "preview": self.count(OUTCOME_PREVIEW),
            "failed": self.failed,
            "skipped": self.skipped,
        }

    def results_payload(self) -> list[dict[str, str]]:
        return [outcome.to_dict() for outcome in self.results]


@dataclass(frozen=True)
class TransformResult:
    content: str
    model: str
