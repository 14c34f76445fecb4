from __future__ import annotations

from dataclasses import dataclass

from bulkops_api.services.augment.errors import ItemTransformError
from bulkops_api.services.augment.operations import Operation, build_operation
from bulkops_api.services.augment.store import ArticleStore
from bulkops_api.services.augment.types import Article


@dataclass(frozen=True)
class GuardResult:
    satisfied: bool
    reason: str
    article: Article


class IdempotencyGuard:
    """Read-only check that lets re-submitted items be skipped."""

    def __init__(self, store: ArticleStore) -> None:
        self._store = store

    def evaluate(self, item_id: str, operation: Operation) -> GuardResult:
        article = self._store.get_article(item_id)
        if article is None:
            raise ItemTransformError(f"item {item_id} not found")

        reason = operation.satisfied_reason(article)
        return GuardResult(satisfied=reason is not None, reason=reason or "", article=article)

    def already_satisfied(self, item_id: str, operation_type: str) -> bool:
        return self.evaluate(item_id, build_operation(operation_type)).satisfied
