from dataclasses import replace
from typing import Callable

import pytest

from bulkops_api.services.augment import (
    BatchExecutor,
    FatalJobError,
    InMemoryProgress,
    ItemOutcome,
    ItemTransformError,
    JobProgress,
    ProviderThrottled,
    split_batches,
)
from bulkops_api.services.augment.guard import IdempotencyGuard
from bulkops_api.services.augment.operations import InternalLinksOperation, SeoMetadataOperation
from bulkops_api.services.augment.types import Article, TransformResult

PLAIN = "Singapore is piloting AI tutors in secondary schools this year."
LINKED = "Read [the guide](/news/ai-guide) and [the report](https://example.org/report)."
WITH_LINKS = PLAIN + " See [our guide](/news/ai-guide) and [Reuters](https://www.reuters.com/tech)^."


def _article(article_id: str, content: str = PLAIN) -> Article:
    return Article(
        id=article_id,
        title=f"Article {article_id}",
        slug=f"article-{article_id.lower()}",
        category_slug="news",
        status="published",
        content=content,
        excerpt=f"Excerpt {article_id}",
    )


class FakeStore:
    def __init__(self, articles: list[Article], *, fail_on_write: str | None = None) -> None:
        self.articles = {article.id: article for article in articles}
        self.writes: list[tuple[str, dict[str, str]]] = []
        self._fail_on_write = fail_on_write

    def get_article(self, article_id: str) -> Article | None:
        return self.articles.get(article_id)

    def list_published(self, *, limit: int) -> list[Article]:
        return list(self.articles.values())[:limit]

    def update_fields(self, article_id: str, fields: dict[str, str]) -> None:
        if article_id == self._fail_on_write:
            raise RuntimeError("database write rejected")
        self.writes.append((article_id, fields))
        self.articles[article_id] = replace(self.articles[article_id], **fields)


class FakeClient:
    def __init__(self, handler: Callable[[str], str] | None = None) -> None:
        self.calls: list[str] = []
        self._handler = handler or (lambda text: WITH_LINKS)

    def transform(self, *, text: str, instruction: str) -> TransformResult:
        self.calls.append(text)
        return TransformResult(content=self._handler(text), model="fake-model")


class RecordingProgress(InMemoryProgress):
    def __init__(self, total: int) -> None:
        super().__init__(total)
        self.snapshots: list[JobProgress] = []

    def record(self, outcome: ItemOutcome) -> JobProgress:
        progress = super().record(outcome)
        self.snapshots.append(progress)
        return progress


def _executor(store: FakeStore, client: FakeClient, *, sleeps: list[float] | None = None, **kwargs) -> BatchExecutor:
    recorded = sleeps if sleeps is not None else []
    return BatchExecutor(
        operation=kwargs.pop("operation", InternalLinksOperation()),
        store=store,
        client=client,
        item_delay_seconds=0.3,
        batch_delay_seconds=1.0,
        sleep=recorded.append,
        **kwargs,
    )


def _assert_invariants(snapshots: list[JobProgress]) -> None:
    for snapshot in snapshots:
        assert snapshot.processed == snapshot.successful + snapshot.failed + snapshot.skipped
        assert snapshot.processed <= snapshot.total
        assert len(snapshot.results) == snapshot.processed


def test_split_batches_uses_fixed_cap() -> None:
    batches = split_batches([f"id-{index}" for index in range(120)], 50)

    assert [len(batch) for batch in batches] == [50, 50, 20]
    assert batches[1][0] == "id-50"


def test_scenario_skipped_failed_updated_completes_with_mixed_outcomes() -> None:
    store = FakeStore([_article("A", LINKED), _article("B"), _article("C")])

    def handler(text: str) -> str:
        if "Article B" in text:
            raise ItemTransformError("augmentation service error 500: upstream exploded")
        return WITH_LINKS

    client = FakeClient(handler)
    progress = RecordingProgress(total=3)

    final = _executor(store, client).run(["A", "B", "C"], dry_run=False, progress=progress)

    assert [(outcome.item_id, outcome.status) for outcome in final.results] == [
        ("A", "skipped"),
        ("B", "failed"),
        ("C", "updated"),
    ]
    assert final.successful == 1
    assert final.failed == 1
    assert final.skipped == 1
    assert "upstream exploded" in final.results[1].detail
    assert [article_id for article_id, _ in store.writes] == ["C"]
    _assert_invariants(progress.snapshots)


def test_guard_satisfied_items_never_reach_the_client() -> None:
    store = FakeStore([_article("A", LINKED), _article("B"), _article("C", LINKED)])
    client = FakeClient()

    final = _executor(store, client).run(["A", "B", "C"], dry_run=False, progress=InMemoryProgress(3))

    assert len(client.calls) == 1
    assert "Article B" in client.calls[0]
    assert final.results[0].detail == "Already has internal and external links"
    assert final.results[2].status == "skipped"


def test_batches_preserve_item_order_and_pacing() -> None:
    item_ids = [f"item-{index:03d}" for index in range(120)]
    store = FakeStore([_article(item_id, LINKED) for item_id in item_ids])
    sleeps: list[float] = []
    progress = RecordingProgress(total=120)

    final = _executor(store, FakeClient(), sleeps=sleeps, batch_size=50).run(
        item_ids, dry_run=False, progress=progress
    )

    assert [outcome.item_id for outcome in final.results] == item_ids
    assert sleeps.count(1.0) == 2
    assert sleeps.count(0.3) == 49 + 49 + 19
    _assert_invariants(progress.snapshots)


def test_dry_run_never_writes_items() -> None:
    store = FakeStore([_article("A"), _article("B", "")])
    client = FakeClient()

    final = _executor(store, client, preview_chars=40).run(["A", "B"], dry_run=True, progress=InMemoryProgress(2))

    assert store.writes == []
    assert store.articles["A"].content == PLAIN
    assert final.results[0].status == "preview"
    assert final.results[0].detail == WITH_LINKS[:40] + "..."
    assert final.results[1].status == "failed"
    assert final.successful == 1


def test_unusable_output_is_recorded_as_failure_not_success() -> None:
    store = FakeStore([_article("A")])
    client = FakeClient(lambda text: "Sure! Here you go.")

    final = _executor(store, client).run(["A"], dry_run=False, progress=InMemoryProgress(1))

    assert final.results[0].status == "failed"
    assert store.writes == []


def test_missing_item_is_an_item_failure() -> None:
    store = FakeStore([_article("A")])

    final = _executor(store, FakeClient()).run(["ghost", "A"], dry_run=False, progress=InMemoryProgress(2))

    assert final.results[0] == ItemOutcome(item_id="ghost", status="failed", detail="item ghost not found")
    assert final.results[1].status == "updated"


def test_persistence_failure_aborts_after_recorded_items() -> None:
    store = FakeStore([_article("A", LINKED), _article("B"), _article("C"), _article("D")], fail_on_write="C")
    progress = RecordingProgress(total=4)

    with pytest.raises(FatalJobError, match="database write rejected"):
        _executor(store, FakeClient()).run(["A", "B", "C", "D"], dry_run=False, progress=progress)

    assert progress.current.processed == 2
    assert [outcome.item_id for outcome in progress.current.results] == ["A", "B"]
    _assert_invariants(progress.snapshots)


def test_provider_throttle_propagates_without_recording_the_item() -> None:
    store = FakeStore([_article("A"), _article("B"), _article("C")])

    def handler(text: str) -> str:
        if "Article B" in text:
            raise ProviderThrottled("rate limited", status_code=429, retry_after=20)
        return WITH_LINKS

    progress = InMemoryProgress(total=3)

    with pytest.raises(ProviderThrottled):
        _executor(store, FakeClient(handler)).run(["A", "B", "C"], dry_run=False, progress=progress)

    assert progress.current.processed == 1
    assert progress.current.results[0].item_id == "A"


def test_run_resumes_after_already_recorded_items() -> None:
    store = FakeStore([_article("A"), _article("B"), _article("C")])
    client = FakeClient()
    progress = InMemoryProgress(total=3)
    progress.record(ItemOutcome(item_id="A", status="updated", detail="updated content"))

    final = _executor(store, client).run(["A", "B", "C"], dry_run=False, progress=progress)

    assert [outcome.item_id for outcome in final.results] == ["A", "B", "C"]
    assert len(client.calls) == 2
    assert all("Article A" not in call for call in client.calls)


def test_seo_operation_writes_parsed_fields() -> None:
    store = FakeStore([_article("A")])
    client = FakeClient(
        lambda text: (
            '```json\n{"meta_title": "AI tutors", "seo_title": "AI tutors in Singapore", '
            '"focus_keyphrase": "ai tutors", "keyphrase_synonyms": "ai teachers, edtech", '
            '"meta_description": "How Singapore schools use AI tutors."}\n```'
        )
    )

    final = _executor(store, client, operation=SeoMetadataOperation()).run(
        ["A"], dry_run=False, progress=InMemoryProgress(1)
    )

    assert final.results[0].status == "updated"
    assert store.articles["A"].focus_keyphrase == "ai tutors"
    assert store.articles["A"].meta_description == "How Singapore schools use AI tutors."


def test_guard_reports_satisfied_items_by_operation_type() -> None:
    store = FakeStore([_article("A", LINKED), _article("B")])
    guard = IdempotencyGuard(store)

    assert guard.already_satisfied("A", "add_internal_links") is True
    assert guard.already_satisfied("B", "add_internal_links") is False
    assert guard.already_satisfied("A", "generate_seo") is False
    with pytest.raises(ItemTransformError, match="item ghost not found"):
        guard.already_satisfied("ghost", "add_internal_links")


def test_retry_transforms_items_the_guard_would_skip() -> None:
    store = FakeStore([_article("A", LINKED)])
    client = FakeClient()

    final = _executor(store, client).run(["A"], dry_run=False, progress=InMemoryProgress(total=1), retry=True)

    assert [outcome.status for outcome in final.results] == ["updated"]
    assert len(client.calls) == 1
    assert store.articles["A"].content == WITH_LINKS


class BrokenListingStore(FakeStore):
    def list_published(self, *, limit: int) -> list[Article]:
        raise RuntimeError("connection reset")


def test_instruction_failure_is_fatal_before_any_item() -> None:
    store = BrokenListingStore([_article("A")])
    client = FakeClient()
    progress = InMemoryProgress(total=1)

    with pytest.raises(FatalJobError, match="failed to build add_internal_links instruction: connection reset"):
        _executor(store, client).run(["A"], dry_run=False, progress=progress)

    assert progress.current.processed == 0
    assert client.calls == []
