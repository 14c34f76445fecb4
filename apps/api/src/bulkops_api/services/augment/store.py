from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Protocol, Sequence

from sqlalchemy import select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from bulkops_api.models import ArticleRecord
from bulkops_api.services.augment.types import Article

WRITABLE_FIELDS = frozenset(
    {
        "content",
        "meta_title",
        "seo_title",
        "focus_keyphrase",
        "keyphrase_synonyms",
        "meta_description",
        "tldr_snapshot",
    }
)


class ArticleStore(Protocol):
    def get_article(self, article_id: str) -> Article | None: ...

    def list_published(self, *, limit: int) -> Sequence[Article]: ...

    def update_fields(self, article_id: str, fields: dict[str, Any]) -> None: ...


def _to_article(record: ArticleRecord) -> Article:
    return Article(
        id=record.id,
        title=record.title,
        slug=record.slug,
        category_slug=record.category_slug,
        status=record.status,
        content=record.content or "",
        excerpt=record.excerpt,
        meta_title=record.meta_title,
        seo_title=record.seo_title,
        focus_keyphrase=record.focus_keyphrase,
        keyphrase_synonyms=record.keyphrase_synonyms,
        meta_description=record.meta_description,
        tldr_snapshot=record.tldr_snapshot,
        published_at=record.published_at,
    )


class SqlArticleStore:
    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get_article(self, article_id: str) -> Article | None:
        with Session(self._engine) as session:
            record = session.get(ArticleRecord, article_id)
            return _to_article(record) if record is not None else None

    def list_published(self, *, limit: int) -> Sequence[Article]:
        with Session(self._engine) as session:
            records = session.scalars(
                select(ArticleRecord)
                .where(ArticleRecord.status == "published")
                .order_by(ArticleRecord.published_at.desc(), ArticleRecord.id.asc())
                .limit(limit)
            ).all()
            return [_to_article(record) for record in records]

    def update_fields(self, article_id: str, fields: dict[str, Any]) -> None:
        unknown = set(fields) - WRITABLE_FIELDS
        if unknown:
            raise ValueError(f"refusing to write non-augmentable fields: {sorted(unknown)}")

        with self._engine.begin() as connection:
            updated = connection.execute(
                update(ArticleRecord)
                .where(ArticleRecord.id == article_id)
                .values(**fields, updated_at=datetime.now(timezone.utc))
            )
        if updated.rowcount != 1:
            raise LookupError(f"article {article_id} disappeared before it could be updated")
