from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from bulkops_api.config import get_settings
from bulkops_api.db import Base
from bulkops_api.jobs import create_job
from bulkops_api.models import ArticleRecord, BulkJobRecord


@pytest.fixture
def engine(tmp_path: Path) -> Iterator[Engine]:
    engine = create_engine(f"sqlite+pysqlite:///{tmp_path / 'worker-tests.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture(autouse=True)
def fast_pacing(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    monkeypatch.setenv("AUGMENT_ITEM_DELAY_SECONDS", "0")
    monkeypatch.setenv("AUGMENT_BATCH_DELAY_SECONDS", "0")
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def add_article(engine: Engine) -> Callable[..., str]:
    def _add(article_id: str, *, content: str, **fields: Any) -> str:
        with Session(engine) as session:
            session.add(
                ArticleRecord(
                    id=article_id,
                    title=f"Article {article_id}",
                    slug=f"article-{article_id.lower()}",
                    category_slug="news",
                    status="published",
                    content=content,
                    **fields,
                )
            )
            session.commit()
        return article_id

    return _add


@pytest.fixture
def submit_job(engine: Engine) -> Callable[..., str]:
    def _submit(
        item_ids: list[str],
        *,
        operation_type: str = "add_internal_links",
        dry_run: bool = False,
        retry: bool = False,
    ) -> str:
        with Session(engine) as session:
            job = create_job(
                session,
                operation_type=operation_type,
                item_ids=item_ids,
                options={"dry_run": dry_run, "retry": retry},
                max_attempts=3,
            )
            session.commit()
            return job.id

    return _submit


@pytest.fixture
def load_job(engine: Engine) -> Callable[[str], BulkJobRecord]:
    def _load(job_id: str) -> BulkJobRecord:
        with Session(engine) as session:
            job = session.get(BulkJobRecord, job_id)
            assert job is not None
            session.expunge(job)
            return job

    return _load
