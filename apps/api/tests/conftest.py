from collections.abc import Callable, Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from bulkops_api.config import get_settings
from bulkops_api.db import Base, get_engine
from bulkops_api.main import app
from bulkops_api.models import ArticleRecord


@pytest.fixture(autouse=True)
def reset_api_caches() -> Iterator[None]:
    get_settings.cache_clear()
    get_engine.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()


@pytest.fixture
def engine(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Iterator[Engine]:
    sqlite_db_path = tmp_path / "api-tests.db"
    monkeypatch.setenv("API_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("API_DB_ECHO", "false")
    monkeypatch.setenv("AUGMENT_ITEM_DELAY_SECONDS", "0")
    monkeypatch.setenv("AUGMENT_BATCH_DELAY_SECONDS", "0")

    engine = get_engine()
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def client(engine: Engine) -> Iterator[TestClient]:
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def add_article(engine: Engine) -> Callable[..., str]:
    def _add(article_id: str, *, content: str = "", status: str = "published", **fields: str) -> str:
        with Session(engine) as session:
            session.add(
                ArticleRecord(
                    id=article_id,
                    title=fields.pop("title", f"Article {article_id}"),
                    slug=fields.pop("slug", f"article-{article_id.lower()}"),
                    category_slug=fields.pop("category_slug", "news"),
                    status=status,
                    content=content,
                    **fields,
                )
            )
            session.commit()
        return article_id

    return _add
