from __future__ import annotations

from typing import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from graphix.api.deps import get_review_engine
from graphix.config import Settings
from graphix.db.session import build_engine, build_session_maker, init_db
from graphix.main import create_app
from graphix.services.review_engine import ReviewEngine, create_review_engine
from graphix.services.review_store import SqlReviewStore
from tests.review_fixtures import FakeRegenerator, FakeScorer


@pytest.fixture()
def test_settings(tmp_path) -> Settings:
    # 每个测试使用独立的 SQLite 文件（存储层每次操作都会新开会话，不能用 :memory:）
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'test.db'}",
        static_dir=str(tmp_path / "static"),
        anthropic_api_key=None,
        anthropic_auth_token=None,
        image_api_key="test-key",
        review_scoring_timeout_s=5.0,
        review_regeneration_timeout_s=5.0,
    )


@pytest_asyncio.fixture(scope="function")
async def db_engine(test_settings: Settings) -> AsyncGenerator[AsyncEngine, None]:
    engine = build_engine(test_settings)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_maker(db_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return build_session_maker(db_engine)


@pytest_asyncio.fixture(scope="function")
async def test_session(
    session_maker: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_maker() as session:
        yield session


@pytest.fixture()
def store(session_maker: async_sessionmaker[AsyncSession]) -> SqlReviewStore:
    return SqlReviewStore(session_maker)


@pytest.fixture()
def scorer() -> FakeScorer:
    return FakeScorer(0.85)


@pytest.fixture()
def regenerator(store: SqlReviewStore) -> FakeRegenerator:
    return FakeRegenerator(store)


@pytest.fixture()
def review_engine(
    test_settings: Settings,
    session_maker: async_sessionmaker[AsyncSession],
    store: SqlReviewStore,
    scorer: FakeScorer,
    regenerator: FakeRegenerator,
) -> ReviewEngine:
    return create_review_engine(
        test_settings,
        session_maker,
        scorer=scorer,
        regenerator=regenerator,
        store=store,
    )


@pytest_asyncio.fixture(scope="function")
async def app(review_engine: ReviewEngine):
    app = create_app()

    async def override_get_review_engine() -> ReviewEngine:
        return review_engine

    app.dependency_overrides[get_review_engine] = override_get_review_engine
    return app


@pytest_asyncio.fixture(scope="function")
async def async_client(app):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
