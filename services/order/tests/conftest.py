import os
import tempfile

# app.main は import 時に環境変数を読むので、先に設定しておく
_tmpdir = tempfile.mkdtemp(prefix="order-service-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_tmpdir}/service.db"
os.environ["REDIS_URL"] = ""
os.environ["WEBHOOK_URL"] = ""
os.environ["FULFILLMENT_API_URL"] = ""

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from app import db  # noqa: E402


@pytest.fixture
async def engine(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/test.db")
    await db.create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from app import main

    with TestClient(main.app) as test_client:
        yield test_client
