from __future__ import annotations

import os
import tempfile

# The engine is built at import time, so the test database and offline
# providers must be pinned before anything from supportai is imported.
_TEST_DIR = tempfile.mkdtemp(prefix="supportai-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_TEST_DIR}/supportai.db"
os.environ["REDIS_URL"] = ""
os.environ["LLM_PROVIDER"] = "fake"
os.environ["EMBEDDING_PROVIDER"] = "hash"
os.environ["VECTOR_INDEX_PROVIDER"] = "memory"
os.environ["INGEST_EXECUTION_MODE"] = "inline"
os.environ["KNOWLEDGE_STORAGE_DIR"] = os.path.join(_TEST_DIR, "knowledge")
os.environ["ENCRYPTION_KEY"] = ""

from httpx import ASGITransport, AsyncClient
import pytest

from supportai.apps.api.main import create_app
from supportai.core.config import get_settings
from supportai.domain.models import Base
from supportai.domain.types import Tenant
from supportai.persistence.db import SessionLocal, engine
from supportai.providers.embeddings.factory import reset_embedding_client
from supportai.providers.vector_index.factory import reset_vector_index
from supportai.services.audit import set_audit_logger
from supportai.services.ingest_queue import reset_arq_pool
from supportai.services.rate_limit import reset_rate_limiter_state
from supportai.services.redis_client import reset_redis_state
from supportai.services.semantic_cache import reset_semantic_cache
from supportai.services.tenants import create_tenant
from supportai.tests.utils.audit import RecordingAudit


def _reset_singletons() -> None:
    get_settings.cache_clear()
    reset_semantic_cache()
    reset_rate_limiter_state()
    reset_redis_state()
    reset_vector_index()
    reset_embedding_client()
    reset_arq_pool()


@pytest.fixture(autouse=True)
def reset_process_state() -> None:
    # Process-wide clients must not leak between tests or event loops.
    _reset_singletons()
    yield
    _reset_singletons()


@pytest.fixture(autouse=True)
async def dispose_engine_between_tests() -> None:
    # Connections are bound to the loop that opened them.
    yield
    await engine.dispose()


@pytest.fixture(autouse=True)
async def audit() -> RecordingAudit:
    recording = RecordingAudit()
    set_audit_logger(recording.logger)
    yield recording
    await recording.logger.close()
    set_audit_logger(None)


@pytest.fixture
async def db_schema() -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    yield


@pytest.fixture
async def session(db_schema):
    async with SessionLocal() as db:
        yield db


@pytest.fixture
async def tenant_with_key(session) -> tuple[Tenant, str]:
    tenant, issued = await create_tenant(session, name="Acme Support", plan="trial")
    await session.commit()
    return tenant, issued.raw_key


@pytest.fixture
async def tenant(tenant_with_key) -> Tenant:
    return tenant_with_key[0]


@pytest.fixture
async def app(db_schema):
    application = create_app()
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
