import pytest

from fakes import HashingEmbedder
from memcore.services.audit_log import AuditLog
from memcore.services.memory_store import MemoryStore
from memcore.services.similarity import StoreScanRetriever
from memcore.utils.config import DatabaseConfig
from memcore.utils.database import create_database_engine


@pytest.fixture
def engine(tmp_path):
    engine = create_database_engine(DatabaseConfig(url=f'sqlite:///{tmp_path / "memory.db"}'))
    yield engine
    engine.dispose()


@pytest.fixture
def store(engine):
    return MemoryStore(engine)


@pytest.fixture
def audit(engine):
    return AuditLog(engine)


@pytest.fixture
def embedder():
    return HashingEmbedder()


@pytest.fixture
def retriever(store):
    return StoreScanRetriever(store)
