"""Test configuration for pytest."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from ai_memory.memory.embeddings import EmbeddingService, HashEmbeddingBackend
from ai_memory.persistence.store import MemoryStore
from ai_memory.service.config import EmbeddingProvider, MemoryConfig, TokenCounterKind
from ai_memory.service.core import MemoryService

FIXED_NOW = datetime(2025, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line("markers", "unit: Unit tests")
    config.addinivalue_line("markers", "integration: Integration tests")
    config.addinivalue_line("markers", "conformance: API contract conformance tests")
    config.addinivalue_line("markers", "slow: Slow running tests")


@pytest.fixture
def fixed_now() -> datetime:
    return FIXED_NOW


@pytest.fixture
def memory_store():
    """Open, fully migrated in-memory store."""
    store = MemoryStore()
    assert store.init(":memory:")
    yield store
    store.close()


@pytest.fixture
def file_store(tmp_path):
    """Open store backed by a file under tmp_path."""
    store = MemoryStore()
    assert store.init(tmp_path / "memory.db")
    yield store
    store.close()


@pytest.fixture
def config(tmp_path) -> MemoryConfig:
    """Offline configuration: hash embeddings and character token estimates."""
    return MemoryConfig(
        db_path=str(tmp_path / "AI-Memory" / "memory.db"),
        embedding_provider=EmbeddingProvider.HASH,
        token_counter=TokenCounterKind.CHARS,
        max_workers=2,
    )


@pytest.fixture
def service(config):
    """Open MemoryService on a temporary database."""
    svc = MemoryService(
        config,
        embeddings=EmbeddingService(HashEmbeddingBackend()),
    )
    assert svc.open()
    yield svc
    svc.close()
