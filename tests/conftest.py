"""Shared fixtures: every test runs against an in-memory backend."""

import pytest

from firedoc.backends.memory import MemoryBackend
from firedoc.document_store import DocumentStore


@pytest.fixture
def backend():
    backend = MemoryBackend()
    yield backend
    backend.close()


@pytest.fixture
def store(backend):
    """Store with fast backoff and a generous attempt ceiling for contention tests."""
    return DocumentStore(
        backend,
        transaction_max_attempts=200,
        transaction_base_delay=0.0005,
        transaction_max_delay=0.005,
    )
