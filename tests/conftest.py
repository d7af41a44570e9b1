from __future__ import annotations

import pytest

from rfpflow.services.store import InMemoryStore
from tests.fakes import FakeEmbedder, FakeLLM


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def embedder() -> FakeEmbedder:
    return FakeEmbedder()


@pytest.fixture
def llm() -> FakeLLM:
    return FakeLLM()
