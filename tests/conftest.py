"""
Shared fixtures: a deterministic bag-of-words embedding model so no test
downloads or runs a real transformer.

Author: Olivier Vitrac, PhD, HDR | olivier.vitrac@adservio.fr | Adservio
"""

import re

import numpy as np
import pytest

from memcp.embedding import EMBEDDING_DIM, EmbeddingProvider
from memcp.service import MemoryService
from memcp.store import MemoryStore

_WORD_RE = re.compile(r"[a-z0-9]+")


class FakeModel:
    """One dimension per distinct lowercase word, counts as weights.

    Vocabulary indices are assigned in first-seen order, so distinct words
    never collide (up to ``dimension`` words).
    """

    def __init__(self, dimension=EMBEDDING_DIM):
        self.dimension = dimension
        self.vocab = {}
        self.calls = []

    def get_sentence_embedding_dimension(self):
        return self.dimension

    def encode(self, texts, **kwargs):
        self.calls.append(list(texts))
        out = np.zeros((len(texts), self.dimension), dtype=np.float32)
        for i, text in enumerate(texts):
            for word in _WORD_RE.findall(text.lower()):
                idx = self.vocab.setdefault(word, len(self.vocab) % self.dimension)
                out[i, idx] += 1.0
        return out


@pytest.fixture
def fake_model():
    return FakeModel()


@pytest.fixture
def embedder(fake_model):
    """EmbeddingProvider backed by the fake model."""
    return EmbeddingProvider(loader=lambda: fake_model)


@pytest.fixture
def store():
    """Create an in-memory store for testing."""
    s = MemoryStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def service(store, embedder):
    return MemoryService(store, embedder)
