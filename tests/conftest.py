"""RagMem test configuration."""
import math
import re

import pytest

from ragmem.config import Config
from ragmem.context import ServiceContext
from ragmem.embeddings import EMBEDDING_DIM, EmbeddingService

_WORD = re.compile(r"[a-z0-9]+")


class KeywordEmbedder(EmbeddingService):
    """Deterministic embedder for tests; tokenizes on whitespace."""

    def __init__(self):
        super().__init__(skip_model=True)
        self.vocab = {}
        self.batches = []

    def embed_batch(self, texts):
        self.batches.append(list(texts))
        return [self.vector(t) for t in texts]

    def vector(self, text):
        """Bag-of-words vector; each new word gets its own dimension."""
        vector = [0.0] * EMBEDDING_DIM
        # Constant component keeps every vector non-zero.
        vector[-1] = 0.05
        with self._lock:
            for word in _WORD.findall(text.lower()):
                index = self.vocab.setdefault(word, len(self.vocab) % (EMBEDDING_DIM - 1))
                vector[index] += 1.0
        norm = math.sqrt(sum(x * x for x in vector))
        return [x / norm for x in vector]


@pytest.fixture
def ragmem_home(tmp_path, monkeypatch):
    """Point RAGMEM_HOME at a temp dir and disable the model and the health probe."""
    home = tmp_path / ".ragmem"
    monkeypatch.setenv("RAGMEM_HOME", str(home))
    monkeypatch.setenv("RAGMEM_SKIP_EMBEDDINGS", "1")
    monkeypatch.setenv("RAGMEM_HEALTH_INTERVAL", "0")
    for key in ("RAGMEM_DB_TYPE", "RAGMEM_DATABASE", "RAGMEM_CHUNK_MAX_TOKENS", "RAGMEM_CHUNK_OVERLAP"):
        monkeypatch.delenv(key, raising=False)
    return home


@pytest.fixture
def config(ragmem_home):
    return Config.from_env()


@pytest.fixture
def embedder():
    e = KeywordEmbedder()
    e.mark_ready()
    yield e
    e.close()


@pytest.fixture
def ctx(config, embedder):
    """A started ServiceContext on a fresh SQLite database."""
    c = ServiceContext(config, embedder=embedder).start()
    yield c
    c.close()


@pytest.fixture
def graph(ctx):
    return ctx.graph


@pytest.fixture
def documents(ctx):
    return ctx.documents

