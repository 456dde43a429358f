"""Shared fixtures and fakes for the downcity-vault test suite."""

from __future__ import annotations

import pytest

from codex import Codex
from config import CodexConfig, RetryPolicy, VaultConfig
from embeddings import HashEmbedding, normalize
from errors import ErrorId, StorageError
from models import SessionData, SessionMeta
from persistor import Listing, Persistor, SQLitePersistor, StoredItem

NO_WAIT = RetryPolicy(max_attempts=3, initial_delay_ms=0, max_delay_ms=0, jitter=False)


class StaticEmbedding:
    """Embedding model with hand-picked vectors; other texts are hashed."""

    def __init__(self, vectors: dict[str, list[float]], dimension: int):
        self.vectors = vectors
        self.dimension = dimension
        self.calls: list[str] = []
        self._fallback = HashEmbedding(dimension)

    def embed(self, text: str) -> list[float]:
        self.calls.append(text)
        if text in self.vectors:
            return normalize(self.vectors[text])
        return self._fallback.embed(text)


class MemoryPersistor(Persistor):
    """Dict-backed persistor storing JSON-shaped copies, like a real backend."""

    def __init__(self):
        self.rows: dict[str, tuple[dict, dict]] = {}

    @staticmethod
    def _plain(value):
        return value.model_dump(mode="json") if hasattr(value, "model_dump") else value

    def insert(self, id, meta, data):
        self.rows[id] = (self._plain(meta), self._plain(data))

    def find(self, id):
        row = self.rows.get(id)
        return StoredItem(meta=row[0], data=row[1]) if row else None

    def update(self, id, meta, data):
        self.insert(id, meta, data)

    def remove(self, id):
        self.rows.pop(id, None)

    def list(self):
        return [Listing(id=id, meta=meta) for id, (meta, _) in self.rows.items()]


class FlakyPersistor(MemoryPersistor):
    """Fails the first ``failures`` calls of each write operation."""

    def __init__(self, failures: int):
        super().__init__()
        self.failures = failures
        self.attempts: dict[str, int] = {}

    def _maybe_fail(self, op: str) -> None:
        self.attempts[op] = self.attempts.get(op, 0) + 1
        if self.attempts[op] <= self.failures:
            raise StorageError(ErrorId.PERSISTOR_WRITE_FAILED, f"{op} failed")

    def insert(self, id, meta, data):
        self._maybe_fail("insert")
        super().insert(id, meta, data)

    def update(self, id, meta, data):
        self._maybe_fail("update")
        super().update(id, meta, data)


@pytest.fixture
def codex_config(tmp_path):
    return CodexConfig(path=tmp_path / "lancedb")


@pytest.fixture
def codex(codex_config):
    codex = Codex(HashEmbedding(16), codex_config)
    yield codex
    codex.close()


@pytest.fixture
def sessions_db(tmp_path):
    return tmp_path / "vault" / "sessions.db"


@pytest.fixture
def sqlite_persistor(sessions_db):
    persistor = SQLitePersistor(sessions_db, "sessions", meta_type=SessionMeta, data_type=SessionData)
    yield persistor
    persistor.close()


@pytest.fixture
def vault_config():
    return VaultConfig(max_sessions=20, retry=NO_WAIT)
