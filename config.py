"""Configuration values passed explicitly into constructors."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_HOME = Path.home() / "downcity"


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Bounded retry with exponential backoff for write-through calls.

    ``max_attempts`` includes the first try, so 1 disables retries.
    """

    max_attempts: int = 3
    initial_delay_ms: float = 50.0
    max_delay_ms: float = 1000.0
    backoff_multiplier: float = 2.0
    jitter: bool = True

    def delay_for(self, attempt: int) -> float:
        """Delay in seconds to wait after the given failed attempt (1-based)."""
        delay = self.initial_delay_ms * (self.backoff_multiplier ** (attempt - 1))
        return min(delay, self.max_delay_ms) / 1000.0


@dataclass(frozen=True, slots=True)
class VaultConfig:
    """Session manager configuration."""

    max_sessions: int = 20
    retry: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass(frozen=True, slots=True)
class CodexConfig:
    """Knowledge store configuration.

    When ``dimension`` is None it is detected once per collection by
    embedding a probe string.
    """

    path: Path = DEFAULT_HOME / "codex" / "lancedb"
    dimension: int | None = None
    metric: str = "cosine"  # cosine | l2 | dot
    default_limit: int = 5
    max_limit: int = 100


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """Tool server configuration."""

    home: Path = DEFAULT_HOME
    embedding_provider: str = "ollama"  # ollama | google | hash
    embedding_model: str = "qwen3-embedding:0.6b"
    embedding_dim: int | None = None
    ollama_base_url: str = "http://localhost:11434"
    google_api_key: str | None = None
    title_model: str = "gemini-2.5-flash"
    max_sessions: int = 20
    default_collection: str = "knowledge"

    @classmethod
    def from_env(cls) -> ServerConfig:
        """Build a configuration from environment variables."""
        dim = os.environ.get("EMBEDDING_DIM")
        return cls(
            home=Path(os.environ.get("DOWNCITY_HOME", DEFAULT_HOME)),
            embedding_provider=os.environ.get("EMBEDDING_PROVIDER", "ollama"),
            embedding_model=os.environ.get("EMBEDDING_MODEL", "qwen3-embedding:0.6b"),
            embedding_dim=int(dim) if dim else None,
            ollama_base_url=os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434"),
            google_api_key=os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY"),
            title_model=os.environ.get("TITLE_MODEL", "gemini-2.5-flash"),
            max_sessions=int(os.environ.get("DOWNCITY_MAX_SESSIONS", "20")),
        )

    def codex_config(self) -> CodexConfig:
        return CodexConfig(path=self.home / "codex" / "lancedb", dimension=self.embedding_dim)

    def vault_config(self) -> VaultConfig:
        return VaultConfig(max_sessions=self.max_sessions)

    @property
    def sessions_db(self) -> Path:
        return self.home / "vault" / "sessions.db"
