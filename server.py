#!/usr/bin/env python3
"""
Downcity Vault MCP Server

Exposes the knowledge codex and the session vault as tools:
- FastMCP for clean, idiomatic MCP server patterns
- LanceDB volumes for filtered vector search over knowledge
- SQLite-backed session vault with bounded-size eviction
- Ollama / Google embeddings, hash fallback for offline use
"""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Any

from mcp.server.fastmcp import FastMCP

from codex import Codex
from config import ServerConfig
from embeddings import CachedEmbedding, EmbeddingModel, GoogleEmbedding, HashEmbedding, OllamaEmbedding
from errors import ConfigurationError, DowncityError, ErrorId
from models import Message, SessionData, SessionMeta
from persistor import SQLitePersistor
from titles import GeminiTitler, Titler, TruncatingTitler
from utils import log
from vault import Vault

PREVIEW_CHARS = 200


# =============================================================================
# Wiring
# =============================================================================


def build_embedding_model(config: ServerConfig) -> EmbeddingModel:
    """Pick the embedding client named by the configuration."""
    provider = config.embedding_provider.lower()
    if provider == "ollama":
        model: EmbeddingModel = OllamaEmbedding(config.embedding_model, config.ollama_base_url)
    elif provider == "google":
        if not config.google_api_key:
            raise ConfigurationError(
                "GOOGLE_API_KEY not found. Set GOOGLE_API_KEY or GEMINI_API_KEY",
                id=ErrorId.MISSING_REQUIRED_PARAM,
            )
        model = GoogleEmbedding(
            config.google_api_key, config.embedding_model, output_dimensionality=config.embedding_dim
        )
    elif provider == "hash":
        log("Using hash embedding (poor semantic quality)")
        model = HashEmbedding(config.embedding_dim or 64)
    else:
        raise ConfigurationError(
            f"Unknown embedding provider '{config.embedding_provider}'. Valid: ollama, google, hash",
            id=ErrorId.INVALID_ARGS,
        )
    return CachedEmbedding(model)


def build_titler(config: ServerConfig) -> Titler:
    if config.google_api_key:
        return GeminiTitler(config.google_api_key, config.title_model)
    return TruncatingTitler()


def _short_time(value: datetime) -> str:
    return value.isoformat()[:19]


def _preview(text: Any) -> str:
    text = text if isinstance(text, str) else str(text)
    return text if len(text) <= PREVIEW_CHARS else text[:PREVIEW_CHARS] + "..."


# =============================================================================
# Tools
# =============================================================================


class Tools:
    """Tool implementations; each returns display text, errors included."""

    def __init__(
        self,
        codex: Codex,
        vault: Vault,
        titler: Titler | None = None,
        default_collection: str = "knowledge",
    ):
        self.codex = codex
        self.vault = vault
        self.titler = titler
        self.default_collection = default_collection

    async def knowledge_add(
        self,
        content: str,
        metadata: dict[str, Any] | None = None,
        collection: str | None = None,
    ) -> str:
        """Add a text to the knowledge base with semantic embedding.

        Args:
            content: Text to store
            metadata: Optional nested metadata, usable in knowledge_search filters
            collection: Collection name (default: the server's knowledge collection)
        """
        try:
            volume = await self.codex.collection(collection or self.default_collection)
            record_id = await volume.insert(content, metadata)
        except DowncityError as e:
            return f"Error: {e.text}"
        return f"Saved (ID: {record_id[:8]}..., {volume.name})"

    async def knowledge_search(
        self,
        query: str,
        limit: int = 5,
        where: dict[str, Any] | None = None,
        distance_threshold: float | None = None,
        collection: str | None = None,
    ) -> str:
        """Vector search in the knowledge base.

        Args:
            query: Search query
            limit: Max results (default 5)
            where: Metadata filter, e.g. {"type": "doc"}, {"year": {"$gte": 2020}}, {"tag": ["a", "b"]}
            distance_threshold: Only return results at or below this distance
            collection: Collection name (default: the server's knowledge collection)
        """
        try:
            volume = await self.codex.collection(collection or self.default_collection)
            results = await volume.search(
                query, limit=limit, where=where, distance_threshold=distance_threshold
            )
        except DowncityError as e:
            return f"Error: {e.text}"

        if not results:
            return f"No knowledge found for '{query}' in {volume.name}"

        lines = [f"Found {len(results)} results ({volume.name}):\n"]
        for i, result in enumerate(results, 1):
            lines.append(f"[{i}] (ID: {result.id[:8]}...) distance {result.distance:.3f}")
            lines.append(f"    {result.content}")
            if result.metadata:
                lines.append(f"    Metadata: {result.metadata}")
            lines.append("")
        return "\n".join(lines)

    async def session_create(self) -> str:
        """Start a new conversation session."""
        try:
            session = await self.vault.create_session()
        except DowncityError as e:
            return f"Error: {e.text}"
        return f"Created session {session.id}"

    async def session_append(self, session_id: str, role: str, content: str) -> str:
        """Append a message to a session.

        Args:
            session_id: Session to append to
            role: Message role (user, assistant, system, tool)
            content: Message text
        """
        if not role.strip():
            return "Error: role is required"
        try:
            session = await self.vault.get_session(session_id)
            if session is None:
                return f"Session {session_id} not found"
            await self.vault.append_message(session, Message(role=role, content=content))
            if self.titler is not None and role == "user":
                await self.vault.ensure_title(session, self.titler)
        except DowncityError as e:
            return f"Error: {e.text}"
        return f"Appended to {session.id[:8]}... ({len(session.messages)} messages)"

    async def session_get(self, session_id: str) -> str:
        """Show a session's title and messages."""
        try:
            session = await self.vault.get_session(session_id)
        except DowncityError as e:
            return f"Error: {e.text}"
        if session is None:
            return f"Session {session_id} not found"

        lines = [
            f"Session {session.id}",
            f"Title: {session.title or '(untitled)'}",
            f"Created: {_short_time(session.created_at)} | Updated: {_short_time(session.updated_at)}",
            "",
        ]
        for message in session.messages:
            lines.append(f"[{message.role}] {_preview(message.content)}")
        return "\n".join(lines)

    async def session_list(self) -> str:
        """List stored sessions, newest first."""
        try:
            listings = await self.vault.list_sessions()
        except DowncityError as e:
            return f"Error: {e.text}"
        if not listings:
            return "No sessions stored yet."
        lines = [f"{len(listings)} sessions:"]
        for listing in listings:
            lines.append(
                f"  {listing.id} | {listing.meta.title or '(untitled)'} | {_short_time(listing.meta.updated_at)}"
            )
        return "\n".join(lines)

    async def session_delete(self, session_id: str) -> str:
        """Delete a session by ID."""
        try:
            await self.vault.delete_session(session_id)
        except DowncityError as e:
            return f"Error: {e.text}"
        return f"Deleted session {session_id[:8]}..."


# =============================================================================
# FastMCP Server
# =============================================================================

READ_ONLY = {"readOnlyHint": True, "destructiveHint": False, "idempotentHint": True}
WRITE = {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": False}
DESTRUCTIVE = {"readOnlyHint": False, "destructiveHint": True, "idempotentHint": True}


def create_server(tools: Tools) -> FastMCP:
    """Register the tool methods on a new FastMCP server."""
    mcp = FastMCP(
        "downcity-vault",
        instructions="Knowledge base with filtered vector search, and persistent chat sessions",
    )
    mcp.tool(annotations=WRITE)(tools.knowledge_add)
    mcp.tool(annotations=READ_ONLY)(tools.knowledge_search)
    mcp.tool(annotations=WRITE)(tools.session_create)
    mcp.tool(annotations=WRITE)(tools.session_append)
    mcp.tool(annotations=READ_ONLY)(tools.session_get)
    mcp.tool(annotations=READ_ONLY)(tools.session_list)
    mcp.tool(annotations=DESTRUCTIVE)(tools.session_delete)
    return mcp


def build_tools(config: ServerConfig) -> Tools:
    persistor = SQLitePersistor(config.sessions_db, "sessions", meta_type=SessionMeta, data_type=SessionData)
    return Tools(
        codex=Codex(build_embedding_model(config), config.codex_config()),
        vault=Vault(persistor, config.vault_config()),
        titler=build_titler(config),
        default_collection=config.default_collection,
    )


# =============================================================================
# Server Entry Point
# =============================================================================


async def run_server(config: ServerConfig) -> None:
    tools = build_tools(config)
    log(f"Server ready (home: {config.home}, embeddings: {config.embedding_provider})")
    try:
        await create_server(tools).run_stdio_async()
    finally:
        tools.codex.close()
        if tools.vault.persistor is not None:
            tools.vault.persistor.close()


def main():
    """Entry point."""
    asyncio.run(run_server(ServerConfig.from_env()))


if __name__ == "__main__":
    main()
