"""
Session vault: an in-memory working set of chat sessions with write-through
persistence and bounded-size eviction.

The cache is a soft subset of persisted state. Listings always come from the
persistor; reads fall through to it on a cache miss.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable
from datetime import datetime
from typing import Any, TypeVar

from config import VaultConfig
from errors import StorageError
from models import Message, Session, SessionData, SessionMeta
from persistor import Listing, Persistor
from titles import Titler
from utils import log, next_stamp

VaultPersistor = Persistor[SessionData, SessionMeta]

T = TypeVar("T")


class Vault:
    """Session lifecycle manager."""

    def __init__(self, persistor: VaultPersistor | None = None, config: VaultConfig | None = None):
        self.persistor = persistor
        self.config = config or VaultConfig()
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._evict_lock = asyncio.Lock()
        self._last_stamp: datetime | None = None

    @property
    def max_sessions(self) -> int:
        return self.config.max_sessions

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: str) -> bool:
        return session_id in self._sessions

    # =========================================================================
    # Internals
    # =========================================================================

    def _stamp(self) -> datetime:
        self._last_stamp = next_stamp(self._last_stamp)
        return self._last_stamp

    def session_lock(self, session_id: str) -> asyncio.Lock:
        """Get the single-writer lock for one session."""
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def _call(self, op: str, fn: Callable[..., T], *args: Any) -> T:
        """Run a blocking persistor call off the event loop, retrying storage errors."""
        policy = self.config.retry
        attempt = 1
        while True:
            try:
                return await asyncio.to_thread(fn, *args)
            except StorageError as e:
                if attempt >= policy.max_attempts:
                    log(f"Persistor {op} failed after {attempt} attempt(s): {e.full_message()}")
                    raise
                delay = policy.delay_for(attempt)
                if policy.jitter:
                    delay *= random.uniform(0.5, 1.5)
                log(f"Persistor {op} failed (attempt {attempt}/{policy.max_attempts}), retrying in {delay:.2f}s")
                await asyncio.sleep(delay)
                attempt += 1

    @staticmethod
    def _as_meta(meta: Any) -> SessionMeta:
        return meta if isinstance(meta, SessionMeta) else SessionMeta.model_validate(meta)

    @staticmethod
    def _as_data(data: Any) -> SessionData:
        return data if isinstance(data, SessionData) else SessionData.model_validate(data)

    async def _persist_update(self, session: Session) -> None:
        session.touch(self._stamp())
        grew = session.id not in self._sessions
        self._sessions[session.id] = session
        if self.persistor is not None:
            await self._call("update", self.persistor.update, session.id, session.meta, session.data)
        if grew:
            await self._evict_overflow()

    async def _evict_overflow(self) -> None:
        """Keep the newest ``max_sessions`` sessions; delete the rest everywhere."""
        async with self._evict_lock:
            if len(self._sessions) <= self.max_sessions:
                return
            known: dict[str, SessionMeta] = {}
            if self.persistor is not None:
                for listing in await self._call("list", self.persistor.list):
                    known[listing.id] = self._as_meta(listing.meta)
            for session_id, session in self._sessions.items():
                known[session_id] = session.meta

            ranked = sorted(known.items(), key=lambda item: (item[1].updated_at, item[0]), reverse=True)
            for session_id, _ in ranked[self.max_sessions :]:
                await self.delete_session(session_id)

    # =========================================================================
    # Operations
    # =========================================================================

    async def create_session(self) -> Session:
        """Create a session, persist it, then evict the oldest if over capacity."""
        session = Session.create(self._stamp())
        self._sessions[session.id] = session
        if self.persistor is not None:
            try:
                await self._call("insert", self.persistor.insert, session.id, session.meta, session.data)
            except StorageError:
                self._sessions.pop(session.id, None)
                raise
        await self._evict_overflow()
        return session

    async def get_session(self, session_id: str) -> Session | None:
        """Get a session from the cache, falling back to the persistor. None if unknown."""
        session = self._sessions.get(session_id)
        if session is not None:
            return session
        if self.persistor is None:
            return None

        item = await self._call("find", self.persistor.find, session_id)
        if item is None:
            return None
        session = Session(session_id, self._as_meta(item.meta), self._as_data(item.data))
        self._sessions[session_id] = session
        await self._evict_overflow()
        return self._sessions.get(session_id)

    async def update_session(self, session: Session) -> None:
        """Write the session to the cache and through to the persistor.

        Always stamps ``updated_at``.
        """
        async with self.session_lock(session.id):
            await self._persist_update(session)

    async def append_message(self, session: Session, message: Message | dict[str, Any]) -> Session:
        """Append a message under the session's lock and write it through."""
        async with self.session_lock(session.id):
            session.push(message)
            await self._persist_update(session)
        return session

    async def list_sessions(self) -> list[Listing]:
        """List session metadata, newest first. Empty without a persistor."""
        if self.persistor is None:
            return []
        listings = await self._call("list", self.persistor.list)
        listings = [Listing(id=item.id, meta=self._as_meta(item.meta)) for item in listings]
        return sorted(listings, key=lambda item: (item.meta.updated_at, item.id), reverse=True)

    async def delete_session(self, session_id: str) -> None:
        """Delete a session from the cache and the persistor. Unknown ids are ignored."""
        self._sessions.pop(session_id, None)
        self._locks.pop(session_id, None)
        if self.persistor is not None:
            await self._call("remove", self.persistor.remove, session_id)

    async def clear(self) -> None:
        """Delete every cached and every persisted session."""
        cached_ids = list(self._sessions)
        self._sessions.clear()
        self._locks.clear()
        if self.persistor is None:
            return
        for session_id in cached_ids:
            await self._call("remove", self.persistor.remove, session_id)
        # The store may know sessions this vault never cached.
        for listing in await self._call("list", self.persistor.list):
            await self._call("remove", self.persistor.remove, listing.id)

    async def ensure_title(self, session: Session, titler: Titler) -> str:
        """Generate a title from the first user message if the session has none."""
        if session.title:
            return session.title
        text = session.first_user_message()
        if text is None:
            return ""
        title = await asyncio.to_thread(titler.generate_title, text)
        if title:
            async with self.session_lock(session.id):
                session.set_title(title)
                await self._persist_update(session)
        return session.title
