"""Shared data models for downcity-vault."""

import uuid
from datetime import datetime
from typing import Any

import pyarrow as pa
from lancedb.pydantic import LanceModel, Vector
from pydantic import BaseModel, ConfigDict, Field

from utils import next_stamp, utc_now


class Message(BaseModel):
    """One chat message. Extra provider fields (tool calls, ids) are kept."""

    model_config = ConfigDict(extra="allow")

    role: str
    content: Any = ""


class SessionMeta(BaseModel):
    """Lightweight projection returned by listings."""

    title: str = ""
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class SessionData(BaseModel):
    messages: list[Message] = Field(default_factory=list)


class Session:
    """An ordered, append-only conversation transcript."""

    def __init__(self, id: str, meta: SessionMeta, data: SessionData):
        self._id = id
        self._meta = meta
        self._data = data

    @classmethod
    def create(cls, now: datetime | None = None) -> "Session":
        now = now or utc_now()
        return cls(uuid.uuid4().hex, SessionMeta(created_at=now, updated_at=now), SessionData())

    @property
    def id(self) -> str:
        return self._id

    @property
    def meta(self) -> SessionMeta:
        return self._meta

    @property
    def data(self) -> SessionData:
        return self._data

    @property
    def title(self) -> str:
        return self._meta.title

    @property
    def messages(self) -> list[Message]:
        return self._data.messages

    @property
    def created_at(self) -> datetime:
        return self._meta.created_at

    @property
    def updated_at(self) -> datetime:
        return self._meta.updated_at

    def push(self, message: Message | dict[str, Any]) -> None:
        """Append a message and bump updated_at."""
        if not isinstance(message, Message):
            message = Message.model_validate(message)
        self._data.messages.append(message)
        self.touch()

    def touch(self, stamp: datetime | None = None) -> None:
        """Move updated_at forward, never behind its current value."""
        stamp = stamp or next_stamp(self._meta.updated_at)
        self._meta.updated_at = max(stamp, self._meta.updated_at, self._meta.created_at)

    def set_title(self, title: str) -> None:
        self._meta.title = title

    def first_user_message(self) -> str | None:
        for message in self._data.messages:
            if message.role == "user" and isinstance(message.content, str) and message.content.strip():
                return message.content
        return None

    def __repr__(self) -> str:
        return f"Session(id={self._id!r}, title={self.title!r}, messages={len(self.messages)})"


def knowledge_schema(dimension: int) -> pa.Schema:
    """Arrow schema for a knowledge table with a fixed vector dimension.

    IMPORTANT: the vector dimension is locked when the table is created.
    Metadata leaves are promoted to extra nullable columns later on.
    """

    class KnowledgeRecord(LanceModel):
        id: str
        content: str
        metadata: str  # flattened metadata as JSON
        vector: Vector(dimension)  # type: ignore[valid-type]

    return KnowledgeRecord.to_arrow_schema()


BASE_COLUMNS = frozenset({"id", "content", "metadata", "vector"})
