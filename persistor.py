"""
Persistence contract and the SQLite relational backend.

A Persistor stores (id, meta, data) triples in one named collection.
``meta`` is the small projection returned by ``list()``; ``data`` is the
full payload and is only read back by ``find()``.
"""

from __future__ import annotations

import json
import re
import sqlite3
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Generic, NamedTuple, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from errors import ErrorId, StorageError, ValidationError
from utils import utc_now

DataT = TypeVar("DataT")
MetaT = TypeVar("MetaT")

_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


class StoredItem(NamedTuple):
    meta: Any
    data: Any


class Listing(NamedTuple):
    id: str
    meta: Any


class Persistor(ABC, Generic[DataT, MetaT]):
    """Storage-agnostic CRUD contract.

    - insert: upsert, a second insert with the same id wins
    - find: returns None for a missing id, never raises for it
    - update: overwrites; a missing id is inserted
    - remove: a missing id is a no-op
    - list: ids with meta only, data is never loaded
    """

    @abstractmethod
    def insert(self, id: str, meta: MetaT, data: DataT) -> None: ...

    @abstractmethod
    def find(self, id: str) -> StoredItem | None: ...

    @abstractmethod
    def update(self, id: str, meta: MetaT, data: DataT) -> None: ...

    @abstractmethod
    def remove(self, id: str) -> None: ...

    @abstractmethod
    def list(self) -> list[Listing]: ...

    def close(self) -> None:
        """Release backend resources."""


class SQLitePersistor(Persistor[DataT, MetaT]):
    """One SQLite file, one table per logical collection.

    Pass pydantic model types as ``meta_type``/``data_type`` to get models
    back from ``find``/``list``; without them plain JSON values round-trip.
    Several persistors may share one file, each with its own table.
    """

    def __init__(
        self,
        path: Path | str,
        table: str = "sessions",
        meta_type: type[BaseModel] | None = None,
        data_type: type[BaseModel] | None = None,
    ):
        if not _IDENTIFIER.match(table):
            raise ValidationError(
                f"Invalid table name '{table}'", details={"table": table}
            )
        self.path = str(path)
        self.table = table
        self.meta_type = meta_type
        self.data_type = data_type
        self._lock = threading.RLock()  # one connection shared across worker threads
        try:
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(self.path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
            with self._conn:
                self._conn.execute(
                    f"""
                    CREATE TABLE IF NOT EXISTS {self.table} (
                        id TEXT PRIMARY KEY,
                        meta TEXT NOT NULL,
                        data TEXT NOT NULL,
                        createdAt TEXT NOT NULL,
                        updatedAt TEXT NOT NULL
                    )
                    """
                )
        except (sqlite3.Error, OSError) as e:
            raise StorageError(
                ErrorId.PERSISTOR_OPEN_FAILED,
                "Failed to open SQLite store",
                details={"path": str(path), "table": table},
                original=e,
            ) from e

    # -------------------------------------------------------------------------
    # Serialization
    # -------------------------------------------------------------------------

    @staticmethod
    def _dump(value: Any) -> str:
        if isinstance(value, BaseModel):
            return value.model_dump_json()
        return json.dumps(value, default=str)

    def _load(self, text: str, model: type[BaseModel] | None, id: str) -> Any:
        try:
            if model is not None:
                return model.model_validate_json(text)
            return json.loads(text)
        except (PydanticValidationError, json.JSONDecodeError) as e:
            raise StorageError(
                ErrorId.PERSISTOR_READ_FAILED,
                "Stored record is corrupt",
                details={"table": self.table, "id": id},
                original=e,
            ) from e

    # -------------------------------------------------------------------------
    # Contract
    # -------------------------------------------------------------------------

    def _upsert(self, id: str, meta: MetaT, data: DataT) -> None:
        now = utc_now().isoformat()
        try:
            with self._lock, self._conn:
                self._conn.execute(
                    f"""
                    INSERT INTO {self.table} (id, meta, data, createdAt, updatedAt)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        meta = excluded.meta,
                        data = excluded.data,
                        updatedAt = excluded.updatedAt
                    """,
                    (id, self._dump(meta), self._dump(data), now, now),
                )
        except sqlite3.Error as e:
            raise StorageError(
                ErrorId.PERSISTOR_WRITE_FAILED,
                "Failed to write record",
                details={"table": self.table, "id": id},
                original=e,
            ) from e

    def insert(self, id: str, meta: MetaT, data: DataT) -> None:
        self._upsert(id, meta, data)

    def update(self, id: str, meta: MetaT, data: DataT) -> None:
        # Same statement as insert: updating a missing id creates it.
        self._upsert(id, meta, data)

    def find(self, id: str) -> StoredItem | None:
        try:
            with self._lock:
                row = self._conn.execute(
                    f"SELECT meta, data FROM {self.table} WHERE id = ?", (id,)
                ).fetchone()
        except sqlite3.Error as e:
            raise StorageError(
                ErrorId.PERSISTOR_READ_FAILED,
                "Failed to read record",
                details={"table": self.table, "id": id},
                original=e,
            ) from e
        if row is None:
            return None
        return StoredItem(
            meta=self._load(row["meta"], self.meta_type, id),
            data=self._load(row["data"], self.data_type, id),
        )

    def remove(self, id: str) -> None:
        try:
            with self._lock, self._conn:
                self._conn.execute(f"DELETE FROM {self.table} WHERE id = ?", (id,))
        except sqlite3.Error as e:
            raise StorageError(
                ErrorId.PERSISTOR_WRITE_FAILED,
                "Failed to remove record",
                details={"table": self.table, "id": id},
                original=e,
            ) from e

    def list(self) -> list[Listing]:
        try:
            with self._lock:
                rows = self._conn.execute(f"SELECT id, meta FROM {self.table}").fetchall()
        except sqlite3.Error as e:
            raise StorageError(
                ErrorId.PERSISTOR_READ_FAILED,
                "Failed to list records",
                details={"table": self.table},
                original=e,
            ) from e
        return [
            Listing(id=row["id"], meta=self._load(row["meta"], self.meta_type, row["id"])) for row in rows
        ]

    def close(self) -> None:
        with self._lock:
            self._conn.close()
