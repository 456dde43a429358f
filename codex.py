"""
Codex: an embedding-backed knowledge store on LanceDB.

A Codex owns named Volumes. Each Volume is one LanceDB table bound to one
embedding model and one vector dimension, fixed when the table is created.
Nested metadata is flattened into dot-qualified keys; scalar leaves are
promoted to their own nullable columns so ``where`` filters run inside
LanceDB instead of after the top-k cut.
"""

from __future__ import annotations

import asyncio
import json
import math
import re
import threading
import uuid
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import lancedb
import pyarrow as pa

from config import CodexConfig
from embeddings import EmbeddingModel
from errors import (
    ConfigurationError,
    DowncityError,
    ErrorCategory,
    ErrorDomain,
    ErrorId,
    StorageError,
    ValidationError,
)
from models import BASE_COLUMNS, knowledge_schema
from utils import escape_filter_value, flatten, log, unflatten

PROBE_TEXT = "sample text for dimension detection"
METADATA_COLUMN_PREFIX = "meta__"
VOLUME_NAME = re.compile(r"^[A-Za-z0-9_.\-]+$")

COMPARISON_OPERATORS = {
    "$gt": ">",
    "$gte": ">=",
    "$lt": "<",
    "$lte": "<=",
    "$ne": "!=",
}

# Column kind -> SQL type used when adding an all-null column
SQL_TYPES = {"boolean": "BOOLEAN", "double": "DOUBLE", "string": "STRING"}
ARROW_TYPES = {"boolean": pa.bool_(), "double": pa.float64(), "string": pa.string()}


class VolumeState(str, Enum):
    UNINITIALIZED = "uninitialized"
    PROBING_DIMENSION = "probing_dimension"
    PROVISIONED = "provisioned"
    READY = "ready"
    DIMENSION_CONFLICT = "dimension_conflict"


@dataclass(frozen=True, slots=True)
class KnowledgeItem:
    content: str
    metadata: dict[str, Any] | None = None
    id: str | None = None


@dataclass(frozen=True, slots=True)
class KnowledgeEntry:
    id: str
    content: str
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class SearchResult:
    id: str
    content: str
    metadata: dict[str, Any]
    distance: float  # lower = more similar, metric-defined


@dataclass(frozen=True, slots=True)
class IndexStats:
    dimension: int
    metric: str
    count: int
    unindexed: int = 0


# =============================================================================
# Metadata columns & filter translation
# =============================================================================


def metadata_column(key: str) -> str:
    """Column name for a flattened metadata key.

    ``_`` is written as ``_u`` and the nesting dot as ``_d``, so distinct keys
    never share a column: ``a.b`` -> ``meta__a_db``, ``a__b`` -> ``meta__a_u_ub``.
    """
    if "`" in key:
        raise ValidationError(f"Metadata key may not contain backticks: {key!r}", details={"key": key})
    return METADATA_COLUMN_PREFIX + key.replace("_", "_u").replace(".", "_d")


def value_kind(value: Any) -> str | None:
    """Column kind a metadata leaf is stored under; None if it is not promoted."""
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "double"
    if isinstance(value, str):
        return "string"
    return None


def type_kind(dtype: pa.DataType) -> str | None:
    if pa.types.is_boolean(dtype):
        return "boolean"
    if pa.types.is_floating(dtype) or pa.types.is_integer(dtype):
        return "double"
    if pa.types.is_string(dtype) or pa.types.is_large_string(dtype):
        return "string"
    return None


def _literal(value: Any, key: str = "", kind: str | None = None) -> str:
    """SQL literal for a filter value; ``kind`` is the column's kind when known."""
    found = value_kind(value)
    if kind is not None and found is not None and found != kind:
        raise ValidationError(
            f"Filter on '{key}' expects a {kind} value, got {found}",
            details={"key": key, "value": value},
        )
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError(f"Non-finite number in filter: {value}")
        return repr(value)
    if isinstance(value, str):
        return f"'{escape_filter_value(value)}'"
    raise ValidationError(f"Unsupported filter value: {value!r}", details={"type": type(value).__name__})


def _is_operator_dict(value: Any) -> bool:
    return isinstance(value, dict) and bool(value) and all(str(k).startswith("$") for k in value)


def _where_leaves(where: Mapping[str, Any], prefix: str = "") -> Iterator[tuple[str, Any]]:
    """Flatten a filter the way metadata is flattened, stopping at operator dicts."""
    for key, value in where.items():
        path = f"{prefix}.{key}" if prefix else str(key)
        if isinstance(value, dict) and not _is_operator_dict(value):
            yield from _where_leaves(value, path)
        else:
            yield path, value


class _NoMatch(Exception):
    """A filter condition that no row can satisfy."""


@dataclass(frozen=True, slots=True)
class _Target:
    key: str
    column: str
    present: bool
    kind: str | None  # None when unknown or not checkable


def _match(target: _Target, value: Any) -> str | None:
    """Exact-match condition: None -> null check, list -> membership, else equality."""
    column = target.column
    if value is None:
        return f"`{column}` IS NULL" if target.present else None
    if not target.present:
        raise _NoMatch
    if isinstance(value, (list, tuple)):
        options = [v for v in value if v is not None]
        parts = []
        if options:
            literals = ", ".join(_literal(v, target.key, target.kind) for v in options)
            parts.append(f"`{column}` IN ({literals})")
        if len(options) != len(value):
            parts.append(f"`{column}` IS NULL")
        if not parts:
            raise _NoMatch
        return parts[0] if len(parts) == 1 else f"({' OR '.join(parts)})"
    return f"`{column}` = {_literal(value, target.key, target.kind)}"


def _compare(target: _Target, op: str, value: Any) -> str | None:
    sql_op = COMPARISON_OPERATORS.get(op)
    if sql_op is None:
        return _match(target, value)
    if value is None:
        if sql_op != "!=":
            raise ValidationError(f"Operator {op} needs a non-null value", details={"key": target.key})
        if not target.present:
            raise _NoMatch
        return f"`{target.column}` IS NOT NULL"
    literal = _literal(value, target.key, target.kind)
    if not target.present:
        raise _NoMatch
    return f"`{target.column}` {sql_op} {literal}"


def translate_where(
    where: Mapping[str, Any] | None, columns: Mapping[str, str | None] | None = None
) -> str | None:
    """Translate a metadata filter into a LanceDB SQL predicate.

    - ``{"k": v}`` -> equality
    - ``{"k": [a, b]}`` -> membership
    - ``{"k": {"$gt": v}}`` -> comparison ($gt, $gte, $lt, $lte, $ne); any
      other ``$op`` is an exact match on its value
    - ``{"k": None}`` -> null check
    - nested plain dicts address nested metadata keys

    Conditions are ANDed. ``columns`` maps the metadata columns that exist to
    their kind; a key without a column is treated as null on every row, and a
    value of another kind than its column raises ValidationError. Returns ""
    when there is no constraint and None when nothing can match.
    """
    if not where:
        return ""
    conditions: list[str] = []
    no_match = False
    for key, value in _where_leaves(where):
        column = metadata_column(key)
        target = _Target(
            key=key,
            column=column,
            present=columns is None or column in columns,
            kind=columns.get(column) if columns is not None else None,
        )
        operations = value.items() if _is_operator_dict(value) else [("$eq", value)]
        for op, operand in operations:
            try:
                part = _compare(target, op, operand)
            except _NoMatch:
                no_match = True
                continue
            if part:
                conditions.append(part)
    if no_match:
        return None
    return " AND ".join(conditions)


# =============================================================================
# LanceDB helpers
# =============================================================================


def _table_names(db: lancedb.DBConnection) -> list[str]:
    try:
        response = db.list_tables()
        return list(getattr(response, "tables", response))
    except AttributeError:
        return list(db.table_names(limit=10_000))


def _vector_dimension(schema: pa.Schema) -> int | None:
    try:
        vector_type = schema.field("vector").type
    except KeyError:
        return None
    if pa.types.is_fixed_size_list(vector_type):
        return vector_type.list_size
    return None


def _sub_vectors(dimension: int) -> int:
    """Largest common PQ sub-vector count that divides the dimension."""
    for n in (96, 64, 48, 32, 16, 8, 4, 2):
        if dimension % n == 0 and dimension // n >= 1:
            return n
    return 1


# =============================================================================
# Volume
# =============================================================================


class Volume:
    """One named, dimension-locked collection of knowledge records."""

    def __init__(self, name: str, model: EmbeddingModel, config: CodexConfig, db: lancedb.DBConnection):
        self.name = name
        self.model = model
        self.config = config
        self.dimension: int | None = None
        self.state = VolumeState.UNINITIALIZED
        self._db = db
        self._table: Any = None
        self._write_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Volume(name={self.name!r}, dimension={self.dimension}, state={self.state.value})"

    # -------------------------------------------------------------------------
    # Provisioning
    # -------------------------------------------------------------------------

    async def _embed(self, text: str) -> list[float]:
        try:
            vector = await asyncio.to_thread(self.model.embed, text)
        except DowncityError:
            raise
        except Exception as e:
            raise DowncityError(
                ErrorId.VOLUME_EMBEDDING_FAILED,
                ErrorDomain.NETWORK,
                ErrorCategory.THIRD_PARTY,
                "Failed to embed text",
                details={"volume": self.name, "length": len(text)},
                original=e,
            ) from e
        return [float(v) for v in vector]

    async def _detect_dimension(self) -> int:
        if self.config.dimension:
            return self.config.dimension
        self.state = VolumeState.PROBING_DIMENSION
        try:
            vector = await self._embed(PROBE_TEXT)
        except DowncityError as e:
            self.state = VolumeState.UNINITIALIZED
            raise DowncityError(
                ErrorId.DIMENSION_DETECTION_FAILED,
                ErrorDomain.NETWORK,
                ErrorCategory.THIRD_PARTY,
                "Failed to detect vector dimension",
                details={"volume": self.name},
                original=e.original or e,
            ) from e
        if not vector:
            self.state = VolumeState.UNINITIALIZED
            raise ConfigurationError(
                "Embedding model returned an empty vector",
                id=ErrorId.DIMENSION_DETECTION_FAILED,
                details={"volume": self.name},
            )
        return len(vector)

    def _open_or_create(self, dimension: int) -> Any:
        try:
            table = self._db.open_table(self.name)
        except Exception:
            if self.name in _table_names(self._db):
                raise
            table = self._db.create_table(self.name, schema=knowledge_schema(dimension))
            log(f"Table {self.name} created ({dimension}D)")
            return table

        existing = _vector_dimension(table.schema)
        if existing is None:
            raise ConfigurationError(
                f"Table {self.name} has no fixed-size vector column",
                id=ErrorId.TABLE_SCHEMA_FAILED,
                details={"volume": self.name},
            )
        if existing != dimension:
            raise ConfigurationError(
                f"Vector dimension mismatch: table {self.name} has {existing} dimensions, "
                f"but the current model outputs {dimension}. "
                "Use a different collection name or change the embedding model.",
                details={"volume": self.name, "table_dimension": existing, "model_dimension": dimension},
            )
        return table

    async def open(self) -> Volume:
        """Probe the dimension, then open or create the backing table."""
        if self.state is VolumeState.READY:
            return self
        if self.state is VolumeState.DIMENSION_CONFLICT:
            raise ConfigurationError(
                f"Volume {self.name} is in a dimension conflict", details={"volume": self.name}
            )
        dimension = await self._detect_dimension()
        try:
            self._table = await asyncio.to_thread(self._open_or_create, dimension)
        except ConfigurationError:
            self.state = VolumeState.DIMENSION_CONFLICT
            raise
        except Exception as e:
            self.state = VolumeState.UNINITIALIZED
            raise StorageError(
                ErrorId.VOLUME_CREATE_FAILED,
                "Failed to create or open volume",
                details={"volume": self.name},
                original=e,
            ) from e
        self.dimension = dimension
        self.state = VolumeState.PROVISIONED
        self.state = VolumeState.READY
        return self

    def _ensure_ready(self) -> None:
        if self.state is not VolumeState.READY:
            raise StorageError(
                ErrorId.VOLUME_CREATE_FAILED,
                f"Volume {self.name} is not ready ({self.state.value})",
                details={"volume": self.name},
                category=ErrorCategory.USER,
            )

    def _column_kinds(self) -> dict[str, str | None]:
        return {
            f.name: type_kind(f.type)
            for f in self._table.schema
            if f.name not in BASE_COLUMNS
        }

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    @staticmethod
    def _prepare(item: KnowledgeItem | Mapping[str, Any], index: int) -> tuple[str | None, str, dict[str, Any]]:
        if isinstance(item, Mapping):
            content, metadata, item_id = item.get("content"), item.get("metadata"), item.get("id")
        else:
            content, metadata, item_id = item.content, item.metadata, item.id
        if not isinstance(content, str) or not content.strip():
            raise ValidationError(
                "Content must be a non-empty string", details={"index": index}
            )
        if metadata is not None and not isinstance(metadata, Mapping):
            raise ValidationError("Metadata must be a mapping", details={"index": index})
        if item_id is not None and (not isinstance(item_id, str) or not item_id):
            raise ValidationError("Id must be a non-empty string", details={"index": index})
        return item_id, content, flatten(dict(metadata or {}))

    @staticmethod
    def _plan_columns(
        prepared: list[tuple[str | None, str, dict[str, Any]]], existing: dict[str, str | None]
    ) -> dict[str, str]:
        """New metadata columns needed by a batch; raises on kind conflicts."""
        planned: dict[str, str] = {}
        for index, (_, _, flat) in enumerate(prepared):
            for key, value in flat.items():
                kind = value_kind(value)
                if kind is None:
                    continue
                column = metadata_column(key)
                if column in existing:
                    current = existing[column]
                    if current is None:  # column of a foreign type, never filled
                        continue
                elif column in planned:
                    current = planned[column]
                else:
                    planned[column] = kind
                    continue
                if current != kind:
                    raise ValidationError(
                        f"Metadata key '{key}' is stored as {current}, got {kind}",
                        id=ErrorId.METADATA_TYPE_CONFLICT,
                        details={"index": index, "key": key},
                    )
        return planned

    def _write_rows(self, rows: list[dict[str, Any]], new_columns: dict[str, str]) -> None:
        if new_columns and self._table.count_rows() == 0:
            schema = self._table.schema
            for column, kind in new_columns.items():
                schema = schema.append(pa.field(column, ARROW_TYPES[kind]))
            self._table = self._db.create_table(self.name, schema=schema, mode="overwrite")
        elif new_columns:
            self._table.add_columns(
                {column: f"CAST(NULL AS {SQL_TYPES[kind]})" for column, kind in new_columns.items()}
            )
        data = pa.Table.from_pylist(rows, schema=self._table.schema)
        (
            self._table.merge_insert("id")
            .when_matched_update_all()
            .when_not_matched_insert_all()
            .execute(data)
        )

    async def batch_insert(self, items: Sequence[KnowledgeItem | Mapping[str, Any]]) -> list[str]:
        """Embed and store several items; returns their ids in input order.

        Every item is validated before anything is written: one bad item
        rejects the whole batch. Items carrying an id replace the stored
        record with that id.
        """
        self._ensure_ready()
        if not isinstance(items, Sequence) or isinstance(items, (str, bytes)) or not items:
            raise ValidationError("Items must be a non-empty list")
        prepared = [self._prepare(item, index) for index, item in enumerate(items)]
        supplied = [item_id for item_id, _, _ in prepared if item_id is not None]
        if len(supplied) != len(set(supplied)):
            raise ValidationError("Duplicate ids in batch")

        async with self._write_lock:
            existing = await asyncio.to_thread(self._column_kinds)
            new_columns = self._plan_columns(prepared, existing)
            kinds = {**existing, **new_columns}

            vectors = [await self._embed(content) for _, content, _ in prepared]
            for index, vector in enumerate(vectors):
                if len(vector) != self.dimension:
                    raise ConfigurationError(
                        f"Embedding has {len(vector)} dimensions, volume {self.name} expects {self.dimension}",
                        details={"volume": self.name, "index": index},
                    )

            ids: list[str] = []
            rows: list[dict[str, Any]] = []
            for (item_id, content, flat), vector in zip(prepared, vectors):
                record_id = item_id or uuid.uuid4().hex
                row: dict[str, Any] = {
                    "id": record_id,
                    "content": content,
                    "metadata": json.dumps(flat, default=str),
                    "vector": vector,
                }
                for key, value in flat.items():
                    column = metadata_column(key)
                    kind = value_kind(value)
                    if kind is not None and kinds.get(column) == kind:
                        row[column] = float(value) if kind == "double" else value
                rows.append(row)
                ids.append(record_id)

            try:
                await asyncio.to_thread(self._write_rows, rows, new_columns)
            except Exception as e:
                raise StorageError(
                    ErrorId.VOLUME_INSERT_FAILED,
                    "Failed to insert records",
                    details={"volume": self.name, "count": len(rows)},
                    original=e,
                ) from e
        return ids

    async def insert(self, content: str, metadata: Mapping[str, Any] | None = None, id: str | None = None) -> str:
        """Embed and store one text; returns its id."""
        ids = await self.batch_insert([KnowledgeItem(content=content, metadata=metadata, id=id)])
        return ids[0]

    async def delete(self, id: str) -> None:
        """Delete a record by id. Unknown ids are ignored."""
        self._ensure_ready()
        try:
            await asyncio.to_thread(self._table.delete, f"id = '{escape_filter_value(id)}'")
        except Exception as e:
            raise StorageError(
                ErrorId.VOLUME_DELETE_FAILED,
                "Failed to delete record",
                details={"volume": self.name, "id": id},
                original=e,
            ) from e

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    async def get(self, id: str) -> KnowledgeEntry | None:
        """Fetch one record by id, or None."""
        self._ensure_ready()

        def _find() -> list[dict[str, Any]]:
            return (
                self._table.search()
                .where(f"id = '{escape_filter_value(id)}'")
                .select(["id", "content", "metadata"])
                .limit(1)
                .to_list()
            )

        try:
            rows = await asyncio.to_thread(_find)
        except Exception as e:
            raise StorageError(
                ErrorId.VOLUME_SEARCH_FAILED,
                "Failed to read record",
                details={"volume": self.name, "id": id},
                original=e,
            ) from e
        if not rows:
            return None
        row = rows[0]
        return KnowledgeEntry(id=row["id"], content=row["content"], metadata=unflatten(json.loads(row["metadata"] or "{}")))

    async def count(self) -> int:
        self._ensure_ready()
        try:
            return await asyncio.to_thread(self._table.count_rows)
        except Exception as e:
            raise StorageError(
                ErrorId.VOLUME_SEARCH_FAILED, "Failed to count records", details={"volume": self.name}, original=e
            ) from e

    async def search(
        self,
        query: str,
        limit: int | None = None,
        where: Mapping[str, Any] | None = None,
        distance_threshold: float | None = None,
    ) -> list[SearchResult]:
        """Nearest-neighbour search by text.

        Args:
            query: Text to search for; embedded with the volume's model
            limit: Max results from the backend (default 5)
            where: Metadata filter, see ``translate_where``
            distance_threshold: Drop results farther than this, applied after
                the backend's top-k
        """
        self._ensure_ready()
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string")
        limit = self.config.default_limit if limit is None else limit
        if limit <= 0:
            raise ValidationError(f"limit must be positive, got {limit}")
        if limit > self.config.max_limit:
            raise ValidationError(f"limit cannot exceed {self.config.max_limit}, got {limit}")
        if where is not None and not isinstance(where, Mapping):
            raise ValidationError("where must be a mapping")

        columns = await asyncio.to_thread(self._column_kinds) if where else {}
        predicate = translate_where(where, columns)
        if predicate is None:
            return []

        vector = await self._embed(query)

        def _query() -> list[dict[str, Any]]:
            search = self._table.search(vector, vector_column_name="vector").distance_type(self.config.metric)
            if predicate:
                search = search.where(predicate, prefilter=True)
            return search.select(["id", "content", "metadata"]).limit(limit).to_list()

        try:
            rows = await asyncio.to_thread(_query)
        except Exception as e:
            raise StorageError(
                ErrorId.VOLUME_SEARCH_FAILED,
                "Failed to search volume",
                details={"volume": self.name, "where": predicate or None},
                original=e,
            ) from e

        results = [
            SearchResult(
                id=row["id"],
                content=row["content"],
                metadata=unflatten(json.loads(row["metadata"] or "{}")),
                distance=float(row["_distance"]),
            )
            for row in rows
        ]
        if distance_threshold is not None:
            results = [r for r in results if r.distance <= distance_threshold]
        return sorted(results, key=lambda r: r.distance)

    async def search_by_type(self, query: str, type: str, limit: int | None = None) -> list[SearchResult]:
        """Search restricted to records whose ``type`` metadata equals ``type``."""
        return await self.search(query, limit=limit, where={"type": type})

    # -------------------------------------------------------------------------
    # Index management
    # -------------------------------------------------------------------------

    async def create_index(
        self,
        index_type: str = "IVF_PQ",
        num_partitions: int | None = None,
        num_sub_vectors: int | None = None,
        replace: bool = True,
    ) -> None:
        """Build an ANN index on the vector column."""
        self._ensure_ready()

        def _create() -> None:
            rows = self._table.count_rows()
            self._table.create_index(
                metric=self.config.metric,
                num_partitions=num_partitions or max(4, int(rows**0.5)),
                num_sub_vectors=num_sub_vectors or _sub_vectors(self.dimension or 1),
                vector_column_name="vector",
                replace=replace,
                index_type=index_type,
            )

        try:
            await asyncio.to_thread(_create)
        except Exception as e:
            raise StorageError(
                ErrorId.INDEX_CREATE_FAILED,
                "Failed to create index",
                details={"volume": self.name, "index_type": index_type},
                original=e,
            ) from e
        log(f"{index_type} index created on {self.name}")

    async def list_indexes(self) -> list[dict[str, Any]]:
        self._ensure_ready()
        try:
            indices = await asyncio.to_thread(self._table.list_indices)
        except Exception as e:
            raise StorageError(
                ErrorId.INDEX_LIST_FAILED, "Failed to list indexes", details={"volume": self.name}, original=e
            ) from e
        return [
            {
                "name": getattr(idx, "name", str(idx)),
                "index_type": str(getattr(idx, "index_type", "")),
                "columns": list(getattr(idx, "columns", [])),
            }
            for idx in indices
        ]

    async def index_stats(self, index_name: str) -> IndexStats | None:
        self._ensure_ready()
        try:
            stats = await asyncio.to_thread(self._table.index_stats, index_name)
        except Exception as e:
            raise StorageError(
                ErrorId.INDEX_STATS_FAILED,
                "Failed to get index stats",
                details={"volume": self.name, "index": index_name},
                original=e,
            ) from e
        if stats is None:
            return None
        return IndexStats(
            dimension=self.dimension or 0,
            metric=self.config.metric,
            count=getattr(stats, "num_indexed_rows", 0),
            unindexed=getattr(stats, "num_unindexed_rows", 0),
        )

    async def drop_index(self, index_name: str) -> None:
        self._ensure_ready()
        try:
            await asyncio.to_thread(self._table.drop_index, index_name)
        except Exception as e:
            raise StorageError(
                ErrorId.INDEX_DELETE_FAILED,
                "Failed to drop index",
                details={"volume": self.name, "index": index_name},
                original=e,
            ) from e


# =============================================================================
# Codex
# =============================================================================


class Codex:
    """Store-level handle: one LanceDB directory, one embedding model."""

    def __init__(self, model: EmbeddingModel, config: CodexConfig | None = None):
        if model is None:
            raise ValidationError("model is required", id=ErrorId.MISSING_REQUIRED_PARAM)
        self.model = model
        self.config = config or CodexConfig()
        self._db: lancedb.DBConnection | None = None
        self._volumes: dict[str, Volume] = {}
        self._db_lock = threading.Lock()
        self._volume_lock = asyncio.Lock()

    def _get_db(self) -> lancedb.DBConnection:
        """Get or create the LanceDB connection (thread-safe)."""
        if self._db is None:
            with self._db_lock:
                if self._db is None:  # Double-check after acquiring lock
                    try:
                        self.config.path.parent.mkdir(parents=True, exist_ok=True)
                        self._db = lancedb.connect(str(self.config.path))
                    except Exception as e:
                        raise StorageError(
                            ErrorId.CODEX_CONNECTION_FAILED,
                            "Failed to connect to LanceDB",
                            details={"path": str(self.config.path)},
                            original=e,
                        ) from e
        return self._db

    async def collection(self, name: str = "default") -> Volume:
        """Get a volume, provisioning its table on first use."""
        if not isinstance(name, str) or not VOLUME_NAME.match(name):
            raise ValidationError(f"Invalid collection name: {name!r}", details={"name": name})
        volume = self._volumes.get(name)
        if volume is not None:
            return volume
        async with self._volume_lock:  # Double-check after acquiring lock
            volume = self._volumes.get(name)
            if volume is not None:
                return volume
            db = await asyncio.to_thread(self._get_db)
            volume = await Volume(name, self.model, self.config, db).open()
            self._volumes[name] = volume
            return volume

    volume = collection

    async def list(self) -> list[str]:
        """Names of all tables in the store."""
        try:
            db = await asyncio.to_thread(self._get_db)
            return sorted(await asyncio.to_thread(_table_names, db))
        except DowncityError:
            raise
        except Exception as e:
            raise StorageError(ErrorId.TABLE_SCHEMA_FAILED, "Failed to list tables", original=e) from e

    async def has(self, name: str) -> bool:
        return name in await self.list()

    async def drop(self, name: str) -> None:
        """Drop a volume and its table."""
        async with self._volume_lock:
            try:
                db = await asyncio.to_thread(self._get_db)
                await asyncio.to_thread(db.drop_table, name)
            except DowncityError:
                raise
            except Exception as e:
                raise StorageError(
                    ErrorId.TABLE_DELETE_FAILED, "Failed to drop table", details={"volume": name}, original=e
                ) from e
            finally:
                self._volumes.pop(name, None)

    def close(self) -> None:
        """Forget open volumes and the connection; the next call reconnects."""
        with self._db_lock:
            self._volumes.clear()
            self._db = None
