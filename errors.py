"""Error taxonomy for the session vault and the knowledge codex.

Every failure surfaced by storage or vector operations is a DowncityError
carrying a machine-readable id, a domain, a category and free-form details.
The backend exception that caused it, if any, is kept as ``original`` and
chained as ``__cause__``.
"""

from __future__ import annotations

import json
from enum import Enum
from typing import Any


class ErrorDomain(str, Enum):
    STORAGE = "STORAGE"
    NETWORK = "NETWORK"
    VALIDATION = "VALIDATION"
    AUTHENTICATION = "AUTHENTICATION"
    CONFIGURATION = "CONFIGURATION"


class ErrorCategory(str, Enum):
    USER = "USER"
    THIRD_PARTY = "THIRD_PARTY"
    SYSTEM = "SYSTEM"
    NETWORK = "NETWORK"


class ErrorId:
    """Predefined error ids."""

    # Codex
    CODEX_CONNECTION_FAILED = "CODEX_CONNECTION_FAILED"

    # Volume
    VOLUME_CREATE_FAILED = "VOLUME_CREATE_FAILED"
    VOLUME_EMBEDDING_FAILED = "VOLUME_EMBEDDING_FAILED"
    VOLUME_SEARCH_FAILED = "VOLUME_SEARCH_FAILED"
    VOLUME_INSERT_FAILED = "VOLUME_INSERT_FAILED"
    VOLUME_DELETE_FAILED = "VOLUME_DELETE_FAILED"
    DIMENSION_DETECTION_FAILED = "DIMENSION_DETECTION_FAILED"
    DIMENSION_MISMATCH = "DIMENSION_MISMATCH"

    # Tables
    TABLE_DELETE_FAILED = "TABLE_DELETE_FAILED"
    TABLE_SCHEMA_FAILED = "TABLE_SCHEMA_FAILED"

    # Indexes
    INDEX_CREATE_FAILED = "INDEX_CREATE_FAILED"
    INDEX_DELETE_FAILED = "INDEX_DELETE_FAILED"
    INDEX_LIST_FAILED = "INDEX_LIST_FAILED"
    INDEX_STATS_FAILED = "INDEX_STATS_FAILED"

    # Persistor
    PERSISTOR_OPEN_FAILED = "PERSISTOR_OPEN_FAILED"
    PERSISTOR_WRITE_FAILED = "PERSISTOR_WRITE_FAILED"
    PERSISTOR_READ_FAILED = "PERSISTOR_READ_FAILED"

    # Validation
    INVALID_ARGS = "INVALID_ARGS"
    MISSING_REQUIRED_PARAM = "MISSING_REQUIRED_PARAM"
    METADATA_TYPE_CONFLICT = "METADATA_TYPE_CONFLICT"


class DowncityError(Exception):
    """Base wrapped error."""

    def __init__(
        self,
        id: str,
        domain: ErrorDomain,
        category: ErrorCategory,
        text: str | None = None,
        details: dict[str, Any] | None = None,
        original: BaseException | None = None,
    ):
        super().__init__(text or id)
        self.id = id
        self.domain = domain
        self.category = category
        self.text = text or id
        self.details = details
        self.original = original
        if original is not None:
            self.__cause__ = original

    def full_message(self) -> str:
        """Get the full error message including details and the original error."""
        message = f"[{self.domain.value}:{self.category.value}] {self.id}: {self.text}"
        if self.details:
            message += f" | Details: {json.dumps(self.details, default=str)}"
        if self.original is not None:
            message += f" | Original: {self.original}"
        return message

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": type(self).__name__,
            "id": self.id,
            "domain": self.domain.value,
            "category": self.category.value,
            "message": self.text,
            "details": self.details,
            "original_error": str(self.original) if self.original is not None else None,
        }


class ValidationError(DowncityError):
    """Bad caller input, raised before any I/O."""

    def __init__(
        self,
        text: str,
        id: str = ErrorId.INVALID_ARGS,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(id, ErrorDomain.VALIDATION, ErrorCategory.USER, text, details)


class StorageError(DowncityError):
    """Backend connection, schema or index failure."""

    def __init__(
        self,
        id: str,
        text: str,
        details: dict[str, Any] | None = None,
        original: BaseException | None = None,
        category: ErrorCategory = ErrorCategory.THIRD_PARTY,
    ):
        super().__init__(id, ErrorDomain.STORAGE, category, text, details, original)


class ConfigurationError(DowncityError):
    """Fatal misconfiguration; never retried, needs caller action."""

    def __init__(
        self,
        text: str,
        id: str = ErrorId.DIMENSION_MISMATCH,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(id, ErrorDomain.CONFIGURATION, ErrorCategory.USER, text, details)
