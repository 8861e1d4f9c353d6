"""
Injection-safe JSON serialization for persisted documents.

Every document written by a strategy goes through SecureJsonSerializer:
- size, depth and string-length limits
- script-like content is rejected (it has no business in schema metadata)
- strings are NFC-normalized on write
"""

import json
import re
import unicodedata
from typing import Any

import structlog

from src.errors import CorruptDataError, ValidationError
from src.storage.config import StorageConfig

logger = structlog.get_logger(__name__)

DANGEROUS_PATTERNS = re.compile(
    r"<\s*script\b|<\s*iframe\b|javascript\s*:|vbscript\s*:|\bon(?:load|error|click|mouseover|focus)\s*=",
    re.IGNORECASE,
)


class SecureJsonSerializer:
    """
    JSON serializer with limits and content checks.

    Serialization problems raise ValidationError (the caller supplied bad
    content); deserialization problems raise CorruptDataError (what is
    stored cannot be trusted).
    """

    def __init__(self, config: StorageConfig | None = None):
        self._config = config or StorageConfig()

    def serialize(self, data: Any, *, location: str | None = None) -> str:
        """Serialize to indented, human-readable JSON."""
        try:
            cleaned = self._clean(data, depth=0)
        except ValueError as e:
            raise ValidationError(str(e), operation="serialize", location=location) from e

        text = json.dumps(cleaned, indent=2, ensure_ascii=False)
        if len(text.encode("utf-8")) > self._config.max_document_bytes:
            raise ValidationError(
                f"Serialized document exceeds {self._config.max_document_bytes} bytes",
                operation="serialize",
                location=location,
            )
        return text

    def deserialize(self, content: str | bytes, *, location: str | None = None) -> Any:
        """Parse and validate a stored document."""
        size = len(content) if isinstance(content, bytes) else len(content.encode("utf-8"))
        if size > self._config.max_document_bytes:
            raise CorruptDataError(
                f"Stored document exceeds {self._config.max_document_bytes} bytes",
                operation="deserialize",
                location=location,
            )
        try:
            data = json.loads(content)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise CorruptDataError(
                f"Invalid JSON: {e}", operation="deserialize", location=location
            ) from e

        try:
            self._check(data, depth=0)
        except ValueError as e:
            logger.warning("Rejected stored document", location=location, reason=str(e))
            raise CorruptDataError(str(e), operation="deserialize", location=location) from e
        return data

    def _clean(self, value: Any, depth: int) -> Any:
        if depth > self._config.max_json_depth:
            raise ValueError(f"Document nesting exceeds depth {self._config.max_json_depth}")
        if isinstance(value, str):
            self._check_string(value)
            return unicodedata.normalize("NFC", value)
        if isinstance(value, dict):
            return {
                str(k): self._clean(v, depth + 1) for k, v in value.items()
            }
        if isinstance(value, (list, tuple)):
            return [self._clean(v, depth + 1) for v in value]
        return value

    def _check(self, value: Any, depth: int) -> None:
        if depth > self._config.max_json_depth:
            raise ValueError(f"Document nesting exceeds depth {self._config.max_json_depth}")
        if isinstance(value, str):
            self._check_string(value)
        elif isinstance(value, dict):
            for v in value.values():
                self._check(v, depth + 1)
        elif isinstance(value, list):
            for v in value:
                self._check(v, depth + 1)

    def _check_string(self, value: str) -> None:
        if len(value) > self._config.max_string_length:
            raise ValueError(
                f"String value exceeds {self._config.max_string_length} characters"
            )
        if DANGEROUS_PATTERNS.search(value):
            raise ValueError("Script-like content is not allowed in semantic model documents")
