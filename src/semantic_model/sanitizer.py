"""
Name and location validation for persisted entities.

Entity names end up as file names, blob names and document keys, so they
are checked against a single rule set:
- at most 128 characters
- no path separators, wildcard or control characters
- no Windows reserved device names

Locations (model directories, blob prefixes, document-store model names)
are checked for traversal sequences before any I/O.
"""

import re
import unicodedata
from pathlib import Path

from src.errors import ValidationError

MAX_ENTITY_NAME_LENGTH = 128
MAX_FILE_NAME_LENGTH = 255
MAX_LOCATION_LENGTH = 1024

INVALID_NAME_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')
INVALID_LOCATION_CHARS = re.compile(r'[<>"|?*\x00-\x1f]')

RESERVED_NAMES: frozenset[str] = frozenset(
    {"CON", "PRN", "AUX", "NUL"}
    | {f"COM{i}" for i in range(1, 10)}
    | {f"LPT{i}" for i in range(1, 10)}
)


class EntityNameSanitizer:
    """Validates and sanitizes entity names for storage keys."""

    @staticmethod
    def validate(name: str, *, field: str = "name") -> None:
        """
        Reject names that cannot be stored safely.

        Raises:
            ValidationError: If the name is empty, too long, or contains
                path/control characters
        """
        if not name or not name.strip():
            raise ValidationError(f"Entity {field} must not be empty")
        if len(name) > MAX_ENTITY_NAME_LENGTH:
            raise ValidationError(
                f"Entity {field} exceeds {MAX_ENTITY_NAME_LENGTH} characters: "
                f"{name[:32]}..."
            )
        if INVALID_NAME_CHARS.search(name):
            raise ValidationError(f"Entity {field} contains invalid characters: {name!r}")
        if ".." in name:
            raise ValidationError(f"Entity {field} contains a traversal sequence: {name!r}")

    @staticmethod
    def sanitize(name: str) -> str:
        """Replace unsafe characters so the name can be used in a file name."""
        cleaned = unicodedata.normalize("NFC", name)
        cleaned = INVALID_NAME_CHARS.sub("_", cleaned)
        cleaned = cleaned.replace("..", "_")
        cleaned = cleaned.strip(" .")
        if not cleaned:
            cleaned = "_"
        if cleaned.upper() in RESERVED_NAMES:
            cleaned = f"_{cleaned}"
        return cleaned[:MAX_ENTITY_NAME_LENGTH]

    @classmethod
    def entity_file_name(cls, schema: str, name: str) -> str:
        """Build the `{schema}.{name}.json` file name for an entity."""
        file_name = f"{cls.sanitize(schema)}.{cls.sanitize(name)}.json"
        if len(file_name) > MAX_FILE_NAME_LENGTH:
            raise ValidationError(
                f"Entity file name exceeds {MAX_FILE_NAME_LENGTH} characters"
            )
        return file_name


class PathValidator:
    """Validates model locations before any strategy touches storage."""

    @staticmethod
    def validate_location(location: str, *, operation: str | None = None) -> str:
        """
        Validate a location string (blob prefix or document-store model name).

        Returns:
            The location with surrounding slashes stripped

        Raises:
            ValidationError: On traversal sequences, invalid characters or
                excessive length
        """
        if not location or not str(location).strip():
            raise ValidationError("Location must not be empty", operation=operation)
        location = str(location)
        if len(location) > MAX_LOCATION_LENGTH:
            raise ValidationError(
                f"Location exceeds {MAX_LOCATION_LENGTH} characters",
                operation=operation,
            )
        parts = re.split(r"[\\/]", location)
        if ".." in parts or location.startswith("~"):
            raise ValidationError(
                "Location contains a traversal sequence",
                operation=operation,
                location=location,
            )
        if INVALID_LOCATION_CHARS.search(location):
            raise ValidationError(
                "Location contains invalid characters",
                operation=operation,
                location=location,
            )
        return location.strip("/")

    @classmethod
    def validate_directory(cls, path: str | Path, *, operation: str | None = None) -> Path:
        """
        Validate a local model directory and return it resolved.

        Raises:
            ValidationError: If the path is unsafe
        """
        raw = str(path)
        cls.validate_location(raw, operation=operation)
        return Path(raw).resolve()

    @staticmethod
    def ensure_within(base: Path, candidate: Path, *, operation: str | None = None) -> Path:
        """Ensure candidate resolves inside base."""
        resolved = candidate.resolve()
        if not resolved.is_relative_to(base.resolve()):
            raise ValidationError(
                "Resolved path escapes the model directory",
                operation=operation,
                location=str(candidate),
            )
        return resolved
