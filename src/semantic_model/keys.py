"""
Deterministic identifiers for entities and vector records.

Keys have the form ``{model}:{kind}:{schema}.{name}``. Every part is
lower-cased, whitespace runs become ``-`` and characters outside
``[a-z0-9_.-]`` are dropped, so the same entity always maps to the same
key regardless of which backend stores it.

Normalization can map distinct entities to the same text (``Order Items``
and ``Order-Items``). When it changes a schema or name beyond
lower-casing, or the schema contains a dot, the key gets a ``~`` suffix
with a digest of the raw identity. ``~`` never survives normalization,
so suffixed keys cannot collide with plain ones.
"""

import hashlib
import re

MAX_KEY_LENGTH = 512
IDENTITY_DIGEST_LENGTH = 12

_WHITESPACE = re.compile(r"\s+")
_UNSAFE = re.compile(r"[^a-z0-9_.\-]")


class EntityKeyBuilder:
    """Builds sanitized, length-capped entity keys."""

    @staticmethod
    def normalize_part(value: str) -> str:
        """Lower-case, collapse whitespace to '-', drop unsafe characters."""
        value = _WHITESPACE.sub("-", value.strip().lower())
        return _UNSAFE.sub("", value)

    @classmethod
    def is_lossless(cls, schema: str, name: str) -> bool:
        """True when the normalized schema.name identifies the entity on its own."""
        return (
            "." not in schema
            and cls.normalize_part(schema) == schema.lower()
            and cls.normalize_part(name) == name.lower()
        )

    @staticmethod
    def identity_digest(kind: str, schema: str, name: str) -> str:
        identity = f"{kind.lower()}\x1f{schema.lower()}\x1f{name.lower()}"
        return hashlib.sha256(identity.encode("utf-8")).hexdigest()[:IDENTITY_DIGEST_LENGTH]

    @classmethod
    def build(cls, model_name: str, kind: str, schema: str, name: str) -> str:
        """
        Build the key for one entity.

        Keys longer than MAX_KEY_LENGTH are truncated and suffixed with a
        digest of the full key so distinct long names stay distinct.
        """
        key = (
            f"{cls.normalize_part(model_name)}:{cls.normalize_part(kind)}:"
            f"{cls.normalize_part(schema)}.{cls.normalize_part(name)}"
        )
        if not cls.is_lossless(schema, name):
            key = f"{key}~{cls.identity_digest(kind, schema, name)}"
        if len(key) <= MAX_KEY_LENGTH:
            return key
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()[:16]
        return f"{key[: MAX_KEY_LENGTH - 17]}-{digest}"

    @classmethod
    def model_prefix(cls, model_name: str) -> str:
        """Prefix shared by every key of a model."""
        return f"{cls.normalize_part(model_name)}:"
