"""Tests for SecureJsonSerializer."""

import json

import pytest

from src.errors import CorruptDataError, ValidationError
from src.storage.config import StorageConfig
from src.storage.serializer import SecureJsonSerializer


@pytest.fixture
def serializer() -> SecureJsonSerializer:
    return SecureJsonSerializer(StorageConfig())


class TestSecureJsonSerializer:
    """Tests for limits and content checks."""

    def test_serialize_is_indented(self, serializer):
        """Output is human-readable JSON."""
        text = serializer.serialize({"name": "Customer", "columns": []})
        assert "\n  " in text
        assert json.loads(text) == {"name": "Customer", "columns": []}

    @pytest.mark.parametrize(
        "value",
        [
            "<script>alert(1)</script>",
            "click javascript:void(0)",
            '<img onerror="x">',
            "<IFRAME src=x>",
        ],
    )
    def test_script_content_rejected(self, serializer, value):
        """Script-like strings are rejected on write."""
        with pytest.raises(ValidationError, match="Script-like"):
            serializer.serialize({"description": value}, location="tables/dbo.X.json")

    def test_plain_sql_is_allowed(self, serializer):
        """SQL definitions with angle brackets are not scripts."""
        text = serializer.serialize({"definition": "SELECT * FROM t WHERE a < 5 AND b > 2"})
        assert "a < 5" in text

    def test_depth_limit(self):
        """Nesting deeper than max_json_depth is rejected."""
        serializer = SecureJsonSerializer(StorageConfig(max_json_depth=4))
        deep: dict = {}
        node = deep
        for _ in range(10):
            node["child"] = {}
            node = node["child"]

        with pytest.raises(ValidationError, match="depth"):
            serializer.serialize(deep)

    def test_document_size_limit(self):
        """Documents above max_document_bytes are rejected."""
        serializer = SecureJsonSerializer(StorageConfig(max_document_bytes=1024))
        with pytest.raises(ValidationError, match="exceeds"):
            serializer.serialize({"data": ["x" * 100 for _ in range(20)]})

    def test_deserialize_invalid_json(self, serializer):
        """Unparseable content is corrupt data."""
        with pytest.raises(CorruptDataError) as exc_info:
            serializer.deserialize("{not json", location="/models/a/semanticmodel.json")
        assert exc_info.value.location == "/models/a/semanticmodel.json"

    def test_deserialize_rejects_stored_script(self, serializer):
        """Tampered stored content is corrupt data."""
        with pytest.raises(CorruptDataError):
            serializer.deserialize('{"description": "<script>x</script>"}')

    def test_deserialize_bytes(self, serializer):
        """Bytes input is accepted."""
        assert serializer.deserialize(b'{"a": 1}') == {"a": 1}
