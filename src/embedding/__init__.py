"""
Embedding generation for semantic model entities.

This module provides:
- EmbeddingGenerator: contract for text-to-vector generation
- TransformerEmbeddingGenerator: local HuggingFace model
- HttpEmbeddingGenerator: OpenAI-compatible embeddings API
- EmbeddingConfig: configuration settings for the generators
"""

from src.embedding.config import EmbeddingConfig
from src.embedding.service import (
    EmbeddingGenerator,
    HttpEmbeddingGenerator,
    TransformerEmbeddingGenerator,
    create_embedding_generator,
)

__all__ = [
    "EmbeddingConfig",
    "EmbeddingGenerator",
    "HttpEmbeddingGenerator",
    "TransformerEmbeddingGenerator",
    "create_embedding_generator",
]
