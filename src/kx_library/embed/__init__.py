"""Query and concept embeddings via Vertex AI."""

from .embeddings import EmbeddingProvider, VertexEmbeddingProvider

__all__ = ['EmbeddingProvider', 'VertexEmbeddingProvider']
