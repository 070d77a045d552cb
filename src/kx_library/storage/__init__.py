"""Vector store contract. The Firestore adapter lives in storage.firestore_store."""

from .base import VectorStore

__all__ = ['VectorStore']
