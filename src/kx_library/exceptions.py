"""
Exception hierarchy for kx-library.

Exception Hierarchy:
    KxLibraryError (base)
    ├── InvalidInput (also a ValueError) - empty point set, bad k, dimension mismatch
    ├── ClusteringError - algorithmic failure inside a clustering run
    ├── CollaboratorUnavailable - embedding provider / store / LLM unreachable
    ├── SummarizationFailed - LLM summary failed, extractive fallback used
    └── OperationCancelled - caller abandoned a clustering run or search

Input errors abort the call and reach the caller unchanged. Collaborator
errors degrade search (the source is skipped) and never abort a batch run.
"""

from typing import Any, Dict, Optional


class KxLibraryError(Exception):
    """Base exception for all kx-library errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause

    def __str__(self) -> str:
        if self.cause:
            return f"{self.message} (caused by: {type(self.cause).__name__}: {self.cause})"
        return self.message


class InvalidInput(KxLibraryError, ValueError):
    """Input shape or parameter error, detected before any iteration begins."""
    pass


class ClusteringError(KxLibraryError):
    """Clustering failed for reasons other than invalid input."""
    pass


class CollaboratorUnavailable(KxLibraryError):
    """An external collaborator (embedding provider, vector store, LLM) is unreachable."""

    def __init__(
        self,
        collaborator: str,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[Exception] = None
    ):
        super().__init__(f"{collaborator}: {message}", details=details, cause=cause)
        self.collaborator = collaborator


class SummarizationFailed(KxLibraryError):
    """Abstractive summarization failed; callers fall back to an extractive summary."""

    def __init__(self, cluster_id: Any, message: str, cause: Optional[Exception] = None):
        super().__init__(
            f"Summarization failed for cluster {cluster_id}: {message}",
            details={'cluster_id': cluster_id},
            cause=cause
        )
        self.cluster_id = cluster_id


class OperationCancelled(KxLibraryError):
    """The caller cancelled a clustering run or search."""
    pass
