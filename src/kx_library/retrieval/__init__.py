"""Hybrid search: vector, cluster-summary and keyword matches merged into one ranking."""

from .expansion import ExpansionCache, expand_window
from .merger import RetrievalMerger, merge_hits

__all__ = ['ExpansionCache', 'RetrievalMerger', 'expand_window', 'merge_hits']
