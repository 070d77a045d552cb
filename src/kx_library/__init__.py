"""
kx-library: clustering and multi-scale retrieval for a local knowledge base.

Chunks are grouped by embedding similarity (k-means, mini-batch k-means or
soft membership), summarized per cluster and mapped onto taxonomy concepts.
Search merges chunk-level, cluster-summary and keyword matches into one
ranked list with optional context expansion.
"""

__version__ = "0.1.0"
