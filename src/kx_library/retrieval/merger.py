"""
Multi-source retrieval.

One query fans out to up to three sources on a thread pool:
- nearest chunks (vector)
- nearest cluster summaries (optional, needs an embedding)
- keyword matches (hybrid mode, or when no embedding is available)

Results are merged into one ranked list. A chunk found by two sources is
boosted and tagged HYBRID. Context expansion then widens each surviving
chunk hit with its neighbours.
"""

import logging
import threading
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from ..config import Settings
from ..embed.embeddings import EmbeddingProvider
from ..exceptions import CollaboratorUnavailable, InvalidInput, OperationCancelled
from ..schema import Embedding, MatchType, SearchHit, SearchOptions
from ..storage.base import VectorStore
from .expansion import ExpansionCache, expand_window

logger = logging.getLogger(__name__)

# Merge order: earlier sources own the hit, later ones boost it
SOURCE_ORDER = (MatchType.VECTOR, MatchType.CLUSTER_SUMMARY, MatchType.KEYWORD)

# Sources whose scores are similarities subject to the threshold
THRESHOLDED_SOURCES = (MatchType.VECTOR, MatchType.CLUSTER_SUMMARY)


def _clamp(score: float) -> float:
    return min(1.0, max(0.0, float(score)))


def _check_cancelled(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("Search cancelled")


def merge_hits(
    batches: Sequence[Tuple[MatchType, List[SearchHit]]],
    threshold: float = 0.0,
    boost_factor: float = 1.2
) -> List[SearchHit]:
    """
    Merge per-source hit lists into one list ranked by descending score.

    Args:
        batches: (source, hits) pairs, applied in the given order
        threshold: Minimum score for vector and cluster-summary hits
        boost_factor: Multiplier for a hit confirmed by a second source

    Returns:
        Deduplicated hits; equal scores keep merge order
    """
    merged: "OrderedDict[Tuple[str, int, int], SearchHit]" = OrderedDict()
    seen_sources: Dict[Tuple[str, int, int], Set[MatchType]] = {}

    for source, hits in batches:
        for hit in hits:
            hit = replace(hit, score=_clamp(hit.score))
            if source in THRESHOLDED_SOURCES and hit.score < threshold:
                continue

            key = hit.dedup_key
            existing = merged.get(key)
            if existing is None:
                merged[key] = hit
                seen_sources[key] = {source}
            elif source not in seen_sources[key]:
                existing.score = min(1.0, existing.score * boost_factor)
                existing.match_type = MatchType.HYBRID
                seen_sources[key].add(source)

    return sorted(merged.values(), key=lambda h: h.score, reverse=True)


class RetrievalMerger:
    """
    Hybrid search over a VectorStore.

    Args:
        store: Vector store with chunk, summary and keyword access
        embedder: Embedding provider for search_text (optional)
        boost_factor: Score multiplier for hits found by two sources (default: 1.2)
        max_workers: Thread pool size for sources and expansion (default: 3)
        default_limit: Result limit when no SearchOptions are given (default: 10)
        max_expand_chars: Upper bound on options.expand_chars (None = no cap)
    """

    def __init__(
        self,
        store: VectorStore,
        embedder: Optional[EmbeddingProvider] = None,
        boost_factor: float = 1.2,
        max_workers: int = 3,
        default_limit: int = 10,
        max_expand_chars: Optional[int] = None
    ):
        if max_workers <= 0:
            raise InvalidInput(f"max_workers must be positive, got {max_workers}")
        if max_expand_chars is not None and max_expand_chars < 0:
            raise InvalidInput(f"max_expand_chars must be >= 0, got {max_expand_chars}")
        self.store = store
        self.embedder = embedder
        self.boost_factor = boost_factor
        self.max_workers = max_workers
        self.default_limit = default_limit
        self.max_expand_chars = max_expand_chars

    @classmethod
    def from_settings(
        cls,
        store: VectorStore,
        settings: Settings,
        embedder: Optional[EmbeddingProvider] = None,
        max_workers: int = 3
    ) -> "RetrievalMerger":
        """Build a merger with the search_limit, hybrid_boost and max_expand_chars settings."""
        return cls(
            store,
            embedder=embedder,
            boost_factor=settings.hybrid_boost,
            max_workers=max_workers,
            default_limit=settings.search_limit,
            max_expand_chars=settings.max_expand_chars
        )

    def default_options(self) -> SearchOptions:
        return SearchOptions(limit=self.default_limit)

    def search(
        self,
        query_embedding: Optional[Embedding],
        options: Optional[SearchOptions] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> List[SearchHit]:
        """
        Run all applicable sources and return merged, ranked hits.

        Raises:
            InvalidInput: If options.limit is negative
            OperationCancelled: If cancel_event is set before the merge completes
        """
        options = options or self.default_options()
        if options.limit < 0:
            raise InvalidInput(f"limit must be >= 0, got {options.limit}")
        _check_cancelled(cancel_event)
        if options.limit == 0:
            return []

        sources = self._plan_sources(query_embedding, options)
        if not sources:
            logger.warning("No embedding and no query text; nothing to search")
            return []

        batches = self._fetch_all(sources, cancel_event)
        _check_cancelled(cancel_event)

        hits = merge_hits(batches, options.threshold, self.boost_factor)[:options.limit]
        logger.info(
            f"Merged {sum(len(h) for _, h in batches)} hits from {len(batches)} sources "
            f"into {len(hits)} results"
        )

        expand_chars = options.expand_chars
        if self.max_expand_chars is not None and expand_chars > self.max_expand_chars:
            logger.debug(f"Capping expand_chars {expand_chars} to {self.max_expand_chars}")
            expand_chars = self.max_expand_chars
        if expand_chars > 0 and hits:
            self._expand(hits, replace(options, expand_chars=expand_chars), cancel_event)

        return hits

    def search_text(
        self,
        query: str,
        options: Optional[SearchOptions] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> List[SearchHit]:
        """Embed the query and search; keyword-only when embedding is unavailable."""
        options = replace(options or self.default_options(), query_text=query)

        query_embedding = None
        if self.embedder is not None:
            _check_cancelled(cancel_event)
            try:
                query_embedding = self.embedder.embed(query)
            except CollaboratorUnavailable as e:
                logger.warning(f"Embedding unavailable, falling back to keyword search: {e}")

        return self.search(query_embedding, options, cancel_event)

    # ------------------------------------------------------------------

    def _plan_sources(
        self,
        query_embedding: Optional[Embedding],
        options: SearchOptions
    ) -> Dict[MatchType, Callable[[], List[SearchHit]]]:
        sources: Dict[MatchType, Callable[[], List[SearchHit]]] = {}
        limit = options.limit

        if query_embedding is not None:
            sources[MatchType.VECTOR] = lambda: self.store.nearest_chunks(
                query_embedding, limit, options.tags
            )
            if options.include_cluster_summaries:
                sources[MatchType.CLUSTER_SUMMARY] = lambda: self.store.nearest_cluster_summaries(
                    query_embedding, limit
                )

        if options.query_text and (options.hybrid or query_embedding is None):
            sources[MatchType.KEYWORD] = lambda: self.store.keyword_search(
                options.query_text, limit, options.tags
            )

        return sources

    def _fetch_all(
        self,
        sources: Dict[MatchType, Callable[[], List[SearchHit]]],
        cancel_event: Optional[threading.Event]
    ) -> List[Tuple[MatchType, List[SearchHit]]]:
        def run_source(fetch: Callable[[], List[SearchHit]]) -> List[SearchHit]:
            _check_cancelled(cancel_event)
            return fetch()

        results: Dict[MatchType, List[SearchHit]] = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(sources))) as executor:
            futures = {executor.submit(run_source, fetch): source for source, fetch in sources.items()}
            for future in as_completed(futures):
                source = futures[future]
                try:
                    results[source] = future.result()
                except CollaboratorUnavailable as e:
                    logger.warning(f"Source {source.value} unavailable, skipping: {e}")

        return [(source, results[source]) for source in SOURCE_ORDER if source in results]

    def _expand(
        self,
        hits: List[SearchHit],
        options: SearchOptions,
        cancel_event: Optional[threading.Event]
    ) -> None:
        """Fill expanded_content in place; one worker per document."""
        _check_cancelled(cancel_event)
        cache = ExpansionCache()

        by_document: "OrderedDict[str, List[SearchHit]]" = OrderedDict()
        for hit in hits:
            if hit.match_type is MatchType.CLUSTER_SUMMARY:
                continue
            by_document.setdefault(hit.document_id, []).append(hit)

        def expand_document(document_hits: List[SearchHit]) -> None:
            for hit in document_hits:
                _check_cancelled(cancel_event)
                window = cache.lookup(hit.document_id, hit.chunk_index)
                if window is None:
                    try:
                        window = expand_window(
                            self.store,
                            hit.document_id,
                            hit.chunk_index,
                            options.expand_chars,
                            direction=options.expand_direction,
                            fallback_content=hit.content
                        )
                    except CollaboratorUnavailable as e:
                        logger.warning(f"Expansion skipped for {hit.document_id}: {e}")
                        return
                    cache.store(window)
                hit.expanded_content = window.content
                hit.expanded_range = (window.start, window.end)

        if not by_document:
            return

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(by_document))) as executor:
            futures = [executor.submit(expand_document, group) for group in by_document.values()]
            for future in as_completed(futures):
                future.result()

        logger.info(f"Expanded hits across {len(by_document)} documents ({len(cache)} windows)")
